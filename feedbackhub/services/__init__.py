"""Domain services shared by the routers and the integration processor."""

from .common import Page, paginate, validate_pagination
from .customers import CustomerFilters, CustomerOverview, CustomerService
from .feedback import FeedbackFilters, FeedbackService, feedback_snapshot
from .organizations import OrganizationService
from .users import UserService

__all__ = [
    "CustomerFilters",
    "CustomerOverview",
    "CustomerService",
    "FeedbackFilters",
    "FeedbackService",
    "OrganizationService",
    "Page",
    "UserService",
    "feedback_snapshot",
    "paginate",
    "validate_pagination",
]
