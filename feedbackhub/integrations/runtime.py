"""Process-wide integration processor used by routers and services."""

from __future__ import annotations

import logging

from feedbackhub.config import get_integration_settings
from feedbackhub.security.auth import get_session_factory

from .processor import IntegrationProcessor
from .scheduler import RetryScheduler

logger = logging.getLogger(__name__)

_PROCESSOR: IntegrationProcessor | None = None


def get_integration_processor() -> IntegrationProcessor:
    """Return the shared processor, creating it on first use."""

    global _PROCESSOR
    if _PROCESSOR is None:
        settings = get_integration_settings()
        _PROCESSOR = IntegrationProcessor(
            get_session_factory(),
            scheduler=RetryScheduler(),
            retry_delays=settings.retry_delays,
            max_attempts=settings.max_attempts,
        )
        logger.info(
            "Integration processor started",
            extra={"event_code": "PROCESSOR_STARTED", "service": "integrations"},
        )
    return _PROCESSOR


def set_integration_processor(processor: IntegrationProcessor | None) -> None:
    """Install ``processor`` as the shared instance (tests inject fakes here)."""

    global _PROCESSOR
    _PROCESSOR = processor


def reset_integration_processor() -> None:
    """Stop the shared processor's timers and forget it."""

    global _PROCESSOR
    if _PROCESSOR is not None:
        _PROCESSOR.scheduler.shutdown(wait=False)
    _PROCESSOR = None


__all__ = [
    "get_integration_processor",
    "reset_integration_processor",
    "set_integration_processor",
]
