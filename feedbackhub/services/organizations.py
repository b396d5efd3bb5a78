"""Organization lifecycle and membership management."""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from feedbackhub.errors import (
    AuthorizationError,
    MemberNotFoundError,
    OrganizationError,
    OrganizationNotFoundError,
    ValidationError,
)
from feedbackhub.models import Customer, Feedback, Integration, Organization, User
from feedbackhub.security import hash_password, is_strong_enough

from .common import normalize_email, validate_email_address

logger = logging.getLogger(__name__)

ROLE_CHOICES = ("viewer", "operator", "admin")
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    slug = _SLUG_RE.sub("-", name.lower()).strip("-")
    return slug[:50] or "org"


class OrganizationService:
    def __init__(self, session: Session) -> None:
        self.session = session

    # Helpers ---------------------------------------------------------------

    def _require_admin(self, organization_id: uuid.UUID, actor: User) -> None:
        if actor.organization_id != organization_id or actor.role != "admin":
            raise AuthorizationError(code="ADMIN_PERMISSIONS_REQUIRED")

    def _admin_count(self, organization_id: uuid.UUID) -> int:
        return int(
            self.session.execute(
                select(func.count())
                .select_from(User)
                .where(
                    User.organization_id == organization_id,
                    User.role == "admin",
                    User.is_active.is_(True),
                )
            ).scalar_one()
        )

    def _member(self, organization_id: uuid.UUID, user_id: uuid.UUID) -> User:
        user = self.session.get(User, user_id)
        if user is None or user.organization_id != organization_id or not user.is_active:
            raise MemberNotFoundError(metadata={"userId": str(user_id)})
        return user

    def _unique_subdomain(self, base: str) -> str:
        candidate, suffix = base, 1
        while self.session.execute(
            select(Organization.id).where(Organization.subdomain == candidate)
        ).first():
            suffix += 1
            candidate = f"{base}-{suffix}"
        return candidate

    def is_name_available(self, name: str, exclude_id: uuid.UUID | None = None) -> bool:
        stmt = select(Organization.id).where(
            func.lower(Organization.name) == name.strip().lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Organization.id != exclude_id)
        return self.session.execute(stmt).first() is None

    # Organizations ---------------------------------------------------------

    def create_organization(
        self,
        name: str,
        creator: User | None = None,
        *,
        description: str | None = None,
        subdomain: str | None = None,
    ) -> Organization:
        """Create an organization; ``creator`` is moved into it as an admin."""

        name = (name or "").strip()
        if not name:
            raise ValidationError(code="ORGANIZATION_NAME_REQUIRED", metadata={"field": "name"})
        if not self.is_name_available(name):
            raise OrganizationError(code="ORGANIZATION_NAME_EXISTS")

        organization = Organization(
            name=name,
            subdomain=self._unique_subdomain(slugify(subdomain or name)),
            description=description,
            settings={},
        )
        self.session.add(organization)
        self.session.flush()

        if creator is not None:
            creator.organization_id = organization.id
            creator.role = "admin"
            self.session.flush()
        logger.info("Organization %s created", organization.id,
                    extra={"organization_id": str(organization.id)})
        return organization

    def get_organization(self, organization_id: uuid.UUID) -> Organization:
        organization = self.session.get(Organization, organization_id)
        if organization is None:
            raise OrganizationNotFoundError(metadata={"organizationId": str(organization_id)})
        return organization

    def update_organization(
        self,
        organization_id: uuid.UUID,
        actor: User,
        *,
        name: str | None = None,
        description: str | None = None,
        settings: dict[str, Any] | None = None,
    ) -> Organization:
        self._require_admin(organization_id, actor)
        organization = self.get_organization(organization_id)
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError(code="ORGANIZATION_NAME_REQUIRED", metadata={"field": "name"})
            if not self.is_name_available(name, exclude_id=organization.id):
                raise OrganizationError(code="ORGANIZATION_NAME_EXISTS")
            organization.name = name
        if description is not None:
            organization.description = description
        if settings is not None:
            organization.settings = {**(organization.settings or {}), **settings}
        self.session.flush()
        return organization

    def delete_organization(self, organization_id: uuid.UUID, actor: User) -> None:
        self._require_admin(organization_id, actor)
        organization = self.get_organization(organization_id)
        self.session.delete(organization)
        self.session.flush()
        logger.warning("Organization %s deleted by %s", organization_id, actor.id,
                       extra={"organization_id": str(organization_id)})

    # Members ---------------------------------------------------------------

    def list_members(self, organization_id: uuid.UUID) -> list[User]:
        return list(
            self.session.execute(
                select(User)
                .where(User.organization_id == organization_id, User.is_active.is_(True))
                .order_by(User.created_at, User.email)
            ).scalars()
        )

    def get_user_role(self, organization_id: uuid.UUID, user_id: uuid.UUID) -> str | None:
        user = self.session.get(User, user_id)
        if user is None or user.organization_id != organization_id or not user.is_active:
            return None
        return user.role

    def add_member(
        self,
        organization_id: uuid.UUID,
        actor: User,
        *,
        email: str,
        name: str,
        password: str,
        role: str = "viewer",
    ) -> User:
        self._require_admin(organization_id, actor)
        if role not in ROLE_CHOICES:
            raise ValidationError(code="INVALID_ROLE", metadata={"role": role})
        email = validate_email_address(email)
        if not is_strong_enough(password):
            raise ValidationError(code="PASSWORD_TOO_WEAK", metadata={"field": "password"})
        existing = self.session.execute(
            select(User).where(User.email == normalize_email(email))
        ).scalar_one_or_none()
        if existing is not None:
            raise OrganizationError(code="MEMBER_ALREADY_EXISTS")

        user = User(
            organization_id=organization_id,
            email=email,
            name=name.strip(),
            password_hash=hash_password(password),
            role=role,
        )
        self.session.add(user)
        self.session.flush()
        return user

    def update_member_role(
        self, organization_id: uuid.UUID, actor: User, user_id: uuid.UUID, role: str
    ) -> User:
        self._require_admin(organization_id, actor)
        if role not in ROLE_CHOICES:
            raise ValidationError(code="INVALID_ROLE", metadata={"role": role})
        member = self._member(organization_id, user_id)
        if member.role == "admin" and role != "admin" and self._admin_count(organization_id) <= 1:
            raise OrganizationError(code="MINIMUM_ADMIN_REQUIRED")
        member.role = role
        self.session.flush()
        return member

    def remove_member(self, organization_id: uuid.UUID, actor: User, user_id: uuid.UUID) -> None:
        self._require_admin(organization_id, actor)
        if actor.id == user_id:
            raise OrganizationError(code="CANNOT_REMOVE_OWNER")
        member = self._member(organization_id, user_id)
        if member.role == "admin" and self._admin_count(organization_id) <= 1:
            raise OrganizationError(code="MINIMUM_ADMIN_REQUIRED")
        member.is_active = False
        self.session.flush()

    # Reporting -------------------------------------------------------------

    def get_statistics(self, organization_id: uuid.UUID) -> dict[str, Any]:
        self.get_organization(organization_id)
        role_rows = self.session.execute(
            select(User.role, func.count())
            .where(User.organization_id == organization_id, User.is_active.is_(True))
            .group_by(User.role)
        ).all()
        members_by_role = {role: 0 for role in ROLE_CHOICES}
        members_by_role.update({role: int(count) for role, count in role_rows})
        status_rows = self.session.execute(
            select(Feedback.status, func.count())
            .where(Feedback.organization_id == organization_id)
            .group_by(Feedback.status)
        ).all()
        feedback_by_status = {status: int(count) for status, count in status_rows}

        def _count(model: Any) -> int:
            return int(
                self.session.execute(
                    select(func.count())
                    .select_from(model)
                    .where(model.organization_id == organization_id)
                ).scalar_one()
            )

        return {
            "member_count": sum(members_by_role.values()),
            "members_by_role": members_by_role,
            "feedback_count": sum(feedback_by_status.values()),
            "feedback_by_status": feedback_by_status,
            "customer_count": _count(Customer),
            "integration_count": _count(Integration),
        }


__all__ = ["OrganizationService", "ROLE_CHOICES", "slugify"]
