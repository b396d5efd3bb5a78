"""Profile management for the signed-in user."""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from feedbackhub.errors import (
    AuthenticationError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    ValidationError,
)
from feedbackhub.models import Comment, Feedback, User
from feedbackhub.security import (
    hash_password,
    is_strong_enough,
    revoke_all_refresh_tokens,
    verify_password,
)

from .common import utcnow, validate_email_address

MAX_NAME_LENGTH = 255
MIN_SEARCH_LENGTH = 3
_OPEN_STATUSES = ("new", "triaged", "planned", "in_progress")


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_profile(self, user_id: uuid.UUID) -> User:
        user = self.session.get(User, user_id)
        if user is None:
            raise ResourceNotFoundError("user", user_id)
        return user

    def get_user(self, organization_id: uuid.UUID, user_id: uuid.UUID) -> User:
        user = self.session.get(User, user_id)
        if user is None or user.organization_id != organization_id:
            raise ResourceNotFoundError("user", user_id)
        return user

    def update_profile(
        self,
        user_id: uuid.UUID,
        *,
        name: str | None = None,
        email: str | None = None,
    ) -> User:
        user = self.get_profile(user_id)
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError(code="FIELD_TOO_SHORT", metadata={"field": "name"})
            if len(name) > MAX_NAME_LENGTH:
                raise ValidationError(code="FIELD_TOO_LONG", metadata={"field": "name"})
            user.name = name
        if email is not None:
            email = validate_email_address(email)
            if email != user.email:
                taken = self.session.execute(
                    select(User.id).where(User.email == email, User.id != user.id)
                ).first()
                if taken:
                    raise ResourceAlreadyExistsError("user")
                user.email = email
        self.session.flush()
        return user

    def change_password(self, user_id: uuid.UUID, current_password: str, new_password: str) -> None:
        """Replace the password and sign the user out everywhere."""

        user = self.get_profile(user_id)
        if not verify_password(current_password, user.password_hash):
            raise AuthenticationError(code="INCORRECT_PASSWORD")
        if not is_strong_enough(new_password):
            raise ValidationError(code="PASSWORD_TOO_WEAK", metadata={"field": "new_password"})
        user.password_hash = hash_password(new_password)
        revoke_all_refresh_tokens(self.session, user)
        self.session.flush()

    def update_last_activity(self, user_id: uuid.UUID) -> None:
        user = self.get_profile(user_id)
        user.last_activity_at = utcnow()
        self.session.flush()

    def search_users(self, organization_id: uuid.UUID, query: str, limit: int = 10) -> list[User]:
        query = (query or "").strip()
        if len(query) < MIN_SEARCH_LENGTH:
            raise ValidationError(
                f"Search query must be at least {MIN_SEARCH_LENGTH} characters",
                code="FIELD_TOO_SHORT",
                metadata={"field": "q"},
            )
        pattern = f"%{query.lower()}%"
        return list(
            self.session.execute(
                select(User)
                .where(
                    User.organization_id == organization_id,
                    User.is_active.is_(True),
                    or_(func.lower(User.email).like(pattern), func.lower(User.name).like(pattern)),
                )
                .order_by(User.name)
                .limit(max(1, min(limit, 50)))
            ).scalars()
        )

    def get_user_stats(self, user_id: uuid.UUID) -> dict[str, Any]:
        user = self.get_profile(user_id)

        def _count(stmt: Any) -> int:
            return int(self.session.execute(stmt).scalar_one())

        created = _count(select(func.count()).select_from(Feedback).where(Feedback.created_by == user.id))
        assigned = _count(select(func.count()).select_from(Feedback).where(Feedback.assigned_to == user.id))
        open_assigned = _count(
            select(func.count())
            .select_from(Feedback)
            .where(Feedback.assigned_to == user.id, Feedback.status.in_(_OPEN_STATUSES))
        )
        comments = _count(select(func.count()).select_from(Comment).where(Comment.user_id == user.id))
        return {
            "feedback_created": created,
            "feedback_assigned": assigned,
            "feedback_assigned_open": open_assigned,
            "comments_written": comments,
            "last_activity_at": user.last_activity_at,
        }


__all__ = ["UserService"]
