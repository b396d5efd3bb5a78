"""Create customers, feedback and comments.

``integration_id`` columns are created without a foreign key here; the
constraint is added once the ``integrations`` table exists (003).
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "002_create_feedback_tables"
down_revision = "001_create_core_tables"
release_version = "1.0.0"
depends_on = "001_create_core_tables"


_UUID = postgresql.UUID(as_uuid=True)
_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        _UUID,
        primary_key=True,
        nullable=False,
        server_default=sa.text("gen_random_uuid()"),
    )


def _org_column() -> sa.Column:
    return sa.Column(
        "organization_id",
        _UUID,
        sa.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    op.create_table(
        "customers",
        _id_column(),
        _org_column(),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("company", sa.String(length=255), nullable=True),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("source", sa.String(length=64), nullable=True),
        sa.Column("integration_id", _UUID, nullable=True),
        sa.Column("metadata", _JSON, nullable=False),
        _timestamp("first_seen_at"),
        _timestamp("last_seen_at"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "ix_customers_org_email_unique",
        "customers",
        ["organization_id", "email"],
        unique=True,
    )
    op.create_index("ix_customers_org_last_seen", "customers", ["organization_id", "last_seen_at"])
    op.create_index(
        "ix_customers_org_external",
        "customers",
        ["organization_id", "source", "external_id"],
    )

    op.create_table(
        "feedback",
        _id_column(),
        _org_column(),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False, server_default=sa.text("'new'")),
        sa.Column("priority", sa.String(length=16), nullable=True),
        sa.Column("category", sa.String(length=128), nullable=True),
        sa.Column("source", sa.String(length=64), nullable=False, server_default=sa.text("'manual'")),
        sa.Column(
            "customer_id",
            _UUID,
            sa.ForeignKey("customers.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("integration_id", _UUID, nullable=True),
        sa.Column(
            "assigned_to",
            _UUID,
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "created_by",
            _UUID,
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("upvote_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("source_metadata", _JSON, nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_feedback_org_status", "feedback", ["organization_id", "status"])
    op.create_index("ix_feedback_org_created", "feedback", ["organization_id", "created_at"])
    op.create_index("ix_feedback_customer", "feedback", ["customer_id"])
    op.create_index("ix_feedback_assigned_to", "feedback", ["assigned_to"])

    op.create_table(
        "comments",
        _id_column(),
        _org_column(),
        sa.Column(
            "feedback_id",
            _UUID,
            sa.ForeignKey("feedback.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            _UUID,
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("is_internal", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("metadata", _JSON, nullable=False),
        _timestamp("created_at"),
    )
    op.create_index("ix_comments_feedback", "comments", ["feedback_id"])


def downgrade() -> None:
    op.drop_index("ix_comments_feedback", table_name="comments")
    op.drop_table("comments")

    for index in (
        "ix_feedback_assigned_to",
        "ix_feedback_customer",
        "ix_feedback_org_created",
        "ix_feedback_org_status",
    ):
        op.drop_index(index, table_name="feedback")
    op.drop_table("feedback")

    for index in (
        "ix_customers_org_external",
        "ix_customers_org_last_seen",
        "ix_customers_org_email_unique",
    ):
        op.drop_index(index, table_name="customers")
    op.drop_table("customers")
