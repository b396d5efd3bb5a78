"""Create integrations, integration events and pending OAuth states."""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "003_create_integration_tables"
down_revision = "002_create_feedback_tables"
release_version = "1.0.0"
depends_on = ["001_create_core_tables", "002_create_feedback_tables"]


_UUID = postgresql.UUID(as_uuid=True)
_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

# (constraint, table) pairs for the integration_id columns created in 002.
_INTEGRATION_FKS = (
    ("fk_customers_integration_id", "customers"),
    ("fk_feedback_integration_id", "feedback"),
)


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


def _supports_alter_constraints() -> bool:
    # SQLite cannot add constraints to existing tables.
    return op.get_context().dialect.name != "sqlite"


def upgrade() -> None:
    op.create_table(
        "integrations",
        _id_column(),
        _org_column(),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default=sa.text("'active'")),
        sa.Column("config", _JSON, nullable=False),
        sa.Column("credentials", sa.Text(), nullable=True),
        sa.Column("metadata", _JSON, nullable=False),
        sa.Column("sync_config", _JSON, nullable=False),
        sa.Column("last_health_check", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("ix_integrations_org", "integrations", ["organization_id"])
    op.create_index("ix_integrations_type", "integrations", ["type"])

    op.create_table(
        "integration_events",
        _id_column(),
        _org_column(),
        sa.Column(
            "integration_id",
            _UUID,
            sa.ForeignKey("integrations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("source_id", sa.String(length=255), nullable=True),
        sa.Column("data", _JSON, nullable=False),
        sa.Column("metadata", _JSON, nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("result", _JSON, nullable=True),
        sa.Column("response_time_ms", sa.Integer(), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "ix_integration_events_integration",
        "integration_events",
        ["integration_id", "created_at"],
    )
    op.create_index("ix_integration_events_status", "integration_events", ["status"])

    op.create_table(
        "oauth_states",
        sa.Column("state", sa.String(length=128), primary_key=True, nullable=False),
        _org_column(),
        sa.Column("integration_type", sa.String(length=32), nullable=False),
        sa.Column("config", _JSON, nullable=False),
        sa.Column(
            "created_by",
            _UUID,
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _timestamp("created_at"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )

    if _supports_alter_constraints():
        for name, table in _INTEGRATION_FKS:
            op.create_foreign_key(
                name, table, "integrations", ["integration_id"], ["id"], ondelete="SET NULL"
            )


def downgrade() -> None:
    if _supports_alter_constraints():
        for name, table in _INTEGRATION_FKS:
            op.drop_constraint(name, table, type_="foreignkey")

    op.drop_table("oauth_states")

    op.drop_index("ix_integration_events_status", table_name="integration_events")
    op.drop_index("ix_integration_events_integration", table_name="integration_events")
    op.drop_table("integration_events")

    op.drop_index("ix_integrations_type", table_name="integrations")
    op.drop_index("ix_integrations_org", table_name="integrations")
    op.drop_table("integrations")
