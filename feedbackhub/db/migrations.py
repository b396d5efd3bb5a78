"""Python migration runner backed by alembic operations.

Migrations live as ``NNN_<name>.py`` modules inside a package (by default
:mod:`feedbackhub.migrations`). Each module declares ``revision``,
``down_revision``, ``release_version`` and optionally ``depends_on``, and
implements ``upgrade()`` (plus optional ``downgrade()`` and ``validate()``)
with alembic's ``op`` proxy. The runner binds that proxy to the live
connection, runs every migration in its own transaction and records the
outcome in the ``executed_migrations`` table.
"""

from __future__ import annotations

import datetime as dt
import hashlib
import importlib
import logging
import re
import time
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from types import ModuleType
from typing import Any, Iterable

from alembic.operations import Operations
from alembic.runtime.migration import MigrationContext
from sqlalchemy import Engine, select
from sqlalchemy.orm import Session

from ..models import ExecutedMigration

logger = logging.getLogger(__name__)

DEFAULT_PACKAGE = "feedbackhub.migrations"

_FILE_PATTERN = re.compile(r"^(\d{3})_([a-z0-9_]+)\.py$")

TEMPLATES = ("table", "column", "data", "custom")


class MigrationError(RuntimeError):
    """Raised when a migration cannot be loaded or created."""


@dataclass
class Migration:
    """A discovered migration module."""

    id: str
    name: str
    path: Path
    module: ModuleType
    release_version: str | None = None
    down_revision: str | None = None
    depends_on: list[str] = field(default_factory=list)

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.path.read_bytes()).hexdigest()

    @property
    def has_downgrade(self) -> bool:
        return callable(getattr(self.module, "downgrade", None))


@dataclass
class MigrationResult:
    id: str
    name: str
    status: str
    execution_time: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "execution_time": self.execution_time,
            "error": self.error,
        }


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _as_list(value: object) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]  # type: ignore[union-attr]


def _error_log(exc: BaseException) -> dict[str, Any]:
    return {
        "message": str(exc),
        "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        "level": "error",
        "timestamp": _utcnow().isoformat(),
    }


class MigrationRunner:
    """Discover, run, roll back and inspect Python migrations."""

    def __init__(
        self,
        engine: Engine,
        migrations_package: str = DEFAULT_PACKAGE,
        release_version: str | None = None,
    ) -> None:
        self.engine = engine
        self.migrations_package = migrations_package
        self.release_version = release_version
        self._bootstrapped = False

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------
    def _package_dirs(self) -> list[Path]:
        try:
            package = importlib.import_module(self.migrations_package)
        except ImportError as exc:
            raise MigrationError(
                f"Migrations package {self.migrations_package!r} cannot be imported"
            ) from exc
        return [Path(entry) for entry in getattr(package, "__path__", [])]

    def _migration_files(self) -> list[Path]:
        files: dict[str, Path] = {}
        for directory in self._package_dirs():
            for path in directory.glob("[0-9][0-9][0-9]_*.py"):
                if path.is_file() and _FILE_PATTERN.match(path.name):
                    files.setdefault(path.name, path)
        return [files[name] for name in sorted(files)]

    def load_migrations(self) -> list[Migration]:
        """Import every migration module of the package, sorted by file name."""

        migrations: list[Migration] = []
        for path in self._migration_files():
            module = importlib.import_module(f"{self.migrations_package}.{path.stem}")
            match = _FILE_PATTERN.match(path.name)
            name = match.group(2) if match else path.stem
            migrations.append(
                Migration(
                    id=str(getattr(module, "revision", path.stem)),
                    name=name,
                    path=path,
                    module=module,
                    release_version=getattr(module, "release_version", None),
                    down_revision=getattr(module, "down_revision", None),
                    depends_on=_as_list(getattr(module, "depends_on", None)),
                )
            )
        return migrations

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------
    def ensure_table(self) -> None:
        if self._bootstrapped:
            return
        ExecutedMigration.__table__.create(self.engine, checkfirst=True)
        self._bootstrapped = True

    def _records(self) -> dict[str, ExecutedMigration]:
        self.ensure_table()
        with Session(self.engine, expire_on_commit=False) as session:
            rows = session.scalars(select(ExecutedMigration)).all()
        return {row.id: row for row in rows}

    def _save_record(self, migration: Migration, **values: Any) -> None:
        with Session(self.engine, expire_on_commit=False) as session:
            record = session.get(ExecutedMigration, migration.id)
            if record is None:
                record = ExecutedMigration(id=migration.id, name=migration.name)
                session.add(record)
            record.name = migration.name
            for key, value in values.items():
                setattr(record, key, value)
            session.commit()

    def _apply(self, migration: Migration, direction: str) -> int:
        """Run ``upgrade`` or ``downgrade`` in a transaction; return elapsed ms."""

        func = getattr(migration.module, direction)
        start = time.perf_counter()
        with self.engine.begin() as connection:
            context = MigrationContext.configure(connection)
            with Operations.context(context):
                func()
        return int((time.perf_counter() - start) * 1000)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------
    def run_migrations(
        self,
        dry_run: bool = False,
        continue_on_error: bool = False,
        rollback_on_error: bool = False,
        specific: str | None = None,
    ) -> list[MigrationResult]:
        """Execute pending migrations and return one result per attempt."""

        migrations = self.load_migrations()
        records = self._records()
        if specific is not None and specific not in {m.id for m in migrations}:
            raise MigrationError(f"Migration {specific} not found")

        succeeded = {
            record_id for record_id, record in records.items() if record.status == "success"
        }
        results: list[MigrationResult] = []
        applied_this_run: list[tuple[Migration, MigrationResult]] = []

        for migration in migrations:
            if specific is not None and migration.id != specific:
                continue
            if migration.id in succeeded:
                continue

            missing = [dep for dep in migration.depends_on if dep not in succeeded]
            if missing:
                message = f"Dependencies not satisfied: {', '.join(missing)}"
                logger.warning(
                    "Skipping migration %s: %s",
                    migration.id,
                    message,
                    extra={"event_code": "MIGRATION_SKIPPED"},
                )
                if not dry_run:
                    self._save_record(
                        migration,
                        release_version=migration.release_version or self.release_version,
                        executed_at=_utcnow(),
                        error_log={
                            "message": message,
                            "skipped": True,
                            "level": "warning",
                            "timestamp": _utcnow().isoformat(),
                        },
                    )
                results.append(MigrationResult(migration.id, migration.name, "skipped", error=message))
                continue

            if dry_run:
                logger.info("Would run migration %s", migration.id)
                succeeded.add(migration.id)
                results.append(MigrationResult(migration.id, migration.name, "pending"))
                continue

            logger.info(
                "Running migration %s",
                migration.id,
                extra={"event_code": "MIGRATION_STARTED"},
            )
            try:
                validate = getattr(migration.module, "validate", None)
                if callable(validate) and not validate():
                    raise MigrationError("Migration validation failed")
                elapsed = self._apply(migration, "upgrade")
            except Exception as exc:
                logger.exception(
                    "Migration %s failed",
                    migration.id,
                    extra={"event_code": "MIGRATION_FAILED"},
                )
                self._save_record(
                    migration,
                    release_version=migration.release_version or self.release_version,
                    executed_at=_utcnow(),
                    error_log=_error_log(exc),
                    execution_time=None,
                )
                results.append(
                    MigrationResult(migration.id, migration.name, "failed", error=str(exc))
                )
                if rollback_on_error:
                    self._rollback_applied(applied_this_run)
                if not continue_on_error:
                    break
                continue

            self._save_record(
                migration,
                release_version=migration.release_version or self.release_version,
                executed_at=_utcnow(),
                error_log=None,
                execution_time=elapsed,
                checksum=migration.checksum,
                rollback_executed_at=None,
                rollback_error_log=None,
            )
            succeeded.add(migration.id)
            result = MigrationResult(migration.id, migration.name, "success", execution_time=elapsed)
            results.append(result)
            applied_this_run.append((migration, result))
            logger.info(
                "Migration %s applied in %sms",
                migration.id,
                elapsed,
                extra={"event_code": "MIGRATION_SUCCEEDED"},
            )

        return results

    def _rollback_applied(self, applied: list[tuple[Migration, MigrationResult]]) -> None:
        for migration, result in reversed(applied):
            if not migration.has_downgrade:
                continue
            if self._rollback_one(migration):
                result.status = "rolled_back"
            else:
                break
        applied.clear()

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------
    def _rollback_one(self, migration: Migration) -> bool:
        logger.info(
            "Rolling back migration %s",
            migration.id,
            extra={"event_code": "MIGRATION_ROLLBACK_STARTED"},
        )
        try:
            self._apply(migration, "downgrade")
        except Exception as exc:
            logger.exception(
                "Rollback of migration %s failed",
                migration.id,
                extra={"event_code": "MIGRATION_ROLLBACK_FAILED"},
            )
            self._save_record(migration, rollback_error_log=_error_log(exc))
            return False
        self._save_record(migration, rollback_executed_at=_utcnow(), rollback_error_log=None)
        return True

    def rollback_migrations(
        self, ids: Iterable[str] | None = None, count: int = 1
    ) -> list[MigrationResult]:
        """Roll back executed migrations, most recent first.

        With ``ids`` only those migrations are rolled back; otherwise the last
        ``count`` successful ones. Stops at the first failure.
        """

        by_id = {migration.id: migration for migration in self.load_migrations()}
        executed = sorted(
            (record for record in self._records().values() if record.status == "success"),
            key=lambda record: (record.executed_at or record.created_at, record.id),
            reverse=True,
        )
        if ids is not None:
            wanted = set(ids)
            targets = [record for record in executed if record.id in wanted]
        else:
            targets = executed[: max(count, 0)]

        results: list[MigrationResult] = []
        for record in targets:
            migration = by_id.get(record.id)
            if migration is None or not migration.has_downgrade:
                logger.warning("Migration %s has no rollback; skipping", record.id)
                results.append(
                    MigrationResult(record.id, record.name, "skipped", error="No rollback available")
                )
                continue
            if self._rollback_one(migration):
                results.append(MigrationResult(record.id, record.name, "rolled_back"))
            else:
                refreshed = self._records().get(record.id)
                error = (refreshed.rollback_error_log or {}).get("message") if refreshed else None
                results.append(MigrationResult(record.id, record.name, "failed", error=error))
                break
        return results

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def get_migration_status(self) -> dict[str, Any]:
        migrations = self.load_migrations()
        records = self._records()
        rows: list[dict[str, Any]] = []
        for migration in migrations:
            record = records.get(migration.id)
            rows.append(
                {
                    "id": migration.id,
                    "name": migration.name,
                    "release_version": migration.release_version,
                    "status": record.status if record else "pending",
                    "executed_at": record.executed_at if record else None,
                    "execution_time": record.execution_time if record else None,
                }
            )
        executed = sum(1 for row in rows if row["status"] == "success")
        failed = sum(1 for row in rows if row["status"] == "failed")
        return {
            "total": len(rows),
            "executed": executed,
            "failed": failed,
            "pending": len(rows) - executed - failed,
            "migrations": rows,
        }

    def get_history(self, limit: int = 20) -> list[dict[str, Any]]:
        self.ensure_table()
        with Session(self.engine) as session:
            records = session.scalars(
                select(ExecutedMigration)
                .order_by(ExecutedMigration.executed_at.desc(), ExecutedMigration.id.desc())
                .limit(limit)
            ).all()
            return [
                {
                    "id": record.id,
                    "name": record.name,
                    "release_version": record.release_version,
                    "status": record.status,
                    "executed_at": record.executed_at,
                    "execution_time": record.execution_time,
                    "rollback_executed_at": record.rollback_executed_at,
                    "error": (record.error_log or {}).get("message"),
                }
                for record in records
            ]

    def validate_migrations(self) -> list[str]:
        """Return a list of problems found in the migrations package."""

        issues: list[str] = []
        migrations = self.load_migrations()
        known = {migration.id for migration in migrations}
        seen: set[str] = set()
        for migration in migrations:
            if migration.id in seen:
                issues.append(f"Duplicate revision {migration.id} in {migration.path.name}")
            seen.add(migration.id)
            if not callable(getattr(migration.module, "upgrade", None)):
                issues.append(f"Migration {migration.id} has no upgrade()")
            for dep in migration.depends_on:
                if dep not in known:
                    issues.append(f"Migration {migration.id} depends on unknown migration {dep}")

        records = self._records()
        for migration in migrations:
            record = records.get(migration.id)
            if record is not None and record.checksum and record.checksum != migration.checksum:
                issues.append(f"Migration {migration.id} changed after it was executed")
        return issues

    # ------------------------------------------------------------------
    # Scaffolding
    # ------------------------------------------------------------------
    def create_migration(self, name: str, template: str = "custom") -> Path:
        """Write the next numbered migration file and return its path."""

        if template not in TEMPLATES:
            raise MigrationError(f"Unknown template {template!r}; expected one of {', '.join(TEMPLATES)}")
        slug = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
        if not slug:
            raise MigrationError("Migration name must contain letters or digits")

        directories = self._package_dirs()
        if not directories:
            raise MigrationError(f"Migrations package {self.migrations_package!r} has no directory")
        files = self._migration_files()
        number = 1
        down_revision = None
        if files:
            last = files[-1]
            match = _FILE_PATTERN.match(last.name)
            number = int(match.group(1)) + 1 if match else len(files) + 1
            down_revision = last.stem
        revision = f"{number:03d}_{slug}"
        path = directories[0] / f"{revision}.py"
        if path.exists():
            raise MigrationError(f"Migration file {path} already exists")

        body = Template(_TEMPLATES[template]).substitute(
            name=name,
            slug=slug,
            revision=revision,
            down_revision=repr(down_revision),
            release_version=repr(self.release_version or "1.0.0"),
        )
        path.write_text(_HEADER.substitute(name=name) + body, encoding="utf-8")
        logger.info("Created migration %s", path, extra={"event_code": "MIGRATION_CREATED"})
        return path


_HEADER = Template('"""$name"""\n\nfrom __future__ import annotations\n\n')

_TEMPLATES = {
    "table": '''import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "$revision"
down_revision = $down_revision
release_version = $release_version
depends_on = $down_revision


def upgrade() -> None:
    op.create_table(
        "$slug",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "organization_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_${slug}_org", "$slug", ["organization_id"])


def downgrade() -> None:
    op.drop_index("ix_${slug}_org", table_name="$slug")
    op.drop_table("$slug")
''',
    "column": '''import sqlalchemy as sa
from alembic import op

revision = "$revision"
down_revision = $down_revision
release_version = $release_version
depends_on = $down_revision

TABLE = "table_name"
COLUMN = "column_name"


def upgrade() -> None:
    op.add_column(TABLE, sa.Column(COLUMN, sa.String(length=255), nullable=True))


def downgrade() -> None:
    op.drop_column(TABLE, COLUMN)
''',
    "data": '''import sqlalchemy as sa
from alembic import op

revision = "$revision"
down_revision = $down_revision
release_version = $release_version
depends_on = $down_revision


def validate() -> bool:
    return True


def upgrade() -> None:
    op.execute(sa.text("SELECT 1"))


def downgrade() -> None:
    op.execute(sa.text("SELECT 1"))
''',
    "custom": '''from alembic import op

revision = "$revision"
down_revision = $down_revision
release_version = $release_version
depends_on = $down_revision


def upgrade() -> None:
    pass


def downgrade() -> None:
    pass
''',
}


__all__ = [
    "DEFAULT_PACKAGE",
    "Migration",
    "MigrationError",
    "MigrationResult",
    "MigrationRunner",
    "TEMPLATES",
]
