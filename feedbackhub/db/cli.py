"""Command line interface for the FeedbackHub migration runner."""

from __future__ import annotations

import argparse
import json
import sys
from typing import Iterable, Optional

from dotenv import load_dotenv

from ..models.session import get_engine
from .migrations import TEMPLATES, MigrationError, MigrationResult, MigrationRunner


def _print_results(results: list[MigrationResult]) -> None:
    if not results:
        print("No migrations to process.")
        return
    for result in results:
        line = f"{result.id} status={result.status}"
        if result.execution_time is not None:
            line += f" time_ms={result.execution_time}"
        if result.error:
            line += f" error={result.error}"
        print(line)


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="feedbackhub-migrate", description=__doc__)
    parser.add_argument("--database-url", help="Overrides the DATABASE_URL environment variable")
    parser.add_argument("--package", default="feedbackhub.migrations", help="Migrations package")
    parser.add_argument("--release-version", help="Release version recorded with executed migrations")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List discovered migrations")
    subparsers.add_parser("status", help="Show execution status per migration")

    run_parser = subparsers.add_parser("run", help="Run pending migrations")
    run_parser.add_argument("--dry-run", action="store_true")
    run_parser.add_argument("--continue-on-error", action="store_true")
    run_parser.add_argument("--rollback-on-error", action="store_true")
    run_parser.add_argument("-s", "--specific", help="Only run this migration id")

    rollback_parser = subparsers.add_parser("rollback", help="Roll back executed migrations")
    rollback_parser.add_argument("-c", "--count", type=int, default=1)
    rollback_parser.add_argument("ids", nargs="*", help="Migration ids to roll back")

    create_parser = subparsers.add_parser("create", help="Create a new migration file")
    create_parser.add_argument("name")
    create_parser.add_argument("-t", "--template", choices=TEMPLATES, default="custom")

    subparsers.add_parser("validate", help="Check migrations for problems")

    history_parser = subparsers.add_parser("history", help="Show recent executions")
    history_parser.add_argument("--limit", type=int, default=20)

    return parser.parse_args(argv)


def main(argv: Optional[Iterable[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)

    try:
        engine = get_engine(args.database_url)
    except RuntimeError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    runner = MigrationRunner(
        engine,
        migrations_package=args.package,
        release_version=args.release_version,
    )

    try:
        if args.command == "list":
            for migration in runner.load_migrations():
                deps = ",".join(migration.depends_on) or "-"
                print(f"{migration.id} release={migration.release_version} depends_on={deps}")
            return 0

        if args.command == "status":
            print(json.dumps(runner.get_migration_status(), indent=2, default=str))
            return 0

        if args.command == "run":
            results = runner.run_migrations(
                dry_run=args.dry_run,
                continue_on_error=args.continue_on_error,
                rollback_on_error=args.rollback_on_error,
                specific=args.specific,
            )
            _print_results(results)
            return 1 if any(r.status == "failed" for r in results) else 0

        if args.command == "rollback":
            results = runner.rollback_migrations(ids=args.ids or None, count=args.count)
            _print_results(results)
            return 1 if any(r.status == "failed" for r in results) else 0

        if args.command == "create":
            path = runner.create_migration(args.name, args.template)
            print(f"created {path}")
            return 0

        if args.command == "validate":
            issues = runner.validate_migrations()
            for issue in issues:
                print(issue)
            if not issues:
                print("All migrations are valid.")
            return 1 if issues else 0

        print(json.dumps(runner.get_history(args.limit), indent=2, default=str))
        return 0
    except MigrationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
