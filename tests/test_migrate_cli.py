import json
import uuid

import pytest

from feedbackhub.db import cli

MIGRATION = '''
import sqlalchemy as sa
from alembic import op

revision = "{revision}"
down_revision = None
release_version = "1.0.0"
depends_on = None


def upgrade():
    {body}


def downgrade():
    op.drop_table("{revision}")
'''


@pytest.fixture
def migrate(tmp_path, monkeypatch):
    """Run the CLI against a SQLite database and a throwaway migrations package."""

    name = f"climigs_{uuid.uuid4().hex}"
    directory = tmp_path / "pkgs" / name
    directory.mkdir(parents=True)
    (directory / "__init__.py").write_text("")
    monkeypatch.syspath_prepend(str(tmp_path / "pkgs"))
    monkeypatch.delenv("DATABASE_URL", raising=False)
    url = f"sqlite:///{tmp_path / 'cli.db'}"

    def run(*argv):
        return cli.main(["--database-url", url, "--package", name, *argv])

    def add(revision, body=None):
        body = body or f'op.create_table("{revision}", sa.Column("id", sa.Integer(), primary_key=True))'
        (directory / f"{revision}.py").write_text(MIGRATION.format(revision=revision, body=body))

    run.add = add
    run.directory = directory
    return run


def test_parse_args_run_flags():
    args = cli.parse_args(["run", "--dry-run", "--continue-on-error", "-s", "001_first"])

    assert args.command == "run"
    assert args.dry_run is True
    assert args.continue_on_error is True
    assert args.rollback_on_error is False
    assert args.specific == "001_first"


def test_parse_args_rollback_and_create():
    rollback = cli.parse_args(["rollback", "-c", "2"])
    assert rollback.count == 2
    assert rollback.ids == []

    create = cli.parse_args(["create", "add widgets", "-t", "table"])
    assert create.name == "add widgets"
    assert create.template == "table"

    with pytest.raises(SystemExit):
        cli.parse_args(["create", "x", "-t", "bogus"])


def test_missing_database_url(monkeypatch, capsys):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(cli, "load_dotenv", lambda: None)

    assert cli.main(["status"]) == 1
    assert "DATABASE_URL is not configured" in capsys.readouterr().err


def test_list_and_run(migrate, capsys):
    migrate.add("001_first")
    migrate.add("002_second")

    assert migrate("list") == 0
    listed = capsys.readouterr().out
    assert "001_first release=1.0.0 depends_on=-" in listed

    assert migrate("run", "--dry-run") == 0
    assert "001_first status=pending" in capsys.readouterr().out

    assert migrate("run") == 0
    out = capsys.readouterr().out
    assert "001_first status=success" in out
    assert "002_second status=success" in out

    assert migrate("run") == 0
    assert capsys.readouterr().out.strip() == "No migrations to process."

    assert migrate("status") == 0
    status = json.loads(capsys.readouterr().out)
    assert status["executed"] == 2


def test_failed_run_exits_non_zero(migrate, capsys):
    migrate.add("001_broken", body="raise RuntimeError('boom')")

    assert migrate("run") == 1
    assert "001_broken status=failed error=boom" in capsys.readouterr().out

    assert migrate("history", "--limit", "5") == 0
    history = json.loads(capsys.readouterr().out)
    assert history[0]["id"] == "001_broken"
    assert history[0]["status"] == "failed"


def test_unknown_specific_migration(migrate, capsys):
    migrate.add("001_first")

    assert migrate("run", "-s", "999_missing") == 1
    assert "Migration 999_missing not found" in capsys.readouterr().err


def test_rollback(migrate, capsys):
    migrate.add("001_first")
    migrate.add("002_second")
    migrate("run")
    capsys.readouterr()

    assert migrate("rollback", "-c", "2") == 0
    out = capsys.readouterr().out
    assert "002_second status=rolled_back" in out
    assert "001_first status=rolled_back" in out


def test_create_and_validate(migrate, capsys):
    migrate.add("001_first")

    assert migrate("create", "Add tags", "-t", "column") == 0
    assert "002_add_tags.py" in capsys.readouterr().out
    assert (migrate.directory / "002_add_tags.py").exists()

    assert migrate("validate") == 0
    assert "All migrations are valid." in capsys.readouterr().out

    (migrate.directory / "003_empty.py").write_text('revision = "003_empty"\n')
    assert migrate("validate") == 1
    assert "Migration 003_empty has no upgrade()" in capsys.readouterr().out
