"""Unit tests for the owlmend command line."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from owlmend.cli import app, main

runner = CliRunner()

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="sandbox relies on POSIX rlimits")

ALEMBIC_INI = Path(__file__).resolve().parents[3] / "alembic.ini"
TOOL = "payments.create"


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    # db migrate exports the URL; make sure it is restored afterwards.
    monkeypatch.setenv("OWLMEND_DATABASE_URL", "")
    monkeypatch.delenv("OWLMEND_DATABASE_URL")


def _write_json(path: Path, data) -> Path:
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


@pytest.fixture
def schema_file(tmp_path: Path) -> Path:
    path = tmp_path / "schema.yaml"
    path.write_text("user_id: string\namount_cents:\n  type: integer\n  unit: cents\n", encoding="utf-8")
    return path


@pytest.fixture
def recipes_file(tmp_path: Path) -> Path:
    return _write_json(
        tmp_path / "recipes.json",
        [
            {"source_field": "user", "target_field": "user_id"},
            {
                "source_field": "amt",
                "target_field": "amount_cents",
                "rule": {"op": "scale", "params": {"factor": "100", "round": "half_up"}},
            },
        ],
    )


def test_init_writes_default_config(tmp_path) -> None:
    result = runner.invoke(app, ["init", "--path", str(tmp_path)])

    assert result.exit_code == 0
    written = yaml.safe_load((tmp_path / "owlmend.yaml").read_text(encoding="utf-8"))
    assert written["repair"]["hybrid_mode"] == "auto"
    assert written["retrieval"]["embedder"] == "tfidf"


def test_init_refuses_to_overwrite_without_force(tmp_path) -> None:
    (tmp_path / "owlmend.yaml").write_text("custom: true\n", encoding="utf-8")

    refused = runner.invoke(app, ["init", "--path", str(tmp_path)])
    forced = runner.invoke(app, ["init", "--path", str(tmp_path), "--force"])

    assert refused.exit_code == 1
    assert "--force" in refused.output
    assert forced.exit_code == 0
    assert "custom" not in (tmp_path / "owlmend.yaml").read_text(encoding="utf-8")


def test_check_repairs_with_seed_recipes(tmp_path, schema_file, recipes_file) -> None:
    payload = _write_json(tmp_path / "call.json", {"user": "abc123", "amt": "19.99"})

    result = runner.invoke(
        app, ["check", str(payload), "--tool-id", TOOL, "--schema", str(schema_file), "--recipes", str(recipes_file)]
    )

    assert result.exit_code == 0, result.output
    report = json.loads(result.stdout)
    assert report["status"] == "repaired"
    assert report["final_payload"] == {"user_id": "abc123", "amount_cents": 1999}
    assert report["strategy"] == "direct_substitution"


def test_check_passes_conforming_payload(tmp_path, schema_file) -> None:
    payload = _write_json(tmp_path / "call.json", {"user_id": "abc123", "amount_cents": 1999})

    result = runner.invoke(app, ["check", str(payload), "-t", TOOL, "-s", str(schema_file)])

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["status"] == "passed"


def test_check_exits_one_when_unresolvable(tmp_path, schema_file) -> None:
    payload = _write_json(tmp_path / "call.json", {"user": "abc123", "amt": "19.99"})

    result = runner.invoke(app, ["check", str(payload), "-t", TOOL, "-s", str(schema_file)])

    assert result.exit_code == 1
    assert '"unresolvable"' in result.output


@pytest.mark.parametrize(
    ("payload_text", "recipes_text"),
    [
        ("[1, 2, 3]", None),
        ('{"user_id": "a"}', "[1, 2]"),
        ("{unclosed: [", None),
    ],
)
def test_check_rejects_malformed_inputs(tmp_path, schema_file, payload_text, recipes_text) -> None:
    payload = tmp_path / "call.yaml"
    payload.write_text(payload_text, encoding="utf-8")
    args = ["check", str(payload), "-t", TOOL, "-s", str(schema_file)]
    if recipes_text is not None:
        recipes = tmp_path / "recipes.yaml"
        recipes.write_text(recipes_text, encoding="utf-8")
        args += ["-r", str(recipes)]

    result = runner.invoke(app, args)

    assert result.exit_code == 2
    assert "Error:" in result.output


def test_sandbox_run_rejects_invalid_bindings(tmp_path) -> None:
    program = tmp_path / "prog.py"
    program.write_text("def transform(x):\n    return x\n", encoding="utf-8")

    not_json = runner.invoke(app, ["sandbox", "run", str(program), "--bindings", "{nope"])
    not_object = runner.invoke(app, ["sandbox", "run", str(program), "--bindings", "[1]"])

    assert not_json.exit_code == 2
    assert "not valid JSON" in not_json.output
    assert not_object.exit_code == 2
    assert "JSON object" in not_object.output


def test_sandbox_run_reports_policy_rejection(tmp_path) -> None:
    program = tmp_path / "prog.py"
    program.write_text("import os\n\ndef transform():\n    return os.getcwd()\n", encoding="utf-8")

    result = runner.invoke(app, ["sandbox", "run", str(program)])

    assert result.exit_code == 1
    assert "rejected" in result.output


@posix_only
def test_sandbox_run_prints_result(tmp_path) -> None:
    program = tmp_path / "prog.py"
    program.write_text(
        "from decimal import Decimal\n\n"
        "def transform(amt):\n"
        "    return {'amount_cents': int(Decimal(amt) * 100)}\n",
        encoding="utf-8",
    )
    bindings = _write_json(tmp_path / "bindings.json", {"amt": "19.99"})

    result = runner.invoke(app, ["sandbox", "run", str(program), "--bindings", str(bindings), "--timeout", "10"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == {"amount_cents": 1999}


def test_db_migrate_requires_database_url() -> None:
    result = runner.invoke(app, ["db", "migrate", "--config", str(ALEMBIC_INI)])

    assert result.exit_code == 2
    assert "OWLMEND_DATABASE_URL" in result.output


def test_db_migrate_runs_alembic_upgrade() -> None:
    with patch("owlmend.cli.db.command.upgrade") as upgrade:
        result = runner.invoke(
            app,
            [
                "db",
                "migrate",
                "--database-url",
                "postgresql://u:p@localhost/owlmend",
                "--config",
                str(ALEMBIC_INI),
                "--target",
                "001",
            ],
        )

    assert result.exit_code == 0, result.output
    assert upgrade.call_args.args[1] == "001"
    assert "Migrations applied." in result.output


def test_db_migrate_dry_run_does_not_upgrade() -> None:
    with patch("owlmend.cli.db.command.upgrade") as upgrade, patch(
        "owlmend.cli.db.command.current"
    ) as current, patch("owlmend.cli.db.command.heads") as heads:
        result = runner.invoke(
            app,
            ["db", "migrate", "--database-url", "postgresql://localhost/x", "--config", str(ALEMBIC_INI), "--dry-run"],
        )

    assert result.exit_code == 0, result.output
    assert upgrade.call_count == 0
    assert current.call_count == 1
    assert heads.call_count == 1


def test_db_migrate_missing_alembic_config() -> None:
    result = runner.invoke(
        app, ["db", "migrate", "--database-url", "postgresql://localhost/x", "--config", "missing.ini"]
    )
    assert result.exit_code == 2
    assert "Alembic config not found" in result.output


def test_version_flag(monkeypatch, capsys) -> None:
    monkeypatch.setattr(sys, "argv", ["owlmend", "--version"])
    with pytest.raises(SystemExit) as exc_info:
        main()
    assert exc_info.value.code == 0
    assert capsys.readouterr().out.startswith("owlmend ")
