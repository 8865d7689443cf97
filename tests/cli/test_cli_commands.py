"""CLI tests: run/resume/ingest/status/export and their exit codes."""

from __future__ import annotations

import os
from contextlib import contextmanager

import pytest
from typer.testing import CliRunner

from narrascan.cli.app import app
from narrascan.db.engine import build_engine
from narrascan.models.domain import RUN_COMPLETED
from narrascan.repos.runs_repo import RunsRepo
from narrascan.services.shutdown import install_signal_handlers

runner = CliRunner()

CSV = "record_id,text,ground_truth\nn1,first narrative,1\nn2,second narrative,0\nn3,third narrative,no\n"

CONFIG = """
name: cli-baseline
source_name: cli-src
source_file: input.csv
classifier:
  model_name: stub-model
  provider: stub
  system_prompt: Decide whether the narrative describes intimate partner violence.
  user_template: "Narrative: {text}"
"""


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    db_url = f"duckdb:///{tmp_path / 'cli.duckdb'}"
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("NARRASCAN_DB_URL", db_url)
    monkeypatch.setenv("NARRASCAN_LOCK_DIR", str(tmp_path / "locks"))
    monkeypatch.setenv("NARRASCAN_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("NARRASCAN_COMMIT_EVERY", "2")
    (tmp_path / "input.csv").write_text(CSV, encoding="utf-8")
    (tmp_path / "run.yaml").write_text(CONFIG, encoding="utf-8")
    return tmp_path, db_url


def _only_run(db_url):
    engine = build_engine(db_url)
    runs = RunsRepo(engine).list_runs()
    engine.dispose()
    assert len(runs) == 1
    return runs[0]


def test_init_db(cli_env):
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0
    assert "Database initialized" in result.stdout


def test_run_then_resume_completed_is_rejected(cli_env):
    tmp_path, db_url = cli_env

    result = runner.invoke(app, ["run", "--config", str(tmp_path / "run.yaml")])
    assert result.exit_code == 0, result.stdout
    assert "Ingested 3 records" in result.stdout

    run = _only_run(db_url)
    assert run.status == RUN_COMPLETED
    assert run.completed_items == 3

    again = runner.invoke(app, ["resume", "--run-id", run.run_id])
    assert again.exit_code == 1
    assert "already completed" in again.stdout


def test_ingest_checksum_mismatch_exits_1(cli_env):
    tmp_path, _ = cli_env
    first = runner.invoke(app, ["ingest", "--source-name", "src", "--file", str(tmp_path / "input.csv")])
    assert first.exit_code == 0

    (tmp_path / "input.csv").write_text(CSV + "n4,fourth,1\n", encoding="utf-8")
    second = runner.invoke(app, ["ingest", "--source-name", "src", "--file", str(tmp_path / "input.csv")])
    assert second.exit_code == 1
    assert "Checksum mismatch" in second.stdout


def test_resume_with_lock_held_exits_1(cli_env):
    tmp_path, db_url = cli_env
    runner.invoke(app, ["run", "--config", str(tmp_path / "run.yaml")])
    run = _only_run(db_url)

    engine = build_engine(db_url)
    RunsRepo(engine).mark_failed(run.run_id, "simulated")
    engine.dispose()

    lock_dir = tmp_path / "locks"
    lock_dir.mkdir(exist_ok=True)
    (lock_dir / f".resume_lock_{run.run_id}.pid").write_text(f"{os.getppid()}\n")

    result = runner.invoke(app, ["resume", "--run-id", run.run_id])
    assert result.exit_code == 1
    assert "already in progress" in result.stdout


def test_cancelled_run_exits_130(cli_env, monkeypatch):
    tmp_path, db_url = cli_env

    @contextmanager
    def _cancel_immediately(token):
        token.cancel("received SIGINT")
        yield token

    monkeypatch.setattr("narrascan.cli.run.install_signal_handlers", _cancel_immediately)

    result = runner.invoke(app, ["run", "--config", str(tmp_path / "run.yaml")])
    assert result.exit_code == 130
    assert _only_run(db_url).status == "cancelled"

    monkeypatch.setattr("narrascan.cli.run.install_signal_handlers", install_signal_handlers)
    resumed = runner.invoke(app, ["resume", "--run-id", _only_run(db_url).run_id])
    assert resumed.exit_code == 0, resumed.stdout
    assert "Remaining: 3" in resumed.stdout
    assert _only_run(db_url).status == RUN_COMPLETED


def test_bad_config_exits_1(cli_env):
    tmp_path, _ = cli_env
    (tmp_path / "bad.yaml").write_text("classifier:\n  model_name: x\n", encoding="utf-8")
    result = runner.invoke(app, ["run", "--config", str(tmp_path / "bad.yaml"), "--name", "x", "--source-name", "s"])
    assert result.exit_code == 1
    assert "Invalid run config" in result.stdout


def test_status_list_and_export(cli_env):
    tmp_path, db_url = cli_env
    runner.invoke(app, ["run", "--config", str(tmp_path / "run.yaml")])
    run = _only_run(db_url)

    status = runner.invoke(app, ["status", "--run-id", run.run_id])
    assert status.exit_code == 0
    assert "completed" in status.stdout

    listed = runner.invoke(app, ["list-runs", "--status", "completed"])
    assert listed.exit_code == 0
    assert "Runs" in listed.stdout

    out_dir = tmp_path / "exports"
    exported = runner.invoke(app, ["export", "--run-id", run.run_id, "--format", "csv", "--out-dir", str(out_dir)])
    assert exported.exit_code == 0
    assert (out_dir / f"{run.run_id}_results.csv").exists()

    missing = runner.invoke(app, ["status", "--run-id", "nope"])
    assert missing.exit_code == 1
