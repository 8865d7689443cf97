"""Tests for result upserts: attempt counting and first-error preservation."""

from dataclasses import replace
from datetime import datetime

from narrascan.models.domain import ResultPayload
from narrascan.repos.results_repo import ResultsRepo
from narrascan.repos.runs_repo import RunsRepo


def _error(message: str, category: str = "transient") -> ResultPayload:
    return ResultPayload(
        verdict_json=None,
        usage_json='{"elapsed_sec": 1.0}',
        detected=None,
        confidence=None,
        elapsed_sec=1.0,
        error_occurred=True,
        error_message=message,
        error_category=category,
        processed_at=datetime(2026, 1, 1),
    )


def _success() -> ResultPayload:
    return ResultPayload(
        verdict_json='{"detected": true, "confidence": 0.7}',
        usage_json='{"elapsed_sec": 2.0}',
        detected=True,
        confidence=0.7,
        elapsed_sec=2.0,
        error_occurred=False,
        error_message="ignored on success",
        error_category="transient",
        processed_at=datetime(2026, 1, 2),
    )


def test_retry_preserves_first_error_and_counts_attempts(engine, seed_source):
    seed_source("demo", n=2)
    run_id = RunsRepo(engine).create_run("t", "demo", "{}", total_items=2)
    repo = ResultsRepo(engine)

    repo.upsert_one(run_id, "r0000", _error("timeout"))
    repo.upsert_one(run_id, "r0000", _error("HTTP 400", category="permanent"))

    row = repo.get(run_id, "r0000")
    assert row.attempt_count == 2
    assert row.error_occurred is True
    assert row.first_error_message == "timeout"
    assert row.last_error_message == "HTTP 400"
    assert row.error_category == "permanent"

    repo.upsert_one(run_id, "r0000", _success())
    row = repo.get(run_id, "r0000")
    assert row.attempt_count == 3
    assert row.error_occurred is False
    assert row.first_error_message == "timeout"
    assert row.last_error_message is None
    assert row.error_category is None
    assert row.detected is True
    assert row.confidence == 0.7
    assert repo.count_by_run(run_id) == 1


def test_success_first_leaves_error_columns_empty(engine, seed_source):
    seed_source("demo", n=1)
    run_id = RunsRepo(engine).create_run("t", "demo", "{}", total_items=1)
    repo = ResultsRepo(engine)

    repo.upsert_one(run_id, "r0000", _success())
    row = repo.get(run_id, "r0000")
    assert row.attempt_count == 1
    assert row.first_error_message is None
    assert row.last_error_message is None


def test_counts_and_scored_rows(engine, seed_source):
    seed_source("demo", n=3)
    run_id = RunsRepo(engine).create_run("t", "demo", "{}", total_items=3)
    repo = ResultsRepo(engine)
    repo.upsert_one(run_id, "r0000", _success())
    repo.upsert_one(run_id, "r0001", _error("boom"))

    assert repo.count_by_run(run_id) == 2
    assert repo.count_errors(run_id) == 1
    assert repo.mean_elapsed_sec(run_id) == 1.5

    scored = repo.scored_rows(run_id)
    assert [s.record_id for s in scored] == ["r0000", "r0001"]
    assert scored[0].ground_truth == 1
    assert scored[0].detected is True
    assert scored[1].error_occurred is True


def test_float_columns_keep_double_precision(engine, seed_source):
    seed_source("demo", n=1)
    run_id = RunsRepo(engine).create_run("t", "demo", "{}", total_items=1)
    repo = ResultsRepo(engine)

    repo.upsert_one(run_id, "r0000", replace(_success(), confidence=0.123456789, elapsed_sec=1.1))
    row = repo.get(run_id, "r0000")
    assert row.confidence == 0.123456789
    assert row.elapsed_sec == 1.1
    assert repo.mean_elapsed_sec(run_id) == 1.1
