"""Tests for the inputs repository: checksum gate and remaining-work queries."""

from datetime import datetime

import pytest

from narrascan.models.domain import MODE_MISSING, MODE_RETRY_ERRORS, ResultPayload
from narrascan.repos.inputs_repo import InputsRepo
from narrascan.repos.results_repo import ResultsRepo
from narrascan.repos.runs_repo import RunsRepo


def _payload(error: bool = False) -> ResultPayload:
    return ResultPayload(
        verdict_json=None if error else '{"detected": true}',
        usage_json='{"elapsed_sec": 0.1}',
        detected=None if error else True,
        confidence=None if error else 0.9,
        elapsed_sec=0.1,
        error_occurred=error,
        error_message="boom" if error else None,
        error_category="transient" if error else None,
        processed_at=datetime(2026, 1, 1),
    )


def test_checksum_recorded_then_compared(engine):
    repo = InputsRepo(engine)
    assert repo.verify_or_record_checksum("nvdrs", "aaa", file_path="/data/a.csv") is True
    assert repo.verify_or_record_checksum("nvdrs", "aaa") is True
    assert repo.verify_or_record_checksum("nvdrs", "bbb") is False

    source = repo.get_source("nvdrs")
    assert source is not None
    assert source.source_checksum == "aaa"
    assert source.file_path == "/data/a.csv"


def test_ingest_is_idempotent_for_same_checksum(engine, seed_source):
    records = seed_source("demo", n=4, checksum="c1")
    repo = InputsRepo(engine)

    ok, count = repo.ingest("demo", "c1", records)
    assert ok is True
    assert count == 4
    assert repo.count_for_source("demo") == 4
    assert repo.get_source("demo").record_count == 4


def test_ingest_refuses_changed_checksum(engine, seed_source):
    seed_source("demo", n=3, checksum="c1")
    ok, count = InputsRepo(engine).ingest("demo", "c2", [{"record_id": "x", "text": "y"}])
    assert ok is False
    assert count == 0
    assert InputsRepo(engine).count_for_source("demo") == 3


def test_remaining_work_missing_and_retry_modes(engine, seed_source):
    seed_source("demo", n=6)
    run_id = RunsRepo(engine).create_run("t", "demo", "{}", total_items=6)
    results = ResultsRepo(engine)
    results.upsert_one(run_id, "r0000", _payload())
    results.upsert_one(run_id, "r0001", _payload(error=True))
    results.upsert_one(run_id, "r0003", _payload(error=True))

    repo = InputsRepo(engine)
    missing = [r.record_id for r in repo.remaining_work(run_id, MODE_MISSING)]
    assert missing == ["r0002", "r0004", "r0005"]
    assert repo.count_remaining(run_id, MODE_MISSING) == 3

    retry = [r.record_id for r in repo.remaining_work(run_id, MODE_RETRY_ERRORS)]
    assert retry == ["r0001", "r0003"]
    assert repo.count_remaining(run_id, MODE_RETRY_ERRORS) == 2


def test_remaining_work_is_scoped_to_the_run_source(engine, seed_source):
    seed_source("a", n=3, checksum="ca")
    seed_source("b", n=5, checksum="cb")
    run_id = RunsRepo(engine).create_run("t", "b", "{}", total_items=5)

    rows = list(InputsRepo(engine).remaining_work(run_id, MODE_MISSING, chunk_size=2))
    assert len(rows) == 5
    assert {r.source_name for r in rows} == {"b"}


def test_unknown_mode_raises(engine, seed_source):
    seed_source("demo", n=1)
    run_id = RunsRepo(engine).create_run("t", "demo", "{}", total_items=1)
    repo = InputsRepo(engine)
    with pytest.raises(ValueError):
        repo.count_remaining(run_id, "everything")
    with pytest.raises(ValueError):
        list(repo.remaining_work(run_id, "everything"))
