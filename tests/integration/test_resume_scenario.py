"""End-to-end: a 500-item run is killed after 237 items and resumed."""

from __future__ import annotations

import pytest

from narrascan.models.domain import RUN_COMPLETED, RUN_RUNNING
from narrascan.repos.results_repo import ResultsRepo
from narrascan.repos.runs_repo import RunsRepo
from narrascan.services.controller import RunController


def test_kill_and_resume_500_items(engine, seed_source, make_ctx, fake_classifier, simulated_crash, classifier_config):
    seed_source("nvdrs", n=500)

    # commit_every=1 so exactly the 237 finished items survive the crash on item 238
    crashing = fake_classifier(crash_after=238)
    controller = RunController(make_ctx(crashing, commit_every=1))
    run_id = controller.start("ipv-baseline", classifier_config, "nvdrs")

    with pytest.raises(simulated_crash):
        controller.execute(run_id)

    run = RunsRepo(engine).get_run(run_id)
    assert run.status == RUN_RUNNING
    assert run.completed_items == 237
    assert ResultsRepo(engine).count_by_run(run_id) == 237

    clf = fake_classifier()
    resumed = RunController(make_ctx(clf, commit_every=100))
    assert "Remaining: 263 (52.6% done)" in resumed.summary(run_id)

    report = resumed.resume(run_id)

    assert report.status == RUN_COMPLETED
    assert len(clf.seen) == 263
    run = RunsRepo(engine).get_run(run_id)
    assert run.status == RUN_COMPLETED
    assert run.completed_items == 500
    assert ResultsRepo(engine).count_by_run(run_id) == 500
    assert all(r.attempt_count == 1 for r in ResultsRepo(engine).list_by_run(run_id))


def test_second_resume_of_completed_run_changes_nothing(engine, seed_source, make_ctx, fake_classifier, classifier_config):
    seed_source("nvdrs", n=20)
    report = RunController(make_ctx(fake_classifier())).run_new("ipv", classifier_config, "nvdrs")
    rows_before = ResultsRepo(engine).list_by_run(report.run_id)

    check = RunController(make_ctx(fake_classifier())).validate_resume(report.run_id)
    assert check.can_resume is False
    assert ResultsRepo(engine).list_by_run(report.run_id) == rows_before
