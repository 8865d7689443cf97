from __future__ import annotations

import csv
import json

import pytest

from narrascan.services.controller import RunController
from narrascan.services.export import export_run


def test_export_csv_and_json(engine, seed_source, make_ctx, fake_classifier, classifier_config, tmp_path):
    seed_source("demo", n=4)
    controller = RunController(make_ctx(fake_classifier(fail_ids={"r0002"})))
    report = controller.run_new("export-test", classifier_config, "demo")

    paths = export_run(engine, report.run_id, tmp_path / "out", fmt="both")
    assert [p.suffix for p in paths] == [".csv", ".json"]

    with paths[0].open(newline="", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    assert [r["record_id"] for r in rows] == ["r0000", "r0001", "r0002", "r0003"]
    assert rows[2]["error_occurred"] == "True"
    assert rows[0]["rationale"] == "fake"

    data = json.loads(paths[1].read_text(encoding="utf-8"))
    assert data["run"]["run_id"] == report.run_id
    assert data["run"]["config"]["model_name"] == "fake-model"
    assert data["run"]["metrics"]["n_errors"] == 1
    assert len(data["results"]) == 4
    assert data["results"][0]["verdict"]["detected"] is True


def test_export_rejects_unknown_run_and_format(engine, tmp_path):
    with pytest.raises(ValueError):
        export_run(engine, "missing", tmp_path)
    with pytest.raises(ValueError):
        export_run(engine, "missing", tmp_path, fmt="xlsx")
