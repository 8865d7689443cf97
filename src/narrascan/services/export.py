"""Write a run's results to CSV and/or JSON."""

from __future__ import annotations

import csv
import json
import logging
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, List

from sqlalchemy.engine import Engine

from narrascan.repos.results_repo import ResultsRepo
from narrascan.repos.runs_repo import RunsRepo

logger = logging.getLogger(__name__)

EXPORT_FORMATS = ("csv", "json", "both")

CSV_COLUMNS = [
    "run_id",
    "record_id",
    "detected",
    "confidence",
    "rationale",
    "elapsed_sec",
    "attempt_count",
    "error_occurred",
    "first_error_message",
    "last_error_message",
    "error_category",
    "processed_at",
]


def _rationale(verdict_json: str | None) -> str | None:
    if not verdict_json:
        return None
    try:
        return json.loads(verdict_json).get("rationale")
    except (json.JSONDecodeError, AttributeError):
        return None


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else value


def export_run(engine: Engine, run_id: str, out_dir: str | Path, fmt: str = "both") -> List[Path]:
    """
    Export one run. CSV is one flat row per result; JSON carries the run
    row (with parsed metrics) and every result including verdict/usage.
    """
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unknown export format: {fmt} (expected one of {', '.join(EXPORT_FORMATS)})")

    run = RunsRepo(engine).get_run(run_id)
    if run is None:
        raise ValueError(f"Run {run_id} not found")
    results = ResultsRepo(engine).list_by_run(run_id)

    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []

    if fmt in ("csv", "both"):
        csv_path = out / f"{run_id}_results.csv"
        with csv_path.open("w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=CSV_COLUMNS)
            writer.writeheader()
            for r in results:
                writer.writerow(
                    {
                        "run_id": r.run_id,
                        "record_id": r.record_id,
                        "detected": r.detected,
                        "confidence": r.confidence,
                        "rationale": _rationale(r.verdict_json),
                        "elapsed_sec": r.elapsed_sec,
                        "attempt_count": r.attempt_count,
                        "error_occurred": r.error_occurred,
                        "first_error_message": r.first_error_message,
                        "last_error_message": r.last_error_message,
                        "error_category": r.error_category,
                        "processed_at": _iso(r.processed_at),
                    }
                )
        written.append(csv_path)

    if fmt in ("json", "both"):
        json_path = out / f"{run_id}_results.json"
        run_dict: Dict[str, object] = {k: _iso(v) for k, v in asdict(run).items()}
        run_dict["config"] = json.loads(run.config_json)
        run_dict["metrics"] = json.loads(run.metrics_json) if run.metrics_json else None
        run_dict.pop("config_json", None)
        run_dict.pop("metrics_json", None)

        result_dicts = []
        for r in results:
            d = {k: _iso(v) for k, v in asdict(r).items()}
            d["verdict"] = json.loads(r.verdict_json) if r.verdict_json else None
            d["usage"] = json.loads(r.usage_json) if r.usage_json else None
            d.pop("verdict_json", None)
            d.pop("usage_json", None)
            result_dicts.append(d)

        json_path.write_text(
            json.dumps({"run": run_dict, "results": result_dicts}, indent=2, ensure_ascii=False),
            encoding="utf-8",
        )
        written.append(json_path)

    logger.info("Exported %d results for run %s to %s", len(results), run_id, out)
    return written
