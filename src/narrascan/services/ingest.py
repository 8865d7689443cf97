"""CSV ingestion behind a checksum gate."""

from __future__ import annotations

import csv
import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from sqlalchemy.engine import Engine

from narrascan.errors import ChecksumMismatchError
from narrascan.repos.inputs_repo import InputsRepo

logger = logging.getLogger(__name__)

_TRUE_LABELS = {"1", "true", "yes"}
_FALSE_LABELS = {"0", "false", "no"}


@dataclass(frozen=True)
class IngestResult:
    source_name: str
    checksum: str
    record_count: int
    already_ingested: bool


def file_checksum(path: str | Path, chunk_size: int = 1 << 20) -> str:
    h = hashlib.sha256()
    with Path(path).open("rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def parse_ground_truth(value: Optional[str]) -> Optional[int]:
    """1/0/true/false/yes/no (any case) -> 1/0; anything else -> None."""
    if value is None:
        return None
    v = value.strip().lower()
    if v in _TRUE_LABELS:
        return 1
    if v in _FALSE_LABELS:
        return 0
    return None


def load_csv_records(
    path: str | Path,
    id_column: str = "record_id",
    text_column: str = "text",
    label_column: str = "ground_truth",
) -> List[dict]:
    """
    Read input records from a CSV file.

    Rows with empty text are skipped. A blank or repeated record id is an
    error: record ids are the natural key every resume relies on.
    """
    path = Path(path)
    with path.open("r", newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        fields = reader.fieldnames or []
        for col in (id_column, text_column):
            if col not in fields:
                raise ValueError(f"{path}: missing required column '{col}' (found: {', '.join(fields)})")

        records: List[dict] = []
        seen: set[str] = set()
        skipped = 0
        for line_no, row in enumerate(reader, start=2):
            record_id = (row.get(id_column) or "").strip()
            if not record_id:
                raise ValueError(f"{path}:{line_no}: blank {id_column}")
            if record_id in seen:
                raise ValueError(f"{path}:{line_no}: duplicate {id_column} '{record_id}'")
            seen.add(record_id)

            text_value = row.get(text_column) or ""
            if not text_value.strip():
                skipped += 1
                continue

            records.append(
                {
                    "record_id": record_id,
                    "text": text_value,
                    "ground_truth": parse_ground_truth(row.get(label_column)),
                }
            )

    if skipped:
        logger.warning("%s: skipped %d rows with empty text", path, skipped)
    return records


def ingest_source(
    engine: Engine,
    source_name: str,
    path: str | Path,
    id_column: str = "record_id",
    text_column: str = "text",
    label_column: str = "ground_truth",
) -> IngestResult:
    """
    Ingest a CSV under `source_name`.

    The first ingest records the file checksum; later ingests of the same
    name must match it or ChecksumMismatchError is raised.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Input file not found: {path}")

    checksum = file_checksum(path)
    repo = InputsRepo(engine)

    existing = repo.get_source(source_name)
    if existing is not None:
        if existing.source_checksum != checksum:
            raise ChecksumMismatchError(source_name, existing.source_checksum, checksum)
        logger.info("Source %s already ingested (%d records)", source_name, existing.record_count)
        return IngestResult(source_name, checksum, existing.record_count, already_ingested=True)

    records = load_csv_records(path, id_column=id_column, text_column=text_column, label_column=label_column)
    ok, count = repo.ingest(source_name, checksum, records, file_path=str(path.resolve()))
    if not ok:
        # Another process recorded a different checksum first
        stored = repo.get_source(source_name)
        raise ChecksumMismatchError(source_name, stored.source_checksum if stored else "", checksum)

    logger.info("Ingested %d records into source %s", count, source_name)
    return IngestResult(source_name, checksum, count, already_ingested=False)
