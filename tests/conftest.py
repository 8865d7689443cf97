"""Global test fixtures."""

import sys
import threading
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from narrascan.config.run_config import ClassifierConfig  # noqa: E402
from narrascan.config.settings import Settings  # noqa: E402
from narrascan.db.engine import build_engine  # noqa: E402
from narrascan.db.init_db import ensure_schema  # noqa: E402
from narrascan.models.domain import ClassificationOutcome, Usage, Verdict  # noqa: E402
from narrascan.repos.inputs_repo import InputsRepo  # noqa: E402
from narrascan.services.context import RunContext  # noqa: E402


class SimulatedCrash(BaseException):
    """Stands in for a kill -9: not an Exception, so nothing handles it."""


class FakeClassifier:
    """
    Deterministic classifier for engine tests.

    detected = even record number; `fail_ids` get an error outcome,
    `raise_ids` raise, and `crash_after` raises SimulatedCrash on that call.
    """

    def __init__(self, fail_ids=(), raise_ids=(), crash_after=None, fail_category="transient"):
        self.fail_ids = set(fail_ids)
        self.raise_ids = set(raise_ids)
        self.crash_after = crash_after
        self.fail_category = fail_category
        self.seen = []
        self._lock = threading.Lock()

    def classify(self, record, config):
        with self._lock:
            self.seen.append(record.record_id)
            n_calls = len(self.seen)
        if self.crash_after is not None and n_calls == self.crash_after:
            raise SimulatedCrash(f"crash on call {n_calls}")
        if record.record_id in self.raise_ids:
            raise RuntimeError(f"boom on {record.record_id}")
        usage = Usage(elapsed_sec=0.01, model=config.model_name)
        if record.record_id in self.fail_ids:
            return ClassificationOutcome(
                verdict=None,
                usage=usage,
                error=f"upstream error for {record.record_id}",
                error_category=self.fail_category,
            )
        number = int(record.record_id.lstrip("r"))
        verdict = Verdict(
            detected=number % 2 == 0,
            confidence=0.8,
            rationale="fake",
            raw_output='{"detected": true}',
        )
        return ClassificationOutcome(verdict=verdict, usage=usage)


def make_records(n: int) -> list[dict]:
    # Ground truth agrees with FakeClassifier on every record
    return [
        {"record_id": f"r{i:04d}", "text": f"narrative number {i}", "ground_truth": 1 if i % 2 == 0 else 0}
        for i in range(n)
    ]


@pytest.fixture
def db_url(tmp_path) -> str:
    # File-backed: every connection must see the same database
    return f"duckdb:///{tmp_path / 'narrascan.duckdb'}"


@pytest.fixture
def engine(db_url):
    eng = build_engine(db_url)
    ensure_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def classifier_config() -> ClassifierConfig:
    return ClassifierConfig(
        model_name="fake-model",
        provider="stub",
        system_prompt="Decide whether the narrative describes intimate partner violence.",
        user_template="Narrative: {text}",
        prompt_version="v1",
    )


@pytest.fixture
def seed_source(engine):
    def _seed(source_name: str = "demo", n: int = 10, checksum: str = "sha-demo") -> list[dict]:
        records = make_records(n)
        ok, count = InputsRepo(engine).ingest(source_name, checksum, records)
        assert ok and count == n
        return records

    return _seed


@pytest.fixture
def make_ctx(engine, tmp_path):
    def _make(classifier=None, **overrides) -> RunContext:
        factory = (lambda cfg: classifier) if classifier is not None else None
        kwargs = dict(
            engine=engine,
            settings=Settings(),
            classifier_factory=factory,
            lock_dir=tmp_path / "locks",
            log_dir=tmp_path / "logs",
            commit_every=5,
            classify_timeout_s=5.0,
            workers=1,
        )
        kwargs.update(overrides)
        return RunContext(**kwargs)

    return _make


@pytest.fixture
def fake_classifier():
    return FakeClassifier


@pytest.fixture
def simulated_crash():
    return SimulatedCrash
