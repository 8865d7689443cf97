"""Per-invocation wiring: built once by the CLI (or a test) and passed down."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from sqlalchemy.engine import Engine

from narrascan.config.run_config import ClassifierConfig
from narrascan.config.settings import Settings, settings as default_settings
from narrascan.repos.runs_repo import utcnow
from narrascan.services.classifier import Classifier, ClassifierFactory, build_llm_classifier
from narrascan.services.metrics import MetricsFn, compute_run_metrics
from narrascan.services.shutdown import CancellationToken


@dataclass
class RunContext:
    engine: Engine
    settings: Settings = field(default_factory=lambda: default_settings)
    classifier_factory: Optional[ClassifierFactory] = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    now_fn: Callable[[], datetime] = utcnow
    metrics_fn: MetricsFn = compute_run_metrics

    # Unset fields fall back to settings
    lock_dir: Optional[Path] = None
    log_dir: Optional[Path] = None
    commit_every: Optional[int] = None
    classify_timeout_s: Optional[float] = None
    workers: Optional[int] = None

    def __post_init__(self) -> None:
        self.lock_dir = Path(self.lock_dir if self.lock_dir is not None else self.settings.lock_dir)
        self.log_dir = Path(self.log_dir if self.log_dir is not None else self.settings.log_dir)
        if self.commit_every is None:
            self.commit_every = self.settings.commit_every
        if self.classify_timeout_s is None:
            self.classify_timeout_s = self.settings.classify_timeout_s
        if self.workers is None:
            self.workers = self.settings.workers
        if self.commit_every < 1:
            raise ValueError("commit_every must be >= 1")
        if self.workers < 1:
            raise ValueError("workers must be >= 1")

    def build_classifier(self, config: ClassifierConfig) -> Classifier:
        if self.classifier_factory is not None:
            return self.classifier_factory(config)
        return build_llm_classifier(config, self.settings)
