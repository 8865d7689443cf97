from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Centralized config.

    Key idea:
    - read from env first (so tests/CI can override),
    - otherwise default to local dev values.
    """

    model_config = SettingsConfigDict(env_prefix="NARRASCAN_", extra="ignore")

    # DuckDB file by default (portable, zero-setup)
    db_url: str = "duckdb:///data/narrascan.duckdb"

    # Host-local PID lock files live here
    lock_dir: str = "data"

    # Per-run log files: <log_dir>/<run_id>/run.log
    log_dir: str = "logs/runs"
    log_level: str = "INFO"

    # Batch commit window and progress cadence
    commit_every: int = 100

    # Every classifier call is bounded by this
    classify_timeout_s: float = 60.0

    # 1 = sequential; >1 = bounded pool for classifier calls, single writer
    workers: int = 1

    # LLM endpoint defaults (run configs may override url/model; the key never lands in a run row)
    llm_provider: str = "stub"
    llm_api_url: str = "http://localhost:1234/v1/chat/completions"
    llm_api_key: str | None = None


settings = Settings()
