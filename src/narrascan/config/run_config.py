"""Run configuration files (YAML or JSON)."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator


class ClassifierConfig(BaseModel):
    """
    Everything the classifier needs to reproduce a run.

    A copy of this is frozen into `runs.config_json` when a run starts;
    resumes read it back from there, never from the original file.
    """

    model_name: str
    provider: str = "openai"
    api_url: Optional[str] = None
    temperature: float = 0.1
    max_tokens: Optional[int] = None
    system_prompt: str
    user_template: str = "{text}"
    prompt_version: Optional[str] = None
    params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("temperature")
    @classmethod
    def _temperature_range(cls, v: float) -> float:
        if v < 0 or v > 2:
            raise ValueError("temperature must be between 0 and 2")
        return v

    @field_validator("user_template")
    @classmethod
    def _template_has_text(cls, v: str) -> str:
        if "{text}" not in v:
            raise ValueError("user_template must contain a {text} placeholder")
        return v

    def snapshot_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), sort_keys=True)

    @classmethod
    def from_snapshot(cls, config_json: str) -> "ClassifierConfig":
        return cls.model_validate(json.loads(config_json))


class RunConfigFile(BaseModel):
    """Top-level shape of a `--config` file."""

    name: Optional[str] = None
    source_name: Optional[str] = None
    source_file: Optional[Path] = None
    classifier: ClassifierConfig


def load_run_config(path: str | Path) -> RunConfigFile:
    """
    Load a run config from YAML (.yaml/.yml) or JSON.

    Raises ValueError with a readable message on any problem so the CLI can
    print it as-is.
    """
    path = Path(path)
    if not path.exists():
        raise ValueError(f"Config file not found: {path}")

    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in {".yaml", ".yml"}:
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in {path}: {exc}") from exc
    else:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ValueError("Config file must contain a JSON/YAML object.")

    # Relative source paths are resolved against the config file's directory
    source_file = data.get("source_file")
    if source_file and not Path(source_file).is_absolute():
        data["source_file"] = str(path.parent / source_file)

    try:
        return RunConfigFile.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid run config {path}:\n{exc}") from exc
