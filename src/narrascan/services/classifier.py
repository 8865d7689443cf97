"""Classifier boundary: one input record in, one outcome out."""

from __future__ import annotations

import logging
import time
from typing import Callable, Protocol

from narrascan.config.run_config import ClassifierConfig
from narrascan.config.settings import Settings
from narrascan.models.domain import ClassificationOutcome, InputRecordRow, Usage, Verdict
from narrascan.services.error_categories import (
    ErrorCategory,
    categorize_exception,
    describe_exception,
)
from narrascan.services.llm_client import LLMClient, get_llm_client
from narrascan.services.parsing import parse_verdict

logger = logging.getLogger(__name__)


class Classifier(Protocol):
    """Anything that can classify a record. Must not raise for item-level failures."""

    def classify(self, record: InputRecordRow, config: ClassifierConfig) -> ClassificationOutcome:
        raise NotImplementedError


ClassifierFactory = Callable[[ClassifierConfig], Classifier]


def render_user_prompt(template: str, text: str) -> str:
    # str.replace, not str.format: narratives are full of braces
    return template.replace("{text}", text)


class LLMClassifier:
    """Prompt an LLM and parse its JSON answer into a Verdict."""

    def __init__(self, client: LLMClient, clock: Callable[[], float] = time.perf_counter) -> None:
        self.client = client
        self.clock = clock

    def classify(self, record: InputRecordRow, config: ClassifierConfig) -> ClassificationOutcome:
        user_prompt = render_user_prompt(config.user_template, record.text)
        started = self.clock()
        try:
            response = self.client.generate(config.system_prompt, user_prompt)
        except Exception as exc:
            elapsed = self.clock() - started
            logger.debug("Classifier call failed for %s: %s", record.record_id, exc)
            return ClassificationOutcome(
                verdict=None,
                usage=Usage(elapsed_sec=elapsed, model=config.model_name),
                error=describe_exception(exc),
                error_category=categorize_exception(exc).value,
            )
        elapsed = self.clock() - started

        usage = Usage(
            elapsed_sec=elapsed,
            prompt_tokens=response.prompt_tokens,
            completion_tokens=response.completion_tokens,
            total_tokens=response.total_tokens,
            model=response.model or config.model_name,
        )

        verdict, error = parse_verdict(response.content)
        if error is not None:
            # Keep what the model said so the row is diagnosable
            return ClassificationOutcome(
                verdict=Verdict(detected=None, raw_output=response.content),
                usage=usage,
                error=error,
                error_category=ErrorCategory.PERMANENT.value,
            )
        return ClassificationOutcome(verdict=verdict, usage=usage)


def build_llm_classifier(config: ClassifierConfig, settings: Settings | None = None) -> Classifier:
    return LLMClassifier(get_llm_client(config, settings))
