"""LLM client abstractions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

from narrascan.config.run_config import ClassifierConfig
from narrascan.config.settings import Settings, settings as default_settings


@dataclass(frozen=True)
class LLMResponse:
    content: Optional[str]
    model: Optional[str] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None
    raw: dict[str, Any] = field(default_factory=dict)


class LLMClient(Protocol):
    """Minimal interface for chat-style generation."""

    def generate(self, system_prompt: str, user_prompt: str) -> LLMResponse:
        """Generate a response given system + user prompts."""
        raise NotImplementedError


@dataclass(frozen=True)
class StubLLMClient:
    """Deterministic stub for tests and dry runs."""

    response_text: str = '{"detected": false, "confidence": 0.5, "rationale": "STUB_RESPONSE"}'
    model: str = "stub"

    def generate(self, system_prompt: str, user_prompt: str) -> LLMResponse:
        return LLMResponse(content=self.response_text, model=self.model)


def _as_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class OpenAICompatClient:
    """
    OpenAI-compatible chat completions (OpenAI, LM Studio, vLLM, Ollama's /v1).

    Design:
    - Sync httpx client with a hard timeout: a hung endpoint cannot stall a run
    - `client` injection makes it testable without real HTTP
    """

    api_url: str
    model_name: str
    temperature: float = 0.1
    max_tokens: Optional[int] = None
    api_key: Optional[str] = None
    timeout_s: float = 60.0
    extra_params: dict[str, Any] = field(default_factory=dict)
    client: Optional[httpx.Client] = None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def generate(self, system_prompt: str, user_prompt: str) -> LLMResponse:
        body: dict[str, Any] = {
            "model": self.model_name,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
        }
        if self.max_tokens is not None:
            body["max_tokens"] = self.max_tokens
        body.update(self.extra_params)

        close_client = False
        client = self.client
        if client is None:
            client = httpx.Client(timeout=self.timeout_s)
            close_client = True

        try:
            r = client.post(self.api_url, json=body, headers=self._headers())
            r.raise_for_status()
            payload = r.json()
        finally:
            if close_client:
                client.close()

        content = None
        choices = payload.get("choices") or []
        if choices:
            message = choices[0].get("message") or {}
            content = message.get("content")

        usage = payload.get("usage") or {}
        return LLMResponse(
            content=content,
            model=payload.get("model") or self.model_name,
            prompt_tokens=_as_int(usage.get("prompt_tokens")),
            completion_tokens=_as_int(usage.get("completion_tokens")),
            total_tokens=_as_int(usage.get("total_tokens")),
            raw=payload,
        )


def get_llm_client(config: ClassifierConfig, settings: Settings | None = None) -> LLMClient:
    """
    Factory for LLM clients.

    Provider/model/url come from the run's config snapshot; the API key only
    ever comes from settings so it never lands in the runs table.
    """
    settings = settings or default_settings
    provider = (config.provider or settings.llm_provider).lower()
    if provider == "stub":
        return StubLLMClient()
    if provider in {"openai", "openai_compat", "lmstudio"}:
        return OpenAICompatClient(
            api_url=config.api_url or settings.llm_api_url,
            model_name=config.model_name,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            api_key=settings.llm_api_key,
            timeout_s=settings.classify_timeout_s,
            extra_params=dict(config.params),
        )
    raise ValueError(f"Unknown LLM provider: {config.provider}")
