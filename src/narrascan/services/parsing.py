"""
Turn raw model text into a Verdict.

Recovery rules are deliberately few and explicit:
1. strip chat special tokens such as <|channel|> and <|message|>
2. strip markdown code fences
3. rewrite spelled-out decimals ("0. nine" -> "0.9")
4. parse the whole text as JSON, else the first {...} object in it
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional, Tuple

from narrascan.models.domain import Verdict

logger = logging.getLogger(__name__)

_SPECIAL_TOKEN_RE = re.compile(r"<\|[^|]+\|>")
_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")
_FIRST_OBJECT_RE = re.compile(r"\{[^{}]*\}", re.DOTALL)

_DIGIT_WORDS = {
    "zero": "0",
    "one": "1",
    "two": "2",
    "three": "3",
    "four": "4",
    "five": "5",
    "six": "6",
    "seven": "7",
    "eight": "8",
    "nine": "9",
}
_SPELLED_DECIMAL_RE = re.compile(
    r"\b0\.\s*(" + "|".join(_DIGIT_WORDS) + r")\b",
    re.IGNORECASE,
)

_RATIONALE_KEYS = ("rationale", "reasoning", "explanation")

_TRUE_STRINGS = {"true", "yes", "y", "1"}
_FALSE_STRINGS = {"false", "no", "n", "0"}


def clean_model_text(content: str) -> str:
    cleaned = _SPECIAL_TOKEN_RE.sub("", content).strip()
    cleaned = _FENCE_RE.sub("", cleaned).strip()
    return cleaned


def repair_json(json_text: str) -> str:
    """Fix spelled-out decimals like `0. nine` that some models emit."""
    return _SPELLED_DECIMAL_RE.sub(lambda m: "0." + _DIGIT_WORDS[m.group(1).lower()], json_text)


def _coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        v = value.strip().lower()
        if v in _TRUE_STRINGS:
            return True
        if v in _FALSE_STRINGS:
            return False
    return None


def _coerce_confidence(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return None
    if 0.0 <= conf <= 1.0:
        return conf
    return None


def _load_json_object(text: str) -> Optional[dict]:
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    match = _FIRST_OBJECT_RE.search(text)
    if match:
        try:
            parsed = json.loads(match.group(0))
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            return None
    return None


def parse_verdict(content: Optional[str]) -> Tuple[Optional[Verdict], Optional[str]]:
    """
    Parse model output into (verdict, error).

    Exactly one of the two is None. A response without a usable
    `detected` field is an error; an out-of-range confidence is dropped
    rather than failing the item.
    """
    if content is None or not content.strip():
        return None, "No content in response"

    cleaned = repair_json(clean_model_text(content))
    data = _load_json_object(cleaned)
    if data is None:
        return None, "Failed to parse JSON from response content"

    detected = _coerce_bool(data.get("detected"))
    if detected is None:
        return None, "Response JSON has no usable 'detected' field"

    rationale = None
    for key in _RATIONALE_KEYS:
        if data.get(key) is not None:
            rationale = str(data[key])
            break

    raw_conf = data.get("confidence")
    confidence = _coerce_confidence(raw_conf)
    if raw_conf is not None and confidence is None:
        logger.debug("Dropping out-of-range confidence %r", raw_conf)

    extra = {k: v for k, v in data.items() if k not in ("detected", "confidence", *_RATIONALE_KEYS)}

    return (
        Verdict(
            detected=detected,
            confidence=confidence,
            rationale=rationale,
            raw_output=content,
            extra=extra,
        ),
        None,
    )
