"""
Coarse error categories for per-item failures.

Only two categories are stored on a result row:
- TRANSIENT: worth another attempt later (timeouts, transport, throttling)
- PERMANENT: retrying the same input will fail the same way (bad request,
  unusable model output)

Nothing here retries. The category tells an operator whether a
retry-errors-only resume is likely to help.
"""

from __future__ import annotations

import logging
import re
from concurrent.futures import TimeoutError as FuturesTimeoutError
from enum import Enum
from typing import Dict, List, Tuple

import httpx

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


# Message patterns for exceptions whose type says nothing useful
ERROR_PATTERNS: Dict[str, ErrorCategory] = {
    r"time(d)?\s*out": ErrorCategory.TRANSIENT,
    r"connection.*(refused|reset|aborted)": ErrorCategory.TRANSIENT,
    r"network.*unreachable": ErrorCategory.TRANSIENT,
    r"temporar(y|ily)": ErrorCategory.TRANSIENT,
    r"rate.?limit": ErrorCategory.TRANSIENT,
    r"service unavailable": ErrorCategory.TRANSIENT,
    r"context length|maximum context": ErrorCategory.PERMANENT,
    r"invalid.*(request|json)": ErrorCategory.PERMANENT,
    r"model.*not found": ErrorCategory.PERMANENT,
}

_COMPILED: List[Tuple[re.Pattern, ErrorCategory]] = [
    (re.compile(p, re.IGNORECASE), c) for p, c in ERROR_PATTERNS.items()
]


def categorize_http_status(status_code: int) -> ErrorCategory:
    if status_code == 429 or status_code == 408 or status_code >= 500:
        return ErrorCategory.TRANSIENT
    return ErrorCategory.PERMANENT


def categorize_exception(exc: BaseException) -> ErrorCategory:
    """
    Map an exception to a category.

    Type checks first (httpx / timeouts), then message
    patterns; anything unrecognised is treated as transient so a
    retry-errors pass picks it up.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        return categorize_http_status(exc.response.status_code)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, FuturesTimeoutError, TimeoutError, ConnectionError)):
        return ErrorCategory.TRANSIENT

    message = f"{type(exc).__name__}: {exc}"
    for pattern, category in _COMPILED:
        if pattern.search(message):
            return category

    logger.debug("Uncategorised classifier error, treating as transient: %s", message)
    return ErrorCategory.TRANSIENT


def describe_exception(exc: BaseException) -> str:
    text = str(exc).strip()
    return f"{type(exc).__name__}: {text}" if text else type(exc).__name__
