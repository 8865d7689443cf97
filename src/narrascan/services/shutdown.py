"""
Cooperative cancellation.

SIGINT/SIGTERM set a token that the executor checks between items; the
in-flight item is finished and committed before the run stops. A second
SIGINT falls through to KeyboardInterrupt.
"""

from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            if self.reason is None:
                self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@contextmanager
def install_signal_handlers(token: CancellationToken) -> Iterator[CancellationToken]:
    """
    Route SIGINT/SIGTERM to `token` for the duration of the block.

    Only the main thread may install handlers; elsewhere this is a no-op.
    """
    if threading.current_thread() is not threading.main_thread():
        yield token
        return

    def _handler(signum, frame):
        name = signal.Signals(signum).name
        if token.cancelled and signum == signal.SIGINT:
            raise KeyboardInterrupt
        logger.warning("Received %s, finishing the current item and stopping", name)
        token.cancel(f"received {name}")

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.getsignal(sig)
        signal.signal(sig, _handler)
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
