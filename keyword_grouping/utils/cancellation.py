"""Cooperative cancellation token shared by pipeline stages.

Long-running stages poll the token at well-defined boundaries (chunk start,
stage start, between result pages) instead of being interrupted, so cleanup of
hand-off files always runs.
"""

import threading
from typing import Optional

from ..errors import Aborted


class CancellationToken:
    """Thread-safe one-way cancellation flag.

    Examples
    --------
    >>> token = CancellationToken()
    >>> token.cancelled
    False
    >>> token.cancel("user request")
    >>> token.cancelled
    True
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        """Request cancellation. Later calls keep the first reason."""
        with self._lock:
            if not self._event.is_set():
                self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self, where: str = "") -> None:
        """Raise :class:`Aborted` if cancellation has been requested."""
        if self._event.is_set():
            detail = f" at {where}" if where else ""
            raise Aborted(f"Cancelled{detail}")

    def wait(self, timeout: float) -> bool:
        """Block up to ``timeout`` seconds; returns True if cancelled meanwhile."""
        return self._event.wait(timeout)


def check_cancelled(token: Optional[CancellationToken], where: str = "") -> None:
    """Raise :class:`Aborted` when ``token`` is set; no-op for ``None``."""
    if token is not None:
        token.raise_if_cancelled(where)
