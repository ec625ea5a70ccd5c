"""Registry of active jobs, at most one per (scope, kind)."""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from ..errors import JobAlreadyRunning
from ..utils.cancellation import CancellationToken

LOGGER = logging.getLogger(__name__)

JobKey = Tuple[int, str]


@dataclass
class JobHandle:
    """Slot held by a running job."""

    scope: int
    kind: str
    token: CancellationToken
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> JobKey:
        return (self.scope, self.kind)


class JobRegistry:
    """
    Tracks running jobs for the owning process.

    Created by the host at startup and shared with every orchestrator it
    runs; ``shutdown`` cancels whatever is still active.

    Examples
    --------
    >>> registry = JobRegistry()
    >>> handle = registry.start(1, "clustering")
    >>> registry.is_active(1, "clustering")
    True
    >>> registry.release(handle)
    """

    def __init__(self):
        self._jobs: Dict[JobKey, JobHandle] = {}
        self._lock = threading.Lock()

    def start(
        self, scope: int, kind: str, token: Optional[CancellationToken] = None
    ) -> JobHandle:
        """
        Claim the slot for (scope, kind).

        Raises
        ------
        JobAlreadyRunning
            If a job holds the slot already.
        """
        with self._lock:
            key = (scope, kind)
            if key in self._jobs:
                raise JobAlreadyRunning(f"A {kind} job is already running for scope {scope}")
            handle = JobHandle(scope, kind, token or CancellationToken())
            self._jobs[key] = handle
        LOGGER.debug(f"Registered {kind} job for scope {scope}")
        return handle

    def release(self, handle: JobHandle) -> None:
        """Free the slot if ``handle`` still owns it."""
        with self._lock:
            if self._jobs.get(handle.key) is handle:
                del self._jobs[handle.key]

    def is_active(self, scope: int, kind: str) -> bool:
        with self._lock:
            return (scope, kind) in self._jobs

    def active(self) -> List[JobKey]:
        with self._lock:
            return list(self._jobs)

    def cancel(self, scope: int, kind: str, reason: str = "cancelled") -> bool:
        """Cancel the job in (scope, kind); False if none is running."""
        with self._lock:
            handle = self._jobs.get((scope, kind))
        if handle is None:
            return False
        handle.token.cancel(reason)
        return True

    def shutdown(self, reason: str = "shutdown") -> int:
        """Cancel every active job; returns how many were signalled."""
        with self._lock:
            handles = list(self._jobs.values())
        for handle in handles:
            handle.token.cancel(reason)
        if handles:
            LOGGER.info(f"Cancelled {len(handles)} active jobs on {reason}")
        return len(handles)
