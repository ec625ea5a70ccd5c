"""
Line-delimited JSON event stream of a job.

Event shapes (``type`` first):

- ``progress``: ``stage``, ``fetched``, ``total``, ``percent``
- ``result``: ``id`` plus ``label``/``similarity`` or ``cluster_id``
- ``error``: ``message``, ``code`` and optionally ``detail`` (terminal)
- ``done``: summary counts (terminal)
- ``stopped``: ``stage`` where cancellation was observed (terminal)

``EventEmitter`` enforces the stream contract: exactly one terminal event,
nothing after it, and non-decreasing ``fetched`` within a stage.
"""

import json
import logging
import sys
import threading
from typing import Any, Callable, Dict, Optional, TextIO

from ..DEFAULT_CONSTS import DEFAULT_EVENT_KEYS

LOGGER = logging.getLogger(__name__)

Event = Dict[str, Any]
EventSink = Callable[[Event], None]

TERMINAL_TYPES = frozenset(
    {DEFAULT_EVENT_KEYS.done, DEFAULT_EVENT_KEYS.stopped, DEFAULT_EVENT_KEYS.error}
)


def percent_of(done: int, total: int) -> int:
    if total <= 0:
        return 100
    return max(0, min(100, round(100 * done / total)))


class NDJSONSink:
    """Write each event as one JSON line to ``stream`` (stdout by default)."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream if stream is not None else sys.stdout
        self._lock = threading.Lock()

    def __call__(self, event: Event) -> None:
        line = json.dumps(event, ensure_ascii=False)
        with self._lock:
            self.stream.write(line + "\n")
            self.stream.flush()


def parse_event_line(line: str) -> Optional[Event]:
    """Parse one stream line; None for blank, non-JSON or untyped lines."""
    line = line.strip()
    if not line:
        return None
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(event, dict) or "type" not in event:
        return None
    return event


def is_terminal(event: Event) -> bool:
    return event.get("type") in TERMINAL_TYPES


class EventEmitter:
    """
    Builds events for one job and forwards them to a sink.

    Parameters
    ----------
    sink : EventSink
        Receives every accepted event.
    """

    def __init__(self, sink: EventSink):
        self.sink = sink
        self._stage_progress: Dict[str, int] = {}
        self._terminal: Optional[Event] = None
        self._lock = threading.Lock()

    @property
    def terminated(self) -> bool:
        return self._terminal is not None

    @property
    def terminal_event(self) -> Optional[Event]:
        return self._terminal

    def _emit(self, event: Event) -> bool:
        with self._lock:
            if self._terminal is not None:
                LOGGER.debug(f"Dropping {event['type']} event after terminal event")
                return False
            if is_terminal(event):
                self._terminal = event
        self.sink(event)
        return True

    def progress(self, stage: str, fetched: int, total: int) -> bool:
        """Emit progress; regressions within a stage are dropped."""
        last = self._stage_progress.get(stage, -1)
        if fetched < last:
            LOGGER.debug(f"Dropping regressing progress for {stage}: {fetched} < {last}")
            return False
        self._stage_progress[stage] = fetched
        return self._emit(
            {
                "type": DEFAULT_EVENT_KEYS.progress,
                "stage": stage,
                "fetched": fetched,
                "total": total,
                "percent": percent_of(fetched, total),
            }
        )

    def result(self, item_id: int, **fields: Any) -> bool:
        event = {"type": DEFAULT_EVENT_KEYS.result, "id": item_id}
        event.update(fields)
        return self._emit(event)

    def error(self, message: str, code: str, detail: Optional[str] = None) -> bool:
        event = {"type": DEFAULT_EVENT_KEYS.error, "message": message, "code": code}
        if detail:
            event["detail"] = detail
        return self._emit(event)

    def done(self, **summary: Any) -> bool:
        event = {"type": DEFAULT_EVENT_KEYS.done}
        event.update(summary)
        return self._emit(event)

    def stopped(self, stage: Optional[str]) -> bool:
        return self._emit({"type": DEFAULT_EVENT_KEYS.stopped, "stage": stage})
