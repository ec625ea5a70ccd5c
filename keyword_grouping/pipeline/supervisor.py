"""
Supervision of a job running in a child process.

The child is ``python -m keyword_grouping run ...``; it writes NDJSON events
to stdout and logs to stderr. ``WorkerSupervisor`` owns the process: it parses
the event stream for a callback, forwards stderr to logging, and maps
cancellation to SIGTERM followed by a kill after a grace period.
"""

import logging
import subprocess
import sys
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..DEFAULT_CONSTS import DEFAULT_EVENT_KEYS
from .events import Event, is_terminal, parse_event_line

LOGGER = logging.getLogger(__name__)

# Command-line flag per run parameter.
_PARAM_FLAGS = {
    "algorithm": "--algorithm",
    "threshold": "--threshold",
    "eps": "--eps",
    "min_pts": "--min-pts",
    "strategy": "--strategy",
}


class WorkerSupervisor:
    """
    Run one job in a child process and relay its events.

    Parameters
    ----------
    scope : int
        Project to process.
    kind : str
        Job kind.
    on_event : Callable[[Event], None]
        Called from a reader thread for every parsed event.
    params : Optional[Mapping[str, Any]]
        Run parameters, passed as command-line flags.
    config_path, db_path : Optional[str]
        Forwarded to the child.
    grace_period : float
        Seconds between SIGTERM and kill on ``cancel``.
    python : str
        Interpreter for the child.
    env : Optional[Mapping[str, str]]
        Environment of the child; inherits the parent's when None.

    Examples
    --------
    >>> supervisor = WorkerSupervisor(3, "clustering", print, params={"threshold": 0.8})
    >>> supervisor.start()
    >>> supervisor.wait()
    0
    """

    def __init__(
        self,
        scope: int,
        kind: str,
        on_event: Callable[[Event], None],
        params: Optional[Mapping[str, Any]] = None,
        config_path: Optional[str] = None,
        db_path: Optional[str] = None,
        grace_period: float = 5.0,
        python: str = sys.executable,
        env: Optional[Mapping[str, str]] = None,
    ):
        self.scope = scope
        self.kind = kind
        self.on_event = on_event
        self.params = dict(params or {})
        self.config_path = config_path
        self.db_path = db_path
        self.grace_period = grace_period
        self.python = python
        self.env = dict(env) if env is not None else None

        self.process: Optional[subprocess.Popen] = None
        self.terminal_event: Optional[Event] = None
        self._threads: List[threading.Thread] = []
        self._cancel_requested = False
        self._lock = threading.Lock()

    def build_command(self) -> List[str]:
        cmd = [
            self.python,
            "-m",
            "keyword_grouping",
            "run",
            "--kind",
            self.kind,
            "--scope",
            str(self.scope),
        ]
        for name, flag in _PARAM_FLAGS.items():
            value = self.params.get(name)
            if value is not None:
                cmd.extend([flag, str(value)])
        if self.config_path:
            cmd.extend(["--config", str(self.config_path)])
        if self.db_path:
            cmd.extend(["--db", str(self.db_path)])
        return cmd

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def start(self) -> None:
        """Spawn the child and start the stream reader threads."""
        if self.process is not None:
            raise RuntimeError("Worker already started")
        cmd = self.build_command()
        LOGGER.info(f"Starting {self.kind} worker for scope {self.scope}: {' '.join(cmd)}")
        self.process = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            bufsize=1,
            env=self.env,
        )
        for target, name in ((self._read_stdout, "stdout"), (self._read_stderr, "stderr")):
            thread = threading.Thread(
                target=target, name=f"worker-{self.kind}-{self.scope}-{name}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def _deliver(self, event: Event) -> None:
        with self._lock:
            if self.terminal_event is not None:
                LOGGER.debug(f"Ignoring {event.get('type')} event after terminal event")
                return
            if is_terminal(event):
                self.terminal_event = event
        self.on_event(event)

    def _read_stdout(self) -> None:
        for line in self.process.stdout:
            event = parse_event_line(line)
            if event is None:
                if line.strip():
                    LOGGER.debug(f"[worker {self.kind}/{self.scope}] {line.rstrip()}")
                continue
            self._deliver(event)

    def _read_stderr(self) -> None:
        for line in self.process.stderr:
            if line.strip():
                LOGGER.debug(f"[worker {self.kind}/{self.scope}] {line.rstrip()}")

    def cancel(self) -> Optional[int]:
        """
        Ask the child to stop and wait for it to exit.

        Sends SIGTERM, which the child turns into cooperative cancellation;
        kills it if it is still alive after ``grace_period``.

        Returns
        -------
        Optional[int]
            Exit code, or None if the worker was never started.
        """
        if self.process is None:
            return None
        self._cancel_requested = True
        if self.process.poll() is None:
            LOGGER.info(f"Terminating {self.kind} worker for scope {self.scope}")
            self.process.terminate()
            try:
                self.process.wait(timeout=self.grace_period)
            except subprocess.TimeoutExpired:
                LOGGER.warning(
                    f"Worker for scope {self.scope} did not exit within "
                    f"{self.grace_period}s; killing it"
                )
                self.process.kill()
        return self.wait()

    def wait(self, timeout: Optional[float] = None) -> int:
        """
        Wait for the child to exit and its streams to drain.

        A child that exits without a terminal event is reported through a
        synthesized ``stopped`` (after ``cancel``) or ``error`` event.

        Raises
        ------
        subprocess.TimeoutExpired
            If the child is still running after ``timeout``.
        """
        if self.process is None:
            raise RuntimeError("Worker not started")
        returncode = self.process.wait(timeout=timeout)
        for thread in self._threads:
            thread.join()
        if self.terminal_event is None:
            self._deliver(self._synthesized_terminal(returncode))
        LOGGER.info(f"{self.kind} worker for scope {self.scope} exited with code {returncode}")
        return returncode

    def _synthesized_terminal(self, returncode: int) -> Dict[str, Any]:
        if self._cancel_requested:
            return {"type": DEFAULT_EVENT_KEYS.stopped, "stage": None}
        return {
            "type": DEFAULT_EVENT_KEYS.error,
            "message": f"Could not complete {self.kind}",
            "code": "unknown",
            "detail": f"Worker exited with code {returncode}",
        }
