"""Tests for WorkerSupervisor using small Python child processes."""

import sys
import textwrap

import pytest

from keyword_grouping.pipeline.supervisor import WorkerSupervisor


class ScriptSupervisor(WorkerSupervisor):
    """Runs an inline script instead of the real worker command."""

    def __init__(self, script, on_event, **kwargs):
        super().__init__(1, "clustering", on_event, **kwargs)
        self.script = textwrap.dedent(script)

    def build_command(self):
        return [sys.executable, "-c", self.script]


class TestBuildCommand:
    """Command line of the child worker."""

    def test_flags(self):
        supervisor = WorkerSupervisor(
            7,
            "clustering",
            print,
            params={"algorithm": "dbscan", "eps": 0.3, "min_pts": 4, "threshold": None},
            config_path="pipeline.yaml",
            db_path="kw.db",
            python="python3",
        )
        assert supervisor.build_command() == [
            "python3", "-m", "keyword_grouping", "run",
            "--kind", "clustering", "--scope", "7",
            "--algorithm", "dbscan", "--eps", "0.3", "--min-pts", "4",
            "--config", "pipeline.yaml", "--db", "kw.db",
        ]

    def test_minimal(self):
        supervisor = WorkerSupervisor(1, "typing", print, python="py")
        assert supervisor.build_command() == [
            "py", "-m", "keyword_grouping", "run", "--kind", "typing", "--scope", "1"
        ]


class TestWorkerLifecycle:
    """Event relay, exit handling and cancellation."""

    def test_relays_events(self):
        events = []
        supervisor = ScriptSupervisor(
            """
            import json, sys
            print(json.dumps({"type": "progress", "stage": "embeddings", "fetched": 1, "total": 2, "percent": 50}))
            print("not an event")
            sys.stderr.write("log line\\n")
            print(json.dumps({"type": "result", "id": 3, "cluster_id": "cluster_1"}))
            print(json.dumps({"type": "done", "total": 2}))
            print(json.dumps({"type": "error", "message": "late", "code": "unknown"}))
            """,
            events.append,
        )
        supervisor.start()
        assert supervisor.wait(timeout=30) == 0
        assert [e["type"] for e in events] == ["progress", "result", "done"], (
            "Events after the terminal event must be ignored"
        )
        assert supervisor.terminal_event == {"type": "done", "total": 2}

    def test_crash_without_terminal_event(self):
        events = []
        supervisor = ScriptSupervisor("import sys; sys.exit(3)", events.append)
        supervisor.start()
        assert supervisor.wait(timeout=30) == 3
        assert events == [
            {
                "type": "error",
                "message": "Could not complete clustering",
                "code": "unknown",
                "detail": "Worker exited with code 3",
            }
        ]

    def test_cancel_synthesizes_stopped(self):
        events = []
        supervisor = ScriptSupervisor(
            "import time; time.sleep(60)", events.append, grace_period=5.0
        )
        supervisor.start()
        returncode = supervisor.cancel()
        assert returncode != 0
        assert events == [{"type": "stopped", "stage": None}]
        assert not supervisor.running

    def test_cannot_start_twice(self):
        supervisor = ScriptSupervisor("pass", lambda e: None)
        supervisor.start()
        with pytest.raises(RuntimeError, match="already started"):
            supervisor.start()
        supervisor.wait(timeout=30)

    def test_wait_before_start(self):
        with pytest.raises(RuntimeError, match="not started"):
            ScriptSupervisor("pass", lambda e: None).wait()

    def test_cancel_before_start(self):
        assert ScriptSupervisor("pass", lambda e: None).cancel() is None
