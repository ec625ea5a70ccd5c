"""
Job pipeline: orchestration, event stream, job registry and worker supervision.

Recommended usage:
    from keyword_grouping.pipeline import PipelineOrchestrator, JobRegistry
"""

from .events import EventEmitter, NDJSONSink, parse_event_line
from .orchestrator import (
    Job,
    JobKind,
    JobOutcome,
    JobState,
    PipelineOrchestrator,
    describe_error,
    open_cache,
)
from .registry import JobHandle, JobRegistry
from .supervisor import WorkerSupervisor

__all__ = [
    "EventEmitter",
    "NDJSONSink",
    "parse_event_line",
    "Job",
    "JobKind",
    "JobOutcome",
    "JobState",
    "PipelineOrchestrator",
    "describe_error",
    "open_cache",
    "JobHandle",
    "JobRegistry",
    "WorkerSupervisor",
]
