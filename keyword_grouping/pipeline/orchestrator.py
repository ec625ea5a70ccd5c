"""
Job orchestration for categorization, typing and clustering.

A job walks through these states::

    IDLE -> PREPARING -> EMBEDDING_REFERENCE_SET -> EMBEDDING_ITEMS
         -> ALGORITHM -> REPORTING -> DONE

``CANCELLED`` is reachable from every non-terminal state and ``ERRORED`` from
every state. Keywords are paged from storage, embedded and streamed to a
hand-off file in a per-job temporary directory; the algorithm stage reads the
hand-off back. The directory is removed and the registry slot released on
every exit path, before exactly one terminal event is emitted.
"""

import logging
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from ..DEFAULT_CONSTS import (
    DEFAULT_HANDOFF_KEYS,
    DEFAULT_STAGES,
    MAX_ERROR_DETAIL_CHARS,
    NOISE_LABEL,
)
from ..clustering.cluster_components import (
    ClusterIdGenerator,
    assign_cluster_labels,
    build_components,
    build_dbscan,
)
from ..clustering.reference_classifier import ReferenceClassifier
from ..config import CLUSTERING_ALGORITHMS, PipelineConfig
from ..embeddings.cache import (
    EmbeddingCache,
    InMemoryEmbeddingCache,
    SQLiteEmbeddingCache,
)
from ..embeddings.io import (
    JsonArraysWriter,
    JsonLinesWriter,
    iter_pages,
    read_handoff,
)
from ..embeddings.keyword_embedder import FetchProgress, KeywordEmbedder
from ..embeddings.provider import EmbeddingProvider
from ..errors import (
    Aborted,
    CacheUnavailable,
    JobAlreadyRunning,
    PipelineError,
    ProviderError,
    RateLimited,
    StreamWriteError,
    ValidationError,
)
from ..records import KeywordItem, ReferenceEntry
from ..storage.keyword_store import KeywordStore
from ..utils.cancellation import CancellationToken, check_cancelled
from ..utils.text_utils import normalize_cache_key
from .events import EventEmitter, EventSink, NDJSONSink
from .registry import JobRegistry

LOGGER = logging.getLogger(__name__)


class JobKind(str, Enum):
    CATEGORIZATION = "categorization"
    TYPING = "typing"
    CLUSTERING = "clustering"


class JobState(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    EMBEDDING_REFERENCE_SET = "embedding_reference_set"
    EMBEDDING_ITEMS = "embedding_items"
    ALGORITHM = "algorithm"
    REPORTING = "reporting"
    DONE = "done"
    CANCELLED = "cancelled"
    ERRORED = "errored"


_SEQUENCE = [
    JobState.IDLE,
    JobState.PREPARING,
    JobState.EMBEDDING_REFERENCE_SET,
    JobState.EMBEDDING_ITEMS,
    JobState.ALGORITHM,
    JobState.REPORTING,
    JobState.DONE,
]
TERMINAL_STATES = frozenset({JobState.DONE, JobState.CANCELLED, JobState.ERRORED})


@dataclass
class Job:
    """Progress and state of one run."""

    scope: int
    kind: JobKind
    total: int = 0
    processed: int = 0
    cancelled: bool = False
    state: JobState = JobState.IDLE
    stage: Optional[str] = None
    history: List[JobState] = field(default_factory=list)

    def transition(self, new_state: JobState) -> None:
        """
        Move to ``new_state``.

        Raises
        ------
        ValueError
            If the transition is not allowed.
        """
        current = self.state
        if new_state == JobState.ERRORED:
            allowed = current != JobState.ERRORED
        elif new_state == JobState.CANCELLED:
            allowed = current not in TERMINAL_STATES
        else:
            allowed = (
                current in _SEQUENCE
                and _SEQUENCE.index(new_state) == _SEQUENCE.index(current) + 1
            )
        if not allowed:
            raise ValueError(f"Invalid job transition {current.value} -> {new_state.value}")
        self.history.append(current)
        self.state = new_state
        LOGGER.debug(f"Job {self.kind.value}/{self.scope}: {current.value} -> {new_state.value}")

    def advance(self, count: int) -> None:
        """Add ``count`` processed items; negative counts are rejected."""
        if count < 0:
            raise ValueError(f"processed count cannot decrease (got {count})")
        self.processed += count


@dataclass
class JobOutcome:
    """
    Result of :meth:`PipelineOrchestrator.run`.

    ``status`` is "done", "stopped", "error" or "rejected" (the slot for
    this scope and kind was taken; nothing was emitted).
    """

    status: str
    job: Optional[Job]
    error: Optional[BaseException] = None
    summary: Dict[str, Any] = field(default_factory=dict)


def describe_error(kind: str, error: BaseException) -> Dict[str, Optional[str]]:
    """
    User-facing ``message``/``code``/``detail`` for a failed job.

    Validation and rate-limit failures get specific messages; everything else
    a generic one plus a truncated technical detail.
    """
    if isinstance(error, ValidationError):
        return {"message": str(error), "code": error.code, "detail": None}
    if isinstance(error, RateLimited):
        return {
            "message": "The embedding provider is rate limiting requests (HTTP 429). "
            "Please try again later.",
            "code": error.code,
            "detail": None,
        }
    detail = str(error) or error.__class__.__name__
    if isinstance(error, StreamWriteError):
        detail = f"{detail} (estimated data size: {error.bytes_written} bytes)"
    code = error.code if isinstance(error, PipelineError) else "unknown"
    return {
        "message": f"Could not complete {kind}",
        "code": code,
        "detail": detail[:MAX_ERROR_DETAIL_CHARS],
    }


def _dedupe_references(entries: List[ReferenceEntry]) -> List[ReferenceEntry]:
    seen = set()
    unique = []
    for entry in entries:
        key = normalize_cache_key(entry.label)
        if key not in seen:
            seen.add(key)
            unique.append(entry)
    return unique


class PipelineOrchestrator:
    """
    Runs one job at a time per (scope, kind) against a keyword store.

    Parameters
    ----------
    store : KeywordStore
        Source of keywords and reference sets, sink of assignments.
    embedder : KeywordEmbedder
        Cache-aware batch embedder.
    config : Optional[PipelineConfig]
        Defaults for chunking, paging and algorithm parameters.
    registry : Optional[JobRegistry]
        Shared registry of active jobs; a private one is created when None.
    sink : Optional[EventSink]
        Receives events; defaults to NDJSON on stdout.
    id_generator : Optional[ClusterIdGenerator]
        Cluster id source for clustering jobs.
    """

    def __init__(
        self,
        store: KeywordStore,
        embedder: KeywordEmbedder,
        config: Optional[PipelineConfig] = None,
        registry: Optional[JobRegistry] = None,
        sink: Optional[EventSink] = None,
        id_generator: Optional[ClusterIdGenerator] = None,
    ):
        self.store = store
        self.embedder = embedder
        self.config = config or PipelineConfig()
        self.registry = registry or JobRegistry()
        self.sink = sink or NDJSONSink()
        self.id_generator = id_generator

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        store: KeywordStore,
        model: Optional[Any] = None,
        registry: Optional[JobRegistry] = None,
        sink: Optional[EventSink] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "PipelineOrchestrator":
        """Wire provider, cache and embedder from ``config``."""
        provider = EmbeddingProvider(
            model=model,
            model_name=config.embedding_model,
            request_timeout=config.request_timeout,
        )
        embedder = KeywordEmbedder(
            provider,
            cache=open_cache(config.cache_path),
            max_attempts=config.max_attempts,
            backoff_multiplier=config.backoff_multiplier,
            backoff_max=config.backoff_max,
            sleep=sleep,
        )
        return cls(store, embedder, config=config, registry=registry, sink=sink)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(
        self,
        scope: int,
        kind: str,
        params: Optional[Mapping[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> JobOutcome:
        """
        Run one job to completion, cancellation or failure.

        Parameters
        ----------
        scope : int
            Project whose keywords are processed.
        kind : str
            "categorization", "typing" or "clustering".
        params : Optional[Mapping[str, Any]]
            Per-run overrides: ``algorithm``, ``threshold``, ``eps``,
            ``min_pts`` (clustering) and ``strategy`` (typing).
        cancel_token : Optional[CancellationToken]
            Cooperative cancellation; a fresh token is used when None.

        Returns
        -------
        JobOutcome
            Final status. Errors never propagate out of this method; they are
            reported through a terminal ``error`` event.
        """
        kind = JobKind(kind)
        token = cancel_token or CancellationToken()
        try:
            handle = self.registry.start(scope, kind.value, token)
        except JobAlreadyRunning as e:
            LOGGER.warning(str(e))
            return JobOutcome("rejected", None, e)

        job = Job(scope, kind)
        events = EventEmitter(self.sink)
        work_dir: Optional[Path] = None
        try:
            work_dir = Path(
                tempfile.mkdtemp(prefix=f"{kind.value}-{scope}-", dir=self.config.work_dir)
            )
            summary = self._execute(job, dict(params or {}), token, events, work_dir)
            job.transition(JobState.DONE)
            outcome = JobOutcome("done", job, None, summary)
        except Aborted as e:
            job.cancelled = True
            job.transition(JobState.CANCELLED)
            LOGGER.info(f"{kind.value} job for scope {scope} stopped at {job.stage}: {e}")
            outcome = JobOutcome("stopped", job, e)
        except PipelineError as e:
            job.transition(JobState.ERRORED)
            LOGGER.error(f"{kind.value} job for scope {scope} failed ({e.code}): {e}")
            outcome = JobOutcome("error", job, e)
        except Exception as e:
            job.transition(JobState.ERRORED)
            LOGGER.exception(f"{kind.value} job for scope {scope} failed unexpectedly")
            outcome = JobOutcome("error", job, e)
        finally:
            self._cleanup(work_dir)
            self.registry.release(handle)

        self._emit_terminal(events, outcome)
        return outcome

    def _emit_terminal(self, events: EventEmitter, outcome: JobOutcome) -> None:
        if outcome.status == "done":
            events.done(**outcome.summary)
        elif outcome.status == "stopped":
            events.stopped(outcome.job.stage)
        else:
            events.error(**describe_error(outcome.job.kind.value, outcome.error))

    @staticmethod
    def _cleanup(work_dir: Optional[Path]) -> None:
        if work_dir is None:
            return
        try:
            shutil.rmtree(work_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            LOGGER.warning(f"Failed to remove temporary directory {work_dir}: {e}")

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _execute(
        self,
        job: Job,
        params: Dict[str, Any],
        token: CancellationToken,
        events: EventEmitter,
        work_dir: Path,
    ) -> Dict[str, Any]:
        job.transition(JobState.PREPARING)
        job.stage = "preparing"
        references = self._prepare(job)
        check_cancelled(token, "preparing")

        job.transition(JobState.EMBEDDING_REFERENCE_SET)
        if references:
            job.stage = DEFAULT_STAGES.reference
            self._embed_references(references, token, events)

        job.transition(JobState.EMBEDDING_ITEMS)
        job.stage = DEFAULT_STAGES.items
        check_cancelled(token, job.stage)
        handoff_path, handoff_key, embedded, missing = self._stream_items(
            job, references, token, events, work_dir
        )
        if embedded == 0:
            raise ProviderError(
                f"No embeddings could be prepared for {job.total} keywords",
                retryable=False,
            )

        job.transition(JobState.ALGORITHM)
        job.stage = getattr(DEFAULT_STAGES, job.kind.value)
        check_cancelled(token, "algorithm")
        summary: Dict[str, Any] = {
            "kind": job.kind.value,
            "scope": job.scope,
            "total": job.total,
            "embedded": embedded,
            "missing": missing,
        }
        if job.kind == JobKind.CLUSTERING:
            labels, n_clusters = self._cluster(handoff_path, params)
            summary["clusters"] = n_clusters
            job.transition(JobState.REPORTING)
            summary["assigned"] = self._report_clusters(
                job, handoff_path, labels, token, events
            )
        else:
            classifier = self._build_classifier(job.kind, references, params)
            job.transition(JobState.REPORTING)
            summary["assigned"] = self._report_classification(
                job, classifier, handoff_path, handoff_key, token, events
            )
        LOGGER.info(f"{job.kind.value} job for scope {job.scope} finished: {summary}")
        return summary

    def _prepare(self, job: Job) -> List[ReferenceEntry]:
        """Validate preconditions, clear stale results, load the reference set."""
        scope, kind = job.scope, job.kind
        references: List[ReferenceEntry] = []
        if kind == JobKind.CATEGORIZATION:
            references = _dedupe_references(self.store.list_categories(scope))
            if len(references) < 2:
                raise ValidationError(
                    f"Categorization needs at least 2 categories, found {len(references)}"
                )
        elif kind == JobKind.TYPING:
            references = self.store.list_typing_samples(scope)
            labels = {normalize_cache_key(ref.label) for ref in references}
            if len(labels) < 2:
                raise ValidationError(
                    f"Typing needs samples of at least 2 distinct classes, found {len(labels)}"
                )

        job.total = self.store.count_targets(scope)
        if job.total == 0:
            raise ValidationError(f"No target keywords found for project {scope}")

        try:
            self.store.clear_prior_results(scope, kind.value)
        except Exception as e:
            LOGGER.warning(f"Failed to clear previous {kind.value} results: {e}")
        return references

    def _embed_references(
        self,
        references: List[ReferenceEntry],
        token: CancellationToken,
        events: EventEmitter,
    ) -> None:
        stage = DEFAULT_STAGES.reference

        def _on_progress(p: FetchProgress) -> None:
            events.progress(stage, p.fetched, p.total)

        stats = self.embedder.attach_embeddings(
            references,
            chunk_size=self.config.chunk_size,
            inter_chunk_delay=self.config.inter_chunk_delay,
            cancel_token=token,
            on_progress=_on_progress,
        )
        LOGGER.info(
            f"Reference set: {stats.embedded}/{stats.total} embedded, {stats.missing} missing"
        )

    def _stream_items(
        self,
        job: Job,
        references: List[ReferenceEntry],
        token: CancellationToken,
        events: EventEmitter,
        work_dir: Path,
    ):
        """Page keywords from storage, embed them and write the hand-off file."""
        stage = DEFAULT_STAGES.items
        embedded = 0
        missing = 0
        if job.kind == JobKind.CATEGORIZATION:
            path = work_dir / "handoff.json"
            key = DEFAULT_HANDOFF_KEYS.items
            writer = JsonArraysWriter(path)
        else:
            path = work_dir / "handoff.jsonl"
            key = None
            writer = JsonLinesWriter(path)

        with writer:
            if job.kind == JobKind.CATEGORIZATION:
                writer.write_array(DEFAULT_HANDOFF_KEYS.references, references)
                writer.open_array(key)

            def _fetch_page(after_id, limit):
                return self.store.page_items(job.scope, after_id, limit)

            for page in iter_pages(_fetch_page, self.config.page_size):
                check_cancelled(token, stage)
                base = job.processed

                def _on_progress(p: FetchProgress, base=base) -> None:
                    events.progress(stage, base + p.fetched, job.total)

                stats = self.embedder.attach_embeddings(
                    page,
                    chunk_size=self.config.chunk_size,
                    inter_chunk_delay=self.config.inter_chunk_delay,
                    cancel_token=token,
                    on_progress=_on_progress,
                )
                embedded += stats.embedded
                missing += stats.missing
                for item in page:
                    writer.write_item(item)
                job.advance(len(page))

        LOGGER.info(
            f"Streamed {job.processed} keywords to {path} "
            f"({writer.bytes_written} bytes, {missing} without embedding)"
        )
        return path, key, embedded, missing

    def _build_classifier(
        self,
        kind: JobKind,
        references: List[ReferenceEntry],
        params: Dict[str, Any],
    ) -> ReferenceClassifier:
        if kind == JobKind.CATEGORIZATION:
            strategy = "nearest"
        else:
            strategy = params.get("strategy") or self.config.typing_strategy
        return ReferenceClassifier(references, strategy=strategy)

    def _iter_handoff_pages(
        self, path: Path, key: Optional[str]
    ) -> Iterator[List[KeywordItem]]:
        page: List[KeywordItem] = []
        for record in read_handoff(path, key):
            try:
                page.append(KeywordItem.from_record(record))
            except ValueError as e:
                LOGGER.warning(f"Skipping hand-off record: {e}")
                continue
            if len(page) >= self.config.page_size:
                yield page
                page = []
        if page:
            yield page

    def _report_classification(
        self,
        job: Job,
        classifier: ReferenceClassifier,
        path: Path,
        key: Optional[str],
        token: CancellationToken,
        events: EventEmitter,
    ) -> int:
        kind = job.kind.value
        stage = job.stage
        done = 0
        assigned = 0
        for page in self._iter_handoff_pages(path, key):
            check_cancelled(token, stage)
            for assignment in classifier.classify(page):
                self.store.write_assignment(
                    assignment.item_id, kind, assignment.to_fields(kind)
                )
                events.result(
                    assignment.item_id,
                    label=assignment.label,
                    similarity=assignment.similarity,
                )
                if assignment.label is not None:
                    assigned += 1
            self.store.flush()
            done += len(page)
            events.progress(stage, done, job.total)
        return assigned

    def _cluster(self, path: Path, params: Dict[str, Any]):
        items = [
            item for page in self._iter_handoff_pages(path, None) for item in page
        ]
        algorithm = params.get("algorithm") or self.config.clustering_algorithm
        if algorithm not in CLUSTERING_ALGORITHMS:
            raise ValidationError(f"Unknown clustering algorithm: {algorithm}")
        if algorithm == "components":
            threshold = params.get("threshold")
            if threshold is None:
                threshold = self.config.clustering_threshold
            clusters = build_components(items, float(threshold), self.id_generator)
        else:
            eps = params.get("eps")
            if eps is None:
                eps = self.config.dbscan_eps
            min_pts = params.get("min_pts") or self.config.dbscan_min_pts
            clusters = build_dbscan(items, float(eps), int(min_pts), self.id_generator)
        return assign_cluster_labels(clusters), len(clusters)

    def _report_clusters(
        self,
        job: Job,
        path: Path,
        labels: Dict[int, str],
        token: CancellationToken,
        events: EventEmitter,
    ) -> int:
        stage = job.stage
        done = 0
        for page in self._iter_handoff_pages(path, None):
            check_cancelled(token, stage)
            for item in page:
                label = labels.get(item.id, NOISE_LABEL)
                self.store.write_assignment(item.id, "clustering", {"cluster_label": label})
                events.result(item.id, cluster_id=label)
            self.store.flush()
            done += len(page)
            events.progress(stage, done, job.total)
        return len(labels)


def open_cache(cache_path: Optional[str]) -> Optional[EmbeddingCache]:
    """Open the configured cache; an unavailable backend degrades to none."""
    if not cache_path:
        return InMemoryEmbeddingCache()
    try:
        return SQLiteEmbeddingCache(cache_path)
    except CacheUnavailable as e:
        LOGGER.warning(f"Embedding cache unavailable, continuing without it: {e}")
        return None


__all__ = [
    "Job",
    "JobKind",
    "JobOutcome",
    "JobState",
    "PipelineOrchestrator",
    "describe_error",
    "open_cache",
]
