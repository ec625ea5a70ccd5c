"""End-to-end tests for PipelineOrchestrator against an in-memory store."""

import numpy as np
import pytest

from conftest import FakeEmbeddingModel, StatusError, no_sleep, vector_with_similarity
from keyword_grouping.clustering import ClusterIdGenerator
from keyword_grouping.config import PipelineConfig
from keyword_grouping.embeddings.cache import InMemoryEmbeddingCache
from keyword_grouping.embeddings.keyword_embedder import KeywordEmbedder
from keyword_grouping.embeddings.provider import EmbeddingProvider
from keyword_grouping.pipeline import (
    Job,
    JobKind,
    JobRegistry,
    JobState,
    PipelineOrchestrator,
    describe_error,
)
from keyword_grouping.errors import (
    ProviderError,
    RateLimited,
    StreamWriteError,
    ValidationError,
)
from keyword_grouping.storage import SQLiteKeywordStore
from keyword_grouping.utils.cancellation import CancellationToken

E = np.eye(8)

VECTORS = {
    "fruit": E[0],
    "tool": E[1],
    "apple": vector_with_similarity(E[0], 0.9, E[2]),
    "banana": vector_with_similarity(E[0], 0.8, E[3]),
    "hammer": vector_with_similarity(E[1], 0.85, E[4]),
    "acme": E[5],
    "globex": vector_with_similarity(E[5], 0.9, E[6]),
    "anvil": E[7],
    "rocket": vector_with_similarity(E[7], 0.9, E[6]),
    "acme corp": vector_with_similarity(E[5], 0.95, E[2]),
    "big anvil": vector_with_similarity(E[7], 0.95, E[2]),
    "k1": E[0],
    "k2": vector_with_similarity(E[0], 0.9, E[1]),
    "k3": E[2],
    "k4": vector_with_similarity(E[2], 0.85, E[3]),
    "k5": E[4],
}


@pytest.fixture
def store():
    with SQLiteKeywordStore(":memory:") as s:
        yield s


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def model():
    return FakeEmbeddingModel(vectors=VECTORS)


class Harness:
    def __init__(self, store, model, work_dir, registry=None, **config_overrides):
        settings = dict(
            work_dir=str(work_dir),
            inter_chunk_delay=0,
            chunk_size=2,
            page_size=2,
            cache_path=None,
            max_attempts=2,
        )
        settings.update(config_overrides)
        self.config = PipelineConfig(**settings)
        self.embedder = KeywordEmbedder(
            EmbeddingProvider(model=model, model_name="fake"),
            cache=InMemoryEmbeddingCache(),
            max_attempts=self.config.max_attempts,
            sleep=no_sleep,
        )
        self.events = []
        self.registry = registry or JobRegistry()
        self.orchestrator = PipelineOrchestrator(
            store,
            self.embedder,
            config=self.config,
            registry=self.registry,
            sink=self._sink,
            id_generator=ClusterIdGenerator(),
        )
        self.on_event = None

    def _sink(self, event):
        self.events.append(event)
        if self.on_event is not None:
            self.on_event(event)

    def run(self, kind, scope=1, params=None, token=None):
        return self.orchestrator.run(scope, kind, params, cancel_token=token)

    def of_type(self, event_type):
        return [e for e in self.events if e["type"] == event_type]


def assert_single_terminal(events):
    terminal = [e for e in events if e["type"] in ("done", "stopped", "error")]
    assert len(terminal) == 1, "Exactly one terminal event must be emitted"
    assert events[-1] is terminal[0], "Terminal event must be the last event"


def assert_monotonic_progress(events):
    last = {}
    for event in events:
        if event["type"] != "progress":
            continue
        assert event["fetched"] >= last.get(event["stage"], 0), "Progress must not regress"
        last[event["stage"]] = event["fetched"]


class TestCategorization:
    """Nearest-category assignment."""

    def test_assigns_categories(self, store, model, work_dir):
        store.add_categories(1, ["fruit", "tool"])
        ids = store.add_keywords(1, ["apple", "hammer", "banana"])
        harness = Harness(store, model, work_dir)

        outcome = harness.run("categorization")

        assert outcome.status == "done"
        assert outcome.job.state == JobState.DONE
        results = {e["id"]: e for e in harness.of_type("result")}
        assert results[ids[0]]["label"] == "fruit"
        assert results[ids[1]]["label"] == "tool"
        assert results[ids[2]]["label"] == "fruit"
        assert results[ids[2]]["similarity"] == pytest.approx(0.8)
        row = store.get_keyword(ids[1])
        assert row["category_name"] == "tool"
        assert row["category_similarity"] == pytest.approx(0.85)
        done = harness.events[-1]
        assert done["type"] == "done"
        assert (done["total"], done["embedded"], done["missing"], done["assigned"]) == (3, 3, 0, 3)
        assert_single_terminal(harness.events)
        assert_monotonic_progress(harness.events)

    def test_progress_stages(self, store, model, work_dir):
        store.add_categories(1, ["fruit", "tool"])
        store.add_keywords(1, ["apple", "hammer", "banana"])
        harness = Harness(store, model, work_dir)
        harness.run("categorization")

        stages = [e["stage"] for e in harness.of_type("progress")]
        assert stages[0] == "embeddings-reference"
        assert "embeddings" in stages
        assert stages[-1] == "categorization"
        final_embedding = [e for e in harness.of_type("progress") if e["stage"] == "embeddings"][-1]
        assert (final_embedding["fetched"], final_embedding["percent"]) == (3, 100)

    def test_needs_two_categories(self, store, model, work_dir):
        store.add_categories(1, ["Fruit", "fruit "])
        store.add_keywords(1, ["apple"])
        harness = Harness(store, model, work_dir)

        outcome = harness.run("categorization")

        assert outcome.status == "error"
        assert isinstance(outcome.error, ValidationError)
        assert harness.events == [
            {
                "type": "error",
                "message": "Categorization needs at least 2 categories, found 1",
                "code": "validation",
            }
        ]
        assert model.calls == [], "Validation failures must not reach the provider"

    def test_no_targets(self, store, model, work_dir):
        store.add_categories(1, ["fruit", "tool"])
        store.add_keywords(1, ["apple"], target=False)
        harness = Harness(store, model, work_dir)
        assert harness.run("categorization").status == "error"
        assert harness.events[-1]["code"] == "validation"

    def test_previous_results_cleared(self, store, model, work_dir):
        store.add_categories(1, ["fruit", "tool"])
        (item_id,) = store.add_keywords(1, ["apple"])
        store.write_assignment(item_id, "categorization", {"category_name": "stale"})
        store.flush()
        Harness(store, model, work_dir).run("categorization")
        assert store.get_keyword(item_id)["category_name"] == "fruit"


class TestTyping:
    """Class assignment from labelled samples."""

    def test_centroid_strategy(self, store, model, work_dir):
        store.add_typing_samples(
            1, [("brand", "acme"), ("brand", "globex"), ("product", "anvil"), ("product", "rocket")]
        )
        ids = store.add_keywords(1, ["acme corp", "big anvil"])
        harness = Harness(store, model, work_dir)

        outcome = harness.run("typing")

        assert outcome.status == "done"
        assert store.get_keyword(ids[0])["class_name"] == "brand"
        assert store.get_keyword(ids[1])["class_name"] == "product"
        assert 0.0 <= store.get_keyword(ids[0])["class_similarity"] <= 1.0
        assert_single_terminal(harness.events)

    def test_strategy_parameter(self, store, model, work_dir):
        store.add_typing_samples(1, [("brand", "acme"), ("product", "anvil")])
        ids = store.add_keywords(1, ["acme corp"])
        harness = Harness(store, model, work_dir)
        harness.run("typing", params={"strategy": "nearest"})
        assert store.get_keyword(ids[0])["class_name"] == "brand"

    def test_needs_two_classes(self, store, model, work_dir):
        store.add_typing_samples(1, [("brand", "acme"), ("Brand", "globex")])
        store.add_keywords(1, ["acme corp"])
        harness = Harness(store, model, work_dir)
        outcome = harness.run("typing")
        assert outcome.status == "error"
        assert harness.events[-1]["code"] == "validation"


class TestClustering:
    """Clustering jobs."""

    def _seed(self, store):
        return store.add_keywords(1, ["k1", "k2", "k3", "k4", "k5"])

    def test_components(self, store, model, work_dir):
        ids = self._seed(store)
        harness = Harness(store, model, work_dir)

        outcome = harness.run("clustering", params={"algorithm": "components", "threshold": 0.8})

        assert outcome.status == "done"
        labels = {e["id"]: e["cluster_id"] for e in harness.of_type("result")}
        assert labels == {
            ids[0]: "cluster_1",
            ids[1]: "cluster_1",
            ids[2]: "cluster_2",
            ids[3]: "cluster_2",
            ids[4]: "noise",
        }
        assert store.get_keyword(ids[4])["cluster_label"] == "noise"
        assert store.get_keyword(ids[0])["cluster_label"] == "cluster_1"
        done = harness.events[-1]
        assert done["clusters"] == 2
        assert done["assigned"] == 4
        assert_single_terminal(harness.events)
        assert_monotonic_progress(harness.events)

    def test_dbscan(self, store, model, work_dir):
        ids = self._seed(store)
        harness = Harness(store, model, work_dir)
        harness.run("clustering", params={"algorithm": "dbscan", "eps": 0.2, "min_pts": 2})
        labels = {e["id"]: e["cluster_id"] for e in harness.of_type("result")}
        assert labels[ids[4]] == "noise"
        assert labels[ids[0]] == labels[ids[1]] != labels[ids[2]]

    def test_config_defaults_used(self, store, model, work_dir):
        self._seed(store)
        harness = Harness(store, model, work_dir, clustering_threshold=0.99)
        harness.run("clustering")
        assert harness.events[-1]["clusters"] == 0
        assert {e["cluster_id"] for e in harness.of_type("result")} == {"noise"}

    def test_unknown_algorithm(self, store, model, work_dir):
        self._seed(store)
        harness = Harness(store, model, work_dir)
        outcome = harness.run("clustering", params={"algorithm": "kmeans"})
        assert outcome.status == "error"
        assert harness.events[-1]["message"] == "Unknown clustering algorithm: kmeans"


class TestLifecycle:
    """Cancellation, failures, cleanup and the registry."""

    def test_cancellation_during_embedding(self, store, model, work_dir):
        store.add_keywords(1, ["k1", "k2", "k3", "k4", "k5"])
        token = CancellationToken()
        harness = Harness(store, model, work_dir)

        def _cancel_on_progress(event):
            if event["type"] == "progress" and event["stage"] == "embeddings":
                token.cancel("user")

        harness.on_event = _cancel_on_progress
        outcome = harness.run("clustering", token=token)

        assert outcome.status == "stopped"
        assert outcome.job.cancelled is True
        assert harness.events[-1] == {"type": "stopped", "stage": "embeddings"}
        assert harness.of_type("result") == []
        assert model.calls == [], "No request may be sent after cancellation"
        assert_single_terminal(harness.events)

    def test_rate_limited(self, store, work_dir):
        store.add_keywords(1, ["k1", "k2", "k3"])
        model = FakeEmbeddingModel(fail_from=1, fail_with=StatusError("Too Many Requests", 429))
        harness = Harness(store, model, work_dir)

        outcome = harness.run("clustering")

        assert outcome.status == "error"
        assert isinstance(outcome.error, RateLimited)
        event = harness.events[-1]
        assert event["code"] == "rate_limited"
        assert "429" in event["message"]
        assert len(model.calls) == 2, "Retry budget must be respected"

    def test_provider_error_detail(self, store, work_dir):
        store.add_keywords(1, ["k1"])
        model = FakeEmbeddingModel(failures={1: StatusError("invalid api key", 401)})
        harness = Harness(store, model, work_dir)
        harness.run("clustering")
        event = harness.events[-1]
        assert event["message"] == "Could not complete clustering"
        assert event["code"] == "provider_error"
        assert "invalid api key" in event["detail"]

    def test_unexpected_error(self, store, model, work_dir):
        class BrokenStore(SQLiteKeywordStore):
            def page_items(self, scope, after_id, limit):
                raise RuntimeError("disk exploded")

        broken = BrokenStore(":memory:")
        broken.add_keywords(1, ["k1"])
        harness = Harness(broken, model, work_dir)

        outcome = harness.run("clustering")

        assert outcome.status == "error"
        assert harness.events[-1]["code"] == "unknown"
        assert harness.events[-1]["detail"] == "disk exploded"
        assert not harness.registry.is_active(1, "clustering")
        broken.close()

    def test_failed_clear_is_not_fatal(self, store, model, work_dir):
        class NoClearStore(SQLiteKeywordStore):
            def clear_prior_results(self, scope, kind):
                raise RuntimeError("read-only")

        no_clear = NoClearStore(":memory:")
        no_clear.add_keywords(1, ["k1", "k2"])
        outcome = Harness(no_clear, model, work_dir).run("clustering")
        assert outcome.status == "done"
        no_clear.close()

    @pytest.mark.parametrize("kind", ["categorization", "clustering"])
    def test_temp_dir_removed(self, store, model, work_dir, kind):
        store.add_categories(1, ["fruit", "tool"])
        store.add_keywords(1, ["apple", "hammer"])
        Harness(store, model, work_dir).run(kind)
        assert list(work_dir.iterdir()) == [], "Hand-off directory must be removed"

    def test_temp_dir_removed_on_error(self, store, work_dir):
        store.add_keywords(1, ["k1"])
        model = FakeEmbeddingModel(failures={1: StatusError("invalid api key", 401)})
        Harness(store, model, work_dir).run("clustering")
        assert list(work_dir.iterdir()) == []

    def test_rejected_when_slot_taken(self, store, model, work_dir):
        store.add_keywords(1, ["k1", "k2"])
        registry = JobRegistry()
        registry.start(1, "clustering")
        harness = Harness(store, model, work_dir, registry=registry)

        outcome = harness.run("clustering")

        assert outcome.status == "rejected"
        assert harness.events == [], "Rejected jobs must not emit events"

    def test_slot_released_after_run(self, store, model, work_dir):
        store.add_keywords(1, ["k1", "k2"])
        harness = Harness(store, model, work_dir)
        harness.run("clustering")
        assert harness.registry.active() == []
        assert harness.run("clustering").status == "done"


class TestJobStateMachine:
    """State transitions."""

    def test_happy_path(self):
        job = Job(1, JobKind.CLUSTERING)
        for state in (
            JobState.PREPARING,
            JobState.EMBEDDING_REFERENCE_SET,
            JobState.EMBEDDING_ITEMS,
            JobState.ALGORITHM,
            JobState.REPORTING,
            JobState.DONE,
        ):
            job.transition(state)
        assert job.state == JobState.DONE
        assert job.history[0] == JobState.IDLE

    def test_skipping_states_rejected(self):
        job = Job(1, JobKind.TYPING)
        with pytest.raises(ValueError, match="Invalid job transition"):
            job.transition(JobState.ALGORITHM)

    def test_no_cancel_after_done(self):
        job = Job(1, JobKind.TYPING, state=JobState.DONE)
        with pytest.raises(ValueError):
            job.transition(JobState.CANCELLED)

    def test_processed_never_decreases(self):
        job = Job(1, JobKind.TYPING)
        job.advance(3)
        with pytest.raises(ValueError):
            job.advance(-1)
        assert job.processed == 3


class TestDescribeError:
    """User-facing error descriptions."""

    def test_detail_truncated(self):
        described = describe_error("typing", RuntimeError("x" * 5000))
        assert described["message"] == "Could not complete typing"
        assert described["code"] == "unknown"
        assert len(described["detail"]) == 1024

    def test_stream_write_error_reports_size(self):
        described = describe_error("clustering", StreamWriteError("disk full", "/tmp/h.json", 4096))
        assert described["code"] == "stream_write_error"
        assert "estimated data size: 4096 bytes" in described["detail"]

    def test_provider_error(self):
        described = describe_error("categorization", ProviderError("bad gateway"))
        assert described["code"] == "provider_error"
