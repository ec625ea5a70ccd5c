"""Tests for the job registry and cancellation token."""

import threading

import pytest

from keyword_grouping.errors import Aborted, JobAlreadyRunning
from keyword_grouping.pipeline.registry import JobRegistry
from keyword_grouping.utils.cancellation import CancellationToken, check_cancelled


class TestJobRegistry:
    """One active job per (scope, kind)."""

    def test_second_start_rejected(self):
        registry = JobRegistry()
        registry.start(1, "clustering")
        with pytest.raises(JobAlreadyRunning):
            registry.start(1, "clustering")

    def test_different_kind_or_scope_allowed(self):
        registry = JobRegistry()
        registry.start(1, "clustering")
        registry.start(1, "typing")
        registry.start(2, "clustering")
        assert sorted(registry.active()) == [(1, "clustering"), (1, "typing"), (2, "clustering")]

    def test_release_frees_slot(self):
        registry = JobRegistry()
        handle = registry.start(1, "clustering")
        registry.release(handle)
        assert not registry.is_active(1, "clustering")
        registry.start(1, "clustering")

    def test_stale_release_keeps_new_owner(self):
        registry = JobRegistry()
        old = registry.start(1, "clustering")
        registry.release(old)
        registry.start(1, "clustering")
        registry.release(old)
        assert registry.is_active(1, "clustering"), "Old handle must not free a newer job"

    def test_cancel_sets_token(self):
        registry = JobRegistry()
        token = CancellationToken()
        registry.start(1, "typing", token)
        assert registry.cancel(1, "typing", "user") is True
        assert token.cancelled
        assert token.reason == "user"
        assert registry.cancel(1, "clustering") is False

    def test_shutdown_cancels_all(self):
        registry = JobRegistry()
        handles = [registry.start(scope, "clustering") for scope in range(3)]
        assert registry.shutdown() == 3
        assert all(h.token.cancelled for h in handles)

    def test_concurrent_claims_single_winner(self):
        registry = JobRegistry()
        wins = []
        barrier = threading.Barrier(8)

        def _claim():
            barrier.wait()
            try:
                registry.start(5, "categorization")
                wins.append(1)
            except JobAlreadyRunning:
                pass

        threads = [threading.Thread(target=_claim) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(wins) == 1


class TestCancellationToken:
    """Cooperative cancellation."""

    def test_first_reason_kept(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.reason == "first"

    def test_check_cancelled(self):
        check_cancelled(None)
        token = CancellationToken()
        check_cancelled(token, "stage")
        token.cancel()
        with pytest.raises(Aborted, match="at stage"):
            check_cancelled(token, "stage")

    def test_wait(self):
        token = CancellationToken()
        assert token.wait(0.01) is False
        token.cancel()
        assert token.wait(0.01) is True
