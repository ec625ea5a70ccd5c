"""
KeywordEmbedder class for batch embedding of keyword items.

This module attaches embeddings to large item collections:
- Consulting the embedding cache first, so cached texts cost no provider call
- Fetching only cache misses, in bounded chunks submitted sequentially
- Retrying rate limits and transient failures with exponential backoff and jitter
- Reporting cumulative progress and honoring cooperative cancellation

Items are any objects with ``text``, ``embedding`` and ``embedding_source``
attributes (``KeywordItem`` and ``ReferenceEntry``). They are mutated in place;
order and length of the input list never change.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from ..DEFAULT_CONSTS import DEFAULT_CHUNK_SIZE, DEFAULT_INTER_CHUNK_DELAY
from ..errors import Aborted, CacheUnavailable, ProviderError
from ..utils.cancellation import CancellationToken, check_cancelled
from ..utils.text_utils import is_empty_text, normalize_cache_key
from .cache import EmbeddingCache
from .provider import EmbeddingProvider

LOGGER = logging.getLogger(__name__)


@dataclass
class EmbeddingStats:
    """Counts reported by :meth:`KeywordEmbedder.attach_embeddings`.

    ``embedded`` counts items holding a vector afterwards, ``fetched`` those
    filled by the provider during this call, ``missing`` the rest.
    """

    total: int = 0
    embedded: int = 0
    fetched: int = 0
    missing: int = 0


@dataclass
class FetchProgress:
    """Cumulative progress after a chunk: items resolved out of ``total``."""

    fetched: int
    total: int
    percent: int


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


class KeywordEmbedder:
    """
    Class for cache-aware batch embedding.

    Parameters
    ----------
    provider : EmbeddingProvider
        Source of vectors for cache misses.
    cache : Optional[EmbeddingCache]
        Cache consulted before the provider. ``None`` disables caching.
    max_attempts : int
        Attempts per chunk, first call included.
    backoff_multiplier : float
        Base of the exponential backoff, in seconds.
    backoff_max : float
        Upper bound of a single backoff wait, in seconds.
    sleep : Callable[[float], None]
        Used for backoff waits and the inter-chunk delay.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        cache: Optional[EmbeddingCache] = None,
        max_attempts: int = 4,
        backoff_multiplier: float = 1.0,
        backoff_max: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.provider = provider
        self.cache = cache
        self.max_attempts = max_attempts
        self.backoff_multiplier = backoff_multiplier
        self.backoff_max = backoff_max
        self._sleep = sleep
        self._cache_warned = False

    @property
    def model_name(self) -> str:
        return self.provider.model_name

    def _cache_failed(self, error: CacheUnavailable) -> None:
        # a failing lookup or write counts as a miss; warn once per call
        if not self._cache_warned:
            LOGGER.warning(f"Embedding cache unavailable, treating as miss: {error}")
            self._cache_warned = True
        else:
            LOGGER.debug(f"Embedding cache still unavailable: {error}")

    def _cache_get(self, key: str) -> Optional[np.ndarray]:
        if self.cache is None:
            return None
        try:
            return self.cache.get(key, self.model_name)
        except CacheUnavailable as e:
            self._cache_failed(e)
            return None

    def _cache_put(self, key: str, vector: np.ndarray) -> None:
        if self.cache is None:
            return
        try:
            self.cache.put(key, self.model_name, vector)
        except CacheUnavailable as e:
            self._cache_failed(e)
        except ValueError as e:
            LOGGER.warning(f"Not caching vector for '{key[:50]}': {e}")

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        LOGGER.warning(
            f"Embedding request failed (attempt {retry_state.attempt_number}/"
            f"{self.max_attempts}): {exc!r}; retrying in {delay:.2f}s"
        )

    def _fetch_chunk(
        self, texts: List[str], cancel_token: Optional[CancellationToken]
    ) -> List[np.ndarray]:
        """Call the provider for one chunk under the retry policy."""
        retrying = Retrying(
            retry=retry_if_exception(_is_retryable),
            wait=wait_random_exponential(
                multiplier=self.backoff_multiplier, max=self.backoff_max
            ),
            stop=stop_after_attempt(self.max_attempts),
            sleep=self._sleep,
            reraise=True,
            before_sleep=self._before_sleep,
        )

        def _call() -> List[np.ndarray]:
            check_cancelled(cancel_token, "embedding request")
            return self.provider.embed(texts)

        return retrying(_call)

    def attach_embeddings(
        self,
        items: Sequence,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        inter_chunk_delay: float = DEFAULT_INTER_CHUNK_DELAY,
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[Callable[[FetchProgress], None]] = None,
    ) -> EmbeddingStats:
        """
        Attach an embedding to every item, fetching cache misses in chunks.

        Parameters
        ----------
        items : Sequence
            Items with ``text``/``embedding``/``embedding_source`` attributes.
            Items that already hold an embedding are left untouched.
        chunk_size : int
            Maximum number of distinct texts per provider request.
        inter_chunk_delay : float
            Seconds to wait between chunks; not applied after the last one.
        cancel_token : Optional[CancellationToken]
            Polled before each chunk and before each retry attempt.
        on_progress : Optional[Callable[[FetchProgress], None]]
            Called after the cache pass and after each chunk with cumulative
            counts.

        Returns
        -------
        EmbeddingStats
            Final counts.

        Raises
        ------
        RateLimited, ProviderError
            Retry budget exhausted, or a non-retryable failure. ``stats`` on
            the exception holds partial counts; earlier chunks stay attached.
        Aborted
            Cancellation observed; ``stats`` holds partial counts.

        Examples
        --------
        >>> embedder = KeywordEmbedder(EmbeddingProvider(model), cache)
        >>> stats = embedder.attach_embeddings(items, chunk_size=64)
        >>> stats.missing
        0
        """
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")

        self._cache_warned = False
        stats = EmbeddingStats(total=len(items))
        # normalized text -> positions of items that still need it
        pending: Dict[str, List[int]] = {}

        for idx, item in enumerate(items):
            if item.embedding is not None and len(item.embedding) > 0:
                stats.embedded += 1
                continue
            if is_empty_text(item.text):
                continue
            key = normalize_cache_key(item.text)
            if key in pending:
                pending[key].append(idx)
                continue
            cached = self._cache_get(key)
            if cached is not None:
                item.embedding = cached
                item.embedding_source = "cache"
                stats.embedded += 1
            else:
                pending[key] = [idx]

        miss_keys = list(pending.keys())
        cache_hits = stats.embedded
        LOGGER.info(
            f"Embedding {stats.total} items: {cache_hits} already resolved, "
            f"{len(miss_keys)} distinct texts to fetch with model {self.model_name}"
        )

        def _report():
            if on_progress is None:
                return
            percent = 100 if stats.total == 0 else round(100 * stats.embedded / stats.total)
            on_progress(FetchProgress(stats.embedded, stats.total, percent))

        _report()

        chunks = [
            miss_keys[start : start + chunk_size]
            for start in range(0, len(miss_keys), chunk_size)
        ]
        try:
            for chunk_no, chunk in enumerate(chunks):
                check_cancelled(cancel_token, f"chunk {chunk_no + 1}/{len(chunks)}")
                texts = [items[pending[key][0]].text for key in chunk]
                LOGGER.debug(
                    f"Requesting chunk {chunk_no + 1}/{len(chunks)} ({len(texts)} texts)"
                )
                vectors = self._fetch_chunk(texts, cancel_token)
                for key, vector in zip(chunk, vectors):
                    if vector.size == 0:
                        LOGGER.warning(f"Provider returned an empty vector for '{key[:50]}'")
                        continue
                    for idx in pending[key]:
                        items[idx].embedding = vector.copy()
                        items[idx].embedding_source = "provider"
                        stats.embedded += 1
                        stats.fetched += 1
                    self._cache_put(key, vector)
                _report()
                if chunk_no < len(chunks) - 1 and inter_chunk_delay > 0:
                    self._sleep(inter_chunk_delay)
        except (ProviderError, Aborted) as e:
            stats.missing = stats.total - stats.embedded
            e.stats = stats
            LOGGER.warning(
                f"Embedding stopped ({e.code}): {stats.embedded}/{stats.total} "
                f"embedded, {stats.missing} missing"
            )
            raise

        stats.missing = stats.total - stats.embedded
        LOGGER.info(
            f"Embedded {stats.embedded}/{stats.total} items "
            f"({stats.fetched} from provider, {stats.missing} missing)"
        )
        return stats

    def create_embeddings(self, str_list: List[str], **kwargs) -> Dict[str, np.ndarray]:
        """
        Create embeddings for a list of strings.

        Convenience wrapper over :meth:`attach_embeddings` for plain strings.

        Returns
        -------
        Dict[str, np.ndarray]
            Mapping of each distinct string to its vector; strings that could
            not be embedded are absent.

        Raises
        ------
        ValueError
            If string list is empty
        """
        if not str_list:
            raise ValueError("String list cannot be empty")

        unique_strs = list(dict.fromkeys(str_list))
        holders = [_TextHolder(s) for s in unique_strs]
        self.attach_embeddings(holders, **kwargs)
        return {h.text: h.embedding for h in holders if h.embedding is not None}


class _TextHolder:
    """Minimal item for embedding bare strings."""

    __slots__ = ("text", "embedding", "embedding_source")

    def __init__(self, text: str):
        self.text = text
        self.embedding = None
        self.embedding_source = "unknown"
