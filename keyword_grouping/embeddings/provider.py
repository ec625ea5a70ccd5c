"""
Embedding provider adapter.

Wraps whatever model produces the vectors behind one call,
``embed(texts) -> list of vectors``:

- a LangChain ``Embeddings`` object (``embed_documents``), by default
  ``langchain_openai.OpenAIEmbeddings``
- a sentence-transformers style model (``encode``)

Provider exceptions are translated into :class:`ProviderError` /
:class:`RateLimited` so the retry policy in ``KeywordEmbedder`` only has to
look at ``retryable``.
"""

import logging
import re
from typing import Any, List, Optional, Sequence

import numpy as np
import openai
from langchain_core.embeddings import Embeddings

from ..DEFAULT_CONSTS import DEFAULT_EMBEDDING_MODEL
from ..errors import ProviderError, RateLimited

LOGGER = logging.getLogger(__name__)

_RATE_LIMIT_PATTERN = re.compile(r"\b429\b|rate.?limit", re.IGNORECASE)

# Client errors that another attempt cannot fix.
NON_RETRYABLE_STATUS = frozenset({400, 401, 403, 404, 422})


def _status_code(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def classify_provider_error(exc: BaseException) -> ProviderError:
    """
    Map an arbitrary provider exception onto the pipeline taxonomy.

    Parameters
    ----------
    exc : BaseException
        Exception raised by the underlying client.

    Returns
    -------
    ProviderError
        ``RateLimited`` for HTTP 429, ``openai.RateLimitError`` or a
        rate-limit message; a non-retryable ``ProviderError`` for auth and
        bad-request statuses; a retryable ``ProviderError`` otherwise.
    """
    if isinstance(exc, ProviderError):
        return exc
    status = _status_code(exc)
    message = str(exc) or exc.__class__.__name__
    if (
        isinstance(exc, openai.RateLimitError)
        or status == 429
        or _RATE_LIMIT_PATTERN.search(message)
    ):
        return RateLimited(message)
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ProviderError(message, status_code=status, retryable=False)
    if status is not None and status in NON_RETRYABLE_STATUS:
        return ProviderError(message, status_code=status, retryable=False)
    return ProviderError(message, status_code=status, retryable=True)


class EmbeddingProvider:
    """
    Uniform front for embedding models.

    Parameters
    ----------
    model : Optional[Any]
        Pre-built model exposing ``embed_documents(texts)`` or
        ``encode(texts)``. When None, an ``OpenAIEmbeddings`` client is created
        for ``model_name``; it reads ``OPENAI_API_KEY`` from the environment.
    model_name : str
        Model identifier; also the namespace of cache entries.
    request_timeout : float
        Per-request timeout handed to the default client.

    Raises
    ------
    TypeError
        If ``model`` exposes neither supported method.
    """

    def __init__(
        self,
        model: Optional[Any] = None,
        model_name: str = DEFAULT_EMBEDDING_MODEL,
        request_timeout: float = 60.0,
    ):
        self.model_name = model_name
        self.model = model

        if self.model is None:
            from langchain_openai import OpenAIEmbeddings

            LOGGER.info(f"Creating OpenAI embeddings client for model: {model_name}")
            # Retries are handled by KeywordEmbedder, one budget per chunk.
            self.model = OpenAIEmbeddings(
                model=model_name, max_retries=0, request_timeout=request_timeout
            )

        if isinstance(self.model, Embeddings) or hasattr(self.model, "embed_documents"):
            self._mode = "langchain"
        elif hasattr(self.model, "encode"):
            self._mode = "encode"
        else:
            raise TypeError(
                f"Unsupported embedding model {type(self.model).__name__}: "
                "expected embed_documents() or encode()"
            )

    def embed(self, texts: Sequence[str]) -> List[np.ndarray]:
        """
        Embed ``texts`` in one request.

        Returns
        -------
        List[np.ndarray]
            One float64 vector per input, in input order.

        Raises
        ------
        ProviderError
            On any client failure or when the response length does not match.
        """
        texts = list(texts)
        if not texts:
            return []
        try:
            if self._mode == "langchain":
                raw = self.model.embed_documents(texts)
            else:
                raw = self.model.encode(texts, convert_to_numpy=True)
        except Exception as e:
            raise classify_provider_error(e) from e

        vectors = [np.asarray(v, dtype=np.float64).ravel() for v in raw]
        if len(vectors) != len(texts):
            raise ProviderError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} inputs",
                retryable=False,
            )
        LOGGER.debug(f"Provider returned {len(vectors)} vectors for {len(texts)} inputs")
        return vectors
