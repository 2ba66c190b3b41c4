"""Embedding generation via Ollama, with a bounded pool for batches."""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Protocol

import requests

from .config import EMBEDDING_MODEL, EMBEDDING_TIMEOUT, OLLAMA_URL
from .errors import EmbeddingError

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingResult:
    embedding: list[float]
    token_count: int


class Embedder(Protocol):
    """Turns one text into one vector. Must be safe to call from several threads."""

    def embed(self, text: str) -> EmbeddingResult:
        ...


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 characters per token."""
    return math.ceil(len(text) / 4)


class OllamaEmbedder:
    """Embeddings from a local Ollama server (``/api/embeddings``)."""

    def __init__(
        self,
        base_url: str = OLLAMA_URL,
        model: str = EMBEDDING_MODEL,
        timeout: float = EMBEDDING_TIMEOUT,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def embed(self, text: str) -> EmbeddingResult:
        try:
            resp = requests.post(
                f"{self.base_url}/api/embeddings",
                json={"model": self.model, "prompt": text},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            embedding = resp.json().get("embedding")
        except (requests.RequestException, ValueError) as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        if not embedding:
            raise EmbeddingError(f"Ollama returned no embedding for model '{self.model}'")
        return EmbeddingResult(embedding=embedding, token_count=estimate_tokens(text))

    def health_check(self) -> dict:
        """Report whether Ollama answers and whether the model is pulled."""
        try:
            resp = requests.get(f"{self.base_url}/api/tags", timeout=5)
            resp.raise_for_status()
            models = resp.json().get("models", [])
        except (requests.RequestException, ValueError):
            return {
                "available": False,
                "model_loaded": False,
                "error": f"Cannot connect to Ollama at {self.base_url}",
            }

        installed = {m.get("name", "") for m in models}
        # Ollama lists models as "name:tag"
        loaded = any(name.split(":")[0] == self.model.split(":")[0] for name in installed)
        return {
            "available": True,
            "model_loaded": loaded,
            "error": None if loaded else f"Model {self.model} not found. Run: ollama pull {self.model}",
        }


def embed_many(
    embedder: Embedder,
    texts: list[str],
    concurrency: int = 10,
) -> list[EmbeddingResult | EmbeddingError]:
    """Embed texts with at most ``concurrency`` requests in flight.

    The result list lines up with ``texts``. A failed item holds its
    EmbeddingError instead of a result; it never aborts the rest.
    """
    results: list[EmbeddingResult | EmbeddingError | None] = [None] * len(texts)
    if not texts:
        return []

    def work(index: int) -> None:
        try:
            results[index] = embedder.embed(texts[index])
        except EmbeddingError as e:
            logger.warning("Embedding failed for text %d: %s", index, e)
            results[index] = e
        except Exception as e:
            logger.warning("Embedding failed for text %d", index, exc_info=True)
            results[index] = EmbeddingError(str(e))

    with ThreadPoolExecutor(max_workers=max(1, min(concurrency, len(texts)))) as pool:
        # Each index is written by exactly one worker
        list(pool.map(work, range(len(texts))))

    return results
