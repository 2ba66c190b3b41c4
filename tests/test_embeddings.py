"""Tests for the Ollama embedder and the bounded embedding pool."""

import threading
import time
from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import FakeEmbedder
from convindex.embeddings import EmbeddingResult, OllamaEmbedder, embed_many, estimate_tokens
from convindex.errors import EmbeddingError


def ok_response(payload: dict) -> MagicMock:
    resp = MagicMock()
    resp.json.return_value = payload
    resp.raise_for_status.return_value = None
    return resp


class TestOllamaEmbedder:
    def test_embed(self) -> None:
        embedder = OllamaEmbedder(base_url="http://ollama:11434/", model="nomic-embed-text")
        with patch("convindex.embeddings.requests.post",
                   return_value=ok_response({"embedding": [0.1, 0.2]})) as post:
            result = embedder.embed("hello world!")

        assert result.embedding == [0.1, 0.2]
        assert result.token_count == 3
        post.assert_called_once_with(
            "http://ollama:11434/api/embeddings",
            json={"model": "nomic-embed-text", "prompt": "hello world!"},
            timeout=embedder.timeout,
        )

    def test_connection_error(self) -> None:
        with patch("convindex.embeddings.requests.post",
                   side_effect=requests.ConnectionError("refused")):
            with pytest.raises(EmbeddingError):
                OllamaEmbedder().embed("x")

    def test_http_error(self) -> None:
        resp = MagicMock()
        resp.raise_for_status.side_effect = requests.HTTPError("500")
        with patch("convindex.embeddings.requests.post", return_value=resp):
            with pytest.raises(EmbeddingError):
                OllamaEmbedder().embed("x")

    def test_empty_embedding(self) -> None:
        with patch("convindex.embeddings.requests.post", return_value=ok_response({})):
            with pytest.raises(EmbeddingError):
                OllamaEmbedder().embed("x")

    def test_health_check_model_loaded(self) -> None:
        payload = {"models": [{"name": "nomic-embed-text:latest"}]}
        with patch("convindex.embeddings.requests.get", return_value=ok_response(payload)):
            health = OllamaEmbedder(model="nomic-embed-text").health_check()
        assert health == {"available": True, "model_loaded": True, "error": None}

    def test_health_check_model_missing(self) -> None:
        with patch("convindex.embeddings.requests.get", return_value=ok_response({"models": []})):
            health = OllamaEmbedder(model="nomic-embed-text").health_check()
        assert health["available"]
        assert not health["model_loaded"]
        assert "ollama pull" in health["error"]

    def test_health_check_non_json_reply(self) -> None:
        resp = MagicMock()
        resp.raise_for_status.return_value = None
        resp.json.side_effect = ValueError("Expecting value")
        with patch("convindex.embeddings.requests.get", return_value=resp):
            health = OllamaEmbedder().health_check()
        assert not health["available"]
        assert not health["model_loaded"]

    def test_health_check_unreachable(self) -> None:
        with patch("convindex.embeddings.requests.get",
                   side_effect=requests.ConnectionError("refused")):
            health = OllamaEmbedder().health_check()
        assert not health["available"]


class TestEmbedMany:
    def test_order_preserved(self) -> None:
        texts = [f"text number {i}" * (i + 1) for i in range(20)]
        results = embed_many(FakeEmbedder(), texts, concurrency=4)
        assert [r.embedding[0] for r in results] == [float(len(t)) for t in texts]

    def test_failure_fills_its_slot(self) -> None:
        results = embed_many(FakeEmbedder(fail_on=("bad",)), ["good", "bad", "fine"], concurrency=2)
        assert isinstance(results[0], EmbeddingResult)
        assert isinstance(results[1], EmbeddingError)
        assert isinstance(results[2], EmbeddingResult)

    def test_unexpected_exception_wrapped(self) -> None:
        embedder = MagicMock()
        embedder.embed.side_effect = RuntimeError("boom")
        results = embed_many(embedder, ["a"])
        assert isinstance(results[0], EmbeddingError)

    def test_empty(self) -> None:
        assert embed_many(FakeEmbedder(), []) == []

    def test_concurrency_bound(self) -> None:
        in_flight = 0
        peak = 0
        lock = threading.Lock()

        class SlowEmbedder:
            def embed(self, text: str) -> EmbeddingResult:
                nonlocal in_flight, peak
                with lock:
                    in_flight += 1
                    peak = max(peak, in_flight)
                time.sleep(0.01)
                with lock:
                    in_flight -= 1
                return EmbeddingResult(embedding=[1.0], token_count=1)

        embed_many(SlowEmbedder(), ["t"] * 30, concurrency=3)
        assert 1 <= peak <= 3


def test_estimate_tokens() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
