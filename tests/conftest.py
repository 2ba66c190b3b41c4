"""Shared fixtures: temporary store, transcript writer, fake embedder and vector index."""

import json
import threading
from pathlib import Path

import pytest

from convindex.checkpoint import CheckpointStore
from convindex.embeddings import EmbeddingResult
from convindex.errors import EmbeddingError, VectorIndexError
from convindex.storage import ConversationStore


def user_record(uuid, session_id, text, timestamp, cwd="/home/dev/project", **extra):
    return {
        "type": "user",
        "uuid": uuid,
        "sessionId": session_id,
        "timestamp": timestamp,
        "cwd": cwd,
        "message": {"role": "user", "content": text},
        **extra,
    }


def assistant_record(uuid, session_id, text, timestamp, cwd="/home/dev/project", **extra):
    return {
        "type": "assistant",
        "uuid": uuid,
        "sessionId": session_id,
        "timestamp": timestamp,
        "cwd": cwd,
        "message": {
            "role": "assistant",
            "model": "claude-sonnet",
            "content": [{"type": "text", "text": text}],
        },
        **extra,
    }


@pytest.fixture
def write_jsonl(tmp_path: Path):
    """Write records (dicts or raw strings) as a JSONL file under tmp_path."""

    def _write(name: str, records: list) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [r if isinstance(r, str) else json.dumps(r) for r in records]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    return _write


@pytest.fixture
def store(tmp_path: Path):
    s = ConversationStore(tmp_path / "test.db")
    yield s
    s.close()


@pytest.fixture
def checkpoints(tmp_path: Path) -> CheckpointStore:
    return CheckpointStore(tmp_path / "checkpoint.json")


class FakeEmbedder:
    """Deterministic embedder; texts containing any of ``fail_on`` raise."""

    def __init__(self, fail_on: tuple[str, ...] = ()):
        self.fail_on = fail_on
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def embed(self, text: str) -> EmbeddingResult:
        with self._lock:
            self.calls.append(text)
        if any(marker in text for marker in self.fail_on):
            raise EmbeddingError(f"refused: {text[:20]}")
        return EmbeddingResult(
            embedding=[float(len(text)), float(sum(map(ord, text)) % 997), 1.0],
            token_count=len(text) // 4 + 1,
        )


class FakeVectorIndex:
    """In-memory index that overwrites by id, like a real upsert."""

    def __init__(self, fail_for: tuple[str, ...] = ()):
        self.fail_for = fail_for
        self.items: dict[str, dict] = {}
        self.upsert_calls = 0

    def upsert(self, ids, embeddings, documents, metadatas) -> int:
        self.upsert_calls += 1
        if any(metadata["conversation_id"] in self.fail_for for metadata in metadatas):
            # An earlier sub-batch lands before the failure
            self.items[ids[0]] = {"embedding": embeddings[0], "document": documents[0], "metadata": metadatas[0]}
            raise VectorIndexError("index unavailable")
        for id_, emb, doc, meta in zip(ids, embeddings, documents, metadatas):
            self.items[id_] = {"embedding": emb, "document": doc, "metadata": meta}
        return len(ids)

    def delete_conversation(self, conversation_id: str) -> None:
        self.items = {
            k: v for k, v in self.items.items()
            if v["metadata"]["conversation_id"] != conversation_id
        }


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def vector_index() -> FakeVectorIndex:
    return FakeVectorIndex()
