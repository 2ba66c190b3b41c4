"""ChromaDB vector store for conversation chunks."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import chromadb

from .config import COLLECTION_NAME, UPSERT_BATCH_SIZE
from .errors import VectorIndexError

logger = logging.getLogger(__name__)

Metadata = dict[str, str | int | float | bool]


class ConversationVectorStore:
    """ChromaDB-backed vector store for conversation chunks.

    Vectors are always supplied by the caller; the collection never embeds
    on its own.
    """

    def __init__(
        self,
        persist_path: Path | None = None,
        collection_name: str = COLLECTION_NAME,
        client: Any = None,
    ):
        if client is None:
            if persist_path is None:
                raise ValueError("persist_path or client is required")
            persist_path.parent.mkdir(parents=True, exist_ok=True)
            client = chromadb.PersistentClient(path=str(persist_path))
        self.client = client
        self.collection_name = collection_name
        self.collection = self._open_collection()

    def _open_collection(self):
        return self.client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"},
            embedding_function=None,
        )

    def upsert(
        self,
        ids: list[str],
        embeddings: list[list[float]],
        documents: list[str],
        metadatas: list[Metadata],
        batch_size: int = UPSERT_BATCH_SIZE,
    ) -> int:
        """Insert or overwrite chunks by id, ``batch_size`` at a time."""
        if not ids:
            return 0

        for i in range(0, len(ids), batch_size):
            end = i + batch_size
            try:
                self.collection.upsert(
                    ids=ids[i:end],
                    embeddings=embeddings[i:end],
                    documents=documents[i:end],
                    metadatas=metadatas[i:end],
                )
            except Exception as e:
                raise VectorIndexError(f"Upsert of {len(ids[i:end])} chunks failed: {e}") from e

        return len(ids)

    def get(self, chunk_id: str) -> dict | None:
        result = self.collection.get(ids=[chunk_id], include=["documents", "metadatas"])
        if not result["ids"]:
            return None
        return {
            "id": result["ids"][0],
            "content": result["documents"][0],
            "metadata": result["metadatas"][0],
        }

    def get_chunk_with_context(self, chunk_id: str) -> dict:
        """A chunk plus its previous and next chunk, following the stored links."""
        chunk = self.get(chunk_id)
        if chunk is None:
            return {"chunk": None, "previous": None, "next": None}

        meta = chunk["metadata"] or {}
        prev_id = meta.get("previous_chunk")
        next_id = meta.get("next_chunk")
        return {
            "chunk": chunk,
            "previous": self.get(prev_id) if prev_id else None,
            "next": self.get(next_id) if next_id else None,
        }

    def delete_conversation(self, conversation_id: str):
        """Remove all chunks for a conversation."""
        self.collection.delete(where={"conversation_id": conversation_id})

    def reset(self):
        """Drop and recreate the collection."""
        try:
            self.client.delete_collection(name=self.collection_name)
        except Exception:
            logger.debug("Collection %s did not exist", self.collection_name)
        self.collection = self._open_collection()

    def count(self) -> int:
        return self.collection.count()
