"""Resumable indexing of stored conversations into the vector index."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Protocol

from .checkpoint import CheckpointStore
from .chunker import chunk_conversation
from .embeddings import Embedder, EmbeddingError, embed_many
from .errors import VectorIndexError
from .models import Checkpoint, Chunk, Conversation, IndexOptions, IndexResult, Message

logger = logging.getLogger(__name__)


class ConversationSource(Protocol):
    def list_all_conversations(self) -> list[Conversation]: ...

    def list_messages(self, conversation_id: str) -> list[Message]: ...

    def find_conversation(self, conversation_id: str) -> Conversation | None: ...


class VectorIndex(Protocol):
    def upsert(
        self,
        ids: list[str],
        embeddings: list[list[float]],
        documents: list[str],
        metadatas: list[dict],
    ) -> int: ...

    def delete_conversation(self, conversation_id: str) -> None: ...


def chunk_metadata(chunk: Chunk) -> dict:
    """Flat metadata for the vector index; absent values become empty strings."""
    return {
        "conversation_id": chunk.conversation_id,
        "sequence_number": chunk.sequence_number,
        "chunk_type": chunk.chunk_type,
        "timestamp": chunk.timestamp.isoformat() if chunk.timestamp else "",
        "project_path": chunk.project_path or "",
        "message_count": chunk.message_count,
        "previous_chunk": chunk.previous_chunk or "",
        "next_chunk": chunk.next_chunk or "",
        "topic": chunk.topic,
        "topic_group": chunk.topic_group,
        "token_count": chunk.token_count,
    }


class ChunkIndexer:
    """Chunks, embeds and upserts every stored conversation.

    Conversations are walked in start-time order. After every
    ``batch_size`` conversations a checkpoint is written, so an interrupted
    run resumes after the last completed batch. Redoing a batch is harmless:
    chunk ids are deterministic and the index upserts by id.
    """

    def __init__(
        self,
        store: ConversationSource,
        embedder: Embedder,
        vector_index: VectorIndex,
        checkpoints: CheckpointStore,
    ):
        self.store = store
        self.embedder = embedder
        self.vector_index = vector_index
        self.checkpoints = checkpoints

    def run(self, options: IndexOptions | None = None) -> IndexResult:
        """Index all conversations (or ``options.conversation_ids``).

        Raises StorageError if conversations cannot be listed and
        CheckpointError if a checkpoint cannot be written; everything else is
        counted in the result.
        """
        options = options or IndexOptions()
        start = time.monotonic()

        conversations = self.store.list_all_conversations()
        # Subset runs neither resume from nor overwrite the full-pass checkpoint
        use_checkpoint = options.conversation_ids is None
        if not use_checkpoint:
            wanted = set(options.conversation_ids)
            conversations = [c for c in conversations if c.id in wanted]

        result = IndexResult(total_conversations=len(conversations))
        start_index = 0

        if use_checkpoint and options.fresh:
            self.checkpoints.clear()
        elif use_checkpoint:
            start_index = self._resume(conversations, result)

        for i in range(start_index, len(conversations), options.batch_size):
            batch = conversations[i : i + options.batch_size]

            for conv in batch:
                self._index_conversation(conv, options.concurrency, result)

            last = batch[-1]
            if use_checkpoint:
                self.checkpoints.save(
                    Checkpoint(
                        last_conversation_id=last.id,
                        processed_count=result.processed,
                        skipped_count=result.skipped,
                        total_chunks=result.total_chunks,
                        errors=result.errors,
                        total_conversations=result.total_conversations,
                        timestamp=datetime.now(timezone.utc),
                    )
                )
            if options.on_progress:
                options.on_progress(i + len(batch), len(conversations), last.id)

        if use_checkpoint:
            self.checkpoints.clear()

        result.duration_ms = int((time.monotonic() - start) * 1000)
        return result

    def _resume(self, conversations: list[Conversation], result: IndexResult) -> int:
        checkpoint = self.checkpoints.load()
        if checkpoint is None:
            return 0

        idx = next(
            (i for i, c in enumerate(conversations) if c.id == checkpoint.last_conversation_id),
            None,
        )
        if idx is None:
            logger.warning(
                "Checkpointed conversation %s no longer exists, starting from the beginning",
                checkpoint.last_conversation_id,
            )
            return 0

        result.processed = checkpoint.processed_count
        result.skipped = checkpoint.skipped_count
        result.total_chunks = checkpoint.total_chunks
        result.errors = checkpoint.errors
        logger.info("Resuming from checkpoint: %d/%d conversations", idx + 1, len(conversations))
        return idx + 1

    def _index_conversation(self, conv: Conversation, concurrency: int, result: IndexResult) -> None:
        try:
            messages = self.store.list_messages(conv.id)
            if not messages:
                result.skipped += 1
                return

            chunks = chunk_conversation(conv, messages)
            if not chunks:
                result.skipped += 1
                return

            indexed, errors = self._embed_and_upsert(chunks, concurrency)
        except Exception:
            logger.error("Error processing conversation %s", conv.id, exc_info=True)
            result.errors += 1
            return

        result.errors += errors
        if indexed:
            result.processed += 1
            result.total_chunks += indexed

    def _embed_and_upsert(self, chunks: list[Chunk], concurrency: int) -> tuple[int, int]:
        """Embed and upsert one conversation's chunks as a unit.

        Returns (chunks indexed, errors). If any chunk fails to embed, nothing
        from the conversation is written.
        """
        conversation_id = chunks[0].conversation_id
        outcomes = embed_many(self.embedder, [c.content for c in chunks], concurrency)

        failed = sum(1 for o in outcomes if isinstance(o, EmbeddingError))
        if failed:
            logger.warning(
                "Conversation %s: %d of %d chunks failed to embed, not indexed",
                conversation_id, failed, len(chunks),
            )
            return 0, failed

        for chunk, outcome in zip(chunks, outcomes):
            chunk.token_count = outcome.token_count

        try:
            self.vector_index.upsert(
                ids=[c.chunk_id for c in chunks],
                embeddings=[o.embedding for o in outcomes],
                documents=[c.content for c in chunks],
                metadatas=[chunk_metadata(c) for c in chunks],
            )
        except VectorIndexError as e:
            logger.error("Error upserting conversation %s: %s", conversation_id, e)
            # Earlier sub-batches may have landed; drop them so the unit stays whole
            try:
                self.vector_index.delete_conversation(conversation_id)
            except Exception:
                logger.error(
                    "Could not remove partially indexed chunks of %s", conversation_id, exc_info=True
                )
            return 0, len(chunks)

        return len(chunks), 0

    def index_conversation(self, conversation_id: str, concurrency: int = 10) -> int:
        """Index a single conversation. Returns the number of chunks written."""
        conv = self.store.find_conversation(conversation_id)
        if conv is None:
            raise KeyError(f"Conversation not found: {conversation_id}")

        messages = self.store.list_messages(conversation_id)
        chunks = chunk_conversation(conv, messages)
        if not chunks:
            return 0

        indexed, errors = self._embed_and_upsert(chunks, concurrency)
        if errors:
            raise VectorIndexError(f"Conversation {conversation_id}: {errors} chunk(s) not indexed")
        return indexed

    def reindex_conversation(self, conversation_id: str, concurrency: int = 10) -> int:
        """Drop a conversation's chunks from the index, then index it again."""
        self.vector_index.delete_conversation(conversation_id)
        return self.index_conversation(conversation_id, concurrency)

    def progress(self) -> Checkpoint | None:
        return self.checkpoints.load()
