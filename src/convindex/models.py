"""Data models for parsed transcripts, stored rows, chunks and run results."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Literal

from pydantic import BaseModel, Field

from .config import EMBED_CONCURRENCY, INDEX_BATCH_SIZE

Role = Literal["user", "assistant", "system", "unknown"]


class ParsedMessage(BaseModel):
    uuid: str
    conversation_id: str
    role: Role
    content: str
    timestamp: datetime
    model: str | None = None
    parent_uuid: str | None = None
    message_type: str | None = None
    cwd: str | None = None


class ParsedConversation(BaseModel):
    """One transcript file, normalized. Produced by the parser, never stored as-is."""

    id: str
    file_path: str
    project_path: str | None = None
    cwd: str | None = None
    title: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    messages: list[ParsedMessage] = Field(default_factory=list)


class Conversation(BaseModel):
    id: str
    file_path: str
    project_id: int | None = None
    project_path: str | None = None
    cwd: str | None = None
    started_at: datetime
    ended_at: datetime | None = None
    message_count: int = 0
    title: str | None = None
    summary: str | None = None
    is_title_auto_generated: bool = False
    is_stub: bool = False


class Message(BaseModel):
    id: int | None = None
    uuid: str
    conversation_id: str
    role: Role
    content: str
    timestamp: datetime
    model: str | None = None
    parent_uuid: str | None = None
    message_type: str | None = None
    cwd: str | None = None
    content_hash: str | None = None


class Project(BaseModel):
    id: int
    path: str
    name: str


class Chunk(BaseModel):
    """A retrieval unit: one user question and at most one assistant answer."""

    chunk_id: str
    conversation_id: str
    sequence_number: int
    chunk_type: Literal["message_pair"] = "message_pair"
    content: str
    user_message: str | None = None
    assistant_message: str | None = None
    timestamp: datetime | None = None
    project_path: str | None = None
    message_count: int = 0
    previous_chunk: str | None = None
    next_chunk: str | None = None
    topic: str
    topic_group: int = 0
    token_count: int = 0  # Filled in after embedding


class Checkpoint(BaseModel):
    last_conversation_id: str
    processed_count: int = 0
    skipped_count: int = 0
    total_chunks: int = 0
    errors: int = 0
    total_conversations: int = 0
    timestamp: datetime


class ImportOutcome(BaseModel):
    """Result of importing one transcript file."""

    file_path: str
    status: Literal["ok", "skipped", "failed"]
    written: int = 0
    duplicates: int = 0
    reason: str | None = None
    error: str | None = None


class FileError(BaseModel):
    file_path: str
    error: str


class ImportSummary(BaseModel):
    total_files: int = 0
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    total_messages: int = 0
    duplicates: int = 0
    errors: list[FileError] = Field(default_factory=list)
    duration_ms: int = 0


class IndexOptions(BaseModel):
    batch_size: int = Field(default=INDEX_BATCH_SIZE, ge=1)
    concurrency: int = Field(default=EMBED_CONCURRENCY, ge=1)
    fresh: bool = False
    conversation_ids: list[str] | None = None
    on_progress: Callable[[int, int, str | None], None] | None = None


class IndexResult(BaseModel):
    total_conversations: int = 0
    processed: int = 0
    skipped: int = 0
    total_chunks: int = 0
    errors: int = 0
    duration_ms: int = 0
