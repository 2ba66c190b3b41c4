"""Chunk conversations into question/answer pairs with topic and adjacency metadata."""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass
from datetime import datetime

from .config import (
    DEFAULT_TOPIC,
    MAX_CHUNK_CHARS,
    MESSAGE_MAX_CHARS,
    TOPIC_GAP_MINUTES,
    TRUNCATION_MARKER,
)
from .models import Chunk, Conversation, Message

# Keyword → canonical topic. Add entries here to extend the vocabulary.
TOPIC_KEYWORDS: dict[str, str] = {
    "react": "react",
    "component": "component",
    "components": "component",
    "typescript": "typescript",
    "javascript": "javascript",
    "database": "database",
    "sqlite": "sqlite",
    "sql": "sql",
    "query": "query",
    "chromadb": "chromadb",
    "git": "git",
    "commit": "commit",
    "branch": "branch",
    "repository": "repository",
    "server": "server",
    "api": "api",
    "endpoint": "endpoint",
    "http": "http",
    "test": "test",
    "tests": "test",
    "testing": "testing",
    "jest": "jest",
    "spec": "spec",
    "deployment": "deployment",
    "docker": "docker",
    "container": "container",
    "build": "build",
    "mcp": "mcp",
    "claude": "claude",
    "hook": "hook",
    "hooks": "hook",
    "skill": "skill",
    "command": "command",
    "vector": "vector",
    "embedding": "embedding",
    "embeddings": "embedding",
    "search": "search",
    "index": "index",
    # Recognized, but not related to anything but themselves
    "python": "python",
    "function": "function",
    "error": "error",
    "bug": "bug",
    "feature": "feature",
    "implement": "implement",
    "create": "create",
    "fix": "fix",
    "optimization": "optimization",
    "performance": "performance",
    "security": "security",
    "authentication": "authentication",
    "npm": "npm",
    "package": "package",
    "library": "library",
    "framework": "framework",
}

# Topics that may share a group. Each topic appears in at most one set.
RELATED_TOPICS: list[frozenset[str]] = [
    frozenset({"react", "component", "typescript", "javascript"}),
    frozenset({"database", "sqlite", "sql", "query", "chromadb"}),
    frozenset({"git", "commit", "branch", "repository"}),
    frozenset({"server", "api", "endpoint", "http"}),
    frozenset({"test", "testing", "jest", "spec"}),
    frozenset({"deployment", "docker", "container", "build"}),
    frozenset({"mcp", "claude", "hook", "skill", "command"}),
    frozenset({"vector", "embedding", "search", "index"}),
]

_TOPIC_OF_GROUP: dict[str, int] = {
    topic: i for i, group in enumerate(RELATED_TOPICS) for topic in group
}

_KEYWORD_RE = re.compile(
    r"\b(?:" + "|".join(sorted(map(re.escape, TOPIC_KEYWORDS), key=len, reverse=True)) + r")\b"
)


@dataclass
class MessagePair:
    user: Message | None
    assistant: Message | None

    @property
    def timestamp(self) -> datetime:
        return (self.assistant or self.user).timestamp

    @property
    def text(self) -> str:
        return " ".join(m.content for m in (self.user, self.assistant) if m is not None)


@dataclass
class TopicGroup:
    topic: str
    pairs: list[MessagePair]


def extract_topic(text: str) -> str:
    """Most frequent known keyword in the text (first seen wins ties), else 'general'."""
    topics = [TOPIC_KEYWORDS[k] for k in _KEYWORD_RE.findall(text.lower())]
    if not topics:
        return DEFAULT_TOPIC
    # most_common keeps insertion order among equal counts
    return Counter(topics).most_common(1)[0][0]


def is_topic_related(a: str, b: str) -> bool:
    if a == b:
        return True
    group_a = _TOPIC_OF_GROUP.get(a)
    return group_a is not None and group_a == _TOPIC_OF_GROUP.get(b)


def truncate_text(text: str, max_chars: int) -> str:
    """Cut text to max_chars, preferring the last sentence or line end in the final 20%."""
    if len(text) <= max_chars:
        return text

    truncated = text[:max_chars]
    cut = max(truncated.rfind("."), truncated.rfind("\n"))
    if cut > max_chars * 0.8:
        return truncated[: cut + 1] + TRUNCATION_MARKER
    return truncated + TRUNCATION_MARKER


def _pair_messages(messages: list[Message]) -> list[MessagePair]:
    """Pair each user message with an immediately following assistant reply."""
    pairs: list[MessagePair] = []
    i = 0

    while i < len(messages):
        msg = messages[i]
        if msg.role == "user":
            nxt = messages[i + 1] if i + 1 < len(messages) else None
            if nxt is not None and nxt.role == "assistant":
                pairs.append(MessagePair(user=msg, assistant=nxt))
                i += 2
                continue
            pairs.append(MessagePair(user=msg, assistant=None))
        elif msg.role == "assistant":
            pairs.append(MessagePair(user=None, assistant=msg))
        i += 1

    return pairs


def _group_by_topic(pairs: list[MessagePair]) -> list[TopicGroup]:
    """Split pairs into runs of related topics, breaking on long silences."""
    groups: list[TopicGroup] = []
    current: TopicGroup | None = None

    for pair in pairs:
        topic = extract_topic(pair.text)
        if current is not None:
            gap = abs((pair.timestamp - current.pairs[-1].timestamp).total_seconds()) / 60
            if gap <= TOPIC_GAP_MINUTES and is_topic_related(current.topic, topic):
                current.pairs.append(pair)
                continue
            groups.append(current)
        current = TopicGroup(topic=topic, pairs=[pair])

    if current is not None:
        groups.append(current)
    return groups


def _format_content(pair: MessagePair, topic: str) -> str:
    content = f"Topic: {topic}\n\n"
    if pair.user is not None:
        content += f"User: {truncate_text(pair.user.content, MESSAGE_MAX_CHARS)}\n\n"
    if pair.assistant is not None:
        content += f"Assistant: {truncate_text(pair.assistant.content, MESSAGE_MAX_CHARS)}"

    if len(content) > MAX_CHUNK_CHARS:
        content = content[:MAX_CHUNK_CHARS] + TRUNCATION_MARKER
    return content.strip()


def chunk_id(conversation_id: str, sequence_number: int) -> str:
    return f"conv_{conversation_id}_pair_{sequence_number}"


def chunk_conversation(conversation: Conversation, messages: list[Message]) -> list[Chunk]:
    """Split a conversation into message-pair chunks.

    Deterministic: the same conversation and messages always yield the same
    chunks, ids included, so re-indexing overwrites instead of duplicating.
    """
    conversational = [m for m in messages if m.role != "system"]
    groups = _group_by_topic(_pair_messages(conversational))

    flat = [
        (group_index, group.topic, pair)
        for group_index, group in enumerate(groups)
        for pair in group.pairs
    ]
    total = len(flat)
    chunks: list[Chunk] = []

    for seq, (group_index, topic, pair) in enumerate(flat, 1):
        chunks.append(
            Chunk(
                chunk_id=chunk_id(conversation.id, seq),
                conversation_id=conversation.id,
                sequence_number=seq,
                content=_format_content(pair, topic),
                user_message=pair.user.content if pair.user else None,
                assistant_message=pair.assistant.content if pair.assistant else None,
                timestamp=pair.timestamp,
                project_path=conversation.project_path,
                message_count=(pair.user is not None) + (pair.assistant is not None),
                previous_chunk=chunk_id(conversation.id, seq - 1) if seq > 1 else None,
                next_chunk=chunk_id(conversation.id, seq + 1) if seq < total else None,
                topic=topic,
                topic_group=group_index,
            )
        )

    return chunks


def adjacent_chunks(chunks: list[Chunk], target_chunk_id: str, context: int = 2) -> list[Chunk]:
    """The target chunk with up to ``context`` neighbours on each side."""
    index = next((i for i, c in enumerate(chunks) if c.chunk_id == target_chunk_id), None)
    if index is None:
        return []
    return chunks[max(0, index - context): index + context + 1]
