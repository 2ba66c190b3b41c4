"""Parse transcript JSONL files (one JSON record per line) into ParsedConversations."""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from .config import TITLE_MAX_CHARS
from .models import ParsedConversation, ParsedMessage

logger = logging.getLogger(__name__)

CONTENT_RECORD_TYPES = {"user", "assistant"}
KNOWN_ROLES = {"user", "assistant", "system"}


def _parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO 8601 timestamp, treating naive values as UTC."""
    if not isinstance(value, str) or not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _str(value: Any) -> str | None:
    """The value if it is a non-empty string, else None."""
    return value if isinstance(value, str) and value else None


def _block_text(block: Any) -> str:
    if isinstance(block, str):
        return block
    if not isinstance(block, dict):
        return ""

    kind = block.get("type")
    if kind == "text":
        return _str(block.get("text")) or ""
    if kind == "thinking":
        return _str(block.get("thinking")) or ""
    if kind == "tool_use":
        return f"[Tool Use: {block.get('name') or 'unknown'}]"
    if kind == "tool_result":
        return extract_text(block.get("content"))
    if kind is None:
        # Untyped entries nested inside tool results
        return _str(block.get("text")) or ""
    return ""


def extract_text(content: Any) -> str:
    """Flatten message content (a string or a list of typed blocks) into text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = (_block_text(block) for block in content)
        return "\n".join(part for part in parts if part)
    return ""


def generate_title(content: str) -> str | None:
    """Build a title from message text: collapsed whitespace, at most 80 chars + '...'."""
    cleaned = re.sub(r"\s+", " ", content).strip()
    if len(cleaned) > TITLE_MAX_CHARS:
        return cleaned[:TITLE_MAX_CHARS] + "..."
    return cleaned or None


def _read_records(path: Path) -> Iterable[dict[str, Any]]:
    """Yield every line that decodes to a JSON object; skip the rest."""
    with path.open("r", encoding="utf-8", errors="replace") as f:
        for line_no, line in enumerate(f, 1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("%s:%d: skipping malformed line", path, line_no)
                continue
            if isinstance(record, dict):
                yield record


def _content_fields(record: dict[str, Any]) -> tuple[str, str | None, str]:
    """Return (role, model, text) for a user/assistant record."""
    role = record["type"]
    model = None
    message = record.get("message")

    if isinstance(message, dict):
        role = _str(message.get("role")) or role
        model = _str(message.get("model"))
        text = extract_text(message.get("content"))
    else:
        text = extract_text(record.get("content"))

    if role not in KNOWN_ROLES:
        role = "unknown"
    return role, model, text


def parse_file(file_path: str | Path) -> ParsedConversation | None:
    """Parse a single transcript file.

    Returns None if the file cannot be read, carries no conversation id,
    or has no user/assistant message with text.
    """
    path = Path(file_path)

    conversation_id: str | None = None
    title: str | None = None
    cwd: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    retained: list[dict[str, Any]] = []

    try:
        for record in _read_records(path):
            record_type = _str(record.get("type"))

            if record_type == "summary":
                if title is None:
                    title = _str(record.get("summary"))
                continue

            if conversation_id is None:
                conversation_id = _str(record.get("sessionId"))
            if cwd is None:
                cwd = _str(record.get("cwd"))

            ts = _parse_timestamp(record.get("timestamp"))
            if ts is not None:
                if started_at is None or ts < started_at:
                    started_at = ts
                if ended_at is None or ts > ended_at:
                    ended_at = ts

            if record_type == "system" or record.get("isMeta"):
                continue
            if record_type not in CONTENT_RECORD_TYPES:
                continue
            uuid = _str(record.get("uuid"))
            if uuid is None or ts is None:
                continue

            role, model, text = _content_fields(record)
            if not text.strip():
                continue

            retained.append({
                "uuid": uuid,
                "role": role,
                "content": text,
                "timestamp": ts,
                "model": model,
                "parent_uuid": _str(record.get("parentUuid")),
                "message_type": record_type,
                "cwd": _str(record.get("cwd")),
            })
    except OSError:
        logger.warning("Could not read transcript %s", path, exc_info=True)
        return None

    if conversation_id is None:
        logger.debug("%s: no session id, skipping", path)
        return None
    if not retained:
        logger.debug("%s: no user/assistant messages, skipping", path)
        return None

    messages = [
        ParsedMessage(conversation_id=conversation_id, **fields) for fields in retained
    ]

    if title is None:
        first_user = next((m for m in messages if m.role == "user"), None)
        if first_user is not None:
            title = generate_title(first_user.content)

    return ParsedConversation(
        id=conversation_id,
        file_path=str(path),
        project_path=cwd,
        cwd=cwd,
        title=title,
        started_at=started_at,
        ended_at=ended_at,
        messages=messages,
    )


def find_transcript_files(source_dirs: Iterable[str | Path]) -> list[Path]:
    """Recursively collect *.jsonl files under each directory, sorted per directory."""
    files: list[Path] = []
    for source in source_dirs:
        root = Path(source).expanduser()
        if not root.is_dir():
            logger.warning("Source directory not found: %s", root)
            continue
        files.extend(sorted(p for p in root.rglob("*.jsonl") if p.is_file()))
    return files
