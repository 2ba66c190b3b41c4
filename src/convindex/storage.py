"""SQLite storage for conversations, messages, projects and tags."""

from __future__ import annotations

import hashlib
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from .config import STUB_FILE_PATH
from .errors import StorageError
from .models import Conversation, Message, ParsedMessage


def _iso(ts: datetime | None) -> str | None:
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now() -> str:
    return _iso(datetime.now(timezone.utc))


def content_hash(conversation_id: str, uuid: str, content: str) -> str:
    return hashlib.md5(f"{conversation_id}{uuid}{content}".encode("utf-8")).hexdigest()


class ConversationStore:
    """SQLite-backed storage for conversations and their messages.

    One store per process; the indexing and import pipelines assume they are
    the only writer while they run.
    """

    def __init__(self, db_path: Path | str):
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._migrate()

    def _migrate(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS projects (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                path TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            );

            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                file_path TEXT NOT NULL,
                project_id INTEGER REFERENCES projects(id) ON DELETE SET NULL,
                project_path TEXT,
                cwd TEXT,
                started_at TEXT NOT NULL,
                ended_at TEXT,
                message_count INTEGER NOT NULL DEFAULT 0,
                title TEXT,
                summary TEXT,
                is_title_auto_generated INTEGER NOT NULL DEFAULT 0,
                is_stub INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL DEFAULT (datetime('now')),
                updated_at TEXT NOT NULL DEFAULT (datetime('now'))
            );

            CREATE INDEX IF NOT EXISTS idx_conversations_started
                ON conversations(started_at);

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                uuid TEXT NOT NULL UNIQUE,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                model TEXT,
                parent_uuid TEXT,
                message_type TEXT,
                cwd TEXT,
                content_hash TEXT,
                created_at TEXT NOT NULL DEFAULT (datetime('now')),
                FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conv
                ON messages(conversation_id, timestamp);

            CREATE TABLE IF NOT EXISTS tags (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            );

            CREATE TABLE IF NOT EXISTS conversation_tags (
                conversation_id TEXT NOT NULL,
                tag_id INTEGER NOT NULL,
                PRIMARY KEY (conversation_id, tag_id),
                FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE,
                FOREIGN KEY (tag_id) REFERENCES tags(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS import_metadata (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                import_time TEXT NOT NULL,
                source TEXT,
                files_imported INTEGER,
                messages_imported INTEGER
            );
        """)
        self.conn.commit()

    # -- conversations ---------------------------------------------------

    def find_conversation(self, conversation_id: str) -> Conversation | None:
        row = self.conn.execute(
            "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
        ).fetchone()
        return Conversation(**dict(row)) if row else None

    def conversation_exists(self, conversation_id: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)
        ).fetchone()
        return row is not None

    def is_stub(self, conversation_id: str) -> bool:
        row = self.conn.execute(
            "SELECT is_stub FROM conversations WHERE id = ?", (conversation_id,)
        ).fetchone()
        return bool(row and row["is_stub"])

    def _insert_conversation(self, conv: Conversation) -> None:
        self.conn.execute(
            """INSERT INTO conversations (id, file_path, project_id, project_path, cwd,
               started_at, ended_at, message_count, title, summary,
               is_title_auto_generated, is_stub)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (conv.id, conv.file_path, conv.project_id, conv.project_path, conv.cwd,
             _iso(conv.started_at), _iso(conv.ended_at), conv.message_count,
             conv.title, conv.summary, int(conv.is_title_auto_generated),
             int(conv.is_stub)),
        )

    def create_conversation(self, conv: Conversation) -> Conversation:
        with self.conn:
            self._insert_conversation(conv)
        return self.find_conversation(conv.id)

    def create_stub(
        self,
        conversation_id: str,
        project_path: str | None = None,
        cwd: str | None = None,
        project_id: int | None = None,
    ) -> Conversation:
        """Register a conversation before its transcript exists, so it can be tagged early."""
        return self.create_conversation(
            Conversation(
                id=conversation_id,
                file_path=STUB_FILE_PATH,
                project_id=project_id,
                project_path=project_path,
                cwd=cwd,
                started_at=datetime.now(timezone.utc),
                is_stub=True,
            )
        )

    def _promote(self, conversation_id: str, conv: Conversation) -> None:
        self.conn.execute(
            """UPDATE conversations SET
                   file_path = ?,
                   project_id = ?,
                   project_path = ?,
                   cwd = ?,
                   started_at = ?,
                   ended_at = ?,
                   message_count = ?,
                   title = COALESCE(title, ?),
                   is_title_auto_generated = CASE WHEN title IS NULL THEN ? ELSE is_title_auto_generated END,
                   is_stub = 0,
                   updated_at = ?
               WHERE id = ?""",
            (conv.file_path, conv.project_id, conv.project_path, conv.cwd,
             _iso(conv.started_at), _iso(conv.ended_at), conv.message_count,
             conv.title, int(conv.is_title_auto_generated), _now(), conversation_id),
        )

    def update_conversation_from_import(self, conversation_id: str, conv: Conversation) -> Conversation | None:
        """Overwrite import-derived columns and clear the stub flag.

        Tags, summary and a title already set on the row are left alone.
        """
        with self.conn:
            self._promote(conversation_id, conv)
        return self.find_conversation(conversation_id)

    def _recount(self, conversation_id: str) -> int:
        count = self.conn.execute(
            "SELECT COUNT(*) FROM messages WHERE conversation_id = ?", (conversation_id,)
        ).fetchone()[0]
        self.conn.execute(
            "UPDATE conversations SET message_count = ?, updated_at = ? WHERE id = ?",
            (count, _now(), conversation_id),
        )
        return count

    def refresh_message_count(self, conversation_id: str) -> int:
        """Recompute the denormalized message count from the stored rows."""
        with self.conn:
            return self._recount(conversation_id)

    def list_all_conversations(self) -> list[Conversation]:
        """All conversations ordered by start time, for deterministic batch runs."""
        try:
            rows = self.conn.execute(
                "SELECT * FROM conversations ORDER BY started_at ASC, id ASC"
            ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Could not list conversations: {e}") from e
        return [Conversation(**dict(r)) for r in rows]

    def save_import(
        self,
        conversation_id: str,
        messages: Iterable[ParsedMessage],
        record: Conversation | None = None,
        promote: bool = False,
    ) -> tuple[int, int]:
        """Write one imported conversation in a single transaction.

        ``record`` is created (or, with ``promote``, written over a stub)
        before the messages go in. If anything fails, nothing is kept, so a
        retry sees the conversation exactly as before.
        Returns (inserted, skipped) message counts.
        """
        with self.conn:
            if record is not None:
                if promote:
                    self._promote(conversation_id, record)
                else:
                    self._insert_conversation(record)
            inserted, skipped = self._insert_messages(messages)
            self._recount(conversation_id)
        return inserted, skipped

    # -- messages --------------------------------------------------------

    def _insert_messages(self, messages: Iterable[ParsedMessage]) -> tuple[int, int]:
        inserted = 0
        skipped = 0
        for msg in messages:
            cur = self.conn.execute(
                """INSERT INTO messages (uuid, conversation_id, role, content, timestamp,
                   model, parent_uuid, message_type, cwd, content_hash)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(uuid) DO NOTHING""",
                (msg.uuid, msg.conversation_id, msg.role, msg.content,
                 _iso(msg.timestamp), msg.model, msg.parent_uuid, msg.message_type,
                 msg.cwd, content_hash(msg.conversation_id, msg.uuid, msg.content)),
            )
            if cur.rowcount == 1:
                inserted += 1
            else:
                skipped += 1
        return inserted, skipped

    def insert_messages_if_absent(self, messages: Iterable[ParsedMessage]) -> tuple[int, int]:
        """Insert messages in one transaction, skipping uuids that already exist.

        Returns (inserted, skipped). Any failure other than a duplicate uuid
        rolls back the whole batch and propagates.
        """
        with self.conn:
            return self._insert_messages(messages)

    def list_messages(self, conversation_id: str) -> list[Message]:
        rows = self.conn.execute(
            "SELECT * FROM messages WHERE conversation_id = ? ORDER BY timestamp ASC, id ASC",
            (conversation_id,),
        ).fetchall()
        return [Message(**dict(r)) for r in rows]

    # -- projects and tags -----------------------------------------------

    def resolve_or_create_project(self, path: str) -> int:
        """Return the project id for a working directory, creating it on first sight."""
        row = self.conn.execute("SELECT id FROM projects WHERE path = ?", (path,)).fetchone()
        if row:
            return row["id"]

        segments = [s for s in path.replace("\\", "/").split("/") if s]
        name = segments[-1] if segments else "Unknown"
        cur = self.conn.execute(
            "INSERT INTO projects (path, name) VALUES (?, ?)", (path, name)
        )
        self.conn.commit()
        return cur.lastrowid

    def add_tag(self, conversation_id: str, name: str) -> None:
        normalized = name.strip().lower()
        self.conn.execute("INSERT OR IGNORE INTO tags (name) VALUES (?)", (normalized,))
        self.conn.execute(
            """INSERT OR IGNORE INTO conversation_tags (conversation_id, tag_id)
               SELECT ?, id FROM tags WHERE name = ?""",
            (conversation_id, normalized),
        )
        self.conn.commit()

    def get_tags(self, conversation_id: str) -> list[str]:
        rows = self.conn.execute(
            """SELECT t.name FROM tags t
               JOIN conversation_tags ct ON ct.tag_id = t.id
               WHERE ct.conversation_id = ?
               ORDER BY t.name""",
            (conversation_id,),
        ).fetchall()
        return [r["name"] for r in rows]

    # -- bookkeeping -----------------------------------------------------

    def get_stats(self) -> dict:
        """Get overall database statistics."""
        conv_count = self.conn.execute("SELECT COUNT(*) FROM conversations").fetchone()[0]
        msg_count = self.conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
        stub_count = self.conn.execute(
            "SELECT COUNT(*) FROM conversations WHERE is_stub = 1"
        ).fetchone()[0]
        project_count = self.conn.execute("SELECT COUNT(*) FROM projects").fetchone()[0]
        date_range = self.conn.execute(
            "SELECT MIN(started_at), MAX(started_at) FROM conversations WHERE is_stub = 0"
        ).fetchone()

        return {
            "total_conversations": conv_count,
            "total_messages": msg_count,
            "stubs": stub_count,
            "projects": project_count,
            "date_range_start": date_range[0][:10] if date_range[0] else None,
            "date_range_end": date_range[1][:10] if date_range[1] else None,
            "avg_messages_per_conversation": round(msg_count / conv_count, 1) if conv_count else 0,
        }

    def record_import(self, source: str, files: int, messages: int):
        self.conn.execute(
            "INSERT INTO import_metadata (import_time, source, files_imported, messages_imported) VALUES (?, ?, ?, ?)",
            (_now(), source, files, messages),
        )
        self.conn.commit()

    def close(self):
        self.conn.close()

    def __enter__(self) -> ConversationStore:
        return self

    def __exit__(self, *exc) -> None:
        self.close()
