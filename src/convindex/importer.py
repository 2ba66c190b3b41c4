"""Import pipeline: transcript files → parsing → reconciliation against the store."""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Iterable

from .models import (
    Conversation,
    FileError,
    ImportOutcome,
    ImportSummary,
    ParsedConversation,
)
from .parser import find_transcript_files, parse_file
from .storage import ConversationStore

logger = logging.getLogger(__name__)


class ImportReconciler:
    """Writes parsed conversations into the store without duplicating anything.

    A conversation that is new is created; one that exists as a stub is
    promoted in place (its tags and title survive); one that is already fully
    imported keeps its metadata and, unless ``skip_existing``, only gains
    messages whose ids it has not seen.
    """

    def __init__(self, store: ConversationStore):
        self.store = store
        self.last_duplicates = 0

    def reconcile(self, parsed: ParsedConversation, skip_existing: bool = True) -> int | None:
        """Apply one parsed conversation to the store.

        Returns the number of messages written (0 when skipped as already
        imported), or None when there is nothing to reconcile.
        """
        self.last_duplicates = 0
        if not parsed.messages:
            return None

        existing = self.store.find_conversation(parsed.id)

        if existing is not None and not existing.is_stub and skip_existing:
            return 0

        record = None
        if existing is None or existing.is_stub:
            record = self._to_record(parsed)

        # Conversation row and messages commit together or not at all
        inserted, duplicates = self.store.save_import(
            parsed.id, parsed.messages, record=record, promote=existing is not None
        )
        self.last_duplicates = duplicates
        if duplicates:
            logger.debug("%s: %d duplicate message(s) skipped", parsed.id, duplicates)

        return inserted

    def _to_record(self, parsed: ParsedConversation) -> Conversation:
        project_id = None
        if parsed.project_path:
            project_id = self.store.resolve_or_create_project(parsed.project_path)

        started_at = parsed.started_at or min(m.timestamp for m in parsed.messages)
        return Conversation(
            id=parsed.id,
            file_path=parsed.file_path,
            project_id=project_id,
            project_path=parsed.project_path,
            cwd=parsed.cwd,
            started_at=started_at,
            ended_at=parsed.ended_at,
            message_count=len(parsed.messages),
            title=parsed.title,
            is_title_auto_generated=parsed.title is not None,
        )

    def import_file(self, file_path: str | Path, skip_existing: bool = True) -> ImportOutcome:
        """Parse and reconcile one file. Never raises for per-file problems."""
        path = str(file_path)
        try:
            parsed = parse_file(file_path)
            if parsed is None:
                return ImportOutcome(file_path=path, status="skipped", reason="unparseable")
            written = self.reconcile(parsed, skip_existing=skip_existing)
        except Exception as e:
            logger.warning("Failed to import %s: %s", path, e, exc_info=True)
            return ImportOutcome(file_path=path, status="failed", error=str(e))

        if written is None:
            return ImportOutcome(file_path=path, status="skipped", reason="unparseable")
        if written == 0:
            reason = "no new messages" if self.last_duplicates else "already imported"
            return ImportOutcome(
                file_path=path,
                status="skipped",
                reason=reason,
                duplicates=self.last_duplicates,
            )
        return ImportOutcome(
            file_path=path,
            status="ok",
            written=written,
            duplicates=self.last_duplicates,
        )

    def import_all(
        self,
        source_dirs: Iterable[str | Path],
        skip_existing: bool = True,
        on_progress: Callable[[int, int, ImportOutcome], None] | None = None,
    ) -> ImportSummary:
        """Import every transcript file found under the given directories."""
        source_dirs = [Path(d) for d in source_dirs]
        return self.import_files(
            find_transcript_files(source_dirs),
            source=", ".join(str(d) for d in source_dirs),
            skip_existing=skip_existing,
            on_progress=on_progress,
        )

    def import_files(
        self,
        files: list[Path],
        source: str,
        skip_existing: bool = True,
        on_progress: Callable[[int, int, ImportOutcome], None] | None = None,
    ) -> ImportSummary:
        """Import an already collected list of transcript files, in order."""
        start = time.monotonic()
        summary = ImportSummary(total_files=len(files))

        for i, file_path in enumerate(files, 1):
            outcome = self.import_file(file_path, skip_existing=skip_existing)
            self._fold(summary, outcome)
            if on_progress:
                on_progress(i, len(files), outcome)

        summary.duration_ms = int((time.monotonic() - start) * 1000)
        self.store.record_import(
            source=source,
            files=summary.imported,
            messages=summary.total_messages,
        )
        return summary

    @staticmethod
    def _fold(summary: ImportSummary, outcome: ImportOutcome) -> None:
        summary.duplicates += outcome.duplicates
        if outcome.status == "ok":
            summary.imported += 1
            summary.total_messages += outcome.written
        elif outcome.status == "skipped":
            summary.skipped += 1
        else:
            summary.failed += 1
            summary.errors.append(
                FileError(file_path=outcome.file_path, error=outcome.error or "unknown error")
            )
