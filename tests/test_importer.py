"""Tests for import reconciliation: idempotency, stubs, duplicates and outcomes."""

import sqlite3
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import assistant_record, user_record
from convindex.importer import ImportReconciler
from convindex.parser import parse_file
from convindex.storage import ConversationStore

SESSION = "sess-1"


def two_turns(session: str = SESSION, prefix: str = "") -> list[dict]:
    return [
        user_record(f"{prefix}u1", session, "Set up the database", "2024-05-01T10:00:00Z"),
        assistant_record(f"{prefix}a1", session, "Create the tables first.", "2024-05-01T10:00:05Z"),
        user_record(f"{prefix}u2", session, "Then what?", "2024-05-01T10:01:00Z"),
        assistant_record(f"{prefix}a2", session, "Add indexes.", "2024-05-01T10:01:05Z"),
    ]


class TestImportFile:
    def test_new_conversation(self, store: ConversationStore, write_jsonl) -> None:
        path = write_jsonl("a.jsonl", two_turns())
        outcome = ImportReconciler(store).import_file(path)

        assert outcome.status == "ok"
        assert outcome.written == 4
        conv = store.find_conversation(SESSION)
        assert conv.message_count == 4
        assert conv.title == "Set up the database"
        assert conv.project_id is not None

    def test_reimport_is_idempotent(self, store: ConversationStore, write_jsonl) -> None:
        path = write_jsonl("a.jsonl", two_turns())
        reconciler = ImportReconciler(store)
        reconciler.import_file(path)

        second = reconciler.import_file(path)
        assert second.status == "skipped"
        assert second.reason == "already imported"

        forced = reconciler.import_file(path, skip_existing=False)
        assert forced.status == "skipped"
        assert forced.reason == "no new messages"
        assert forced.duplicates == 4

        assert len(store.list_messages(SESSION)) == 4
        assert store.find_conversation(SESSION).message_count == 4

    def test_duplicate_uuid_within_file(self, store: ConversationStore, write_jsonl) -> None:
        records = two_turns()
        records.append(user_record("u1", SESSION, "Set up the database", "2024-05-01T10:00:00Z"))
        outcome = ImportReconciler(store).import_file(write_jsonl("a.jsonl", records))

        assert outcome.status == "ok"
        assert outcome.written == 4
        assert outcome.duplicates == 1
        assert len(store.list_messages(SESSION)) == 4

    def test_stub_promoted_without_losing_tags(self, store: ConversationStore, write_jsonl) -> None:
        store.create_stub(SESSION)
        store.add_tag(SESSION, "important")

        outcome = ImportReconciler(store).import_file(write_jsonl("a.jsonl", two_turns()))

        assert outcome.status == "ok"
        conv = store.find_conversation(SESSION)
        assert not conv.is_stub
        assert conv.message_count == 4
        assert conv.title == "Set up the database"
        assert store.get_tags(SESSION) == ["important"]
        assert store.get_stats()["total_conversations"] == 1

    def test_second_file_with_same_id_keeps_first_metadata(
        self, store: ConversationStore, write_jsonl
    ) -> None:
        first = write_jsonl("first.jsonl", two_turns())
        other = [
            user_record("b1", SESSION, "A different title", "2024-06-01T10:00:00Z", cwd="/elsewhere"),
        ]
        second = write_jsonl("second.jsonl", other)
        reconciler = ImportReconciler(store)
        reconciler.import_file(first)

        assert reconciler.import_file(second).reason == "already imported"
        assert len(store.list_messages(SESSION)) == 4

        outcome = reconciler.import_file(second, skip_existing=False)
        assert outcome.status == "ok"
        assert outcome.written == 1

        conv = store.find_conversation(SESSION)
        assert conv.file_path == str(first)
        assert conv.title == "Set up the database"
        assert conv.cwd == "/home/dev/project"
        assert conv.message_count == 5

    def test_unparseable_file_skipped(self, store: ConversationStore, write_jsonl) -> None:
        outcome = ImportReconciler(store).import_file(write_jsonl("bad.jsonl", ["garbage"]))
        assert outcome.status == "skipped"
        assert outcome.reason == "unparseable"

    def test_reconcile_failure_is_reported(self, store: ConversationStore, write_jsonl) -> None:
        path = write_jsonl("a.jsonl", two_turns())
        store.conn.execute("DROP TABLE messages")

        outcome = ImportReconciler(store).import_file(path)
        assert outcome.status == "failed"
        assert outcome.error

    def test_failed_write_leaves_nothing_behind(self, store: ConversationStore, write_jsonl) -> None:
        path = write_jsonl("a.jsonl", two_turns())
        reconciler = ImportReconciler(store)
        original = store._insert_messages

        def locked(messages):
            original(messages)
            raise sqlite3.OperationalError("database is locked")

        with patch.object(store, "_insert_messages", side_effect=locked):
            assert reconciler.import_file(path).status == "failed"

        assert store.find_conversation(SESSION) is None

        retry = reconciler.import_file(path)
        assert retry.status == "ok"
        assert retry.written == 4
        assert len(store.list_messages(SESSION)) == 4
        assert store.find_conversation(SESSION).message_count == 4

    def test_failed_write_keeps_stub(self, store: ConversationStore, write_jsonl) -> None:
        store.create_stub(SESSION)
        store.add_tag(SESSION, "important")
        path = write_jsonl("a.jsonl", two_turns())

        with patch.object(store, "_insert_messages", side_effect=sqlite3.OperationalError("disk I/O error")):
            assert ImportReconciler(store).import_file(path).status == "failed"

        assert store.is_stub(SESSION)
        assert store.get_tags(SESSION) == ["important"]

    def test_parser_crash_is_reported(self, store: ConversationStore, write_jsonl) -> None:
        path = write_jsonl("a.jsonl", two_turns())
        with patch("convindex.importer.parse_file", side_effect=ValueError("bad bytes")):
            outcome = ImportReconciler(store).import_file(path)
        assert outcome.status == "failed"
        assert "bad bytes" in outcome.error

    def test_reconcile_without_messages(self, store: ConversationStore, write_jsonl) -> None:
        parsed = parse_file(write_jsonl("a.jsonl", two_turns()))
        parsed.messages = []
        assert ImportReconciler(store).reconcile(parsed) is None


class TestImportAll:
    def test_summary_counts(self, store: ConversationStore, write_jsonl, tmp_path: Path) -> None:
        write_jsonl("src/p1/a.jsonl", two_turns("s-a", "a"))
        write_jsonl("src/p1/b.jsonl", two_turns("s-b", "b"))
        write_jsonl("src/p2/empty.jsonl", ["not json"])
        progress = []

        summary = ImportReconciler(store).import_all(
            [tmp_path / "src"], on_progress=lambda done, total, outcome: progress.append((done, total))
        )

        assert summary.total_files == 3
        assert summary.imported == 2
        assert summary.skipped == 1
        assert summary.failed == 0
        assert summary.total_messages == 8
        assert progress == [(1, 3), (2, 3), (3, 3)]

    def test_failed_file_does_not_stop_batch(self, store: ConversationStore, write_jsonl, tmp_path: Path) -> None:
        write_jsonl("src/a.jsonl", two_turns("s-a", "a"))
        write_jsonl("src/b.jsonl", two_turns("s-b", "b"))
        reconciler = ImportReconciler(store)
        original = store.save_import

        def flaky(conversation_id, messages, **kwargs):
            if conversation_id == "s-a":
                raise RuntimeError("disk on fire")
            return original(conversation_id, messages, **kwargs)

        store.save_import = flaky
        summary = reconciler.import_all([tmp_path / "src"])

        assert summary.failed == 1
        assert summary.imported == 1
        assert summary.errors[0].file_path.endswith("a.jsonl")
        assert "disk on fire" in summary.errors[0].error

    def test_second_run_imports_nothing(self, store: ConversationStore, write_jsonl, tmp_path: Path) -> None:
        write_jsonl("src/a.jsonl", two_turns())
        reconciler = ImportReconciler(store)
        reconciler.import_all([tmp_path / "src"])

        summary = reconciler.import_all([tmp_path / "src"])
        assert summary.imported == 0
        assert summary.skipped == 1
        assert len(store.list_messages(SESSION)) == 4

    @pytest.mark.parametrize(
        "bad_records, imported",
        [
            # Non-string summary: title ignored, messages still imported
            ([{"type": "summary", "summary": {"text": "odd"}}] + two_turns("s-bad", "x"), 2),
            # Numeric session id: no usable identity, file is unparseable
            ([{**r, "sessionId": 12345} for r in two_turns("s-bad", "x")], 1),
            # List-valued role: falls back to the record type
            ([{**r, "message": {**r["message"], "role": ["user"]}} for r in two_turns("s-bad", "x")], 2),
        ],
    )
    def test_badly_typed_record_does_not_stop_batch(
        self, store: ConversationStore, write_jsonl, tmp_path: Path, bad_records, imported
    ) -> None:
        write_jsonl("src/a_bad.jsonl", bad_records)
        write_jsonl("src/b_good.jsonl", two_turns())

        summary = ImportReconciler(store).import_all([tmp_path / "src"])

        assert summary.failed == 0
        assert summary.imported == imported
        assert len(store.list_messages(SESSION)) == 4

    def test_import_files_uses_given_list(self, store: ConversationStore, write_jsonl, tmp_path: Path) -> None:
        chosen = write_jsonl("src/a.jsonl", two_turns("s-a", "a"))
        write_jsonl("src/b.jsonl", two_turns("s-b", "b"))

        summary = ImportReconciler(store).import_files([chosen], source="manual")

        assert summary.total_files == 1
        assert summary.imported == 1
        assert store.find_conversation("s-b") is None
