from __future__ import annotations

from datetime import datetime, timedelta, timezone

from paraconnect.sync.snapshots import (
    document_key,
    document_snapshot,
    has_changed,
    merge_documents,
    message_snapshot,
    prune_optimistic,
    task_snapshot,
)
from paraconnect.types import Document, Message, Task

BASE = datetime(2026, 1, 3, 10, 0, tzinfo=timezone.utc)


def _doc(doc_id=None, key=None, name="brief.pdf", minutes=0) -> Document:
    return Document(
        id=doc_id,
        case_id="case-1",
        storage_key=key,
        original_name=name,
        created_at=BASE + timedelta(minutes=minutes),
    )


def test_merge_documents_has_unique_keys_and_server_first():
    server = [_doc("f1"), _doc("f2", minutes=5)]
    optimistic = [_doc("f2", minutes=5), _doc(None, key="cases/1/new.pdf", name="new.pdf", minutes=9)]

    merged = merge_documents(server, optimistic)

    keys = [document_key(item) for item in merged]
    assert len(keys) == len(set(keys))
    assert merged[:2] == server
    assert merged[2].storage_key == "cases/1/new.pdf"


def test_merge_documents_dedupes_within_server_list():
    merged = merge_documents([_doc("f1"), _doc("f1")], [])
    assert len(merged) == 1


def test_document_key_falls_back_to_storage_key_then_name():
    assert document_key(_doc("f1", key="k")) == "id:f1"
    assert document_key(_doc(None, key="k")) == "key:k"
    assert document_key(_doc(None, name="memo.docx")).startswith("name:memo.docx:2026-01-03")


def test_prune_optimistic_drops_confirmed_entries():
    optimistic = [_doc("f3"), _doc("f4")]
    assert prune_optimistic([_doc("f3")], optimistic) == [_doc("f4")]


def test_task_signature_is_order_and_completion_sensitive():
    tasks = [Task("Draft"), Task("Index", True)]
    baseline = task_snapshot(tasks)

    assert task_snapshot([Task("Draft"), Task("Index", True)]) == baseline
    assert has_changed(baseline, task_snapshot(list(reversed(tasks)))) is True
    assert has_changed(baseline, task_snapshot([Task("Draft", True), Task("Index", True)])) is True
    assert baseline.signature == "Draft:0|Index:1"


def test_first_load_always_counts_as_changed():
    assert has_changed(None, task_snapshot([])) is True
    assert has_changed(None, message_snapshot([])) is True


def test_message_snapshot_tracks_latest_entry():
    messages = [
        Message(id="m1", case_id="case-1", sender_id="a1", sender_role="attorney", text="hi", created_at=BASE),
        Message(
            id="m2",
            case_id="case-1",
            sender_id="p1",
            sender_role="paralegal",
            text="hello",
            created_at=BASE + timedelta(minutes=3),
        ),
    ]

    snapshot = message_snapshot(messages)

    assert snapshot.count == 2
    assert snapshot.latest_id == "m2"
    assert snapshot.latest_timestamp == BASE + timedelta(minutes=3)
    assert has_changed(snapshot, message_snapshot(list(messages))) is False


def test_document_snapshot_uses_document_key():
    snapshot = document_snapshot([_doc("f1"), _doc(None, key="k2", minutes=2)])
    assert snapshot.latest_id == "key:k2"
