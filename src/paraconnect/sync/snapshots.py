from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Sequence

from paraconnect.types import Document, Message, Task

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True, slots=True)
class CollectionSnapshot:
    """Cheap fingerprint of a message or document list."""

    count: int
    latest_timestamp: datetime | None
    latest_id: str | None


@dataclass(frozen=True, slots=True)
class TaskSnapshot:
    """Task identity is positional, so the fingerprint is an ordered signature."""

    count: int
    signature: str


def message_snapshot(messages: Sequence[Message]) -> CollectionSnapshot:
    if not messages:
        return CollectionSnapshot(count=0, latest_timestamp=None, latest_id=None)
    latest = max(messages, key=lambda item: item.created_at or _EPOCH)
    return CollectionSnapshot(count=len(messages), latest_timestamp=latest.created_at, latest_id=latest.id)


def document_snapshot(documents: Sequence[Document]) -> CollectionSnapshot:
    if not documents:
        return CollectionSnapshot(count=0, latest_timestamp=None, latest_id=None)
    latest = max(documents, key=lambda item: item.created_at or _EPOCH)
    return CollectionSnapshot(
        count=len(documents),
        latest_timestamp=latest.created_at,
        latest_id=document_key(latest),
    )


def task_snapshot(tasks: Sequence[Task]) -> TaskSnapshot:
    signature = "|".join(f"{task.title}:{1 if task.completed else 0}" for task in tasks)
    return TaskSnapshot(count=len(tasks), signature=signature)


def has_changed(
    previous: CollectionSnapshot | TaskSnapshot | None,
    current: CollectionSnapshot | TaskSnapshot,
) -> bool:
    # First load always counts as a change.
    if previous is None:
        return True
    return previous != current


def document_key(document: Document) -> str:
    if document.id:
        return f"id:{document.id}"
    if document.storage_key:
        return f"key:{document.storage_key}"
    stamp = document.created_at.isoformat() if document.created_at else ""
    return f"name:{document.original_name}:{stamp}"


def merge_documents(server: Iterable[Document], optimistic: Iterable[Document]) -> list[Document]:
    """
    Combine the server list with client-known uploads the server has not listed yet.

    Server entries keep their order and always win; an optimistic entry is only appended when no
    entry with the same key is already present.
    """

    merged: list[Document] = []
    seen: set[str] = set()
    for document in (*server, *optimistic):
        key = document_key(document)
        if key in seen:
            continue
        seen.add(key)
        merged.append(document)
    return merged


def prune_optimistic(server: Iterable[Document], optimistic: Iterable[Document]) -> list[Document]:
    confirmed = {document_key(document) for document in server}
    return [document for document in optimistic if document_key(document) not in confirmed]
