from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

DOCUMENT_STATUSES = frozenset({"pending_review", "approved", "attorney_revision"})


@dataclass(slots=True)
class Viewer:
    id: str
    role: str

    @property
    def is_attorney(self) -> bool:
        return self.role == "attorney"

    @property
    def is_paralegal(self) -> bool:
        return self.role == "paralegal"


@dataclass(slots=True)
class Task:
    title: str
    completed: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload = dict(self.metadata)
        payload["title"] = self.title
        payload["completed"] = self.completed
        return payload


@dataclass(slots=True)
class Case:
    id: str
    title: str
    status: str | None
    escrow_status: str | None = None
    escrow_intent_id: str | None = None
    attorney_id: str | None = None
    paralegal_id: str | None = None
    applicant_ids: list[str] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    pause_reason: str | None = None
    paused_at: datetime | None = None
    withdrawn_at: datetime | None = None
    dispute_deadline: datetime | None = None
    locked_total_cents: int = 0
    partial_payout_cents: int = 0
    payout_finalized_at: datetime | None = None
    payout_finalized_type: str | None = None
    relisted_at: datetime | None = None
    payment_released: bool = False
    read_only: bool = False
    currency: str = "usd"
    created_at: datetime | None = None
    updated_at: datetime | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Message:
    id: str
    case_id: str
    sender_id: str | None
    sender_role: str | None
    text: str
    created_at: datetime | None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Document:
    id: str | None
    case_id: str
    storage_key: str | None
    original_name: str
    mime_type: str | None = None
    size: int = 0
    uploaded_by: str | None = None
    uploaded_by_role: str | None = None
    status: str = "pending_review"
    created_at: datetime | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PendingAttachment:
    id: str
    case_id: str
    file_name: str
    size: int
    last_modified: float | None
    mime_type: str | None
    content: bytes = field(repr=False, default=b"")
    status: str = "queued"  # queued|uploading|uploaded|failed|canceled
    progress: float = 0.0
    error: str | None = None

    @property
    def retryable(self) -> bool:
        return self.status in {"queued", "failed", "canceled"}


@dataclass(slots=True)
class CaseEvent:
    name: str
    data: Mapping[str, Any] = field(default_factory=dict)
    retry_ms: int | None = None
