from __future__ import annotations

import asyncio
import copy
import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Sequence

from paraconnect.clients.base import CaseApiClient, CaseApiError, ProgressCallback
from paraconnect.clients.payloads import (
    case_from_api,
    document_from_api,
    format_datetime,
    message_from_api,
    tasks_to_payload,
)
from paraconnect.types import DOCUMENT_STATUSES, Case, CaseEvent, Document, Message, Task


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MockCaseApiClient(CaseApiClient):
    """
    In-memory stand-in for the case API backed by a static JSON fixture.

    It keeps the server-side rules the workspace depends on (withdrawal pauses, zero payouts,
    payout bounds) and publishes push events to open streams after every mutation.
    """

    def __init__(
        self,
        fixture_path: Path,
        *,
        viewer_id: str | None = None,
        viewer_role: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        with fixture_path.open("r", encoding="utf-8") as fh:
            payload = json.load(fh)

        self.viewer_id = viewer_id
        self.viewer_role = viewer_role
        self.clock = clock
        self.stream_available = True
        self.calls: list[tuple[str, str]] = []
        self.read_marks: list[tuple[str, datetime]] = []
        self._cases: dict[str, dict[str, Any]] = {}
        self._messages: dict[str, list[dict[str, Any]]] = {}
        self._files: dict[str, list[dict[str, Any]]] = {}
        self._subscribers: dict[str, set[asyncio.Queue[CaseEvent | None]]] = {}

        for case_payload in payload.get("cases", []):
            raw = copy.deepcopy(case_payload)
            case_id = str(raw.get("id") or raw.get("_id"))
            raw["id"] = case_id
            self._messages[case_id] = raw.pop("messages", [])
            self._files[case_id] = raw.pop("files", [])
            self._cases[case_id] = raw

    async def aclose(self) -> None:
        for queues in self._subscribers.values():
            for queue in queues:
                queue.put_nowait(None)

    def publish(self, case_id: str, event: str, data: dict[str, Any] | None = None) -> None:
        message = CaseEvent(name=event, data=data or {"at": format_datetime(self.clock())})
        for queue in self._subscribers.get(str(case_id), set()):
            queue.put_nowait(message)

    def update_case(self, case_id: str, **fields: Any) -> None:
        """Apply a change made outside this session, such as escrow funding, and announce it."""

        raw = self._case(case_id)
        raw.update(fields)
        self._touch(raw)
        self.publish(case_id, "case")

    # Cases

    async def get_case(self, case_id: str) -> Case:
        self.calls.append(("get_case", case_id))
        return case_from_api(copy.deepcopy(self._case(case_id)))

    async def update_tasks(self, case_id: str, tasks: Sequence[Task]) -> None:
        self.calls.append(("update_tasks", case_id))
        raw = self._case(case_id)
        raw["tasks"] = tasks_to_payload(tasks)
        self._touch(raw)
        self.publish(case_id, "tasks")

    async def complete_case(self, case_id: str) -> None:
        self.calls.append(("complete_case", case_id))
        raw = self._case(case_id)
        self._require_role("attorney")
        tasks = raw.get("tasks") or []
        if not tasks or not all(task.get("completed") for task in tasks):
            raise CaseApiError("All tasks must be completed before releasing funds", status_code=400)
        if raw.get("paymentReleased"):
            raise CaseApiError("Payment already released", status_code=409)
        raw.update(status="completed", paymentReleased=True, readOnly=True)
        raw["completedAt"] = format_datetime(self.clock())
        self._touch(raw)
        self.publish(case_id, "case")

    async def withdraw(self, case_id: str) -> None:
        self.calls.append(("withdraw", case_id))
        raw = self._case(case_id)
        self._require_role("paralegal")
        if case_from_api(raw).paralegal_id != str(self.viewer_id):
            raise CaseApiError("Only the assigned paralegal can withdraw", status_code=403)
        if raw.get("status") in {"paused", "disputed", "completed", "closed"}:
            raise CaseApiError("Case cannot be withdrawn from right now", status_code=400)
        now = format_datetime(self.clock())
        raw.update(status="paused", pauseReason="paralegal_withdrew", pausedAt=now, withdrawnAt=now)
        if not any(task.get("completed") for task in raw.get("tasks") or []):
            # Nothing was delivered, so the withdrawal settles immediately at zero.
            raw.update(partialPayoutAmount=0, payoutFinalizedAt=now, payoutFinalizedType="zero_auto")
        self._touch(raw)
        self.publish(case_id, "case")

    async def finalize_partial_payout(self, case_id: str, amount_cents: int) -> None:
        self.calls.append(("finalize_partial_payout", case_id))
        raw = self._case(case_id)
        self._require_role("attorney")
        self._require_open_withdrawal(raw)
        remaining = max(0, int(raw.get("lockedTotalAmount") or 0) - int(raw.get("partialPayoutAmount") or 0))
        if not 0 <= int(amount_cents) <= remaining:
            raise CaseApiError("Amount exceeds the remaining balance", status_code=400)
        raw.update(
            partialPayoutAmount=int(amount_cents),
            payoutFinalizedAt=format_datetime(self.clock()),
            payoutFinalizedType="partial",
        )
        self._touch(raw)
        self.publish(case_id, "case")

    async def reject_payout(self, case_id: str) -> None:
        self.calls.append(("reject_payout", case_id))
        raw = self._case(case_id)
        self._require_role("attorney")
        self._require_open_withdrawal(raw)
        raw.update(
            status="closed",
            payoutFinalizedAt=format_datetime(self.clock()),
            payoutFinalizedType="rejected",
        )
        self._touch(raw)
        self.publish(case_id, "case")

    async def relist(self, case_id: str) -> None:
        self.calls.append(("relist", case_id))
        raw = self._case(case_id)
        self._require_role("attorney")
        if not raw.get("payoutFinalizedAt") or raw.get("relistedAt"):
            raise CaseApiError("Case cannot be relisted", status_code=400)
        raw.update(status="open", paralegalId=None, paralegal=None, relistedAt=format_datetime(self.clock()))
        self._touch(raw)
        self.publish(case_id, "case")

    async def open_dispute(self, case_id: str, message: str) -> None:
        self.calls.append(("open_dispute", case_id))
        raw = self._case(case_id)
        if not message.strip():
            raise CaseApiError("message is required", status_code=400)
        raw.setdefault("disputes", []).append(
            {"message": message.strip(), "raisedBy": self.viewer_id, "status": "open"}
        )
        raw["status"] = "disputed"
        self._touch(raw)
        self.publish(case_id, "case")

    # Messages

    async def list_messages(self, case_id: str) -> list[Message]:
        self.calls.append(("list_messages", case_id))
        self._case(case_id)
        return [message_from_api(item, case_id) for item in copy.deepcopy(self._messages[case_id])]

    async def post_message(self, case_id: str, text: str) -> Message | None:
        self.calls.append(("post_message", case_id))
        self._case(case_id)
        if not text.strip():
            raise CaseApiError("text required", status_code=400)
        raw = {
            "id": uuid.uuid4().hex,
            "caseId": case_id,
            "senderId": self.viewer_id,
            "senderRole": self.viewer_role,
            "type": "text",
            "text": text.strip(),
            "createdAt": format_datetime(self.clock()),
        }
        self._messages[case_id].append(raw)
        self.publish(case_id, "messages")
        return message_from_api(raw, case_id)

    async def mark_messages_read(self, case_id: str, up_to: datetime) -> None:
        self.calls.append(("mark_messages_read", case_id))
        self.read_marks.append((case_id, up_to))

    # Documents

    async def list_documents(self, case_id: str) -> list[Document]:
        self.calls.append(("list_documents", case_id))
        self._case(case_id)
        return [document_from_api(item, case_id) for item in copy.deepcopy(self._files[case_id])]

    async def upload_case_file(
        self,
        case_id: str,
        file_name: str,
        content: bytes,
        mime_type: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Document:
        self.calls.append(("upload_case_file", case_id))
        self._case(case_id)
        created = self.clock()
        raw = {
            "id": uuid.uuid4().hex,
            "caseId": case_id,
            "userId": self.viewer_id,
            "originalName": file_name,
            "storageKey": f"cases/{case_id}/documents/{int(created.timestamp())}-{file_name}",
            "mimeType": mime_type,
            "size": len(content),
            "uploadedByRole": self.viewer_role,
            "status": "pending_review",
            "createdAt": format_datetime(created),
        }
        self._files[case_id].append(raw)
        if on_progress is not None:
            on_progress(1.0)
        self.publish(case_id, "documents")
        return document_from_api(raw, case_id)

    async def update_document_status(self, case_id: str, file_id: str, status: str) -> Document | None:
        self.calls.append(("update_document_status", case_id))
        self._require_role("attorney")
        if status not in DOCUMENT_STATUSES:
            raise CaseApiError("Invalid status", status_code=400)
        for raw in self._files.get(str(case_id), []):
            if str(raw.get("id") or raw.get("_id")) == str(file_id):
                raw["status"] = status
                self.publish(case_id, "documents")
                return document_from_api(raw, case_id)
        raise CaseApiError("File not found", status_code=404)

    # Realtime

    @asynccontextmanager
    async def open_case_stream(self, case_id: str) -> AsyncIterator[AsyncIterator[CaseEvent]]:
        self.calls.append(("open_case_stream", case_id))
        if not self.stream_available:
            raise CaseApiError("Case stream unavailable", status_code=503)
        self._case(case_id)
        queue: asyncio.Queue[CaseEvent | None] = asyncio.Queue()
        subscribers = self._subscribers.setdefault(str(case_id), set())
        subscribers.add(queue)
        try:
            yield _drain_queue(queue)
        finally:
            subscribers.discard(queue)
            if not subscribers:
                self._subscribers.pop(str(case_id), None)

    def subscriber_count(self, case_id: str) -> int:
        return len(self._subscribers.get(str(case_id), set()))

    # Helpers

    def _case(self, case_id: str) -> dict[str, Any]:
        raw = self._cases.get(str(case_id))
        if raw is None:
            raise CaseApiError("Case not found", status_code=404)
        return raw

    def _require_role(self, role: str) -> None:
        if self.viewer_role and self.viewer_role != role:
            raise CaseApiError(f"Only the {role} can do that", status_code=403)

    @staticmethod
    def _require_open_withdrawal(raw: dict[str, Any]) -> None:
        if raw.get("status") != "paused" or raw.get("pauseReason") != "paralegal_withdrew":
            raise CaseApiError("Case is not awaiting a withdrawal payout", status_code=400)
        if raw.get("payoutFinalizedAt"):
            raise CaseApiError("Withdrawal payout already finalized", status_code=409)

    def _touch(self, raw: dict[str, Any]) -> None:
        raw["updatedAt"] = format_datetime(self.clock())


async def _drain_queue(queue: asyncio.Queue[CaseEvent | None]) -> AsyncIterator[CaseEvent]:
    while True:
        event = await queue.get()
        if event is None:
            return
        yield event
