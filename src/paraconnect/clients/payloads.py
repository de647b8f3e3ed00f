from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from paraconnect.types import Case, Document, Message, Task

logger = logging.getLogger(__name__)

_COLLECTION_KEYS = ("items", "messages", "files", "documents", "cases", "results")


def extract_items(payload: Any, *keys: str) -> list[dict[str, Any]]:
    """
    Pull a list of records out of a response body.

    The API has returned collections under several envelope names over time, so every known key
    is tried before giving up.
    """

    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if not isinstance(payload, Mapping):
        return []
    for key in keys or _COLLECTION_KEYS:
        value = payload.get(key)
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
    return []


def extract_record(payload: Any, *keys: str) -> dict[str, Any] | None:
    if not isinstance(payload, Mapping):
        return None
    for key in keys:
        value = payload.get(key)
        if isinstance(value, Mapping):
            return dict(value)
    return dict(payload)


def error_message(payload: Any, fallback: str) -> str:
    if isinstance(payload, Mapping):
        for key in ("error", "msg", "message", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return fallback


def case_from_api(raw: Mapping[str, Any]) -> Case:
    return Case(
        id=_ref_id(raw.get("id") or raw.get("_id")) or "",
        title=str(raw.get("title") or ""),
        status=raw.get("status"),
        escrow_status=raw.get("escrowStatus"),
        escrow_intent_id=raw.get("escrowIntentId"),
        attorney_id=_ref_id(raw.get("attorney")) or _ref_id(raw.get("attorneyId")),
        paralegal_id=_ref_id(raw.get("paralegal")) or _ref_id(raw.get("paralegalId")),
        applicant_ids=_applicant_ids(raw.get("applicants")),
        tasks=[_task_from_api(item) for item in raw.get("tasks") or [] if isinstance(item, Mapping)],
        pause_reason=raw.get("pauseReason") or raw.get("pausedReason"),
        paused_at=parse_datetime(raw.get("pausedAt")),
        withdrawn_at=parse_datetime(raw.get("withdrawnAt")),
        dispute_deadline=parse_datetime(raw.get("disputeDeadlineAt") or raw.get("disputeDeadline")),
        locked_total_cents=_cents(_first_present(raw, "lockedTotalAmount", "totalAmount")),
        partial_payout_cents=_cents(raw.get("partialPayoutAmount")),
        payout_finalized_at=parse_datetime(raw.get("payoutFinalizedAt")),
        payout_finalized_type=raw.get("payoutFinalizedType"),
        relisted_at=parse_datetime(raw.get("relistedAt")),
        payment_released=bool(raw.get("paymentReleased")),
        read_only=bool(raw.get("readOnly")),
        currency=str(raw.get("currency") or "usd").lower(),
        created_at=parse_datetime(raw.get("createdAt")),
        updated_at=parse_datetime(raw.get("updatedAt")),
        metadata=dict(raw),
    )


def message_from_api(raw: Mapping[str, Any], case_id: str) -> Message:
    sender = raw.get("senderId") or raw.get("sender")
    sender_role = raw.get("senderRole")
    if not sender_role and isinstance(sender, Mapping):
        sender_role = sender.get("role")
    text = raw.get("text")
    if not isinstance(text, str):
        content = raw.get("content")
        text = content if isinstance(content, str) else ""
    return Message(
        id=_ref_id(raw.get("id") or raw.get("_id")) or "",
        case_id=_ref_id(raw.get("caseId")) or str(case_id),
        sender_id=_ref_id(sender),
        sender_role=sender_role,
        text=text,
        created_at=parse_datetime(raw.get("createdAt")),
        metadata=dict(raw),
    )


def document_from_api(raw: Mapping[str, Any], case_id: str) -> Document:
    return Document(
        id=_ref_id(raw.get("id") or raw.get("_id")),
        case_id=_ref_id(raw.get("caseId")) or str(case_id),
        storage_key=raw.get("storageKey") or raw.get("key") or None,
        original_name=str(
            raw.get("originalName") or raw.get("original") or raw.get("filename") or raw.get("name") or "file"
        ),
        mime_type=raw.get("mimeType") or raw.get("mime"),
        size=int(raw.get("size") or 0),
        uploaded_by=_ref_id(raw.get("userId") or raw.get("uploadedBy")),
        uploaded_by_role=raw.get("uploadedByRole"),
        status=str(raw.get("status") or "pending_review"),
        created_at=parse_datetime(raw.get("createdAt") or raw.get("uploadedAt")),
        metadata=dict(raw),
    )


def tasks_to_payload(tasks: Iterable[Task]) -> list[dict[str, Any]]:
    return [task.to_payload() for task in tasks]


def parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unable to parse datetime value %s", value)
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _task_from_api(raw: Mapping[str, Any]) -> Task:
    completed = raw.get("completed")
    if completed is None:
        completed = raw.get("done") or str(raw.get("status") or "").lower() in {"done", "completed"}
    metadata = {key: value for key, value in raw.items() if key not in {"title", "completed"}}
    return Task(title=str(raw.get("title") or ""), completed=bool(completed), metadata=metadata)


def _ref_id(value: Any) -> str | None:
    # Populated references arrive as objects, bare references as strings.
    if isinstance(value, Mapping):
        value = value.get("_id") or value.get("id")
    if value is None or value == "":
        return None
    return str(value)


def _applicant_ids(entries: Any) -> list[str]:
    ids: list[str] = []
    for entry in entries or []:
        if not isinstance(entry, Mapping):
            continue
        applicant = _ref_id(entry.get("paralegalId")) or _ref_id(entry.get("paralegal"))
        if applicant:
            ids.append(applicant)
    return ids


def _cents(value: Any) -> int:
    if value is None:
        return 0
    try:
        return max(0, round(float(value)))
    except (TypeError, ValueError):
        return 0


def _first_present(raw: Mapping[str, Any], *keys: str) -> Any:
    # Zero is a real amount; only a missing or null key falls through.
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None
