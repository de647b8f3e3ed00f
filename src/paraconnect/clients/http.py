from __future__ import annotations

import asyncio
import io
import logging
import random
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Sequence

import httpx
from httpx_sse import EventSource, SSEError, aconnect_sse

from paraconnect.clients.base import CaseApiClient, CaseApiError, ProgressCallback
from paraconnect.clients.payloads import (
    case_from_api,
    document_from_api,
    error_message,
    extract_items,
    extract_record,
    format_datetime,
    message_from_api,
    tasks_to_payload,
)
from paraconnect.types import Case, CaseEvent, Document, Message, Task

logger = logging.getLogger(__name__)
_RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}
_MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# Tried in order; only "endpoint not found" responses advance to the next shape.
UPLOAD_PATHS = (
    "/api/uploads/case/{case_id}",
    "/api/uploads/cases/{case_id}",
    "/api/cases/{case_id}/files",
    "/api/cases/{case_id}/documents",
)


class HttpCaseApiClient(CaseApiClient):
    """
    Client for the ParaConnect case workspace API.

    Reads retry transient failures with bounded backoff. Mutations carry the CSRF token the
    server hands out at `/api/csrf` and are only replayed once, when that token has expired.
    """

    def __init__(
        self,
        base_url: str,
        session_token: str | None = None,
        *,
        timeout: float = 30.0,
        user_agent: str = "paraconnect-workspace/0.1",
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        max_backoff_seconds: float = 8.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._max_backoff_seconds = max_backoff_seconds
        self._csrf_token: str | None = None
        self._owned_client = client is None

        if client is None:
            token = normalize_session_token(session_token)
            client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={"User-Agent": user_agent, "Accept": "application/json"},
                cookies={"token": token} if token else None,
                timeout=timeout,
                follow_redirects=True,
            )
        self._client = client

    async def aclose(self) -> None:
        if self._owned_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpCaseApiClient":
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    # Cases

    async def get_case(self, case_id: str) -> Case:
        payload = await self._get_json(f"/api/cases/{case_id}")
        record = extract_record(payload, "case")
        if not record:
            raise CaseApiError(f"Case {case_id} not found", status_code=404)
        return case_from_api(record)

    async def update_tasks(self, case_id: str, tasks: Sequence[Task]) -> None:
        await self._mutate("PATCH", f"/api/cases/{case_id}", json={"tasks": tasks_to_payload(tasks)})

    async def complete_case(self, case_id: str) -> None:
        await self._mutate("POST", f"/api/cases/{case_id}/complete")

    async def withdraw(self, case_id: str) -> None:
        await self._mutate("POST", f"/api/cases/{case_id}/withdraw")

    async def finalize_partial_payout(self, case_id: str, amount_cents: int) -> None:
        await self._mutate(
            "POST", f"/api/cases/{case_id}/partial-payout", json={"amountCents": int(amount_cents)}
        )

    async def reject_payout(self, case_id: str) -> None:
        await self._mutate("POST", f"/api/cases/{case_id}/reject-payout")

    async def relist(self, case_id: str) -> None:
        await self._mutate("POST", f"/api/cases/{case_id}/relist")

    async def open_dispute(self, case_id: str, message: str) -> None:
        await self._mutate("POST", f"/api/disputes/{case_id}", json={"message": message})

    # Messages

    async def list_messages(self, case_id: str) -> list[Message]:
        payload = await self._get_json(f"/api/messages/{case_id}")
        return [message_from_api(item, case_id) for item in extract_items(payload, "messages", "items")]

    async def post_message(self, case_id: str, text: str) -> Message | None:
        payload = await self._mutate("POST", f"/api/messages/{case_id}", json={"text": text})
        record = extract_record(payload, "message")
        return message_from_api(record, case_id) if record else None

    async def mark_messages_read(self, case_id: str, up_to: datetime) -> None:
        await self._mutate("POST", f"/api/messages/{case_id}/read", json={"upTo": format_datetime(up_to)})

    # Documents

    async def list_documents(self, case_id: str) -> list[Document]:
        payload = await self._get_json(f"/api/uploads/case/{case_id}")
        return [
            document_from_api(item, case_id)
            for item in extract_items(payload, "files", "documents", "items")
        ]

    async def upload_case_file(
        self,
        case_id: str,
        file_name: str,
        content: bytes,
        mime_type: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Document:
        last_error: CaseApiError | None = None
        for template in UPLOAD_PATHS:
            path = template.format(case_id=case_id)
            reader = _ProgressReader(content, on_progress)
            try:
                payload = await self._mutate(
                    "POST",
                    path,
                    files={"file": (file_name, reader, mime_type or "application/octet-stream")},
                    data={"caseId": case_id},
                )
            except CaseApiError as exc:
                if not exc.endpoint_missing:
                    raise
                logger.debug("Upload endpoint unavailable, trying next", extra={"path": path})
                last_error = exc
                continue
            record = extract_record(payload, "file", "document", "upload")
            if not record:
                raise CaseApiError("Upload response did not include a document record")
            if on_progress is not None:
                on_progress(1.0)
            return document_from_api(record, case_id)

        raise CaseApiError(
            "No upload endpoint accepted the file",
            status_code=last_error.status_code if last_error else None,
        )

    async def update_document_status(self, case_id: str, file_id: str, status: str) -> Document | None:
        payload = await self._mutate(
            "PATCH", f"/api/cases/{case_id}/files/{file_id}/status", json={"status": status}
        )
        record = extract_record(payload, "file", "document")
        return document_from_api(record, case_id) if record else None

    # Realtime

    @asynccontextmanager
    async def open_case_stream(self, case_id: str) -> AsyncIterator[AsyncIterator[CaseEvent]]:
        path = f"/api/cases/{case_id}/stream"
        timeout = httpx.Timeout(self._timeout, read=None)
        try:
            async with aconnect_sse(self._client, "GET", path, timeout=timeout) as source:
                response = source.response
                if response.status_code >= 400:
                    await response.aread()
                    raise CaseApiError(
                        error_message(_safe_json(response), f"Case stream rejected ({response.status_code})"),
                        status_code=response.status_code,
                    )
                yield _iter_case_events(source)
        except httpx.HTTPError as exc:
            raise CaseApiError(f"Case stream failed: {exc}") from exc

    # Plumbing

    async def fetch_csrf_token(self, *, force: bool = False) -> str:
        if self._csrf_token and not force:
            return self._csrf_token
        payload = await self._get_json("/api/csrf")
        token = payload.get("csrfToken") if isinstance(payload, dict) else None
        self._csrf_token = str(token or "")
        return self._csrf_token

    async def _get_json(self, path: str, *, params: dict[str, Any] | None = None) -> Any:
        response = await self._request_with_retry(path, params=params)
        return _safe_json(response)

    async def _request_with_retry(self, path: str, *, params: dict[str, Any] | None) -> httpx.Response:
        for attempt in range(self._max_retries + 1):
            try:
                response = await self._client.get(path, params=params)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                if attempt >= self._max_retries:
                    raise CaseApiError(f"Request to {path} failed: {exc}") from exc
                wait_seconds = self._compute_backoff(attempt)
                logger.warning(
                    "Retrying API request after transport failure",
                    extra={"path": path, "attempt": attempt + 1, "wait_seconds": wait_seconds, "error": str(exc)},
                )
                await asyncio.sleep(wait_seconds)
                continue

            if response.status_code in _RETRYABLE_STATUS_CODES and attempt < self._max_retries:
                wait_seconds = self._compute_backoff(attempt, response=response)
                logger.warning(
                    "Retrying API request after retryable status",
                    extra={
                        "path": path,
                        "status_code": response.status_code,
                        "attempt": attempt + 1,
                        "wait_seconds": wait_seconds,
                    },
                )
                await asyncio.sleep(wait_seconds)
                continue
            _raise_for_status(response)
            return response

        raise CaseApiError(f"Unreachable retry state while requesting {path}")

    async def _mutate(self, method: str, path: str, **kwargs: Any) -> Any:
        method = method.upper()
        response = await self._send_mutation(method, path, **kwargs)
        if response.status_code == 403 and method in _MUTATING_METHODS:
            # Expired CSRF token: refresh once and replay.
            await self.fetch_csrf_token(force=True)
            kwargs = _rewind_files(kwargs)
            response = await self._send_mutation(method, path, **kwargs)
        _raise_for_status(response)
        return _safe_json(response)

    async def _send_mutation(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            token = await self.fetch_csrf_token()
        except CaseApiError as exc:
            # The server decides whether the mutation needs the token; send without it.
            logger.warning("Unable to fetch CSRF token", extra={"path": path, "error": exc.message})
            token = ""
        headers = {"X-CSRF-Token": token} if token else {}
        try:
            return await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise CaseApiError(f"{method} {path} failed: {exc}") from exc

    def _compute_backoff(self, attempt: int, *, response: httpx.Response | None = None) -> float:
        retry_after = response.headers.get("Retry-After") if response is not None else None
        if retry_after:
            try:
                return max(0.0, min(float(retry_after), self._max_backoff_seconds))
            except ValueError:
                pass
        expo = self._backoff_seconds * (2**attempt)
        jitter = random.uniform(0.0, self._backoff_seconds)
        return max(0.0, min(expo + jitter, self._max_backoff_seconds))


class _ProgressReader(io.BytesIO):
    """In-memory upload body that reports the fraction of bytes handed to the transport."""

    def __init__(self, content: bytes, on_progress: ProgressCallback | None) -> None:
        super().__init__(content)
        self._total = len(content)
        self._on_progress = on_progress

    def read(self, size: int | None = -1) -> bytes:
        chunk = super().read(size)
        if self._on_progress is not None and self._total:
            self._on_progress(min(1.0, self.tell() / self._total))
        return chunk


async def _iter_case_events(source: EventSource) -> AsyncIterator[CaseEvent]:
    try:
        async for sse in source.aiter_sse():
            data: Any = {}
            if sse.data:
                try:
                    data = sse.json()
                except ValueError:
                    data = {"raw": sse.data}
            yield CaseEvent(
                name=sse.event or "message",
                data=data if isinstance(data, dict) else {"value": data},
                retry_ms=sse.retry,
            )
    except (httpx.HTTPError, SSEError) as exc:
        raise CaseApiError(f"Case stream failed: {exc}") from exc


def _rewind_files(kwargs: dict[str, Any]) -> dict[str, Any]:
    files = kwargs.get("files")
    if files:
        for _name, (_file_name, handle, _mime) in files.items():
            handle.seek(0)
    return kwargs


def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    raise CaseApiError(
        error_message(_safe_json(response), f"HTTP {response.status_code}"),
        status_code=response.status_code,
    )


def _safe_json(response: httpx.Response) -> Any:
    if not response.content:
        return {}
    try:
        return response.json()
    except ValueError:
        return {}


def normalize_session_token(token: str | None) -> str:
    """
    Normalize user-provided session tokens.

    Tokens are often copied straight out of a browser as "token=<value>" or from an API tool as
    "Bearer <value>"; the cookie jar only wants the bare value.
    """

    if not token:
        return ""
    stripped = token.strip()
    if not stripped:
        return ""
    if stripped.lower().startswith("bearer "):
        stripped = stripped.split(None, 1)[1].strip()
    if stripped.lower().startswith("token="):
        stripped = stripped.split("=", 1)[1].strip()
    return stripped
