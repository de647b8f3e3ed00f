from __future__ import annotations

import asyncio
import logging
import mimetypes
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from paraconnect.attachments.store import AttachmentStore
from paraconnect.clients.base import CaseApiClient, CaseApiError
from paraconnect.types import Document, PendingAttachment

logger = logging.getLogger(__name__)


class AttachmentRejected(ValueError):
    """Raised when the queue refuses to stage, retry, or find an attachment."""


@dataclass(slots=True)
class UploadOutcome:
    documents: list[Document] = field(default_factory=list)
    failed: PendingAttachment | None = None

    @property
    def ok(self) -> bool:
        return self.failed is None


class AttachmentQueue:
    """
    Stages files for a case message and uploads them one at a time.

    Every state change is written through to the store, so a new queue over the same store picks
    up where the previous one stopped. Entries are deleted once the server accepts them.
    """

    def __init__(
        self,
        client: CaseApiClient,
        store: AttachmentStore,
        *,
        on_change: Callable[[str], None] | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.on_change = on_change
        self._in_flight: dict[str, asyncio.Task[Document]] = {}
        self._claims: dict[str, asyncio.Event] = {}
        self._canceled: set[str] = set()
        self._upload_lock = asyncio.Lock()

    def add(
        self,
        case_id: str,
        *,
        path: Path | None = None,
        file_name: str | None = None,
        content: bytes | None = None,
        mime_type: str | None = None,
        last_modified: float | None = None,
        locked: bool = False,
    ) -> PendingAttachment:
        if locked:
            raise AttachmentRejected("Attachments are unavailable until the workspace is unlocked")

        if path is not None:
            stat = path.stat()
            content = path.read_bytes()
            file_name = file_name or path.name
            last_modified = stat.st_mtime if last_modified is None else last_modified
        if file_name is None or content is None:
            raise AttachmentRejected("A file path or a name with content is required")

        size = len(content)
        for existing in self.store.list_for_case(case_id):
            if (existing.file_name, existing.size, existing.last_modified) == (file_name, size, last_modified):
                raise AttachmentRejected(f"{file_name} is already attached")

        attachment = PendingAttachment(
            id=uuid.uuid4().hex,
            case_id=case_id,
            file_name=file_name,
            size=size,
            last_modified=last_modified,
            mime_type=mime_type or mimetypes.guess_type(file_name)[0],
            content=content,
        )
        self.store.save(attachment)
        logger.info(
            "Attachment queued",
            extra={"case_id": case_id, "attachment_id": attachment.id, "file_name": file_name, "size": size},
        )
        self._changed(case_id)
        return attachment

    def restore_pending(self, case_id: str) -> list[PendingAttachment]:
        """Reload staged entries for a case; uploads interrupted by a restart come back queued."""

        restored = []
        for attachment in self.store.list_for_case(case_id):
            if attachment.status == "uploading" and attachment.id not in self._in_flight:
                attachment.status = "queued"
                attachment.progress = 0.0
                self.store.save(attachment)
            restored.append(attachment)
        if restored:
            logger.info("Restored pending attachments", extra={"case_id": case_id, "count": len(restored)})
        return restored

    def pending(self, case_id: str) -> list[PendingAttachment]:
        return self.store.list_for_case(case_id)

    async def upload(self, attachment_id: str) -> Document | None:
        """
        Upload one staged file.

        Only one file is sent at a time across the whole queue; later calls wait their turn. Returns
        the server document on success. On failure or cancellation the entry stays in the queue
        marked `failed` or `canceled` and None is returned. None is also returned when the entry was
        removed while waiting.
        """

        attachment = self._require(attachment_id)
        if attachment_id in self._claims:
            raise AttachmentRejected(f"{attachment.file_name} is already uploading")

        claim = self._claims[attachment_id] = asyncio.Event()
        try:
            async with self._upload_lock:
                attachment = self.store.get(attachment_id)
                if attachment is None:
                    return None
                return await self._transfer(attachment)
        finally:
            self._claims.pop(attachment_id, None)
            claim.set()

    async def _transfer(self, attachment: PendingAttachment) -> Document | None:
        attachment_id = attachment.id
        attachment.status = "uploading"
        attachment.progress = 0.0
        attachment.error = None
        self.store.save(attachment)
        self._changed(attachment.case_id)

        def on_progress(fraction: float) -> None:
            attachment.progress = max(0.0, min(1.0, fraction))
            self.store.save(attachment)
            self._changed(attachment.case_id)

        task = asyncio.create_task(
            self.client.upload_case_file(
                attachment.case_id,
                attachment.file_name,
                attachment.content,
                attachment.mime_type,
                on_progress=on_progress,
            )
        )
        self._in_flight[attachment_id] = task
        try:
            document = await task
        except asyncio.CancelledError:
            if attachment_id not in self._canceled:
                attachment.status = "queued"
                attachment.progress = 0.0
                self.store.save(attachment)
                raise
            self._canceled.discard(attachment_id)
            if self.store.get(attachment_id) is None:
                # Removed while uploading.
                return None
            attachment.status = "canceled"
            attachment.progress = 0.0
            self.store.save(attachment)
            logger.info("Attachment upload canceled", extra={"attachment_id": attachment_id})
            self._changed(attachment.case_id)
            return None
        except CaseApiError as exc:
            attachment.status = "failed"
            attachment.error = exc.message
            self.store.save(attachment)
            logger.warning(
                "Attachment upload failed",
                extra={"attachment_id": attachment_id, "error": exc.message, "status_code": exc.status_code},
            )
            self._changed(attachment.case_id)
            return None
        finally:
            self._in_flight.pop(attachment_id, None)

        self.store.delete(attachment_id)
        logger.info(
            "Attachment uploaded",
            extra={"case_id": attachment.case_id, "attachment_id": attachment_id, "document_id": document.id},
        )
        self._changed(attachment.case_id)
        return document

    def cancel(self, attachment_id: str) -> bool:
        task = self._in_flight.get(attachment_id)
        if task is None or task.done():
            return False
        self._canceled.add(attachment_id)
        task.cancel()
        return True

    async def retry(self, attachment_id: str) -> Document | None:
        attachment = self._require(attachment_id)
        if not attachment.retryable:
            raise AttachmentRejected(f"{attachment.file_name} cannot be retried while {attachment.status}")
        return await self.upload(attachment_id)

    async def upload_all(self, case_id: str) -> UploadOutcome:
        """Upload every staged file for a case in order, stopping at the first one that does not go through."""

        outcome = UploadOutcome()
        for listed in self.store.list_for_case(case_id):
            # Another caller owns this entry; let it finish before deciding.
            while listed.id in self._claims:
                await self._claims[listed.id].wait()
            attachment = self.store.get(listed.id)
            if attachment is None or not attachment.retryable:
                continue
            document = await self.upload(attachment.id)
            if document is None:
                failed = self.store.get(attachment.id)
                if failed is None:
                    continue
                outcome.failed = failed
                break
            outcome.documents.append(document)
        return outcome

    def remove(self, attachment_id: str) -> None:
        attachment = self._require(attachment_id)
        self.cancel(attachment_id)
        self.store.delete(attachment_id)
        self._changed(attachment.case_id)

    def _require(self, attachment_id: str) -> PendingAttachment:
        attachment = self.store.get(attachment_id)
        if attachment is None:
            raise AttachmentRejected(f"Unknown attachment: {attachment_id}")
        return attachment

    def _changed(self, case_id: str) -> None:
        if self.on_change is not None:
            self.on_change(case_id)
