from __future__ import annotations

from typing import Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from paraconnect.storage.models import PendingAttachmentRecord
from paraconnect.types import PendingAttachment


class AttachmentStore(Protocol):
    """Durable home for staged attachments, keyed by attachment id."""

    def save(self, attachment: PendingAttachment) -> None:
        ...

    def get(self, attachment_id: str) -> PendingAttachment | None:
        ...

    def delete(self, attachment_id: str) -> None:
        ...

    def list_for_case(self, case_id: str) -> list[PendingAttachment]:
        ...


class SqlAttachmentStore(AttachmentStore):
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def save(self, attachment: PendingAttachment) -> None:
        with self.session_factory() as session:
            record = session.get(PendingAttachmentRecord, attachment.id)
            if record is None:
                position = session.scalar(
                    select(func.coalesce(func.max(PendingAttachmentRecord.position), -1)).where(
                        PendingAttachmentRecord.case_id == attachment.case_id
                    )
                )
                record = PendingAttachmentRecord(
                    id=attachment.id,
                    case_id=attachment.case_id,
                    position=int(position) + 1,
                )
                session.add(record)

            record.file_name = attachment.file_name
            record.size = attachment.size
            record.last_modified = attachment.last_modified
            record.mime_type = attachment.mime_type
            record.content = attachment.content
            record.status = attachment.status
            record.progress = attachment.progress
            record.error = attachment.error
            session.commit()

    def get(self, attachment_id: str) -> PendingAttachment | None:
        with self.session_factory() as session:
            record = session.get(PendingAttachmentRecord, attachment_id)
            return _to_attachment(record) if record is not None else None

    def delete(self, attachment_id: str) -> None:
        with self.session_factory() as session:
            session.execute(delete(PendingAttachmentRecord).where(PendingAttachmentRecord.id == attachment_id))
            session.commit()

    def list_for_case(self, case_id: str) -> list[PendingAttachment]:
        with self.session_factory() as session:
            records = session.scalars(
                select(PendingAttachmentRecord)
                .where(PendingAttachmentRecord.case_id == case_id)
                .order_by(PendingAttachmentRecord.position)
            ).all()
            return [_to_attachment(record) for record in records]


def _to_attachment(record: PendingAttachmentRecord) -> PendingAttachment:
    return PendingAttachment(
        id=record.id,
        case_id=record.case_id,
        file_name=record.file_name,
        size=record.size,
        last_modified=record.last_modified,
        mime_type=record.mime_type,
        content=record.content,
        status=record.status,
        progress=record.progress,
        error=record.error,
    )
