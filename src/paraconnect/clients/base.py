from __future__ import annotations

from datetime import datetime
from typing import AsyncContextManager, AsyncIterator, Callable, Protocol, Sequence

from paraconnect.types import Case, CaseEvent, Document, Message, Task

ProgressCallback = Callable[[float], None]


class CaseApiError(RuntimeError):
    """Raised for any failed call against the case API (HTTP status or transport)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    @property
    def endpoint_missing(self) -> bool:
        return self.status_code in (404, 405)


class CaseApiClient(Protocol):
    """Interface for the case workspace endpoints of the ParaConnect API."""

    async def get_case(self, case_id: str) -> Case:
        """Return the full case record."""

    async def update_tasks(self, case_id: str, tasks: Sequence[Task]) -> None:
        """Replace the case task list. The whole ordered array is always sent."""

    async def complete_case(self, case_id: str) -> None:
        """Release escrowed funds and archive the case."""

    async def withdraw(self, case_id: str) -> None:
        """Withdraw the assigned paralegal from the case."""

    async def finalize_partial_payout(self, case_id: str, amount_cents: int) -> None:
        """Finalize a partial payout after a paralegal withdrawal."""

    async def reject_payout(self, case_id: str) -> None:
        """Close a withdrawn case without releasing funds."""

    async def relist(self, case_id: str) -> None:
        """Relist a case after its withdrawal payout was finalized."""

    async def open_dispute(self, case_id: str, message: str) -> None:
        """Open a dispute on the case."""

    async def list_messages(self, case_id: str) -> list[Message]:
        """Return the case thread, oldest first."""

    async def post_message(self, case_id: str, text: str) -> Message | None:
        """Post a text message to the case thread."""

    async def mark_messages_read(self, case_id: str, up_to: datetime) -> None:
        """Mark every message up to the timestamp as read by the viewer."""

    async def list_documents(self, case_id: str) -> list[Document]:
        """Return the documents attached to the case."""

    async def upload_case_file(
        self,
        case_id: str,
        file_name: str,
        content: bytes,
        mime_type: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Document:
        """Upload one file to the case and return the stored document record."""

    async def update_document_status(self, case_id: str, file_id: str, status: str) -> Document | None:
        """Approve a document or request a revision."""

    def open_case_stream(self, case_id: str) -> AsyncContextManager[AsyncIterator[CaseEvent]]:
        """Open the server-push channel for the case."""

    async def aclose(self) -> None:
        """Release network resources."""
