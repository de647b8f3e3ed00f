from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable

from paraconnect.attachments import AttachmentQueue, AttachmentRejected
from paraconnect.clients.base import CaseApiClient, CaseApiError
from paraconnect.sync.lifecycle import (
    DEFAULT_WITHDRAWAL_HOLD,
    CaseSummary,
    format_cents,
    remaining_cents,
    summarize_case,
    validate_partial_payout,
)
from paraconnect.sync.refresh import RefreshCoordinator, RefreshFlags
from paraconnect.sync.snapshots import (
    CollectionSnapshot,
    TaskSnapshot,
    document_key,
    document_snapshot,
    has_changed,
    merge_documents,
    message_snapshot,
    prune_optimistic,
    task_snapshot,
)
from paraconnect.sync.transport import RealtimeTransport
from paraconnect.types import DOCUMENT_STATUSES, Case, Document, Message, Viewer
from paraconnect.workspace.view import WorkspaceView

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ActionResult:
    ok: bool
    message: str


@dataclass(slots=True)
class WorkspaceState:
    """Per-session store; collection caches and snapshots are keyed by case id."""

    active_case_id: str | None = None
    case: Case | None = None
    summary: CaseSummary | None = None
    visible: bool = True
    sending: bool = False
    messages: dict[str, list[Message]] = field(default_factory=dict)
    documents: dict[str, list[Document]] = field(default_factory=dict)
    optimistic_documents: dict[str, list[Document]] = field(default_factory=dict)
    message_snapshots: dict[str, CollectionSnapshot] = field(default_factory=dict)
    document_snapshots: dict[str, CollectionSnapshot] = field(default_factory=dict)
    task_snapshots: dict[str, TaskSnapshot] = field(default_factory=dict)

    @property
    def locked(self) -> bool:
        return self.summary is None or not self.summary.workspace_unlocked


class CaseWorkspace:
    """
    Keeps one case's messages, documents and tasks reconciled with the server.

    Push events and poll ticks both land in `handle_refresh`, which routes them through a
    `RefreshCoordinator` so only one reconciliation runs at a time. Every await is followed by an
    active-case check; results for a case the user has since left are dropped.

    User actions share one shape: guard, mark busy, call the server, then either restore the
    controls and show the server's message, or reload the whole case.
    """

    def __init__(
        self,
        client: CaseApiClient,
        viewer: Viewer,
        view: WorkspaceView,
        *,
        attachments: AttachmentQueue | None = None,
        poll_interval: float = 3.0,
        stream_retry_seconds: float = 3.0,
        hold: timedelta = DEFAULT_WITHDRAWAL_HOLD,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.client = client
        self.viewer = viewer
        self.view = view
        self.attachments = attachments
        self.hold = hold
        self.clock = clock
        self.state = WorkspaceState()
        self.coordinator = RefreshCoordinator(self._perform_refresh, suppressed=self._suppression_reason)
        self.transport = RealtimeTransport(
            client,
            self.handle_refresh,
            poll_interval=poll_interval,
            retry_seconds=stream_retry_seconds,
        )
        if attachments is not None and attachments.on_change is None:
            attachments.on_change = self._attachments_changed

    # Lifecycle

    async def open_case(self, case_id: str) -> Case | None:
        """Switch the workspace to a case. Failures of the initial load propagate."""

        self.transport.close()
        self.coordinator.reset()
        self.state.active_case_id = case_id
        self.state.case = None
        self.state.summary = None

        case = await self.load_case()
        if case is None:
            return None

        if self.attachments is not None:
            self.view.render_attachments(self.attachments.restore_pending(case_id))
        self.transport.start_stream(case_id)
        await self.handle_refresh(RefreshFlags(messages=True, documents=True))
        return case

    async def close(self) -> None:
        self.transport.close()
        await self.transport.drain()
        self.coordinator.reset()
        self.state.active_case_id = None
        self.state.case = None
        self.state.summary = None

    async def load_case(self) -> Case | None:
        case_id = self.state.active_case_id
        if case_id is None:
            return None
        case = await self.client.get_case(case_id)
        if not self._is_active(case_id):
            logger.debug("Discarding case load for inactive case", extra={"case_id": case_id})
            return None
        await self._apply_case(case)
        return case

    async def set_visible(self, visible: bool) -> None:
        self.state.visible = visible
        if visible:
            await self.coordinator.resume()

    # Refresh

    async def handle_refresh(self, flags: RefreshFlags) -> None:
        await self.coordinator.request(flags)

    def _suppression_reason(self) -> str | None:
        if not self.state.visible:
            return "hidden"
        if self.state.sending:
            return "sending"
        # A locked workspace only unlocks through a case reload, so that one still goes through.
        if self.state.locked and not self.coordinator.pending.case:
            return "locked"
        return None

    async def _perform_refresh(self, flags: RefreshFlags) -> None:
        case_id = self.state.active_case_id
        if case_id is None:
            return
        try:
            if flags.case or flags.tasks:
                case = await self.client.get_case(case_id)
                if not self._is_active(case_id):
                    return
                await self._apply_case(case)
                if self.state.locked:
                    rest = dataclasses.replace(flags, case=False, tasks=False)
                    if rest.any():
                        self.coordinator.defer(rest)
                    return
            if flags.messages:
                await self._refresh_messages(case_id)
            if flags.documents:
                await self._refresh_documents(case_id)
        except CaseApiError as exc:
            logger.warning(
                "Workspace refresh failed",
                extra={"case_id": case_id, "error": exc.message, "status_code": exc.status_code},
            )
            if self._is_active(case_id):
                self.view.show_status(f"Could not refresh the case: {exc.message}", error=True)

    async def _apply_case(self, case: Case) -> None:
        was_locked = self.state.locked
        previous_case, previous_summary = self.state.case, self.state.summary
        summary = self._summarize(case)
        self.state.case = case
        self.state.summary = summary

        if previous_case != case or previous_summary != summary:
            self.view.render_case(case, summary)

        snapshot = task_snapshot(case.tasks)
        if has_changed(self.state.task_snapshots.get(case.id), snapshot):
            self.state.task_snapshots[case.id] = snapshot
            self.view.render_tasks(case.tasks, editable=self._tasks_editable())

        if was_locked and not self.state.locked:
            logger.info("Workspace unlocked", extra={"case_id": case.id, "state": summary.state})
            await self.coordinator.resume()

    async def _refresh_messages(self, case_id: str) -> None:
        messages = await self.client.list_messages(case_id)
        if not self._is_active(case_id):
            return
        snapshot = message_snapshot(messages)
        if not has_changed(self.state.message_snapshots.get(case_id), snapshot):
            return
        self.state.message_snapshots[case_id] = snapshot
        self.state.messages[case_id] = messages
        self.view.render_messages(messages)

        if snapshot.latest_timestamp is None:
            return
        try:
            await self.client.mark_messages_read(case_id, snapshot.latest_timestamp)
        except CaseApiError as exc:
            logger.debug("Mark read failed", extra={"case_id": case_id, "error": exc.message})

    async def _refresh_documents(self, case_id: str) -> None:
        documents = await self.client.list_documents(case_id)
        if not self._is_active(case_id):
            return
        optimistic = prune_optimistic(documents, self.state.optimistic_documents.get(case_id, []))
        self.state.optimistic_documents[case_id] = optimistic
        self.state.documents[case_id] = documents
        self._render_documents(case_id, merge_documents(documents, optimistic))

    def _render_documents(self, case_id: str, merged: list[Document]) -> None:
        snapshot = document_snapshot(merged)
        if not has_changed(self.state.document_snapshots.get(case_id), snapshot):
            return
        self.state.document_snapshots[case_id] = snapshot
        self.view.render_documents(merged)

    def _add_optimistic(self, case_id: str, uploaded: list[Document]) -> None:
        if not uploaded:
            return
        optimistic = self.state.optimistic_documents.setdefault(case_id, [])
        optimistic.extend(uploaded)
        self._render_documents(case_id, merge_documents(self.state.documents.get(case_id, []), optimistic))

    # Case actions

    async def complete_case(self) -> ActionResult:
        return await self._run_action(
            "complete",
            lambda actions: actions.complete,
            lambda case_id: self.client.complete_case(case_id),
            success="Funds released and case completed.",
        )

    async def withdraw(self) -> ActionResult:
        return await self._run_action(
            "withdraw",
            lambda actions: actions.withdraw,
            lambda case_id: self.client.withdraw(case_id),
            success="You have withdrawn from this case.",
        )

    async def finalize_partial_payout(self, amount_cents: int) -> ActionResult:
        case = self.state.case
        if case is not None:
            remaining = remaining_cents(case)
            if not validate_partial_payout(amount_cents, remaining):
                message = f"Enter an amount between $0 and {format_cents(remaining, case.currency)}."
                self.view.show_status(message, error=True)
                return ActionResult(False, message)
        return await self._run_action(
            "partial_payout",
            lambda actions: actions.partial_payout,
            lambda case_id: self.client.finalize_partial_payout(case_id, amount_cents),
            success="Partial payout issued.",
        )

    async def reject_payout(self) -> ActionResult:
        return await self._run_action(
            "reject_payout",
            lambda actions: actions.reject_payout,
            lambda case_id: self.client.reject_payout(case_id),
            success="Case closed without releasing funds.",
        )

    async def relist(self) -> ActionResult:
        return await self._run_action(
            "relist",
            lambda actions: actions.relist,
            lambda case_id: self.client.relist(case_id),
            success="Case relisted.",
        )

    async def open_dispute(self, message: str) -> ActionResult:
        if not message.strip():
            self.view.show_status("Describe the issue before opening a dispute.", error=True)
            return ActionResult(False, "Describe the issue before opening a dispute.")
        return await self._run_action(
            "dispute",
            lambda actions: actions.dispute,
            lambda case_id: self.client.open_dispute(case_id, message.strip()),
            success="Dispute opened. Financial actions are locked until it is resolved.",
        )

    async def _run_action(
        self,
        action: str,
        allowed: Callable[..., bool],
        call: Callable[[str], Awaitable[object]],
        *,
        success: str,
    ) -> ActionResult:
        case_id, case = self.state.active_case_id, self.state.case
        if case_id is None or case is None:
            return ActionResult(False, "No case is open.")

        # Re-evaluated here so the hold window and checkbox state are current.
        summary = self._summarize(case, rendered_tasks=self.view.rendered_task_states())
        if not allowed(summary.actions):
            message = f"{action.replace('_', ' ').capitalize()} is not available for this case."
            self.view.show_status(message, error=True)
            return ActionResult(False, message)

        self.view.set_busy(action, True)
        try:
            await call(case_id)
        except CaseApiError as exc:
            logger.warning(
                "Case action failed",
                extra={"case_id": case_id, "action": action, "error": exc.message, "status_code": exc.status_code},
            )
            if self._is_active(case_id):
                self.view.set_busy(action, False)
                self.view.show_status(exc.message, error=True)
            return ActionResult(False, exc.message)

        logger.info("Case action succeeded", extra={"case_id": case_id, "action": action})
        if self._is_active(case_id):
            self.view.set_busy(action, False)
            self.view.show_status(success)
            try:
                await self.load_case()
            except CaseApiError as exc:
                self.view.show_status(f"Could not reload the case: {exc.message}", error=True)
        return ActionResult(True, success)

    # Tasks and documents

    async def set_task_completed(self, index: int, completed: bool) -> ActionResult:
        case_id, case = self.state.active_case_id, self.state.case
        if case_id is None or case is None:
            return ActionResult(False, "No case is open.")
        if not self._tasks_editable():
            return ActionResult(False, "Tasks are read-only for this case.")
        if not 0 <= index < len(case.tasks):
            return ActionResult(False, f"No task at position {index}.")

        previous = list(case.tasks)
        updated = list(previous)
        updated[index] = dataclasses.replace(previous[index], completed=completed)
        self._show_tasks(case, updated)

        try:
            await self.client.update_tasks(case_id, updated)
        except CaseApiError as exc:
            logger.warning(
                "Task update failed",
                extra={"case_id": case_id, "index": index, "error": exc.message, "status_code": exc.status_code},
            )
            if self._is_active(case_id) and self.state.case is case:
                self._show_tasks(case, previous)
                self.view.show_status(exc.message, error=True)
            return ActionResult(False, exc.message)

        if self._is_active(case_id) and self.state.case is case:
            self.state.summary = self._summarize(case)
            self.view.render_case(case, self.state.summary)
        return ActionResult(True, "Task updated.")

    def _show_tasks(self, case: Case, tasks: list) -> None:
        case.tasks = tasks
        self.state.task_snapshots[case.id] = task_snapshot(tasks)
        self.view.render_tasks(tasks, editable=True)

    async def review_document(self, file_id: str, status: str) -> ActionResult:
        case_id = self.state.active_case_id
        if case_id is None:
            return ActionResult(False, "No case is open.")
        if not self.viewer.is_attorney:
            return ActionResult(False, "Only the case attorney can review documents.")
        if status not in DOCUMENT_STATUSES:
            return ActionResult(False, f"Unknown document status: {status}")

        self.view.set_busy("review", True)
        try:
            updated = await self.client.update_document_status(case_id, file_id, status)
        except CaseApiError as exc:
            logger.warning("Document review failed", extra={"case_id": case_id, "file_id": file_id, "error": exc.message})
            if self._is_active(case_id):
                self.view.set_busy("review", False)
                self.view.show_status(exc.message, error=True)
            return ActionResult(False, exc.message)

        if self._is_active(case_id):
            self.view.set_busy("review", False)
            if updated is not None:
                self._replace_document(case_id, updated)
            else:
                await self.coordinator.request(RefreshFlags(documents=True))
        return ActionResult(True, "Document status updated.")

    def _replace_document(self, case_id: str, updated: Document) -> None:
        # Status changes do not move the snapshot, so render directly.
        key = document_key(updated)

        def swap(items: list[Document]) -> list[Document]:
            return [updated if document_key(item) == key else item for item in items]

        documents = swap(self.state.documents.get(case_id, []))
        optimistic = swap(self.state.optimistic_documents.get(case_id, []))
        self.state.documents[case_id] = documents
        self.state.optimistic_documents[case_id] = optimistic
        merged = merge_documents(documents, optimistic)
        self.state.document_snapshots[case_id] = document_snapshot(merged)
        self.view.render_documents(merged)

    # Messages and attachments

    async def send_message(self, text: str = "") -> ActionResult:
        """Upload staged attachments, then post the text. Stops at the first failed upload."""

        case_id = self.state.active_case_id
        if case_id is None:
            return ActionResult(False, "No case is open.")
        if self.state.locked:
            return ActionResult(False, "Messaging unlocks once the case is funded and in progress.")

        text = text.strip()
        staged = self.attachments.pending(case_id) if self.attachments is not None else []
        if not text and not any(item.retryable for item in staged):
            return ActionResult(False, "Nothing to send.")

        self.state.sending = True
        self.view.set_busy("send", True)
        try:
            result = await self._send(case_id, text)
        finally:
            self.state.sending = False
            self.view.set_busy("send", False)

        if not result.ok and self._is_active(case_id):
            self.view.show_status(result.message, error=True)
        if self._is_active(case_id):
            await self.coordinator.request(RefreshFlags(messages=True, documents=True))
        return result

    async def _send(self, case_id: str, text: str) -> ActionResult:
        if self.attachments is not None:
            try:
                outcome = await self.attachments.upload_all(case_id)
            except AttachmentRejected as exc:
                return ActionResult(False, str(exc))
            if self._is_active(case_id):
                self._add_optimistic(case_id, outcome.documents)
            if not outcome.ok:
                failed = outcome.failed
                detail = f": {failed.error}" if failed.error else ""
                return ActionResult(False, f"{failed.file_name} was not uploaded{detail}")

        if text:
            try:
                await self.client.post_message(case_id, text)
            except CaseApiError as exc:
                logger.warning("Message post failed", extra={"case_id": case_id, "error": exc.message})
                return ActionResult(False, exc.message)
        logger.info("Message sent", extra={"case_id": case_id})
        return ActionResult(True, "Message sent.")

    def add_attachment(
        self,
        *,
        path: Path | None = None,
        file_name: str | None = None,
        content: bytes | None = None,
        mime_type: str | None = None,
        last_modified: float | None = None,
    ) -> ActionResult:
        case_id = self.state.active_case_id
        if case_id is None or self.attachments is None:
            return ActionResult(False, "Attachments are unavailable.")
        try:
            attachment = self.attachments.add(
                case_id,
                path=path,
                file_name=file_name,
                content=content,
                mime_type=mime_type,
                last_modified=last_modified,
                locked=self.state.locked,
            )
        except AttachmentRejected as exc:
            self.view.show_status(str(exc), error=True)
            return ActionResult(False, str(exc))
        return ActionResult(True, f"{attachment.file_name} attached.")

    def cancel_attachment(self, attachment_id: str) -> ActionResult:
        if self.attachments is None or not self.attachments.cancel(attachment_id):
            return ActionResult(False, "No upload in progress for that attachment.")
        return ActionResult(True, "Upload canceled.")

    async def retry_attachment(self, attachment_id: str) -> ActionResult:
        case_id = self.state.active_case_id
        if case_id is None or self.attachments is None:
            return ActionResult(False, "Attachments are unavailable.")
        try:
            document = await self.attachments.retry(attachment_id)
        except AttachmentRejected as exc:
            return ActionResult(False, str(exc))
        if document is None:
            failed = self.attachments.store.get(attachment_id)
            message = failed.error if failed is not None and failed.error else "Upload did not complete."
            return ActionResult(False, message)
        if self._is_active(case_id):
            self._add_optimistic(case_id, [document])
        return ActionResult(True, f"{document.original_name} uploaded.")

    def remove_attachment(self, attachment_id: str) -> ActionResult:
        if self.attachments is None:
            return ActionResult(False, "Attachments are unavailable.")
        try:
            self.attachments.remove(attachment_id)
        except AttachmentRejected as exc:
            return ActionResult(False, str(exc))
        return ActionResult(True, "Attachment removed.")

    def _attachments_changed(self, case_id: str) -> None:
        if self._is_active(case_id) and self.attachments is not None:
            self.view.render_attachments(self.attachments.pending(case_id))

    # Helpers

    def _is_active(self, case_id: str) -> bool:
        return self.state.active_case_id == case_id

    def _summarize(self, case: Case, *, rendered_tasks: list[bool] | None = None) -> CaseSummary:
        return summarize_case(case, self.viewer, self.clock(), rendered_tasks=rendered_tasks, hold=self.hold)

    def _tasks_editable(self) -> bool:
        case = self.state.case
        return case is not None and not self.state.locked and not case.read_only
