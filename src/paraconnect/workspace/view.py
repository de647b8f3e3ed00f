from __future__ import annotations

from typing import Protocol, Sequence

import typer

from paraconnect.sync.lifecycle import CaseSummary, format_cents
from paraconnect.types import Case, Document, Message, PendingAttachment, Task


class WorkspaceView(Protocol):
    """Rendering seam for the workspace; business rules never reach past it."""

    def render_case(self, case: Case, summary: CaseSummary) -> None:
        ...

    def render_tasks(self, tasks: Sequence[Task], *, editable: bool) -> None:
        ...

    def render_messages(self, messages: Sequence[Message]) -> None:
        ...

    def render_documents(self, documents: Sequence[Document]) -> None:
        ...

    def render_attachments(self, attachments: Sequence[PendingAttachment]) -> None:
        ...

    def rendered_task_states(self) -> list[bool] | None:
        """Checkbox state of the task list on screen, or None when no list is rendered."""
        ...

    def set_busy(self, action: str, busy: bool) -> None:
        ...

    def show_status(self, text: str, *, error: bool = False) -> None:
        ...


class ConsoleView(WorkspaceView):
    """Line-oriented view used by the CLI."""

    def __init__(self, *, echo=typer.echo) -> None:
        self._echo = echo
        self._task_states: list[bool] | None = None
        self._message_ids: set[str] = set()

    def render_case(self, case: Case, summary: CaseSummary) -> None:
        lock = "unlocked" if summary.workspace_unlocked else "locked"
        self._echo(f"[case] {case.title} ({case.id}) state={summary.state or 'unknown'} workspace={lock}")
        enabled = summary.actions.enabled()
        if enabled:
            self._echo(f"[case] actions: {', '.join(enabled)}")
        if summary.withdrawal.banner:
            self._echo(f"[case] {summary.withdrawal.banner}")
            if summary.withdrawal.show_partial:
                remaining = format_cents(summary.withdrawal.remaining_cents, case.currency)
                self._echo(f"[case] remaining balance: {remaining}")

    def render_tasks(self, tasks: Sequence[Task], *, editable: bool) -> None:
        self._task_states = [task.completed for task in tasks]
        suffix = "" if editable else " (read-only)"
        self._echo(f"[tasks] {sum(self._task_states)}/{len(tasks)} complete{suffix}")
        for index, task in enumerate(tasks):
            mark = "x" if task.completed else " "
            self._echo(f"  {index}. [{mark}] {task.title}")

    def render_messages(self, messages: Sequence[Message]) -> None:
        for message in messages:
            if message.id in self._message_ids:
                continue
            self._message_ids.add(message.id)
            stamp = message.created_at.strftime("%Y-%m-%d %H:%M") if message.created_at else "-"
            sender = message.sender_role or message.sender_id or "unknown"
            self._echo(f"[message] {stamp} {sender}: {message.text}")

    def render_documents(self, documents: Sequence[Document]) -> None:
        self._echo(f"[documents] {len(documents)} file(s)")
        for document in documents:
            self._echo(f"  - {document.original_name} ({document.status})")

    def render_attachments(self, attachments: Sequence[PendingAttachment]) -> None:
        for attachment in attachments:
            line = f"[attachment] {attachment.file_name} {attachment.status} {attachment.progress:.0%}"
            if attachment.error:
                line += f" ({attachment.error})"
            self._echo(line)

    def rendered_task_states(self) -> list[bool] | None:
        return list(self._task_states) if self._task_states is not None else None

    def set_busy(self, action: str, busy: bool) -> None:
        if busy:
            self._echo(f"[busy] {action}...")

    def show_status(self, text: str, *, error: bool = False) -> None:
        if error:
            self._echo(typer.style(f"[error] {text}", fg=typer.colors.RED), err=True)
        else:
            self._echo(f"[status] {text}")
