from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, Sequence

import pytest

from paraconnect.attachments import SqlAttachmentStore
from paraconnect.storage import create_session_factory, init_db
from paraconnect.sync.lifecycle import CaseSummary
from paraconnect.types import Case, Document, Message, PendingAttachment, Task

FIXTURE = Path(__file__).resolve().parents[1] / "data" / "fixtures" / "workspace_dataset.json"


class RecordingView:
    """Keeps every render call so tests can assert on what reached the screen."""

    def __init__(self) -> None:
        self.cases: list[tuple[Case, CaseSummary]] = []
        self.task_renders: list[tuple[list[Task], bool]] = []
        self.message_renders: list[list[Message]] = []
        self.document_renders: list[list[Document]] = []
        self.attachment_renders: list[list[PendingAttachment]] = []
        self.busy: list[tuple[str, bool]] = []
        self.statuses: list[tuple[str, bool]] = []

    def render_case(self, case: Case, summary: CaseSummary) -> None:
        self.cases.append((case, summary))

    def render_tasks(self, tasks: Sequence[Task], *, editable: bool) -> None:
        self.task_renders.append((list(tasks), editable))

    def render_messages(self, messages: Sequence[Message]) -> None:
        self.message_renders.append(list(messages))

    def render_documents(self, documents: Sequence[Document]) -> None:
        self.document_renders.append(list(documents))

    def render_attachments(self, attachments: Sequence[PendingAttachment]) -> None:
        self.attachment_renders.append(list(attachments))

    def rendered_task_states(self) -> list[bool] | None:
        if not self.task_renders:
            return None
        return [task.completed for task in self.task_renders[-1][0]]

    def set_busy(self, action: str, busy: bool) -> None:
        self.busy.append((action, busy))

    def show_status(self, text: str, *, error: bool = False) -> None:
        self.statuses.append((text, error))

    @property
    def errors(self) -> list[str]:
        return [text for text, error in self.statuses if error]


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def fixture_path() -> Path:
    return FIXTURE


@pytest.fixture
def view() -> RecordingView:
    return RecordingView()


@pytest.fixture
def attachment_store(tmp_path) -> SqlAttachmentStore:
    session_factory, engine = create_session_factory(f"sqlite:///{tmp_path / 'attachments.db'}")
    init_db(engine)
    return SqlAttachmentStore(session_factory)
