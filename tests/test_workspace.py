from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FIXTURE, RecordingView, wait_for
from paraconnect.attachments import AttachmentQueue
from paraconnect.clients import CaseApiError, MockCaseApiClient
from paraconnect.sync.refresh import RefreshFlags
from paraconnect.types import Viewer
from paraconnect.workspace import CaseWorkspace

NOW = datetime(2026, 2, 1, 12, 0, tzinfo=timezone.utc)
ATTORNEY = Viewer(id="a1", role="attorney")
PARALEGAL = Viewer(id="p1", role="paralegal")


def _server(viewer: Viewer, cls=MockCaseApiClient) -> MockCaseApiClient:
    return cls(FIXTURE, viewer_id=viewer.id, viewer_role=viewer.role, clock=lambda: NOW)


def _workspace(client, viewer, view, *, store=None, clock=lambda: NOW) -> CaseWorkspace:
    queue = AttachmentQueue(client, store) if store is not None else None
    return CaseWorkspace(
        client,
        viewer,
        view,
        attachments=queue,
        poll_interval=0.01,
        stream_retry_seconds=0.01,
        clock=clock,
    )


def _sign_in(client: MockCaseApiClient, viewer: Viewer) -> None:
    client.viewer_id, client.viewer_role = viewer.id, viewer.role


@pytest.mark.asyncio
async def test_open_case_renders_everything_once(view):
    client = _server(ATTORNEY)
    workspace = _workspace(client, ATTORNEY, view)

    case = await workspace.open_case("case-100")

    assert case.attorney_id == "a1"
    assert workspace.state.summary.state == "funded_in_progress"
    assert view.task_renders[0][1] is True
    assert [message.id for message in view.message_renders[-1]] == ["m-1", "m-2"]
    assert [document.original_name for document in view.document_renders[-1]] == ["lease.pdf"]
    assert client.read_marks == [("case-100", datetime(2026, 1, 3, 11, 15, tzinfo=timezone.utc))]

    await workspace.handle_refresh(RefreshFlags.everything())

    assert len(view.cases) == 1
    assert len(view.task_renders) == 1
    assert len(view.message_renders) == 1
    assert len(view.document_renders) == 1
    assert len(client.read_marks) == 1
    await workspace.close()


@pytest.mark.asyncio
async def test_pushed_message_is_rendered_and_marked_read(view):
    client = _server(ATTORNEY)
    workspace = _workspace(client, ATTORNEY, view)
    await workspace.open_case("case-100")
    await wait_for(lambda: client.subscriber_count("case-100") == 1)

    await client.post_message("case-100", "Please send the draft by Friday.")

    await wait_for(lambda: len(client.read_marks) == 2)
    assert view.message_renders[-1][-1].text == "Please send the draft by Friday."
    assert client.read_marks[-1][1] == NOW
    await workspace.close()


@pytest.mark.asyncio
async def test_locked_workspace_defers_refresh_until_case_unlocks(view):
    client = _server(ATTORNEY)
    workspace = _workspace(client, ATTORNEY, view)
    await workspace.open_case("case-400")
    await wait_for(lambda: client.subscriber_count("case-400") == 1)

    assert workspace.state.locked is True
    assert workspace.state.summary.state == "in progress"
    assert ("list_messages", "case-400") not in client.calls
    assert workspace.coordinator.pending == RefreshFlags(messages=True, documents=True)

    client.update_case("case-400", escrowStatus="funded")

    await wait_for(lambda: len(view.message_renders) == 1)
    assert workspace.state.summary.state == "funded_in_progress"
    assert workspace.state.locked is False
    await workspace.close()


@pytest.mark.asyncio
async def test_hidden_tab_defers_refresh(view):
    client = _server(ATTORNEY)
    workspace = _workspace(client, ATTORNEY, view)
    await workspace.open_case("case-100")

    def fetches() -> int:
        return client.calls.count(("list_messages", "case-100"))

    before = fetches()

    await workspace.set_visible(False)
    await workspace.handle_refresh(RefreshFlags(messages=True))
    assert fetches() == before
    assert workspace.coordinator.pending.messages is True

    await workspace.set_visible(True)
    assert fetches() == before + 1
    await workspace.close()


@pytest.mark.asyncio
async def test_failed_task_toggle_restores_previous_tasks(view):
    class RejectingTasks(MockCaseApiClient):
        async def update_tasks(self, case_id, tasks):
            raise CaseApiError("Case was updated elsewhere", status_code=409)

    client = _server(PARALEGAL, RejectingTasks)
    workspace = _workspace(client, PARALEGAL, view)
    await workspace.open_case("case-100")

    result = await workspace.set_task_completed(0, True)

    assert result.ok is False
    assert view.task_renders[-2][0][0].completed is True
    assert view.rendered_task_states() == [False, False, False]
    assert [task.completed for task in workspace.state.case.tasks] == [False, False, False]
    assert view.errors[-1] == "Case was updated elsewhere"
    await workspace.close()


@pytest.mark.asyncio
async def test_completing_every_task_enables_release(view):
    client = _server(ATTORNEY)
    workspace = _workspace(client, ATTORNEY, view)
    await workspace.open_case("case-100")
    assert workspace.state.summary.actions.complete is False
    assert (await workspace.complete_case()).ok is False

    for index in range(3):
        assert (await workspace.set_task_completed(index, True)).ok is True
    assert workspace.state.summary.actions.complete is True

    result = await workspace.complete_case()

    assert result.ok is True
    assert workspace.state.case.status == "completed"
    assert workspace.state.case.payment_released is True
    assert workspace.state.locked is True
    assert ("complete", True) in view.busy
    assert ("complete", False) in view.busy
    await workspace.close()


@pytest.mark.asyncio
async def test_withdrawal_before_any_task_issues_zero_payout(view):
    client = _server(PARALEGAL)
    paralegal = _workspace(client, PARALEGAL, RecordingView())
    await paralegal.open_case("case-100")
    assert (await paralegal.withdraw()).ok is True
    assert paralegal.state.summary.state == "paused"
    await paralegal.close()

    _sign_in(client, ATTORNEY)
    attorney = _workspace(client, ATTORNEY, view, clock=lambda: NOW + timedelta(hours=25))
    await attorney.open_case("case-100")

    withdrawal = attorney.state.summary.withdrawal
    assert withdrawal.show_partial is False
    assert withdrawal.show_reject is False
    assert withdrawal.banner == "Paralegal withdrew before any tasks were completed. A $0 payout was issued."
    assert attorney.state.summary.actions.relist is True
    await attorney.close()


@pytest.mark.asyncio
async def test_partial_withdrawal_payout_flow(view):
    client = _server(PARALEGAL)
    paralegal = _workspace(client, PARALEGAL, RecordingView())
    await paralegal.open_case("case-100")
    assert (await paralegal.set_task_completed(0, True)).ok is True
    assert (await paralegal.withdraw()).ok is True
    await paralegal.close()

    _sign_in(client, ATTORNEY)
    now = {"value": NOW + timedelta(hours=1)}
    attorney = _workspace(client, ATTORNEY, view, clock=lambda: now["value"])
    await attorney.open_case("case-100")
    assert attorney.state.summary.withdrawal.show_partial is False
    assert (await attorney.finalize_partial_payout(1000)).ok is False

    now["value"] = NOW + timedelta(hours=25)
    await attorney.load_case()
    withdrawal = attorney.state.summary.withdrawal
    assert withdrawal.show_partial is True
    assert withdrawal.show_reject is True
    assert withdrawal.remaining_cents == 120000

    over = await attorney.finalize_partial_payout(120001)
    assert over.ok is False
    assert over.message == "Enter an amount between $0 and $1,200."
    assert ("finalize_partial_payout", "case-100") not in client.calls

    assert (await attorney.finalize_partial_payout(60000)).ok is True
    summary = attorney.state.summary
    assert summary.withdrawal.banner == "Paralegal withdrew. A partial payout of $600 was issued."
    assert summary.actions.partial_payout is False
    assert summary.actions.relist is True

    assert (await attorney.relist()).ok is True
    assert attorney.state.summary.state == "open"
    assert attorney.state.summary.actions.relist is False
    await attorney.close()


@pytest.mark.asyncio
async def test_dispute_locks_financial_actions(view):
    client = _server(PARALEGAL)
    workspace = _workspace(client, PARALEGAL, view)
    await workspace.open_case("case-100")

    assert (await workspace.open_dispute("   ")).ok is False
    assert (await workspace.open_dispute("Scope changed without notice.")).ok is True

    assert workspace.state.summary.state == "disputed"
    assert workspace.state.summary.actions.enabled() == []
    await workspace.close()


@pytest.mark.asyncio
async def test_send_uploads_attachments_before_text(view, attachment_store):
    client = _server(ATTORNEY)
    workspace = _workspace(client, ATTORNEY, view, store=attachment_store)
    await workspace.open_case("case-100")

    assert workspace.add_attachment(file_name="exhibit.pdf", content=b"%PDF-1.7").ok is True
    result = await workspace.send_message("Exhibit attached.")

    assert result.ok is True
    assert workspace.attachments.pending("case-100") == []
    assert "exhibit.pdf" in [document.original_name for document in view.document_renders[-1]]
    assert view.message_renders[-1][-1].text == "Exhibit attached."
    names = [name for name, _case_id in client.calls]
    assert names.index("upload_case_file") < names.index("post_message")
    assert workspace.state.sending is False
    await workspace.close()


@pytest.mark.asyncio
async def test_failed_attachment_stops_the_send(view, attachment_store):
    class BrokenUploads(MockCaseApiClient):
        async def upload_case_file(self, case_id, file_name, content, mime_type=None, on_progress=None):
            raise CaseApiError("Storage unavailable", status_code=502)

    client = _server(ATTORNEY, BrokenUploads)
    workspace = _workspace(client, ATTORNEY, view, store=attachment_store)
    await workspace.open_case("case-100")
    workspace.add_attachment(file_name="exhibit.pdf", content=b"%PDF-1.7")

    result = await workspace.send_message("Exhibit attached.")

    assert result.ok is False
    assert result.message == "exhibit.pdf was not uploaded: Storage unavailable"
    assert ("post_message", "case-100") not in client.calls
    assert [item.status for item in workspace.attachments.pending("case-100")] == ["failed"]
    assert view.errors[-1] == result.message
    await workspace.close()


@pytest.mark.asyncio
async def test_attachments_are_refused_while_locked(view, attachment_store):
    client = _server(ATTORNEY)
    workspace = _workspace(client, ATTORNEY, view, store=attachment_store)
    await workspace.open_case("case-300")

    result = workspace.add_attachment(file_name="notes.txt", content=b"notes")

    assert result.ok is False
    assert workspace.attachments.pending("case-300") == []
    assert (await workspace.send_message("hello")).ok is False
    await workspace.close()


@pytest.mark.asyncio
async def test_document_review_is_attorney_only(view):
    client = _server(ATTORNEY)
    workspace = _workspace(client, ATTORNEY, view)
    await workspace.open_case("case-100")

    assert (await workspace.review_document("f-1", "shipped")).ok is False
    assert (await workspace.review_document("f-1", "attorney_revision")).ok is True
    assert view.document_renders[-1][0].status == "attorney_revision"
    await workspace.close()

    paralegal = _workspace(_server(PARALEGAL), PARALEGAL, RecordingView())
    await paralegal.open_case("case-100")
    assert (await paralegal.review_document("f-1", "approved")).ok is False
    await paralegal.close()


@pytest.mark.asyncio
async def test_results_for_a_case_left_mid_refresh_are_dropped(view):
    entered = asyncio.Event()
    gate = asyncio.Event()

    class SlowMessages(MockCaseApiClient):
        async def list_messages(self, case_id):
            if case_id == "case-100":
                entered.set()
                await gate.wait()
            return await super().list_messages(case_id)

    client = _server(ATTORNEY, SlowMessages)
    workspace = _workspace(client, ATTORNEY, view)
    first = asyncio.create_task(workspace.open_case("case-100"))
    await entered.wait()

    await workspace.open_case("case-300")
    gate.set()
    await first

    assert workspace.state.active_case_id == "case-300"
    assert view.message_renders == []
    assert "case-100" not in workspace.state.messages
    assert client.read_marks == []
    await workspace.close()


@pytest.mark.asyncio
async def test_case_events_on_a_locked_workspace_reload_one_at_a_time(view):
    gate = asyncio.Event()

    class SlowCase(MockCaseApiClient):
        slow = False
        active = 0
        peak = 0

        async def get_case(self, case_id):
            self.active += 1
            self.peak = max(self.peak, self.active)
            try:
                if self.slow:
                    await gate.wait()
                return await super().get_case(case_id)
            finally:
                self.active -= 1

    client = _server(ATTORNEY, SlowCase)
    workspace = _workspace(client, ATTORNEY, view)
    await workspace.open_case("case-400")
    await wait_for(lambda: client.subscriber_count("case-400") == 1)
    assert workspace.state.locked is True
    loads = client.calls.count(("get_case", "case-400"))

    client.slow = True
    for _ in range(5):
        client.publish("case-400", "case")
    await wait_for(lambda: client.active == 1)
    await asyncio.sleep(0.05)
    assert client.peak == 1
    assert workspace.coordinator.pending.case is True

    gate.set()
    await wait_for(lambda: not workspace.coordinator.in_flight and client.active == 0)
    await workspace.transport.drain()

    assert client.peak == 1
    assert client.calls.count(("get_case", "case-400")) == loads + 2
    assert ("list_messages", "case-400") not in client.calls
    assert workspace.coordinator.pending == RefreshFlags(messages=True, documents=True)
    await workspace.close()


@pytest.mark.asyncio
async def test_refresh_during_send_waits_until_the_send_finishes(view):
    entered = asyncio.Event()
    gate = asyncio.Event()

    class SlowPost(MockCaseApiClient):
        async def post_message(self, case_id, text):
            entered.set()
            await gate.wait()
            return await super().post_message(case_id, text)

    client = _server(ATTORNEY, SlowPost)
    workspace = _workspace(client, ATTORNEY, view)
    await workspace.open_case("case-100")
    workspace.transport.close()

    def fetches() -> int:
        return client.calls.count(("list_messages", "case-100"))

    before = fetches()
    sending = asyncio.create_task(workspace.send_message("Draft attached."))
    await entered.wait()
    assert workspace.state.sending is True

    await workspace.handle_refresh(RefreshFlags(messages=True))
    assert fetches() == before
    assert workspace.coordinator.pending.messages is True

    gate.set()
    assert (await sending).ok is True
    assert fetches() == before + 1
    assert workspace.coordinator.pending == RefreshFlags()
    assert view.message_renders[-1][-1].text == "Draft attached."
    await workspace.close()


@pytest.mark.asyncio
async def test_reviewing_an_upload_the_server_has_not_listed_yet(view, attachment_store):
    class LaggingListing(MockCaseApiClient):
        async def list_documents(self, case_id):
            listed = await super().list_documents(case_id)
            return [document for document in listed if document.original_name == "lease.pdf"]

    client = _server(ATTORNEY, LaggingListing)
    workspace = _workspace(client, ATTORNEY, view, store=attachment_store)
    await workspace.open_case("case-100")
    workspace.add_attachment(file_name="exhibit.pdf", content=b"%PDF-1.7")
    assert (await workspace.send_message()).ok is True
    (uploaded,) = workspace.state.optimistic_documents["case-100"]
    assert uploaded.status == "pending_review"

    assert (await workspace.review_document(uploaded.id, "approved")).ok is True

    statuses = {document.original_name: document.status for document in view.document_renders[-1]}
    assert statuses == {"lease.pdf": "approved", "exhibit.pdf": "approved"}
    assert workspace.state.optimistic_documents["case-100"][0].status == "approved"
    await workspace.close()
