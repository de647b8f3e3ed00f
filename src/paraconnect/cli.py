from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

import typer

from paraconnect.attachments import AttachmentQueue, SqlAttachmentStore
from paraconnect.clients import CaseApiClient, CaseApiError, HttpCaseApiClient, MockCaseApiClient, normalize_session_token
from paraconnect.config import Settings
from paraconnect.storage import create_session_factory, init_db
from paraconnect.sync.lifecycle import summarize_case
from paraconnect.types import Viewer
from paraconnect.workspace import CaseWorkspace, ConsoleView

app = typer.Typer(help="ParaConnect case workspace CLI")

ACTIONS = ("complete", "withdraw", "partial-payout", "reject-payout", "relist", "dispute")

MockOption = typer.Option(False, "--mock", help="Run against the fixture-backed mock server")
ViewerOption = typer.Option(None, "--viewer-id", envvar="PARACONNECT_VIEWER_ID", help="Id of the signed-in user")
RoleOption = typer.Option(None, "--role", envvar="PARACONNECT_VIEWER_ROLE", help="attorney, paralegal or admin")
FixtureOption = typer.Option(None, help="Path to fixture JSON used with --mock")


@app.callback()
def configure_logging(verbose: bool = typer.Option(False, "--verbose", "-v")) -> None:
    level = logging.DEBUG if verbose else getattr(logging, Settings().log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")


@app.command("state")
def show_state(
    case_id: str,
    mock: bool = MockOption,
    viewer_id: Optional[str] = ViewerOption,
    role: Optional[str] = RoleOption,
    fixture: Optional[Path] = FixtureOption,
) -> None:
    """Print the derived state, workspace lock, available actions and withdrawal banner."""

    settings = Settings()
    viewer = _viewer(settings, viewer_id, role)

    async def run() -> dict:
        client = _build_client(settings, viewer, mock=mock, fixture=fixture)
        try:
            case = await client.get_case(case_id)
        finally:
            await client.aclose()
        summary = summarize_case(
            case,
            viewer,
            datetime.now(timezone.utc),
            hold=timedelta(hours=settings.withdrawal_hold_hours),
        )
        withdrawal = summary.withdrawal
        return {
            "case_id": case.id,
            "title": case.title,
            "status": case.status,
            "state": summary.state,
            "workspace_unlocked": summary.workspace_unlocked,
            "actions": summary.actions.enabled(),
            "withdrawal": {
                "banner": withdrawal.banner,
                "show_partial": withdrawal.show_partial,
                "show_reject": withdrawal.show_reject,
                "show_relist": withdrawal.show_relist,
                "remaining_cents": withdrawal.remaining_cents,
                "hold_ends_at": withdrawal.hold_ends_at.isoformat() if withdrawal.hold_ends_at else None,
            },
        }

    typer.echo(json.dumps(_run_or_exit(run()), indent=2))


@app.command("watch")
def watch(
    case_id: str,
    duration: float = typer.Option(30.0, help="Seconds to stay connected"),
    mock: bool = MockOption,
    viewer_id: Optional[str] = ViewerOption,
    role: Optional[str] = RoleOption,
    fixture: Optional[Path] = FixtureOption,
) -> None:
    """Open the workspace and print updates as they arrive."""

    settings = Settings()
    viewer = _viewer(settings, viewer_id, role)

    async def run() -> None:
        async with _open_workspace(settings, viewer, case_id, mock=mock, fixture=fixture):
            await asyncio.sleep(duration)

    _run_or_exit(run())


@app.command("attach")
def attach(
    case_id: str,
    path: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True),
    mock: bool = MockOption,
    viewer_id: Optional[str] = ViewerOption,
    role: Optional[str] = RoleOption,
    fixture: Optional[Path] = FixtureOption,
) -> None:
    """Stage a file for the next message on a case."""

    settings = Settings()
    viewer = _viewer(settings, viewer_id, role)

    async def run() -> bool:
        async with _open_workspace(settings, viewer, case_id, mock=mock, fixture=fixture) as workspace:
            result = workspace.add_attachment(path=path)
        typer.echo(result.message)
        return result.ok

    if not _run_or_exit(run()):
        raise typer.Exit(code=1)


@app.command("pending")
def pending(
    case_id: str,
    db_url: Optional[str] = typer.Option(None, envvar="PARACONNECT_ATTACHMENTS_DATABASE_URL"),
) -> None:
    """List attachments staged for a case."""

    settings = Settings()
    session_factory, engine = create_session_factory(db_url or settings.attachments_database_url)
    init_db(engine)
    entries = SqlAttachmentStore(session_factory).list_for_case(case_id)
    if not entries:
        typer.echo("No pending attachments.")
        return
    for entry in entries:
        line = f"{entry.id} {entry.file_name} {entry.size}B {entry.status} {entry.progress:.0%}"
        if entry.error:
            line += f" ({entry.error})"
        typer.echo(line)


@app.command("send")
def send(
    case_id: str,
    text: str = typer.Option("", help="Message text; staged attachments are uploaded first"),
    mock: bool = MockOption,
    viewer_id: Optional[str] = ViewerOption,
    role: Optional[str] = RoleOption,
    fixture: Optional[Path] = FixtureOption,
) -> None:
    """Upload staged attachments and post a message."""

    settings = Settings()
    viewer = _viewer(settings, viewer_id, role)

    async def run() -> bool:
        async with _open_workspace(settings, viewer, case_id, mock=mock, fixture=fixture) as workspace:
            result = await workspace.send_message(text)
        typer.echo(result.message)
        return result.ok

    if not _run_or_exit(run()):
        raise typer.Exit(code=1)


@app.command("act")
def act(
    case_id: str,
    action: str = typer.Argument(..., help=f"One of: {', '.join(ACTIONS)}"),
    amount_cents: Optional[int] = typer.Option(None, help="Partial payout amount in cents"),
    message: str = typer.Option("", help="Dispute description"),
    mock: bool = MockOption,
    viewer_id: Optional[str] = ViewerOption,
    role: Optional[str] = RoleOption,
    fixture: Optional[Path] = FixtureOption,
) -> None:
    """Run a case action such as completing the case or finalizing a withdrawal payout."""

    if action not in ACTIONS:
        raise typer.BadParameter(f"Unknown action {action!r}; expected one of: {', '.join(ACTIONS)}")
    if action == "partial-payout" and amount_cents is None:
        raise typer.BadParameter("--amount-cents is required for partial-payout")

    settings = Settings()
    viewer = _viewer(settings, viewer_id, role)

    async def run() -> bool:
        async with _open_workspace(settings, viewer, case_id, mock=mock, fixture=fixture) as workspace:
            if action == "complete":
                result = await workspace.complete_case()
            elif action == "withdraw":
                result = await workspace.withdraw()
            elif action == "partial-payout":
                result = await workspace.finalize_partial_payout(amount_cents)
            elif action == "reject-payout":
                result = await workspace.reject_payout()
            elif action == "relist":
                result = await workspace.relist()
            else:
                result = await workspace.open_dispute(message)
        typer.echo(result.message)
        return result.ok

    if not _run_or_exit(run()):
        raise typer.Exit(code=1)


def _viewer(settings: Settings, viewer_id: Optional[str], role: Optional[str]) -> Viewer:
    effective_id = viewer_id or settings.viewer_id
    if not effective_id:
        raise typer.BadParameter("A viewer id is required via --viewer-id or PARACONNECT_VIEWER_ID")
    effective_role = (role or settings.viewer_role).lower()
    if effective_role not in {"attorney", "paralegal", "admin"}:
        raise typer.BadParameter("--role must be attorney, paralegal or admin")
    return Viewer(id=effective_id, role=effective_role)


def _build_client(settings: Settings, viewer: Viewer, *, mock: bool, fixture: Optional[Path]) -> CaseApiClient:
    if mock:
        return MockCaseApiClient(fixture or settings.fixture_path, viewer_id=viewer.id, viewer_role=viewer.role)

    token = normalize_session_token(settings.session_token)
    if not token:
        raise typer.BadParameter("A session token is required via PARACONNECT_SESSION_TOKEN")
    return HttpCaseApiClient(
        settings.api_base_url,
        token,
        timeout=settings.api_timeout,
        user_agent=settings.user_agent,
        max_retries=settings.api_max_retries,
        backoff_seconds=settings.api_backoff_seconds,
        max_backoff_seconds=settings.api_max_backoff_seconds,
    )


@asynccontextmanager
async def _open_workspace(
    settings: Settings,
    viewer: Viewer,
    case_id: str,
    *,
    mock: bool,
    fixture: Optional[Path],
) -> AsyncIterator[CaseWorkspace]:
    session_factory, engine = create_session_factory(settings.attachments_database_url)
    init_db(engine)

    client = _build_client(settings, viewer, mock=mock, fixture=fixture)
    workspace = CaseWorkspace(
        client,
        viewer,
        ConsoleView(),
        attachments=AttachmentQueue(client, SqlAttachmentStore(session_factory)),
        poll_interval=settings.poll_interval_seconds,
        stream_retry_seconds=settings.stream_retry_seconds,
        hold=timedelta(hours=settings.withdrawal_hold_hours),
    )
    try:
        await workspace.open_case(case_id)
        yield workspace
    finally:
        await workspace.close()
        await client.aclose()
        engine.dispose()


def _run_or_exit(coro):
    try:
        return asyncio.run(coro)
    except CaseApiError as exc:
        typer.echo(typer.style(f"Request failed: {exc.message}", fg=typer.colors.RED), err=True)
        raise typer.Exit(code=1) from exc


if __name__ == "__main__":
    app()
