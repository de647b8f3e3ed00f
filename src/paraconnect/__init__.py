"""
ParaConnect case workspace engine.

Keeps a single case's tasks, messages and documents reconciled with the ParaConnect API over the
case event stream (with a polling fallback), resolves which lifecycle and payout actions the
signed-in viewer may take, and stages message attachments in a SQLite-backed queue.

Most callers only need `CaseWorkspace` with one of the API clients; the CLI in
`paraconnect.cli` wires them together from `Settings`.
"""

from importlib import metadata

from paraconnect.clients import CaseApiError, HttpCaseApiClient, MockCaseApiClient
from paraconnect.config import Settings
from paraconnect.workspace import CaseWorkspace

__all__ = [
    "CaseApiError",
    "CaseWorkspace",
    "HttpCaseApiClient",
    "MockCaseApiClient",
    "Settings",
    "__version__",
]

DISTRIBUTION = "paraconnect-workspace"


def _installed_version() -> str:
    try:
        return metadata.version(DISTRIBUTION)
    except metadata.PackageNotFoundError:  # running from a source checkout
        return "0.0.0"


__version__ = _installed_version()
