from .session import ActionResult, CaseWorkspace, WorkspaceState
from .view import ConsoleView, WorkspaceView

__all__ = [
    "ActionResult",
    "CaseWorkspace",
    "ConsoleView",
    "WorkspaceState",
    "WorkspaceView",
]
