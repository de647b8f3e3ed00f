from .base import CaseApiClient, CaseApiError, ProgressCallback
from .http import HttpCaseApiClient, normalize_session_token
from .mock import MockCaseApiClient

__all__ = [
    "CaseApiClient",
    "CaseApiError",
    "HttpCaseApiClient",
    "MockCaseApiClient",
    "ProgressCallback",
    "normalize_session_token",
]
