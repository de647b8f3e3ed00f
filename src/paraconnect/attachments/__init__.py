from .queue import AttachmentQueue, AttachmentRejected, UploadOutcome
from .store import AttachmentStore, SqlAttachmentStore

__all__ = [
    "AttachmentQueue",
    "AttachmentRejected",
    "AttachmentStore",
    "SqlAttachmentStore",
    "UploadOutcome",
]
