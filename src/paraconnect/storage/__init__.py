from .database import create_session_factory, init_db
from .models import Base, PendingAttachmentRecord

__all__ = [
    "Base",
    "PendingAttachmentRecord",
    "create_session_factory",
    "init_db",
]
