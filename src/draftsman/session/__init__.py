from draftsman.session.store import (
    ArchiveResult,
    Session,
    SessionStore,
    SessionStoreError,
    SessionUpdate,
)

__all__ = ["ArchiveResult", "Session", "SessionStore", "SessionStoreError", "SessionUpdate"]
