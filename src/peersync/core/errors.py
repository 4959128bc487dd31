"""Session-level exceptions."""


class SessionError(Exception):
    """Base exception for sync session errors."""

    code = "session_error"


class NoPeerError(SessionError):
    """Raised when a sync is started without a connected peer."""

    code = "no_peer"


class BusyError(SessionError):
    """Raised when a session is already scanning, preparing, syncing or paused."""

    code = "busy"


class NothingToSyncError(SessionError):
    """Raised when the source catalog is empty."""

    code = "nothing_to_sync"


class InvalidTransitionError(SessionError):
    """Raised when an operation is not allowed in the current status."""

    code = "invalid_transition"


class ConflictAlreadyResolvedError(InvalidTransitionError):
    """Raised when a settled conflict is resolved with a different strategy."""

    code = "conflict_already_resolved"
