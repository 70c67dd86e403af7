"""
Error taxonomy for the sync engine.
Element- and record-level errors never fail a session; page- and transport-level ones do.
"""
from enum import Enum


class SyncError(Exception):
    """Base class for every error raised by the sync engine."""


class PageTypeMismatch(SyncError):
    """Current page is not a collection page; the run never starts."""

    def __init__(self, message: str = "not on the expected page"):
        super().__init__(message)


class ElementParseSkip(SyncError):
    """A page element could not be turned into a record; it is dropped and logged."""


class DiscoveryExhausted(SyncError):
    """Empty discovery retries ran out. Ends a run as a normal completion."""


class ProtocolError(SyncError):
    """Malformed or unexpected channel message."""


class InvalidPayload(SyncError):
    """Raw record rejected by the record parser."""


class SessionConflict(SyncError):
    """A sync was requested while another one is still in progress."""


class NotLoggedIn(SyncError):
    def __init__(self, message: str = "please log in to the platform first"):
        super().__init__(message)


class EvalError(SyncError):
    """Script evaluation in the page failed."""


class InvalidTransition(SyncError):
    """SyncSession state change not allowed by the state machine."""


class NavigationErrorKind(str, Enum):
    NO_CONNECTIVITY = "no_connectivity"
    TIMEOUT = "timeout"
    HOST_UNREACHABLE = "host_unreachable"
    CONNECTION_REFUSED = "connection_refused"
    OTHER = "other"


_NAVIGATION_MESSAGES = {
    NavigationErrorKind.NO_CONNECTIVITY: "network connection unavailable, check network settings",
    NavigationErrorKind.TIMEOUT: "navigation timeout, please retry",
    NavigationErrorKind.HOST_UNREACHABLE: "cannot find the server, check network connection",
    NavigationErrorKind.CONNECTION_REFUSED: "cannot connect to the server (connection refused)",
}


class NavigationError(SyncError):
    """Navigation failed. Terminal for the pending navigation, never retried."""

    def __init__(self, kind: NavigationErrorKind, detail: str = "", url: str = ""):
        self.kind = kind
        self.detail = detail
        self.url = url
        base = _NAVIGATION_MESSAGES.get(kind)
        if base is None:
            message = f"page load failed: {detail}" if detail else "page load failed"
        else:
            message = base
        super().__init__(message)
