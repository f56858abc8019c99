from __future__ import annotations

from enum import Enum


class ReplayNoticeCode(str, Enum):
    """Non-fatal conditions surfaced as transient status messages."""

    TARGET_UNRESOLVED = "target_unresolved"
    NAVIGATION_TIMEOUT = "navigation_timeout"
    STALE_CONTINUITY = "stale_continuity"
    CAPTURED_STREAM_LOST = "captured_stream_lost"
    DISPATCH_FAILED = "dispatch_failed"


class ReplayError(Exception):
    """Base class for errors that stop a replay from starting or continuing."""


class MalformedTimelineError(ReplayError):
    """The timeline document failed load-time validation."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        summary = "; ".join(self.errors[:5])
        if len(self.errors) > 5:
            summary += f" (+{len(self.errors) - 5} more)"
        super().__init__(f"malformed timeline: {summary}")


class ReplayAlreadyActiveError(ReplayError):
    """Another engine instance holds the running lease for this session."""

    def __init__(self, session_key: str, owner_id: str):
        self.session_key = session_key
        self.owner_id = owner_id
        super().__init__(f"replay session {session_key!r} is already running in instance {owner_id}")


class SelectorQueryError(ReplayError):
    """A single selector could not be evaluated (syntax error, detached context)."""
