"""Exception types raised by SAM sessions.

All errors derive from SessionError so callers can catch the whole family:
- ResourceError: shared buffer allocation, size or reuse problems
- ProcessError: an engine task ended FAILED, CRASHED or CANCELED
- ArgumentError: a prompt or image was rejected before reaching the engine
- ProtocolError: the engine answered with malformed output
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sam_session.engine.protocol import TaskStatus


class SessionError(Exception):
    """Base class for all session errors."""


class ResourceError(SessionError):
    """A shared buffer could not be allocated, sized or reused."""


class ProcessError(SessionError):
    """An engine task did not complete.

    Attributes:
        status: Terminal status the task resolved to, if known.
    """

    def __init__(self, message: str, status: TaskStatus | None = None) -> None:
        super().__init__(message)
        self.status = status


class ProcessInterruptedError(ProcessError):
    """The caller was interrupted while waiting on an engine task."""


class ArgumentError(SessionError, ValueError):
    """A prompt, box or image is not acceptable."""


class ProtocolError(SessionError):
    """The engine output does not follow the task protocol."""
