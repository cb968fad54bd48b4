"""Error taxonomy.

Components raise these internally; the Router, the service layer and the API
turn them into result values carrying ``errorKind`` so clients can branch on
the kind instead of string-matching the message.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    SESSION_NOT_FOUND = "session_not_found"
    SESSION_BUSY = "session_busy"
    COMMAND_BLOCKED = "command_blocked"
    REPOSITORY_REQUIRED = "repository_required"
    ACCESS_DENIED = "access_denied"
    EXECUTION_TIMEOUT = "execution_timeout"
    CAPACITY_UNAVAILABLE = "capacity_unavailable"
    REMOTE_PROTOCOL_ERROR = "remote_protocol_error"
    REMOTE_UNREACHABLE = "remote_unreachable"
    SERVICE_UNAVAILABLE = "service_unavailable"
    INVALID_REQUEST = "invalid_request"
    INTERNAL_ERROR = "internal_error"


class DevRelayError(Exception):
    """Base class. ``kind`` and ``http_status`` are fixed per subclass."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR
    http_status: int = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": False,
            "error": self.message,
            "errorKind": self.kind.value,
        }
        if self.details:
            body["details"] = self.details
        return body


class SessionNotFound(DevRelayError):
    kind = ErrorKind.SESSION_NOT_FOUND
    http_status = 404


class SessionBusy(DevRelayError):
    kind = ErrorKind.SESSION_BUSY
    http_status = 409


class CommandBlocked(DevRelayError):
    kind = ErrorKind.COMMAND_BLOCKED
    http_status = 403


class RepositoryRequired(DevRelayError):
    kind = ErrorKind.REPOSITORY_REQUIRED
    http_status = 400


class AccessDenied(DevRelayError):
    kind = ErrorKind.ACCESS_DENIED
    http_status = 403


class InvalidRequest(DevRelayError):
    kind = ErrorKind.INVALID_REQUEST
    http_status = 400


class ExecutionTimeout(DevRelayError):
    kind = ErrorKind.EXECUTION_TIMEOUT
    http_status = 504


class HeavyExecutionError(DevRelayError):
    """Anything that went wrong talking to the heavy backend."""

    kind = ErrorKind.REMOTE_PROTOCOL_ERROR
    http_status = 502


class RemoteProtocolError(HeavyExecutionError):
    kind = ErrorKind.REMOTE_PROTOCOL_ERROR


class RemoteUnreachable(HeavyExecutionError):
    kind = ErrorKind.REMOTE_UNREACHABLE


class RemoteTimeout(HeavyExecutionError):
    kind = ErrorKind.EXECUTION_TIMEOUT
    http_status = 504


class CapacityUnavailable(HeavyExecutionError):
    kind = ErrorKind.CAPACITY_UNAVAILABLE
    http_status = 503


class ServiceUnavailable(DevRelayError):
    kind = ErrorKind.SERVICE_UNAVAILABLE
    http_status = 503
