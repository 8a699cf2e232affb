"""Error taxonomy for engine commands.

Every failure surfaced by this package is a DockerError:

- CommandTimeout: no response within the effective timeout
- EngineConnectionError: no connection could be opened or written to
- ReferenceNotFound: unknown (or already finished) subscription reference
- RemoteError: the engine answered with a non-success status
- StreamProtocolError: malformed data on a streaming response
- OptionsError: invalid per-command options

Remote errors are classified by `classify` into a closed set of kinds.
"""

from __future__ import annotations

import json
from enum import Enum


class ErrorKind(str, Enum):
    """Classified kinds of remote errors."""

    NOT_MODIFIED = "not_modified"
    BAD_PARAMETER = "bad_parameter"
    NOT_FOUND = "not_found"
    NOT_RUNNING = "not_running"
    CONFLICT = "conflict"
    SERVER_ERROR = "server_error"


class DockerError(Exception):
    """Base class for all errors raised by nkdocker."""


class CommandTimeout(DockerError, TimeoutError):
    """A synchronous command did not complete within its timeout."""

    def __init__(self, verb: str, path: str, timeout: int):
        self.verb = verb
        self.path = path
        self.timeout = timeout
        super().__init__(f"{verb} {path} timed out after {timeout} ms")


class EngineConnectionError(DockerError, ConnectionError):
    """Could not open, or write to, a connection to the engine."""


class ReferenceNotFound(DockerError, KeyError):
    """The subscription reference is unknown or already finished."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(reference)

    def __str__(self) -> str:
        return f"Unknown subscription reference: {self.reference}"


class StreamProtocolError(DockerError):
    """The engine sent data that does not follow the expected framing."""


class OptionsError(DockerError, ValueError):
    """Invalid command options."""


class RemoteError(DockerError):
    """The engine answered with a non-success status.

    Attributes:
        kind: An ErrorKind, or the raw status code when it has no kind
        status: HTTP status code
        message: Error text reported by the engine
    """

    def __init__(self, kind: ErrorKind | int, status: int, message: str):
        self.kind = kind
        self.status = status
        self.message = message
        label = kind.value if isinstance(kind, ErrorKind) else str(kind)
        super().__init__(f"{label}: {message}" if message else label)

    @classmethod
    def from_response(cls, status: int, body: bytes | str) -> RemoteError:
        """Build a classified error from a status code and raw body."""
        message = error_message(body)
        return cls(classify(status, message), status, message)


def error_message(body: bytes | str) -> str:
    """Extract the error text from an engine error body.

    The engine answers errors either with plain text or with a JSON
    document of the form {"message": "..."}.
    """
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    text = body.strip()
    if text.startswith("{"):
        try:
            data = json.loads(text)
        except ValueError:
            return text
        if isinstance(data, dict) and isinstance(data.get("message"), str):
            return data["message"]
    return text


def classify(status: int, body: bytes | str = b"") -> ErrorKind | int:
    """Map a non-success status code and body to an error kind.

    Checked in order: 304, 400, 404, 409, 5xx. A 409 whose body reports a
    container that is not running is `not_running`. Any other status is
    returned unchanged.
    """
    if status == 304:
        return ErrorKind.NOT_MODIFIED
    if status == 400:
        return ErrorKind.BAD_PARAMETER
    if status == 404:
        return ErrorKind.NOT_FOUND
    if status == 409:
        if "is not running" in error_message(body).lower():
            return ErrorKind.NOT_RUNNING
        return ErrorKind.CONFLICT
    if status >= 500:
        return ErrorKind.SERVER_ERROR
    return status
