"""Messages delivered to subscribers of asynchronous commands.

Every message carries the reference of the subscription it belongs to.
A subscription produces any number of data/stream messages followed by
exactly one terminal message.

Example (events subscription):
    Message(kind="data", reference="ref_...", payload={"status": "start", ...})
    Message(kind="terminal", reference="ref_...", reason="finished")

Example (attach without a pseudo-terminal):
    Message(kind="stream", reference="ref_...", channel="stdout", data=b"hi\\n")
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from ..errors import DockerError


class MessageKind(str, Enum):
    DATA = "data"  # decoded JSON document
    STREAM = "stream"  # raw or demultiplexed bytes
    TERMINAL = "terminal"  # end of the subscription


class Channel(str, Enum):
    """Logical channel of a demultiplexed byte chunk."""

    STDIN = "stdin"
    STDOUT = "stdout"
    STDERR = "stderr"


class TerminalReason(str, Enum):
    """Why a subscription ended."""

    NORMAL = "normal"  # the engine closed the stream, or it went idle
    REMOTE_ERROR = "remote_error"  # the engine answered with an error status
    CONNECTION_LOST = "connection_lost"  # IO or framing failure
    FINISHED = "finished"  # finished by the subscriber, or its owner exited


class Message(BaseModel):
    """A unit delivered to a subscriber."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    kind: MessageKind
    reference: str
    payload: Any = None
    channel: Channel | None = None
    data: bytes | None = None
    reason: TerminalReason | None = None
    error: DockerError | None = None
    detail: str | None = None

    @property
    def final(self) -> bool:
        return self.kind == MessageKind.TERMINAL

    @classmethod
    def document(cls, reference: str, payload: Any) -> Message:
        return cls(kind=MessageKind.DATA, reference=reference, payload=payload)

    @classmethod
    def chunk(cls, reference: str, data: bytes, channel: Channel | None = None) -> Message:
        return cls(kind=MessageKind.STREAM, reference=reference, data=data, channel=channel)

    @classmethod
    def terminal(
        cls,
        reference: str,
        reason: TerminalReason,
        error: DockerError | None = None,
        detail: str | None = None,
    ) -> Message:
        return cls(
            kind=MessageKind.TERMINAL,
            reference=reference,
            reason=reason,
            error=error,
            detail=detail,
        )
