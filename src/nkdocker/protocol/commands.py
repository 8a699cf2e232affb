"""Command definitions for the dispatch layer.

A Command is one logical request to the engine: a verb, a path (with its
query string already encoded) and an optional body, plus the per-call
CommandOptions that decide how the dispatcher handles it.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import OptionsError

# Timeouts, in milliseconds
DEFAULT_TIMEOUT = 180_000
ATTACH_TIMEOUT = 3_600_000
EXEC_TIMEOUT = 3_600_000
WAIT_TIMEOUT = 60_000


class Verb(str, Enum):
    """HTTP verbs used against the engine."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"
    HEAD = "HEAD"


class CommandOptions(BaseModel):
    """Per-command options.

    Example:
        CommandOptions(force_new=True, timeout=10_000)
        CommandOptions.model_validate({"async": True, "refresh": True})
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    force_new: bool = False
    async_: bool = Field(default=False, alias="async")
    idle_timeout: int | None = Field(default=None, gt=0)
    refresh: bool = False
    redirect: Path | None = None
    timeout: int | None = Field(default=None, gt=0)
    headers: dict[str, str] = Field(default_factory=dict)
    tty: bool | None = None

    @field_validator("headers")
    @classmethod
    def _no_framing_headers(cls, value: dict[str, str]) -> dict[str, str]:
        for name in value:
            if name.lower() in ("content-length", "transfer-encoding", "host"):
                raise ValueError(f"Header {name} is managed by the transport")
        return value

    @classmethod
    def build(cls, options: CommandOptions | dict[str, Any] | None = None, **kwargs: Any) -> CommandOptions:
        """Coerce a mapping (or nothing) into validated options.

        Raises:
            OptionsError: If an option is unknown or has an invalid value
        """
        if isinstance(options, CommandOptions):
            if not kwargs:
                return options
            data = options.model_dump(by_alias=True)
        else:
            data = dict(options or {})
        data.update(kwargs)
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise OptionsError(str(e)) from e

    @property
    def effective_timeout(self) -> int:
        """Maximum time (ms) to wait for a synchronous response."""
        return self.timeout if self.timeout is not None else DEFAULT_TIMEOUT


def grace_timeout(t: int | None) -> int:
    """Timeout (ms) for stop/restart given the engine grace period t (seconds).

    The engine waits t seconds before killing the container, so the client
    waits twice that long before giving up.
    """
    if t is None:
        return DEFAULT_TIMEOUT
    return 2 * t * 1000


class Command(BaseModel):
    """One request to the engine."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    verb: Verb
    path: str
    body: Any = None
    options: CommandOptions = Field(default_factory=CommandOptions)

    @field_validator("path")
    @classmethod
    def _absolute_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"Path must start with '/': {value}")
        return value

    @property
    def streams(self) -> bool:
        """True if the query asks the engine for an unbounded response."""
        params = httpx.URL(self.path).params
        for key in ("follow", "stream"):
            if params.get(key, "").lower() in ("1", "true"):
                return True
        return False

    @property
    def is_async(self) -> bool:
        return self.options.async_ or self.streams

    def encode_body(self) -> tuple[bytes | None, str | None]:
        """Serialize the body, returning (bytes, content type).

        Raises:
            OptionsError: If the body cannot be encoded as JSON
        """
        body = self.body
        if body is None:
            return None, None
        if isinstance(body, bytes | bytearray | memoryview):
            return bytes(body), "application/octet-stream"
        if isinstance(body, str):
            return body.encode("utf-8"), "text/plain"
        try:
            return json.dumps(body).encode("utf-8"), "application/json"
        except (TypeError, ValueError) as e:
            raise OptionsError(f"Body of {self.verb.value} {self.path} is not JSON serializable: {e}") from e
