"""HTTP/1.1 wire format over asyncio streams.

Requests are written in full; responses are read as a head followed by a
body that is either length-delimited, chunked, or runs until the engine
closes the connection (hijacked attach/exec streams).
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass

import httpx

from ..errors import EngineConnectionError, StreamProtocolError

USER_AGENT = "nkdocker/0.1"
READ_SIZE = 65536

_HIJACKED_TYPES = (
    "application/vnd.docker.raw-stream",
    "application/vnd.docker.multiplexed-stream",
)


@dataclass
class ResponseHead:
    """Status line and headers of a response."""

    status: int
    reason: str
    headers: httpx.Headers
    version: str = "HTTP/1.1"

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300 or self.status == 101

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "").split(";")[0].strip().lower()

    @property
    def is_json(self) -> bool:
        return self.content_type in ("application/json", "application/x-json-stream")

    @property
    def hijacked(self) -> bool:
        """True if the connection carries a raw stream after this head.

        Stream content types sent with a chunked or sized body (container
        logs) are ordinary HTTP bodies.
        """
        if self.status == 101:
            return True
        if self.content_type not in _HIJACKED_TYPES:
            return False
        return not self.chunked and self.content_length is None

    @property
    def multiplexed(self) -> bool:
        return self.content_type == "application/vnd.docker.multiplexed-stream"

    @property
    def chunked(self) -> bool:
        return "chunked" in self.headers.get("transfer-encoding", "").lower()

    @property
    def content_length(self) -> int | None:
        value = self.headers.get("content-length")
        return int(value) if value is not None else None

    @property
    def delimited(self) -> bool:
        """True if the body end is known without closing the connection."""
        if self.status in (204, 304):
            return True
        return not self.hijacked and (self.chunked or self.content_length is not None)

    @property
    def keep_alive(self) -> bool:
        if self.headers.get("connection", "").lower() == "close":
            return False
        return self.version == "HTTP/1.1"


def encode_request(
    method: str,
    target: str,
    host: str,
    body: bytes | None = None,
    content_type: str | None = None,
    headers: Mapping[str, str] | None = None,
) -> bytes:
    """Serialize a request; caller headers override the defaults."""
    merged = httpx.Headers({"Host": host, "User-Agent": USER_AGENT})
    if body is not None:
        if content_type:
            merged["Content-Type"] = content_type
        merged["Content-Length"] = str(len(body))
    elif method in ("POST", "PUT"):
        merged["Content-Length"] = "0"
    for name, value in (headers or {}).items():
        merged[name] = value

    lines = [f"{method} {target} HTTP/1.1"]
    lines.extend(f"{name.decode('latin-1')}: {value.decode('latin-1')}" for name, value in merged.raw)
    lines.extend(["", ""])
    head = "\r\n".join(lines).encode("latin-1")
    return head + body if body else head


async def read_head(reader: asyncio.StreamReader) -> ResponseHead:
    """Read the status line and headers.

    Raises:
        EngineConnectionError: If the connection closes before the head ends
        StreamProtocolError: If the status line is malformed
    """
    line = await _readline(reader)
    if not line:
        raise EngineConnectionError("Connection closed before response")
    parts = line.decode("latin-1").rstrip("\r\n").split(" ", 2)
    if len(parts) < 2 or not parts[0].startswith("HTTP/") or not parts[1].isdigit():
        raise StreamProtocolError(f"Malformed status line: {line!r}")
    version, status = parts[0], int(parts[1])
    reason = parts[2] if len(parts) > 2 else ""

    headers = httpx.Headers()
    while True:
        line = await _readline(reader)
        if not line:
            raise EngineConnectionError("Connection closed inside response headers")
        decoded = line.decode("latin-1").rstrip("\r\n")
        if not decoded:
            break
        name, sep, value = decoded.partition(":")
        if sep:
            headers[name.strip()] = value.strip()
    return ResponseHead(status=status, reason=reason, headers=headers, version=version)


async def iter_body(
    reader: asyncio.StreamReader,
    head: ResponseHead,
    method: str = "GET",
) -> AsyncIterator[bytes]:
    """Yield body bytes as they arrive.

    The generator returns normally only when the body is complete.

    Raises:
        EngineConnectionError: If the connection closes inside a delimited body
    """
    if method == "HEAD" or head.status in (204, 304) or 100 <= head.status < 200 and head.status != 101:
        return

    if head.hijacked:
        async for data in _until_eof(reader):
            yield data
        return

    if head.chunked:
        while True:
            size_line = await _readline(reader)
            if not size_line:
                raise EngineConnectionError("Connection closed inside chunked body")
            size_text = size_line.split(b";")[0].strip()
            if not size_text:
                continue
            try:
                size = int(size_text, 16)
            except ValueError:
                raise StreamProtocolError(f"Malformed chunk size: {size_line!r}") from None
            if size == 0:
                # Trailers, then the blank line
                while (await _readline(reader)).strip():
                    pass
                return
            remaining = size
            while remaining:
                data = await reader.read(min(remaining, READ_SIZE))
                if not data:
                    raise EngineConnectionError("Connection closed inside chunk")
                remaining -= len(data)
                yield data
            await _readline(reader)  # CRLF after chunk data
        return

    length = head.content_length
    if length is not None:
        remaining = length
        while remaining:
            data = await reader.read(min(remaining, READ_SIZE))
            if not data:
                raise EngineConnectionError(
                    f"Connection closed with {remaining} body bytes outstanding"
                )
            remaining -= len(data)
            yield data
        return

    async for data in _until_eof(reader):
        yield data


async def read_body(reader: asyncio.StreamReader, head: ResponseHead, method: str = "GET") -> bytes:
    """Read the whole body."""
    parts = [data async for data in iter_body(reader, head, method)]
    return b"".join(parts)


async def _until_eof(reader: asyncio.StreamReader) -> AsyncIterator[bytes]:
    while True:
        data = await reader.read(READ_SIZE)
        if not data:
            return
        yield data


async def _readline(reader: asyncio.StreamReader) -> bytes:
    try:
        return await reader.readline()
    except ValueError as e:
        # Line longer than the reader limit
        raise StreamProtocolError(str(e)) from e
