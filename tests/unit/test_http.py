"""Unit tests for the HTTP/1.1 wire format."""

import asyncio

import pytest

from nkdocker.errors import EngineConnectionError, StreamProtocolError
from nkdocker.transport import encode_request, iter_body, read_body, read_head

# =============================================================================
# Helpers
# =============================================================================


def reader_with(data: bytes, eof: bool = True) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


# =============================================================================
# Tests: Requests
# =============================================================================


class TestEncodeRequest:
    """Test request serialization."""

    def test_get(self):
        request = encode_request("GET", "/info", "127.0.0.1:2376")
        head, _, body = request.partition(b"\r\n\r\n")
        lines = head.decode().split("\r\n")

        assert lines[0] == "GET /info HTTP/1.1"
        assert "Host: 127.0.0.1:2376" in lines
        assert not any(line.lower().startswith("content-length") for line in lines)
        assert body == b""

    def test_body_sets_length_and_type(self):
        request = encode_request("POST", "/auth", "h", b'{"a": 1}', "application/json")

        assert b"Content-Type: application/json\r\n" in request
        assert b"Content-Length: 8\r\n" in request
        assert request.endswith(b'\r\n\r\n{"a": 1}')

    def test_empty_post_has_zero_length(self):
        """Bodiless POSTs still declare their length."""
        assert b"Content-Length: 0\r\n" in encode_request("POST", "/containers/web/start", "h")

    def test_caller_headers_override(self):
        """Caller headers replace defaults, case-insensitively."""
        request = encode_request(
            "POST", "/build", "h", b"tar", "application/octet-stream", {"content-type": "application/tar"}
        )

        assert b"application/tar" in request
        assert b"application/octet-stream" not in request


# =============================================================================
# Tests: Responses
# =============================================================================


class TestReadHead:
    """Test response head parsing."""

    @pytest.mark.asyncio
    async def test_status_and_headers(self):
        reader = reader_with(b"HTTP/1.1 404 Not Found\r\nContent-Type: application/json\r\nContent-Length: 2\r\n\r\n{}")

        head = await read_head(reader)

        assert head.status == 404
        assert head.reason == "Not Found"
        assert head.content_type == "application/json"
        assert head.is_json
        assert head.content_length == 2
        assert not head.ok

    @pytest.mark.asyncio
    async def test_eof_before_response(self):
        with pytest.raises(EngineConnectionError):
            await read_head(reader_with(b""))

    @pytest.mark.asyncio
    async def test_malformed_status_line(self):
        with pytest.raises(StreamProtocolError):
            await read_head(reader_with(b"garbage\r\n\r\n"))

    @pytest.mark.asyncio
    async def test_connection_properties(self):
        """Reuse requires a delimited body and no Connection: close."""
        closing = await read_head(reader_with(b"HTTP/1.1 200 OK\r\nConnection: close\r\nContent-Length: 0\r\n\r\n"))
        assert not closing.keep_alive

        hijacked = await read_head(
            reader_with(b"HTTP/1.1 200 OK\r\nContent-Type: application/vnd.docker.multiplexed-stream\r\n\r\n")
        )
        assert hijacked.hijacked
        assert hijacked.multiplexed
        assert not hijacked.delimited

        upgraded = await read_head(reader_with(b"HTTP/1.1 101 UPGRADED\r\nUpgrade: tcp\r\n\r\n"))
        assert upgraded.ok
        assert upgraded.hijacked


class TestIterBody:
    """Test body framing."""

    @pytest.mark.asyncio
    async def test_content_length(self):
        """Exactly content-length bytes are read, leaving the rest."""
        reader = reader_with(b"HTTP/1.1 200 OK\r\nContent-Length: 5\r\n\r\nhelloEXTRA")
        head = await read_head(reader)

        assert await read_body(reader, head) == b"hello"
        assert await reader.read() == b"EXTRA"

    @pytest.mark.asyncio
    async def test_chunked(self):
        reader = reader_with(
            b"HTTP/1.1 200 OK\r\nTransfer-Encoding: chunked\r\n\r\n"
            b"5\r\nhello\r\n6;ext=1\r\n world\r\n0\r\nX-Trailer: 1\r\n\r\nNEXT"
        )
        head = await read_head(reader)

        chunks = [data async for data in iter_body(reader, head)]

        assert b"".join(chunks) == b"hello world"
        assert await reader.read() == b"NEXT"

    @pytest.mark.asyncio
    async def test_truncated_body(self):
        reader = reader_with(b"HTTP/1.1 200 OK\r\nContent-Length: 10\r\n\r\nshort")
        head = await read_head(reader)

        with pytest.raises(EngineConnectionError):
            await read_body(reader, head)

    @pytest.mark.asyncio
    async def test_no_body_statuses(self):
        """204 and HEAD responses have no body even with a length header."""
        reader = reader_with(b"HTTP/1.1 204 No Content\r\n\r\n")
        head = await read_head(reader)
        assert await read_body(reader, head) == b""

        reader = reader_with(b"HTTP/1.1 200 OK\r\nContent-Length: 4\r\n\r\n")
        head = await read_head(reader)
        assert await read_body(reader, head, "HEAD") == b""

    @pytest.mark.asyncio
    async def test_hijacked_reads_until_eof(self):
        reader = reader_with(
            b"HTTP/1.1 200 OK\r\nContent-Type: application/vnd.docker.raw-stream\r\n\r\nraw terminal bytes"
        )
        head = await read_head(reader)

        assert await read_body(reader, head) == b"raw terminal bytes"

    @pytest.mark.asyncio
    async def test_chunked_stream_content_type(self):
        """A chunked multiplexed body (container logs) ends at the last chunk."""
        frame = b"\x01\x00\x00\x00\x00\x00\x00\x06hello\n"
        reader = reader_with(
            b"HTTP/1.1 200 OK\r\nContent-Type: application/vnd.docker.multiplexed-stream\r\n"
            b"Transfer-Encoding: chunked\r\n\r\n" + f"{len(frame):x}\r\n".encode() + frame + b"\r\n0\r\n\r\nNEXT"
        )
        head = await read_head(reader)

        assert not head.hijacked
        assert head.multiplexed
        assert head.delimited
        assert await read_body(reader, head) == frame
        assert await reader.read() == b"NEXT"

    @pytest.mark.asyncio
    async def test_sized_stream_content_type(self):
        reader = reader_with(
            b"HTTP/1.1 200 OK\r\nContent-Type: application/vnd.docker.raw-stream\r\n"
            b"Content-Length: 3\r\n\r\nabcNEXT"
        )
        head = await read_head(reader)

        assert not head.hijacked
        assert await read_body(reader, head) == b"abc"
