"""Stream decoding for streaming responses.

Attach and exec sessions started without a pseudo-terminal return a
multiplexed byte stream. Each frame has an 8-byte header:
  - byte 0: channel (0 = stdin, 1 = stdout, 2 = stderr)
  - bytes 1-3: padding (zero)
  - bytes 4-7: payload length (big-endian uint32)

Sessions with a pseudo-terminal return the raw terminal bytes, and the
events/stats/progress endpoints return a sequence of JSON documents.

Decoders are fed transport reads of any size and keep partial data
between calls, so a header or document split across reads is handled.
"""

from __future__ import annotations

import codecs
import json
import struct
from enum import Enum
from typing import Any, Protocol

from ..errors import StreamProtocolError
from .messages import Channel

HEADER_SIZE = 8
_HEADER_FORMAT = ">BxxxI"  # 1 byte channel, 3 padding, 4 byte length

_CHANNELS = {0: Channel.STDIN, 1: Channel.STDOUT, 2: Channel.STDERR}
_CHANNEL_IDS = {channel: ident for ident, channel in _CHANNELS.items()}


class DemuxMode(str, Enum):
    RAW = "raw"  # pseudo-terminal: bytes pass through untouched
    FRAMED = "framed"  # stdout/stderr multiplexed with frame headers
    NONE = "none"  # not an attach stream: JSON documents or plain bytes


class DecoderState(str, Enum):
    AWAITING_HEADER = "awaiting_header"
    AWAITING_PAYLOAD = "awaiting_payload"


class StreamDecoder(Protocol):
    """Incremental decoder fed with transport reads."""

    def feed(self, data: bytes) -> list[Any]: ...

    def close(self) -> list[Any]: ...


def parse_frame_header(header: bytes) -> tuple[Channel, int]:
    """Parse an 8-byte frame header into (channel, payload length).

    Raises:
        StreamProtocolError: If the channel id is unknown
    """
    ident, length = struct.unpack(_HEADER_FORMAT, header)
    try:
        return _CHANNELS[ident], length
    except KeyError:
        raise StreamProtocolError(f"Unknown stream channel id {ident}") from None


def encode_frame(channel: Channel, data: bytes) -> bytes:
    """Encode one frame of the multiplexed format."""
    return struct.pack(_HEADER_FORMAT, _CHANNEL_IDS[channel], len(data)) + data


class FrameDecoder:
    """Decoder for the multiplexed stdout/stderr format.

    State machine:
        AWAITING_HEADER: buffer until HEADER_SIZE bytes are available
        AWAITING_PAYLOAD: buffer until `remaining` payload bytes are available

    Only complete frames are emitted, one (channel, payload) pair per frame.
    """

    def __init__(self) -> None:
        self.state = DecoderState.AWAITING_HEADER
        self.remaining = 0
        self._channel: Channel | None = None
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[tuple[Channel, bytes]]:
        self._buffer.extend(data)
        frames: list[tuple[Channel, bytes]] = []
        while True:
            if self.state == DecoderState.AWAITING_HEADER:
                if len(self._buffer) < HEADER_SIZE:
                    break
                self._channel, self.remaining = parse_frame_header(bytes(self._buffer[:HEADER_SIZE]))
                del self._buffer[:HEADER_SIZE]
                self.state = DecoderState.AWAITING_PAYLOAD
            else:
                if len(self._buffer) < self.remaining:
                    break
                payload = bytes(self._buffer[: self.remaining])
                del self._buffer[: self.remaining]
                if payload and self._channel is not None:
                    frames.append((self._channel, payload))
                self._channel = None
                self.remaining = 0
                self.state = DecoderState.AWAITING_HEADER
        return frames

    @property
    def pending(self) -> int:
        """Bytes buffered but not yet emitted."""
        return len(self._buffer)

    def close(self) -> list[tuple[Channel, bytes]]:
        """Check that the stream ended on a frame boundary.

        Raises:
            StreamProtocolError: If a frame was cut short
        """
        if self.state == DecoderState.AWAITING_PAYLOAD or self._buffer:
            raise StreamProtocolError(
                f"Stream ended inside a frame ({self.pending} bytes buffered)"
            )
        return []


class RawDecoder:
    """Passthrough for pseudo-terminal sessions: a single untagged channel."""

    def feed(self, data: bytes) -> list[tuple[Channel | None, bytes]]:
        if not data:
            return []
        return [(None, data)]

    def close(self) -> list[tuple[Channel | None, bytes]]:
        return []


class JsonStreamDecoder:
    """Decoder for a sequence of JSON documents.

    The engine writes one document per line, and transport reads may split
    a line (or a UTF-8 sequence) anywhere. Complete lines must decode;
    an unterminated trailing object is emitted as soon as it parses.
    """

    def __init__(self) -> None:
        self._decoder = json.JSONDecoder()
        self._text = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""

    def feed(self, data: bytes) -> list[Any]:
        try:
            self._buffer += self._text.decode(data)
        except UnicodeDecodeError as e:
            raise StreamProtocolError(f"Invalid UTF-8 in JSON stream: {e}") from e

        documents: list[Any] = []
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            rest = self._decode_all(line, documents)
            if rest.strip():
                raise StreamProtocolError(f"Invalid JSON in stream: {rest[:50]!r}")
        self._buffer = self._decode_all(self._buffer, documents, partial=True)
        return documents

    def _decode_all(self, text: str, documents: list[Any], partial: bool = False) -> str:
        """Decode every complete document in text, returning what is left."""
        while True:
            text = text.lstrip()
            if not text:
                return ""
            if partial and text[0] not in "{[":
                return text
            try:
                document, end = self._decoder.raw_decode(text)
            except json.JSONDecodeError:
                return text
            documents.append(document)
            text = text[end:]

    def close(self) -> list[Any]:
        """Flush the trailing document, if any.

        Raises:
            StreamProtocolError: If the stream ended inside a document
        """
        self._buffer += self._text.decode(b"", final=True)
        documents: list[Any] = []
        if self._decode_all(self._buffer, documents).strip():
            raise StreamProtocolError("Stream ended inside a JSON document")
        self._buffer = ""
        return documents


def decoder_for(mode: DemuxMode, json_stream: bool = False) -> StreamDecoder:
    """Build a fresh decoder for one subscription."""
    if mode == DemuxMode.FRAMED:
        return FrameDecoder()
    if mode == DemuxMode.RAW or not json_stream:
        return RawDecoder()
    return JsonStreamDecoder()
