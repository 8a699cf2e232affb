"""Engine protocol layer.

- Commands: verb + path + body + typed per-call options
- Messages: what subscribers of asynchronous commands receive
- Paths: query string and filter encoding
- Demux: incremental decoders for streaming response bodies
"""

from .commands import (
    ATTACH_TIMEOUT,
    DEFAULT_TIMEOUT,
    EXEC_TIMEOUT,
    WAIT_TIMEOUT,
    Command,
    CommandOptions,
    Verb,
    grace_timeout,
)
from .demux import (
    DecoderState,
    DemuxMode,
    FrameDecoder,
    JsonStreamDecoder,
    RawDecoder,
    decoder_for,
    encode_frame,
)
from .messages import Channel, Message, MessageKind, TerminalReason
from .paths import HUB, RegistryAuth, make_path, normalize_filters, resource_path

__all__ = [
    "ATTACH_TIMEOUT",
    "DEFAULT_TIMEOUT",
    "EXEC_TIMEOUT",
    "WAIT_TIMEOUT",
    "Command",
    "CommandOptions",
    "Verb",
    "grace_timeout",
    "DecoderState",
    "DemuxMode",
    "FrameDecoder",
    "JsonStreamDecoder",
    "RawDecoder",
    "decoder_for",
    "encode_frame",
    "Channel",
    "Message",
    "MessageKind",
    "TerminalReason",
    "HUB",
    "RegistryAuth",
    "make_path",
    "normalize_filters",
    "resource_path",
]
