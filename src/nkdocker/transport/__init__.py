"""Transport layer: connections to the engine and the HTTP/1.1 wire format."""

from .base import Connection, StreamTransport, Transport
from .http import ResponseHead, encode_request, iter_body, read_body, read_head

__all__ = [
    "Connection",
    "StreamTransport",
    "Transport",
    "ResponseHead",
    "encode_request",
    "iter_body",
    "read_body",
    "read_head",
]
