"""Connections to the engine.

A Connection is one TCP, TLS or Unix-domain stream. Connections are opened
by a Transport and owned by the ConnectionPool, which may lease them
exclusively to a single command or subscription.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import ssl
from typing import Protocol, runtime_checkable

from ..config import EngineConfig
from ..errors import EngineConnectionError

logger = logging.getLogger(__name__)

_connection_ids = itertools.count(1)


class Connection:
    """A live stream to the engine.

    The `id` is unique per process and never reused, so it identifies a
    connection across pool leases.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        endpoint_key: tuple[str, str, int | str],
    ):
        self.id = next(_connection_ids)
        self.reader = reader
        self.writer = writer
        self.endpoint_key = endpoint_key
        self.leased = False
        self.force_new = False
        self.requests = 0
        self.idle_handle: asyncio.TimerHandle | None = None
        self._closed = False

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("leased" if self.leased else "idle")
        return f"<Connection {self.id} {self.endpoint_key[0]} {state}>"

    @property
    def alive(self) -> bool:
        return not self._closed and not self.reader.at_eof() and not self.writer.is_closing()

    @property
    def closed(self) -> bool:
        return self._closed

    async def write(self, data: bytes) -> None:
        """Write data and wait for the transport buffer to drain.

        Raises:
            EngineConnectionError: If the connection is closed or broken
        """
        if self._closed:
            raise EngineConnectionError(f"Connection {self.id} is closed")
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (OSError, RuntimeError) as e:
            self.close()
            raise EngineConnectionError(f"Write failed on connection {self.id}: {e}") from e

    def cancel_idle_timer(self) -> None:
        if self.idle_handle is not None:
            self.idle_handle.cancel()
            self.idle_handle = None

    def close(self) -> None:
        """Close the connection without waiting; safe to call twice."""
        self.cancel_idle_timer()
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        logger.debug(f"Connection {self.id} closed")

    async def aclose(self) -> None:
        self.close()
        with contextlib.suppress(OSError, ssl.SSLError):
            await self.writer.wait_closed()


@runtime_checkable
class Transport(Protocol):
    """Opens connections to an engine endpoint."""

    async def open(self) -> Connection:
        """Open a new connection.

        Raises:
            EngineConnectionError: If the engine cannot be reached
        """
        ...


class StreamTransport:
    """Transport over asyncio streams: TCP, TLS or a Unix-domain socket."""

    def __init__(self, config: EngineConfig):
        self.config = config
        self._ssl: ssl.SSLContext | None = None

    def ssl_context(self) -> ssl.SSLContext:
        if self._ssl is None:
            context = ssl.create_default_context(cafile=self.config.cafile)
            if self.config.certfile:
                context.load_cert_chain(self.config.certfile, self.config.keyfile)
            if not self.config.verify:
                context.check_hostname = False
                context.verify_mode = ssl.CERT_NONE
            self._ssl = context
        return self._ssl

    async def open(self) -> Connection:
        config = self.config
        try:
            if config.proto == "unix":
                opening = asyncio.open_unix_connection(config.socket_path)
            elif config.proto == "tls":
                opening = asyncio.open_connection(
                    config.host, config.port, ssl=self.ssl_context()
                )
            else:
                opening = asyncio.open_connection(config.host, config.port)
            reader, writer = await asyncio.wait_for(opening, timeout=config.connect_timeout)
        except TimeoutError as e:
            raise EngineConnectionError(
                f"Timed out connecting to {config.host_header} after {config.connect_timeout}s"
            ) from e
        except (OSError, ssl.SSLError) as e:
            raise EngineConnectionError(f"Cannot connect to {_describe(config)}: {e}") from e

        connection = Connection(reader, writer, config.endpoint_key)
        logger.debug(f"Opened connection {connection.id} to {_describe(config)}")
        return connection


def _describe(config: EngineConfig) -> str:
    if config.proto == "unix":
        return f"unix://{config.socket_path}"
    return f"{config.proto}://{config.host}:{config.port}"
