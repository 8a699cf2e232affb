"""Connection pool.

Keeps idle connections to one engine endpoint for reuse. A connection is
always in exactly one of three states:

- idle: parked in the pool with an idle timer running
- leased: owned by one command or subscription, invisible to others
- closed

All state changes happen synchronously on the event loop thread, with no
await between looking a connection up and taking it, so two callers can
never lease the same connection.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque

from .config import EngineConfig
from .errors import EngineConnectionError
from .protocol.commands import CommandOptions
from .transport import Connection, StreamTransport, Transport

logger = logging.getLogger(__name__)


class ConnectionPool:
    """Pool of connections to a single endpoint."""

    def __init__(self, config: EngineConfig, transport: Transport | None = None):
        self.config = config
        self.transport = transport or StreamTransport(config)
        self._idle: deque[Connection] = deque()
        self._leased: set[Connection] = set()
        self._closed = False

    @property
    def endpoint_key(self) -> tuple[str, str, int | str]:
        return self.config.endpoint_key

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def leased_count(self) -> int:
        return len(self._leased)

    async def acquire(self, options: CommandOptions | None = None) -> Connection:
        """Lease a connection: a reusable idle one, or a new one.

        With force_new the pool is bypassed and a dedicated connection is
        opened; it will be closed, not pooled, on release.

        Raises:
            EngineConnectionError: If the pool is closed or the engine is unreachable
        """
        options = options or CommandOptions()
        if self._closed:
            raise EngineConnectionError("Connection pool is closed")

        if not options.force_new:
            connection = self._take_idle()
            if connection is not None:
                logger.debug(f"Reusing connection {connection.id}")
                return connection

        connection = await self.transport.open()
        if self._closed:
            connection.close()
            raise EngineConnectionError("Connection pool is closed")
        connection.force_new = options.force_new
        self._lease(connection)
        return connection

    def _take_idle(self) -> Connection | None:
        while self._idle:
            connection = self._idle.popleft()
            connection.cancel_idle_timer()
            if connection.alive:
                self._lease(connection)
                return connection
            logger.debug(f"Discarding dead idle connection {connection.id}")
            connection.close()
        return None

    def _lease(self, connection: Connection) -> None:
        if connection.leased:
            raise RuntimeError(f"Connection {connection.id} is already leased")
        connection.leased = True
        connection.requests += 1
        self._leased.add(connection)

    def release(
        self,
        connection: Connection,
        reusable: bool = True,
        idle_timeout: int | None = None,
    ) -> None:
        """Return a leased connection.

        It is parked for reuse only if the caller says it is reusable, it
        was not opened with force_new, and it is still alive; otherwise it
        is closed.
        """
        self._leased.discard(connection)
        connection.leased = False
        if not reusable or connection.force_new or self._closed or not connection.alive:
            connection.close()
            return

        timeout = idle_timeout or self.config.idle_timeout
        loop = asyncio.get_running_loop()
        connection.cancel_idle_timer()
        connection.idle_handle = loop.call_later(timeout / 1000, self._expire, connection)
        self._idle.append(connection)
        logger.debug(f"Connection {connection.id} parked (idle timeout {timeout} ms)")

    def discard(self, connection: Connection) -> None:
        """Close a leased connection without returning it to the pool."""
        self.release(connection, reusable=False)

    def _expire(self, connection: Connection) -> None:
        connection.idle_handle = None
        try:
            self._idle.remove(connection)
        except ValueError:
            return
        logger.debug(f"Connection {connection.id} idle timeout")
        connection.close()

    async def close(self) -> None:
        """Close every idle and leased connection."""
        self._closed = True
        connections = list(self._idle) + list(self._leased)
        self._idle.clear()
        self._leased.clear()
        for connection in connections:
            connection.leased = False
            await connection.aclose()
        if connections:
            logger.info(f"Connection pool closed ({len(connections)} connections)")
