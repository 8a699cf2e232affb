"""Command dispatcher: the entry point of the connection layer.

`Dispatcher.dispatch` runs one command against the engine, either
synchronously (returning the decoded body) or asynchronously (returning a
StreamHandle whose messages arrive through a Subscription).

Usage:
    async with Dispatcher(EngineConfig.from_env()) as dispatcher:
        info = await dispatcher.dispatch("GET", "/info")

        handle = await dispatcher.dispatch("GET", "/events", options={"async": True})
        async for message in handle:
            print(message)
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from .config import EngineConfig
from .errors import (
    CommandTimeout,
    DockerError,
    EngineConnectionError,
    OptionsError,
    RemoteError,
)
from .pool import ConnectionPool
from .protocol.commands import Command, CommandOptions, Verb
from .protocol.demux import DemuxMode, FrameDecoder, JsonStreamDecoder, decoder_for
from .protocol.messages import Message, TerminalReason
from .subscriptions import Subscription, SubscriptionRegistry
from .transport import Connection, Transport, encode_request, iter_body, read_body, read_head
from .transport.http import ResponseHead

logger = logging.getLogger(__name__)


@dataclass
class StreamHandle:
    """Returned by asynchronous commands.

    Iterating the handle yields the subscription's messages, ending after
    the terminal message.
    """

    reference: str
    connection: Connection
    subscription: Subscription = field(repr=False)
    _dispatcher: Dispatcher = field(repr=False)

    def __aiter__(self) -> Subscription:
        return self.subscription

    async def get(self, timeout: float | None = None) -> Message:
        return await self.subscription.get(timeout)

    async def send(self, data: bytes) -> None:
        await self._dispatcher.send(self.reference, data)

    async def finish(self) -> None:
        await self._dispatcher.finish(self.reference)


def select_demux_mode(options: CommandOptions, head: ResponseHead | None = None) -> DemuxMode:
    """Pick the decoder for a streaming response.

    An explicit tty option wins; otherwise the response content type decides.
    """
    if options.tty is True:
        return DemuxMode.RAW
    if options.tty is False:
        return DemuxMode.FRAMED
    if head is not None:
        if head.multiplexed:
            return DemuxMode.FRAMED
        if head.content_type == "application/vnd.docker.raw-stream":
            return DemuxMode.RAW
    return DemuxMode.NONE


def decode_body(head: ResponseHead, body: bytes) -> Any:
    """Decode a complete response body by content type.

    Multiplexed bodies (container logs) become a list of (Channel, bytes)
    frames in wire order.
    """
    if head.content_type == "application/json":
        return json.loads(body) if body.strip() else None
    if head.content_type == "application/x-json-stream":
        decoder = JsonStreamDecoder()
        return decoder.feed(body) + decoder.close()
    if head.multiplexed:
        frames = FrameDecoder()
        return frames.feed(body) + frames.close()
    return body


class Dispatcher:
    """Runs commands over a pool of engine connections.

    Owns one ConnectionPool and one SubscriptionRegistry.
    """

    def __init__(self, config: EngineConfig | None = None, transport: Transport | None = None):
        self.config = config or EngineConfig()
        self.pool = ConnectionPool(self.config, transport)
        self.registry = SubscriptionRegistry(self.config.mailbox_size, release=self._release)
        self._closed = False

    async def __aenter__(self) -> Dispatcher:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Finish all subscriptions and close all connections."""
        if self._closed:
            return
        self._closed = True
        await self.registry.close_all()
        await self.pool.close()

    async def dispatch(
        self,
        verb: Verb | str,
        path: str,
        body: Any = None,
        options: CommandOptions | dict[str, Any] | None = None,
        *,
        owner: asyncio.Future | None = None,
    ) -> Any:
        """Run a command.

        Args:
            verb: HTTP verb
            path: Path including its encoded query string
            body: bytes, str, a JSON-able object, or None
            options: CommandOptions or a mapping of option names
            owner: Task whose exit finishes an asynchronous command
                (defaults to the calling task)

        Returns:
            The decoded body, b"" for redirected bodies, or a StreamHandle
            for asynchronous commands

        Raises:
            OptionsError: If the options or path are invalid
            EngineConnectionError: If no connection could be used
            RemoteError: If the engine answered with an error status
            CommandTimeout: If a synchronous command did not complete in time
        """
        options = CommandOptions.build(options)
        try:
            command = Command(verb=verb, path=path, body=body, options=options)
        except ValidationError as e:
            raise OptionsError(str(e)) from e
        if self._closed:
            raise EngineConnectionError("Dispatcher is closed")

        request = self._encode(command)
        if command.is_async:
            return await self._subscribe(command, request, owner)
        return await self._request(command, request)

    async def finish(self, reference: str) -> None:
        """Finish a subscription and wait for its reader to stop.

        Raises:
            ReferenceNotFound: If the reference is unknown or already ended
        """
        subscription = self.registry.finish(reference)
        task = subscription.task
        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)

    async def send(self, reference: str, data: bytes) -> None:
        """Write into the stdin of an attach or exec subscription.

        Raises:
            ReferenceNotFound: If the reference is unknown or already ended
            EngineConnectionError: If the write fails
        """
        subscription = self.registry.get(reference)
        await subscription.connection.write(data)
        subscription.touch()

    def _release(self, connection: Connection, reusable: bool) -> None:
        self.pool.release(connection, reusable, idle_timeout=None)

    def _encode(self, command: Command) -> bytes:
        """Serialize the request before any connection is leased."""
        body, content_type = command.encode_body()
        try:
            return encode_request(
                command.verb.value,
                command.path,
                self.config.host_header,
                body,
                content_type,
                command.options.headers,
            )
        except UnicodeEncodeError as e:
            raise OptionsError(f"Request line or headers are not latin-1: {e}") from e

    # Synchronous commands

    async def _request(self, command: Command, request: bytes) -> Any:
        options = command.options
        timeout = options.effective_timeout
        connection = await self.pool.acquire(options)
        method = command.verb.value
        reusable = False
        logger.debug(f"{method} {command.path} on connection {connection.id}")
        try:
            async with asyncio.timeout(timeout / 1000):
                await connection.write(request)
                head = await read_head(connection.reader)
                reuse = head.keep_alive and head.delimited

                if not head.ok:
                    body = await read_body(connection.reader, head, method)
                    reusable = reuse
                    raise RemoteError.from_response(head.status, body)

                if options.redirect is not None:
                    with await asyncio.to_thread(options.redirect.open, "wb") as f:
                        async for data in iter_body(connection.reader, head, method):
                            await asyncio.to_thread(f.write, data)
                    reusable = reuse
                    return b""

                body = await read_body(connection.reader, head, method)
                reusable = reuse
        except TimeoutError as e:
            logger.warning(f"{method} {command.path} timed out after {timeout} ms")
            raise CommandTimeout(method, command.path, timeout) from e
        except DockerError:
            raise
        except OSError as e:
            raise EngineConnectionError(f"{method} {command.path} failed: {e}") from e
        finally:
            self.pool.release(connection, reusable, options.idle_timeout)

        return decode_body(head, body)

    # Asynchronous commands

    async def _subscribe(self, command: Command, request: bytes, owner: asyncio.Future | None) -> StreamHandle:
        options = command.options
        connection = await self.pool.acquire(options)
        try:
            await connection.write(request)
        except DockerError:
            self.pool.release(connection, reusable=False)
            raise

        subscription = self.registry.register(connection, select_demux_mode(options), owner=owner)
        subscription.task = asyncio.create_task(
            self._read_subscription(subscription, command),
            name=f"nkdocker-{subscription.reference}",
        )
        logger.debug(f"{command.verb.value} {command.path} subscribed as {subscription.reference}")
        return StreamHandle(subscription.reference, connection, subscription, self)

    async def _read_subscription(self, subscription: Subscription, command: Command) -> None:
        """Reader task: one per subscription, owns the connection until the end."""
        options = command.options
        method = command.verb.value
        connection = subscription.connection
        idle_ms = options.idle_timeout or options.effective_timeout
        reason = TerminalReason.NORMAL
        error: DockerError | None = None
        detail: str | None = None
        reusable = False

        try:
            async with asyncio.timeout(None) as window:
                subscription.open_window(window, idle_ms)
                head = await read_head(connection.reader)
                if not head.ok:
                    body = await read_body(connection.reader, head, method)
                    raise RemoteError.from_response(head.status, body)

                subscription.demux_mode = select_demux_mode(options, head)
                decoder = decoder_for(subscription.demux_mode, json_stream=head.is_json)
                async for data in iter_body(connection.reader, head, method):
                    if options.refresh:
                        subscription.touch()
                    for item in decoder.feed(data):
                        await subscription.deliver(self._message(subscription, item))
                for item in decoder.close():
                    await subscription.deliver(self._message(subscription, item))
                reusable = head.keep_alive and head.delimited
        except TimeoutError:
            detail = "idle timeout"
            logger.debug(f"Subscription {subscription.reference} idle for {idle_ms} ms")
        except RemoteError as e:
            reason, error = TerminalReason.REMOTE_ERROR, e
        except DockerError as e:
            reason, error = TerminalReason.CONNECTION_LOST, e
        except OSError as e:
            reason = TerminalReason.CONNECTION_LOST
            error = EngineConnectionError(f"Connection {connection.id} lost: {e}")
        except Exception as e:
            logger.exception(f"Reader for {subscription.reference} failed")
            reason = TerminalReason.CONNECTION_LOST
            error = EngineConnectionError(f"Reader failed: {e}")
        finally:
            subscription.close_window()
            subscription.release_connection(reusable)

        self.registry.complete(subscription.reference, reason, error=error, detail=detail)

    @staticmethod
    def _message(subscription: Subscription, item: Any) -> Message:
        if subscription.demux_mode == DemuxMode.NONE and not isinstance(item, tuple):
            return Message.document(subscription.reference, item)
        channel, data = item
        return Message.chunk(subscription.reference, data, channel)
