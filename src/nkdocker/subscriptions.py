"""Subscriptions to streaming engine responses.

An asynchronous command leases a connection for its whole lifetime and
becomes a Subscription, identified by an opaque reference. The reader task
of the subscription pushes messages into a bounded mailbox that the
subscriber drains with `async for`:

    async for message in subscription:
        if message.final:
            ...

Every subscription delivers exactly one terminal message, and nothing
after it. Once the terminal message is queued the reference is removed
from the registry, so finishing it again raises ReferenceNotFound.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from collections.abc import Callable

from .errors import DockerError, ReferenceNotFound
from .protocol.demux import DemuxMode
from .protocol.messages import Message, TerminalReason
from .transport import Connection

logger = logging.getLogger(__name__)

ReleaseCallback = Callable[[Connection, bool], None]


def new_reference() -> str:
    return f"ref_{uuid.uuid4().hex}"


class Mailbox:
    """Bounded FIFO with a single producer and a single consumer.

    The producer blocks while the mailbox is full. Terminal messages are
    queued with `put_nowait` regardless of the bound.
    """

    def __init__(self, maxsize: int):
        self.maxsize = maxsize
        self._items: deque[Message] = deque()
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._writable.set()

    def __len__(self) -> int:
        return len(self._items)

    @property
    def full(self) -> bool:
        return len(self._items) >= self.maxsize

    async def put(self, message: Message) -> None:
        while self.full:
            self._writable.clear()
            await self._writable.wait()
        self.put_nowait(message)

    def put_nowait(self, message: Message) -> None:
        self._items.append(message)
        self._readable.set()

    async def get(self) -> Message:
        while not self._items:
            self._readable.clear()
            await self._readable.wait()
        message = self._items.popleft()
        if not self.full:
            self._writable.set()
        return message


class Subscription:
    """One asynchronous command bound to one leased connection."""

    def __init__(
        self,
        reference: str,
        connection: Connection,
        demux_mode: DemuxMode,
        mailbox_size: int,
        release: ReleaseCallback,
        owner: asyncio.Future | None = None,
    ):
        self.reference = reference
        self.connection = connection
        self.demux_mode = demux_mode
        self.owner = owner
        self.mailbox = Mailbox(mailbox_size)
        self.task: asyncio.Task[None] | None = None
        self.terminal: Message | None = None
        self._release = release
        self._released = False
        self._consumed = False
        self._window: asyncio.Timeout | None = None
        self._window_ms: int | None = None

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<Subscription {self.reference} {self.demux_mode.value} {state}>"

    @property
    def closed(self) -> bool:
        return self.terminal is not None

    # Idle window

    def open_window(self, window: asyncio.Timeout, idle_ms: int) -> None:
        """Bind the idle window of the reader task and start it."""
        self._window = window
        self._window_ms = idle_ms
        self.touch()

    def close_window(self) -> None:
        self._window = None

    def touch(self) -> None:
        """Restart the idle window from now."""
        if self._window is None or self._window_ms is None or self._window.expired():
            return
        loop = asyncio.get_running_loop()
        self._window.reschedule(loop.time() + self._window_ms / 1000)

    # Delivery

    async def deliver(self, message: Message) -> None:
        """Queue a message, waiting for room in the mailbox.

        Time spent waiting on a slow subscriber does not count against the
        idle window.
        """
        if self.closed:
            return
        window = self._window
        if not self.mailbox.full or window is None or window.when() is None:
            await self.mailbox.put(message)
            return

        loop = asyncio.get_running_loop()
        deadline = window.when()
        started = loop.time()
        window.reschedule(None)
        try:
            await self.mailbox.put(message)
        finally:
            if not window.expired():
                window.reschedule(deadline + (loop.time() - started))

    def deliver_terminal(
        self,
        reason: TerminalReason,
        error: DockerError | None = None,
        detail: str | None = None,
    ) -> bool:
        """Queue the terminal message. Returns False if one was already queued."""
        if self.terminal is not None:
            return False
        self.terminal = Message.terminal(self.reference, reason, error=error, detail=detail)
        self.mailbox.put_nowait(self.terminal)
        return True

    def release_connection(self, reusable: bool = False) -> None:
        """Hand the connection back to its pool, at most once."""
        if self._released:
            return
        self._released = True
        self._release(self.connection, reusable)

    # Consumption

    async def get(self, timeout: float | None = None) -> Message:
        """Next message, waiting up to `timeout` seconds.

        Raises:
            TimeoutError: If no message arrives in time
        """
        return await asyncio.wait_for(self.mailbox.get(), timeout)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> Message:
        if self._consumed:
            raise StopAsyncIteration
        message = await self.mailbox.get()
        if message.final:
            self._consumed = True
        return message


class SubscriptionRegistry:
    """Reference -> Subscription map owned by a Dispatcher.

    All mutation is synchronous, so a reference is removed by exactly one
    caller even when finish races with the end of the stream.
    """

    def __init__(self, mailbox_size: int = 64, release: ReleaseCallback | None = None):
        self.mailbox_size = mailbox_size
        self._release = release or _close_connection
        self._subscriptions: dict[str, Subscription] = {}
        self._owner_callbacks: dict[str, Callable[[asyncio.Future], None]] = {}

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, reference: str) -> bool:
        return reference in self._subscriptions

    def register(
        self,
        connection: Connection,
        demux_mode: DemuxMode,
        owner: asyncio.Future | None = None,
    ) -> Subscription:
        """Create a subscription for a leased connection.

        The owner defaults to the calling task. When the owner is done the
        subscription is finished and its connection closed.
        """
        if owner is None:
            owner = asyncio.current_task()
        reference = new_reference()
        subscription = Subscription(
            reference,
            connection,
            demux_mode,
            self.mailbox_size,
            self._release,
            owner=owner,
        )
        self._subscriptions[reference] = subscription

        if owner is not None:

            def _owner_done(_: asyncio.Future) -> None:
                if reference in self._subscriptions:
                    logger.debug(f"Owner of {reference} exited")
                    self._end(reference, TerminalReason.FINISHED, detail="owner exited")

            self._owner_callbacks[reference] = _owner_done
            owner.add_done_callback(_owner_done)

        logger.info(f"Subscription {reference} opened on connection {connection.id}")
        return subscription

    def get(self, reference: str) -> Subscription:
        try:
            return self._subscriptions[reference]
        except KeyError:
            raise ReferenceNotFound(reference) from None

    def finish(self, reference: str) -> Subscription:
        """End a subscription on behalf of its subscriber.

        Queues a `finished` terminal message, closes the connection and
        cancels the reader task. Messages already queued stay readable.

        Raises:
            ReferenceNotFound: If the reference is unknown or already ended
        """
        if reference not in self._subscriptions:
            raise ReferenceNotFound(reference)
        return self._end(reference, TerminalReason.FINISHED)

    def complete(
        self,
        reference: str,
        reason: TerminalReason,
        error: DockerError | None = None,
        detail: str | None = None,
    ) -> bool:
        """End a subscription from its reader. Returns False if already ended."""
        if reference not in self._subscriptions:
            return False
        self._end(reference, reason, error=error, detail=detail, cancel=False)
        return True

    def _end(
        self,
        reference: str,
        reason: TerminalReason,
        error: DockerError | None = None,
        detail: str | None = None,
        cancel: bool = True,
    ) -> Subscription:
        subscription = self._subscriptions.pop(reference)
        callback = self._owner_callbacks.pop(reference, None)
        if callback is not None and subscription.owner is not None:
            subscription.owner.remove_done_callback(callback)

        subscription.deliver_terminal(reason, error=error, detail=detail)
        if cancel:
            subscription.release_connection(reusable=False)
            if subscription.task is not None and not subscription.task.done():
                subscription.task.cancel()

        if reason in (TerminalReason.NORMAL, TerminalReason.FINISHED):
            logger.info(f"Subscription {reference} ended: {reason.value}")
        else:
            logger.warning(f"Subscription {reference} ended: {reason.value} ({error})")
        return subscription

    async def close_all(self) -> None:
        """Finish every open subscription and wait for their readers."""
        subscriptions = [self.finish(reference) for reference in list(self._subscriptions)]
        tasks = [s.task for s in subscriptions if s.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def _close_connection(connection: Connection, reusable: bool) -> None:
    connection.close()
