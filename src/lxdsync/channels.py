"""Broadcast channels used to publish registry changes.

Each :class:`Channel` hands every published item to every live
:class:`Subscription`. Subscriptions buffer in an unbounded
:class:`asyncio.Queue`; event volume from the remote API is low enough that
no backpressure is applied. A subscriber that joins late sees nothing that was
published before it subscribed, except on a :class:`StateChannel`, which
primes new subscribers with its current value.

Closing a channel ends every subscription: iteration stops once the items
already buffered have been consumed.

Iterating a channel directly (``async for name in channel``) owns a private
subscription that is released once the loop is left, including through
``break``. A subscription obtained from :meth:`Channel.subscribe` belongs to
the caller, who releases it with :meth:`Subscription.cancel` or by using it
as ``async with channel.subscribe() as subscription:``.
"""
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from types import TracebackType
from typing import Generic, TypeVar

from .state import RegistryChanges

T = TypeVar("T")

_CLOSED = object()


class ChannelClosedError(RuntimeError):
    """Raised by :meth:`Subscription.get` once the channel is closed and drained."""


class Subscription(Generic[T]):
    """One consumer's view of a channel."""

    def __init__(self, channel: Channel[T]) -> None:
        self._channel = channel
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._finished = False

    @property
    def closed(self) -> bool:
        """True once the channel closed or the subscription was cancelled."""
        return self._finished

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        try:
            return await self.get()
        except ChannelClosedError:
            raise StopAsyncIteration from None

    async def get(self) -> T:
        """Wait for the next item."""
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker in place so later calls also stop.
            self._queue.put_nowait(_CLOSED)
            raise ChannelClosedError(f"Channel '{self._channel.name}' is closed.")
        return item  # type: ignore[return-value]

    def drain(self) -> list[T]:
        """Return every buffered item without waiting."""
        items: list[T] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return items
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                return items
            items.append(item)  # type: ignore[arg-type]

    def cancel(self) -> None:
        """Stop receiving items; buffered items stay readable."""
        self._channel._discard(self)
        self._finish()

    async def aclose(self) -> None:
        self.cancel()

    async def __aenter__(self) -> Subscription[T]:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.cancel()

    def _push(self, item: T) -> None:
        if not self._finished:
            self._queue.put_nowait(item)

    def _finish(self) -> None:
        if not self._finished:
            self._finished = True
            self._queue.put_nowait(_CLOSED)


class Channel(Generic[T]):
    """Fan-out of published items to independent subscribers."""

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._subscribers: list[Subscription[T]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription[T]:
        """Return a new subscription; it ends immediately if the channel is closed."""
        subscription: Subscription[T] = Subscription(self)
        if self._closed:
            subscription._finish()
        else:
            self._subscribers.append(subscription)
        return subscription

    def __aiter__(self) -> AsyncIterator[T]:
        return _iterate(self.subscribe())

    def publish(self, item: T) -> None:
        """Deliver *item* to every subscriber. Ignored after :meth:`close`."""
        if self._closed:
            return
        for subscription in list(self._subscribers):
            subscription._push(item)

    def close(self) -> None:
        """End all subscriptions. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        subscribers, self._subscribers = self._subscribers, []
        for subscription in subscribers:
            subscription._finish()

    def _discard(self, subscription: Subscription[T]) -> None:
        try:
            self._subscribers.remove(subscription)
        except ValueError:
            pass


async def _iterate(subscription: Subscription[T]) -> AsyncIterator[T]:
    try:
        async for item in subscription:
            yield item
    finally:
        subscription.cancel()


class StateChannel(Channel[T]):
    """A channel that remembers its latest value for new subscribers."""

    def __init__(self, initial: T, name: str = "") -> None:
        super().__init__(name)
        self._value = initial

    @property
    def value(self) -> T:
        return self._value

    def subscribe(self) -> Subscription[T]:
        subscription = super().subscribe()
        if not self._closed:
            subscription._push(self._value)
        return subscription

    def publish(self, item: T) -> None:
        if self._closed:
            return
        self._value = item
        super().publish(item)


class InstanceChannels:
    """The four observation points exposed for instance changes.

    ``stream`` carries the full ordered name list whenever membership changes;
    ``added``, ``removed`` and ``updated`` carry one name per change.
    """

    def __init__(self) -> None:
        self.stream: StateChannel[tuple[str, ...]] = StateChannel((), name="instances")
        self.added: Channel[str] = Channel(name="added")
        self.removed: Channel[str] = Channel(name="removed")
        self.updated: Channel[str] = Channel(name="updated")

    @property
    def closed(self) -> bool:
        return self.stream.closed

    def seed(self, names: Sequence[str]) -> None:
        """Publish a baseline snapshot without per-instance notifications."""
        self.stream.publish(tuple(names))

    def publish(self, changes: RegistryChanges, names: Sequence[str]) -> None:
        """Publish *changes*, then the new snapshot if membership changed."""
        for name in changes.added:
            self.added.publish(name)
        for name in changes.removed:
            self.removed.publish(name)
        for name in changes.updated:
            self.updated.publish(name)
        if changes.membership_changed:
            self.stream.publish(tuple(names))

    def close(self) -> None:
        for channel in (self.stream, self.added, self.removed, self.updated):
            channel.close()


__all__ = [
    "Channel",
    "ChannelClosedError",
    "InstanceChannels",
    "StateChannel",
    "Subscription",
]
