"""Change notifier: owner-filtered fan-out of consent change events.

Each subscription owns a FIFO queue and a delivery task, so events reach a
handler asynchronously and in publish order. The writer that caused a change
is an ordinary subscriber; nothing is suppressed for the originating client.
"""

import asyncio
import inspect
import logging
import uuid
from collections import defaultdict
from collections.abc import Awaitable, Callable

from consenthub.schemas.consent import ConsentChange

logger = logging.getLogger("consenthub.notifier")

ChangeHandler = Callable[[ConsentChange], Awaitable[None] | None]
GapHandler = Callable[[], Awaitable[None] | None]

# Queued in place of an event when the feed may have dropped changes.
_GAP = object()


class Subscription:
    """Handle returned by ChangeNotifier.subscribe()."""

    def __init__(
        self,
        notifier: "ChangeNotifier",
        owner_id: uuid.UUID,
        handler: ChangeHandler,
        on_gap: GapHandler | None = None,
    ) -> None:
        self.id = uuid.uuid4()
        self.owner_id = owner_id
        self._notifier = notifier
        self._handler = handler
        self._on_gap = on_gap
        self._queue: asyncio.Queue = asyncio.Queue()
        self._active = True
        self._dispatching = False
        self._task = asyncio.get_running_loop().create_task(
            self._deliver(), name=f"consent-subscription-{self.id}"
        )

    @property
    def active(self) -> bool:
        return self._active

    def close(self) -> None:
        self._notifier.unsubscribe(self)

    def _offer(self, item) -> None:
        if self._active:
            self._queue.put_nowait(item)

    async def _deliver(self) -> None:
        while self._active:
            item = await self._queue.get()
            try:
                if not self._active:
                    continue
                self._dispatching = True
                if item is _GAP:
                    result = self._on_gap() if self._on_gap is not None else None
                else:
                    result = self._handler(item)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "Subscriber handler failed owner=%s subscription=%s",
                    self.owner_id,
                    self.id,
                )
            finally:
                self._dispatching = False
                self._queue.task_done()

    def _deactivate(self) -> None:
        self._active = False
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
        # A handler that is running finishes; the loop exits after it.
        if not self._dispatching:
            self._task.cancel()


class ChangeNotifier:
    def __init__(self) -> None:
        self._subscriptions: dict[uuid.UUID, dict[uuid.UUID, Subscription]] = defaultdict(dict)

    def subscribe(
        self,
        owner_id: uuid.UUID,
        handler: ChangeHandler,
        *,
        on_gap: GapHandler | None = None,
    ) -> Subscription:
        """Deliver every change to owner_id's records to handler.

        on_gap is called (in order with events) when the feed may have lost
        changes, e.g. after a listener reconnect; subscribers should refetch.
        """
        subscription = Subscription(self, owner_id, handler, on_gap)
        self._subscriptions[owner_id][subscription.id] = subscription
        logger.debug("Subscribed owner=%s subscription=%s", owner_id, subscription.id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Stop delivery. Idempotent, and safe to call from inside a handler."""
        owned = self._subscriptions.get(subscription.owner_id)
        if owned is not None:
            owned.pop(subscription.id, None)
            if not owned:
                del self._subscriptions[subscription.owner_id]
        if subscription.active:
            subscription._deactivate()
            logger.debug(
                "Unsubscribed owner=%s subscription=%s",
                subscription.owner_id,
                subscription.id,
            )

    def publish(self, change: ConsentChange) -> None:
        """Enqueue change for every subscription of its owner. Never blocks."""
        targets = list(self._subscriptions.get(change.owner_id, {}).values())
        logger.debug(
            "Publishing %s record=%s to %d subscriber(s)",
            change.type.value,
            change.record.id,
            len(targets),
        )
        for subscription in targets:
            subscription._offer(change)

    def signal_gap(self) -> None:
        """Tell every subscriber that events may have been missed."""
        for owned in list(self._subscriptions.values()):
            for subscription in list(owned.values()):
                subscription._offer(_GAP)

    def subscriber_count(self, owner_id: uuid.UUID | None = None) -> int:
        if owner_id is not None:
            return len(self._subscriptions.get(owner_id, {}))
        return sum(len(owned) for owned in self._subscriptions.values())

    async def wait_idle(self) -> None:
        """Wait until every queued event has been handled."""
        queues = [
            subscription._queue
            for owned in list(self._subscriptions.values())
            for subscription in owned.values()
        ]
        await asyncio.gather(*(queue.join() for queue in queues))

    def close(self) -> None:
        for owned in list(self._subscriptions.values()):
            for subscription in list(owned.values()):
                self.unsubscribe(subscription)


notifier = ChangeNotifier()


def get_notifier() -> ChangeNotifier:
    return notifier
