from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Union

from app.schemas import AlertEvent, Instrument

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING = 1000


class HubEvent(str, Enum):
    INSTRUMENT_UPDATED = "instrument-updated"
    INSTRUMENT_LIST_REPLACED = "instrument-list-replaced"
    ALERT_TRIGGERED = "alert-triggered"


Handler = Callable[[Any], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], None]


class _Subscription:
    __slots__ = ("kind", "handler", "asynchronous", "queue", "drainer")

    def __init__(self, kind: HubEvent, handler: Handler) -> None:
        self.kind = kind
        self.handler = handler
        self.asynchronous = inspect.iscoroutinefunction(handler) or inspect.iscoroutinefunction(
            getattr(handler, "__call__", None)
        )
        self.queue: asyncio.Queue | None = None
        self.drainer: asyncio.Task | None = None

    def cancel(self) -> None:
        if self.drainer is not None and not self.drainer.done():
            self.drainer.cancel()


class NotificationHub:
    """Process-wide fan-out point for instrument and alert events.

    Delivery is best effort to whoever is subscribed when ``publish`` runs.
    Nothing is buffered for later subscribers, and a failing handler is logged
    and skipped so the remaining handlers still receive the event.

    Plain callables run inline. Coroutine handlers get their own queue and
    drain task, so ``publish`` never waits on them and a stalled subscriber
    only delays itself. Each coroutine subscriber still sees its events in
    publish order. A subscriber that falls ``max_pending`` events behind has
    new events dropped until it catches up.
    """

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        self.max_pending = max_pending
        self._subscriptions: Dict[HubEvent, List[_Subscription]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, kind: HubEvent | str, handler: Handler) -> Unsubscribe:
        event = HubEvent(kind)
        subscription = _Subscription(event, handler)
        with self._lock:
            self._subscriptions[event].append(subscription)

        def unsubscribe() -> None:
            with self._lock:
                subscribers = self._subscriptions.get(event, [])
                if subscription in subscribers:
                    subscribers.remove(subscription)
            subscription.cancel()

        return unsubscribe

    def subscriber_count(self, kind: HubEvent | str) -> int:
        with self._lock:
            return len(self._subscriptions.get(HubEvent(kind), []))

    async def publish(self, kind: HubEvent | str, payload: Any) -> int:
        """Hand ``payload`` to every current subscriber of ``kind``.

        Returns how many subscribers accepted the event: sync handlers that
        returned normally plus coroutine handlers it was queued for.
        """
        event = HubEvent(kind)
        with self._lock:
            targets = list(self._subscriptions.get(event, []))

        delivered = 0
        for subscription in targets:
            if subscription.asynchronous:
                if self._enqueue(subscription, payload):
                    delivered += 1
                continue
            try:
                subscription.handler(payload)
                delivered += 1
            except Exception:
                logger.exception("Subscriber %r failed handling %s", subscription.handler, event.value)
        return delivered

    def _enqueue(self, subscription: _Subscription, payload: Any) -> bool:
        if subscription.queue is None:
            subscription.queue = asyncio.Queue(maxsize=self.max_pending)
        if subscription.drainer is None or subscription.drainer.done():
            subscription.drainer = asyncio.get_running_loop().create_task(
                self._drain(subscription), name=f"hub-{subscription.kind.value}"
            )
        try:
            subscription.queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning(
                "Subscriber %r is %d events behind; dropping %s",
                subscription.handler,
                subscription.queue.qsize(),
                subscription.kind.value,
            )
            return False
        return True

    async def _drain(self, subscription: _Subscription) -> None:
        queue = subscription.queue
        try:
            while True:
                payload = await queue.get()
                try:
                    await subscription.handler(payload)
                except Exception:
                    logger.exception("Subscriber %r failed handling %s", subscription.handler, subscription.kind.value)
                finally:
                    queue.task_done()
        finally:
            # Whatever is still queued is discarded so ``flush`` cannot hang on it.
            while not queue.empty():
                queue.get_nowait()
                queue.task_done()

    async def flush(self) -> None:
        """Wait until every queued coroutine delivery has been handled."""
        with self._lock:
            queues = [
                subscription.queue
                for subscribers in self._subscriptions.values()
                for subscription in subscribers
                if subscription.queue is not None
            ]
        await asyncio.gather(*(queue.join() for queue in queues))

    async def close(self) -> None:
        """Cancel every drain task; undelivered events are dropped."""
        with self._lock:
            drainers = [
                subscription.drainer
                for subscribers in self._subscriptions.values()
                for subscription in subscribers
                if subscription.drainer is not None
            ]
        for drainer in drainers:
            drainer.cancel()
        await asyncio.gather(*drainers, return_exceptions=True)

    async def instrument_updated(self, instrument: Instrument) -> int:
        return await self.publish(HubEvent.INSTRUMENT_UPDATED, instrument)

    async def instrument_list_replaced(self, instruments: List[Instrument]) -> int:
        return await self.publish(HubEvent.INSTRUMENT_LIST_REPLACED, list(instruments))

    async def alert_triggered(self, alert: AlertEvent) -> int:
        return await self.publish(HubEvent.ALERT_TRIGGERED, alert)
