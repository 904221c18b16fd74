"""Capacity-change notification relays.

Delivery is at-most-once and best-effort: ``publish`` never raises into the
caller, and nothing here can undo an admission that already committed.
"""

from __future__ import annotations

import asyncio
from collections import deque
from queue import Full, Queue
from threading import Lock, Thread
from time import monotonic
from typing import Callable, Iterable, Optional, Protocol

import httpx

from capacity_engine.domain.models import CapacityEvent
from capacity_engine.utils.config import Settings, get_settings
from capacity_engine.utils.logger import fields, get_logger


logger = get_logger(__name__)

Payload = dict[str, object]


class NotificationRelay(Protocol):
    def publish(self, event: CapacityEvent) -> None:
        ...

    def close(self, timeout: Optional[float] = None) -> None:
        ...


class NullNotificationRelay:
    def publish(self, event: CapacityEvent) -> None:
        logger.debug("Capacity event dropped | %s", fields(event_type=event.event_type))

    def close(self, timeout: Optional[float] = None) -> None:
        return None


class Subscription:
    """One consumer of the in-memory feed, bound to the event loop that created it."""

    def __init__(self, loop: asyncio.AbstractEventLoop, max_pending: int) -> None:
        self.loop = loop
        self.queue: asyncio.Queue[Payload] = asyncio.Queue(maxsize=max_pending)

    def offer(self, payload: Payload) -> None:
        try:
            self.queue.put_nowait(payload)
        except asyncio.QueueFull:
            logger.warning("Subscriber queue full; capacity event dropped")

    async def next_event(self) -> Payload:
        return await self.queue.get()


class InMemoryNotificationRelay:
    """Fans events out to WebSocket subscribers and synchronous listeners."""

    def __init__(self, history_size: int = 100, max_pending: int = 256) -> None:
        self._lock = Lock()
        self._subscriptions: list[Subscription] = []
        self._listeners: list[Callable[[Payload], None]] = []
        self._history: deque[Payload] = deque(maxlen=history_size)
        self._max_pending = max_pending

    def subscribe(self) -> Subscription:
        """Must be called from inside a running event loop."""
        subscription = Subscription(asyncio.get_running_loop(), self._max_pending)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def close(self, timeout: Optional[float] = None) -> None:
        return None

    def add_listener(self, listener: Callable[[Payload], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def recent_events(self, limit: Optional[int] = None) -> list[Payload]:
        with self._lock:
            events = list(self._history)
        return events[-limit:] if limit else events

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, event: CapacityEvent) -> None:
        payload = event.to_payload()
        with self._lock:
            self._history.append(payload)
            subscriptions = list(self._subscriptions)
            listeners = list(self._listeners)

        for subscription in subscriptions:
            try:
                subscription.loop.call_soon_threadsafe(subscription.offer, payload)
            except RuntimeError:
                # Loop already closed; the client went away without unsubscribing.
                self.unsubscribe(subscription)

        for listener in listeners:
            try:
                listener(payload)
            except Exception:
                logger.warning(
                    "Capacity event listener failed | %s",
                    fields(event_type=event.event_type),
                    exc_info=True,
                )


class WebhookNotificationRelay:
    """POSTs each event as JSON to a configured URL from one daemon worker.

    Events wait in a bounded queue; when it is full new events are dropped
    and logged rather than blocking the publisher.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 2.0,
        transport: Optional[httpx.BaseTransport] = None,
        max_pending: int = 1000,
    ) -> None:
        self._url = url
        self._timeout = timeout_seconds
        self._transport = transport
        self._queue: Queue[Optional[Payload]] = Queue(maxsize=max_pending)
        self._worker: Optional[Thread] = None
        self._lock = Lock()
        self._closed = False

    def publish(self, event: CapacityEvent) -> None:
        payload = event.to_payload()
        with self._lock:
            if self._closed:
                logger.debug(
                    "Webhook relay closed; event dropped | %s",
                    fields(event_type=event.event_type),
                )
                return
            if self._worker is None:
                self._worker = Thread(target=self._run, name="webhook-relay", daemon=True)
                self._worker.start()
        try:
            self._queue.put_nowait(payload)
        except Full:
            logger.warning(
                "Webhook queue full; event dropped | %s",
                fields(url=self._url, event_type=event.event_type),
            )

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued event was attempted. False on timeout."""
        deadline = None if timeout is None else monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = None if deadline is None else deadline - monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: Optional[float] = None) -> None:
        """Drain pending deliveries, then stop the worker."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            worker = self._worker
        if worker is None:
            return
        if not self.flush(timeout):
            logger.warning(
                "Webhook deliveries still pending at shutdown | %s",
                fields(url=self._url, pending=self._queue.qsize()),
            )
        try:
            self._queue.put(None, timeout=timeout)
        except Full:
            return
        worker.join(timeout)

    def _run(self) -> None:
        with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
            while True:
                payload = self._queue.get()
                try:
                    if payload is None:
                        return
                    self._deliver(client, payload)
                finally:
                    self._queue.task_done()

    def _deliver(self, client: httpx.Client, payload: Payload) -> None:
        try:
            response = client.post(self._url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "Webhook delivery failed | %s",
                fields(url=self._url, event_type=payload.get("eventType"), error=exc),
            )


class FanoutNotificationRelay:
    def __init__(self, relays: Iterable[NotificationRelay]) -> None:
        self._relays = tuple(relays)

    def publish(self, event: CapacityEvent) -> None:
        for relay in self._relays:
            try:
                relay.publish(event)
            except Exception:
                logger.warning(
                    "Relay %s failed to publish", type(relay).__name__, exc_info=True
                )

    def close(self, timeout: Optional[float] = None) -> None:
        for relay in self._relays:
            try:
                relay.close(timeout)
            except Exception:
                logger.warning("Relay %s failed to close", type(relay).__name__, exc_info=True)


def build_notification_relay(
    settings: Optional[Settings] = None,
) -> tuple[InMemoryNotificationRelay, NotificationRelay]:
    """Return the in-memory feed and the relay services should publish to."""
    settings = settings or get_settings()
    feed = InMemoryNotificationRelay()
    if not settings.notification_webhook_url:
        return feed, feed
    webhook = WebhookNotificationRelay(
        settings.notification_webhook_url,
        timeout_seconds=settings.notification_webhook_timeout_seconds,
        max_pending=settings.notification_webhook_queue_size,
    )
    return feed, FanoutNotificationRelay((feed, webhook))
