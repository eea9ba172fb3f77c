"""
Sync event bus: plain publish/subscribe for step transitions and progress.

Any UI or transport (WebSocket push, polling cache, log tail) subscribes a
handler; the orchestrator publishes a SyncEvent on every step change and
progress update. Handlers may be plain callables or coroutine functions.
A failing handler is logged and never affects the sync.
"""
import asyncio
import inspect
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class SyncEvent:
    facility_id: str
    sync_log_id: Optional[int]
    step: str
    progress_percentage: int
    message: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facility_id": self.facility_id,
            "sync_log_id": self.sync_log_id,
            "step": self.step,
            "progress_percentage": self.progress_percentage,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class _Subscription:
    handler: Callable[[SyncEvent], Any]
    facility_id: Optional[str] = None

    def matches(self, event: SyncEvent) -> bool:
        return self.facility_id is None or self.facility_id == event.facility_id


class SyncEventBus:
    """Fan-out of SyncEvents to subscribed handlers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: List[_Subscription] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Set["asyncio.Future"] = set()

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Loop that runs async handlers for events published from other threads."""
        self._loop = loop

    def subscribe(
        self, handler: Callable[[SyncEvent], Any], facility_id: Optional[str] = None
    ) -> Callable[[], None]:
        """
        Register a handler, optionally for one facility only.

        Returns:
            A function that removes the subscription.
        """
        subscription = _Subscription(handler, facility_id)
        with self._lock:
            self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            with self._lock:
                if subscription in self._subscriptions:
                    self._subscriptions.remove(subscription)

        return unsubscribe

    def publish(self, event: SyncEvent) -> None:
        """
        Deliver an event to every matching handler.

        Safe to call from any thread. Async handlers run on the current
        loop, or on the bound loop when called from a thread without one.
        """
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not None:
            self._loop = running

        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(event)]
        for subscription in targets:
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    self._schedule(result, running, event)
            except Exception:
                logger.exception("Sync event handler failed for %s", event.facility_id)

    def _schedule(self, awaitable, running: Optional[asyncio.AbstractEventLoop], event: SyncEvent) -> None:
        if running is not None:
            future = asyncio.ensure_future(awaitable)
        elif self._loop is not None and not self._loop.is_closed():
            # Called from a worker thread, e.g. a sync route
            future = asyncio.run_coroutine_threadsafe(_await(awaitable), self._loop)
        else:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning(
                "No event loop for async handler; dropped %s event for %s",
                event.step, event.facility_id,
            )
            return

        # Keep a reference until the handler finishes
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._handler_done)

    def _handler_done(self, future) -> None:
        with self._lock:
            self._pending.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error("Async sync event handler failed: %s", future.exception())


async def _await(awaitable) -> Any:
    return await awaitable
