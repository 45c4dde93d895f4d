"""
Progress Channel - explicit topic the job worker publishes progress snapshots to

Workers run in threads; subscribers are asyncio consumers (the progress
stream) or plain callables. Publishing never blocks and never raises into
the worker.
"""
import asyncio
import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Optional

from models.canonical import ProgressSnapshot

logger = logging.getLogger(__name__)


class ProgressSubscription:
    """Per-analysis mailbox bound to the event loop that created it"""

    def __init__(self, analysis_id: str, loop: asyncio.AbstractEventLoop):
        self.analysis_id = analysis_id
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue()

    def deliver(self, snapshot: ProgressSnapshot) -> None:
        self.loop.call_soon_threadsafe(self.queue.put_nowait, snapshot)

    async def wait(self, timeout: float) -> Optional[ProgressSnapshot]:
        """Next pushed snapshot, or None once timeout expires"""
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None


class ProgressChannel:
    """Typed in-process pub/sub for ProgressSnapshot events"""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, List[ProgressSubscription]] = defaultdict(list)
        self._listeners: List[Callable[[ProgressSnapshot], None]] = []

    def add_listener(self, listener: Callable[[ProgressSnapshot], None]) -> None:
        """Receive every snapshot synchronously, on the publishing thread"""
        with self._lock:
            self._listeners.append(listener)

    def subscribe(self, analysis_id: str) -> ProgressSubscription:
        """Subscribe from inside a running event loop"""
        subscription = ProgressSubscription(analysis_id, asyncio.get_running_loop())
        with self._lock:
            self._subscriptions[analysis_id].append(subscription)
        return subscription

    def unsubscribe(self, subscription: ProgressSubscription) -> None:
        with self._lock:
            subscriptions = self._subscriptions.get(subscription.analysis_id, [])
            if subscription in subscriptions:
                subscriptions.remove(subscription)
            if not subscriptions:
                self._subscriptions.pop(subscription.analysis_id, None)

    def publish(self, snapshot: ProgressSnapshot) -> None:
        with self._lock:
            listeners = list(self._listeners)
            subscriptions = list(self._subscriptions.get(snapshot.analysis_id, []))

        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Progress listener failed: {e}")

        for subscription in subscriptions:
            try:
                subscription.deliver(snapshot)
            except RuntimeError:
                # Event loop already closed
                self.unsubscribe(subscription)
