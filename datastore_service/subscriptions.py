"""
Polling-based change notification for ``DataStore.on_update``.

The entry store has no push channel, so changes are found by re-fetching
every subscribed key on a fixed interval and comparing versions and write
timestamps:

- Registration fetches the key once and records its version and
  ``updated_at`` as the baseline. No callback fires for the baseline itself.
- One background task per poller wakes every ``poll_interval`` seconds,
  snapshots the active subscriptions and fetches them concurrently.
- A version or ``updated_at`` different from the baseline fires
  ``callback(value)`` and becomes the new baseline. A deleted key reads as
  version 0 and fires once with None. A key removed and written again
  between two ticks restarts at version 1, so the timestamp is what tells
  it apart from an unchanged version-1 entry.
- Fetch failures are logged and retried on the next tick; they never reach
  the callback and never end the subscription.

Latency: a committed change is seen at most one poll interval (plus one
fetch) later.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Any

from .config import DEFAULT_POLL_INTERVAL
from .exceptions import InvalidStateError
from .logging_utils import get_store_logger

if TYPE_CHECKING:
    from .datastore import DataStore

logger = get_store_logger("subscriptions")

UpdateCallback = Callable[[Any], Any]


class Subscription:
    """Handle for one ``on_update`` registration.

    Attributes:
        key: Subscribed key
        last_version: Version observed most recently (0 if absent)
        last_updated_at: Write time observed most recently (None if absent)
        connected: False once disconnected
    """

    def __init__(
        self,
        subscription_id: int,
        poller: SubscriptionPoller,
        store: DataStore,
        key: str,
        callback: UpdateCallback,
        baseline_version: int,
        baseline_updated_at: datetime | None = None,
    ):
        self.subscription_id = subscription_id
        self.store = store
        self.key = key
        self.callback = callback
        self.last_version = baseline_version
        self.last_updated_at = baseline_updated_at
        self.connected = True
        self._poller = poller

    def __repr__(self) -> str:
        return (
            f"Subscription(id={self.subscription_id}, store={self.store.name!r}, "
            f"key={self.key!r}, connected={self.connected})"
        )

    def disconnect(self) -> None:
        """Stop notifications. Safe to call more than once."""
        if not self.connected:
            return
        self.connected = False
        self._poller._remove(self)


class SubscriptionPoller:
    """Runs the poll loop for every subscription of one client."""

    def __init__(self, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.poll_interval = poll_interval
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def active_count(self) -> int:
        return len(self._subscriptions)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def subscribe(
        self,
        store: DataStore,
        key: str,
        callback: UpdateCallback,
    ) -> Subscription:
        """Register a callback, capturing the key's current version as baseline.

        Raises:
            InvalidStateError: If the poller has been closed
            RemoteUnavailableError: If the baseline fetch fails
        """
        if self._closed:
            raise InvalidStateError("Cannot subscribe on a closed client")
        entry = await store._read_entry(key)
        if self._closed:
            raise InvalidStateError("Client closed while subscribing")
        subscription = Subscription(
            subscription_id=next(self._ids),
            poller=self,
            store=store,
            key=key,
            callback=callback,
            baseline_version=entry.version if entry else 0,
            baseline_updated_at=entry.updated_at if entry else None,
        )
        self._subscriptions[subscription.subscription_id] = subscription
        logger.debug(
            "Subscribed to %s/%s (baseline v%d)", store.name, key, subscription.last_version
        )

        self._ensure_running()
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.subscription_id, None)
        logger.debug("Disconnected %r", subscription)

    def _ensure_running(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        """Background loop; exits when no subscriptions remain."""
        while self._subscriptions:
            try:
                await asyncio.sleep(self.poll_interval)
                await self.poll_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Poll loop error: {e}")

    async def poll_once(self) -> int:
        """Run one poll tick over a snapshot of the active subscriptions.

        Returns:
            Number of callbacks fired
        """
        snapshot = list(self._subscriptions.values())
        if not snapshot:
            return 0
        fired = await asyncio.gather(*(self._poll_subscription(s) for s in snapshot))
        return sum(fired)

    async def _poll_subscription(self, subscription: Subscription) -> int:
        if not subscription.connected:
            return 0

        try:
            entry = await subscription.store._read_entry(subscription.key)
        except Exception as e:
            logger.warning(
                "Poll of %s/%s failed, retrying next tick: %s",
                subscription.store.name,
                subscription.key,
                e,
            )
            return 0

        version = entry.version if entry else 0
        updated_at = entry.updated_at if entry else None
        if (version, updated_at) == (subscription.last_version, subscription.last_updated_at):
            return 0
        subscription.last_version = version
        subscription.last_updated_at = updated_at

        # Disconnect may have happened while the fetch was in flight
        if not subscription.connected:
            return 0

        try:
            result = subscription.callback(entry.value if entry else None)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "OnUpdate callback for %s/%s raised",
                subscription.store.name,
                subscription.key,
            )
        return 1

    async def close(self) -> None:
        """Disconnect everything and stop the poll task."""
        self._closed = True
        for subscription in list(self._subscriptions.values()):
            subscription.disconnect()

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
