from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Hashable, List, Sequence

from loguru import logger

from .errors import StoreError

SnapshotCallback = Callable[[Sequence[Any]], None]
ErrorCallback = Callable[[StoreError], None]
Evaluator = Callable[[], Sequence[Any]]


def _fingerprint(snapshot: Sequence[Any]) -> tuple[Hashable, ...]:
    return tuple((doc.id, doc.version) for doc in snapshot)


class Subscription:
    """A standing query whose result set is redelivered on every change.

    Deliveries are queued on the running event loop rather than invoked inline,
    so callbacks never run inside the write that triggered them. Once
    ``cancel`` returns, queued deliveries are dropped.
    """

    def __init__(
        self,
        hub: "SubscriptionHub",
        collection: str,
        evaluate: Evaluator,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self.collection = collection
        self._hub = hub
        self._evaluate = evaluate
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._last: tuple[Hashable, ...] | None = None
        self.active = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self._hub.unregister(self)

    def refresh(self) -> None:
        """Re-evaluate the query and queue a snapshot if the result changed."""

        if not self.active:
            return
        try:
            snapshot = list(self._evaluate())
        except StoreError as exc:
            self.fail(exc)
            return
        fingerprint = _fingerprint(snapshot)
        if fingerprint == self._last:
            return
        self._last = fingerprint
        self._schedule(self._fire_snapshot, snapshot)

    def fail(self, exc: StoreError) -> None:
        self._last = None
        self._schedule(self._fire_error, exc)

    def _schedule(self, func: Callable[[Any], None], arg: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            func(arg)
            return
        loop.call_soon(func, arg)

    def _fire_snapshot(self, snapshot: List[Any]) -> None:
        if self.active:
            self._on_snapshot(snapshot)

    def _fire_error(self, exc: StoreError) -> None:
        if not self.active:
            return
        if self._on_error is None:
            logger.warning(f"Live query on {self.collection} failed: {exc}")
            return
        self._on_error(exc)


class SubscriptionHub:
    """Registers live queries per collection and refreshes them on writes."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def register(self, subscription: Subscription) -> Subscription:
        self._subscriptions.setdefault(subscription.collection, []).append(subscription)
        subscription.refresh()
        return subscription

    def unregister(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.collection)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.collection, None)

    def publish(self, collection: str) -> None:
        for subscription in list(self._subscriptions.get(collection, [])):
            subscription.refresh()

    def fail(self, collection: str, exc: StoreError) -> None:
        """Push a failure to every live query on ``collection``."""

        for subscription in list(self._subscriptions.get(collection, [])):
            subscription.fail(exc)

    def count(self, collection: str | None = None) -> int:
        if collection is not None:
            return len(self._subscriptions.get(collection, []))
        return sum(len(subs) for subs in self._subscriptions.values())
