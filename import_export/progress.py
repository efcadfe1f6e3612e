"""
Import/Export - Progress Broadcasting.

============================================================
PURPOSE
============================================================
Fan-out of progress updates to per-operation subscribers.

- Callbacks may be plain functions or coroutines
- One subscriber failing never affects another or the operation
- A subscriber that fails N times in a row is unsubscribed

The same broadcaster carries job updates for the scheduler,
keyed by job id instead of operation id.

============================================================
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List
import inspect
import logging


logger = logging.getLogger(__name__)


ProgressCallback = Callable[[Any], Any]


@dataclass(eq=False)
class _Subscription:
    key: str
    callback: ProgressCallback
    consecutive_failures: int = 0
    active: bool = True


class ProgressBroadcaster:
    """Isolated publish/subscribe keyed by operation (or job) id."""

    def __init__(self, failure_limit: int = 3):
        if failure_limit < 1:
            raise ValueError("failure_limit must be at least 1")
        self._failure_limit = failure_limit
        self._subscriptions: Dict[str, List[_Subscription]] = {}

    def subscribe(self, key: str, callback: ProgressCallback) -> Callable[[], None]:
        """Register a callback; returns an idempotent unsubscribe function."""
        subscription = _Subscription(key=key, callback=callback)
        self._subscriptions.setdefault(key, []).append(subscription)

        def unsubscribe() -> None:
            self._remove(subscription)

        return unsubscribe

    def subscriber_count(self, key: str) -> int:
        return len(self._subscriptions.get(key, []))

    def clear(self, key: str) -> None:
        """Drop every subscriber of one key."""
        for subscription in self._subscriptions.pop(key, []):
            subscription.active = False

    async def publish(self, key: str, payload: Any) -> None:
        """Deliver payload to every subscriber of key, in subscription order."""
        for subscription in list(self._subscriptions.get(key, [])):
            if not subscription.active:
                continue
            try:
                result = subscription.callback(payload)
                if inspect.isawaitable(result):
                    await result
                subscription.consecutive_failures = 0
            except Exception as e:
                subscription.consecutive_failures += 1
                logger.warning(
                    f"Progress subscriber for {key} failed "
                    f"({subscription.consecutive_failures}/{self._failure_limit}): {e}",
                    exc_info=True,
                )
                if subscription.consecutive_failures >= self._failure_limit:
                    logger.error(
                        f"Unsubscribing progress subscriber for {key} after "
                        f"{subscription.consecutive_failures} consecutive failures"
                    )
                    self._remove(subscription)

    def _remove(self, subscription: _Subscription) -> None:
        subscription.active = False
        subscribers = self._subscriptions.get(subscription.key)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            del self._subscriptions[subscription.key]
