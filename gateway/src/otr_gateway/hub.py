from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List


Callback = Callable[[Any], None]


@dataclass(eq=False)
class Subscription:
    client_id: str
    callback: Callback

    def deliver(self, event: Any) -> None:
        self.callback(event)


class SubscriptionHub:
    """Push channel: hands each fanned-out event to its recipient device's listeners."""

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, client_id: str, callback: Callback) -> Subscription:
        subscription = Subscription(client_id=client_id, callback=callback)
        self._subscriptions.setdefault(client_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.client_id)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.client_id, None)

    def deliver(self, event: Any) -> int:
        client_id = getattr(event, "recipient_client_id", None)
        if client_id is None:
            return 0
        subs = list(self._subscriptions.get(client_id, []))
        for subscription in subs:
            subscription.deliver(event)
        return len(subs)
