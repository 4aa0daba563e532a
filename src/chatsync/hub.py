from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, List

from .models import MalformedPayload

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], None]

_DISCARDABLE = (MalformedPayload, KeyError, TypeError, ValueError)


@dataclass(eq=False)
class Subscription:
    event: str
    handler: Handler
    owner: Hashable | None = None

    def deliver(self, payload: Dict[str, Any]) -> None:
        self.handler(payload)


class SubscriptionHub:
    """Registers handlers by event name and dispatches inbound payloads to them.

    A handler that chokes on a payload loses only that one update: the error is
    logged and the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, event: str, handler: Handler, owner: Hashable | None = None) -> Subscription:
        subscription = Subscription(event=event, handler=handler, owner=owner)
        self._subscriptions.setdefault(event, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.event)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.event, None)

    def unsubscribe_owner(self, owner: Hashable) -> int:
        removed = 0
        for event in list(self._subscriptions):
            for subscription in list(self._subscriptions[event]):
                if subscription.owner == owner:
                    self.unsubscribe(subscription)
                    removed += 1
        return removed

    def subscriber_count(self, event: str | None = None) -> int:
        if event is not None:
            return len(self._subscriptions.get(event, []))
        return sum(len(subs) for subs in self._subscriptions.values())

    def dispatch(self, event: str, payload: Dict[str, Any]) -> int:
        delivered = 0
        for subscription in list(self._subscriptions.get(event, [])):
            try:
                subscription.deliver(payload)
            except _DISCARDABLE as exc:
                logger.warning("discarded %s payload: %s", event, exc)
                continue
            delivered += 1
        return delivered


class ListenerScope:
    """Subscriptions tied to one screen's lifetime; closing drops all of them.

    Typical use from a screen:

        with ListenerScope(hub, "chat:alice") as scope:
            scope.subscribe("typingStart", on_typing)
    """

    def __init__(self, hub: SubscriptionHub, owner: Hashable) -> None:
        self.hub = hub
        self.owner = owner
        self._closed = False

    def subscribe(self, event: str, handler: Handler) -> Subscription:
        if self._closed:
            raise RuntimeError(f"listener scope {self.owner!r} is closed")
        return self.hub.subscribe(event, handler, owner=self.owner)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.hub.unsubscribe_owner(self.owner)

    def __enter__(self) -> "ListenerScope":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
