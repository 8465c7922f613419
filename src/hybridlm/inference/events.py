"""Token event delivery keyed by session id."""

from __future__ import annotations

import logging
from collections import defaultdict

from hybridlm.inference.engine import TokenCallback, TokenEvent

logger = logging.getLogger(__name__)


def deliver(callback: TokenCallback, event: TokenEvent) -> None:
    """Hand one event to a caller callback; a raising callback is logged, not propagated."""
    try:
        callback(event)
    except Exception:
        logger.exception("Token callback for session %s raised", event.session_id)


class Subscription:
    """Handle for one registered callback. Removing it twice is a no-op."""

    def __init__(self, bus: TokenBus, session_id: int, callback: TokenCallback) -> None:
        self._bus = bus
        self.session_id = session_id
        self.callback = callback
        self.active = True

    def remove(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info) -> None:
        self.remove()


class TokenBus:
    """Callback registry for streamed tokens.

    Engines publish every token with the id of the session that produced it;
    only callbacks subscribed under that id see it.
    """

    def __init__(self) -> None:
        self._subscribers: dict[int, list[Subscription]] = defaultdict(list)

    def subscribe(self, session_id: int, callback: TokenCallback) -> Subscription:
        sub = Subscription(self, session_id, callback)
        self._subscribers[session_id].append(sub)
        return sub

    def publish(self, event: TokenEvent) -> None:
        if event.session_id is None:
            return
        for sub in list(self._subscribers.get(event.session_id, ())):
            deliver(sub.callback, event)

    def subscriber_count(self, session_id: int) -> int:
        return len(self._subscribers.get(session_id, ()))

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.session_id)
        if not subs:
            return
        try:
            subs.remove(sub)
        except ValueError:
            pass
        if not subs:
            del self._subscribers[sub.session_id]
