# voice_intake/observable.py

import logging
import threading
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger("voice_intake")

S = TypeVar("S")


class StateChannel(Generic[S]):
    """
    Holds the latest state and pushes every new one to subscribers.

    Publishers may be on any thread; callbacks run on the publisher's thread,
    outside the channel lock, in subscription order.
    """

    def __init__(self, initial: S, name: str = "state"):
        self.name = name
        self._lock = threading.Lock()
        self._value = initial
        self._subscribers: List[Callable[[S], None]] = []

    @property
    def value(self) -> S:
        with self._lock:
            return self._value

    def subscribe(self, callback: Callable[[S], None], *, replay: bool = True) -> Callable[[], None]:
        """Register `callback`; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)
            current = self._value
        if replay:
            callback(current)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, state: S) -> None:
        with self._lock:
            self._value = state
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(state)
            except Exception:
                logger.exception("%s subscriber failed on %r", self.name, state)
