"""Push-model observable value."""

import logging
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription:
    """Handle returned by Subscribable.subscribe()."""

    def __init__(self, owner: "Subscribable", callback: Callable):
        self._owner = owner
        self._callback = callback

    def cancel(self) -> None:
        self._owner._remove(self._callback)


class Subscribable(Generic[T]):
    """Holds a value and pushes every assignment to its subscribers.

    New subscribers receive the current value immediately when one is set.
    Subscriber errors are logged and never propagate to the publisher.
    """

    def __init__(self, value: Optional[T] = None):
        self._value = value
        self._subscribers: list[Callable[[Optional[T]], None]] = []

    @property
    def value(self) -> Optional[T]:
        return self._value

    @value.setter
    def value(self, new_value: Optional[T]) -> None:
        self._value = new_value
        for callback in list(self._subscribers):
            try:
                callback(new_value)
            except Exception as e:
                logger.error(f"Subscriber callback error: {e}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, callback: Callable[[Optional[T]], None]) -> Subscription:
        """Register a callback; it is called with the current value if set."""
        self._subscribers.append(callback)
        if self._value is not None:
            try:
                callback(self._value)
            except Exception as e:
                logger.error(f"Subscriber callback error: {e}")
        return Subscription(self, callback)

    def unsubscribe_all(self) -> None:
        self._subscribers.clear()

    def _remove(self, callback: Callable) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)
