import logging
from typing import Callable, Generic, List, Optional, TypeVar

T = TypeVar('T')

logger = logging.getLogger(__name__)


class Broadcaster(Generic[T]):
    """Ordered, synchronous fan-out of a value to subscribed listeners.

    ``subscribe`` invokes the listener immediately with the current value. A
    listener that raises is logged and skipped; later listeners still run.
    """

    def __init__(self, current: Callable[[], T]):
        self._current = current
        self._listeners: List[Callable[[T], None]] = []
        self._last: Optional[T] = None

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        value = self._current()
        self._last = value
        self._call(listener, value)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def publish(self, force: bool = False) -> bool:
        """Notify listeners when the value changed since the last publish."""
        value = self._current()
        if not force and value == self._last:
            return False
        self._last = value
        for listener in list(self._listeners):
            self._call(listener, value)
        return True

    def _call(self, listener: Callable[[T], None], value: T) -> None:
        try:
            listener(value)
        except Exception:
            logger.exception(f"Listener {getattr(listener, '__name__', listener)!r} failed")

    def __len__(self) -> int:
        return len(self._listeners)
