"""Single-slot handoff between the MQTT network thread and the reconciliation flow."""
import threading
from typing import Optional


class HandoffSlot:
    """Holds at most one item.

    deposit() blocks the producer while the slot is occupied, so nothing new is
    delivered until the consumer is back in take(). Both sides give up when the
    slot is closed.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._item = None
        self._full = False
        self._closed = False

    def deposit(self, item, stop: Optional[threading.Event] = None, poll: float = 0.5) -> bool:
        with self._cond:
            while self._full and not self._closed:
                if stop is not None and stop.is_set():
                    return False
                self._cond.wait(poll)
            if self._closed:
                return False
            self._item = item
            self._full = True
            self._cond.notify_all()
            return True

    def take(self, timeout: float):
        """Return the deposited item, or None if nothing arrived within timeout."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._full or self._closed, timeout):
                return None
            if not self._full:
                return None
            item, self._item, self._full = self._item, None, False
            self._cond.notify_all()
            return item

    def close(self):
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self):
        return self._closed
