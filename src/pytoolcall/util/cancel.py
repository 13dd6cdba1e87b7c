from __future__ import annotations

import logging
import threading
from typing import Callable

from ..errors import OperationCancelled

logger = logging.getLogger(__name__)


class CancelToken:
    """Shared cancellation flag checked at every suspension point.

    Blocking code registers a callback with `on_cancel` so that a wait can be
    woken (or a process/stream closed) the moment `cancel` is called.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Operation cancelled.") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.debug("cancel callback failed", exc_info=True)

    def on_cancel(self, cb: Callable[[], None]) -> Callable[[], None]:
        """Register `cb`; returns a function that unregisters it."""
        with self._lock:
            fire_now = self._event.is_set()
            if not fire_now:
                self._callbacks.append(cb)
        if fire_now:
            cb()

        def _remove() -> None:
            with self._lock:
                try:
                    self._callbacks.remove(cb)
                except ValueError:
                    pass

        return _remove

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason or "Operation cancelled.")

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)
