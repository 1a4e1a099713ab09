"""Call-state signal sources."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from .models import CallDirection

logger = logging.getLogger("callscribe")

CALL_STARTED = "started"
CALL_ENDED = "ended"


@dataclass(frozen=True)
class CallSignal:
    kind: str
    call_id: Optional[str] = None
    counterpart: Optional[str] = None
    direction: CallDirection = CallDirection.INCOMING


class CallSignalSource(Protocol):
    def subscribe(self, callback: Callable[[CallSignal], None]) -> Callable[[], None]:
        ...


class ManualCallSignalSource:
    """In-process signal source, fed by a platform bridge or by hand."""

    def __init__(self) -> None:
        self._callbacks: List[Callable[[CallSignal], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[[CallSignal], None]) -> Callable[[], None]:
        with self._lock:
            self._callbacks.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return _unsubscribe

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._callbacks)

    def emit(self, signal: CallSignal) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(signal)
            except Exception:
                logger.exception("Call signal subscriber failed")

    def call_started(
        self,
        counterpart: Optional[str] = None,
        direction: CallDirection = CallDirection.INCOMING,
        call_id: Optional[str] = None,
    ) -> None:
        self.emit(CallSignal(CALL_STARTED, call_id, counterpart, direction))

    def call_ended(self, call_id: Optional[str] = None) -> None:
        self.emit(CallSignal(CALL_ENDED, call_id))
