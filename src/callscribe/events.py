"""Typed events published by the call lifecycle."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from .models import CallSummary, RecognitionMethod, StructuredCallData

logger = logging.getLogger("callscribe")


@dataclass(frozen=True)
class StateChanged:
    previous: Any
    current: Any


@dataclass(frozen=True)
class CallStarted:
    session_id: str
    counterpart: Optional[str] = None


@dataclass(frozen=True)
class CallEnded:
    session_id: str
    duration_s: float


@dataclass(frozen=True)
class TranscriptionUpdate:
    session_id: str
    text: str
    is_final: bool


@dataclass(frozen=True)
class RecognitionMethodChanged:
    session_id: Optional[str]
    previous: RecognitionMethod
    current: RecognitionMethod
    reason: str


@dataclass(frozen=True)
class RecognitionErrorEvent:
    session_id: Optional[str]
    method: RecognitionMethod
    message: str


@dataclass(frozen=True)
class CaptureTick:
    session_id: str
    elapsed_s: float
    audio_level: float


@dataclass(frozen=True)
class ProcessingComplete:
    data: StructuredCallData
    summary: CallSummary


@dataclass(frozen=True)
class FatalError:
    session_id: Optional[str]
    error: BaseException


Handler = Callable[[Any], None]


class EventBus:
    """Synchronous publish/subscribe channel.

    Handlers run on the publishing thread. A failing handler is logged and does
    not stop delivery to the remaining handlers.
    """

    def __init__(self) -> None:
        self._handlers: List[Handler] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: Any) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", type(event).__name__)
