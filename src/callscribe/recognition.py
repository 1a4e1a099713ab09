"""Streaming speech recognition with on-device to cloud fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional, Sequence

import numpy as np

from .audio_utils import to_mono_float32
from .config import RecognitionConfig
from .errors import (
    RecognitionError,
    RecognitionSessionActive,
    RecognitionTimeout,
    RecognitionUnavailable,
)
from .events import EventBus, RecognitionErrorEvent, RecognitionMethodChanged
from .models import RecognitionMethod, RecognitionResult, Segment, clamp_confidence
from .transcriber import BackendResult, RecognitionBackend

logger = logging.getLogger("callscribe")

_END = object()


class FrameStream:
    """Bounded frame queue consumed as an async iterator.

    ``put_nowait`` and ``close`` must run on the event loop thread; the audio
    callback reaches them through ``loop.call_soon_threadsafe``.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self.dropped = 0

    def put_nowait(self, frame: np.ndarray) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning("Recognition queue full, dropped %s frames", self.dropped)
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_END)
        except asyncio.QueueFull:
            pass

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "FrameStream":
        return self

    async def __anext__(self) -> np.ndarray:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        return item


def aggregate_confidence(
    completion_signals: Optional[Sequence[float]], segments: Sequence[Segment]
) -> float:
    """Aggregate confidence for a recognition session.

    The mean of explicit completion-confidence signals when present, else the
    duration-weighted mean of segment confidences.
    """
    if completion_signals:
        return clamp_confidence(sum(completion_signals) / len(completion_signals))
    if not segments:
        return 0.0
    total = sum(seg.duration for seg in segments)
    if total > 0:
        weighted = sum(seg.confidence * seg.duration for seg in segments) / total
    else:
        weighted = sum(seg.confidence for seg in segments) / len(segments)
    return clamp_confidence(weighted)


@dataclass
class _Attempt:
    method: RecognitionMethod
    result: Optional[BackendResult] = None
    error: Optional[BaseException] = None
    stopped: bool = False

    @property
    def ok(self) -> bool:
        return self.result is not None and self.error is None


class SpeechRecognitionOrchestrator:
    """Converts a frame stream into ordered partial results and one final result.

    The preferred backend (on-device by default) handles chunks until it
    fails, times out, or returns text below the fallback confidence threshold.
    From then on the alternate backend, when one is registered, is used for
    the rest of the session. When the alternate also fails, the session is
    marked degraded and keeps whatever text it has accumulated. The next
    chunk then goes back to the backend that was tried first.
    """

    def __init__(
        self,
        backends: Dict[RecognitionMethod, RecognitionBackend],
        config: Optional[RecognitionConfig] = None,
        events: Optional[EventBus] = None,
    ) -> None:
        self._backends = dict(backends)
        self.config = config or RecognitionConfig()
        self._events = events
        self._preferred = self.config.preferred_method
        self._active = False
        self._stopped = False
        self._session_config = self.config
        self._session_id: Optional[str] = None
        self._current = self._preferred
        self._segments: List[tuple[RecognitionMethod, Segment]] = []
        self._signals: List[float] = []
        self._all_signalled = True
        self._degraded = False
        self._language = self.config.language
        self._started = 0.0
        self._inflight: Optional[asyncio.Future] = None
        self._final: Optional[asyncio.Future] = None

    # public surface

    @property
    def active(self) -> bool:
        return self._active

    @property
    def preferred_method(self) -> RecognitionMethod:
        return self._preferred

    @property
    def current_method(self) -> RecognitionMethod:
        return self._current

    def switch_method(self, method: RecognitionMethod) -> None:
        if self._active:
            raise RecognitionSessionActive(
                "cannot switch recognition method while a session is active"
            )
        self._preferred = RecognitionMethod(method)
        self._current = self._preferred
        logger.info("Preferred recognition method set to %s", self._preferred.value)

    async def recognize(
        self,
        frames: AsyncIterator[np.ndarray],
        sample_rate_hz: int,
        config: Optional[RecognitionConfig] = None,
        session_id: Optional[str] = None,
    ) -> AsyncIterator[RecognitionResult]:
        """Yield partial results per chunk, then exactly one final result."""
        if self._active:
            raise RecognitionSessionActive("a recognition session is already active")
        self._begin(config or self.config, session_id)
        chunk_samples = max(int(self._session_config.chunk_seconds * sample_rate_hz), 1)
        pending: List[np.ndarray] = []
        pending_samples = 0
        offset_s = 0.0
        try:
            async for frame in frames:
                if self._stopped:
                    break
                mono = to_mono_float32(frame)
                if mono.size == 0:
                    continue
                pending.append(mono)
                pending_samples += mono.size
                while pending_samples >= chunk_samples and not self._stopped:
                    joined = np.concatenate(pending)
                    chunk, rest = joined[:chunk_samples], joined[chunk_samples:]
                    pending = [rest] if rest.size else []
                    pending_samples = rest.size
                    await self._process_chunk(chunk, sample_rate_hz, offset_s)
                    offset_s += chunk.size / sample_rate_hz
                    yield self._snapshot(is_final=False)

            if pending_samples and not self._stopped:
                chunk = np.concatenate(pending)
                await self._process_chunk(chunk, sample_rate_hz, offset_s)

            final = self._snapshot(is_final=True)
            self._resolve(final)
            yield final
        finally:
            if self._final is not None and not self._final.done():
                self._resolve(self._snapshot(is_final=True, degraded=True))
            self._active = False
            self._inflight = None

    async def get_final_result(self, timeout: Optional[float] = None) -> RecognitionResult:
        if self._final is None:
            raise RecognitionError("no recognition session has been started")
        wait_s = timeout if timeout is not None else self._session_config.final_timeout_s
        try:
            return await asyncio.wait_for(asyncio.shield(self._final), wait_s)
        except asyncio.TimeoutError as exc:
            raise RecognitionTimeout(
                f"final recognition result not ready after {wait_s:.1f}s"
            ) from exc

    def partial_result(self) -> RecognitionResult:
        """Accumulated text so far, as a degraded final result."""
        return self._snapshot(is_final=True, degraded=True)

    def stop_recognition(self) -> None:
        if not self._active or self._stopped:
            return
        self._stopped = True
        if self._inflight is not None and not self._inflight.done():
            self._inflight.cancel()
        logger.info("Recognition stopped")

    # session internals

    def _begin(self, config: RecognitionConfig, session_id: Optional[str]) -> None:
        self._active = True
        self._stopped = False
        self._session_config = config
        self._session_id = session_id
        self._current = self._preferred
        self._segments = []
        self._signals = []
        self._all_signalled = True
        self._degraded = False
        self._language = config.language
        self._started = time.monotonic()
        self._final = asyncio.get_running_loop().create_future()
        logger.info(
            "Recognition session %s started with %s",
            session_id or "-",
            self._preferred.value,
        )

    def _resolve(self, result: RecognitionResult) -> None:
        if self._final is not None and not self._final.done():
            self._final.set_result(result)

    def _alternate(self, method: RecognitionMethod) -> Optional[RecognitionMethod]:
        other = (
            RecognitionMethod.CLOUD
            if method is RecognitionMethod.ON_DEVICE
            else RecognitionMethod.ON_DEVICE
        )
        return other if other in self._backends else None

    def _switch_to(self, method: RecognitionMethod, reason: str) -> None:
        previous = self._current
        self._current = method
        logger.warning(
            "Recognition switching from %s to %s: %s",
            previous.value,
            method.value,
            reason,
        )
        if self._events is not None:
            self._events.publish(
                RecognitionMethodChanged(self._session_id, previous, method, reason)
            )

    def _mark_degraded(self, method: RecognitionMethod, error: BaseException) -> None:
        self._degraded = True
        logger.error("Recognition with %s failed, keeping partial text: %s", method.value, error)
        if self._events is not None:
            self._events.publish(
                RecognitionErrorEvent(self._session_id, method, str(error) or type(error).__name__)
            )

    async def _process_chunk(
        self, chunk: np.ndarray, sample_rate_hz: int, offset_s: float
    ) -> None:
        chunk_s = chunk.size / sample_rate_hz
        method = self._current
        attempt = await self._attempt(method, chunk, sample_rate_hz)
        if attempt.stopped:
            return

        alternate = self._alternate(method)
        low_confidence = False
        if attempt.ok:
            confidence = self._chunk_confidence(attempt.result)
            low_confidence = (
                bool(attempt.result.text.strip())
                and confidence < self._session_config.fallback_confidence_threshold
            )
            if not low_confidence or alternate is None:
                self._accept(method, attempt.result, offset_s, chunk_s)
                return
            reason = (
                f"confidence {confidence:.2f} below "
                f"{self._session_config.fallback_confidence_threshold:.2f}"
            )
        else:
            if alternate is None:
                self._mark_degraded(method, attempt.error)
                return
            reason = str(attempt.error) or type(attempt.error).__name__

        self._switch_to(alternate, reason)
        retry = await self._attempt(alternate, chunk, sample_rate_hz)
        if retry.stopped:
            return
        if retry.ok:
            self._accept(alternate, retry.result, offset_s, chunk_s)
            return
        if low_confidence:
            self._accept(method, attempt.result, offset_s, chunk_s)
        self._mark_degraded(alternate, retry.error)
        # later chunks start again from the backend tried first
        self._switch_to(method, f"{alternate.value} also failed")

    async def _attempt(
        self, method: RecognitionMethod, chunk: np.ndarray, sample_rate_hz: int
    ) -> _Attempt:
        backend = self._backends.get(method)
        if backend is None:
            return _Attempt(
                method, error=RecognitionUnavailable(f"no {method.value} recognizer configured")
            )
        timeout = self._session_config.attempt_timeout_s
        task = asyncio.ensure_future(
            backend.transcribe(chunk, sample_rate_hz, self._session_config.language)
        )
        self._inflight = task
        try:
            result = await asyncio.wait_for(task, timeout)
        except asyncio.TimeoutError:
            return _Attempt(
                method,
                error=RecognitionTimeout(f"{method.value} attempt exceeded {timeout:.1f}s"),
            )
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._stopped and (current is None or not current.cancelling()):
                return _Attempt(method, stopped=True)
            raise
        except RecognitionError as exc:
            return _Attempt(method, error=exc)
        except Exception as exc:
            logger.exception("%s recognizer raised unexpectedly", method.value)
            return _Attempt(method, error=RecognitionError(str(exc)))
        finally:
            self._inflight = None
        return _Attempt(method, result=result)

    @staticmethod
    def _chunk_confidence(result: BackendResult) -> float:
        if result.confidence is not None:
            return clamp_confidence(result.confidence)
        return aggregate_confidence(None, result.segments)

    def _accept(
        self,
        method: RecognitionMethod,
        result: BackendResult,
        offset_s: float,
        chunk_s: float,
    ) -> None:
        text = result.text.strip()
        if not text:
            return
        segments = [seg.shifted(offset_s) for seg in result.segments if seg.text]
        if not segments:
            segments = [
                Segment(
                    start=offset_s,
                    end=offset_s + chunk_s,
                    text=text,
                    confidence=result.confidence or 0.0,
                )
            ]
        self._segments.extend((method, seg) for seg in segments)
        if result.confidence is None:
            self._all_signalled = False
        else:
            self._signals.append(clamp_confidence(result.confidence))
        if result.language:
            self._language = result.language

    def _result_method(self, degraded: bool) -> RecognitionMethod:
        if not degraded:
            return self.current_method
        by_method: Dict[RecognitionMethod, List[float]] = {}
        for method, seg in self._segments:
            by_method.setdefault(method, []).append(seg.confidence)
        if not by_method:
            return RecognitionMethod.ON_DEVICE
        return min(by_method, key=lambda m: sum(by_method[m]) / len(by_method[m]))

    def _snapshot(self, is_final: bool, degraded: bool = False) -> RecognitionResult:
        segments = [seg for _method, seg in self._segments]
        text = " ".join(seg.text for seg in segments).strip()
        signals = self._signals if self._all_signalled else None
        degraded = degraded or self._degraded
        return RecognitionResult(
            text=text,
            confidence=aggregate_confidence(signals, segments) if text else 0.0,
            method=self._result_method(degraded),
            language=self._language,
            processing_time_s=time.monotonic() - self._started if self._started else 0.0,
            segments=segments,
            is_final=is_final,
            degraded=degraded,
        )
