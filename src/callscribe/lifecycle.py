"""Call lifecycle state machine."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

import numpy as np

from .config import Config
from .errors import (
    CallScribeError,
    DeviceError,
    InvalidStateTransition,
    PermissionDenied,
    RecognitionError,
    SessionAlreadyActive,
    StorageFailure,
)
from .events import (
    CallEnded,
    CallStarted,
    CaptureTick,
    EventBus,
    FatalError,
    ProcessingComplete,
    StateChanged,
    TranscriptionUpdate,
)
from .memory import available_memory_mb
from .models import (
    AudioQuality,
    CallDirection,
    CallMetadata,
    CallRecord,
    CallSession,
    CallSummary,
    DeviceInfo,
    NetworkInfo,
    RecognitionResult,
    StructuredCallData,
    utc_now,
)
from .recognition import FrameStream, SpeechRecognitionOrchestrator
from .recorder import AudioCaptureEngine, RecordingResult
from .storage import PersistenceStore
from .summarizer import SummarizationEngine
from .sync import SyncWorker
from .telephony import CALL_ENDED, CALL_STARTED, CallSignal, CallSignalSource
from .text_analysis import find_phone_number

logger = logging.getLogger("callscribe")

UNKNOWN_COUNTERPART = "Unknown"


class LifecyclePhase(str, Enum):
    IDLE = "idle"
    MONITORING = "monitoring"
    CAPTURING = "capturing"
    PROCESSING = "processing"
    ERROR = "error"


@dataclass(frozen=True)
class ErrorInfo:
    kind: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        return cls(kind=type(exc).__name__, message=str(exc))


@dataclass(frozen=True)
class LifecycleState:
    phase: LifecyclePhase
    error: Optional[ErrorInfo] = None


IDLE = LifecycleState(LifecyclePhase.IDLE)
MONITORING = LifecycleState(LifecyclePhase.MONITORING)
CAPTURING = LifecycleState(LifecyclePhase.CAPTURING)
PROCESSING = LifecycleState(LifecyclePhase.PROCESSING)

_BUSY = (LifecyclePhase.CAPTURING, LifecyclePhase.PROCESSING, LifecyclePhase.ERROR)


class CallLifecycleOrchestrator:
    """Sequences capture, recognition, summarization and persistence per call.

    All state changes happen on the event loop that called
    ``start_monitoring`` or ``start_recording``. Audio frames and telephony
    signals arriving on other threads are handed to that loop with
    ``call_soon_threadsafe``. Only one call can be capturing or processing at a
    time; a second start is rejected rather than queued.
    """

    def __init__(
        self,
        capture: AudioCaptureEngine,
        recognizer: SpeechRecognitionOrchestrator,
        summarizer: SummarizationEngine,
        store: PersistenceStore,
        config: Config,
        events: Optional[EventBus] = None,
        telephony: Optional[CallSignalSource] = None,
        sync_worker: Optional[SyncWorker] = None,
        network_probe: Optional[Callable[[], NetworkInfo]] = None,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        self._capture = capture
        self._recognizer = recognizer
        self._summarizer = summarizer
        self._store = store
        self._config = config
        self.events = events or EventBus()
        self._telephony = telephony
        self._sync_worker = sync_worker
        self._network_probe = network_probe or NetworkInfo
        self._clock = clock
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)

        self._state = IDLE
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._session: Optional[CallSession] = None
        self._frames: Optional[FrameStream] = None
        self._recognition_task: Optional[asyncio.Task] = None
        self._ticker_task: Optional[asyncio.Task] = None
        self._processing_task: Optional[asyncio.Task] = None
        self._signal_tasks: List[asyncio.Task] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    # state

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def session(self) -> Optional[CallSession]:
        return self._session

    @property
    def monitoring(self) -> bool:
        return self._unsubscribe is not None

    def _set_state(self, state: LifecycleState) -> None:
        previous = self._state
        if previous == state:
            return
        self._state = state
        logger.info("Lifecycle %s -> %s", previous.phase.value, state.phase.value)
        self.events.publish(StateChanged(previous, state))

    def _rest_state(self) -> LifecycleState:
        return MONITORING if self.monitoring else IDLE

    # monitoring

    async def start_monitoring(self) -> None:
        self._loop = asyncio.get_running_loop()
        if self._telephony is None:
            raise InvalidStateTransition("no call signal source configured")
        if self._unsubscribe is None:
            self._unsubscribe = self._telephony.subscribe(self._on_call_signal)
        if self._state.phase is LifecyclePhase.IDLE:
            self._set_state(MONITORING)

    def stop_monitoring(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._state.phase is LifecyclePhase.MONITORING:
            self._set_state(IDLE)

    def _on_call_signal(self, signal: CallSignal) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("Call signal %s dropped, no event loop", signal.kind)
            return
        loop.call_soon_threadsafe(self._handle_signal, signal)

    def _handle_signal(self, signal: CallSignal) -> None:
        if signal.kind == CALL_STARTED:
            if not self._config.auto_capture:
                return
            if self._state.phase in _BUSY:
                logger.warning("Call start ignored while %s", self._state.phase.value)
                return
            coro = self.start_recording(signal.counterpart, signal.direction)
        elif signal.kind == CALL_ENDED:
            coro = self._stop_after(list(self._signal_tasks))
        else:
            logger.warning("Unknown call signal %s", signal.kind)
            return
        task = asyncio.get_running_loop().create_task(coro)
        self._signal_tasks.append(task)
        task.add_done_callback(self._signal_task_done)

    async def _stop_after(self, earlier: List[asyncio.Task]) -> Optional[StructuredCallData]:
        if earlier:
            await asyncio.gather(*earlier, return_exceptions=True)
        if self._state.phase is not LifecyclePhase.CAPTURING:
            return None
        return await self.stop_recording_and_save()

    def _signal_task_done(self, task: asyncio.Task) -> None:
        if task in self._signal_tasks:
            self._signal_tasks.remove(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Call signal handling failed: %s", exc)

    async def wait_idle(self) -> None:
        """Wait for work started by call signals to finish."""
        while True:
            pending = [t for t in self._signal_tasks if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    # recording

    async def start_recording(
        self,
        counterpart: Optional[str] = None,
        direction: CallDirection = CallDirection.OUTGOING,
    ) -> CallSession:
        if self._state.phase in _BUSY:
            raise SessionAlreadyActive(
                f"cannot start recording while {self._state.phase.value}"
            )
        loop = asyncio.get_running_loop()
        self._loop = loop
        session = CallSession(
            id=self._id_factory(),
            started_at=self._clock(),
            counterpart=counterpart,
            direction=direction,
            method=self._recognizer.preferred_method,
        )
        self._session = session
        self._set_state(CAPTURING)

        self._frames = FrameStream(self._config.audio.frame_queue_size)
        self._capture.set_frame_consumer(self._on_frame)
        self._capture.set_error_listener(self._on_capture_error)
        self._recognition_task = loop.create_task(self._run_recognition(session, self._frames))

        session.audio_path = self._store.recording_path(session.id, session.started_at)
        try:
            await asyncio.to_thread(self._capture.start_capture, session.audio_path)
        except (PermissionDenied, DeviceError) as exc:
            await self._enter_error(exc)
            raise

        self._ticker_task = loop.create_task(self._tick(session))
        self.events.publish(CallStarted(session.id, counterpart))
        logger.info("Recording call %s", session.id)
        return session

    def _on_frame(self, frame: np.ndarray) -> None:
        loop = self._loop
        frames = self._frames
        if loop is None or frames is None:
            return
        try:
            loop.call_soon_threadsafe(frames.put_nowait, frame)
        except RuntimeError:
            # loop already closed
            pass

    def _on_capture_error(self, error: BaseException) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(lambda: loop.create_task(self._capture_failed(error)))

    async def _capture_failed(self, error: BaseException) -> None:
        if self._state.phase is LifecyclePhase.CAPTURING:
            await self._enter_error(error)

    async def _run_recognition(self, session: CallSession, frames: FrameStream) -> None:
        try:
            async for result in self._recognizer.recognize(
                frames,
                self._capture.sample_rate_hz,
                self._config.recognition,
                session.id,
            ):
                session.method = result.method
                if result.is_final:
                    session.final_text = result.text
                else:
                    session.partial_text = result.text
                self.events.publish(
                    TranscriptionUpdate(session.id, result.text, result.is_final)
                )
        except RecognitionError as exc:
            logger.error("Recognition for %s ended with error: %s", session.id, exc)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Recognition task for %s failed", session.id)

    async def _tick(self, session: CallSession) -> None:
        while True:
            await asyncio.sleep(self._config.tick_interval_s)
            level = self._capture.audio_level
            session.record_level(level)
            elapsed = (self._clock() - session.started_at).total_seconds()
            self.events.publish(CaptureTick(session.id, elapsed, level))

    async def _cancel_task(self, task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.exception("Task raised while being cancelled")

    async def _release_capture(self) -> Optional[RecordingResult]:
        """Cancel the ticker, release the audio device and end the frame stream."""
        await self._cancel_task(self._ticker_task)
        self._ticker_task = None
        recording = self._capture.stop_capture()
        self._capture.set_frame_consumer(None)
        self._capture.set_error_listener(None)
        if self._frames is not None:
            self._frames.close()
        return recording

    async def _release_session_work(self) -> Optional[RecordingResult]:
        recording = await self._release_capture()
        self._recognizer.stop_recognition()
        await self._cancel_task(self._recognition_task)
        self._recognition_task = None
        return recording

    async def stop_recording_and_save(self) -> StructuredCallData:
        if self._state.phase is not LifecyclePhase.CAPTURING or self._session is None:
            raise InvalidStateTransition(
                f"no call is being captured (state {self._state.phase.value})"
            )
        session = self._session
        self._processing_task = asyncio.current_task()
        self._set_state(PROCESSING)
        ended_at = self._clock()
        try:
            recording = await self._release_capture()
            if recording is not None and recording.audio_path and not recording.frames:
                self._remove_audio(recording.audio_path)
            duration_s = (
                recording.duration_seconds
                if recording is not None and recording.frames
                else (ended_at - session.started_at).total_seconds()
            )
            self.events.publish(CallEnded(session.id, duration_s))

            result = await self._final_recognition()
            summary = await self._summarize(result)
            data = self._build_call_data(session, result, summary, recording, ended_at, duration_s)
            await self._persist(data)
        except (StorageFailure, asyncio.CancelledError):
            raise
        except Exception as exc:
            await self._enter_error(exc)
            raise
        finally:
            self._processing_task = None

        self._session = None
        self._frames = None
        if self._sync_worker is not None:
            self._sync_worker.wake()
        self.events.publish(ProcessingComplete(data, summary))
        self._set_state(self._rest_state())
        return data

    async def _final_recognition(self) -> RecognitionResult:
        try:
            result = await self._recognizer.get_final_result(
                self._config.recognition.final_timeout_s
            )
        except RecognitionError as exc:
            logger.warning("Using partial transcript: %s", exc)
            self._recognizer.stop_recognition()
            result = self._recognizer.partial_result()
        await self._cancel_task(self._recognition_task)
        self._recognition_task = None
        return result

    async def _summarize(self, result: RecognitionResult) -> CallSummary:
        try:
            return await self._summarizer.summarize(
                result.text,
                self._config.summarization,
                result.segments,
                result.language,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Summarization failed unexpectedly")
            return CallSummary.failed(str(exc) or type(exc).__name__)

    def _build_call_data(
        self,
        session: CallSession,
        result: RecognitionResult,
        summary: CallSummary,
        recording: Optional[RecordingResult],
        ended_at: datetime,
        duration_s: float,
    ) -> StructuredCallData:
        counterpart = (
            session.counterpart or find_phone_number(result.text) or UNKNOWN_COUNTERPART
        )
        audio_ref = None
        if recording is not None and recording.audio_path and recording.frames:
            audio_ref = recording.audio_path
        level = self._capture.mean_level or session.mean_level
        metadata = CallMetadata(
            direction=session.direction,
            audio_quality=AudioQuality.from_level(level),
            recognition_method=result.method,
            language=result.language,
            confidence=result.confidence,
            start_time=session.started_at,
            end_time=ended_at,
            device_info=DeviceInfo.current(available_memory_mb()),
            network_info=self._network_probe(),
            recognition_degraded=result.degraded,
        )
        return StructuredCallData(
            id=session.id,
            timestamp=session.started_at,
            duration_s=duration_s,
            counterpart=counterpart,
            audio_ref=audio_ref,
            transcription_text=result.text,
            summary=summary,
            metadata=metadata,
            segments=list(result.segments),
        )

    async def _persist(self, data: StructuredCallData) -> None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._store.save, data),
                self._config.storage_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            error = StorageFailure(
                f"saving call {data.id} timed out after {self._config.storage_timeout_s:.1f}s"
            )
            await self._enter_error(error)
            raise error from exc
        except StorageFailure as exc:
            await self._enter_error(exc)
            raise

    async def discard_recording(self) -> None:
        """Drop the current call without saving anything."""
        session = self._session
        if session is None:
            return
        processing = self._processing_task
        if processing is not None and processing is not asyncio.current_task():
            await self._cancel_task(processing)
        await self._release_session_work()
        if session.audio_path:
            self._remove_audio(session.audio_path)
        self._session = None
        self._frames = None
        logger.info("Discarded call %s", session.id)
        self._set_state(self._rest_state())

    @staticmethod
    def _remove_audio(path: str) -> None:
        if not os.path.exists(path):
            return
        try:
            os.unlink(path)
        except OSError:
            logger.warning("Could not remove audio %s", path)

    async def _enter_error(self, error: BaseException) -> None:
        session_id = self._session.id if self._session else None
        await self._release_session_work()
        self._session = None
        self._frames = None
        logger.error("Call %s failed: %s", session_id or "-", error)
        self._set_state(
            LifecycleState(LifecyclePhase.ERROR, ErrorInfo.from_exception(error))
        )
        self.events.publish(FatalError(session_id, error))

    def acknowledge_error(self) -> None:
        if self._state.phase is not LifecyclePhase.ERROR:
            return
        self._capture.reset()
        self._set_state(self._rest_state())

    # history

    async def load_history(self, page: int = 0, page_size: int = 20) -> List[CallRecord]:
        if page < 0 or page_size < 1:
            raise ValueError("page must be >= 0 and page_size >= 1")
        return await asyncio.to_thread(self._store.list, page_size, page * page_size)

    async def load_record(self, call_id: str) -> StructuredCallData:
        return await asyncio.to_thread(self._store.load, call_id)

    async def delete_record(self, call_id: str) -> None:
        if self._session is not None and self._session.id == call_id:
            raise CallScribeError(f"call {call_id} is still in progress")
        await asyncio.to_thread(self._store.delete, call_id)
        if self._sync_worker is not None:
            self._sync_worker.wake()
