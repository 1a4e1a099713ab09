"""Audio capture engine."""

from __future__ import annotations

import logging
import queue
import threading
import wave
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

import numpy as np

from .audio_utils import LevelMeter
from .errors import DeviceError, PermissionDenied
from .models import AudioQuality

logger = logging.getLogger("callscribe")


@dataclass
class RecordingResult:
    audio_path: Optional[str]
    duration_seconds: float
    frames: int


class CaptureState(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    RECORDING = "recording"
    PAUSED = "paused"
    ERROR = "error"


def list_input_devices() -> List[Dict[str, Any]]:
    try:
        import sounddevice as sd
    except Exception as exc:  # pragma: no cover - environment-dependent
        raise DeviceError("sounddevice is required for device detection.") from exc

    devices = sd.query_devices()
    return [dict(d) for d in devices if d.get("max_input_channels", 0) > 0]


HEADSET_NAME_MARKERS = (
    "headset",
    "handset",
    "hands-free",
    "handsfree",
    "bluetooth",
    "airpods",
)


def select_preferred_device(
    candidates: List[Dict[str, Any]],
    prefer_name: Optional[str] = None,
) -> Dict[str, Any]:
    if not candidates:
        raise DeviceError("No input devices found.")
    if prefer_name:
        preferred = [
            d for d in candidates if prefer_name.lower() in d.get("name", "").lower()
        ]
        if preferred:
            return preferred[0]

    headset_name = find_headset_name_from_candidates(candidates)
    if headset_name:
        return next(d for d in candidates if d.get("name") == headset_name)

    return candidates[0]


def find_headset_name_from_candidates(
    candidates: List[Dict[str, Any]],
) -> Optional[str]:
    for device in candidates:
        name = device.get("name", "").lower()
        if any(marker in name for marker in HEADSET_NAME_MARKERS):
            return device.get("name")
    return None


def find_device_info_by_name(name: Optional[str]) -> Optional[Dict[str, Any]]:
    if not name:
        return None
    candidates = list_input_devices()
    name_lower = name.lower()
    for device in candidates:
        if name_lower in device.get("name", "").lower():
            return device
    return None


def _default_stream_factory(**kwargs):
    try:
        import sounddevice as sd
    except Exception as exc:  # pragma: no cover - environment-dependent
        raise DeviceError("sounddevice is required for recording.") from exc
    return sd.InputStream(**kwargs)


_PERMISSION_MARKERS = ("permission", "not authorized", "unauthorized", "access denied")


def _is_permission_error(exc: BaseException) -> bool:
    if isinstance(exc, PermissionError):
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _PERMISSION_MARKERS)


class _WavWriter:
    """Writes int16 frames to disk on its own thread."""

    def __init__(self, path: str, sample_rate_hz: int, channels: int) -> None:
        self.path = path
        self._handle = wave.open(path, "wb")
        self._handle.setnchannels(channels)
        self._handle.setsampwidth(2)
        self._handle.setframerate(sample_rate_hz)
        self._queue: "queue.Queue[Optional[bytes]]" = queue.Queue()
        self._thread = threading.Thread(target=self._run, name="callscribe-wav", daemon=True)
        self._thread.start()

    def write(self, data: bytes) -> None:
        self._queue.put(data)

    def _run(self) -> None:
        while True:
            data = self._queue.get()
            if data is None:
                break
            try:
                self._handle.writeframes(data)
            except Exception:
                logger.exception("WAV write failed for %s", self.path)

    def close(self) -> None:
        self._queue.put(None)
        self._thread.join()
        self._handle.close()


class AudioCaptureEngine:
    """Owns the input stream for one capture at a time.

    Frames are delivered from the audio callback to the registered consumer,
    which must not block. Disk writes happen on a separate writer thread.
    ``stop_capture`` is idempotent and always releases the stream.
    """

    def __init__(
        self,
        sample_rate_hz: int = 16000,
        channels: int = 1,
        blocksize: int = 1024,
        device_name: Optional[str] = None,
        stream_factory: Optional[Callable[..., Any]] = None,
        permission_check: Optional[Callable[[], bool]] = None,
    ) -> None:
        self.sample_rate_hz = sample_rate_hz
        self.channels = channels
        self.blocksize = blocksize
        self.device_name = device_name
        self._stream_factory = stream_factory or _default_stream_factory
        self._permission_check = permission_check
        self._lock = threading.RLock()
        self._state = CaptureState.IDLE
        self._stream = None
        self._writer: Optional[_WavWriter] = None
        self._meter = LevelMeter()
        self._frames = 0
        self._stopping = False
        self._frame_consumer: Optional[Callable[[np.ndarray], None]] = None
        self._level_listener: Optional[Callable[[float], None]] = None
        self._error_listener: Optional[Callable[[BaseException], None]] = None
        self.last_error: Optional[BaseException] = None
        self.release_count = 0

    @property
    def state(self) -> CaptureState:
        return self._state

    @property
    def audio_level(self) -> float:
        return self._meter.level

    @property
    def mean_level(self) -> float:
        return self._meter.mean

    @property
    def elapsed_seconds(self) -> float:
        return self._frames / float(self.sample_rate_hz)

    def audio_quality(self) -> AudioQuality:
        return AudioQuality.from_level(self._meter.mean)

    def set_frame_consumer(self, consumer: Optional[Callable[[np.ndarray], None]]) -> None:
        self._frame_consumer = consumer

    def set_level_listener(self, listener: Optional[Callable[[float], None]]) -> None:
        self._level_listener = listener

    def set_error_listener(self, listener: Optional[Callable[[BaseException], None]]) -> None:
        self._error_listener = listener

    def _set_state(self, state: CaptureState) -> None:
        if state is not self._state:
            logger.debug("Capture state %s -> %s", self._state.value, state.value)
            self._state = state

    def _resolve_device(self) -> Optional[int]:
        if not self.device_name:
            return None
        info = find_device_info_by_name(self.device_name)
        if info is None:
            raise DeviceError(f"Input device not found: {self.device_name}")
        return info.get("index")

    def start_capture(self, output_path: Optional[str] = None) -> None:
        with self._lock:
            if self._state in (
                CaptureState.PREPARING,
                CaptureState.RECORDING,
                CaptureState.PAUSED,
            ):
                raise DeviceError("Audio capture is already running.")
            self._set_state(CaptureState.PREPARING)
            self._meter.reset()
            self._frames = 0
            self._stopping = False
            self.last_error = None
            stream = None
            try:
                if self._permission_check is not None and not self._permission_check():
                    raise PermissionDenied("Microphone access was refused.")
                device_index = self._resolve_device()
                stream = self._stream_factory(
                    samplerate=self.sample_rate_hz,
                    channels=self.channels,
                    dtype="int16",
                    blocksize=self.blocksize,
                    device=device_index,
                    callback=self._callback,
                    finished_callback=self._on_stream_finished,
                )
                if output_path:
                    self._writer = _WavWriter(output_path, self.sample_rate_hz, self.channels)
                self._stream = stream
                stream.start()
            except (PermissionDenied, DeviceError) as exc:
                self._abort_start(stream, exc)
                raise
            except Exception as exc:
                error: Exception
                if _is_permission_error(exc):
                    error = PermissionDenied(f"Microphone access was refused: {exc}")
                else:
                    error = DeviceError(f"Could not open input stream: {exc}")
                self._abort_start(stream, error)
                raise error from exc
            self._set_state(CaptureState.RECORDING)
            logger.info(
                "Capture started (%s Hz, %s ch, output=%s)",
                self.sample_rate_hz,
                self.channels,
                output_path or "-",
            )

    def _abort_start(self, stream, error: BaseException) -> None:
        logger.error("Capture failed to start: %s", error)
        self._stream = None
        if stream is not None:
            try:
                stream.close()
            except Exception:
                logger.warning("Closing failed stream raised", exc_info=True)
        if self._writer is not None:
            self._writer.close()
            self._writer = None
        self.last_error = error
        self._set_state(CaptureState.ERROR)

    def _callback(self, indata, frames, _time, status) -> None:
        if status:
            logger.debug("Input stream status: %s", status)
        if self._state is not CaptureState.RECORDING:
            return
        block = indata.copy()
        level = self._meter.update(block)
        self._frames += frames
        writer = self._writer
        if writer is not None:
            writer.write(block.astype(np.int16, copy=False).tobytes())
        consumer = self._frame_consumer
        if consumer is not None:
            try:
                consumer(block)
            except Exception:
                logger.exception("Frame consumer failed")
        listener = self._level_listener
        if listener is not None:
            try:
                listener(level)
            except Exception:
                logger.exception("Level listener failed")

    def _on_stream_finished(self) -> None:
        with self._lock:
            if self._stopping or self._stream is None:
                return
            error = DeviceError("Input stream stopped unexpectedly.")
            self.last_error = error
            self._set_state(CaptureState.ERROR)
        logger.error("%s", error)
        if self._error_listener is not None:
            self._error_listener(error)

    def pause(self) -> None:
        with self._lock:
            if self._state is CaptureState.RECORDING:
                self._set_state(CaptureState.PAUSED)

    def resume(self) -> None:
        with self._lock:
            if self._state is CaptureState.PAUSED:
                self._set_state(CaptureState.RECORDING)

    def stop_capture(self) -> Optional[RecordingResult]:
        with self._lock:
            stream = self._stream
            if stream is None:
                if self._state is not CaptureState.ERROR:
                    self._set_state(CaptureState.IDLE)
                return None
            self._stopping = True
            self._stream = None
            try:
                stream.stop()
            except Exception:
                logger.warning("Stopping input stream raised", exc_info=True)
            try:
                stream.close()
            except Exception:
                logger.warning("Closing input stream raised", exc_info=True)
            self.release_count += 1

            audio_path = None
            if self._writer is not None:
                audio_path = self._writer.path
                self._writer.close()
                self._writer = None
            if self._state is not CaptureState.ERROR:
                self._set_state(CaptureState.IDLE)
            result = RecordingResult(
                audio_path=audio_path,
                duration_seconds=self.elapsed_seconds,
                frames=self._frames,
            )
        logger.info("Capture stopped after %.1fs", result.duration_seconds)
        return result

    def reset(self) -> None:
        """Return to idle after an error, releasing anything still held."""
        self.stop_capture()
        with self._lock:
            self._set_state(CaptureState.IDLE)

    @contextmanager
    def capture(self, output_path: Optional[str] = None) -> Iterator["AudioCaptureEngine"]:
        self.start_capture(output_path)
        try:
            yield self
        finally:
            self.stop_capture()
