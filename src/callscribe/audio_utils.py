"""Audio helpers."""

from __future__ import annotations

import io
import math
import wave
from collections import deque
from typing import Deque, Tuple

import numpy as np

SILENCE_FLOOR_DB = -60.0
LEVEL_WINDOW = 10


def to_mono_float32(frame: np.ndarray) -> np.ndarray:
    """Convert an int16 or float block of shape (n,) or (n, channels) to mono float32."""
    data = np.asarray(frame)
    if data.dtype == np.int16:
        data = data.astype(np.float32) / 32768.0
    else:
        data = data.astype(np.float32, copy=False)
    if data.ndim > 1:
        data = data.mean(axis=1)
    return data


def rms_level(frame: np.ndarray) -> float:
    samples = to_mono_float32(frame)
    if samples.size == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(np.square(samples))))
    if rms <= 0.0:
        return 0.0
    db = 20.0 * math.log10(rms)
    return min(max((db - SILENCE_FLOOR_DB) / -SILENCE_FLOOR_DB, 0.0), 1.0)


class LevelMeter:
    """Smoothed input level over the last few buffers."""

    def __init__(self, window: int = LEVEL_WINDOW) -> None:
        self._values: Deque[float] = deque(maxlen=window)
        self._total = 0.0
        self._count = 0

    def update(self, frame: np.ndarray) -> float:
        value = rms_level(frame)
        self._values.append(value)
        self._total += value
        self._count += 1
        return self.level

    @property
    def level(self) -> float:
        if not self._values:
            return 0.0
        return sum(self._values) / len(self._values)

    @property
    def mean(self) -> float:
        return self._total / self._count if self._count else 0.0

    def reset(self) -> None:
        self._values.clear()
        self._total = 0.0
        self._count = 0


def float32_to_pcm16(samples: np.ndarray) -> np.ndarray:
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return (clipped * 32767.0).astype(np.int16)


def wav_bytes(samples: np.ndarray, sample_rate_hz: int) -> bytes:
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as handle:
        handle.setnchannels(1)
        handle.setsampwidth(2)
        handle.setframerate(sample_rate_hz)
        handle.writeframes(float32_to_pcm16(samples).tobytes())
    return buffer.getvalue()


def read_wav_mono(path: str) -> Tuple[np.ndarray, int]:
    with wave.open(path, "rb") as handle:
        channels = handle.getnchannels()
        sampwidth = handle.getsampwidth()
        framerate = handle.getframerate()
        frames = handle.getnframes()

        if sampwidth != 2:
            raise ValueError("Only 16-bit PCM is supported.")

        raw = handle.readframes(frames)

    data = np.frombuffer(raw, dtype=np.int16)
    if channels > 1:
        data = data.reshape(-1, channels)
    return to_mono_float32(data), framerate


def resample_linear(samples: np.ndarray, source_hz: int, target_hz: int) -> np.ndarray:
    if source_hz == target_hz or samples.size == 0:
        return samples.astype(np.float32, copy=False)
    duration = samples.size / float(source_hz)
    target_count = max(int(round(duration * target_hz)), 1)
    source_times = np.arange(samples.size, dtype=np.float64) / source_hz
    target_times = np.arange(target_count, dtype=np.float64) / target_hz
    return np.interp(target_times, source_times, samples).astype(np.float32)
