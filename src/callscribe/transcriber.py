"""Speech recognition backends: Faster-Whisper on device, OpenAI in the cloud."""

from __future__ import annotations

import asyncio
import logging
import math
import threading
from dataclasses import dataclass, field
from typing import Any, List, Optional, Protocol

import numpy as np
from openai import APIConnectionError, OpenAIError

from .audio_utils import resample_linear, wav_bytes
from .errors import InvalidConfiguration, RecognitionError, RecognitionUnavailable
from .models import RecognitionMethod, Segment

logger = logging.getLogger("callscribe")

WHISPER_SAMPLE_RATE = 16000


@dataclass(frozen=True)
class BackendResult:
    """Output of one recognition attempt over one audio chunk.

    Segment times are relative to the start of the chunk. ``confidence`` is the
    backend's own completion confidence when it reports one.
    """

    text: str
    segments: List[Segment] = field(default_factory=list)
    confidence: Optional[float] = None
    language: Optional[str] = None


class RecognitionBackend(Protocol):
    method: RecognitionMethod

    async def transcribe(
        self, audio: np.ndarray, sample_rate_hz: int, language: Optional[str]
    ) -> BackendResult:
        ...


def language_code(tag: Optional[str]) -> Optional[str]:
    """Reduce a BCP-47 tag such as ``ja-JP`` to the ISO-639-1 code Whisper expects."""
    if not tag:
        return None
    return tag.replace("_", "-").split("-", 1)[0].lower() or None


def logprob_confidence(avg_logprob: Optional[float]) -> float:
    if avg_logprob is None:
        return 0.0
    return min(max(math.exp(float(avg_logprob)), 0.0), 1.0)


def _join_text(segments: List[Segment]) -> str:
    return " ".join(seg.text for seg in segments if seg.text).strip()


class WhisperRecognizer:
    """On-device recognizer backed by faster-whisper.

    The model is loaded on first use and shared by later calls. Inference runs
    in a worker thread so the event loop stays free for frame delivery.
    """

    method = RecognitionMethod.ON_DEVICE

    def __init__(
        self,
        model_name: str = "small",
        device: Optional[str] = None,
        compute_type: Optional[str] = None,
    ) -> None:
        self.model_name = model_name
        self.device = device
        self.compute_type = compute_type
        self._model = None
        self._lock = threading.Lock()

    def _load_model(self):
        if self._model is not None:
            return self._model
        with self._lock:
            if self._model is not None:
                return self._model
            try:
                from faster_whisper import WhisperModel
            except Exception as exc:  # pragma: no cover - optional dependency
                raise RecognitionUnavailable(
                    "faster-whisper is required for on-device transcription."
                ) from exc

            kwargs = {}
            if self.device:
                kwargs["device"] = self.device
            if self.compute_type:
                kwargs["compute_type"] = self.compute_type
            logger.info("Loading Whisper model %s", self.model_name)
            try:
                self._model = WhisperModel(self.model_name, **kwargs)
            except Exception as exc:
                raise RecognitionUnavailable(
                    f"could not load Whisper model {self.model_name}: {exc}"
                ) from exc
            return self._model

    def _transcribe_sync(self, audio: np.ndarray, language: Optional[str]) -> BackendResult:
        model = self._load_model()
        try:
            segments, info = model.transcribe(audio, language=language, beam_size=1)
            output: List[Segment] = []
            for seg in segments:
                text = seg.text.strip()
                if not text:
                    continue
                output.append(
                    Segment(
                        start=seg.start,
                        end=seg.end,
                        text=text,
                        confidence=logprob_confidence(seg.avg_logprob),
                    )
                )
        except Exception as exc:
            raise RecognitionError(f"on-device transcription failed: {exc}") from exc
        return BackendResult(
            text=_join_text(output),
            segments=output,
            language=getattr(info, "language", None),
        )

    async def transcribe(
        self, audio: np.ndarray, sample_rate_hz: int, language: Optional[str]
    ) -> BackendResult:
        if audio.size == 0:
            return BackendResult(text="")
        audio = resample_linear(audio, sample_rate_hz, WHISPER_SAMPLE_RATE)
        return await asyncio.to_thread(self._transcribe_sync, audio, language_code(language))


class OpenAICloudRecognizer:
    """Cloud recognizer using the OpenAI audio transcription endpoint."""

    method = RecognitionMethod.CLOUD

    def __init__(self, client_provider, model: str = "whisper-1") -> None:
        self._client_provider = client_provider
        self.model = model

    async def transcribe(
        self, audio: np.ndarray, sample_rate_hz: int, language: Optional[str]
    ) -> BackendResult:
        if audio.size == 0:
            return BackendResult(text="")
        try:
            client = self._client_provider()
        except InvalidConfiguration as exc:
            raise RecognitionUnavailable(f"cloud recognizer unavailable: {exc}") from exc

        kwargs: dict[str, Any] = {
            "model": self.model,
            "file": ("chunk.wav", wav_bytes(audio, sample_rate_hz), "audio/wav"),
            "response_format": "verbose_json",
        }
        code = language_code(language)
        if code:
            kwargs["language"] = code
        try:
            resp = await client.audio.transcriptions.create(**kwargs)
        except APIConnectionError as exc:
            raise RecognitionUnavailable(f"cloud recognizer unreachable: {exc}") from exc
        except OpenAIError as exc:
            raise RecognitionError(f"cloud transcription failed: {exc}") from exc

        segments: List[Segment] = []
        for seg in getattr(resp, "segments", None) or []:
            text = (getattr(seg, "text", "") or "").strip()
            if not text:
                continue
            segments.append(
                Segment(
                    start=float(seg.start),
                    end=float(seg.end),
                    text=text,
                    confidence=logprob_confidence(getattr(seg, "avg_logprob", None)),
                )
            )
        text = (getattr(resp, "text", "") or "").strip()
        return BackendResult(
            text=text or _join_text(segments),
            segments=segments,
            language=getattr(resp, "language", None),
        )
