"""Data models for CallScribe."""

from __future__ import annotations

import math
import platform
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

NO_SPEECH_SUMMARY = "no speech detected"
PROCESSING_FAILED_SUMMARY = "processing failed"
SUMMARY_PREVIEW_CHARS = 100


class RecognitionMethod(str, Enum):
    ON_DEVICE = "on_device"
    CLOUD = "cloud"


class CallDirection(str, Enum):
    INCOMING = "incoming"
    OUTGOING = "outgoing"


class AudioQuality(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"

    @classmethod
    def from_level(cls, level: float) -> "AudioQuality":
        if level >= 0.8:
            return cls.EXCELLENT
        if level >= 0.6:
            return cls.GOOD
        if level >= 0.3:
            return cls.FAIR
        return cls.POOR


class ConnectionType(str, Enum):
    WIFI = "wifi"
    CELLULAR = "cellular"
    WIRED = "wired"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class SummarizationMode(str, Enum):
    RULE_BASED_ONLY = "rule_based_only"
    AI_ONLY = "ai_only"
    RULE_BASED_PRIMARY = "rule_based_primary"
    AI_PRIMARY = "ai_primary"


class SummaryMethod(str, Enum):
    RULE_BASED = "rule_based"
    AI = "ai"
    FALLBACK = "fallback"


class SummaryStatus(str, Enum):
    OK = "ok"
    NO_SPEECH = "no_speech"
    FAILED = "failed"


class SyncOperation(str, Enum):
    UPLOAD = "upload"
    DELETE = "delete"


class ActionPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ActionCategory(str, Enum):
    GENERAL = "general"
    MEETING = "meeting"
    FOLLOW_UP = "follow_up"
    DOCUMENT = "document"
    PHONE = "phone"
    EMAIL = "email"
    APPOINTMENT = "appointment"
    TASK = "task"


def clamp_confidence(value: Optional[float]) -> float:
    if value is None:
        return 0.0
    value = float(value)
    if math.isnan(value):
        return 0.0
    return min(max(value, 0.0), 1.0)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt_from_str(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class Segment:
    start: float
    end: float
    text: str
    confidence: float = 0.0
    speaker: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "confidence", clamp_confidence(self.confidence))

    @property
    def duration(self) -> float:
        return max(self.end - self.start, 0.0)

    def shifted(self, offset: float) -> "Segment":
        return Segment(
            start=self.start + offset,
            end=self.end + offset,
            text=self.text,
            confidence=self.confidence,
            speaker=self.speaker,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "text": self.text,
            "confidence": self.confidence,
            "speaker": self.speaker,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Segment":
        return cls(
            start=float(data["start"]),
            end=float(data["end"]),
            text=data.get("text", ""),
            confidence=float(data.get("confidence", 0.0)),
            speaker=data.get("speaker"),
        )


@dataclass(frozen=True)
class RecognitionResult:
    text: str
    confidence: float
    method: RecognitionMethod
    language: str
    processing_time_s: float = 0.0
    segments: List[Segment] = field(default_factory=list)
    is_final: bool = True
    degraded: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "confidence", clamp_confidence(self.confidence))

    @classmethod
    def empty(cls, method: RecognitionMethod, language: str) -> "RecognitionResult":
        return cls(text="", confidence=0.0, method=method, language=language)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "confidence": self.confidence,
            "method": self.method.value,
            "language": self.language,
            "processing_time_s": self.processing_time_s,
            "segments": [seg.to_dict() for seg in self.segments],
            "is_final": self.is_final,
            "degraded": self.degraded,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecognitionResult":
        return cls(
            text=data.get("text", ""),
            confidence=float(data.get("confidence", 0.0)),
            method=RecognitionMethod(data["method"]),
            language=data.get("language", ""),
            processing_time_s=float(data.get("processing_time_s", 0.0)),
            segments=[Segment.from_dict(s) for s in data.get("segments", [])],
            is_final=bool(data.get("is_final", True)),
            degraded=bool(data.get("degraded", False)),
        )


@dataclass(frozen=True)
class ActionItem:
    text: str
    priority: ActionPriority = ActionPriority.MEDIUM
    category: ActionCategory = ActionCategory.GENERAL


@dataclass(frozen=True)
class CallSummary:
    key_points: List[str]
    summary: str
    action_items: List[str]
    participants: List[str]
    tags: List[str]
    confidence: float
    duration_s: float = 0.0
    method: SummaryMethod = SummaryMethod.RULE_BASED
    status: SummaryStatus = SummaryStatus.OK

    def __post_init__(self) -> None:
        if not self.summary or not self.summary.strip():
            raise ValueError("CallSummary.summary must not be empty")
        object.__setattr__(self, "confidence", clamp_confidence(self.confidence))

    @classmethod
    def no_speech(cls) -> "CallSummary":
        return cls(
            key_points=[],
            summary=NO_SPEECH_SUMMARY,
            action_items=[],
            participants=[],
            tags=[],
            confidence=0.0,
            status=SummaryStatus.NO_SPEECH,
        )

    @classmethod
    def failed(cls, reason: Optional[str] = None) -> "CallSummary":
        summary = PROCESSING_FAILED_SUMMARY
        if reason:
            summary = f"{PROCESSING_FAILED_SUMMARY}: {reason}"
        return cls(
            key_points=[],
            summary=summary,
            action_items=[],
            participants=[],
            tags=[],
            confidence=0.0,
            method=SummaryMethod.FALLBACK,
            status=SummaryStatus.FAILED,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key_points": list(self.key_points),
            "summary": self.summary,
            "action_items": list(self.action_items),
            "participants": list(self.participants),
            "tags": list(self.tags),
            "confidence": self.confidence,
            "duration_s": self.duration_s,
            "method": self.method.value,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CallSummary":
        return cls(
            key_points=list(data.get("key_points", [])),
            summary=data["summary"],
            action_items=list(data.get("action_items", [])),
            participants=list(data.get("participants", [])),
            tags=list(data.get("tags", [])),
            confidence=float(data.get("confidence", 0.0)),
            duration_s=float(data.get("duration_s", 0.0)),
            method=SummaryMethod(data.get("method", SummaryMethod.RULE_BASED.value)),
            status=SummaryStatus(data.get("status", SummaryStatus.OK.value)),
        )


@dataclass(frozen=True)
class DeviceInfo:
    device_model: str
    system_version: str
    app_version: str
    available_memory_mb: Optional[float] = None

    @classmethod
    def current(cls, available_memory_mb: Optional[float] = None) -> "DeviceInfo":
        from importlib import metadata

        try:
            app_version = metadata.version("callscribe")
        except metadata.PackageNotFoundError:
            app_version = "unknown"
        return cls(
            device_model=platform.machine() or "unknown",
            system_version=platform.platform(),
            app_version=app_version,
            available_memory_mb=available_memory_mb,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "device_model": self.device_model,
            "system_version": self.system_version,
            "app_version": self.app_version,
            "available_memory_mb": self.available_memory_mb,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceInfo":
        return cls(
            device_model=data.get("device_model", "unknown"),
            system_version=data.get("system_version", "unknown"),
            app_version=data.get("app_version", "unknown"),
            available_memory_mb=data.get("available_memory_mb"),
        )


@dataclass(frozen=True)
class NetworkInfo:
    connection_type: ConnectionType = ConnectionType.UNKNOWN
    signal_strength: Optional[float] = None
    bandwidth_mbps: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "connection_type": self.connection_type.value,
            "signal_strength": self.signal_strength,
            "bandwidth_mbps": self.bandwidth_mbps,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NetworkInfo":
        return cls(
            connection_type=ConnectionType(
                data.get("connection_type", ConnectionType.UNKNOWN.value)
            ),
            signal_strength=data.get("signal_strength"),
            bandwidth_mbps=data.get("bandwidth_mbps"),
        )


@dataclass(frozen=True)
class CallMetadata:
    direction: CallDirection
    audio_quality: AudioQuality
    recognition_method: RecognitionMethod
    language: str
    confidence: float
    start_time: datetime
    end_time: datetime
    device_info: DeviceInfo
    network_info: NetworkInfo = field(default_factory=NetworkInfo)
    recognition_degraded: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "confidence", clamp_confidence(self.confidence))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "audio_quality": self.audio_quality.value,
            "recognition_method": self.recognition_method.value,
            "language": self.language,
            "confidence": self.confidence,
            "start_time": _dt_to_str(self.start_time),
            "end_time": _dt_to_str(self.end_time),
            "device_info": self.device_info.to_dict(),
            "network_info": self.network_info.to_dict(),
            "recognition_degraded": self.recognition_degraded,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CallMetadata":
        return cls(
            direction=CallDirection(data["direction"]),
            audio_quality=AudioQuality(data["audio_quality"]),
            recognition_method=RecognitionMethod(data["recognition_method"]),
            language=data.get("language", ""),
            confidence=float(data.get("confidence", 0.0)),
            start_time=_dt_from_str(data["start_time"]),
            end_time=_dt_from_str(data["end_time"]),
            device_info=DeviceInfo.from_dict(data.get("device_info", {})),
            network_info=NetworkInfo.from_dict(data.get("network_info", {})),
            recognition_degraded=bool(data.get("recognition_degraded", False)),
        )


@dataclass(frozen=True)
class StructuredCallData:
    """The durable record of one completed call.

    Built complete in memory by the lifecycle orchestrator and handed to the
    store in one piece. Sharing flags are the only fields expected to change
    afterwards, via ``dataclasses.replace``.
    """

    id: str
    timestamp: datetime
    duration_s: float
    counterpart: str
    audio_ref: Optional[str]
    transcription_text: str
    summary: CallSummary
    metadata: CallMetadata
    segments: List[Segment] = field(default_factory=list)
    is_shared: bool = False
    shared_with: List[str] = field(default_factory=list)

    @property
    def formatted_duration(self) -> str:
        total = int(round(self.duration_s))
        return f"{total // 60}:{total % 60:02d}"

    @property
    def masked_counterpart(self) -> str:
        return mask_phone_number(self.counterpart)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": _dt_to_str(self.timestamp),
            "duration_s": self.duration_s,
            "counterpart": self.counterpart,
            "audio_ref": self.audio_ref,
            "transcription_text": self.transcription_text,
            "summary": self.summary.to_dict(),
            "metadata": self.metadata.to_dict(),
            "segments": [seg.to_dict() for seg in self.segments],
            "is_shared": self.is_shared,
            "shared_with": list(self.shared_with),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StructuredCallData":
        return cls(
            id=data["id"],
            timestamp=_dt_from_str(data["timestamp"]),
            duration_s=float(data.get("duration_s", 0.0)),
            counterpart=data.get("counterpart", "Unknown"),
            audio_ref=data.get("audio_ref"),
            transcription_text=data.get("transcription_text", ""),
            summary=CallSummary.from_dict(data["summary"]),
            metadata=CallMetadata.from_dict(data["metadata"]),
            segments=[Segment.from_dict(s) for s in data.get("segments", [])],
            is_shared=bool(data.get("is_shared", False)),
            shared_with=list(data.get("shared_with", [])),
        )

    def to_record(self, synced: bool = False) -> "CallRecord":
        preview = self.summary.summary
        if len(preview) > SUMMARY_PREVIEW_CHARS:
            preview = preview[:SUMMARY_PREVIEW_CHARS] + "..."
        return CallRecord(
            id=self.id,
            timestamp=self.timestamp,
            duration_s=self.duration_s,
            counterpart=self.counterpart,
            summary_preview=preview,
            audio_quality=self.metadata.audio_quality,
            recognition_method=self.metadata.recognition_method,
            summary_status=self.summary.status,
            is_shared=self.is_shared,
            has_audio=bool(self.audio_ref),
            tags=list(self.summary.tags),
            synced=synced,
        )


@dataclass(frozen=True)
class CallRecord:
    id: str
    timestamp: datetime
    duration_s: float
    counterpart: str
    summary_preview: str
    audio_quality: AudioQuality
    recognition_method: RecognitionMethod
    summary_status: SummaryStatus
    is_shared: bool
    has_audio: bool
    tags: List[str]
    synced: bool


@dataclass
class SyncQueueEntry:
    call_id: str
    operation: SyncOperation = SyncOperation.UPLOAD
    retry_count: int = 0
    last_attempt: Optional[datetime] = None
    last_error: Optional[str] = None
    enqueued_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_id": self.call_id,
            "operation": self.operation.value,
            "retry_count": self.retry_count,
            "last_attempt": _dt_to_str(self.last_attempt),
            "last_error": self.last_error,
            "enqueued_at": _dt_to_str(self.enqueued_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncQueueEntry":
        return cls(
            call_id=data["call_id"],
            operation=SyncOperation(data.get("operation", SyncOperation.UPLOAD.value)),
            retry_count=int(data.get("retry_count", 0)),
            last_attempt=_dt_from_str(data.get("last_attempt")),
            last_error=data.get("last_error"),
            enqueued_at=_dt_from_str(data.get("enqueued_at")) or utc_now(),
        )


@dataclass(frozen=True)
class StorageInfo:
    used_bytes: int
    available_bytes: int
    file_count: int
    pending_sync_count: int


@dataclass
class CallSession:
    """In-flight state of the call currently being captured."""

    id: str
    started_at: datetime
    counterpart: Optional[str] = None
    direction: CallDirection = CallDirection.OUTGOING
    method: RecognitionMethod = RecognitionMethod.ON_DEVICE
    partial_text: str = ""
    final_text: Optional[str] = None
    audio_path: Optional[str] = None
    audio_level: float = 0.0
    level_samples: int = 0
    level_total: float = 0.0

    def record_level(self, level: float) -> None:
        self.audio_level = level
        self.level_samples += 1
        self.level_total += level

    @property
    def mean_level(self) -> float:
        if not self.level_samples:
            return 0.0
        return self.level_total / self.level_samples


_PHONE_DIGITS = re.compile(r"\d")


def mask_phone_number(value: str) -> str:
    digits = "".join(_PHONE_DIGITS.findall(value or ""))
    if len(digits) < 7:
        return value
    return f"{digits[:3]}****{digits[-4:]}"
