"""Configuration handling."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from typing import Optional

import yaml

from .errors import InvalidConfiguration
from .models import RecognitionMethod, SummarizationMode


@dataclass
class AudioConfig:
    sample_rate_hz: int = 16000
    channels: int = 1
    blocksize: int = 1024
    device_name: Optional[str] = None
    frame_queue_size: int = 256


@dataclass
class RecognitionConfig:
    language: str = "en-US"
    preferred_method: RecognitionMethod = RecognitionMethod.ON_DEVICE
    whisper_model: str = "small"
    whisper_device: Optional[str] = None
    compute_type: Optional[str] = "int8"
    chunk_seconds: float = 4.0
    attempt_timeout_s: float = 20.0
    final_timeout_s: float = 30.0
    fallback_confidence_threshold: float = 0.35
    cloud_model: str = "whisper-1"


@dataclass
class SummarizationConfig:
    mode: SummarizationMode = SummarizationMode.RULE_BASED_PRIMARY
    quality_threshold: float = 0.7
    max_length: int = 500
    include_keywords: bool = True
    include_action_items: bool = True
    ai_timeout_s: float = 30.0
    key_point_count: int = 3
    ai_model: str = "gpt-4o-mini"


@dataclass
class CloudConfig:
    api_key: Optional[str] = None
    base_url: Optional[str] = None


@dataclass
class SyncConfig:
    enabled: bool = True
    blob_dir: Optional[str] = None
    interval_s: float = 60.0
    upload_timeout_s: float = 30.0


@dataclass
class Config:
    base_dir: str = ""
    debug_logging: bool = False
    auto_capture: bool = True
    tick_interval_s: float = 0.5
    storage_timeout_s: float = 10.0
    audio: AudioConfig = field(default_factory=AudioConfig)
    recognition: RecognitionConfig = field(default_factory=RecognitionConfig)
    summarization: SummarizationConfig = field(default_factory=SummarizationConfig)
    cloud: CloudConfig = field(default_factory=CloudConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)


def _section(cls, data):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise InvalidConfiguration(f"{cls.__name__} must be a mapping")
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise InvalidConfiguration(
            f"unknown {cls.__name__} keys: {', '.join(sorted(unknown))}"
        )
    return cls(**data)


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    recognition_data = dict(data.get("recognition") or {})
    summarization_data = dict(data.get("summarization") or {})
    try:
        if "preferred_method" in recognition_data:
            recognition_data["preferred_method"] = RecognitionMethod(
                recognition_data["preferred_method"]
            )
        if "mode" in summarization_data:
            summarization_data["mode"] = SummarizationMode(summarization_data["mode"])
    except ValueError as exc:
        raise InvalidConfiguration(str(exc)) from exc

    config = Config(
        base_dir=data.get("base_dir", ""),
        debug_logging=bool(data.get("debug_logging", False)),
        auto_capture=bool(data.get("auto_capture", True)),
        tick_interval_s=float(data.get("tick_interval_s", 0.5)),
        storage_timeout_s=float(data.get("storage_timeout_s", 10.0)),
        audio=_section(AudioConfig, data.get("audio")),
        recognition=_section(RecognitionConfig, recognition_data),
        summarization=_section(SummarizationConfig, summarization_data),
        cloud=_section(CloudConfig, data.get("cloud")),
        sync=_section(SyncConfig, data.get("sync")),
    )
    validate_config(config)
    return config


def save_config(path: str, config: Config) -> None:
    recognition = asdict(config.recognition)
    recognition["preferred_method"] = config.recognition.preferred_method.value
    summarization = asdict(config.summarization)
    summarization["mode"] = config.summarization.mode.value
    data = {
        "base_dir": config.base_dir,
        "debug_logging": config.debug_logging,
        "auto_capture": config.auto_capture,
        "tick_interval_s": config.tick_interval_s,
        "storage_timeout_s": config.storage_timeout_s,
        "audio": asdict(config.audio),
        "recognition": recognition,
        "summarization": summarization,
        "cloud": asdict(config.cloud),
        "sync": asdict(config.sync),
    }
    with open(path, "w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False)


def validate_config(config: Config) -> None:
    audio = config.audio
    if audio.sample_rate_hz <= 0 or audio.channels <= 0 or audio.blocksize <= 0:
        raise InvalidConfiguration("audio sample rate, channels and blocksize must be > 0")
    if audio.frame_queue_size <= 0:
        raise InvalidConfiguration("audio.frame_queue_size must be > 0")

    rec = config.recognition
    if rec.chunk_seconds <= 0:
        raise InvalidConfiguration("recognition.chunk_seconds must be > 0")
    if rec.attempt_timeout_s <= 0 or rec.final_timeout_s <= 0:
        raise InvalidConfiguration("recognition timeouts must be > 0")
    if not 0.0 <= rec.fallback_confidence_threshold <= 1.0:
        raise InvalidConfiguration(
            "recognition.fallback_confidence_threshold must be within [0, 1]"
        )
    if not rec.language:
        raise InvalidConfiguration("recognition.language is required")

    summ = config.summarization
    if not isinstance(summ.mode, SummarizationMode):
        raise InvalidConfiguration(f"unknown summarization mode: {summ.mode!r}")
    if not 0.0 <= summ.quality_threshold <= 1.0:
        raise InvalidConfiguration("summarization.quality_threshold must be within [0, 1]")
    if summ.max_length < 1:
        raise InvalidConfiguration("summarization.max_length must be >= 1")
    if summ.key_point_count < 1:
        raise InvalidConfiguration("summarization.key_point_count must be >= 1")
    if summ.ai_timeout_s <= 0:
        raise InvalidConfiguration("summarization.ai_timeout_s must be > 0")

    if config.tick_interval_s <= 0 or config.storage_timeout_s <= 0:
        raise InvalidConfiguration("tick_interval_s and storage_timeout_s must be > 0")
    if config.sync.interval_s <= 0 or config.sync.upload_timeout_s <= 0:
        raise InvalidConfiguration("sync intervals must be > 0")


def resolve_api_key(config: Config) -> Optional[str]:
    return config.cloud.api_key or os.environ.get("OPENAI_API_KEY") or None
