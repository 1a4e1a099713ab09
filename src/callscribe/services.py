"""Construction of the call pipeline from a Config."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .cloud import CloudClient, OpenAISummarizer
from .config import Config, resolve_api_key, validate_config
from .errors import InvalidConfiguration
from .events import EventBus
from .lifecycle import CallLifecycleOrchestrator
from .memory import MemoryGuard
from .models import RecognitionMethod, SummarizationMode
from .recognition import SpeechRecognitionOrchestrator
from .recorder import AudioCaptureEngine
from .storage import PersistenceStore
from .summarizer import SummarizationEngine
from .sync import BlobStore, DirectoryBlobStore, SyncWorker
from .telephony import CallSignalSource, ManualCallSignalSource
from .transcriber import OpenAICloudRecognizer, WhisperRecognizer

logger = logging.getLogger("callscribe")


@dataclass
class Services:
    config: Config
    events: EventBus
    store: PersistenceStore
    capture: AudioCaptureEngine
    recognizer: SpeechRecognitionOrchestrator
    summarizer: SummarizationEngine
    memory_guard: MemoryGuard
    cloud: CloudClient
    telephony: CallSignalSource
    blob_store: Optional[BlobStore]
    sync_worker: Optional[SyncWorker]
    orchestrator: CallLifecycleOrchestrator


def build_services(
    config: Config,
    stream_factory: Optional[Callable[..., Any]] = None,
    telephony: Optional[CallSignalSource] = None,
    blob_store: Optional[BlobStore] = None,
) -> Services:
    validate_config(config)
    api_key = resolve_api_key(config)
    if config.summarization.mode is SummarizationMode.AI_ONLY and not api_key:
        raise InvalidConfiguration(
            "summarization mode ai_only requires cloud.api_key or OPENAI_API_KEY"
        )

    base_dir = config.base_dir or os.getcwd()
    events = EventBus()
    store = PersistenceStore(base_dir)
    cloud = CloudClient(api_key, config.cloud.base_url)

    capture = AudioCaptureEngine(
        sample_rate_hz=config.audio.sample_rate_hz,
        channels=config.audio.channels,
        blocksize=config.audio.blocksize,
        device_name=config.audio.device_name,
        stream_factory=stream_factory,
    )

    backends = {
        RecognitionMethod.ON_DEVICE: WhisperRecognizer(
            config.recognition.whisper_model,
            device=config.recognition.whisper_device,
            compute_type=config.recognition.compute_type,
        )
    }
    if cloud.configured:
        backends[RecognitionMethod.CLOUD] = OpenAICloudRecognizer(
            cloud, model=config.recognition.cloud_model
        )
    else:
        logger.info("No cloud credentials, recognition fallback disabled")
    recognizer = SpeechRecognitionOrchestrator(backends, config.recognition, events)

    memory_guard = MemoryGuard(cleanup_hooks=[store.clear_cache])
    ai_client = OpenAISummarizer(cloud, config.summarization.ai_model) if cloud.configured else None
    summarizer = SummarizationEngine(ai_client, memory_guard, config.summarization)

    if blob_store is None and config.sync.enabled and config.sync.blob_dir:
        blob_store = DirectoryBlobStore(config.sync.blob_dir)
    sync_worker = None
    if blob_store is not None and config.sync.enabled:
        sync_worker = SyncWorker(
            store,
            blob_store,
            interval_s=config.sync.interval_s,
            upload_timeout_s=config.sync.upload_timeout_s,
        )

    telephony = telephony or ManualCallSignalSource()
    orchestrator = CallLifecycleOrchestrator(
        capture=capture,
        recognizer=recognizer,
        summarizer=summarizer,
        store=store,
        config=config,
        events=events,
        telephony=telephony,
        sync_worker=sync_worker,
    )
    return Services(
        config=config,
        events=events,
        store=store,
        capture=capture,
        recognizer=recognizer,
        summarizer=summarizer,
        memory_guard=memory_guard,
        cloud=cloud,
        telephony=telephony,
        blob_store=blob_store,
        sync_worker=sync_worker,
        orchestrator=orchestrator,
    )
