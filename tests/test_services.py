import os
import tempfile

import pytest

from callscribe.config import CloudConfig, Config, SummarizationConfig, SyncConfig
from callscribe.errors import InvalidConfiguration
from callscribe.events import EventBus
from callscribe.memory import MemoryGuard
from callscribe.models import RecognitionMethod, SummarizationMode
from callscribe.services import build_services
from callscribe.telephony import CALL_STARTED, ManualCallSignalSource


@pytest.fixture(autouse=True)
def no_api_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)


def test_ai_only_without_key_is_rejected():
    config = Config(summarization=SummarizationConfig(mode=SummarizationMode.AI_ONLY))
    with pytest.raises(InvalidConfiguration):
        build_services(config)


def test_without_key_only_on_device_recognition():
    with tempfile.TemporaryDirectory() as tmp:
        services = build_services(Config(base_dir=tmp))
        assert not services.cloud.configured
        assert services.recognizer.current_method is RecognitionMethod.ON_DEVICE
        assert services.sync_worker is None
        assert os.path.isdir(os.path.join(tmp, "Calls"))


def test_with_key_and_blob_dir_everything_is_wired():
    with tempfile.TemporaryDirectory() as tmp:
        config = Config(
            base_dir=os.path.join(tmp, "local"),
            cloud=CloudConfig(api_key="sk-test"),
            sync=SyncConfig(blob_dir=os.path.join(tmp, "remote")),
        )
        telephony = ManualCallSignalSource()
        services = build_services(config, telephony=telephony)
        assert services.cloud.configured
        assert services.sync_worker is not None
        assert services.telephony is telephony


def test_memory_guard_cleanup_runs_hooks():
    calls = []
    guard = MemoryGuard(probe=lambda: 200.0, ceiling_mb=150.0, cleanup_hooks=[lambda: calls.append(1)])

    def broken():
        raise RuntimeError("hook failed")

    guard.add_cleanup_hook(broken)
    over, usage = guard.over_ceiling()
    assert over and usage == 200.0
    guard.cleanup()
    assert calls == [1]


def test_event_bus_isolates_failing_handlers():
    bus = EventBus()
    seen = []

    def broken(_event):
        raise RuntimeError("handler failed")

    bus.subscribe(broken)
    unsubscribe = bus.subscribe(seen.append)
    bus.publish("first")
    unsubscribe()
    bus.publish("second")
    assert seen == ["first"]


def test_manual_signal_source_delivers_signals():
    source = ManualCallSignalSource()
    received = []
    unsubscribe = source.subscribe(received.append)
    source.call_started("555-0100", call_id="abc")
    unsubscribe()
    source.call_ended()
    assert len(received) == 1
    assert received[0].kind == CALL_STARTED
    assert received[0].call_id == "abc"
    assert source.subscriber_count == 0
