import asyncio

import numpy as np
import pytest

from callscribe.config import RecognitionConfig
from callscribe.errors import (
    RecognitionError,
    RecognitionSessionActive,
    RecognitionTimeout,
    RecognitionUnavailable,
)
from callscribe.events import EventBus, RecognitionErrorEvent, RecognitionMethodChanged
from callscribe.models import RecognitionMethod, Segment
from callscribe.recognition import (
    FrameStream,
    SpeechRecognitionOrchestrator,
    aggregate_confidence,
)
from callscribe.transcriber import BackendResult

RATE = 1000
CONFIG = RecognitionConfig(chunk_seconds=1.0, attempt_timeout_s=1.0, final_timeout_s=2.0)


class ScriptedBackend:
    """Returns or raises the scripted outcome for each call, repeating the last one."""

    def __init__(self, method, script):
        self.method = method
        self.script = list(script)
        self.calls = 0

    async def transcribe(self, audio, sample_rate_hz, language):
        step = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, float):
            await asyncio.sleep(step)
            return BackendResult(text="late")
        text, confidence = step
        seconds = audio.size / sample_rate_hz
        return BackendResult(
            text=text,
            segments=[Segment(0.0, seconds, text, confidence)] if text else [],
        )


async def _frames(seconds, block=500):
    total = int(seconds * RATE)
    for start in range(0, total, block):
        yield np.full((min(block, total - start), 1), 1000, dtype=np.int16)


async def _collect(orchestrator, frames):
    return [result async for result in orchestrator.recognize(frames, RATE)]


def _orchestrator(on_device, cloud, events=None):
    backends = {}
    if on_device is not None:
        backends[RecognitionMethod.ON_DEVICE] = on_device
    if cloud is not None:
        backends[RecognitionMethod.CLOUD] = cloud
    return SpeechRecognitionOrchestrator(backends, CONFIG, events)


def _record_events():
    bus = EventBus()
    seen = []
    bus.subscribe(seen.append)
    return bus, seen


def test_partials_then_single_final_in_order():
    on_device = ScriptedBackend(RecognitionMethod.ON_DEVICE, [("hello", 0.9)])
    orchestrator = _orchestrator(on_device, None)
    results = asyncio.run(_collect(orchestrator, _frames(3.5)))

    assert [r.is_final for r in results] == [False, False, False, True]
    texts = [r.text for r in results]
    for earlier, later in zip(texts, texts[1:]):
        assert later.startswith(earlier)
    assert results[-1].text == "hello hello hello hello"
    assert results[-1].method is RecognitionMethod.ON_DEVICE
    assert results[-1].confidence == pytest.approx(0.9)
    assert on_device.calls == 4


def test_empty_audio_gives_empty_final():
    orchestrator = _orchestrator(ScriptedBackend(RecognitionMethod.ON_DEVICE, [("x", 0.9)]), None)
    results = asyncio.run(_collect(orchestrator, _frames(0)))
    assert len(results) == 1
    assert results[0].text == ""
    assert results[0].confidence == 0.0
    assert results[0].is_final


def test_on_device_unavailable_mid_session_switches_to_cloud():
    on_device = ScriptedBackend(
        RecognitionMethod.ON_DEVICE,
        [("first part", 0.8), RecognitionUnavailable("model missing")],
    )
    cloud = ScriptedBackend(RecognitionMethod.CLOUD, [("cloud part", 0.9)])
    bus, seen = _record_events()
    orchestrator = _orchestrator(on_device, cloud, bus)

    results = asyncio.run(_collect(orchestrator, _frames(3.0)))
    final = results[-1]

    assert final.method is RecognitionMethod.CLOUD
    assert final.text == "first part cloud part cloud part"
    assert not final.degraded
    assert on_device.calls == 2
    switches = [e for e in seen if isinstance(e, RecognitionMethodChanged)]
    assert len(switches) == 1
    assert switches[0].current is RecognitionMethod.CLOUD
    assert not [e for e in seen if isinstance(e, RecognitionErrorEvent)]


def test_both_backends_failing_keeps_partial_text():
    on_device = ScriptedBackend(
        RecognitionMethod.ON_DEVICE, [("kept text", 0.7), RecognitionError("crash")]
    )
    cloud = ScriptedBackend(RecognitionMethod.CLOUD, [RecognitionError("503")])
    bus, seen = _record_events()
    orchestrator = _orchestrator(on_device, cloud, bus)

    final = asyncio.run(_collect(orchestrator, _frames(3.0)))[-1]

    assert final.text == "kept text"
    assert final.degraded
    assert final.method is RecognitionMethod.ON_DEVICE
    assert [e for e in seen if isinstance(e, RecognitionErrorEvent)]


def test_degraded_result_tagged_with_lowest_confidence_method():
    on_device = ScriptedBackend(
        RecognitionMethod.ON_DEVICE, [("device words", 0.9), RecognitionError("crash")]
    )
    cloud = ScriptedBackend(
        RecognitionMethod.CLOUD, [("cloud words", 0.4), RecognitionError("503")]
    )
    orchestrator = _orchestrator(on_device, cloud)

    final = asyncio.run(_collect(orchestrator, _frames(3.0)))[-1]

    assert final.degraded
    assert final.text == "device words cloud words"
    assert final.method is RecognitionMethod.CLOUD


def test_low_confidence_triggers_cloud():
    on_device = ScriptedBackend(RecognitionMethod.ON_DEVICE, [("mumble", 0.1)])
    cloud = ScriptedBackend(RecognitionMethod.CLOUD, [("clear words", 0.9)])
    orchestrator = _orchestrator(on_device, cloud)

    final = asyncio.run(_collect(orchestrator, _frames(2.0)))[-1]

    assert final.text == "clear words clear words"
    assert final.method is RecognitionMethod.CLOUD
    assert on_device.calls == 1


def test_low_confidence_kept_when_cloud_fails():
    on_device = ScriptedBackend(RecognitionMethod.ON_DEVICE, [("mumble", 0.1)])
    cloud = ScriptedBackend(RecognitionMethod.CLOUD, [RecognitionUnavailable("offline")])
    orchestrator = _orchestrator(on_device, cloud)

    final = asyncio.run(_collect(orchestrator, _frames(1.0)))[-1]

    assert final.text == "mumble"
    assert final.degraded


def test_attempt_timeout_triggers_fallback():
    on_device = ScriptedBackend(RecognitionMethod.ON_DEVICE, [5.0])
    cloud = ScriptedBackend(RecognitionMethod.CLOUD, [("fast", 0.8)])
    config = RecognitionConfig(chunk_seconds=1.0, attempt_timeout_s=0.05)
    orchestrator = SpeechRecognitionOrchestrator(
        {RecognitionMethod.ON_DEVICE: on_device, RecognitionMethod.CLOUD: cloud}, config
    )

    final = asyncio.run(_collect(orchestrator, _frames(1.0)))[-1]

    assert final.text == "fast"
    assert final.method is RecognitionMethod.CLOUD


def test_missing_cloud_backend_degrades_instead_of_failing():
    on_device = ScriptedBackend(RecognitionMethod.ON_DEVICE, [RecognitionUnavailable("no model")])
    orchestrator = _orchestrator(on_device, None)
    final = asyncio.run(_collect(orchestrator, _frames(1.0)))[-1]
    assert final.text == ""
    assert final.degraded


def test_on_device_only_keeps_low_confidence_chunk_and_continues():
    on_device = ScriptedBackend(
        RecognitionMethod.ON_DEVICE, [("mumble", 0.2), ("second", 0.9), ("third", 0.9)]
    )
    bus, seen = _record_events()
    orchestrator = _orchestrator(on_device, None, bus)

    final = asyncio.run(_collect(orchestrator, _frames(3.0)))[-1]

    assert final.text == "mumble second third"
    assert final.method is RecognitionMethod.ON_DEVICE
    assert on_device.calls == 3
    assert not [e for e in seen if isinstance(e, RecognitionMethodChanged)]


def test_on_device_only_recovers_after_transient_error():
    on_device = ScriptedBackend(
        RecognitionMethod.ON_DEVICE, [RecognitionError("glitch"), ("second", 0.9)]
    )
    orchestrator = _orchestrator(on_device, None)

    final = asyncio.run(_collect(orchestrator, _frames(2.0)))[-1]

    assert final.text == "second"
    assert final.degraded
    assert on_device.calls == 2


def test_unreachable_cloud_hands_later_chunks_back_to_on_device():
    on_device = ScriptedBackend(RecognitionMethod.ON_DEVICE, [("mumble", 0.2), ("second", 0.9)])
    cloud = ScriptedBackend(RecognitionMethod.CLOUD, [RecognitionUnavailable("offline")])
    bus, seen = _record_events()
    orchestrator = _orchestrator(on_device, cloud, bus)

    final = asyncio.run(_collect(orchestrator, _frames(3.0)))[-1]

    assert final.text == "mumble second second"
    assert final.degraded
    assert on_device.calls == 3
    assert cloud.calls == 1
    switches = [e.current for e in seen if isinstance(e, RecognitionMethodChanged)]
    assert switches == [RecognitionMethod.CLOUD, RecognitionMethod.ON_DEVICE]


def test_switch_method_rejected_while_active():
    async def _run():
        orchestrator = _orchestrator(ScriptedBackend(RecognitionMethod.ON_DEVICE, [("a", 0.9)]), None)
        stream = FrameStream()
        task = asyncio.create_task(_collect(orchestrator, stream))
        await asyncio.sleep(0)
        with pytest.raises(RecognitionSessionActive):
            orchestrator.switch_method(RecognitionMethod.CLOUD)
        stream.close()
        await task
        orchestrator.switch_method(RecognitionMethod.CLOUD)
        return orchestrator.preferred_method

    assert asyncio.run(_run()) is RecognitionMethod.CLOUD


def test_get_final_result_times_out_then_completes():
    async def _run():
        orchestrator = _orchestrator(ScriptedBackend(RecognitionMethod.ON_DEVICE, [("a", 0.9)]), None)
        stream = FrameStream()
        task = asyncio.create_task(_collect(orchestrator, stream))
        await asyncio.sleep(0)
        with pytest.raises(RecognitionTimeout):
            await orchestrator.get_final_result(timeout=0.05)
        stream.close()
        final = await orchestrator.get_final_result(timeout=1.0)
        await task
        return final

    final = asyncio.run(_run())
    assert final.is_final
    assert final.text == ""


def test_stop_recognition_is_idempotent():
    async def _run():
        orchestrator = _orchestrator(ScriptedBackend(RecognitionMethod.ON_DEVICE, [("a", 0.9)]), None)
        orchestrator.stop_recognition()
        stream = FrameStream()
        task = asyncio.create_task(_collect(orchestrator, stream))
        await asyncio.sleep(0)
        orchestrator.stop_recognition()
        orchestrator.stop_recognition()
        stream.close()
        return await task

    results = asyncio.run(_run())
    assert results[-1].is_final


def test_frame_stream_drops_when_full():
    async def _run():
        stream = FrameStream(maxsize=2)
        accepted = [stream.put_nowait(np.zeros(4)) for _ in range(3)]
        stream.close()
        drained = [frame async for frame in stream]
        return accepted, drained, stream.dropped

    accepted, drained, dropped = asyncio.run(_run())
    assert accepted == [True, True, False]
    assert len(drained) == 2
    assert dropped == 1


def test_aggregate_confidence_prefers_completion_signals():
    segments = [Segment(0, 1, "a", 0.2), Segment(1, 4, "b", 0.6)]
    assert aggregate_confidence([0.9, 0.7], segments) == pytest.approx(0.8)
    assert aggregate_confidence(None, segments) == pytest.approx((0.2 + 0.6 * 3) / 4)
    assert aggregate_confidence(None, [Segment(1, 1, "a", 0.4), Segment(2, 2, "b", 0.8)]) == pytest.approx(0.6)
    assert aggregate_confidence(None, []) == 0.0
