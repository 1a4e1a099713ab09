from datetime import datetime, timedelta, timezone

import pytest

from callscribe.models import (
    AudioQuality,
    CallDirection,
    CallMetadata,
    CallSummary,
    DeviceInfo,
    NetworkInfo,
    RecognitionMethod,
    Segment,
    StructuredCallData,
    SummaryMethod,
)


def build_call(call_id="call-1", summary_text="Discussed the contract.", **overrides):
    start = datetime(2026, 3, 4, 9, 30, 15, 123456, tzinfo=timezone.utc)
    summary = CallSummary(
        key_points=["Discussed the contract."],
        summary=summary_text,
        action_items=["We need to send the contract by Friday."],
        participants=["Speaker 1"],
        tags=["contract"],
        confidence=0.6,
        duration_s=42.5,
        method=SummaryMethod.RULE_BASED,
    )
    metadata = CallMetadata(
        direction=CallDirection.INCOMING,
        audio_quality=AudioQuality.GOOD,
        recognition_method=RecognitionMethod.ON_DEVICE,
        language="en",
        confidence=0.82,
        start_time=start,
        end_time=start + timedelta(seconds=42.5),
        device_info=DeviceInfo("x86_64", "Linux-6", "0.1.0", 2048.0),
        network_info=NetworkInfo(),
    )
    values = dict(
        id=call_id,
        timestamp=start,
        duration_s=42.5,
        counterpart="+1 555-123-4567",
        audio_ref=None,
        transcription_text="Speaker 1: Discussed the contract.",
        summary=summary,
        metadata=metadata,
        segments=[Segment(0.0, 2.5, "Discussed the contract.", 0.82, "Speaker 1")],
    )
    values.update(overrides)
    return StructuredCallData(**values)


@pytest.fixture
def make_call():
    return build_call
