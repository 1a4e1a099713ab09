import asyncio
from dataclasses import replace

import pytest

from callscribe.config import SummarizationConfig
from callscribe.errors import SummarizationFailure
from callscribe.memory import MemoryGuard
from callscribe.models import NO_SPEECH_SUMMARY, SummarizationMode, SummaryMethod
from callscribe.summarizer import AISummary, SummarizationEngine

TRANSCRIPT = (
    "Speaker 1: Thanks for calling about the supplier contract.\n"
    "Speaker 2: We reviewed the draft yesterday and found an issue with the delivery dates.\n"
    "Speaker 1: We need to send the revised contract by Friday.\n"
    "Speaker 2: I will confirm the new schedule with the warehouse team.\n"
    "Speaker 1: Great, let's talk again next week."
)


class FakeAI:
    def __init__(self, result=None, delay=0.0, error=None):
        self.result = result or AISummary(
            summary="Supplier contract revisions agreed.",
            action_items=["Send revised contract by Friday"],
            confidence=0.95,
        )
        self.delay = delay
        self.error = error
        self.calls = 0

    async def summarize(self, text, config, language):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


def _engine(ai=None, memory_mb=10.0, hooks=None):
    guard = MemoryGuard(probe=lambda: memory_mb, cleanup_hooks=hooks)
    return SummarizationEngine(ai, guard)


def test_memory_ceiling_never_calls_ai():
    for reading in (150.0, 150.01, 512.0, 10_000.0):
        for mode in SummarizationMode:
            ai = FakeAI()
            cleaned = []
            engine = _engine(ai, memory_mb=reading, hooks=[lambda: cleaned.append(1)])
            summary = asyncio.run(
                engine.summarize(TRANSCRIPT, SummarizationConfig(mode=mode, quality_threshold=0.99))
            )
            assert ai.calls == 0
            assert cleaned == [1]
            assert summary.method is not SummaryMethod.AI


def test_below_ceiling_uses_ai_in_ai_only_mode():
    ai = FakeAI()
    summary = asyncio.run(
        _engine(ai, memory_mb=149.9).summarize(
            TRANSCRIPT, SummarizationConfig(mode=SummarizationMode.AI_ONLY)
        )
    )
    assert ai.calls == 1
    assert summary.method is SummaryMethod.AI
    assert summary.summary == "Supplier contract revisions agreed."
    assert summary.confidence == 0.95


def test_summary_never_empty():
    engine = _engine()
    samples = ["", " ", "\n\t", "ok", "...", "。", "a" * 5000, "Hello. " * 300, "はい。"]
    for text in samples:
        for max_length in (1, 5, 500):
            cfg = SummarizationConfig(mode=SummarizationMode.RULE_BASED_ONLY, max_length=max_length)
            summary = asyncio.run(engine.summarize(text, cfg))
            assert summary.summary.strip()
            assert len(summary.summary) <= max(max_length, len(NO_SPEECH_SUMMARY))
            assert 0.0 <= summary.confidence <= 1.0


def test_empty_transcript_gives_no_speech_sentinel():
    summary = asyncio.run(_engine(FakeAI()).summarize("", SummarizationConfig()))
    assert summary.summary == NO_SPEECH_SUMMARY
    assert summary.confidence == 0.0
    assert summary.action_items == []


def test_ai_timeout_falls_back_to_rule_based():
    ai = FakeAI(delay=5.0)
    engine = _engine(ai)
    cfg = SummarizationConfig(mode=SummarizationMode.AI_PRIMARY, ai_timeout_s=0.05)
    summary = asyncio.run(engine.summarize(TRANSCRIPT, cfg))
    expected = engine.summarize_rule_based(TRANSCRIPT, cfg)
    assert summary == replace(expected, method=SummaryMethod.FALLBACK)
    assert summary.method is SummaryMethod.FALLBACK


def test_ai_failure_falls_back_without_raising():
    engine = _engine(FakeAI(error=SummarizationFailure("503")))
    summary = asyncio.run(
        engine.summarize(TRANSCRIPT, SummarizationConfig(mode=SummarizationMode.AI_ONLY))
    )
    assert summary.method is SummaryMethod.FALLBACK
    assert summary.summary


def test_ai_primary_rejects_low_confidence():
    ai = FakeAI(result=AISummary(summary="Vague.", confidence=0.2))
    summary = asyncio.run(
        _engine(ai).summarize(
            TRANSCRIPT,
            SummarizationConfig(mode=SummarizationMode.AI_PRIMARY, quality_threshold=0.7),
        )
    )
    assert ai.calls == 1
    assert summary.method is SummaryMethod.FALLBACK
    assert summary.summary != "Vague."


def test_ai_only_accepts_low_confidence():
    ai = FakeAI(result=AISummary(summary="Vague.", confidence=0.2))
    summary = asyncio.run(
        _engine(ai).summarize(TRANSCRIPT, SummarizationConfig(mode=SummarizationMode.AI_ONLY))
    )
    assert summary.method is SummaryMethod.AI
    assert summary.summary == "Vague."


def test_rule_based_primary_skips_ai_when_confident():
    ai = FakeAI()
    cfg = SummarizationConfig(mode=SummarizationMode.RULE_BASED_PRIMARY, quality_threshold=0.5)
    summary = asyncio.run(_engine(ai).summarize(TRANSCRIPT, cfg))
    assert ai.calls == 0
    assert summary.method is SummaryMethod.RULE_BASED


def test_rule_based_primary_escalates_when_unsure():
    ai = FakeAI()
    cfg = SummarizationConfig(mode=SummarizationMode.RULE_BASED_PRIMARY, quality_threshold=0.9)
    summary = asyncio.run(_engine(ai).summarize(TRANSCRIPT, cfg))
    assert ai.calls == 1
    assert summary.method is SummaryMethod.AI


def test_missing_ai_confidence_is_estimated():
    ai = FakeAI(result=AISummary(summary="Contract call.", confidence=None))
    summary = asyncio.run(
        _engine(ai).summarize(TRANSCRIPT, SummarizationConfig(mode=SummarizationMode.AI_ONLY))
    )
    assert 0.6 <= summary.confidence <= 0.9


def test_rule_based_extracts_structure():
    cfg = SummarizationConfig(mode=SummarizationMode.RULE_BASED_ONLY, key_point_count=2)
    summary = asyncio.run(_engine().summarize(TRANSCRIPT, cfg))
    assert summary.method is SummaryMethod.RULE_BASED
    assert summary.key_points == [
        "Speaker 1: Thanks for calling about the supplier contract.",
        "Speaker 2: We reviewed the draft yesterday and found an issue with the delivery dates.",
    ]
    assert any("revised contract" in item for item in summary.action_items)
    assert len(summary.action_items) <= 5
    assert summary.participants == ["Speaker 1", "Speaker 2"]
    assert "contract" in summary.tags
    assert summary.duration_s > 0


def test_rule_based_key_points_are_leading_sentences():
    text = (
        "Hello there. The weather is nice. We decided to sign the contract. "
        "There is a problem with billing. Talk soon."
    )
    cfg = SummarizationConfig(mode=SummarizationMode.RULE_BASED_ONLY, key_point_count=3)
    summary = asyncio.run(_engine().summarize(text, cfg))
    assert summary.key_points == [
        "Hello there.",
        "The weather is nice.",
        "We decided to sign the contract.",
    ]


def test_rule_based_respects_flags():
    cfg = SummarizationConfig(
        mode=SummarizationMode.RULE_BASED_ONLY,
        include_keywords=False,
        include_action_items=False,
        max_length=40,
    )
    summary = asyncio.run(_engine().summarize(TRANSCRIPT, cfg))
    assert summary.tags == []
    assert summary.action_items == []
    assert len(summary.summary) <= 40
    assert summary.summary.endswith("...")


def test_confidence_tiers_by_length():
    engine = _engine()
    cfg = SummarizationConfig(mode=SummarizationMode.RULE_BASED_ONLY)
    assert engine.summarize_rule_based("Short call.", cfg).confidence == 0.5
    medium = "We talked about the plan. It went fine overall. Bye for now."
    assert engine.summarize_rule_based(medium, cfg).confidence == 0.6
    assert engine.summarize_rule_based(TRANSCRIPT * 2, cfg).confidence == 0.7


@pytest.mark.parametrize("text", ["   ", ""])
def test_rule_based_direct_call_handles_blank(text):
    assert _engine().summarize_rule_based(text).summary == NO_SPEECH_SUMMARY
