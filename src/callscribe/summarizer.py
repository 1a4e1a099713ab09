"""Hybrid rule-based / AI call summarization."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

from .config import SummarizationConfig
from .errors import SummarizationFailure
from .memory import MemoryGuard
from .models import (
    CallSummary,
    Segment,
    SummarizationMode,
    SummaryMethod,
)
from .text_analysis import (
    clean_text,
    detect_language,
    estimate_duration_s,
    evaluate_text_quality,
    extract_action_items,
    extract_keywords,
    extract_participants,
    select_key_points,
    split_sentences,
    truncate,
    word_count,
)

logger = logging.getLogger("callscribe")

MAX_ACTION_ITEMS = 5
MAX_TAGS = 10
SHORT_TEXT_WORDS = 10
MEDIUM_TEXT_WORDS = 50


@dataclass(frozen=True)
class AISummary:
    summary: str
    action_items: List[str] = field(default_factory=list)
    key_points: List[str] = field(default_factory=list)
    confidence: Optional[float] = None


class AISummarizer(Protocol):
    async def summarize(
        self, text: str, config: SummarizationConfig, language: Optional[str]
    ) -> AISummary:
        ...


def estimate_ai_confidence(text: str) -> float:
    return 0.6 + 0.3 * evaluate_text_quality(text)


def speech_duration(text: str, segments: Optional[Sequence[Segment]]) -> float:
    if segments:
        return max(seg.end for seg in segments) - min(seg.start for seg in segments)
    return estimate_duration_s(text)


class SummarizationEngine:
    """Produces a CallSummary from a final transcript.

    The cloud AI path is used according to ``SummarizationConfig.mode`` unless
    resident memory is at or above the guard's ceiling, in which case only the
    rule-based path runs and a cleanup pass is triggered. AI failures and
    timeouts never escape ``summarize``.
    """

    def __init__(
        self,
        ai_client: Optional[AISummarizer] = None,
        memory_guard: Optional[MemoryGuard] = None,
        config: Optional[SummarizationConfig] = None,
    ) -> None:
        self._ai = ai_client
        self._memory = memory_guard or MemoryGuard()
        self.config = config or SummarizationConfig()

    async def summarize(
        self,
        text: str,
        config: Optional[SummarizationConfig] = None,
        segments: Optional[Sequence[Segment]] = None,
        language: Optional[str] = None,
    ) -> CallSummary:
        config = config or self.config
        if not text or not text.strip():
            return CallSummary.no_speech()

        over, usage = self._memory.over_ceiling()
        if over:
            logger.warning(
                "Resident memory %.1f MB at or above %.1f MB, using rule-based summary",
                usage,
                self._memory.ceiling_mb,
            )
            self._memory.cleanup()
            method = (
                SummaryMethod.RULE_BASED
                if config.mode is SummarizationMode.RULE_BASED_ONLY
                else SummaryMethod.FALLBACK
            )
            return self.summarize_rule_based(text, config, segments, method=method)

        mode = config.mode
        if mode is SummarizationMode.RULE_BASED_ONLY:
            return self.summarize_rule_based(text, config, segments)
        language = language or detect_language(text)

        if mode is SummarizationMode.RULE_BASED_PRIMARY:
            primary = self.summarize_rule_based(text, config, segments)
            if primary.confidence >= config.quality_threshold:
                return primary
            ai = await self._try_ai(text, config, segments, language)
            if ai is not None and ai.confidence >= config.quality_threshold:
                return ai
            return primary

        ai = await self._try_ai(text, config, segments, language)
        if ai is not None:
            if mode is SummarizationMode.AI_ONLY or ai.confidence >= config.quality_threshold:
                return ai
            logger.info(
                "AI summary confidence %.2f below threshold %.2f, falling back",
                ai.confidence,
                config.quality_threshold,
            )
        return self.summarize_rule_based(
            text, config, segments, method=SummaryMethod.FALLBACK
        )

    async def _try_ai(
        self,
        text: str,
        config: SummarizationConfig,
        segments: Optional[Sequence[Segment]],
        language: Optional[str],
    ) -> Optional[CallSummary]:
        if self._ai is None:
            logger.warning("No AI summarizer configured, using rule-based summary")
            return None
        try:
            result = await asyncio.wait_for(
                self._ai.summarize(text, config, language), config.ai_timeout_s
            )
        except asyncio.TimeoutError:
            logger.warning("AI summarization timed out after %.1fs", config.ai_timeout_s)
            return None
        except SummarizationFailure as exc:
            logger.warning("AI summarization failed: %s", exc)
            return None
        except Exception:
            logger.exception("AI summarization raised unexpectedly")
            return None

        summary_text = clean_text(result.summary or "")
        if not summary_text:
            logger.warning("AI summarizer returned an empty summary")
            return None
        confidence = result.confidence
        if confidence is None:
            confidence = estimate_ai_confidence(text)

        sentences = split_sentences(text)
        key_points = [clean_text(p) for p in result.key_points if p and p.strip()]
        if not key_points:
            key_points = select_key_points(sentences, config.key_point_count)
        action_items: List[str] = []
        if config.include_action_items:
            action_items = [
                clean_text(a) for a in result.action_items if a and a.strip()
            ][:MAX_ACTION_ITEMS]
        return CallSummary(
            key_points=key_points[: config.key_point_count],
            summary=truncate(summary_text, config.max_length),
            action_items=action_items,
            participants=extract_participants(text, segments),
            tags=extract_keywords(text, MAX_TAGS) if config.include_keywords else [],
            confidence=confidence,
            duration_s=speech_duration(text, segments),
            method=SummaryMethod.AI,
        )

    def summarize_rule_based(
        self,
        text: str,
        config: Optional[SummarizationConfig] = None,
        segments: Optional[Sequence[Segment]] = None,
        method: SummaryMethod = SummaryMethod.RULE_BASED,
    ) -> CallSummary:
        config = config or self.config
        if not text or not text.strip():
            return CallSummary.no_speech()

        sentences = split_sentences(text)
        words = word_count(text)
        if words < SHORT_TEXT_WORDS or len(sentences) <= 1:
            parts = [clean_text(text)]
            confidence = 0.5
        elif words < MEDIUM_TEXT_WORDS:
            parts = [sentences[0], sentences[-1]]
            confidence = 0.6
        else:
            parts = [sentences[0], sentences[len(sentences) // 2], sentences[-1]]
            confidence = 0.7

        unique_parts: List[str] = []
        for part in parts:
            if part not in unique_parts:
                unique_parts.append(part)
        summary = truncate(" ".join(unique_parts), config.max_length)
        if not summary.strip():
            summary = truncate(clean_text(text), config.max_length)

        action_items: List[str] = []
        if config.include_action_items:
            action_items = extract_action_items(sentences, MAX_ACTION_ITEMS)

        return CallSummary(
            key_points=select_key_points(sentences, config.key_point_count),
            summary=summary,
            action_items=action_items,
            participants=extract_participants(text, segments),
            tags=extract_keywords(text, MAX_TAGS) if config.include_keywords else [],
            confidence=confidence,
            duration_s=speech_duration(text, segments),
            method=method,
        )
