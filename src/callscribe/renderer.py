"""Markdown note rendering."""

from __future__ import annotations

from typing import List

from .models import ActionItem, ActionPriority, Segment, StructuredCallData
from .text_analysis import classify_action_item


def _yaml_quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f"\"{escaped}\""


def _clean_text(value: str) -> str:
    return " ".join(value.split())


def _build_timeline_lines(segments: List[Segment]) -> List[str]:
    timeline = []
    for seg in sorted(segments, key=lambda s: s.start):
        text = _clean_text(seg.text)
        speaker = _clean_text(seg.speaker) if seg.speaker else ""
        timeline.append(
            f"[{seg.start:0>8.2f}]{' ' + speaker + ':' if speaker else ''} {text}"
        )
    return timeline


def _action_label(action: ActionItem) -> str:
    if action.priority is ActionPriority.MEDIUM:
        return ""
    return f"**{action.priority.value}** "


def render_call_note(data: StructuredCallData) -> str:
    summary = data.summary
    meta = data.metadata
    lines: List[str] = []
    lines.append("---")
    lines.append("schema: 1")
    lines.append(f"id: {_yaml_quote(data.id)}")
    lines.append(f"date: {_yaml_quote(data.timestamp.isoformat())}")
    lines.append(f"counterpart: {_yaml_quote(data.masked_counterpart)}")
    lines.append(f"direction: {meta.direction.value}")
    lines.append(f"duration: {_yaml_quote(data.formatted_duration)}")
    lines.append(f"recognition_method: {meta.recognition_method.value}")
    lines.append(f"summary_method: {summary.method.value}")
    lines.append(f"summary_status: {summary.status.value}")
    lines.append(f"language: {_yaml_quote(meta.language)}")
    lines.append(f"confidence: {meta.confidence:.2f}")
    lines.append(f"audio_quality: {meta.audio_quality.value}")
    if data.audio_ref:
        lines.append(f"audio: {_yaml_quote(data.audio_ref)}")
    if summary.participants:
        lines.append("participants:")
        for name in summary.participants:
            lines.append(f"  - {_yaml_quote(name)}")
    if summary.tags:
        lines.append("tags:")
        for tag in summary.tags:
            lines.append(f"  - {_yaml_quote(tag)}")
    lines.append("---")
    lines.append("")
    lines.append("## Summary")
    lines.append("")
    lines.append(_clean_text(summary.summary))
    lines.append("")
    if summary.key_points:
        lines.append("## Key Points")
        lines.append("")
        for point in summary.key_points:
            lines.append(f"- {_clean_text(point)}")
        lines.append("")
    if summary.action_items:
        lines.append("## Action Items")
        lines.append("")
        for item in summary.action_items:
            action = classify_action_item(_clean_text(item))
            lines.append(f"- [ ] {_action_label(action)}{action.text} ({action.category.value})")
        lines.append("")
    lines.append("## Transcript")
    lines.append("")
    if data.segments:
        lines.extend(_build_timeline_lines(data.segments))
    elif data.transcription_text:
        lines.append(_clean_text(data.transcription_text))
    else:
        lines.append("_No speech detected._")
    lines.append("")
    return "\n".join(lines)
