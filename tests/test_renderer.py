import yaml

from callscribe.models import CallSummary
from callscribe.renderer import render_call_note


def _front_matter(note):
    _, block, _body = note.split("---\n", 2)
    return yaml.safe_load(block)


def test_render_call_note_includes_frontmatter(make_call):
    note = render_call_note(make_call(audio_ref="Recordings/2026-03-04--call-1.wav"))
    meta = _front_matter(note)

    assert meta["id"] == "call-1"
    assert meta["counterpart"] == "155****4567"
    assert meta["direction"] == "incoming"
    assert meta["duration"] == "0:42"
    assert meta["recognition_method"] == "on_device"
    assert meta["audio"] == "Recordings/2026-03-04--call-1.wav"
    assert meta["participants"] == ["Speaker 1"]
    assert meta["tags"] == ["contract"]
    assert "## Summary" in note
    assert "- [ ] We need to send the contract by Friday." in note
    assert "## Transcript" in note
    assert "Speaker 1: Discussed the contract." in note


def test_render_call_note_quotes_awkward_values(make_call):
    note = render_call_note(make_call(call_id='call-"2"', segments=[]))
    assert _front_matter(note)["id"] == 'call-"2"'
    assert "audio:" not in note


def test_render_call_note_without_speech(make_call):
    note = render_call_note(make_call(segments=[], transcription_text=""))
    assert "_No speech detected._" in note


def test_render_call_note_labels_action_items(make_call):
    summary = CallSummary(
        key_points=[],
        summary="Quote requested.",
        action_items=["Send the quote immediately.", "Water the plants."],
        participants=[],
        tags=[],
        confidence=0.6,
    )
    note = render_call_note(make_call(summary=summary))
    assert "- [ ] **urgent** Send the quote immediately. (document)" in note
    assert "- [ ] Water the plants. (general)" in note
