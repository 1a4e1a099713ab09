import pytest

from callscribe.models import ActionCategory, ActionPriority, Segment
from callscribe.text_analysis import (
    action_category,
    action_priority,
    classify_action_item,
    detect_language,
    estimate_duration_s,
    evaluate_text_quality,
    extract_action_items,
    extract_keywords,
    extract_participants,
    find_phone_number,
    select_key_points,
    split_sentences,
    truncate,
    word_count,
)


def test_split_sentences_on_punctuation_and_newlines():
    text = "Hello there. How are you?\nFine  thanks"
    assert split_sentences(text) == ["Hello there.", "How are you?", "Fine thanks"]
    assert split_sentences("") == []


def test_split_sentences_japanese():
    assert split_sentences("了解です。明日確認します。") == ["了解です。", "明日確認します。"]


def test_detect_language():
    assert detect_language("Thanks for calling") == "en"
    assert detect_language("こんにちは") == "ja"
    assert detect_language("你好世界") == "zh"


def test_word_count_and_duration():
    assert word_count("one two three") == 3
    assert word_count("こんにちは世界") == 3
    assert estimate_duration_s(" ".join(["word"] * 150)) == pytest.approx(60.0)
    assert estimate_duration_s("   ") == 0.0


def test_text_quality_prefers_clean_sentences():
    clean = (
        "We reviewed the supplier contract. The delivery dates moved to March. "
        "Finance will approve the revised budget."
    )
    noisy = "um uh um so um like um uh"
    assert evaluate_text_quality("") == 0.0
    assert 0.0 <= evaluate_text_quality(noisy) < evaluate_text_quality(clean) <= 1.0


def test_extract_action_items_dedupes_and_limits():
    sentences = [
        "We need to send the contract.",
        "The weather was nice.",
        "we need to send the contract.",
        "Please confirm the meeting.",
        "明日までに確認します。",
    ]
    assert extract_action_items(sentences) == [
        "We need to send the contract.",
        "Please confirm the meeting.",
        "明日までに確認します。",
    ]
    assert len(extract_action_items(sentences, limit=1)) == 1


def test_extract_keywords_ranks_by_frequency():
    text = "The invoice is late. The contract and the contract renewal are pending."
    keywords = extract_keywords(text, limit=3)
    assert keywords[0] == "contract"
    assert "the" not in keywords
    assert "invoice" in keywords


def test_extract_participants_from_segments_and_labels():
    text = "Speaker 1: hello\nTanaka-san: ok\n田中さん：はい\nSpeaker 1: bye"
    segments = [Segment(0.0, 1.0, "hello", 0.9, "Agent")]
    assert extract_participants(text, segments) == [
        "Agent",
        "Speaker 1",
        "Tanaka-san",
        "田中さん",
    ]


@pytest.mark.parametrize(
    "text, expected",
    [
        ("call +1 (555) 123-4567 now", "+1 (555) 123-4567"),
        ("reach me on 555.867.5309", "555.867.5309"),
        ("order 12345 shipped", None),
        ("", None),
    ],
)
def test_find_phone_number(text, expected):
    assert find_phone_number(text) == expected


def test_truncate_on_word_boundary():
    text = "The supplier agreed to revise the delivery schedule"
    assert truncate("short", 10) == "short"
    result = truncate(text, 20)
    assert len(result) <= 20
    assert result.endswith("...")
    assert text.startswith(result[:-3])


def test_select_key_points_takes_leading_sentences():
    sentences = [
        "Hello there.",
        "The weather is nice.",
        "We decided to sign the contract.",
        "There is a problem with billing.",
        "Talk soon.",
    ]
    assert select_key_points(sentences, 2) == ["Hello there.", "The weather is nice."]
    assert select_key_points(sentences, 3) == sentences[:3]
    assert select_key_points([], 3) == []


def test_action_priority_from_keywords():
    assert action_priority("Please send the quote immediately.") is ActionPriority.URGENT
    assert action_priority("This is important, book the room.") is ActionPriority.HIGH
    assert action_priority("Call back the supplier when you have time.") is ActionPriority.LOW
    assert action_priority("見積書を至急送ってください") is ActionPriority.URGENT
    assert action_priority("Water the plants.") is ActionPriority.MEDIUM


def test_action_category_from_keywords():
    assert action_category("Please send the quote immediately.") is ActionCategory.DOCUMENT
    assert action_category("Confirm the meeting time.") is ActionCategory.MEETING
    assert action_category("Call back the supplier when you have time.") is ActionCategory.PHONE
    assert action_category("This is important, book the room.") is ActionCategory.APPOINTMENT
    assert action_category("Water the plants.") is ActionCategory.GENERAL


def test_classify_action_item_keeps_text():
    item = classify_action_item("I will email the team ASAP.")
    assert item.text == "I will email the team ASAP."
    assert item.priority is ActionPriority.URGENT
    assert item.category is ActionCategory.EMAIL
