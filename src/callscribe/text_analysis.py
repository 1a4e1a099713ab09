"""Text heuristics shared by the rule-based summarizer and the AI path."""

from __future__ import annotations

import re
from collections import Counter
from typing import Iterable, List, Optional, Sequence

from .models import ActionCategory, ActionItem, ActionPriority, Segment

SENTENCE_SPLIT = re.compile(r"(?<=[.!?。．！？])\s*|\n+")
WORD_RE = re.compile(r"[A-Za-z][A-Za-z'\-]+|[぀-ヿ一-鿿]{2,}")
KANA_RE = re.compile(r"[぀-ヿ]")
CJK_RE = re.compile(r"[一-鿿]")
PHONE_RE = re.compile(r"(?<![\d+])\+?\(?\d[\d\-.\s()]{5,18}\d(?!\d)")

ACTION_PATTERNS = (
    re.compile(r"\b(need to|needs to|should|must|will|going to|have to|has to)\b", re.I),
    re.compile(r"\b(follow up|send|call back|schedule|confirm|review|prepare)\b", re.I),
    re.compile(r"^\s*(action|todo|to-do)\s*[:：]", re.I),
    re.compile(r"(確認|連絡|検討|実施|準備|対応)(する|します|して|しておく)?"),
)

FILLER_WORDS = (
    "um",
    "uh",
    "er",
    "ah",
    "like",
    "you know",
    "えー",
    "あの",
    "えっと",
    "まあ",
)

STOP_WORDS = frozenset(
    """
    a an the and or but if then so of to in on at by for with from as is are was
    were be been being it its this that these those i you he she we they me him
    her us them my your his our their not no yes do does did have has had can
    could would should will shall may might must just also very really okay ok
    well there here what when where who how which about into over than too all
    any some get got go going know think yeah right like um uh speaker
    """.split()
)

SPEAKER_PATTERNS = (
    re.compile(r"^\s*(Speaker\s*\d+)\s*[:：]", re.I),
    re.compile(r"^\s*([A-Z])\s*[:：]"),
    re.compile(r"^\s*([A-Z][a-z]+(?:-(?:san|sama|kun|chan)))\s*[:：]"),
    re.compile(r"^\s*([぀-ヿ一-鿿]{1,6}(?:さん|様|くん|ちゃん))\s*[:：]"),
    re.compile(r"^\s*([A-Z][a-z]+)\s*[:：]"),
)


def _keyword_re(words):
    # CJK keywords have no word boundaries
    parts = [rf"\b{re.escape(w)}\b" if w.isascii() else re.escape(w) for w in words]
    return re.compile("|".join(parts), re.I)


PRIORITY_PATTERNS = (
    (
        ActionPriority.URGENT,
        _keyword_re(
            ("urgent", "asap", "immediately", "right away", "as soon as possible",
             "緊急", "急ぎ", "すぐに", "至急", "今すぐ")
        ),
    ),
    (
        ActionPriority.HIGH,
        _keyword_re(
            ("important", "priority", "first thing", "critical",
             "重要", "大事", "優先", "先に", "まず")
        ),
    ),
    (
        ActionPriority.LOW,
        _keyword_re(
            ("no rush", "whenever", "when you have time", "at some point",
             "時間があるとき", "余裕があるとき", "後で", "いつでも")
        ),
    ),
)

CATEGORY_PATTERNS = (
    (
        ActionCategory.MEETING,
        _keyword_re(("meeting", "meet", "会議", "ミーティング", "打ち合わせ", "面談")),
    ),
    (
        ActionCategory.FOLLOW_UP,
        _keyword_re(
            ("follow up", "follow-up", "check on", "confirm", "status", "progress",
             "フォロー", "確認", "進捗", "状況")
        ),
    ),
    (
        ActionCategory.DOCUMENT,
        _keyword_re(
            ("document", "report", "proposal", "quote", "contract", "draft",
             "資料", "書類", "報告書", "企画書", "見積書", "契約書")
        ),
    ),
    (
        ActionCategory.PHONE,
        _keyword_re(("call back", "phone", "ring", "電話", "連絡", "コール")),
    ),
    (
        ActionCategory.EMAIL,
        _keyword_re(("email", "e-mail", "reply", "send", "メール", "送信", "返信")),
    ),
    (
        ActionCategory.APPOINTMENT,
        _keyword_re(
            ("schedule", "appointment", "calendar", "book",
             "予定", "スケジュール", "日程", "調整")
        ),
    ),
    (
        ActionCategory.TASK,
        _keyword_re(("task", "prepare", "review", "作業", "タスク", "実行", "処理")),
    ),
)


WORDS_PER_MINUTE = 150
CJK_CHARS_PER_MINUTE = 400


def clean_text(value: str) -> str:
    return " ".join(value.split())


def split_sentences(text: str) -> List[str]:
    parts = SENTENCE_SPLIT.split(text or "")
    return [clean_text(p) for p in parts if p and p.strip()]


def is_cjk(text: str) -> bool:
    return bool(KANA_RE.search(text) or CJK_RE.search(text))


def detect_language(text: str) -> str:
    if KANA_RE.search(text or ""):
        return "ja"
    if CJK_RE.search(text or ""):
        return "zh"
    return "en"


def word_count(text: str) -> int:
    if is_cjk(text):
        # no whitespace word boundaries; approximate two characters per word
        stripped = re.sub(r"\s+", "", text)
        return max(len(stripped) // 2, 1) if stripped else 0
    return len(text.split())


def estimate_duration_s(text: str) -> float:
    if not text or not text.strip():
        return 0.0
    if is_cjk(text):
        chars = len(re.sub(r"\s+", "", text))
        return chars / CJK_CHARS_PER_MINUTE * 60.0
    return len(text.split()) / WORDS_PER_MINUTE * 60.0


def evaluate_text_quality(text: str) -> float:
    """Score transcript quality in [0, 1].

    Weighted blend of length (0.2), sentence completeness (0.3), vocabulary
    diversity (0.3) and absence of filler noise (0.2).
    """
    cleaned = clean_text(text or "")
    if not cleaned:
        return 0.0

    length_score = min(len(cleaned) / 200.0, 1.0)

    sentences = split_sentences(cleaned)
    terminated = sum(1 for s in sentences if s[-1] in ".!?。．！？")
    completeness = terminated / len(sentences) if sentences else 0.0

    tokens = [t.lower() for t in WORD_RE.findall(cleaned)] or list(cleaned)
    diversity = len(set(tokens)) / len(tokens) if tokens else 0.0

    lowered = f" {cleaned.lower()} "
    fillers = sum(lowered.count(f" {w} ") + lowered.count(f" {w},") for w in FILLER_WORDS)
    noise = min(fillers / max(len(tokens), 1) * 5.0, 1.0)

    score = 0.2 * length_score + 0.3 * completeness + 0.3 * diversity + 0.2 * (1.0 - noise)
    return min(max(score, 0.0), 1.0)


def is_action_sentence(sentence: str) -> bool:
    return any(p.search(sentence) for p in ACTION_PATTERNS)


def extract_action_items(sentences: Iterable[str], limit: int = 5) -> List[str]:
    items: List[str] = []
    seen = set()
    for sentence in sentences:
        if not is_action_sentence(sentence):
            continue
        key = sentence.lower()
        if key in seen:
            continue
        seen.add(key)
        items.append(sentence)
        if len(items) >= limit:
            break
    return items


def action_priority(text: str) -> ActionPriority:
    for priority, pattern in PRIORITY_PATTERNS:
        if pattern.search(text or ""):
            return priority
    return ActionPriority.MEDIUM


def action_category(text: str) -> ActionCategory:
    for category, pattern in CATEGORY_PATTERNS:
        if pattern.search(text or ""):
            return category
    return ActionCategory.GENERAL


def classify_action_item(text: str) -> ActionItem:
    return ActionItem(text=text, priority=action_priority(text), category=action_category(text))


def extract_keywords(text: str, limit: int = 10) -> List[str]:
    tokens = [t.lower() for t in WORD_RE.findall(text or "")]
    counts = Counter(t for t in tokens if t not in STOP_WORDS and len(t) > 2)
    ranked = sorted(counts.items(), key=lambda item: (-item[1], tokens.index(item[0])))
    return [word for word, _count in ranked[:limit]]


def select_key_points(sentences: Sequence[str], count: int) -> List[str]:
    """The first ``count`` sentences, in transcript order."""
    if count < 1:
        return []
    return list(sentences[:count])


def extract_participants(
    text: str, segments: Optional[Iterable[Segment]] = None
) -> List[str]:
    names: List[str] = []
    for seg in segments or []:
        if seg.speaker and seg.speaker not in names:
            names.append(seg.speaker)
    for line in (text or "").splitlines():
        for pattern in SPEAKER_PATTERNS:
            match = pattern.match(line)
            if match:
                name = clean_text(match.group(1))
                if name not in names:
                    names.append(name)
                break
    return names


def find_phone_number(text: str) -> Optional[str]:
    for match in PHONE_RE.finditer(text or ""):
        candidate = match.group(0).strip()
        digits = re.sub(r"\D", "", candidate)
        if 7 <= len(digits) <= 15:
            return candidate
    return None


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    if max_length <= 3:
        return text[:max_length]
    cut = text[: max_length - 3]
    if " " in cut:
        cut = cut.rsplit(" ", 1)[0] or cut
    return cut.rstrip(" ,;:") + "..."
