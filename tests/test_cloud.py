import asyncio
import json
from types import SimpleNamespace

import numpy as np
import pytest

from callscribe.cloud import CloudClient, OpenAISummarizer, parse_summary_payload
from callscribe.config import SummarizationConfig
from callscribe.errors import (
    InvalidConfiguration,
    RecognitionUnavailable,
    SummarizationFailure,
)
from callscribe.transcriber import OpenAICloudRecognizer, language_code, logprob_confidence


class FakeCompletions:
    def __init__(self, content):
        self.content = content
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class FakeTranscriptions:
    def __init__(self, response):
        self.response = response
        self.kwargs = None

    async def create(self, **kwargs):
        self.kwargs = kwargs
        return self.response


def test_cloud_client_requires_key():
    client = CloudClient(None)
    assert not client.configured
    with pytest.raises(InvalidConfiguration):
        client()
    assert CloudClient("sk-test").configured


def test_parse_summary_payload():
    result = parse_summary_payload(
        json.dumps(
            {
                "summary": "Budget approved.",
                "key_points": ["Budget", " "],
                "action_items": ["Email finance"],
                "confidence": "0.9",
            }
        )
    )
    assert result.summary == "Budget approved."
    assert result.key_points == ["Budget"]
    assert result.action_items == ["Email finance"]
    assert result.confidence == pytest.approx(0.9)


@pytest.mark.parametrize("content", ["not json", "[]", json.dumps({"summary": ""})])
def test_parse_summary_payload_rejects_bad_content(content):
    with pytest.raises(SummarizationFailure):
        parse_summary_payload(content)


def test_openai_summarizer_sends_json_request():
    completions = FakeCompletions(json.dumps({"summary": "Call about invoices."}))
    fake = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    summarizer = OpenAISummarizer(lambda: fake, model="gpt-test")
    config = SummarizationConfig(ai_model="gpt-test", include_action_items=False)

    result = asyncio.run(summarizer.summarize("Speaker 1: about the invoices.", config, "en"))

    assert result.summary == "Call about invoices."
    assert result.confidence is None
    assert completions.kwargs["model"] == "gpt-test"
    assert completions.kwargs["response_format"] == {"type": "json_object"}
    user = completions.kwargs["messages"][1]["content"]
    assert "empty action_items" in user
    assert user.endswith("Speaker 1: about the invoices.")


def test_openai_summarizer_without_key_fails_cleanly():
    summarizer = OpenAISummarizer(CloudClient(None))
    with pytest.raises(SummarizationFailure):
        asyncio.run(summarizer.summarize("text", SummarizationConfig(), None))


def test_cloud_recognizer_maps_segments():
    response = SimpleNamespace(
        text=" hello there ",
        language="english",
        segments=[SimpleNamespace(start=0.0, end=1.5, text=" hello there", avg_logprob=-0.1)],
    )
    transcriptions = FakeTranscriptions(response)
    fake = SimpleNamespace(audio=SimpleNamespace(transcriptions=transcriptions))
    recognizer = OpenAICloudRecognizer(lambda: fake, model="whisper-1")

    result = asyncio.run(recognizer.transcribe(np.zeros(1600, dtype=np.float32), 16000, "ja-JP"))

    assert result.text == "hello there"
    assert result.segments[0].confidence == pytest.approx(0.905, abs=0.001)
    assert transcriptions.kwargs["language"] == "ja"
    assert transcriptions.kwargs["response_format"] == "verbose_json"
    name, payload, mime = transcriptions.kwargs["file"]
    assert payload[:4] == b"RIFF"


def test_cloud_recognizer_without_key_is_unavailable():
    recognizer = OpenAICloudRecognizer(CloudClient(None))
    with pytest.raises(RecognitionUnavailable):
        asyncio.run(recognizer.transcribe(np.ones(10, dtype=np.float32), 16000, None))


def test_language_code_and_logprob_confidence():
    assert language_code("en-US") == "en"
    assert language_code("ja_JP") == "ja"
    assert language_code(None) is None
    assert logprob_confidence(0.0) == 1.0
    assert logprob_confidence(None) == 0.0
