"""OpenAI client access and the cloud AI summarizer."""

from __future__ import annotations

import json
import logging
from typing import Any, List, Optional

from openai import AsyncOpenAI, OpenAIError

from .config import SummarizationConfig
from .errors import InvalidConfiguration, SummarizationFailure
from .summarizer import AISummary

logger = logging.getLogger("callscribe")

SYSTEM_PROMPT = (
    "You are an assistant specialized in summarizing phone conversations. "
    "Create concise and clear summaries. Respond with a JSON object with the keys "
    '"summary" (string), "key_points" (list of strings), "action_items" '
    '(list of strings) and "confidence" (number between 0 and 1 describing how '
    "well the transcript supports the summary)."
)


class CloudClient:
    """Lazily constructed AsyncOpenAI client shared by the cloud services."""

    def __init__(self, api_key: Optional[str], base_url: Optional[str] = None) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._client: AsyncOpenAI | None = None

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def __call__(self) -> AsyncOpenAI:
        if not self._api_key:
            raise InvalidConfiguration("OPENAI_API_KEY is not set")
        if self._client is None:
            kwargs: dict[str, Any] = {"api_key": self._api_key}
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._client = AsyncOpenAI(**kwargs)
        return self._client


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def parse_summary_payload(content: str) -> AISummary:
    try:
        payload = json.loads(content)
    except ValueError as exc:
        raise SummarizationFailure(f"AI response is not JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise SummarizationFailure("AI response is not a JSON object")
    summary = str(payload.get("summary") or "").strip()
    if not summary:
        raise SummarizationFailure("AI response has no summary")
    confidence = payload.get("confidence")
    if confidence is not None:
        try:
            confidence = float(confidence)
        except (TypeError, ValueError):
            confidence = None
    return AISummary(
        summary=summary,
        action_items=_string_list(payload.get("action_items")),
        key_points=_string_list(payload.get("key_points")),
        confidence=confidence,
    )


class OpenAISummarizer:
    def __init__(self, client: CloudClient, model: str = "gpt-4o-mini") -> None:
        self._client = client
        self.model = model

    async def summarize(
        self, text: str, config: SummarizationConfig, language: Optional[str]
    ) -> AISummary:
        try:
            client = self._client()
        except InvalidConfiguration as exc:
            raise SummarizationFailure(str(exc)) from exc

        instructions = [
            f"Keep the summary under {config.max_length} characters.",
            f"Give at most {config.key_point_count} key points.",
        ]
        if not config.include_action_items:
            instructions.append("Return an empty action_items list.")
        if language:
            instructions.append(f"Write in the transcript's language ({language}).")
        user = "\n".join(instructions) + f"\n\nTranscript:\n{text}"

        try:
            resp = await client.chat.completions.create(
                model=config.ai_model or self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": user},
                ],
                temperature=0.2,
                response_format={"type": "json_object"},
            )
        except OpenAIError as exc:
            raise SummarizationFailure(f"AI summarization request failed: {exc}") from exc

        content = resp.choices[0].message.content if resp.choices else None
        if content is None:
            raise SummarizationFailure("LLM returned empty response")
        return parse_summary_payload(content)
