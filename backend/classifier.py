"""Transcript distress classification through an OpenAI-compatible LLM API."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from config import ClassifierConfig
from errors import (
    AllModelsExhaustedError,
    ClassificationError,
    MalformedResponseError,
    MissingInputError,
)
from models import VALID_TAGS, CallAnalysis

logger = logging.getLogger(__name__)

CALL_ANALYSIS_SCHEMA = {
    "type": "object",
    "properties": {
        "tags": {
            "type": "array",
            "items": {"type": "string", "enum": VALID_TAGS},
            "description": "Needs raised on the call",
        },
        "sentiment_score": {
            "type": "integer",
            "minimum": 0,
            "maximum": 10,
            "description": "1-3 calm, 4-6 concerned, 7-8 distressed, 9-10 life-threatening",
        },
        "key_topics": {
            "type": "string",
            "description": "One sentence, max 15 words, focused on needs",
        },
    },
    "required": ["tags", "sentiment_score", "key_topics"],
    "additionalProperties": False,
}

RATE_LIMIT_MARKERS = ("429", "quota", "rate limit", "rate-limit", "resource_exhausted")


def build_prompt(transcript: str) -> str:
    return (
        "You are an emergency response AI. Analyze this flood check-in call transcript "
        "for a liaison dashboard.\n\n"
        f'TRANSCRIPT:\n"{transcript}"\n\n'
        "RULES:\n"
        "1. SCORING (1-10):\n"
        "   - 1-3: Calm, informational, safe.\n"
        "   - 4-6: Concerned, anxious, mild needs.\n"
        "   - 7-8: Distressed, urgent needs, crying.\n"
        "   - 9-10: Panic, life-threatening, screaming.\n"
        "2. TAGGING:\n"
        f"   - Select strictly from: {json.dumps(VALID_TAGS)}\n"
        '   - If uncertain, default to "Safe".\n'
        "3. KEY TOPICS:\n"
        "   - Write a 1-sentence summary (max 15 words) focusing on NEEDS.\n\n"
        "Return ONLY a JSON object matching this schema:\n"
        f"{json.dumps(CALL_ANALYSIS_SCHEMA)}"
    )


class _RateLimited(Exception):
    """Internal signal: this model is out of quota, try the next one."""


class TranscriptClassifier:
    """Scores call text for distress, walking an ordered list of models.

    A rate-limit or quota error moves on to the next model; anything else
    fails immediately. Exhausting the list raises AllModelsExhaustedError.
    """

    def __init__(self, config: ClassifierConfig):
        self.config = config

    async def classify(self, text: str) -> CallAnalysis:
        if not text or not text.strip():
            raise MissingInputError("No transcript or summary to classify")
        if not self.config.api_key:
            raise ClassificationError("OPENROUTER_API_KEY not configured", recoverable=False)
        if not self.config.models:
            raise ClassificationError("No analysis models configured", recoverable=False)

        prompt = build_prompt(text)
        last_error: Exception | None = None

        for model in self.config.models:
            logger.info("Classifying transcript with model %s", model)
            try:
                content = await self._complete(model, prompt)
            except _RateLimited as e:
                logger.warning("Model %s rate limited, trying next: %s", model, e)
                last_error = e
                continue

            analysis = parse_analysis(content)
            logger.info(
                "Classification succeeded: model=%s score=%d tags=%s",
                model, analysis.sentiment_score, [t.value for t in analysis.tags],
            )
            return analysis

        raise AllModelsExhaustedError(
            f"All analysis models rate limited. Last error: {last_error}",
            last_error=last_error,
        )

    async def _complete(self, model: str, prompt: str) -> str:
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": "call_analysis", "strict": True, "schema": CALL_ANALYSIS_SCHEMA},
            },
            "max_tokens": 512,
        }
        headers = {
            "Authorization": f"Bearer {self.config.api_key}",
            "Content-Type": "application/json",
            "X-Title": "FloodVoice",
        }

        try:
            async with httpx.AsyncClient(timeout=self.config.timeout_seconds) as client:
                response = await client.post(self.config.base_url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            raise ClassificationError(f"LLM request to {model} failed: {e}", recoverable=True) from e

        if response.status_code == 429:
            raise _RateLimited(f"HTTP 429: {response.text[:300]}")
        if response.status_code != 200:
            if _looks_rate_limited(response.text):
                raise _RateLimited(f"HTTP {response.status_code}: {response.text[:300]}")
            raise ClassificationError(
                f"LLM error from {model}: HTTP {response.status_code}: {response.text[:300]}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"LLM response from {model} is not JSON") from e

        # OpenRouter can report upstream failures inside a 200 body.
        if isinstance(body, dict) and body.get("error"):
            detail = json.dumps(body["error"])
            if _looks_rate_limited(detail):
                raise _RateLimited(detail[:300])
            raise ClassificationError(f"LLM error from {model}: {detail[:300]}")

        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise MalformedResponseError(f"LLM response from {model} has no message content") from e
        if not isinstance(content, str):
            raise MalformedResponseError(f"LLM response from {model} has non-text content")
        return content


def parse_analysis(content: str) -> CallAnalysis:
    """Parse the model's JSON reply into a CallAnalysis.

    Tags outside the fixed vocabulary are dropped; any other deviation raises
    MalformedResponseError.
    """
    clean = content.strip()
    if clean.startswith("```"):
        clean = clean.replace("```json", "").replace("```", "").strip()
    try:
        data: Any = json.loads(clean)
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"Analysis is not valid JSON: {clean[:200]}") from e
    if not isinstance(data, dict):
        raise MalformedResponseError("Analysis must be a JSON object")

    raw_tags = data.get("tags", [])
    if not isinstance(raw_tags, list):
        raise MalformedResponseError("Analysis 'tags' must be a list")
    tags: list[str] = []
    for tag in raw_tags:
        if tag in VALID_TAGS:
            if tag not in tags:
                tags.append(tag)
        else:
            logger.warning("Dropping tag outside vocabulary: %r", tag)

    try:
        return CallAnalysis.model_validate({**data, "tags": tags})
    except ValidationError as e:
        raise MalformedResponseError(f"Analysis does not match schema: {e}") from e


def _looks_rate_limited(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in RATE_LIMIT_MARKERS)
