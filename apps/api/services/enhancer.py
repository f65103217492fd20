"""OpenAI-backed prompt enhancement client."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

from fastapi import HTTPException
from openai import AsyncOpenAI

from config import require_openai_api_key, settings


logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """
You are a prompt engineer. Rewrite the user's prompt so a large language model
can answer it well: state the goal, the audience, the constraints and the
expected output format. Keep the user's intent and language.

Return a strict JSON object:
{
  "enhanced_prompt": "string",
  "quality_score": 0.0-1.0,
  "why_summary": "one or two sentences on what was improved",
  "domain": "string"
}
"""


class EnhancementError(Exception):
    """The remote enhancement call failed or returned an unusable result."""


@dataclass
class EnhancementResult:
    text: str
    quality_score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class PromptEnhancer(Protocol):
    async def enhance(self, prompt: str, options: Dict[str, Any]) -> EnhancementResult:
        ...


def _user_message(prompt: str, options: Dict[str, Any]) -> str:
    lines = [f"Prompt to enhance:\n{prompt}"]
    domain = options.get("domain")
    if domain:
        lines.append(f"Domain: {domain}")
    tone = options.get("tone")
    if tone:
        lines.append(f"Tone: write the enhanced prompt in a {tone} register.")
    if options.get("include_examples"):
        lines.append("Include one or two short examples of the expected output.")
    return "\n\n".join(lines)


def parse_enhancement_payload(raw_content: Optional[str]) -> EnhancementResult:
    """Validate the model's JSON answer."""
    try:
        parsed = json.loads(raw_content or "")
    except json.JSONDecodeError as exc:
        raise EnhancementError(f"Enhancement response was not valid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise EnhancementError("Enhancement response was not a JSON object")

    text = parsed.get("enhanced_prompt")
    if not isinstance(text, str) or not text.strip():
        raise EnhancementError("Enhancement response is missing enhanced_prompt")

    try:
        score = float(parsed.get("quality_score", 0.0))
    except (TypeError, ValueError) as exc:
        raise EnhancementError("Enhancement response has a non-numeric quality_score") from exc
    if score > 1.0:
        score = score / 10.0
    score = min(max(score, 0.0), 1.0)

    metadata = {
        "why_summary": str(parsed.get("why_summary") or ""),
        "domain": str(parsed.get("domain") or ""),
    }
    return EnhancementResult(text=text.strip(), quality_score=score, metadata=metadata)


class OpenAIPromptEnhancer:
    """Calls the chat completions API once per enhancement."""

    def __init__(self, api_key: str, model: str, timeout_seconds: float):
        self.model = model
        self._client = AsyncOpenAI(api_key=api_key, timeout=timeout_seconds)

    async def aclose(self) -> None:
        await self._client.close()

    async def enhance(self, prompt: str, options: Dict[str, Any]) -> EnhancementResult:
        started = time.monotonic()
        request: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": _user_message(prompt, options)},
            ],
            "response_format": {"type": "json_object"},
        }
        if options.get("max_tokens"):
            request["max_tokens"] = int(options["max_tokens"])

        response = await self._client.chat.completions.create(**request)
        if not response.choices:
            raise EnhancementError("Enhancement response contained no choices")
        result = parse_enhancement_payload(response.choices[0].message.content)

        usage = getattr(response, "usage", None)
        result.metadata.update(
            {
                "model": self.model,
                "processing_ms": int((time.monotonic() - started) * 1000),
                "total_tokens": int(getattr(usage, "total_tokens", 0) or 0),
                "enhancement_ratio": round(len(result.text) / max(len(prompt), 1), 2),
            }
        )
        logger.info(
            "prompt_enhanced model=%s score=%.2f ratio=%s",
            self.model,
            result.quality_score,
            result.metadata["enhancement_ratio"],
        )
        return result


_enhancer: Optional[OpenAIPromptEnhancer] = None


def get_enhancer() -> PromptEnhancer:
    """FastAPI dependency resolving the configured enhancement provider.

    One client, and so one HTTP connection pool, is shared by every request
    until ``close_enhancer`` runs at shutdown.
    """
    global _enhancer
    try:
        api_key = require_openai_api_key()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail="Prompt enhancement provider is not configured.") from exc
    if _enhancer is None:
        _enhancer = OpenAIPromptEnhancer(
            api_key=api_key,
            model=settings.ENHANCEMENT_MODEL,
            timeout_seconds=float(settings.ENHANCEMENT_TIMEOUT_SECONDS),
        )
    return _enhancer


async def close_enhancer() -> None:
    global _enhancer
    if _enhancer is not None:
        client, _enhancer = _enhancer, None
        await client.aclose()
