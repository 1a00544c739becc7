# services/openai_llm.py
from __future__ import annotations

import logging
from dataclasses import dataclass

from openai import AsyncOpenAI

from api.app.config import get_settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LLMResult:
    text: str
    model: str
    input_tokens: int
    output_tokens: int


async def extract_json(
    system_prompt: str,
    user_message: str,
    model: str | None = None,
    max_tokens: int = 1024,
) -> LLMResult:
    """Run a completion expecting JSON output; token usage comes back for the ledger."""
    settings = get_settings()
    client = AsyncOpenAI(api_key=settings.openai_api_key)
    model = model or settings.openai_model

    logger.info("LLM: json completion on %s (%d chars)", model, len(user_message))
    response = await client.chat.completions.create(
        model=model,
        messages=[
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_message},
        ],
        temperature=0.2,
        max_tokens=max_tokens,
        response_format={"type": "json_object"},
    )
    usage = response.usage
    return LLMResult(
        text=response.choices[0].message.content or "{}",
        model=model,
        input_tokens=usage.prompt_tokens if usage else 0,
        output_tokens=usage.completion_tokens if usage else 0,
    )
