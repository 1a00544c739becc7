# services/ai_tagging.py
"""
Topic tagging for feed items.
"""
from __future__ import annotations

import json
import logging

from services.openai_llm import LLMResult, extract_json

logger = logging.getLogger(__name__)

TAGGING_SYSTEM_PROMPT = (
    "You tag news items for a personalized homepage. "
    "For each item return its id, up to 5 short lowercase topics, "
    "a sentiment of positive, neutral or negative, and up to 3 categories. "
    'Respond with JSON: {"items": [{"id": ..., "topics": [...], '
    '"sentiment": "...", "categories": [...]}]}'
)

SENTIMENTS = {"positive", "neutral", "negative"}


def _render_items(items: list[dict]) -> str:
    lines = []
    for item in items:
        lines.append(
            json.dumps(
                {
                    "id": item.get("id"),
                    "title": (item.get("title") or "")[:300],
                    "description": (item.get("description") or "")[:1000],
                },
                ensure_ascii=False,
            )
        )
    return "\n".join(lines)


def parse_tags(raw: str, items: list[dict]) -> dict[str, dict]:
    """Keeps only tags for ids we asked about; bad output yields no tags."""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Tagging: model returned invalid JSON")
        return {}

    wanted = {str(item.get("id")) for item in items}
    tags: dict[str, dict] = {}
    for entry in data.get("items") or []:
        item_id = str(entry.get("id"))
        if item_id not in wanted:
            continue
        sentiment = str(entry.get("sentiment") or "neutral").lower()
        tags[item_id] = {
            "topics": [str(t).lower() for t in (entry.get("topics") or [])][:5],
            "sentiment": sentiment if sentiment in SENTIMENTS else "neutral",
            "categories": [str(c) for c in (entry.get("categories") or [])][:3],
        }
    return tags


async def tag_batch(items: list[dict], model: str) -> tuple[dict[str, dict], LLMResult]:
    result = await extract_json(TAGGING_SYSTEM_PROMPT, _render_items(items), model=model)
    return parse_tags(result.text, items), result
