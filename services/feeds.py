# services/feeds.py
from __future__ import annotations

import hashlib
import io
import logging

import feedparser
import httpx

from api.app.config import get_settings

logger = logging.getLogger(__name__)

# Statuses that mean the feed is gone, not temporarily unavailable.
GONE_STATUSES = {404, 410}


class FeedGoneError(Exception):
    pass


class FeedParseError(Exception):
    pass


async def fetch_feed(url: str) -> bytes:
    settings = get_settings()
    async with httpx.AsyncClient(
        timeout=settings.feed_fetch_timeout_seconds,
        follow_redirects=True,
        headers={"User-Agent": settings.feed_user_agent},
    ) as client:
        response = await client.get(url)

    if response.status_code in GONE_STATUSES:
        raise FeedGoneError(f"Feed {url} returned {response.status_code}")
    response.raise_for_status()
    logger.info("Feed: fetched %s (%d bytes)", url, len(response.content))
    # Raw bytes so the parser can honour the document's own encoding
    return response.content


def _item_id(link: str, title: str) -> str:
    return hashlib.sha1(f"{link}|{title}".encode("utf-8")).hexdigest()[:16]


def _description(entry) -> str:
    if entry.get("summary"):
        return entry.summary
    content = entry.get("content") or []
    return content[0].get("value", "") if content else ""


def parse_feed(body: str | bytes) -> list[dict]:
    """
    Items of any RSS (0.9x, 1.0, 2.0) or Atom feed as
    {id, title, link, description}.
    """
    data = body.encode("utf-8") if isinstance(body, str) else body
    parsed = feedparser.parse(io.BytesIO(data))

    # Tolerate recoverable markup errors as long as entries came out
    if parsed.bozo and not parsed.entries:
        raise FeedParseError(str(parsed.get("bozo_exception", "unparseable feed")))

    items: list[dict] = []
    for entry in parsed.entries:
        title = (entry.get("title") or "").strip()
        link = (entry.get("link") or "").strip()
        items.append(
            {
                "id": (entry.get("id") or "").strip() or _item_id(link, title),
                "title": title,
                "link": link,
                "description": _description(entry).strip(),
            }
        )
    return items
