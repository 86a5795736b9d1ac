"""Website insights: fetch a user's site and keep a compact digest in their profile.

The digest lands under ``profile.websiteInsights`` which the onboarding
milestone "Validate Website Findings" reads through its data path.
"""
from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import httpx
from lxml import etree, html as lxml_html

from wise365.config import get_settings
from wise365.progress import get_path

log = logging.getLogger(__name__)

_MAX_TEXT = 5_000
_MAX_HEADINGS = 20


def normalize_url(url: str) -> str:
    url = (url or "").strip()
    if url and not url.startswith(("http://", "https://")):
        url = "https://" + url
    return url


async def fetch_page(url: str) -> str:
    settings = get_settings()
    async with httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(settings.http_timeout_seconds),
        headers={"User-Agent": settings.user_agent},
    ) as client:
        resp = await client.get(url)
        resp.raise_for_status()
        return resp.text


def extract_insights(raw_html: str) -> dict[str, Any]:
    """Pull title, meta description, headings and body text out of HTML."""
    try:
        tree = lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return {}
    title = " ".join(tree.xpath("//title//text()")).strip()
    meta = " ".join(tree.xpath("//meta[@name='description']/@content")).strip()
    headings = [
        " ".join(h.text_content().split())
        for h in tree.xpath("//h1 | //h2 | //h3")
    ]
    paragraphs = " ".join(" ".join(tree.xpath("//p//text()")).split())
    return {
        "title": title,
        "description": meta,
        "headings": [h for h in headings if h][:_MAX_HEADINGS],
        "text": paragraphs[:_MAX_TEXT],
    }


async def collect_website_insights(profile: dict[str, Any]) -> dict[str, Any] | None:
    """Fetch ``basicInfo.website`` and return the insights dict, or None.

    Network and HTTP errors are logged and yield None.
    """
    url = normalize_url(str(get_path(profile, "basicInfo.website") or ""))
    if not url:
        return None
    try:
        raw_html = await fetch_page(url)
    except httpx.HTTPError as exc:
        log.warning("Failed to fetch %s: %s", url, exc)
        return None
    insights = extract_insights(raw_html)
    if not any(insights.values()):
        log.info("No readable content at %s", url)
        return None
    insights["url"] = url
    insights["fetched_at"] = datetime.now(UTC).isoformat()
    insights["validated"] = False
    return insights
