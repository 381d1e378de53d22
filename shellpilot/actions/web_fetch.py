"""Web fetch action for retrieving readable page text."""

import re
from typing import Any
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup

from shellpilot.actions.registry import Action, ActionResult
from shellpilot.logging import get_logger

log = get_logger(__name__)


def extract_readable_text(html: str, base_url: str | None = None) -> str:
    """Extract human-readable text from raw HTML, keeping link targets inline."""
    soup = BeautifulSoup(html, "html.parser")

    for tag in soup(["script", "style", "noscript", "template", "svg", "canvas"]):
        tag.decompose()

    for anchor in soup.find_all("a"):
        href = (anchor.get("href") or "").strip()
        if not href:
            continue
        absolute = urljoin(base_url, href) if base_url else href
        label = anchor.get_text(" ", strip=True)
        anchor.replace_with(f"{label} ({absolute})" if label else absolute)

    title = soup.title.string.strip() if soup.title and soup.title.string else ""
    lines = [
        cleaned
        for line in soup.get_text(separator="\n").splitlines()
        if (cleaned := re.sub(r"\s+", " ", line).strip())
    ]
    text = "\n".join(lines)
    if title and not text.startswith(title):
        return f"{title}\n\n{text}" if text else title
    return text


class WebFetchAction(Action):
    """Fetch web page content."""

    name = "web_fetch"
    description = "Fetch and extract readable content from a URL."
    parameters = {
        "type": "object",
        "properties": {
            "url": {"type": "string", "description": "URL to fetch"},
            "max_chars": {"type": "number", "description": "Maximum characters to return"},
        },
        "required": ["url"],
    }

    def __init__(self, max_chars: int = 20_000, transport: httpx.AsyncBaseTransport | None = None):
        self.max_chars = max(1, int(max_chars))
        self.client = httpx.AsyncClient(
            timeout=25.0,
            follow_redirects=True,
            headers={"User-Agent": "shellpilot/0.1 (web_fetch)"},
            transport=transport,
        )

    async def execute(self, url: str, max_chars: int | None = None, **kwargs: Any) -> ActionResult:
        limit = self.max_chars if max_chars is None else max(1, int(max_chars))
        log.info("Fetching URL", url=url)
        try:
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            log.error("HTTP fetch failed", url=url, error=str(e))
            return ActionResult(success=False, error=f"HTTP error: {e}")

        content_type = response.headers.get("content-type", "")
        if "html" in content_type or not content_type:
            content = extract_readable_text(response.text, base_url=str(response.url))
        else:
            content = response.text
        if len(content) > limit:
            content = content[:limit] + "\n... [truncated]"

        return ActionResult(
            success=True,
            output=f"[URL: {url}]\n[Status: {response.status_code}]\n\n{content}",
        )

    async def close(self) -> None:
        await self.client.aclose()
