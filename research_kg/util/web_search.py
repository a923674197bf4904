"""
MODULE: Web Search Client
DESCRIPTION: Keyword web search and best-effort page content extraction via Tavily.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from tavily import TavilyClient

load_dotenv()

logger = logging.getLogger(__name__)


class WebSearchClient:
    """Thin adapter over TavilyClient returning plain title/url/snippet dicts."""

    def __init__(self, api_key: Optional[str] = None, search_depth: str = "basic", client: Optional[TavilyClient] = None):
        if client is None:
            api_key = api_key or os.getenv("TAVILY_API_KEY")
            if not api_key:
                raise EnvironmentError("TAVILY_API_KEY not set in environment.")
            client = TavilyClient(api_key=api_key)
        self._client = client
        self._search_depth = search_depth

    def search(self, query: str, max_results: int = 5) -> list[dict]:
        """Return up to max_results sources as {title, url, snippet}."""
        logger.info("Web search for %s", query)
        response = self._client.search(
            query=query,
            max_results=max_results,
            search_depth=self._search_depth,
        )
        sources = []
        for item in (response or {}).get("results", [])[:max_results]:
            url = item.get("url")
            if not url:
                continue
            sources.append({
                "title": item.get("title") or "Untitled",
                "url": url,
                "snippet": item.get("content") or "",
            })
        return sources

    def deep_fetch(self, url: str) -> str:
        """Return the extracted page text for url. Raises when nothing could be extracted."""
        response = self._client.extract(urls=[url])
        for item in (response or {}).get("results", []):
            text = item.get("raw_content")
            if text:
                return text
        raise ValueError(f"No content extracted from {url}")
