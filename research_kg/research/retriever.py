"""
Context Retriever: gathers grounding for one sub-query.

The knowledge-store vector search and the web search run concurrently, each
under its own timeout. A failed half is flagged and the other half is kept;
if both fail the result is the explicit empty-context marker. Nothing here
raises to the caller.
"""

import asyncio
import logging
import math
import os
from datetime import date
from typing import Optional
from urllib.parse import urlparse

from research_kg.schemas.research import (
    KnowledgeMatch,
    ResearchQuery,
    RetrievedContext,
    SubQuery,
    WebSource,
)
from research_kg.util.embeddings import EmbeddingClient
from research_kg.util.neo4j_client import Neo4jClient
from research_kg.util.services import ServiceNotConfigured
from research_kg.util.web_search import WebSearchClient
from .state import ResearchConfig

logger = logging.getLogger(__name__)
VERBOSE = os.getenv("VERBOSE", "false").lower() == "true"


def log(msg: str):
    if VERBOSE:
        print(f"[Retriever] {msg}")


def _describe(error: BaseException) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return "timed out"
    return f"{type(error).__name__}: {error}"


class ContextRetriever:
    """Fan-out/fan-in retrieval over the knowledge store and the web."""

    def __init__(
        self,
        neo4j: Optional[Neo4jClient],
        embeddings: Optional[EmbeddingClient],
        web_search: Optional[WebSearchClient],
        config: Optional[ResearchConfig] = None,
    ):
        self.neo4j = neo4j
        self.embeddings = embeddings
        self.web_search = web_search
        self.config = config or ResearchConfig()

    async def retrieve(
        self,
        sub_query: SubQuery,
        research_query: Optional[ResearchQuery] = None,
        detailed: Optional[bool] = None,
    ) -> RetrievedContext:
        """
        Retrieve context for a sub-query.

        Args:
            sub_query: The sub-query to ground
            research_query: The run's original question (used in logs only)
            detailed: Fetch extended text for the top web sources (defaults to config)

        Returns:
            RetrievedContext, possibly degraded or marked no_context
        """
        if detailed is None:
            detailed = self.config.detailed_web_content

        knowledge, web = await asyncio.gather(
            asyncio.wait_for(self.search_knowledge(sub_query.text), timeout=self.config.knowledge_timeout),
            asyncio.wait_for(self.search_web(sub_query.text, detailed), timeout=self.config.web_timeout),
            return_exceptions=True,
        )

        knowledge_error = None
        web_error = None
        if isinstance(knowledge, BaseException):
            if isinstance(knowledge, asyncio.CancelledError):
                raise knowledge
            knowledge_error = _describe(knowledge)
            logger.warning("Knowledge-store search failed for sub-query %d: %s", sub_query.index, knowledge_error)
            knowledge = []
        if isinstance(web, BaseException):
            if isinstance(web, asyncio.CancelledError):
                raise web
            web_error = _describe(web)
            logger.warning("Web search failed for sub-query %d: %s", sub_query.index, web_error)
            web = []

        if knowledge_error and web_error:
            return RetrievedContext.empty(sub_query.index, knowledge_error=knowledge_error, web_error=web_error)

        context = RetrievedContext(
            sub_query_index=sub_query.index,
            knowledge_matches=knowledge,
            web_sources=web,
            knowledge_error=knowledge_error,
            web_error=web_error,
        )
        context.no_context = context.is_empty
        run = research_query.run_id if research_query else "-"
        log(f"[{run}] Sub-query {sub_query.index}: {len(knowledge)} graph matches, {len(web)} web sources")
        return context

    # =========================================================================
    # Knowledge Store
    # =========================================================================

    async def search_knowledge(self, text: str) -> list[KnowledgeMatch]:
        """Vector search across the configured categories, merged and re-ranked by score."""
        if self.neo4j is None or self.embeddings is None:
            raise ServiceNotConfigured("Knowledge store or embedding client not configured")

        categories = list(self.config.node_categories)
        if not categories:
            raise ValueError("No valid node categories configured for semantic search")

        vector = await self.embeddings.aembed(text, timeout=self.config.embedding_timeout)
        limit = self.config.knowledge_top_k
        per_category = max(1, math.ceil(limit / len(categories)))

        results = await asyncio.gather(
            *[
                asyncio.to_thread(
                    self.neo4j.vector_search,
                    category,
                    vector,
                    per_category,
                    self.config.knowledge_threshold,
                )
                for category in categories
            ],
            return_exceptions=True,
        )

        merged = {}
        failures = 0
        for category, result in zip(categories, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                failures += 1
                logger.warning("Vector search on %s failed: %s", category, result)
                continue
            for record in result:
                match = KnowledgeMatch(
                    id=record.get("id"),
                    name=record.get("name") or "Unnamed",
                    type=record.get("type") or category,
                    score=min(max(float(record.get("score") or 0.0), 0.0), 1.0),
                    fields={k: v for k, v in (record.get("fields") or {}).items() if k != "embedding"},
                )
                key = match.id or f"{match.type}:{match.name}"
                if key not in merged or merged[key].score < match.score:
                    merged[key] = match

        if failures == len(categories):
            raise RuntimeError("Vector search failed for every category")

        ranked = sorted(merged.values(), key=lambda m: m.score, reverse=True)
        return ranked[:limit]

    # =========================================================================
    # Web
    # =========================================================================

    async def search_web(self, text: str, detailed: bool = False) -> list[WebSource]:
        if self.web_search is None:
            raise ServiceNotConfigured("Web search client not configured")

        records = await asyncio.to_thread(self.web_search.search, text, self.config.web_max_results)
        sources = [
            WebSource(title=r.get("title") or "Untitled", url=r["url"], snippet=r.get("snippet") or "")
            for r in records
            if r.get("url")
        ]

        if detailed and sources and self.config.deep_fetch_limit > 0:
            await self._deep_fetch(sources[:self.config.deep_fetch_limit])
        return sources

    async def _deep_fetch(self, sources: list[WebSource]) -> None:
        """Fill extracted_text on each source; failures leave the snippet only."""
        results = await asyncio.gather(
            *[
                asyncio.wait_for(
                    asyncio.to_thread(self.web_search.deep_fetch, source.url),
                    timeout=self.config.deep_fetch_timeout,
                )
                for source in sources
            ],
            return_exceptions=True,
        )
        for source, result in zip(sources, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.info("Deep fetch failed for %s: %s", source.url, _describe(result))
                continue
            source.extracted_text = result


# =============================================================================
# Formatting
# =============================================================================

def format_context(context: RetrievedContext, max_chars: int = 12000, max_source_chars: int = 800) -> str:
    """
    Render a context bundle as prompt text, capped at max_chars.

    Web sources are numbered so answers can cite them as [n].
    """
    if context.no_context:
        return ""

    sections = []
    if context.web_sources:
        lines = ["From web search:"]
        for i, source in enumerate(context.web_sources, 1):
            body = source.extracted_text or source.snippet or "No snippet available"
            if len(body) > max_source_chars:
                body = body[:max_source_chars] + "..."
            lines.append(f"[{i}] {source.title}\nURL: {source.url}\n{body}")
        sections.append("\n\n".join(lines))
    elif context.web_missing:
        sections.append("Web search unavailable for this sub-question.")

    if context.knowledge_matches:
        lines = ["From knowledge graph:"]
        for match in context.knowledge_matches:
            content = match.content
            if len(content) > max_source_chars:
                content = content[:max_source_chars] + "..."
            lines.append(f'- {match.type}: "{match.name}" (Relevance: {match.score * 100:.1f}%)\n  {content}')
        sections.append("\n".join(lines))
    elif context.knowledge_missing:
        sections.append("Knowledge graph unavailable for this sub-question.")

    text = "\n\n".join(sections)
    if len(text) > max_chars:
        text = text[:max_chars] + "\n[context truncated]"
    return text


def format_citation_title(source: WebSource, retrieved: Optional[date] = None) -> str:
    """Academic-style reference line for a web source."""
    retrieved = retrieved or date.today()
    domain = urlparse(source.url).hostname or source.url
    if domain.startswith("www."):
        domain = domain[4:]
    return f"{source.title}. (Retrieved {retrieved.strftime('%Y, %B')} {retrieved.day}). {domain[:1].upper() + domain[1:]}"
