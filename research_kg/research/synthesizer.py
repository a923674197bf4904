"""
Synthesizer: combines partial results into the final answer.

One LLM call when at least one sub-query produced a usable answer; otherwise,
or when that call fails, the partial results are concatenated with a
References section appended.
"""

import asyncio
import logging
import os
from datetime import date
from typing import Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from research_kg.schemas.research import Citation, PartialResult, ResearchQuery
from .condenser import ContextCondenser
from .generator import split_content
from .prompts import (
    SYNTHESIS_SYSTEM_PROMPT,
    SYNTHESIS_USER_PROMPT,
    format_findings,
    format_references,
)
from .retriever import format_citation_title
from .state import ResearchConfig

logger = logging.getLogger(__name__)
VERBOSE = os.getenv("VERBOSE", "false").lower() == "true"


def log(msg: str):
    if VERBOSE:
        print(f"[Synthesizer] {msg}")


def collect_citations(partial_results: list[PartialResult], retrieved: Optional[date] = None) -> list[Citation]:
    """
    Web citations deduplicated by URL (first occurrence wins), followed by
    knowledge-graph citations deduplicated by node.
    """
    web = []
    graph = []
    seen_urls = set()
    seen_nodes = set()
    for pr in partial_results:
        context = pr.context
        if context is None:
            continue
        for source in context.web_sources:
            if source.url in seen_urls:
                continue
            seen_urls.add(source.url)
            web.append(Citation(
                title=format_citation_title(source, retrieved),
                url=source.url,
                source_type="web",
                sub_query_index=pr.sub_query.index,
            ))
        for match in context.knowledge_matches:
            key = match.id or f"{match.type}:{match.name}"
            if key in seen_nodes:
                continue
            seen_nodes.add(key)
            graph.append(Citation(
                title=f"{match.type}: {match.name}",
                source_type="knowledge_graph",
                sub_query_index=pr.sub_query.index,
            ))
    return web + graph


def concatenate_findings(query: ResearchQuery, partial_results: list[PartialResult], citations: list[Citation]) -> str:
    """Naive answer built directly from the partial results."""
    parts = [f"# Research Findings on: {query.text}"]
    if not partial_results:
        parts.append("No findings could be produced for this question.")
    for pr in partial_results:
        heading = f"## Finding {pr.sub_query.index + 1}: {pr.sub_query.text}"
        if pr.errored:
            heading += " (reduced confidence)"
        parts.append(f"{heading}\n\n{pr.answer}")

    web = [c for c in citations if c.source_type == "web"]
    if web:
        parts.append("## References\n\n" + format_references(web))
    return "\n\n".join(parts)


class Synthesizer:

    def __init__(
        self,
        llm: Optional[BaseChatModel],
        config: Optional[ResearchConfig] = None,
        condenser: Optional[ContextCondenser] = None,
    ):
        self.llm = llm
        self.config = config or ResearchConfig()
        self.condenser = condenser or ContextCondenser(llm, self.config)

    async def synthesize(
        self,
        query: ResearchQuery,
        partial_results: list[PartialResult],
        citations: list[Citation],
    ) -> tuple[str, bool]:
        """
        Returns (answer, used_fallback). Never raises except on cancellation.
        """
        usable = [pr for pr in partial_results if pr.usable]
        if self.llm is None or not usable:
            if self.llm is None:
                logger.warning("No synthesis model configured; concatenating findings")
            else:
                logger.warning("No usable findings to synthesize; concatenating findings")
            return concatenate_findings(query, partial_results, citations), True

        reasoning = await self.condenser.condense_reasoning(
            [pr.chain.text for pr in usable if pr.chain is not None]
        )
        prompt = SYNTHESIS_USER_PROMPT.format(
            query=query.text,
            findings=format_findings(usable, self.config.max_synthesis_chars),
            reasoning=reasoning,
            references=format_references(citations),
        )
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    self.llm.invoke,
                    [SystemMessage(content=SYNTHESIS_SYSTEM_PROMPT), HumanMessage(content=prompt)],
                ),
                timeout=self.config.synthesis_timeout,
            )
            answer, _ = split_content(response.content)
            answer = answer.strip()
            if answer:
                log(f"Synthesized {len(usable)} findings into {len(answer)} chars")
                return answer, False
            logger.warning("Synthesis returned an empty answer; concatenating findings")
        except Exception as e:
            logger.warning("Synthesis failed, falling back to concatenation: %s", e)

        return concatenate_findings(query, partial_results, citations), True
