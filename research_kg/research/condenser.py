"""
Condenser: keeps oversized prompt material within what the models accept.

Material under the size threshold passes through untouched. Above it, the
standard model summarizes it; if that call fails or comes back empty, the
material is hard-truncated instead.
"""

import asyncio
import logging
import os
from typing import Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from .prompts import (
    CONTEXT_SUMMARY_SYSTEM_PROMPT,
    CONTEXT_SUMMARY_USER_PROMPT,
    NO_REASONING_TEXT,
    REASONING_SUMMARY_SYSTEM_PROMPT,
    REASONING_SUMMARY_USER_PROMPT,
)
from .state import ResearchConfig

logger = logging.getLogger(__name__)
VERBOSE = os.getenv("VERBOSE", "false").lower() == "true"


def log(msg: str):
    if VERBOSE:
        print(f"[Condenser] {msg}")


TRUNCATION_MARKER = "\n[context truncated]"


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


class ContextCondenser:
    """Summarizes retrieved context and reasoning chains past a size threshold."""

    def __init__(self, llm: Optional[BaseChatModel], config: Optional[ResearchConfig] = None):
        self.llm = llm
        self.config = config or ResearchConfig()

    async def condense_context(self, text: str, research_query: str) -> str:
        """Retrieved context for one sub-query."""
        if len(text) <= self.config.summarize_threshold_chars:
            return text

        prompt = CONTEXT_SUMMARY_USER_PROMPT.format(
            query=research_query,
            context=text[:self.config.summarize_input_chars],
        )
        summary = await self._summarize(CONTEXT_SUMMARY_SYSTEM_PROMPT, prompt, "context")
        if summary:
            log(f"Context condensed from {len(text)} to {len(summary)} chars")
            return summary
        return truncate(text, self.config.max_context_chars)

    async def condense_reasoning(self, chains: list[str]) -> str:
        """Reasoning texts of all sub-queries, for the synthesis prompt."""
        chains = [c.strip() for c in chains if c and c.strip()]
        if not chains:
            return NO_REASONING_TEXT

        joined = "\n\n".join(chains)
        if len(joined) <= self.config.summarize_threshold_chars:
            return truncate(joined, self.config.reasoning_context_chars)

        excerpts = "\n\n---\n\n".join(c[:self.config.reasoning_excerpt_chars] for c in chains)
        prompt = REASONING_SUMMARY_USER_PROMPT.format(chains=excerpts)
        summary = await self._summarize(REASONING_SUMMARY_SYSTEM_PROMPT, prompt, "reasoning")
        if summary:
            log(f"Reasoning condensed from {len(joined)} to {len(summary)} chars")
            return summary
        return truncate(excerpts, self.config.reasoning_context_chars)

    async def _summarize(self, system_prompt: str, user_prompt: str, what: str) -> str:
        if self.llm is None:
            logger.warning("No model to summarize oversized %s; truncating", what)
            return ""
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    self.llm.invoke,
                    [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)],
                ),
                timeout=self.config.summary_timeout,
            )
        except Exception as e:
            logger.warning("Summarizing oversized %s failed, truncating: %s", what, e)
            return ""
        content = response.content
        if not isinstance(content, str):
            content = "".join(
                block.get("text", "") if isinstance(block, dict) else str(block)
                for block in content or []
                if not isinstance(block, dict) or block.get("type") == "text"
            )
        return content.strip()
