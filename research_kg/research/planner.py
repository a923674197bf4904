"""
Planner: decomposes a research question into focused sub-queries.

Planning runs once per run. Any failure, or an empty decomposition, yields a
single sub-query holding the original question verbatim.
"""

import asyncio
import logging
import os
from typing import Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from research_kg.schemas.extraction import ClarificationCheck, SubQueryPlan
from research_kg.schemas.research import ResearchQuery, SubQuery
from .prompts import (
    CLARIFICATION_SYSTEM_PROMPT,
    PLANNER_SYSTEM_PROMPT,
    PLANNER_USER_PROMPT,
)

logger = logging.getLogger(__name__)
VERBOSE = os.getenv("VERBOSE", "false").lower() == "true"


def log(msg: str):
    if VERBOSE:
        print(f"[Planner] {msg}")


class SubQueryPlanner:
    """Turns a ResearchQuery into 1..max_steps SubQuery objects."""

    def __init__(self, llm: Optional[BaseChatModel], timeout: float = 60.0):
        self.llm = llm
        self.timeout = timeout
        # Bound on first use; models without structured output fail inside plan()
        self.planner = None

    async def plan(self, query: ResearchQuery) -> list[SubQuery]:
        texts = []
        if self.llm is None:
            logger.warning("No planning model configured; using the original question")
        else:
            messages = [
                SystemMessage(content=PLANNER_SYSTEM_PROMPT.format(max_steps=query.max_steps)),
                HumanMessage(content=PLANNER_USER_PROMPT.format(query=query.text)),
            ]
            try:
                if self.planner is None:
                    self.planner = self.llm.with_structured_output(SubQueryPlan)
                result = await asyncio.wait_for(
                    asyncio.to_thread(self.planner.invoke, messages),
                    timeout=self.timeout,
                )
                texts = self._clean(result.sub_queries if result else [])
            except Exception as e:
                logger.warning("Sub-query planning failed: %s", e)
                texts = []

        if not texts:
            texts = [query.text]

        sub_queries = [SubQuery(text=t, index=i) for i, t in enumerate(texts[:query.max_steps])]
        log(f"Planned {len(sub_queries)} sub-queries")
        return sub_queries

    @staticmethod
    def _clean(candidates: list) -> list[str]:
        seen = set()
        texts = []
        for candidate in candidates:
            if not isinstance(candidate, str):
                continue
            text = candidate.strip()
            if not text or text.lower() in seen:
                continue
            seen.add(text.lower())
            texts.append(text)
        return texts

    async def needs_clarification(self, query: ResearchQuery) -> bool:
        """Advisory check only; never blocks the run."""
        if self.llm is None:
            return False
        try:
            checker = self.llm.with_structured_output(ClarificationCheck)
            result = await asyncio.wait_for(
                asyncio.to_thread(
                    checker.invoke,
                    [SystemMessage(content=CLARIFICATION_SYSTEM_PROMPT), HumanMessage(content=query.text)],
                ),
                timeout=self.timeout,
            )
            return bool(result and result.needs_clarification)
        except Exception as e:
            logger.warning("Clarification check failed: %s", e)
            return False
