"""
Reasoning Generator: wraps the reasoning and plain generation models.

Degradation ladder for one sub-query:
1. Reasoning mode, retried on transient errors up to the configured bound
2. Plain mode on the standard model
3. Placeholder result flagged UNAVAILABLE

generate() never raises (cancellation excepted).
"""

import asyncio
import logging
import os
import random
import re
from typing import Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from research_kg.schemas.research import (
    GenerationMode,
    GenerationResult,
    ResearchQuery,
    RetrievedContext,
    SubQuery,
)
from .condenser import ContextCondenser
from .prompts import (
    NO_CONTEXT_TEXT,
    PLAIN_SYSTEM_PROMPT,
    REASONING_SYSTEM_PROMPT,
    SUB_QUERY_USER_PROMPT,
    UNAVAILABLE_ANSWER,
)
from .retriever import format_context
from .state import ResearchConfig

logger = logging.getLogger(__name__)
VERBOSE = os.getenv("VERBOSE", "false").lower() == "true"


def log(msg: str):
    if VERBOSE:
        print(f"[Generator] {msg}")


REASONING_PATTERN = re.compile(r"REASONING:([\s\S]*?)(?=ANSWER:|$)", re.IGNORECASE)
ANSWER_PATTERN = re.compile(r"ANSWER:([\s\S]*)$", re.IGNORECASE)

_TRANSIENT_MARKERS = (
    "429", "rate limit", "rate_limit", "timeout", "timed out", "temporarily",
    "overloaded", "unavailable", "502", "503", "504", "connection",
)


def is_transient(error: BaseException) -> bool:
    """Timeouts, connection drops, rate limits and 5xx responses are worth retrying."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def split_content(content) -> tuple[str, str]:
    """
    Split a chat model response into (text, thinking).

    Providers with extended thinking return a list of content blocks; the
    thinking/reasoning blocks become the reasoning text.
    """
    if isinstance(content, str):
        return content, ""

    text_parts = []
    thinking_parts = []
    for block in content or []:
        if isinstance(block, str):
            text_parts.append(block)
        elif isinstance(block, dict):
            kind = block.get("type")
            if kind in ("thinking", "reasoning"):
                thinking_parts.append(block.get("thinking") or block.get("reasoning") or "")
            elif kind == "text":
                text_parts.append(block.get("text", ""))
    return "".join(text_parts), "\n\n".join(p for p in thinking_parts if p)


def parse_reasoning_response(content) -> tuple[str, str]:
    """
    Returns (answer, reasoning_text) from a reasoning-mode response.

    REASONING:/ANSWER: markers are honored when present. Without them the whole
    response serves as both the answer and the reasoning.
    """
    text, thinking = split_content(content)
    text = text.strip()

    reasoning_match = REASONING_PATTERN.search(text)
    answer_match = ANSWER_PATTERN.search(text)

    answer = answer_match.group(1).strip() if answer_match else text
    if thinking:
        reasoning = thinking.strip()
    elif reasoning_match:
        reasoning = reasoning_match.group(1).strip()
    else:
        reasoning = text
    return answer, reasoning


class ReasoningGenerator:
    """Runs the generation step for one sub-query."""

    def __init__(
        self,
        reasoning_llm: Optional[BaseChatModel],
        plain_llm: Optional[BaseChatModel],
        config: Optional[ResearchConfig] = None,
        condenser: Optional[ContextCondenser] = None,
    ):
        self.reasoning_llm = reasoning_llm
        self.plain_llm = plain_llm
        self.config = config or ResearchConfig()
        self.condenser = condenser or ContextCondenser(plain_llm, self.config)

    async def generate(
        self,
        sub_query: SubQuery,
        context: RetrievedContext,
        research_query: ResearchQuery,
        total_steps: int = 1,
    ) -> GenerationResult:
        context_text = format_context(
            context,
            max_chars=self.config.summarize_input_chars,
            max_source_chars=self.config.max_source_chars,
        )
        if context_text:
            context_text = await self.condenser.condense_context(context_text, research_query.text)
        else:
            context_text = NO_CONTEXT_TEXT
        user_prompt = SUB_QUERY_USER_PROMPT.format(
            query=research_query.text,
            sub_query=sub_query.text,
            context=context_text,
        )
        sources = [s.url for s in context.web_sources]

        if self.reasoning_llm is not None:
            system_prompt = REASONING_SYSTEM_PROMPT.format(step=sub_query.index + 1, total=total_steps)
            try:
                response = await self._invoke_with_retries(self.reasoning_llm, system_prompt, user_prompt)
                answer, reasoning = parse_reasoning_response(response.content)
                if answer:
                    return GenerationResult(
                        answer=answer,
                        reasoning_text=reasoning,
                        sources=sources,
                        mode=GenerationMode.REASONING,
                    )
                logger.warning("Reasoning model returned an empty answer for sub-query %d", sub_query.index)
            except Exception as e:
                logger.warning("Reasoning generation failed for sub-query %d: %s", sub_query.index, e)

        if self.plain_llm is not None:
            try:
                response = await asyncio.wait_for(
                    asyncio.to_thread(
                        self.plain_llm.invoke,
                        [SystemMessage(content=PLAIN_SYSTEM_PROMPT), HumanMessage(content=user_prompt)],
                    ),
                    timeout=self.config.generation_timeout,
                )
                answer, _ = split_content(response.content)
                if answer.strip():
                    log(f"Sub-query {sub_query.index} answered in plain mode")
                    return GenerationResult(
                        answer=answer.strip(),
                        sources=sources,
                        mode=GenerationMode.PLAIN,
                    )
            except Exception as e:
                logger.warning("Plain generation failed for sub-query %d: %s", sub_query.index, e)

        logger.error("Generation unavailable for sub-query %d", sub_query.index)
        return GenerationResult(answer=UNAVAILABLE_ANSWER, sources=sources, mode=GenerationMode.UNAVAILABLE)

    async def _invoke_with_retries(self, llm: BaseChatModel, system_prompt: str, user_prompt: str):
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]
        max_retries = max(self.config.generation_max_retries, 0)

        for attempt in range(max_retries + 1):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(llm.invoke, messages),
                    timeout=self.config.generation_timeout,
                )
            except Exception as e:
                if attempt >= max_retries or not is_transient(e):
                    raise
                sleep_for = min(self.config.retry_base_seconds * (2 ** attempt), self.config.retry_max_seconds)
                # Add jitter to avoid thundering herd retries.
                sleep_for *= 0.5 + (random.random() * 0.5)
                logger.warning("Transient generation error (attempt %d/%d): %s", attempt + 1, max_retries + 1, e)
                await asyncio.sleep(sleep_for)
