"""
Tests for summarizing oversized material (research_kg/research/condenser.py)
"""

import os
import sys
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from research_kg.research.condenser import TRUNCATION_MARKER, ContextCondenser
from research_kg.research.generator import ReasoningGenerator
from research_kg.research.prompts import NO_REASONING_TEXT
from research_kg.research.state import ResearchConfig
from research_kg.schemas.research import ResearchQuery, RetrievedContext, SubQuery, WebSource
from tests.conftest import CORAL_QUERY, CORAL_RESPONSE, REASONING, ScriptedLLM


CONTEXT_SUMMARY = "most relevant information from these search results"
REASONING_SUMMARY = "insights from these reasoning chains"


@pytest.fixture
def small_config():
    """Thresholds small enough to trigger summarization with short fixtures."""
    return ResearchConfig(
        summarize_threshold_chars=100,
        summarize_input_chars=300,
        max_context_chars=150,
        reasoning_excerpt_chars=40,
        reasoning_context_chars=60,
        summary_timeout=5.0,
    )


# =============================================================================
# Retrieved Context
# =============================================================================

class TestCondenseContext:

    @pytest.mark.asyncio
    async def test_small_context_passes_through(self, small_config):
        llm = ScriptedLLM(responses={CONTEXT_SUMMARY: "summary"})

        text = await ContextCondenser(llm, small_config).condense_context("short context", CORAL_QUERY)

        assert text == "short context"
        llm.invoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_oversized_context_is_summarized(self, small_config):
        llm = ScriptedLLM(responses={CONTEXT_SUMMARY: "Warming drives bleaching [1]."})
        context = "x" * 500

        text = await ContextCondenser(llm, small_config).condense_context(context, CORAL_QUERY)

        assert text == "Warming drives bleaching [1]."
        _, user = llm.invoke.call_args[0][0]
        assert CORAL_QUERY in user.content
        assert "x" * 300 in user.content
        assert "x" * 301 not in user.content

    @pytest.mark.asyncio
    async def test_failed_summary_truncates(self, small_config):
        llm = ScriptedLLM(responses={CONTEXT_SUMMARY: RuntimeError("model down")})

        text = await ContextCondenser(llm, small_config).condense_context("y" * 500, CORAL_QUERY)

        assert text == "y" * 150 + TRUNCATION_MARKER

    @pytest.mark.asyncio
    async def test_empty_summary_truncates(self, small_config):
        llm = ScriptedLLM(responses={CONTEXT_SUMMARY: "  "})

        text = await ContextCondenser(llm, small_config).condense_context("y" * 500, CORAL_QUERY)

        assert text.endswith(TRUNCATION_MARKER)

    @pytest.mark.asyncio
    async def test_no_model_truncates(self, small_config):
        text = await ContextCondenser(None, small_config).condense_context("y" * 500, CORAL_QUERY)

        assert text == "y" * 150 + TRUNCATION_MARKER


# =============================================================================
# Reasoning Chains
# =============================================================================

class TestCondenseReasoning:

    @pytest.mark.asyncio
    async def test_no_chains(self, small_config):
        llm = ScriptedLLM()

        assert await ContextCondenser(llm, small_config).condense_reasoning(["", "  "]) == NO_REASONING_TEXT
        llm.invoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_short_reasoning_is_joined(self, small_config):
        llm = ScriptedLLM()

        text = await ContextCondenser(llm, small_config).condense_reasoning(["Heat rises.", "Corals whiten."])

        assert text == "Heat rises.\n\nCorals whiten."
        llm.invoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_long_reasoning_summarized_from_excerpts(self, small_config):
        llm = ScriptedLLM(responses={REASONING_SUMMARY: "1. Heat is the main driver."})
        chains = ["a" * 80, "b" * 80]

        text = await ContextCondenser(llm, small_config).condense_reasoning(chains)

        assert text == "1. Heat is the main driver."
        _, user = llm.invoke.call_args[0][0]
        assert "a" * 40 + "\n\n---\n\n" + "b" * 40 in user.content
        assert "a" * 41 not in user.content

    @pytest.mark.asyncio
    async def test_failed_reasoning_summary_truncates_excerpts(self, small_config):
        llm = ScriptedLLM(responses={REASONING_SUMMARY: RuntimeError("503")})

        text = await ContextCondenser(llm, small_config).condense_reasoning(["a" * 80, "b" * 80])

        assert text.startswith("a" * 40 + "\n\n---\n\n")
        assert text.endswith(TRUNCATION_MARKER)
        assert len(text) == 60 + len(TRUNCATION_MARKER)


# =============================================================================
# Generator Integration
# =============================================================================

class TestGeneratorUsesCondensedContext:

    @pytest.mark.asyncio
    async def test_reasoning_prompt_carries_summary(self, small_config):
        plain = ScriptedLLM(responses={CONTEXT_SUMMARY: "Condensed: heat stress [1]."})
        reasoning = ScriptedLLM(responses={REASONING: CORAL_RESPONSE})
        context = RetrievedContext(
            sub_query_index=0,
            web_sources=[WebSource(title="NOAA", url="https://noaa.gov/a", snippet="z" * 120)],
        )

        await ReasoningGenerator(reasoning, plain, small_config).generate(
            SubQuery(text="What causes bleaching?", index=0),
            context,
            ResearchQuery(text=CORAL_QUERY, max_steps=3, run_id="run-1"),
        )

        _, user = reasoning.invoke.call_args[0][0]
        assert "Condensed: heat stress [1]." in user.content
        assert "z" * 120 not in user.content
