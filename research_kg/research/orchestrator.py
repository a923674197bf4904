"""
Research Orchestrator
=====================

Drives one research run as a LangGraph state machine:

    plan -> process_sub_query (once per sub-query, sequential) -> synthesize

Progress is published on a run-partitioned channel:
    INITIALIZING -> PLANNING -> SUBQUERY_START / SUBQUERY_DONE|SUBQUERY_ERROR (per
    sub-query) -> SYNTHESIZING -> COMPLETE

FAILED marks a run that could not start (no client could be built).
Failures inside a sub-query degrade that sub-query's partial result and the run
moves on. Cancelling the run task emits CANCELLED and propagates.

Usage:
    task, progress = start_research("What causes coral bleaching?", max_steps=3)
    async for event in progress:
        print(event.status, event.message)
    result = await task

CLI:
    python -m research_kg.research.orchestrator "What causes coral bleaching?"
"""

import asyncio
import logging
import os
import time
import uuid
from typing import Literal, Optional

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph

from research_kg.schemas.research import (
    GenerationMode,
    PartialResult,
    ProgressStatus,
    ResearchQuery,
    ResearchResult,
    SubQuery,
)
from research_kg.util.services import FatalInitFailure, Services
from .chain_parser import ChainParser
from .condenser import ContextCondenser
from .extractor import ReasoningExtractor
from .generator import ReasoningGenerator
from .planner import SubQueryPlanner
from .progress import ProgressChannel, ProgressReporter, ProgressSubscription, default_channel
from .prompts import UNAVAILABLE_ANSWER
from .retriever import ContextRetriever
from .state import ResearchConfig, ResearchState
from .synthesizer import Synthesizer, collect_citations

logger = logging.getLogger(__name__)
VERBOSE = os.getenv("VERBOSE", "false").lower() == "true"


def log(msg: str):
    if VERBOSE:
        print(f"[Orchestrator] {msg}")


def _elapsed_ms(started: float) -> int:
    return int((time.time() - started) * 1000)


class ResearchOrchestrator:
    """
    Wires the pipeline components around an explicit Services container.

    Components are built once here; per-run state lives in the graph state and
    the ProgressReporter passed through the graph config.
    """

    def __init__(
        self,
        services: Services,
        config: Optional[ResearchConfig] = None,
        channel: Optional[ProgressChannel] = None,
        parser: Optional[ChainParser] = None,
    ):
        if not services.available():
            raise FatalInitFailure("No client available for the research pipeline")

        self.services = services
        self.config = config or ResearchConfig()
        self.channel = channel or default_channel()

        self.planner = SubQueryPlanner(services.llm, timeout=self.config.generation_timeout)
        self.retriever = ContextRetriever(services.neo4j, services.embeddings, services.web_search, self.config)
        self.condenser = ContextCondenser(services.llm, self.config)
        self.generator = ReasoningGenerator(services.reasoning_llm, services.llm, self.config, self.condenser)
        self.extractor = ReasoningExtractor(services.neo4j, services.embeddings, services.llm, self.config, parser)
        self.synthesizer = Synthesizer(services.llm, self.config, self.condenser)

        self.graph = self._build_graph()

    # =========================================================================
    # Graph
    # =========================================================================

    def _build_graph(self):
        graph = StateGraph(ResearchState)

        graph.add_node("plan", self._plan_node)
        graph.add_node("process_sub_query", self._process_sub_query_node)
        graph.add_node("synthesize", self._synthesize_node)

        graph.add_edge(START, "plan")
        graph.add_conditional_edges(
            "plan",
            self._next_step,
            {"process_sub_query": "process_sub_query", "synthesize": "synthesize"},
        )
        graph.add_conditional_edges(
            "process_sub_query",
            self._next_step,
            {"process_sub_query": "process_sub_query", "synthesize": "synthesize"},
        )
        graph.add_edge("synthesize", END)

        return graph.compile()

    @staticmethod
    def _next_step(state: ResearchState) -> Literal["process_sub_query", "synthesize"]:
        if state["current_index"] < len(state["sub_queries"]):
            return "process_sub_query"
        return "synthesize"

    @staticmethod
    def _reporter(config: RunnableConfig) -> ProgressReporter:
        return config["configurable"]["reporter"]

    async def _plan_node(self, state: ResearchState, config: RunnableConfig) -> dict:
        reporter = self._reporter(config)
        query = state["query"]
        started = time.time()

        reporter.emit(ProgressStatus.PLANNING, f'Planning research for: "{query.text}"')

        if self.config.check_clarification and await self.planner.needs_clarification(query):
            reporter.emit(
                ProgressStatus.PLANNING,
                "The question could be more specific; continuing with best assumptions",
                data={"needs_clarification": True},
            )

        sub_queries = await self.planner.plan(query)
        reporter.total_steps = len(sub_queries)
        reporter.emit(
            ProgressStatus.PLANNING,
            f"Planned {len(sub_queries)} sub-question(s)",
            data={"sub_queries": [sq.text for sq in sub_queries]},
        )

        return {
            "sub_queries": sub_queries,
            "current_index": 0,
            "planning_time_ms": _elapsed_ms(started),
        }

    async def _process_sub_query_node(self, state: ResearchState, config: RunnableConfig) -> dict:
        reporter = self._reporter(config)
        query = state["query"]
        sub_queries = state["sub_queries"]
        index = state["current_index"]
        sub_query = sub_queries[index]
        started = time.time()

        reporter.emit(
            ProgressStatus.SUBQUERY_START,
            f"Researching sub-question {index + 1} of {len(sub_queries)}: {sub_query.text}",
            sub_query_index=index,
        )

        try:
            result = await self.research_sub_query(query, sub_query, len(sub_queries))
        except Exception as e:
            logger.error("Sub-query %d failed: %s", index, e)
            result = PartialResult(
                sub_query=sub_query,
                answer=UNAVAILABLE_ANSWER,
                chain=self.extractor.build_chain(query, sub_query, UNAVAILABLE_ANSWER),
                generation_mode=GenerationMode.UNAVAILABLE,
                errored=True,
                errors=[f"{type(e).__name__}: {e}"],
            )

        data = {
            "answer": result.answer,
            "generation_mode": result.generation_mode.value,
            "errors": list(result.errors),
        }
        if self.config.stream_reasoning and result.chain is not None:
            data["reasoning"] = result.chain.text
        reporter.emit(
            ProgressStatus.SUBQUERY_ERROR if result.errored else ProgressStatus.SUBQUERY_DONE,
            f"Finished sub-question {index + 1} of {len(sub_queries)}"
            + (" with reduced confidence" if result.errored else ""),
            sub_query_index=index,
            data=data,
        )

        return {
            "partial_results": [result],
            "current_index": index + 1,
            "research_time_ms": _elapsed_ms(started),
        }

    async def _synthesize_node(self, state: ResearchState, config: RunnableConfig) -> dict:
        reporter = self._reporter(config)
        started = time.time()
        partial_results = state["partial_results"]

        reporter.emit(ProgressStatus.SYNTHESIZING, f"Synthesizing {len(partial_results)} finding(s)")

        citations = collect_citations(partial_results)
        answer, fallback = await self.synthesizer.synthesize(state["query"], partial_results, citations)

        return {
            "final_answer": answer,
            "citations": citations,
            "synthesis_fallback": fallback,
            "synthesis_time_ms": _elapsed_ms(started),
        }

    # =========================================================================
    # One Sub-Query
    # =========================================================================

    async def research_sub_query(self, query: ResearchQuery, sub_query: SubQuery, total: int) -> PartialResult:
        """
        Retrieve, generate, then parse and persist the reasoning for one sub-query.

        Every failure is recorded on the PartialResult rather than raised.
        """
        errors = []

        context = await self.retriever.retrieve(sub_query, query)
        if context.knowledge_missing:
            errors.append(f"knowledge store: {context.knowledge_error}")
        if context.web_missing:
            errors.append(f"web search: {context.web_error}")

        generation = await self.generator.generate(sub_query, context, query, total)
        if generation.mode != GenerationMode.REASONING:
            errors.append(f"generation: {generation.mode.value} mode")

        chain = self.extractor.build_chain(query, sub_query, generation.reasoning_text or generation.answer)

        extraction = None
        if not generation.unavailable:
            try:
                extraction = await self.extractor.persist(chain)
                errors.extend(extraction.errors)
            except Exception as e:
                logger.warning("Persisting reasoning for sub-query %d failed: %s", sub_query.index, e)
                errors.append(f"extraction: {e}")

        return PartialResult(
            sub_query=sub_query,
            answer=generation.answer,
            chain=chain,
            context=context,
            generation_mode=generation.mode,
            extraction=extraction,
            errored=bool(errors),
            errors=errors,
        )

    # =========================================================================
    # Run
    # =========================================================================

    async def run(self, query: ResearchQuery, reporter: Optional[ProgressReporter] = None) -> ResearchResult:
        """
        Run the graph to completion and publish the terminal event.

        Always returns a ResearchResult. CancelledError propagates after a
        CANCELLED event is published.
        """
        reporter = reporter or ProgressReporter(self.channel, query.run_id)
        initial: ResearchState = {
            "query": query,
            "sub_queries": [],
            "current_index": 0,
            "partial_results": [],
            "final_answer": "",
            "citations": [],
            "synthesis_fallback": False,
            "planning_time_ms": 0,
            "research_time_ms": 0,
            "synthesis_time_ms": 0,
        }

        try:
            final = await self.graph.ainvoke(
                initial,
                config={
                    "configurable": {"reporter": reporter},
                    # plan + one node per sub-query + synthesize, with headroom
                    "recursion_limit": query.max_steps + 10,
                },
            )
        except asyncio.CancelledError:
            if not reporter.finished:
                reporter.emit(ProgressStatus.CANCELLED, "Research cancelled")
            raise
        except Exception as e:
            logger.exception("Research run %s aborted", query.run_id)
            reporter.emit(ProgressStatus.FAILED, f"Research failed: {e}")
            raise

        partial_results = final["partial_results"]
        result = ResearchResult(
            query=query,
            answer=final["final_answer"],
            citations=final["citations"],
            chains=[pr.chain for pr in partial_results if pr.chain is not None],
            sub_queries=final["sub_queries"],
            partial_results=partial_results,
            synthesis_fallback=final["synthesis_fallback"],
            planning_time_ms=final["planning_time_ms"],
            research_time_ms=final["research_time_ms"],
            synthesis_time_ms=final["synthesis_time_ms"],
        )

        reporter.emit(
            ProgressStatus.COMPLETE,
            "Research complete" + (" (degraded)" if result.degraded else ""),
            data={
                "answer": result.answer,
                "citations": len(result.citations),
                "degraded": result.degraded,
                "total_time_ms": result.total_time_ms,
            },
        )
        log(f"[{query.run_id}] Completed in {result.total_time_ms}ms")
        return result


# =============================================================================
# Entrypoint
# =============================================================================

async def _run(
    query: ResearchQuery,
    reporter: ProgressReporter,
    services: Optional[Services],
    config: ResearchConfig,
    channel: ProgressChannel,
    parser: Optional[ChainParser],
) -> ResearchResult:
    owns_services = services is None
    try:
        reporter.emit(ProgressStatus.INITIALIZING, "Initializing research services")
        try:
            if services is None:
                services = Services.from_env()
            orchestrator = ResearchOrchestrator(services, config, channel, parser)
        except FatalInitFailure as e:
            logger.error("Research run %s cannot start: %s", query.run_id, e)
            reporter.emit(ProgressStatus.FAILED, f"Initialization failed: {e}")
            raise
        except Exception as e:
            logger.exception("Research run %s cannot start", query.run_id)
            reporter.emit(ProgressStatus.FAILED, f"Initialization failed: {e}")
            raise FatalInitFailure(f"Pipeline setup failed: {e}") from e
        return await orchestrator.run(query, reporter)
    except asyncio.CancelledError:
        if not reporter.finished:
            reporter.emit(ProgressStatus.CANCELLED, "Research cancelled")
        raise
    except Exception as e:
        if not reporter.finished:
            reporter.emit(ProgressStatus.FAILED, f"Research failed: {e}")
        raise
    finally:
        if owns_services and services is not None:
            services.close()


def start_research(
    query: str,
    max_steps: Optional[int] = None,
    run_id: Optional[str] = None,
    *,
    services: Optional[Services] = None,
    config: Optional[ResearchConfig] = None,
    channel: Optional[ProgressChannel] = None,
    parser: Optional[ChainParser] = None,
) -> tuple["asyncio.Task[ResearchResult]", ProgressSubscription]:
    """
    Start a research run on the running event loop.

    The progress subscription is registered before the run is scheduled, so it
    sees every event from INITIALIZING to the terminal event.

    Args:
        query: The research question
        max_steps: Upper bound on sub-queries (defaults to config.max_steps)
        run_id: Run identifier (generated when omitted)
        services: Pre-built clients (built from the environment when omitted)
        config: Pipeline settings (defaults to ResearchConfig.from_env())
        channel: Progress channel (defaults to the process-wide channel)
        parser: ChainParser override

    Returns:
        (task resolving to the ResearchResult, progress stream)
    """
    if not query or not query.strip():
        raise ValueError("query must not be empty")

    config = config or ResearchConfig.from_env()
    channel = channel or default_channel()
    research_query = ResearchQuery(
        text=query.strip(),
        max_steps=max_steps if max_steps is not None else config.max_steps,
        run_id=run_id or uuid.uuid4().hex,
    )

    subscription = channel.subscribe(research_query.run_id)
    reporter = ProgressReporter(channel, research_query.run_id)
    task = asyncio.get_running_loop().create_task(
        _run(research_query, reporter, services, config, channel, parser),
        name=f"research-{research_query.run_id}",
    )
    task.add_done_callback(lambda _: subscription.detach())
    return task, subscription


async def run_research(query: str, max_steps: Optional[int] = None, run_id: Optional[str] = None, **kwargs) -> ResearchResult:
    """Run a research query to completion without consuming progress."""
    task, subscription = start_research(query, max_steps, run_id, **kwargs)
    try:
        return await task
    finally:
        subscription.close()


# =============================================================================
# CLI
# =============================================================================

async def _cli(question: str, max_steps: Optional[int]) -> ResearchResult:
    task, progress = start_research(question, max_steps)
    async for event in progress:
        step = f"{event.sub_query_index + 1}/{event.total_steps} " if event.sub_query_index is not None else ""
        print(f"[{event.status.value}] {step}{event.message}")
    return await task


def main():
    """CLI entry point for a single research run."""
    import argparse

    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO if VERBOSE else logging.WARNING)

    parser = argparse.ArgumentParser(description="Research a question against the knowledge graph and the web")
    parser.add_argument("question", type=str, help="Research question")
    parser.add_argument("--max-steps", "-n", type=int, default=None, help="Maximum number of sub-questions")
    args = parser.parse_args()

    result = asyncio.run(_cli(args.question, args.max_steps))

    print("\n" + "=" * 60)
    print(result.answer)
    print("=" * 60)
    print(f"Sub-questions: {len(result.sub_queries)} | Citations: {len(result.citations)} | "
          f"Total: {result.total_time_ms}ms" + (" | degraded" if result.degraded else ""))


if __name__ == "__main__":
    main()
