"""Research orchestration pipeline: plan, retrieve, reason, extract, synthesize."""

from .chain_parser import ChainParser, HeuristicChainParser, classify_step
from .condenser import ContextCondenser
from .extractor import ReasoningExtractor, extract_conclusion, parse_extraction_payload
from .generator import ReasoningGenerator
from .orchestrator import ResearchOrchestrator, run_research, start_research
from .planner import SubQueryPlanner
from .progress import ProgressChannel, ProgressReporter, ProgressSubscription, default_channel
from .retriever import ContextRetriever, format_context
from .state import ResearchConfig, ResearchState
from .synthesizer import Synthesizer, collect_citations, concatenate_findings

__all__ = [
    # Entrypoint
    "start_research",
    "run_research",
    "ResearchOrchestrator",
    # Configuration & state
    "ResearchConfig",
    "ResearchState",
    # Components
    "SubQueryPlanner",
    "ContextRetriever",
    "format_context",
    "ReasoningGenerator",
    "ContextCondenser",
    "ReasoningExtractor",
    "extract_conclusion",
    "parse_extraction_payload",
    "Synthesizer",
    "collect_citations",
    "concatenate_findings",
    # Chain parsing
    "ChainParser",
    "HeuristicChainParser",
    "classify_step",
    # Progress
    "ProgressChannel",
    "ProgressReporter",
    "ProgressSubscription",
    "default_channel",
]
