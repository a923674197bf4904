"""
Configuration and graph state for the research orchestrator.
"""

import operator
import os
from dataclasses import dataclass, fields
from typing import Annotated, TypedDict

from research_kg.schemas.research import (
    Citation,
    PartialResult,
    ResearchQuery,
    SubQuery,
)
from research_kg.util.neo4j_client import CATEGORY_INDEXES


# === Configuration ===

@dataclass
class ResearchConfig:
    """
    Knobs for a research run. Every field can be overridden from the
    environment as RESEARCH_<FIELD_NAME> via from_env().
    """
    # Planning
    max_steps: int = 3
    check_clarification: bool = False

    # Knowledge store retrieval
    node_categories: tuple = tuple(CATEGORY_INDEXES)
    knowledge_top_k: int = 5
    knowledge_threshold: float = 0.3

    # Web retrieval
    web_max_results: int = 3
    detailed_web_content: bool = True
    deep_fetch_limit: int = 2

    # Timeouts (seconds) per external call
    embedding_timeout: float = 20.0
    knowledge_timeout: float = 20.0
    web_timeout: float = 30.0
    deep_fetch_timeout: float = 15.0
    generation_timeout: float = 120.0
    extraction_timeout: float = 60.0
    synthesis_timeout: float = 120.0

    # Generation retries
    generation_max_retries: int = 2
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 10.0

    # Context caps
    max_context_chars: int = 12000
    max_source_chars: int = 800
    max_synthesis_chars: int = 24000

    # Summarization of oversized context and reasoning
    summarize_threshold_chars: int = 10000
    summarize_input_chars: int = 20000
    summary_timeout: float = 60.0
    reasoning_excerpt_chars: int = 1500
    reasoning_context_chars: int = 6000

    # Extraction
    min_proposition_chars: int = 200
    max_concepts: int = 5
    max_entities: int = 5
    extraction_input_chars: int = 4000

    # Progress
    stream_reasoning: bool = True

    def __post_init__(self):
        if self.max_steps < 1:
            raise ValueError("max_steps must be a positive integer")
        # Deep fetch never covers more than the top 2 web sources
        self.deep_fetch_limit = max(0, min(self.deep_fetch_limit, 2))
        self.node_categories = tuple(c for c in self.node_categories if c in CATEGORY_INDEXES)

    @classmethod
    def from_env(cls, **overrides) -> "ResearchConfig":
        values = {}
        for f in fields(cls):
            raw = os.getenv(f"RESEARCH_{f.name.upper()}")
            if raw is None:
                continue
            default = f.default
            if isinstance(default, bool):
                values[f.name] = raw.lower() == "true"
            elif isinstance(default, int):
                values[f.name] = int(raw)
            elif isinstance(default, float):
                values[f.name] = float(raw)
            elif isinstance(default, tuple):
                values[f.name] = tuple(part.strip() for part in raw.split(",") if part.strip())
            else:
                values[f.name] = raw
        values.update(overrides)
        return cls(**values)


# === Graph State ===

class ResearchState(TypedDict):
    """State carried through the orchestrator graph."""
    query: ResearchQuery
    sub_queries: list[SubQuery]
    current_index: int
    partial_results: Annotated[list[PartialResult], operator.add]
    final_answer: str
    citations: list[Citation]
    synthesis_fallback: bool
    planning_time_ms: int
    research_time_ms: Annotated[int, operator.add]
    synthesis_time_ms: int
