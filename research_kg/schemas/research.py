"""
Data model for a research run.

Runs produce these objects in memory; the knowledge store only ever sees the
chain/step/concept/entity/proposition writes made by the extractor.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


# =============================================================================
# Query & Planning
# =============================================================================

@dataclass(frozen=True)
class ResearchQuery:
    """The original question for one run."""
    text: str
    max_steps: int
    run_id: str

    def __post_init__(self):
        if self.max_steps < 1:
            raise ValueError("max_steps must be a positive integer")


@dataclass(frozen=True)
class SubQuery:
    """One focused question derived from the research query."""
    text: str
    index: int  # 0-based position within the run


# =============================================================================
# Retrieved Context
# =============================================================================

@dataclass
class KnowledgeMatch:
    """A knowledge-store node returned by vector search (never carries its embedding)."""
    id: Optional[str]
    name: str
    type: str
    score: float
    fields: dict = field(default_factory=dict)

    @property
    def content(self) -> str:
        """The type-specific text field most worth showing."""
        for key in ("thoughtContent", "definition", "description", "statement", "conclusion", "content"):
            value = self.fields.get(key)
            if value:
                return str(value)
        return ""


@dataclass
class WebSource:
    """A web search hit, optionally with extracted page text."""
    title: str
    url: str
    snippet: str = ""
    extracted_text: Optional[str] = None


@dataclass
class RetrievedContext:
    """
    Grounding for one sub-query.

    knowledge_error / web_error mark a half that failed. no_context is the explicit
    marker for "nothing retrieved"; it is set whenever both halves came back empty.
    """
    sub_query_index: int
    knowledge_matches: list[KnowledgeMatch] = field(default_factory=list)
    web_sources: list[WebSource] = field(default_factory=list)
    knowledge_error: Optional[str] = None
    web_error: Optional[str] = None
    no_context: bool = False

    @classmethod
    def empty(cls, sub_query_index: int, knowledge_error: str = None, web_error: str = None) -> "RetrievedContext":
        return cls(
            sub_query_index=sub_query_index,
            knowledge_error=knowledge_error,
            web_error=web_error,
            no_context=True,
        )

    @property
    def knowledge_missing(self) -> bool:
        return self.knowledge_error is not None

    @property
    def web_missing(self) -> bool:
        return self.web_error is not None

    @property
    def degraded(self) -> bool:
        return self.knowledge_missing or self.web_missing

    @property
    def is_empty(self) -> bool:
        return not self.knowledge_matches and not self.web_sources


# =============================================================================
# Generation
# =============================================================================

class GenerationMode(str, Enum):
    REASONING = "reasoning"
    PLAIN = "plain"
    UNAVAILABLE = "unavailable"


@dataclass
class GenerationResult:
    answer: str
    reasoning_text: str = ""
    sources: list[str] = field(default_factory=list)
    mode: GenerationMode = GenerationMode.REASONING

    @property
    def unavailable(self) -> bool:
        return self.mode == GenerationMode.UNAVAILABLE


# =============================================================================
# Reasoning Chains
# =============================================================================

class StepType(str, Enum):
    PREMISE = "premise"
    INFERENCE = "inference"
    EVIDENCE = "evidence"
    COUNTERARGUMENT = "counterargument"
    CONCLUSION = "conclusion"


@dataclass
class ReasoningStep:
    content: str
    position: int
    step_type: StepType
    # True when the type was confirmed by an explicit textual marker rather than position alone
    marked: bool = False


@dataclass
class ReasoningChain:
    chain_id: str
    run_id: str
    sub_query_index: int
    sub_query: str
    text: str
    steps: list[ReasoningStep] = field(default_factory=list)

    @property
    def conclusion_step(self) -> Optional[ReasoningStep]:
        for step in self.steps:
            if step.step_type == StepType.CONCLUSION:
                return step
        return None


@dataclass
class ExtractionReport:
    """What one extraction pass wrote to the knowledge store."""
    chain_id: str
    persisted_keys: set = field(default_factory=set)  # {(label, natural_key)}
    concepts: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)
    proposition: Optional[str] = None
    errors: list[str] = field(default_factory=list)

    @property
    def chain_persisted(self) -> bool:
        return ("ReasoningChain", self.chain_id) in self.persisted_keys


# =============================================================================
# Results
# =============================================================================

@dataclass
class Citation:
    title: str
    url: Optional[str] = None
    source_type: str = "web"  # "web" | "knowledge_graph"
    sub_query_index: Optional[int] = None


@dataclass
class PartialResult:
    """Outcome of one sub-query. errored marks reduced confidence."""
    sub_query: SubQuery
    answer: str
    chain: Optional[ReasoningChain] = None
    context: Optional[RetrievedContext] = None
    generation_mode: GenerationMode = GenerationMode.REASONING
    extraction: Optional[ExtractionReport] = None
    errored: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def usable(self) -> bool:
        return bool(self.answer) and self.generation_mode != GenerationMode.UNAVAILABLE


@dataclass
class ResearchResult:
    """Final result of a run. Not persisted by the pipeline."""
    query: ResearchQuery
    answer: str
    citations: list[Citation] = field(default_factory=list)
    chains: list[ReasoningChain] = field(default_factory=list)
    sub_queries: list[SubQuery] = field(default_factory=list)
    partial_results: list[PartialResult] = field(default_factory=list)
    synthesis_fallback: bool = False
    planning_time_ms: int = 0
    research_time_ms: int = 0
    synthesis_time_ms: int = 0

    @property
    def degraded(self) -> bool:
        return self.synthesis_fallback or any(pr.errored for pr in self.partial_results)

    @property
    def total_time_ms(self) -> int:
        return self.planning_time_ms + self.research_time_ms + self.synthesis_time_ms


# =============================================================================
# Progress
# =============================================================================

class ProgressStatus(str, Enum):
    INITIALIZING = "INITIALIZING"
    PLANNING = "PLANNING"
    SUBQUERY_START = "SUBQUERY_START"
    SUBQUERY_DONE = "SUBQUERY_DONE"
    SUBQUERY_ERROR = "SUBQUERY_ERROR"
    SYNTHESIZING = "SYNTHESIZING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def terminal(self) -> bool:
        return self in (ProgressStatus.COMPLETE, ProgressStatus.FAILED, ProgressStatus.CANCELLED)


@dataclass(frozen=True)
class ProgressEvent:
    run_id: str
    step_index: int   # strictly increasing per run
    total_steps: int  # number of sub-queries (0 until planned)
    status: ProgressStatus
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    sub_query_index: Optional[int] = None
    data: dict = field(default_factory=dict)
