"""
Shared test fixtures for the research_kg test suite.

Every external service is faked: no network, no database.
"""

import os
import sys
import pytest
from unittest.mock import MagicMock

from langchain_core.messages import AIMessage

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from research_kg.schemas.extraction import ClarificationCheck, SubQueryPlan
from research_kg.util.embeddings import EmbeddingClient
from research_kg.util.neo4j_client import CATEGORY_INDEXES, node_id_for
from research_kg.util.services import Services


# =============================================================================
# Sample Test Data
# =============================================================================

CORAL_QUERY = "What causes coral bleaching?"

CORAL_SUB_QUERIES = [
    "What is coral bleaching?",
    "What environmental factors cause it?",
    "How is it mitigated?",
]

CORAL_REASONING = (
    "Rising sea temperatures stress coral symbionts [1].\n\n"
    "According to NOAA, marine heatwaves have become more frequent and longer lasting.\n\n"
    "Therefore bleaching occurs when corals expel their symbiotic algae under prolonged heat stress, "
    "which explains the widespread bleaching events observed over recent decades."
)

CORAL_RESPONSE = (
    f"REASONING:\n{CORAL_REASONING}\n\n"
    "ANSWER:\nCoral bleaching is caused mainly by rising sea temperatures that disrupt the coral-algae symbiosis [1]."
)

CORAL_EXTRACTION = """```json
{
  "concepts": [
    {"name": "Coral bleaching", "definition": "Loss of symbiotic algae from coral tissue", "domain": "marine biology"},
    {"name": "   ", "definition": "blank name"},
    "not an object"
  ],
  "entities": [
    {"name": "NOAA", "type": "organization", "description": "US ocean and atmosphere agency"},
    {"type": "person"}
  ]
}
```"""

CORAL_WEB_RESULTS = [
    {
        "title": "Coral bleaching explained",
        "url": "https://www.noaa.gov/coral-bleaching",
        "snippet": "When water is too warm, corals expel the algae living in their tissues.",
    },
    {
        "title": "Heat stress and reefs",
        "url": "https://example.org/reefs",
        "snippet": "Marine heatwaves drive mass bleaching.",
    },
]

# System prompt fragments used to route ScriptedLLM replies
REASONING = "creating a reasoning chain"
PLAIN = "answering a focused research sub-question"
EXTRACTION = "extraction assistant"
SYNTHESIS = "comprehensive research report"


# =============================================================================
# Fakes
# =============================================================================

class FakeKnowledgeStore:
    """
    In-memory stand-in for Neo4jClient with the same MERGE semantics:
    one node per (label, normalized natural key), longer text wins, missing fields filled.
    """

    def __init__(self, matches: dict = None):
        self.nodes = {}
        self.relationships = set()
        self._ids = {}
        self.matches = matches or {}
        self.fail_labels = set()
        self.fail_categories = set()
        self.upsert_calls = 0

    def vector_search(self, category, query_vector, top_k=5, threshold=0.0):
        if category not in CATEGORY_INDEXES:
            raise ValueError(f"No vector index for category '{category}'")
        if category in self.fail_categories:
            raise RuntimeError(f"index {category} offline")
        records = [r for r in self.matches.get(category, []) if r["score"] >= threshold]
        return [dict(r) for r in records[:top_k]]

    def upsert_node(self, label, natural_key, properties, key_field="name", prefer_longer=(), fill_missing=()):
        self.upsert_calls += 1
        if label in self.fail_labels:
            raise RuntimeError(f"write to {label} rejected")

        props = {k: v for k, v in properties.items() if k not in (key_field, "id")}
        node_id = natural_key if key_field == "id" else properties.get("id") or node_id_for(label, natural_key)
        key = self._ids.setdefault((label, node_id), (label, natural_key))
        existing = self.nodes.get(key)
        if existing is None:
            self.nodes[key] = {**props, "id": node_id, key_field: natural_key}
        else:
            for name, value in props.items():
                if name in prefer_longer:
                    if existing.get(name) is None or (value is not None and len(existing[name]) < len(value)):
                        existing[name] = value
                elif name in fill_missing:
                    if existing.get(name) is None:
                        existing[name] = value
                else:
                    existing[name] = value
        return self.nodes[key]["id"]

    def upsert_relationship(self, source_id, target_id, rel_type, source_label=None, target_label=None):
        self.relationships.add((source_id, rel_type, target_id))

    def keys(self) -> set:
        return set(self.nodes)

    def close(self):
        pass


class ScriptedLLM:
    """
    Chat model stand-in. invoke() answers by matching a fragment of the system
    prompt; an Exception value is raised instead of returned.
    """

    def __init__(self, responses: dict = None, default: str = "Mocked response", plan=None, clarification=False):
        self.responses = responses or {}
        self.default = default
        self.plan = plan
        self.clarification = clarification
        self.invoke = MagicMock(side_effect=self._respond)

    def _respond(self, messages):
        system = messages[0].content if messages else ""
        for fragment, reply in self.responses.items():
            if fragment in system:
                if isinstance(reply, BaseException):
                    raise reply
                if callable(reply):
                    reply = reply(messages)
                return AIMessage(content=reply)
        return AIMessage(content=self.default)

    def with_structured_output(self, schema):
        structured = MagicMock()
        if schema is SubQueryPlan:
            def plan(messages):
                if isinstance(self.plan, BaseException):
                    raise self.plan
                return SubQueryPlan(sub_queries=list(self.plan or []))
            structured.invoke.side_effect = plan
        elif schema is ClarificationCheck:
            structured.invoke.return_value = ClarificationCheck(needs_clarification=self.clarification)
        return structured


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def knowledge_store():
    """Fake knowledge store with one Concept match."""
    return FakeKnowledgeStore(matches={
        "Concept": [{
            "id": "concept-1",
            "name": "Coral bleaching",
            "type": "Concept",
            "score": 0.91,
            "fields": {"definition": "Whitening of corals caused by loss of symbiotic algae"},
        }],
    })


@pytest.fixture
def mock_embedding_model():
    """Create a mock langchain embeddings model."""
    mock = MagicMock()
    mock.embed_query.return_value = [0.1] * 8
    return mock


@pytest.fixture
def embeddings(mock_embedding_model):
    return EmbeddingClient(mock_embedding_model)


@pytest.fixture
def mock_web_search():
    """Create a mock web search client."""
    mock = MagicMock()
    mock.search.return_value = [dict(r) for r in CORAL_WEB_RESULTS]
    mock.deep_fetch.return_value = "Full article text about coral bleaching and ocean heat."
    return mock


@pytest.fixture
def llm():
    """Standard model: planning, plain answers, extraction, synthesis."""
    return ScriptedLLM(
        responses={
            EXTRACTION: CORAL_EXTRACTION,
            SYNTHESIS: "Coral bleaching is driven by ocean warming [1].\n\nReferences\n[1] Coral bleaching explained",
            PLAIN: "Plain answer about coral bleaching.",
        },
        plan=CORAL_SUB_QUERIES,
    )


@pytest.fixture
def reasoning_llm():
    return ScriptedLLM(responses={REASONING: CORAL_RESPONSE})


@pytest.fixture
def services(knowledge_store, mock_web_search, embeddings, llm, reasoning_llm):
    """Services container wired to fakes."""
    return Services(
        neo4j=knowledge_store,
        web_search=mock_web_search,
        embeddings=embeddings,
        llm=llm,
        reasoning_llm=reasoning_llm,
    )


@pytest.fixture
def fast_config():
    """Config with short timeouts and no retry sleeps."""
    from research_kg.research.state import ResearchConfig

    return ResearchConfig(
        retry_base_seconds=0.0,
        retry_max_seconds=0.0,
        embedding_timeout=5.0,
        knowledge_timeout=5.0,
        web_timeout=5.0,
        deep_fetch_timeout=5.0,
        generation_timeout=5.0,
        extraction_timeout=5.0,
        synthesis_timeout=5.0,
        summary_timeout=5.0,
    )


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "requires_llm: marks tests that require actual LLM calls"
    )
    config.addinivalue_line(
        "markers", "requires_neo4j: marks tests that require Neo4j connection"
    )
