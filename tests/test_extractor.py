"""
Tests for the reasoning extractor (research_kg/research/extractor.py)

Uses the in-memory FakeKnowledgeStore so merge semantics and idempotence can
be checked on the resulting node set.
"""

import json
import os
import sys
import pytest
from unittest.mock import MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from research_kg.research.extractor import (
    ReasoningExtractor,
    extract_conclusion,
    parse_extraction_payload,
)
from research_kg.research.state import ResearchConfig
from research_kg.schemas.research import ReasoningChain, ResearchQuery, StepType, SubQuery
from research_kg.util.neo4j_client import node_id_for
from research_kg.util.services import ServiceNotConfigured
from tests.conftest import CORAL_EXTRACTION, CORAL_QUERY, CORAL_REASONING, EXTRACTION, FakeKnowledgeStore, ScriptedLLM


QUERY = ResearchQuery(text=CORAL_QUERY, max_steps=3, run_id="run-1")
SUB_QUERY = SubQuery(text="What environmental factors cause coral bleaching?", index=0)
CHAIN_ID = "reasoning-run-1-0"


@pytest.fixture
def store():
    return FakeKnowledgeStore()


@pytest.fixture
def extractor(store, embeddings, llm, fast_config):
    return ReasoningExtractor(store, embeddings, llm, fast_config)


# =============================================================================
# Chain Building
# =============================================================================

class TestBuildChain:

    def test_chain_is_addressed_by_run_and_sub_query(self, extractor):
        chain = extractor.build_chain(QUERY, SUB_QUERY, CORAL_REASONING)

        assert chain.chain_id == CHAIN_ID
        assert chain.run_id == "run-1"
        assert chain.sub_query_index == 0
        assert [s.step_type for s in chain.steps] == [StepType.PREMISE, StepType.EVIDENCE, StepType.CONCLUSION]

    def test_same_text_same_chain(self, extractor):
        first = extractor.build_chain(QUERY, SUB_QUERY, CORAL_REASONING)
        second = extractor.build_chain(QUERY, SUB_QUERY, CORAL_REASONING)

        assert first == second


# =============================================================================
# Extraction Payload
# =============================================================================

class TestParseExtractionPayload:
    """Boundary validation of LLM JSON."""

    def test_malformed_entries_dropped(self):
        concepts, entities = parse_extraction_payload(CORAL_EXTRACTION)

        assert [c.name for c in concepts] == ["Coral bleaching"]
        assert concepts[0].domain == "marine biology"
        assert [e.name for e in entities] == ["NOAA"]
        assert entities[0].type == "organization"

    def test_invalid_json(self):
        assert parse_extraction_payload("the model refused") == ([], [])

    def test_non_object_json(self):
        assert parse_extraction_payload('["a", "b"]') == ([], [])

    def test_caps_and_dedupes(self):
        raw = '{"concepts": [%s], "entities": []}' % ", ".join(
            '{"name": "Concept %d"}' % (i % 7) for i in range(12)
        )

        concepts, _ = parse_extraction_payload(raw, max_concepts=5)

        assert [c.name for c in concepts] == [f"Concept {i}" for i in range(5)]

    def test_long_text_fields_are_clipped_not_dropped(self):
        raw = json.dumps({
            "concepts": [{"name": "Thermal stress", "definition": "d" * 2500}],
            "entities": [{"name": "Great Barrier Reef", "type": "location", "description": "r" * 3000}],
        })

        concepts, entities = parse_extraction_payload(raw)

        assert [c.name for c in concepts] == ["Thermal stress"]
        assert concepts[0].definition == "d" * 2000
        assert [e.name for e in entities] == ["Great Barrier Reef"]
        assert len(entities[0].description) == 2000

    def test_null_fields_take_defaults(self):
        concepts, entities = parse_extraction_payload(
            '{"concepts": [{"name": "Heat stress", "definition": null}], '
            '"entities": [{"name": "Great Barrier Reef", "type": null}]}'
        )

        assert concepts[0].definition == ""
        assert entities[0].type == "other"


# =============================================================================
# Conclusion
# =============================================================================

class TestExtractConclusion:

    def _chain(self, text, steps=None):
        chain = ReasoningChain(chain_id="c", run_id="r", sub_query_index=0, sub_query="q", text=text)
        if steps is not None:
            chain.steps = steps
        return chain

    def test_latest_marker_wins(self):
        chain = self._chain("Thus heat matters. Overall, warming oceans drive bleaching.")

        assert extract_conclusion(chain) == "warming oceans drive bleaching."

    def test_conclusion_step_used_without_marker(self, extractor):
        chain = extractor.build_chain(QUERY, SUB_QUERY, "Heat rises.\n\nCorals whiten as algae leave.")

        assert extract_conclusion(chain) == "Corals whiten as algae leave."

    def test_last_sentences_as_last_resort(self):
        chain = self._chain("Heat rises. Algae leave. Corals whiten.", steps=[])

        assert extract_conclusion(chain) == "Algae leave. Corals whiten."

    def test_empty_text(self):
        assert extract_conclusion(self._chain("  ")) is None


# =============================================================================
# Persistence
# =============================================================================

class TestPersist:
    """Graph writes and failure isolation."""

    @pytest.mark.asyncio
    async def test_persists_chain_steps_items_and_proposition(self, extractor, store):
        chain = extractor.build_chain(QUERY, SUB_QUERY, CORAL_REASONING)

        report = await extractor.persist(chain)

        concept_id = node_id_for("Concept", "Coral bleaching")
        entity_id = node_id_for("Entity", "NOAA")
        proposition_id = f"proposition-{CHAIN_ID}"
        assert report.chain_persisted
        assert report.concepts == ["Coral bleaching"]
        assert report.entities == ["NOAA"]
        assert report.proposition.startswith("bleaching occurs when corals expel")
        assert report.errors == []
        assert store.keys() == {
            ("ReasoningChain", CHAIN_ID),
            ("ReasoningStep", f"{CHAIN_ID}-step-1"),
            ("ReasoningStep", f"{CHAIN_ID}-step-2"),
            ("ReasoningStep", f"{CHAIN_ID}-step-3"),
            ("Concept", "Coral bleaching"),
            ("Entity", "NOAA"),
            ("Proposition", proposition_id),
        }
        assert store.relationships == {
            (CHAIN_ID, "HAS_STEP", f"{CHAIN_ID}-step-1"),
            (CHAIN_ID, "HAS_STEP", f"{CHAIN_ID}-step-2"),
            (CHAIN_ID, "HAS_STEP", f"{CHAIN_ID}-step-3"),
            (f"{CHAIN_ID}-step-1", "PRECEDES", f"{CHAIN_ID}-step-2"),
            (f"{CHAIN_ID}-step-2", "PRECEDES", f"{CHAIN_ID}-step-3"),
            (CHAIN_ID, "REFERENCES", concept_id),
            (CHAIN_ID, "MENTIONS", entity_id),
            (CHAIN_ID, "SUPPORTS", proposition_id),
        }

    @pytest.mark.asyncio
    async def test_chain_node_properties(self, extractor, store):
        chain = extractor.build_chain(QUERY, SUB_QUERY, CORAL_REASONING)

        await extractor.persist(chain)

        node = store.nodes[("ReasoningChain", CHAIN_ID)]
        assert node["name"] == "Reasoning about: What environmental factors cause coral bleaching?"
        assert node["numberOfSteps"] == 3
        assert node["embedding"] == [0.1] * 8
        assert node["description"].endswith("...")
        step = store.nodes[("ReasoningStep", f"{CHAIN_ID}-step-2")]
        assert step["stepType"] == "evidence"
        assert step["order"] == 2

    @pytest.mark.asyncio
    async def test_extraction_is_idempotent(self, extractor, store):
        chain = extractor.build_chain(QUERY, SUB_QUERY, CORAL_REASONING)

        first = await extractor.persist(chain)
        keys_after_first = store.keys()
        relationships_after_first = set(store.relationships)
        second = await extractor.persist(extractor.build_chain(QUERY, SUB_QUERY, CORAL_REASONING))

        assert first.persisted_keys == second.persisted_keys
        assert store.keys() == keys_after_first
        assert store.relationships == relationships_after_first

    @pytest.mark.asyncio
    async def test_merge_keeps_longer_definition_and_fills_domain(self, extractor, store):
        store.upsert_node(
            "Concept",
            "Coral bleaching",
            {"definition": "Whitening of coral reefs caused by the expulsion of zooxanthellae under stress", "domain": None},
            prefer_longer=("definition",),
            fill_missing=("domain",),
        )

        await extractor.persist(extractor.build_chain(QUERY, SUB_QUERY, CORAL_REASONING))

        concept = store.nodes[("Concept", "Coral bleaching")]
        assert concept["definition"].startswith("Whitening of coral reefs")
        assert concept["domain"] == "marine biology"
        assert len([k for k in store.keys() if k[0] == "Concept"]) == 1

    @pytest.mark.asyncio
    async def test_case_variant_names_resolve_to_one_node(self, extractor, store):
        store.upsert_node("Concept", "coral BLEACHING", {"definition": "Whitening", "domain": None})

        report = await extractor.persist(extractor.build_chain(QUERY, SUB_QUERY, CORAL_REASONING))

        concepts = [key for key in store.keys() if key[0] == "Concept"]
        assert concepts == [("Concept", "coral BLEACHING")]
        assert store.nodes[concepts[0]]["domain"] == "marine biology"
        assert report.concepts == ["Coral bleaching"]
        concept_targets = {t for s, r, t in store.relationships if r == "REFERENCES"}
        assert concept_targets == {node_id_for("Concept", "Coral bleaching")}

    @pytest.mark.asyncio
    async def test_item_failure_is_isolated(self, extractor, store):
        store.fail_labels = {"Concept"}

        report = await extractor.persist(extractor.build_chain(QUERY, SUB_QUERY, CORAL_REASONING))

        assert report.chain_persisted
        assert ("ReasoningStep", f"{CHAIN_ID}-step-3") in store.keys()
        assert ("Entity", "NOAA") in store.keys()
        assert report.concepts == []
        assert any("Coral bleaching" in e for e in report.errors)

    @pytest.mark.asyncio
    async def test_chain_write_failure_raises(self, extractor, store):
        store.fail_labels = {"ReasoningChain"}

        with pytest.raises(RuntimeError):
            await extractor.persist(extractor.build_chain(QUERY, SUB_QUERY, CORAL_REASONING))

        assert store.keys() == set()

    @pytest.mark.asyncio
    async def test_extraction_llm_failure_keeps_chain(self, store, embeddings, fast_config):
        llm = ScriptedLLM(responses={EXTRACTION: RuntimeError("model down")})
        extractor = ReasoningExtractor(store, embeddings, llm, fast_config)

        report = await extractor.persist(extractor.build_chain(QUERY, SUB_QUERY, CORAL_REASONING))

        assert report.chain_persisted
        assert report.concepts == [] and report.entities == []
        assert ("ReasoningStep", f"{CHAIN_ID}-step-1") in store.keys()

    @pytest.mark.asyncio
    async def test_short_reasoning_has_no_proposition(self, extractor, store):
        report = await extractor.persist(extractor.build_chain(QUERY, SUB_QUERY, "Heat rises.\n\nThus corals whiten."))

        assert report.proposition is None
        assert not any(label == "Proposition" for label, _ in store.keys())

    @pytest.mark.asyncio
    async def test_embedding_failure_still_writes_chain(self, store, llm, fast_config):
        broken = MagicMock()
        broken.aembed.side_effect = RuntimeError("embedding service down")
        extractor = ReasoningExtractor(store, broken, llm, fast_config)

        report = await extractor.persist(extractor.build_chain(QUERY, SUB_QUERY, CORAL_REASONING))

        assert report.chain_persisted
        assert "embedding" not in store.nodes[("ReasoningChain", CHAIN_ID)]

    @pytest.mark.asyncio
    async def test_requires_knowledge_store(self, embeddings, llm):
        extractor = ReasoningExtractor(None, embeddings, llm, ResearchConfig())

        with pytest.raises(ServiceNotConfigured):
            await extractor.persist(extractor.build_chain(QUERY, SUB_QUERY, CORAL_REASONING))
