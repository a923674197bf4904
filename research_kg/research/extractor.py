"""
MODULE: Reasoning Extractor
DESCRIPTION: Turns the reasoning text of one sub-query into structured knowledge.

Per chain:
1. Parse the text into typed steps (ChainParser)
2. MERGE the ReasoningChain and its ReasoningSteps (HAS_STEP, PRECEDES)
3. Ask the LLM for up to N concepts and N entities, validate each entry,
   MERGE them by name and link them (REFERENCES, MENTIONS)
4. For substantial reasoning, derive a Proposition from the conclusion (SUPPORTS)

Every write is an upsert keyed by a natural key, so re-running extraction on the
same text leaves the same set of nodes. Item failures are isolated: a bad
concept or a failed write is logged and skipped without touching what was
already written.
"""

import asyncio
import json
import logging
import os
import re
from typing import Optional

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import ValidationError

from research_kg.schemas.extraction import (
    ExtractedConcept,
    ExtractedEntity,
    ExtractedProposition,
    extracted_item_adapter,
)
from research_kg.schemas.research import (
    ExtractionReport,
    ReasoningChain,
    ResearchQuery,
    SubQuery,
)
from research_kg.util.embeddings import EmbeddingClient
from research_kg.util.neo4j_client import Neo4jClient
from research_kg.util.services import ServiceNotConfigured
from .chain_parser import ChainParser, HeuristicChainParser
from .generator import split_content
from .prompts import EXTRACTION_SYSTEM_PROMPT, EXTRACTION_USER_PROMPT
from .state import ResearchConfig

logger = logging.getLogger(__name__)
VERBOSE = os.getenv("VERBOSE", "false").lower() == "true"


def log(msg: str):
    if VERBOSE:
        print(f"[Extractor] {msg}")


CONCLUSION_PATTERN = re.compile(
    r"\b(in conclusion|to conclude|therefore|thus|in summary|overall)\b[,:]?\s*",
    re.IGNORECASE,
)
SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
JSON_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)

MAX_CONCLUSION_CHARS = 1000


def chain_id_for(run_id: str, sub_query_index: int) -> str:
    return f"reasoning-{run_id}-{sub_query_index}"


def step_id_for(chain_id: str, position: int) -> str:
    return f"{chain_id}-step-{position + 1}"


def proposition_id_for(chain_id: str) -> str:
    return f"proposition-{chain_id}"


def parse_extraction_payload(raw: str, max_concepts: int = 5, max_entities: int = 5):
    """
    Parse the extraction LLM output into validated concepts and entities.

    Malformed JSON yields nothing. Each entry is validated on its own; invalid
    entries are dropped with a warning. Names are deduplicated case-insensitively.
    """
    text = raw.strip()
    fenced = JSON_FENCE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    else:
        start, end = text.find("{"), text.rfind("}")
        if start != -1 and end > start:
            text = text[start:end + 1]

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("Extraction output is not valid JSON: %s", e)
        return [], []
    if not isinstance(payload, dict):
        logger.warning("Extraction output is not a JSON object")
        return [], []

    concepts: list[ExtractedConcept] = []
    entities: list[ExtractedEntity] = []
    seen = set()
    for kind, entries in (("concept", payload.get("concepts")), ("entity", payload.get("entities"))):
        if not isinstance(entries, list):
            continue
        for entry in entries:
            if not isinstance(entry, dict):
                logger.warning("Dropping non-object %s entry: %r", kind, entry)
                continue
            candidate = {k: v for k, v in entry.items() if v is not None}
            candidate["kind"] = kind
            try:
                item = extracted_item_adapter.validate_python(candidate)
            except ValidationError as e:
                logger.warning("Dropping malformed %s entry: %s", kind, e.errors()[0].get("msg"))
                continue

            key = (kind, item.name.lower())
            if key in seen:
                continue
            seen.add(key)
            if isinstance(item, ExtractedConcept) and len(concepts) < max_concepts:
                concepts.append(item)
            elif isinstance(item, ExtractedEntity) and len(entities) < max_entities:
                entities.append(item)

    return concepts, entities


def extract_conclusion(chain: ReasoningChain) -> Optional[str]:
    """
    The chain's conclusion statement.

    Looks for the last explicit conclusion marker first, then the
    conclusion-typed step, then the last one or two sentences.
    """
    text = chain.text.strip()
    if not text:
        return None

    markers = list(CONCLUSION_PATTERN.finditer(text))
    if markers:
        tail = text[markers[-1].end():].strip()
        if tail:
            return tail[:MAX_CONCLUSION_CHARS]

    step = chain.conclusion_step
    if step is not None and step.content.strip():
        return step.content.strip()[:MAX_CONCLUSION_CHARS]

    sentences = [s.strip() for s in SENTENCE_SPLIT.split(text) if s.strip()]
    return " ".join(sentences[-2:])[:MAX_CONCLUSION_CHARS] if sentences else None


class ReasoningExtractor:
    """Parses, extracts and persists one reasoning chain per sub-query."""

    def __init__(
        self,
        neo4j: Optional[Neo4jClient],
        embeddings: Optional[EmbeddingClient] = None,
        llm: Optional[BaseChatModel] = None,
        config: Optional[ResearchConfig] = None,
        parser: Optional[ChainParser] = None,
    ):
        self.neo4j = neo4j
        self.embeddings = embeddings
        self.llm = llm
        self.config = config or ResearchConfig()
        self.parser = parser or HeuristicChainParser()

    # =========================================================================
    # Parsing
    # =========================================================================

    def build_chain(self, research_query: ResearchQuery, sub_query: SubQuery, text: str) -> ReasoningChain:
        """Parse reasoning text into a chain addressed by run and sub-query."""
        text = (text or "").strip()
        steps = self.parser.parse(text)
        return ReasoningChain(
            chain_id=chain_id_for(research_query.run_id, sub_query.index),
            run_id=research_query.run_id,
            sub_query_index=sub_query.index,
            sub_query=sub_query.text,
            text=text,
            steps=steps,
        )

    async def extract_items(self, text: str) -> tuple[list[ExtractedConcept], list[ExtractedEntity]]:
        """Ask the LLM for concepts and entities. Failure yields empty lists."""
        if self.llm is None:
            logger.warning("No extraction model configured; skipping concept/entity extraction")
            return [], []

        prompt = EXTRACTION_USER_PROMPT.format(
            reasoning=text[:self.config.extraction_input_chars],
            max_concepts=self.config.max_concepts,
            max_entities=self.config.max_entities,
        )
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    self.llm.invoke,
                    [SystemMessage(content=EXTRACTION_SYSTEM_PROMPT), HumanMessage(content=prompt)],
                ),
                timeout=self.config.extraction_timeout,
            )
        except Exception as e:
            logger.warning("Concept/entity extraction failed: %s", e)
            return [], []

        raw, _ = split_content(response.content)
        return parse_extraction_payload(raw, self.config.max_concepts, self.config.max_entities)

    # =========================================================================
    # Persistence
    # =========================================================================

    async def persist(self, chain: ReasoningChain) -> ExtractionReport:
        """
        Write the chain, its steps, extracted items and proposition.

        Raises ServiceNotConfigured without a knowledge store, and re-raises a
        failure to write the chain node itself (nothing else can be linked).
        Everything after the chain node is isolated per item.
        """
        if self.neo4j is None:
            raise ServiceNotConfigured("Knowledge store not configured")

        report = ExtractionReport(chain_id=chain.chain_id)

        await self._write_chain(chain)
        report.persisted_keys.add(("ReasoningChain", chain.chain_id))

        previous_id = None
        for step in chain.steps:
            step_id = step_id_for(chain.chain_id, step.position)
            try:
                await self._write_step(chain, step, step_id, previous_id)
                report.persisted_keys.add(("ReasoningStep", step_id))
                previous_id = step_id
            except Exception as e:
                logger.warning("Failed to persist step %s: %s", step_id, e)
                report.errors.append(f"step {step.position}: {e}")

        concepts, entities = await self.extract_items(chain.text)
        for concept in concepts:
            try:
                await self._write_concept(chain.chain_id, concept)
                report.persisted_keys.add(("Concept", concept.name))
                report.concepts.append(concept.name)
            except Exception as e:
                logger.warning("Failed to persist concept %r: %s", concept.name, e)
                report.errors.append(f"concept {concept.name}: {e}")
        for entity in entities:
            try:
                await self._write_entity(chain.chain_id, entity)
                report.persisted_keys.add(("Entity", entity.name))
                report.entities.append(entity.name)
            except Exception as e:
                logger.warning("Failed to persist entity %r: %s", entity.name, e)
                report.errors.append(f"entity {entity.name}: {e}")

        if len(chain.text) > self.config.min_proposition_chars:
            statement = extract_conclusion(chain)
            if statement:
                proposition = ExtractedProposition(statement=statement)
                proposition_id = proposition_id_for(chain.chain_id)
                try:
                    await self._write_proposition(chain.chain_id, proposition_id, proposition)
                    report.persisted_keys.add(("Proposition", proposition_id))
                    report.proposition = statement
                except Exception as e:
                    logger.warning("Failed to persist proposition for %s: %s", chain.chain_id, e)
                    report.errors.append(f"proposition: {e}")

        log(
            f"{chain.chain_id}: {len(chain.steps)} steps, {len(report.concepts)} concepts, "
            f"{len(report.entities)} entities, proposition={'yes' if report.proposition else 'no'}"
        )
        return report

    async def _write_chain(self, chain: ReasoningChain) -> None:
        embedding = None
        if self.embeddings is not None and chain.text:
            try:
                embedding = await self.embeddings.aembed(chain.text, timeout=self.config.embedding_timeout)
            except Exception as e:
                logger.info("Chain embedding skipped for %s: %s", chain.chain_id, e)

        name = chain.sub_query[:50] + ("..." if len(chain.sub_query) > 50 else "")
        conclusion = chain.conclusion_step
        properties = {
            "name": f"Reasoning about: {name}",
            "description": chain.text[:200] + ("..." if len(chain.text) > 200 else ""),
            "runId": chain.run_id,
            "subQueryIndex": chain.sub_query_index,
            "numberOfSteps": len(chain.steps),
            "conclusion": conclusion.content[:MAX_CONCLUSION_CHARS] if conclusion else None,
        }
        if embedding is not None:
            properties["embedding"] = embedding
        await asyncio.to_thread(self.neo4j.upsert_node, "ReasoningChain", chain.chain_id, properties, "id")

    async def _write_step(self, chain: ReasoningChain, step, step_id: str, previous_id: Optional[str]) -> None:
        properties = {
            "name": f"Step {step.position + 1}",
            "content": step.content,
            "stepType": step.step_type.value,
            "order": step.position + 1,
            "chainId": chain.chain_id,
        }
        await asyncio.to_thread(self.neo4j.upsert_node, "ReasoningStep", step_id, properties, "id")
        await asyncio.to_thread(
            self.neo4j.upsert_relationship, chain.chain_id, step_id, "HAS_STEP", "ReasoningChain", "ReasoningStep"
        )
        if previous_id is not None:
            await asyncio.to_thread(
                self.neo4j.upsert_relationship, previous_id, step_id, "PRECEDES", "ReasoningStep", "ReasoningStep"
            )

    async def _write_concept(self, chain_id: str, concept: ExtractedConcept) -> None:
        node_id = await asyncio.to_thread(
            self.neo4j.upsert_node,
            "Concept",
            concept.name,
            {"definition": concept.definition, "domain": concept.domain},
            "name",
            ("definition",),
            ("domain",),
        )
        await asyncio.to_thread(
            self.neo4j.upsert_relationship, chain_id, node_id, "REFERENCES", "ReasoningChain", "Concept"
        )

    async def _write_entity(self, chain_id: str, entity: ExtractedEntity) -> None:
        node_id = await asyncio.to_thread(
            self.neo4j.upsert_node,
            "Entity",
            entity.name,
            {"type": entity.type, "description": entity.description},
            "name",
            ("description",),
            ("type",),
        )
        await asyncio.to_thread(
            self.neo4j.upsert_relationship, chain_id, node_id, "MENTIONS", "ReasoningChain", "Entity"
        )

    async def _write_proposition(self, chain_id: str, proposition_id: str, proposition: ExtractedProposition) -> None:
        properties = {
            "name": proposition.name,
            "statement": proposition.statement,
            "status": proposition.status,
            "confidence": proposition.confidence,
        }
        await asyncio.to_thread(self.neo4j.upsert_node, "Proposition", proposition_id, properties, "id")
        await asyncio.to_thread(
            self.neo4j.upsert_relationship, chain_id, proposition_id, "SUPPORTS", "ReasoningChain", "Proposition"
        )
