"""
MODULE: Neo4j Client
DESCRIPTION: Knowledge store client. Vector search over per-category indexes and
             idempotent MERGE-based writes for nodes and relationships.
"""

import os
import random
import re
import time
import uuid
import warnings
from typing import Optional

from neo4j import GraphDatabase
from neo4j.exceptions import ServiceUnavailable, SessionExpired, TransientError
from dotenv import load_dotenv

load_dotenv()

# Suppress Neo4j "property does not exist" warnings (harmless on empty DBs)
warnings.filterwarnings("ignore", message=".*property.*does not exist.*")

# Node category -> dedicated vector index
CATEGORY_INDEXES = {
    "Concept": "concept-embeddings",
    "Entity": "entity-embeddings",
    "Person": "person-embeddings",
    "Proposition": "proposition-embeddings",
    "ReasoningChain": "reasoningchain-embeddings",
    "Thought": "thought-embeddings",
}

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Stable namespace so the same (label, key) always maps to the same node id
_NODE_ID_NAMESPACE = uuid.UUID("6f1c2a4e-5b3d-4e8f-9a7c-1d2e3f4a5b6c")


def _check_identifier(value: str, what: str) -> str:
    if not value or not _IDENTIFIER.match(value):
        raise ValueError(f"Invalid {what}: {value!r}")
    return value


def node_id_for(label: str, key_value: str) -> str:
    """Deterministic node id for a natural key."""
    digest = uuid.uuid5(_NODE_ID_NAMESPACE, f"{label}:{key_value.strip().lower()}")
    return f"{label.lower()}-{digest.hex[:12]}"


class Neo4jClient:
    def __init__(self, uri: str = None, username: str = None, password: str = None):
        uri = uri or os.getenv("NEO4J_URI")
        username = username or os.getenv("NEO4J_USERNAME")
        password = password or os.getenv("NEO4J_PASSWORD")

        if not all([uri, username, password]):
            raise ValueError("Missing Neo4j credentials in .env")

        self._uri = uri
        self._auth = (username, password)
        self._max_retries = int(os.getenv("NEO4J_MAX_RETRIES", "5"))
        self._retry_base_seconds = float(os.getenv("NEO4J_RETRY_BASE_SECONDS", "2.0"))
        self._retry_max_seconds = float(os.getenv("NEO4J_RETRY_MAX_SECONDS", "30"))

        self.driver = GraphDatabase.driver(
            self._uri,
            auth=self._auth,
            max_connection_lifetime=3 * 60 * 60,
            max_connection_pool_size=50,
            connection_acquisition_timeout=120,
        )

    def close(self):
        self.driver.close()

    def _reconnect(self):
        """Force a new driver/connection pool."""
        try:
            self.driver.close()
        finally:
            self.driver = GraphDatabase.driver(self._uri, auth=self._auth)

    def query(self, cypher: str, params: dict = None):
        """Executes a Cypher query and returns the result."""
        params = params or {}
        max_retries = max(self._max_retries, 0)

        for attempt in range(max_retries + 1):
            try:
                with self.driver.session() as session:
                    result = session.run(cypher, params)
                    return [record.data() for record in result]
            except (SessionExpired, ServiceUnavailable, TransientError) as e:
                if attempt >= max_retries:
                    raise
                # Reconnect on dropped/defunct connections.
                if isinstance(e, (SessionExpired, ServiceUnavailable)):
                    self._reconnect()
                sleep_for = min(self._retry_base_seconds * (2 ** attempt), self._retry_max_seconds)
                # Add jitter to avoid thundering herd retries.
                sleep_for *= 0.5 + (random.random() * 0.5)
                time.sleep(sleep_for)

    def verify_connectivity(self) -> bool:
        self.driver.verify_connectivity()
        return True

    def vector_search(
        self,
        category: str,
        query_vector: list,
        top_k: int = 5,
        threshold: float = 0.0,
    ) -> list[dict]:
        """
        Vector search over one node category's dedicated index.

        Returns dicts with id, name, type, score and the node's remaining
        properties. The embedding property is never returned.
        """
        index_name = CATEGORY_INDEXES.get(category)
        if index_name is None:
            raise ValueError(f"No vector index for category '{category}'")

        cypher = """
        CALL db.index.vector.queryNodes($index_name, $top_k, $query_vector)
        YIELD node, score
        WHERE score >= $threshold
        RETURN node {.*, embedding: null} AS node, score
        ORDER BY score DESC
        """
        records = self.query(cypher, {
            "index_name": index_name,
            "top_k": top_k,
            "query_vector": query_vector,
            "threshold": threshold,
        })

        matches = []
        for record in records:
            properties = dict(record.get("node") or {})
            properties.pop("embedding", None)
            matches.append({
                "id": properties.pop("id", None),
                "name": properties.pop("name", None) or "Unnamed",
                "type": category,
                "score": float(record.get("score") or 0.0),
                "fields": properties,
            })
        return matches

    def upsert_node(
        self,
        label: str,
        natural_key: str,
        properties: dict,
        key_field: str = "name",
        prefer_longer: tuple = (),
        fill_missing: tuple = (),
    ) -> str:
        """
        MERGE a node by its natural key and return its id.

        The MERGE matches on the id derived from the normalized key, so case and
        whitespace variants of a name resolve to one node. The first spelling
        written is kept in key_field.

        Args:
            label: Node label
            natural_key: Value of the natural key
            properties: Properties to write
            key_field: Property holding the natural key
            prefer_longer: Text properties that keep whichever value is longer on match
            fill_missing: Properties only written on match when currently null
        """
        _check_identifier(label, "label")
        _check_identifier(key_field, "key field")

        props = {k: v for k, v in properties.items() if k not in (key_field, "id")}
        if key_field == "id":
            node_id = natural_key
        else:
            node_id = properties.get("id") or node_id_for(label, natural_key)
        overwrite = {k: v for k, v in props.items() if k not in prefer_longer and k not in fill_missing}

        match_sets = ["n += $overwrite"]
        params = {
            "key": natural_key,
            "id": node_id,
            "overwrite": overwrite,
            "all_props": props,
        }
        for i, name in enumerate(prefer_longer):
            _check_identifier(name, "property")
            params[f"p{i}"] = props.get(name)
            match_sets.append(
                f"n.{name} = CASE WHEN n.{name} IS NULL OR "
                f"($p{i} IS NOT NULL AND size(n.{name}) < size($p{i})) "
                f"THEN $p{i} ELSE n.{name} END"
            )
        for i, name in enumerate(fill_missing):
            _check_identifier(name, "property")
            params[f"f{i}"] = props.get(name)
            match_sets.append(f"n.{name} = coalesce(n.{name}, $f{i})")

        cypher = f"""
        MERGE (n:{label} {{id: $id}})
        ON CREATE SET n += $all_props, n.{key_field} = $key, n.createdAt = datetime()
        ON MATCH SET {', '.join(match_sets)}
        RETURN n.id AS id
        """
        records = self.query(cypher, params)
        return records[0]["id"] if records else params["id"]

    def upsert_relationship(
        self,
        source_id: str,
        target_id: str,
        rel_type: str,
        source_label: Optional[str] = None,
        target_label: Optional[str] = None,
    ) -> None:
        """MERGE a relationship between two nodes matched by id."""
        _check_identifier(rel_type, "relationship type")
        source = f"(a:{_check_identifier(source_label, 'label')} {{id: $source_id}})" if source_label else "(a {id: $source_id})"
        target = f"(b:{_check_identifier(target_label, 'label')} {{id: $target_id}})" if target_label else "(b {id: $target_id})"

        cypher = f"""
        MATCH {source}
        MATCH {target}
        MERGE (a)-[r:{rel_type}]->(b)
        RETURN type(r) AS type
        """
        self.query(cypher, {"source_id": source_id, "target_id": target_id})
