"""
MODULE: Services
DESCRIPTION: Explicit container for the external clients a research run needs.
             Built once by the caller (or from the environment) and passed into the
             orchestrator. Any client may be missing; components degrade around it.
"""

import logging
from typing import Optional

from langchain_core.language_models.chat_models import BaseChatModel

from research_kg.util.embeddings import EmbeddingClient
from research_kg.util.llm_client import get_embeddings, get_llm, get_reasoning_llm
from research_kg.util.neo4j_client import Neo4jClient
from research_kg.util.web_search import WebSearchClient

logger = logging.getLogger(__name__)


class FatalInitFailure(Exception):
    """No client could be constructed; the run cannot start."""


class ServiceNotConfigured(RuntimeError):
    """A component was asked to use a client that is not available."""


class Services:
    """
    Container for shared infrastructure clients.
    """

    def __init__(
        self,
        neo4j: Optional[Neo4jClient] = None,
        web_search: Optional[WebSearchClient] = None,
        embeddings: Optional[EmbeddingClient] = None,
        llm: Optional[BaseChatModel] = None,
        reasoning_llm: Optional[BaseChatModel] = None,
    ):
        self.neo4j = neo4j
        self.web_search = web_search
        self.embeddings = embeddings
        self.llm = llm
        self.reasoning_llm = reasoning_llm

    @classmethod
    def from_env(cls) -> "Services":
        """
        Build every client from environment settings.

        A client that fails to construct is logged and left as None.
        Raises FatalInitFailure only when none could be built.
        """
        builders = {
            "neo4j": Neo4jClient,
            "web_search": WebSearchClient,
            "embeddings": lambda: EmbeddingClient(get_embeddings()),
            "llm": get_llm,
            "reasoning_llm": get_reasoning_llm,
        }
        clients = {}
        errors = {}
        for name, build in builders.items():
            try:
                clients[name] = build()
            except Exception as e:
                logger.warning("Could not construct %s client: %s", name, e)
                errors[name] = str(e)
                clients[name] = None

        services = cls(**clients)
        if not services.available():
            raise FatalInitFailure(f"No client could be constructed: {errors}")
        return services

    def available(self) -> list[str]:
        """Names of the clients that are present."""
        names = ["neo4j", "web_search", "embeddings", "llm", "reasoning_llm"]
        return [name for name in names if getattr(self, name) is not None]

    def close(self):
        """Closes all active connections."""
        if self.neo4j is not None:
            self.neo4j.close()
