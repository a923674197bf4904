"""
MODULE: LLM Client
DESCRIPTION: Factories for chat and embedding models. The provider is picked from the
             model name prefix. Callers construct once and pass the handles along.
"""

import os
from dotenv import load_dotenv
from langchain_openai import ChatOpenAI, OpenAIEmbeddings
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.embeddings import Embeddings

load_dotenv()

DEFAULT_LLM_MODEL = "gpt-4o"
DEFAULT_REASONING_MODEL = "claude-3-7-sonnet-20250219"
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-large"
DEFAULT_EMBEDDING_DIMENSIONS = 3072


def build_chat_model(model: str, temperature: float = 0) -> BaseChatModel:
    """Build a chat model for the given model name."""
    if model.startswith("gemini"):
        if not os.getenv("GOOGLE_API_KEY"):
            raise ValueError("GOOGLE_API_KEY not found in environment variables")
        return ChatGoogleGenerativeAI(model=model, temperature=temperature)

    if model.startswith("claude"):
        if not os.getenv("ANTHROPIC_API_KEY"):
            raise ValueError("ANTHROPIC_API_KEY not found in environment variables")
        from langchain_anthropic import ChatAnthropic
        return ChatAnthropic(model=model, temperature=temperature, max_tokens=8192)

    if not os.getenv("OPENAI_API_KEY"):
        raise ValueError("OPENAI_API_KEY not found in environment variables")
    return ChatOpenAI(model=model, temperature=temperature)


def get_llm(model: str = None) -> BaseChatModel:
    """
    Standard model for planning, plain generation, extraction and synthesis.
    """
    return build_chat_model(model or os.getenv("LLM_MODEL", DEFAULT_LLM_MODEL), temperature=0)


def get_reasoning_llm(model: str = None) -> BaseChatModel:
    """
    Reasoning model used for per-sub-query analysis.
    """
    return build_chat_model(model or os.getenv("REASONING_MODEL", DEFAULT_REASONING_MODEL), temperature=0.7)


def get_embeddings(model: str = None, dimensions: int = None) -> Embeddings:
    """
    Returns a NEW embedding model instance.
    Defaults to OpenAI text-embedding-3-large at 3072 dimensions to match the graph's vector indexes.
    """
    model = model or os.getenv("EMBEDDING_MODEL", DEFAULT_EMBEDDING_MODEL)
    if model.startswith("voyage"):
        from langchain_voyageai import VoyageAIEmbeddings
        return VoyageAIEmbeddings(model=model)

    dimensions = dimensions or int(os.getenv("EMBEDDING_DIMENSIONS", str(DEFAULT_EMBEDDING_DIMENSIONS)))
    if not os.getenv("OPENAI_API_KEY"):
        raise ValueError("OPENAI_API_KEY not found in environment variables")
    return OpenAIEmbeddings(model=model, dimensions=dimensions)
