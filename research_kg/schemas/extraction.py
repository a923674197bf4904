"""
Pydantic models for LLM structured output.

Everything coming back from a generation service is validated here before the
pipeline touches it. Entries that fail validation are dropped by the caller.
"""

from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

MAX_TEXT_CHARS = 2000


def _clip(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value[:MAX_TEXT_CHARS]


class SubQueryPlan(BaseModel):
    """Decomposition of a research question."""
    sub_queries: list[str] = Field(
        default_factory=list,
        description="Focused sub-questions, each phrased as a direct question"
    )


class ClarificationCheck(BaseModel):
    needs_clarification: bool = Field(
        default=False,
        description="True only if clarifying questions would significantly improve research quality"
    )


class ExtractedConcept(BaseModel):
    """An abstract idea discussed in the reasoning."""
    kind: Literal["concept"] = "concept"
    name: str = Field(max_length=200)
    definition: str = ""
    domain: Optional[str] = None

    @field_validator("definition")
    @classmethod
    def clip_definition(cls, value: str) -> str:
        return _clip(value)

    @field_validator("name")
    @classmethod
    def clean_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be empty")
        return value


class ExtractedEntity(BaseModel):
    """A named person, organization, location or thing mentioned in the reasoning."""
    kind: Literal["entity"] = "entity"
    name: str = Field(max_length=200)
    type: str = Field(default="other")
    description: Optional[str] = None

    @field_validator("description")
    @classmethod
    def clip_description(cls, value: Optional[str]) -> Optional[str]:
        return _clip(value)

    @field_validator("name")
    @classmethod
    def clean_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("name must not be empty")
        return value


ExtractedItem = Annotated[Union[ExtractedConcept, ExtractedEntity], Field(discriminator="kind")]

extracted_item_adapter = TypeAdapter(ExtractedItem)


class ExtractedProposition(BaseModel):
    """A conclusion statement derived from a reasoning chain."""
    statement: str
    status: str = "derived"
    confidence: float = Field(default=0.8, ge=0, le=1)

    @property
    def name(self) -> str:
        return self.statement[:50] + ("..." if len(self.statement) > 50 else "")
