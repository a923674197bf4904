"""
Chain parsing: split free-form reasoning text into typed, ordered steps.

The parser sits behind a small interface so a structure-aware parser can
replace the heuristic one without touching the extractor.
"""

import re
from abc import ABC, abstractmethod

from research_kg.schemas.research import ReasoningStep, StepType


PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
NUMBERED_ITEM = re.compile(r"(?m)^\s*\d+[.)]\s+")

CONCLUSION_MARKERS = ("therefore", "thus", "in summary", "in conclusion", "to conclude", "overall")
EVIDENCE_MARKERS = ("according to", "evidence", "data show", "studies show", "research shows", "for example", "for instance", "[1]", "[2]", "[3]")
COUNTER_MARKERS = ("however", "on the other hand", "conversely", "counter", "although", "nevertheless")


def _has_marker(text: str, markers) -> bool:
    lowered = text.lower()
    for marker in markers:
        if marker.startswith("["):
            if marker in lowered:
                return True
        elif re.search(rf"\b{re.escape(marker)}\b", lowered):
            return True
    return False


def classify_step(content: str, position: int, total: int) -> ReasoningStep:
    """
    Assign a step type from position and textual markers, first rule wins:
    position 0 is the premise, the last position is the conclusion, then
    evidence markers, then contrast markers, else inference.

    The last step is typed conclusion by position even without a concluding
    marker; marked=True records when a marker backs the type. This is a
    best-effort heuristic, not a guarantee about the text.
    """
    if position == 0:
        return ReasoningStep(content=content, position=position, step_type=StepType.PREMISE)
    if position == total - 1:
        return ReasoningStep(
            content=content,
            position=position,
            step_type=StepType.CONCLUSION,
            marked=_has_marker(content, CONCLUSION_MARKERS),
        )
    if _has_marker(content, EVIDENCE_MARKERS):
        return ReasoningStep(content=content, position=position, step_type=StepType.EVIDENCE, marked=True)
    if _has_marker(content, COUNTER_MARKERS):
        return ReasoningStep(content=content, position=position, step_type=StepType.COUNTERARGUMENT, marked=True)
    return ReasoningStep(content=content, position=position, step_type=StepType.INFERENCE)


class ChainParser(ABC):
    """Turns reasoning text into ordered ReasoningSteps."""

    @abstractmethod
    def segment(self, text: str) -> list[str]:
        """Split text into step contents, in order."""

    def parse(self, text: str) -> list[ReasoningStep]:
        segments = [s for s in self.segment(text or "") if s]
        if not segments:
            return []
        total = len(segments)
        return [classify_step(content, i, total) for i, content in enumerate(segments)]


class HeuristicChainParser(ChainParser):
    """
    Paragraph-first segmentation with fallbacks:
    - fewer than 3 paragraphs: try a numbered-list split
    - still a single block: try a line split
    - otherwise the whole text is one step
    """

    def segment(self, text: str) -> list[str]:
        text = text.strip()
        if not text:
            return []

        segments = [p.strip() for p in PARAGRAPH_SPLIT.split(text) if p.strip()]

        if len(segments) < 3:
            numbered = [p.strip() for p in NUMBERED_ITEM.split(text) if p.strip()]
            if len(numbered) > len(segments):
                segments = numbered

        if len(segments) < 2 and "\n" in text:
            lines = [line.strip() for line in text.splitlines() if line.strip()]
            if len(lines) > len(segments):
                segments = lines

        return segments or [text]
