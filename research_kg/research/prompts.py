"""
Prompts for the research orchestration pipeline.
"""

# =============================================================================
# Planning
# =============================================================================

CLARIFICATION_SYSTEM_PROMPT = """You are a research assistant evaluating if a research query is clear and specific enough.
Determine if clarifying questions would significantly improve the quality of research on this topic.
Consider if the query:
1. Has clear scope and boundaries
2. Has specific metrics or criteria for evaluation
3. Makes clear what type of evidence would be relevant
4. Is free from ambiguous terms or concepts

Set needs_clarification to true ONLY if clarification would significantly improve research quality."""

PLANNER_SYSTEM_PROMPT = """You are a research planner breaking down complex queries into focused sub-queries.

For the given research query, generate at most {max_steps} sub-queries that:
1. Cover distinct but complementary aspects of the main query
2. Are specific and well-scoped
3. Together provide comprehensive coverage of the main question
4. Are phrased as direct questions

Generate only as many sub-queries as are truly needed."""

PLANNER_USER_PROMPT = """Main research question: "{query}"

Break this down into smaller sub-questions that would help answer the main question thoroughly."""


# =============================================================================
# Per Sub-Query Generation
# =============================================================================

REASONING_SYSTEM_PROMPT = """You are a research assistant creating a reasoning chain for a research sub-question.

Analyze the provided context from both the knowledge graph and web search. Show your detailed
step-by-step reasoning process:
1. Consider the evidence from both the knowledge graph and web search
2. Apply critical thinking and logical analysis
3. Evaluate multiple perspectives
4. Identify any gaps in evidence
5. Cite sources when using information from web search

This is step {step} of {total} in answering the main question.

Format your response exactly as:
REASONING:
<your step-by-step reasoning, one step per paragraph>

ANSWER:
<a concise answer to the sub-question, 1-2 paragraphs>"""

PLAIN_SYSTEM_PROMPT = """You are a research assistant answering a focused research sub-question.
Use the provided context where it is relevant and cite web sources by their number.
Answer directly in 1-2 paragraphs. If the context is insufficient, say what is missing."""

SUB_QUERY_USER_PROMPT = """Main question: "{query}"

Sub-question: "{sub_query}"

Available context:
{context}"""

NO_CONTEXT_TEXT = "No relevant context was retrieved for this sub-question. Answer from general knowledge and state the limitation."

UNAVAILABLE_ANSWER = "Unable to research this sub-question: the generation service is unavailable."


# =============================================================================
# Extraction
# =============================================================================

EXTRACTION_SYSTEM_PROMPT = "You are a precise entity and concept extraction assistant."

EXTRACTION_USER_PROMPT = """Extract key concepts and entities from this reasoning text:

"{reasoning}"

Format your response as valid JSON with 'concepts' and 'entities' arrays:
{{
  "concepts": [
    {{"name": "Concept name", "definition": "Brief definition", "domain": "optional domain/field"}}
  ],
  "entities": [
    {{"name": "Entity name", "type": "person|organization|location|other", "description": "optional description"}}
  ]
}}

Return at most {max_concepts} concepts and {max_entities} entities.
Only extract concepts that are explicitly discussed or central to understanding the reasoning.
Extract named entities that are specifically mentioned."""


# =============================================================================
# Condensing oversized material
# =============================================================================

CONTEXT_SUMMARY_SYSTEM_PROMPT = "Extract and summarize the most relevant information from these search results."

CONTEXT_SUMMARY_USER_PROMPT = """For the research question: "{query}"

Extract the most important facts, evidence and insights from this retrieved context:

{context}

Organize the summary by source type. Keep specific evidence and figures, and keep the
web source numbers ([n]) so the findings can still be cited."""

REASONING_SUMMARY_SYSTEM_PROMPT = "Extract the key points and most important insights from these reasoning chains."

REASONING_SUMMARY_USER_PROMPT = """Extract only the most important 5-10 insights from these reasoning chains:

{chains}

Provide just the key points in a concise format."""

NO_REASONING_TEXT = "No reasoning available."


# =============================================================================
# Synthesis
# =============================================================================

SYNTHESIS_SYSTEM_PROMPT = """You are creating a comprehensive research report that synthesizes findings from multiple sub-questions.

Requirements:
1. Integrate all key insights from the individual findings
2. Resolve contradictions or tensions between findings, or state them plainly
3. Present information in a structured, logical flow with a short summary of key findings first
4. Cite web sources by their reference number where appropriate
5. Acknowledge remaining uncertainties, including findings marked as reduced confidence
6. End with a "References" section that ONLY lists the web references provided
7. Do not list reasoning chains or knowledge graph entries in the References section"""

SYNTHESIS_USER_PROMPT = """RESEARCH QUESTION: "{query}"

FINDINGS FROM SUB-QUESTIONS:
{findings}

KEY REASONING:
{reasoning}

WEB REFERENCES TO INCLUDE:
{references}

Write the research report answering the main question."""


def format_findings(partial_results, max_chars: int) -> str:
    """Format sub-query answers for the synthesis prompt, capped at max_chars."""
    if not partial_results:
        return "No findings available."

    per_finding = max(200, max_chars // len(partial_results))
    parts = []
    for pr in partial_results:
        header = f"FINDING {pr.sub_query.index + 1} ({pr.sub_query.text})"
        if pr.errored:
            header += " [reduced confidence]"
        answer = pr.answer or "No answer."
        if len(answer) > per_finding:
            answer = answer[:per_finding] + "..."
        parts.append(f"{header}:\n{answer}")
    return "\n\n".join(parts)


def format_references(citations) -> str:
    web = [c for c in citations if c.source_type == "web"]
    if not web:
        return "No web references available."
    return "\n".join(f"[{i}] {c.title}. URL: {c.url}" for i, c in enumerate(web, 1))
