"""
Test suite for research_kg

Test modules:
- test_neo4j_client.py: Retries, vector search and MERGE upserts against a patched driver
- test_embeddings.py: Embedding cache, cosine similarity, text preparation
- test_web_search.py: Tavily adapter search and page extraction
- test_services.py: Service container construction and partial availability
- test_state.py: ResearchConfig defaults and environment overrides
- test_planner.py: Sub-query planning, bound and fallback
- test_retriever.py: Concurrent knowledge store + web retrieval and degradation
- test_generator.py: Reasoning generation, retries, plain fallback, unavailable
- test_condenser.py: Summarizing oversized context and reasoning, truncation fallback
- test_chain_parser.py: Step segmentation and typing
- test_extractor.py: Chain persistence, concept/entity merge, proposition
- test_progress.py: Run-partitioned progress channel
- test_synthesizer.py: Citations, LLM synthesis and concatenation fallback
- test_orchestrator.py: Integration tests for full research runs
"""
