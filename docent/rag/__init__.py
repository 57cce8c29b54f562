"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Document loading and format sniffing
- Token-bounded chunking with overlap
- Batched embedding generation with retries
- Vector indexing (exact and HNSW) with persistence
- Incremental ingestion
- Semantic retrieval and answer orchestration
"""
