"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DOCENT_DATA_DIR", str(BASE_DIR / "data")))
DOCUMENTS_DIR = Path(os.getenv("DOCENT_DOCUMENTS_DIR", str(BASE_DIR / "documents")))
INDEX_DIR = DATA_DIR / "index"
DB_PATH = DATA_DIR / "documents.sqlite"

# Embedding service (OpenAI-compatible)
EMBEDDING_BASE_URL = os.getenv("EMBEDDING_BASE_URL", "https://api.openai.com/v1")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_API_KEY = os.getenv("EMBEDDING_API_KEY", os.getenv("OPENAI_API_KEY", ""))

# Generation service (OpenAI-compatible chat completions)
CHAT_BASE_URL = os.getenv("CHAT_BASE_URL", "https://api.deepseek.com/v1")
CHAT_MODEL = os.getenv("CHAT_MODEL", "deepseek-chat")
CHAT_API_KEY = os.getenv("CHAT_API_KEY", os.getenv("DEEPSEEK_API_KEY", ""))
REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", "60.0"))

# Chunking (token estimates, see docent.rag.chunker.TokenCounter)
CHUNK_MAX_TOKENS = int(os.getenv("CHUNK_MAX_TOKENS", "400"))
CHUNK_OVERLAP_TOKENS = int(os.getenv("CHUNK_OVERLAP_TOKENS", "80"))
CHUNK_BOUNDARY_TOLERANCE = float(os.getenv("CHUNK_BOUNDARY_TOLERANCE", "0.2"))

# Embedding batches
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "64"))
EMBED_MAX_REQUEST_CHARS = int(os.getenv("EMBED_MAX_REQUEST_CHARS", "200000"))
EMBED_MAX_INPUT_TOKENS = int(os.getenv("EMBED_MAX_INPUT_TOKENS", "8000"))

# Retries against the model services
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "4"))
RETRY_INITIAL_WAIT = float(os.getenv("RETRY_INITIAL_WAIT", "0.5"))
RETRY_MAX_WAIT = float(os.getenv("RETRY_MAX_WAIT", "20.0"))

# Retrieval
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "5"))
RETRIEVAL_MIN_SCORE = float(os.getenv("RETRIEVAL_MIN_SCORE", "0.7"))

# Approximate search (faiss HNSW); exact scan below ANN_MIN_VECTORS
ANN_ENABLED = os.getenv("ANN_ENABLED", "true").lower() in ("1", "true", "yes")
ANN_MIN_VECTORS = int(os.getenv("ANN_MIN_VECTORS", "5000"))
ANN_HNSW_M = int(os.getenv("ANN_HNSW_M", "32"))
ANN_EF_CONSTRUCTION = int(os.getenv("ANN_EF_CONSTRUCTION", "200"))
ANN_EF_SEARCH = int(os.getenv("ANN_EF_SEARCH", "128"))
ANN_OVERSAMPLE = int(os.getenv("ANN_OVERSAMPLE", "4"))
ANN_RECALL_TOLERANCE = float(os.getenv("ANN_RECALL_TOLERANCE", "0.05"))

# Answer generation
MAX_CONTEXT_TOKENS = int(os.getenv("MAX_CONTEXT_TOKENS", "3000"))
MAX_ANSWER_TOKENS = int(os.getenv("MAX_ANSWER_TOKENS", "1024"))
HISTORY_MAX_CHARS = int(os.getenv("HISTORY_MAX_CHARS", "12000"))

# Ingestion
INGEST_WORKERS = int(os.getenv("INGEST_WORKERS", "4"))
WATCH_DEBOUNCE_SECONDS = float(os.getenv("WATCH_DEBOUNCE_SECONDS", "2.0"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
