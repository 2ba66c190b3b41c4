"""Central configuration for paths and constants."""

import os
from pathlib import Path

# Data directory, override with CONVINDEX_DATA_DIR env var
DATA_DIR = Path(
    os.environ.get("CONVINDEX_DATA_DIR", str(Path.home() / ".convindex"))
)

# Storage paths
SQLITE_PATH = DATA_DIR / "conversations.db"
CHROMA_PATH = DATA_DIR / "chroma"
CHECKPOINT_PATH = DATA_DIR / "index-checkpoint.json"

# Where transcript JSONL files live, os.pathsep-separated list
SOURCE_DIRS = [
    Path(p).expanduser()
    for p in os.environ.get(
        "CONVINDEX_SOURCE_DIRS", str(Path.home() / ".claude" / "projects")
    ).split(os.pathsep)
    if p
]

# Embeddings (Ollama)
OLLAMA_URL = os.environ.get("CONVINDEX_OLLAMA_URL", "http://localhost:11434")
EMBEDDING_MODEL = os.environ.get("CONVINDEX_EMBEDDING_MODEL", "nomic-embed-text")
EMBEDDING_TIMEOUT = 60  # seconds per request

# ChromaDB
COLLECTION_NAME = "conversation_chunks"
UPSERT_BATCH_SIZE = 50  # Stay under the payload limit of a single upsert

# Parsing
TITLE_MAX_CHARS = 80
STUB_FILE_PATH = "STUB:pending_import"

# Chunking parameters
MESSAGE_MAX_CHARS = 10_000  # Per user/assistant message inside a chunk
MAX_CHUNK_CHARS = 20_000  # Hard cap on the whole chunk (~6.7k tokens)
TRUNCATION_MARKER = "...[truncated]"
TOPIC_GAP_MINUTES = 30
DEFAULT_TOPIC = "general"

# Indexing
INDEX_BATCH_SIZE = 10  # Conversations per checkpoint
EMBED_CONCURRENCY = 10  # Simultaneous embedding requests
