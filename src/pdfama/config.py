# /pdfama/config.py
"""
Centralized configuration for the document Q&A engine.
Includes model names, paths, indexing and streaming parameters.
"""
import os
from pathlib import Path
from dotenv import load_dotenv
from rich.console import Console
from .observability import configure_logging

# ==============================================================================
# CONSOLE & ENVIRONMENT
# ==============================================================================
console = Console()
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Model Names ---
LOCAL_MODEL_NAME = os.getenv("LOCAL_MODEL_NAME", "granite3.3:2b")  # Chat model served by Ollama
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
EMBEDDING_MODEL_NAME = os.getenv("EMBEDDING_MODEL_NAME", "sentence-transformers/all-MiniLM-L6-v2")
EMBEDDING_DEVICE = os.getenv("EMBEDDING_DEVICE", "cpu")
EMBEDDING_DIMENSIONS = _env_int("EMBEDDING_DIMENSIONS", 384, minimum=1)
# Unit-length embeddings; cosine ranking is unaffected either way.
EMBEDDING_NORMALIZE = _env_bool("EMBEDDING_NORMALIZE", True)

# --- Generation ---
LLM_TEMPERATURE = _env_float("LLM_TEMPERATURE", 0.4, minimum=0.0)
LLM_NUM_PREDICT = _env_int("LLM_NUM_PREDICT", 1200, minimum=16)

# --- Mode Selection ---
# Documents longer than this many characters are answered through retrieval.
TOKEN_LIMIT = _env_int("TOKEN_LIMIT", 32000, minimum=1)

# --- Retrieval / Indexing ---
RAG_CHUNK_SIZE = _env_int("RAG_CHUNK_SIZE", 1024, minimum=16)
RAG_CHUNK_OVERLAP = _env_int("RAG_CHUNK_OVERLAP", 100, minimum=0)
if RAG_CHUNK_OVERLAP >= RAG_CHUNK_SIZE:
    RAG_CHUNK_OVERLAP = max(0, RAG_CHUNK_SIZE // 10)
RAG_TOP_K = _env_int("RAG_TOP_K", 3, minimum=1)
EMBED_PROGRESS_EVERY = _env_int("EMBED_PROGRESS_EVERY", 10, minimum=1)
VECTOR_FIELD = "embedding"

# --- Document Intake ---
FETCH_TIMEOUT_S = _env_float("FETCH_TIMEOUT_S", 30.0, minimum=1.0)

# --- Path Configuration ---
# Data directory is at ../../data relative to this file (src/pdfama/config.py)
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.getenv("PDFAMA_DATA_DIR", str(_BASE_DIR / "data")))

SESSION_DB_PATH = Path(os.getenv("SESSION_DB_PATH", str(DATA_DIR / "sessions.sqlite")))
VECTOR_DB_PATH = Path(os.getenv("VECTOR_DB_PATH", str(DATA_DIR / "vectors.sqlite")))

# --- Create necessary directories ---
DATA_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH = Path(os.getenv("LOG_PATH", str(DATA_DIR / "pdfama.log")))
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH)
