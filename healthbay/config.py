"""
healthbay/config.py — environment-driven settings
"""

import os
import logging

from dotenv import load_dotenv

load_dotenv()


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning(f"Ignoring non-numeric {name}={raw!r}")
        return default


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(float(raw))
    except (ValueError, OverflowError):
        logging.getLogger(__name__).warning(f"Ignoring non-integer {name}={raw!r}")
        return default


# ─────────────────────────────────────────────
# LLM
# ─────────────────────────────────────────────

GROQ_API_KEY           = os.getenv("GROQ_API_KEY")
GROQ_MODEL             = os.getenv("GROQ_MODEL", "openai/gpt-oss-120b")
GENERATION_TEMPERATURE = _float_env("GENERATION_TEMPERATURE", 0.25)
CLASSIFIER_TEMPERATURE = _float_env("CLASSIFIER_TEMPERATURE", 0.0)

# ─────────────────────────────────────────────
# Retrieval
# ─────────────────────────────────────────────

VECTOR_DB_PATH         = os.getenv("VECTOR_DB_PATH", "knowledge_vector_db")
EMBEDDING_MODEL        = os.getenv("EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2")
RAG_MATCH_COUNT        = _int_env("RAG_MATCH_COUNT", 10)
RAG_CONTEXT_TOP_N      = _int_env("RAG_CONTEXT_TOP_N", 5)
RAG_COVERAGE_THRESHOLD = _float_env("RAG_COVERAGE_THRESHOLD", 0.5)

# ─────────────────────────────────────────────
# Conversation policy
# ─────────────────────────────────────────────

# Hard ceiling: the policy never re-asks more than twice whatever the env says.
CLARIFICATION_CEILING    = 2
MAX_CLARIFICATION_ROUNDS = min(_int_env("MAX_CLARIFICATION_ROUNDS", 2), CLARIFICATION_CEILING)

# ─────────────────────────────────────────────
# Transport / logging
# ─────────────────────────────────────────────

ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").strip()
LOG_LEVEL       = os.getenv("LOG_LEVEL", "INFO").upper()


def configure_logging():
    logging.basicConfig(level=LOG_LEVEL, format="%(levelname)s | %(message)s")
