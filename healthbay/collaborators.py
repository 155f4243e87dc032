"""
healthbay/collaborators.py — retrieval, generation and classification
━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

Narrow interfaces the router talks to. Anything with the same methods can
stand in (the tests use scripted fakes):

  retriever.retrieve(query, body_part_id=None, injury_id=None) -> RetrievalResult
  generator.generate(prompt) -> str
  classifier.classify(message, known_details, history) -> Optional[Classification]

Retrieval never raises: unavailability degrades to an ungrounded result.
Generation failures raise GenerationFailed and fail the turn as a whole.
"""

import re
import logging
from typing import List, Optional

from langchain_groq import ChatGroq
from langchain_core.messages import HumanMessage

from healthbay.config import (
    CLASSIFIER_TEMPERATURE,
    GENERATION_TEMPERATURE,
    GROQ_MODEL,
    RAG_CONTEXT_TOP_N,
    RAG_COVERAGE_THRESHOLD,
    RAG_MATCH_COUNT,
)
from healthbay.details import details_to_text
from healthbay.errors import GenerationFailed, RetrievalUnavailable
from healthbay.models import ChatMessage, Classification, InjuryDetails, RetrievalResult, Source
from healthbay.parsing import parse_classification
from healthbay.prompts import CLASSIFIER_PROMPT
from healthbay.vector_store_setup import relevance

logger = logging.getLogger(__name__)

PROVENANCE_GROUNDED    = "Based on verified clinical sources from HealthBay's database."
PROVENANCE_UNGROUNDED  = "AI-generated summary (no direct source match)."
PROVENANCE_UNAVAILABLE = "AI-generated summary (RAG unavailable)."


def unavailable_result() -> RetrievalResult:
    return RetrievalResult(
        context        = "",
        sources        = [],
        coverage_score = 0.0,
        rag_used       = False,
        provenance     = PROVENANCE_UNAVAILABLE,
    )


def hint_id(text: Optional[str]) -> Optional[str]:
    """Free-text body part / injury name → the slug the knowledge base is keyed by."""
    if not text:
        return None
    slug = re.sub(r"[^a-z0-9]+", "_", text.lower()).strip("_")
    return slug or None


def format_history(history: List[ChatMessage], limit: int = 6) -> str:
    recent = [m for m in history if m.text.strip()][-limit:]
    if not recent:
        return "(no previous messages)"
    return "\n".join(f"{m.role}: {m.text.strip()}" for m in recent)


def build_llm(api_key: str, temperature: float = GENERATION_TEMPERATURE) -> ChatGroq:
    return ChatGroq(model=GROQ_MODEL, temperature=temperature, api_key=api_key)


# ─────────────────────────────────────────────
# Retrieval
# ─────────────────────────────────────────────

class Retriever:
    """FAISS-backed retrieval: hinted search first, global search as fallback."""

    def __init__(
        self,
        vectorstore,
        match_count:        int   = RAG_MATCH_COUNT,
        context_top_n:      int   = RAG_CONTEXT_TOP_N,
        coverage_threshold: float = RAG_COVERAGE_THRESHOLD,
    ):
        self.vectorstore        = vectorstore
        self.match_count        = match_count
        self.context_top_n      = context_top_n
        self.coverage_threshold = coverage_threshold

    def retrieve(self, query: str, body_part_id: Optional[str] = None,
                 injury_id: Optional[str] = None) -> RetrievalResult:
        try:
            return self._retrieve(query, body_part_id, injury_id)
        except Exception as e:
            logger.warning(f"Retrieval unavailable, degrading to ungrounded generation: {e}")
            return unavailable_result()

    def _search(self, query: str, filter_: Optional[dict]):
        if filter_:
            return self.vectorstore.similarity_search_with_score(query, k=self.match_count, filter=filter_)
        return self.vectorstore.similarity_search_with_score(query, k=self.match_count)

    def _retrieve(self, query: str, body_part_id: Optional[str],
                  injury_id: Optional[str]) -> RetrievalResult:
        if self.vectorstore is None:
            raise RetrievalUnavailable("no vector store loaded")

        hints = {k: v for k, v in (("injury_id", injury_id), ("body_part_id", body_part_id)) if v}
        rows = self._search(query, hints) if hints else []
        if not rows:
            if hints:
                logger.info(f"No hinted matches for {hints}; falling back to global search.")
            rows = self._search(query, None)

        scored = [(doc, relevance(score)) for doc, score in rows]
        coverage = sum(s for _, s in scored) / len(scored) if scored else 0.0

        top = sorted(scored, key=lambda x: x[1], reverse=True)[:self.context_top_n]
        context = "\n---\n".join(
            f"# Source {i + 1}: {doc.metadata.get('title') or 'Document'}\n{doc.page_content}"
            for i, (doc, _) in enumerate(top)
        )
        sources = [
            Source(number=i + 1, title=doc.metadata.get("title") or "Document",
                   url=doc.metadata.get("source_url"))
            for i, (doc, _) in enumerate(top)
        ]
        rag_used = coverage > self.coverage_threshold and bool(context.strip())
        logger.info(f"Retrieval: {len(rows)} rows, coverage={round(coverage, 3)}, ragUsed={rag_used}")

        return RetrievalResult(
            context        = context if rag_used else "",
            sources        = sources if rag_used else [],
            coverage_score = round(coverage, 4),
            rag_used       = rag_used,
            provenance     = PROVENANCE_GROUNDED if rag_used else PROVENANCE_UNGROUNDED,
        )


# ─────────────────────────────────────────────
# Generation
# ─────────────────────────────────────────────

class Generator:
    def __init__(self, llm):
        self.llm = llm

    def generate(self, prompt: str) -> str:
        try:
            return self.llm.invoke([HumanMessage(content=prompt)]).content or ""
        except Exception as e:
            raise GenerationFailed(f"generation call failed: {e}") from e


class Classifier:
    """Classifies a message and extracts injury details in one call."""

    def __init__(self, llm):
        self.llm = llm

    def classify(self, message: str, known: InjuryDetails,
                 history: List[ChatMessage]) -> Optional[Classification]:
        prompt = CLASSIFIER_PROMPT.format(
            known_details = details_to_text(known),
            history       = format_history(history),
            message       = message,
        )
        try:
            raw = self.llm.invoke([HumanMessage(content=prompt)]).content or ""
        except Exception as e:
            raise GenerationFailed(f"classifier call failed: {e}") from e
        return parse_classification(raw)


def build_collaborators(api_key: str, vectorstore):
    """(retriever, generator, classifier) wired to Groq and the FAISS store."""
    return (
        Retriever(vectorstore),
        Generator(build_llm(api_key, GENERATION_TEMPERATURE)),
        Classifier(build_llm(api_key, CLASSIFIER_TEMPERATURE)),
    )
