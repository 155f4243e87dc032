"""
api/app.py — FastAPI server for HealthBay
Run: uvicorn api.app:app --reload --port 8000
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from healthbay.collaborators import build_collaborators
from healthbay.config import ALLOWED_ORIGINS, GROQ_API_KEY, VECTOR_DB_PATH, configure_logging
from healthbay.context import context_from_summary, dump_context, load_context
from healthbay.history import InMemoryChatStore, new_chat_id, past_injury_lookup, persist_turn
from healthbay.router import StageRouter
from healthbay.vector_store_setup import load_faiss_store
from healthbay.models import TurnRequest, TurnResponse

configure_logging()
logger = logging.getLogger("healthbay")

# ─────────────────────────────────────────────
# State
# ─────────────────────────────────────────────

vectorstore = None
router: Optional[StageRouter] = None
store = InMemoryChatStore()


# ─────────────────────────────────────────────
# Lifespan
# ─────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    global vectorstore, router

    # ── Validate API key early ──
    if not GROQ_API_KEY:
        raise RuntimeError(
            "GROQ_API_KEY is not set. "
            "Add it to your environment or .env file."
        )

    # ── Load FAISS (optional: answers degrade to ungrounded without it) ──
    try:
        vectorstore = load_faiss_store(VECTOR_DB_PATH)
        logger.info("✅ FAISS vector store loaded successfully.")
    except Exception as e:
        vectorstore = None
        logger.warning(
            f"⚠️ Could not load FAISS vector store from '{VECTOR_DB_PATH}': {e}. "
            "Retrieval disabled; run: python scripts/index_documents.py"
        )

    retriever, generator, classifier = build_collaborators(GROQ_API_KEY, vectorstore)
    router = StageRouter(retriever, generator, classifier, past_injuries=past_injury_lookup(store))

    yield  # app runs here

    router = None
    logger.info("Router released on shutdown.")


# ─────────────────────────────────────────────
# FastAPI app
# ─────────────────────────────────────────────

app = FastAPI(title="HealthBay API", version="1.0.0", lifespan=lifespan)

allow_origins = (
    ["*"]
    if ALLOWED_ORIGINS in {"*", ""}
    else [o.strip() for o in ALLOWED_ORIGINS.split(",") if o.strip()]
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────

@app.get("/")
def health():
    return {
        "status": "ok",
        "service": "HealthBay API",
        "ragAvailable": vectorstore is not None,
        "chats": len(store.list_chats()),
    }


@app.post("/chat", response_model=TurnResponse)
def chat(req: TurnRequest):
    if router is None:
        raise HTTPException(503, "Service is still starting. Please try again shortly.")

    chat_id = req.chat_id or new_chat_id()
    turn = req.model_copy(update={"chat_id": chat_id})

    response = router.handle_turn(turn)
    persist_turn(store, chat_id, turn, response, load_context(response.current_context))

    return response.model_copy(update={"chat_id": chat_id})


@app.get("/chats")
def list_chats():
    return {"chats": store.list_chats()}


@app.get("/chats/{chat_id}/messages")
def get_messages(chat_id: str):
    if store.get_chat(chat_id) is None:
        raise HTTPException(404, "Chat not found.")
    return {"chatId": chat_id, "messages": store.get_messages(chat_id)}


@app.get("/chats/{chat_id}/context")
def get_context(chat_id: str):
    chat_record = store.get_chat(chat_id)
    if chat_record is None:
        raise HTTPException(404, "Chat not found.")
    ctx = context_from_summary(chat_record.get("contextSummary") or {})
    return {
        "chatId": chat_id,
        "title": chat_record.get("title"),
        "currentContext": dump_context(ctx),
    }


@app.delete("/chats/{chat_id}")
def delete_chat(chat_id: str):
    if not store.delete_chat(chat_id):
        raise HTTPException(404, "Chat not found.")
    return {"status": "deleted"}
