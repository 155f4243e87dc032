import os
import json
from pathlib import Path
from typing import List, Dict

from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_community.vectorstores import FAISS
from langchain_core.documents import Document

from healthbay.config import EMBEDDING_MODEL, VECTOR_DB_PATH

CHUNK_WORDS = 600

# ─────────────────────────────────────────────
# Embedding Model
# ─────────────────────────────────────────────

def get_embeddings() -> HuggingFaceEmbeddings:
    return HuggingFaceEmbeddings(model_name=EMBEDDING_MODEL)


# ─────────────────────────────────────────────
# Safe helpers
# ─────────────────────────────────────────────

def safe_str(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def relevance(distance: float) -> float:
    """FAISS L2 distance → relevance in (0, 1]; lower distance = more relevant."""
    return 1.0 / (1.0 + max(float(distance), 0.0))


# ─────────────────────────────────────────────
# Chunk knowledge documents
# ─────────────────────────────────────────────

def chunk_text(text: str, max_words: int = CHUNK_WORDS) -> List[str]:
    words = text.split()
    return [" ".join(words[i:i + max_words]) for i in range(0, len(words), max_words)]


def document_to_chunks(doc: Dict) -> List[Document]:
    """
    One knowledge document → ~600-word chunks.

    Expected keys: id, title, body, and optionally source_url, injury_id,
    body_part_id. The ids are what hinted retrieval filters on.
    """
    body = safe_str(doc.get("body")) or safe_str(doc.get("content"))
    if not body:
        return []

    doc_id = safe_str(doc.get("id")) or safe_str(doc.get("title"))
    base_meta = {
        "document_id":  doc_id,
        "title":        safe_str(doc.get("title")) or "Untitled Document",
        "source_url":   safe_str(doc.get("source_url")) or None,
        "injury_id":    safe_str(doc.get("injury_id")) or None,
        "body_part_id": safe_str(doc.get("body_part_id")) or None,
    }

    return [
        Document(page_content=chunk, metadata={**base_meta, "chunk_index": i})
        for i, chunk in enumerate(chunk_text(body))
    ]


# ─────────────────────────────────────────────
# Load documents
# ─────────────────────────────────────────────

def load_documents_from_folder(folder_path: str) -> List[Dict]:
    folder = Path(folder_path)
    documents: List[Dict] = []
    files = sorted(folder.glob("*.json"))
    print(f"📂 Found {len(files)} knowledge JSON files in '{folder_path}'")

    for file in files:
        with open(file, "r", encoding="utf-8") as f:
            data = json.load(f)

            if isinstance(data, list):
                documents.extend(d for d in data if isinstance(d, dict))
            elif isinstance(data, dict):
                documents.append(data)
            else:
                print(f"⚠️ Skipping {file}, unsupported JSON format")

    print(f"✅ Loaded {len(documents)} documents\n")
    return documents


# ─────────────────────────────────────────────
# Build / load FAISS store
# ─────────────────────────────────────────────

def build_faiss_store(documents: List[Dict], save_path: str = VECTOR_DB_PATH) -> FAISS:
    all_docs: List[Document] = []
    for d in documents:
        all_docs.extend(document_to_chunks(d))

    print(f"🔄 Built {len(all_docs)} chunks from {len(documents)} documents")

    embeddings = get_embeddings()
    print("⚡ Building FAISS index...")
    vectorstore = FAISS.from_documents(all_docs, embeddings)

    os.makedirs(save_path, exist_ok=True)
    vectorstore.save_local(save_path)

    print(f"💾 FAISS index saved to '{save_path}/'")
    return vectorstore


def load_faiss_store(save_path: str = VECTOR_DB_PATH) -> FAISS:
    embeddings = get_embeddings()
    return FAISS.load_local(save_path, embeddings, allow_dangerous_deserialization=True)
