"""
scripts/index_documents.py
Run this ONCE to build the FAISS vector store from your injury knowledge JSON files.

Each file holds one document or a list of documents:
    {"id": "...", "title": "...", "body": "...", "source_url": "...",
     "injury_id": "ankle_sprain", "body_part_id": "ankle"}

Usage:
    python scripts/index_documents.py
    python scripts/index_documents.py --input data/knowledge --output knowledge_vector_db
"""

import argparse
import sys
import os

# Make sure project root is in path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from healthbay.config import VECTOR_DB_PATH
from healthbay.vector_store_setup import load_documents_from_folder, build_faiss_store


def main():
    parser = argparse.ArgumentParser(description="Index injury knowledge JSONs into a FAISS vector store")
    parser.add_argument("--input",  default="data/knowledge", help="Folder with knowledge JSON files")
    parser.add_argument("--output", default=VECTOR_DB_PATH,   help="Where to save FAISS index")
    args = parser.parse_args()

    print("=" * 55)
    print("  HealthBay — Knowledge Vector DB Indexer")
    print("=" * 55 + "\n")

    documents = load_documents_from_folder(args.input)

    if not documents:
        print("❌ No documents loaded. Check your data folder.")
        sys.exit(1)

    build_faiss_store(documents, save_path=args.output)

    print("\n✅ Done! You can now run the assistant.")
    print("   API  : uvicorn api.app:app --reload --port 8000")
    print("   CLI  : python scripts/run_cli.py")


if __name__ == "__main__":
    main()
