"""
ChromaDB Similarity Index

Same contract as SimilarityIndex, backed by a ChromaDB collection with ANN
(HNSW) indexing and cosine distance. Use it when the ticket corpus outgrows
exact search.

Differences from the exact index:
- Results come from the approximate HNSW search, re-sorted by score with
  insertion order (kept in the `_seq` metadata field) as the tie-breaker.
- Chroma fixes the collection dimension on first insert; ingesting a vector
  of another dimension raises. A query vector of another dimension scores
  every record 0.0, in insertion order, as the exact index does.
"""

import itertools
import logging
import os
import threading
import uuid
from types import MappingProxyType
from typing import List, Mapping, Optional

import chromadb
from chromadb.config import Settings
from langchain_core.embeddings import Embeddings

from .index import MetadataValue, ScoredRecord, SimilarityRecord, _freeze_vector

logger = logging.getLogger(__name__)

SEQUENCE_KEY = "_seq"

# HNSW configuration
COLLECTION_METADATA = {
    "hnsw:space": "cosine",       # Use cosine similarity for semantic search
    "hnsw:construction_ef": 200,  # Higher value = better quality, slower build
    "hnsw:M": 16,                 # Number of connections per layer (affects recall)
}


def get_chroma_client(path: Optional[str] = None):
    """
    Create a ChromaDB client.

    Args:
        path: Directory for persistent storage (in-memory client when None)
    """
    settings = Settings(anonymized_telemetry=False, allow_reset=True)
    if path is None:
        return chromadb.EphemeralClient(settings=settings)

    os.makedirs(path, exist_ok=True)
    return chromadb.PersistentClient(path=path, settings=settings)


def _to_record(record_id, document, metadata, embedding):
    """Rebuild a SimilarityRecord from a Chroma row. Returns (sequence, record)."""
    metadata = dict(metadata or {})
    sequence = int(metadata.pop(SEQUENCE_KEY, 0))
    record = SimilarityRecord(
        id=record_id,
        text=document,
        vector=_freeze_vector(embedding),
        metadata=MappingProxyType(metadata),
    )
    return sequence, record


class ChromaSimilarityIndex:
    """Similarity index stored in a ChromaDB collection."""

    def __init__(self, embeddings: Embeddings, collection_name: str, client=None):
        self.embeddings = embeddings
        self.client = client or get_chroma_client()
        self.collection = self.client.get_or_create_collection(
            name=collection_name,
            metadata=COLLECTION_METADATA,
        )
        self._lock = threading.Lock()
        self._sequence = itertools.count(self._next_sequence())

    def _next_sequence(self) -> int:
        existing = self.collection.get(include=["metadatas"])
        sequences = [
            int(meta.get(SEQUENCE_KEY, 0))
            for meta in (existing.get("metadatas") or [])
            if meta
        ]
        return max(sequences, default=-1) + 1

    def ingest(
        self,
        text: str,
        metadata: Optional[Mapping[str, MetadataValue]] = None,
        record_id: Optional[str] = None,
    ) -> str:
        record_id = record_id or str(uuid.uuid4())
        vector = self.embeddings.embed_documents([text])[0]

        with self._lock:
            if self.collection.get(ids=[record_id])["ids"]:
                raise ValueError(f"Record already indexed: {record_id}")
            stored_metadata = dict(metadata or {})
            stored_metadata[SEQUENCE_KEY] = next(self._sequence)
            self.collection.add(
                ids=[record_id],
                embeddings=[list(vector)],
                documents=[text],
                metadatas=[stored_metadata],
            )

        return record_id

    def query(self, text: str, top_k: int = 4) -> List[ScoredRecord]:
        if top_k <= 0:
            return []

        count = self.collection.count()
        if count == 0:
            return []

        query_vector = list(self.embeddings.embed_query(text))
        if len(query_vector) != self._dimension():
            return self._unscored(min(top_k, count))

        results = self.collection.query(
            query_embeddings=[query_vector],
            n_results=min(top_k, count),
            include=["documents", "metadatas", "distances", "embeddings"],
        )

        hits = []
        ids = results["ids"][0] if results["ids"] else []
        for i, record_id in enumerate(ids):
            sequence, record = _to_record(
                record_id,
                results["documents"][0][i],
                results["metadatas"][0][i],
                results["embeddings"][0][i],
            )
            # Convert cosine distance to similarity
            score = 1.0 - float(results["distances"][0][i])
            hits.append((sequence, ScoredRecord(record=record, score=score)))

        hits.sort(key=lambda item: (-item[1].score, item[0]))
        return [hit for _, hit in hits]

    def _dimension(self) -> int:
        sample = self.collection.get(limit=1, include=["embeddings"])
        return len(sample["embeddings"][0])

    def _unscored(self, limit: int) -> List[ScoredRecord]:
        stored = self.collection.get(include=["documents", "metadatas", "embeddings"])
        records = sorted((
            _to_record(record_id, stored["documents"][i], stored["metadatas"][i], stored["embeddings"][i])
            for i, record_id in enumerate(stored["ids"])
        ), key=lambda item: item[0])
        logger.warning("Query dimension differs from collection %s", self.collection.name)
        return [ScoredRecord(record=record, score=0.0) for _, record in records[:limit]]

    def get(self, record_id: str) -> Optional[SimilarityRecord]:
        result = self.collection.get(
            ids=[record_id], include=["documents", "metadatas", "embeddings"]
        )
        if not result["ids"]:
            return None

        _, record = _to_record(
            record_id, result["documents"][0], result["metadatas"][0], result["embeddings"][0]
        )
        return record

    def delete(self, record_id: str) -> bool:
        with self._lock:
            if not self.collection.get(ids=[record_id])["ids"]:
                return False
            self.collection.delete(ids=[record_id])
        return True

    def __len__(self) -> int:
        return self.collection.count()

    def __contains__(self, record_id: object) -> bool:
        if not isinstance(record_id, str):
            return False
        return bool(self.collection.get(ids=[record_id])["ids"])
