"""
Similarity Index

In-memory nearest-neighbour store over embedded ticket text.

Each record is (id, text, vector, metadata). Queries embed the query text
once and score every stored vector by cosine similarity (exact search,
O(N*D) per query). This is meant for the bounded corpus of recent tickets;
ChromaSimilarityIndex offers the same contract over an HNSW index.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
from langchain_core.embeddings import Embeddings

logger = logging.getLogger(__name__)

MetadataValue = Union[str, int, float]


@dataclass(frozen=True)
class SimilarityRecord:
    id: str
    text: str
    vector: np.ndarray = field(repr=False, compare=False)
    metadata: Mapping[str, MetadataValue] = field(default_factory=dict)


@dataclass(frozen=True)
class ScoredRecord:
    record: SimilarityRecord
    score: float


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 instead of raising when either vector is empty, has zero
    norm, or the dimensions differ.
    """
    va = np.asarray(a, dtype=float).ravel()
    vb = np.asarray(b, dtype=float).ravel()
    if va.size == 0 or va.shape != vb.shape:
        return 0.0

    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0

    score = float(np.dot(va, vb) / norm)
    if not np.isfinite(score):
        return 0.0
    return score


def _freeze_vector(values: Sequence[float]) -> np.ndarray:
    vector = np.array(values, dtype=float).ravel()
    vector.setflags(write=False)
    return vector


class SimilarityIndex:
    """
    Thread-safe exact cosine index.

    Readers copy the record list under the lock, so a query that races an
    ingest sees either the old or the new snapshot, never a partial record.

    Example:
        index = SimilarityIndex(BedrockEmbeddings(...))
        ticket_id = index.ingest("App crashes on login", {"phoneModel": "Pixel 7"})
        for hit in index.query("crash when logging in", top_k=3):
            print(hit.record.id, hit.score)
    """

    def __init__(self, embeddings: Embeddings):
        self.embeddings = embeddings
        self._lock = threading.RLock()
        # dict preserves insertion order, which doubles as the tie-breaker
        self._records: Dict[str, SimilarityRecord] = {}

    def ingest(
        self,
        text: str,
        metadata: Optional[Mapping[str, MetadataValue]] = None,
        record_id: Optional[str] = None,
    ) -> str:
        """
        Embed and store a record.

        Args:
            text: Raw record text
            metadata: Flat string/number metadata
            record_id: Explicit id (generated when omitted)

        Returns:
            The record id

        Raises:
            ValueError: If record_id is already present
        """
        record_id = record_id or str(uuid.uuid4())
        vector = _freeze_vector(self.embeddings.embed_documents([text])[0])
        record = SimilarityRecord(
            id=record_id,
            text=text,
            vector=vector,
            metadata=MappingProxyType(dict(metadata or {})),
        )

        with self._lock:
            if record_id in self._records:
                raise ValueError(f"Record already indexed: {record_id}")
            self._records[record_id] = record

        logger.debug("Indexed record %s (%d dims)", record_id, vector.size)
        return record_id

    def query(self, text: str, top_k: int = 4) -> List[ScoredRecord]:
        """
        Return up to top_k records most similar to text, best first.

        Ties keep insertion order (the earlier record wins).
        """
        if top_k <= 0:
            return []

        with self._lock:
            snapshot = list(self._records.values())

        if not snapshot:
            return []

        query_vector = self.embeddings.embed_query(text)
        scored = [
            ScoredRecord(record=record, score=cosine_similarity(query_vector, record.vector))
            for record in snapshot
        ]
        # sorted() is stable, so equal scores stay in insertion order
        scored = sorted(scored, key=lambda hit: hit.score, reverse=True)
        return scored[:top_k]

    def get(self, record_id: str) -> Optional[SimilarityRecord]:
        with self._lock:
            return self._records.get(record_id)

    def delete(self, record_id: str) -> bool:
        """Evict a record. Returns False if it was not present."""
        with self._lock:
            removed = self._records.pop(record_id, None)
        return removed is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        with self._lock:
            return record_id in self._records
