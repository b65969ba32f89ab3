"""
Knowledge Retrieval Service

In-memory retrieval over a directory of plain-text/markdown documents.

- Indexing: each file is split on blank lines, each paragraph truncated to
  ``KNOWLEDGE_CHUNK_CHARS`` and embedded
- Search: cosine similarity top-k with numpy
- The index is immutable after load and shared read-only by all connections
"""

import os
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from parley.core.config import settings
from parley.core.logging import get_logger
from parley.services.llm_client import Embedder

logger = get_logger(__name__)

PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
INDEXED_EXTENSIONS = (".md", ".txt")


@dataclass(frozen=True)
class DocChunk:
    id: str
    source: str
    text: str
    embedding: np.ndarray


@dataclass(frozen=True)
class RetrievalHit:
    rank: int
    id: str
    source: str
    text: str
    score: float

    def to_source(self, preview_chars: int = 240) -> dict:
        """Entry for a ``ctx_sources`` event"""
        return {
            "n": self.rank,
            "id": self.id,
            "source": self.source,
            "score": round(self.score, 4),
            "preview": self.text[:preview_chars],
        }


class KnowledgeIndex:
    """Immutable set of embedded chunks backed by one stacked embedding matrix."""

    def __init__(self, chunks: Sequence[DocChunk] = ()):
        self._chunks: Tuple[DocChunk, ...] = tuple(chunks)
        if self._chunks:
            matrix = np.vstack([chunk.embedding for chunk in self._chunks]).astype(np.float64)
            self._norms = np.linalg.norm(matrix, axis=1)
            self._matrix = matrix
        else:
            self._matrix = np.empty((0, 0))
            self._norms = np.empty(0)

    @property
    def chunks(self) -> Tuple[DocChunk, ...]:
        return self._chunks

    def __len__(self) -> int:
        return len(self._chunks)

    def top_k(self, query: Sequence[float], k: int = 6) -> List[RetrievalHit]:
        """Rank chunks by cosine similarity to ``query``; ranks start at 1."""
        if not self._chunks or k <= 0:
            return []
        q = np.asarray(query, dtype=np.float64)
        if q.shape[0] != self._matrix.shape[1]:
            raise ValueError(f"Query dimension {q.shape[0]} does not match index dimension {self._matrix.shape[1]}")

        scores = self._matrix @ q / (self._norms * np.linalg.norm(q) + 1e-12)
        # Stable sort keeps corpus order among ties
        order = np.argsort(-scores, kind="stable")[:k]
        return [
            RetrievalHit(
                rank=rank,
                id=self._chunks[i].id,
                source=self._chunks[i].source,
                text=self._chunks[i].text,
                score=float(scores[i]),
            )
            for rank, i in enumerate(order, start=1)
        ]


def top_k(query: Sequence[float], chunks: Sequence[DocChunk], k: int = 6) -> List[RetrievalHit]:
    """Functional form of ``KnowledgeIndex.top_k``."""
    return KnowledgeIndex(chunks).top_k(query, k)


def split_paragraphs(text: str, max_chars: int) -> List[str]:
    parts = [part for part in PARAGRAPH_SPLIT.split(text.replace("\r\n", "\n")) if part.strip()]
    return [part[:max_chars] for part in parts]


def format_context(hits: Sequence[RetrievalHit]) -> str:
    """Context block cited by the model as [ctx:n]."""
    return "\n\n".join(f"[ctx:{hit.rank}] ({hit.source}) {hit.text}" for hit in hits)


async def index_dir(directory: str, embedder: Embedder, max_chars: Optional[int] = None) -> KnowledgeIndex:
    """
    Embed every paragraph of every indexable file in ``directory``.

    Chunk ids are ``<file>#<paragraph index>``.
    """
    max_chars = max_chars or settings.KNOWLEDGE_CHUNK_CHARS
    chunks: List[DocChunk] = []

    for name in sorted(os.listdir(directory)):
        path = os.path.join(directory, name)
        if not os.path.isfile(path) or not name.lower().endswith(INDEXED_EXTENSIONS):
            continue
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()

        for i, part in enumerate(split_paragraphs(text, max_chars)):
            embedding = await embedder.embed(part)
            chunks.append(DocChunk(id=f"{name}#{i}", source=name, text=part, embedding=np.asarray(embedding)))

    return KnowledgeIndex(chunks)


async def load_knowledge(directory: Optional[str], embedder: Embedder) -> KnowledgeIndex:
    """Build the index at startup; any failure leaves retrieval disabled."""
    if not directory:
        return KnowledgeIndex()
    try:
        index = await index_dir(directory, embedder)
    except Exception as e:
        logger.warning("knowledge_load_failed", directory=directory, error=str(e))
        return KnowledgeIndex()

    logger.info("knowledge_loaded", directory=directory, chunks=len(index))
    return index
