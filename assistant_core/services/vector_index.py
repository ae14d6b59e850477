"""
Depth-scoped vector index for the semantic response cache.

The index stores one embedding per cached answer together with the context
depth it was produced at and its topic tags. Searches are KNN-1 by cosine
similarity restricted to a single depth bucket, so answers produced at
different conversation depths never compete.
"""

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from assistant_core.errors import CacheUnavailable
from assistant_core.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class IndexSchema:
    """Vector field definition."""

    name: str
    dimensions: int
    metric: str = "COSINE"


@dataclass
class IndexedVector:
    document_id: str
    vector: Sequence[float]
    norm: float
    depth: int
    cached_at: float
    expires_at: float
    topics: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SearchHit:
    """Nearest neighbour within a depth bucket."""

    document_id: str
    score: float
    cached_at: float


class VectorIndex(Protocol):
    """Interface of a depth-filtered KNN index."""

    async def has_schema(self) -> bool: ...

    async def create_schema(self) -> None: ...

    async def drop_schema(self) -> None: ...

    async def add(
        self,
        document_id: str,
        vector: Sequence[float],
        *,
        depth: int,
        topics: Iterable[str],
        expires_at: float,
    ) -> None: ...

    async def search(self, vector: Sequence[float], depth: int) -> Optional[SearchHit]: ...

    async def find_by_topics(self, topics: Iterable[str]) -> List[str]: ...

    async def delete(self, document_id: str) -> None: ...

    async def clear(self) -> None: ...

    async def count(self) -> int: ...


def vector_norm(vector: Sequence[float]) -> float:
    return math.sqrt(math.fsum(x * x for x in vector))


def cosine_similarity(
    a: Sequence[float],
    b: Sequence[float],
    norm_a: Optional[float] = None,
    norm_b: Optional[float] = None,
) -> float:
    """Cosine similarity in [-1, 1]; zero vectors compare as 0."""
    if len(a) != len(b):
        raise ValueError(f"Vector length mismatch: {len(a)} != {len(b)}")
    norm_a = vector_norm(a) if norm_a is None else norm_a
    norm_b = vector_norm(b) if norm_b is None else norm_b
    if norm_a == 0 or norm_b == 0:
        return 0.0
    dot = math.fsum(x * y for x, y in zip(a, b))
    return dot / (norm_a * norm_b)


class MemoryVectorIndex:
    """
    Flat (exhaustive) in-memory vector index.

    Vectors are grouped per depth bucket so a search only scans candidates of
    the requested depth. Expired vectors are pruned lazily during searches.
    """

    def __init__(
        self,
        name: str = "embeddings_idx",
        dimensions: int = 1536,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self.dimensions = dimensions
        self.clock = clock
        self._schema: Optional[IndexSchema] = None
        self._buckets: Dict[int, Dict[str, IndexedVector]] = {}
        self._lock = asyncio.Lock()

    async def has_schema(self) -> bool:
        return self._schema is not None

    async def create_schema(self) -> None:
        async with self._lock:
            if self._schema is not None:
                logger.debug("Vector index already exists", index=self.name)
                return
            self._schema = IndexSchema(name=self.name, dimensions=self.dimensions)
            logger.info(
                "Created vector index", index=self.name, dimensions=self.dimensions
            )

    async def drop_schema(self) -> None:
        async with self._lock:
            self._schema = None
            self._buckets.clear()
            logger.info("Dropped vector index", index=self.name)

    def _require_schema(self) -> IndexSchema:
        if self._schema is None:
            raise CacheUnavailable(f"Vector index '{self.name}' does not exist")
        return self._schema

    def _check_dimensions(self, vector: Sequence[float]) -> None:
        schema = self._require_schema()
        if len(vector) != schema.dimensions:
            raise CacheUnavailable(
                f"Expected {schema.dimensions}-dimensional vector, got {len(vector)}"
            )

    async def add(
        self,
        document_id: str,
        vector: Sequence[float],
        *,
        depth: int,
        topics: Iterable[str],
        expires_at: float,
    ) -> None:
        async with self._lock:
            self._check_dimensions(vector)
            stored = tuple(float(x) for x in vector)
            self._buckets.setdefault(depth, {})[document_id] = IndexedVector(
                document_id=document_id,
                vector=stored,
                norm=vector_norm(stored),
                depth=depth,
                cached_at=self.clock(),
                expires_at=expires_at,
                topics=list(topics),
            )

    async def search(self, vector: Sequence[float], depth: int) -> Optional[SearchHit]:
        """
        Return the nearest vector of the same depth.

        Ties on similarity go to the most recently cached vector.
        """
        async with self._lock:
            self._check_dimensions(vector)
            bucket = self._buckets.get(depth)
            if not bucket:
                return None

            now = self.clock()
            query_norm = vector_norm(vector)
            best: Optional[SearchHit] = None
            expired: List[str] = []

            for doc in bucket.values():
                if now >= doc.expires_at:
                    expired.append(doc.document_id)
                    continue
                score = cosine_similarity(vector, doc.vector, query_norm, doc.norm)
                if best is None or (score, doc.cached_at) > (best.score, best.cached_at):
                    best = SearchHit(doc.document_id, score, doc.cached_at)

            for document_id in expired:
                del bucket[document_id]

            return best

    async def find_by_topics(self, topics: Iterable[str]) -> List[str]:
        wanted = set(topics)
        async with self._lock:
            return [
                doc.document_id
                for bucket in self._buckets.values()
                for doc in bucket.values()
                if wanted.intersection(doc.topics)
            ]

    async def delete(self, document_id: str) -> None:
        async with self._lock:
            for bucket in self._buckets.values():
                bucket.pop(document_id, None)

    async def clear(self) -> None:
        async with self._lock:
            self._buckets.clear()

    async def count(self) -> int:
        return sum(len(bucket) for bucket in self._buckets.values())
