"""
Hybrid exact + semantic cache for generated answers.

Tiers:
- exact: SHA-256 of a short context window plus the new message, used while
  the conversation is at most `exact_max_depth` messages deep
- semantic: nearest-neighbour search over embeddings of the whole context,
  restricted to the same depth bucket, used between `semantic_min_depth`
  and `semantic_max_depth`
- resource: answers for "summarize this resource", keyed by URL

Lifetimes decay with depth: deeper conversations are less likely to repeat,
so their answers are kept for a shorter time. The cache is an optimization
only; every failure degrades to a miss and nothing here raises to callers.
"""

import asyncio
import math
import time
import uuid
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
)

from assistant_core.config import Settings
from assistant_core.errors import CacheUnavailable, IndexRebuildInProgress
from assistant_core.models import Message, Role
from assistant_core.services.cache_store import (
    KeyValueStore,
    MemoryKeyValueStore,
    sha256_hex,
)
from assistant_core.services.vector_index import MemoryVectorIndex, VectorIndex
from assistant_core.utils.logging import get_logger

logger = get_logger(__name__)

EXACT_CACHE_PREFIX = "exact:cache:"
SEMANTIC_CACHE_PREFIX = "semantic:cache:"
RESOURCE_CACHE_PREFIX = "resource:cache:"

SECONDS_PER_DAY = 86400

Embedder = Callable[[str], Awaitable[List[float]]]
T = TypeVar("T")


@dataclass(frozen=True)
class CacheHit:
    """A cached answer and where it came from."""

    tier: str
    response: str
    score: Optional[float] = None
    key: Optional[str] = None


class TopicExtractor:
    """Tags text with coarse topics so related entries can be invalidated together."""

    DEFAULT_TERMS: Dict[str, str] = {
        "asp.net": "aspnet",
        "signalr": "signalr",
        "blazor": "blazor",
        "mcp": "mcp",
        "semantic kernel": "semantic-kernel",
        "redis": "redis",
        "openai": "openai",
        "azure": "azure",
        "entity framework": "ef",
        "minimal api": "minimal-api",
        ".net": "dotnet",
        "c#": "csharp",
        "visual studio": "visualstudio",
        "nuget": "nuget",
        "maui": "maui",
        "python": "python",
        "fastapi": "fastapi",
        "pydantic": "pydantic",
    }

    def __init__(self, terms: Optional[Dict[str, str]] = None):
        self.terms = terms if terms is not None else dict(self.DEFAULT_TERMS)

    def extract(self, text: str) -> List[str]:
        lowered = text.lower()
        topics: List[str] = []
        for term, tag in self.terms.items():
            if term in lowered and tag not in topics:
                topics.append(tag)
        return topics


def build_context_string(context: Sequence[Message], new_message: str) -> str:
    """
    Render messages as role-prefixed lines, in order, ending with the new message.

    The rendering is order preserving so identical conversations hash
    identically and reordered ones do not.
    """
    lines = []
    for message in context:
        prefix = "User" if message.role == Role.USER else "Assistant"
        lines.append(f"{prefix}: {message.content}\n")
    lines.append(f"User: {new_message}\n")
    return "".join(lines)


def compute_ttl_days(
    message_count: int, base_days: int = 21, decay_factor: float = 0.7
) -> int:
    """
    Cache lifetime in whole days for an answer given at message_count.

    `base_days * decay_factor ** (message_count - 1)`, floored, never below
    one day. message_count counts the new user message, so a first message
    gets the full base lifetime.
    """
    lifetime = base_days * math.pow(decay_factor, message_count - 1)
    return max(1, int(lifetime))


class ResponseCache:
    """
    Exact, semantic and resource answer cache.

    Args:
        settings: Depth limits, threshold, lifetimes and timeouts
        embedder: Async callable producing an embedding for a text
        backend: Key-value backend for answers (defaults to memory)
        index: Vector index for the semantic tier (defaults to memory)
        topic_extractor: Topic tagger for semantic entries
        clock: Time source, injectable for tests
    """

    def __init__(
        self,
        settings: Settings,
        embedder: Embedder,
        backend: Optional[KeyValueStore] = None,
        index: Optional[VectorIndex] = None,
        topic_extractor: Optional[TopicExtractor] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.embedder = embedder
        self.clock = clock
        self.backend: KeyValueStore = backend or MemoryKeyValueStore(
            maxsize=settings.response_cache_maxsize, clock=clock
        )
        self.index: VectorIndex = index or MemoryVectorIndex(
            dimensions=settings.embedding_dimensions, clock=clock
        )
        self.topics = topic_extractor or TopicExtractor()
        self.timeout_s = settings.cache_timeout_seconds

        self._admin_lock = asyncio.Lock()
        self._rebuilding = False
        self._stats: Dict[str, int] = {
            "exact_hits": 0,
            "semantic_hits": 0,
            "resource_hits": 0,
            "misses": 0,
            "exact_sets": 0,
            "semantic_sets": 0,
            "resource_sets": 0,
            "errors": 0,
        }

    # ===== Lifetimes and keys =====

    def ttl_days_for_depth(self, depth: int) -> int:
        return compute_ttl_days(
            depth + 1,
            self.settings.base_cache_lifetime_days,
            self.settings.cache_lifetime_decay_factor,
        )

    def ttl_seconds_for_depth(self, depth: int) -> int:
        return self.ttl_days_for_depth(depth) * SECONDS_PER_DAY

    def exact_window(self, context: Sequence[Message]) -> List[Message]:
        size = self.settings.exact_max_depth
        return list(context[-size:]) if size > 0 else []

    def exact_key(self, context_window: Sequence[Message], new_message: str) -> str:
        return sha256_hex(build_context_string(context_window, new_message))

    def uses_exact_tier(self, depth: int) -> bool:
        return depth <= self.settings.exact_max_depth

    def uses_semantic_search(self, depth: int) -> bool:
        return self.settings.semantic_min_depth <= depth <= self.settings.semantic_max_depth

    def stores_semantic(self, depth: int) -> bool:
        return depth <= self.settings.semantic_max_depth

    @property
    def rebuilding(self) -> bool:
        return self._rebuilding

    # ===== Failure absorption =====

    async def _guarded(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        default: T,
        timeout_s: Optional[float] = None,
    ) -> T:
        """Run a cache operation with a deadline; any failure yields default."""
        try:
            return await asyncio.wait_for(call(), timeout_s or self.timeout_s)
        except IndexRebuildInProgress:
            logger.debug("Cache read during index rebuild", operation=operation)
            return default
        except Exception as e:
            self._stats["errors"] += 1
            logger.warning(
                "Response cache degraded to miss",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
            return default

    def _check_not_rebuilding(self) -> None:
        if self._rebuilding:
            raise IndexRebuildInProgress("Semantic index rebuild in progress")

    async def _embed(self, text: str) -> List[float]:
        vector = await asyncio.wait_for(
            self.embedder(text), self.settings.embedding_timeout_seconds
        )
        if not vector:
            raise CacheUnavailable("Embedding provider returned an empty vector")
        return list(vector)

    # ===== Exact tier =====

    async def get_exact(
        self, context_window: Sequence[Message], new_message: str
    ) -> Optional[str]:
        """Verbatim lookup over the last few messages plus the new one."""
        key = self.exact_key(self.exact_window(context_window), new_message)

        async def read() -> Optional[str]:
            self._check_not_rebuilding()
            entry = await self.backend.get(EXACT_CACHE_PREFIX + key)
            return entry["response"] if entry else None

        return await self._guarded("get_exact", read, None)

    async def store_exact(self, key: str, response: str, ttl_s: float) -> bool:
        async def write() -> bool:
            self._check_not_rebuilding()
            await self.backend.set(
                EXACT_CACHE_PREFIX + key,
                {"response": response},
                ttl_s=ttl_s,
                labels=["exact"],
            )
            self._stats["exact_sets"] += 1
            return True

        return await self._guarded("store_exact", write, False)

    # ===== Semantic tier =====

    async def search_semantic(
        self, context: Sequence[Message], new_message: str, depth: int
    ) -> Optional[Tuple[str, float]]:
        """
        Nearest cached answer of the same depth, if similar enough.

        Returns:
            (document_id, similarity) when similarity >= threshold, else None
        """
        if not self.uses_semantic_search(depth):
            return None

        async def search() -> Optional[Tuple[str, float]]:
            self._check_not_rebuilding()
            full_context = build_context_string(context, new_message)
            vector = await self._embed(full_context)
            hit = await self.index.search(vector, depth)
            if hit is None:
                return None
            if hit.score < self.settings.similarity_threshold:
                logger.debug(
                    "Semantic candidate below threshold",
                    depth=depth,
                    score=round(hit.score, 4),
                    threshold=self.settings.similarity_threshold,
                )
                return None
            return hit.document_id, hit.score

        timeout = self.timeout_s + self.settings.embedding_timeout_seconds
        return await self._guarded("search_semantic", search, None, timeout)

    async def get_semantic_response(self, document_id: str) -> Optional[str]:
        async def read() -> Optional[str]:
            self._check_not_rebuilding()
            entry = await self.backend.get(document_id)
            return entry["response"] if entry else None

        return await self._guarded("get_semantic_response", read, None)

    async def store_semantic(
        self,
        response: str,
        embedding: Sequence[float],
        depth: int,
        topics: Sequence[str],
        ttl_s: float,
        full_context: str,
    ) -> Optional[str]:
        """Store an answer in the semantic tier and index its embedding."""

        async def write() -> str:
            self._check_not_rebuilding()
            document_id = SEMANTIC_CACHE_PREFIX + str(uuid.uuid4())
            now = self.clock()
            await self.backend.set(
                document_id,
                {
                    "response": response,
                    "message_count": depth,
                    "topics": list(topics),
                    "cached_at": now,
                    "context_hash": sha256_hex(full_context),
                    "full_context": full_context,
                },
                ttl_s=ttl_s,
                labels=["semantic", f"depth:{depth}"],
            )
            await self.index.add(
                document_id,
                embedding,
                depth=depth,
                topics=topics,
                expires_at=now + ttl_s,
            )
            self._stats["semantic_sets"] += 1
            return document_id

        return await self._guarded("store_semantic", write, None)

    # ===== Combined lookups =====

    async def lookup(
        self, context: Sequence[Message], new_message: str
    ) -> Optional[CacheHit]:
        """
        Consult the tiers applicable to this depth.

        Exact first (cheapest), then semantic; conversations deeper than the
        semantic ceiling always miss.
        """
        depth = len(context)

        if self.uses_exact_tier(depth):
            response = await self.get_exact(context, new_message)
            if response is not None:
                self._stats["exact_hits"] += 1
                logger.info("Response cache hit", tier="exact", depth=depth)
                return CacheHit(tier="exact", response=response)

        if self.uses_semantic_search(depth):
            match = await self.search_semantic(context, new_message, depth)
            if match is not None:
                document_id, score = match
                response = await self.get_semantic_response(document_id)
                if response is not None:
                    self._stats["semantic_hits"] += 1
                    logger.info(
                        "Response cache hit",
                        tier="semantic",
                        depth=depth,
                        score=round(score, 4),
                    )
                    return CacheHit(
                        tier="semantic", response=response, score=score, key=document_id
                    )

        self._stats["misses"] += 1
        logger.debug("Response cache miss", depth=depth)
        return None

    async def store(
        self, context: Sequence[Message], new_message: str, response: str
    ) -> List[str]:
        """
        Write a freshly generated answer to every applicable tier.

        Returns:
            Names of the tiers that were written
        """
        depth = len(context)
        if not self.stores_semantic(depth):
            logger.debug("Conversation too deep to cache", depth=depth)
            return []

        ttl_s = self.ttl_seconds_for_depth(depth)
        written: List[str] = []

        if self.uses_exact_tier(depth):
            key = self.exact_key(self.exact_window(context), new_message)
            if await self.store_exact(key, response, ttl_s):
                written.append("exact")

        full_context = build_context_string(context, new_message)
        embedding = await self._guarded(
            "embed",
            lambda: self._embed(full_context),
            None,
            self.settings.embedding_timeout_seconds,
        )
        if embedding is not None:
            document_id = await self.store_semantic(
                response,
                embedding,
                depth,
                self.topics.extract(full_context),
                ttl_s,
                full_context,
            )
            if document_id is not None:
                written.append("semantic")

        logger.info(
            "Response cached",
            depth=depth,
            tiers=written,
            ttl_days=ttl_s // SECONDS_PER_DAY,
        )
        return written

    # ===== Resource tier =====

    @staticmethod
    def resource_key(url: str) -> str:
        return RESOURCE_CACHE_PREFIX + sha256_hex(url.strip())

    async def get_resource(self, url: str) -> Optional[str]:
        async def read() -> Optional[str]:
            entry = await self.backend.get(self.resource_key(url))
            return entry["response"] if entry else None

        response = await self._guarded("get_resource", read, None)
        if response is not None:
            self._stats["resource_hits"] += 1
        return response

    async def store_resource(self, url: str, response: str) -> bool:
        async def write() -> bool:
            await self.backend.set(
                self.resource_key(url),
                {"response": response, "url": url},
                ttl_s=self.settings.resource_cache_days * SECONDS_PER_DAY,
                labels=["resource"],
            )
            self._stats["resource_sets"] += 1
            return True

        return await self._guarded("store_resource", write, False)

    # ===== Administration =====

    async def initialize(self) -> None:
        """Make sure the semantic index exists."""
        await self.refresh_index()

    async def refresh_index(self) -> bool:
        """Apply the index schema without touching existing entries."""
        async with self._admin_lock:
            try:
                if not await self.index.has_schema():
                    await self.index.create_schema()
                return True
            except Exception as e:
                self._stats["errors"] += 1
                logger.error("Failed to refresh vector index", error=str(e), exc_info=True)
                return False

    async def recreate_index(self) -> bool:
        """
        Drop and rebuild the semantic index. Destructive.

        Readers see cache misses until the rebuild completes.
        """
        async with self._admin_lock:
            self._rebuilding = True
            try:
                await self.index.drop_schema()
                removed = await self.backend.delete_prefix(SEMANTIC_CACHE_PREFIX)
                await self.index.create_schema()
                logger.info("Recreated vector index", removed_documents=removed)
                return True
            except Exception as e:
                self._stats["errors"] += 1
                logger.error("Failed to recreate vector index", error=str(e), exc_info=True)
                return False
            finally:
                self._rebuilding = False

    async def clear_all(self) -> int:
        """Remove every exact and semantic entry; resource summaries are kept."""
        async with self._admin_lock:
            self._rebuilding = True
            try:
                removed = await self.backend.delete_prefix(EXACT_CACHE_PREFIX)
                removed += await self.backend.delete_prefix(SEMANTIC_CACHE_PREFIX)
                await self.index.clear()
                logger.info("Cleared response cache", removed=removed)
                return removed
            except Exception as e:
                self._stats["errors"] += 1
                logger.error("Failed to clear response cache", error=str(e), exc_info=True)
                return 0
            finally:
                self._rebuilding = False

    async def invalidate_topics(self, *topics: str) -> int:
        """Delete semantic entries tagged with any of the given topics."""

        async def invalidate() -> int:
            document_ids = await self.index.find_by_topics(topics)
            for document_id in document_ids:
                await self.index.delete(document_id)
                await self.backend.delete(document_id)
            return len(document_ids)

        removed = await self._guarded("invalidate_topics", invalidate, 0)
        logger.info("Invalidated cache entries", topics=list(topics), removed=removed)
        return removed

    async def stats(self) -> Dict[str, Any]:
        indexed = await self._guarded("count", self.index.count, 0)
        return {
            **self._stats,
            "indexed_vectors": indexed,
            "rebuilding": self._rebuilding,
            "backend": self.backend.stats(),
        }
