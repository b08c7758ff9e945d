import asyncio
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from ticket_audit.schemas.rules import (
    SEVERITY_RANK,
    ChunkMetadata,
    RuleChunk,
    RuleDocument,
    ScoredChunk,
)

logger = logging.getLogger(__name__)


class EmbeddingDimensionError(ValueError):
    """Raised when a query embedding does not match the dimension of the indexed chunks."""


class ChunkCache:
    """In-process cache of the active chunk set with a TTL and explicit invalidation."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._chunks: Optional[List[RuleChunk]] = None
        self._loaded_at = 0.0
        self._lock = threading.Lock()

    def get(self) -> Optional[List[RuleChunk]]:
        with self._lock:
            if self._chunks is None:
                return None
            if self._clock() - self._loaded_at > self.ttl_seconds:
                self._chunks = None
                return None
            return self._chunks

    def put(self, chunks: List[RuleChunk]) -> None:
        with self._lock:
            self._chunks = chunks
            self._loaded_at = self._clock()

    def invalidate(self) -> None:
        with self._lock:
            self._chunks = None


class RuleCorpusStore:
    """SQLite-backed store for rule documents and their embedded chunks."""

    def __init__(self, db_path: Path, cache_ttl_seconds: float = 300.0) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.cache = ChunkCache(cache_ttl_seconds)
        self._init_db()

    def _init_db(self) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS rules (
                    rule_id TEXT PRIMARY KEY,
                    title TEXT,
                    is_active INTEGER NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    chunk_id TEXT PRIMARY KEY,
                    rule_id TEXT NOT NULL,
                    embedding_input TEXT NOT NULL,
                    embedding TEXT NOT NULL,
                    metadata TEXT NOT NULL,
                    token_count INTEGER NOT NULL,
                    is_active INTEGER NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_rule ON chunks(rule_id)")

    def upsert_rule(self, rule: RuleDocument) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO rules (rule_id, title, is_active, payload) VALUES (?, ?, ?, ?)",
                (rule.rule_id, rule.title, int(rule.is_active), rule.model_dump_json(by_alias=True)),
            )
        self.cache.invalidate()

    def upsert_chunks(self, rule_id: str, chunks: List[RuleChunk]) -> None:
        """Replace every chunk of a rule with the given set."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("DELETE FROM chunks WHERE rule_id = ?", (rule_id,))
            for chunk in chunks:
                if chunk.rule_id != rule_id:
                    raise ValueError(f"Chunk {chunk.chunk_id} does not belong to rule {rule_id}")
                conn.execute(
                    """
                    INSERT OR REPLACE INTO chunks
                    (chunk_id, rule_id, embedding_input, embedding, metadata, token_count, is_active)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        chunk.chunk_id,
                        chunk.rule_id,
                        chunk.embedding_input,
                        json.dumps(chunk.embedding),
                        chunk.metadata.model_dump_json(),
                        chunk.token_count,
                        int(chunk.is_active),
                    ),
                )
        self.cache.invalidate()
        logger.info("Upserted chunks", extra={"rule_id": rule_id, "count": len(chunks)})

    def _load_active_chunks(self) -> List[RuleChunk]:
        cached = self.cache.get()
        if cached is not None:
            return cached

        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT chunk_id, rule_id, embedding_input, embedding, metadata, token_count
                FROM chunks WHERE is_active = 1 ORDER BY rowid
                """
            ).fetchall()

        chunks = [
            RuleChunk(
                chunk_id=row[0],
                rule_id=row[1],
                embedding_input=row[2],
                embedding=json.loads(row[3]),
                metadata=ChunkMetadata.model_validate_json(row[4]),
                token_count=row[5],
            )
            for row in rows
        ]
        self.cache.put(chunks)
        logger.debug("Loaded active chunks", extra={"count": len(chunks)})
        return chunks

    def _find_by_tags(self, tags: Sequence[str], limit: int, exclude_rule_ids: Iterable[str] = ()) -> List[ScoredChunk]:
        """First matching chunk per rule, up to ``limit`` distinct rules."""
        wanted = set(tags)
        if not wanted or limit <= 0:
            return []
        seen = set(exclude_rule_ids)
        matches: List[ScoredChunk] = []
        for chunk in self._load_active_chunks():
            if chunk.rule_id in seen or not wanted.intersection(chunk.metadata.tags):
                continue
            seen.add(chunk.rule_id)
            matches.append(_to_scored(chunk, similarity=0.0, source="mandatory_tag"))
            if len(matches) >= limit:
                break
        return matches

    def _find_by_category(self, category_id: str, limit: int) -> List[ScoredChunk]:
        matches = [c for c in self._load_active_chunks() if c.metadata.category_id == category_id]
        return [_to_scored(c, similarity=0.0, source="category") for c in matches[:limit]]

    def _semantic_search(
        self,
        query_embedding: List[float],
        limit: int,
        category_id: Optional[str],
        tags: Sequence[str],
        min_severity: Optional[str],
        exclude_rule_ids: Iterable[str],
    ) -> List[ScoredChunk]:
        excluded = set(exclude_rule_ids)
        wanted_tags = set(tags)
        min_rank = SEVERITY_RANK.get(min_severity, 0) if min_severity else 0

        scored: List[ScoredChunk] = []
        for chunk in self._load_active_chunks():
            if category_id and chunk.metadata.category_id != category_id:
                continue
            if wanted_tags and not wanted_tags.intersection(chunk.metadata.tags):
                continue
            if chunk.rule_id in excluded:
                continue
            if min_rank and SEVERITY_RANK.get(chunk.metadata.severity or "", 0) < min_rank:
                continue
            if len(chunk.embedding) != len(query_embedding):
                raise EmbeddingDimensionError(
                    f"Query embedding has {len(query_embedding)} dimensions, "
                    f"chunk {chunk.chunk_id} has {len(chunk.embedding)}; reindex the corpus"
                )
            score = cosine_similarity(query_embedding, chunk.embedding)
            scored.append(_to_scored(chunk, similarity=score, source="semantic"))

        scored.sort(key=lambda item: item.similarity, reverse=True)
        return scored[:limit]

    def _get_rules(self, rule_ids: Sequence[str]) -> List[RuleDocument]:
        if not rule_ids:
            return []
        placeholders = ",".join("?" for _ in rule_ids)
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT payload FROM rules WHERE is_active = 1 AND rule_id IN ({placeholders})",
                tuple(rule_ids),
            ).fetchall()
        return [RuleDocument.model_validate_json(row[0]) for row in rows]

    async def find_by_tags(
        self, tags: Sequence[str], limit: int = 10, exclude_rule_ids: Iterable[str] = ()
    ) -> List[ScoredChunk]:
        return await asyncio.to_thread(self._find_by_tags, list(tags), limit, list(exclude_rule_ids))

    async def find_by_category(self, category_id: str, limit: int = 20) -> List[ScoredChunk]:
        return await asyncio.to_thread(self._find_by_category, category_id, limit)

    async def semantic_search(
        self,
        query_embedding: List[float],
        limit: int = 10,
        category_id: Optional[str] = None,
        tags: Sequence[str] = (),
        min_severity: Optional[str] = None,
        exclude_rule_ids: Iterable[str] = (),
    ) -> List[ScoredChunk]:
        """Brute-force cosine scan over every active chunk that passes the filters."""
        return await asyncio.to_thread(
            self._semantic_search,
            query_embedding,
            limit,
            category_id,
            list(tags),
            min_severity,
            list(exclude_rule_ids),
        )

    async def get_rules(self, rule_ids: Sequence[str]) -> List[RuleDocument]:
        return await asyncio.to_thread(self._get_rules, list(rule_ids))


def _to_scored(chunk: RuleChunk, similarity: float, source: str) -> ScoredChunk:
    return ScoredChunk(
        chunk_id=chunk.chunk_id,
        rule_id=chunk.rule_id,
        embedding_input=chunk.embedding_input,
        metadata=chunk.metadata,
        token_count=chunk.token_count,
        similarity=similarity,
        source=source,
    )


def cosine_similarity(a: List[float], b: List[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = sum(x * x for x in a) ** 0.5
    norm_b = sum(y * y for y in b) ** 0.5
    if norm_a == 0 or norm_b == 0:
        return 0.0
    # float rounding can push |cos| a hair past 1
    return max(-1.0, min(1.0, dot / (norm_a * norm_b)))
