"""
Stratum MemoryManager -- three-tier agent memory over a pluggable backend.

Tiers:
    scratchpad  volatile key/value working memory, never persisted
    episodic    recent interactions, bounded by compaction
    semantic    long-term knowledge, including compaction summaries

The in-memory tier lists are authoritative for the running process. Writes go
through to the LRU cache and the storage backend; backend failures are logged,
recorded in the health report and never raised to the caller.
"""

import json
import logging
from datetime import timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from stratum import crypto
from stratum.backend import (
    MEMORIES_TABLE,
    SCHEMA_VERSION,
    SESSION_DELTAS_TABLE,
    Delete,
    Insert,
    Select,
    StorageBackend,
    open_backend,
)
from stratum.cache import LRUCache
from stratum.compaction import auto_archive_count, auto_summary_entry, group_summary_entries
from stratum.config import MemoryConfig, PersistenceConfig
from stratum.errors import BackendError, ManagerClosedError
from stratum.search import (
    bm25_rank_to_score,
    build_fts_query,
    cosine_similarity,
    hash_content,
    merge_hybrid_results,
    rank_keyword_fallback,
)
from stratum.types import (
    DURABLE_TIERS,
    EntryType,
    MatchType,
    MemoryEntry,
    MemorySearchResult,
    SessionDeltaState,
    Tier,
    TranscriptEntry,
    coerce_tier,
    generate_id,
    parse_dt,
    utcnow,
)

logger = logging.getLogger("stratum.manager")

EntryLike = Union[MemoryEntry, Dict[str, Any]]

_ENTRY_FIELDS = ("content", "type", "timestamp", "metadata", "embedding")
_REQUIRED_FIELDS = ("content", "type", "timestamp")


def _format_ts(dt) -> Optional[str]:
    """Fixed-width UTC ISO text, so stored timestamps sort lexically."""
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_metadata(raw) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def _parse_embedding(raw) -> Optional[List[float]]:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(value, list) or not value:
        return None
    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in value):
        return None
    return [float(v) for v in value]


class MemoryManager:
    """Tiered memory engine: tiers, cache, search, compaction and snapshots.

    Args:
        config: Retrieval and compaction tuning.
        persistence: Backend settings; defaults to an in-memory SQLite database.
        backend: Pre-built StorageBackend. When given, ``persistence`` only
            sizes the cache and reports the FTS setting.
    """

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        persistence: Optional[PersistenceConfig] = None,
        backend: Optional[StorageBackend] = None,
    ):
        self.config = config or MemoryConfig()
        self.persistence = persistence or PersistenceConfig()

        self._scratchpad: Dict[str, Any] = {}
        self._tiers: Dict[Tier, List[MemoryEntry]] = {Tier.EPISODIC: [], Tier.SEMANTIC: []}
        self._session_deltas: Dict[str, SessionDeltaState] = {}
        self._cache = LRUCache(self.persistence.lru_cache_size)
        self._errors: List[str] = []
        self._schema_failed = False
        self._closed = False
        self.last_compaction_at = None

        if backend is None:
            backend, error = open_backend(self.persistence)
            if error:
                self._record_error(error)
        self._backend = backend

        try:
            self._backend.ensure_schema()
        except BackendError as e:
            self._schema_failed = True
            self._errors.append(f"Schema creation failed: {e}")
            logger.error(f"Failed to create schema: {e}")

        if self.persistence.fts_enabled and self._backend.fts_error:
            self._record_error(f"FTS unavailable: {self._backend.fts_error}")

        if self._backend.durable and not self._schema_failed:
            self.load_persisted_entries()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    @property
    def cache(self) -> LRUCache:
        return self._cache

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def episodic(self) -> List[MemoryEntry]:
        """Episodic entries, oldest first (a copy)."""
        return list(self._tiers[Tier.EPISODIC])

    @property
    def semantic(self) -> List[MemoryEntry]:
        """Semantic entries, oldest first (a copy)."""
        return list(self._tiers[Tier.SEMANTIC])

    @property
    def errors(self) -> List[str]:
        return list(self._errors)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _record_error(self, message: str) -> None:
        self._errors.append(message)
        logger.warning(message)

    def _check_open(self) -> None:
        if self._closed:
            raise ManagerClosedError("MemoryManager is closed")

    def _entry_row(self, entry: MemoryEntry, tier: Tier) -> Dict[str, Any]:
        now = _format_ts(utcnow())
        return {
            "id": entry.id,
            "tier": tier.value,
            "content": entry.content,
            "type": entry.type,
            "timestamp": _format_ts(entry.timestamp),
            "metadata": json.dumps(entry.metadata, default=str) if entry.metadata is not None else None,
            "embedding": json.dumps(entry.embedding) if entry.embedding is not None else None,
            "hash": hash_content(entry.content),
            "created_at": now,
            "updated_at": now,
        }

    @staticmethod
    def _row_to_entry(row: Dict[str, Any]) -> MemoryEntry:
        return MemoryEntry(
            id=row["id"],
            content=row["content"],
            type=row.get("type") or EntryType.INTERACTION,
            timestamp=parse_dt(row.get("timestamp")),
            metadata=_parse_metadata(row.get("metadata")),
            embedding=_parse_embedding(row.get("embedding")),
        )

    def _persist_entry(self, entry: MemoryEntry, tier: Tier) -> bool:
        try:
            self._backend.execute(Insert(MEMORIES_TABLE, self._entry_row(entry, tier)))
            return True
        except BackendError as e:
            self._record_error(f"Persist failed for {entry.id}: {e}")
            return False

    def _delete_persisted(self, entry_id: str) -> int:
        try:
            return self._backend.execute(Delete(MEMORIES_TABLE, entry_id))
        except BackendError as e:
            self._record_error(f"Delete failed for {entry_id}: {e}")
            return 0

    def _persist_session_delta(self, session_id: str, delta: SessionDeltaState) -> None:
        row = {
            "session_id": session_id,
            "last_indexed_turn": delta.last_indexed_turn,
            "last_indexed_at": _format_ts(delta.last_indexed_at),
            "pending_turns": delta.pending_turns,
        }
        try:
            self._backend.execute(Insert(SESSION_DELTAS_TABLE, row))
        except BackendError as e:
            self._record_error(f"Session delta persist failed for {session_id}: {e}")

    def _locate(self, entry_id: str) -> Optional[Tuple[Tier, int]]:
        for tier in DURABLE_TIERS:
            for i, entry in enumerate(self._tiers[tier]):
                if entry.id == entry_id:
                    return tier, i
        return None

    @staticmethod
    def _durable_tiers(tiers: Optional[Iterable]) -> List[Tier]:
        if tiers is None:
            return list(DURABLE_TIERS)
        resolved = [coerce_tier(t) for t in tiers]
        return [t for t in DURABLE_TIERS if t in resolved]

    # ------------------------------------------------------------------
    # Startup hydration
    # ------------------------------------------------------------------

    def load_persisted_entries(self) -> Dict[str, int]:
        """Replace the tier lists and session deltas with what the backend holds.

        Rows are scanned newest first and stored oldest first. On failure the
        tiers are left empty and the error is recorded.
        """
        loaded: Dict[Tier, List[MemoryEntry]] = {}
        deltas: Dict[str, SessionDeltaState] = {}
        try:
            for tier in DURABLE_TIERS:
                rows = self._backend.select(
                    Select(MEMORIES_TABLE, where={"tier": tier.value}, order_by="timestamp", descending=True)
                )
                entries = [self._row_to_entry(row) for row in rows]
                entries.reverse()
                loaded[tier] = entries
            for row in self._backend.select(Select(SESSION_DELTAS_TABLE)):
                deltas[row["session_id"]] = SessionDeltaState(
                    last_indexed_turn=row.get("last_indexed_turn") or 0,
                    last_indexed_at=row.get("last_indexed_at"),
                    pending_turns=row.get("pending_turns") or 0,
                )
        except BackendError as e:
            self._errors.append(f"Load failed: {e}")
            logger.error(f"Failed to load persisted entries: {e}")
            self._tiers = {Tier.EPISODIC: [], Tier.SEMANTIC: []}
            return {"episodic": 0, "semantic": 0, "sessions": 0}

        self._tiers = {Tier.EPISODIC: loaded[Tier.EPISODIC], Tier.SEMANTIC: loaded[Tier.SEMANTIC]}
        self._session_deltas = deltas
        self._cache.clear()
        logger.info(
            "Loaded %d episodic and %d semantic memories from %s",
            len(loaded[Tier.EPISODIC]), len(loaded[Tier.SEMANTIC]), self._backend.name,
        )
        return {
            "episodic": len(loaded[Tier.EPISODIC]),
            "semantic": len(loaded[Tier.SEMANTIC]),
            "sessions": len(deltas),
        }

    # ------------------------------------------------------------------
    # Context (legacy three-tier form)
    # ------------------------------------------------------------------

    def initialize_context(self) -> Dict[str, Any]:
        """Fresh, empty context for a new session."""
        return {"scratchpad": {}, "episodic": [], "semantic": []}

    def export_context(self) -> Dict[str, Any]:
        return {
            "scratchpad": dict(self._scratchpad),
            "episodic": list(self._tiers[Tier.EPISODIC]),
            "semantic": list(self._tiers[Tier.SEMANTIC]),
        }

    def import_context(self, context: Dict[str, Any]) -> None:
        """Replace the three tiers with *context* and persist its entries.

        Entries may be MemoryEntry objects or their dict form. Rows already in
        the backend that are not part of *context* are left in place.
        """
        self._check_open()
        episodic = [self._as_entry(e) for e in context.get("episodic") or []]
        semantic = [self._as_entry(e) for e in context.get("semantic") or []]
        self._check_tier_ids(episodic, semantic)
        self._scratchpad = dict(context.get("scratchpad") or {})
        self._tiers = {Tier.EPISODIC: episodic, Tier.SEMANTIC: semantic}
        self._cache.clear()

        try:
            with self._backend.transaction():
                for tier in DURABLE_TIERS:
                    for entry in self._tiers[tier]:
                        self._persist_entry(entry, tier)
        except BackendError as e:
            self._record_error(f"Failed to persist imported context: {e}")
        logger.info("Memory context imported")

    @staticmethod
    def _as_entry(value: EntryLike) -> MemoryEntry:
        if isinstance(value, MemoryEntry):
            return value
        return MemoryEntry.from_dict(value)

    @staticmethod
    def _check_tier_ids(episodic: List[MemoryEntry], semantic: List[MemoryEntry]) -> None:
        """Reject imported tiers that repeat an id or share one across tiers."""
        seen: Dict[str, Tier] = {}
        for tier, entries in ((Tier.EPISODIC, episodic), (Tier.SEMANTIC, semantic)):
            for entry in entries:
                previous = seen.get(entry.id)
                if previous is tier:
                    raise ValueError(f"Duplicate id {entry.id!r} in the {tier.value} tier")
                if previous is not None:
                    raise ValueError(f"Entry {entry.id!r} appears in both the episodic and semantic tiers")
                seen[entry.id] = tier

    # ------------------------------------------------------------------
    # Scratchpad
    # ------------------------------------------------------------------

    def store_scratchpad(self, key: str, value: Any) -> None:
        self._check_open()
        self._scratchpad[key] = value
        logger.debug("Stored in scratchpad: %s", key)

    def retrieve_scratchpad(self, key: str, default: Any = None) -> Any:
        return self._scratchpad.get(key, default)

    def clear_scratchpad(self) -> None:
        self._check_open()
        self._scratchpad.clear()
        logger.debug("Scratchpad cleared")

    # ------------------------------------------------------------------
    # Episodic / semantic writes
    # ------------------------------------------------------------------

    def _add(
        self,
        tier: Tier,
        content: str,
        type: str,
        timestamp,
        metadata: Optional[Dict[str, Any]],
        embedding: Optional[List[float]],
    ) -> MemoryEntry:
        self._check_open()
        if not isinstance(content, str) or not content:
            raise ValueError("content must be a non-empty string")
        entry = MemoryEntry(
            id=generate_id(),
            content=content,
            type=type or EntryType.INTERACTION,
            timestamp=timestamp,
            metadata=metadata,
            embedding=list(embedding) if embedding is not None else None,
        )
        self._tiers[tier].append(entry)
        self._persist_entry(entry, tier)
        self._cache.set(entry.id, entry)
        logger.debug("Added %s memory: %s", tier.value, entry.id)
        return entry

    def add_episodic(
        self,
        content: str,
        type: str = EntryType.INTERACTION,
        timestamp=None,
        metadata: Optional[Dict[str, Any]] = None,
        embedding: Optional[List[float]] = None,
    ) -> MemoryEntry:
        """Record a recent interaction. May trigger automatic compaction."""
        entry = self._add(Tier.EPISODIC, content, type, timestamp, metadata, embedding)
        if self.config.compaction_enabled:
            count = auto_archive_count(
                len(self._tiers[Tier.EPISODIC]),
                self.config.max_results,
                self.config.compaction_threshold,
            )
            if count:
                self._compact_auto(count)
        return entry

    def add_semantic(
        self,
        content: str,
        type: str = EntryType.KNOWLEDGE,
        timestamp=None,
        metadata: Optional[Dict[str, Any]] = None,
        embedding: Optional[List[float]] = None,
    ) -> MemoryEntry:
        """Record long-term knowledge."""
        return self._add(Tier.SEMANTIC, content, type, timestamp, metadata, embedding)

    # ------------------------------------------------------------------
    # Lookup / delete / embeddings
    # ------------------------------------------------------------------

    def get_entry_by_id(self, entry_id: str) -> Optional[MemoryEntry]:
        """Cache first, then the tier lists, then the backend."""
        cached = self._cache.get(entry_id)
        if cached is not None:
            return cached

        located = self._locate(entry_id)
        if located is not None:
            tier, idx = located
            entry = self._tiers[tier][idx]
            self._cache.set(entry_id, entry)
            return entry

        try:
            rows = self._backend.select(Select(MEMORIES_TABLE, where={"id": entry_id}, limit=1))
        except BackendError as e:
            logger.debug("Backend lookup for %s failed: %s", entry_id, e)
            return None
        if not rows:
            return None
        entry = self._row_to_entry(rows[0])
        self._cache.set(entry_id, entry)
        return entry

    def _search_hit(self, entry_id: str) -> Optional[MemoryEntry]:
        """Resolve a search hit without touching cache order or statistics."""
        cached = self._cache.peek(entry_id)
        if cached is not None:
            return cached
        located = self._locate(entry_id)
        if located is not None:
            return self._tiers[located[0]][located[1]]
        try:
            rows = self._backend.select(Select(MEMORIES_TABLE, where={"id": entry_id}, limit=1))
        except BackendError as e:
            logger.debug("Backend lookup for %s failed: %s", entry_id, e)
            return None
        return self._row_to_entry(rows[0]) if rows else None

    def delete_entry(self, entry_id: str) -> bool:
        """Remove an entry from its tier, the cache and the backend."""
        self._check_open()
        found = False
        located = self._locate(entry_id)
        if located is not None:
            tier, idx = located
            del self._tiers[tier][idx]
            found = True
        if self._delete_persisted(entry_id):
            found = True
        self._cache.delete(entry_id)
        return found

    def store_embedding(self, entry_id: str, embedding: Sequence[float]) -> bool:
        """Attach (or overwrite) the embedding of a live entry.

        Returns False if no entry with *entry_id* exists in either durable tier.
        """
        self._check_open()
        located = self._locate(entry_id)
        if located is None:
            return False
        tier, idx = located
        entry = self._tiers[tier][idx]
        entry.embedding = [float(v) for v in embedding]
        self._persist_entry(entry, tier)
        return True

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, int]:
        return {
            "scratchpad_size": len(self._scratchpad),
            "episodic_count": len(self._tiers[Tier.EPISODIC]),
            "semantic_count": len(self._tiers[Tier.SEMANTIC]),
        }

    def get_session_delta(self, session_id: str) -> Optional[SessionDeltaState]:
        delta = self._session_deltas.get(session_id)
        return delta.copy() if delta is not None else None

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def retrieve(self, query: str, tier=Tier.EPISODIC) -> List[MemoryEntry]:
        """Case-insensitive substring match within one tier, newest first."""
        tier = coerce_tier(tier)
        if tier is Tier.SCRATCHPAD:
            return []
        needle = query.lower()
        matches = [e for e in self._tiers[tier] if needle in e.content.lower()]
        matches.sort(key=lambda e: e.timestamp, reverse=True)
        return matches[: self.config.max_results]

    def search_keyword(self, query: str, tiers=None, limit: Optional[int] = None) -> List[MemorySearchResult]:
        """Full-text search, or coverage scoring when no index is available."""
        tiers = self._durable_tiers(tiers)
        limit = self.config.max_results if limit is None else limit
        if not tiers or limit <= 0:
            return []

        fts_query = build_fts_query(query) if self._backend.fts_available else None
        if fts_query:
            try:
                rows = self._backend.search_fulltext(fts_query, [t.value for t in tiers], limit)
            except BackendError as e:
                logger.warning(f"FTS search failed, falling back: {e}")
            else:
                results = []
                for entry_id, tier_value, rank in rows:
                    entry = self._search_hit(entry_id)
                    if entry is None:
                        continue
                    results.append(
                        MemorySearchResult(entry, bm25_rank_to_score(rank), Tier(tier_value), MatchType.KEYWORD)
                    )
                return results

        candidates = [(entry, tier) for tier in tiers for entry in self._tiers[tier]]
        return rank_keyword_fallback(query, candidates, limit)

    def search_vector(
        self, query_embedding: Sequence[float], tiers=None, limit: Optional[int] = None
    ) -> List[MemorySearchResult]:
        """Cosine ranking of stored embeddings against *query_embedding*."""
        tiers = self._durable_tiers(tiers)
        limit = self.config.max_results if limit is None else limit
        if not query_embedding or not tiers or limit <= 0:
            return []
        tier_values = [t.value for t in tiers]

        try:
            native = self._backend.vector_candidates(query_embedding, tier_values, limit)
        except BackendError as e:
            logger.debug("Native vector search failed: %s", e)
            native = None

        scored: List[Tuple[str, str, float]] = []
        if native is not None:
            scored = [(i, t, s) for i, t, s in native if s > 0]
        else:
            try:
                rows = self._backend.select(Select(MEMORIES_TABLE, where={"tier": tuple(tier_values)}))
            except BackendError as e:
                logger.warning(f"Vector search failed: {e}")
                return []
            for row in rows:
                stored = _parse_embedding(row.get("embedding"))
                if stored is None:
                    continue
                similarity = cosine_similarity(query_embedding, stored)
                if similarity <= 0:
                    continue
                scored.append((row["id"], row["tier"], similarity))

        results = []
        for entry_id, tier_value, similarity in scored:
            entry = self._search_hit(entry_id)
            if entry is None:
                continue
            results.append(MemorySearchResult(entry, similarity, Tier(tier_value), MatchType.VECTOR))
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    def merge_hybrid_results(
        self,
        keyword_results: Sequence[MemorySearchResult],
        vector_results: Sequence[MemorySearchResult],
        text_weight: float = 0.4,
        vector_weight: float = 0.6,
    ) -> List[MemorySearchResult]:
        return merge_hybrid_results(keyword_results, vector_results, text_weight, vector_weight)

    def hybrid_search(
        self,
        query: str,
        max_results: Optional[int] = None,
        min_score: float = 0.0,
        tiers=None,
        query_embedding: Optional[Sequence[float]] = None,
        vector_weight: float = 0.6,
        text_weight: float = 0.4,
    ) -> List[MemorySearchResult]:
        """Keyword and vector search fused with reciprocal rank fusion.

        Without *query_embedding* (or when vector search finds nothing) the
        keyword results are returned as-is; when keyword search finds nothing
        the vector results are. Each channel is asked for 3 x max_results
        candidates before fusion.
        """
        max_results = self.config.max_results if max_results is None else max_results
        tiers = self._durable_tiers(tiers)
        candidates = max_results * 3

        keyword = self.search_keyword(query, tiers, candidates)
        vector = self.search_vector(query_embedding, tiers, candidates) if query_embedding else []

        if not keyword and not vector:
            return []
        if not vector:
            ranked = keyword
        elif not keyword:
            ranked = vector
        else:
            ranked = merge_hybrid_results(keyword, vector, text_weight, vector_weight)
        return [r for r in ranked if r.score >= min_score][:max_results]

    # ------------------------------------------------------------------
    # Batch operations
    # ------------------------------------------------------------------

    def _stage_upsert(
        self, raw: EntryLike, tier: Tier, staged: Dict[str, MemoryEntry]
    ) -> Tuple[MemoryEntry, bool]:
        """Resolve one batch item to the entry that will be written.

        Returns ``(entry, is_update)``. Dict items update only the fields they
        carry; MemoryEntry items replace the existing entry wholesale.
        """
        if isinstance(raw, MemoryEntry):
            fields = {f: getattr(raw, f) for f in _ENTRY_FIELDS}
            entry_id = raw.id
            partial = False
        elif isinstance(raw, dict):
            fields = {f: raw[f] for f in _ENTRY_FIELDS if f in raw}
            entry_id = raw.get("id")
            partial = True
        else:
            raise ValueError(f"Unsupported batch item: {type(raw).__name__}")

        entry_id = entry_id or generate_id()
        other = Tier.SEMANTIC if tier is Tier.EPISODIC else Tier.EPISODIC
        if any(e.id == entry_id for e in self._tiers[other]):
            raise ValueError(f"Entry {entry_id} already exists in the {other.value} tier")

        existing = staged.get(entry_id)
        if existing is None:
            located = self._locate(entry_id)
            if located is not None:
                existing = self._tiers[located[0]][located[1]]

        if existing is not None and partial:
            merged = existing.copy()
            for name, value in fields.items():
                # None leaves a required field unchanged
                if value is None and name in _REQUIRED_FIELDS:
                    continue
                if name == "timestamp":
                    value = parse_dt(value) or merged.timestamp
                setattr(merged, name, value)
            entry = merged
        else:
            content = fields.get("content")
            if not isinstance(content, str) or not content:
                raise ValueError(f"Entry {entry_id} has no content")
            entry = MemoryEntry(
                id=entry_id,
                content=content,
                type=fields.get("type") or EntryType.INTERACTION,
                timestamp=fields.get("timestamp"),
                metadata=fields.get("metadata"),
                embedding=fields.get("embedding"),
            )
        if not isinstance(entry.content, str) or not entry.content:
            raise ValueError(f"Entry {entry_id} has no content")
        return entry, existing is not None

    def _apply_upsert(self, entry: MemoryEntry, tier: Tier) -> None:
        entries = self._tiers[tier]
        for i, current in enumerate(entries):
            if current.id == entry.id:
                entries[i] = entry
                break
        else:
            entries.append(entry)
        self._cache.set(entry.id, entry)

    def _batch_upsert(self, entries: Sequence[EntryLike], tier: Tier) -> Tuple[Dict[str, Any], List[bool]]:
        result: Dict[str, Any] = {"inserted": 0, "updated": 0, "failed": 0, "errors": []}
        if tier is Tier.SCRATCHPAD:
            result["errors"].append("Batch operations are not supported for the scratchpad tier")
            result["failed"] = len(entries)
            return result, [False] * len(entries)

        if self._backend.supports_transactions:
            staged: Dict[str, MemoryEntry] = {}
            inserted = updated = 0
            try:
                with self._backend.transaction():
                    for raw in entries:
                        entry, is_update = self._stage_upsert(raw, tier, staged)
                        self._backend.execute(Insert(MEMORIES_TABLE, self._entry_row(entry, tier)))
                        staged[entry.id] = entry
                        if is_update:
                            updated += 1
                        else:
                            inserted += 1
            except (BackendError, ValueError) as e:
                result["errors"].append(f"Transaction failed: {e}")
                result["failed"] = len(entries)
                if isinstance(e, BackendError):
                    self._record_error(f"Batch upsert to {tier.value} rolled back: {e}")
                return result, [False] * len(entries)

            for entry in staged.values():
                self._apply_upsert(entry, tier)
            result["inserted"] = inserted
            result["updated"] = updated
            outcomes = [True] * len(entries)
        else:
            outcomes = []
            for raw in entries:
                try:
                    entry, is_update = self._stage_upsert(raw, tier, {})
                    self._backend.execute(Insert(MEMORIES_TABLE, self._entry_row(entry, tier)))
                except (BackendError, ValueError) as e:
                    result["errors"].append(str(e))
                    result["failed"] += 1
                    outcomes.append(False)
                    continue
                self._apply_upsert(entry, tier)
                result["updated" if is_update else "inserted"] += 1
                outcomes.append(True)

        logger.info(
            "Batch upsert to %s: %d inserted, %d updated, %d failed",
            tier.value, result["inserted"], result["updated"], result["failed"],
        )
        return result, outcomes

    def batch_upsert(self, entries: Sequence[EntryLike], tier=Tier.EPISODIC) -> Dict[str, Any]:
        """Insert or update many entries in one tier.

        On a transactional backend the batch is all-or-nothing. Otherwise each
        item is applied independently and failures are collected per item.
        """
        self._check_open()
        result, _ = self._batch_upsert(list(entries), coerce_tier(tier))
        return result

    # ------------------------------------------------------------------
    # Session transcripts
    # ------------------------------------------------------------------

    def index_session_transcript(
        self, session_id: str, entries: Sequence[Union[TranscriptEntry, Dict[str, Any]]]
    ) -> Dict[str, int]:
        """Index only the transcript turns past the session's watermark."""
        self._check_open()
        turns = [e if isinstance(e, TranscriptEntry) else TranscriptEntry(**e) for e in entries]
        delta = self._session_deltas.get(session_id)
        if delta is None:
            delta = SessionDeltaState()
            self._session_deltas[session_id] = delta

        fresh = [t for t in turns if t.turn_number > delta.last_indexed_turn]
        if not fresh:
            return {"indexed": 0, "skipped": len(turns)}

        items = [
            {
                "content": f"[{t.role}] {t.content}",
                "type": EntryType.INTERACTION,
                "timestamp": t.timestamp,
                "metadata": {
                    "session_id": t.session_id,
                    "role": t.role,
                    "turn_number": t.turn_number,
                    "source": "transcript",
                },
            }
            for t in fresh
        ]
        result, outcomes = self._batch_upsert(items, Tier.EPISODIC)

        failed = outcomes.count(False)
        if failed:
            logger.warning("Session %s: %d of %d turns failed to index", session_id, failed, len(fresh))
        # The watermark moves past every turn seen, failed ones included.
        delta.last_indexed_turn = max(delta.last_indexed_turn, max(t.turn_number for t in fresh))
        delta.last_indexed_at = utcnow()
        delta.pending_turns = 0
        self._persist_session_delta(session_id, delta)

        return {
            "indexed": result["inserted"] + result["updated"],
            "skipped": len(turns) - len(fresh),
        }

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def _archive(self, archived: List[MemoryEntry], summaries: List[MemoryEntry]) -> None:
        """Move *archived* (the oldest episodic entries) out, *summaries* in."""
        archived_ids = {e.id for e in archived}
        self._tiers[Tier.EPISODIC] = [e for e in self._tiers[Tier.EPISODIC] if e.id not in archived_ids]
        self._tiers[Tier.SEMANTIC].extend(summaries)
        for entry in archived:
            self._cache.delete(entry.id)
        for summary in summaries:
            self._cache.set(summary.id, summary)

        try:
            with self._backend.transaction():
                for summary in summaries:
                    self._persist_entry(summary, Tier.SEMANTIC)
                for entry in archived:
                    self._delete_persisted(entry.id)
        except BackendError as e:
            self._record_error(f"Compaction persist failed: {e}")
        self.last_compaction_at = utcnow()

    def _compact_auto(self, count: int) -> None:
        logger.info("Compacting episodic memory...")
        archived = self._tiers[Tier.EPISODIC][:count]
        self._archive(archived, [auto_summary_entry(archived)])
        logger.info(f"Compaction complete. Archived {len(archived)} entries.")

    def run_compaction(self, target_episodic_size: Optional[int] = None, tier=Tier.EPISODIC) -> Dict[str, int]:
        """Archive the oldest episodic entries down to *target_episodic_size*.

        One semantic summary is written per entry type among the archived
        entries. Only the episodic tier can be compacted.
        """
        tier = coerce_tier(tier)
        if tier is not Tier.EPISODIC:
            raise ValueError(f"Compaction is only supported for the episodic tier, not {tier.value}")
        self._check_open()

        target = self.config.max_results if target_episodic_size is None else int(target_episodic_size)
        if target < 0:
            raise ValueError("target_episodic_size must be >= 0")

        entries = self._tiers[Tier.EPISODIC]
        before = len(entries)
        if before <= target:
            return {"archived": 0, "summaries_created": 0, "entries_before": before, "entries_after": before}

        archived = entries[: before - target]
        summaries = group_summary_entries(archived)
        self._archive(archived, summaries)
        logger.info("Compaction archived %d entries into %d summaries", len(archived), len(summaries))
        return {
            "archived": len(archived),
            "summaries_created": len(summaries),
            "entries_before": before,
            "entries_after": len(self._tiers[Tier.EPISODIC]),
        }

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def get_health_report(self) -> Dict[str, Any]:
        episodic_count = len(self._tiers[Tier.EPISODIC])
        semantic_count = len(self._tiers[Tier.SEMANTIC])
        db_episodic = episodic_count
        db_semantic = semantic_count
        db_size = 0
        if not self._closed:
            try:
                db_episodic = self._backend.count(MEMORIES_TABLE, {"tier": Tier.EPISODIC.value})
                db_semantic = self._backend.count(MEMORIES_TABLE, {"tier": Tier.SEMANTIC.value})
                db_size = self._backend.size_bytes()
            except BackendError as e:
                logger.debug("Health counts unavailable: %s", e)

        fts_enabled = self.persistence.fts_enabled
        fts_available = self._backend.fts_available
        if self._closed or self._schema_failed:
            status = "error"
        elif self._errors or (fts_enabled and not fts_available):
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "backend": self._backend.name,
            "durable": self._backend.durable,
            "atomic_batches": self._backend.supports_transactions,
            "fts": {
                "enabled": fts_enabled,
                "available": fts_available,
                "error": self._backend.fts_error,
            },
            "tiers": {
                "scratchpad": {"size": len(self._scratchpad)},
                "episodic": {"count": episodic_count, "db_count": db_episodic},
                "semantic": {"count": semantic_count, "db_count": db_semantic},
            },
            "lru_cache": {
                "size": len(self._cache),
                "max_size": self._cache.max_size,
                "hit_rate": self._cache.hit_rate(),
            },
            "db_size_bytes": db_size,
            "last_compaction_at": self.last_compaction_at.isoformat() if self.last_compaction_at else None,
            "errors": list(self._errors),
        }

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def export_snapshot(self) -> Dict[str, Any]:
        return {
            "version": str(SCHEMA_VERSION),
            "exportedAt": utcnow().isoformat(),
            "scratchpad": dict(self._scratchpad),
            "episodic": [e.to_dict() for e in self._tiers[Tier.EPISODIC]],
            "semantic": [e.to_dict() for e in self._tiers[Tier.SEMANTIC]],
            "sessionDeltas": {sid: d.to_dict() for sid, d in self._session_deltas.items()},
        }

    def import_snapshot(self, snapshot: Dict[str, Any]) -> None:
        """Replace all state with *snapshot* and re-persist it.

        The backend wipe and re-insert share one transaction on a
        transactional backend.
        """
        self._check_open()
        episodic = [self._as_entry(e) for e in snapshot.get("episodic") or []]
        semantic = [self._as_entry(e) for e in snapshot.get("semantic") or []]
        self._check_tier_ids(episodic, semantic)
        deltas = {
            sid: d.copy() if isinstance(d, SessionDeltaState) else SessionDeltaState.from_dict(d)
            for sid, d in (snapshot.get("sessionDeltas") or {}).items()
        }

        self._scratchpad = dict(snapshot.get("scratchpad") or {})
        self._tiers = {Tier.EPISODIC: episodic, Tier.SEMANTIC: semantic}
        self._session_deltas = deltas
        self._cache.clear()

        try:
            with self._backend.transaction():
                self._backend.execute(Delete(MEMORIES_TABLE))
                self._backend.execute(Delete(SESSION_DELTAS_TABLE))
                for tier in DURABLE_TIERS:
                    for entry in self._tiers[tier]:
                        self._backend.execute(Insert(MEMORIES_TABLE, self._entry_row(entry, tier)))
                for sid, delta in deltas.items():
                    self._persist_session_delta(sid, delta)
        except BackendError as e:
            self._record_error(f"Failed to persist snapshot: {e}")

        logger.info("Snapshot imported: %d episodic, %d semantic", len(episodic), len(semantic))

    def export_to_file(self, filepath) -> Dict[str, Any]:
        """Write the snapshot envelope (encrypted when enabled) with 0600 perms."""
        filepath = Path(filepath)
        snapshot = self.export_snapshot()
        envelope = crypto.seal_snapshot(snapshot)
        crypto.write_private_file(filepath, json.dumps(envelope, indent=2).encode("utf-8"))
        logger.info("Snapshot exported to %s", filepath)
        return {
            "filepath": str(filepath),
            "episodic": len(snapshot["episodic"]),
            "semantic": len(snapshot["semantic"]),
            "sessions": len(snapshot["sessionDeltas"]),
            "encrypted": envelope["encrypted"],
            "exported_at": snapshot["exportedAt"],
        }

    def import_from_file(self, filepath) -> Dict[str, Any]:
        """Load a snapshot written by export_to_file, replacing all state."""
        filepath = Path(filepath)
        if filepath.is_symlink():
            raise ValueError("Import file must not be a symlink")
        snapshot = crypto.open_snapshot(json.loads(filepath.read_text()))
        self.import_snapshot(snapshot)
        return {
            "filepath": str(filepath),
            "episodic": len(self._tiers[Tier.EPISODIC]),
            "semantic": len(self._tiers[Tier.SEMANTIC]),
            "sessions": len(self._session_deltas),
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the backend and drop the cache. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        try:
            self._backend.close()
        except BackendError as e:
            logger.warning(f"Error closing database: {e}")
        self._cache.clear()
        logger.info("Memory manager closed")

    def __enter__(self) -> "MemoryManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
