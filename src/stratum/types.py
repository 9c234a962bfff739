"""
Stratum types -- entries, tiers and search results shared across the engine.
"""

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class Tier(str, Enum):
    """Memory scope. The string value is the persisted tier tag."""
    SCRATCHPAD = "scratchpad"
    EPISODIC = "episodic"
    SEMANTIC = "semantic"


class MatchType(str, Enum):
    """Which ranking channel produced a search result."""
    KEYWORD = "keyword"
    VECTOR = "vector"
    HYBRID = "hybrid"


class EntryType:
    """Well-known entry type tags. The type field itself is an open string."""
    INTERACTION = "interaction"
    OBSERVATION = "observation"
    DECISION = "decision"
    KNOWLEDGE = "knowledge"


DURABLE_TIERS = (Tier.EPISODIC, Tier.SEMANTIC)


def coerce_tier(value) -> Tier:
    """Accept a Tier or its string value."""
    if isinstance(value, Tier):
        return value
    return Tier(str(value))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_dt(value) -> Optional[datetime]:
    """Parse an ISO string (or pass through a datetime) as an aware UTC datetime.

    Returns None when *value* is falsy. Naive values are assumed UTC.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def generate_id() -> str:
    """Monotonic-ish, collision-resistant entry id: mem_<epoch-ms>_<9 hex>."""
    return f"mem_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


# ---------------------------------------------------------------------------
# MemoryEntry
# ---------------------------------------------------------------------------


class MemoryEntry:
    """A single episodic or semantic memory."""

    __slots__ = ("id", "content", "type", "timestamp", "metadata", "embedding")

    def __init__(
        self,
        id: str,
        content: str,
        type: str = EntryType.INTERACTION,
        timestamp: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
        embedding: Optional[List[float]] = None,
    ):
        self.id = id
        self.content = content
        self.type = type
        self.timestamp = parse_dt(timestamp) or utcnow()
        self.metadata = metadata
        self.embedding = embedding

    def __eq__(self, other):
        if not isinstance(other, MemoryEntry):
            return NotImplemented
        return (
            self.id == other.id
            and self.content == other.content
            and self.type == other.type
            and self.timestamp == other.timestamp
            and self.metadata == other.metadata
            and self.embedding == other.embedding
        )

    def __hash__(self):
        return hash(self.id)

    def __repr__(self):
        preview = self.content[:40].replace("\n", " ")
        return f"MemoryEntry(id={self.id!r}, type={self.type!r}, content={preview!r})"

    def copy(self) -> "MemoryEntry":
        return MemoryEntry(
            id=self.id,
            content=self.content,
            type=self.type,
            timestamp=self.timestamp,
            metadata=dict(self.metadata) if self.metadata is not None else None,
            embedding=list(self.embedding) if self.embedding is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "content": self.content,
            "type": self.type,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }
        if self.embedding is not None:
            data["embedding"] = list(self.embedding)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryEntry":
        return cls(
            id=data["id"],
            content=data["content"],
            type=data.get("type") or EntryType.INTERACTION,
            timestamp=parse_dt(data.get("timestamp")),
            metadata=data.get("metadata"),
            embedding=data.get("embedding"),
        )


# ---------------------------------------------------------------------------
# Session delta tracking
# ---------------------------------------------------------------------------


class SessionDeltaState:
    """Per-session watermark of the last indexed transcript turn."""

    __slots__ = ("last_indexed_turn", "last_indexed_at", "pending_turns")

    def __init__(
        self,
        last_indexed_turn: int = 0,
        last_indexed_at: Optional[datetime] = None,
        pending_turns: int = 0,
    ):
        self.last_indexed_turn = max(0, int(last_indexed_turn))
        self.last_indexed_at = parse_dt(last_indexed_at)
        self.pending_turns = int(pending_turns)

    def __eq__(self, other):
        if not isinstance(other, SessionDeltaState):
            return NotImplemented
        return (
            self.last_indexed_turn == other.last_indexed_turn
            and self.last_indexed_at == other.last_indexed_at
            and self.pending_turns == other.pending_turns
        )

    def __repr__(self):
        return (
            f"SessionDeltaState(last_indexed_turn={self.last_indexed_turn}, "
            f"pending_turns={self.pending_turns})"
        )

    def copy(self) -> "SessionDeltaState":
        return SessionDeltaState(self.last_indexed_turn, self.last_indexed_at, self.pending_turns)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastIndexedTurn": self.last_indexed_turn,
            "lastIndexedAt": self.last_indexed_at.isoformat() if self.last_indexed_at else None,
            "pendingTurns": self.pending_turns,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionDeltaState":
        return cls(
            last_indexed_turn=data.get("lastIndexedTurn", 0),
            last_indexed_at=data.get("lastIndexedAt"),
            pending_turns=data.get("pendingTurns", 0),
        )


class TranscriptEntry:
    """One conversational turn handed to index_session_transcript()."""

    __slots__ = ("session_id", "role", "content", "timestamp", "turn_number")

    def __init__(
        self,
        session_id: str,
        role: str,
        content: str,
        turn_number: int,
        timestamp: Optional[datetime] = None,
    ):
        self.session_id = session_id
        self.role = role
        self.content = content
        self.turn_number = int(turn_number)
        self.timestamp = parse_dt(timestamp) or utcnow()


# ---------------------------------------------------------------------------
# Search results
# ---------------------------------------------------------------------------


class MemorySearchResult:
    """A scored hit from keyword, vector or hybrid search."""

    __slots__ = ("entry", "score", "tier", "match_type")

    def __init__(self, entry: MemoryEntry, score: float, tier: Tier, match_type: MatchType):
        self.entry = entry
        self.score = score
        self.tier = tier
        self.match_type = match_type

    def __repr__(self):
        return (
            f"MemorySearchResult(id={self.entry.id!r}, score={self.score:.4f}, "
            f"tier={self.tier.value}, match_type={self.match_type.value})"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry": self.entry.to_dict(),
            "score": self.score,
            "tier": self.tier.value,
            "matchType": self.match_type.value,
        }
