"""
Stratum compaction -- turn aged episodic entries into semantic summaries.

Two callers:
    automatic   MemoryManager.add_episodic once episodic outgrows 2 x max_results;
                all archived entries fold into one summary.
    explicit    MemoryManager.run_compaction; one summary per entry type.

This module only plans and writes summaries. Removing the archived originals
from tiers, cache and backend is the manager's job.
"""

import math
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from stratum.types import EntryType, MemoryEntry, generate_id, utcnow

PREVIEW_ENTRIES = 3
PREVIEW_CHARS = 100
AUTO_COMPACTION_SOURCE = "auto-compaction"


def auto_archive_count(size: int, max_results: int, threshold: float) -> int:
    """How many of the oldest episodic entries automatic compaction archives.

    Zero unless size exceeds 2 x max_results and floor(threshold x size).
    """
    if size <= 2 * max_results:
        return 0
    if size <= math.floor(threshold * size):
        return 0
    return max(0, size - max_results)


def period(entries: Sequence[MemoryEntry]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Earliest and latest timestamp in *entries*."""
    if not entries:
        return None, None
    stamps = [e.timestamp for e in entries]
    return min(stamps), max(stamps)


def _period_metadata(entries: Sequence[MemoryEntry]) -> Dict[str, Optional[str]]:
    start, end = period(entries)
    return {
        "start": start.isoformat() if start else None,
        "end": end.isoformat() if end else None,
    }


def group_by_type(entries: Sequence[MemoryEntry]) -> Dict[str, List[MemoryEntry]]:
    """Group entries by type, keeping first-seen type order."""
    groups: Dict[str, List[MemoryEntry]] = {}
    for entry in entries:
        groups.setdefault(entry.type, []).append(entry)
    return groups


def build_compaction_summary(entries: Sequence[MemoryEntry]) -> str:
    """Human-readable summary of an archived group.

    ``Archived summary of N <types> entries from <date> to <date>. Preview: a; b; c``
    """
    if not entries:
        return "Empty archive"

    types = ", ".join(dict.fromkeys(e.type for e in entries))
    head = f"Archived summary of {len(entries)} {types} entries"
    start, end = period(entries)
    if start and end:
        head += f" from {start.date().isoformat()} to {end.date().isoformat()}"
    previews = "; ".join(e.content[:PREVIEW_CHARS] for e in entries[:PREVIEW_ENTRIES])
    return f"{head}. Preview: {previews}"


def build_auto_summary(entries: Sequence[MemoryEntry]) -> str:
    """``Archived summary of N interactions from <date> to <date>``"""
    text = f"Archived summary of {len(entries)} interactions"
    start, end = period(entries)
    if start and end:
        text += f" from {start.date().isoformat()} to {end.date().isoformat()}"
    return text


def auto_summary_entry(archived: Sequence[MemoryEntry]) -> MemoryEntry:
    """The single semantic entry produced by automatic compaction."""
    return MemoryEntry(
        id=generate_id(),
        content=build_auto_summary(archived),
        type=EntryType.KNOWLEDGE,
        timestamp=utcnow(),
        metadata={
            "archived": len(archived),
            "period": _period_metadata(archived),
            "source": AUTO_COMPACTION_SOURCE,
        },
    )


def group_summary_entries(archived: Sequence[MemoryEntry]) -> List[MemoryEntry]:
    """One semantic summary entry per type group of *archived*."""
    summaries = []
    for entry_type, group in group_by_type(archived).items():
        summaries.append(
            MemoryEntry(
                id=generate_id(),
                content=build_compaction_summary(group),
                type=EntryType.KNOWLEDGE,
                timestamp=utcnow(),
                metadata={
                    "compaction_source": entry_type,
                    "archived": len(group),
                    "period": _period_metadata(group),
                },
            )
        )
    return summaries
