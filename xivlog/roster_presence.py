from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from xivlog.aggregation import AggregationResult, sha1_uuid
from xivlog.db import Db, PresenceRecord, RosterMember

logger = logging.getLogger("xivlog")

DEFAULT_BACKFILL_HOURS = 6
DEFAULT_MAX_SEGMENTS = 20


def canonicalize_name(name: str) -> str:
    """Case and whitespace insensitive key: "  Taro   Yamada " -> "taro yamada"."""
    return " ".join((name or "").split()).lower()


def build_roster_uuid(guild_id: str, name: str) -> str:
    return sha1_uuid(guild_id, name)


def canonical_name_map(names: Iterable[str]) -> Dict[str, str]:
    """canonical key -> original spelling; the first spelling seen wins."""
    out: Dict[str, str] = {}
    for name in names:
        key = canonicalize_name(name)
        if key and key not in out:
            out[key] = name
    return out


def build_presence_entries(
    segment_id: str,
    participants: Dict[str, str],
    roster: Sequence[RosterMember],
) -> List[PresenceRecord]:
    entries: List[PresenceRecord] = []
    for member in roster:
        matched = participants.get(canonicalize_name(member.name))
        entries.append(
            PresenceRecord(
                segment_id=segment_id,
                roster_id=build_roster_uuid(member.guild_id, member.name),
                player_name=member.name,
                matched_name=matched,
                participated=matched is not None,
            )
        )
    return entries


async def collect_participant_names(db: Db, segment_id: str) -> Dict[str, str]:
    names = await db.fetch_participant_names(segment_id)
    if not names:
        names = await db.fetch_player_stat_names(segment_id)
    return canonical_name_map(names)


async def process_roster_presence(
    db: Db,
    *,
    backfill_hours: int = DEFAULT_BACKFILL_HOURS,
    max_segments: int = DEFAULT_MAX_SEGMENTS,
    guild_ids: Optional[Iterable[str]] = None,
    now: Optional[datetime] = None,
) -> AggregationResult:
    """Resolve roster attendance for recent segments that have not been resolved yet."""
    current = now or datetime.now(timezone.utc)
    since = current - timedelta(hours=backfill_hours)
    guilds = sorted({g.strip() for g in (guild_ids or []) if g and g.strip()})

    segments = await db.list_unresolved_segments(since=since, limit=max_segments)
    if not segments:
        logger.debug("No segments pending roster resolution (since=%s)", since.isoformat())
        return AggregationResult(processed=0, failed=0)

    roster = await db.list_roster(guilds)
    logger.info(
        "Resolving roster presence: segments=%d roster=%d guilds=%s",
        len(segments),
        len(roster),
        ",".join(guilds) or "*",
    )
    if not roster:
        logger.warning("Roster is empty (guilds=%s); segments resolve with no presence rows", ",".join(guilds) or "*")

    processed = 0
    failed = 0
    for seg in segments:
        try:
            participants = await collect_participant_names(db, seg.segment_id)
            entries = build_presence_entries(seg.segment_id, participants, roster)
            await db.replace_presence(seg.segment_id, entries)
        except Exception as e:
            failed += 1
            logger.warning("Roster presence failed for segment %s: %s", seg.segment_id, e)
            continue

        logger.debug("Segment %s resolved with %d presence rows", seg.segment_id, len(entries))
        processed += 1

    logger.info("Roster presence done: processed=%d failed=%d", processed, failed)
    return AggregationResult(processed=processed, failed=failed)
