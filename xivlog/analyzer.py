from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional

import regex as re

from xivlog.combatlog.abilities import AbilityJobMap
from xivlog.combatlog.attribution import PlayerRegistry, assign_participants, infer_jobs_from_abilities
from xivlog.combatlog.damage import attach_damage
from xivlog.combatlog.models import (
    AbilityEvent,
    AttributeUpdateEvent,
    CombatantAddEvent,
    CombatantRemoveEvent,
    DamageEvent,
    RawLogEntry,
    Segment,
)
from xivlog.combatlog.parser import parse_events
from xivlog.combatlog.segments import assign_ordinals, build_segments
from xivlog.loki_client import LokiClient

logger = logging.getLogger("xivlog")

# Daily windows are defined on the JST wall clock, which has no DST.
JST = timezone(timedelta(hours=9), "JST")

_RX_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def analyze_entries(entries: Iterable[RawLogEntry], ability_jobs: AbilityJobMap) -> List[Segment]:
    """Run the full pipeline over already-fetched raw lines."""
    ordered = sorted(entries, key=lambda e: e.timestamp_ns)
    events = parse_events(ordered)

    damage = [ev for ev in events if isinstance(ev, DamageEvent)]
    abilities = [ev for ev in events if isinstance(ev, AbilityEvent)]
    adds = [ev for ev in events if isinstance(ev, CombatantAddEvent)]
    removes = [ev for ev in events if isinstance(ev, CombatantRemoveEvent)]
    attrs = [ev for ev in events if isinstance(ev, AttributeUpdateEvent)]

    registry = PlayerRegistry.build(adds, attrs)
    segments = build_segments(events)

    assign_participants(segments, adds, removes, registry)
    jobs_by_segment = infer_jobs_from_abilities(segments, abilities, ability_jobs, registry)
    attach_damage(segments, damage, registry.name_to_job, jobs_by_segment)
    assign_ordinals(segments)

    logger.debug(
        "Analyzed %d entries: %d events, %d segments, %d damage events",
        len(ordered),
        len(events),
        len(segments),
        len(damage),
    )
    return segments


class CombatAnalyzer:
    def __init__(self, loki: LokiClient, ability_jobs: AbilityJobMap) -> None:
        self._loki = loki
        self._ability_jobs = ability_jobs

    async def analyze_logs_between(self, start: datetime, end: datetime) -> List[Segment]:
        entries = await self._loki.query_logs_in_range(start, end)
        return analyze_entries(entries, self._ability_jobs)


# -----------------
# Daily window
# -----------------


@dataclass(frozen=True)
class TimeWindow:
    target_date: str
    start: datetime
    end: datetime


def previous_jst_date(now: Optional[datetime] = None) -> str:
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return (current.astimezone(JST).date() - timedelta(days=1)).isoformat()


def parse_target_date(value: str) -> date:
    if not _RX_DATE.match(value or ""):
        raise ValueError("date must be in YYYY-MM-DD format")
    return date.fromisoformat(value)


def determine_time_window(
    requested_date: Optional[str] = None,
    *,
    start_hour_jst: int = 10,
    end_hour_jst: int = 10,
    now: Optional[datetime] = None,
) -> TimeWindow:
    """UTC bounds of the JST reporting day for ``requested_date``.

    The day runs from ``start_hour_jst`` to ``end_hour_jst``; an end hour at or
    before the start hour means the following calendar day. Without a date the
    previous JST day is used.
    """
    target = requested_date if requested_date else previous_jst_date(now)
    day = parse_target_date(target)

    base = datetime(day.year, day.month, day.day, tzinfo=JST)
    start = base + timedelta(hours=start_hour_jst)
    end = base + timedelta(hours=end_hour_jst)
    if end_hour_jst <= start_hour_jst:
        end += timedelta(days=1)

    return TimeWindow(
        target_date=target,
        start=start.astimezone(timezone.utc),
        end=end.astimezone(timezone.utc),
    )
