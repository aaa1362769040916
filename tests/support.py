from __future__ import annotations

import dataclasses
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from xivlog.combatlog.models import NS_PER_SECOND, RawLogEntry, datetime_to_ns
from xivlog.db import (
    WINDOW_FAILED,
    WINDOW_IN_PROGRESS,
    WINDOW_PENDING,
    WINDOW_SUCCEEDED,
    AggregationWindow,
    PresenceRecord,
    RosterMember,
    SegmentRecord,
    StoredSegment,
    UnresolvedSegment,
)

T0 = datetime(2024, 10, 8, 1, 0, tzinfo=timezone.utc)


def ns_at(seconds: float, base: datetime = T0) -> int:
    return datetime_to_ns(base) + int(seconds * NS_PER_SECOND)


def at(seconds: float, base: datetime = T0) -> datetime:
    return base + timedelta(seconds=seconds)


def entry(seconds: float, text: str, base: datetime = T0, **labels: str) -> RawLogEntry:
    return RawLogEntry(timestamp_ns=ns_at(seconds, base), normalized_text=text, labels=labels)


def start_line(content: str) -> str:
    return f"00|2024-10-08T10:00:00.0000000+09:00|0839||「{content}」の攻略を開始した。"


def end_line(content: str) -> str:
    return f"00|2024-10-08T10:00:00.0000000+09:00|0839||「{content}」の攻略を終了した。"


def damage_line(actor: str, target: str, amount: int, marker: str = "") -> str:
    m = f"{marker} " if marker else ""
    return f"00|2024-10-08T10:00:00.0000000+09:00|0AA9||{actor}の攻撃 {m}{target}に{amount}ダメージ。"


def add_line(combatant_id: str, name: str) -> str:
    return f"03|2024-10-08T10:00:00.0000000+09:00|{combatant_id}|{name}|13|5A|0000|0F|Tonberry|0"


def remove_line(combatant_id: str, name: str) -> str:
    return f"04|2024-10-08T10:00:00.0000000+09:00|{combatant_id}|{name}|13|5A|0000|0F|Tonberry|0"


def job_line(combatant_id: str, name: str, job_id: int) -> str:
    return f"261|2024-10-08T10:00:00.0000000+09:00|Add|{combatant_id}|Name|{name}|Job|{job_id}"


def ability_line(source_id: str, source_name: str, ability_id: str, ability_name: str = "Ability") -> str:
    return (
        f"21|2024-10-08T10:00:00.0000000+09:00|{source_id}|{source_name}|{ability_id}|{ability_name}"
        f"|4000ABCD|Striking Dummy"
    )


class FakeDb:
    """In-memory stand-in for ``xivlog.db.Db`` with the same async surface."""

    def __init__(self) -> None:
        self.windows: Dict[datetime, AggregationWindow] = {}
        self.segments: Dict[str, SegmentRecord] = {}
        self.resolved: Set[str] = set()
        self.presence: Dict[str, List[PresenceRecord]] = {}
        self.roster: Dict[Tuple[str, str], RosterMember] = {}

        self.fail_persist: Set[datetime] = set()
        self.fail_succeed: Set[datetime] = set()
        self.fail_presence: Set[str] = set()
        self.lost_claims = 0
        self.claim_calls: List[datetime] = []
        self.started = False
        self.closed = False

    async def start(self) -> None:
        self.started = True

    async def close(self) -> None:
        self.closed = True

    # windows
    def add_window(self, start: datetime, status: str = WINDOW_PENDING, attempt: int = 0) -> None:
        self.windows[start] = AggregationWindow(
            window_start=start,
            window_end=start + timedelta(hours=1),
            status=status,
            attempt=attempt,
        )

    async def latest_window_start(self) -> Optional[datetime]:
        return max(self.windows) if self.windows else None

    async def insert_windows(self, window_starts: Iterable[datetime]) -> int:
        created = 0
        for s in window_starts:
            if s not in self.windows:
                self.add_window(s)
                created += 1
        return created

    async def find_next_pending_window(self) -> Optional[AggregationWindow]:
        pending = [w for w in self.windows.values() if w.status == WINDOW_PENDING]
        return min(pending, key=lambda w: w.window_start) if pending else None

    async def claim_window(self, window_start: datetime) -> Optional[AggregationWindow]:
        self.claim_calls.append(window_start)
        w = self.windows.get(window_start)
        if w is None or w.status != WINDOW_PENDING:
            return None
        if self.lost_claims > 0:
            # another worker wins the race
            self.lost_claims -= 1
            self.windows[window_start] = dataclasses.replace(w, status=WINDOW_IN_PROGRESS, attempt=w.attempt + 1)
            return None
        claimed = dataclasses.replace(w, status=WINDOW_IN_PROGRESS, attempt=w.attempt + 1)
        self.windows[window_start] = claimed
        return claimed

    async def mark_window_succeeded(self, window_start: datetime) -> None:
        if window_start in self.fail_succeed:
            raise RuntimeError("connection reset")
        w = self.windows[window_start]
        self.windows[window_start] = dataclasses.replace(w, status=WINDOW_SUCCEEDED, last_error=None)

    async def mark_window_failed(self, window_start: datetime, error: str) -> None:
        w = self.windows[window_start]
        self.windows[window_start] = dataclasses.replace(w, status=WINDOW_FAILED, last_error=error)

    async def reset_window(self, window_start: datetime) -> bool:
        w = self.windows.get(window_start)
        if w is None or w.status not in (WINDOW_FAILED, WINDOW_IN_PROGRESS):
            return False
        self.windows[window_start] = dataclasses.replace(w, status=WINDOW_PENDING)
        return True

    async def list_windows(self, *, status: Optional[str] = None, limit: int = 100) -> List[AggregationWindow]:
        rows = [w for w in self.windows.values() if status is None or w.status == status]
        return sorted(rows, key=lambda w: w.window_start, reverse=True)[:limit]

    # segments
    def segments_for(self, window_start: datetime) -> List[SegmentRecord]:
        return [r for r in self.segments.values() if r.window_start == window_start]

    async def replace_window_segments(self, window_start: datetime, records: Sequence[SegmentRecord]) -> None:
        if window_start in self.fail_persist:
            raise RuntimeError("disk full")
        kept = {sid: r for sid, r in self.segments.items() if r.window_start != window_start}
        for r in records:
            kept[r.segment_id] = r
        self.segments = kept

    async def list_unresolved_segments(self, *, since: datetime, limit: int) -> List[UnresolvedSegment]:
        rows = [
            r for r in self.segments.values() if r.segment_id not in self.resolved and r.window_start >= since
        ]
        rows.sort(key=lambda r: (r.window_start, r.start_time))
        return [
            UnresolvedSegment(segment_id=r.segment_id, window_start=r.window_start, start_time=r.start_time)
            for r in rows[:limit]
        ]

    async def fetch_participant_names(self, segment_id: str) -> List[str]:
        return [p.name for p in self.segments[segment_id].participants]

    async def fetch_player_stat_names(self, segment_id: str) -> List[str]:
        return [p.name for p in self.segments[segment_id].players]

    async def fetch_segments_between(self, start: datetime, end: datetime) -> List[StoredSegment]:
        rows = [r for r in self.segments.values() if start <= r.window_start < end]
        rows.sort(key=lambda r: (r.window_start, r.start_time, r.segment_id))
        return [
            StoredSegment(
                segment_id=r.segment_id,
                window_start=r.window_start,
                content=r.content,
                start_time=r.start_time,
                end_time=r.end_time,
                status=r.status,
                duration_ms=r.duration_ms,
                ordinal=r.ordinal,
                presence_resolved=r.segment_id in self.resolved,
                players=list(r.players),
                participants=[p.name for p in r.participants],
            )
            for r in rows
        ]

    async def fetch_available_dates(self, tz: timezone, *, limit: int = 60) -> List[str]:
        done = sorted((w.window_start for w in self.windows.values() if w.status == WINDOW_SUCCEEDED), reverse=True)
        return sorted({s.astimezone(tz).date().isoformat() for s in done[:limit]})

    # roster
    async def list_roster(self, guild_ids: Optional[Iterable[str]] = None) -> List[RosterMember]:
        ids = {g for g in (guild_ids or []) if g}
        rows = [m for m in self.roster.values() if not ids or m.guild_id in ids]
        return sorted(rows, key=lambda m: (m.guild_id, m.name))

    async def upsert_roster_member(self, member: RosterMember) -> None:
        self.roster[(member.guild_id, member.name)] = member

    async def delete_roster_member(self, guild_id: str, name: str) -> bool:
        return self.roster.pop((guild_id, name), None) is not None

    async def replace_presence(self, segment_id: str, entries: Sequence[PresenceRecord]) -> None:
        if segment_id in self.fail_presence:
            raise RuntimeError("presence write failed")
        self.presence[segment_id] = list(entries)
        self.resolved.add(segment_id)
