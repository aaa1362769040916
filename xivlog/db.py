from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence

import asyncpg

from xivlog.combatlog.models import PlayerStats

WINDOW_PENDING = "pending"
WINDOW_IN_PROGRESS = "in_progress"
WINDOW_SUCCEEDED = "succeeded"
WINDOW_FAILED = "failed"

WINDOW_STATUSES = (WINDOW_PENDING, WINDOW_IN_PROGRESS, WINDOW_SUCCEEDED, WINDOW_FAILED)

WINDOW_LENGTH = timedelta(hours=1)


# -----------------------------
# Schema
# -----------------------------
_CREATE_AGGREGATION_WINDOWS_TABLE = """
CREATE TABLE IF NOT EXISTS aggregation_windows (
  window_start TIMESTAMPTZ PRIMARY KEY,
  window_end TIMESTAMPTZ NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',
  attempt INTEGER NOT NULL DEFAULT 0,
  last_error TEXT,
  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

_CREATE_COMBAT_SEGMENTS_TABLE = """
CREATE TABLE IF NOT EXISTS combat_segments (
  segment_id UUID PRIMARY KEY,
  window_start TIMESTAMPTZ NOT NULL,
  content TEXT NOT NULL,
  start_time TIMESTAMPTZ NOT NULL,
  end_time TIMESTAMPTZ,
  ordinal INTEGER NOT NULL,
  status TEXT NOT NULL,
  duration_ms BIGINT,
  presence_resolved BOOLEAN NOT NULL DEFAULT FALSE,
  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

_CREATE_SEGMENT_PARTICIPANTS_TABLE = """
CREATE TABLE IF NOT EXISTS segment_participants (
  id BIGSERIAL PRIMARY KEY,
  segment_id UUID NOT NULL REFERENCES combat_segments (segment_id) ON DELETE CASCADE,
  player_name TEXT NOT NULL,
  job_code TEXT,
  role TEXT,
  source TEXT NOT NULL DEFAULT 'aggregate',
  UNIQUE (segment_id, player_name)
);
"""

_CREATE_SEGMENT_PLAYER_STATS_TABLE = """
CREATE TABLE IF NOT EXISTS segment_player_stats (
  id BIGSERIAL PRIMARY KEY,
  segment_id UUID NOT NULL REFERENCES combat_segments (segment_id) ON DELETE CASCADE,
  player_name TEXT NOT NULL,
  total_damage BIGINT NOT NULL,
  dps NUMERIC(14, 2) NOT NULL,
  hits INTEGER NOT NULL,
  critical_hits INTEGER NOT NULL,
  direct_hits INTEGER NOT NULL,
  job_code TEXT,
  role TEXT,
  UNIQUE (segment_id, player_name)
);
"""

_CREATE_SEGMENT_ISSUES_TABLE = """
CREATE TABLE IF NOT EXISTS segment_issues (
  id BIGSERIAL PRIMARY KEY,
  segment_id UUID NOT NULL REFERENCES combat_segments (segment_id) ON DELETE CASCADE,
  issue_type TEXT NOT NULL,
  detail TEXT,
  created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

_CREATE_ROSTER_TABLE = """
CREATE TABLE IF NOT EXISTS roster (
  guild_id TEXT NOT NULL,
  name TEXT NOT NULL,
  job_code TEXT,
  emoji TEXT,
  owner_id TEXT,
  created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  PRIMARY KEY (guild_id, name)
);
"""

_CREATE_SEGMENT_ROSTER_PRESENCE_TABLE = """
CREATE TABLE IF NOT EXISTS segment_roster_presence (
  segment_id UUID NOT NULL REFERENCES combat_segments (segment_id) ON DELETE CASCADE,
  roster_id UUID NOT NULL,
  player_name TEXT NOT NULL,
  matched_name TEXT,
  match_score NUMERIC(4, 2) NOT NULL DEFAULT 0,
  participated BOOLEAN NOT NULL DEFAULT FALSE,
  updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  PRIMARY KEY (segment_id, roster_id)
);
"""

_CREATE_WINDOW_STATUS_IDX = (
    "CREATE INDEX IF NOT EXISTS aggregation_windows_status_idx ON aggregation_windows (status, window_start);"
)
_CREATE_SEGMENT_WINDOW_IDX = "CREATE INDEX IF NOT EXISTS combat_segments_window_idx ON combat_segments (window_start);"
_CREATE_SEGMENT_PRESENCE_IDX = (
    "CREATE INDEX IF NOT EXISTS combat_segments_presence_idx ON combat_segments (presence_resolved, window_start);"
)
_CREATE_ROSTER_GUILD_IDX = "CREATE INDEX IF NOT EXISTS roster_guild_idx ON roster (guild_id);"

_SCHEMA = (
    _CREATE_AGGREGATION_WINDOWS_TABLE,
    _CREATE_COMBAT_SEGMENTS_TABLE,
    _CREATE_SEGMENT_PARTICIPANTS_TABLE,
    _CREATE_SEGMENT_PLAYER_STATS_TABLE,
    _CREATE_SEGMENT_ISSUES_TABLE,
    _CREATE_ROSTER_TABLE,
    _CREATE_SEGMENT_ROSTER_PRESENCE_TABLE,
    _CREATE_WINDOW_STATUS_IDX,
    _CREATE_SEGMENT_WINDOW_IDX,
    _CREATE_SEGMENT_PRESENCE_IDX,
    _CREATE_ROSTER_GUILD_IDX,
)


# -----------------------------
# Records
# -----------------------------
@dataclass(frozen=True)
class AggregationWindow:
    window_start: datetime
    window_end: datetime
    status: str
    attempt: int
    last_error: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class ParticipantRecord:
    name: str
    job_code: Optional[str] = None
    role: Optional[str] = None


@dataclass(frozen=True)
class SegmentRecord:
    """One segment row plus its child rows, ready to insert."""

    segment_id: str
    window_start: datetime
    content: str
    start_time: datetime
    end_time: Optional[datetime]
    ordinal: int
    status: str
    duration_ms: Optional[int]
    participants: List[ParticipantRecord] = field(default_factory=list)
    players: List[PlayerStats] = field(default_factory=list)
    issue_type: Optional[str] = None


@dataclass(frozen=True)
class UnresolvedSegment:
    segment_id: str
    window_start: datetime
    start_time: datetime


@dataclass(frozen=True)
class RosterMember:
    guild_id: str
    name: str
    job_code: Optional[str] = None
    emoji: Optional[str] = None
    owner_id: Optional[str] = None


@dataclass(frozen=True)
class PresenceRecord:
    segment_id: str
    roster_id: str
    player_name: str
    matched_name: Optional[str]
    participated: bool


@dataclass(frozen=True)
class StoredSegment:
    segment_id: str
    window_start: datetime
    content: str
    start_time: Optional[datetime]
    end_time: Optional[datetime]
    status: str
    duration_ms: Optional[int]
    ordinal: int
    presence_resolved: bool
    players: List[PlayerStats] = field(default_factory=list)
    participants: List[str] = field(default_factory=list)


def _window_from_row(row: asyncpg.Record) -> AggregationWindow:
    return AggregationWindow(
        window_start=row["window_start"],
        window_end=row["window_end"],
        status=str(row["status"]),
        attempt=int(row["attempt"]),
        last_error=row["last_error"],
        updated_at=row["updated_at"],
    )


def _player_from_row(row: asyncpg.Record) -> PlayerStats:
    return PlayerStats(
        name=str(row["player_name"]),
        total_damage=int(row["total_damage"]),
        dps=float(row["dps"]),
        hits=int(row["hits"]),
        critical_hits=int(row["critical_hits"]),
        direct_hits=int(row["direct_hits"]),
        job_code=row["job_code"],
        role=row["role"],
    )


def _dps_decimal(value: float) -> Decimal:
    return Decimal(f"{float(value):.2f}")


class Db:
    def __init__(self, dsn: str) -> None:
        self._dsn = (dsn or "").strip()
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def pool(self) -> Optional[asyncpg.Pool]:
        return self._pool

    async def start(self) -> None:
        if not self._dsn:
            return

        self._pool = await asyncpg.create_pool(dsn=self._dsn, min_size=1, max_size=5)

        async with self._pool.acquire() as conn:
            for ddl in _SCHEMA:
                await conn.execute(ddl)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("DB not started")
        return self._pool

    # -----------------------------
    # Aggregation windows
    # -----------------------------
    async def latest_window_start(self) -> Optional[datetime]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval("SELECT max(window_start) FROM aggregation_windows;")

    async def insert_windows(self, window_starts: Iterable[datetime]) -> int:
        """Create pending windows; existing ones are left untouched. Returns rows inserted."""
        starts = list(window_starts)
        if not starts:
            return 0

        sql = """
INSERT INTO aggregation_windows (window_start, window_end, status, attempt, updated_at)
SELECT s, s + interval '1 hour', 'pending', 0, now()
FROM unnest($1::timestamptz[]) AS s
ON CONFLICT (window_start) DO NOTHING
RETURNING window_start;
"""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, starts)
        return len(rows)

    async def find_next_pending_window(self) -> Optional[AggregationWindow]:
        sql = """
SELECT window_start, window_end, status, attempt, last_error, updated_at
FROM aggregation_windows
WHERE status = 'pending'
ORDER BY window_start ASC
LIMIT 1;
"""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(sql)
        return _window_from_row(row) if row is not None else None

    async def claim_window(self, window_start: datetime) -> Optional[AggregationWindow]:
        """Compare-and-swap pending -> in_progress. None means another worker got there first."""
        sql = """
UPDATE aggregation_windows
SET status = 'in_progress', attempt = attempt + 1, updated_at = now()
WHERE window_start = $1 AND status = 'pending'
RETURNING window_start, window_end, status, attempt, last_error, updated_at;
"""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(sql, window_start)
        return _window_from_row(row) if row is not None else None

    async def mark_window_succeeded(self, window_start: datetime) -> None:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "UPDATE aggregation_windows SET status = 'succeeded', last_error = NULL, updated_at = now() "
                "WHERE window_start = $1;",
                window_start,
            )

    async def mark_window_failed(self, window_start: datetime, error: str) -> None:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "UPDATE aggregation_windows SET status = 'failed', last_error = $2, updated_at = now() "
                "WHERE window_start = $1;",
                window_start,
                error,
            )

    async def reset_window(self, window_start: datetime) -> bool:
        """Put a failed (or stuck in_progress) window back to pending."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "UPDATE aggregation_windows SET status = 'pending', updated_at = now() "
                "WHERE window_start = $1 AND status IN ('failed', 'in_progress') RETURNING window_start;",
                window_start,
            )
        return row is not None

    async def list_windows(self, *, status: Optional[str] = None, limit: int = 100) -> List[AggregationWindow]:
        sql = """
SELECT window_start, window_end, status, attempt, last_error, updated_at
FROM aggregation_windows
WHERE ($1::text IS NULL OR status = $1)
ORDER BY window_start DESC
LIMIT $2;
"""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, status, int(limit))
        return [_window_from_row(r) for r in rows]

    # -----------------------------
    # Segments
    # -----------------------------
    async def replace_window_segments(self, window_start: datetime, records: Sequence[SegmentRecord]) -> None:
        """Delete and re-insert everything for one window inside a single transaction."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM combat_segments WHERE window_start = $1;", window_start)

                for rec in records:
                    await conn.execute(
                        """
INSERT INTO combat_segments (
  segment_id, window_start, content, start_time, end_time,
  ordinal, status, duration_ms, presence_resolved, updated_at
)
VALUES ($1,$2,$3,$4,$5,$6,$7,$8,FALSE,now());
""",
                        rec.segment_id,
                        window_start,
                        rec.content,
                        rec.start_time,
                        rec.end_time,
                        int(rec.ordinal),
                        rec.status,
                        rec.duration_ms,
                    )

                    if rec.participants:
                        await conn.executemany(
                            "INSERT INTO segment_participants (segment_id, player_name, job_code, role, source) "
                            "VALUES ($1,$2,$3,$4,'aggregate');",
                            [(rec.segment_id, p.name, p.job_code, p.role) for p in rec.participants],
                        )

                    if rec.players:
                        await conn.executemany(
                            """
INSERT INTO segment_player_stats (
  segment_id, player_name, total_damage, dps, hits,
  critical_hits, direct_hits, job_code, role
)
VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9);
""",
                            [
                                (
                                    rec.segment_id,
                                    p.name,
                                    max(0, int(p.total_damage)),
                                    _dps_decimal(p.dps),
                                    int(p.hits),
                                    int(p.critical_hits),
                                    int(p.direct_hits),
                                    p.job_code,
                                    p.role,
                                )
                                for p in rec.players
                            ],
                        )

                    if rec.issue_type:
                        await conn.execute(
                            "INSERT INTO segment_issues (segment_id, issue_type, detail) VALUES ($1,$2,NULL);",
                            rec.segment_id,
                            rec.issue_type,
                        )

    async def list_unresolved_segments(self, *, since: datetime, limit: int) -> List[UnresolvedSegment]:
        sql = """
SELECT segment_id, window_start, start_time
FROM combat_segments
WHERE presence_resolved = FALSE AND window_start >= $1
ORDER BY window_start ASC, start_time ASC
LIMIT $2;
"""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, since, int(limit))
        return [
            UnresolvedSegment(
                segment_id=str(r["segment_id"]),
                window_start=r["window_start"],
                start_time=r["start_time"],
            )
            for r in rows
        ]

    async def fetch_participant_names(self, segment_id: str) -> List[str]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT player_name FROM segment_participants WHERE segment_id = $1 ORDER BY id;", segment_id
            )
        return [str(r["player_name"]) for r in rows]

    async def fetch_player_stat_names(self, segment_id: str) -> List[str]:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT player_name FROM segment_player_stats WHERE segment_id = $1 ORDER BY id;", segment_id
            )
        return [str(r["player_name"]) for r in rows]

    async def fetch_segments_between(self, start: datetime, end: datetime) -> List[StoredSegment]:
        """Persisted segments whose window starts in ``[start, end)``, with stats and participants."""
        seg_sql = """
SELECT segment_id, window_start, content, start_time, end_time,
       status, duration_ms, ordinal, presence_resolved
FROM combat_segments
WHERE window_start >= $1 AND window_start < $2
ORDER BY window_start ASC, start_time ASC, segment_id ASC;
"""
        stats_sql = """
SELECT segment_id, player_name, total_damage, dps, hits,
       critical_hits, direct_hits, job_code, role
FROM segment_player_stats
WHERE segment_id = ANY($1::uuid[])
ORDER BY total_damage DESC, id ASC;
"""
        parts_sql = """
SELECT segment_id, player_name
FROM segment_participants
WHERE segment_id = ANY($1::uuid[])
ORDER BY id ASC;
"""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            seg_rows = await conn.fetch(seg_sql, start, end)
            if not seg_rows:
                return []
            ids = [r["segment_id"] for r in seg_rows]
            stat_rows = await conn.fetch(stats_sql, ids)
            part_rows = await conn.fetch(parts_sql, ids)

        players_by_id: Dict[str, List[PlayerStats]] = {}
        for r in stat_rows:
            players_by_id.setdefault(str(r["segment_id"]), []).append(_player_from_row(r))
        names_by_id: Dict[str, List[str]] = {}
        for r in part_rows:
            names = names_by_id.setdefault(str(r["segment_id"]), [])
            if r["player_name"] not in names:
                names.append(str(r["player_name"]))

        out: List[StoredSegment] = []
        for r in seg_rows:
            sid = str(r["segment_id"])
            out.append(
                StoredSegment(
                    segment_id=sid,
                    window_start=r["window_start"],
                    content=str(r["content"]),
                    start_time=r["start_time"],
                    end_time=r["end_time"],
                    status=str(r["status"]),
                    duration_ms=int(r["duration_ms"]) if r["duration_ms"] is not None else None,
                    ordinal=int(r["ordinal"]),
                    presence_resolved=bool(r["presence_resolved"]),
                    players=players_by_id.get(sid, []),
                    participants=names_by_id.get(sid, []),
                )
            )
        return out

    async def fetch_available_dates(self, tz: timezone, *, limit: int = 60) -> List[str]:
        """Distinct local dates of the most recent succeeded windows, ascending."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT window_start FROM aggregation_windows WHERE status = 'succeeded' "
                "ORDER BY window_start DESC LIMIT $1;",
                int(limit),
            )
        return sorted({r["window_start"].astimezone(tz).date().isoformat() for r in rows})

    # -----------------------------
    # Roster
    # -----------------------------
    async def list_roster(self, guild_ids: Optional[Iterable[str]] = None) -> List[RosterMember]:
        ids = sorted({g.strip() for g in (guild_ids or []) if g and g.strip()})
        sql = """
SELECT guild_id, name, job_code, emoji, owner_id
FROM roster
WHERE (cardinality($1::text[]) = 0 OR guild_id = ANY($1::text[]))
ORDER BY guild_id, name;
"""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, ids)
        return [
            RosterMember(
                guild_id=str(r["guild_id"]),
                name=str(r["name"]),
                job_code=r["job_code"],
                emoji=r["emoji"],
                owner_id=r["owner_id"],
            )
            for r in rows
        ]

    async def upsert_roster_member(self, member: RosterMember) -> None:
        sql = """
INSERT INTO roster (guild_id, name, job_code, emoji, owner_id)
VALUES ($1,$2,$3,$4,$5)
ON CONFLICT (guild_id, name) DO UPDATE SET
  job_code = EXCLUDED.job_code,
  emoji = EXCLUDED.emoji,
  owner_id = EXCLUDED.owner_id,
  updated_at = now();
"""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            await conn.execute(sql, member.guild_id, member.name, member.job_code, member.emoji, member.owner_id)

    async def delete_roster_member(self, guild_id: str, name: str) -> bool:
        pool = self._require_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                "DELETE FROM roster WHERE guild_id = $1 AND name = $2 RETURNING name;", guild_id, name
            )
        return row is not None

    async def replace_presence(self, segment_id: str, entries: Sequence[PresenceRecord]) -> None:
        """Swap the segment's presence rows and mark it resolved, atomically."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("DELETE FROM segment_roster_presence WHERE segment_id = $1;", segment_id)
                if entries:
                    await conn.executemany(
                        """
INSERT INTO segment_roster_presence (
  segment_id, roster_id, player_name, matched_name, match_score, participated, updated_at
)
VALUES ($1,$2,$3,$4,$5,$6,now());
""",
                        [
                            (
                                e.segment_id,
                                e.roster_id,
                                e.player_name,
                                e.matched_name,
                                Decimal(1) if e.participated else Decimal(0),
                                bool(e.participated),
                            )
                            for e in entries
                        ],
                    )
                await conn.execute(
                    "UPDATE combat_segments SET presence_resolved = TRUE, updated_at = now() WHERE segment_id = $1;",
                    segment_id,
                )
