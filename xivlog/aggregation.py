from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, List, Optional, Sequence

from xivlog.combatlog.models import STATUS_COMPLETED, Segment
from xivlog.db import WINDOW_LENGTH, AggregationWindow, Db, ParticipantRecord, SegmentRecord

logger = logging.getLogger("xivlog")

DEFAULT_BACKFILL_HOURS = 6
DEFAULT_BUFFER = timedelta(minutes=15)
MAX_ERROR_LENGTH = 500

AnalyzeFn = Callable[[datetime, datetime], Awaitable[List[Segment]]]


@dataclass(frozen=True)
class AggregationResult:
    processed: int
    failed: int


# -----------------
# Helpers
# -----------------


def _utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def floor_to_hour(dt: datetime) -> datetime:
    return _utc(dt).replace(minute=0, second=0, microsecond=0)


def iso_millis(dt: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix (2024-10-08T01:00:00.000Z)."""
    u = _utc(dt)
    return u.strftime("%Y-%m-%dT%H:%M:%S.") + f"{u.microsecond // 1000:03d}Z"


def sha1_uuid(*parts: str) -> str:
    """First 128 bits of SHA-1 over ``parts`` joined by "|", laid out as 8-4-4-4-12."""
    h = hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()[:32]
    return f"{h[0:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"


def derive_segment_uuid(window_start: datetime, segment_id: str, content: str) -> str:
    return sha1_uuid(iso_millis(window_start), segment_id, content)


def build_window_range(
    limit_start: datetime,
    backfill_hours: int,
    latest: Optional[datetime] = None,
) -> List[datetime]:
    """Hour-aligned window starts to create, up to and including ``limit_start``."""
    if latest is not None:
        cursor = floor_to_hour(_utc(latest) + WINDOW_LENGTH)
    else:
        cursor = floor_to_hour(limit_start - timedelta(hours=backfill_hours - 1))

    out: List[datetime] = []
    while cursor <= limit_start:
        out.append(cursor)
        cursor += WINDOW_LENGTH
    return out


def filter_segments_for_window(
    window_start: datetime,
    window_end: datetime,
    segments: Sequence[Segment],
) -> List[Segment]:
    """Keep segments whose start (or end, for orphans) falls in ``[window_start, window_end)``."""
    lo = _utc(window_start)
    hi = _utc(window_end)
    out: List[Segment] = []
    for seg in segments:
        ref = seg.start or seg.end
        if ref is None:
            continue
        if lo <= ref < hi:
            out.append(seg)
    return out


def build_segment_records(window_start: datetime, segments: Sequence[Segment]) -> List[SegmentRecord]:
    records: List[SegmentRecord] = []
    for seg in segments:
        stats_by_name = {p.name: p for p in seg.players}
        participants = []
        for name in sorted(seg.participants):
            p = stats_by_name.get(name)
            participants.append(
                ParticipantRecord(
                    name=name,
                    job_code=p.job_code if p else None,
                    role=p.role if p else None,
                )
            )

        records.append(
            SegmentRecord(
                segment_id=derive_segment_uuid(window_start, seg.id, seg.content),
                window_start=window_start,
                content=seg.content,
                start_time=seg.start or seg.end or window_start,
                end_time=seg.end,
                ordinal=seg.ordinal,
                status=seg.status,
                duration_ms=seg.duration_ms,
                participants=participants,
                players=list(seg.players),
                issue_type=None if seg.status == STATUS_COMPLETED else seg.status,
            )
        )
    return records


# -----------------
# Scheduler
# -----------------


async def ensure_aggregation_windows(
    db: Db,
    *,
    backfill_hours: int = DEFAULT_BACKFILL_HOURS,
    buffer: timedelta = DEFAULT_BUFFER,
    now: Optional[datetime] = None,
) -> int:
    """Create any missing pending windows. Returns how many were inserted."""
    current = _utc(now or datetime.now(timezone.utc))
    limit_start = floor_to_hour(current - buffer)

    latest = await db.latest_window_start()
    starts = build_window_range(limit_start, backfill_hours, latest)
    if not starts:
        logger.debug("No new aggregation windows (limit_start=%s)", limit_start.isoformat())
        return 0

    created = await db.insert_windows(starts)
    logger.info(
        "Aggregation windows ensured: created=%d first=%s last=%s",
        created,
        starts[0].isoformat(),
        starts[-1].isoformat(),
    )
    return created


async def acquire_pending_window(db: Db) -> Optional[AggregationWindow]:
    while True:
        pending = await db.find_next_pending_window()
        if pending is None:
            return None
        claimed = await db.claim_window(pending.window_start)
        if claimed is not None:
            return claimed
        logger.debug("Lost claim on window %s; looking again", pending.window_start.isoformat())


async def process_window(
    db: Db,
    window: AggregationWindow,
    analyze: AnalyzeFn,
    *,
    buffer: timedelta = DEFAULT_BUFFER,
) -> int:
    window_start = _utc(window.window_start)
    window_end = _utc(window.window_end)
    fetch_end = window_end + buffer

    segments = await analyze(window_start, fetch_end)
    kept = filter_segments_for_window(window_start, window_end, segments)
    await db.replace_window_segments(window_start, build_segment_records(window_start, kept))

    logger.debug(
        "Window %s persisted: %d of %d segments",
        window_start.isoformat(),
        len(kept),
        len(segments),
    )
    return len(kept)


async def process_pending_windows(
    db: Db,
    analyze: AnalyzeFn,
    *,
    max_windows: Optional[int] = None,
    buffer: timedelta = DEFAULT_BUFFER,
) -> AggregationResult:
    """Claim and process pending windows one at a time until none remain or ``max_windows`` is hit."""
    processed = 0
    failed = 0

    while max_windows is None or processed + failed < max_windows:
        window = await acquire_pending_window(db)
        if window is None:
            logger.debug("No pending windows to process")
            break

        try:
            count = await process_window(db, window, analyze, buffer=buffer)
            await db.mark_window_succeeded(window.window_start)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            await db.mark_window_failed(window.window_start, message[:MAX_ERROR_LENGTH])
            logger.exception(
                "Window %s failed (attempt %d)", window.window_start.isoformat(), window.attempt
            )
            failed += 1
            continue

        logger.info(
            "Window %s succeeded (attempt %d, segments=%d)",
            window.window_start.isoformat(),
            window.attempt,
            count,
        )
        processed += 1

    return AggregationResult(processed=processed, failed=failed)
