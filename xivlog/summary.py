from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from xivlog.aggregation import iso_millis
from xivlog.analyzer import JST, determine_time_window
from xivlog.combatlog.models import STATUS_COMPLETED, STATUS_MISSING_END, STATUS_MISSING_START
from xivlog.db import Db, StoredSegment

DISCORD_MESSAGE_LIMIT = 1900
UNKNOWN_TIME = "??:??"
UNKNOWN_DURATION = "所要時間不明"


@dataclass(frozen=True)
class DailySummary:
    date: str
    segments: List[StoredSegment]
    issues: List[str] = field(default_factory=list)
    available_dates: List[str] = field(default_factory=list)


# -----------------
# Loading
# -----------------


def _sort_key(seg: StoredSegment) -> float:
    return seg.start_time.timestamp() if seg.start_time is not None else 0.0


def collect_issues(segments: Sequence[StoredSegment]) -> List[str]:
    issues: List[str] = []
    for seg in segments:
        if seg.status == STATUS_MISSING_END and seg.start_time is not None:
            issues.append(f"終了ログなし: 「{seg.content}」 (開始 {iso_millis(seg.start_time)})")
        if seg.status == STATUS_MISSING_START and seg.end_time is not None:
            issues.append(f"開始ログなし: 「{seg.content}」 (終了 {iso_millis(seg.end_time)})")
    return issues


async def load_daily_summary(
    db: Db,
    requested_date: Optional[str] = None,
    *,
    start_hour_jst: int = 10,
    end_hour_jst: int = 10,
    now: Optional[datetime] = None,
) -> DailySummary:
    window = determine_time_window(
        requested_date,
        start_hour_jst=start_hour_jst,
        end_hour_jst=end_hour_jst,
        now=now,
    )
    segments = sorted(await db.fetch_segments_between(window.start, window.end), key=_sort_key)

    dates = set(await db.fetch_available_dates(JST))
    dates.add(window.target_date)

    return DailySummary(
        date=window.target_date,
        segments=segments,
        issues=collect_issues(segments),
        available_dates=sorted(dates),
    )


# -----------------
# Formatting
# -----------------


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def format_time(dt: Optional[datetime]) -> str:
    if dt is None:
        return UNKNOWN_TIME
    return dt.astimezone(JST).strftime("%H:%M")


def format_duration(duration_ms: Optional[int]) -> str:
    """12345678 -> "3時間25分45秒"; minutes appear once hours do, seconds always."""
    if duration_ms is None:
        return UNKNOWN_DURATION
    total = max(int(duration_ms) // 1000, 0)
    hours, rem = divmod(total, 3600)
    minutes, seconds = divmod(rem, 60)

    out = ""
    if hours > 0:
        out += f"{hours}時間"
    if minutes > 0 or hours > 0:
        out += f"{minutes}分"
    return out + f"{seconds}秒"


def _render_entry(seg: StoredSegment) -> str:
    start = format_time(seg.start_time)
    end = format_time(seg.end_time)
    if seg.status == STATUS_COMPLETED:
        line = f"- {start}〜{end} 「{seg.content}」 #{seg.ordinal} {format_duration(seg.duration_ms)}"
    elif seg.status == STATUS_MISSING_END:
        line = f"- {start}〜{UNKNOWN_TIME} 「{seg.content}」 #{seg.ordinal} (終了ログなし)"
    else:
        line = f"- {UNKNOWN_TIME}〜{end} 「{seg.content}」 #{seg.ordinal} (開始ログなし)"

    extras = [
        f"    {i}. {p.name} {_round_half_up(p.dps)} DPS (総 {p.total_damage})"
        for i, p in enumerate(seg.players[:3], start=1)
    ]
    return "\n".join([line] + extras)


def format_summary_message(summary: DailySummary) -> str:
    lines = [f"📅 {summary.date} の攻略履歴"]
    if not summary.segments:
        lines.append("記録が見つかりませんでした。")
    else:
        lines.extend(_render_entry(seg) for seg in summary.segments)

    if summary.issues:
        lines.append("⚠️ ペアリングに失敗したログがあります:")
        lines.extend(f"  - {issue}" for issue in summary.issues)

    if len(summary.available_dates) > 1:
        lines.append(f"📚 利用可能な日付: {', '.join(summary.available_dates)}")
    return "\n".join(lines)


def format_dps_list_message(date: str, segments: Sequence[StoredSegment]) -> str:
    lines = [f"📊 {date} の攻略一覧"]
    for index, seg in enumerate(segments, start=1):
        label = f"{index}. 「{seg.content}」 #{seg.ordinal}"
        span = f"{format_time(seg.start_time)}〜{format_time(seg.end_time)} / {format_duration(seg.duration_ms)}"
        top = seg.players[0] if seg.players else None
        top_info = f" / Top: {top.name} {_round_half_up(top.dps)} DPS" if top else ""
        lines.append(f"{label} ({span}){top_info}")
    lines.append("`index` オプションで対象番号を指定してください。")
    return "\n".join(lines)


def format_dps_detail_message(segment: StoredSegment, date: str) -> str:
    lines = [
        f"📊 {date} 「{segment.content}」 #{segment.ordinal}",
        f"時間: {format_time(segment.start_time)}〜{format_time(segment.end_time)} / "
        f"{format_duration(segment.duration_ms)}",
    ]
    if not segment.players:
        lines.append("プレイヤーの与ダメージが見つかりませんでした。")
        return "\n".join(lines)

    lines.append("DPSランキング:")
    for i, p in enumerate(segment.players, start=1):
        lines.append(
            f"  {i}. {p.name} {_round_half_up(p.dps)} DPS (総ダメージ {p.total_damage}, ヒット {p.hits})"
        )
    return "\n".join(lines)


def chunk_message(content: str, limit: int = DISCORD_MESSAGE_LIMIT) -> List[str]:
    """Split on line boundaries so each chunk fits ``limit``; overlong lines are hard-split."""
    if not content:
        return [""]

    chunks: List[str] = []
    buf: List[str] = []
    size = 0
    for line in content.split("\n"):
        if len(line) > limit:
            if buf:
                chunks.append("\n".join(buf))
                buf, size = [], 0
            chunks.extend(line[i:i + limit] for i in range(0, len(line), limit))
            continue

        sep = 1 if buf else 0
        if size + sep + len(line) > limit and buf:
            chunks.append("\n".join(buf))
            buf, size, sep = [], 0, 0
        buf.append(line)
        size += sep + len(line)

    if buf:
        chunks.append("\n".join(buf))
    return chunks or [content]
