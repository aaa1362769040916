from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence

from xivlog.combatlog.attribution import resolve_job
from xivlog.combatlog.jobs import role_for_job_code
from xivlog.combatlog.models import NS_PER_MS, DamageEvent, PlayerStats, Segment, SegmentJobs


@dataclass
class _Tally:
    total: int = 0
    hits: int = 0
    crits: int = 0
    directs: int = 0


def _duration_ms(seg: Segment) -> int:
    return (seg.end_ns - seg.start_ns) // NS_PER_MS


def attach_damage(
    segments: Iterable[Segment],
    damage_events: Sequence[DamageEvent],
    name_to_job: Dict[str, str],
    jobs_by_segment: SegmentJobs,
) -> None:
    """Fill ``duration_ms`` and ``players`` on each segment.

    Only segments with both bounds get stats; others end up with no players and
    no duration. DPS divides by the duration in seconds, floored at one second.
    """
    for seg in segments:
        if not seg.has_bounds:
            seg.duration_ms = None
            seg.players = []
            continue

        duration_ms = _duration_ms(seg)
        seg.duration_ms = duration_ms
        seconds = max(duration_ms / 1000.0, 1.0)

        tallies: Dict[str, _Tally] = {}
        for ev in damage_events:
            if not ev.actor:
                continue
            if ev.timestamp_ns < seg.start_ns or ev.timestamp_ns > seg.end_ns:
                continue
            t = tallies.setdefault(ev.actor, _Tally())
            t.total += int(ev.amount)
            t.hits += 1
            if ev.is_critical:
                t.crits += 1
            if ev.is_direct:
                t.directs += 1

        players: List[PlayerStats] = []
        for name, t in tallies.items():
            job_code = resolve_job(seg.id, name, name_to_job, jobs_by_segment)
            players.append(
                PlayerStats(
                    name=name,
                    total_damage=t.total,
                    dps=round(t.total / seconds, 2),
                    hits=t.hits,
                    critical_hits=t.crits,
                    direct_hits=t.directs,
                    job_code=job_code,
                    role=role_for_job_code(job_code),
                )
            )

        players.sort(key=lambda p: p.total_damage, reverse=True)
        seg.players = players
