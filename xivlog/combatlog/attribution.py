from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Sequence

from xivlog.combatlog.abilities import AbilityJobMap
from xivlog.combatlog.jobs import is_player_id, job_code_for_id
from xivlog.combatlog.models import (
    AbilityEvent,
    AttributeUpdateEvent,
    CombatantAddEvent,
    CombatantRemoveEvent,
    Segment,
    SegmentJobs,
)


@dataclass
class PlayerRegistry:
    """Session-wide id/name/job lookups, last write wins."""

    id_to_name: Dict[str, str] = field(default_factory=dict)
    id_to_job: Dict[str, str] = field(default_factory=dict)
    name_to_job: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        add_events: Iterable[CombatantAddEvent],
        attribute_events: Iterable[AttributeUpdateEvent],
    ) -> "PlayerRegistry":
        reg = cls()
        for ev in add_events:
            if ev.combatant_id and ev.combatant_name:
                reg.id_to_name[ev.combatant_id] = ev.combatant_name

        # Events arrive in timestamp order, so a later job (job stone swap) overwrites an earlier one.
        for ev in attribute_events:
            if ev.combatant_id and ev.combatant_name and ev.combatant_id not in reg.id_to_name:
                reg.id_to_name[ev.combatant_id] = ev.combatant_name
            code = job_code_for_id(ev.job_id)
            if not code:
                continue
            if ev.combatant_id:
                reg.id_to_job[ev.combatant_id] = code
            name = ev.combatant_name or reg.id_to_name.get(ev.combatant_id)
            if name:
                reg.name_to_job[name] = code
        return reg


def assign_participants(
    segments: Iterable[Segment],
    add_events: Sequence[CombatantAddEvent],
    remove_events: Sequence[CombatantRemoveEvent],
    registry: PlayerRegistry,
) -> None:
    """Estimate who was present in each bounded segment from the add/remove timeline.

    A player counts when they were added at or before the segment end and not
    removed strictly before the segment start.
    """
    player_adds = [ev for ev in add_events if is_player_id(ev.combatant_id)]
    player_removes = [ev for ev in remove_events if is_player_id(ev.combatant_id)]

    for seg in segments:
        if not seg.has_bounds:
            seg.participants = set()
            continue

        added_ids = {ev.combatant_id for ev in player_adds if ev.timestamp_ns <= seg.end_ns}
        removed_ids = {ev.combatant_id for ev in player_removes if ev.timestamp_ns < seg.start_ns}

        names = set()
        for combatant_id in added_ids - removed_ids:
            name = registry.id_to_name.get(combatant_id)
            if name:
                names.add(name)
        seg.participants = names


def infer_jobs_from_abilities(
    segments: Iterable[Segment],
    ability_events: Sequence[AbilityEvent],
    ability_jobs: AbilityJobMap,
    registry: PlayerRegistry,
) -> SegmentJobs:
    """Job each player held during each bounded segment, from the abilities they cast in it."""
    jobs_by_segment: SegmentJobs = {}
    if not ability_events or not len(ability_jobs):
        return jobs_by_segment

    for seg in segments:
        if not seg.has_bounds:
            continue

        seg_jobs: Dict[str, str] = {}
        for ev in ability_events:
            if ev.timestamp_ns < seg.start_ns or ev.timestamp_ns > seg.end_ns:
                continue
            if not is_player_id(ev.source_id) or not ev.ability_id:
                continue
            code = ability_jobs.job_for(ev.ability_id)
            if not code:
                continue
            name = ev.source_name or registry.id_to_name.get(ev.source_id)
            if name:
                seg_jobs[name] = code

        if seg_jobs:
            jobs_by_segment[seg.id] = seg_jobs

    return jobs_by_segment


def resolve_job(
    segment_id: str,
    player_name: str,
    name_to_job: Dict[str, str],
    jobs_by_segment: SegmentJobs,
) -> str | None:
    # Segment-scoped ability evidence beats the session-wide last-seen job.
    seg_jobs = jobs_by_segment.get(segment_id) or {}
    return seg_jobs.get(player_name) or name_to_job.get(player_name)
