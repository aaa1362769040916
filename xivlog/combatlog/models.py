from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Mapping, Optional, Set, Union

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

NS_PER_MS = 1_000_000
NS_PER_SECOND = 1_000_000_000


def ns_to_datetime(ns: int) -> datetime:
    return _EPOCH + timedelta(microseconds=int(ns) // 1000)


def datetime_to_ns(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = dt - _EPOCH
    return (delta.days * 86_400 + delta.seconds) * NS_PER_SECOND + delta.microseconds * 1000


# Segment status
STATUS_COMPLETED = "completed"
STATUS_MISSING_START = "missing_start"
STATUS_MISSING_END = "missing_end"

# Player role
ROLE_TANK = "T"
ROLE_HEALER = "H"
ROLE_DPS = "D"


@dataclass(frozen=True)
class RawLogEntry:
    timestamp_ns: int
    normalized_text: str
    labels: Mapping[str, str] = field(default_factory=dict)

    @property
    def timestamp(self) -> datetime:
        return ns_to_datetime(self.timestamp_ns)


@dataclass(frozen=True)
class _BaseEvent:
    timestamp_ns: int

    @property
    def timestamp(self) -> datetime:
        return ns_to_datetime(self.timestamp_ns)


@dataclass(frozen=True)
class StartEvent(_BaseEvent):
    content: str


@dataclass(frozen=True)
class EndEvent(_BaseEvent):
    content: str


@dataclass(frozen=True)
class DamageEvent(_BaseEvent):
    actor: Optional[str]
    target: Optional[str]
    amount: int
    is_critical: bool = False
    is_direct: bool = False


@dataclass(frozen=True)
class AbilityEvent(_BaseEvent):
    source_id: str
    source_name: str
    target_id: str
    target_name: str
    ability_id: str
    ability_name: str


@dataclass(frozen=True)
class CombatantAddEvent(_BaseEvent):
    combatant_id: str
    combatant_name: str


@dataclass(frozen=True)
class CombatantRemoveEvent(_BaseEvent):
    combatant_id: str
    combatant_name: str


@dataclass(frozen=True)
class AttributeUpdateEvent(_BaseEvent):
    combatant_id: str
    combatant_name: str = ""
    job_id: Optional[int] = None
    attributes: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class UnknownEvent(_BaseEvent):
    pass


ParsedEvent = Union[
    StartEvent,
    EndEvent,
    DamageEvent,
    AbilityEvent,
    CombatantAddEvent,
    CombatantRemoveEvent,
    AttributeUpdateEvent,
    UnknownEvent,
]


@dataclass(frozen=True)
class PlayerStats:
    name: str
    total_damage: int
    dps: float
    hits: int
    critical_hits: int
    direct_hits: int
    job_code: Optional[str] = None
    role: Optional[str] = None  # T | H | D


@dataclass
class Segment:
    """One reconstructed start/end activity.

    Mutated while the batch is being analyzed; treat as read-only once
    ordinals and player stats are attached.
    """

    id: str
    content: str
    start_ns: Optional[int]
    end_ns: Optional[int]
    status: str  # completed | missing_start | missing_end
    ordinal: int = 0
    global_index: int = 0
    duration_ms: Optional[int] = None
    players: List[PlayerStats] = field(default_factory=list)
    participants: Set[str] = field(default_factory=set)

    @property
    def start(self) -> Optional[datetime]:
        return ns_to_datetime(self.start_ns) if self.start_ns is not None else None

    @property
    def end(self) -> Optional[datetime]:
        return ns_to_datetime(self.end_ns) if self.end_ns is not None else None

    @property
    def has_bounds(self) -> bool:
        return self.start_ns is not None and self.end_ns is not None and self.end_ns >= self.start_ns

    @property
    def reference_ns(self) -> Optional[int]:
        return self.start_ns if self.start_ns is not None else self.end_ns


SegmentJobs = Dict[str, Dict[str, str]]  # segment id -> player name -> job code
