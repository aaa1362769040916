from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

import regex as re

from xivlog.combatlog.models import (
    AbilityEvent,
    AttributeUpdateEvent,
    CombatantAddEvent,
    CombatantRemoveEvent,
    DamageEvent,
    EndEvent,
    ParsedEvent,
    RawLogEntry,
    StartEvent,
    UnknownEvent,
)

FIELD_DELIMITER = "|"

# Structured ability lines never carry amounts this large; anything above is an id or flag word.
MAX_DAMAGE_AMOUNT = 1_000_000_000


# -----------------
# Patterns
# -----------------

RX_START = re.compile(r"「(.+?)」の攻略を開始した。")
RX_END = re.compile(r"「(.+?)」の攻略を終了した。")

# U+E0BF is the game's private-use spacing glyph; U+3000 is the full-width space.
RX_SPACING_GLYPHS = re.compile("[\\uE0BF\\u3000]")
RX_SPACES = re.compile(r"\s+")
RX_DIGITS = re.compile(r"^[0-9]+$")

_MARKER = r"(?:クリティカル＆ダイレクトヒット！|クリティカル！|ダイレクトヒット！)"
_AMOUNT_TAIL = r"[0-9]+(?:\([^)]*\))?ダメージ。$"

RX_DAMAGE_AMOUNT = re.compile(r"(?P<amount>[0-9]+)(?:\([^)]*\))?ダメージ。$")
RX_DAMAGE_ACTOR = re.compile(
    r"^(?P<actor>.+?)の攻撃(?: [^に]*?)?\s*" + _MARKER + r"?\s*(?P<target>[^に]+)に" + _AMOUNT_TAIL
)
RX_DAMAGE_MARKER_ONLY = re.compile(r"^" + _MARKER + r"\s*(?P<target>[^に]+)に" + _AMOUNT_TAIL)
RX_DAMAGE_TARGET_ONLY = re.compile(r"^(?P<target>[^に]+)に" + _AMOUNT_TAIL)

_TARGET_ARTIFACTS = ("は受け流した！", "はブロックした！")


@dataclass(frozen=True)
class DamageMessage:
    actor: Optional[str]
    target: Optional[str]
    amount: int
    is_critical: bool
    is_direct: bool


def _clean_message(text: str) -> str:
    s = RX_SPACING_GLYPHS.sub(" ", text or "")
    return RX_SPACES.sub(" ", s).strip()


def _clean_target(value: str) -> str:
    s = value or ""
    for artifact in _TARGET_ARTIFACTS:
        s = s.replace(artifact, "", 1)
    return s.strip()


def parse_damage_message(text: str) -> Optional[DamageMessage]:
    """Extract a damage record from a Japanese battle-log sentence.

    Handles "<actor>の攻撃 [marker] <target>に<n>ダメージ。" and the actor-less
    variants. Critical/direct flags come from substrings, so both can be set
    regardless of which pattern matched. Returns None when nothing matches.
    """
    cleaned = _clean_message(text)
    m_amount = RX_DAMAGE_AMOUNT.search(cleaned)
    if not m_amount:
        return None

    amount = int(m_amount.group("amount"))
    is_critical = "クリティカル" in cleaned
    is_direct = "ダイレクトヒット" in cleaned

    ma = RX_DAMAGE_ACTOR.match(cleaned)
    if ma:
        return DamageMessage(
            actor=ma.group("actor").strip(),
            target=_clean_target(ma.group("target")),
            amount=amount,
            is_critical=is_critical,
            is_direct=is_direct,
        )

    for rx in (RX_DAMAGE_MARKER_ONLY, RX_DAMAGE_TARGET_ONLY):
        mt = rx.match(cleaned)
        if mt:
            return DamageMessage(
                actor=None,
                target=_clean_target(mt.group("target")),
                amount=amount,
                is_critical=is_critical,
                is_direct=is_direct,
            )

    return None


# -----------------
# Line dispatch
# -----------------


def _field(parts: Sequence[str], index: int) -> Optional[str]:
    return parts[index] if index < len(parts) else None


def _parse_system(ts: int, parts: Sequence[str]) -> Optional[ParsedEvent]:
    if len(parts) < 5:
        return None
    message = parts[4]

    ms = RX_START.search(message)
    if ms:
        return StartEvent(timestamp_ns=ts, content=ms.group(1))
    me = RX_END.search(message)
    if me:
        return EndEvent(timestamp_ns=ts, content=me.group(1))

    damage = parse_damage_message(message)
    if damage:
        return DamageEvent(
            timestamp_ns=ts,
            actor=damage.actor,
            target=damage.target,
            amount=damage.amount,
            is_critical=damage.is_critical,
            is_direct=damage.is_direct,
        )
    return None


def _parse_add_combatant(ts: int, parts: Sequence[str]) -> Optional[ParsedEvent]:
    if len(parts) < 4:
        return None
    return CombatantAddEvent(timestamp_ns=ts, combatant_id=parts[2], combatant_name=parts[3])


def _parse_remove_combatant(ts: int, parts: Sequence[str]) -> Optional[ParsedEvent]:
    if len(parts) < 4:
        return None
    return CombatantRemoveEvent(timestamp_ns=ts, combatant_id=parts[2], combatant_name=parts[3])


def _parse_attribute_add(ts: int, parts: Sequence[str]) -> Optional[ParsedEvent]:
    """261|<time>|Add|<id>|Key|Value|Key|Value|... (Name and Job are the ones we use)."""
    if len(parts) < 6 or parts[2] != "Add":
        return None

    attributes: Dict[str, str] = {}
    for i in range(4, len(parts) - 1, 2):
        key = parts[i]
        if key:
            attributes[key] = parts[i + 1]

    job_raw = attributes.get("Job") or ""
    job_id = int(job_raw) if RX_DIGITS.match(job_raw) else None
    return AttributeUpdateEvent(
        timestamp_ns=ts,
        combatant_id=parts[3],
        combatant_name=attributes.get("Name", ""),
        job_id=job_id,
        attributes=attributes,
    )


def _scan_amount(parts: Sequence[str]) -> Optional[int]:
    # Fields 0 and 1 are the type code and the timestamp, never an amount.
    for value in reversed(parts[2:]):
        if RX_DIGITS.match(value):
            n = int(value)
            if n < MAX_DAMAGE_AMOUNT:
                return n
    return None


def _is_true(value: Optional[str]) -> bool:
    return (value or "").strip().lower() == "true"


def _parse_structured_ability(ts: int, parts: Sequence[str], labels: Mapping[str, str]) -> Optional[ParsedEvent]:
    """21/22 lines: single-target / AoE ability.

    Side-channel labels win over positional fields. A line with an actor and an
    amount becomes a DamageEvent; otherwise the cast itself is kept.
    """
    actor = labels.get("actor") or _field(parts, 3) or None
    target = labels.get("target") or _field(parts, 7) or None

    amount: Optional[int] = None
    amount_raw = labels.get("amount") or _field(parts, 33)
    if amount_raw and RX_DIGITS.match(amount_raw):
        amount = int(amount_raw)
    if amount is None:
        amount = _scan_amount(parts)

    if actor and amount is not None:
        return DamageEvent(
            timestamp_ns=ts,
            actor=actor,
            target=target,
            amount=amount,
            is_critical=_is_true(labels.get("isCritical")),
            is_direct=_is_true(labels.get("isDirect")),
        )

    if len(parts) < 8:
        return None
    return AbilityEvent(
        timestamp_ns=ts,
        source_id=labels.get("sourceID") or parts[2],
        source_name=labels.get("sourceName") or parts[3],
        ability_id=labels.get("abilityID") or parts[4],
        ability_name=labels.get("abilityName") or parts[5],
        target_id=labels.get("targetID") or parts[6],
        target_name=labels.get("targetName") or parts[7],
    )


def parse_entry(entry: RawLogEntry) -> List[ParsedEvent]:
    """Turn one raw line into zero or more events. Malformed lines yield nothing."""
    parts = (entry.normalized_text or "").split(FIELD_DELIMITER)
    ts = int(entry.timestamp_ns)
    type_code = parts[0]

    if type_code == "00":
        ev = _parse_system(ts, parts)
    elif type_code == "03":
        ev = _parse_add_combatant(ts, parts)
    elif type_code == "04":
        ev = _parse_remove_combatant(ts, parts)
    elif type_code == "261":
        ev = _parse_attribute_add(ts, parts)
    elif type_code in ("21", "22"):
        ev = _parse_structured_ability(ts, parts, entry.labels or {})
    else:
        ev = UnknownEvent(timestamp_ns=ts)

    return [ev] if ev is not None else []


def parse_events(entries: Iterable[RawLogEntry]) -> List[ParsedEvent]:
    out: List[ParsedEvent] = []
    for entry in entries or []:
        out.extend(parse_entry(entry))
    return out
