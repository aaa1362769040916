from __future__ import annotations

from types import MappingProxyType
from typing import Mapping, Optional

from xivlog.combatlog.models import ROLE_DPS, ROLE_HEALER, ROLE_TANK

# Job ids as reported by the 261 attribute line (cactbot numbering).
JOB_ID_TO_CODE: Mapping[int, str] = MappingProxyType({
    19: "PLD",
    20: "MNK",
    21: "WAR",
    22: "DRG",
    23: "BRD",
    24: "WHM",
    25: "BLM",
    27: "SMN",
    28: "SCH",
    30: "NIN",
    31: "MCH",
    32: "DRK",
    33: "AST",
    34: "SAM",
    35: "RDM",
    37: "GNB",
    38: "DNC",
    39: "RPR",
    40: "SGE",
    41: "VPR",
    42: "PCT",
})

JOB_CODE_TO_ROLE: Mapping[str, str] = MappingProxyType({
    "PLD": ROLE_TANK, "WAR": ROLE_TANK, "DRK": ROLE_TANK, "GNB": ROLE_TANK,
    "WHM": ROLE_HEALER, "SCH": ROLE_HEALER, "AST": ROLE_HEALER, "SGE": ROLE_HEALER,
    "MNK": ROLE_DPS, "DRG": ROLE_DPS, "BRD": ROLE_DPS, "BLM": ROLE_DPS,
    "SMN": ROLE_DPS, "NIN": ROLE_DPS, "MCH": ROLE_DPS, "SAM": ROLE_DPS,
    "RDM": ROLE_DPS, "DNC": ROLE_DPS, "RPR": ROLE_DPS, "VPR": ROLE_DPS, "PCT": ROLE_DPS,
})

# Lowercased "job" field of an ability definition file -> job code.
JOB_NAME_TO_CODE: Mapping[str, str] = MappingProxyType({
    "astrologian": "AST",
    "bard": "BRD",
    "black mage": "BLM",
    "dancer": "DNC",
    "dark knight": "DRK",
    "dragoon": "DRG",
    "gunbreaker": "GNB",
    "machinist": "MCH",
    "monk": "MNK",
    "ninja": "NIN",
    "paladin": "PLD",
    "pictomancer": "PCT",
    "reaper": "RPR",
    "red mage": "RDM",
    "sage": "SGE",
    "samurai": "SAM",
    "scholar": "SCH",
    "summoner": "SMN",
    "viper": "VPR",
    "warrior": "WAR",
    "white mage": "WHM",
})


def job_code_for_id(job_id: Optional[int]) -> Optional[str]:
    if job_id is None:
        return None
    return JOB_ID_TO_CODE.get(int(job_id))


def role_for_job_code(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    return JOB_CODE_TO_ROLE.get(code)


def is_player_id(combatant_id: Optional[str]) -> bool:
    """Player actor ids start with "10"; NPCs and pets use other prefixes."""
    return bool(combatant_id) and str(combatant_id).startswith("10")
