from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple

from xivlog.combatlog.jobs import JOB_NAME_TO_CODE

logger = logging.getLogger("xivlog")

_RX_HEX_ID = re.compile(r"^[0-9a-f]+$", re.I)
_RX_TRAILING_COMMA = re.compile(r",\s*([}\]])")

BUNDLED_DEFINITIONS_DIR = Path(__file__).resolve().parent.parent / "data" / "definitions"


def normalize_ability_id(ability_id: str) -> str:
    """Uppercase hex without a 0x prefix or zero padding ("0009" -> "9")."""
    s = (ability_id or "").strip().upper()
    if s.startswith("0X"):
        s = s[2:]
    return s.lstrip("0") or ("0" if s else "")


def _load_definition(raw: str, file_name: str) -> Optional[Any]:
    try:
        return json.loads(raw)
    except ValueError:
        pass
    # Hand-maintained definition files sometimes carry trailing commas.
    try:
        return json.loads(_RX_TRAILING_COMMA.sub(r"\1", raw))
    except ValueError as e:
        logger.warning("Failed to parse ability definition %s: %s", file_name, e)
        return None


class AbilityJobMap:
    """Immutable ability id -> job code lookup.

    Built once at process start and handed to the analyzer, so tests can
    construct one from a plain dict.
    """

    def __init__(self, entries: Optional[Mapping[str, str]] = None) -> None:
        normalized: Dict[str, str] = {}
        for ability_id, job_code in (entries or {}).items():
            key = normalize_ability_id(ability_id)
            if key:
                normalized[key] = job_code
        self._entries: Mapping[str, str] = MappingProxyType(normalized)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, ability_id: object) -> bool:
        return isinstance(ability_id, str) and normalize_ability_id(ability_id) in self._entries

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self._entries.items())

    def job_for(self, ability_id: str) -> Optional[str]:
        if not ability_id:
            return None
        return self._entries.get(normalize_ability_id(ability_id))

    @classmethod
    def load_from_dir(cls, directory: Optional[str | Path] = None) -> "AbilityJobMap":
        """Read every ``*.json`` job definition under ``directory``.

        Each file holds ``{"job": "<job name>", "actions": [{"<hex id>": ...}, ...]}``.
        When two files claim the same ability id the first file (by name) wins.
        """
        base = Path(directory) if directory else BUNDLED_DEFINITIONS_DIR
        if not base.is_dir():
            logger.warning("Ability definitions directory not found (%s); ability job map is empty.", base)
            return cls()

        entries: Dict[str, str] = {}
        for path in sorted(base.glob("*.json")):
            parsed = _load_definition(path.read_text(encoding="utf-8"), path.name)
            if not isinstance(parsed, dict):
                continue

            job_name = str(parsed.get("job") or "").strip().lower()
            job_code = JOB_NAME_TO_CODE.get(job_name)
            if not job_code:
                logger.debug("Skipping ability definition %s: unknown job %r", path.name, job_name)
                continue

            actions = parsed.get("actions")
            if not isinstance(actions, list):
                continue

            for action in actions:
                if not isinstance(action, dict):
                    continue
                for key in action.keys():
                    ability_id = normalize_ability_id(str(key))
                    if not _RX_HEX_ID.match(ability_id):
                        continue
                    existing = entries.get(ability_id)
                    if existing and existing != job_code:
                        logger.warning(
                            "Ability job conflict for %s: keeping %s, ignoring %s from %s",
                            ability_id,
                            existing,
                            job_code,
                            path.name,
                        )
                        continue
                    entries[ability_id] = job_code

        logger.info("Loaded %d ability ids from %s", len(entries), base)
        return cls(entries)
