"""Roll events from the host: structured roll cards and bare dice results."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from trapsys.checks import AdvantageMode

log = logging.getLogger(__name__)

_HEADER_MODES = (
    ("dnd-2024__header--Advantage", AdvantageMode.ADVANTAGE),
    ("dnd-2024__header--Disadvantage", AdvantageMode.DISADVANTAGE),
    ("dnd-2024__header--Normal", AdvantageMode.NORMAL),
)
_DIE_RE = re.compile(r'die__total[^>]*?(?:data-result="(\d+)")?[^>]*>\s*(\d+)\s*<')
_DATA_RESULT_RE = re.compile(r'data-result="(\d+)"')
_PREFERRED_RE = re.compile(r'die__total--preferred[^>]*data-result="(\d+)"')
_TITLE_RE = re.compile(r'<div class="header__title">([^<]+)</div>')
_TITLE_SUFFIX_RE = re.compile(r"\s+(?:Check|Save)$")


@dataclass(slots=True)
class RollEvent:
    player_id: str
    total: int
    dice: list[int] = field(default_factory=list)
    roll_type: AdvantageMode | None = None
    character_id: str | None = None
    skill_label: str | None = None  # None for a bare d20 roll

    @property
    def is_dual(self) -> bool:
        return len(self.dice) >= 2

    @property
    def first(self) -> int:
        return self.dice[0] if self.dice else self.total

    @property
    def second(self) -> int | None:
        return self.dice[1] if len(self.dice) > 1 else None


def parse_advanced_roll(content: str, player_id: str,
                        character_id: str | None = None) -> RollEvent | None:
    """Parse an HTML roll card. Returns None when it carries no die results."""
    roll_type = None
    for marker, mode in _HEADER_MODES:
        if marker in content:
            roll_type = mode

    dice: list[int] = []
    for m in _DIE_RE.finditer(content):
        data = _DATA_RESULT_RE.search(m.group(0))
        dice.append(int(data.group(1)) if data else int(m.group(2)))
    if not dice:
        log.debug("Roll card from %s has no die results", player_id)
        return None

    preferred = _PREFERRED_RE.search(content)
    if preferred:
        total = int(preferred.group(1))
    elif len(dice) >= 2 and roll_type is AdvantageMode.ADVANTAGE:
        total = max(dice)
    elif len(dice) >= 2 and roll_type is AdvantageMode.DISADVANTAGE:
        total = min(dice)
    else:
        total = dice[0]

    label = None
    title = _TITLE_RE.search(content)
    if title:
        label = _TITLE_SUFFIX_RE.sub("", title.group(1).strip()) or None

    return RollEvent(player_id=player_id, total=total, dice=dice, roll_type=roll_type,
                     character_id=character_id or None, skill_label=label)


def parse_roll_result(content: str | dict[str, Any], player_id: str) -> RollEvent | None:
    """Parse a bare roll result (JSON text or mapping)."""
    if isinstance(content, str):
        try:
            data = json.loads(content)
        except ValueError:
            log.warning("Roll result is not JSON: %.80s", content)
            return None
    else:
        data = content
    if not isinstance(data, dict):
        return None
    total = data.get("total")
    rolls = data.get("rolls") or []
    if total is None and rolls:
        results = rolls[0].get("results") or []
        if results:
            total = results[0].get("v")
    if total is None:
        log.warning("Could not read a total from roll result: %s", content)
        return None
    character_id = data.get("characterid") or (rolls[0].get("characterid") if rolls else None)
    return RollEvent(player_id=player_id, total=int(total), character_id=character_id or None)
