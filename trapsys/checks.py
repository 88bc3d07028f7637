"""Pending skill checks, indexed by requesting player and by character."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from trapsys.descriptor import SkillCheck

log = logging.getLogger(__name__)

CUSTOM_INDEX = "custom"


class AdvantageMode(str, Enum):
    ADVANTAGE = "advantage"
    DISADVANTAGE = "disadvantage"
    NORMAL = "normal"

    @classmethod
    def parse(cls, value: str | None) -> AdvantageMode | None:
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class CheckStage(str, Enum):
    AWAITING_MODE = "awaiting_mode"
    AWAITING_ROLL = "awaiting_roll"
    AWAITING_SECOND_ROLL = "awaiting_second_roll"
    AWAITING_MISMATCH_DECISION = "awaiting_mismatch_decision"


@dataclass(slots=True)
class Mismatch:
    expected: str
    rolled: str
    reason: str
    value: int
    roll_type: AdvantageMode | None = None
    combined: bool = False  # value already folds two dice together
    roller_id: str | None = None


@dataclass(slots=True)
class PendingCheck:
    trap_id: str
    requester_id: str
    character_id: str | None = None
    character_name: str | None = None
    checks: list[SkillCheck] = field(default_factory=list)
    check_index: int | str = 0
    advantage: AdvantageMode | None = None
    first_roll: int | None = None
    stage: CheckStage = CheckStage.AWAITING_MODE
    mismatch: Mismatch | None = None

    @property
    def check(self) -> SkillCheck | None:
        """The check currently being rolled for."""
        if not self.checks:
            return None
        if self.check_index == CUSTOM_INDEX:
            return self.checks[0]
        index = int(self.check_index)
        return self.checks[index] if 0 <= index < len(self.checks) else None

    @property
    def is_custom(self) -> bool:
        return self.check_index == CUSTOM_INDEX

    @property
    def entity_id(self) -> str:
        """Key used in GM action commands: character id when known, else requester."""
        return self.character_id or self.requester_id

    @property
    def mode(self) -> AdvantageMode:
        return self.advantage or AdvantageMode.NORMAL


class CheckBook:
    """Dual index of open checks.

    A new check for a requester or character supersedes the previous one under
    that key. ``discard`` only removes index entries that still point at the
    given check, so a stale resolution can never drop a newer request.
    """

    def __init__(self) -> None:
        self.by_player: dict[str, PendingCheck] = {}
        self.by_character: dict[str, PendingCheck] = {}

    def __len__(self) -> int:
        return len(self.all())

    def open(self, check: PendingCheck) -> PendingCheck:
        # A requester's older check stays reachable through its character entry
        # unless the new check is for that same character (handled below).
        old = self.by_player.get(check.requester_id)
        if old is not None and old is not check:
            log.debug("Check for requester %s superseded", check.requester_id)
        self.by_player[check.requester_id] = check
        if check.character_id:
            prev = self.by_character.get(check.character_id)
            if prev is not None and prev is not check:
                if self.by_player.get(prev.requester_id) is prev:
                    del self.by_player[prev.requester_id]
                log.debug("Check for character %s superseded", check.character_id)
            self.by_character[check.character_id] = check
        return check

    def for_player(self, player_id: str | None) -> PendingCheck | None:
        return self.by_player.get(player_id) if player_id else None

    def for_character(self, character_id: str | None) -> PendingCheck | None:
        return self.by_character.get(character_id) if character_id else None

    def find(self, entity_id: str) -> PendingCheck | None:
        return self.by_character.get(entity_id) or self.by_player.get(entity_id)

    def discard(self, check: PendingCheck) -> None:
        if check.character_id and self.by_character.get(check.character_id) is check:
            del self.by_character[check.character_id]
        if self.by_player.get(check.requester_id) is check:
            del self.by_player[check.requester_id]

    def all(self) -> list[PendingCheck]:
        seen: dict[int, PendingCheck] = {}
        for check in (*self.by_player.values(), *self.by_character.values()):
            seen.setdefault(id(check), check)
        return list(seen.values())

    def clear(self) -> None:
        self.by_player.clear()
        self.by_character.clear()
