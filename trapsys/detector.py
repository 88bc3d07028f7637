"""Movement detector: decides whether a token's move ran into an armed trap."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from trapsys.descriptor import TrapDescriptor
from trapsys.geometry import (
    Point,
    distance,
    overlap_percent,
    path_margin,
    segment_vs_expanded_box,
    token_box,
)
from trapsys.session import TrapSession
from trapsys.traps import TrapStateMachine
from trapsys.world import OBJECTS_LAYER, Token

log = logging.getLogger(__name__)


@dataclass(slots=True)
class TrapHit:
    trap: Token
    descriptor: TrapDescriptor
    contact: Point
    via_path: bool


class MovementDetector:
    def __init__(self, session: TrapSession, traps: TrapStateMachine) -> None:
        self.session = session
        self.traps = traps

    def should_check(self, token: Token) -> bool:
        """Mover-level exclusions. Consumes a pending safe move."""
        if not self.session.triggers_enabled:
            log.debug("Triggers disabled")
            return False
        if self.traps.is_trap(token):
            log.debug("Ignoring movement of trap token %s", token.id)
            return False
        if token.layer != OBJECTS_LAYER:
            log.debug("Token %s not on the objects layer", token.id)
            return False
        if self.session.is_immune(token):
            log.debug("Token %s is immune to traps", token.id)
            return False
        if self.session.consume_safe_move(token.id):
            log.debug("Token %s used its safe move", token.id)
            return False
        return True

    def check(self, token: Token, prev: Point | None) -> TrapHit | None:
        """First trap (path intersection before overlap) hit by this move."""
        if not self.should_check(token):
            return None
        cfg = self.session.config
        current = token.center
        if prev is not None:
            moved = distance(prev, current)
            min_move = self.session.grid_size(token.page_id) * cfg.min_movement_factor
            if moved < min_move:
                log.debug("Movement too small (%.1fpx < %.1fpx)", moved, min_move)
                return None

        mover_box = token_box(token)
        for trap, d in self.traps.traps_on_page(token.page_id):
            if trap.id == token.id or not d.is_active:
                continue
            if not d.movement_trigger_enabled:
                log.debug("Movement trigger disabled for trap %s", trap.id)
                continue
            box = token_box(trap)
            if prev is not None:
                hit = segment_vs_expanded_box(prev, current, box,
                                              path_margin(box, cfg.path_margin_factor))
                if hit is not None:
                    return TrapHit(trap, d, hit, via_path=True)
            if overlap_percent(mover_box, box) >= cfg.overlap_threshold:
                return TrapHit(trap, d, current, via_path=False)
        return None
