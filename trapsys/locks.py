"""Lock registry: freezing triggering entities, two-phase relocation, release."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from trapsys.descriptor import TrapDescriptor, clear_lock_tag, set_lock_tag
from trapsys.errors import CommandError
from trapsys.geometry import Point
from trapsys.placement import PlacementResolver
from trapsys.session import TrapSession
from trapsys.traps import TrapStateMachine
from trapsys.world import Token

log = logging.getLogger(__name__)


@dataclass(slots=True)
class LockRecord:
    entity_id: str
    trap_id: str
    snapshot: TrapDescriptor
    contact: Point
    rest: Point
    anchor: Point  # where the entity is currently held
    effect_applied: bool = False
    pending_settle: asyncio.TimerHandle | None = None

    def cancel_settle(self) -> None:
        if self.pending_settle is not None:
            self.pending_settle.cancel()
            self.pending_settle = None


class LockRegistry:
    def __init__(self, session: TrapSession, traps: TrapStateMachine,
                 placement: PlacementResolver) -> None:
        self.session = session
        self.traps = traps
        self.placement = placement

    def get(self, entity_id: str) -> LockRecord | None:
        return self.session.locks.get(entity_id)

    def is_locked(self, entity_id: str) -> bool:
        return entity_id in self.session.locks

    def held_by(self, trap_id: str) -> list[LockRecord]:
        return [r for r in self.session.locks.values() if r.trap_id == trap_id]

    # ── Trigger ──────────────────────────────────────────────────

    def trigger(self, mover: Token, trap: Token, d: TrapDescriptor, contact: Point) -> LockRecord:
        """Freeze ``mover`` in ``trap`` and start the trap's behaviour."""
        rest = self.placement.resolve(mover, trap, d, contact)
        previous = self.session.locks.get(mover.id)
        if previous is not None:
            previous.cancel_settle()
        record = LockRecord(entity_id=mover.id, trap_id=trap.id, snapshot=d,
                            contact=contact, rest=rest, anchor=contact)
        self.session.locks[mover.id] = record
        mover.notes = set_lock_tag(mover.notes, trap.id)
        self.session.world.set_position(mover, *contact)
        self._schedule_settle(record)
        log.info("Token %s locked by trap %s at (%.1f,%.1f)", mover.id, trap.id, *contact)

        if d.is_interaction:
            self.traps.interaction_menu(trap)
            return record
        if self.session.config.auto_invoke_standard and d.primary.ref:
            record.effect_applied = self.session.run_effect(d.primary.ref)
        self.traps.control_panel(trap, d, mover)
        return record

    # ── Relocation ───────────────────────────────────────────────

    def _schedule_settle(self, record: LockRecord) -> None:
        delay = self.session.config.relocation_delay
        if delay <= 0:
            self._settle(record)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("No running loop, settling %s immediately", record.entity_id)
            self._settle(record)
            return
        record.pending_settle = loop.call_later(delay, self._settle, record)

    def _settle(self, record: LockRecord) -> None:
        if self.session.locks.get(record.entity_id) is not record:
            return
        record.pending_settle = None
        token = self.session.world.get_token(record.entity_id)
        if token is None:
            return
        record.anchor = record.rest
        self.session.world.set_position(token, *record.rest)
        log.debug("Token %s settled at (%.1f,%.1f)", record.entity_id, *record.rest)

    def revert(self, token: Token) -> bool:
        """Hold a locked entity at its anchor. Returns False if it is not locked."""
        record = self.session.locks.get(token.id)
        if record is None:
            return False
        self.session.world.set_position(token, *record.anchor)
        return True

    # ── Release ──────────────────────────────────────────────────

    def release(self, entity_id: str) -> bool:
        """Allow movement again. Releasing an unlocked entity does nothing."""
        record = self.session.locks.pop(entity_id, None)
        if record is None:
            return False
        record.cancel_settle()
        world = self.session.world
        token = world.get_token(entity_id)
        if token is not None:
            token.notes = clear_lock_tag(token.notes)
        trap = world.get_token(record.trap_id)
        if record.effect_applied and trap is not None:
            self.traps.consume(trap, require_armed=False)
        self.session.safe_moves.add(entity_id)
        self.session.outbox.gm("✅ Movement allowed. Next move is free.",
                               ("Token", token.display_name if token else entity_id))
        log.info("Token %s released from trap %s", entity_id, record.trap_id)
        return True

    def allow_all(self) -> int:
        locked = list(self.session.locks)
        if not locked:
            self.session.outbox.gm("ℹ️ No tokens are currently locked")
            return 0
        released = sum(1 for entity_id in locked if self.release(entity_id))
        self.session.outbox.gm(f"✅ Movement allowed for {released} token(s)")
        return released

    def mark_triggered(self, entity_id: str, trap_id: str, ref: str | None = None) -> bool:
        record = self.session.locks.get(entity_id)
        if record is None or record.trap_id != trap_id:
            raise CommandError(f"Token {entity_id} is not held by trap {trap_id}")
        if ref:
            if not self.session.run_effect(ref):
                return False
        record.effect_applied = True
        log.info("Effect applied for token %s in trap %s", entity_id, trap_id)
        return True
