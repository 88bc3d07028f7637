"""TrapSession: every piece of mutable trap-system state for one running engine."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from trapsys.checks import CheckBook
from trapsys.config import TrapConfig
from trapsys.descriptor import has_ignore_tag
from trapsys.effects import EffectInvoker, MacroInvoker
from trapsys.presentation import Outbox
from trapsys.world import Token, World

if TYPE_CHECKING:
    from trapsys.locks import LockRecord

log = logging.getLogger(__name__)


class TrapSession:
    """Created empty at startup, cleared by ``close()``, never persisted."""

    def __init__(self, world: World, config: TrapConfig | None = None,
                 outbox: Outbox | None = None, invoker: EffectInvoker | None = None) -> None:
        self.world = world
        self.config = config or TrapConfig()
        self.outbox = outbox or Outbox()
        self.invoker: EffectInvoker = invoker or MacroInvoker(world, self.outbox)

        self.triggers_enabled = True
        self.safe_moves: set[str] = set()       # entity ids exempt for one move
        self.locks: dict[str, LockRecord] = {}  # entity id → lock
        self.checks = CheckBook()
        self.reveal_dc: set[str] = set()         # player ids that see the DC
        self.closed = False

    # ── Helpers ──────────────────────────────────────────────────

    def grid_size(self, page_id: str | None) -> float:
        """Page grid in pixels, falling back to the configured default."""
        page = self.world.get_page(page_id) if page_id else None
        if page is None:
            log.warning("Page %s not found, using default grid %s",
                        page_id, self.config.default_grid_size)
            return self.config.default_grid_size
        size = page.snapping_increment
        if size is None or size < 2:
            log.warning("Page %s has unusable grid %r, using default %s",
                        page_id, size, self.config.default_grid_size)
            return self.config.default_grid_size
        return float(size)

    def consume_safe_move(self, entity_id: str) -> bool:
        if entity_id in self.safe_moves:
            self.safe_moves.discard(entity_id)
            return True
        return False

    def is_immune(self, token: Token) -> bool:
        return has_ignore_tag(token.notes) and token.has_marker(self.config.immunity_marker)

    def run_effect(self, ref: str, label: str = "Effect") -> bool:
        """Invoke an effect. Failures are reported to the GM, never raised."""
        try:
            if self.invoker.invoke(ref):
                return True
        except Exception:
            log.exception("Effect %s raised", ref)
        self.outbox.error(f'{label} "{ref}" could not be run')
        return False

    def stats(self) -> dict[str, Any]:
        return {
            "triggers_enabled": self.triggers_enabled,
            "locked": len(self.locks),
            "pending_checks": len(self.checks),
            "safe_moves": len(self.safe_moves),
            "tokens": len(self.world.tokens),
            "messages": len(self.outbox.messages),
        }

    # ── Teardown ─────────────────────────────────────────────────

    def close(self) -> None:
        for record in self.locks.values():
            record.cancel_settle()
        self.locks.clear()
        self.checks.clear()
        self.safe_moves.clear()
        self.reveal_dc.clear()
        self.closed = True
        log.info("Trap session closed")
