"""trapsys engine: event handlers, lifecycle, entry point."""

from __future__ import annotations

import asyncio
import logging
import signal
from pathlib import Path
from typing import Any

import yaml

from trapsys.commands import CommandContext, CommandDispatcher
from trapsys.config import BASE_DIR, TrapConfig, load_config
from trapsys.detector import MovementDetector
from trapsys.effects import EffectInvoker
from trapsys.geometry import Point
from trapsys.locks import LockRegistry
from trapsys.placement import PlacementResolver
from trapsys.presentation import Outbox
from trapsys.resolution import SkillCheckPipeline
from trapsys.rolls import parse_advanced_roll, parse_roll_result
from trapsys.session import TrapSession
from trapsys.traps import TrapStateMachine
from trapsys.world import World

log = logging.getLogger(__name__)


# ── Engine ───────────────────────────────────────────────────────

class Engine:
    """Owns the world, the trap session and every service wired onto it."""

    def __init__(self, config_path: str | Path | None = None, *,
                 config: TrapConfig | None = None, world: World | None = None,
                 invoker: EffectInvoker | None = None) -> None:
        self.config = config or load_config(config_path)
        self.world = world or World()
        self.session = TrapSession(self.world, self.config, invoker=invoker)
        self.traps = TrapStateMachine(self.session)
        self.placement = PlacementResolver(self.session)
        self.locks = LockRegistry(self.session, self.traps, self.placement)
        self.detector = MovementDetector(self.session, self.traps)
        self.pipeline = SkillCheckPipeline(self.session, self.traps)
        self.commands = CommandDispatcher(self.session, self.traps, self.locks, self.pipeline)

        self._running = False
        self._tick_interval = 0.1

    @property
    def outbox(self) -> Outbox:
        return self.session.outbox

    # ── Boot sequence ────────────────────────────────────────────

    async def boot(self) -> None:
        log.info("=== trapsys booting ===")
        if self.config.world_snapshot:
            self.load_world(self.config.world_snapshot)
        for token, d in self.traps.all_traps():
            self.traps.refresh_visuals(token, d)
        if self.config.api_enabled:
            from trapsys.api import start_api
            await start_api(self, self.config.api_host, self.config.api_port)
        self._running = True
        log.info("=== Boot complete: %d traps, %d commands ===",
                 len(self.traps.all_traps()), len(self.commands.handlers))

    def load_world(self, path: str | Path) -> None:
        path = Path(path)
        if not path.is_absolute():
            path = BASE_DIR / path
        with open(path, encoding="utf-8") as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}
        self.world.load_snapshot(data)

    async def shutdown(self) -> None:
        log.info("Shutting down...")
        self._running = False
        if self.config.api_enabled:
            from trapsys.api import stop_api
            await stop_api()
        self.session.close()
        log.info("Shutdown complete")

    async def run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._tick_interval)

    async def run(self) -> None:
        """Boot and run the engine."""
        await self.boot()
        try:
            await self.run_loop()
        except asyncio.CancelledError:
            pass
        finally:
            await self.shutdown()

    # ── Event handlers ───────────────────────────────────────────

    def _internal_error(self, what: str) -> None:
        log.exception("Error handling %s", what)
        self.outbox.error(f"Internal error while handling {what}")

    def on_token_moved(self, token_id: str, prev: Point | None) -> bool:
        """Token already at its new position. Returns True if a trap fired."""
        try:
            token = self.world.get_token(token_id)
            if token is None:
                log.debug("Move for unknown token %s", token_id)
                return False
            if self.locks.revert(token):
                log.debug("Token %s is locked, movement reverted", token_id)
                return False
            hit = self.detector.check(token, prev)
            if hit is None:
                return False
            log.info("Token %s triggered trap %s (%s)", token_id, hit.trap.id,
                     "path" if hit.via_path else "overlap")
            self.locks.trigger(token, hit.trap, hit.descriptor, hit.contact)
            return True
        except Exception:
            self._internal_error(f"movement of token {token_id}")
            return False

    def move_token(self, token_id: str, left: float, top: float) -> bool:
        """Apply a host-side move and run it through detection."""
        token = self.world.get_token(token_id)
        if token is None:
            return False
        prev = token.center
        self.world.set_position(token, left, top)
        return self.on_token_moved(token_id, prev)

    def on_notes_changed(self, token_id: str, notes: str) -> None:
        try:
            token = self.world.get_token(token_id)
            if token is None:
                return
            previous, token.notes = token.notes, notes
            self.traps.on_notes_changed(token, previous)
        except Exception:
            self._internal_error(f"notes change on token {token_id}")

    def on_markers_changed(self, token_id: str, markers: str) -> None:
        try:
            token = self.world.get_token(token_id)
            if token is None:
                return
            previous, token.status_markers = token.status_markers, markers
            self.traps.on_markers_changed(token, previous)
        except Exception:
            self._internal_error(f"marker change on token {token_id}")

    def on_command(self, text: str, player_id: str, selected: list[str] | None = None) -> bool:
        try:
            return self.commands.dispatch(text, CommandContext(player_id, list(selected or [])))
        except Exception:
            self._internal_error(f"command {text!r}")
            return True

    def on_advanced_roll(self, content: str, player_id: str,
                         character_id: str | None = None) -> bool:
        try:
            event = parse_advanced_roll(content, player_id, character_id)
            if event is None:
                log.debug("No roll total found in message from %s", player_id)
                return False
            return self.pipeline.handle_roll(event)
        except Exception:
            self._internal_error(f"roll from player {player_id}")
            return False

    def on_roll_result(self, content: str | dict[str, Any], player_id: str) -> bool:
        try:
            event = parse_roll_result(content, player_id)
            if event is None:
                return False
            return self.pipeline.handle_roll(event)
        except Exception:
            self._internal_error(f"roll result from player {player_id}")
            return False


# ── Main ─────────────────────────────────────────────────────────

def main() -> None:
    config = load_config()

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    engine = Engine(config=config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def _signal_handler() -> None:
        engine._running = False

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    try:
        loop.run_until_complete(engine.run())
    finally:
        loop.close()


if __name__ == "__main__":
    main()
