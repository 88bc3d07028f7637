"""Trap state machine: uses, arming, visuals, setup and the GM trap panels."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from trapsys.descriptor import (
    Action,
    InteractionBehavior,
    Placement,
    SkillCheck,
    TrapDescriptor,
    TrapKind,
    has_ignore_tag,
    is_trap_notes,
    parse_descriptor,
    patch_notes,
    strip_ignore_tag,
    toggle_ignore_tag,
    write_descriptor,
)
from trapsys.errors import CommandError
from trapsys.presentation import MenuAction, Message, Outbox
from trapsys.session import TrapSession
from trapsys.world import Token

log = logging.getLogger(__name__)

_NONE_ARGS = {"", "none"}


def _given(value: str | None) -> str | None:
    """Treat the literal 'None' placeholder from command menus as absent."""
    if value is None or value.strip().lower() in _NONE_ARGS:
        return None
    return value.strip()


def parse_uses(raw: str | int) -> int:
    try:
        uses = int(raw)
    except (TypeError, ValueError):
        raise CommandError("Uses must be a positive number!") from None
    if uses < 1:
        raise CommandError("Uses must be a positive number!")
    return uses


def skill_label(skill: str) -> str:
    return skill.replace("_", " ")


class TrapStateMachine:
    def __init__(self, session: TrapSession) -> None:
        self.session = session

    @property
    def outbox(self) -> Outbox:
        return self.session.outbox

    # ── Reading ──────────────────────────────────────────────────

    def is_trap(self, token: Token | None) -> bool:
        return token is not None and is_trap_notes(token.notes)

    def descriptor(self, token: Token) -> TrapDescriptor | None:
        return parse_descriptor(token.notes, source=token.id)

    def require(self, token: Token | None) -> TrapDescriptor:
        if token is None:
            raise CommandError("No trap token provided!")
        d = self.descriptor(token)
        if d is None:
            raise CommandError("Invalid trap configuration!")
        return d

    def traps_on_page(self, page_id: str) -> list[tuple[Token, TrapDescriptor]]:
        return self._traps(self.session.world.tokens_on_page(page_id))

    def all_traps(self) -> list[tuple[Token, TrapDescriptor]]:
        return self._traps(self.session.world.tokens.values())

    def _traps(self, tokens: Iterable[Token]) -> list[tuple[Token, TrapDescriptor]]:
        found = []
        for token in tokens:
            if self.is_trap(token):
                d = self.descriptor(token)
                if d is not None:
                    found.append((token, d))
        return found

    def can_fire(self, d: TrapDescriptor) -> bool:
        return d.is_active and self.session.triggers_enabled

    # ── Visuals ──────────────────────────────────────────────────

    def state_label(self, d: TrapDescriptor) -> str:
        if not d.is_active:
            return "DISARMED"
        return "ARMED" if self.session.triggers_enabled else "PAUSED"

    def refresh_visuals(self, token: Token, d: TrapDescriptor | None = None) -> None:
        d = d or self.descriptor(token)
        if d is None:
            return
        cfg = self.session.config
        state = self.state_label(d)
        token.aura_color = {
            "ARMED": cfg.armed_color,
            "PAUSED": cfg.paused_color,
        }.get(state, cfg.disarmed_color)
        token.aura_radius = cfg.aura_size
        token.bar_value = d.current_uses
        token.bar_max = d.max_uses

    def clear_visuals(self, token: Token) -> None:
        token.aura_color = None
        token.aura_radius = None
        token.bar_value = None
        token.bar_max = None

    # ── Uses and arming ──────────────────────────────────────────

    def set_uses(self, token: Token, current: int, maximum: int,
                 armed: bool | None = None) -> TrapDescriptor:
        """Authoritative mutation: clamps, rewrites the notes in place, refreshes visuals."""
        d = self.require(token)
        maximum = max(0, int(maximum))
        current = min(max(0, int(current)), maximum)
        is_armed = d.is_armed if armed is None else armed
        if current == 0:
            is_armed = False
        token.notes = patch_notes(token.notes, uses=(current, maximum), armed=is_armed)
        updated = self.require(token)
        self.refresh_visuals(token, updated)
        log.debug("Trap %s uses %d/%d armed=%s", token.id, current, maximum, is_armed)
        return updated

    def consume(self, token: Token, *, require_armed: bool = True) -> TrapDescriptor | None:
        """Spend one use. Returns the new descriptor, or None if nothing was spent."""
        d = self.descriptor(token)
        if d is None or d.current_uses <= 0:
            return None
        if require_armed and not d.is_armed:
            return None
        updated = self.set_uses(token, d.current_uses - 1, d.max_uses)
        if updated.current_uses == 0:
            self.outbox.gm("🔴 Trap depleted and auto-disarmed!", ("Trap", token.display_name))
        return updated

    def toggle_armed(self, token: Token) -> TrapDescriptor:
        d = self.require(token)
        armed = not d.is_armed
        uses, maximum = d.current_uses, d.max_uses
        if armed and uses <= 0:
            uses = 1
            maximum = max(maximum, 1)
            self.outbox.gm("✨ Restored 1 use to trap", ("Trap", token.display_name))
        updated = self.set_uses(token, uses, maximum, armed)
        self.outbox.gm(f"{'🎯' if armed else '🔴'} Trap {'ARMED' if armed else 'DISARMED'}",
                       ("Trap", token.display_name))
        if updated.is_interaction:
            self.interaction_menu(token)
        else:
            self.status(token)
        return updated

    # ── Global toggle ────────────────────────────────────────────

    def enable_triggers(self) -> None:
        self.session.triggers_enabled = True
        self.outbox.gm("✅ Trap triggers enabled")
        self._refresh_armed()

    def disable_triggers(self) -> None:
        self.session.triggers_enabled = False
        self.outbox.gm("❌ Trap triggers disabled")
        self._refresh_armed()

    def toggle_triggers(self) -> bool:
        if self.session.triggers_enabled:
            self.disable_triggers()
        else:
            self.enable_triggers()
        return self.session.triggers_enabled

    def _refresh_armed(self) -> None:
        for token, d in self.all_traps():
            if d.is_active:
                self.refresh_visuals(token, d)

    # ── Setup ────────────────────────────────────────────────────

    def _require_effect(self, ref: str, label: str) -> None:
        if not self.session.invoker.exists(ref):
            raise CommandError(f'{label} "{ref}" not found!')

    def setup_standard(self, token: Token | None, uses: str | int, primary: str,
                       option2: str | None = None, option3: str | None = None,
                       placement: str | Placement | None = None) -> TrapDescriptor:
        if token is None:
            raise CommandError("No token selected!")
        max_uses = parse_uses(uses)
        primary = _given(primary) or ""
        if not primary:
            raise CommandError("A main macro is required!")
        self._require_effect(primary, "Main Macro")
        options = []
        for label, ref in (("Optional Macro 2", _given(option2)), ("Optional Macro 3", _given(option3))):
            if ref:
                self._require_effect(ref, label)
                options.append(Action(ref, ref))

        if isinstance(placement, str):
            mode = placement.strip().lower()
            placement = {"center": Placement.center(), "grid": Placement.cell(0, 0)}.get(mode)
        d = TrapDescriptor(current_uses=max_uses, max_uses=max_uses, is_armed=True,
                           primary=Action(primary, primary), options=tuple(options),
                           placement=placement)
        token.notes = write_descriptor(token.notes, d)
        self.refresh_visuals(token, d)
        self.outbox.gm(f'✅ Trap created with {max_uses} uses, using macro "{primary}"')
        self.status(token)
        return d

    def setup_interaction(self, token: Token | None, uses: str | int, success: str | None,
                          failure: str | None, checks: Iterable[tuple[str, str | int]] = (),
                          movement_enabled: bool = True) -> TrapDescriptor:
        if token is None:
            raise CommandError("No token selected!")
        max_uses = parse_uses(uses)
        success, failure = _given(success), _given(failure)
        if success:
            self._require_effect(success, "Success Macro")
        if failure:
            self._require_effect(failure, "Failure Macro")
        parsed: list[SkillCheck] = []
        for n, (skill, dc) in enumerate(checks, start=1):
            skill = _given(skill)
            if not skill:
                continue
            try:
                parsed.append(SkillCheck(skill_label(skill), int(dc)))
            except (TypeError, ValueError):
                raise CommandError(f"Check {n} DC must be a number!") from None

        d = TrapDescriptor(current_uses=max_uses, max_uses=max_uses, is_armed=True,
                           kind=TrapKind.INTERACTION,
                           primary=Action(failure, failure) if failure else Action("Primary", ""),
                           checks=tuple(parsed), success=success, failure=failure,
                           movement_trigger_enabled=movement_enabled)
        token.notes = write_descriptor(token.notes, d)
        self.refresh_visuals(token, d)
        self.outbox.gm(f"✅ Interaction trap created with {max_uses} uses")
        self.status(token)
        return d

    # ── Panels ───────────────────────────────────────────────────

    def held_by(self, trap: Token) -> list[Token]:
        world = self.session.world
        return [
            t for entity_id, record in self.session.locks.items()
            if record.trap_id == trap.id and (t := world.get_token(entity_id)) is not None
        ]

    @staticmethod
    def _after_trigger(d: TrapDescriptor) -> str:
        left = d.current_uses - 1
        return f"{'🎯 ARMED' if left > 0 else '🔴 AUTO-DISARMED'} Uses: {left}/{d.max_uses}"

    def status(self, token: Token | None) -> Message:
        d = self.require(token)
        msg = Message("Trap Status")
        msg.add("Trap", token.display_name)
        msg.add("State", "🎯 ARMED" if d.is_armed else "🔴 DISARMED")
        msg.add("Uses", f"{d.current_uses}/{d.max_uses}")
        msg.add("Failure Macro", d.primary.name)
        behavior = d.behavior
        if isinstance(behavior, InteractionBehavior):
            if behavior.success:
                msg.add("Success Macro", behavior.success)
            if behavior.checks:
                msg.add("Checks", ", ".join(f"{c.skill} (DC {c.dc})" for c in behavior.checks))
        elif d.options:
            msg.add("Options", ", ".join(o.name for o in d.options))
        if d.current_uses > 0:
            verdict = "Remains ARMED" if d.current_uses > 1 else "AUTO-DISARM"
            msg.add("If Triggered", f"{verdict} -> {d.current_uses - 1}/{d.max_uses}")
        held = self.held_by(token)
        if held:
            msg.add("Currently Holding", ", ".join(t.name or "???" for t in held))
        return self.outbox.send(msg)

    def interaction_menu(self, token: Token) -> Message:
        d = self.require(token)
        msg = Message(token.name or "Unknown Object")
        state = self.state_label(d) if d.is_armed else "DISARMED"
        if state == "PAUSED":
            state = "⚠️ PAUSED"
        msg.add("State", f"🎯 {state} ({d.current_uses}/{d.max_uses} uses)")
        if d.is_armed and self.session.triggers_enabled:
            msg.actions += [
                MenuAction.trapsystem("🎯 Trigger Action", "interact", token.id, "trigger"),
                MenuAction.trapsystem("💭 Explain Action", "interact", token.id, "explain"),
            ]
        elif not self.session.triggers_enabled:
            msg.add("Status", "⚠️ Trap system is currently PAUSED")
        if d.checks:
            cfg = self.session.config
            msg.add("Trap Info", "Skill Check: " + ", ".join(
                f"{cfg.skill_icon(c.skill)} {c.skill} (DC {c.dc})" for c in d.checks))
        msg.actions += [
            MenuAction.trapsystem("📊 Status", "status", token.id),
            MenuAction.trapsystem("🔄 Toggle", "toggle", token.id),
        ]
        return self.outbox.send(msg)

    def control_panel(self, trap: Token, d: TrapDescriptor, mover: Token | None = None) -> Message:
        """GM panel offered when a standard trap fires (or is fired by hand)."""
        msg = Message("Trap Control Panel")
        if mover is not None:
            msg.add("Trapped Token", mover.display_name)
        msg.add("State", f"🎯 {'ARMED' if d.is_armed else 'DISARMED'} Uses: {d.current_uses}/{d.max_uses}")
        msg.add("After Trigger", self._after_trigger(d))
        if mover is not None:
            msg.actions += [
                MenuAction.trapsystem("⏭️ Allow Move", "allowmovement", mover.id),
                MenuAction.trapsystem("📊 Status", "status", trap.id),
                MenuAction.trapsystem("👯 Allow All", "allowall"),
                MenuAction.trapsystem("🔄 Toggle", "toggle", trap.id),
            ]
            for action in (d.primary, *d.options):
                if action.ref:
                    msg.actions.append(MenuAction.trapsystem(
                        f"🎯 {action.name}", "marktriggered", mover.id, trap.id, action.ref))
        else:
            msg.actions += [
                MenuAction.trapsystem("🔄 Toggle", "toggle", trap.id),
                MenuAction.trapsystem("📊 Status", "status", trap.id),
            ]
            for action in (d.primary, *d.options):
                if action.ref:
                    msg.actions.append(MenuAction.trapsystem(
                        f"🎯 {action.name}", "manualtrigger", trap.id, action.ref))
        return self.outbox.send(msg)

    # ── Manual control ───────────────────────────────────────────

    def manual_trigger(self, token: Token | None) -> Message:
        d = self.require(token)
        if not d.is_armed:
            raise CommandError("Trap is not armed!")
        if d.current_uses <= 0:
            raise CommandError("Trap has no uses remaining!")
        if d.is_interaction:
            return self.interaction_menu(token)
        return self.control_panel(token, d)

    def manual_effect(self, token: Token | None, ref: str) -> bool:
        """Run one of the trap's effects by hand; spends a use only if it ran."""
        d = self.require(token)
        if not d.is_active:
            raise CommandError("Trap cannot be triggered (disarmed or no uses)")
        if not self.session.run_effect(ref):
            return False
        self.consume(token)
        return True

    # ── Immunity ─────────────────────────────────────────────────

    def toggle_immunity(self, token: Token | None) -> bool:
        if token is None:
            raise CommandError("No token selected for ignoretraps")
        marker = self.session.config.immunity_marker
        token.notes, present = toggle_ignore_tag(token.notes)
        if present != token.has_marker(marker):
            token.toggle_marker(marker)
        self.outbox.gm(
            f"{'🛡️ Token now ignores traps' if present else '🎯 Token no longer ignores traps'}",
            ("Token", token.display_name))
        return present

    # ── Host change notifications ────────────────────────────────

    def on_markers_changed(self, token: Token, previous: str) -> None:
        """Removing the immunity marker also removes the immunity tag."""
        marker = self.session.config.immunity_marker
        was = marker in (previous or "").split(",")
        if was and not token.has_marker(marker) and has_ignore_tag(token.notes):
            token.notes = strip_ignore_tag(token.notes)
            self.outbox.gm(f"Removed ignoretraps tag from {token.name or 'token'} "
                           f"({marker} marker removed)")

    def on_notes_changed(self, token: Token, previous: str) -> None:
        if not is_trap_notes(token.notes):
            if is_trap_notes(previous):
                self.clear_visuals(token)
                log.info("Trap visuals removed from %s (marker gone)", token.id)
            return
        old = parse_descriptor(previous, source=token.id) if is_trap_notes(previous) else None
        new = self.descriptor(token)
        if new is None:
            return
        if old is None or (old.current_uses, old.max_uses, old.is_armed) != (
                new.current_uses, new.max_uses, new.is_armed):
            self.refresh_visuals(token, new)
            log.info("Trap %s visuals updated from notes: %d/%d armed=%s",
                     token.id, new.current_uses, new.max_uses, new.is_armed)
