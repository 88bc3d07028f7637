"""Skill-check resolution pipeline.

The conversation for an interaction trap runs through GM menus::

    interaction menu ─┬─ trigger / fail ──────────────► failure effect, use spent
                      └─ explain ─► character selection ─► GM response menu
                                        ├─ allow ─────────► success effect, use spent
                                        ├─ fail
                                        ├─ predefined check ─┐
                                        └─ custom skill ─► DC ┴─► advantage mode
                                                                   ─► roll prompt
                                                                   ─► roll events
                                                                   ─► resolution

Roll events are matched to an open check by character id, then by the
roller's unique controlled character with an open check, then by the
roller's own player id. Unmatched rolls are dropped. A roll for the wrong
skill is held for a GM accept/reject decision.
"""

from __future__ import annotations

import logging
import re

from trapsys.checks import (
    CUSTOM_INDEX,
    AdvantageMode,
    CheckBook,
    CheckStage,
    Mismatch,
    PendingCheck,
)
from trapsys.descriptor import FLAT_ROLL, SkillCheck, TrapDescriptor
from trapsys.errors import CommandError
from trapsys.presentation import Audience, MenuAction, Message
from trapsys.rolls import RollEvent
from trapsys.session import TrapSession
from trapsys.traps import TrapStateMachine, skill_label
from trapsys.world import Token

log = logging.getLogger(__name__)

_SUFFIX_RE = re.compile(r"\s*(check|save)$", re.IGNORECASE)
_UNSAFE_RE = re.compile(r"[^a-zA-Z0-9_]")


def normalize_skill(label: str | None) -> str:
    """Lower-case, trailing 'check'/'save' removed, underscores as spaces."""
    return _SUFFIX_RE.sub("", (label or "").replace("_", " ").strip().lower()).strip()


def safe_skill(skill: str) -> str:
    """Skill name as a single command argument."""
    return _UNSAFE_RE.sub("", skill.replace(" ", "_"))


def skill_mismatch(expected: str | None, rolled: str | None) -> str | None:
    """Reason the rolled label does not satisfy the expected skill, or None.

    An unlabelled roll answers whatever the prompt asked for; the normal-mode
    prompt tells players to roll a plain d20.
    """
    if not (rolled or "").strip():
        return None
    want = normalize_skill(expected)
    got = normalize_skill(rolled)
    expects_flat = want in ("", normalize_skill(FLAT_ROLL))
    is_flat = got == normalize_skill(FLAT_ROLL)
    if expects_flat and is_flat:
        return None
    if expects_flat:
        return "Expected a flat d20 roll, but a skill/ability/save was rolled."
    if is_flat:
        return "Expected a skill/ability/save, but a flat d20 roll was rolled."
    if want != got:
        return f"Expected '{expected}', but got '{rolled}'."
    return None


def combine_dice(mode: AdvantageMode, event: RollEvent) -> int:
    if mode is AdvantageMode.ADVANTAGE:
        return max(event.dice)
    if mode is AdvantageMode.DISADVANTAGE:
        return min(event.dice)
    return event.total


class SkillCheckPipeline:
    def __init__(self, session: TrapSession, traps: TrapStateMachine) -> None:
        self.session = session
        self.traps = traps

    @property
    def checks(self) -> CheckBook:
        return self.session.checks

    def _icon(self, skill: str) -> str:
        return self.session.config.skill_icon(skill)

    def _interaction(self, trap: Token | None) -> TrapDescriptor:
        d = self.traps.require(trap)
        if not d.is_interaction:
            raise CommandError("Not an interaction trap!")
        return d

    # ── Interaction menu actions ─────────────────────────────────

    def interact(self, trap: Token | None, action: str, requester_id: str) -> None:
        self._interaction(trap)
        action = action.lower()
        if action in ("trigger", "fail"):
            self.fail_action(trap, requester_id)
        elif action == "explain":
            self.character_selection(trap, requester_id)
        else:
            raise CommandError(f"Unknown interaction: {action}")

    def allow_action(self, trap: Token | None, requester_id: str) -> None:
        d = self.traps.require(trap)
        self.session.outbox.broadcast("Action Allowed", ("Token", trap.display_name),
                                      ("Result", "✅ Action allowed"))
        if d.success:
            self.session.run_effect(d.success, "Success effect")
        self.traps.consume(trap, require_armed=False)
        log.info("Action allowed on trap %s for %s", trap.id, requester_id)

    def fail_action(self, trap: Token | None, requester_id: str) -> None:
        d = self.traps.require(trap)
        if not d.is_active:
            raise CommandError("Trap cannot be triggered (disarmed or no uses)")
        self.session.outbox.broadcast("Action Failed", ("Token", trap.display_name),
                                      ("Result", "❌ Action failed"))
        ref = d.failure_ref
        if ref:
            self.session.run_effect(ref, "Failure effect")
        self.traps.consume(trap)
        self.traps.status(trap)
        log.info("Action failed on trap %s for %s", trap.id, requester_id)

    def character_selection(self, trap: Token | None, requester_id: str) -> Message:
        self._interaction(trap)
        msg = Message("Select Character for Skill Check")
        msg.add("Token", trap.display_name)
        for character in self.session.world.player_characters():
            msg.actions.append(MenuAction.trapsystem(
                character.name, "selectcharacter", trap.id, character.id, requester_id))
        if not msg.actions:
            msg.add("Characters", "No player characters found")
        return self.session.outbox.send(msg)

    def select_character(self, trap: Token | None, character_id: str,
                         requester_id: str) -> PendingCheck:
        self._interaction(trap)
        character = self.session.world.get_character(character_id)
        if character is None:
            raise CommandError("Invalid token or character ID!")
        pending = self.checks.open(PendingCheck(
            trap_id=trap.id, requester_id=requester_id,
            character_id=character.id, character_name=character.name))
        log.debug("Character %s (%s) selected for trap %s by %s",
                  character.name, character.id, trap.id, requester_id)
        self.gm_response_menu(trap, requester_id)
        return pending

    def gm_response_menu(self, trap: Token, requester_id: str) -> Message:
        d = self.traps.require(trap)
        msg = Message("GM Response")
        msg.add("Token", trap.display_name)
        msg.add("Action", "💭 Explained Action")
        msg.actions += [
            MenuAction.trapsystem("✅ Allow Action", "allow", trap.id, requester_id),
            MenuAction.trapsystem("❌ Fail Action", "interact", trap.id, "trigger", requester_id),
        ]
        for index, check in enumerate(d.checks):
            msg.actions.append(MenuAction.trapsystem(
                f"{self._icon(check.skill)} {check.skill} (DC {check.dc})",
                "check", trap.id, index, requester_id))
        msg.actions.append(MenuAction.trapsystem(
            "🎲 Set Custom Check", "customcheck", trap.id, requester_id))
        return self.session.outbox.send(msg)

    # ── Choosing the check ───────────────────────────────────────

    def _carry_identity(self, requester_id: str) -> tuple[str | None, str | None]:
        previous = self.checks.for_player(requester_id)
        if previous is None:
            return None, None
        return previous.character_id, previous.character_name

    def request_check(self, trap: Token | None, index: int | str, requester_id: str,
                      *, hide_display_dc: bool = False) -> PendingCheck:
        d = self._interaction(trap)
        character_id, character_name = self._carry_identity(requester_id)
        if index == CUSTOM_INDEX:
            previous = self.checks.for_player(requester_id)
            if previous is None or not previous.is_custom or previous.check is None:
                raise CommandError("No custom check has been set!")
            checks = [previous.check]
        else:
            try:
                index = int(index)
            except (TypeError, ValueError):
                raise CommandError(f"Invalid check index: {index}") from None
            if not 0 <= index < len(d.checks):
                raise CommandError(f"Trap has no check #{index}")
            checks = list(d.checks)
        pending = self.checks.open(PendingCheck(
            trap_id=trap.id, requester_id=requester_id, character_id=character_id,
            character_name=character_name, checks=checks, check_index=index))
        self._check_menu(trap, pending, hide_display_dc=hide_display_dc)
        return pending

    def custom_check(self, trap: Token | None, requester_id: str) -> Message:
        self._interaction(trap)
        msg = Message("Custom Skill Check")
        msg.add("Token", trap.display_name)
        for skill, icon in self.session.config.skill_icons.items():
            msg.actions.append(MenuAction.trapsystem(
                f"{icon} {skill}", "setcheck", trap.id, safe_skill(skill), requester_id))
        return self.session.outbox.send(msg)

    def _skill_from_arg(self, arg: str) -> str:
        for skill in self.session.config.skill_icons:
            if safe_skill(skill) == arg:
                return skill
        return skill_label(arg)

    def set_check(self, trap: Token | None, skill_arg: str, requester_id: str) -> PendingCheck:
        self._interaction(trap)
        skill = self._skill_from_arg(skill_arg)
        character_id, character_name = self._carry_identity(requester_id)
        pending = self.checks.open(PendingCheck(
            trap_id=trap.id, requester_id=requester_id, character_id=character_id,
            character_name=character_name, checks=[SkillCheck(skill, None)],
            check_index=CUSTOM_INDEX))
        msg = Message(f"{self._icon(skill)} Set DC for {skill}")
        msg.add("Token", trap.display_name)
        msg.actions.append(MenuAction.trapsystem(
            "Set DC", "setdc", trap.id, "?{DC|10}", requester_id, safe_skill(skill)))
        self.session.outbox.send(msg)
        return pending

    def set_dc(self, trap: Token | None, dc: str | int, requester_id: str,
               skill_arg: str | None = None) -> PendingCheck:
        self._interaction(trap)
        try:
            value = int(dc)
        except (TypeError, ValueError):
            raise CommandError("DC must be a number.") from None
        previous = self.checks.for_player(requester_id)
        if skill_arg:
            skill = self._skill_from_arg(skill_arg)
        elif previous is not None and previous.check is not None:
            skill = previous.check.skill
        else:
            raise CommandError("No skill chosen for the custom check!")
        character_id, character_name = self._carry_identity(requester_id)
        pending = self.checks.open(PendingCheck(
            trap_id=trap.id, requester_id=requester_id, character_id=character_id,
            character_name=character_name, checks=[SkillCheck(skill, value)],
            check_index=CUSTOM_INDEX))
        self._check_menu(trap, pending)
        return pending

    def display_dc(self, trap: Token | None, index: int | str, requester_id: str) -> PendingCheck:
        self.session.reveal_dc.add(requester_id)
        return self.request_check(trap, index, requester_id, hide_display_dc=True)

    def _check_menu(self, trap: Token, pending: PendingCheck, *,
                    hide_display_dc: bool = False) -> Message:
        check = pending.check
        index = pending.check_index
        msg = Message(f"{self._icon(check.skill)} {check.skill} Check (DC {check.dc})")
        msg.add("Token", trap.display_name)
        if pending.character_name:
            msg.add("Character", pending.character_name)
        for mode in (AdvantageMode.ADVANTAGE, AdvantageMode.NORMAL, AdvantageMode.DISADVANTAGE):
            msg.actions.append(MenuAction.trapsystem(
                mode.value.capitalize(), "rollcheck", trap.id, index, mode.value,
                pending.requester_id))
        if not pending.is_custom:
            msg.actions.append(MenuAction.trapsystem(
                "Set DC", "setdc", trap.id, f"?{{New DC|{check.dc}}}", pending.requester_id,
                safe_skill(check.skill)))
        if not hide_display_dc and pending.requester_id not in self.session.reveal_dc:
            msg.actions.append(MenuAction.trapsystem(
                "Display DC", "displaydc", trap.id, index, pending.requester_id))
        return self.session.outbox.send(msg)

    # ── Advantage mode and roll prompt ───────────────────────────

    def roll_check(self, trap: Token | None, index: int | str, mode: str,
                   requester_id: str) -> PendingCheck:
        advantage = AdvantageMode.parse(mode)
        if advantage is None:
            raise CommandError(f"Unknown roll type: {mode}")
        d = self._interaction(trap)
        previous = self.checks.for_player(requester_id)
        if index == CUSTOM_INDEX:
            if previous is None or not previous.is_custom or previous.check is None:
                raise CommandError("No custom check has been set!")
            pending = previous
        else:
            try:
                index = int(index)
            except (TypeError, ValueError):
                raise CommandError(f"Invalid check index: {index}") from None
            if not 0 <= index < len(d.checks):
                raise CommandError(f"Trap has no check #{index}")
            if (previous is not None and previous.checks and previous.trap_id == trap.id
                    and previous.check_index == index):
                pending = previous
            else:
                character_id, character_name = self._carry_identity(requester_id)
                pending = PendingCheck(trap_id=trap.id, requester_id=requester_id,
                                       character_id=character_id,
                                       character_name=character_name,
                                       checks=list(d.checks), check_index=index)
        pending.advantage = advantage
        pending.first_roll = None
        pending.mismatch = None
        pending.stage = CheckStage.AWAITING_ROLL
        self.checks.open(pending)
        if pending.character_id is None:
            log.warning("Check on trap %s has no character; matching by player %s",
                        trap.id, requester_id)
        self._roll_prompt(trap, pending)
        return pending

    def _roll_prompt(self, trap: Token, pending: PendingCheck) -> Message:
        check = pending.check
        mode = pending.mode
        msg = Message(f"{self._icon(check.skill)} Skill Check Required", audience=Audience.ALL)
        msg.add("Token", trap.display_name)
        if pending.character_name:
            msg.add("Character", pending.character_name)
        msg.add("Skill", check.skill)
        if pending.requester_id in self.session.reveal_dc:
            msg.add("DC", check.dc)
        msg.add("Roll Type", mode.value.capitalize())
        if mode is AdvantageMode.ADVANTAGE:
            msg.add("Instructions", "Roll with advantage")
            msg.add("Note", "Using the higher of two rolls")
        elif mode is AdvantageMode.DISADVANTAGE:
            msg.add("Instructions", "Roll with disadvantage")
            msg.add("Note", "Using the lower of two rolls")
        else:
            msg.add("Instructions", "Roll 1d20 using your character sheet or /roll 1d20")
        return self.session.outbox.send(msg)

    # ── Roll matching ────────────────────────────────────────────

    def match(self, event: RollEvent) -> PendingCheck | None:
        world = self.session.world
        roller = event.player_id

        if event.character_id:
            pending = self.checks.for_character(event.character_id)
            if pending is not None:
                character = world.get_character(event.character_id)
                if (world.is_gm(roller)
                        or (character is not None and character.is_controlled_by(roller))
                        or roller == pending.requester_id):
                    return pending
                log.warning("Roller %s is not authorized for character %s",
                            roller, event.character_id)
        else:
            candidates = [
                pending for character in world.characters_controlled_by(roller)
                if (pending := self.checks.for_character(character.id)) is not None
            ]
            if len(candidates) == 1:
                event.character_id = candidates[0].character_id
                return candidates[0]
            if candidates:
                log.debug("Bare roll from %s is ambiguous (%d open checks)",
                          roller, len(candidates))

        pending = self.checks.for_player(roller)
        if pending is not None and pending.character_id and not event.character_id:
            event.character_id = pending.character_id
        return pending

    def handle_roll(self, event: RollEvent) -> bool:
        """Feed a roll event through matching and resolution."""
        pending = self.match(event)
        if pending is None:
            log.debug("No pending check for player %s / character %s, roll dropped",
                      event.player_id, event.character_id)
            return False
        return self._apply(pending, event, event.player_id)

    def _apply(self, pending: PendingCheck, event: RollEvent, roller: str) -> bool:
        check = pending.check
        if check is None:
            self.session.outbox.warning(
                f"Roll from {pending.character_name or roller} arrived before a check was chosen")
            return False

        reason = skill_mismatch(check.skill, event.skill_label)
        if reason is not None:
            self._escalate_mismatch(pending, event, roller, reason)
            return False

        if pending.character_id and event.character_id and pending.character_id != event.character_id:
            self.session.outbox.warning(
                f"Roll from character {event.character_id} but the check is for "
                f"{pending.character_name} ({pending.character_id}). Ignoring.")
            return False

        mode = pending.mode
        if event.is_dual:
            return self._resolve(pending, combine_dice(mode, event), roller,
                                 rolls=(event.dice[0], event.dice[1]))

        if mode is not AdvantageMode.NORMAL and pending.first_roll is None:
            pending.first_roll = event.total
            pending.stage = CheckStage.AWAITING_SECOND_ROLL
            self.session.outbox.broadcast(
                f"🎲 {pending.character_name or 'Player'} - Waiting For Second Roll",
                ("First Roll", event.total), ("Note", f"Please roll again for {mode.value}"))
            return True

        if mode is AdvantageMode.ADVANTAGE:
            final = max(pending.first_roll, event.total)
        elif mode is AdvantageMode.DISADVANTAGE:
            final = min(pending.first_roll, event.total)
        else:
            final = event.total
        rolls = (pending.first_roll, event.total) if mode is not AdvantageMode.NORMAL else None
        return self._resolve(pending, final, roller, rolls=rolls)

    # ── Mismatch reconciliation ──────────────────────────────────

    def _escalate_mismatch(self, pending: PendingCheck, event: RollEvent, roller: str,
                           reason: str) -> None:
        value = combine_dice(pending.mode, event) if event.is_dual else event.total
        pending.mismatch = Mismatch(
            expected=pending.check.skill, rolled=event.skill_label or FLAT_ROLL, reason=reason,
            value=value, roll_type=event.roll_type, combined=event.is_dual, roller_id=roller)
        pending.stage = CheckStage.AWAITING_MISMATCH_DECISION
        trap = self.session.world.get_token(pending.trap_id)
        roll_type = (event.roll_type or AdvantageMode.NORMAL).value
        msg = Message("⚠️ Roll Skill Mismatch!", kind="warning")
        msg.add("Character", pending.character_name or "Unknown")
        msg.add("Trap", trap.display_name if trap else pending.trap_id)
        msg.add("Expected", pending.mismatch.expected)
        msg.add("Rolled", pending.mismatch.rolled)
        msg.add("Reason", reason)
        msg.actions += [
            MenuAction.trapsystem("✅ Accept Roll", "resolvemismatch", pending.entity_id,
                                  pending.trap_id, "accept", value, roll_type,
                                  "1" if event.is_dual else "0"),
            MenuAction.trapsystem("❌ Reject & Reroll", "resolvemismatch", pending.entity_id,
                                  pending.trap_id, "reject"),
            MenuAction.trapsystem("ℹ️ Show Trap Status", "status", pending.trap_id),
        ]
        self.session.outbox.send(msg)
        log.warning("Skill mismatch on trap %s: %s", pending.trap_id, reason)

    def resolve_mismatch(self, entity_id: str, trap_id: str, action: str,
                         value: int | None = None, roll_type: str | None = None,
                         combined: bool | None = None) -> bool:
        pending = self.checks.find(entity_id)
        trap = self.session.world.get_token(trap_id)
        if pending is None or trap is None:
            raise CommandError("Could not resolve mismatch: missing pending check or trap token.")
        mismatch = pending.mismatch
        roller = (mismatch.roller_id if mismatch else None) or pending.requester_id
        action = action.lower()

        if action == "reject":
            pending.first_roll = None
            pending.mismatch = None
            pending.stage = CheckStage.AWAITING_ROLL
            self.session.outbox.gm("❌ GM rejected the roll. Asking for a new one.")
            self._roll_prompt(trap, pending)
            return False
        if action != "accept":
            raise CommandError(f"Unknown mismatch action: {action}")

        if value is None and mismatch is not None:
            value = mismatch.value
        if value is None:
            raise CommandError("No roll value to accept!")
        if combined is None:
            combined = bool(mismatch and mismatch.combined)
        if pending.advantage is None:
            pending.advantage = AdvantageMode.parse(roll_type)
        pending.mismatch = None
        pending.stage = (CheckStage.AWAITING_SECOND_ROLL if pending.first_roll is not None
                         else CheckStage.AWAITING_ROLL)
        self.session.outbox.gm("✅ GM accepted the roll. Processing result...")
        if combined:
            return self._resolve(pending, value, roller)
        event = RollEvent(player_id=roller, total=value, character_id=pending.character_id,
                          skill_label=pending.check.skill)
        return self._apply(pending, event, roller)

    # ── Resolution ───────────────────────────────────────────────

    def _resolve(self, pending: PendingCheck, final: int, roller: str,
                 rolls: tuple[int, int] | None = None) -> bool:
        check = pending.check
        if check.dc is None:
            self.session.outbox.warning(
                f"{check.skill} check has no DC. Set a DC before rolling.")
            return False
        trap = self.session.world.get_token(pending.trap_id)
        try:
            if trap is None:
                self.session.outbox.error(f"Trap {pending.trap_id} no longer exists")
                return False
            d = self.traps.require(trap)
            success = final >= check.dc
            reveal = self.session.reveal_dc
            msg = Message(f"{self._icon(check.skill)} {pending.character_name or 'Player'} - "
                          f"{check.skill} Result", audience=Audience.ALL)
            msg.add("Token", trap.display_name)
            if rolls is not None:
                msg.add("First Roll", rolls[0])
                msg.add("Second Roll", rolls[1])
                msg.add("Roll Type", pending.mode.value.capitalize())
            msg.add("Final Roll", final)
            if pending.requester_id in reveal or roller in reveal:
                msg.add("DC", check.dc)
            msg.add("Result", "✅ Success!" if success else "❌ Failure!")
            self.session.outbox.send(msg)
            log.info("Check %s on trap %s: %d vs DC %d -> %s", check.skill, trap.id,
                     final, check.dc, "success" if success else "failure")

            ref = d.success if success else d.failure_ref
            if ref:
                self.session.run_effect(ref)
            self.traps.consume(trap, require_armed=False)
            return True
        finally:
            self.checks.discard(pending)
            self.session.reveal_dc.discard(pending.requester_id)
            self.session.reveal_dc.discard(roller)
