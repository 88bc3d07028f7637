"""Command dispatcher for ``!trapsystem <action> args...`` chat commands."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field

from trapsys.errors import CommandError
from trapsys.locks import LockRegistry
from trapsys.presentation import COMMAND_PREFIX, MenuAction, Message
from trapsys.resolution import SkillCheckPipeline
from trapsys.session import TrapSession
from trapsys.traps import TrapStateMachine
from trapsys.world import Token

log = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r'[^\s"]+|"([^"]*)"')
_BOOL_WORDS = {"true": True, "yes": True, "false": False, "no": False}


def tokenize(text: str) -> list[str]:
    """Split on whitespace, keeping double-quoted phrases together (quotes dropped)."""
    return [m.group(1) if m.group(1) is not None else m.group(0)
            for m in _TOKEN_RE.finditer(text)]


def parse_check_args(args: list[str]) -> tuple[list[tuple[str, str]], bool]:
    """Split ``Skill words DC [Skill words DC] [true|false]`` into checks + movement flag."""
    rest = list(args)
    movement = True
    if rest and rest[-1].lower() in _BOOL_WORDS:
        movement = _BOOL_WORDS[rest.pop().lower()]
    checks: list[tuple[str, str]] = []
    words: list[str] = []
    for arg in rest:
        if arg.lstrip("-").isdigit():
            skill = " ".join(words)
            if skill and skill.lower() != "none":
                checks.append((skill, arg))
            words = []
        else:
            words.append(arg)
    leftover = " ".join(words)
    if leftover and leftover.lower() != "none":
        raise CommandError(f'Check "{leftover}" needs a DC!')
    return checks, movement


@dataclass(slots=True)
class CommandContext:
    player_id: str
    selected: list[str] = field(default_factory=list)


Handler = Callable[[CommandContext, list[str]], None]

HELP_LINES: list[tuple[str, str]] = [
    ("setup", "uses main [option2] [option3] [center|grid|none]"),
    ("setupinteraction", 'uses success failure ["Skill" DC ...] [true|false]'),
    ("toggle / status", "[trap id]"),
    ("enable / disable / toggletriggers", "pause or resume every trap"),
    ("trigger", "manual trigger panel for the selected trap"),
    ("showmenu", "interaction menu for the selected trap"),
    ("allowmovement", "token id | selected"),
    ("allowall", "release every held token"),
    ("ignoretraps", "toggle immunity on the selected token"),
]


class CommandDispatcher:
    def __init__(self, session: TrapSession, traps: TrapStateMachine,
                 locks: LockRegistry, pipeline: SkillCheckPipeline) -> None:
        self.session = session
        self.traps = traps
        self.locks = locks
        self.pipeline = pipeline
        self.handlers: dict[str, Handler] = {}
        self._register_core_commands()

    # ── Registry ─────────────────────────────────────────────────

    def register(self, name: str, handler: Handler) -> None:
        self.handlers[name] = handler

    def _register_core_commands(self) -> None:
        self.register("help", self.cmd_help)
        self.register("setup", self.cmd_setup)
        self.register("setupinteraction", self.cmd_setup_interaction)
        self.register("toggle", self.cmd_toggle)
        self.register("status", self.cmd_status)
        self.register("enable", lambda ctx, args: self.traps.enable_triggers())
        self.register("disable", lambda ctx, args: self.traps.disable_triggers())
        self.register("toggletriggers", lambda ctx, args: self.traps.toggle_triggers())
        self.register("trigger", self.cmd_trigger)
        self.register("manualtrigger", self.cmd_manual_trigger)
        self.register("ignoretraps", self.cmd_ignore_traps)
        self.register("allowmovement", self.cmd_allow_movement)
        self.register("allowall", lambda ctx, args: self.locks.allow_all())
        self.register("marktriggered", self.cmd_mark_triggered)
        self.register("showmenu", self.cmd_show_menu)
        self.register("interact", self.cmd_interact)
        self.register("allow", self.cmd_allow)
        self.register("fail", self.cmd_fail)
        self.register("selectcharacter", self.cmd_select_character)
        self.register("check", self.cmd_check)
        self.register("customcheck", self.cmd_custom_check)
        self.register("setcheck", self.cmd_set_check)
        self.register("setdc", self.cmd_set_dc)
        self.register("rollcheck", self.cmd_roll_check)
        self.register("displaydc", self.cmd_display_dc)
        self.register("resolvemismatch", self.cmd_resolve_mismatch)

    # ── Dispatch ─────────────────────────────────────────────────

    def dispatch(self, text: str, ctx: CommandContext) -> bool:
        """Run a chat command. Returns False if it is not a trap system command."""
        parts = tokenize(text)
        if not parts or parts[0] != COMMAND_PREFIX:
            return False
        if len(parts) == 1:
            self.cmd_help(ctx, [])
            return True
        action, args = parts[1].lower(), parts[2:]
        handler = self.handlers.get(action)
        if handler is None:
            self.session.outbox.error(
                f"Unknown command: {action}. Use {COMMAND_PREFIX} help for command list")
            return True
        log.debug("Command %s %s from %s", action, args, ctx.player_id)
        try:
            handler(ctx, args)
        except CommandError as e:
            log.info("Command %s failed: %s", action, e)
            self.session.outbox.error(str(e))
        return True

    # ── Lookups ──────────────────────────────────────────────────

    def _token(self, token_id: str | None) -> Token:
        token = self.session.world.get_token(token_id) if token_id else None
        if token is None:
            raise CommandError("Invalid trap token ID!")
        return token

    def _selected(self, ctx: CommandContext) -> Token:
        if not ctx.selected:
            raise CommandError("No token selected!")
        return self._token(ctx.selected[0])

    def _target(self, ctx: CommandContext, args: list[str]) -> Token:
        """Explicit token id argument, else the selected token."""
        if args:
            return self._token(args[0])
        if ctx.selected:
            return self._token(ctx.selected[0])
        raise CommandError("No token selected or provided!")

    @staticmethod
    def _need(args: list[str], count: int, action: str) -> None:
        if len(args) < count:
            raise CommandError(f"Missing parameters for {action}!")

    # ── Setup and control ────────────────────────────────────────

    def cmd_help(self, ctx: CommandContext, args: list[str]) -> None:
        msg = Message("Trap System Help")
        for name, usage in HELP_LINES:
            msg.add(name, usage)
        msg.actions += [
            MenuAction.trapsystem("✅ Enable", "enable"),
            MenuAction.trapsystem("❌ Disable", "disable"),
            MenuAction.trapsystem("👯 Allow All", "allowall"),
        ]
        self.session.outbox.send(msg)

    def cmd_setup(self, ctx: CommandContext, args: list[str]) -> None:
        self._need(args, 2, "setup")
        token = self._selected(ctx)
        self.traps.setup_standard(token, args[0], args[1],
                                  args[2] if len(args) > 2 else None,
                                  args[3] if len(args) > 3 else None,
                                  args[4] if len(args) > 4 else None)

    def cmd_setup_interaction(self, ctx: CommandContext, args: list[str]) -> None:
        self._need(args, 3, "setup interaction trap")
        token = self._selected(ctx)
        checks, movement = parse_check_args(args[3:])
        self.traps.setup_interaction(token, args[0], args[1], args[2], checks, movement)

    def cmd_toggle(self, ctx: CommandContext, args: list[str]) -> None:
        self.traps.toggle_armed(self._target(ctx, args))

    def cmd_status(self, ctx: CommandContext, args: list[str]) -> None:
        self.traps.status(self._target(ctx, args))

    def cmd_trigger(self, ctx: CommandContext, args: list[str]) -> None:
        self.traps.manual_trigger(self._target(ctx, args))

    def cmd_manual_trigger(self, ctx: CommandContext, args: list[str]) -> None:
        self._need(args, 2, "manualtrigger")
        self.traps.manual_effect(self._token(args[0]), args[1])

    def cmd_ignore_traps(self, ctx: CommandContext, args: list[str]) -> None:
        self.traps.toggle_immunity(self._target(ctx, args))

    def cmd_show_menu(self, ctx: CommandContext, args: list[str]) -> None:
        self.traps.interaction_menu(self._target(ctx, args))

    # ── Locks ────────────────────────────────────────────────────

    def cmd_allow_movement(self, ctx: CommandContext, args: list[str]) -> None:
        if not args:
            raise CommandError("No token specified!")
        entity_id = args[0]
        if entity_id == "selected":
            entity_id = self._selected(ctx).id
        if not self.locks.release(entity_id):
            self.session.outbox.gm("ℹ️ Token is not locked", ("Token", entity_id))

    def cmd_mark_triggered(self, ctx: CommandContext, args: list[str]) -> None:
        self._need(args, 2, "marktriggered")
        self.locks.mark_triggered(args[0], args[1], args[2] if len(args) > 2 else None)

    # ── Interaction flow ─────────────────────────────────────────

    @staticmethod
    def _requester(ctx: CommandContext, args: list[str], index: int) -> str:
        return args[index] if len(args) > index else ctx.player_id

    def cmd_interact(self, ctx: CommandContext, args: list[str]) -> None:
        self._need(args, 2, "interact")
        self.pipeline.interact(self._token(args[0]), args[1], self._requester(ctx, args, 2))

    def cmd_allow(self, ctx: CommandContext, args: list[str]) -> None:
        self._need(args, 1, "allow")
        self.pipeline.allow_action(self._token(args[0]), self._requester(ctx, args, 1))

    def cmd_fail(self, ctx: CommandContext, args: list[str]) -> None:
        self._need(args, 1, "fail")
        self.pipeline.fail_action(self._token(args[0]), self._requester(ctx, args, 1))

    def cmd_select_character(self, ctx: CommandContext, args: list[str]) -> None:
        self._need(args, 2, "selectcharacter")
        self.pipeline.select_character(self._token(args[0]), args[1],
                                       self._requester(ctx, args, 2))

    def cmd_check(self, ctx: CommandContext, args: list[str]) -> None:
        self._need(args, 2, "check")
        self.pipeline.request_check(self._token(args[0]), args[1],
                                    self._requester(ctx, args, 2))

    def cmd_custom_check(self, ctx: CommandContext, args: list[str]) -> None:
        self._need(args, 1, "customcheck")
        self.pipeline.custom_check(self._token(args[0]), self._requester(ctx, args, 1))

    def cmd_set_check(self, ctx: CommandContext, args: list[str]) -> None:
        self._need(args, 2, "setcheck")
        self.pipeline.set_check(self._token(args[0]), args[1], self._requester(ctx, args, 2))

    def cmd_set_dc(self, ctx: CommandContext, args: list[str]) -> None:
        self._need(args, 2, "setdc")
        self.pipeline.set_dc(self._token(args[0]), args[1], self._requester(ctx, args, 2),
                             args[3] if len(args) > 3 else None)

    def cmd_roll_check(self, ctx: CommandContext, args: list[str]) -> None:
        self._need(args, 3, "rollcheck")
        self.pipeline.roll_check(self._token(args[0]), args[1], args[2],
                                 self._requester(ctx, args, 3))

    def cmd_display_dc(self, ctx: CommandContext, args: list[str]) -> None:
        self._need(args, 2, "displaydc")
        self.pipeline.display_dc(self._token(args[0]), args[1], self._requester(ctx, args, 2))

    def cmd_resolve_mismatch(self, ctx: CommandContext, args: list[str]) -> None:
        self._need(args, 3, "resolvemismatch")
        value = None
        if len(args) > 3:
            try:
                value = int(args[3])
            except ValueError:
                raise CommandError("Roll value must be a number!") from None
        roll_type = args[4] if len(args) > 4 else None
        combined = args[5] == "1" if len(args) > 5 else None
        self.pipeline.resolve_mismatch(args[0], args[1], args[2], value, roll_type, combined)
