"""Trap descriptor grammar: decode, encode and in-place patching of GM-notes text.

A trap is any token whose notes contain a ``{!traptrigger ...}`` block::

    {!traptrigger uses: 2/3 armed: on type: interaction
     primary: Name: "Dart Volley" Macro: DartVolley
     options: [Name: "Poison" Macro: PoisonCloud]
     position: (1,0) success: Disarmed failure: DartVolley
     checks: "Perception:15,Sleight of Hand:12" {noMovementTrigger}}

Every field is optional and decoded independently: a malformed field falls
back to its default and is reported as a warning, it never aborts the parse.
Text inside the block that matches no field is kept in ``extra`` and written
back by ``encode_descriptor``. ``patch_notes`` rewrites only the uses/armed
fields and leaves every other character of the notes untouched.
"""

from __future__ import annotations

import html
import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from urllib.parse import unquote

from trapsys.errors import DescriptorError

log = logging.getLogger(__name__)

TRAP_MARKER = "!traptrigger"
_BLOCK_OPEN = "{" + TRAP_MARKER
NO_MOVEMENT_TAG = "{noMovementTrigger}"
IGNORE_TAG = "{ignoretraps}"
FLAT_ROLL = "Flat Roll"


class TrapKind(str, Enum):
    STANDARD = "standard"
    INTERACTION = "interaction"


class PlacementMode(str, Enum):
    CENTER = "center"
    FIXED_CELL = "cell"


@dataclass(frozen=True, slots=True)
class Action:
    """A named effect; ``ref`` is what the effect invoker looks up."""

    name: str
    ref: str


@dataclass(frozen=True, slots=True)
class SkillCheck:
    skill: str
    dc: int | None


@dataclass(frozen=True, slots=True)
class Placement:
    mode: PlacementMode
    x: int = 0
    y: int = 0

    @classmethod
    def center(cls) -> Placement:
        return cls(PlacementMode.CENTER)

    @classmethod
    def cell(cls, x: int, y: int) -> Placement:
        return cls(PlacementMode.FIXED_CELL, x, y)


# ── Behaviour variants (resolved once per parse) ─────────────────

@dataclass(frozen=True, slots=True)
class StandardBehavior:
    primary: Action
    options: tuple[Action, ...]

    @property
    def effects(self) -> tuple[Action, ...]:
        return (self.primary, *self.options)


@dataclass(frozen=True, slots=True)
class InteractionBehavior:
    checks: tuple[SkillCheck, ...]
    success: str | None
    failure: str | None


TrapBehavior = StandardBehavior | InteractionBehavior

DEFAULT_PRIMARY = Action("Primary", "")


@dataclass(frozen=True, slots=True)
class TrapDescriptor:
    current_uses: int = 0
    max_uses: int = 0
    is_armed: bool = True
    primary: Action = DEFAULT_PRIMARY
    options: tuple[Action, ...] = ()
    placement: Placement | None = None
    kind: TrapKind = TrapKind.STANDARD
    checks: tuple[SkillCheck, ...] = ()
    success: str | None = None
    failure: str | None = None
    movement_trigger_enabled: bool = True
    extra: str = ""
    behavior: TrapBehavior = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.kind is TrapKind.INTERACTION:
            behavior: TrapBehavior = InteractionBehavior(
                self.checks, self.success, self.failure or self.primary.ref or None)
        else:
            behavior = StandardBehavior(self.primary, self.options)
        object.__setattr__(self, "behavior", behavior)

    @property
    def is_active(self) -> bool:
        """Armed with uses left (ignores the global trigger toggle)."""
        return self.is_armed and self.current_uses > 0

    @property
    def is_interaction(self) -> bool:
        return self.kind is TrapKind.INTERACTION

    @property
    def failure_ref(self) -> str | None:
        return self.failure or self.primary.ref or None


# ── Decoding ─────────────────────────────────────────────────────

_KEY_RE = {
    name: re.compile(rf"\b{name}:", re.IGNORECASE)
    for name in ("uses", "armed", "primary", "options", "position",
                 "type", "checks", "success", "failure")
}
_USES_RE = re.compile(r"uses:\s*(\d+)\s*/\s*(\d+)", re.IGNORECASE)
_ARMED_RE = re.compile(r"armed:\s*(on|off)\b", re.IGNORECASE)
_PRIMARY_RE = re.compile(r'primary:\s*Name:\s*"([^"]*)"\s*Macro:\s*([^\s\]}]+)', re.IGNORECASE)
_OPTIONS_RE = re.compile(r"options:\s*\[([^\]]*)\]", re.IGNORECASE)
_OPTION_ITEM_RE = re.compile(r'Name:\s*"([^"]*)"\s*Macro:\s*([^\s\]]+)', re.IGNORECASE)
_POSITION_RE = re.compile(r"position:\s*(?:(center)\b|\(\s*(\d+)\s*,\s*(\d+)\s*\))", re.IGNORECASE)
_TYPE_RE = re.compile(r"type:\s*(\w+)", re.IGNORECASE)
_CHECKS_RE = re.compile(r'checks:\s*"([^"]*)"', re.IGNORECASE)
_SUCCESS_RE = re.compile(r"success:\s*([^\s{}]+)", re.IGNORECASE)
_FAILURE_RE = re.compile(r"failure:\s*([^\s{}]+)", re.IGNORECASE)
_LOCK_TAG_RE = re.compile(r"\{!traplocked\s*(?:trap:\s*([^\s}]+))?[^}]*\}")
_WS_RE = re.compile(r"\s+")


def decode_notes(notes: str | None) -> str:
    """Undo the host's percent-encoding and HTML escaping of notes text."""
    if not notes:
        return ""
    return html.unescape(unquote(notes))


def is_trap_notes(notes: str | None) -> bool:
    return TRAP_MARKER in decode_notes(notes)


def _block_span(text: str) -> tuple[int, int] | None:
    """(body_start, body_end) of the trap block, tolerant of a missing close."""
    start = text.find(_BLOCK_OPEN)
    if start < 0:
        bare = text.find(TRAP_MARKER)
        if bare < 0:
            return None
        return bare + len(TRAP_MARKER), len(text)
    depth = 0
    for i in range(start, len(text)):
        ch = text[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return start + len(_BLOCK_OPEN), i
    return start + len(_BLOCK_OPEN), len(text)


class _FieldReader:
    """Matches fields in a block body while tracking consumed spans and warnings."""

    def __init__(self, body: str) -> None:
        self.body = body
        self.spans: list[tuple[int, int]] = []
        self.warnings: list[str] = []

    def match(self, key: str, pattern: re.Pattern[str]) -> re.Match[str] | None:
        m = pattern.search(self.body)
        if m:
            self.spans.append(m.span())
            return m
        if _KEY_RE[key].search(self.body):
            self.warnings.append(f"malformed '{key}' field, using default")
        return None

    def consume(self, literal: str) -> bool:
        idx = self.body.find(literal)
        if idx < 0:
            return False
        self.spans.append((idx, idx + len(literal)))
        return True

    def residue(self) -> str:
        parts: list[str] = []
        pos = 0
        for start, end in sorted(self.spans):
            if start >= pos:
                parts.append(self.body[pos:start])
                pos = end
            else:
                pos = max(pos, end)
        parts.append(self.body[pos:])
        return _WS_RE.sub(" ", " ".join(parts)).strip()


def _parse_checks(raw: str, warnings: list[str]) -> tuple[SkillCheck, ...]:
    checks: list[SkillCheck] = []
    for entry in raw.split(","):
        if not entry.strip():
            continue
        skill, _, dc = entry.partition(":")
        skill, dc = skill.strip(), dc.strip()
        if not skill or not dc.lstrip("-").isdigit():
            warnings.append(f"ignoring malformed check entry {entry.strip()!r}")
            continue
        checks.append(SkillCheck(skill, int(dc)))
    return tuple(checks)


def parse_with_warnings(notes: str | None) -> tuple[TrapDescriptor | None, list[str]]:
    """Decode a descriptor; returns (None, []) when the notes carry no trap marker."""
    text = decode_notes(notes)
    span = _block_span(text)
    if span is None:
        return None, []
    reader = _FieldReader(text[span[0]:span[1]])
    warnings = reader.warnings
    values: dict[str, object] = {}

    if m := reader.match("uses", _USES_RE):
        current, maximum = int(m.group(1)), int(m.group(2))
        if current > maximum:
            warnings.append(f"uses {current}/{maximum} exceed maximum, clamping")
            current = maximum
        values["current_uses"], values["max_uses"] = current, maximum
    if m := reader.match("armed", _ARMED_RE):
        values["is_armed"] = m.group(1).lower() == "on"
    if m := reader.match("primary", _PRIMARY_RE):
        values["primary"] = Action(m.group(1), m.group(2))
    if m := reader.match("options", _OPTIONS_RE):
        values["options"] = tuple(
            Action(name, ref) for name, ref in _OPTION_ITEM_RE.findall(m.group(1)))
    if m := reader.match("position", _POSITION_RE):
        if m.group(1):
            values["placement"] = Placement.center()
        else:
            values["placement"] = Placement.cell(int(m.group(2)), int(m.group(3)))
    if m := reader.match("type", _TYPE_RE):
        try:
            values["kind"] = TrapKind(m.group(1).lower())
        except ValueError:
            warnings.append(f"unknown trap type {m.group(1)!r}, using standard")
    if m := reader.match("checks", _CHECKS_RE):
        values["checks"] = _parse_checks(m.group(1), warnings)
    if m := reader.match("success", _SUCCESS_RE):
        values["success"] = m.group(1)
    if m := reader.match("failure", _FAILURE_RE):
        values["failure"] = m.group(1)
    values["movement_trigger_enabled"] = not reader.consume(NO_MOVEMENT_TAG)
    values["extra"] = reader.residue()

    descriptor = TrapDescriptor(**values)  # type: ignore[arg-type]
    if descriptor.current_uses == 0 and descriptor.is_armed:
        descriptor = replace(descriptor, is_armed=False)
    return descriptor, warnings


def parse_descriptor(notes: str | None, *, source: str = "") -> TrapDescriptor | None:
    """Decode a descriptor, logging recovered field errors."""
    descriptor, warnings = parse_with_warnings(notes)
    for warning in warnings:
        log.warning("Trap descriptor %s: %s", source or "?", warning)
    return descriptor


# ── Encoding ─────────────────────────────────────────────────────

def _encode_action(action: Action) -> str:
    return f'Name: "{action.name}" Macro: {action.ref}'


def encode_descriptor(d: TrapDescriptor) -> str:
    """Canonical block text for a descriptor."""
    parts = [_BLOCK_OPEN, f"uses: {d.current_uses}/{d.max_uses}",
             f"armed: {'on' if d.is_armed else 'off'}"]
    if d.kind is not TrapKind.STANDARD:
        parts.append(f"type: {d.kind.value}")
    if d.primary.ref:
        parts.append(f"primary: {_encode_action(d.primary)}")
    if d.options:
        parts.append("options: [" + " ".join(_encode_action(o) for o in d.options) + "]")
    if d.placement is not None:
        if d.placement.mode is PlacementMode.CENTER:
            parts.append("position: center")
        else:
            parts.append(f"position: ({d.placement.x},{d.placement.y})")
    if d.success:
        parts.append(f"success: {d.success}")
    if d.failure:
        parts.append(f"failure: {d.failure}")
    if d.checks:
        entries = ",".join(f"{c.skill}:{c.dc}" for c in d.checks if c.dc is not None)
        parts.append(f'checks: "{entries}"')
    if not d.movement_trigger_enabled:
        parts.append(NO_MOVEMENT_TAG)
    if d.extra:
        parts.append(d.extra)
    return " ".join(parts) + "}"


def write_descriptor(notes: str | None, descriptor: TrapDescriptor) -> str:
    """Replace the trap block in ``notes`` (or append one), keeping other text."""
    text = decode_notes(notes)
    block = encode_descriptor(descriptor)
    span = _block_span(text)
    if span is None:
        return f"{text} {block}" if text.strip() else block
    start = text.find(_BLOCK_OPEN)
    if start < 0:
        start = text.find(TRAP_MARKER)
    end = span[1] + 1 if span[1] < len(text) else span[1]
    return text[:start] + block + text[end:]


def patch_notes(notes: str | None, *, uses: tuple[int, int] | None = None,
                armed: bool | None = None) -> str:
    """Rewrite only the uses/armed fields of the trap block inside ``notes``."""
    text = decode_notes(notes)
    span = _block_span(text)
    if span is None:
        raise DescriptorError("notes carry no trap descriptor")
    start, end = span
    body = text[start:end]
    if uses is not None:
        value = f"uses: {uses[0]}/{uses[1]}"
        body, n = _USES_RE.subn(value, body, count=1)
        if not n:
            body = f" {value}" + body
    if armed is not None:
        value = f"armed: {'on' if armed else 'off'}"
        body, n = _ARMED_RE.subn(value, body, count=1)
        if not n:
            m = _USES_RE.search(body)
            at = m.end() if m else 0
            body = f"{body[:at]} {value}{body[at:]}"
    return text[:start] + body + text[end:]


# ── Tags on non-trap tokens ──────────────────────────────────────

def has_ignore_tag(notes: str | None) -> bool:
    return IGNORE_TAG in decode_notes(notes)


def toggle_ignore_tag(notes: str | None) -> tuple[str, bool]:
    """Add or remove the immunity tag. Returns (new_notes, tag_present)."""
    text = decode_notes(notes)
    if IGNORE_TAG in text:
        return text.replace(IGNORE_TAG, "", 1), False
    return (f"{text} {IGNORE_TAG}" if text else IGNORE_TAG), True


def strip_ignore_tag(notes: str | None) -> str:
    return decode_notes(notes).replace(IGNORE_TAG, "", 1)


def lock_tag_trap(notes: str | None) -> str | None:
    m = _LOCK_TAG_RE.search(decode_notes(notes))
    return m.group(1) if m else None


def set_lock_tag(notes: str | None, trap_id: str) -> str:
    text = decode_notes(notes)
    tag = f"{{!traplocked trap: {trap_id}}}"
    if _LOCK_TAG_RE.search(text):
        return _LOCK_TAG_RE.sub(lambda _m: tag, text, count=1)
    return text + tag


def clear_lock_tag(notes: str | None) -> str:
    return _LOCK_TAG_RE.sub("", decode_notes(notes), count=1)
