"""Effect invocation: named actions resolved against the world's macros."""

from __future__ import annotations

import logging
from collections import deque
from typing import Protocol, runtime_checkable

from trapsys.presentation import Audience, Message, Outbox
from trapsys.world import World

log = logging.getLogger(__name__)


@runtime_checkable
class EffectInvoker(Protocol):
    def exists(self, ref: str) -> bool: ...

    def invoke(self, ref: str) -> bool: ...


def _macro_name(ref: str) -> str:
    return ref.strip().lstrip("#")


class MacroInvoker:
    """Runs a macro by emitting each non-blank line of its action as chat."""

    def __init__(self, world: World, outbox: Outbox, history: int = 100) -> None:
        self.world = world
        self.outbox = outbox
        self.invoked: deque[str] = deque(maxlen=history)  # recent effect names

    def exists(self, ref: str) -> bool:
        return self.world.find_macro(_macro_name(ref)) is not None

    def invoke(self, ref: str) -> bool:
        """Returns False (and logs) when the macro is missing or empty."""
        name = _macro_name(ref)
        macro = self.world.find_macro(name)
        if macro is None:
            log.warning("Macro not found: %s", name)
            return False
        lines = [line.strip() for line in macro.action.split("\n") if line.strip()]
        if not lines:
            log.warning("Macro has no action: %s", name)
            return False
        for line in lines:
            self.outbox.send(Message(name, [("", line)], audience=Audience.ALL, kind="effect"))
        self.invoked.append(name)
        log.info("Effect invoked: %s (%d lines)", name, len(lines))
        return True
