"""Outbound presentation: messages, action menus and the outbox that delivers them."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

log = logging.getLogger(__name__)

COMMAND_PREFIX = "!trapsystem"


class Audience(str, Enum):
    GM = "gm"
    ALL = "all"


@dataclass(slots=True)
class MenuAction:
    """A clickable button; ``command`` is the full chat command it sends."""

    label: str
    command: str

    @classmethod
    def trapsystem(cls, label: str, *args: Any) -> MenuAction:
        return cls(label, " ".join([COMMAND_PREFIX, *(str(a) for a in args)]))


@dataclass(slots=True)
class Message:
    title: str
    fields: list[tuple[str, str]] = field(default_factory=list)
    actions: list[MenuAction] = field(default_factory=list)
    audience: Audience = Audience.GM
    kind: str = "info"  # info | warning | error | effect

    def add(self, label: str, value: Any) -> Message:
        self.fields.append((label, str(value)))
        return self

    def field_value(self, label: str) -> str | None:
        for name, value in self.fields:
            if name == label:
                return value
        return None

    def has_action(self, command_fragment: str) -> bool:
        return any(command_fragment in a.command for a in self.actions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "fields": [{"label": k, "value": v} for k, v in self.fields],
            "actions": [{"label": a.label, "command": a.command} for a in self.actions],
            "audience": self.audience.value,
            "kind": self.kind,
        }


Listener = Callable[[Message], None]


class Outbox:
    """Collects outbound messages and fans them out to subscribers."""

    def __init__(self, history: int = 500) -> None:
        self.messages: deque[Message] = deque(maxlen=history)
        self._listeners: list[Listener] = []

    def send(self, message: Message) -> Message:
        self.messages.append(message)
        log.debug("[%s] %s %s", message.audience.value, message.title, message.fields)
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                log.exception("Outbox listener failed for %r", message.title)
        return message

    def gm(self, title: str, *fields: tuple[str, Any], actions: list[MenuAction] | None = None,
           kind: str = "info") -> Message:
        return self.send(Message(title, [(k, str(v)) for k, v in fields],
                                 list(actions or []), Audience.GM, kind))

    def broadcast(self, title: str, *fields: tuple[str, Any],
                  actions: list[MenuAction] | None = None, kind: str = "info") -> Message:
        return self.send(Message(title, [(k, str(v)) for k, v in fields],
                                 list(actions or []), Audience.ALL, kind))

    def error(self, text: str) -> Message:
        return self.gm("❌ Error", ("", text), kind="error")

    def warning(self, text: str) -> Message:
        return self.gm("⚠️ Warning", ("", text), kind="warning")

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def last(self, title_fragment: str = "") -> Message | None:
        for message in reversed(self.messages):
            if title_fragment in message.title:
                return message
        return None

    def clear(self) -> None:
        self.messages.clear()
        self._listeners.clear()
