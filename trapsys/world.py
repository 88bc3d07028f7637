"""World model: in-memory host objects (pages, tokens, characters, players, macros)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

log = logging.getLogger(__name__)

OBJECTS_LAYER = "objects"


# ── Host objects ─────────────────────────────────────────────────

@dataclass(slots=True)
class Page:
    id: str
    name: str = ""
    snapping_increment: float | None = None  # grid size in pixels


@dataclass(slots=True)
class Player:
    id: str
    name: str = ""
    is_gm: bool = False


@dataclass(slots=True)
class Character:
    id: str
    name: str
    controlled_by: list[str] = field(default_factory=list)  # player ids

    def is_controlled_by(self, player_id: str) -> bool:
        return player_id in self.controlled_by


@dataclass(slots=True)
class Macro:
    name: str
    action: str = ""


@dataclass(slots=True)
class Token:
    id: str
    page_id: str
    left: float  # pixel x of centre
    top: float   # pixel y of centre
    width: float = 70.0
    height: float = 70.0
    layer: str = OBJECTS_LAYER
    name: str = ""
    notes: str = ""  # GM notes, holds the trap descriptor
    status_markers: str = ""
    represents: str | None = None  # character id
    # Visual state written by the trap system
    aura_color: str | None = None
    aura_radius: float | None = None
    bar_value: int | None = None
    bar_max: int | None = None

    @property
    def center(self) -> tuple[float, float]:
        return (self.left, self.top)

    @property
    def display_name(self) -> str:
        return self.name or "Unknown Token"

    def has_marker(self, marker: str) -> bool:
        return marker in self.status_markers.split(",")

    def toggle_marker(self, marker: str) -> bool:
        """Flip a status marker. Returns True if it is now present."""
        markers = [m for m in self.status_markers.split(",") if m]
        if marker in markers:
            markers.remove(marker)
            present = False
        else:
            markers.append(marker)
            present = True
        self.status_markers = ",".join(markers)
        return present


# ── World registry ───────────────────────────────────────────────

class World:
    """Registry of everything the host exposes to the trap system."""

    def __init__(self) -> None:
        self.pages: dict[str, Page] = {}
        self.tokens: dict[str, Token] = {}
        self.characters: dict[str, Character] = {}
        self.players: dict[str, Player] = {}
        self.macros: dict[str, Macro] = {}

    # ── Lookups ──────────────────────────────────────────────────

    def get_page(self, page_id: str) -> Page | None:
        return self.pages.get(page_id)

    def get_token(self, token_id: str) -> Token | None:
        return self.tokens.get(token_id)

    def get_character(self, char_id: str) -> Character | None:
        return self.characters.get(char_id)

    def get_player(self, player_id: str) -> Player | None:
        return self.players.get(player_id)

    def find_macro(self, name: str) -> Macro | None:
        return self.macros.get(name)

    def tokens_on_page(self, page_id: str) -> list[Token]:
        return [t for t in self.tokens.values() if t.page_id == page_id]

    def is_gm(self, player_id: str | None) -> bool:
        player = self.players.get(player_id) if player_id else None
        return bool(player and player.is_gm)

    def player_characters(self) -> list[Character]:
        """Characters controlled by at least one non-GM player."""
        return [
            c for c in self.characters.values()
            if any(pid and not self.is_gm(pid) for pid in c.controlled_by)
        ]

    def characters_controlled_by(self, player_id: str) -> list[Character]:
        """Player characters the given player can roll for."""
        return [c for c in self.player_characters() if c.is_controlled_by(player_id)]

    # ── Mutation ─────────────────────────────────────────────────

    def add(self, obj: Page | Token | Character | Player | Macro) -> None:
        if isinstance(obj, Page):
            self.pages[obj.id] = obj
        elif isinstance(obj, Token):
            self.tokens[obj.id] = obj
        elif isinstance(obj, Character):
            self.characters[obj.id] = obj
        elif isinstance(obj, Player):
            self.players[obj.id] = obj
        elif isinstance(obj, Macro):
            self.macros[obj.name] = obj
        else:
            raise TypeError(f"Unsupported world object: {type(obj).__name__}")

    def set_position(self, token: Token, x: float, y: float) -> None:
        """Move a token without raising a movement event."""
        token.left = x
        token.top = y

    # ── Snapshot loading ─────────────────────────────────────────

    def load_snapshot(self, data: dict[str, Any]) -> None:
        """Populate the world from a plain mapping (YAML/JSON snapshot)."""
        for raw in data.get("pages", []):
            self.add(Page(**raw))
        for raw in data.get("players", []):
            self.add(Player(**raw))
        for raw in data.get("characters", []):
            self.add(Character(**raw))
        for raw in data.get("macros", []):
            self.add(Macro(**raw))
        for raw in data.get("tokens", []):
            self.add(Token(**raw))
        log.info("World snapshot loaded: %d pages, %d tokens, %d characters, %d macros",
                 len(self.pages), len(self.tokens), len(self.characters), len(self.macros))
