"""Configuration: YAML file → TrapConfig with built-in defaults."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

log = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR / "config" / "trapsys.yaml"

DEFAULT_SKILL_ICONS: dict[str, str] = {
    "Flat Roll": "🎲",
    "Acrobatics": "🤸",
    "Animal Handling": "🐎",
    "Arcana": "✨",
    "Athletics": "💪",
    "Deception": "🎭",
    "History": "📚",
    "Insight": "👁️",
    "Intimidation": "😠",
    "Investigation": "🔍",
    "Medicine": "⚕️",
    "Nature": "🌿",
    "Perception": "👀",
    "Performance": "🎪",
    "Persuasion": "💬",
    "Religion": "⛪",
    "Sleight of Hand": "🎯",
    "Stealth": "👥",
    "Survival": "🏕️",
}


@dataclass(slots=True)
class TrapConfig:
    # engine
    default_grid_size: float = 70.0
    min_movement_factor: float = 0.2
    overlap_threshold: float = 5.0
    path_margin_factor: float = 0.05
    relocation_delay: float = 0.5
    search_radius: int = 5
    auto_invoke_standard: bool = True
    # visuals
    armed_color: str = "#00ff00"
    paused_color: str = "#ffa500"
    disarmed_color: str = "#ff0000"
    aura_size: float = 2.0
    immunity_marker: str = "blue"
    # skills
    skill_icons: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SKILL_ICONS))
    # api
    api_enabled: bool = True
    api_host: str = "127.0.0.1"
    api_port: int = 8600
    # logging
    log_level: str = "INFO"
    # world
    world_snapshot: str | None = None

    @classmethod
    def from_mapping(cls, data: dict[str, Any] | None) -> TrapConfig:
        """Build a config from a parsed YAML mapping; missing keys keep defaults."""
        data = data or {}
        cfg = cls()
        engine = data.get("engine", {}) or {}
        visuals = data.get("visuals", {}) or {}
        api = data.get("api", {}) or {}

        cfg.default_grid_size = float(engine.get("default_grid_size", cfg.default_grid_size))
        cfg.min_movement_factor = float(engine.get("min_movement_factor", cfg.min_movement_factor))
        cfg.overlap_threshold = float(engine.get("overlap_threshold", cfg.overlap_threshold))
        cfg.path_margin_factor = float(engine.get("path_margin_factor", cfg.path_margin_factor))
        cfg.relocation_delay = float(engine.get("relocation_delay", cfg.relocation_delay))
        cfg.search_radius = int(engine.get("search_radius", cfg.search_radius))
        cfg.auto_invoke_standard = bool(engine.get("auto_invoke_standard", cfg.auto_invoke_standard))

        colors = visuals.get("colors", {}) or {}
        cfg.armed_color = colors.get("armed", cfg.armed_color)
        cfg.paused_color = colors.get("paused", cfg.paused_color)
        cfg.disarmed_color = colors.get("disarmed", cfg.disarmed_color)
        cfg.aura_size = float(visuals.get("aura_size", cfg.aura_size))
        cfg.immunity_marker = visuals.get("immunity_marker", cfg.immunity_marker)

        skills = data.get("skills")
        if skills:
            cfg.skill_icons = {str(k): str(v) for k, v in skills.items()}

        cfg.api_enabled = bool(api.get("enabled", cfg.api_enabled))
        cfg.api_host = api.get("host", cfg.api_host)
        cfg.api_port = int(api.get("port", cfg.api_port))

        cfg.log_level = str((data.get("logging", {}) or {}).get("level", cfg.log_level)).upper()
        cfg.world_snapshot = (data.get("world", {}) or {}).get("snapshot") or None
        return cfg

    def skill_icon(self, skill: str) -> str:
        return self.skill_icons.get(skill, "🎲")


def config_path() -> Path:
    return Path(os.environ.get("TRAPSYS_CONFIG", DEFAULT_CONFIG_PATH))


def load_config(path: str | Path | None = None) -> TrapConfig:
    path = Path(path) if path else config_path()
    if not path.exists():
        log.warning("Config file %s not found, using defaults", path)
        return TrapConfig()
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    log.info("Config loaded from %s", path)
    return TrapConfig.from_mapping(data)
