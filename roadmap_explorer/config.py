"""
Configuration for Roadmap Explorer.

Settings are grouped per component and can be saved to / applied from
a JSON file, the same way the CLIs expose ``--save-config`` and
``--config``.
"""

import json
import logging
import os
from typing import Optional, Tuple

from pydantic import BaseModel, Field, ValidationError

from roadmap_explorer.errors import ConfigError

logger = logging.getLogger(__name__)


class LayoutConfig(BaseModel):
    """Geometry of the layout pass."""

    depth_step: float = Field(default=250.0, gt=0)
    node_height: float = Field(default=120.0, gt=0)
    # Minimum height reserved by an expanded parent; ``None`` means one slot.
    min_expanded_height: Optional[float] = Field(default=None, gt=0)

    @property
    def expanded_floor(self) -> float:
        if self.min_expanded_height is None:
            return self.node_height
        return self.min_expanded_height


class ExpansionConfig(BaseModel):
    # Nodes shallower than this depth start expanded.
    default_expanded_depth: int = Field(default=2, ge=0)


class TrackerConfig(BaseModel):
    """Generation progress tracker settings."""

    idle_grace_seconds: float = Field(default=1.0, ge=0)
    benign_error_substrings: Tuple[str, ...] = ("Searching", "Checking")
    stall_timeout_seconds: Optional[float] = Field(default=None, gt=0)


class ExplorerConfig(BaseModel):
    layout: LayoutConfig = Field(default_factory=LayoutConfig)
    expansion: ExpansionConfig = Field(default_factory=ExpansionConfig)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)


# =========================================================================
# JSON persistence
# =========================================================================


def load_config(path: str) -> ExplorerConfig:
    """Load an :class:`ExplorerConfig` from a JSON file.

    Missing sections fall back to defaults. Unreadable or invalid files
    raise :class:`ConfigError`.
    """
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot read config {path}: {exc}") from exc

    try:
        config = ExplorerConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config {path}: {exc}") from exc

    logger.info("Config loaded from %s", path)
    return config


def save_config(config: ExplorerConfig, path: str) -> None:
    """Write *config* to *path* as indented JSON."""
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(config.model_dump(mode="json"), fh, indent=2)
    logger.info("Config saved → %s", path)
