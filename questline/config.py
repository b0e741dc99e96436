"""
questline.config — YAML Configuration Loader
=============================================

Reads ``config.yaml`` for **infrastructure-level** settings (service name,
port, completion threshold, leaderboard size).  The rank table used at
award time lives in the ``settings`` database table so it can change without
a redeploy; the optional ``ranks`` list here only seeds that table on first
startup.

Usage::

    from questline.config import load_config

    cfg = load_config()          # reads $QUESTLINE_CONFIG or ./config.yaml
    print(cfg.service_name)      # "Questline"
    print(cfg.completion_threshold)  # 100
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class QuestlineConfig:
    """Immutable configuration loaded from ``config.yaml``.

    ``ranks`` is a list of ``(name, min_xp)`` pairs used only to seed the
    ``ranks.thresholds`` setting; afterwards the DB copy is authoritative.
    """

    service_name: str
    api_port: int

    # Progress a CompletionRecord must reach before it may be completed
    completion_threshold: int = 100

    # Default number of rows returned by GET /leaderboard
    leaderboard_limit: int = 50

    ranks: tuple[tuple[str, int], ...] = field(default_factory=tuple)


DEFAULT_CONFIG_PATH = "config.yaml"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path | None = None) -> QuestlineConfig:
    """Read *path* and return a :class:`QuestlineConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.  Defaults to the
        ``QUESTLINE_CONFIG`` environment variable, then ``config.yaml`` in
        the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    ValueError
        If ``completion_threshold`` is outside 1–100.
    """
    config_path = Path(path or os.getenv("QUESTLINE_CONFIG") or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    threshold = int(raw.get("completion_threshold", 100))
    if not 1 <= threshold <= 100:
        raise ValueError(
            f"completion_threshold must be between 1 and 100, got {threshold}"
        )

    ranks = tuple(
        (str(entry["name"]), int(entry["min_xp"]))
        for entry in raw.get("ranks") or []
    )

    return QuestlineConfig(
        service_name=raw["service_name"],
        api_port=int(raw["api_port"]),
        completion_threshold=threshold,
        leaderboard_limit=int(raw.get("leaderboard_limit", 50)),
        ranks=ranks,
    )


def default_config() -> QuestlineConfig:
    """Config used when no YAML file is present (tests, one-off scripts)."""
    return QuestlineConfig(service_name="Questline", api_port=8000)
