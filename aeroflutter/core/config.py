"""Layered YAML configuration for flutter analyses."""
from __future__ import annotations

import copy
import logging
import os
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "app": {"name": "AeroFlutter", "version": "0.1.0"},
    "logging": {"dir": "data/logs", "level": "INFO"},
    "flutter": {
        "v_lower": 500.0,
        "v_upper": 2500.0,
        "n_divisions": 20,
        "tolerance": 1.0e-6,
        "max_bisection_iters": 40,
        "crossing_policy": "first_bracket",
        "min_alignment": 0.1,
        "n_workers": 1,
        "output_file": None,
    },
    "structure": {
        "length": 10.0,
        "n_elements": 50,
        "n_modes": 3,
        "modal_shift": 0.0,
        "boundary_conditions": "simply-supported",
    },
    "parameters": {
        "thy": 0.06,
        "thz": 1.0,
        "rho": 2.8e3,
        "E": 72.0e9,
        "nu": 0.33,
        "mach": 3.0,
        "rho_air": 1.05,
        "gamma": 1.4,
        "alpha0": 0.0,
        "piston_order": 1,
    },
}


def _merge_into(base: dict, overrides: dict) -> None:
    for key, value in overrides.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _merge_into(current, value)
        else:
            base[key] = value


class AppConfig:
    """Built-in defaults overlaid with an optional YAML file.

    Keys are addressed with dots, e.g. ``config.get("flutter.v_lower")``.
    A missing file leaves the defaults in place.

    Raises
    ------
    ValueError
        If the file does not hold a mapping at its top level.
    """

    def __init__(self, config_path: Optional[str] = None):
        self._data: dict = copy.deepcopy(DEFAULT_CONFIG)
        self.source_path: Optional[str] = None
        if config_path:
            self.load(config_path)

    def load(self, path: str) -> None:
        """Merge the YAML file at ``path`` over the current values."""
        if not os.path.exists(path):
            logger.warning("Config file %s not found; keeping current values", path)
            return
        with open(path, "r", encoding="utf-8") as f:
            overrides = yaml.safe_load(f) or {}
        if not isinstance(overrides, dict):
            raise ValueError(
                f"Config file {path} must hold a mapping, got {type(overrides).__name__}"
            )
        _merge_into(self._data, overrides)
        self.source_path = path
        logger.debug("Loaded config overrides from %s: %s", path, sorted(overrides))

    def get(self, dotted_key: str, default: Any = None) -> Any:
        node: Any = self._data
        for key in dotted_key.split("."):
            if not isinstance(node, dict) or key not in node:
                return default
            node = node[key]
        return node

    def set(self, dotted_key: str, value: Any) -> None:
        *parents, leaf = dotted_key.split(".")
        node = self._data
        for key in parents:
            child = node.get(key)
            if not isinstance(child, dict):
                child = node[key] = {}
            node = child
        node[leaf] = value

    def section(self, name: str) -> dict:
        """Return a copy of one top-level section (empty dict if absent)."""
        value = self._data.get(name, {})
        return dict(value) if isinstance(value, dict) else {}

    @property
    def data(self) -> dict:
        return self._data
