#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Triangulation Configuration Module
==================================

Knobs for feature triangulation, with defaults tuned for normalized image
coordinates, and YAML loading.

Configuration Structure:
------------------------
The YAML config file contains a `triangulation` section:
- optimizer: Levenberg-Marquardt damping, iteration caps, convergence
- gate: parallax, motion and residual thresholds
- pair_selection: which two frames seed the linear initial guess

Example:
--------
    triangulation:
      pair_selection: first_last
      optimizer:
        initial_damping: 1.0e-3
        max_iterations: 10
      gate:
        min_parallax_deg: 0.3
        max_reprojection_rms: 0.1
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional

import yaml

# ========================================
# Debug verbosity control
# ========================================
VERBOSE_DEBUG = False  # Per-iteration optimizer output

PAIR_SELECTION_STRATEGIES = ("first_last", "max_baseline")

_FLOAT_FIELDS = (
    "initial_damping", "damping_decrease", "damping_increase", "min_damping",
    "max_damping", "cost_tolerance", "estimation_precision", "huber_epsilon",
    "min_parallax_deg", "max_reprojection_rms", "translation_threshold",
)
_INT_FIELDS = ("max_iterations", "max_inner_iterations")


def _coerce_float(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def _coerce_int(name: str, value: Any) -> int:
    number = _coerce_float(name, value)
    if not number.is_integer():
        raise ValueError(f"{name} must be an integer, got {value!r}")
    return int(number)


@dataclass(frozen=True)
class TriangulationConfig:
    """Feature triangulation settings. Immutable so it can be shared by worker threads."""

    # Levenberg-Marquardt
    initial_damping: float = 1e-3
    damping_decrease: float = 10.0
    damping_increase: float = 10.0
    min_damping: float = 1e-10
    max_damping: float = 1e12
    max_iterations: int = 10
    max_inner_iterations: int = 10
    cost_tolerance: float = 1e-9
    estimation_precision: float = 5e-7
    huber_epsilon: Optional[float] = None

    # Validity gate
    min_parallax_deg: float = 0.3
    max_reprojection_rms: float = 0.1
    translation_threshold: float = 0.0

    # Initial guess
    pair_selection: str = "first_last"

    def __post_init__(self):
        # PyYAML leaves exponents without a dot or sign (1e-3, 1e12) as strings
        for name in _FLOAT_FIELDS:
            value = getattr(self, name)
            if name == "huber_epsilon" and value is None:
                continue
            object.__setattr__(self, name, _coerce_float(name, value))
        for name in _INT_FIELDS:
            object.__setattr__(self, name, _coerce_int(name, getattr(self, name)))

        for name in ("initial_damping", "min_damping", "max_damping",
                     "cost_tolerance", "estimation_precision", "max_reprojection_rms"):
            if not getattr(self, name) > 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)!r}")
        for name in ("damping_decrease", "damping_increase"):
            if not getattr(self, name) > 1.0:
                raise ValueError(f"{name} must be > 1, got {getattr(self, name)!r}")
        for name in ("max_iterations", "max_inner_iterations"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)!r}")
        if self.min_damping > self.max_damping:
            raise ValueError("min_damping must not exceed max_damping")
        if self.min_parallax_deg < 0 or self.translation_threshold < 0:
            raise ValueError("gate thresholds must be non-negative")
        if self.huber_epsilon is not None and not self.huber_epsilon > 0:
            raise ValueError(f"huber_epsilon must be positive or None, got {self.huber_epsilon!r}")
        if self.pair_selection not in PAIR_SELECTION_STRATEGIES:
            raise ValueError(
                f"pair_selection must be one of {PAIR_SELECTION_STRATEGIES}, got {self.pair_selection!r}"
            )

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "TriangulationConfig":
        """Build a config from a flat mapping; unknown keys are an error."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values or {}) - known)
        if unknown:
            raise ValueError(f"unknown triangulation config keys: {unknown}")
        return cls(**(values or {}))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def replace(self, **overrides) -> "TriangulationConfig":
        merged = self.to_dict()
        merged.update(overrides)
        return TriangulationConfig.from_dict(merged)


def config_from_yaml_dict(config: Dict[str, Any]) -> TriangulationConfig:
    """
    Flatten the `triangulation` section of a parsed YAML document.

    Args:
        config: Parsed YAML document (top level)

    Returns:
        TriangulationConfig with defaults for anything not given
    """
    section = (config or {}).get('triangulation', {}) or {}
    result = {}

    # ========================================
    # Optimizer (Levenberg-Marquardt)
    # ========================================
    for key, val in (section.get('optimizer', {}) or {}).items():
        result[key] = val

    # ========================================
    # Validity gate
    # ========================================
    for key, val in (section.get('gate', {}) or {}).items():
        result[key] = val

    for key, val in section.items():
        if key not in ('optimizer', 'gate'):
            result[key] = val

    return TriangulationConfig.from_dict(result)


def load_config(config_path: str) -> TriangulationConfig:
    """
    Load YAML configuration file into a TriangulationConfig.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        TriangulationConfig

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If config file is malformed
        ValueError: If a value is out of range or a key is unknown

    Example:
        >>> config = load_config("configs/feature_triangulation.yaml")
        >>> print(f"Max iterations: {config.max_iterations}")
    """
    with open(config_path, 'r') as f:
        config = yaml.safe_load(f)
    return config_from_yaml_dict(config)
