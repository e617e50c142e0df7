from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional

from .engines import (
    AnisotropicCartesianMatchEngine,
    EqualsMatchEngine,
    ErrorCartesianMatchEngine,
    IsotropicCartesianMatchEngine,
    MatchEngine,
    SkyMatchEngine,
)
from .errors import MatchConfigError
from .modes import InternalAction, JoinType, MultiMode, PairMode

ENGINE_NAMES = ("cartesian", "anisotropic", "error", "sky", "exact")


@dataclass
class MatchConfig:
    """Configuration for a matching run."""

    # Engine selection
    engine: str = "cartesian"  # cartesian | anisotropic | error | sky | exact
    ndim: int = 2
    # Match radius (cartesian), rough mean error (error), max separation in degrees (sky).
    scale: float = 1.0
    # Per-axis maximum separations (anisotropic only).
    scales: Optional[List[float]] = None
    # Grid cell size as a multiple of the scale; tuning only, never changes results.
    bin_factor: float = 1.0

    # Post-processing
    pair_mode: str = "best"  # all | best | best1 | best2 | optimal
    join: str = "1and2"  # 1and2 | 1or2 | all1 | all2 | 1not2 | 2not1 | 1xor2
    multi_mode: str = "all"  # all | 1and1
    internal_action: str = "identify"  # identify | keep0 | keep1 | wide

    # Execution
    n_workers: int = 1
    chunk_size: int = 10_000
    # Drop rows of a pair match that fall outside the partner table's match bounds.
    use_bounds: bool = True

    def validate(self) -> "MatchConfig":
        name = str(self.engine).strip().lower()
        if name not in ENGINE_NAMES:
            raise MatchConfigError(f"Unknown engine {self.engine!r}; expected one of {ENGINE_NAMES}.")
        if isinstance(self.ndim, bool) or int(self.ndim) != self.ndim or self.ndim < 1:
            raise MatchConfigError(f"ndim must be a positive integer, got {self.ndim!r}.")
        _check_scale("scale", self.scale)
        _check_scale("bin_factor", self.bin_factor)
        if name == "sky" and float(self.scale) > 180.0:
            raise MatchConfigError(f"Sky max separation must not exceed 180 degrees, got {self.scale!r}.")
        if self.scales is not None:
            if name == "anisotropic" and len(self.scales) != int(self.ndim):
                raise MatchConfigError(f"Expected {self.ndim} per-axis scales, got {len(self.scales)}.")
            for i, s in enumerate(self.scales):
                _check_scale(f"scales[{i}]", s)
        if int(self.n_workers) < 1:
            raise MatchConfigError(f"n_workers must be >= 1, got {self.n_workers!r}.")
        if int(self.chunk_size) < 1:
            raise MatchConfigError(f"chunk_size must be >= 1, got {self.chunk_size!r}.")
        PairMode.parse(self.pair_mode)
        JoinType.parse(self.join)
        MultiMode.parse(self.multi_mode)
        InternalAction.parse(self.internal_action)
        return self


def _check_scale(name: str, value: object) -> None:
    try:
        v = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise MatchConfigError(f"{name} must be a number, got {value!r}.") from None
    if not (math.isfinite(v) and v > 0):
        raise MatchConfigError(f"{name} must be a positive finite number, got {value!r}.")


def build_engine(cfg: MatchConfig) -> MatchEngine:
    cfg.validate()
    name = str(cfg.engine).strip().lower()
    if name == "cartesian":
        return IsotropicCartesianMatchEngine(cfg.ndim, cfg.scale, cfg.bin_factor)
    if name == "anisotropic":
        scales = cfg.scales if cfg.scales else [cfg.scale] * int(cfg.ndim)
        return AnisotropicCartesianMatchEngine(scales, cfg.bin_factor)
    if name == "error":
        return ErrorCartesianMatchEngine(cfg.ndim, cfg.scale, cfg.bin_factor)
    if name == "sky":
        return SkyMatchEngine(cfg.scale, cfg.bin_factor)
    return EqualsMatchEngine()


__all__ = ["ENGINE_NAMES", "MatchConfig", "build_engine"]
