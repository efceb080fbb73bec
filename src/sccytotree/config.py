"""
Configuration for trajectory and pseudotime computation.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Mapping

from .errors import InvalidNeighborCount


@dataclass(frozen=True)
class TrajectoryConfig:
    """
    Every option recognised by :func:`sccytotree.trajectory.run_trajectory`.

    Attributes
    ----------
    knn : int
        Number of nearest neighbors per cell.
    max_steps : int
        Step budget of a single walk.
    walks_per_seed : int
        Walks started from each root cell (and each leaf cell for the backward pass).
    backward : bool
        Whether to run the leaf -> root pass.
    random_state : int
        Seed of the stochastic phase. Identical seeds give identical results.
    n_extra_edges : int
        Low-weight non-tree edges added to the backbone after the spanning tree.
    backward_penalty : float
        Weight multiplier in (0, 1] for a move against the backbone orientation.
    stuck_weight : float
        Weight in (0, 1] of a walk that ended with no candidate neighbor.
    forward_weight : float
        Share of the forward estimate when merging forward and backward pseudotime.
    decimals : int
        Rounding of the log-scaled trajectory value.
    n_jobs : int
        Parallel walk workers.
    """

    knn: int = 30
    max_steps: int = 500
    walks_per_seed: int = 10
    backward: bool = True
    random_state: int = 42
    n_extra_edges: int = 0
    backward_penalty: float = 0.1
    stuck_weight: float = 0.25
    forward_weight: float = 0.5
    decimals: int = 3
    n_jobs: int = 1

    def __post_init__(self):
        if int(self.knn) < 1:
            raise InvalidNeighborCount(f"knn must be >= 1, got {self.knn}")
        if self.max_steps < 1:
            raise ValueError(f"max_steps must be >= 1, got {self.max_steps}")
        if self.walks_per_seed < 1:
            raise ValueError(f"walks_per_seed must be >= 1, got {self.walks_per_seed}")
        if self.n_extra_edges < 0:
            raise ValueError(f"n_extra_edges must be >= 0, got {self.n_extra_edges}")
        if not 0.0 < self.backward_penalty <= 1.0:
            raise ValueError(f"backward_penalty must be in (0, 1], got {self.backward_penalty}")
        if not 0.0 < self.stuck_weight <= 1.0:
            raise ValueError(f"stuck_weight must be in (0, 1], got {self.stuck_weight}")
        if not 0.0 <= self.forward_weight <= 1.0:
            raise ValueError(f"forward_weight must be in [0, 1], got {self.forward_weight}")
        if self.decimals < 0:
            raise ValueError(f"decimals must be >= 0, got {self.decimals}")
        if self.n_jobs == 0:
            raise ValueError("n_jobs must be non-zero")

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> "TrajectoryConfig":
        """Build a config, refusing keys that are not options."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ValueError(
                f"Unrecognised trajectory option(s): {', '.join(unknown)}. "
                f"Valid options are: {', '.join(sorted(known))}."
            )
        return cls(**dict(options))

    def replace(self, **overrides) -> "TrajectoryConfig":
        merged = asdict(self)
        merged.update(overrides)
        return type(self).from_dict(merged)


def load_json_config(path: str | Path) -> TrajectoryConfig:
    """Read a :class:`TrajectoryConfig` from a JSON object file."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': expected JSON object, got {type(data).__name__}."
        )
    return TrajectoryConfig.from_dict(data)
