"""
sccytotree: trajectory and pseudotime inference for flow and mass cytometry data.
"""

__version__ = "0.1.0"

from . import preprocessing as pp
from . import tools as tl
from . import trajectory
from . import datasets
from .config import TrajectoryConfig, load_json_config
from .errors import (
    TrajectoryError,
    InsufficientCells,
    DimensionMismatch,
    NoRootCells,
    NoLeafCells,
    DisconnectedBackbone,
    InvalidNeighborCount,
    PipelineCancelled,
    UncoveredCellsWarning,
)

__all__ = [
    "pp",
    "tl",
    "trajectory",
    "datasets",
    "TrajectoryConfig",
    "load_json_config",
    "TrajectoryError",
    "InsufficientCells",
    "DimensionMismatch",
    "NoRootCells",
    "NoLeafCells",
    "DisconnectedBackbone",
    "InvalidNeighborCount",
    "PipelineCancelled",
    "UncoveredCellsWarning",
]
