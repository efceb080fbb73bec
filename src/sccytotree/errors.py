"""
Exceptions and warnings raised by the trajectory core.

Every fatal error subclasses ``ValueError`` so existing callers that guard
pipeline calls with ``except ValueError`` keep working.
"""


class TrajectoryError(ValueError):
    """Base class for fatal precondition failures."""


class InsufficientCells(TrajectoryError):
    pass


class DimensionMismatch(TrajectoryError):
    pass


class NoRootCells(TrajectoryError):
    pass


class NoLeafCells(TrajectoryError):
    pass


class DisconnectedBackbone(TrajectoryError):
    pass


class InvalidNeighborCount(TrajectoryError):
    pass


class PipelineCancelled(RuntimeError):
    """Raised at a phase checkpoint once the caller asked to stop."""


class UncoveredCellsWarning(UserWarning):
    """Some active cells were never visited by any walk."""
