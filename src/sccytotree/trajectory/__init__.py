from .backbone import BackboneNetwork, Branch, build_backbone, compute_centroids
from .walk import WalkContext, WalkRecord, WalkState, Walker, assign_branch, run_walks
from .aggregate import TrajectoryResult, aggregate_walks, write_trajectory
from .pipeline import TrajectoryRun, run_trajectory
from .selection import select_trajectory_cells, branch_expression, cluster_expression

__all__ = [
    "BackboneNetwork",
    "Branch",
    "build_backbone",
    "compute_centroids",
    "WalkContext",
    "WalkRecord",
    "WalkState",
    "Walker",
    "assign_branch",
    "run_walks",
    "TrajectoryResult",
    "aggregate_walks",
    "write_trajectory",
    "TrajectoryRun",
    "run_trajectory",
    "select_trajectory_cells",
    "branch_expression",
    "cluster_expression",
]
