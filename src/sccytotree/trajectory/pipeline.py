"""
End-to-end trajectory inference: kNN graph -> backbone network -> random walks -> aggregation.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from anndata import AnnData

from ..config import TrajectoryConfig
from ..errors import NoLeafCells, NoRootCells, PipelineCancelled
from ..preprocessing.store import active_cells
from ..tools.neighbors import NeighborGraph, run_knn
from .aggregate import TrajectoryResult, aggregate_walks, write_trajectory
from .backbone import BackboneNetwork, build_backbone
from .walk import run_walks


@dataclass(frozen=True)
class TrajectoryRun:
    neighbors: NeighborGraph
    backbone: BackboneNetwork
    result: TrajectoryResult


def _checkpoint(cancel_event, phase: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise PipelineCancelled(f"Trajectory inference cancelled after {phase}.")


def run_trajectory(
    adata: AnnData,
    cluster_key: str,
    config: Optional[TrajectoryConfig] = None,
    use_rep: Optional[str] = None,
    given_mat: Optional[np.ndarray] = None,
    cancel_event=None,
    **options,
) -> TrajectoryRun:
    """
    Infer pseudotime and trajectory membership of the active cells.

    Root and leaf cells must be flagged beforehand (:func:`define_root_cells`,
    :func:`define_leaf_cells`) and ``cluster_key`` must hold an external
    clustering. Results land in ``adata.obs['pseudotime', 'traj_value',
    'traj_value_log', 'branch_id']`` and the coverage summary plus backbone
    tables in ``adata.uns['trajectory']``.

    Parameters
    ----------
    adata : AnnData
        Expression store.
    cluster_key : str
        Column in ``adata.obs`` with cluster ids.
    config : TrajectoryConfig, optional
        Defaults to ``TrajectoryConfig()``.
    use_rep, given_mat
        Alternative geometry for the kNN graph, see :func:`run_knn`.
    cancel_event : threading.Event, optional
        Checked after every phase; when set, :class:`PipelineCancelled` is raised
        and ``adata`` is left untouched.
    **options
        Overrides of individual config fields, e.g. ``knn=15``. Unknown names are rejected.

    Returns
    -------
    TrajectoryRun
    """
    config = config or TrajectoryConfig()
    if options:
        config = config.replace(**options)

    cells = active_cells(adata)
    if not adata.obs["is_root"].to_numpy(dtype=bool)[cells].any():
        raise NoRootCells("No active cells flagged as root. Use define_root_cells first.")
    if not adata.obs["is_leaf"].to_numpy(dtype=bool)[cells].any():
        raise NoLeafCells("No active cells flagged as leaf. Use define_leaf_cells first.")

    neighbors = run_knn(adata, knn=config.knn, use_rep=use_rep, given_mat=given_mat)
    _checkpoint(cancel_event, "the neighbor graph")

    backbone = build_backbone(adata, cluster_key, neighbor_graph=neighbors, n_extra_edges=config.n_extra_edges)
    _checkpoint(cancel_event, "the backbone network")

    obs = adata.obs.iloc[neighbors.cells]
    records = run_walks(
        neighbors,
        backbone,
        obs[cluster_key].to_numpy(),
        obs["is_root"].to_numpy(dtype=bool),
        obs["is_leaf"].to_numpy(dtype=bool),
        config,
    )
    _checkpoint(cancel_event, "the random walks")

    result = aggregate_walks(
        records,
        neighbors.n_cells,
        forward_weight=config.forward_weight,
        decimals=config.decimals,
    )
    _checkpoint(cancel_event, "aggregation")

    write_trajectory(adata, result, neighbors.cells)
    adata.uns["trajectory"]["backbone_nodes"] = backbone.nodes_frame()
    adata.uns["trajectory"]["backbone_edges"] = backbone.edges_frame()
    adata.uns["trajectory"]["cluster_key"] = cluster_key

    return TrajectoryRun(neighbors=neighbors, backbone=backbone, result=result)
