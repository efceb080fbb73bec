"""
Cell and marker tables derived from a computed trajectory (inputs for heatmaps).
"""

from typing import Optional, Sequence

import numpy as np
import pandas as pd
from anndata import AnnData

from ..preprocessing.store import active_cells


def _markers(adata: AnnData, markers: Optional[Sequence[str]]) -> list:
    in_use = list(adata.uns.get("markers", adata.var_names))
    if markers is None:
        return in_use
    return [m for m in markers if m in in_use]


def _expression_frame(adata: AnnData, cells, markers) -> pd.DataFrame:
    X = adata[cells, markers].X
    if hasattr(X, "toarray"):
        X = X.toarray()
    return pd.DataFrame(np.asarray(X, dtype=float), index=adata.obs_names[cells], columns=markers)


def select_trajectory_cells(
    adata: AnnData,
    cutoff: float = 0.0,
    markers: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Expression of the cells lying on the trajectory, ordered by pseudotime.

    Parameters
    ----------
    adata : AnnData
        Expression store with a computed trajectory.
    cutoff : float
        Keep cells with ``traj_value_log`` strictly above this value.
    markers : sequence of str, optional
        Markers to return; defaults to the in-use markers.

    Returns
    -------
    pd.DataFrame
        Cells x markers, plus ``pseudotime`` and ``branch_id`` columns.
    """
    obs = adata.obs
    if "traj_value_log" not in obs or obs["traj_value_log"].sum() == 0:
        raise ValueError("No trajectory found. Run run_trajectory first.")

    keep = np.flatnonzero(obs["traj_value_log"].to_numpy() > cutoff)
    keep = keep[np.argsort(obs["pseudotime"].to_numpy()[keep], kind="mergesort")]
    frame = _expression_frame(adata, keep, _markers(adata, markers))
    frame["pseudotime"] = obs["pseudotime"].to_numpy()[keep]
    frame["branch_id"] = obs["branch_id"].iloc[keep].to_numpy()
    print(f"Selected {len(frame)} trajectory cells with traj_value_log > {cutoff}.")
    return frame


def branch_expression(adata: AnnData, markers: Optional[Sequence[str]] = None) -> pd.DataFrame:
    """Mean marker expression of the cells assigned to each branch."""
    if "branch_id" not in adata.obs or adata.obs["branch_id"].isna().all():
        raise ValueError("No branch assignment found. Run run_trajectory first.")
    cells = np.flatnonzero(adata.obs["branch_id"].notna().to_numpy())
    frame = _expression_frame(adata, cells, _markers(adata, markers))
    branch = adata.obs["branch_id"].iloc[cells].astype(int).to_numpy()
    return frame.groupby(branch).mean().rename_axis("branch_id")


def cluster_expression(
    adata: AnnData,
    cluster_key: str,
    markers: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """
    Per-cluster summary of the active cells: mean marker expression, cell count,
    mean pseudotime and the share of each stage.
    """
    if cluster_key not in adata.obs:
        raise ValueError(f"'{cluster_key}' not found in adata.obs")
    cells = active_cells(adata)
    obs = adata.obs.iloc[cells]
    frame = _expression_frame(adata, cells, _markers(adata, markers))
    labels = obs[cluster_key].to_numpy()

    summary = frame.groupby(labels).mean()
    summary["n_cells"] = pd.Series(labels).value_counts()
    summary["pseudotime"] = obs["pseudotime"].groupby(labels).mean().to_numpy()

    stages = pd.crosstab(labels, obs["stage"].astype(str).to_numpy(), normalize="index")
    stages.columns = [f"{s}.percent" for s in stages.columns]
    return summary.join(stages).rename_axis(cluster_key)
