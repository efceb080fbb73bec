"""
Expression store construction and per-cell flags (root, leaf, downsampling).
"""

import re
import warnings
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData

from ..errors import DimensionMismatch

TRAJECTORY_COLUMNS = ["pseudotime", "traj_value", "traj_value_log", "branch_id"]


def log10_transform(values, decimals: int = 3) -> np.ndarray:
    """
    Log-scale values the way the expression store does: ``round(log10(x + 1), decimals)``.

    Parameters
    ----------
    values : array-like
        Non-negative values.
    decimals : int
        Number of decimals kept after the transform.

    Returns
    -------
    np.ndarray
    """
    values = np.asarray(values, dtype=float)
    return np.round(np.log10(values + 1.0), decimals)


def _stage_from_cell_name(name: str) -> str:
    # "sample_D0.fcs_12" -> "sample_D0"
    return re.split(r"\.fcs", str(name), maxsplit=1, flags=re.IGNORECASE)[0]


def create_expression_store(
    matrix: Union[np.ndarray, pd.DataFrame],
    markers: Optional[Sequence[str]] = None,
    meta: Optional[pd.DataFrame] = None,
) -> AnnData:
    """
    Build the AnnData object every trajectory step reads from.

    Parameters
    ----------
    matrix : np.ndarray or pd.DataFrame
        Log-scaled intensities, cells x markers. DataFrame columns are used as marker
        names and the index as cell ids when ``meta`` is not given.
    markers : sequence of str, optional
        Markers used for neighbor and centroid geometry. Defaults to all columns.
    meta : pd.DataFrame, optional
        Per-cell metadata with at least ``cell`` and ``stage`` columns.

    Returns
    -------
    AnnData
        Store with ``obs`` holding stage, flags and zeroed trajectory columns.
    """
    if isinstance(matrix, pd.DataFrame):
        columns = [str(c) for c in matrix.columns]
        row_names = [str(i) for i in matrix.index]
        X = matrix.to_numpy(dtype=float)
    else:
        X = np.asarray(matrix, dtype=float)
        if X.ndim != 2:
            raise ValueError(f"Expression matrix must be 2-dimensional, got shape {X.shape}")
        columns = [f"marker_{j}" for j in range(X.shape[1])]
        row_names = [f"cell_{i}" for i in range(X.shape[0])]

    print(f"Number of cells in processing: {X.shape[0]}")

    if meta is None:
        meta = pd.DataFrame({
            "cell": row_names,
            "stage": [_stage_from_cell_name(c) for c in row_names],
        })
    else:
        if not {"cell", "stage"}.issubset(meta.columns):
            raise ValueError("cell and stage information must be provided in meta.")
        if len(meta) != X.shape[0]:
            raise DimensionMismatch(
                f"meta has {len(meta)} rows but the expression matrix has {X.shape[0]} cells."
            )
        meta = meta.reset_index(drop=True).copy()

    cell_ids = meta["cell"].astype(str)
    if cell_ids.duplicated().any():
        dup = cell_ids[cell_ids.duplicated()].unique()[:3]
        raise ValueError(f"Cell identifiers must be unique, duplicated: {list(dup)}")

    if markers is None:
        markers = columns
    markers = [str(m) for m in markers]
    missing = [m for m in markers if m not in columns]
    if missing:
        warnings.warn(f"Markers {missing} are not columns of the expression matrix and will be removed.")
        markers = [m for m in markers if m in columns]
    if not markers:
        raise ValueError("No usable markers left for geometric computations.")

    obs = meta.copy()
    obs.index = pd.Index(cell_ids.values, name=None)
    obs["stage"] = pd.Categorical(obs["stage"].astype(str))
    for flag in ("is_root", "is_leaf"):
        obs[flag] = obs[flag].astype(bool) if flag in obs else False
    obs["is_downsampled"] = obs["is_downsampled"].astype(bool) if "is_downsampled" in obs else True

    var = pd.DataFrame(index=pd.Index(columns))
    var["use_marker"] = var.index.isin(markers)

    adata = AnnData(X=X, obs=obs, var=var)
    adata.uns["markers"] = list(markers)
    reset_trajectory(adata)

    print(f"Built expression store: {adata.n_obs} cells, {len(markers)} markers in use.")
    return adata


def reset_trajectory(adata: AnnData) -> None:
    """Zero every per-cell trajectory column and drop the cached trajectory summary."""
    adata.obs["pseudotime"] = 0.0
    adata.obs["traj_value"] = 0.0
    adata.obs["traj_value_log"] = 0.0
    adata.obs["branch_id"] = pd.array([pd.NA] * adata.n_obs, dtype="Int64")
    adata.uns.pop("trajectory", None)


def _cells_to_mask(adata: AnnData, cells, label: str) -> np.ndarray:
    if cells is None:
        return np.zeros(adata.n_obs, dtype=bool)
    cells = np.asarray(cells)
    if cells.dtype == bool:
        if cells.shape[0] != adata.n_obs:
            raise DimensionMismatch(
                f"{label} mask has {cells.shape[0]} entries but the store has {adata.n_obs} cells."
            )
        return cells.copy()

    names = [str(c) for c in np.atleast_1d(cells)]
    unknown = [c for c in names if c not in adata.obs_names]
    if unknown:
        warnings.warn(
            f"{len(unknown)} {label} cell(s) not found in the store and will be ignored: "
            f"{unknown[:3]}{'...' if len(unknown) > 3 else ''}"
        )
    return np.asarray(adata.obs_names.isin(names))


def define_root_cells(adata: AnnData, cells) -> AnnData:
    """
    Designate root cells, the origin of every trajectory.

    Parameters
    ----------
    adata : AnnData
        Expression store.
    cells : sequence of str or boolean array
        Cell ids, or a mask over all cells. Replaces any previous designation.
    """
    mask = _cells_to_mask(adata, cells, "root")
    adata.obs["is_root"] = mask
    print(f"{int(mask.sum())} cells flagged as root.")
    return adata


def define_leaf_cells(adata: AnnData, cells) -> AnnData:
    """
    Designate leaf cells, the terminal states of the trajectory.
    See :func:`define_root_cells`.
    """
    mask = _cells_to_mask(adata, cells, "leaf")
    adata.obs["is_leaf"] = mask
    print(f"{int(mask.sum())} cells flagged as leaf.")
    return adata


def downsample_cells(
    adata: AnnData,
    n_cells: int,
    groupby: Optional[str] = None,
    random_state: int = 42,
) -> AnnData:
    """
    Flag the subset of cells that take part in trajectory computation.
    Cells are only marked through ``obs['is_downsampled']``; nothing is removed.

    Parameters
    ----------
    adata : AnnData
        Expression store.
    n_cells : int
        Cells to keep overall, or per group when ``groupby`` is given.
    groupby : str, optional
        Key in ``adata.obs`` (e.g. a cluster column) to sample within.
    random_state : int
        Random seed for reproducibility.
    """
    if n_cells < 1:
        raise ValueError(f"n_cells must be >= 1, got {n_cells}")

    if groupby is None:
        groups = {"all": adata.obs_names}
    else:
        if groupby not in adata.obs:
            raise ValueError(f"'{groupby}' not in adata.obs")
        groups = adata.obs.groupby(groupby, observed=True).groups
        print(f"Downsampling to max {n_cells} cells per group in '{groupby}'...")

    keep = []
    for _, names in groups.items():
        if len(names) <= n_cells:
            keep.extend(names)
            continue
        sub = sc.pp.subsample(adata[names], n_obs=n_cells, random_state=random_state, copy=True)
        keep.extend(sub.obs_names)

    adata.obs["is_downsampled"] = adata.obs_names.isin(keep)
    print(f"Downsampled from {adata.n_obs} to {len(keep)} active cells.")
    return adata


def active_cells(adata: AnnData) -> np.ndarray:
    """Integer positions of the cells flagged as downsampled."""
    return np.flatnonzero(adata.obs["is_downsampled"].to_numpy(dtype=bool))


def marker_matrix(adata: AnnData, cells: Optional[np.ndarray] = None) -> np.ndarray:
    """Dense matrix of the in-use markers for the given cell positions."""
    if cells is None:
        cells = active_cells(adata)
    markers = adata.uns.get("markers")
    if markers is None:
        markers = list(adata.var_names[adata.var["use_marker"].to_numpy(dtype=bool)])
    X = adata[cells, markers].X
    if hasattr(X, "toarray"):
        X = X.toarray()
    return np.asarray(X, dtype=float)
