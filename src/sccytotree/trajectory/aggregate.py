"""
Aggregation of walk records into per-cell pseudotime, trajectory value and branch.
"""

import warnings
from dataclasses import dataclass

import numpy as np
import pandas as pd
from anndata import AnnData

from ..errors import UncoveredCellsWarning
from ..preprocessing.store import log10_transform, reset_trajectory
from .walk import BACKWARD, FORWARD


@dataclass(frozen=True)
class TrajectoryResult:
    """
    Per active cell outputs, aligned with ``NeighborGraph.cells``.

    ``branch_id`` is -1 for cells no walk visited.
    """

    pseudotime: np.ndarray
    traj_value: np.ndarray
    traj_value_log: np.ndarray
    branch_id: np.ndarray
    visits: np.ndarray
    backward_visits: np.ndarray
    uncovered: np.ndarray

    @property
    def n_cells(self) -> int:
        return len(self.pseudotime)

    @property
    def n_uncovered(self) -> int:
        return len(self.uncovered)

    @property
    def fraction_uncovered(self) -> float:
        return self.n_uncovered / self.n_cells if self.n_cells else 0.0

    def coverage_summary(self) -> dict:
        return {
            "n_cells": int(self.n_cells),
            "n_uncovered": int(self.n_uncovered),
            "fraction_uncovered": float(self.fraction_uncovered),
        }

    def to_frame(self, index=None) -> pd.DataFrame:
        return pd.DataFrame({
            "pseudotime": self.pseudotime,
            "traj_value": self.traj_value,
            "traj_value_log": self.traj_value_log,
            "branch_id": pd.array(
                [pd.NA if b < 0 else int(b) for b in self.branch_id], dtype="Int64"
            ),
        }, index=index)


def _visit_table(records, n_cells: int):
    """
    Weighted number of walks visiting each cell and weighted sums of the
    normalised first-visit positions.
    """
    counts = np.zeros(n_cells)
    position_sums = np.zeros(n_cells)
    for record in records:
        steps = record.n_steps
        cells, first = np.unique(np.asarray(record.path, dtype=np.int64), return_index=True)
        position = first / steps if steps > 0 else np.zeros(len(cells))
        counts[cells] += record.weight
        position_sums[cells] += record.weight * position
    return counts, position_sums


def _assign_branches(records, n_cells: int) -> np.ndarray:
    rows = []
    for record in records:
        if record.branch_id < 0:
            continue
        order = 0 if record.direction == FORWARD else 1
        for cell in dict.fromkeys(record.path):
            rows.append((cell, record.branch_id, order, record.seed, record.weight))

    branch = np.full(n_cells, -1, dtype=np.int64)
    if not rows:
        return branch

    table = pd.DataFrame(rows, columns=["cell", "branch_id", "direction", "seed", "weight"])
    per_batch = table.groupby(["cell", "branch_id", "direction", "seed"], as_index=False)["weight"].sum()
    best = (
        per_batch.sort_values(
            ["cell", "weight", "branch_id", "direction", "seed"],
            ascending=[True, False, True, True, True],
            kind="mergesort",
        )
        .drop_duplicates("cell", keep="first")
    )
    branch[best["cell"].to_numpy()] = best["branch_id"].to_numpy()
    return branch


def aggregate_walks(
    records,
    n_cells: int,
    forward_weight: float = 0.5,
    decimals: int = 3,
) -> TrajectoryResult:
    """
    Merge forward and backward walk records into per-cell results.

    - ``traj_value``: weighted count of forward walks visiting the cell, scaled by the
      maximum (0 if never visited).
    - ``traj_value_log``: ``round(log10(traj_value + 1), decimals)``.
    - ``pseudotime``: weighted mean of the first-visit step divided by the walk's
      step count. Backward walks contribute ``1 - position``; when both estimates
      exist they are blended with ``forward_weight``.
    - ``branch_id``: branch of the (seed cell, branch) batch that visited the cell
      most, ties by lowest branch id.

    Parameters
    ----------
    records : sequence of WalkRecord
    n_cells : int
        Number of active cells.
    forward_weight : float
        Share of the forward estimate in the merged pseudotime.
    decimals : int
        Rounding of ``traj_value_log``.

    Returns
    -------
    TrajectoryResult
    """
    records = list(records)
    forward = [r for r in records if r.direction == FORWARD]
    backward = [r for r in records if r.direction == BACKWARD]

    f_counts, f_pos = _visit_table(forward, n_cells)
    b_counts, b_pos = _visit_table(backward, n_cells)

    has_f = f_counts > 0
    has_b = b_counts > 0
    pt_forward = np.divide(f_pos, f_counts, out=np.zeros(n_cells), where=has_f)
    pt_backward = 1.0 - np.divide(b_pos, b_counts, out=np.ones(n_cells), where=has_b)

    pseudotime = np.zeros(n_cells)
    both = has_f & has_b
    pseudotime[both] = forward_weight * pt_forward[both] + (1.0 - forward_weight) * pt_backward[both]
    pseudotime[has_f & ~has_b] = pt_forward[has_f & ~has_b]
    pseudotime[has_b & ~has_f] = pt_backward[has_b & ~has_f]
    pseudotime = np.clip(pseudotime, 0.0, 1.0)

    peak = f_counts.max() if n_cells else 0.0
    traj_value = f_counts / peak if peak > 0 else np.zeros(n_cells)

    uncovered = np.flatnonzero(~(has_f | has_b))
    result = TrajectoryResult(
        pseudotime=pseudotime,
        traj_value=traj_value,
        traj_value_log=log10_transform(traj_value, decimals),
        branch_id=_assign_branches(records, n_cells),
        visits=f_counts,
        backward_visits=b_counts,
        uncovered=uncovered,
    )

    print(
        f"Aggregated {len(forward)} forward and {len(backward)} backward walks; "
        f"{result.n_uncovered} of {n_cells} cells uncovered."
    )
    if result.n_uncovered:
        warnings.warn(
            f"{result.n_uncovered} active cells ({result.fraction_uncovered:.1%}) were not visited "
            "by any walk; increase walks_per_seed or knn to cover them.",
            UncoveredCellsWarning,
        )
    return result


def write_trajectory(adata: AnnData, result: TrajectoryResult, cells: np.ndarray) -> AnnData:
    """
    Write a result into ``adata.obs``, replacing any earlier trajectory.

    Parameters
    ----------
    adata : AnnData
        Expression store.
    result : TrajectoryResult
    cells : np.ndarray
        Store positions of the active cells the result is aligned with.
    """
    cells = np.asarray(cells)
    if len(cells) != result.n_cells:
        raise ValueError(f"Result covers {result.n_cells} cells but {len(cells)} positions were given.")

    reset_trajectory(adata)
    columns = {}
    for name in ("pseudotime", "traj_value", "traj_value_log"):
        values = np.zeros(adata.n_obs)
        values[cells] = getattr(result, name)
        columns[name] = values
    branch = np.full(adata.n_obs, -1, dtype=np.int64)
    branch[cells] = result.branch_id

    for name, values in columns.items():
        adata.obs[name] = values
    adata.obs["branch_id"] = pd.array([pd.NA if b < 0 else int(b) for b in branch], dtype="Int64")

    summary = result.coverage_summary()
    summary["uncovered_cells"] = list(adata.obs_names[cells[result.uncovered]])
    adata.uns["trajectory"] = summary
    print("Trajectory stored in adata.obs['pseudotime', 'traj_value', 'traj_value_log', 'branch_id'].")
    return adata
