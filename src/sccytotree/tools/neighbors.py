"""
k-nearest neighbor graph over the active cells.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
import scipy.sparse as sp
from anndata import AnnData
from scipy.sparse.csgraph import connected_components
from sklearn.neighbors import NearestNeighbors

from ..errors import DimensionMismatch, InsufficientCells, InvalidNeighborCount
from ..preprocessing.store import active_cells, marker_matrix

MIN_ACTIVE_CELLS = 10


@dataclass(frozen=True)
class NeighborGraph:
    """
    Neighbor table of the active cells.

    ``index[i]`` holds positions (into ``cells``) of the k nearest neighbors of
    active cell ``i``, ascending by distance, ties by ascending position.
    ``cells[i]`` is the row of that cell in the expression store.
    """

    index: np.ndarray
    distance: np.ndarray
    cells: np.ndarray
    k: int

    @property
    def n_cells(self) -> int:
        return self.index.shape[0]

    def to_sparse(self) -> sp.csr_matrix:
        """Directed kNN distance graph as a CSR matrix (n x n)."""
        n, k = self.index.shape
        rows = np.repeat(np.arange(n), k)
        return sp.csr_matrix(
            (self.distance.ravel(), (rows, self.index.ravel())), shape=(n, n)
        )

    def is_connected(self) -> bool:
        n_comp, _ = connected_components(self.to_sparse(), directed=True, connection="weak")
        return n_comp == 1


def _freeze(arr: np.ndarray) -> np.ndarray:
    arr = np.ascontiguousarray(arr)
    arr.setflags(write=False)
    return arr


def find_knn(mat: np.ndarray, k: int) -> tuple[np.ndarray, np.ndarray]:
    """
    Exact Euclidean kNN excluding self, using a KD-tree.

    Identical rows are collapsed into a single tree point. Each distinct point
    is queried for enough distinct neighbors to hold k cells plus every cell
    tied with the k-th one; the query size doubles for the points where it
    does not yet.

    Parameters
    ----------
    mat : np.ndarray
        Points, n x d.
    k : int
        Neighbors per point, 1 <= k < n.

    Returns
    -------
    index, distance : np.ndarray
        Both n x k; rows sorted by (distance, index).
    """
    mat = np.asarray(mat, dtype=float)
    n = mat.shape[0]
    if not 1 <= k < n:
        raise InvalidNeighborCount(f"knn must satisfy 1 <= k < {n} (number of active cells), got {k}")

    points, inverse, sizes = np.unique(mat, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)
    members = np.argsort(inverse, kind="stable")
    offsets = np.concatenate([[0], np.cumsum(sizes)])
    n_points = points.shape[0]

    nn = NearestNeighbors(algorithm="kd_tree", metric="euclidean")
    nn.fit(points)

    out_idx = np.empty((n, k), dtype=np.int64)
    out_dist = np.empty((n, k), dtype=float)
    pending = np.arange(n_points)
    n_query = min(n_points, k + 2)
    while pending.size:
        dist, idx = nn.kneighbors(points[pending], n_neighbors=n_query)
        retry = []
        for row, point in enumerate(pending):
            cells = np.concatenate([members[offsets[p]:offsets[p + 1]] for p in idx[row]])
            cell_dist = np.repeat(dist[row], sizes[idx[row]])
            order = np.lexsort((cells, cell_dist))[:k + 1]
            cells, cell_dist = cells[order], cell_dist[order]
            # every point closer than the farthest one fetched is already in
            complete = n_query == n_points or (len(cells) == k + 1 and dist[row, -1] > cell_dist[-1])
            if not complete:
                retry.append(point)
                continue
            for i in members[offsets[point]:offsets[point + 1]]:
                keep = cells != i
                out_idx[i] = cells[keep][:k]
                out_dist[i] = cell_dist[keep][:k]
        pending = np.asarray(retry, dtype=np.int64)
        n_query = min(n_points, 2 * n_query)

    return out_idx, out_dist


def run_knn(
    adata: AnnData,
    knn: int = 30,
    use_rep: Optional[str] = None,
    given_mat: Optional[np.ndarray] = None,
) -> NeighborGraph:
    """
    Calculate the k-nearest neighbor graph of the active cells.

    Geometry comes from the in-use markers of ``adata.X`` unless an external
    embedding is supplied through ``use_rep`` (a key of ``adata.obsm``) or
    ``given_mat``.

    Parameters
    ----------
    adata : AnnData
        Expression store.
    knn : int
        Number of nearest neighbors.
    use_rep : str, optional
        Key in ``adata.obsm`` holding a cells x dims embedding of all cells.
    given_mat : np.ndarray, optional
        Matrix with one row per active cell, used instead of the markers.

    Returns
    -------
    NeighborGraph
    """
    cells = active_cells(adata)
    n = len(cells)
    if n < MIN_ACTIVE_CELLS:
        raise InsufficientCells(
            f"Only {n} active cells; at least {MIN_ACTIVE_CELLS} are needed. "
            "Flag more cells with downsample_cells."
        )
    if not 1 <= knn < n:
        raise InvalidNeighborCount(
            f"knn must satisfy 1 <= k < {n} (number of active cells), got {knn}"
        )

    if given_mat is not None:
        mat = np.asarray(given_mat, dtype=float)
        if mat.ndim != 2 or mat.shape[0] != n:
            raise DimensionMismatch(
                f"given_mat has {mat.shape[0] if mat.ndim else 0} rows but there are {n} active cells."
            )
    elif use_rep is not None:
        if use_rep not in adata.obsm:
            raise ValueError(f"'{use_rep}' not found in adata.obsm")
        mat = np.asarray(adata.obsm[use_rep], dtype=float)[cells]
    else:
        mat = marker_matrix(adata, cells)

    print(f"Computing KNN (k={knn}) over {n:,} cells...")
    index, distance = find_knn(mat, knn)
    print("Calculating KNN completed.")

    return NeighborGraph(
        index=_freeze(index),
        distance=_freeze(distance),
        cells=_freeze(cells.astype(np.int64)),
        k=int(knn),
    )
