"""
Synthetic cytometry datasets with known differentiation structure.
"""

import numpy as np
import pandas as pd
import anndata as ad

from ..preprocessing.store import create_expression_store

MARKERS = ["CD34", "CD43", "CD38", "CD90", "CD45RA", "CD31", "CD49f", "CD73", "CD45", "FLK1"]


def make_mock_cytometry(
    n_cells: int = 1500,
    n_markers: int = 10,
    noise: float = 0.08,
    random_state: int = 42,
) -> ad.AnnData:
    """
    Generate a branching (Y-shaped) cytometry dataset.

    Cells progress from a stem population through a progenitor state, then
    split into two terminal lineages. Intensities are log-scale-like values in [0, 3].

    Parameters
    ----------
    n_cells : int
        Number of cells.
    n_markers : int
        Number of markers (at most 10 get real marker names).
    noise : float
        Standard deviation of the Gaussian noise added to every intensity.
    random_state : int
        Random seed.

    Returns
    -------
    anndata.AnnData
        Expression store with ``obs['true_cluster']`` (stem, progenitor,
        lineage_A, lineage_B), ``obs['true_time']`` in [0, 1] and stage labels D0..D6.
    """
    np.random.seed(random_state)

    # Anchor profiles for the four states
    stem = np.random.uniform(1.5, 2.5, n_markers)
    progenitor = stem + np.random.normal(0, 0.6, n_markers)
    end_a = progenitor + np.random.normal(0, 1.0, n_markers)
    end_b = progenitor + np.random.normal(0, 1.0, n_markers)

    t = np.random.uniform(0, 1, n_cells)
    lineage = np.random.rand(n_cells) < 0.5

    X = np.empty((n_cells, n_markers))
    early = t < 0.5
    s = (t[early] / 0.5)[:, None]
    X[early] = stem + s * (progenitor - stem)
    late = ~early
    s = ((t[late] - 0.5) / 0.5)[:, None]
    ends = np.where(lineage[late][:, None], end_a, end_b)
    X[late] = progenitor + s * (ends - progenitor)
    X += np.random.normal(0, noise, X.shape)
    X = np.clip(X, 0, None)

    cluster = np.where(
        t < 0.25, "stem",
        np.where(t < 0.5, "progenitor", np.where(lineage, "lineage_A", "lineage_B")),
    )
    stage = np.array([f"D{int(v)}" for v in np.floor(t * 4) * 2])

    names = [f"{stage[i]}.fcs_{i}" for i in range(n_cells)]
    markers = (MARKERS + [f"marker_{j}" for j in range(len(MARKERS), n_markers)])[:n_markers]
    meta = pd.DataFrame({"cell": names, "stage": stage})

    adata = create_expression_store(pd.DataFrame(X, index=names, columns=markers), meta=meta)
    adata.obs["true_cluster"] = pd.Categorical(cluster)
    adata.obs["true_time"] = t
    adata.obs["lineage"] = np.where(t < 0.5, "shared", np.where(lineage, "A", "B"))
    return adata


def make_linear_cytometry(
    cluster_sizes=(8, 6, 6),
    spacing: float = 1.0,
    cluster_names=("A", "B", "C"),
) -> ad.AnnData:
    """
    Cells evenly spaced along a single axis, split into consecutive clusters.

    The first cell is flagged as root and the last one as leaf.

    Parameters
    ----------
    cluster_sizes : sequence of int
        Number of cells per cluster, in axis order.
    spacing : float
        Distance between consecutive cells.
    cluster_names : sequence of str
        Label of each cluster.
    """
    if len(cluster_sizes) != len(cluster_names):
        raise ValueError("cluster_sizes and cluster_names must have the same length.")
    n_cells = int(sum(cluster_sizes))
    axis = np.arange(n_cells) * spacing
    X = np.column_stack([axis, np.zeros(n_cells)])
    labels = np.repeat(list(cluster_names), cluster_sizes)

    meta = pd.DataFrame({
        "cell": [f"cell_{i}" for i in range(n_cells)],
        "stage": labels,
    })
    adata = create_expression_store(
        pd.DataFrame(X, columns=["axis", "flat"]), meta=meta
    )
    adata.obs["cluster"] = pd.Categorical(labels, categories=list(cluster_names))
    is_root = np.zeros(n_cells, dtype=bool)
    is_root[0] = True
    is_leaf = np.zeros(n_cells, dtype=bool)
    is_leaf[-1] = True
    adata.obs["is_root"] = is_root
    adata.obs["is_leaf"] = is_leaf
    return adata
