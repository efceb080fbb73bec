"""
Cluster-level backbone network: a minimum spanning tree over cluster centroids,
oriented from the clusters holding root cells towards the clusters holding leaf cells.
"""

from dataclasses import dataclass
from typing import Optional

import networkx as nx
import numpy as np
import pandas as pd
from anndata import AnnData
from networkx.utils import UnionFind
from scipy.spatial.distance import cdist
from scipy.stats import rankdata

from ..errors import DisconnectedBackbone, NoLeafCells, NoRootCells
from ..preprocessing.store import active_cells, marker_matrix
from ..tools.neighbors import NeighborGraph


@dataclass(frozen=True)
class Branch:
    """One root cluster -> leaf cluster route along the backbone."""

    branch_id: int
    root: object
    leaf: object
    path: tuple


@dataclass(frozen=True)
class BackboneNetwork:
    """
    Frozen cluster graph used to guide the walks.

    ``graph`` is an undirected, frozen networkx graph whose edges carry the
    centroid distance as ``weight`` and ``kind`` ("tree" or "extra").
    ``distance`` is the Dijkstra distance from the nearest root cluster and
    ``rank`` its dense rank (0 for root clusters).
    """

    graph: nx.Graph
    centroids: pd.DataFrame
    distance: dict
    rank: dict
    root_clusters: tuple
    leaf_clusters: tuple
    branches: tuple
    excluded: tuple = ()

    @property
    def clusters(self) -> tuple:
        return tuple(self.centroids.index[self.centroids.index.isin(list(self.graph.nodes))])

    def directed(self) -> nx.DiGraph:
        """
        Orientation used by the walks: edges point towards increasing rank.
        Edges between clusters of equal rank point from the lower cluster id.
        """
        order = {c: i for i, c in enumerate(self.clusters)}
        D = nx.DiGraph()
        D.add_nodes_from(self.graph.nodes(data=True))
        for u, v, data in self.graph.edges(data=True):
            if (self.rank[v], order[v]) < (self.rank[u], order[u]):
                u, v = v, u
            D.add_edge(u, v, **data)
        return D

    def cell_ranks(self, cell_clusters) -> np.ndarray:
        """Rank of each cell's cluster; NaN for cells outside the backbone."""
        return np.array(
            [float(self.rank[c]) if c in self.rank else np.nan for c in cell_clusters]
        )

    def nodes_frame(self) -> pd.DataFrame:
        clusters = list(self.clusters)
        frame = pd.DataFrame({
            "cluster": clusters,
            "rank": [self.rank[c] for c in clusters],
            "distance": [self.distance[c] for c in clusters],
            "is_root_cluster": [c in self.root_clusters for c in clusters],
            "is_leaf_cluster": [c in self.leaf_clusters for c in clusters],
        })
        return frame

    def edges_frame(self) -> pd.DataFrame:
        rows = []
        for u, v, data in self.directed().edges(data=True):
            rows.append({
                "source": u,
                "target": v,
                "weight": data["weight"],
                "kind": data["kind"],
                "source_rank": self.rank[u],
                "target_rank": self.rank[v],
            })
        return pd.DataFrame(rows, columns=["source", "target", "weight", "kind", "source_rank", "target_rank"])

    def branches_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [(b.branch_id, b.root, b.leaf, list(b.path)) for b in self.branches],
            columns=["branch_id", "root", "leaf", "path"],
        )


def compute_centroids(
    adata: AnnData,
    clusters,
    cells: Optional[np.ndarray] = None,
) -> pd.DataFrame:
    """
    Mean in-use marker intensity of each cluster.

    Parameters
    ----------
    adata : AnnData
        Expression store.
    clusters : array-like
        Cluster id of each cell in ``cells``.
    cells : np.ndarray, optional
        Cell positions; defaults to the active cells.

    Returns
    -------
    pd.DataFrame
        Clusters (sorted) x markers.
    """
    if cells is None:
        cells = active_cells(adata)
    X = marker_matrix(adata, cells)
    clusters = np.asarray(clusters)
    if len(clusters) != X.shape[0]:
        raise ValueError(f"Got {len(clusters)} cluster labels for {X.shape[0]} cells.")
    frame = pd.DataFrame(X, columns=adata.uns.get("markers"))
    return frame.groupby(clusters, sort=True).mean()


def _candidate_pairs(codes: np.ndarray, n_clusters: int, neighbor_graph: Optional[NeighborGraph]):
    if neighbor_graph is None:
        return [(i, j) for i in range(n_clusters) for j in range(i + 1, n_clusters)]
    src = np.repeat(codes, neighbor_graph.k)
    dst = codes[neighbor_graph.index.ravel()]
    cross = src != dst
    lo = np.minimum(src[cross], dst[cross])
    hi = np.maximum(src[cross], dst[cross])
    pairs = np.unique(np.stack([lo, hi], axis=1), axis=0) if lo.size else np.empty((0, 2), dtype=int)
    return [(int(i), int(j)) for i, j in pairs]


def build_backbone(
    adata: AnnData,
    cluster_key: str,
    neighbor_graph: Optional[NeighborGraph] = None,
    n_extra_edges: int = 0,
) -> BackboneNetwork:
    """
    Build the backbone network over clusters of the active cells.

    Centroid pairs are candidate edges (only pairs joined by at least one kNN
    edge when ``neighbor_graph`` is given). A minimum spanning tree is taken
    with Kruskal's algorithm, ties broken by ascending cluster pair, then the
    ``n_extra_edges`` lightest remaining candidates are added back. The tree is
    oriented by Dijkstra distance from the root clusters.

    Parameters
    ----------
    adata : AnnData
        Expression store with ``is_root``/``is_leaf`` flags.
    cluster_key : str
        Column in ``adata.obs`` with externally computed cluster ids.
    neighbor_graph : NeighborGraph, optional
        kNN graph of the active cells; restricts candidate edges.
    n_extra_edges : int
        Non-tree edges to add.

    Returns
    -------
    BackboneNetwork
    """
    if cluster_key not in adata.obs:
        raise ValueError(f"Cluster key '{cluster_key}' not found in adata.obs.")
    cells = neighbor_graph.cells if neighbor_graph is not None else active_cells(adata)

    obs = adata.obs.iloc[cells]
    is_root = obs["is_root"].to_numpy(dtype=bool)
    is_leaf = obs["is_leaf"].to_numpy(dtype=bool)
    if not is_root.any():
        raise NoRootCells("No active cells flagged as root. Use define_root_cells first.")
    if not is_leaf.any():
        raise NoLeafCells("No active cells flagged as leaf. Use define_leaf_cells first.")

    labels = obs[cluster_key]
    if labels.isna().any():
        raise ValueError(f"{int(labels.isna().sum())} active cells have no '{cluster_key}' assignment.")
    labels = labels.to_numpy()

    print(f"Building backbone network over '{cluster_key}'...")
    centroids = compute_centroids(adata, labels, cells)
    cluster_ids = list(centroids.index)
    code_of = {c: i for i, c in enumerate(cluster_ids)}
    codes = np.array([code_of[c] for c in labels])
    dist = cdist(centroids.to_numpy(), centroids.to_numpy())

    candidates = sorted(
        _candidate_pairs(codes, len(cluster_ids), neighbor_graph),
        key=lambda p: (dist[p], p[0], p[1]),
    )

    G = nx.Graph()
    G.add_nodes_from(cluster_ids)
    forest = UnionFind(range(len(cluster_ids)))
    leftovers = []
    for i, j in candidates:
        if forest[i] != forest[j]:
            forest.union(i, j)
            G.add_edge(cluster_ids[i], cluster_ids[j], weight=float(dist[i, j]), kind="tree")
        else:
            leftovers.append((i, j))
    for i, j in leftovers[:n_extra_edges]:
        G.add_edge(cluster_ids[i], cluster_ids[j], weight=float(dist[i, j]), kind="extra")

    root_clusters = tuple(c for c in cluster_ids if is_root[codes == code_of[c]].any())
    leaf_clusters = tuple(c for c in cluster_ids if is_leaf[codes == code_of[c]].any())

    component = nx.node_connected_component(G, root_clusters[0])
    stranded = [c for c in root_clusters + leaf_clusters if c not in component]
    if stranded:
        raise DisconnectedBackbone(
            f"Clusters {sorted(set(map(str, stranded)))} cannot be connected to root cluster "
            f"'{root_clusters[0]}'; the neighbor graph does not link them. "
            "Increase knn or merge the isolated clusters."
        )

    excluded = tuple(c for c in cluster_ids if c not in component)
    if excluded:
        print(f"Clusters {list(excluded)} are not linked to the backbone and will not be walked.")
    graph = G.subgraph([c for c in cluster_ids if c in component]).copy()

    distance = nx.multi_source_dijkstra_path_length(graph, set(root_clusters), weight="weight")
    ordered = [c for c in cluster_ids if c in distance]
    dense = rankdata([distance[c] for c in ordered], method="dense").astype(int) - 1
    rank = {c: int(r) for c, r in zip(ordered, dense)}

    branches = []
    for root in root_clusters:
        for leaf in leaf_clusters:
            path = nx.dijkstra_path(graph, root, leaf, weight="weight")
            branches.append(Branch(len(branches), root, leaf, tuple(path)))

    print(
        f"Backbone built: {graph.number_of_nodes()} clusters, {graph.number_of_edges()} edges, "
        f"{len(root_clusters)} root / {len(leaf_clusters)} leaf clusters, {len(branches)} branches."
    )
    return BackboneNetwork(
        graph=nx.freeze(graph),
        centroids=centroids,
        distance={c: float(distance[c]) for c in ordered},
        rank=rank,
        root_clusters=root_clusters,
        leaf_clusters=leaf_clusters,
        branches=tuple(branches),
        excluded=excluded,
    )
