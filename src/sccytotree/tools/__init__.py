from .neighbors import NeighborGraph, run_knn, find_knn

__all__ = [
    "NeighborGraph",
    "run_knn",
    "find_knn",
]
