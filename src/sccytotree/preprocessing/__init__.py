from .store import (
    create_expression_store,
    define_root_cells,
    define_leaf_cells,
    downsample_cells,
    active_cells,
    marker_matrix,
    log10_transform,
    reset_trajectory,
)

__all__ = [
    "create_expression_store",
    "define_root_cells",
    "define_leaf_cells",
    "downsample_cells",
    "active_cells",
    "marker_matrix",
    "log10_transform",
    "reset_trajectory",
]
