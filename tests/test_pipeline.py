import threading
import warnings

import pytest
import numpy as np
import pandas as pd
from sccytotree import datasets
from sccytotree import preprocessing as pp
from sccytotree.config import TrajectoryConfig
from sccytotree.errors import (
    InvalidNeighborCount,
    NoLeafCells,
    NoRootCells,
    PipelineCancelled,
    UncoveredCellsWarning,
)
from sccytotree.trajectory import pipeline, run_trajectory

@pytest.fixture(autouse=True)
def quiet_coverage_warnings():
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", UncoveredCellsWarning)
        yield

@pytest.fixture
def linear_store():
    return datasets.make_linear_cytometry(cluster_sizes=(8, 6, 6))

def run_linear(adata, **options):
    config = TrajectoryConfig(knn=5, walks_per_seed=20, random_state=3)
    return run_trajectory(adata, "cluster", config=config, **options)

def test_linear_scenario(linear_store):
    run = run_linear(linear_store)

    assert set(run.backbone.graph.edges) == {("A", "B"), ("B", "C")}
    assert run.backbone.rank == {"A": 0, "B": 1, "C": 2}

    means = linear_store.obs.groupby("cluster", observed=True)["pseudotime"].mean()
    assert means["A"] < means["B"] < means["C"]

def test_results_in_unit_interval(linear_store):
    run_linear(linear_store)
    obs = linear_store.obs
    assert obs["pseudotime"].between(0, 1).all()
    assert obs["traj_value"].between(0, 1).all()
    assert (obs["traj_value_log"] >= 0).all()
    assert obs["traj_value"].max() == 1.0
    assert obs.loc["cell_0", "pseudotime"] == 0.0

def test_same_seed_same_result(linear_store):
    run_linear(linear_store)
    first = linear_store.obs[["pseudotime", "traj_value", "traj_value_log", "branch_id"]].copy()
    run_linear(linear_store)
    second = linear_store.obs[["pseudotime", "traj_value", "traj_value_log", "branch_id"]]
    pd.testing.assert_frame_equal(first, second)

def test_different_seed_changes_walks(linear_store):
    a = run_linear(linear_store)
    b = run_trajectory(linear_store, "cluster", config=TrajectoryConfig(knn=5, walks_per_seed=20, random_state=4))
    assert not np.array_equal(a.result.pseudotime, b.result.pseudotime)

def test_no_root_cells_before_any_geometry(linear_store, monkeypatch):
    linear_store.obs["is_root"] = False

    def _fail(*_args, **_kwargs):
        raise AssertionError("neighbor graph should not be computed")

    monkeypatch.setattr(pipeline, "run_knn", _fail)
    with pytest.raises(NoRootCells, match="root"):
        run_linear(linear_store)

def test_no_leaf_cells(linear_store):
    linear_store.obs["is_leaf"] = False
    with pytest.raises(NoLeafCells, match="leaf"):
        run_linear(linear_store)

def test_k_equal_to_active_cells(linear_store):
    with pytest.raises(InvalidNeighborCount):
        run_linear(linear_store, knn=20)

def test_unknown_option_rejected(linear_store):
    with pytest.raises(ValueError, match="Unrecognised"):
        run_linear(linear_store, n_neighbours=5)

def test_isolated_cell_reported_uncovered():
    X = np.column_stack([np.r_[np.arange(20.0), 1000.0], np.zeros(21)])
    adata = pp.create_expression_store(X)
    adata.obs["cluster"] = list(np.repeat(["A", "B", "C"], [8, 6, 6])) + ["D"]
    pp.define_root_cells(adata, ["cell_0"])
    pp.define_leaf_cells(adata, ["cell_19"])

    with pytest.warns(UncoveredCellsWarning):
        run = run_trajectory(adata, "cluster", knn=5, walks_per_seed=10)

    assert adata.obs.loc["cell_20", "pseudotime"] == 0.0
    assert pd.isna(adata.obs.loc["cell_20", "branch_id"])
    assert adata.obs.loc["cell_20", "traj_value"] == 0.0
    assert run.result.n_uncovered >= 1
    assert "cell_20" in adata.uns["trajectory"]["uncovered_cells"]

def test_inactive_cells_are_left_untouched(linear_store):
    mask = np.ones(linear_store.n_obs, dtype=bool)
    mask[5] = False
    linear_store.obs["is_downsampled"] = mask
    run = run_linear(linear_store)
    assert run.neighbors.n_cells == 19
    assert linear_store.obs["pseudotime"].iloc[5] == 0.0
    assert pd.isna(linear_store.obs["branch_id"].iloc[5])

def test_cancel_between_phases(linear_store):
    event = threading.Event()
    event.set()
    with pytest.raises(PipelineCancelled):
        run_linear(linear_store, cancel_event=event)
    assert (linear_store.obs["pseudotime"] == 0).all()
    assert "trajectory" not in linear_store.uns

def test_backbone_overlay_stored(linear_store):
    run_linear(linear_store)
    summary = linear_store.uns["trajectory"]
    assert summary["cluster_key"] == "cluster"
    assert list(summary["backbone_nodes"]["cluster"]) == ["A", "B", "C"]
    assert len(summary["backbone_edges"]) == 2

def test_branching_dataset_orders_leaves_after_roots():
    adata = datasets.make_mock_cytometry(n_cells=500, random_state=1)
    t = adata.obs["true_time"]
    pp.define_root_cells(adata, adata.obs_names[t < 0.03])
    pp.define_leaf_cells(adata, adata.obs_names[t > 0.97])

    run = run_trajectory(adata, "true_cluster", knn=15, walks_per_seed=3, random_state=0)

    assert len(run.backbone.branches) == 2
    covered = adata.obs["branch_id"].notna()
    means = adata.obs[covered].groupby("true_cluster", observed=True)["pseudotime"].mean()
    assert means["stem"] < means["lineage_A"]
    assert means["stem"] < means["lineage_B"]
    assert set(adata.obs.loc[covered, "branch_id"].astype(int)) <= {0, 1}
