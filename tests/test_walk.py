import pytest
import numpy as np
from sccytotree import datasets
from sccytotree import tools as tl
from sccytotree.config import TrajectoryConfig
from sccytotree.trajectory import (
    WalkContext,
    WalkRecord,
    WalkState,
    Walker,
    assign_branch,
    build_backbone,
    run_walks,
)
from sccytotree.trajectory.walk import BACKWARD, DISTANCE_EPS, FORWARD


class ScriptedSource:
    """Deterministic stand-in for a random generator."""

    def __init__(self, values, default=0.0):
        self.values = list(values)
        self.default = default

    def random(self):
        return self.values.pop(0) if self.values else self.default


def line_context(direction=FORWARD, targets=None, max_steps=50, ranks=None):
    # five cells on a line, k = 2
    index = np.array([[1, 2], [0, 2], [1, 3], [2, 4], [3, 2]])
    distance = np.array([[1.0, 2.0], [1.0, 1.0], [1.0, 1.0], [1.0, 1.0], [1.0, 2.0]])
    if ranks is None:
        ranks = np.array([0.0, 0.0, 1.0, 1.0, 2.0])
    if targets is None:
        targets = np.array([False, False, False, False, True])
    return WalkContext(
        index=index,
        distance=distance,
        ranks=ranks,
        targets=targets,
        direction=direction,
        max_steps=max_steps,
        backward_penalty=0.1,
        stuck_weight=0.25,
    )


def test_walker_starts_then_steps():
    walker = Walker(line_context(), seed=0)
    assert walker.state is WalkState.START
    assert walker.step(ScriptedSource([])) is WalkState.STEPPING
    assert walker.path == [0]

def test_walker_absorbed_at_leaf():
    # always take the last candidate
    record = Walker(line_context(), seed=0).run(ScriptedSource([], default=0.99))
    assert record.state is WalkState.ABSORBED
    assert record.path == (0, 2, 3, 4)
    assert record.n_steps == 3
    assert record.weight == 1.0

def test_walker_revisits_cells():
    # always take the first candidate: 0 -> 1 -> 0 -> ...
    record = Walker(line_context(max_steps=4), seed=0).run(ScriptedSource([]))
    assert record.state is WalkState.EXHAUSTED
    assert record.path == (0, 1, 0, 1, 0)
    assert record.n_steps == 4
    assert record.weight == 1.0

def test_walker_stuck_only_at_isolated_cell():
    # both neighbors of cell 0 lie outside the backbone
    ranks = np.array([0.0, np.nan, np.nan, 1.0, 2.0])
    record = Walker(line_context(ranks=ranks), seed=0).run(ScriptedSource([]))
    assert record.state is WalkState.STUCK
    assert record.path == (0,)
    assert record.n_steps == 0
    assert record.weight == 0.25

def test_visited_neighbors_stay_candidates():
    walker = Walker(line_context(), seed=0)
    walker.path.append(1)
    candidates, _ = walker.transition_weights(1)
    np.testing.assert_array_equal(candidates, [0, 2])

def test_seed_never_absorbs():
    ctx = line_context(targets=np.array([True, False, False, False, True]), max_steps=4)
    record = Walker(ctx, seed=0).run(ScriptedSource([]))
    assert record.state is WalkState.EXHAUSTED
    assert record.path == (0, 1, 0, 1, 0)

def test_scripted_choice_follows_weights():
    # from cell 0 the candidates are 1 (weight ~1) and 2 (weight ~0.5)
    record = Walker(line_context(), seed=0).run(ScriptedSource([0.9]))
    assert record.path[:2] == (0, 2)

def test_forward_penalty_on_lower_rank():
    walker = Walker(line_context(), seed=0)
    candidates, weights = walker.transition_weights(2)
    np.testing.assert_array_equal(candidates, [1, 3])
    np.testing.assert_allclose(weights, [0.1 / (1.0 + DISTANCE_EPS), 1.0 / (1.0 + DISTANCE_EPS)])

def test_backward_penalty_on_higher_rank():
    walker = Walker(line_context(direction=BACKWARD), seed=4)
    candidates, weights = walker.transition_weights(1)
    np.testing.assert_array_equal(candidates, [0, 2])
    np.testing.assert_allclose(weights, [1.0, 0.1], rtol=1e-5)

def test_cells_outside_backbone_are_not_candidates():
    ranks = np.array([0.0, 0.0, np.nan, 1.0, 2.0])
    walker = Walker(line_context(ranks=ranks), seed=0)
    candidates, _ = walker.transition_weights(0)
    np.testing.assert_array_equal(candidates, [1])
    record = walker.run(ScriptedSource([], default=0.99))
    assert 2 not in record.path

@pytest.fixture
def linear_inputs():
    adata = datasets.make_linear_cytometry(cluster_sizes=(8, 6, 6))
    graph = tl.run_knn(adata, knn=5)
    backbone = build_backbone(adata, "cluster", neighbor_graph=graph)
    obs = adata.obs.iloc[graph.cells]
    return (
        graph,
        backbone,
        obs["cluster"].to_numpy(),
        obs["is_root"].to_numpy(dtype=bool),
        obs["is_leaf"].to_numpy(dtype=bool),
    )

def test_run_walks_counts_and_directions(linear_inputs):
    config = TrajectoryConfig(knn=5, walks_per_seed=7)
    records = run_walks(*linear_inputs, config=config)
    assert len(records) == 14
    assert [r.direction for r in records] == [FORWARD] * 7 + [BACKWARD] * 7
    for r in records:
        assert r.path[0] == r.seed
        if r.state is WalkState.ABSORBED:
            assert r.path[-1] == (19 if r.direction == FORWARD else 0)
        if r.direction == FORWARD:
            assert r.seed == 0
        else:
            assert r.seed == 19
        assert r.branch_id == 0

def test_walks_inside_backbone_never_get_stuck(linear_inputs):
    config = TrajectoryConfig(knn=5, walks_per_seed=10, max_steps=40)
    records = run_walks(*linear_inputs, config=config)
    assert not any(r.state is WalkState.STUCK for r in records)
    assert any(len(set(r.path)) < len(r.path) for r in records)

def test_run_walks_without_backward(linear_inputs):
    config = TrajectoryConfig(knn=5, walks_per_seed=3, backward=False)
    records = run_walks(*linear_inputs, config=config)
    assert {r.direction for r in records} == {FORWARD}

def test_run_walks_reproducible(linear_inputs):
    config = TrajectoryConfig(knn=5, walks_per_seed=5, random_state=7)
    a = run_walks(*linear_inputs, config=config)
    b = run_walks(*linear_inputs, config=config)
    assert a == b

def test_run_walks_independent_of_n_jobs(linear_inputs):
    serial = run_walks(*linear_inputs, config=TrajectoryConfig(knn=5, walks_per_seed=5, n_jobs=1))
    parallel = run_walks(*linear_inputs, config=TrajectoryConfig(knn=5, walks_per_seed=5, n_jobs=2))
    assert serial == parallel

def test_assign_branch_for_short_walk(linear_inputs):
    _, backbone, clusters, _, _ = linear_inputs
    record = WalkRecord(FORWARD, seed=0, path=(0, 1), state=WalkState.STUCK, weight=0.25)
    assert assign_branch(record, backbone, clusters) == 0
    record = WalkRecord(BACKWARD, seed=19, path=(19, 18), state=WalkState.STUCK, weight=0.25)
    assert assign_branch(record, backbone, clusters) == 0
