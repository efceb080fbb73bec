"""
Forward (root -> leaf) and backward (leaf -> root) random walks over the kNN graph,
guided by the orientation of the backbone network.

Each walk is a small state machine::

    START -> STEPPING -> ABSORBED   (reached a target cell)
                      -> EXHAUSTED  (step budget used up)
                      -> STUCK      (no neighbor inside the backbone)

At every step the walker weighs the neighbors of its current cell by
inverse distance, multiplied by ``backward_penalty`` when the neighbor's cluster
rank goes against the walk direction, and samples one of them.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np
from joblib import Parallel, delayed

from ..config import TrajectoryConfig
from ..tools.neighbors import NeighborGraph
from .backbone import BackboneNetwork

FORWARD = "forward"
BACKWARD = "backward"

DISTANCE_EPS = 1e-6


class WalkState(Enum):
    START = "start"
    STEPPING = "stepping"
    ABSORBED = "absorbed"
    EXHAUSTED = "exhausted"
    STUCK = "stuck"


TERMINAL_STATES = (WalkState.ABSORBED, WalkState.EXHAUSTED, WalkState.STUCK)


@dataclass(frozen=True)
class WalkRecord:
    """One finished walk. ``path`` holds positions of active cells, seed first; cells may repeat."""

    direction: str
    seed: int
    path: tuple
    state: WalkState
    weight: float
    branch_id: int = -1

    @property
    def n_steps(self) -> int:
        return len(self.path) - 1


@dataclass(frozen=True)
class WalkContext:
    """Read-only inputs shared by every walk of one direction."""

    index: np.ndarray
    distance: np.ndarray
    ranks: np.ndarray
    targets: np.ndarray
    direction: str
    max_steps: int
    backward_penalty: float
    stuck_weight: float


class Walker:
    """
    A single walk from ``seed``.

    The random source only needs a ``random()`` method returning floats in
    [0, 1), so tests can script the choices.
    """

    def __init__(self, context: WalkContext, seed: int):
        self.context = context
        self.seed = int(seed)
        self.path = [self.seed]
        self.state = WalkState.START

    @property
    def current(self) -> int:
        return self.path[-1]

    def transition_weights(self, cell: int) -> tuple[np.ndarray, np.ndarray]:
        """Candidate neighbors of ``cell`` and their unnormalised weights."""
        ctx = self.context
        neighbors = ctx.index[cell]
        nb_ranks = ctx.ranks[neighbors]
        keep = ~np.isnan(nb_ranks)
        candidates = neighbors[keep]
        if candidates.size == 0:
            return candidates, np.empty(0)

        weights = 1.0 / (ctx.distance[cell][keep] + DISTANCE_EPS)
        here = ctx.ranks[cell]
        if ctx.direction == FORWARD:
            against = nb_ranks[keep] < here
        else:
            against = nb_ranks[keep] > here
        weights = np.where(against, weights * ctx.backward_penalty, weights)
        return candidates, weights

    def step(self, rng) -> WalkState:
        """Advance the state machine by one transition."""
        if self.state in TERMINAL_STATES:
            return self.state
        if self.state is WalkState.START:
            self.state = WalkState.STEPPING
            return self.state

        if len(self.path) - 1 >= self.context.max_steps:
            self.state = WalkState.EXHAUSTED
            return self.state

        candidates, weights = self.transition_weights(self.current)
        if candidates.size == 0:
            self.state = WalkState.STUCK
            return self.state

        cumulative = np.cumsum(weights)
        pick = int(np.searchsorted(cumulative, rng.random() * cumulative[-1], side="right"))
        nxt = int(candidates[min(pick, candidates.size - 1)])
        self.path.append(nxt)
        if self.context.targets[nxt] and nxt != self.seed:
            self.state = WalkState.ABSORBED
        return self.state

    def run(self, rng) -> WalkRecord:
        while self.state not in TERMINAL_STATES:
            self.step(rng)
        weight = self.context.stuck_weight if self.state is WalkState.STUCK else 1.0
        return WalkRecord(
            direction=self.context.direction,
            seed=self.seed,
            path=tuple(self.path),
            state=self.state,
            weight=float(weight),
        )


def _walk_batch(context: WalkContext, seed: int, seed_sequences) -> list:
    return [Walker(context, seed).run(np.random.default_rng(ss)) for ss in seed_sequences]


def assign_branch(record: WalkRecord, backbone: BackboneNetwork, cell_clusters) -> int:
    """
    Branch a walk followed: among the branches starting (forward) or ending
    (backward) at the seed's cluster, the one sharing most clusters with the
    walk. Ties go to the lowest branch id.
    """
    seed_cluster = cell_clusters[record.seed]
    visited = {cell_clusters[c] for c in record.path}
    best_id, best_overlap = -1, -1
    for branch in backbone.branches:
        anchor = branch.root if record.direction == FORWARD else branch.leaf
        if anchor != seed_cluster:
            continue
        overlap = len(visited.intersection(branch.path))
        if overlap > best_overlap:
            best_id, best_overlap = branch.branch_id, overlap
    return best_id


def run_walks(
    graph: NeighborGraph,
    backbone: BackboneNetwork,
    cell_clusters,
    is_root,
    is_leaf,
    config: Optional[TrajectoryConfig] = None,
) -> list:
    """
    Simulate every forward walk, and the backward walks when enabled.

    Parameters
    ----------
    graph : NeighborGraph
        kNN graph of the active cells.
    backbone : BackboneNetwork
        Oriented cluster network.
    cell_clusters : array-like
        Cluster id of each active cell (aligned with ``graph.cells``).
    is_root, is_leaf : array-like of bool
        Flags of each active cell.
    config : TrajectoryConfig, optional

    Returns
    -------
    list of WalkRecord
        Forward records first, ordered by seed cell then walk number; the order
        does not depend on ``n_jobs``.
    """
    config = config or TrajectoryConfig()
    cell_clusters = np.asarray(cell_clusters)
    is_root = np.asarray(is_root, dtype=bool)
    is_leaf = np.asarray(is_leaf, dtype=bool)
    ranks = backbone.cell_ranks(cell_clusters)
    in_backbone = ~np.isnan(ranks)

    passes = [(FORWARD, np.flatnonzero(is_root & in_backbone), is_leaf)]
    if config.backward:
        passes.append((BACKWARD, np.flatnonzero(is_leaf & in_backbone), is_root))

    n_walks = sum(len(seeds) for _, seeds, _ in passes) * config.walks_per_seed
    children = iter(np.random.SeedSequence(config.random_state).spawn(n_walks))

    tasks = []
    for direction, seeds, targets in passes:
        context = WalkContext(
            index=graph.index,
            distance=graph.distance,
            ranks=ranks,
            targets=targets,
            direction=direction,
            max_steps=config.max_steps,
            backward_penalty=config.backward_penalty,
            stuck_weight=config.stuck_weight,
        )
        for seed in seeds:
            batch = [next(children) for _ in range(config.walks_per_seed)]
            tasks.append(delayed(_walk_batch)(context, int(seed), batch))

    print(f"Running {n_walks:,} random walks ({', '.join(d for d, _, _ in passes)})...")
    batches = Parallel(n_jobs=config.n_jobs)(tasks)

    records = []
    for batch in batches:
        for record in batch:
            branch_id = assign_branch(record, backbone, cell_clusters)
            records.append(WalkRecord(
                direction=record.direction,
                seed=record.seed,
                path=record.path,
                state=record.state,
                weight=record.weight,
                branch_id=branch_id,
            ))

    n_stuck = sum(r.state is WalkState.STUCK for r in records)
    if n_stuck:
        print(f"{n_stuck} walks ended at a cell with no neighbor inside the backbone and were kept at weight {config.stuck_weight}.")
    print("Random walks completed.")
    return records
