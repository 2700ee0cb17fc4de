"""Cell-to-rank ownership, particle redistribution and halo replicas.

Ownership model:
  - every active cell is owned by exactly one rank (``cell_rank``), inactive
    cells carry -1;
  - a particle lives on the rank owning its cell;
  - each rank mirrors, read-only, the particles of foreign cells that share a
    node with one of its own cells (its halo).  Halos are overwritten on every
    ``transfer_halo_particles`` call and never mutated locally.

All public methods that move data are collectives: every rank must call them
in the same order.
"""

from __future__ import annotations

from typing import Dict, List, Optional

import numpy as np

from .graph_utils import connected_components
from .mesh import StructuredMesh
from .state import ParticleSet


class DecompositionError(RuntimeError):
    pass


class Partition:
    def __init__(self, mesh: StructuredMesh, comm):
        self.mesh = mesh
        self.comm = comm
        self.cell_rank = np.full((mesh.n_cells,), -1, dtype=np.int64)
        self.halo = ParticleSet.empty(mesh.dim).frozen()
        self.n_decompositions = 0
        self.last_migrated = 0
        self._node_neighbours = mesh.cell_node_neighbours()
        self._halo_masks: Dict[int, np.ndarray] = {}

    @property
    def rank(self) -> int:
        return int(self.comm.rank)

    @property
    def size(self) -> int:
        return int(self.comm.size)

    # ------------------------------------------------------------------
    # graph + assignment
    # ------------------------------------------------------------------

    def validate_graph(self) -> Dict[int, List[int]]:
        adj = self.mesh.cell_adjacency()
        if not adj:
            raise DecompositionError("partition graph has no active cells")
        comps = connected_components(adj)
        if len(comps) > 1:
            sizes = [len(c) for c in comps]
            raise DecompositionError(
                f"partition graph is disconnected: {len(comps)} components (sizes={sizes[:8]})"
            )
        if len(adj) < self.size:
            raise DecompositionError(
                f"partition graph has {len(adj)} active cells for {self.size} ranks"
            )
        return adj

    def cell_loads(self, particles: ParticleSet) -> np.ndarray:
        cells = particles.cell[particles.cell >= 0]
        counts = np.bincount(cells, minlength=self.mesh.n_cells).astype(np.float64)
        return self.comm.allreduce_sum(counts)

    def compute_assignment(self, loads: np.ndarray) -> np.ndarray:
        """Split Morton-ordered active cells into ``size`` contiguous chunks of balanced weight."""
        order = self.mesh.morton_order()
        w = 1.0 + np.asarray(loads, dtype=np.float64)[order]
        cum = np.cumsum(w)
        total = float(cum[-1])
        ranks = np.minimum(((cum - 0.5 * w) / total * self.size).astype(np.int64), self.size - 1)
        if np.unique(ranks).size < self.size:
            # heavy cells starved a rank; fall back to an equal cell-count split
            ranks = (np.arange(order.size, dtype=np.int64) * self.size) // order.size
        cell_rank = np.full((self.mesh.n_cells,), -1, dtype=np.int64)
        cell_rank[order] = ranks
        return cell_rank

    def _rebuild_halo_maps(self) -> None:
        masks = {q: np.zeros((self.mesh.n_cells,), dtype=bool) for q in range(self.size)}
        for cid, nbs in self._node_neighbours.items():
            owner = int(self.cell_rank[cid])
            for nb in nbs:
                q = int(self.cell_rank[nb])
                if q != owner and q >= 0:
                    masks[q][cid] = True
        self._halo_masks = masks

    def owned_cells(self, rank: Optional[int] = None) -> np.ndarray:
        r = self.rank if rank is None else int(rank)
        return np.nonzero(self.cell_rank == r)[0].astype(np.int64)

    def halo_cells(self, rank: Optional[int] = None) -> np.ndarray:
        r = self.rank if rank is None else int(rank)
        if r not in self._halo_masks:
            return np.empty((0,), dtype=np.int64)
        return np.nonzero(self._halo_masks[r])[0].astype(np.int64)

    # ------------------------------------------------------------------
    # collectives
    # ------------------------------------------------------------------

    def _exchange(self, particles: ParticleSet) -> ParticleSet:
        dim = self.mesh.dim
        if len(particles) and np.any(particles.cell < 0):
            raise DecompositionError("cannot route unlocated particles")
        dest = self.cell_rank[particles.cell] if len(particles) else np.empty((0,), dtype=np.int64)
        if np.any(dest < 0):
            raise DecompositionError("particle located in a cell without an owner")
        payloads = [particles.take(dest == r).to_arrays() for r in range(self.size)]
        recv = self.comm.alltoall(payloads)
        self.last_migrated = int((dest != self.rank).sum())
        parts = [ParticleSet.from_arrays(dim, p) for p in recv]
        return ParticleSet.concat(parts, dim).sorted_by_pid()

    def decompose(self, particles: ParticleSet, initial: bool = False) -> ParticleSet:
        """Recompute cell ownership and hand each particle to its new owner.

        Returns this rank's owned particles.  A disconnected or otherwise
        invalid partition graph raises ``DecompositionError``.
        """
        self.validate_graph()
        before = self.particle_count(particles)
        loads = self.cell_loads(particles)
        self.cell_rank = self.compute_assignment(loads)
        self._rebuild_halo_maps()
        owned = self._exchange(particles)
        after = self.particle_count(owned)
        if after != before:
            raise DecompositionError(f"particle count changed during decomposition: {before} -> {after}")
        self.n_decompositions += 1
        if initial:
            self.halo = ParticleSet.empty(self.mesh.dim).frozen()
        return owned

    def migrate(self, particles: ParticleSet) -> ParticleSet:
        """Ship particles whose cell is owned elsewhere to the owning rank."""
        return self._exchange(particles)

    def transfer_halo_particles(self, particles: ParticleSet) -> ParticleSet:
        """Synchronisation barrier after Locate.

        Migrates particles that crossed into foreign cells, then overwrites
        the halo replicas with the neighbours' boundary-cell particles.
        The step phases never read ``halo``: nodal consistency comes from
        ``reduce_nodes``.  The halo is a frozen mirror for collaborators that
        need neighbour particles (contact, nonlocal models).
        """
        self.comm.barrier()
        owned = self.migrate(particles)
        dim = self.mesh.dim
        payloads = []
        for q in range(self.size):
            if q == self.rank or not len(owned):
                payloads.append(None)
                continue
            mask = self._halo_masks[q][owned.cell]
            payloads.append(owned.take(mask).to_arrays())
        recv = self.comm.alltoall(payloads)
        parts = [ParticleSet.from_arrays(dim, p) for p in recv if p is not None]
        self.halo = ParticleSet.concat(parts, dim).sorted_by_pid().frozen()
        return owned

    def reduce_nodes(self, *arrays: np.ndarray) -> None:
        """Sum nodal accumulators across ranks in place."""
        if self.size == 1:
            return
        for arr in arrays:
            arr[...] = self.comm.allreduce_sum(arr)

    def particle_count(self, particles: ParticleSet) -> int:
        return int(self.comm.allreduce_sum(np.array([len(particles)], dtype=np.int64))[0])

    def gather(self, particles: ParticleSet, root: int = 0) -> Optional[ParticleSet]:
        parts = self.comm.gather(particles.to_arrays(), root=root)
        if parts is None:
            return None
        dim = self.mesh.dim
        return ParticleSet.concat([ParticleSet.from_arrays(dim, p) for p in parts], dim).sorted_by_pid()
