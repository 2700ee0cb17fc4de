from __future__ import annotations

import numpy as np
import pytest

from impm.comm import SerialComm, run_local_group
from impm.mesh import StructuredMesh
from impm.partition import DecompositionError, Partition
from impm.state import ParticleSet


def _mesh(ncells=(4, 4), **kw) -> StructuredMesh:
    return StructuredMesh(origin=[0.0, 0.0], spacing=[1.0, 1.0], ncells=ncells, **kw)


def _particles(mesh: StructuredMesh, n: int = 60, seed: int = 11) -> ParticleSet:
    rng = np.random.default_rng(seed)
    hi = np.asarray(mesh.ncells, dtype=float) * mesh.spacing
    ps = ParticleSet.empty(mesh.dim, n)
    ps.pid[:] = np.arange(n)
    ps.x[:] = rng.uniform(0.01, 1.0, size=(n, mesh.dim)) * (hi - 0.02)
    ps.mass[:] = 1.0
    ps.state_vars[:, 0] = np.arange(n) * 0.5
    ps.cell[:] = mesh.locate(ps.x)
    return ps


# ---------------------------------------------------------------------------
# assignment
# ---------------------------------------------------------------------------

def test_serial_decompose_keeps_everything_on_rank0():
    mesh = _mesh()
    ps = _particles(mesh)
    part = Partition(mesh, SerialComm())
    owned = part.decompose(ps, initial=True)
    assert np.all(part.cell_rank == 0)
    np.testing.assert_array_equal(owned.pid, np.sort(ps.pid))
    assert part.n_decompositions == 1
    assert len(part.halo) == 0


def test_assignment_is_balanced_and_contiguous_in_morton_order():
    class _Two:
        rank, size = 0, 2

    mesh = _mesh()
    part = Partition(mesh, _Two())
    cell_rank = part.compute_assignment(np.zeros(mesh.n_cells))
    assert np.bincount(cell_rank, minlength=2).tolist() == [8, 8]
    ranks_along_curve = cell_rank[mesh.morton_order()]
    assert np.all(np.diff(ranks_along_curve) >= 0)


def test_assignment_never_starves_a_rank():
    class _Four:
        rank, size = 0, 4

    mesh = _mesh()
    loads = np.zeros(mesh.n_cells)
    loads[0] = 1.0e6
    cell_rank = Partition(mesh, _Four()).compute_assignment(loads)
    assert sorted(np.unique(cell_rank).tolist()) == [0, 1, 2, 3]


def test_inactive_cells_are_unowned():
    mesh = _mesh(inactive_cells=[15])
    part = Partition(mesh, SerialComm())
    part.decompose(_particles(mesh, n=0), initial=True)
    assert part.cell_rank[15] == -1


# ---------------------------------------------------------------------------
# graph validation
# ---------------------------------------------------------------------------

def test_disconnected_graph_is_fatal():
    mesh = _mesh(ncells=(3, 1), inactive_cells=[1])
    with pytest.raises(DecompositionError, match="disconnected"):
        Partition(mesh, SerialComm()).decompose(ParticleSet.empty(2), initial=True)


def test_empty_graph_is_fatal():
    mesh = _mesh(ncells=(1, 1), inactive_cells=[0])
    with pytest.raises(DecompositionError):
        Partition(mesh, SerialComm()).decompose(ParticleSet.empty(2), initial=True)


def test_more_ranks_than_cells_is_fatal():
    mesh = _mesh(ncells=(2, 1))

    def fn(comm):
        return Partition(mesh, comm).decompose(ParticleSet.empty(2), initial=True)

    with pytest.raises(DecompositionError):
        run_local_group(3, fn)


def test_unlocated_particle_cannot_be_routed():
    mesh = _mesh()
    ps = _particles(mesh, n=3)
    ps.cell[1] = -1
    with pytest.raises(DecompositionError):
        Partition(mesh, SerialComm()).decompose(ps, initial=True)


# ---------------------------------------------------------------------------
# multi-rank redistribution
# ---------------------------------------------------------------------------

def _run_decompose(size: int):
    mesh = _mesh()
    full = _particles(mesh)

    def fn(comm):
        part = Partition(mesh, comm)
        mine = full if comm.rank == 0 else ParticleSet.empty(2)
        owned = part.decompose(mine, initial=True)
        again = part.decompose(owned)
        return part.cell_rank.copy(), owned, again

    return mesh, full, run_local_group(size, fn)


@pytest.mark.parametrize("size", [2, 3, 4])
def test_decompose_preserves_every_particle(size):
    mesh, full, out = _run_decompose(size)
    for idx in (1, 2):
        pids = np.concatenate([o[idx].pid for o in out])
        assert pids.size == len(full)
        assert np.unique(pids).size == len(full)
    for rank, (cell_rank, owned, again) in enumerate(out):
        assert np.all(cell_rank[owned.cell] == rank)
        np.testing.assert_array_equal(np.sort(owned.pid), owned.pid)
        np.testing.assert_array_equal(owned.pid, again.pid)
        # the full record travels with the particle
        np.testing.assert_array_equal(owned.state_vars[:, 0], owned.pid * 0.5)
        np.testing.assert_array_equal(owned.x, full.x[owned.pid])
    assert all(np.array_equal(out[0][0], o[0]) for o in out)


def test_migrate_and_halo_sync():
    mesh = _mesh()
    full = _particles(mesh)

    def fn(comm):
        part = Partition(mesh, comm)
        owned = part.decompose(full if comm.rank == 0 else ParticleSet.empty(2), initial=True)
        # move this rank's first particle into a cell owned by the next rank
        moved_pid = None
        if len(owned):
            target = int(part.owned_cells((comm.rank + 1) % comm.size)[0])
            lo = mesh.origin + mesh.cell_ijk(np.array([target]))[0] * mesh.spacing
            owned.x[0] = lo + 0.5 * mesh.spacing
            owned.cell[0] = target
            moved_pid = int(owned.pid[0])
        owned = part.transfer_halo_particles(owned)
        return comm.rank, part, owned, moved_pid

    out = run_local_group(2, fn)
    total = sum(len(o[2]) for o in out)
    assert total == len(full)
    for rank, part, owned, moved_pid in out:
        assert np.all(part.cell_rank[owned.cell] == rank)
        other = out[1 - rank]
        if other[3] is not None:
            assert other[3] in owned.pid.tolist()
        halo = part.halo
        assert not halo.x.flags.writeable
        assert not set(halo.pid.tolist()) & set(owned.pid.tolist())
        if len(halo):
            assert np.all(part.cell_rank[halo.cell] != rank)
            assert set(halo.cell.tolist()) <= set(part.halo_cells(rank).tolist())
        expected = other[2].take(np.isin(other[2].cell, part.halo_cells(rank)))
        np.testing.assert_array_equal(halo.pid, expected.pid)


def test_reduce_nodes_sums_across_ranks():
    mesh = _mesh()

    def fn(comm):
        part = Partition(mesh, comm)
        a = np.full((mesh.n_nodes,), comm.rank + 1.0)
        b = np.ones((mesh.n_nodes, 2))
        part.reduce_nodes(a, b)
        return a, b, part.particle_count(ParticleSet.empty(2, comm.rank))

    for a, b, count in run_local_group(3, fn):
        np.testing.assert_array_equal(a, 6.0)
        np.testing.assert_array_equal(b, 3.0)
        assert count == 3


def test_gather_returns_sorted_set_on_root_only():
    mesh = _mesh()
    full = _particles(mesh, n=20)

    def fn(comm):
        part = Partition(mesh, comm)
        owned = part.decompose(full if comm.rank == 0 else ParticleSet.empty(2), initial=True)
        return part.gather(owned)

    out = run_local_group(2, fn)
    np.testing.assert_array_equal(out[0].pid, np.arange(20))
    assert out[1] is None
