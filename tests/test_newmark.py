from __future__ import annotations

import numpy as np
import pytest

from impm.comm import SerialComm
from impm.materials import LinearElastic
from impm.mesh import StructuredMesh
from impm.newmark import PHASES, NewmarkParams, NewmarkScheme, PhaseError, StepContext
from impm.particles import MaterialPointOps, strain_increment, velocity_gradient
from impm.partition import Partition
from impm.state import NodeSet, ParticleSet


def _setup(x, v=None, a=None, ncells=(1, 1), activation=None):
    mesh = StructuredMesh(origin=[0.0, 0.0], spacing=[1.0, 1.0], ncells=ncells)
    x = np.asarray(x, dtype=float).reshape(-1, 2)
    n = x.shape[0]
    ps = ParticleSet.empty(2, n)
    ps.pid[:] = np.arange(n)
    ps.x[:] = x
    if v is not None:
        ps.v[:] = v
    if a is not None:
        ps.a[:] = a
    if activation is not None:
        ps.activation_time[:] = activation
    ps.volume[:] = 0.25
    ops = MaterialPointOps({0: LinearElastic(youngs_modulus=1.0e5, poisson_ratio=0.3, density=1000.0)})
    ops.compute_mass(ps, np.arange(n))
    ps.cell[:] = mesh.locate(ps.x)
    nodes = NodeSet.zeros(mesh.n_nodes, 2)
    part = Partition(mesh, SerialComm())
    return mesh, nodes, ps, part, ops


def _ctx(mesh, nodes, ps, part, params, step=0, time=0.0):
    return StepContext(mesh=mesh, nodes=nodes, particles=ps, partition=part, params=params, step=step, time=time)


class _Recorder:
    def __init__(self):
        self.rows = []

    def log(self, **kw):
        self.rows.append(kw)

    def close(self):
        pass


# ---------------------------------------------------------------------------
# phase order
# ---------------------------------------------------------------------------

def test_phase_order_is_fixed_and_each_runs_once():
    mesh, nodes, ps, part, ops = _setup([[0.5, 0.5]])
    rec = _Recorder()
    scheme = NewmarkScheme(NewmarkParams(dt=1.0e-3), ops, trace=rec)
    scheme.run_step(_ctx(mesh, nodes, ps, part, scheme.params))
    assert [r["phase"] for r in rec.rows] == list(PHASES)
    assert PHASES[0] == "initialise" and PHASES[-1] == "locate"


def test_params_validation():
    with pytest.raises(ValueError):
        NewmarkParams(dt=0.0)
    with pytest.raises(ValueError):
        NewmarkParams(dt=1.0, beta=0.0)
    with pytest.raises(ValueError):
        NewmarkParams(dt=1.0, velocity_update="apic")
    with pytest.raises(ValueError):
        NewmarkParams(dt=1.0, damping="cundall", damping_factor=1.5)


# ---------------------------------------------------------------------------
# Newmark identity
# ---------------------------------------------------------------------------

def test_single_particle_rest_scenario_stays_at_rest():
    mesh, nodes, ps, part, ops = _setup([[0.5, 0.5]])
    m0 = ps.total_mass()
    scheme = NewmarkScheme(NewmarkParams(dt=1.0e-3), ops)
    scheme.run_step(_ctx(mesh, nodes, ps, part, scheme.params))
    assert len(nodes) == 4
    for arr in (nodes.velocity, nodes.acceleration, nodes.velocity_new, nodes.acceleration_new, nodes.du):
        np.testing.assert_array_equal(arr, 0.0)
    np.testing.assert_array_equal(ps.v, 0.0)
    np.testing.assert_array_equal(ps.a, 0.0)
    np.testing.assert_array_equal(ps.x, [[0.5, 0.5]])
    assert ps.total_mass() == m0
    assert nodes.mass.sum() == pytest.approx(m0)


def test_free_flight_without_external_force():
    v0 = np.array([[0.3, -0.2]])
    dt = 1.0e-2
    mesh, nodes, ps, part, ops = _setup([[0.4, 0.6]], v=v0)
    scheme = NewmarkScheme(NewmarkParams(dt=dt, beta=0.25, gamma=0.5), ops)
    scheme.run_step(_ctx(mesh, nodes, ps, part, scheme.params))
    np.testing.assert_allclose(ps.v, v0, atol=1e-14)
    np.testing.assert_allclose(ps.a, 0.0, atol=1e-10)
    np.testing.assert_allclose(ps.x, [[0.4, 0.6]] + v0 * dt, atol=1e-14)
    np.testing.assert_allclose(ps.dstrain, 0.0, atol=1e-12)


def test_trapezoidal_rule_for_constant_acceleration():
    g = np.array([0.0, -9.81])
    v0 = np.array([[0.5, 0.0]])
    dt = 1.0e-3
    x0 = np.array([[0.5, 0.5]])
    mesh, nodes, ps, part, ops = _setup(x0, v=v0, a=g[None, :])
    scheme = NewmarkScheme(NewmarkParams(dt=dt, beta=0.25, gamma=0.5, gravity=tuple(g)), ops)
    t = 0.0
    for k in range(3):
        scheme.run_step(_ctx(mesh, nodes, ps, part, scheme.params, step=k, time=t))
        t += dt
    np.testing.assert_allclose(ps.a, g[None, :], atol=1e-9)
    np.testing.assert_allclose(ps.v, v0 + g * t, atol=1e-12)
    np.testing.assert_allclose(ps.x, x0 + v0 * t + 0.5 * g * t * t, atol=1e-12)


def test_corrector_velocity_completes_the_predictor():
    dt = 1.0e-3
    mesh, nodes, ps, part, ops = _setup(
        [[0.25, 0.5], [0.75, 0.5]], v=[[0.1, 0.0], [0.3, 0.0]], a=[[1.0, 0.0], [-1.0, 0.0]]
    )
    scheme = NewmarkScheme(NewmarkParams(dt=dt, gravity=(0.0, -9.81)), ops)
    scheme.run_step(_ctx(mesh, nodes, ps, part, scheme.params))
    np.testing.assert_allclose(nodes.velocity_new, nodes.v_pred + 0.5 * dt * nodes.acceleration_new, atol=1e-14)
    np.testing.assert_allclose(nodes.v_pred, nodes.velocity + 0.5 * dt * nodes.acceleration, atol=1e-14)


def test_strain_increment_follows_the_displacement_increment():
    dt = 1.0e-3
    x0 = np.array([[0.25, 0.5], [0.75, 0.5]])
    mesh, nodes, ps, part, ops = _setup(x0, v=[[0.1, 0.0], [0.3, 0.0]], a=[[1.0, 0.0], [-1.0, 0.0]])
    scheme = NewmarkScheme(NewmarkParams(dt=dt), ops)
    ctx = _ctx(mesh, nodes, ps, part, scheme.params)
    vol0 = ps.volume.copy()
    scheme.run_step(ctx)
    expected = strain_increment(velocity_gradient(ctx.shape, nodes.du), 1.0)
    np.testing.assert_allclose(ps.dstrain, expected, atol=1e-15)
    np.testing.assert_allclose(ps.x, x0 + ctx.shape.gather(nodes.du), atol=1e-15)
    np.testing.assert_allclose(ps.volume, vol0 * (1.0 + expected[:, :3].sum(axis=1)), rtol=1e-14)


# ---------------------------------------------------------------------------
# invariants
# ---------------------------------------------------------------------------

def test_mass_conserved_and_cells_consistent_after_steps():
    rng = np.random.default_rng(3)
    x = rng.uniform(0.2, 2.8, size=(24, 2))
    v = rng.normal(scale=0.5, size=(24, 2))
    mesh, nodes, ps, part, ops = _setup(x, v=v, ncells=(3, 3))
    m0 = ps.total_mass()
    scheme = NewmarkScheme(NewmarkParams(dt=1.0e-3, gravity=(0.0, -9.81)), ops)
    for k in range(5):
        scheme.run_step(_ctx(mesh, nodes, ps, part, scheme.params, step=k, time=k * 1.0e-3))
        assert ps.total_mass() == m0
        assert np.all(mesh.contains(ps.x, ps.cell))
        np.testing.assert_array_equal(ps.cell, mesh.locate(ps.x))


def test_inactive_particle_takes_no_part_in_the_step():
    mesh, nodes, ps, part, ops = _setup([[0.5, 0.5], [0.25, 0.25]], activation=[0.0, 1.0])
    scheme = NewmarkScheme(NewmarkParams(dt=1.0e-3, gravity=(0.0, -1.0)), ops)
    scheme.run_step(_ctx(mesh, nodes, ps, part, scheme.params, time=0.0))
    assert nodes.mass.sum() == pytest.approx(ps.mass[0])
    np.testing.assert_array_equal(ps.v[1], 0.0)
    np.testing.assert_array_equal(ps.x[1], [0.25, 0.25])
    assert ps.v[0, 1] < 0.0


def test_constrained_dofs_stay_fixed():
    mesh, nodes, ps, part, ops = _setup([[0.5, 0.5]], v=[[1.0, 1.0]])
    nodes.constraints[mesh.face_nodes("xmin"), 0] = True
    scheme = NewmarkScheme(NewmarkParams(dt=1.0e-3), ops)
    scheme.run_step(_ctx(mesh, nodes, ps, part, scheme.params))
    ids = mesh.face_nodes("xmin")
    np.testing.assert_array_equal(nodes.velocity_new[ids, 0], 0.0)
    np.testing.assert_array_equal(nodes.du[ids, 0], 0.0)
    np.testing.assert_allclose(nodes.velocity_new[ids, 1], 1.0)


def test_applied_nodal_load_accelerates_particle():
    mesh, nodes, ps, part, ops = _setup([[0.5, 0.5]])
    nodes.applied_force[:, 0] = 1.0
    scheme = NewmarkScheme(NewmarkParams(dt=1.0e-3), ops)
    scheme.run_step(_ctx(mesh, nodes, ps, part, scheme.params))
    assert np.all(nodes.force_ext[:, 0] == 1.0)
    assert ps.v[0, 0] > 0.0


def test_pic_and_cundall_damping_modes():
    g = (0.0, -9.81)
    base = _setup([[0.5, 0.5]], v=[[0.0, -0.1]])
    pic = NewmarkScheme(NewmarkParams(dt=1.0e-3, gravity=g, velocity_update="pic"), base[4])
    pic.run_step(_ctx(*base[:4], pic.params))
    undamped_v = base[2].v.copy()

    damped = _setup([[0.5, 0.5]], v=[[0.0, -0.1]])
    sch = NewmarkScheme(
        NewmarkParams(dt=1.0e-3, gravity=g, velocity_update="pic", damping="cundall", damping_factor=0.5),
        damped[4],
    )
    sch.run_step(_ctx(*damped[:4], sch.params))
    # the damping term acts against the particle velocity
    assert abs(damped[2].a[0, 1]) < 9.81
    assert abs(damped[2].v[0, 1]) < abs(undamped_v[0, 1])


def test_pressure_smoothing_runs_in_stress_phase():
    mesh, nodes, ps, part, ops = _setup([[0.3, 0.3], [0.7, 0.7]], v=[[0.1, 0.0], [-0.1, 0.0]])
    ps.stress[:, :3] = [[-1.0, -1.0, -1.0], [-3.0, -3.0, -3.0]]
    scheme = NewmarkScheme(NewmarkParams(dt=1.0e-3, pressure_smoothing=True), ops)
    scheme.run_step(_ctx(mesh, nodes, ps, part, scheme.params))
    p = ps.stress[:, :3].mean(axis=1)
    assert p[0] == pytest.approx(p[1])


# ---------------------------------------------------------------------------
# solver hook + failures
# ---------------------------------------------------------------------------

class _ZeroSolver:
    name = "zero"

    def __init__(self):
        self.calls = 0

    def solve(self, ctx):
        self.calls += 1
        return np.zeros_like(ctx.nodes.du)


class _BadSolver:
    name = "bad"

    def solve(self, ctx):
        return np.full_like(ctx.nodes.du, np.nan)


def test_installed_solver_replaces_explicit_increment():
    solver = _ZeroSolver()
    mesh, nodes, ps, part, ops = _setup([[0.5, 0.5]], v=[[0.2, 0.0]])
    scheme = NewmarkScheme(NewmarkParams(dt=1.0e-2), ops, solver=solver)
    scheme.run_step(_ctx(mesh, nodes, ps, part, scheme.params))
    assert solver.calls == 1
    np.testing.assert_array_equal(ps.x, [[0.5, 0.5]])
    # du = 0 with v = 0.2: a_new = -v / (beta dt)
    np.testing.assert_allclose(ps.a[0, 0], -0.2 / (0.25 * 1.0e-2))


def test_bad_solver_output_is_a_solve_phase_error():
    mesh, nodes, ps, part, ops = _setup([[0.5, 0.5]])
    scheme = NewmarkScheme(NewmarkParams(dt=1.0e-3), ops, solver=_BadSolver())
    with pytest.raises(PhaseError) as ei:
        scheme.run_step(_ctx(mesh, nodes, ps, part, scheme.params, step=4))
    assert ei.value.phase == "solve"
    assert ei.value.step == 4


def test_particle_leaving_mesh_is_a_locate_error():
    mesh, nodes, ps, part, ops = _setup([[0.9, 0.5]], v=[[50.0, 0.0]])
    scheme = NewmarkScheme(NewmarkParams(dt=1.0e-2), ops)
    with pytest.raises(PhaseError) as ei:
        scheme.run_step(_ctx(mesh, nodes, ps, part, scheme.params))
    assert ei.value.phase == "locate"


def test_numerical_failure_is_reported_with_phase():
    mesh, nodes, ps, part, ops = _setup([[0.5, 0.5]])
    ps.stress[0, 0] = np.nan
    scheme = NewmarkScheme(NewmarkParams(dt=1.0e-3), ops)
    with pytest.raises(PhaseError) as ei:
        scheme.run_step(_ctx(mesh, nodes, ps, part, scheme.params, step=2))
    assert ei.value.phase in ("solve", "stress_strain")
    assert "step=2" in str(ei.value)


class _ExplodingOps(MaterialPointOps):
    def compute_stress(self, particles, ids, dt):
        raise RuntimeError("return mapping diverged")


class _ExplodingSolver:
    name = "exploding"

    def solve(self, ctx):
        raise RuntimeError("factorisation failed")


def test_any_plugin_error_becomes_a_phase_error():
    mesh, nodes, ps, part, ops = _setup([[0.5, 0.5]])
    scheme = NewmarkScheme(NewmarkParams(dt=1.0e-3), ops, solver=_ExplodingSolver())
    with pytest.raises(PhaseError) as ei:
        scheme.run_step(_ctx(mesh, nodes, ps, part, scheme.params, step=7))
    assert ei.value.phase == "solve" and ei.value.step == 7
    assert ei.value.message == "RuntimeError: factorisation failed"

    bad_ops = _ExplodingOps(ops.materials)
    scheme = NewmarkScheme(NewmarkParams(dt=1.0e-3), bad_ops)
    with pytest.raises(PhaseError) as ei:
        scheme.run_step(_ctx(mesh, nodes, ps, part, scheme.params, step=1))
    assert ei.value.phase == "stress_strain"
    assert "return mapping diverged" in ei.value.message
