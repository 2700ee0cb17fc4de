"""Newmark predictor-corrector step for the material point method.

One call to ``NewmarkScheme.run_step`` executes ``PHASES`` in order, exactly
once each.  Within a phase, per-particle and per-node work is independent
except nodal accumulation, which is a commutative sum (``np.add.at`` locally,
``Partition.reduce_nodes`` across ranks) completed before any node is read.

Newmark relations used by predictor / corrector:
    du_pred = dt*v + (1/2 - beta)*dt**2*a
    v_pred  = v + (1 - gamma)*dt*a
    a_new   = du/(beta*dt**2) - v/(beta*dt) - (1/(2*beta) - 1)*a
    v_new   = v_pred + gamma*dt*a_new

Strain increments are taken from grad(du), the same nodal increment that
moves the particles.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

from .constants import MASS_TOLERANCE
from .mesh import StructuredMesh
from .particles import NumericalFailure, ParticleOps, smooth_pressure
from .shapefn import LinearShapeFunction, ShapeValues
from .solvers import ExplicitFallbackSolver, LinearSystemSolver
from .state import NodeSet, ParticleSet

PHASES: Tuple[str, ...] = (
    "initialise",
    "nodal_kinematics",
    "predictor",
    "forces",
    "solve",
    "corrector",
    "particle_kinematics",
    "stress_strain",
    "locate",
)

VELOCITY_UPDATES = ("flip", "pic")
DAMPING_KINDS = ("none", "cundall")


class PhaseError(RuntimeError):
    def __init__(self, phase: str, message: str, step: Optional[int] = None):
        self.phase = str(phase)
        self.step = step
        self.message = str(message)
        where = f"phase={self.phase}" if step is None else f"step={step} phase={self.phase}"
        super().__init__(f"[{where}] {self.message}")


@dataclass(frozen=True)
class NewmarkParams:
    dt: float
    beta: float = 0.25
    gamma: float = 0.5
    gravity: Tuple[float, ...] = ()
    velocity_update: str = "flip"
    damping: str = "none"
    damping_factor: float = 0.0
    pressure_smoothing: bool = False

    def __post_init__(self):
        if not self.dt > 0.0:
            raise ValueError("dt must be > 0")
        if not self.beta > 0.0:
            raise ValueError("newmark_beta must be > 0")
        if not self.gamma >= 0.0:
            raise ValueError("newmark_gamma must be >= 0")
        if self.velocity_update not in VELOCITY_UPDATES:
            raise ValueError(f"velocity_update must be one of {VELOCITY_UPDATES}")
        if self.damping not in DAMPING_KINDS:
            raise ValueError(f"damping must be one of {DAMPING_KINDS}")
        if not (0.0 <= self.damping_factor < 1.0):
            raise ValueError("damping_factor must be in [0, 1)")


@dataclass
class StepContext:
    """Everything a phase may touch; passed explicitly instead of module state."""

    mesh: StructuredMesh
    nodes: NodeSet
    particles: ParticleSet
    partition: object
    params: NewmarkParams
    step: int = 0
    time: float = 0.0
    active: np.ndarray = field(default_factory=lambda: np.empty((0,), dtype=np.int64))
    shape: Optional[ShapeValues] = None


def _stress_tensor(voigt: np.ndarray, dim: int) -> np.ndarray:
    n = voigt.shape[0]
    s = np.empty((n, dim, dim), dtype=np.float64)
    s[:, 0, 0] = voigt[:, 0]
    s[:, 1, 1] = voigt[:, 1]
    s[:, 0, 1] = s[:, 1, 0] = voigt[:, 3]
    if dim == 3:
        s[:, 2, 2] = voigt[:, 2]
        s[:, 1, 2] = s[:, 2, 1] = voigt[:, 4]
        s[:, 0, 2] = s[:, 2, 0] = voigt[:, 5]
    return s


def _divide_by_mass(nodes: NodeSet, arr: np.ndarray) -> np.ndarray:
    out = np.zeros_like(arr)
    has = nodes.mass > MASS_TOLERANCE
    out[has] = arr[has] / nodes.mass[has, None]
    return out


class NewmarkScheme:
    def __init__(
        self,
        params: NewmarkParams,
        ops: ParticleOps,
        solver: Optional[LinearSystemSolver] = None,
        trace=None,
    ):
        self.params = params
        self.ops = ops
        self.solver = solver if solver is not None else ExplicitFallbackSolver()
        self.trace = trace
        self._shapefn: Optional[LinearShapeFunction] = None

    def _shape_function(self, mesh: StructuredMesh) -> LinearShapeFunction:
        if self._shapefn is None or self._shapefn.mesh is not mesh:
            self._shapefn = LinearShapeFunction(mesh)
        return self._shapefn

    def run_step(self, ctx: StepContext) -> None:
        for phase in PHASES:
            try:
                getattr(self, phase)(ctx)
            except PhaseError as exc:
                if exc.step is None:
                    raise PhaseError(exc.phase, exc.message, step=ctx.step) from exc
                raise
            except (NumericalFailure, ValueError, FloatingPointError) as exc:
                raise PhaseError(phase, str(exc), step=ctx.step) from exc
            except Exception as exc:
                # plug-in solvers and particle ops may raise anything
                raise PhaseError(phase, f"{type(exc).__name__}: {exc}", step=ctx.step) from exc
            if self.trace is not None:
                self.trace.log(step_id=ctx.step, phase=phase, event="done", n_particles=int(ctx.active.size))

    # ------------------------------------------------------------------
    # phases
    # ------------------------------------------------------------------

    def initialise(self, ctx: StepContext) -> None:
        ctx.nodes.reset()
        ctx.shape = None
        ctx.active = ctx.particles.active_ids(ctx.time)

    def nodal_kinematics(self, ctx: StepContext) -> None:
        ps, nodes, ids = ctx.particles, ctx.nodes, ctx.active
        if np.any(ps.cell[ids] < 0):
            raise PhaseError("nodal_kinematics", "active particle without an owning cell")
        shape = self._shape_function(ctx.mesh).evaluate(ps.x[ids], ps.cell[ids])
        ctx.shape = shape
        m = ps.mass[ids]
        shape.scatter(nodes.mass, m)
        shape.scatter(nodes.momentum, m[:, None] * ps.v[ids])
        shape.scatter(nodes.inertia, m[:, None] * ps.a[ids])
        ctx.partition.reduce_nodes(nodes.mass, nodes.momentum, nodes.inertia)
        nodes.velocity[...] = _divide_by_mass(nodes, nodes.momentum)
        nodes.acceleration[...] = _divide_by_mass(nodes, nodes.inertia)
        nodes.apply_constraints(nodes.velocity, nodes.acceleration)

    def predictor(self, ctx: StepContext) -> None:
        nodes, p = ctx.nodes, self.params
        dt, beta, gamma = p.dt, p.beta, p.gamma
        nodes.du_pred[...] = dt * nodes.velocity + (0.5 - beta) * dt * dt * nodes.acceleration
        nodes.v_pred[...] = nodes.velocity + (1.0 - gamma) * dt * nodes.acceleration

    def forces(self, ctx: StepContext) -> None:
        ps, nodes, ids, shape = ctx.particles, ctx.nodes, ctx.active, ctx.shape
        dim = ctx.mesh.dim
        m = ps.mass[ids]
        if len(self.params.gravity):
            g = np.asarray(self.params.gravity, dtype=np.float64)
            shape.scatter(nodes.force_ext, m[:, None] * g[None, :])
        # f_int_I = -V_p * sigma_p . grad N_I
        sig = _stress_tensor(ps.stress[ids], dim)
        f = -ps.volume[ids][:, None, None] * np.einsum("nij,nkj->nki", sig, shape.dN)
        np.add.at(nodes.force_int, shape.node_ids.ravel(), f.reshape(-1, dim))
        ctx.partition.reduce_nodes(nodes.force_ext, nodes.force_int)
        # concentrated loads are replicated on every rank: add after the reduction
        nodes.force_ext += nodes.applied_force

    def solve(self, ctx: StepContext) -> None:
        nodes, p = ctx.nodes, self.params
        du = self.solver.solve(ctx)
        if du is None:
            du = nodes.du_pred + p.beta * p.dt * p.dt * _divide_by_mass(nodes, nodes.force)
        else:
            du = np.asarray(du, dtype=np.float64)
            if du.shape != nodes.du.shape:
                raise PhaseError("solve", f"solver returned shape {du.shape}, expected {nodes.du.shape}")
            if not np.all(np.isfinite(du)):
                raise PhaseError("solve", "solver returned non-finite displacement increment")
        nodes.du[...] = du
        nodes.apply_constraints(nodes.du)

    def corrector(self, ctx: StepContext) -> None:
        nodes, p = ctx.nodes, self.params
        dt, beta, gamma = p.dt, p.beta, p.gamma
        a_new = (
            nodes.du / (beta * dt * dt)
            - nodes.velocity / (beta * dt)
            - (1.0 / (2.0 * beta) - 1.0) * nodes.acceleration
        )
        nodes.acceleration_new[...] = a_new
        nodes.velocity_new[...] = nodes.v_pred + gamma * dt * a_new
        nodes.apply_constraints(nodes.velocity_new, nodes.acceleration_new)

    def particle_kinematics(self, ctx: StepContext) -> None:
        ps, nodes, ids, shape, p = ctx.particles, ctx.nodes, ctx.active, ctx.shape, self.params
        if ids.size == 0:
            return
        a_new = shape.gather(nodes.acceleration_new)
        a_damped = a_new
        if p.damping == "cundall":
            a_damped = a_new - p.damping_factor * np.abs(a_new) * np.sign(ps.v[ids])
        if p.velocity_update == "flip":
            a_old = shape.gather(nodes.acceleration)
            ps.v[ids] = ps.v[ids] + p.dt * ((1.0 - p.gamma) * a_old + p.gamma * a_damped)
        else:
            ps.v[ids] = shape.gather(nodes.velocity_new) + p.dt * p.gamma * (a_damped - a_new)
        ps.x[ids] = ps.x[ids] + shape.gather(nodes.du)
        ps.a[ids] = a_damped

    def stress_strain(self, ctx: StepContext) -> None:
        ps, ids, dt = ctx.particles, ctx.active, self.params.dt
        # du / dt is the step-average velocity; strain and positions share one increment
        self.ops.compute_strain(ps, ids, ctx.shape, ctx.nodes.du / dt, dt)
        self.ops.update_volume(ps, ids)
        self.ops.compute_stress(ps, ids, dt)
        if self.params.pressure_smoothing:
            smooth_pressure(ps, ids)

    def locate(self, ctx: StepContext) -> None:
        ps, ids = ctx.particles, ctx.active
        if ids.size == 0:
            return
        cells = ctx.mesh.locate(ps.x[ids])
        lost = cells < 0
        if np.any(lost):
            pids = ps.pid[ids[lost]]
            raise PhaseError("locate", f"{int(lost.sum())} particle(s) left the mesh (pids={pids[:8].tolist()})")
        ps.cell[ids] = cells
