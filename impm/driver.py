"""Step driver: owns the loop over ``[start, nsteps)``.

Per step ``k`` (simulation time ``t = k * dt``):
  1. rebalance every ``nload_balance_steps`` (not on the first executed
     step, which has just been decomposed at startup / resume);
  2. activate particles with ``activation_time <= t``;
  3. run the Newmark phase sequence;
  4. migrate + halo synchronisation (collective barrier);
  5. snapshot to the writers when ``(k + 1) % output_steps == 0``;
  6. checkpoint when ``(k + 1) % checkpoint_steps == 0``.

A phase failure on any rank, or a failed checkpoint write, aborts the run on
every rank; ``run`` returns a ``RunResult`` carrying the failing step and
phase (``"checkpoint"`` for the write).  Configuration and
decomposition errors propagate as exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional

import numpy as np

from .checkpoint import CheckpointError, CheckpointManager
from .comm import SerialComm
from .config import Config, ConfigError, MeshConfig
from .materials import make_material
from .mesh import StructuredMesh
from .newmark import NewmarkParams, NewmarkScheme, PhaseError, StepContext
from .output import OutputBundle, Snapshot
from .particles import MaterialPointOps, NumericalFailure
from .partition import Partition
from .solvers import make_solver
from .state import NodeSet, ParticleSet, init_particles
from .trace import format_counts


@dataclass
class RunResult:
    ok: bool
    steps_done: int
    failed_step: Optional[int] = None
    failed_phase: Optional[str] = None
    message: str = ""
    start_step: int = 0
    resumed: bool = False


def apply_boundary_conditions(mesh_cfg: MeshConfig, mesh: StructuredMesh, nodes: NodeSet) -> None:
    """Face velocity constraints and concentrated loads; face loads split evenly over face nodes."""
    for c in mesh_cfg.constraints:
        ids = mesh.face_nodes(c.face)
        nodes.constraints[np.ix_(ids, np.asarray(c.dirs, dtype=np.int64))] = True
    for ld in mesh_cfg.loads:
        f = np.asarray(ld.force, dtype=np.float64)
        if ld.face is not None:
            ids = mesh.face_nodes(ld.face)
            nodes.applied_force[ids] += f[None, :] / float(ids.size)
        else:
            if not (0 <= ld.node < mesh.n_nodes):
                raise ConfigError(f"load node {ld.node} is outside the mesh (n_nodes={mesh.n_nodes})")
            nodes.applied_force[ld.node] += f


class StepDriver:
    def __init__(
        self,
        cfg: Config,
        comm=None,
        writers: Optional[List[Any]] = None,
        solver=None,
        ops=None,
        trace=None,
        verbose: bool = True,
    ):
        self.cfg = cfg
        self.comm = comm if comm is not None else SerialComm()
        self.trace = trace
        self.verbose = bool(verbose)
        a = cfg.analysis

        self.mesh = cfg.mesh.build()
        self.dim = self.mesh.dim
        self.nodes = NodeSet.zeros(self.mesh.n_nodes, self.dim)
        apply_boundary_conditions(cfg.mesh, self.mesh, self.nodes)
        self.materials = {m.id: make_material(m.kind, m.params) for m in cfg.materials}
        self.ops = ops if ops is not None else MaterialPointOps(self.materials)
        try:
            self.solver = solver if solver is not None else make_solver(a.solver)
            self.params = NewmarkParams(
                dt=a.dt,
                beta=a.newmark_beta,
                gamma=a.newmark_gamma,
                gravity=tuple(a.gravity),
                velocity_update=a.velocity_update,
                damping=a.damping,
                damping_factor=a.damping_factor,
                pressure_smoothing=a.pressure_smoothing,
            )
        except ValueError as exc:
            raise ConfigError(str(exc)) from exc
        self.scheme = NewmarkScheme(self.params, self.ops, self.solver, trace=trace)
        self.partition = Partition(self.mesh, self.comm)
        self.checkpoint = CheckpointManager(a.checkpoint_dir, self.comm, self.dim, n_nodes=self.mesh.n_nodes)
        # writers are only ever handed to rank 0
        self.output = OutputBundle(writers=list(writers or []))
        self.particles = ParticleSet.empty(self.dim)
        self.start_step = 0
        self.resumed = False
        self._started = False
        self._emit = False

    @property
    def rank(self) -> int:
        return int(self.comm.rank)

    def _log(self, msg: str) -> None:
        if self.verbose and self.rank == 0:
            print(msg, flush=True)

    def _trace(self, step: int, event: str, **kw) -> None:
        if self.trace is not None:
            self.trace.log(step_id=step, phase="driver", event=event, **kw)

    def _trace_decomposition(self, step: int, event: str) -> None:
        if self.trace is None:
            return
        cells = format_counts({
            "owned_cells": self.partition.owned_cells().size,
            "halo_cells": self.partition.halo_cells().size,
        })
        self._trace(step, event, n_particles=len(self.particles),
                    migration_count=self.partition.last_migrated, extra=cells)

    # ------------------------------------------------------------------
    # startup
    # ------------------------------------------------------------------

    def _cold_start(self) -> ParticleSet:
        """Rank 0 generates, locates and weighs every particle; other ranks start empty."""
        ps = ParticleSet.empty(self.dim)
        err = None
        if self.rank == 0:
            ps = init_particles(self.cfg.particles, self.dim, self.mesh.spacing)
            ps.cell[:] = self.mesh.locate(ps.x)
            lost = ps.cell < 0
            if np.any(lost):
                err = (
                    f"{int(lost.sum())} particle(s) lie outside the active mesh "
                    f"(pids={ps.pid[lost][:8].tolist()})"
                )
            else:
                try:
                    self.ops.compute_mass(ps, np.arange(len(ps), dtype=np.int64))
                except NumericalFailure as exc:
                    err = str(exc)
        err = self.comm.bcast(err, root=0)
        if err is not None:
            raise ConfigError(err)
        return ps

    def startup(self, resume: Optional[bool] = None) -> int:
        """Cold start or resume, then the initial decomposition.  Returns the first step index."""
        want_resume = self.cfg.analysis.resume if resume is None else bool(resume)
        self.resumed = False
        if want_resume and self.checkpoint.resume():
            st = self.checkpoint.restored
            self.particles = st.particles
            self.nodes.constraints[...] = st.constraints
            self.nodes.applied_force[...] = st.applied_force
            if st.cell_rank.shape == self.partition.cell_rank.shape:
                self.partition.cell_rank[...] = st.cell_rank
            self.start_step = int(st.step) + 1
            self.resumed = True
            self._log(f"[impm resume] step={st.step} time={st.time:.6g} -> continuing at step={self.start_step}")
        else:
            self.particles = self._cold_start()
            self.start_step = 0
        self.particles = self.partition.decompose(self.particles, initial=not self.resumed)
        self._trace_decomposition(self.start_step, "decompose")
        self._emit = bool(self.comm.bcast(len(self.output) > 0, root=0))
        self._started = True
        n_total = self.partition.particle_count(self.particles)
        self._log(
            f"[impm startup] ranks={self.comm.size} particles={n_total} "
            f"cells={self.mesh.active_cells.size} nodes={self.mesh.n_nodes} solver={self.solver.name}"
        )
        return self.start_step

    # ------------------------------------------------------------------
    # step loop
    # ------------------------------------------------------------------

    def _inject(self, k: int, t: float) -> int:
        """Count (globally) the particles becoming active at this step."""
        prev = None if k == 0 else (k - 1) * self.params.dt
        ps = self.particles
        if prev is None:
            newly = ps.active_mask(t)
            newly &= ps.activation_time > 0.0
        else:
            newly = ps.active_mask(t) & ~ps.active_mask(prev)
        n_new = int(self.comm.allreduce_sum(np.array([int(newly.sum())], dtype=np.int64))[0])
        if n_new:
            self._log(f"[impm step={k}] activated {n_new} particle(s) at t={t:.6g}")
            self._trace(k, "inject", n_particles=n_new)
        return n_new

    def emit(self, step: int, time: float) -> None:
        """Collective: gather particles to rank 0 and push one snapshot to every writer."""
        everything = self.partition.gather(self.particles)
        if self.rank == 0:
            self.output.on_step(Snapshot(step=int(step), time=float(time), particles=everything))
        self._trace(step, "output", n_particles=len(self.particles))

    def run(self) -> RunResult:
        if not self._started:
            self.startup()
        a = self.cfg.analysis
        dt = self.params.dt
        steps_done = 0
        for k in range(self.start_step, a.nsteps):
            t = k * dt
            if a.nload_balance_steps > 0 and k % a.nload_balance_steps == 0 and k != self.start_step:
                self.particles = self.partition.decompose(self.particles)
                self._trace_decomposition(k, "rebalance")
            self._inject(k, t)

            ctx = StepContext(
                mesh=self.mesh,
                nodes=self.nodes,
                particles=self.particles,
                partition=self.partition,
                params=self.params,
                step=k,
                time=t,
            )
            failure = None
            try:
                self.scheme.run_step(ctx)
            except PhaseError as exc:
                failure = (int(k), exc.phase, exc.message)
            failures = [f for f in self.comm.allgather(failure) if f is not None]
            if failures:
                step, phase, msg = failures[0]
                self._log(f"[impm step={step}] FAILED phase={phase}: {msg}")
                return RunResult(
                    ok=False,
                    steps_done=steps_done,
                    failed_step=step,
                    failed_phase=phase,
                    message=msg,
                    start_step=self.start_step,
                    resumed=self.resumed,
                )

            self.particles = self.partition.transfer_halo_particles(self.particles)
            self._trace(k, "halo", n_particles=len(self.particles), n_halo=len(self.partition.halo),
                        migration_count=self.partition.last_migrated)
            steps_done += 1

            if (k + 1) % a.output_steps == 0:
                if self._emit:
                    self.emit(k, t)
                n_active = int(self.comm.allreduce_sum(
                    np.array([ctx.active.size], dtype=np.int64))[0])
                self._log(f"[impm step={k}] t={t:.6g} active={n_active} migrated={self.partition.last_migrated}")
            if a.checkpoint_steps > 0 and (k + 1) % a.checkpoint_steps == 0:
                try:
                    path = self.checkpoint.save(k, t, self.particles, self.partition, self.nodes)
                except CheckpointError as exc:
                    self._log(f"[impm step={k}] FAILED phase=checkpoint: {exc}")
                    return RunResult(
                        ok=False,
                        steps_done=steps_done,
                        failed_step=int(k),
                        failed_phase="checkpoint",
                        message=str(exc),
                        start_step=self.start_step,
                        resumed=self.resumed,
                    )
                self._trace(k, "checkpoint", n_particles=len(self.particles))
                if path is not None:
                    self._log(f"[impm checkpoint] step={k} -> {path}")

        return RunResult(
            ok=True,
            steps_done=steps_done,
            start_step=self.start_step,
            resumed=self.resumed,
        )

    def final_particles(self) -> Optional[ParticleSet]:
        """Collective; every particle sorted by pid on rank 0, None elsewhere."""
        return self.partition.gather(self.particles)

    def close(self) -> None:
        self.output.close()
        if self.trace is not None:
            self.trace.close()


def run_simulation(cfg: Config, comm=None, writers=None, solver=None, trace=None,
                   resume: Optional[bool] = None, verbose: bool = True):
    """Build a driver, run it and return ``(result, final particles on rank 0)``."""
    driver = StepDriver(cfg, comm=comm, writers=writers, solver=solver, trace=trace, verbose=verbose)
    try:
        driver.startup(resume=resume)
        result = driver.run()
        final = driver.final_particles()
    finally:
        driver.close()
    return result, final
