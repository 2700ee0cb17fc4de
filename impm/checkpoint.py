"""Checkpoint save / resume.

Layout inside ``directory``:
  checkpoint.npz       step, time, particle record arrays (``p_<field>``),
                       cell_rank, node constraints, applied nodal loads
  checkpoint.json      manifest: schema, step, sizes, sha256 of the npz

The npz is written first and the manifest last (both via temp file +
rename), so a manifest always describes a complete archive.  All particles
are gathered to rank 0 for writing; on resume they come back on rank 0 and
the driver's post-resume decomposition scatters them.
"""

from __future__ import annotations

import os
import warnings
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .io.manifest import checkpoint_manifest_payload, read_manifest, sha256_file, write_manifest
from .state import PARTICLE_FIELD_NAMES, NodeSet, ParticleSet


class CheckpointError(RuntimeError):
    pass


@dataclass
class ResumeState:
    step: int
    time: float
    particles: ParticleSet
    cell_rank: np.ndarray
    constraints: np.ndarray
    applied_force: np.ndarray
    n_ranks: int


class CheckpointManager:
    SCHEMA_NAME = "impm.checkpoint"
    SCHEMA_VERSION = 1

    def __init__(self, directory: str, comm, dim: int, n_nodes: Optional[int] = None):
        self.directory = str(directory)
        self.comm = comm
        self.dim = int(dim)
        self.n_nodes = None if n_nodes is None else int(n_nodes)
        self.restored: Optional[ResumeState] = None

    @property
    def npz_path(self) -> str:
        return os.path.join(self.directory, "checkpoint.npz")

    @property
    def manifest_path(self) -> str:
        return os.path.join(self.directory, "checkpoint.json")

    # ------------------------------------------------------------------
    # save
    # ------------------------------------------------------------------

    def save(self, step: int, time: float, particles: ParticleSet, partition, nodes: NodeSet) -> Optional[str]:
        """Collective: gather to rank 0, write, agree on the outcome.

        Returns the manifest path on rank 0.  A failed write raises
        ``CheckpointError`` on every rank.
        """
        everything = partition.gather(particles)
        path = None
        reason = None
        if self.comm.rank == 0:
            try:
                path = self._write(int(step), float(time), everything, partition.cell_rank, nodes)
            except (OSError, ValueError) as exc:
                reason = f"{type(exc).__name__}: {exc}"
        reason = self.comm.bcast(reason, root=0)
        if reason is not None:
            raise CheckpointError(f"checkpoint save at step {int(step)} failed ({reason})")
        return path

    def _write(self, step: int, time: float, particles: ParticleSet, cell_rank: np.ndarray, nodes: NodeSet) -> str:
        os.makedirs(self.directory, exist_ok=True)
        arrays = {f"p_{name}": arr for name, arr in particles.to_arrays().items()}
        arrays["step"] = np.asarray(step, dtype=np.int64)
        arrays["time"] = np.asarray(time, dtype=np.float64)
        arrays["cell_rank"] = np.asarray(cell_rank, dtype=np.int64)
        arrays["constraints"] = np.asarray(nodes.constraints, dtype=bool)
        arrays["applied_force"] = np.asarray(nodes.applied_force, dtype=np.float64)
        tmp = f"{self.npz_path}.tmp"
        try:
            with open(tmp, "wb") as f:
                np.savez(f, **arrays)
            os.replace(tmp, self.npz_path)
        finally:
            if os.path.exists(tmp):
                os.remove(tmp)
        payload = checkpoint_manifest_payload(
            path=self.npz_path,
            format_name=self.SCHEMA_NAME,
            schema_version=self.SCHEMA_VERSION,
            step=step,
            time=time,
            dim=self.dim,
            n_particles=len(particles),
            n_ranks=int(self.comm.size),
            sha256=sha256_file(self.npz_path),
        )
        return write_manifest(self.manifest_path, payload)

    # ------------------------------------------------------------------
    # resume
    # ------------------------------------------------------------------

    def _read(self) -> ResumeState:
        if not os.path.isfile(self.manifest_path):
            raise CheckpointError(f"no checkpoint manifest at {self.manifest_path!r}")
        man = read_manifest(self.manifest_path)
        schema = man.get("schema", {})
        if schema.get("name") != self.SCHEMA_NAME or int(schema.get("version", -1)) != self.SCHEMA_VERSION:
            raise CheckpointError(f"unsupported checkpoint schema: {schema!r}")
        if int(man.get("dim", -1)) != self.dim:
            raise CheckpointError(f"checkpoint dim {man.get('dim')} does not match mesh dim {self.dim}")
        if not os.path.isfile(self.npz_path):
            raise CheckpointError(f"checkpoint archive missing: {self.npz_path!r}")
        digest = sha256_file(self.npz_path)
        if digest != man.get("sha256"):
            raise CheckpointError("checkpoint archive sha256 mismatch")
        with np.load(self.npz_path, allow_pickle=False) as z:
            arrays = {name: z[f"p_{name}"] for name in PARTICLE_FIELD_NAMES}
            step = int(z["step"])
            time = float(z["time"])
            cell_rank = np.array(z["cell_rank"], dtype=np.int64)
            constraints = np.array(z["constraints"], dtype=bool)
            applied_force = np.array(z["applied_force"], dtype=np.float64)
        particles = ParticleSet.from_arrays(self.dim, arrays)
        if step != int(man.get("step", -1)) or len(particles) != int(man.get("n_particles", -1)):
            raise CheckpointError("checkpoint manifest disagrees with archive contents")
        if self.n_nodes is not None and constraints.shape != (self.n_nodes, self.dim):
            raise CheckpointError(
                f"checkpoint node sets have shape {constraints.shape}, mesh needs {(self.n_nodes, self.dim)}"
            )
        if applied_force.shape != constraints.shape:
            raise CheckpointError(
                f"checkpoint applied loads have shape {applied_force.shape}, constraints {constraints.shape}"
            )
        return ResumeState(
            step=step,
            time=time,
            particles=particles,
            cell_rank=cell_rank,
            constraints=constraints,
            applied_force=applied_force,
            n_ranks=int(man.get("n_ranks", 1)),
        )

    def try_resume(self) -> Optional[ResumeState]:
        """Collective.  Rank 0 reads; every rank gets the same outcome."""
        state = None
        reason = ""
        if self.comm.rank == 0:
            try:
                state = self._read()
            except (OSError, ValueError, KeyError, CheckpointError) as exc:
                reason = f"{type(exc).__name__}: {exc}"
        head = None
        if state is not None:
            head = {
                "step": state.step,
                "time": state.time,
                "cell_rank": state.cell_rank,
                "constraints": state.constraints,
                "applied_force": state.applied_force,
                "n_ranks": state.n_ranks,
            }
        head = self.comm.bcast(head, root=0)
        if head is None:
            if self.comm.rank == 0:
                warnings.warn(f"checkpoint resume failed ({reason}); cold start", RuntimeWarning)
            return None
        if state is None:
            state = ResumeState(particles=ParticleSet.empty(self.dim), **head)
        return state

    def resume(self) -> bool:
        self.restored = self.try_resume()
        return self.restored is not None
