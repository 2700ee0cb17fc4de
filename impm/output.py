from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from .io.dump import ParticleDumpWriter
from .io.metrics import MetricsWriter
from .state import ParticleSet


@dataclass(frozen=True)
class Snapshot:
    step: int
    time: float
    particles: ParticleSet


@dataclass
class OutputBundle:
    """Fan-out of one snapshot to every writer; writers need write(snapshot) and close()."""

    writers: List[object] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.writers)

    def on_step(self, snapshot: Snapshot) -> None:
        for w in self.writers:
            w.write(snapshot)

    def close(self):
        for w in self.writers:
            w.close()


@dataclass(frozen=True)
class OutputSpec:
    dump_path: Optional[str]
    metrics_path: Optional[str]
    dim: int
    bounds: list
    dump_compression: str = "none"
    write_output_manifest: bool = True


def make_output_bundle(spec: OutputSpec | None, extra_writers: Optional[List[object]] = None) -> OutputBundle:
    """Create output writers from an OutputSpec.

    Note: cadence (output_steps) is enforced by the caller, and only the root
    rank should build a bundle with file writers.
    """
    writers: List[object] = list(extra_writers or [])
    if spec is None:
        return OutputBundle(writers=writers)
    if spec.dump_path:
        writers.append(
            ParticleDumpWriter(
                spec.dump_path,
                dim=spec.dim,
                bounds=spec.bounds,
                compression=str(spec.dump_compression),
                write_output_manifest=bool(spec.write_output_manifest),
            )
        )
    if spec.metrics_path:
        writers.append(
            MetricsWriter(
                spec.metrics_path,
                dim=spec.dim,
                write_output_manifest=bool(spec.write_output_manifest),
            )
        )
    return OutputBundle(writers=writers)
