from __future__ import annotations
import gzip
import os
import numpy as np

from .manifest import dump_manifest_payload, write_manifest

_AXES = ("x", "y", "z")


class ParticleDumpWriter:
    """Plain-text particle dump, one frame per snapshot (LAMMPS-dump layout)."""
    SCHEMA_NAME = "impm.particles.dump"
    SCHEMA_VERSION = 1

    def __init__(
        self,
        path: str,
        *,
        dim: int,
        bounds: list[tuple[float, float]],
        compression: str = "none",
        write_output_manifest: bool = True,
    ):
        self.path = path
        self.dim = int(dim)
        self.bounds = [(float(lo), float(hi)) for lo, hi in bounds]
        if len(self.bounds) != self.dim:
            raise ValueError("dump bounds must have one (lo, hi) pair per dimension")

        self._compression = str(compression).strip().lower() or "none"
        if self._compression not in ("none", "gz"):
            raise ValueError("compression must be one of: none, gz")

        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        if self._compression == "gz":
            self._f = gzip.open(path, "wt", encoding="utf-8")
        else:
            self._f = open(path, "w", encoding="utf-8")

        if write_output_manifest:
            mpath = f"{self.path}.manifest.json"
            mp = dump_manifest_payload(
                path=self.path,
                format_name=self.SCHEMA_NAME,
                schema_version=self.SCHEMA_VERSION,
                columns=self.columns(),
                dim=self.dim,
                bounds=self.bounds,
                compression=self._compression,
            )
            write_manifest(mpath, mp)

    def columns(self) -> list[str]:
        ax = list(_AXES[: self.dim])
        cols = ["id", "material", "cell", "active"]
        cols.extend(ax)
        cols.extend(f"v{a}" for a in ax)
        cols.extend(["mass", "volume", "sxx", "syy", "szz", "sxy", "syz", "sxz"])
        return cols

    def write(self, snapshot) -> None:
        ps = snapshot.particles
        n = len(ps)
        active = ps.active_mask(snapshot.time)
        f = self._f
        f.write("ITEM: TIMESTEP\n")
        f.write(f"{int(snapshot.step)}\n")
        f.write("ITEM: TIME\n")
        f.write(f"{float(snapshot.time):.10g}\n")
        f.write("ITEM: NUMBER OF PARTICLES\n")
        f.write(f"{n}\n")
        f.write("ITEM: BOX BOUNDS " + " ".join("ff" for _ in range(self.dim)) + "\n")
        for lo, hi in self.bounds:
            f.write(f"{lo:.8f} {hi:.8f}\n")
        f.write("ITEM: PARTICLES " + " ".join(self.columns()) + "\n")
        for i in range(n):
            row = [
                f"{int(ps.pid[i])}",
                f"{int(ps.material_id[i])}",
                f"{int(ps.cell[i])}",
                f"{int(active[i])}",
            ]
            row.extend(f"{ps.x[i, d]:.8f}" for d in range(self.dim))
            row.extend(f"{ps.v[i, d]:.8f}" for d in range(self.dim))
            row.append(f"{ps.mass[i]:.8e}")
            row.append(f"{ps.volume[i]:.8e}")
            row.extend(f"{ps.stress[i, c]:.8e}" for c in range(6))
            f.write(" ".join(row) + "\n")
        f.flush()

    def close(self):
        if not self._f.closed:
            self._f.close()
