from __future__ import annotations
import csv
import os
import numpy as np

from ..state import kinetic_energy, momentum
from .manifest import metrics_manifest_payload, write_manifest

class MetricsWriter:
    SCHEMA_NAME = "impm.metrics.csv"
    SCHEMA_VERSION = 1

    def __init__(
        self,
        path: str,
        *,
        dim: int,
        write_output_manifest: bool = True,
    ):
        self.path = path
        self.dim = int(dim)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._f = open(path, "w", newline="", encoding="utf-8")
        self._w = csv.writer(self._f)
        self._columns = ["step", "time", "n_active", "mass", "E_kin"]
        self._columns.extend(f"p_{a}" for a in ("x", "y", "z")[: self.dim])
        self._columns.append("vmax")
        self._w.writerow(self._columns)
        self._f.flush()
        if write_output_manifest:
            mpath = f"{self.path}.manifest.json"
            mp = metrics_manifest_payload(
                path=self.path,
                format_name=self.SCHEMA_NAME,
                schema_version=self.SCHEMA_VERSION,
                columns=list(self._columns),
                dim=self.dim,
            )
            write_manifest(mpath, mp)

    @property
    def columns(self) -> list[str]:
        return list(self._columns)

    def write(self, snapshot) -> None:
        ps = snapshot.particles
        act = ps.active_mask(snapshot.time)
        v = ps.v[act]
        m = ps.mass[act]
        speeds = np.linalg.norm(v, axis=1)
        vmax = float(speeds.max()) if speeds.size else 0.0
        mom = momentum(v, m) if m.size else np.zeros((self.dim,))
        row = [
            int(snapshot.step),
            float(snapshot.time),
            int(act.sum()),
            float(m.sum()),
            kinetic_energy(v, m),
        ]
        row.extend(float(x) for x in mom)
        row.append(vmax)
        self._w.writerow(row)
        self._f.flush()

    def close(self):
        if not self._f.closed:
            self._f.close()
