from __future__ import annotations
import csv
import os
import time
import warnings


def format_counts(counts: dict) -> str:
    """Compact ``k=v`` list of the non-zero entries, sorted by key."""
    keys = []
    for k, v in sorted(counts.items()):
        try:
            if int(v) != 0:
                keys.append(f"{k}={int(v)}")
        except (TypeError, ValueError):
            continue
    return ",".join(keys)


class StepTraceLogger:
    """Per-rank CSV trace of step phases and driver events (rebalance, halo, output, checkpoint)."""

    COLUMNS = [
        "wall_time", "rank", "step_id", "phase", "event",
        "n_particles", "n_halo", "migration_count", "extra",
    ]

    def __init__(self, path: str, *, rank: int, enabled: bool = True):
        self.enabled = bool(enabled)
        self.rank = int(rank)
        self.start = time.perf_counter()
        self.path = path
        if not self.enabled:
            self._f = None
            self._w = None
            return
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._f = open(path, "w", newline="", encoding="utf-8")
        self._w = csv.writer(self._f)
        self._w.writerow(self.COLUMNS)
        self._f.flush()

    def log(self, *, step_id: int, phase: str, event: str,
            n_particles: int = 0, n_halo: int = 0, migration_count: int = 0,
            extra: str = ""):
        if not self.enabled or self._w is None:
            return
        wall = time.perf_counter() - self.start
        self._w.writerow([
            f"{wall:.6f}",
            int(self.rank),
            int(step_id),
            str(phase),
            str(event),
            int(n_particles),
            int(n_halo),
            int(migration_count),
            str(extra),
        ])
        self._f.flush()

    def close(self):
        try:
            if self._f is not None:
                self._f.close()
                self._f = None
                self._w = None
        except OSError as exc:
            warnings.warn(
                f"StepTraceLogger.close() failed for {self.path!r}: {exc!r}",
                RuntimeWarning,
            )
