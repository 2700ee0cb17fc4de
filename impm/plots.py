from __future__ import annotations
import os, csv
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np

def _read_csv(path: str):
    with open(path, "r", encoding="utf-8") as f:
        r = csv.DictReader(f)
        rows = [row for row in r]
    return rows

def plot_metrics_csv(csv_path: str, out_dir: str) -> list[str]:
    """One PNG per metrics column against simulation time; returns the written paths."""
    rows = _read_csv(csv_path)
    if not rows:
        return []
    os.makedirs(out_dir, exist_ok=True)
    t = np.asarray([float(r["time"]) for r in rows])
    out = []
    for m in rows[0].keys():
        if m in ("step", "time"):
            continue
        y = np.asarray([float(r[m]) for r in rows])
        plt.figure()
        plt.plot(t, y, marker=".")
        plt.xlabel("time")
        plt.ylabel(m)
        plt.tight_layout()
        path = os.path.join(out_dir, f"{m}.png")
        plt.savefig(path)
        plt.close()
        out.append(path)
    return out
