from __future__ import annotations

import hashlib
import json
import os
from datetime import datetime, timezone
from typing import Any


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def sha256_file(path: str) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def write_manifest(path: str, payload: dict[str, Any]) -> str:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp = f"{path}.tmp"
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.remove(tmp)
    return path


def read_manifest(path: str) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        payload = json.load(f)
    if not isinstance(payload, dict):
        raise ValueError(f"manifest {path!r} must hold a JSON object")
    return payload


def dump_manifest_payload(
    *,
    path: str,
    format_name: str,
    schema_version: int,
    columns: list[str],
    dim: int,
    bounds: list[tuple[float, float]],
    compression: str,
) -> dict[str, Any]:
    return {
        "kind": "particle_dump",
        "schema": {
            "name": str(format_name),
            "version": int(schema_version),
        },
        "created_at_utc": _utc_now_iso(),
        "path": str(path),
        "columns": list(columns),
        "dim": int(dim),
        "bounds": [[float(lo), float(hi)] for lo, hi in bounds],
        "compression": str(compression),
    }


def metrics_manifest_payload(
    *,
    path: str,
    format_name: str,
    schema_version: int,
    columns: list[str],
    dim: int,
) -> dict[str, Any]:
    return {
        "kind": "metrics",
        "schema": {
            "name": str(format_name),
            "version": int(schema_version),
        },
        "created_at_utc": _utc_now_iso(),
        "path": str(path),
        "columns": list(columns),
        "dim": int(dim),
    }


def checkpoint_manifest_payload(
    *,
    path: str,
    format_name: str,
    schema_version: int,
    step: int,
    time: float,
    dim: int,
    n_particles: int,
    n_ranks: int,
    sha256: str,
) -> dict[str, Any]:
    return {
        "kind": "checkpoint",
        "schema": {
            "name": str(format_name),
            "version": int(schema_version),
        },
        "created_at_utc": _utc_now_iso(),
        "path": str(path),
        "step": int(step),
        "time": float(time),
        "dim": int(dim),
        "n_particles": int(n_particles),
        "n_ranks": int(n_ranks),
        "sha256": str(sha256),
    }
