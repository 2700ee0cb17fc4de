"""Stiffness assembly / linear solve extension point of the Newmark step.

A solver receives the step context after force assembly and returns the
nodal displacement increment, shape ``(n_nodes, dim)``, or ``None``.  ``None``
makes the scheme take the lumped-mass explicit increment
``du = du_pred + beta * dt**2 * f / m``.
"""

from __future__ import annotations

import importlib
from typing import Optional, Protocol

import numpy as np


class LinearSystemSolver(Protocol):
    name: str

    def solve(self, ctx) -> Optional[np.ndarray]: ...


class ExplicitFallbackSolver:
    """Installs no stiffness assembly; every step uses the explicit increment."""

    name = "explicit"

    def solve(self, ctx) -> Optional[np.ndarray]:
        return None


def make_solver(kind: str = "explicit") -> LinearSystemSolver:
    """Build the solver named in config.

    ``explicit`` / ``none`` select the fallback; ``package.module:ClassName``
    imports and instantiates a user solver.
    """
    k = str(kind or "explicit").strip()
    if k.lower() in ("explicit", "none"):
        return ExplicitFallbackSolver()
    if ":" not in k:
        raise ValueError(f"unknown solver {kind!r}; use 'explicit' or 'package.module:ClassName'")
    mod_name, _, cls_name = k.partition(":")
    try:
        mod = importlib.import_module(mod_name)
        cls = getattr(mod, cls_name)
    except (ImportError, AttributeError) as exc:
        raise ValueError(f"cannot load solver {kind!r}: {exc}") from exc
    solver = cls()
    if not callable(getattr(solver, "solve", None)):
        raise ValueError(f"solver {kind!r} has no solve(ctx) method")
    return solver
