from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Tuple

import numpy as np

# Voigt layout (xx, yy, zz, xy, yz, xz); shear strains are engineering strains.
_NORMAL = slice(0, 3)
_SHEAR = slice(3, 6)


def canonical_material_kind(kind: str) -> str:
    k = str(kind).strip().lower().replace("-", "_")
    if k in ("linearelastic", "linear_elastic", "elastic"):
        return "linear_elastic"
    if k in ("newtonian", "newtonian_fluid", "fluid"):
        return "newtonian"
    return k


@dataclass(frozen=True)
class LinearElastic:
    youngs_modulus: float
    poisson_ratio: float
    density: float

    def elastic_matrix(self) -> np.ndarray:
        E = float(self.youngs_modulus)
        nu = float(self.poisson_ratio)
        lam = E * nu / ((1.0 + nu) * (1.0 - 2.0 * nu))
        G = E / (2.0 * (1.0 + nu))
        D = np.zeros((6, 6), dtype=float)
        D[_NORMAL, _NORMAL] = lam
        D[0, 0] = D[1, 1] = D[2, 2] = lam + 2.0 * G
        D[3, 3] = D[4, 4] = D[5, 5] = G
        return D

    def compute_stress(
        self,
        stress: np.ndarray,
        dstrain: np.ndarray,
        state_vars: np.ndarray,
        dt: float,
    ) -> Tuple[np.ndarray, np.ndarray]:
        return stress + dstrain @ self.elastic_matrix(), state_vars


@dataclass(frozen=True)
class NewtonianFluid:
    """Weakly compressible Newtonian fluid.

    state_vars[:, 0] accumulates the volumetric strain that sets the pressure.
    """

    bulk_modulus: float
    viscosity: float
    density: float

    def compute_stress(
        self,
        stress: np.ndarray,
        dstrain: np.ndarray,
        state_vars: np.ndarray,
        dt: float,
    ) -> Tuple[np.ndarray, np.ndarray]:
        if dt <= 0.0:
            raise ValueError("newtonian stress update requires dt > 0")
        sv = state_vars.copy()
        dvol = dstrain[:, _NORMAL].sum(axis=1)
        sv[:, 0] += dvol
        pressure = -float(self.bulk_modulus) * sv[:, 0]
        rate = dstrain / float(dt)
        rate_vol = rate[:, _NORMAL].sum(axis=1)
        out = np.zeros_like(stress)
        mu = float(self.viscosity)
        out[:, _NORMAL] = 2.0 * mu * (rate[:, _NORMAL] - rate_vol[:, None] / 3.0) - pressure[:, None]
        out[:, _SHEAR] = mu * rate[:, _SHEAR]
        return out, sv


def make_material(kind: str, params: Dict[str, Any]):
    kind = canonical_material_kind(kind)
    if "density" not in params:
        raise ValueError(f"{kind} material requires params.density")
    density = float(params["density"])
    if density <= 0.0:
        raise ValueError("material density must be positive")
    if kind == "linear_elastic":
        E = float(params.get("youngs_modulus", params.get("E", 0.0)))
        nu = float(params.get("poisson_ratio", params.get("nu", 0.0)))
        if E <= 0.0:
            raise ValueError("linear_elastic requires params.youngs_modulus > 0")
        if not (-1.0 < nu < 0.5):
            raise ValueError("linear_elastic requires -1 < params.poisson_ratio < 0.5")
        return LinearElastic(youngs_modulus=E, poisson_ratio=nu, density=density)
    if kind == "newtonian":
        K = float(params.get("bulk_modulus", 0.0))
        mu = float(params.get("viscosity", 0.0))
        if K <= 0.0:
            raise ValueError("newtonian requires params.bulk_modulus > 0")
        if mu < 0.0:
            raise ValueError("newtonian requires params.viscosity >= 0")
        return NewtonianFluid(bulk_modulus=K, viscosity=mu, density=density)
    raise ValueError(f"unknown material kind: {kind!r}; allowed: linear_elastic, newtonian")
