"""Named numeric constants for IMPM.

Any change to these values is a behaviour change and must be verified
against the full test suite (mass conservation and resume equivalence).

Categories
----------
MASS_TOLERANCE
    Nodal mass below which a node is treated as empty.  Nodal velocity and
    acceleration are only derived (accumulator / mass) above this value.

GEOM_EPSILON
    Tolerance for point-in-cell tests at the upper mesh boundary and for
    activation-time comparisons (``activation_time <= t + GEOM_EPSILON``).

N_VOIGT
    Number of Voigt components carried for stress and strain in every
    dimension (xx, yy, zz, xy, yz, xz).

N_STATE_VARS
    Width of the per-particle material internal-state block.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Empty-node guard for mass lumping
# ---------------------------------------------------------------------------
MASS_TOLERANCE: float = 1e-12

# ---------------------------------------------------------------------------
# Geometry / time tolerance
# ---------------------------------------------------------------------------
GEOM_EPSILON: float = 1e-12

# ---------------------------------------------------------------------------
# Record layout
# ---------------------------------------------------------------------------
N_VOIGT: int = 6
N_STATE_VARS: int = 4
