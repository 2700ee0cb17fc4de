from __future__ import annotations

import copy

import pytest

BASE_CONFIG = {
    "mesh": {
        "origin": [0.0, 0.0],
        "spacing": [0.25, 0.25],
        "ncells": [8, 4],
        "constraints": [{"face": "ymin", "dirs": [0, 1]}],
    },
    "materials": [
        {
            "id": 0,
            "kind": "linear_elastic",
            "params": {"youngs_modulus": 1.0e5, "poisson_ratio": 0.3, "density": 1000.0},
        },
    ],
    "particles": [
        {"material_id": 0, "lo": [0.0, 0.0], "hi": [1.0, 0.5], "ppc": 2},
    ],
    "analysis": {
        "nsteps": 6,
        "dt": 1.0e-3,
        "output_steps": 2,
        "gravity": [0.0, -9.81],
    },
}


@pytest.fixture
def base_config():
    """Fresh, mutable copy of a small 2D elastic block under gravity."""
    return copy.deepcopy(BASE_CONFIG)
