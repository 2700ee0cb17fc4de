from __future__ import annotations
import warnings
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple
import yaml

from .materials import canonical_material_kind, make_material
from .mesh import StructuredMesh

VelocityUpdate = Literal["flip", "pic"]
DampingKind = Literal["none", "cundall"]

_FACES = ("xmin", "xmax", "ymin", "ymax", "zmin", "zmax")
_TOP_KEYS = {"mesh", "materials", "particles", "analysis", "output"}
_MESH_KEYS = {"origin", "spacing", "ncells", "inactive_cells", "constraints", "loads"}
_BLOCK_KEYS = {"material_id", "lo", "hi", "ppc", "points", "volume", "velocity", "activation_time"}
_ANALYSIS_KEYS = {
    "nsteps", "dt", "output_steps", "nload_balance_steps", "checkpoint_steps",
    "checkpoint_dir", "resume", "pressure_smoothing", "interface",
    "newmark_beta", "newmark_gamma", "damping", "damping_factor",
    "velocity_update", "gravity", "solver",
}
_OUTPUT_KEYS = {"dump", "metrics", "dump_compression", "trace", "write_output_manifest"}


class ConfigError(ValueError):
    """Missing or invalid configuration; always raised before the step loop."""


@dataclass
class ConstraintConfig:
    face: str
    dirs: List[int]


@dataclass
class LoadConfig:
    force: List[float]
    face: Optional[str] = None
    node: Optional[int] = None


@dataclass
class MeshConfig:
    origin: List[float]
    spacing: List[float]
    ncells: List[int]
    inactive_cells: List[int] = field(default_factory=list)
    constraints: List[ConstraintConfig] = field(default_factory=list)
    loads: List[LoadConfig] = field(default_factory=list)

    @property
    def dim(self) -> int:
        return len(self.ncells)

    def build(self) -> StructuredMesh:
        return StructuredMesh(
            origin=self.origin,
            spacing=self.spacing,
            ncells=tuple(self.ncells),
            inactive_cells=list(self.inactive_cells),
        )


@dataclass
class MaterialConfig:
    id: int
    kind: str
    params: Dict[str, Any]


@dataclass
class ParticleBlockConfig:
    material_id: int
    lo: Optional[List[float]] = None
    hi: Optional[List[float]] = None
    ppc: int = 2
    points: Optional[List[List[float]]] = None
    volume: Optional[float] = None
    velocity: Optional[List[float]] = None
    activation_time: float = 0.0


@dataclass
class AnalysisConfig:
    nsteps: int
    dt: float
    output_steps: int = 1
    nload_balance_steps: int = 0
    checkpoint_steps: int = 0
    checkpoint_dir: str = "checkpoint"
    resume: bool = False
    pressure_smoothing: bool = False
    interface: bool = False
    newmark_beta: float = 0.25
    newmark_gamma: float = 0.5
    damping: DampingKind = "none"
    damping_factor: float = 0.0
    velocity_update: VelocityUpdate = "flip"
    gravity: Tuple[float, ...] = ()
    solver: str = "explicit"


@dataclass
class OutputConfig:
    dump: Optional[str] = None
    metrics: Optional[str] = None
    dump_compression: str = "none"
    trace: Optional[str] = None
    write_output_manifest: bool = True


@dataclass
class Config:
    mesh: MeshConfig
    materials: List[MaterialConfig]
    particles: List[ParticleBlockConfig]
    analysis: AnalysisConfig
    output: OutputConfig

    @property
    def dim(self) -> int:
        return self.mesh.dim


def _check_keys(section: Any, allowed: set, key: str) -> dict:
    if not isinstance(section, dict):
        raise ConfigError(f"{key} must be a mapping")
    extra = sorted(set(section.keys()) - allowed)
    if extra:
        raise ConfigError(f"{key} contains unsupported keys: {extra}")
    return section


def _require(section: dict, name: str, key: str) -> Any:
    if section.get(name, None) is None:
        raise ConfigError(f"{key}.{name} is required")
    return section[name]


def _vector(raw: Any, dim: int, key: str) -> List[float]:
    try:
        vals = [float(x) for x in raw]
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a list of {dim} numbers") from None
    if len(vals) != dim:
        raise ConfigError(f"{key} must have {dim} components, got {len(vals)}")
    return vals


def _parse_mesh(d: Any) -> MeshConfig:
    m = _check_keys(d, _MESH_KEYS, "mesh")
    ncells_raw = _require(m, "ncells", "mesh")
    try:
        ncells = [int(n) for n in ncells_raw]
    except (TypeError, ValueError):
        raise ConfigError("mesh.ncells must be a list of integers") from None
    dim = len(ncells)
    if dim not in (2, 3):
        raise ConfigError("mesh.ncells must have 2 or 3 entries")
    if any(n < 1 for n in ncells):
        raise ConfigError("mesh.ncells entries must be >= 1")
    origin = _vector(m.get("origin", [0.0] * dim), dim, "mesh.origin")
    spacing = _vector(_require(m, "spacing", "mesh"), dim, "mesh.spacing")
    if any(h <= 0.0 for h in spacing):
        raise ConfigError("mesh.spacing entries must be > 0")

    constraints = []
    for i, c in enumerate(m.get("constraints", None) or []):
        c = _check_keys(c, {"face", "dirs"}, f"mesh.constraints[{i}]")
        face = str(_require(c, "face", f"mesh.constraints[{i}]")).lower()
        if face not in _FACES[: 2 * dim]:
            raise ConfigError(f"mesh.constraints[{i}].face must be one of {list(_FACES[: 2 * dim])}")
        dirs = [int(x) for x in c.get("dirs", list(range(dim)))]
        if any(not (0 <= x < dim) for x in dirs):
            raise ConfigError(f"mesh.constraints[{i}].dirs must be axis indices in [0, {dim})")
        constraints.append(ConstraintConfig(face=face, dirs=dirs))

    loads = []
    for i, ld in enumerate(m.get("loads", None) or []):
        ld = _check_keys(ld, {"face", "node", "force"}, f"mesh.loads[{i}]")
        force = _vector(_require(ld, "force", f"mesh.loads[{i}]"), dim, f"mesh.loads[{i}].force")
        face = ld.get("face", None)
        node = ld.get("node", None)
        if (face is None) == (node is None):
            raise ConfigError(f"mesh.loads[{i}] needs exactly one of face or node")
        if face is not None:
            face = str(face).lower()
            if face not in _FACES[: 2 * dim]:
                raise ConfigError(f"mesh.loads[{i}].face must be one of {list(_FACES[: 2 * dim])}")
        loads.append(LoadConfig(force=force, face=face, node=None if node is None else int(node)))

    return MeshConfig(
        origin=origin,
        spacing=spacing,
        ncells=ncells,
        inactive_cells=[int(c) for c in (m.get("inactive_cells", None) or [])],
        constraints=constraints,
        loads=loads,
    )


def _parse_materials(d: Any) -> List[MaterialConfig]:
    if not isinstance(d, list) or not d:
        raise ConfigError("materials must be a non-empty list")
    out = []
    seen = set()
    for i, raw in enumerate(d):
        raw = _check_keys(raw, {"id", "kind", "params"}, f"materials[{i}]")
        mid = int(raw.get("id", i))
        if mid in seen:
            raise ConfigError(f"materials[{i}].id={mid} is duplicated")
        seen.add(mid)
        kind = canonical_material_kind(_require(raw, "kind", f"materials[{i}]"))
        params = raw.get("params", None) or {}
        if not isinstance(params, dict):
            raise ConfigError(f"materials[{i}].params must be a mapping")
        try:
            make_material(kind, params)
        except ValueError as exc:
            raise ConfigError(f"materials[{i}]: {exc}") from exc
        out.append(MaterialConfig(id=mid, kind=kind, params=dict(params)))
    return out


def _parse_blocks(d: Any, dim: int, material_ids: set) -> List[ParticleBlockConfig]:
    if not isinstance(d, list) or not d:
        raise ConfigError("particles must be a non-empty list of blocks")
    out = []
    for i, raw in enumerate(d):
        key = f"particles[{i}]"
        b = _check_keys(raw, _BLOCK_KEYS, key)
        mid = int(b.get("material_id", 0))
        if mid not in material_ids:
            raise ConfigError(f"{key}.material_id={mid} does not name a material")
        velocity = None
        if b.get("velocity", None) is not None:
            velocity = _vector(b["velocity"], dim, f"{key}.velocity")
        activation_time = float(b.get("activation_time", 0.0))
        if activation_time < 0.0:
            raise ConfigError(f"{key}.activation_time must be >= 0")
        if b.get("points", None) is not None:
            if b.get("lo", None) is not None or b.get("hi", None) is not None:
                raise ConfigError(f"{key} must use either points or lo/hi, not both")
            points = [_vector(p, dim, f"{key}.points[{j}]") for j, p in enumerate(b["points"])]
            volume = float(_require(b, "volume", key))
            if volume <= 0.0:
                raise ConfigError(f"{key}.volume must be > 0")
            out.append(ParticleBlockConfig(
                material_id=mid, points=points, volume=volume,
                velocity=velocity, activation_time=activation_time,
            ))
            continue
        lo = _vector(_require(b, "lo", key), dim, f"{key}.lo")
        hi = _vector(_require(b, "hi", key), dim, f"{key}.hi")
        if any(h <= l for l, h in zip(lo, hi)):
            raise ConfigError(f"{key}.hi must exceed {key}.lo along every axis")
        ppc = int(b.get("ppc", 2))
        if ppc < 1:
            raise ConfigError(f"{key}.ppc must be >= 1")
        out.append(ParticleBlockConfig(
            material_id=mid, lo=lo, hi=hi, ppc=ppc,
            velocity=velocity, activation_time=activation_time,
        ))
    return out


def _parse_analysis(d: Any, dim: int) -> AnalysisConfig:
    a = _check_keys(d, _ANALYSIS_KEYS, "analysis")
    nsteps = int(_require(a, "nsteps", "analysis"))
    if nsteps < 0:
        raise ConfigError("analysis.nsteps must be >= 0")
    dt = float(_require(a, "dt", "analysis"))
    if not dt > 0.0:
        raise ConfigError("analysis.dt must be > 0")
    output_steps = int(a.get("output_steps", 1))
    if output_steps < 1:
        raise ConfigError("analysis.output_steps must be >= 1")
    nload_balance_steps = int(a.get("nload_balance_steps", 0))
    checkpoint_steps = int(a.get("checkpoint_steps", 0))
    if nload_balance_steps < 0 or checkpoint_steps < 0:
        raise ConfigError("analysis.nload_balance_steps and analysis.checkpoint_steps must be >= 0")
    beta = float(a.get("newmark_beta", 0.25))
    gamma = float(a.get("newmark_gamma", 0.5))
    if not beta > 0.0:
        raise ConfigError("analysis.newmark_beta must be > 0")
    if not gamma >= 0.0:
        raise ConfigError("analysis.newmark_gamma must be >= 0")
    damping_factor = float(a.get("damping_factor", 0.0))
    if not (0.0 <= damping_factor < 1.0):
        raise ConfigError("analysis.damping_factor must be in [0, 1)")
    damping = str(a.get("damping", "cundall" if damping_factor > 0.0 else "none")).lower()
    if damping not in ("none", "cundall"):
        raise ConfigError("analysis.damping must be one of: none, cundall")
    velocity_update = str(a.get("velocity_update", "flip")).lower()
    if velocity_update not in ("flip", "pic"):
        raise ConfigError("analysis.velocity_update must be one of: flip, pic")
    gravity: Tuple[float, ...] = ()
    if a.get("gravity", None) is not None:
        gravity = tuple(_vector(a["gravity"], dim, "analysis.gravity"))
    interface = bool(a.get("interface", False))
    if interface:
        warnings.warn(
            "analysis.interface=true: interface handling is delegated; no contact algorithm is installed",
            RuntimeWarning,
        )
    return AnalysisConfig(
        nsteps=nsteps,
        dt=dt,
        output_steps=output_steps,
        nload_balance_steps=nload_balance_steps,
        checkpoint_steps=checkpoint_steps,
        checkpoint_dir=str(a.get("checkpoint_dir", "checkpoint")),
        resume=bool(a.get("resume", False)),
        pressure_smoothing=bool(a.get("pressure_smoothing", False)),
        interface=interface,
        newmark_beta=beta,
        newmark_gamma=gamma,
        damping=damping,
        damping_factor=damping_factor,
        velocity_update=velocity_update,
        gravity=gravity,
        solver=str(a.get("solver", "explicit")),
    )


def _parse_output(d: Any) -> OutputConfig:
    if d is None:
        return OutputConfig()
    o = _check_keys(d, _OUTPUT_KEYS, "output")
    compression = str(o.get("dump_compression", "none")).lower()
    if compression not in ("none", "gz"):
        raise ConfigError("output.dump_compression must be one of: none, gz")
    return OutputConfig(
        dump=o.get("dump", None),
        metrics=o.get("metrics", None),
        dump_compression=compression,
        trace=o.get("trace", None),
        write_output_manifest=bool(o.get("write_output_manifest", True)),
    )


def parse_config(d: Any) -> Config:
    root = _check_keys(d, _TOP_KEYS, "config")
    for key in ("mesh", "materials", "particles", "analysis"):
        if root.get(key, None) is None:
            raise ConfigError(f"config section {key!r} is required")
    mesh = _parse_mesh(root["mesh"])
    materials = _parse_materials(root["materials"])
    particles = _parse_blocks(root["particles"], mesh.dim, {m.id for m in materials})
    analysis = _parse_analysis(root["analysis"], mesh.dim)
    output = _parse_output(root.get("output", None))
    try:
        mesh.build()
    except ValueError as exc:
        raise ConfigError(f"mesh: {exc}") from exc
    return Config(mesh=mesh, materials=materials, particles=particles, analysis=analysis, output=output)


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        d = yaml.safe_load(f)
    return parse_config(d)
