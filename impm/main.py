from __future__ import annotations

import argparse
import os
from dataclasses import replace

import numpy as np

from .comm import make_comm, run_local_group
from .config import Config, ConfigError, load_config
from .driver import RunResult, run_simulation
from .output import OutputSpec, make_output_bundle
from .partition import DecompositionError
from .trace import StepTraceLogger


def _trace_path(base: str, rank: int, size: int) -> str:
    if size <= 1:
        return base
    root, ext = os.path.splitext(base)
    return f"{root}.rank{rank}{ext or '.csv'}"


def _mesh_bounds(cfg: Config) -> list:
    xyz = cfg.mesh.build().node_coords()
    return [(float(lo), float(hi)) for lo, hi in zip(xyz.min(axis=0), xyz.max(axis=0))]


def _writers_for_rank(cfg: Config, rank: int) -> list:
    if rank != 0 or not (cfg.output.dump or cfg.output.metrics):
        return []
    spec = OutputSpec(
        dump_path=cfg.output.dump or None,
        metrics_path=cfg.output.metrics or None,
        dim=cfg.dim,
        bounds=_mesh_bounds(cfg),
        dump_compression=cfg.output.dump_compression,
        write_output_manifest=cfg.output.write_output_manifest,
    )
    return list(make_output_bundle(spec).writers)


def _run_on_comm(cfg: Config, comm, *, trace: bool, verbose: bool = True):
    tracer = None
    if trace:
        base = cfg.output.trace or "impm_trace.csv"
        tracer = StepTraceLogger(_trace_path(base, comm.rank, comm.size), rank=comm.rank)
    return run_simulation(
        cfg,
        comm=comm,
        writers=_writers_for_rank(cfg, comm.rank),
        trace=tracer,
        verbose=verbose,
    )


def _apply_overrides(cfg: Config, args) -> Config:
    analysis = cfg.analysis
    if args.resume:
        analysis = replace(analysis, resume=True)
    if args.nsteps is not None:
        if args.nsteps < 0:
            raise SystemExit("--nsteps must be >= 0")
        analysis = replace(analysis, nsteps=int(args.nsteps))
    output = cfg.output
    if args.dump:
        output = replace(output, dump=args.dump)
    if args.metrics:
        output = replace(output, metrics=args.metrics)
    return replace(cfg, analysis=analysis, output=output)


def _report(result: RunResult) -> None:
    if result.ok:
        print(
            f"[impm] done: steps={result.steps_done} start={result.start_step} resumed={result.resumed}",
            flush=True,
        )
    else:
        print(
            f"[impm] run failed at step={result.failed_step} phase={result.failed_phase}: {result.message}",
            flush=True,
        )


def _cmd_run(args) -> None:
    try:
        cfg = _apply_overrides(load_config(args.config), args)
        if args.comm == "local":
            ranks = int(args.ranks)
            if ranks < 1:
                raise SystemExit("--ranks must be >= 1")
            outs = run_local_group(ranks, lambda comm: _run_on_comm(cfg, comm, trace=args.trace))
            result = outs[0][0]
            rank = 0
        else:
            comm = make_comm(args.comm)
            try:
                result, _final = _run_on_comm(cfg, comm, trace=args.trace)
                rank = comm.rank
            finally:
                if hasattr(comm, "finalize"):
                    comm.finalize()
    except (ConfigError, DecompositionError) as exc:
        print(f"[impm] error: {type(exc).__name__}: {exc}", flush=True)
        raise SystemExit(2)
    if rank == 0:
        _report(result)
    raise SystemExit(0 if result.ok else 2)


def _cmd_verify(args) -> None:
    """Serial run vs an in-process multi-rank run of the same config."""
    try:
        cfg = load_config(args.config)
    except ConfigError as exc:
        print(f"[impm] error: ConfigError: {exc}", flush=True)
        raise SystemExit(2)
    steps = max(1, int(args.steps)) if args.steps is not None else cfg.analysis.nsteps
    cfg = replace(
        cfg,
        analysis=replace(cfg.analysis, nsteps=steps, checkpoint_steps=0, resume=False),
        output=replace(cfg.output, dump=None, metrics=None),
    )
    ranks = max(1, int(args.ranks))

    try:
        resA, psA = run_simulation(cfg, comm=make_comm("serial"), verbose=False)
        outs = run_local_group(ranks, lambda comm: run_simulation(cfg, comm=comm, verbose=False))
    except (ConfigError, DecompositionError) as exc:
        print(f"[impm] error: {type(exc).__name__}: {exc}", flush=True)
        raise SystemExit(2)
    resB, psB = outs[0]

    ok = resA.ok and resB.ok and resA.steps_done == resB.steps_done
    if psA is None or psB is None or len(psA) != len(psB) or not np.array_equal(psA.pid, psB.pid):
        nA = 0 if psA is None else len(psA)
        nB = 0 if psB is None else len(psB)
        print(f"[verify] particle sets differ: serial={nA} ranks={ranks} -> {nB}", flush=True)
        raise SystemExit(2)
    dx = float(np.abs(psA.x - psB.x).max()) if len(psA) else 0.0
    dv = float(np.abs(psA.v - psB.v).max()) if len(psA) else 0.0
    ok = ok and dx <= float(args.tol) and dv <= float(args.tol)
    print(
        f"[verify] ranks={ranks} steps={steps} ok={ok} max|dx|={dx:.6e} max|dv|={dv:.6e}",
        flush=True,
    )
    raise SystemExit(0 if ok else 2)


def _cmd_plot(args) -> None:
    from .plots import plot_metrics_csv

    paths = plot_metrics_csv(args.metrics_csv, args.outdir)
    for p in paths:
        print(f"[plot] {p}", flush=True)


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="impm")
    sub = p.add_subparsers(dest="cmd", required=True)

    pr = sub.add_parser("run")
    pr.add_argument("config", help="YAML config")
    pr.add_argument("--comm", choices=["serial", "mpi", "local"], default="serial")
    pr.add_argument("--ranks", type=int, default=2, help="Thread ranks for --comm local")
    pr.add_argument("--resume", action="store_true", help="Resume from the configured checkpoint_dir")
    pr.add_argument("--nsteps", type=int, default=None, help="Override analysis.nsteps")
    pr.add_argument("--dump", default="", help="Particle dump output path")
    pr.add_argument("--metrics", default="", help="Metrics CSV output path")
    pr.add_argument("--trace", action="store_true", help="Enable per-rank phase trace CSV")
    pr.set_defaults(func=_cmd_run)

    pv = sub.add_parser("verify")
    pv.add_argument("config")
    pv.add_argument("--ranks", type=int, default=2)
    pv.add_argument("--steps", type=int, default=None)
    pv.add_argument("--tol", type=float, default=1e-9)
    pv.set_defaults(func=_cmd_verify)

    pp = sub.add_parser("plot")
    pp.add_argument("metrics_csv")
    pp.add_argument("outdir")
    pp.set_defaults(func=_cmd_plot)

    return p


def main(argv=None) -> None:
    p = _build_parser()
    args = p.parse_args(argv)
    func = getattr(args, "func", None)
    if func is None:
        raise SystemExit(f"unsupported cmd: {getattr(args, 'cmd', None)}")
    func(args)


if __name__ == "__main__":
    main()
