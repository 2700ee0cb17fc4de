"""Message-passing layer behind the mesh partition.

Three communicators share one small collective vocabulary (barrier,
allreduce_sum, allgather, alltoall, bcast, gather):

  - ``SerialComm``  single process; every collective is the identity.
  - ``MPIComm``     ``mpi4py`` COMM_WORLD.
  - ``LocalComm``   N ranks as threads of one process (``LocalCommGroup``),
                    the in-process emulation used by ``impm verify`` and tests.

Collectives are blocking; every rank must reach them in the same order.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, List, Optional, Sequence

import numpy as np

try:
    import mpi4py

    mpi4py.rc.initialize = False
    mpi4py.rc.finalize = False
    from mpi4py import MPI
except Exception:
    MPI = None


class SerialComm:
    rank = 0
    size = 1

    def barrier(self) -> None:
        return None

    def allreduce_sum(self, arr: np.ndarray) -> np.ndarray:
        return np.asarray(arr)

    def allgather(self, obj: Any) -> List[Any]:
        return [obj]

    def alltoall(self, objs: Sequence[Any]) -> List[Any]:
        if len(objs) != 1:
            raise ValueError("alltoall expects one payload per rank")
        return [objs[0]]

    def bcast(self, obj: Any, root: int = 0) -> Any:
        return obj

    def gather(self, obj: Any, root: int = 0) -> Optional[List[Any]]:
        return [obj]


class MPIComm:
    def __init__(self, comm=None):
        if MPI is None:
            raise RuntimeError("mpi4py required")
        self.owns_mpi_init = False
        if not MPI.Is_initialized():
            MPI.Init()
            self.owns_mpi_init = True
        self._comm = comm if comm is not None else MPI.COMM_WORLD
        self.rank = int(self._comm.Get_rank())
        self.size = int(self._comm.Get_size())

    def barrier(self) -> None:
        self._comm.Barrier()

    def allreduce_sum(self, arr: np.ndarray) -> np.ndarray:
        src = np.ascontiguousarray(arr)
        out = np.empty_like(src)
        self._comm.Allreduce(src, out, op=MPI.SUM)
        return out

    def allgather(self, obj: Any) -> List[Any]:
        return list(self._comm.allgather(obj))

    def alltoall(self, objs: Sequence[Any]) -> List[Any]:
        if len(objs) != self.size:
            raise ValueError("alltoall expects one payload per rank")
        return list(self._comm.alltoall(list(objs)))

    def bcast(self, obj: Any, root: int = 0) -> Any:
        return self._comm.bcast(obj, root=root)

    def gather(self, obj: Any, root: int = 0) -> Optional[List[Any]]:
        return self._comm.gather(obj, root=root)

    def finalize(self) -> None:
        if self.owns_mpi_init and MPI.Is_initialized() and not MPI.Is_finalized():
            MPI.Finalize()


class LocalCommGroup:
    """Shared exchange area for ``size`` thread ranks."""

    def __init__(self, size: int):
        if int(size) < 1:
            raise ValueError("local group size must be >= 1")
        self.size = int(size)
        self._barrier = threading.Barrier(self.size)
        self._slots: List[Any] = [None] * self.size

    def comms(self) -> List["LocalComm"]:
        return [LocalComm(self, r) for r in range(self.size)]

    def abort(self) -> None:
        self._barrier.abort()


class LocalComm:
    def __init__(self, group: LocalCommGroup, rank: int):
        self._group = group
        self.rank = int(rank)
        self.size = group.size

    def barrier(self) -> None:
        self._group._barrier.wait()

    def allgather(self, obj: Any) -> List[Any]:
        g = self._group
        g._slots[self.rank] = obj
        g._barrier.wait()
        out = list(g._slots)
        # second wait keeps a fast rank from overwriting a slot still being read
        g._barrier.wait()
        return out

    def allreduce_sum(self, arr: np.ndarray) -> np.ndarray:
        parts = self.allgather(np.array(arr, copy=True))
        out = np.zeros_like(parts[0])
        # rank order keeps the sum deterministic
        for p in parts:
            out = out + p
        return out

    def alltoall(self, objs: Sequence[Any]) -> List[Any]:
        if len(objs) != self.size:
            raise ValueError("alltoall expects one payload per rank")
        table = self.allgather(list(objs))
        return [table[src][self.rank] for src in range(self.size)]

    def bcast(self, obj: Any, root: int = 0) -> Any:
        return self.allgather(obj if self.rank == root else None)[root]

    def gather(self, obj: Any, root: int = 0) -> Optional[List[Any]]:
        parts = self.allgather(obj)
        return parts if self.rank == root else None


def make_comm(kind: str = "serial"):
    k = str(kind or "serial").strip().lower()
    if k == "serial":
        return SerialComm()
    if k == "mpi":
        return MPIComm()
    raise ValueError("comm must be one of: serial, mpi (use run_local_group for local ranks)")


def run_local_group(size: int, fn: Callable[[Any], Any]) -> List[Any]:
    """Run ``fn(comm)`` on ``size`` thread ranks and return per-rank results.

    The first exception raised by any rank aborts the shared barrier (so the
    other ranks fail fast instead of waiting forever) and is re-raised here.
    """
    group = LocalCommGroup(size)
    results: List[Any] = [None] * group.size
    errors: List[Optional[BaseException]] = [None] * group.size

    def _worker(comm: LocalComm) -> None:
        try:
            results[comm.rank] = fn(comm)
        except BaseException as exc:
            errors[comm.rank] = exc
            group.abort()

    threads = [threading.Thread(target=_worker, args=(c,), name=f"impm-rank{c.rank}") for c in group.comms()]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    primary = [e for e in errors if e is not None and not isinstance(e, threading.BrokenBarrierError)]
    if primary:
        raise primary[0]
    for e in errors:
        if e is not None:
            raise e
    return results
