from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from detection_trainer.logging import get_logger

_CGROUP_CPU_MAX: Final[Path] = Path("/sys/fs/cgroup/cpu.max")
_CGROUP_MEM_MAX: Final[Path] = Path("/sys/fs/cgroup/memory.max")
_MAX_BLAS_THREADS: Final[int] = 8


@dataclass(frozen=True)
class ResourceLimits:
    cpu_cores: int
    memory_bytes: int | None
    optimal_threads: int
    loader_workers: int


def _host_cores() -> int:
    return max(1, os.cpu_count() or 1)


def parse_cpu_max(text: str) -> int | None:
    """Whole cores granted by a cgroup v2 ``cpu.max`` line ("<quota> <period>")."""
    quota, _, period = text.strip().partition(" ")
    if not (quota.isdigit() and period.isdigit()) or int(period) == 0:
        return None
    return max(1, int(quota) // int(period))


def parse_memory_max(text: str) -> int | None:
    val = text.strip()
    if not val.isdigit() or int(val) <= 0:
        return None
    return int(val)


def blas_threads_for(cores: int) -> int:
    """Threads for the BLAS pool: all of a small box, one spare at 3-4 cores, capped above."""
    c = max(1, int(cores))
    if c <= 2:
        return c
    if c <= 4:
        return c - 1
    return min(_MAX_BLAS_THREADS, c)


def detect_resource_limits() -> ResourceLimits:
    """Cores and memory visible to this process, with derived thread counts.

    Loader workers default to one per core; the BLAS pool used by the
    training step is capped separately by ``optimal_threads``.
    """
    cores = None
    if _CGROUP_CPU_MAX.exists():
        cores = parse_cpu_max(_CGROUP_CPU_MAX.read_text(encoding="utf-8"))
    if cores is None:
        cores = _host_cores()
    mem_bytes = None
    if _CGROUP_MEM_MAX.exists():
        mem_bytes = parse_memory_max(_CGROUP_MEM_MAX.read_text(encoding="utf-8"))
    threads = blas_threads_for(cores)
    mem_mb = mem_bytes // (1024 * 1024) if mem_bytes is not None else None
    get_logger().info(
        f"resource_limits cpu_cores={cores} memory_mb={mem_mb} "
        f"optimal_threads={threads} loader_workers={cores}"
    )
    return ResourceLimits(
        cpu_cores=cores, memory_bytes=mem_bytes, optimal_threads=threads, loader_workers=cores
    )
