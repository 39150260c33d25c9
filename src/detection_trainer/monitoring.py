from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Final, Literal

import psutil

from .logging import get_logger

_MB: Final[int] = 1024 * 1024
_CGROUP_MEM_CURRENT: Path = Path("/sys/fs/cgroup/memory.current")
_CGROUP_MEM_MAX: Path = Path("/sys/fs/cgroup/memory.max")

Scope = Literal["cgroup", "system"]


@dataclass(frozen=True)
class MemoryUsage:
    """Memory usage against the effective limit (cgroup when present, else system)."""

    usage_bytes: int
    limit_bytes: int
    percent: float


@dataclass(frozen=True)
class MemorySnapshot:
    rss_bytes: int
    threads: int
    usage: MemoryUsage


def _read_cgroup_limit() -> str:
    return _CGROUP_MEM_MAX.read_text(encoding="utf-8").strip()


def _read_cgroup_usage() -> MemoryUsage:
    limit = _read_cgroup_limit()
    if limit == "max":
        raise RuntimeError("cgroup memory.max is unlimited")
    used = int(_CGROUP_MEM_CURRENT.read_text(encoding="utf-8").strip())
    return MemoryUsage(usage_bytes=used, limit_bytes=int(limit), percent=100.0 * used / int(limit))


def _read_system_usage() -> MemoryUsage:
    vm = psutil.virtual_memory()
    return MemoryUsage(
        usage_bytes=int(vm.used), limit_bytes=int(vm.total), percent=100.0 * vm.used / vm.total
    )


def _format_snapshot(context: str, snap: MemorySnapshot, scope: Scope) -> str:
    head = f"{context} memory" if context else "memory"
    return (
        f"{head} main_rss_mb={snap.rss_bytes // _MB} threads={snap.threads} "
        f"{scope}_usage_mb={snap.usage.usage_bytes // _MB} "
        f"{scope}_limit_mb={snap.usage.limit_bytes // _MB} "
        f"{scope}_pct={snap.usage.percent:.1f}"
    )


class MemoryMonitor:
    """Samples process RSS and thread count against one memory limit source."""

    def __init__(self, scope: Scope, read_usage: Callable[[], MemoryUsage]) -> None:
        self.scope = scope
        self._read_usage = read_usage

    def get_snapshot(self) -> MemorySnapshot:
        proc = psutil.Process(os.getpid())
        return MemorySnapshot(
            rss_bytes=int(proc.memory_info().rss),
            threads=int(proc.num_threads()),
            usage=self._read_usage(),
        )

    def log_snapshot(self, context: str = "") -> None:
        get_logger().info(_format_snapshot(context, self.get_snapshot(), self.scope))


def _detect_cgroups_available() -> bool:
    if not (_CGROUP_MEM_CURRENT.exists() and _CGROUP_MEM_MAX.exists()):
        return False
    return _read_cgroup_limit() != "max"


def _create_monitor() -> MemoryMonitor:
    if _detect_cgroups_available():
        return MemoryMonitor("cgroup", _read_cgroup_usage)
    return MemoryMonitor("system", _read_system_usage)


_monitor: MemoryMonitor | None = None


def get_monitor() -> MemoryMonitor:
    global _monitor
    if _monitor is None:
        _monitor = _create_monitor()
    return _monitor


def log_memory_snapshot(*, context: str = "") -> None:
    get_monitor().log_snapshot(context)


def log_system_info() -> None:
    """Log CPU counts and the memory limit once at startup."""
    cpu_logical = psutil.cpu_count(logical=True) or 0
    cpu_physical = psutil.cpu_count(logical=False) or 0
    if _detect_cgroups_available():
        mem = f"cgroup_mem_limit_mb={_read_cgroup_usage().limit_bytes // _MB}"
    else:
        mem = f"system_total_mb={int(psutil.virtual_memory().total) // _MB}"
    get_logger().info(
        f"system_info cpu_logical={cpu_logical} cpu_physical={cpu_physical} {mem}"
    )


__all__ = [
    "MemoryMonitor",
    "MemorySnapshot",
    "MemoryUsage",
    "get_monitor",
    "log_memory_snapshot",
    "log_system_info",
]
