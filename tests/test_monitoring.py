from __future__ import annotations

from pathlib import Path

import pytest

import detection_trainer.monitoring as mon


def test_format_snapshot_line() -> None:
    mb = 1024 * 1024
    snap = mon.MemorySnapshot(
        rss_bytes=100 * mb,
        threads=7,
        usage=mon.MemoryUsage(usage_bytes=512 * mb, limit_bytes=1024 * mb, percent=50.0),
    )
    line = mon._format_snapshot("epoch_3", snap, "cgroup")
    assert line == (
        "epoch_3 memory main_rss_mb=100 threads=7 "
        "cgroup_usage_mb=512 cgroup_limit_mb=1024 cgroup_pct=50.0"
    )


def test_system_monitor_snapshot() -> None:
    snap = mon.MemoryMonitor("system", mon._read_system_usage).get_snapshot()
    assert snap.rss_bytes > 0
    assert snap.threads >= 1
    assert snap.usage.limit_bytes > 0


def test_cgroup_detection_and_usage(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    current = tmp_path / "memory.current"
    maximum = tmp_path / "memory.max"
    monkeypatch.setattr(mon, "_CGROUP_MEM_CURRENT", current)
    monkeypatch.setattr(mon, "_CGROUP_MEM_MAX", maximum)
    assert mon._detect_cgroups_available() is False
    current.write_text("256\n", encoding="utf-8")
    maximum.write_text("max\n", encoding="utf-8")
    assert mon._detect_cgroups_available() is False
    maximum.write_text("1024\n", encoding="utf-8")
    assert mon._detect_cgroups_available() is True
    usage = mon._read_cgroup_usage()
    assert usage.percent == pytest.approx(25.0)
    assert mon._create_monitor().scope == "cgroup"


def test_get_monitor_is_cached(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(mon, "_monitor", None)
    first = mon.get_monitor()
    assert mon.get_monitor() is first


def test_log_helpers_run(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(mon, "_monitor", mon.MemoryMonitor("system", mon._read_system_usage))
    monkeypatch.setattr(mon, "_detect_cgroups_available", lambda: False)
    mon.log_memory_snapshot(context="epoch_1")
    mon.log_system_info()
