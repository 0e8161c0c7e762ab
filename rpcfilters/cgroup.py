"""Container resource readings taken from cgroup v1 files and /proc/meminfo."""

from __future__ import annotations

import math
import re
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

CPU_FILE = "/sys/fs/cgroup/cpuacct/cpuacct.usage_percpu"
QUOTA_FILE = "/sys/fs/cgroup/cpu/cpu.cfs_quota_us"
PERIOD_FILE = "/sys/fs/cgroup/cpu/cpu.cfs_period_us"
CPU_SET_FILE = "/sys/fs/cgroup/cpuset/cpuset.cpus"
CPU_USAGE_FILE = "/sys/fs/cgroup/cpuacct/cpuacct.usage"
MEMORY_STAT_FILE = "/sys/fs/cgroup/memory/memory.stat"
MEMINFO_FILE = "/proc/meminfo"

_UINT_RE = re.compile(r"[0-9]+")
_INT_RE = re.compile(r"[+-]?[0-9]+")
_UINT64_LIMIT = 2**64
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


def _parse_uint(text: str) -> int:
    if not _UINT_RE.fullmatch(text):
        raise ValueError(f"invalid unsigned integer: {text!r}")
    value = int(text)
    if value >= _UINT64_LIMIT:
        raise ValueError(f"unsigned integer out of range: {text!r}")
    return value


def _parse_int(text: str) -> int:
    if not _INT_RE.fullmatch(text):
        raise ValueError(f"invalid integer: {text!r}")
    value = int(text)
    if not _INT64_MIN <= value <= _INT64_MAX:
        raise ValueError(f"integer out of range: {text!r}")
    return value


def _int_or_zero(text: str) -> int:
    try:
        return _parse_int(text)
    except ValueError:
        return 0


def _ratio(num: float, den: float) -> float:
    if den == 0:
        return math.nan if num == 0 else math.copysign(math.inf, num)
    return num / den


def read_from_file(path: str) -> str:
    """Return the whole file with surrounding whitespace removed."""
    return Path(path).read_text(encoding="utf-8", errors="replace").strip()


def read_uint64_from_file(path: str) -> int:
    """Read one unsigned 64-bit integer from a file."""
    return _parse_uint(read_from_file(path))


def read_int64_from_file(path: str) -> int:
    """Read one signed 64-bit integer from a file."""
    return _parse_int(read_from_file(path))


def read_map_from_file(path: str) -> dict[str, int]:
    """Read ``key value`` lines; lines without an unsigned value are skipped."""
    result: dict[str, int] = {}
    with open(path, encoding="utf-8", errors="replace") as fh:
        for line in fh:
            key, sep, rest = line.rstrip("\r\n").partition(" ")
            if not sep:
                continue
            try:
                result[key] = _parse_uint(rest.strip())
            except ValueError:
                continue
    return result


def parse_cpu_set(text: str) -> float:
    """Count the cores in a cpuset list such as ``0,8-12,60-63``."""
    count = 0
    for item in text.split(","):
        bounds = item.split("-")
        if len(bounds) == 1:
            count += 1
        elif len(bounds) == 2:
            count += _int_or_zero(bounds[1]) - _int_or_zero(bounds[0]) + 1
        else:
            raise ValueError("Invalid cpu set formmat")
    return float(count)


def get_cpu_tick() -> int:
    """Return the kernel clock tick rate reported by ``getconf CLK_TCK``."""
    out = subprocess.run(
        ["getconf", "CLK_TCK"], capture_output=True, text=True, check=True
    ).stdout
    return _parse_int(out.strip())


@dataclass
class Cgroup:
    """Reads CPU and memory figures of the current container."""

    cpu_file: str = CPU_FILE
    quota_file: str = QUOTA_FILE
    period_file: str = PERIOD_FILE
    cpu_set_file: str = CPU_SET_FILE
    cpu_usage_file: str = CPU_USAGE_FILE
    memory_stat_file: str = MEMORY_STAT_FILE
    meminfo_file: str = MEMINFO_FILE
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False, compare=False)

    def container_cpu_total(self) -> int:
        """CPU time used by the container, in nanoseconds."""
        return read_uint64_from_file(self.cpu_usage_file)

    def core_count(self) -> int:
        """Number of cores on the host."""
        return len(read_from_file(self.cpu_file).split(" "))

    def limited_core_count(self) -> float:
        """Cores the container may use, from its CFS quota or its cpuset."""
        quota = read_int64_from_file(self.quota_file)
        if quota == -1:
            return self.valid_cpu_set()
        period = read_int64_from_file(self.period_file)
        if period <= 0:
            raise ValueError("invalid period num")
        return quota / period

    def valid_cpu_set(self) -> float:
        """Number of cores listed in the container's cpuset."""
        return parse_cpu_set(read_from_file(self.cpu_set_file))

    def cpu_usage(self, interval: float) -> float:
        """Container CPU usage over ``interval`` seconds, as a share of its cores."""
        if interval <= 0:
            return 0.0
        before = self.container_cpu_total()
        self.sleep(interval)
        after = self.container_cpu_total()
        used = (after - before) % _UINT64_LIMIT
        try:
            cores = self.core_count()
        except (OSError, ValueError):
            cores = 0
        if cores == 0:
            raise ValueError("Error CPU Cores")
        try:
            limited = self.limited_core_count()
        except (OSError, ValueError):
            limited = 0.0
        return _ratio(float(used), interval * 1e9 * limited)

    def machine_memory_total(self) -> int:
        """Total host memory in bytes, or 0 when MemTotal is absent."""
        with open(self.meminfo_file, encoding="utf-8", errors="replace") as fh:
            for line in fh:
                key, sep, rest = line.rstrip("\r\n").partition(" ")
                if not sep or key != "MemTotal:":
                    continue
                value = rest.strip().removesuffix("kB").strip()
                return _parse_uint(value) * 1024
        return 0

    def memory_usage_infos(self) -> tuple[float, int, int]:
        """Return (usage ratio, memory limit in bytes, resident bytes) of the container."""
        info = read_map_from_file(self.memory_stat_file)
        if "hierarchical_memory_limit" not in info:
            raise ValueError("Invalid hierarchical_memory_limit")
        quota = info["hierarchical_memory_limit"]
        try:
            machine = self.machine_memory_total()
        except (OSError, ValueError):
            machine = 0
        total = quota if machine > quota else machine
        rss = info.get("total_rss", 0) + info.get("total_mapped_file", 0)
        return _ratio(float(rss), float(total)), total, rss