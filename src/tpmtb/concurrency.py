"""
Bounded, order-preserving worker pool.

Every item is submitted at once and at most `workers` of them run at
the same time. Each task writes only its own result slot, and slots
are read after all workers have been joined.
"""

import math
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")

MAX_WORKERS = 10

_CGROUP_V2_CPU_MAX = "/sys/fs/cgroup/cpu.max"
_CGROUP_V1_QUOTA = "/sys/fs/cgroup/cpu/cpu.cfs_quota_us"
_CGROUP_V1_PERIOD = "/sys/fs/cgroup/cpu/cpu.cfs_period_us"


def _read_file(path: str) -> Optional[str]:
    try:
        with open(path, "r") as f:
            return f.read()
    except OSError:
        return None


def _cpus_from_quota(quota: int, period: int) -> int:
    if quota <= 0 or period <= 0:
        return 0
    return max(1, math.ceil(quota / period))


def read_cgroup_v2_quota(path: str = _CGROUP_V2_CPU_MAX) -> int:
    """CPU limit from cgroup v2 ``cpu.max``, or 0 when unlimited or unknown."""
    data = _read_file(path)
    if data is None:
        return 0
    fields = data.split()
    if len(fields) < 2 or fields[0] == "max":
        return 0
    try:
        return _cpus_from_quota(int(fields[0]), int(fields[1]))
    except ValueError:
        return 0


def read_cgroup_v1_quota(quota_path: str = _CGROUP_V1_QUOTA,
                         period_path: str = _CGROUP_V1_PERIOD) -> int:
    """CPU limit from cgroup v1 CFS quota and period, or 0."""
    quota_data = _read_file(quota_path)
    period_data = _read_file(period_path)
    if quota_data is None or period_data is None:
        return 0
    try:
        return _cpus_from_quota(int(quota_data.strip()), int(period_data.strip()))
    except ValueError:
        return 0


def detect_cpu_count() -> int:
    """Usable CPUs honouring cgroup quotas, capped at MAX_WORKERS."""
    quota = read_cgroup_v2_quota() or read_cgroup_v1_quota()
    if quota > 0:
        return min(quota, MAX_WORKERS)
    return min(os.cpu_count() or 1, MAX_WORKERS)


def clamp_workers(workers: int) -> int:
    if workers == 0:
        workers = detect_cpu_count()
    return max(1, min(workers, MAX_WORKERS))


def execute(workers: int, items: Sequence[T], fn: Callable[[int, T], R]) -> List[R]:
    """
    Run fn(index, item) for every item with bounded parallelism.

    Args:
        workers: Parallelism, 0 to auto-detect. Clamped to [1, MAX_WORKERS].
        items: Inputs
        fn: Called with the index and the item; its return value is
            stored at the same index

    Returns:
        Results where results[i] == fn(i, items[i])

    fn is expected to report failures in its return value. An exception
    escaping fn is re-raised once every worker has finished.
    """
    workers = clamp_workers(workers)
    if not items:
        return []
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(fn, i, item) for i, item in enumerate(items)]
    return [future.result() for future in futures]
