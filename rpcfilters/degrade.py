"""Load-shedding filter that drops requests when the container is overloaded."""

from __future__ import annotations

import dataclasses
import logging
import os
import random
import threading
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from rpcfilters.cgroup import Cgroup
from rpcfilters.core import Context, RpcError, register_filter, register_plugin

PLUGIN_TYPE = "circuitbreaker"
PLUGIN_NAME = "degrade"
SYSTEM_DEGRADE_ERR_NO = 22
ERR_DEGRADE_RETURN = "service is degrade..."
INFO_DEGRADE_RATE_ZERO = "because the derade_rate is zero,so exit plugin"
INFO_DEGRADE_RATE_100 = "the derade_rate is 100, so exit plugin"

UPDATE_SYS_PERIOD = 30
WAIT_CPU_TIME = 90
DEFAULT_INTERVAL = 60

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoadAvg:
    """System load averages over 1, 5 and 15 minutes."""

    load1: float = 0.0
    load5: float = 0.0
    load15: float = 0.0


def _os_load_avg() -> LoadAvg:
    return LoadAvg(*os.getloadavg())


class SystemStats:
    """Holds the latest CPU idle figure and reads load and memory on demand."""

    def __init__(
        self,
        cgroup: Any = None,
        load_provider: Optional[Callable[[], LoadAvg]] = None,
        memory_provider: Optional[Callable[[], tuple[float, int, int]]] = None,
    ) -> None:
        self.cgroup = cgroup if cgroup is not None else Cgroup()
        self.load_provider = load_provider or _os_load_avg
        self.memory_provider = memory_provider or self.cgroup.memory_usage_infos
        self.cpu_idle = 100

    def get_cpu_idle(self) -> int:
        """Latest CPU idle percentage."""
        return self.cpu_idle

    def get_load_avg(self) -> LoadAvg:
        """Current load averages; the provider's error propagates."""
        return self.load_provider()

    def get_memory_stat(self) -> float:
        """Memory usage percentage, or 0.0 when it cannot be read."""
        try:
            usage, _total, _rss = self.memory_provider()
        except (OSError, ValueError):
            return 0.0
        return usage * 100

    def refresh_cpu_idle(self, wait: float) -> None:
        """Measure CPU usage over ``wait`` seconds and update the idle figure."""
        try:
            usage = self.cgroup.cpu_usage(wait)
            self.cpu_idle = 100 - int(usage * 100)
        except (OSError, ValueError, OverflowError):
            pass
        if self.cpu_idle < 0:
            self.cpu_idle = 0

    def run_updates(self, period: float, wait: float, stop_event: threading.Event) -> None:
        """Refresh the idle figure every ``period`` seconds until ``stop_event`` is set."""
        while not stop_event.wait(period):
            self.refresh_cpu_idle(wait)


@dataclass
class DegradeConfig:
    """Thresholds and limits of the degrade filter."""

    load5: float = 0.0
    cpu_idle: int = 0
    memory_use_percent: int = 0
    degrade_rate: int = 0
    interval: int = 0
    modulename: str = ""
    whitelist: str = ""
    is_active: bool = False
    max_concurrent_cnt: int = 0
    max_timeout_ms: int = 0

    def enable_concurrency(self) -> bool:
        """Whether the concurrent request limit is on."""
        return self.max_concurrent_cnt > 0


_CONFIG_KEYS: dict[str, tuple[str, type]] = {
    "load5": ("load5", float),
    "cpu_idle": ("cpu_idle", int),
    "memory_use_p": ("memory_use_percent", int),
    "degrade_rate": ("degrade_rate", int),
    "interval": ("interval", int),
    "modulename": ("modulename", str),
    "whitelist": ("whitelist", str),
    "max_concurrent_cnt": ("max_concurrent_cnt", int),
    "max_timeout_ms": ("max_timeout_ms", int),
}


def _coerce(key: str, value: Any, kind: type) -> Any:
    if kind is str:
        return str(value)
    if isinstance(value, bool):
        raise ValueError(f"{key} must be a number")
    if kind is int:
        if not isinstance(value, int):
            raise ValueError(f"{key} must be an integer")
        return value
    if not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number")
    return float(value)


def _merge_config(config: DegradeConfig, data: Any) -> DegradeConfig:
    if data is None:
        return config
    if not isinstance(data, Mapping):
        raise ValueError("degrade configuration must be a mapping")
    changes = {
        attr: _coerce(key, data[key], kind)
        for key, (attr, kind) in _CONFIG_KEYS.items()
        if data.get(key) is not None
    }
    return dataclasses.replace(config, **changes)


class Degrade:
    """Plugin and server filter that sheds load when the system is overloaded."""

    def __init__(self, stats: Optional[SystemStats] = None, rng: Optional[random.Random] = None):
        self.config = DegradeConfig()
        self.is_degrade = False
        self.semaphore: Optional[threading.BoundedSemaphore] = None
        self.stats = stats if stats is not None else SystemStats()
        self._rng = rng if rng is not None else random.Random()
        self._stop: Optional[threading.Event] = None

    def type(self) -> str:
        return PLUGIN_TYPE

    def setup(self, name: str, decoder: Any) -> None:
        """Load the configuration, start the monitors and register the filter."""
        self.config = _merge_config(self.config, decoder.decode())
        cfg = self.config
        if cfg.degrade_rate == 0:
            _logger.info(INFO_DEGRADE_RATE_ZERO)
            return
        if cfg.degrade_rate == 100:
            _logger.info(INFO_DEGRADE_RATE_100)
            return
        if cfg.interval == 0:
            cfg.interval = DEFAULT_INTERVAL
        if cfg.enable_concurrency():
            self.semaphore = threading.BoundedSemaphore(cfg.max_concurrent_cnt)

        self.stop()
        stop = threading.Event()
        self._stop = stop
        threading.Thread(
            target=self.stats.run_updates,
            args=(UPDATE_SYS_PERIOD, WAIT_CPU_TIME, stop),
            name="degrade-stats",
            daemon=True,
        ).start()
        threading.Thread(
            target=self._evaluate_loop,
            args=(cfg.interval, stop),
            name="degrade-evaluate",
            daemon=True,
        ).start()
        register_filter(PLUGIN_NAME, self.filter, None)

    def _reject(self) -> RpcError:
        return RpcError(SYSTEM_DEGRADE_ERR_NO, ERR_DEGRADE_RETURN)

    def filter(self, ctx: Context, req: Any, handler) -> Any:
        """Drop a share of requests while degraded, and enforce the concurrency limit."""
        if self.is_degrade and self._rng.randrange(100) >= self.config.degrade_rate:
            raise self._reject()
        if not self.config.enable_concurrency():
            return handler(ctx, req)
        sema = self.semaphore
        if sema is None or not sema.acquire(blocking=False):
            raise self._reject()
        try:
            return handler(ctx, req)
        finally:
            sema.release()

    def evaluate(self) -> bool:
        """Recompute the degrade switch from current readings and return it."""
        cfg = self.config
        cpu_idle = self.stats.get_cpu_idle()
        mem = int(self.stats.get_memory_stat())
        try:
            load = self.stats.get_load_avg()
            load1, load5 = load.load1, load.load5
        except (OSError, ValueError):
            load1 = load5 = 0.0
        if load5 > cfg.load5 or mem > cfg.memory_use_percent or cpu_idle < cfg.cpu_idle:
            self.is_degrade = True
        if load1 <= cfg.load5 and mem <= cfg.memory_use_percent and cpu_idle >= cfg.cpu_idle:
            self.is_degrade = False
        _logger.info(
            "cpu_idle:%d mem_usage:%d load5:%f,degrade:%s",
            cpu_idle, mem, load5, "true" if self.is_degrade else "false",
        )
        return self.is_degrade

    def _evaluate_loop(self, interval: float, stop: threading.Event) -> None:
        while not stop.wait(interval):
            self.evaluate()

    def stop(self) -> None:
        """Stop the background monitors started by setup."""
        if self._stop is not None:
            self._stop.set()
            self._stop = None


register_plugin(PLUGIN_NAME, Degrade())