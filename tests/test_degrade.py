import random
import threading

import pytest
import yaml

from rpcfilters.core import RpcError, YamlDecoder, background_context, get_server_filter
from rpcfilters.degrade import (
    PLUGIN_TYPE,
    Degrade,
    DegradeConfig,
    LoadAvg,
    SystemStats,
)

CONFIG_INFO = """
plugins:
  circuitbreaker:
    degrade:
      load5: 5
      cpu_idle: 30
      memory_use_p : 60
      degrade_rate : 30
      max_concurrent_cnt : 1
      max_timeout_ms : 100
"""


class FakeDecoder:
    def __init__(self, err=None):
        self.err = err

    def decode(self):
        if self.err is not None:
            raise self.err
        return None


class FakeCgroup:
    def __init__(self, result=0.0, err=None, on_call=None):
        self.result = result
        self.err = err
        self.on_call = on_call

    def cpu_usage(self, interval):
        if self.on_call is not None:
            self.on_call()
        if self.err is not None:
            raise self.err
        return self.result


def ok_handler(ctx, req):
    return {"ok": True}


def _degrade_section():
    return yaml.safe_load(CONFIG_INFO)["plugins"]["circuitbreaker"]["degrade"]


def _stats(idle=100, mem=0.0, load=LoadAvg()):
    stats = SystemStats(
        cgroup=FakeCgroup(),
        load_provider=lambda: load,
        memory_provider=lambda: (mem, 0, 0),
    )
    stats.cpu_idle = idle
    return stats


def test_plugin_type():
    assert Degrade(stats=_stats()).type() == PLUGIN_TYPE == "circuitbreaker"


def test_setup_from_yaml():
    d = Degrade(stats=_stats())
    try:
        d.setup("degrade", YamlDecoder(_degrade_section()))
    finally:
        d.stop()
    assert d.config.load5 == 5.0
    assert d.config.cpu_idle == 30
    assert d.config.memory_use_percent == 60
    assert d.config.degrade_rate == 30
    assert d.config.max_concurrent_cnt == 1
    assert d.config.max_timeout_ms == 100
    assert d.config.interval == 60
    assert d.semaphore is not None
    assert get_server_filter("degrade") == d.filter


def test_setup_decode_error():
    d = Degrade(stats=_stats())
    with pytest.raises(RuntimeError, match="fake error"):
        d.setup("degrade", FakeDecoder(RuntimeError("fake error")))


@pytest.mark.parametrize("rate", [0, 100])
def test_setup_exits_early_for_edge_rates(rate):
    d = Degrade(stats=_stats())
    d.config.degrade_rate = rate
    d.setup("degrade", FakeDecoder())
    assert d.config.interval == 0
    assert d.semaphore is None


def test_setup_keeps_configured_interval():
    d = Degrade(stats=_stats())
    d.config.interval = 1
    try:
        d.setup("degrade", YamlDecoder(_degrade_section()))
    finally:
        d.stop()
    assert d.config.interval == 1


def test_setup_rejects_bad_value():
    d = Degrade(stats=_stats())
    with pytest.raises(ValueError):
        d.setup("degrade", YamlDecoder({"degrade_rate": "lots"}))


def test_enable_concurrency():
    assert DegradeConfig(max_concurrent_cnt=1).enable_concurrency() is True
    assert DegradeConfig(max_concurrent_cnt=0).enable_concurrency() is False


def test_filter_rejects_when_degraded():
    d = Degrade(stats=_stats())
    d.is_degrade = True
    d.config.degrade_rate = -1
    with pytest.raises(RpcError) as info:
        d.filter(background_context(), None, ok_handler)
    assert info.value.code == 22
    assert info.value.message == "service is degrade..."


def test_filter_passes_when_not_degraded():
    d = Degrade(stats=_stats())
    d.config.max_concurrent_cnt = 0
    assert d.filter(background_context(), None, ok_handler) == {"ok": True}


def test_filter_keeps_share_of_traffic():
    d = Degrade(stats=_stats(), rng=random.Random(1))
    d.is_degrade = True
    d.config.degrade_rate = 100
    assert d.filter(background_context(), None, ok_handler) == {"ok": True}


def test_filter_rejects_over_concurrency_limit():
    d = Degrade(stats=_stats())
    d.config.max_concurrent_cnt = 1
    d.semaphore = threading.BoundedSemaphore(1)
    d.semaphore.acquire()
    with pytest.raises(RpcError) as info:
        d.filter(background_context(), None, ok_handler)
    assert info.value.code == 22


def test_filter_releases_slot_after_call():
    d = Degrade(stats=_stats())
    d.config.max_concurrent_cnt = 1
    d.semaphore = threading.BoundedSemaphore(1)
    assert d.filter(background_context(), None, ok_handler) == {"ok": True}
    assert d.filter(background_context(), None, ok_handler) == {"ok": True}
    assert d.semaphore.acquire(blocking=False) is True


def test_filter_without_semaphore_rejects():
    d = Degrade(stats=_stats())
    d.config.max_concurrent_cnt = 2
    with pytest.raises(RpcError):
        d.filter(background_context(), None, ok_handler)


def _configured(stats):
    d = Degrade(stats=stats)
    d.config = DegradeConfig(load5=5, cpu_idle=30, memory_use_percent=60)
    return d


def test_evaluate_low_idle_degrades():
    d = _configured(_stats(idle=10, mem=0.5, load=LoadAvg(1, 1, 1)))
    assert d.evaluate() is True


def test_evaluate_healthy_recovers():
    d = _configured(_stats(idle=50, mem=0.5, load=LoadAvg(1, 1, 1)))
    d.is_degrade = True
    assert d.evaluate() is False


def test_evaluate_recovery_uses_load1():
    d = _configured(_stats(idle=50, mem=0.5, load=LoadAvg(4, 6, 6)))
    assert d.evaluate() is False


def test_evaluate_keeps_state_between_thresholds():
    d = _configured(_stats(idle=50, mem=0.5, load=LoadAvg(6, 4, 4)))
    d.is_degrade = True
    assert d.evaluate() is True
    d.is_degrade = False
    assert d.evaluate() is False


def test_evaluate_memory_over_limit():
    d = _configured(_stats(idle=50, mem=0.7, load=LoadAvg(1, 1, 1)))
    assert d.evaluate() is True


def test_evaluate_load_error_counts_as_zero():
    def failing():
        raise OSError("fake error")

    stats = SystemStats(cgroup=FakeCgroup(), load_provider=failing,
                        memory_provider=lambda: (0.1, 0, 0))
    d = _configured(stats)
    d.is_degrade = True
    assert d.evaluate() is False


def test_get_memory_stat():
    stats = SystemStats(cgroup=FakeCgroup(), memory_provider=lambda: (100.0, 0, 0))
    assert stats.get_memory_stat() == 10000.0

    def failing():
        raise ValueError("fake error")

    stats = SystemStats(cgroup=FakeCgroup(), memory_provider=failing)
    assert stats.get_memory_stat() == 0.0


def test_get_cpu_idle_default():
    assert SystemStats(cgroup=FakeCgroup()).get_cpu_idle() == 100


def test_get_load_avg():
    stats = SystemStats(cgroup=FakeCgroup(), load_provider=lambda: LoadAvg())
    assert stats.get_load_avg() == LoadAvg(0.0, 0.0, 0.0)

    err = OSError("fake error")

    def failing():
        raise err

    stats = SystemStats(cgroup=FakeCgroup(), load_provider=failing)
    with pytest.raises(OSError) as info:
        stats.get_load_avg()
    assert info.value is err


def test_refresh_cpu_idle():
    stats = SystemStats(cgroup=FakeCgroup(result=0.25))
    stats.refresh_cpu_idle(1)
    assert stats.get_cpu_idle() == 75


def test_refresh_cpu_idle_clamps_at_zero():
    stats = SystemStats(cgroup=FakeCgroup(result=1.5))
    stats.refresh_cpu_idle(1)
    assert stats.get_cpu_idle() == 0


def test_refresh_cpu_idle_keeps_value_on_error():
    stats = SystemStats(cgroup=FakeCgroup(err=ValueError("Error CPU Cores")))
    stats.cpu_idle = 42
    stats.refresh_cpu_idle(1)
    assert stats.get_cpu_idle() == 42


def test_run_updates_stops_immediately():
    stats = SystemStats(cgroup=FakeCgroup(result=0.9))
    stop = threading.Event()
    stop.set()
    stats.run_updates(0.001, 0, stop)
    assert stats.get_cpu_idle() == 100


def test_run_updates_refreshes_until_stopped():
    stop = threading.Event()
    stats = SystemStats(cgroup=FakeCgroup(result=0.4, on_call=stop.set))
    stats.run_updates(0.001, 0, stop)
    assert stats.get_cpu_idle() == 60