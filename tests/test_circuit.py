import threading

import pytest

from rpcfilters import circuit
from rpcfilters.circuit import (
    CIRCUIT_OPEN_MESSAGE,
    DEFAULT_ERROR_PERCENT_THRESHOLD,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_SLEEP_WINDOW,
    DEFAULT_TIMEOUT,
    DEFAULT_VOLUME_THRESHOLD,
    MAX_CONCURRENCY_MESSAGE,
    ROLLING_WINDOW,
    TIMEOUT_MESSAGE,
    CircuitBreaker,
    CircuitError,
    CommandConfig,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture(autouse=True)
def _fresh_circuits():
    circuit.flush()
    yield
    circuit.flush()


def make_breaker(clock, **settings):
    base = dict(request_volume_threshold=3, error_percent_threshold=10, sleep_window=100)
    base.update(settings)
    return CircuitBreaker("test", CommandConfig(**base), clock=clock)


def test_resolved_fills_defaults():
    resolved = CommandConfig().resolved()
    assert resolved.timeout == DEFAULT_TIMEOUT
    assert resolved.max_concurrent_requests == DEFAULT_MAX_CONCURRENT
    assert resolved.request_volume_threshold == DEFAULT_VOLUME_THRESHOLD
    assert resolved.sleep_window == DEFAULT_SLEEP_WINDOW
    assert resolved.error_percent_threshold == DEFAULT_ERROR_PERCENT_THRESHOLD


def test_resolved_keeps_set_values():
    resolved = CommandConfig(timeout=8, sleep_window=5).resolved()
    assert resolved.timeout == 8
    assert resolved.sleep_window == 5
    assert resolved.request_volume_threshold == DEFAULT_VOLUME_THRESHOLD


def test_closed_below_request_volume():
    cb = make_breaker(FakeClock())
    cb.report(False)
    cb.report(False)
    assert cb.is_open() is False
    assert cb.allow_request() is True


def test_opens_when_error_rate_too_high():
    cb = make_breaker(FakeClock())
    for _ in range(3):
        cb.report(False)
    assert cb.is_open() is True
    assert cb.allow_request() is False


def test_stays_closed_when_healthy():
    cb = make_breaker(FakeClock(), error_percent_threshold=50)
    for _ in range(3):
        cb.report(True)
    cb.report(False)
    assert cb.is_open() is False


def test_single_trial_after_sleep_window():
    clock = FakeClock()
    cb = make_breaker(clock)
    for _ in range(3):
        cb.report(False)
    assert cb.is_open() is True
    clock.advance(0.05)
    assert cb.allow_request() is False
    clock.advance(0.06)
    assert cb.allow_request() is True
    assert cb.allow_request() is False


def test_success_closes_open_circuit():
    clock = FakeClock()
    cb = make_breaker(clock)
    for _ in range(3):
        cb.report(False)
    assert cb.is_open() is True
    cb.report(True)
    assert cb.is_open() is False
    assert cb.allow_request() is True


def test_old_events_leave_the_window():
    clock = FakeClock()
    cb = make_breaker(clock)
    for _ in range(3):
        cb.report(False)
    clock.advance(ROLLING_WINDOW + 1)
    assert cb.is_open() is False


def test_force_open():
    cb = make_breaker(FakeClock())
    cb.force_open = True
    assert cb.is_open() is True


def test_do_returns_value():
    assert circuit.do("value", lambda: "result") == "result"


def test_do_propagates_error():
    def fail():
        raise ValueError("rpc error")

    with pytest.raises(ValueError, match="rpc error"):
        circuit.do("propagate", fail)


def test_do_times_out_and_frees_ticket():
    circuit.configure({"slow": CommandConfig(timeout=20, max_concurrent_requests=1)})
    release = threading.Event()
    with pytest.raises(CircuitError) as excinfo:
        circuit.do("slow", lambda: release.wait(2))
    release.set()
    assert str(excinfo.value) == TIMEOUT_MESSAGE
    assert circuit.do("slow", lambda: "again") == "again"


def test_do_short_circuits_when_open():
    circuit.configure(
        {"tripped": CommandConfig(request_volume_threshold=2, error_percent_threshold=10)}
    )

    def fail():
        raise ValueError("boom")

    for _ in range(2):
        with pytest.raises(ValueError):
            circuit.do("tripped", fail)
    with pytest.raises(CircuitError) as excinfo:
        circuit.do("tripped", lambda: "never")
    assert str(excinfo.value) == CIRCUIT_OPEN_MESSAGE


def test_do_rejects_over_concurrency_limit():
    circuit.configure({"limited": CommandConfig(timeout=3000, max_concurrent_requests=1)})
    started = threading.Event()
    release = threading.Event()
    results = []

    def slow():
        started.set()
        release.wait(2)
        return "slow"

    worker = threading.Thread(target=lambda: results.append(circuit.do("limited", slow)))
    worker.start()
    assert started.wait(2)
    with pytest.raises(CircuitError) as excinfo:
        circuit.do("limited", lambda: "fast")
    release.set()
    worker.join(3)
    assert str(excinfo.value) == MAX_CONCURRENCY_MESSAGE
    assert results == ["slow"]


def test_configure_updates_existing_circuit():
    cb = circuit.get_circuit("reconfigured")
    circuit.configure({"reconfigured": CommandConfig(timeout=8)})
    assert cb.settings.timeout == 8
    assert circuit.get_circuit("reconfigured") is cb


def test_flush_forgets_circuits():
    circuit.configure(
        {"flushed": CommandConfig(request_volume_threshold=1, error_percent_threshold=10)}
    )
    old = circuit.get_circuit("flushed")
    old.report(False)
    assert old.is_open() is True
    circuit.flush()
    new = circuit.get_circuit("flushed")
    assert new is not old
    assert new.is_open() is False


def test_registered_collector_receives_results():
    made = []

    class Recorder:
        def __init__(self, name):
            self.name = name
            self.results = []

        def update(self, result):
            self.results.append(result)

        def reset(self):
            self.results.clear()

    def factory(name):
        recorder = Recorder(name)
        made.append(recorder)
        return recorder

    circuit.register_collector(factory)
    assert circuit.do("collected", lambda: 5) == 5
    recorder = next(r for r in made if r.name == "collected")
    assert len(recorder.results) == 1
    assert recorder.results[0].successes == 1
    assert recorder.results[0].errors == 0