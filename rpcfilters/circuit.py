"""Circuit breakers with timeouts and concurrency limits, keyed by command name."""

from __future__ import annotations

import dataclasses
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol

DEFAULT_TIMEOUT = 1000
DEFAULT_MAX_CONCURRENT = 10
DEFAULT_VOLUME_THRESHOLD = 20
DEFAULT_SLEEP_WINDOW = 5000
DEFAULT_ERROR_PERCENT_THRESHOLD = 50

ROLLING_WINDOW = 10.0

TIMEOUT_MESSAGE = "hystrix: timeout"
CIRCUIT_OPEN_MESSAGE = "hystrix: circuit open"
MAX_CONCURRENCY_MESSAGE = "hystrix: max concurrency"

_SUCCESS = "success"
_FAILURE = "failure"
_TIMEOUT = "timeout"
_SHORT_CIRCUIT = "short-circuit"
_REJECTED = "rejected"


@dataclass(frozen=True)
class CommandConfig:
    """Settings of one command; times are in milliseconds and zero means the default."""

    timeout: int = 0
    max_concurrent_requests: int = 0
    request_volume_threshold: int = 0
    sleep_window: int = 0
    error_percent_threshold: int = 0
    queue_size_rejection_threshold: int = 0

    def resolved(self) -> "CommandConfig":
        """Return a copy with every zero setting replaced by its default."""
        return dataclasses.replace(
            self,
            timeout=self.timeout or DEFAULT_TIMEOUT,
            max_concurrent_requests=self.max_concurrent_requests or DEFAULT_MAX_CONCURRENT,
            request_volume_threshold=self.request_volume_threshold or DEFAULT_VOLUME_THRESHOLD,
            sleep_window=self.sleep_window or DEFAULT_SLEEP_WINDOW,
            error_percent_threshold=self.error_percent_threshold
            or DEFAULT_ERROR_PERCENT_THRESHOLD,
        )


class CircuitError(Exception):
    """Raised when a command is timed out, short-circuited or rejected."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


@dataclass(frozen=True)
class MetricResult:
    """The outcome of one command attempt, as handed to metric collectors."""

    attempts: int = 1
    errors: int = 0
    successes: int = 0
    failures: int = 0
    rejects: int = 0
    short_circuits: int = 0
    timeouts: int = 0
    run_duration: float = 0.0


class MetricCollector(Protocol):
    """Receives the outcome of every attempt of one command."""

    def update(self, result: MetricResult) -> None: ...

    def reset(self) -> None: ...


def _metric_result(event: str, run_duration: float) -> MetricResult:
    return MetricResult(
        errors=0 if event == _SUCCESS else 1,
        successes=int(event == _SUCCESS),
        failures=int(event == _FAILURE),
        rejects=int(event == _REJECTED),
        short_circuits=int(event == _SHORT_CIRCUIT),
        timeouts=int(event == _TIMEOUT),
        run_duration=run_duration,
    )


_collector_factories: list[Callable[[str], MetricCollector]] = []


class CircuitBreaker:
    """Tracks recent outcomes of one command and opens when too many of them fail."""

    def __init__(
        self,
        name: str,
        config: Optional[CommandConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.force_open = False
        self._clock = clock
        self._lock = threading.Lock()
        self._open = False
        self._opened_or_last_tested = 0.0
        self._events: deque[tuple[float, bool]] = deque()
        self._collectors = [factory(name) for factory in _collector_factories]
        self._apply(config if config is not None else CommandConfig())

    @property
    def settings(self) -> CommandConfig:
        """The effective settings, defaults filled in."""
        return self.config.resolved()

    def _apply(self, config: CommandConfig) -> None:
        self.config = config
        self._tickets = threading.Semaphore(max(0, config.resolved().max_concurrent_requests))

    def _prune(self, now: float) -> None:
        while self._events and self._events[0][0] <= now - ROLLING_WINDOW:
            self._events.popleft()

    def _reset_metrics(self) -> None:
        self._events.clear()
        for collector in self._collectors:
            collector.reset()

    def is_open(self) -> bool:
        """Whether calls should be refused; trips the circuit when it is unhealthy."""
        with self._lock:
            if self.force_open or self._open:
                return True
            now = self._clock()
            self._prune(now)
            settings = self.settings
            requests = len(self._events)
            if requests < settings.request_volume_threshold:
                return False
            errors = sum(1 for _, failed in self._events if failed)
            error_percent = int(errors / requests * 100 + 0.5)
            if error_percent < settings.error_percent_threshold:
                return False
            self._open = True
            self._opened_or_last_tested = now
            return True

    def _allow_single_test(self) -> bool:
        with self._lock:
            now = self._clock()
            if self._open and now > self._opened_or_last_tested + self.settings.sleep_window / 1000:
                self._opened_or_last_tested = now
                return True
            return False

    def allow_request(self) -> bool:
        """Whether a call may run now: the circuit is closed or a trial call is due."""
        return not self.is_open() or self._allow_single_test()

    def report(self, success: bool) -> None:
        """Record the outcome of a call; a success closes an open circuit."""
        self._record(_SUCCESS if success else _FAILURE)

    def _record(self, event: str, run_duration: float = 0.0) -> None:
        with self._lock:
            if event == _SUCCESS and self._open:
                self._open = False
                self._reset_metrics()
            now = self._clock()
            self._prune(now)
            self._events.append((now, event != _SUCCESS))
            collectors = list(self._collectors)
        result = _metric_result(event, run_duration)
        for collector in collectors:
            collector.update(result)

    def _reset(self) -> None:
        with self._lock:
            self._open = False
            self._reset_metrics()


_settings: dict[str, CommandConfig] = {}
_circuits: dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def configure(configs: Mapping[str, CommandConfig]) -> None:
    """Set the settings of the named commands, including circuits already in use."""
    with _registry_lock:
        for name, config in configs.items():
            _settings[name] = config
            existing = _circuits.get(name)
            if existing is not None:
                existing._apply(config)


def get_circuit(name: str) -> CircuitBreaker:
    """Return the circuit of a command, creating it on first use."""
    with _registry_lock:
        circuit = _circuits.get(name)
        if circuit is None:
            config = _settings.setdefault(name, CommandConfig())
            circuit = CircuitBreaker(name, config)
            _circuits[name] = circuit
        return circuit


def register_collector(factory: Callable[[str], MetricCollector]) -> None:
    """Add a collector factory; circuits created afterwards report to its collectors."""
    with _registry_lock:
        _collector_factories.append(factory)


def flush() -> None:
    """Reset and forget every circuit; settings are kept."""
    with _registry_lock:
        circuits = list(_circuits.values())
        _circuits.clear()
    for circuit in circuits:
        circuit._reset()


def do(name: str, run: Callable[[], Any]) -> Any:
    """Run ``run`` under the named circuit and return its result.

    Raises CircuitError when the circuit is open, the concurrency limit is reached
    or the call exceeds its timeout; otherwise errors of ``run`` propagate.
    """
    circuit = get_circuit(name)
    if not circuit.allow_request():
        circuit._record(_SHORT_CIRCUIT)
        raise CircuitError(CIRCUIT_OPEN_MESSAGE)
    tickets = circuit._tickets
    if not tickets.acquire(blocking=False):
        circuit._record(_REJECTED)
        raise CircuitError(MAX_CONCURRENCY_MESSAGE)

    timeout = circuit.settings.timeout / 1000
    settle_lock = threading.Lock()
    settled = False
    done = threading.Event()
    outcome: dict[str, Any] = {}
    started = time.monotonic()

    def settle(event: str) -> bool:
        nonlocal settled
        with settle_lock:
            if settled:
                return False
            settled = True
        tickets.release()
        circuit._record(event, time.monotonic() - started)
        return True

    def work() -> None:
        try:
            outcome["value"] = run()
            event = _SUCCESS
        except BaseException as exc:
            outcome["error"] = exc
            event = _FAILURE
        try:
            settle(event)
        finally:
            done.set()

    threading.Thread(target=work, name=f"circuit-{name}", daemon=True).start()
    if not done.wait(max(timeout, 0.0)) and settle(_TIMEOUT):
        raise CircuitError(TIMEOUT_MESSAGE)
    done.wait()
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("value")