"""Configuration of client-side retry and hedging, as read from YAML."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

RET_SERVER_TIMEOUT = 21
RET_CLIENT_CONNECT_FAIL = 111
RET_CLIENT_ROUTE_ERR = 131
RET_CLIENT_NET_ERR = 141

DEFAULT_HEDGING_MAX_ATTEMPTS = 2
DEFAULT_RETRY_MAX_ATTEMPTS = 2
DEFAULT_NON_FATAL_ECS: tuple[int, ...] = (
    RET_SERVER_TIMEOUT,
    RET_CLIENT_CONNECT_FAIL,
    RET_CLIENT_ROUTE_ERR,
    RET_CLIENT_NET_ERR,
)
DEFAULT_RETRYABLE_ECS: tuple[int, ...] = DEFAULT_NON_FATAL_ECS

_UNIT_NS = {
    "ns": Decimal(1),
    "us": Decimal(1_000),
    "µs": Decimal(1_000),
    "μs": Decimal(1_000),
    "ms": Decimal(1_000_000),
    "s": Decimal(1_000_000_000),
    "m": Decimal(60_000_000_000),
    "h": Decimal(3_600_000_000_000),
}
_PART = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)"
_DURATION_RE = re.compile(rf"([+-]?)((?:{_PART})+)")
_PART_RE = re.compile(_PART)


def parse_duration(value: Any) -> float:
    """Return a duration in seconds.

    Strings use the ``1h30m``/``200ms`` notation; integers count nanoseconds.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, int):
        return value / 1e9
    if not isinstance(value, str):
        raise ValueError(f"invalid duration: {value!r}")
    text = value.strip()
    if text in ("0", "+0", "-0"):
        return 0.0
    match = _DURATION_RE.fullmatch(text)
    if match is None:
        raise ValueError(f"invalid duration: {value!r}")
    sign, body = match.group(1), match.group(2)
    try:
        total = sum(
            (Decimal(num) * _UNIT_NS[unit] for num, unit in _PART_RE.findall(body)),
            Decimal(0),
        )
    except InvalidOperation as err:
        raise ValueError(f"invalid duration: {value!r}") from err
    seconds = float(total / Decimal(1_000_000_000))
    return -seconds if sign == "-" else seconds


def _mapping(data: Any, what: str) -> Mapping[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"{what} must be a mapping")
    return data


def _int(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return value


def _float(data: Mapping[str, Any], key: str) -> float:
    value = data.get(key)
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number")
    return float(value)


def _str(data: Mapping[str, Any], key: str) -> str:
    value = data.get(key)
    return "" if value is None else str(value)


def _opt_bool(data: Mapping[str, Any], key: str) -> Optional[bool]:
    value = data.get(key)
    if value is not None and not isinstance(value, bool):
        raise ValueError(f"{key} must be a boolean")
    return value


def _list(data: Mapping[str, Any], key: str) -> list[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{key} must be a list")
    return value


def _int_list(data: Mapping[str, Any], key: str) -> list[int]:
    items = _list(data, key)
    for item in items:
        if isinstance(item, bool) or not isinstance(item, int):
            raise ValueError(f"{key} must hold integers")
    return list(items)


@dataclass
class ThrottleConfig:
    """Token bucket limiting retries and hedges."""

    max_tokens: float = 0.0
    token_ratio: float = 0.0

    @classmethod
    def from_dict(cls, data: Any) -> "ThrottleConfig":
        conf = _mapping(data, "retry_hedging_throttle")
        return cls(_float(conf, "max_tokens"), _float(conf, "token_ratio"))


@dataclass
class ExponentialBackoff:
    """Exponential backoff; durations in seconds."""

    initial: float = 0.0
    maximum: float = 0.0
    multiplier: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> "ExponentialBackoff":
        conf = _mapping(data, "exponential")
        return cls(
            initial=parse_duration(conf["initial"]) if conf.get("initial") is not None else 0.0,
            maximum=parse_duration(conf["maximum"]) if conf.get("maximum") is not None else 0.0,
            multiplier=_int(conf, "multiplier"),
        )


@dataclass
class BackoffConfig:
    """Backoff between retries: exponential, or a linear list of delays in seconds."""

    exponential: Optional[ExponentialBackoff] = None
    linear: list[float] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "BackoffConfig":
        conf = _mapping(data, "backoff")
        exponential = conf.get("exponential")
        return cls(
            exponential=None if exponential is None else ExponentialBackoff.from_dict(exponential),
            linear=[parse_duration(d) for d in _list(conf, "linear")],
        )


@dataclass
class RetryConfig:
    """Retry policy."""

    name: str = ""
    max_attempts: int = 0
    backoff: BackoffConfig = field(default_factory=BackoffConfig)
    retryable_error_codes: list[int] = field(default_factory=list)
    skip_visited_nodes: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Any) -> "RetryConfig":
        conf = _mapping(data, "retry")
        return cls(
            name=_str(conf, "name"),
            max_attempts=_int(conf, "max_attempts"),
            backoff=BackoffConfig.from_dict(conf.get("backoff")),
            retryable_error_codes=_int_list(conf, "retryable_error_codes"),
            skip_visited_nodes=_opt_bool(conf, "skip_visited_nodes"),
        )

    def repair(self) -> None:
        """Fill unset fields with their defaults."""
        if self.max_attempts == 0:
            self.max_attempts = DEFAULT_RETRY_MAX_ATTEMPTS
        if not self.name:
            self.name = f"retry-{uuid.uuid4()}"
        if not self.retryable_error_codes:
            self.retryable_error_codes = list(DEFAULT_RETRYABLE_ECS)


@dataclass
class HedgingConfig:
    """Hedging policy; the delay is in seconds."""

    name: str = ""
    max_attempts: int = 0
    hedging_delay: float = 0.0
    non_fatal_error_codes: list[int] = field(default_factory=list)
    skip_visited_nodes: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Any) -> "HedgingConfig":
        conf = _mapping(data, "hedging")
        delay = conf.get("hedging_delay")
        return cls(
            name=_str(conf, "name"),
            max_attempts=_int(conf, "max_attempts"),
            hedging_delay=0.0 if delay is None else parse_duration(delay),
            non_fatal_error_codes=_int_list(conf, "non_fatal_error_codes"),
            skip_visited_nodes=_opt_bool(conf, "skip_visited_nodes"),
        )

    def repair(self) -> None:
        """Fill unset fields with their defaults."""
        if self.max_attempts == 0:
            self.max_attempts = DEFAULT_HEDGING_MAX_ATTEMPTS
        if not self.name:
            self.name = f"hedging-{uuid.uuid4()}"
        if not self.non_fatal_error_codes:
            self.non_fatal_error_codes = list(DEFAULT_NON_FATAL_ECS)


@dataclass
class RetryHedgingConfig:
    """Either a retry or a hedging policy, or neither."""

    retry: Optional[RetryConfig] = None
    hedging: Optional[HedgingConfig] = None

    @classmethod
    def from_dict(cls, data: Any) -> "RetryHedgingConfig":
        conf = _mapping(data, "retry_hedging")
        retry, hedging = conf.get("retry"), conf.get("hedging")
        return cls(
            retry=None if retry is None else RetryConfig.from_dict(retry),
            hedging=None if hedging is None else HedgingConfig.from_dict(hedging),
        )


@dataclass
class MethodConfig:
    """Policy overriding the service's for one callee method."""

    callee: str = ""
    retry_hedging: Optional[RetryHedgingConfig] = None

    @classmethod
    def from_dict(cls, data: Any) -> "MethodConfig":
        conf = _mapping(data, "method")
        rh = conf.get("retry_hedging")
        return cls(
            callee=_str(conf, "callee"),
            retry_hedging=None if rh is None else RetryHedgingConfig.from_dict(rh),
        )


@dataclass
class ServiceConfig:
    """Retry and hedging settings of one callee service."""

    name: str = ""
    callee: str = ""
    throttle: Optional[ThrottleConfig] = None
    retry_hedging: RetryHedgingConfig = field(default_factory=RetryHedgingConfig)
    methods: list[MethodConfig] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "ServiceConfig":
        conf = _mapping(data, "service")
        throttle = conf.get("retry_hedging_throttle")
        return cls(
            name=_str(conf, "name"),
            callee=_str(conf, "callee"),
            throttle=None if throttle is None else ThrottleConfig.from_dict(throttle),
            retry_hedging=RetryHedgingConfig.from_dict(conf.get("retry_hedging")),
            methods=[MethodConfig.from_dict(m) for m in _list(conf, "methods")],
        )

    def repair(self) -> None:
        """Use the callee as the naming-service name when no name is given."""
        if not self.name:
            self.name = self.callee


@dataclass
class ClientConfig:
    """The client section: one entry per callee service."""

    services: list[ServiceConfig] = field(default_factory=list)


def parse_client_config(data: Any) -> ClientConfig:
    """Build a ClientConfig from decoded YAML holding a ``service`` list."""
    conf = _mapping(data, "client")
    return ClientConfig([ServiceConfig.from_dict(s) for s in _list(conf, "service")])