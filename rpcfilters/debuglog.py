"""Filters that log every server and client call with its cost, peer, error and payloads."""

from __future__ import annotations

import dataclasses
import json
import logging
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Mapping, Optional

from rpcfilters.core import (
    ClientFilter,
    Context,
    ErrorCode,
    ServerFilter,
    error_code,
    register_filter,
    register_plugin,
)

PLUGIN_NAME = "debuglog"
PLUGIN_TYPE = "tracing"

REQUEST_ID_KEY = ("rpcfilters", "request_id")

TRACE_LEVEL = "trace"
DEBUG_LEVEL = "debug"
WARNING_LEVEL = "warning"
INFO_LEVEL = "info"
ERROR_LEVEL = "error"
FATAL_LEVEL = "fatal"

_TRACE = 5

LogFunc = Callable[[Context, Any, Any], str]
LogLevelFunc = Callable[..., None]

_logger = logging.getLogger(__name__)


def _level_logger(level: int) -> LogLevelFunc:
    def log(ctx: Context, fmt: str, *args: Any) -> None:
        _logger.log(level, fmt, *args)

    return log


LOG_CONTEXT_FUNCS: dict[str, LogLevelFunc] = {
    TRACE_LEVEL: _level_logger(_TRACE),
    DEBUG_LEVEL: _level_logger(logging.DEBUG),
    WARNING_LEVEL: _level_logger(logging.WARNING),
    INFO_LEVEL: _level_logger(logging.INFO),
    ERROR_LEVEL: _level_logger(logging.ERROR),
    FATAL_LEVEL: _level_logger(logging.CRITICAL),
}


@dataclass(frozen=True)
class RuleItem:
    """A rule matching a method name and/or a return code; unset parts match anything."""

    method: Optional[str] = None
    retcode: Optional[int] = None

    def matched(self, method: str, retcode: int) -> bool:
        return (self.method is None or self.method == method) and (
            self.retcode is None or self.retcode == retcode
        )


class Color(IntEnum):
    """Terminal font colours used for log lines."""

    RED = 31
    MAGENTA = 35

    @property
    def font_color(self) -> int:
        return int(self)


_LEVEL_COLORS = {DEBUG_LEVEL: Color.MAGENTA, ERROR_LEVEL: Color.RED}


def _request_id(ctx: Context) -> str:
    rid = ctx.value(REQUEST_ID_KEY)
    return "" if rid is None else str(rid)


def _go_value(value: Any) -> str:
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        parts = (f"{f.name}:{_go_value(getattr(value, f.name))}" for f in dataclasses.fields(value))
        return "{" + " ".join(parts) + "}"
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "map[" + " ".join(f"{_go_value(k)}:{_go_value(v)}" for k, v in items) + "]"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_go_value(v) for v in value) + "]"
    return str(value)


def _to_jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Mapping):
        return {str(k): _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    return value


def _dump_json(value: Any, indent: Optional[int]) -> str:
    try:
        if indent is None:
            return json.dumps(_to_jsonable(value), separators=(",", ":"), ensure_ascii=False)
        return json.dumps(_to_jsonable(value), indent=indent, ensure_ascii=False)
    except (TypeError, ValueError):
        return ""


def default_log_func(ctx: Context, req: Any, rsp: Any) -> str:
    """Print request and response field by field, with the request id."""
    return f"req={_go_value(req)} rsp={_go_value(rsp)} rid={_request_id(ctx)}"


def simple_log_func(ctx: Context, req: Any, rsp: Any) -> str:
    """Print nothing about the payloads."""
    return ""


def pretty_json_log_func(ctx: Context, req: Any, rsp: Any) -> str:
    """Print request and response as indented JSON."""
    return f"req={_dump_json(req, 2)} rsp={_dump_json(rsp, 2)} rid={_request_id(ctx)}"


def json_log_func(ctx: Context, req: Any, rsp: Any) -> str:
    """Print request and response as compact JSON."""
    return f"req={_dump_json(req, None)} rsp={_dump_json(rsp, None)} rid={_request_id(ctx)}"


def get_log_func(log_type: str) -> LogFunc:
    """Return the payload printer for a configured log type."""
    return {
        "simple": simple_log_func,
        "prettyjson": pretty_json_log_func,
        "json": json_log_func,
    }.get(log_type, default_log_func)


def get_log_level_func(level: str, default_level: str) -> LogLevelFunc:
    """Return the logging function for ``level``, falling back to ``default_level``."""
    func = LOG_CONTEXT_FUNCS.get(level)
    return func if func is not None else LOG_CONTEXT_FUNCS[default_level]


def get_log_format(level: str, enable_color: bool, fmt: str) -> str:
    """Wrap a format in the terminal colour of ``level`` when colour is enabled."""
    if not enable_color:
        return fmt
    color = _LEVEL_COLORS.get(level)
    if color is None:
        return fmt
    return f"\033[1;{color.font_color}m" + fmt + "\033[0m"


def _trim_fraction(value: int, unit: int) -> str:
    whole, frac = divmod(value, unit)
    if not frac:
        return str(whole)
    digits = len(str(unit)) - 1
    return f"{whole}.{str(frac).zfill(digits).rstrip('0')}"


def _format_duration(seconds: float) -> str:
    ns = round(seconds * 1e9)
    sign = "-" if ns < 0 else ""
    ns = abs(ns)
    if ns == 0:
        return "0s"
    if ns < 1_000:
        return f"{sign}{ns}ns"
    if ns < 1_000_000:
        return f"{sign}{_trim_fraction(ns, 1_000)}µs"
    if ns < 1_000_000_000:
        return f"{sign}{_trim_fraction(ns, 1_000_000)}ms"
    hours, rem = divmod(ns, 3600 * 10**9)
    minutes, rem = divmod(rem, 60 * 10**9)
    out = sign
    if hours:
        out += f"{hours}h"
    if hours or minutes:
        out += f"{minutes}m"
    return out + _trim_fraction(rem, 10**9) + "s"


@dataclass
class FilterOptions:
    """How a debug log filter prints and which calls it logs."""

    log_func: LogFunc = default_log_func
    err_log_level_func: LogLevelFunc = LOG_CONTEXT_FUNCS[ERROR_LEVEL]
    nil_log_level_func: LogLevelFunc = LOG_CONTEXT_FUNCS[DEBUG_LEVEL]
    enable_color: bool = False
    include: list[RuleItem] = field(default_factory=list)
    exclude: list[RuleItem] = field(default_factory=list)

    def passed(self, rpc_name: str, err_code: int) -> bool:
        """Whether a call should be logged; include rules, when set, override exclude rules."""
        if any(rule.matched(rpc_name, err_code) for rule in self.include):
            return True
        if self.include:
            return False
        return not any(rule.matched(rpc_name, err_code) for rule in self.exclude)


def server_filter(options: Optional[FilterOptions] = None) -> ServerFilter:
    """Return a server filter logging each handled call."""
    o = options if options is not None else FilterOptions()
    nil_fmt = get_log_format(DEBUG_LEVEL, o.enable_color, "server request:%s, cost:%s, from:%s%s")
    err_fmt = get_log_format(
        ERROR_LEVEL, o.enable_color, "server request:%s, cost:%s, from:%s, err:%s%s"
    )
    deadline_fmt = get_log_format(
        ERROR_LEVEL,
        o.enable_color,
        "server request:%s, cost:%s, from:%s, err:%s, total timeout:%s%s",
    )

    def debug_filter(ctx: Context, req: Any, handler) -> Any:
        begin_wall = time.time()
        begin = time.monotonic()
        try:
            rsp = handler(ctx, req)
        except Exception as err:
            msg = ctx.message
            if o.passed(msg.server_rpc_name, int(error_code(err))):
                cost = _format_duration(time.monotonic() - begin)
                addr = msg.remote_addr or ""
                payload = o.log_func(ctx, req, None)
                if ctx.deadline is not None:
                    o.err_log_level_func(
                        ctx, deadline_fmt, msg.server_rpc_name, cost, addr, str(err),
                        _format_duration(ctx.deadline - begin_wall), payload,
                    )
                else:
                    o.err_log_level_func(
                        ctx, err_fmt, msg.server_rpc_name, cost, addr, str(err), payload
                    )
            raise
        msg = ctx.message
        if o.passed(msg.server_rpc_name, int(ErrorCode.RET_OK)):
            cost = _format_duration(time.monotonic() - begin)
            o.nil_log_level_func(
                ctx, nil_fmt, msg.server_rpc_name, cost, msg.remote_addr or "",
                o.log_func(ctx, req, rsp),
            )
        return rsp

    return debug_filter


def client_filter(options: Optional[FilterOptions] = None) -> ClientFilter:
    """Return a client filter logging each outgoing call."""
    o = options if options is not None else FilterOptions()
    nil_fmt = get_log_format(DEBUG_LEVEL, o.enable_color, "client request:%s, cost:%s, to:%s%s")
    err_fmt = get_log_format(
        ERROR_LEVEL, o.enable_color, "client request:%s, cost:%s, to:%s, err:%s%s"
    )

    def debug_filter(ctx: Context, req: Any, rsp: Any, handler) -> None:
        msg = ctx.message
        begin = time.monotonic()
        try:
            result = handler(ctx, req, rsp)
        except Exception as err:
            if o.passed(msg.client_rpc_name, int(error_code(err))):
                o.err_log_level_func(
                    ctx, err_fmt, msg.client_rpc_name,
                    _format_duration(time.monotonic() - begin), msg.remote_addr or "",
                    str(err), o.log_func(ctx, req, rsp),
                )
            raise
        if o.passed(msg.client_rpc_name, int(ErrorCode.RET_OK)):
            o.nil_log_level_func(
                ctx, nil_fmt, msg.client_rpc_name,
                _format_duration(time.monotonic() - begin), msg.remote_addr or "",
                o.log_func(ctx, req, rsp),
            )
        return result

    return debug_filter


def register_builtin_filters() -> None:
    """Register the debuglog filters under their standard names."""
    register_filter("debuglog", server_filter(), client_filter())
    for name, func in (
        ("simpledebuglog", simple_log_func),
        ("pjsondebuglog", pretty_json_log_func),
        ("jsondebuglog", json_log_func),
    ):
        register_filter(
            name,
            server_filter(FilterOptions(log_func=func)),
            client_filter(FilterOptions(log_func=func)),
        )


def _parse_rules(value: Any, what: str) -> list[RuleItem]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{what} must be a list")
    rules = []
    for item in value:
        if item is None:
            item = {}
        if not isinstance(item, Mapping):
            raise ValueError(f"{what} entry must be a mapping")
        method = item.get("method")
        retcode = item.get("retcode")
        if retcode is not None and (isinstance(retcode, bool) or not isinstance(retcode, int)):
            raise ValueError(f"{what} retcode must be an integer")
        rules.append(RuleItem(None if method is None else str(method), retcode))
    return rules


@dataclass
class DebugLogConfig:
    """Configuration of the debuglog plugin."""

    log_type: str = ""
    err_log_level: str = ""
    nil_log_level: str = ""
    server_log_type: str = ""
    client_log_type: str = ""
    enable_color: Optional[bool] = None
    include: list[RuleItem] = field(default_factory=list)
    exclude: list[RuleItem] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "DebugLogConfig":
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ValueError("debuglog configuration must be a mapping")
        enable_color = data.get("enable_color")
        if enable_color is not None and not isinstance(enable_color, bool):
            raise ValueError("enable_color must be a boolean")

        def text(key: str) -> str:
            value = data.get(key)
            return "" if value is None else str(value)

        return cls(
            log_type=text("log_type"),
            err_log_level=text("err_log_level"),
            nil_log_level=text("nil_log_level"),
            server_log_type=text("server_log_type"),
            client_log_type=text("client_log_type"),
            enable_color=enable_color,
            include=_parse_rules(data.get("include"), "include"),
            exclude=_parse_rules(data.get("exclude"), "exclude"),
        )


class DebugLogPlugin:
    """Plugin that registers configured debuglog filters."""

    def type(self) -> str:
        return PLUGIN_TYPE

    def setup(self, name: str, decoder: Any) -> None:
        """Build server and client filters from the configuration and register them."""
        conf = DebugLogConfig.from_dict(decoder.decode())

        def options(log_type: str) -> FilterOptions:
            return FilterOptions(
                log_func=get_log_func(log_type),
                nil_log_level_func=get_log_level_func(conf.nil_log_level, DEBUG_LEVEL),
                err_log_level_func=get_log_level_func(conf.err_log_level, ERROR_LEVEL),
                enable_color=bool(conf.enable_color),
                include=list(conf.include),
                exclude=list(conf.exclude),
            )

        server_opts = options(conf.server_log_type or conf.log_type)
        client_opts = options(conf.client_log_type or conf.log_type)
        register_filter(PLUGIN_NAME, server_filter(server_opts), client_filter(client_opts))


register_builtin_filters()
register_plugin(PLUGIN_NAME, DebugLogPlugin())