"""Server and client filters that guard calls with per-command circuit breakers."""

from __future__ import annotations

import logging
import traceback
from typing import Any, Mapping, Optional

from rpcfilters.circuit import CommandConfig, configure, do
from rpcfilters.core import (
    ClientFilter,
    Context,
    RpcError,
    ServerFilter,
    register_filter,
    register_plugin,
)

PLUGIN_TYPE = "circuitbreaker"
PLUGIN_NAME = "hystrix"
FILTER_NAME = "hystrix"

WILDCARD_KEY = "*"
EXCLUDE_KEY = "_"
PANIC_BUF_LEN = 1024

_CONFIG_FIELDS = {
    "timeout": "timeout",
    "maxconcurrentrequests": "max_concurrent_requests",
    "requestvolumethreshold": "request_volume_threshold",
    "sleepwindow": "sleep_window",
    "errorpercentthreshold": "error_percent_threshold",
    "queuesizerejectionthreshold": "queue_size_rejection_threshold",
}

_logger = logging.getLogger(__name__)

_commands: dict[str, CommandConfig] = {}


def _stack_of(error: Any) -> str:
    if isinstance(error, BaseException) and error.__traceback__ is not None:
        lines = traceback.format_exception(type(error), error, error.__traceback__)
    else:
        lines = traceback.format_stack()
    return "".join(lines)[:PANIC_BUF_LEN]


def recovery_handler(ctx: Context, error: Any) -> Exception:
    """Log an unexpected failure with its stack and return a plain error with its text."""
    _logger.error("[Hystrix-Panic] %s\n%s\n", error, _stack_of(error))
    return RuntimeError(str(error))


def _resolve_command(
    commands: Mapping[str, CommandConfig], name: str, wildcard_key: str, exclude_key: str
) -> Optional[str]:
    if name in commands:
        return name
    if wildcard_key not in commands:
        return None
    if exclude_key + name in commands:
        return None
    return wildcard_key


def _guarded(ctx: Context, call):
    def run() -> Any:
        try:
            return call()
        except RpcError:
            raise
        except Exception as exc:
            raise recovery_handler(ctx, exc) from exc

    return run


def server_filter(
    commands: Optional[Mapping[str, CommandConfig]] = None,
    wildcard_key: str = WILDCARD_KEY,
    exclude_key: str = EXCLUDE_KEY,
) -> ServerFilter:
    """Return a filter running server calls under the circuit of their RPC name.

    Without ``commands`` the configuration loaded by the plugin is used.
    """

    def hystrix_filter(ctx: Context, req: Any, handler) -> Any:
        table = commands if commands is not None else _commands
        cmd = _resolve_command(table, ctx.message.server_rpc_name, wildcard_key, exclude_key)
        if cmd is None:
            return handler(ctx, req)
        return do(cmd, _guarded(ctx, lambda: handler(ctx, req)))

    return hystrix_filter


def client_filter(
    commands: Optional[Mapping[str, CommandConfig]] = None,
    wildcard_key: str = WILDCARD_KEY,
    exclude_key: str = EXCLUDE_KEY,
) -> ClientFilter:
    """Return a filter running client calls under the circuit of their RPC name.

    Without ``commands`` the configuration loaded by the plugin is used.
    """

    def hystrix_filter(ctx: Context, req: Any, rsp: Any, handler) -> None:
        table = commands if commands is not None else _commands
        cmd = _resolve_command(table, ctx.message.client_rpc_name, wildcard_key, exclude_key)
        if cmd is None:
            return handler(ctx, req, rsp)
        return do(cmd, _guarded(ctx, lambda: handler(ctx, req, rsp)))

    return hystrix_filter


def _parse_command(name: str, data: Any) -> CommandConfig:
    if data is None:
        return CommandConfig()
    if not isinstance(data, Mapping):
        raise ValueError(f"hystrix command {name} must be a mapping")
    values = {}
    for key, attr in _CONFIG_FIELDS.items():
        value = data.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"hystrix command {name}: {key} must be an integer")
        values[attr] = value
    return CommandConfig(**values)


def _parse_commands(data: Any) -> dict[str, CommandConfig]:
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError("hystrix configuration must be a mapping")
    return {str(name): _parse_command(str(name), conf) for name, conf in data.items()}


class HystrixPlugin:
    """Plugin that configures the circuits and registers the hystrix filters."""

    def type(self) -> str:
        return PLUGIN_TYPE

    def setup(self, name: str, decoder: Any) -> None:
        """Load the command settings, apply them and register the filters."""
        global _commands
        try:
            commands = _parse_commands(decoder.decode())
        except (ValueError, TypeError) as err:
            _logger.error("hystrix configuration decode err(%s)", err)
            raise
        _commands = commands
        configure(commands)
        register_filter(FILTER_NAME, server_filter(), client_filter())


register_plugin(PLUGIN_NAME, HystrixPlugin())