"""Framework primitives shared by the filters: errors, contexts, messages and registries."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Callable, Hashable, Iterable, Optional

import yaml

ServerHandler = Callable[["Context", Any], Any]
ClientHandler = Callable[["Context", Any, Any], None]
ServerFilter = Callable[["Context", Any, ServerHandler], Any]
ClientFilter = Callable[["Context", Any, Any, ClientHandler], None]


class ErrorCode(IntEnum):
    """Return codes used by the RPC framework."""

    RET_OK = 0
    RET_SERVER_DECODE_FAIL = 1
    RET_SERVER_ENCODE_FAIL = 2
    RET_SERVER_NO_SERVICE = 11
    RET_SERVER_NO_FUNC = 12
    RET_SERVER_TIMEOUT = 21
    RET_SERVER_OVERLOAD = 22
    RET_SERVER_THROTTLED = 23
    RET_SERVER_FULL_LINK_TIMEOUT = 24
    RET_SERVER_SYSTEM_ERR = 31
    RET_SERVER_AUTH_FAIL = 41
    RET_SERVER_VALIDATE_FAIL = 51
    RET_CLIENT_TIMEOUT = 101
    RET_CLIENT_FULL_LINK_TIMEOUT = 102
    RET_CLIENT_CONNECT_FAIL = 111
    RET_CLIENT_ENCODE_FAIL = 121
    RET_CLIENT_DECODE_FAIL = 122
    RET_CLIENT_THROTTLED = 123
    RET_CLIENT_OVERLOAD = 124
    RET_CLIENT_ROUTE_ERR = 131
    RET_CLIENT_NET_ERR = 141
    RET_CLIENT_VALIDATE_FAIL = 151
    RET_CLIENT_CANCELED = 161
    RET_CLIENT_READ_FRAME_ERR = 171
    RET_UNKNOWN = 999


class RpcError(Exception):
    """An error carrying an RPC return code."""

    def __init__(self, code: int, message: str, framework: bool = False) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.framework = framework

    def __str__(self) -> str:
        kind = "framework" if self.framework else "business"
        return f"type:{kind}, code:{int(self.code)}, msg:{self.message}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RpcError):
            return NotImplemented
        return (int(self.code), self.message, self.framework) == (
            int(other.code), other.message, other.framework)

    __hash__ = Exception.__hash__


def error_code(err: Optional[BaseException]) -> int:
    """Return the RPC code of an error: OK for None, unknown for foreign errors."""
    if err is None:
        return ErrorCode.RET_OK
    return err.code if isinstance(err, RpcError) else ErrorCode.RET_UNKNOWN


@dataclass
class Message:
    """Per-call metadata shared by every context derived from one call."""

    server_rpc_name: str = ""
    client_rpc_name: str = ""
    caller_service_name: str = ""
    callee_service_name: str = ""
    callee_method: str = ""
    caller_app: str = ""
    callee_app: str = ""
    callee_server: str = ""
    remote_addr: Optional[str] = None
    client_req_head: Any = None
    client_rsp_head: Any = None
    metadata: dict[str, bytes] = field(default_factory=dict)


@dataclass
class HttpRequest:
    """The HTTP request behind a call; header names are stored canonically."""

    method: str = "GET"
    path: Optional[str] = "/"
    headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.headers = {
            "-".join(p[:1].upper() + p[1:].lower() for p in k.split("-")): v
            for k, v in self.headers.items()
        }


class Context:
    """An immutable call context holding values, a deadline and the call message."""

    def __init__(self, message: Optional[Message] = None, deadline: Optional[float] = None,
                 values: Optional[dict] = None) -> None:
        self.message = message if message is not None else Message()
        self.deadline = deadline
        self._values = dict(values or {})

    def with_value(self, key: Hashable, value: Any) -> "Context":
        """Return a child context with ``key`` bound to ``value``."""
        return Context(self.message, self.deadline, {**self._values, key: value})

    def value(self, key: Hashable) -> Any:
        """Return the value bound to ``key``, or None."""
        return self._values.get(key)

    def with_deadline(self, deadline: float) -> "Context":
        """Return a child context whose deadline is the earlier of the two."""
        if self.deadline is not None:
            deadline = min(deadline, self.deadline)
        return Context(self.message, deadline, self._values)


def background_context() -> Context:
    """Return a fresh context with an empty message."""
    return Context()


_HTTP_REQUEST_KEY = ("rpcfilters", "http_request")


def with_http_request(ctx: Context, request: HttpRequest) -> Context:
    """Attach an HTTP request to a context."""
    return ctx.with_value(_HTTP_REQUEST_KEY, request)


def http_request(ctx: Context) -> Optional[HttpRequest]:
    """Return the HTTP request attached to a context, or None for non-HTTP calls."""
    return ctx.value(_HTTP_REQUEST_KEY)


_server_filters: dict[str, Optional[ServerFilter]] = {}
_client_filters: dict[str, Optional[ClientFilter]] = {}


def register_filter(name: str, server_filter: Optional[ServerFilter],
                    client_filter: Optional[ClientFilter]) -> None:
    """Register a server and a client filter under one name."""
    _server_filters[name] = server_filter
    _client_filters[name] = client_filter


def get_server_filter(name: str) -> Optional[ServerFilter]:
    """Return the server filter registered under ``name``, or None."""
    return _server_filters.get(name)


def get_client_filter(name: str) -> Optional[ClientFilter]:
    """Return the client filter registered under ``name``, or None."""
    return _client_filters.get(name)


def chain_server_filters(filters: Iterable[ServerFilter]) -> ServerFilter:
    """Compose server filters; the first one runs outermost."""
    chain = tuple(filters)

    def chained(ctx: Context, req: Any, handler: ServerHandler) -> Any:
        if not chain:
            return handler(ctx, req)
        rest = chain_server_filters(chain[1:])
        return chain[0](ctx, req, lambda c, r: rest(c, r, handler))

    return chained


def chain_client_filters(filters: Iterable[ClientFilter]) -> ClientFilter:
    """Compose client filters; the first one runs outermost."""
    chain = tuple(filters)

    def chained(ctx: Context, req: Any, rsp: Any, handler: ClientHandler) -> None:
        if not chain:
            return handler(ctx, req, rsp)
        rest = chain_client_filters(chain[1:])
        return chain[0](ctx, req, rsp, lambda c, q, s: rest(c, q, s, handler))

    return chained


class YamlDecoder:
    """Supplies a plugin's configuration from YAML text or already parsed data."""

    def __init__(self, source: Any = None) -> None:
        self.source = source

    def decode(self) -> Any:
        """Return the configuration as plain Python data."""
        if self.source is None:
            raise ValueError("yaml node empty")
        if isinstance(self.source, (str, bytes)):
            return yaml.safe_load(self.source)
        return copy.deepcopy(self.source)


_plugins: dict[tuple[str, str], Any] = {}


def register_plugin(name: str, plugin: Any) -> None:
    """Register a plugin under its type and ``name``."""
    _plugins[(plugin.type(), name)] = plugin


def get_plugin(plugin_type: str, name: str) -> Any:
    """Return the plugin registered with this type and name, or None."""
    return _plugins.get((plugin_type, name))