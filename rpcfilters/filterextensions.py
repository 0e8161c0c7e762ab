"""Per-method filters: run registered filters only for configured services and methods."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional

from rpcfilters.core import (
    Context,
    chain_client_filters,
    chain_server_filters,
    get_client_filter,
    get_server_filter,
    register_filter,
    register_plugin,
)

PLUGIN_TYPE = "filter_extensions"
PLUGIN_NAME = "method_filters"
METHOD_FILTERS = "method_filters"


@dataclass(frozen=True)
class MethodConfig:
    """Filters configured for one method."""

    name: str = ""
    filters: tuple[str, ...] = ()


@dataclass(frozen=True)
class ServiceConfig:
    """Methods configured for one service."""

    name: str = ""
    methods: tuple[MethodConfig, ...] = ()


def _parse_services(items: Any) -> list[ServiceConfig]:
    if not isinstance(items or [], list):
        raise ValueError("service list expected")
    return [
        ServiceConfig(
            name=str(s.get("name") or ""),
            methods=tuple(
                MethodConfig(name=str(m.get("name") or ""),
                             filters=tuple(str(f) for f in m.get("filters") or ()))
                for m in s.get("methods") or ()
            ),
        )
        for s in items or ()
    ]


def parse_config(data: Any) -> tuple[list[ServiceConfig], list[ServiceConfig]]:
    """Parse the plugin configuration into (client services, server services)."""
    data = data or {}
    if not isinstance(data, Mapping):
        raise ValueError("configuration must be a mapping")
    return _parse_services(data.get("client")), _parse_services(data.get("server"))


def _load_filters(services: Iterable[ServiceConfig],
                  loader: Callable[[str], Optional[Any]]) -> dict[str, dict[str, list]]:
    def resolve(name: str) -> Any:
        f = loader(name)
        if f is None:
            raise LookupError(f"filter {name} not registered")
        return f

    return {
        s.name: {m.name: [resolve(n) for n in m.filters] for m in s.methods}
        for s in services
    }


def load_client_filters(services, loader):
    """Resolve client filter names per service and method; raise LookupError if one is missing."""
    return _load_filters(services, loader)


def load_server_filters(services, loader):
    """Resolve server filter names per service and method; raise LookupError if one is missing."""
    return _load_filters(services, loader)


def _lookup(service_filters: Mapping, ctx: Context) -> Optional[list]:
    msg = ctx.message
    return service_filters.get(msg.callee_service_name, {}).get(msg.callee_method)


def new_client_intercept(service_filters):
    """Return a client filter that runs the filters configured for the callee method."""

    def intercept(ctx: Context, req: Any, rsp: Any, handler) -> None:
        filters = _lookup(service_filters, ctx)
        if filters is None:
            return handler(ctx, req, rsp)
        return chain_client_filters(filters)(ctx, req, rsp, handler)

    return intercept


def new_server_intercept(service_filters):
    """Return a server filter that runs the filters configured for the callee method."""

    def intercept(ctx: Context, req: Any, handler) -> Any:
        filters = _lookup(service_filters, ctx)
        if filters is None:
            return handler(ctx, req)
        return chain_server_filters(filters)(ctx, req, handler)

    return intercept


class MethodFiltersPlugin:
    """Plugin that registers the method-level filter dispatcher."""

    def __init__(self) -> None:
        self.client: dict = {}
        self.server: dict = {}

    def type(self) -> str:
        return PLUGIN_TYPE

    def setup(self, name: str, decoder: Any) -> None:
        """Load the configuration and register the dispatching filters."""
        client_services, server_services = parse_config(decoder.decode())
        try:
            self.client = load_client_filters(client_services, get_client_filter)
        except LookupError as err:
            raise LookupError(f"failed to load client service method filters, err: {err}") from err
        try:
            self.server = load_server_filters(server_services, get_server_filter)
        except LookupError as err:
            raise LookupError(f"failed to load server service method filters, err: {err}") from err
        register_filter(
            METHOD_FILTERS, new_server_intercept(self.server), new_client_intercept(self.client)
        )


register_plugin(PLUGIN_NAME, MethodFiltersPlugin())