"""Filter that checks the Referer header of HTTP calls against allowed domains."""

from __future__ import annotations

from typing import Any, Callable, Iterable, Mapping, Optional
from urllib.parse import urlsplit

from rpcfilters.core import (
    Context,
    ErrorCode,
    RpcError,
    ServerFilter,
    http_request,
    register_filter,
    register_plugin,
)

PLUGIN_NAME = "referer"
PLUGIN_TYPE = "auth"

REFERER_PREFIX_HTTP = "http://"
REFERER_PREFIX_HTTPS = "https://"
REFERER_APPLY_ALL_PATH = "apply_to_all_path"

RefererErrorFunc = Callable[[Context, str, BaseException], Optional[BaseException]]


def default_referer_error_func(
    ctx: Context, referer: str, err: BaseException
) -> Optional[BaseException]:
    """Return the error unchanged."""
    return err


def fix_domain(domain: str) -> str:
    """Prefix a domain with a dot so it matches only whole subdomain labels."""
    return domain if domain.startswith(".") else "." + domain


def matched_referer(referer_list: Iterable[str], host: str) -> bool:
    """Whether a referer host is allowed; an empty host is allowed only by ``NULL``."""
    for domain in referer_list:
        if host:
            if domain == "*" or host.endswith(fix_domain(domain)) or host == domain:
                return True
        elif domain == "NULL":
            return True
    return False


def _auth_error(message: str) -> RpcError:
    return RpcError(ErrorCode.RET_SERVER_AUTH_FAIL, message, framework=True)


def server_filter(
    allow_referer: Optional[Mapping[str, Iterable[str]]] = None,
    error_func: Optional[RefererErrorFunc] = None,
) -> ServerFilter:
    """Return a filter allowing, per request path, only the listed referer domains."""
    allowed = None if allow_referer is None else {k: list(v) for k, v in allow_referer.items()}
    on_error = error_func or default_referer_error_func

    def referer_filter(ctx: Context, req: Any, handler) -> Any:
        request = http_request(ctx)
        if request is None:
            return handler(ctx, req)

        referer = request.headers.get("Referer", "")

        def fail(err: BaseException) -> None:
            result = on_error(ctx, referer, err)
            if result is not None:
                raise result

        if allowed is None:
            fail(_auth_error("allowReferer config empty"))
            return None

        path = request.path or ""
        if path in allowed:
            referer_list = allowed[path]
        elif REFERER_APPLY_ALL_PATH in allowed:
            referer_list = allowed[REFERER_APPLY_ALL_PATH]
        else:
            fail(_auth_error(f"this url does not allow access from {referer}"))
            return None

        host = ""
        if referer:
            if not referer.startswith((REFERER_PREFIX_HTTP, REFERER_PREFIX_HTTPS)):
                fail(_auth_error(f"referer {referer} prefix err !"))
                return None
            try:
                netloc = urlsplit(referer).netloc
            except ValueError as err:
                fail(err)
                return None
            host = netloc.rpartition("@")[2]

        if not matched_referer(referer_list, host):
            fail(_auth_error(f"this url does not allow access from {referer}"))
            return None
        return handler(ctx, req)

    return referer_filter


def _parse_config(conf: Any) -> dict[str, list[str]]:
    if conf is None:
        return {}
    if not isinstance(conf, Mapping):
        raise ValueError("referer configuration must be a mapping")
    parsed = {}
    for method, domains in conf.items():
        if domains is None:
            domains = []
        if not isinstance(domains, list):
            raise ValueError(f"referer entry {method} must be a list")
        parsed[str(method)] = [str(d) for d in domains]
    return parsed


class RefererPlugin:
    """Plugin that registers the referer filter from per-path domain lists."""

    def type(self) -> str:
        return PLUGIN_TYPE

    def setup(self, name: str, decoder: Any) -> None:
        """Read the allowed domains and register the filter."""
        if decoder is None:
            raise ValueError("referer writer decoder empty")
        conf = _parse_config(decoder.decode())
        register_filter(PLUGIN_NAME, server_filter(conf or None), None)


register_filter(PLUGIN_NAME, server_filter(), None)
register_plugin(PLUGIN_NAME, RefererPlugin())