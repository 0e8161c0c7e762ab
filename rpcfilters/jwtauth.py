"""JWT authentication: signing tokens and a server filter that verifies them."""

from __future__ import annotations

import dataclasses
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Protocol

import jwt

from rpcfilters.core import (
    Context,
    ErrorCode,
    RpcError,
    ServerFilter,
    http_request,
    register_filter,
    register_plugin,
)

PLUGIN_NAME = "jwt"
PLUGIN_TYPE = "auth"
DEFAULT_EXPIRED = 3600.0

AUTH_JWT_CTX_KEY = ("rpcfilters.jwtauth", "AuthJwtCtxKey")

_ALGORITHM = "HS512"
_ACCEPTED_ALGORITHMS = ["HS256", "HS384", "HS512"]


class InvalidTokenError(Exception):
    """Raised when a token cannot be verified."""


class Signer(Protocol):
    """Anything able to sign custom data into a token and verify it back."""

    def sign(self, custom: Any) -> str: ...

    def verify(self, token: str) -> Any: ...


def _to_jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Mapping):
        return {str(k): _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    return value


@dataclass
class JwtSigner:
    """Signs custom data into HS512 tokens and verifies such tokens."""

    secret: bytes = field(repr=False)
    expired: float = DEFAULT_EXPIRED
    issuer: str = ""

    def sign(self, custom: Any) -> str:
        """Return a signed token carrying ``custom`` that expires after ``expired`` seconds."""
        now = time.time()
        claims: dict[str, Any] = {"exp": int(now + self.expired), "iat": int(now)}
        if self.issuer:
            claims["iss"] = self.issuer
        if custom is not None:
            claims["custom"] = _to_jsonable(custom)
        return jwt.encode(claims, self.secret, algorithm=_ALGORITHM)

    def verify(self, token: str) -> Any:
        """Check the token and return the custom data it carries."""
        try:
            claims = jwt.decode(token, self.secret, algorithms=_ACCEPTED_ALGORITHMS)
        except jwt.PyJWTError as err:
            raise InvalidTokenError(str(err) or "invalid token") from err
        if not isinstance(claims, Mapping):
            raise InvalidTokenError("invalid token")
        return claims.get("custom")


_default_signer: Optional[Signer] = None


def set_default_signer(signer: Optional[Signer]) -> None:
    """Replace the signer used by the filter; None leaves it unchanged."""
    global _default_signer
    if signer is not None:
        _default_signer = signer


def default_parse_token(ctx: Context, req: Any) -> str:
    """Return the bearer token from the Authorization header."""
    request = http_request(ctx)
    if request is None:
        return ""
    token = request.headers.get("Authorization", "")
    return token.removeprefix("Bearer ")


def server_filter(exclude_paths: Optional[set[str]] = None) -> ServerFilter:
    """Return a filter that verifies the JWT of HTTP calls outside ``exclude_paths``."""
    excluded = frozenset(exclude_paths or ())

    def jwt_filter(ctx: Context, req: Any, handler) -> Any:
        request = http_request(ctx)
        if request is None:
            return handler(ctx, req)
        if request.path is not None and request.path in excluded:
            return handler(ctx, req)
        token = default_parse_token(ctx, req)
        signer = _default_signer
        if signer is None:
            raise RpcError(
                ErrorCode.RET_SERVER_AUTH_FAIL, "jwt signer not configured", framework=True
            )
        try:
            custom = signer.verify(token)
        except InvalidTokenError as err:
            raise RpcError(ErrorCode.RET_SERVER_AUTH_FAIL, str(err), framework=True) from err
        return handler(ctx.with_value(AUTH_JWT_CTX_KEY, custom), req)

    return jwt_filter


def get_custom_info(ctx: Context, factory: Callable[..., Any]) -> Any:
    """Build an object from the verified custom data stored in the context."""
    data = ctx.value(AUTH_JWT_CTX_KEY)
    if not isinstance(data, Mapping):
        raise LookupError("fail to find ctx value! key=(AuthJwtCtxKey)")
    if dataclasses.is_dataclass(factory) and isinstance(factory, type):
        by_name = {str(k).lower(): v for k, v in data.items()}
        kwargs = {
            f.name: by_name[f.name.lower()]
            for f in dataclasses.fields(factory)
            if f.init and f.name.lower() in by_name
        }
        return factory(**kwargs)
    return factory(**data)


@dataclass
class JwtConfig:
    """Configuration of the jwt plugin."""

    secret: str = field(default="", repr=False)
    expired: int = 0
    issuer: str = ""
    exclude_paths: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "JwtConfig":
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ValueError("jwt configuration must be a mapping")
        expired = data.get("expired") or 0
        if isinstance(expired, bool) or not isinstance(expired, int):
            raise ValueError("expired must be an integer")
        paths = data.get("exclude_paths") or []
        if not isinstance(paths, list):
            raise ValueError("exclude_paths must be a list")
        return cls(
            secret="" if data.get("secret") is None else str(data["secret"]),
            expired=expired,
            issuer="" if data.get("issuer") is None else str(data["issuer"]),
            exclude_paths=[str(p) for p in paths],
        )


class JwtPlugin:
    """Plugin that sets up the default signer and registers the jwt filter."""

    def type(self) -> str:
        return PLUGIN_TYPE

    def setup(self, name: str, decoder: Any) -> None:
        """Read the configuration, install the signer and register the filter."""
        conf = JwtConfig.from_dict(decoder.decode())
        if not conf.secret:
            raise ValueError("JWT secret not be empty")
        expired = float(conf.expired) if conf.expired > 0 else DEFAULT_EXPIRED
        set_default_signer(JwtSigner(conf.secret.encode("utf-8"), expired, conf.issuer))
        register_filter(name, server_filter(set(conf.exclude_paths)), None)


register_plugin(PLUGIN_NAME, JwtPlugin())