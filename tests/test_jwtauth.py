from dataclasses import dataclass

import pytest

from rpcfilters.core import (
    ErrorCode,
    HttpRequest,
    RpcError,
    YamlDecoder,
    background_context,
    get_server_filter,
    with_http_request,
)
from rpcfilters.jwtauth import (
    AUTH_JWT_CTX_KEY,
    InvalidTokenError,
    JwtConfig,
    JwtPlugin,
    JwtSigner,
    default_parse_token,
    get_custom_info,
    server_filter,
    set_default_signer,
)

SECRET = b"secret"
OTHER_KEY = b"token"
ISSUER = "issuer"

CONFIG = """
secret: secret
expired: 7200
issuer: issuer
exclude_paths:
  - /v1/login
"""


@dataclass
class UserInfo:
    id: int
    name: str
    role: int


def mock_user() -> UserInfo:
    return UserInfo(id=100, name="alice", role=1)


def mock_signer() -> JwtSigner:
    return JwtSigner(SECRET, 3600, ISSUER)


def request_ctx(path, auth=None):
    headers = {} if auth is None else {"Authorization": auth}
    return with_http_request(background_context(), HttpRequest(path=path, headers=headers))


def capture_handler(seen):
    def handler(ctx, req):
        seen.append(ctx.value(AUTH_JWT_CTX_KEY))
        return "ok"

    return handler


def test_sign_and_verify_round_trip():
    signer = mock_signer()
    with pytest.raises(InvalidTokenError):
        signer.verify("abc")
    signed = signer.sign(mock_user())
    assert signer.verify(signed) == {"id": 100, "name": "alice", "role": 1}


def test_verify_rejects_other_key():
    signed = mock_signer().sign(mock_user())
    with pytest.raises(InvalidTokenError):
        JwtSigner(OTHER_KEY, 3600, ISSUER).verify(signed)


def test_verify_rejects_expired_token():
    expired_signer = JwtSigner(SECRET, -10, ISSUER)
    signed = expired_signer.sign(mock_user())
    with pytest.raises(InvalidTokenError):
        mock_signer().verify(signed)


def test_sign_without_custom_returns_none():
    signer = mock_signer()
    assert signer.verify(signer.sign(None)) is None


def test_get_custom_info_builds_object():
    signer = mock_signer()
    data = signer.verify(signer.sign(mock_user()))
    ctx = background_context().with_value(AUTH_JWT_CTX_KEY, data)
    assert get_custom_info(ctx, UserInfo) == mock_user()


def test_get_custom_info_missing_value():
    with pytest.raises(LookupError, match="AuthJwtCtxKey"):
        get_custom_info(background_context(), UserInfo)


def test_default_parse_token_strips_bearer():
    assert default_parse_token(request_ctx("/v1", "Bearer token"), None) == "token"
    assert default_parse_token(request_ctx("/v1"), None) == ""


def test_server_filter_accepts_valid_token():
    signer = mock_signer()
    set_default_signer(signer)
    signed = signer.sign(mock_user())
    seen = []
    f = server_filter({"/v1/login"})
    assert f(request_ctx("/v1", "Bearer " + signed), b"req", capture_handler(seen)) == "ok"
    assert seen == [{"id": 100, "name": "alice", "role": 1}]


def test_server_filter_rejects_missing_token():
    set_default_signer(mock_signer())
    f = server_filter({"/v1/login"})
    with pytest.raises(RpcError) as info:
        f(request_ctx("/v1"), b"req", capture_handler([]))
    assert info.value.code == ErrorCode.RET_SERVER_AUTH_FAIL
    assert info.value.framework is True


def test_server_filter_skips_excluded_path_and_non_http():
    set_default_signer(mock_signer())
    f = server_filter({"/v1/login"})
    seen = []
    assert f(request_ctx("/v1/login"), b"req", capture_handler(seen)) == "ok"
    assert f(background_context(), b"req", capture_handler(seen)) == "ok"
    assert seen == [None, None]


def test_set_default_signer_ignores_none():
    signer = mock_signer()
    set_default_signer(signer)
    set_default_signer(None)
    payload = {"k": "v"}
    signed = signer.sign(payload)
    seen = []
    server_filter()(request_ctx("/x", "Bearer " + signed), None, capture_handler(seen))
    assert seen == [{"k": "v"}]


def test_plugin_type():
    assert JwtPlugin().type() == "auth"


def test_plugin_setup_registers_filter():
    JwtPlugin().setup("jwt", YamlDecoder(CONFIG))
    f = get_server_filter("jwt")
    payload = {"id": 7}
    signed = JwtSigner(SECRET, 60, ISSUER).sign(payload)
    seen = []
    assert f(request_ctx("/v1", "Bearer " + signed), None, capture_handler(seen)) == "ok"
    assert f(request_ctx("/v1/login"), None, capture_handler(seen)) == "ok"
    assert seen == [{"id": 7}, None]


def test_plugin_setup_requires_secret():
    with pytest.raises(ValueError, match="JWT secret not be empty"):
        JwtPlugin().setup("jwt", YamlDecoder("issuer: issuer"))


def test_config_from_dict():
    conf = JwtConfig.from_dict({"expired": 7200, "issuer": "issuer", "exclude_paths": ["/a"]})
    assert (conf.expired, conf.issuer, conf.exclude_paths) == (7200, "issuer", ["/a"])
    with pytest.raises(ValueError):
        JwtConfig.from_dict({"expired": "soon"})