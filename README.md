# rpcfilters

A collection of interceptors ("filters") for RPC servers and clients. Each
filter wraps a handler: it can inspect the request, call the next handler,
and look at the response or the error.

## Installing

```
pip install rpcfilters
```

To run the test suite:

```
pip install "rpcfilters[test]"
pytest
```

## Core ideas

`rpcfilters.core` holds the shared pieces:

- `Context`: an immutable per-call context. It carries a `Message` (RPC
  names, callee service and method, remote address, client heads), an
  optional deadline and arbitrary values (`with_value`, `value`,
  `with_deadline`). Start from `background_context()`.
- `HttpRequest`, attached with `with_http_request(ctx, request)` and read
  back with `http_request(ctx)`. Header names are stored in canonical form
  (`authorization` becomes `Authorization`).
- `RpcError` and `ErrorCode`: errors with a numeric code. `error_code(err)`
  returns `0` for `None` and `999` for errors that are not `RpcError`.
- A filter registry: `register_filter`, `get_server_filter` and
  `get_client_filter`. `chain_server_filters` and `chain_client_filters`
  compose several filters into one; the first one runs outermost.
- A plugin registry: `register_plugin` and `get_plugin(plugin_type, name)`.
  A plugin is set up with `plugin.setup(name, decoder)`, where
  `YamlDecoder` supplies its configuration from YAML text or parsed data.

A server filter is called as `filter(ctx, req, handler)` and returns the
response. A client filter is called as `filter(ctx, req, rsp, handler)`.
Both raise on error.

Importing a filter module registers its plugin, and for some modules a
default filter as well.

## Filters

| Module | What it does |
| --- | --- |
| `rpcfilters.recovery` | `server_filter(handler=None)` turns an exception escaping a server handler, other than `RpcError`, into the error built by the handler. By default that is `default_recovery_handler`: it logs the stack and returns a framework system error (code 31). |
| `rpcfilters.debuglog` | Logs every call with its cost, peer address, error and payloads. `default_log_func`, `simple_log_func`, `json_log_func` and `pretty_json_log_func` choose how payloads are printed. `RuleItem` include and exclude rules in `FilterOptions` choose which calls are logged. `DebugLogPlugin` builds both filters from YAML keys: `log_type`, `server_log_type`, `client_log_type`, `err_log_level`, `nil_log_level`, `enable_color`, `include` and `exclude`. |
| `rpcfilters.filterextensions` | `MethodFiltersPlugin` runs registered filters only for the services and methods listed under `client` and `server` in its configuration. Setup fails with `LookupError` when a named filter is not registered. |
| `rpcfilters.degrade` | `Degrade` rejects a share of requests with code 22 while load average, memory use or CPU idle cross the configured thresholds. It also caps concurrent requests (`max_concurrent_cnt`). `SystemStats` supplies the readings. |
| `rpcfilters.cgroup` | `Cgroup` reads container CPU and memory figures from cgroup v1 files and `/proc/meminfo`. `get_cpu_tick()` runs `getconf CLK_TCK`. |
| `rpcfilters.jwtauth` | `JwtSigner` signs custom data into HS512 tokens and verifies HMAC-signed tokens. `server_filter(exclude_paths)` checks the `Authorization: Bearer` header of HTTP calls. `get_custom_info(ctx, factory)` builds an object from the verified data. `JwtPlugin` requires a `secret`; `expired` defaults to one hour. |
| `rpcfilters.referer` | `server_filter(allow_referer)` allows HTTP requests only from referer domains listed for their path or under `apply_to_all_path`. `*` allows any referer, and `NULL` allows a missing one. |
| `rpcfilters.circuit` | Circuit breakers keyed by command name. `configure`, `get_circuit`, `do(name, run)`, `flush` and `register_collector` manage them, and `CommandConfig` holds timeout, concurrency, volume, sleep-window and error-percent settings in milliseconds. A refused call raises `CircuitError` (`hystrix: timeout`, `hystrix: circuit open`, `hystrix: max concurrency`). |
| `rpcfilters.hystrix` | Server and client filters that run calls under the circuit of their RPC name. They support a wildcard key (`*`) and exclusions prefixed with `_`. `HystrixPlugin` loads the command settings from YAML. |
| `rpcfilters.slime_config` | Parses retry and hedging client configuration (`parse_client_config`, `parse_duration`) and fills defaults with `repair()`. |
| `rpcfilters.copy_msg` | `copy_msg(dst, src)` copies a call message for retried calls, keeping the client heads the caller already holds. |

## Example

```python
from rpcfilters.core import background_context
from rpcfilters import recovery

guarded = recovery.server_filter()

def handler(ctx, req):
    raise ValueError("boom")

ctx = background_context()
try:
    guarded(ctx, {"id": 1}, handler)
except Exception as err:
    print(err)  # type:framework, code:31, msg:boom
```

A request-logging filter that logs only one method:

```python
from rpcfilters import debuglog

opts = debuglog.FilterOptions(
    log_func=debuglog.json_log_func,
    include=[debuglog.RuleItem(method="/app.service/Method")],
)
log_filter = debuglog.server_filter(opts)
```

## What it does not do

- It has no RPC transport, server or client. The filters are plain callables
  that your own framework code must invoke around its handlers.
- Retry and hedging are covered only as configuration parsing and message
  copying. Nothing here performs retries or hedged calls.
- It has no filter that masks sensitive fields in responses.
- Load readings in `Cgroup` assume cgroup v1 file paths. Apart from the load
  average, `Degrade` has no other source of system figures.