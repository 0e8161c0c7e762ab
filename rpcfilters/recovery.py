"""Server filter that turns unexpected exceptions in a handler into RPC errors."""

from __future__ import annotations

import logging
import traceback
from typing import Any, Callable, Optional

from rpcfilters.core import Context, ErrorCode, RpcError, ServerFilter, register_filter

PANIC_BUF_LEN = 4096

RecoveryHandler = Callable[[Context, Any], BaseException]

_logger = logging.getLogger(__name__)


def _stack_of(error: Any) -> str:
    if isinstance(error, BaseException) and error.__traceback__ is not None:
        lines = traceback.format_exception(type(error), error, error.__traceback__)
    else:
        lines = traceback.format_stack()
    return "".join(lines)[:PANIC_BUF_LEN]


def default_recovery_handler(ctx: Context, error: Any) -> RpcError:
    """Log the failure with its stack and return a framework system error."""
    _logger.error("[PANIC]%s\n%s\n", error, _stack_of(error))
    return RpcError(ErrorCode.RET_SERVER_SYSTEM_ERR, str(error), framework=True)


def server_filter(handler: Optional[RecoveryHandler] = None) -> ServerFilter:
    """Return a filter that converts exceptions other than RpcError via ``handler``."""
    recover = handler or default_recovery_handler

    def recovery_filter(ctx: Context, req: Any, next_handler) -> Any:
        try:
            return next_handler(ctx, req)
        except RpcError:
            raise
        except Exception as exc:
            raise recover(ctx, exc) from exc

    return recovery_filter


register_filter("recovery", server_filter(), None)