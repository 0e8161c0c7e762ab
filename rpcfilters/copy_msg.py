"""Message copying tailored to retry and hedging of client calls."""

from __future__ import annotations

import copy
import dataclasses
from typing import Any

_REQ_HEAD = "client_req_head"
_RSP_HEAD = "client_rsp_head"


class CopyMsgError(Exception):
    """Raised when a message or one of its heads cannot be copied."""


def _fields(obj: Any) -> dict[str, Any]:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
    try:
        return dict(vars(obj))
    except TypeError as err:
        raise CopyMsgError(f"cannot copy fields of {type(obj).__name__}") from err


def _assign(obj: Any, values: dict[str, Any]) -> None:
    for name, value in values.items():
        setattr(obj, name, value)


def _shallow_copy(dst: Any, src: Any) -> None:
    if src is None:
        raise CopyMsgError("source is None")
    if type(dst) is not type(src):
        raise CopyMsgError(
            f"type mismatch: {type(dst).__name__} and {type(src).__name__}"
        )
    if isinstance(dst, dict):
        dst.clear()
        dst.update(src)
    elif isinstance(dst, list):
        dst[:] = src
    else:
        try:
            _assign(dst, _fields(src))
        except (AttributeError, TypeError) as err:
            raise CopyMsgError(str(err)) from err


def _copy_head(dst: Any, src: Any, attr: str, original: Any, label: str) -> None:
    src_head = getattr(src, attr, None)
    if original is not None:
        # Copying back to the caller's message: keep its head object, refill it.
        setattr(dst, attr, original)
        try:
            _shallow_copy(original, src_head)
        except CopyMsgError as err:
            raise CopyMsgError(
                f"failed to shallow copy back to original {label}, err: {err}"
            ) from err
    elif src_head is not None:
        # Copying into a fresh message: a deep copy avoids sharing mutable state.
        try:
            head = copy.deepcopy(src_head)
        except Exception as err:
            raise CopyMsgError(f"failed to deepcopy {label}, err: {err}") from err
        setattr(dst, attr, head)


def copy_msg(dst: Any, src: Any) -> None:
    """Copy every field of ``src`` into ``dst``, handling the client heads specially.

    A head already present on ``dst`` is kept and refilled from ``src``'s head;
    otherwise ``src``'s head is deep-copied into ``dst``.
    """
    try:
        if dst is None or src is None:
            raise CopyMsgError("message is None")
        original_req = getattr(dst, _REQ_HEAD, None)
        original_rsp = getattr(dst, _RSP_HEAD, None)
        _assign(dst, _fields(src))
    except (CopyMsgError, AttributeError, TypeError) as err:
        raise CopyMsgError(
            "CopyMsg paniced, this usually means slime may not support your protocol: "
            f"{err}"
        ) from err
    _copy_head(dst, src, _REQ_HEAD, original_req, "ClientReqHead")
    _copy_head(dst, src, _RSP_HEAD, original_rsp, "ClientRspHead")