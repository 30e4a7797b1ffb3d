"""Tagged result type returned by flows instead of raising across flow boundaries."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok = True


@dataclass(frozen=True)
class Err:
    message: str
    detail: dict[str, Any] = field(default_factory=dict)
    ok = False


Result = Union[Ok[T], Err]


def to_payload(result: Result[dict[str, Any]], include_debug: bool = True) -> dict[str, Any]:
    """Render a flow result as the {"ok": ..., ...} JSON body routes return.

    Err detail may carry a "debug" entry; it is dropped unless include_debug.
    """
    if isinstance(result, Ok):
        return {"ok": True, **result.value}
    detail = dict(result.detail)
    debug = detail.pop("debug", None)
    payload: dict[str, Any] = {"ok": False, "errorMessage": result.message, **detail}
    if include_debug and debug is not None:
        payload["debug"] = debug
    return payload
