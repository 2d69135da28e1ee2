from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

from authcore.service.errors import ResponseCode, ServiceError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of an auth operation: a response code plus an optional value.

    ``context`` carries server-side diagnostics for logging and is never sent
    to clients.
    """

    code: ResponseCode
    value: Optional[T] = None
    context: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.code == ResponseCode.OK

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(ResponseCode.OK, value)

    @classmethod
    def failure(cls, code: ResponseCode, **context: Any) -> "Result[T]":
        if code == ResponseCode.OK:
            raise ValueError("failure results require a non-OK code")
        return cls(code, None, dict(context))

    def unwrap(self) -> T:
        """Return the value or raise ``ServiceError`` for the failure code."""
        if not self.ok:
            raise ServiceError(self.code)
        return self.value  # type: ignore[return-value]
