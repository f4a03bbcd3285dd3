"""Result envelope returned by the billing service facade."""

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class ServiceResult(Generic[T]):
    """Either ``data`` or an ``error`` message, never both."""

    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    retryable: bool = False

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def ok(cls, data: T) -> "ServiceResult[T]":
        return cls(data=data)

    @classmethod
    def fail(
        cls, error: str, error_code: str | None = None, retryable: bool = False
    ) -> "ServiceResult[T]":
        return cls(error=error, error_code=error_code, retryable=retryable)

    def to_dict(self) -> dict[str, Any]:
        data = self.data.model_dump(mode="json") if hasattr(self.data, "model_dump") else self.data
        return {
            "success": self.success,
            "data": data,
            "error": self.error,
            "error_code": self.error_code,
            "retryable": self.retryable,
        }
