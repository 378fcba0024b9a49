"""Tagged results returned by core operations, plus the errors used to abort transactions."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class ResultKind(str, Enum):
    OK = "ok"
    VALIDATION_ERROR = "validationError"
    NOT_FOUND = "notFound"
    CONFLICT = "conflict"
    RATE_LIMITED = "rateLimited"
    UNAVAILABLE = "unavailable"
    INTERNAL = "internal"


class ErrorCode(str, Enum):
    NO_RATE_PLAN = "NoRatePlan"
    PLAN_EXPIRED = "PlanExpired"
    EXCEEDS_OCCUPANCY = "ExceedsOccupancy"
    BLACKED_OUT = "BlackedOut"
    UNKNOWN_CURRENCY = "UnknownCurrency"
    PROMO_INVALID = "PromoInvalid"
    EXCHANGE_RATE_UNAVAILABLE = "ExchangeRateUnavailable"
    INVENTORY_CONFLICT = "InventoryConflict"
    INVARIANT_VIOLATION = "InvariantViolation"
    RATE_LIMIT_EXCEEDED = "RateLimitExceeded"
    DUPLICATE = "Duplicate"
    AMENDMENT_REFUSED = "AmendmentRefused"


@dataclass
class Result(Generic[T]):
    kind: ResultKind
    value: T | None = None
    error: str | None = None
    code: ErrorCode | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_ok(self) -> bool:
        return self.kind == ResultKind.OK

    @classmethod
    def ok(cls, value: T | None = None, **details) -> "Result[T]":
        return cls(ResultKind.OK, value=value, details=details)

    @classmethod
    def validation(cls, error: str, code: ErrorCode | None = None, **details) -> "Result[T]":
        return cls(ResultKind.VALIDATION_ERROR, error=error, code=code, details=details)

    @classmethod
    def not_found(cls, error: str, code: ErrorCode | None = None, **details) -> "Result[T]":
        return cls(ResultKind.NOT_FOUND, error=error, code=code, details=details)

    @classmethod
    def conflict(cls, error: str, code: ErrorCode | None = None, **details) -> "Result[T]":
        return cls(ResultKind.CONFLICT, error=error, code=code, details=details)

    @classmethod
    def rate_limited(cls, error: str, retry_after: int | None = None, **details) -> "Result[T]":
        return cls(
            ResultKind.RATE_LIMITED,
            error=error,
            code=ErrorCode.RATE_LIMIT_EXCEEDED,
            details={"retry_after": retry_after, **details},
        )

    @classmethod
    def unavailable(cls, error: str, code: ErrorCode | None = None, **details) -> "Result[T]":
        return cls(ResultKind.UNAVAILABLE, error=error, code=code, details=details)

    @classmethod
    def internal(cls, error: str, **details) -> "Result[T]":
        return cls(ResultKind.INTERNAL, error=error, details=details)

    @classmethod
    def from_error(cls, exc: "CoreError") -> "Result[T]":
        return cls(exc.kind, error=str(exc), code=exc.code, details=dict(exc.details))

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"kind": self.kind.value}
        if self.is_ok:
            value = self.value
            data["value"] = value.to_dict() if hasattr(value, "to_dict") else value
        else:
            data["error"] = self.error
            data["code"] = self.code.value if self.code else None
        if self.details:
            data["details"] = self.details
        return data


class CoreError(Exception):
    """Raised inside a Store transaction to abort it; surfaced to callers as a Result."""

    kind = ResultKind.INTERNAL

    def __init__(self, message: str, code: ErrorCode | None = None, **details):
        super().__init__(message)
        self.code = code
        self.details = details


class ValidationFailed(CoreError):
    kind = ResultKind.VALIDATION_ERROR


class NotFound(CoreError):
    kind = ResultKind.NOT_FOUND


class Conflict(CoreError):
    kind = ResultKind.CONFLICT


class InventoryConflict(Conflict):
    """A write would break sold + blocked <= total or drive a count negative."""

    def __init__(self, message: str, **details):
        super().__init__(message, ErrorCode.INVENTORY_CONFLICT, **details)


class ExchangeRateUnavailable(CoreError):
    kind = ResultKind.UNAVAILABLE

    def __init__(self, message: str, **details):
        super().__init__(message, ErrorCode.EXCHANGE_RATE_UNAVAILABLE, **details)


class UnknownCurrency(ValidationFailed):
    def __init__(self, currency: str):
        super().__init__(f"Unknown currency code: {currency!r}", ErrorCode.UNKNOWN_CURRENCY, currency=currency)


class RateLimitExceeded(CoreError):
    kind = ResultKind.RATE_LIMITED

    def __init__(self, message: str, retry_after: int):
        super().__init__(message, ErrorCode.RATE_LIMIT_EXCEEDED, retry_after=retry_after)
        self.retry_after = retry_after
