"""
Fulfillment Service - 呼び出し側に返す結果型

成功可否・人間向けメッセージ・機械判定用の ErrorKind を持つ。
"""

from enum import Enum

from pydantic import BaseModel

from .exceptions import (
    ConflictError,
    FulfillmentError,
    InsufficientStockError,
    InvalidOrderStateError,
    InvalidQuantityError,
    InvariantViolationError,
    NotFoundError,
)


class ErrorKind(str, Enum):
    NONE = "None"
    INVALID_ARGUMENT = "InvalidArgument"
    NOT_FOUND = "NotFound"
    INSUFFICIENT_STOCK = "InsufficientStock"
    CONFLICT = "Conflict"
    RETRIES_EXHAUSTED = "RetriesExhausted"
    INVARIANT_VIOLATION = "InvariantViolation"
    INVALID_STATE = "InvalidState"
    ALREADY_CANCELLED = "AlreadyCancelled"
    STORAGE_ERROR = "StorageError"


_KIND_BY_ERROR: list[tuple[type[FulfillmentError], ErrorKind]] = [
    (InvalidQuantityError, ErrorKind.INVALID_ARGUMENT),
    (NotFoundError, ErrorKind.NOT_FOUND),
    (InsufficientStockError, ErrorKind.INSUFFICIENT_STOCK),
    (ConflictError, ErrorKind.CONFLICT),
    (InvariantViolationError, ErrorKind.INVARIANT_VIOLATION),
    (InvalidOrderStateError, ErrorKind.INVALID_STATE),
]


def error_kind_for(exc: BaseException) -> ErrorKind:
    for error_type, kind in _KIND_BY_ERROR:
        if isinstance(exc, error_type):
            return kind
    return ErrorKind.STORAGE_ERROR


class CreateOrderResult(BaseModel):
    order_id: int | None = None
    message: str
    error_kind: ErrorKind = ErrorKind.NONE
    available: int | None = None
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.error_kind == ErrorKind.NONE


class CancelOrderResult(BaseModel):
    order_id: int
    message: str
    error_kind: ErrorKind = ErrorKind.NONE
    restored_lines: int = 0

    @property
    def success(self) -> bool:
        return self.error_kind == ErrorKind.NONE

    @property
    def is_warning(self) -> bool:
        return self.error_kind == ErrorKind.ALREADY_CANCELLED
