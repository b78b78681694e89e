"""
Fulfillment Service - リトライ / 競合ポリシー

1 回の試行 (= 1 トランザクション) の結果を Success / Retryable / Fatal で表し、
上限付きループがそれを消費する。
ConflictError (ロック待ちタイムアウト・デッドロック) だけがリトライ対象。
在庫不足は現在の在庫に対して決定的なのでリトライしない。
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Generic, Iterator, TypeVar, Union

from .exceptions import ConflictError

T = TypeVar("T")


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T


@dataclass(frozen=True)
class Retryable:
    error: ConflictError


@dataclass(frozen=True)
class Fatal:
    error: BaseException


AttemptResult = Union[Success[Any], Retryable, Fatal]


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    backoff: float = 0.1

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff < 0:
            raise ValueError("backoff must be >= 0")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def attempts(self) -> Iterator[int]:
        """1 始まりの試行番号を返す。"""
        return iter(range(1, self.max_attempts + 1))

    def classify(self, exc: BaseException) -> Retryable | Fatal:
        if isinstance(exc, ConflictError):
            return Retryable(exc)
        return Fatal(exc)

    async def wait(self, attempt: int) -> None:
        """最後の試行の後は待たない。"""
        if self.backoff and attempt < self.max_attempts:
            await asyncio.sleep(self.backoff)
