"""
Fulfillment Service - 例外定義

トランザクション内部で送出され、エンジンが結果型 (results.py) に変換する。
エンジンの外に例外が漏れることはない。

    FulfillmentError
    ├── InvalidQuantityError      数量が不正 (リトライしない)
    ├── NotFoundError             顧客 / 商品 / 在庫 / 注文が存在しない
    ├── InsufficientStockError    在庫不足 (リトライしない)
    ├── InvariantViolationError   更新後の在庫検証に失敗 (並行制御のバグ)
    ├── InvalidOrderStateError    配送済み注文のキャンセル
    └── ConflictError             ロック待ちタイムアウト / デッドロック (リトライ対象)
"""

from typing import Any


class FulfillmentError(Exception):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class InvalidQuantityError(FulfillmentError):
    def __init__(self, quantity: int | None):
        super().__init__("Invalid quantity", {"quantity": quantity})
        self.quantity = quantity


class NotFoundError(FulfillmentError):
    entity = "Record"

    def __init__(self, record_id: int | None):
        super().__init__(f"{self.entity} {record_id} not found", {"id": record_id})
        self.record_id = record_id


class CustomerNotFoundError(NotFoundError):
    entity = "Customer"


class ProductNotFoundError(NotFoundError):
    entity = "Product"


class InventoryNotFoundError(NotFoundError):
    entity = "Inventory for product"


class OrderNotFoundError(NotFoundError):
    entity = "Order"


class InsufficientStockError(FulfillmentError):
    def __init__(self, product_id: int, requested: int, available: int):
        super().__init__(
            f"Insufficient stock: need {requested}, have {available}",
            {"product_id": product_id, "requested": requested, "available": available},
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InvariantViolationError(FulfillmentError):
    pass


class InvalidOrderStateError(FulfillmentError):
    def __init__(self, order_id: int, status: str):
        super().__init__(
            f"Cannot cancel {status.lower()} order {order_id}",
            {"order_id": order_id, "status": status},
        )
        self.order_id = order_id
        self.status = status


class ConflictError(FulfillmentError):
    """一時的な競合。同じ入力で再試行すれば解消しうる。"""


class LockTimeoutError(ConflictError):
    pass


class DeadlockError(ConflictError):
    pass


class StaleWriteError(ConflictError):
    """ロック後に読んだ値が書き込み時点で変わっていた (行ロックのない DB)。"""
