"""
Fulfillment Service - 注文処理エンジン

create_order : 在庫をロックして注文を作成する。ロック競合時は上限付きでリトライする。
cancel_order : 注文をキャンセルし、明細の数量を在庫に戻す (補償トランザクション)。
               リトライはせず、全体が 1 つのトランザクションとして確定する。

どちらも例外を外に出さず、結果型 (results.py) を返す。
監査レコードはトランザクション確定後に AuditEmitter へ渡す。

  create_order の 1 試行:
  ┌──────────────────────────────────────────────────────────┐
  │ 1. 顧客の存在確認                                       │
  │ 2. 商品行・在庫行を排他ロックして価格と在庫数を読む      │
  │ 3. 在庫不足なら失敗 (リトライしない)                     │
  │ 4. 注文 (Pending) と注文明細を作成し、在庫を減らす       │
  │ 5. 在庫を再読み込みして減算結果を検証                    │
  │ 6. COMMIT                                                │
  └──────────────────────────────────────────────────────────┘
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal

from .audit import AuditEmitter
from .events import (
    AuditAction,
    AuditRecord,
    ChangeType,
    InventoryChange,
    LogLevel,
    OrderAudit,
    SystemEvent,
)
from .exceptions import (
    CustomerNotFoundError,
    InsufficientStockError,
    InvalidOrderStateError,
    InvalidQuantityError,
    InventoryNotFoundError,
    InvariantViolationError,
    OrderNotFoundError,
    ProductNotFoundError,
)
from .models import Order, OrderStatus, Product
from .results import CancelOrderResult, CreateOrderResult, ErrorKind, error_kind_for
from .retry import AttemptResult, Fatal, RetryPolicy, Success
from .store import Store, Transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Sale:
    order_id: int
    product: Product
    quantity: int
    total: Decimal
    stock_before: int
    stock_after: int


def is_valid_quantity(quantity: object) -> bool:
    return isinstance(quantity, int) and not isinstance(quantity, bool) and quantity > 0


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _describe_create_failure(exc: BaseException, attempt: int) -> tuple[str, str, LogLevel]:
    """(呼び出し側へのメッセージ, 監査の error_msg, SystemEvent のレベル)"""
    if isinstance(exc, InvalidQuantityError):
        return "Error: Invalid quantity", "Invalid quantity", LogLevel.WARNING
    if isinstance(exc, CustomerNotFoundError):
        return "Error: Customer not found", "Customer not found", LogLevel.WARNING
    if isinstance(exc, ProductNotFoundError):
        return "Error: Product not found", "Product not found", LogLevel.WARNING
    if isinstance(exc, InventoryNotFoundError):
        return "Error: No inventory record", "No inventory record", LogLevel.WARNING
    if isinstance(exc, InsufficientStockError):
        return (
            f"Error: Only {exc.available} units available",
            f"Insufficient stock: {exc.available} available",
            LogLevel.WARNING,
        )
    if isinstance(exc, InvariantViolationError):
        return (
            "Error: Inventory update failed verification",
            "Inventory verification failed",
            LogLevel.ERROR,
        )
    retries = max(attempt - 1, 0)
    return (
        f"Error: Transaction failed - {exc}",
        f"Error after {retries} retries: {exc}",
        LogLevel.ERROR,
    )


class FulfillmentEngine:
    def __init__(
        self,
        store: Store,
        emitter: AuditEmitter,
        policy: RetryPolicy | None = None,
    ) -> None:
        self.store = store
        self.emitter = emitter
        self.policy = policy or RetryPolicy()

    # ── CreateOrder ──────────────────────────────

    async def create_order(
        self,
        customer_id: int,
        product_id: int,
        quantity: int | None,
    ) -> CreateOrderResult:
        started = time.monotonic()
        logger.info(
            "Processing order: customer=%s product=%s quantity=%s",
            customer_id, product_id, quantity,
        )

        if not is_valid_quantity(quantity):
            return await self._reject_create(
                InvalidQuantityError(quantity), customer_id, product_id, quantity, started, 0
            )

        for attempt in self.policy.attempts():
            result = await self._create_order_attempt(customer_id, product_id, quantity)

            if isinstance(result, Success):
                return await self._complete_create(result.value, customer_id, started, attempt)

            if isinstance(result, Fatal):
                return await self._reject_create(
                    result.error, customer_id, product_id, quantity, started, attempt
                )

            logger.warning("Retry %d after lock issue: %s", attempt, result.error)
            await self._emit(
                SystemEvent(
                    level=LogLevel.WARNING,
                    message=f"Retry {attempt} after lock issue: {result.error.message}",
                    table_name="inventory",
                    record_id=product_id,
                )
            )
            await self.policy.wait(attempt)

        return await self._exhausted(customer_id, product_id, quantity, started)

    async def _create_order_attempt(
        self,
        customer_id: int,
        product_id: int,
        quantity: int,
    ) -> AttemptResult:
        """1 試行 = 1 トランザクション。失敗時は何も残らない。"""
        try:
            async with self.store.transaction() as tx:
                sale = await self._place_order(tx, customer_id, product_id, quantity)
                await tx.commit()
        except Exception as exc:
            return self.policy.classify(exc)
        return Success(sale)

    async def _place_order(
        self,
        tx: Transaction,
        customer_id: int,
        product_id: int,
        quantity: int,
    ) -> Sale:
        if not await tx.ledger.customer_exists(customer_id):
            raise CustomerNotFoundError(customer_id)

        product = await tx.inventory.lock_product(product_id)
        if product is None:
            raise ProductNotFoundError(product_id)

        stock_before = await tx.inventory.lock_and_read(product_id)
        if stock_before is None:
            raise InventoryNotFoundError(product_id)
        if stock_before < quantity:
            raise InsufficientStockError(product_id, quantity, stock_before)

        total = product.price * quantity
        order_id = await tx.ledger.create_order(customer_id, total, OrderStatus.PENDING)
        await tx.ledger.create_order_line(order_id, product_id, quantity, product.price)
        await tx.inventory.update(product_id, stock_before - quantity)

        # 更新結果の検証。ずれていれば並行制御のバグ
        stock_after = await tx.inventory.read(product_id)
        if stock_after != stock_before - quantity:
            raise InvariantViolationError(
                "Inventory update verification failed",
                {
                    "product_id": product_id,
                    "expected": stock_before - quantity,
                    "actual": stock_after,
                },
            )

        return Sale(
            order_id=order_id,
            product=product,
            quantity=quantity,
            total=total,
            stock_before=stock_before,
            stock_after=stock_after,
        )

    async def _complete_create(
        self,
        sale: Sale,
        customer_id: int,
        started: float,
        attempt: int,
    ) -> CreateOrderResult:
        logger.info(
            "Order %s created: total=%s attempt=%d", sale.order_id, sale.total, attempt
        )
        await self._emit(
            InventoryChange(
                product_id=sale.product.id,
                change_type=ChangeType.SALE,
                old_qty=sale.stock_before,
                new_qty=sale.stock_after,
                order_id=sale.order_id,
                reason=f"Order #{sale.order_id} - {sale.product.name}",
            ),
            OrderAudit(
                order_id=sale.order_id,
                customer_id=customer_id,
                product_id=sale.product.id,
                action=AuditAction.CREATE,
                quantity=sale.quantity,
                success=True,
                inventory_before=sale.stock_before,
                inventory_after=sale.stock_after,
                processing_time_ms=_elapsed_ms(started),
            ),
            SystemEvent(
                level=LogLevel.INFO,
                message=(
                    f"Order {sale.order_id} created successfully. "
                    f"Amount: {sale.total} (Attempt {attempt})"
                ),
                table_name="orders",
                record_id=sale.order_id,
            ),
        )
        return CreateOrderResult(
            order_id=sale.order_id,
            message=f"Success: Order {sale.order_id} created",
            attempts=attempt,
        )

    async def _reject_create(
        self,
        exc: BaseException,
        customer_id: int,
        product_id: int,
        quantity: int | None,
        started: float,
        attempt: int,
    ) -> CreateOrderResult:
        message, audit_msg, level = _describe_create_failure(exc, attempt)
        if level == LogLevel.ERROR:
            event = f"Order failed after {attempt} attempts: {exc}"
            logger.error(event, exc_info=exc)
        else:
            event = f"Order rejected: {exc}"
            logger.info(event)

        await self._emit(
            SystemEvent(level=level, message=event),
            OrderAudit(
                customer_id=customer_id,
                product_id=product_id,
                action=AuditAction.CREATE,
                quantity=quantity if isinstance(quantity, int) else None,
                success=False,
                error_msg=audit_msg,
                processing_time_ms=_elapsed_ms(started),
            ),
        )
        return CreateOrderResult(
            message=message,
            error_kind=error_kind_for(exc),
            available=exc.available if isinstance(exc, InsufficientStockError) else None,
            attempts=attempt,
        )

    async def _exhausted(
        self,
        customer_id: int,
        product_id: int,
        quantity: int,
        started: float,
    ) -> CreateOrderResult:
        max_retries = self.policy.max_retries
        logger.error("Order failed after %d retry attempts", max_retries)
        message = f"Order failed after {max_retries} retry attempts"
        await self._emit(
            SystemEvent(level=LogLevel.ERROR, message=message),
            OrderAudit(
                customer_id=customer_id,
                product_id=product_id,
                action=AuditAction.CREATE,
                quantity=quantity,
                success=False,
                error_msg=message,
                processing_time_ms=_elapsed_ms(started),
            ),
        )
        return CreateOrderResult(
            message=f"Error: {message}",
            error_kind=ErrorKind.RETRIES_EXHAUSTED,
            attempts=self.policy.max_attempts,
        )

    # ── CancelOrder ──────────────────────────────

    async def cancel_order(self, order_id: int, reason: str = "") -> CancelOrderResult:
        started = time.monotonic()
        logger.info("Attempting to cancel order %s: %s", order_id, reason)

        order: Order | None = None
        changes: list[InventoryChange] = []
        try:
            async with self.store.transaction() as tx:
                order = await tx.ledger.lock_and_read_order(order_id)
                if order is None:
                    raise OrderNotFoundError(order_id)
                if order.status == OrderStatus.DELIVERED:
                    raise InvalidOrderStateError(order_id, order.status.value)
                if order.status != OrderStatus.CANCELLED:
                    changes = await self._restore_inventory(tx, order, reason)
                    await tx.ledger.update_order_status(order_id, OrderStatus.CANCELLED)
                    await tx.commit()
        except Exception as exc:
            return await self._reject_cancel(exc, order_id, order, reason, started)

        if order.status == OrderStatus.CANCELLED:
            return await self._already_cancelled(order_id)
        return await self._complete_cancel(order, changes, reason, started)

    async def _restore_inventory(
        self,
        tx: Transaction,
        order: Order,
        reason: str,
    ) -> list[InventoryChange]:
        changes = []
        for line in await tx.ledger.read_order_lines(order.id):
            stock_before = await tx.inventory.lock_and_read(line.product_id)
            if stock_before is None:
                raise InventoryNotFoundError(line.product_id)
            stock_after = stock_before + line.quantity
            await tx.inventory.update(line.product_id, stock_after)
            changes.append(
                InventoryChange(
                    product_id=line.product_id,
                    change_type=ChangeType.RETURN,
                    old_qty=stock_before,
                    new_qty=stock_after,
                    order_id=order.id,
                    reason=f"Order #{order.id} cancelled - {reason}",
                )
            )
        return changes

    async def _complete_cancel(
        self,
        order: Order,
        changes: list[InventoryChange],
        reason: str,
        started: float,
    ) -> CancelOrderResult:
        logger.info("Order %s cancelled, %d lines restored", order.id, len(changes))
        await self._emit(
            *changes,
            OrderAudit(
                order_id=order.id,
                customer_id=order.customer_id,
                action=AuditAction.CANCEL,
                success=True,
                error_msg=reason or None,
                processing_time_ms=_elapsed_ms(started),
            ),
            SystemEvent(
                level=LogLevel.INFO,
                message=(
                    f"Order {order.id} cancelled successfully. "
                    f"{len(changes)} items restored to inventory"
                ),
                table_name="orders",
                record_id=order.id,
            ),
        )
        return CancelOrderResult(
            order_id=order.id,
            message=f"Success: Order {order.id} cancelled and inventory restored",
            restored_lines=len(changes),
        )

    async def _already_cancelled(self, order_id: int) -> CancelOrderResult:
        logger.info("Order %s already cancelled", order_id)
        await self._emit(
            SystemEvent(
                level=LogLevel.WARNING,
                message=f"Order {order_id} already cancelled",
                table_name="orders",
                record_id=order_id,
            )
        )
        return CancelOrderResult(
            order_id=order_id,
            message="Warning: Order already cancelled",
            error_kind=ErrorKind.ALREADY_CANCELLED,
        )

    async def _reject_cancel(
        self,
        exc: BaseException,
        order_id: int,
        order: Order | None,
        reason: str,
        started: float,
    ) -> CancelOrderResult:
        if isinstance(exc, OrderNotFoundError):
            message, level = "Error: Order not found", LogLevel.WARNING
        elif isinstance(exc, InvalidOrderStateError):
            message, level = "Error: Cannot cancel delivered order", LogLevel.WARNING
        else:
            message, level = f"Error: Cancellation failed - {exc}", LogLevel.ERROR
            logger.error("Cancellation of order %s failed: %s", order_id, exc, exc_info=exc)

        await self._emit(
            SystemEvent(
                level=level,
                message=f"Order cancellation failed for Order {order_id}: {exc}",
                table_name="orders",
                record_id=order_id,
            ),
            OrderAudit(
                order_id=order_id,
                customer_id=order.customer_id if order else None,
                action=AuditAction.CANCEL,
                success=False,
                error_msg=str(exc),
                processing_time_ms=_elapsed_ms(started),
            ),
        )
        return CancelOrderResult(
            order_id=order_id,
            message=message,
            error_kind=error_kind_for(exc),
        )

    # ── 共通 ────────────────────────────────────

    async def _emit(self, *records: AuditRecord) -> None:
        await self.emitter.emit(records)
