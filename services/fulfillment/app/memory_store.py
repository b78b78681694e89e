"""
Fulfillment Service - プロセス内ストア

store.py の契約をメモリ上で実装する。
レコードごとに asyncio.Lock を持ち、ロックはトランザクション終了
(commit / rollback) まで保持される。ロック待ちが lock_timeout を超えると
LockTimeoutError (リトライ対象の競合) になる。

書き込みはトランザクション内にバッファされ、commit 時にまとめて反映される。
ロールバックされたトランザクションの痕跡は残らない (ID の欠番のみ)。
"""

import asyncio
import itertools
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import AsyncIterator

from .exceptions import InventoryNotFoundError, InvariantViolationError, LockTimeoutError
from .models import Order, OrderLine, OrderStatus, Product

LockKey = tuple[str, int]


class LockTable:
    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        self._locks: dict[LockKey, asyncio.Lock] = {}

    async def acquire(self, key: LockKey, held: set[LockKey]) -> None:
        if key in held:
            return
        lock = self._locks.setdefault(key, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), self.timeout)
        except asyncio.TimeoutError:
            raise LockTimeoutError(
                f"Lock wait timeout exceeded on {key[0]} {key[1]}",
                {"table": key[0], "id": key[1], "timeout": self.timeout},
            ) from None
        held.add(key)

    def release_all(self, held: set[LockKey]) -> None:
        for key in held:
            self._locks[key].release()
        held.clear()

    def is_locked(self, key: LockKey) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())


class MemoryInventory:
    def __init__(self, tx: "MemoryTransaction") -> None:
        self._tx = tx

    async def lock_product(self, product_id: int) -> Product | None:
        await self._tx.lock("product", product_id)
        return self._tx.store.products.get(product_id)

    async def lock_and_read(self, product_id: int) -> int | None:
        await self._tx.lock("inventory", product_id)
        return self._current(product_id)

    async def read(self, product_id: int) -> int | None:
        return self._current(product_id)

    def _current(self, product_id: int) -> int | None:
        if product_id in self._tx.inventory_writes:
            return self._tx.inventory_writes[product_id]
        return self._tx.store.inventory.get(product_id)

    async def update(self, product_id: int, new_quantity: int) -> None:
        self._tx.require_lock("inventory", product_id)
        if product_id not in self._tx.store.inventory:
            raise InventoryNotFoundError(product_id)
        if new_quantity < 0:
            raise InvariantViolationError(
                "quantity_on_hand cannot be negative",
                {"product_id": product_id, "quantity": new_quantity},
            )
        self._tx.inventory_writes[product_id] = new_quantity


class MemoryLedger:
    def __init__(self, tx: "MemoryTransaction") -> None:
        self._tx = tx

    async def customer_exists(self, customer_id: int) -> bool:
        return customer_id in self._tx.store.customers

    async def create_order(
        self,
        customer_id: int,
        total: Decimal,
        status: OrderStatus = OrderStatus.PENDING,
    ) -> int:
        order_id = next(self._tx.store.order_ids)
        self._tx.new_orders[order_id] = Order(
            id=order_id,
            customer_id=customer_id,
            order_date=date.today(),
            total_amount=total,
            status=status,
        )
        return order_id

    async def create_order_line(
        self,
        order_id: int,
        product_id: int,
        quantity: int,
        price: Decimal,
    ) -> int:
        line_id = next(self._tx.store.line_ids)
        self._tx.new_lines[line_id] = OrderLine(
            id=line_id,
            order_id=order_id,
            product_id=product_id,
            quantity=quantity,
            price_at_purchase=price,
        )
        return line_id

    async def lock_and_read_order(self, order_id: int) -> Order | None:
        await self._tx.lock("order", order_id)
        return await self.read_order(order_id)

    async def read_order(self, order_id: int) -> Order | None:
        order = self._tx.new_orders.get(order_id) or self._tx.store.orders.get(order_id)
        if order is None:
            return None
        status = self._tx.status_writes.get(order_id)
        return order.model_copy(update={"status": status}) if status else order

    async def read_order_lines(self, order_id: int) -> list[OrderLine]:
        lines = itertools.chain(
            self._tx.store.order_lines.values(), self._tx.new_lines.values()
        )
        return sorted(
            (line for line in lines if line.order_id == order_id),
            key=lambda line: line.id,
        )

    async def update_order_status(self, order_id: int, status: OrderStatus) -> None:
        if order_id not in self._tx.new_orders:
            self._tx.require_lock("order", order_id)
        self._tx.status_writes[order_id] = status


class MemoryTransaction:
    def __init__(self, store: "MemoryStore") -> None:
        self.store = store
        self.active = True
        self.held: set[LockKey] = set()
        self.inventory_writes: dict[int, int] = {}
        self.new_orders: dict[int, Order] = {}
        self.new_lines: dict[int, OrderLine] = {}
        self.status_writes: dict[int, OrderStatus] = {}
        self.inventory = MemoryInventory(self)
        self.ledger = MemoryLedger(self)

    async def lock(self, table: str, record_id: int) -> None:
        self._check_active()
        await self.store.locks.acquire((table, record_id), self.held)

    def require_lock(self, table: str, record_id: int) -> None:
        self._check_active()
        if (table, record_id) not in self.held:
            raise RuntimeError(f"{table} {record_id} updated without holding its lock")

    async def commit(self) -> None:
        self._check_active()
        store = self.store
        store.inventory.update(self.inventory_writes)
        store.orders.update(self.new_orders)
        store.order_lines.update(self.new_lines)
        for order_id, status in self.status_writes.items():
            store.orders[order_id] = store.orders[order_id].model_copy(
                update={"status": status}
            )
        self._close()

    async def rollback(self) -> None:
        if not self.active:
            return
        self._close()

    def _close(self) -> None:
        self.active = False
        self.inventory_writes.clear()
        self.new_orders.clear()
        self.new_lines.clear()
        self.status_writes.clear()
        self.store.locks.release_all(self.held)

    def _check_active(self) -> None:
        if not self.active:
            raise RuntimeError("transaction is already closed")


class MemoryStore:
    """コミット済みの状態は customers / products / inventory / orders / order_lines に保持される。"""

    def __init__(self, lock_timeout: float = 5.0) -> None:
        self.customers: dict[int, str] = {}
        self.products: dict[int, Product] = {}
        self.inventory: dict[int, int] = {}
        self.orders: dict[int, Order] = {}
        self.order_lines: dict[int, OrderLine] = {}
        self.order_ids = itertools.count(1)
        self.line_ids = itertools.count(1)
        self.locks = LockTable(lock_timeout)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryTransaction]:
        tx = MemoryTransaction(self)
        try:
            yield tx
        finally:
            if tx.active:
                await tx.rollback()

    # ── 初期データ投入 ─────────────────────────────

    def add_customer(self, customer_id: int, full_name: str = "") -> None:
        self.customers[customer_id] = full_name

    def add_product(self, product: Product, quantity_on_hand: int | None = 0) -> None:
        """quantity_on_hand=None なら在庫レコードを作らない。"""
        self.products[product.id] = product
        if quantity_on_hand is not None:
            if quantity_on_hand < 0:
                raise ValueError("quantity_on_hand must be >= 0")
            self.inventory[product.id] = quantity_on_hand

    def add_order(
        self,
        customer_id: int,
        lines: list[tuple[int, int]],
        status: OrderStatus = OrderStatus.PENDING,
    ) -> int:
        """既存注文を登録する。lines は (product_id, quantity)。在庫は変更しない。"""
        order_id = next(self.order_ids)
        total = Decimal("0")
        for product_id, quantity in lines:
            line_id = next(self.line_ids)
            price = self.products[product_id].price
            self.order_lines[line_id] = OrderLine(
                id=line_id,
                order_id=order_id,
                product_id=product_id,
                quantity=quantity,
                price_at_purchase=price,
            )
            total += price * quantity
        self.orders[order_id] = Order(
            id=order_id,
            customer_id=customer_id,
            order_date=date.today(),
            total_amount=total,
            status=status,
        )
        return order_id
