"""
Fulfillment Service - SQLAlchemy ストア

store.py の契約を AsyncSession で実装する。
ロックは SELECT ... FOR UPDATE (行ロック) で取得し、commit / rollback で解放される。
ロック待ちの上限はトランザクション開始時に設定する:
    PostgreSQL : SET LOCAL lock_timeout
    MySQL      : SET SESSION innodb_lock_wait_timeout

在庫の UPDATE は読んだ値を条件にするので、行ロックのない SQLite でも更新は失われない。
ストレージ層の一時的な競合は ConflictError に変換する。それ以外の例外はそのまま送出する。
"""

import logging
import math
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Any, AsyncIterator

from sqlalchemy import insert, select, update
from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .exceptions import (
    ConflictError,
    DeadlockError,
    InventoryNotFoundError,
    LockTimeoutError,
    StaleWriteError,
)
from .models import Order, OrderLine, OrderStatus, Product
from .schema import customers, inventory, order_items, orders, products

logger = logging.getLogger(__name__)

# PostgreSQL SQLSTATE: serialization_failure / deadlock_detected / lock_not_available
_SQLSTATE_CONFLICTS: dict[str, type[ConflictError]] = {
    "40001": DeadlockError,
    "40P01": DeadlockError,
    "55P03": LockTimeoutError,
}
# MySQL: ER_LOCK_WAIT_TIMEOUT / ER_LOCK_DEADLOCK
_MYSQL_CONFLICTS: dict[int, type[ConflictError]] = {
    1205: LockTimeoutError,
    1213: DeadlockError,
}


def translate_error(exc: DBAPIError) -> ConflictError | None:
    """一時的な競合なら ConflictError を返す。それ以外は None。"""
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _SQLSTATE_CONFLICTS:
        return _SQLSTATE_CONFLICTS[sqlstate](str(orig), {"sqlstate": sqlstate})

    args = getattr(orig, "args", ())
    if args and args[0] in _MYSQL_CONFLICTS:
        return _MYSQL_CONFLICTS[args[0]](str(orig), {"code": args[0]})

    # SQLite はロック待ちが busy timeout を超えると "database is locked" になる
    if "database is locked" in str(orig):
        return LockTimeoutError(str(orig))
    return None


class SqlInventory:
    """
    在庫の更新は lock_and_read で読んだ値を条件にした UPDATE (compare-and-swap)。
    FOR UPDATE が効かない DB (SQLite) でも、読んでから書くまでの間に
    他のトランザクションが在庫を変えていれば StaleWriteError になる。
    """

    def __init__(self, tx: "SqlTransaction") -> None:
        self._tx = tx
        # product_id → このトランザクションが最後に読んだ / 書いた在庫数
        self._expected: dict[int, int] = {}

    async def lock_product(self, product_id: int) -> Product | None:
        result = await self._tx.execute(
            select(products).where(products.c.id == product_id).with_for_update()
        )
        row = result.fetchone()
        if not row:
            return None
        return Product(id=row.id, name=row.name, price=row.price, category=row.category)

    async def lock_and_read(self, product_id: int) -> int | None:
        result = await self._tx.execute(
            select(inventory.c.quantity_on_hand)
            .where(inventory.c.product_id == product_id)
            .with_for_update()
        )
        quantity = result.scalar_one_or_none()
        if quantity is not None:
            self._expected[product_id] = quantity
        return quantity

    async def read(self, product_id: int) -> int | None:
        result = await self._tx.execute(
            select(inventory.c.quantity_on_hand).where(inventory.c.product_id == product_id)
        )
        return result.scalar_one_or_none()

    async def update(self, product_id: int, new_quantity: int) -> None:
        statement = update(inventory).where(inventory.c.product_id == product_id)
        expected = self._expected.get(product_id)
        if expected is not None:
            statement = statement.where(inventory.c.quantity_on_hand == expected)

        result = await self._tx.execute(statement.values(quantity_on_hand=new_quantity))
        if result.rowcount == 0:
            if expected is None:
                raise InventoryNotFoundError(product_id)
            raise StaleWriteError(
                f"Inventory of product {product_id} changed since it was locked",
                {"product_id": product_id, "expected": expected},
            )
        self._expected[product_id] = new_quantity


class SqlLedger:
    def __init__(self, tx: "SqlTransaction") -> None:
        self._tx = tx
        # order_id → ロックして読んだステータス (更新条件に使う)
        self._locked_status: dict[int, OrderStatus] = {}

    async def customer_exists(self, customer_id: int) -> bool:
        result = await self._tx.execute(
            select(customers.c.id).where(customers.c.id == customer_id)
        )
        return result.scalar_one_or_none() is not None

    async def create_order(
        self,
        customer_id: int,
        total: Decimal,
        status: OrderStatus = OrderStatus.PENDING,
    ) -> int:
        result = await self._tx.execute(
            insert(orders).values(
                customer_id=customer_id,
                order_date=date.today(),
                total_amount=total,
                status=status.value,
            )
        )
        return result.inserted_primary_key[0]

    async def create_order_line(
        self,
        order_id: int,
        product_id: int,
        quantity: int,
        price: Decimal,
    ) -> int:
        result = await self._tx.execute(
            insert(order_items).values(
                order_id=order_id,
                product_id=product_id,
                quantity=quantity,
                price_at_purchase=price,
            )
        )
        return result.inserted_primary_key[0]

    async def lock_and_read_order(self, order_id: int) -> Order | None:
        order = await self._read_order(
            select(orders).where(orders.c.id == order_id).with_for_update()
        )
        if order is not None:
            self._locked_status[order_id] = order.status
        return order

    async def read_order(self, order_id: int) -> Order | None:
        return await self._read_order(select(orders).where(orders.c.id == order_id))

    async def _read_order(self, statement) -> Order | None:
        result = await self._tx.execute(statement)
        row = result.fetchone()
        if not row:
            return None
        return Order(
            id=row.id,
            customer_id=row.customer_id,
            order_date=row.order_date,
            total_amount=row.total_amount,
            status=OrderStatus(row.status),
        )

    async def read_order_lines(self, order_id: int) -> list[OrderLine]:
        result = await self._tx.execute(
            select(order_items)
            .where(order_items.c.order_id == order_id)
            .order_by(order_items.c.id)
        )
        return [
            OrderLine(
                id=row.id,
                order_id=row.order_id,
                product_id=row.product_id,
                quantity=row.quantity,
                price_at_purchase=row.price_at_purchase,
            )
            for row in result.fetchall()
        ]

    async def update_order_status(self, order_id: int, status: OrderStatus) -> None:
        statement = update(orders).where(orders.c.id == order_id)
        expected = self._locked_status.get(order_id)
        if expected is not None:
            statement = statement.where(orders.c.status == expected.value)

        result = await self._tx.execute(statement.values(status=status.value))
        if expected is not None and result.rowcount == 0:
            raise StaleWriteError(
                f"Order {order_id} changed since it was locked",
                {"order_id": order_id, "expected": expected.value},
            )
        self._locked_status[order_id] = status


class SqlTransaction:
    def __init__(self, session: AsyncSession, lock_timeout: float) -> None:
        self.session = session
        self.lock_timeout = lock_timeout
        self.active = True
        self.inventory = SqlInventory(self)
        self.ledger = SqlLedger(self)

    async def begin(self) -> None:
        dialect = self.session.bind.dialect.name
        if dialect == "postgresql":
            ms = int(self.lock_timeout * 1000)
            await self.execute(text(f"SET LOCAL lock_timeout = '{ms}ms'"))
        elif dialect in ("mysql", "mariadb"):
            seconds = max(1, math.ceil(self.lock_timeout))
            await self.execute(text(f"SET SESSION innodb_lock_wait_timeout = {seconds}"))

    async def execute(self, statement: Any, params: dict | None = None):
        try:
            return await self.session.execute(statement, params)
        except DBAPIError as exc:
            conflict = translate_error(exc)
            if conflict is None:
                raise
            logger.debug("Storage conflict: %s", conflict)
            raise conflict from exc

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except DBAPIError as exc:
            conflict = translate_error(exc)
            if conflict is None:
                raise
            raise conflict from exc
        finally:
            self.active = False

    async def rollback(self) -> None:
        self.active = False
        await self.session.rollback()


class SqlStore:
    def __init__(self, session_factory: sessionmaker, lock_timeout: float = 5.0) -> None:
        self._session_factory = session_factory
        self.lock_timeout = lock_timeout

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlTransaction]:
        async with self._session_factory() as session:
            tx = SqlTransaction(session, self.lock_timeout)
            try:
                await tx.begin()
                yield tx
            finally:
                if tx.active:
                    await tx.rollback()
