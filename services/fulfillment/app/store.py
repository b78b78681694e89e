"""
Fulfillment Service - ストア契約

エンジンが利用する協調コンポーネントのインターフェース。
すべての操作は呼び出し側が管理する 1 つのトランザクション内で行われる。

    InventoryStore : 商品・在庫レコードのロック付き読み取りと更新
    OrderLedger    : 注文・注文明細の作成 / ロック付き読み取り / 状態更新
    Transaction    : 上記 2 つを束ねるトランザクション境界
    Store          : Transaction を開始するファクトリ

実装: sql_store.SqlStore (SQLAlchemy), memory_store.MemoryStore (プロセス内)
"""

from decimal import Decimal
from typing import AsyncContextManager, Protocol

from .models import Order, OrderLine, OrderStatus, Product


class InventoryStore(Protocol):
    async def lock_product(self, product_id: int) -> Product | None:
        """商品行を排他ロックして読む。"""
        ...

    async def lock_and_read(self, product_id: int) -> int | None:
        """在庫行を排他ロックして quantity_on_hand を読む。"""
        ...

    async def read(self, product_id: int) -> int | None:
        """同じトランザクション内で在庫数を再読み込みする。"""
        ...

    async def update(self, product_id: int, new_quantity: int) -> None:
        """同じトランザクションでロックを保持している間だけ有効。"""
        ...


class OrderLedger(Protocol):
    async def customer_exists(self, customer_id: int) -> bool: ...

    async def create_order(
        self,
        customer_id: int,
        total: Decimal,
        status: OrderStatus = OrderStatus.PENDING,
    ) -> int: ...

    async def create_order_line(
        self,
        order_id: int,
        product_id: int,
        quantity: int,
        price: Decimal,
    ) -> int: ...

    async def lock_and_read_order(self, order_id: int) -> Order | None: ...

    async def read_order(self, order_id: int) -> Order | None:
        """ロックを取らずに読む (参照系)。"""
        ...

    async def read_order_lines(self, order_id: int) -> list[OrderLine]:
        """明細を永続化 ID 順に返す。"""
        ...

    async def update_order_status(self, order_id: int, status: OrderStatus) -> None: ...


class Transaction(Protocol):
    inventory: InventoryStore
    ledger: OrderLedger

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


class Store(Protocol):
    def transaction(self) -> AsyncContextManager[Transaction]:
        """コミットされずに抜けたトランザクションはロールバックされる。"""
        ...
