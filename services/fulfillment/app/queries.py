"""
Fulfillment Service - クエリハンドラ (参照側)

ロックを取らずに読み、トランザクションは何も書かずに閉じる。
"""

from .models import InventoryRecord
from .store import Store


async def get_order(store: Store, order_id: int) -> dict | None:
    """注文と明細を取得する。"""
    async with store.transaction() as tx:
        order = await tx.ledger.read_order(order_id)
        if not order:
            return None
        lines = await tx.ledger.read_order_lines(order_id)
    return {
        "id": order.id,
        "customer_id": order.customer_id,
        "order_date": order.order_date.isoformat(),
        "total_amount": float(order.total_amount),
        "status": order.status.value,
        "lines": [
            {
                "id": line.id,
                "product_id": line.product_id,
                "quantity": line.quantity,
                "price_at_purchase": float(line.price_at_purchase),
            }
            for line in lines
        ],
    }


async def get_inventory(store: Store, product_id: int) -> dict | None:
    async with store.transaction() as tx:
        quantity = await tx.inventory.read(product_id)
    if quantity is None:
        return None
    return InventoryRecord(product_id=product_id, quantity_on_hand=quantity).model_dump()
