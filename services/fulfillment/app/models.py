"""
Fulfillment Service - ドメインモデル

商品・在庫・注文・注文明細。
在庫数 (quantity_on_hand) はエンジンがロックを保持している間だけ変更される。

注文の状態遷移:
    PENDING → SHIPPED → DELIVERED  (外部の状態更新サービス)
    PENDING / SHIPPED → CANCELLED  (cancel_order のみ)
"""

from datetime import date
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class OrderStatus(str, Enum):
    PENDING = "Pending"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class Product(BaseModel):
    """商品。注文時点の価格が OrderLine にスナップショットされる。"""
    id: int
    name: str
    price: Decimal = Field(ge=0)
    category: str = ""


class InventoryRecord(BaseModel):
    product_id: int
    quantity_on_hand: int = Field(ge=0)


class Order(BaseModel):
    id: int
    customer_id: int
    order_date: date
    total_amount: Decimal
    status: OrderStatus = OrderStatus.PENDING


class OrderLine(BaseModel):
    id: int
    order_id: int
    product_id: int
    quantity: int = Field(gt=0)
    price_at_purchase: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.price_at_purchase * self.quantity
