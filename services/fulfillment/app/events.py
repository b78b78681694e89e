"""
Fulfillment Service - 監査レコード定義

監査ログに追記されるレコード。追記のみで更新されることはない。
    SystemEvent     : システムイベント (INFO / WARNING / ERROR)
    OrderAudit      : 注文操作の結果 (CREATE / CANCEL)
    InventoryChange : 在庫数の変化 (SALE / RETURN)
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Union

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LogLevel(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class AuditAction(str, Enum):
    CREATE = "CREATE"
    CANCEL = "CANCEL"


class ChangeType(str, Enum):
    SALE = "SALE"
    RETURN = "RETURN"


class SystemEvent(BaseModel):
    """システムイベント"""
    record_type: Literal["SystemEvent"] = "SystemEvent"
    level: LogLevel
    category: str = "ORDER"
    message: str
    table_name: str | None = None
    record_id: int | None = None
    timestamp: datetime = Field(default_factory=_now)


class OrderAudit(BaseModel):
    """注文操作の監査レコード。CreateOrder / CancelOrder の終端ごとに必ず 1 件。"""
    record_type: Literal["OrderAudit"] = "OrderAudit"
    order_id: int | None = None
    customer_id: int | None = None
    product_id: int | None = None
    action: AuditAction
    quantity: int | None = None
    success: bool
    error_msg: str | None = None
    inventory_before: int | None = None
    inventory_after: int | None = None
    processing_time_ms: int | None = None
    timestamp: datetime = Field(default_factory=_now)


class InventoryChange(BaseModel):
    """在庫数の変化 (販売による減少 / キャンセルによる戻し)"""
    record_type: Literal["InventoryChange"] = "InventoryChange"
    product_id: int
    change_type: ChangeType
    old_qty: int
    new_qty: int
    order_id: int | None = None
    reason: str = ""
    timestamp: datetime = Field(default_factory=_now)

    @property
    def quantity_changed(self) -> int:
        return self.new_qty - self.old_qty


AuditRecord = Union[SystemEvent, OrderAudit, InventoryChange]
