"""CancelOrder: 在庫の戻しと、1 トランザクションとしての原子性。"""

from app.events import (
    AuditAction,
    ChangeType,
    InventoryChange,
    LogLevel,
    OrderAudit,
    SystemEvent,
)
from app.exceptions import DeadlockError
from app.memory_store import MemoryInventory
from app.models import OrderStatus
from app.results import ErrorKind


class TestCancelOrder:
    async def test_create_then_cancel_restores_inventory(self, engine, store):
        before = store.inventory[1]
        created = await engine.create_order(1, 1, 4)

        result = await engine.cancel_order(created.order_id, "Customer requested cancellation")

        assert result.success
        assert result.message == (
            f"Success: Order {created.order_id} cancelled and inventory restored"
        )
        assert result.restored_lines == 1
        assert store.inventory[1] == before
        assert store.orders[created.order_id].status == OrderStatus.CANCELLED

    async def test_emits_return_changes_and_one_audit(self, engine, store, sink):
        created = await engine.create_order(2, 7, 3)
        sink.clear()

        await engine.cancel_order(created.order_id, "Changed mind")

        changes = sink.of_type(InventoryChange)
        assert len(changes) == 1
        assert changes[0].change_type == ChangeType.RETURN
        assert (changes[0].old_qty, changes[0].new_qty) == (72, 75)
        assert changes[0].reason == f"Order #{created.order_id} cancelled - Changed mind"

        audits = sink.of_type(OrderAudit)
        assert len(audits) == 1
        assert audits[0].action == AuditAction.CANCEL
        assert audits[0].success
        assert audits[0].customer_id == 2
        assert audits[0].error_msg == "Changed mind"

    async def test_multi_line_order_restored_in_line_order(self, engine, store, sink):
        order_id = store.add_order(1, [(7, 2), (1, 1), (2, 3)])

        result = await engine.cancel_order(order_id, "Out of budget")

        assert result.restored_lines == 3
        assert store.inventory == {1: 51, 2: 13, 7: 77}
        assert [c.product_id for c in sink.of_type(InventoryChange)] == [7, 1, 2]

    async def test_shipped_order_can_be_cancelled(self, engine, store):
        order_id = store.add_order(1, [(2, 1)], status=OrderStatus.SHIPPED)

        result = await engine.cancel_order(order_id, "Lost in transit")

        assert result.success
        assert store.orders[order_id].status == OrderStatus.CANCELLED
        assert store.inventory[2] == 11

    async def test_second_cancel_is_a_warning_noop(self, engine, store, sink):
        created = await engine.create_order(1, 2, 5)
        await engine.cancel_order(created.order_id, "first")
        restored = store.inventory[2]
        sink.clear()

        result = await engine.cancel_order(created.order_id, "second")

        assert not result.success
        assert result.is_warning
        assert result.error_kind == ErrorKind.ALREADY_CANCELLED
        assert result.message == "Warning: Order already cancelled"
        assert store.inventory[2] == restored == 10

        # 監査は WARNING の SystemEvent 1 件のみ
        assert sink.of_type(OrderAudit) == []
        assert sink.of_type(InventoryChange) == []
        events = sink.of_type(SystemEvent)
        assert [e.level for e in events] == [LogLevel.WARNING]


class TestCancelOrderRejected:
    async def test_unknown_order(self, engine, sink):
        result = await engine.cancel_order(12345, "no such order")

        assert result.error_kind == ErrorKind.NOT_FOUND
        assert result.message == "Error: Order not found"
        audits = sink.of_type(OrderAudit)
        assert len(audits) == 1
        assert not audits[0].success

    async def test_delivered_order_cannot_be_cancelled(self, engine, store, sink):
        order_id = store.add_order(1, [(1, 1)], status=OrderStatus.DELIVERED)

        result = await engine.cancel_order(order_id, "too late")

        assert result.error_kind == ErrorKind.INVALID_STATE
        assert result.message == "Error: Cannot cancel delivered order"
        assert store.orders[order_id].status == OrderStatus.DELIVERED
        assert store.inventory[1] == 50
        assert sink.of_type(OrderAudit)[0].customer_id == 1

    async def test_failure_midway_restores_nothing(self, engine, store, sink, monkeypatch):
        order_id = store.add_order(1, [(1, 2), (2, 2), (7, 2)])
        original = MemoryInventory.update

        async def failing_update(self, product_id, new_quantity):
            if product_id == 7:
                raise OSError("disk full")
            await original(self, product_id, new_quantity)

        monkeypatch.setattr(MemoryInventory, "update", failing_update)

        result = await engine.cancel_order(order_id, "boom")

        assert result.error_kind == ErrorKind.STORAGE_ERROR
        assert result.message == "Error: Cancellation failed - disk full"
        assert store.inventory == {1: 50, 2: 10, 7: 75}
        assert store.orders[order_id].status == OrderStatus.PENDING
        assert sink.of_type(InventoryChange) == []
        errors = [e for e in sink.of_type(SystemEvent) if e.level == LogLevel.ERROR]
        assert len(errors) == 1
        assert not store.locks.is_locked(("inventory", 1))
        assert not store.locks.is_locked(("order", order_id))

    async def test_conflict_is_not_retried(self, engine, store, monkeypatch):
        order_id = store.add_order(1, [(1, 1)])
        calls = []

        async def deadlocked(self, product_id):
            calls.append(product_id)
            raise DeadlockError("Deadlock found when trying to get lock")

        monkeypatch.setattr(MemoryInventory, "lock_and_read", deadlocked)

        result = await engine.cancel_order(order_id, "contention")

        assert result.error_kind == ErrorKind.CONFLICT
        assert calls == [1]
        assert store.orders[order_id].status == OrderStatus.PENDING

        # 呼び出し側が再度呼べば成功する
        monkeypatch.undo()
        retried = await engine.cancel_order(order_id, "contention")
        assert retried.success
        assert store.inventory[1] == 51
