"""リトライ / 競合ポリシーと、CreateOrder の試行ループ。"""

import pytest

from app.events import LogLevel, OrderAudit, SystemEvent
from app.exceptions import (
    DeadlockError,
    InsufficientStockError,
    InvariantViolationError,
    LockTimeoutError,
)
from app.memory_store import MemoryInventory
from app.results import ErrorKind
from app.retry import Fatal, Retryable, RetryPolicy


class TestRetryPolicy:
    def test_attempts_are_bounded_by_max_retries(self):
        assert list(RetryPolicy(max_retries=3).attempts()) == [1, 2, 3, 4]
        assert list(RetryPolicy(max_retries=0).attempts()) == [1]

    def test_only_conflicts_are_retryable(self):
        policy = RetryPolicy()

        assert isinstance(policy.classify(LockTimeoutError("timeout")), Retryable)
        assert isinstance(policy.classify(DeadlockError("deadlock")), Retryable)
        assert isinstance(policy.classify(InsufficientStockError(1, 5, 2)), Fatal)
        assert isinstance(policy.classify(InvariantViolationError("bad")), Fatal)
        assert isinstance(policy.classify(RuntimeError("boom")), Fatal)

    @pytest.mark.parametrize("kwargs", [{"max_retries": -1}, {"backoff": -0.5}])
    def test_rejects_negative_settings(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)

    async def test_wait_sleeps_between_attempts_only(self, monkeypatch):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        monkeypatch.setattr("app.retry.asyncio.sleep", fake_sleep)
        policy = RetryPolicy(max_retries=2, backoff=0.1)

        for attempt in policy.attempts():
            await policy.wait(attempt)

        assert sleeps == [0.1, 0.1]


def conflict_on_first(count, exc_type=LockTimeoutError):
    """最初の count 回の在庫ロックで競合を起こす lock_and_read を返す。"""
    original = MemoryInventory.lock_and_read
    calls = []

    async def lock_and_read(self, product_id):
        calls.append(product_id)
        if len(calls) <= count:
            raise exc_type(f"forced conflict #{len(calls)}")
        return await original(self, product_id)

    return lock_and_read, calls


class TestCreateOrderRetry:
    async def test_conflicts_then_success_matches_immediate_success(
        self, engine, store, sink, monkeypatch
    ):
        flaky, calls = conflict_on_first(2)
        monkeypatch.setattr(MemoryInventory, "lock_and_read", flaky)

        result = await engine.create_order(1, 1, 5)

        assert result.success
        assert result.attempts == 3
        assert len(calls) == 3
        assert len(store.orders) == 1
        assert len(store.order_lines) == 1
        assert store.inventory[1] == 45

        warnings = [e for e in sink.of_type(SystemEvent) if e.level == LogLevel.WARNING]
        assert [w.message.split(" after")[0] for w in warnings] == ["Retry 1", "Retry 2"]
        audits = sink.of_type(OrderAudit)
        assert len(audits) == 1 and audits[0].success

    async def test_aborted_attempts_leave_no_order_ids_behind(self, engine, store, monkeypatch):
        original = MemoryInventory.read
        reads = []

        # 1 回目の試行は注文行作成後 (検証の読み込み) に競合で中断させる
        async def read(self, product_id):
            reads.append(product_id)
            if len(reads) == 1:
                raise DeadlockError("Deadlock found when trying to get lock")
            return await original(self, product_id)

        monkeypatch.setattr(MemoryInventory, "read", read)

        result = await engine.create_order(1, 2, 2)

        assert result.success
        assert list(store.orders) == [result.order_id]
        assert store.inventory[2] == 8

    async def test_sustained_conflict_exhausts_retries(self, engine, store, sink, monkeypatch):
        always, calls = conflict_on_first(100, DeadlockError)
        monkeypatch.setattr(MemoryInventory, "lock_and_read", always)

        result = await engine.create_order(1, 1, 5)

        assert not result.success
        assert result.error_kind == ErrorKind.RETRIES_EXHAUSTED
        assert result.message == "Error: Order failed after 3 retry attempts"
        assert result.order_id is None
        assert result.attempts == 4
        assert len(calls) == 4
        assert store.orders == {}
        assert store.inventory[1] == 50

        audits = sink.of_type(OrderAudit)
        assert len(audits) == 1
        assert not audits[0].success
        levels = [e.level for e in sink.of_type(SystemEvent)]
        assert levels.count(LogLevel.WARNING) == 4
        assert levels[-1] == LogLevel.ERROR

    async def test_other_storage_errors_are_fatal_immediately(
        self, engine, store, sink, monkeypatch
    ):
        calls = []

        async def broken(self, product_id):
            calls.append(product_id)
            raise ConnectionResetError("connection reset by peer")

        monkeypatch.setattr(MemoryInventory, "lock_and_read", broken)

        result = await engine.create_order(1, 1, 1)

        assert result.error_kind == ErrorKind.STORAGE_ERROR
        assert result.message == "Error: Transaction failed - connection reset by peer"
        assert len(calls) == 1
        audits = sink.of_type(OrderAudit)
        assert len(audits) == 1
        assert audits[0].error_msg == "Error after 0 retries: connection reset by peer"
        assert [e.level for e in sink.of_type(SystemEvent)] == [LogLevel.ERROR]

    async def test_invariant_violation_is_never_retried(self, engine, store, monkeypatch):
        calls = []

        async def drifting_read(self, product_id):
            calls.append(product_id)
            return -1

        monkeypatch.setattr(MemoryInventory, "read", drifting_read)

        result = await engine.create_order(1, 1, 2)

        assert result.error_kind == ErrorKind.INVARIANT_VIOLATION
        assert result.message == "Error: Inventory update failed verification"
        assert len(calls) == 1
        assert store.orders == {}
        assert store.inventory[1] == 50

    async def test_zero_retries_means_single_attempt(self, store, sink, monkeypatch):
        from app.audit import AuditEmitter
        from app.engine import FulfillmentEngine

        engine = FulfillmentEngine(store, AuditEmitter(sink), RetryPolicy(max_retries=0, backoff=0))
        flaky, calls = conflict_on_first(1)
        monkeypatch.setattr(MemoryInventory, "lock_and_read", flaky)

        result = await engine.create_order(1, 1, 1)

        assert result.error_kind == ErrorKind.RETRIES_EXHAUSTED
        assert len(calls) == 1
