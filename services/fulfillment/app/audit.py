"""
Fulfillment Service - 監査ログ出力

監査レコードは業務トランザクションが確定 (commit / rollback) した後に出力する。
監査の書き込み失敗が在庫や注文の状態を壊したり、処理を止めたりしてはならない。

AuditEmitter は各レコードを最大 attempts 回まで再送する (at-least-once)。
それでも失敗したレコードは undelivered に残り、次の emit() の前と
run_redelivery() の定期実行で先頭から再送される。キューは max_pending 件で古いものから捨てる。

シンク:
    SqlAuditSink     : system_log / order_audit_log / inventory_change_log へ INSERT
    RedisAuditSink   : Redis Pub/Sub に JSON で発行 (他サービスへの通知)
    MemoryAuditSink  : リストに保持 (テスト・開発用)
    FanoutAuditSink  : 複数シンクへ配信
"""

import asyncio
import json
import logging
from typing import Iterable, Protocol, TypeVar

import redis.asyncio as aioredis
from sqlalchemy import insert
from sqlalchemy.orm import sessionmaker

from .events import AuditRecord, InventoryChange, OrderAudit, SystemEvent
from .schema import inventory_change_log, order_audit_log, system_log

logger = logging.getLogger(__name__)

R = TypeVar("R", SystemEvent, OrderAudit, InventoryChange)


class AuditSink(Protocol):
    async def append(self, record: AuditRecord) -> None: ...


class MemoryAuditSink:
    def __init__(self) -> None:
        self.records: list[AuditRecord] = []

    async def append(self, record: AuditRecord) -> None:
        self.records.append(record)

    def of_type(self, record_type: type[R]) -> list[R]:
        return [r for r in self.records if isinstance(r, record_type)]

    def clear(self) -> None:
        self.records.clear()


class SqlAuditSink:
    """業務トランザクションとは別のセッションで 1 レコードずつコミットする。"""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def append(self, record: AuditRecord) -> None:
        async with self._session_factory() as session:
            await session.execute(self._insert_for(record))
            await session.commit()

    @staticmethod
    def _insert_for(record: AuditRecord):
        if isinstance(record, SystemEvent):
            return insert(system_log).values(
                log_time=record.timestamp,
                log_level=record.level.value,
                category=record.category,
                message=record.message,
                table_name=record.table_name,
                record_id=record.record_id,
            )
        if isinstance(record, OrderAudit):
            return insert(order_audit_log).values(
                log_time=record.timestamp,
                order_id=record.order_id,
                customer_id=record.customer_id,
                product_id=record.product_id,
                action=record.action.value,
                quantity=record.quantity,
                success=record.success,
                error_msg=record.error_msg,
                inventory_before=record.inventory_before,
                inventory_after=record.inventory_after,
                processing_time_ms=record.processing_time_ms,
            )
        if isinstance(record, InventoryChange):
            return insert(inventory_change_log).values(
                log_time=record.timestamp,
                product_id=record.product_id,
                change_type=record.change_type.value,
                old_qty=record.old_qty,
                new_qty=record.new_qty,
                quantity_changed=record.quantity_changed,
                order_id=record.order_id,
                reason=record.reason[:255],
            )
        raise TypeError(f"Unknown audit record: {type(record).__name__}")


class RedisAuditSink:
    def __init__(self, redis: aioredis.Redis, channel: str = "fulfillment_events") -> None:
        self._redis = redis
        self.channel = channel

    async def append(self, record: AuditRecord) -> None:
        await self._redis.publish(
            self.channel,
            json.dumps(
                {
                    "event_type": record.record_type,
                    "data": record.model_dump(mode="json"),
                },
                default=str,
            ),
        )


class FanoutAuditSink:
    """1 つでも失敗すればレコード全体を失敗として扱う (再送で重複しうる)。"""

    def __init__(self, *sinks: AuditSink) -> None:
        self.sinks = list(sinks)

    async def append(self, record: AuditRecord) -> None:
        for sink in self.sinks:
            await sink.append(record)


class AuditEmitter:
    def __init__(self, sink: AuditSink, attempts: int = 3, max_pending: int = 10_000) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        if max_pending < 1:
            raise ValueError("max_pending must be >= 1")
        self.sink = sink
        self.attempts = attempts
        self.max_pending = max_pending
        self.undelivered: list[AuditRecord] = []
        self._flush_lock = asyncio.Lock()

    async def emit(self, records: Iterable[AuditRecord]) -> int:
        """
        未配信分を先に再送してから、発行順に配信する。
        配信できた件数 (再送分を含む) を返す。例外は送出しない。
        """
        delivered = await self.redeliver()
        for record in records:
            if await self._deliver(record):
                delivered += 1
            else:
                self._keep(record)
        return delivered

    async def redeliver(self) -> int:
        """未配信キューを先頭から再送する。失敗した時点で止め、残りはキューに残す。"""
        async with self._flush_lock:
            delivered = 0
            while self.undelivered:
                if not await self._deliver(self.undelivered[0]):
                    break
                self.undelivered.pop(0)
                delivered += 1
            if delivered:
                logger.info(
                    "Redelivered %d audit records (%d pending)",
                    delivered, len(self.undelivered),
                )
            return delivered

    def _keep(self, record: AuditRecord) -> None:
        self.undelivered.append(record)
        if len(self.undelivered) > self.max_pending:
            dropped = self.undelivered.pop(0)
            logger.error(
                "Audit redelivery queue full (%d), dropped oldest %s",
                self.max_pending, dropped.record_type,
            )
        logger.error(
            "Audit record kept for redelivery: %s (%d pending)",
            record.record_type, len(self.undelivered),
        )

    async def _deliver(self, record: AuditRecord) -> bool:
        for attempt in range(1, self.attempts + 1):
            try:
                await self.sink.append(record)
                return True
            except Exception:
                logger.warning(
                    "Audit delivery failed (%s, attempt %d/%d)",
                    record.record_type,
                    attempt,
                    self.attempts,
                    exc_info=True,
                )
        return False


async def run_redelivery(
    emitter: AuditEmitter,
    interval: float,
    shutdown_event: asyncio.Event,
) -> None:
    """shutdown_event がセットされるまで interval 秒ごとに未配信レコードを再送する。"""
    logger.info("Audit redelivery started (every %.1fs)", interval)
    while not shutdown_event.is_set():
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
        if emitter.undelivered:
            await emitter.redeliver()
    logger.info("Audit redelivery stopped")
