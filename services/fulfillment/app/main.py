"""
Fulfillment Service - FastAPI エントリーポイント

注文作成 / キャンセルのコマンドと、注文・在庫の参照クエリを公開する。
エンジンは例外を返さないので、結果の ErrorKind を HTTP ステータスに対応付けて
結果オブジェクトをそのままレスポンスボディにする。

┌──────────┐  POST /commands/orders   ┌────────────────────┐
│  Client  │ ───────────────────────▶ │ FulfillmentEngine  │──▶ DB (行ロック)
└──────────┘                          └─────────┬──────────┘
                                                │ commit 後
                                      ┌─────────▼──────────┐
                                      │ 監査ログ / Redis    │
                                      └────────────────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import queries
from .audit import (
    AuditEmitter,
    FanoutAuditSink,
    MemoryAuditSink,
    RedisAuditSink,
    SqlAuditSink,
    run_redelivery,
)
from .config import Settings
from .engine import FulfillmentEngine
from .memory_store import MemoryStore
from .results import CancelOrderResult, CreateOrderResult, ErrorKind
from .retry import RetryPolicy
from .sql_store import SqlStore

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.NONE: 200,
    ErrorKind.ALREADY_CANCELLED: 200,
    ErrorKind.INVALID_ARGUMENT: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INSUFFICIENT_STOCK: 409,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.CONFLICT: 503,
    ErrorKind.RETRIES_EXHAUSTED: 503,
    ErrorKind.INVARIANT_VIOLATION: 500,
    ErrorKind.STORAGE_ERROR: 500,
}


@dataclass
class Runtime:
    engine: FulfillmentEngine
    redis: aioredis.Redis | None = None
    db_engine: AsyncEngine | None = None
    redelivery_interval: float = 30.0
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    redelivery_task: asyncio.Task | None = None

    def start(self) -> None:
        """未配信の監査レコードを再送するバックグラウンドタスクを開始する。"""
        self.redelivery_task = asyncio.create_task(
            run_redelivery(self.engine.emitter, self.redelivery_interval, self.shutdown_event)
        )

    async def close(self) -> None:
        self.shutdown_event.set()
        if self.redelivery_task is not None:
            self.redelivery_task.cancel()
            try:
                await self.redelivery_task
            except asyncio.CancelledError:
                pass
        if self.redis is not None:
            await self.redis.aclose()
        if self.db_engine is not None:
            await self.db_engine.dispose()


def build_runtime(settings: Settings) -> Runtime:
    redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    publisher = RedisAuditSink(redis, settings.audit_channel)
    db_engine = None

    if settings.store_backend == "memory":
        store = MemoryStore(lock_timeout=settings.lock_timeout)
        sink = FanoutAuditSink(MemoryAuditSink(), publisher)
    else:
        db_engine = create_async_engine(settings.database_url, echo=False)
        async_session = sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
        store = SqlStore(async_session, lock_timeout=settings.lock_timeout)
        sink = FanoutAuditSink(SqlAuditSink(async_session), publisher)

    engine = FulfillmentEngine(
        store,
        AuditEmitter(
            sink,
            attempts=settings.audit_attempts,
            max_pending=settings.audit_max_pending,
        ),
        RetryPolicy(max_retries=settings.max_retries, backoff=settings.retry_backoff),
    )
    logger.info(
        "Fulfillment engine ready: backend=%s max_retries=%d",
        settings.store_backend, settings.max_retries,
    )
    return Runtime(
        engine=engine,
        redis=redis,
        db_engine=db_engine,
        redelivery_interval=settings.audit_redelivery_interval,
    )


# ── Request Models ───────────────────────────────


class CreateOrderRequest(BaseModel):
    customer_id: int
    product_id: int
    quantity: int | None = None


class CancelOrderRequest(BaseModel):
    reason: str = ""


def get_engine(request: Request) -> FulfillmentEngine:
    return request.app.state.engine


def respond(result: CreateOrderResult | CancelOrderResult) -> JSONResponse:
    body = result.model_dump(mode="json")
    body["success"] = result.success
    return JSONResponse(status_code=STATUS_BY_KIND[result.error_kind], content=body)


def create_app(engine: FulfillmentEngine | None = None) -> FastAPI:
    """engine を渡さなければ起動時に環境変数から組み立てる。"""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """起動時に監査レコードの再送タスクを開始し、終了時に止める。"""
        if engine is not None:
            runtime = Runtime(engine=engine)
        else:
            runtime = build_runtime(Settings.from_env())
        app.state.engine = runtime.engine
        app.state.runtime = runtime
        runtime.start()
        try:
            yield
        finally:
            await runtime.close()

    app = FastAPI(title="Fulfillment Service", lifespan=lifespan)

    # ── Command Endpoints ────────────────────────

    @app.post("/commands/orders")
    async def cmd_create_order(
        req: CreateOrderRequest,
        engine: FulfillmentEngine = Depends(get_engine),
    ):
        """注文作成コマンド"""
        result = await engine.create_order(req.customer_id, req.product_id, req.quantity)
        return respond(result)

    @app.post("/commands/orders/{order_id}/cancel")
    async def cmd_cancel_order(
        order_id: int,
        req: CancelOrderRequest,
        engine: FulfillmentEngine = Depends(get_engine),
    ):
        """注文キャンセルコマンド (在庫を戻す補償トランザクション)"""
        result = await engine.cancel_order(order_id, req.reason)
        return respond(result)

    # ── Query Endpoints ──────────────────────────

    @app.get("/queries/orders/{order_id}")
    async def query_get_order(order_id: int, engine: FulfillmentEngine = Depends(get_engine)):
        order = await queries.get_order(engine.store, order_id)
        if not order:
            raise HTTPException(404, "Order not found")
        return order

    @app.get("/queries/inventory/{product_id}")
    async def query_get_inventory(
        product_id: int,
        engine: FulfillmentEngine = Depends(get_engine),
    ):
        level = await queries.get_inventory(engine.store, product_id)
        if not level:
            raise HTTPException(404, "Inventory not found")
        return level

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "fulfillment-service"}

    return app


app = create_app()
