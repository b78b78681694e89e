from decimal import Decimal

import pytest

from app.audit import AuditEmitter, MemoryAuditSink
from app.engine import FulfillmentEngine
from app.memory_store import MemoryStore
from app.models import Product
from app.retry import RetryPolicy

LAPTOP = Product(id=1, name="Laptop Pro 15", price=Decimal("1299.99"), category="Electronics")
MOUSE = Product(id=2, name="Wireless Mouse", price=Decimal("29.99"), category="Electronics")
BOOK = Product(id=7, name="Python Programming Book", price=Decimal("45.00"), category="Books")
# 在庫レコードを持たない商品
UNSTOCKED = Product(id=99, name="Discontinued Item", price=Decimal("9.99"), category="Misc")


@pytest.fixture
def store() -> MemoryStore:
    store = MemoryStore(lock_timeout=0.5)
    store.add_customer(1, "John Smith")
    store.add_customer(2, "Sarah Johnson")
    store.add_product(LAPTOP, 50)
    store.add_product(MOUSE, 10)
    store.add_product(BOOK, 75)
    store.add_product(UNSTOCKED, None)
    return store


@pytest.fixture
def sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_retries=3, backoff=0)


@pytest.fixture
def engine(store, sink, policy) -> FulfillmentEngine:
    return FulfillmentEngine(store, AuditEmitter(sink), policy)
