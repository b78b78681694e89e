"""
Fulfillment Service - 設定

環境変数から Settings を組み立てる。不正な値は起動時に ValidationError になる。
"""

import os
from typing import Literal, Mapping

from pydantic import BaseModel, Field, model_validator

# 環境変数名 → フィールド名
ENV_VARS = {
    "DATABASE_URL": "database_url",
    "REDIS_URL": "redis_url",
    "STORE_BACKEND": "store_backend",
    "MAX_RETRIES": "max_retries",
    "RETRY_BACKOFF_SECONDS": "retry_backoff",
    "LOCK_TIMEOUT_SECONDS": "lock_timeout",
    "AUDIT_DELIVERY_ATTEMPTS": "audit_attempts",
    "AUDIT_CHANNEL": "audit_channel",
    "AUDIT_REDELIVERY_INTERVAL_SECONDS": "audit_redelivery_interval",
    "AUDIT_MAX_PENDING": "audit_max_pending",
}


class Settings(BaseModel):
    database_url: str | None = None
    redis_url: str = "redis://localhost:6379"
    store_backend: Literal["sql", "memory"] = "sql"
    max_retries: int = Field(default=3, ge=0)
    retry_backoff: float = Field(default=0.1, ge=0)
    lock_timeout: float = Field(default=5.0, gt=0)
    audit_attempts: int = Field(default=3, ge=1)
    audit_channel: str = "fulfillment_events"
    audit_redelivery_interval: float = Field(default=30.0, gt=0)
    audit_max_pending: int = Field(default=10_000, ge=1)

    @model_validator(mode="after")
    def _require_database_url(self) -> "Settings":
        if self.store_backend == "sql" and not self.database_url:
            raise ValueError("DATABASE_URL is required for the sql store backend")
        return self

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(**{field: env[var] for var, field in ENV_VARS.items() if var in env})
