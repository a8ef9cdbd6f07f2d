import time
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from bodega import config


def now_ms() -> int:
    return int(time.time() * 1000)


class PendingTransaction(BaseModel):
    """A transaction that could not reach the remote service yet."""
    model_config = ConfigDict(frozen=True)

    payload: dict[str, Any] # Opaque to the queue, forwarded as-is
    timestamp: int = Field(default_factory=now_ms)
    attempts: int = 0


class Product(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | int
    nombre: str = ""
    stock: int | float | str = 0

    @property
    def stock_count(self) -> int:
        try:
            return int(float(self.stock))
        except (TypeError, ValueError):
            return 0


class TransactionResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    status: str # "success", "offline" or whatever the remote answered
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @property
    def queued(self) -> bool:
        return self.status == "offline"


class DrainResult(BaseModel):
    sent: int = 0
    retained: int = 0
    dead_lettered: int = 0
    skipped: bool = False # Another drain was already in flight


class RetryPolicy(BaseModel):
    """How often the sync loop retries, and whether it ever gives up on an item."""

    interval: float = config.SYNC_INTERVAL
    max_attempts: int | None = config.SYNC_MAX_ATTEMPTS
    backoff_factor: float = config.SYNC_BACKOFF_FACTOR
    max_interval: float = config.SYNC_MAX_INTERVAL

    def delay(self, consecutive_failures: int = 0) -> float:
        if consecutive_failures <= 0 or self.backoff_factor <= 1.0:
            return self.interval
        return min(self.interval * self.backoff_factor ** consecutive_failures, self.max_interval)


class CartItem(BaseModel):
    id: str | int
    name: str
    type: Literal["IN", "OUT"]
    qty: int
    comment: str = ""
    price: str = ""
    timestamp: int = Field(default_factory=now_ms)

    def to_payload(self, user: str) -> dict[str, Any]:
        return {
            "action": self.type,
            "id": self.id,
            "quantity": self.qty,
            "user": user,
            "comment": self.comment or "",
            "price": self.price or "",
        }


class CartResult(BaseModel):
    success_count: int = 0
    queued_count: int = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors
