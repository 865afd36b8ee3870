"""
Shared Pydantic Types

Actor identity, money helpers and the append-only status history entry used
by both the Order and Transaction aggregates.
"""
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Literal
from pydantic import BaseModel, Field

CENT = Decimal("0.01")

Currency = Literal["GHS", "USD", "EUR", "GBP"]


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_money(value) -> Decimal:
    """Quantize any numeric value to a 2-place decimal."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Decimal) -> int:
    """Convert a money value to integer cents for indexed storage."""
    return int(to_money(value) * 100)


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


class Actor(BaseModel):
    """Already-authenticated caller handed to the core by the auth collaborator."""
    user_id: str
    role: Literal["customer", "admin"] = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class StatusHistoryEntry(BaseModel):
    """One append-only entry in an aggregate's status log."""
    status: str
    timestamp: datetime = Field(default_factory=utcnow)
    note: Optional[str] = None
    actor: Optional[str] = None  # user id, None for system actions
