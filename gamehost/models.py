"""Domain models persisted by the hosting backend."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class User:
    """Represents a customer account stored in the credential store."""

    id: int
    email: str
    billing_customer_id: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class PaymentEvent:
    """A verified, normalised payment notification from the gateway."""

    event_id: str
    event_type: str
    transaction_ref: str
    amount: Optional[int]
    currency: str
    user_id: int
    plan_id: str


@dataclass(frozen=True)
class PaymentRecord:
    """Ledger entry for a settled payment. Never mutated after creation."""

    id: int
    user_id: int
    transaction_ref: str
    event_id: Optional[str]
    amount: Optional[int]
    currency: str
    status: str
    created_at: datetime


@dataclass(frozen=True)
class ProvisionedServer:
    """A game server created on the control panel for a settled payment."""

    id: int
    user_id: int
    payment_id: int
    external_id: str
    name: str
    plan: str
    memory_mb: int
    slots: int
    status: str
    created_at: datetime


@dataclass(frozen=True)
class ProvisioningFailureRecord:
    """Operational record of a provisioning attempt that did not complete."""

    id: int
    payment_id: int
    user_id: int
    plan: str
    kind: str
    message: str
    needs_audit: bool
    created_at: datetime
    resolved_at: Optional[datetime] = None

    @property
    def resolved(self) -> bool:
        return self.resolved_at is not None


__all__ = [
    "PaymentEvent",
    "PaymentRecord",
    "ProvisionedServer",
    "ProvisioningFailureRecord",
    "User",
]
