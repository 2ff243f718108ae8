"""Idempotent settlement of verified payment events."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .database import Database
from .models import PaymentEvent, PaymentRecord

logger = logging.getLogger("gamehost.ledger")

PAYMENT_STATUS_PAID = "paid"


class SettlementOutcome(str, Enum):
    NEWLY_SETTLED = "newly_settled"
    ALREADY_SETTLED = "already_settled"


@dataclass(frozen=True)
class SettlementResult:
    outcome: SettlementOutcome
    record: PaymentRecord

    @property
    def is_new(self) -> bool:
        return self.outcome is SettlementOutcome.NEWLY_SETTLED


class SettlementLedger:
    """Persist exactly one :class:`PaymentRecord` per transaction reference."""

    def __init__(self, database: Database) -> None:
        self._database = database

    def settle(self, event: PaymentEvent) -> SettlementResult:
        """Record ``event`` unless its transaction reference was already settled.

        Redelivered events are reported as ``ALREADY_SETTLED`` rather than
        raising. Only a fresh insert yields ``NEWLY_SETTLED``.
        """

        record, created = self._database.insert_payment_if_absent(
            user_id=event.user_id,
            transaction_ref=event.transaction_ref,
            event_id=event.event_id,
            amount=event.amount,
            currency=event.currency,
            status=PAYMENT_STATUS_PAID,
        )

        if not created:
            logger.info(
                "Payment %s already settled as record %s; ignoring duplicate event %s",
                event.transaction_ref,
                record.id,
                event.event_id,
            )
            return SettlementResult(SettlementOutcome.ALREADY_SETTLED, record)

        logger.info(
            "Settled payment %s for user %s (%s %s) as record %s",
            event.transaction_ref,
            event.user_id,
            event.amount,
            event.currency,
            record.id,
        )
        return SettlementResult(SettlementOutcome.NEWLY_SETTLED, record)


__all__ = [
    "PAYMENT_STATUS_PAID",
    "SettlementLedger",
    "SettlementOutcome",
    "SettlementResult",
]
