"""Drive a single payment notification from intake to provisioning."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .intake import AuthenticationFailure, EventIntake, MalformedEventFailure
from .ledger import SettlementLedger
from .models import PaymentRecord, ProvisionedServer
from .orchestrator import ProvisioningOrchestrator

logger = logging.getLogger("gamehost.webhooks")
alerts = logging.getLogger("gamehost.alerts")


class FlowState(str, Enum):
    RECEIVED = "received"
    VERIFIED = "verified"
    SETTLED = "settled"
    PROVISIONED = "provisioned"
    PROVISIONING_FAILED = "provisioning_failed"
    # Acknowledged without reaching the ledger.
    IGNORED = "ignored"
    MALFORMED = "malformed"


@dataclass(frozen=True)
class WebhookResult:
    state: FlowState
    duplicate: bool = False
    payment: Optional[PaymentRecord] = None
    server: Optional[ProvisionedServer] = None

    def to_ack(self) -> Dict[str, Any]:
        body = {"received": True, "state": self.state.value}
        if self.duplicate:
            body["duplicate"] = True
        return body


class PaymentWebhookProcessor:
    """Verify, settle and provision for one delivery.

    Only :class:`AuthenticationFailure` escapes; every later outcome is
    acknowledged so the gateway stops redelivering.
    """

    def __init__(
        self,
        intake: EventIntake,
        ledger: SettlementLedger,
        orchestrator: ProvisioningOrchestrator,
    ) -> None:
        self._intake = intake
        self._ledger = ledger
        self._orchestrator = orchestrator

    def handle(self, payload: bytes, signature: str | None) -> WebhookResult:
        try:
            event = self._intake.verify(payload, signature)
        except AuthenticationFailure as exc:
            logger.warning("Rejected payment notification: %s", exc)
            raise
        except MalformedEventFailure as exc:
            alerts.error("Acknowledged malformed payment notification: %s", exc)
            return WebhookResult(FlowState.MALFORMED)

        if event is None:
            return WebhookResult(FlowState.IGNORED)

        logger.info(
            "Verified payment event %s for transaction %s",
            event.event_id,
            event.transaction_ref,
        )

        settlement = self._ledger.settle(event)
        if not settlement.is_new:
            return WebhookResult(FlowState.SETTLED, duplicate=True, payment=settlement.record)

        try:
            outcome = self._orchestrator.provision(settlement.record, event.plan_id)
        except Exception:
            # Settled but not queued for follow-up; the alert is the only trace.
            alerts.exception(
                "Provisioning for settled payment %s (user %s, plan %s) could not be recorded",
                settlement.record.transaction_ref,
                settlement.record.user_id,
                event.plan_id,
            )
            return WebhookResult(FlowState.PROVISIONING_FAILED, payment=settlement.record)

        if outcome.succeeded:
            return WebhookResult(
                FlowState.PROVISIONED,
                payment=settlement.record,
                server=outcome.server,
            )
        return WebhookResult(FlowState.PROVISIONING_FAILED, payment=settlement.record)


__all__ = ["FlowState", "PaymentWebhookProcessor", "WebhookResult"]
