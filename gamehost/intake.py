"""Verification and normalisation of inbound payment notifications."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import stripe

from .models import PaymentEvent

logger = logging.getLogger("gamehost.intake")

PAYMENT_COMPLETED = "checkout.session.completed"
DEFAULT_TOLERANCE = 300
# Largest value a SQLite INTEGER column can hold.
MAX_SQLITE_INTEGER = 2**63 - 1


class AuthenticationFailure(Exception):
    """The notification could not be authenticated against its signature."""


class MalformedEventFailure(Exception):
    """A correctly signed notification could not be interpreted."""


def _require_mapping(value: object, what: str) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise MalformedEventFailure(f"{what} must be a JSON object")
    return value


def _parse_user_id(value: object) -> int:
    if isinstance(value, bool):
        raise MalformedEventFailure("metadata.userId must be an integer")
    if isinstance(value, int):
        user_id = value
    elif isinstance(value, str) and value.strip().isdecimal():
        user_id = int(value.strip())
    else:
        raise MalformedEventFailure("metadata.userId must be an integer")
    if not 1 <= user_id <= MAX_SQLITE_INTEGER:
        raise MalformedEventFailure(f"metadata.userId {user_id} is out of range")
    return user_id


def _parse_amount(value: object) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedEventFailure("amount_total must be an integer number of minor units")
    if not 0 <= value <= MAX_SQLITE_INTEGER:
        raise MalformedEventFailure(f"amount_total {value} is out of range")
    return value


class EventIntake:
    """Authenticate raw webhook deliveries and extract a :class:`PaymentEvent`.

    Signatures follow the gateway's ``t=<timestamp>,v1=<hex>`` scheme: an
    HMAC-SHA256 over ``"<timestamp>." + payload`` keyed with the shared secret
    and compared in constant time. Nothing is parsed until the signature
    matches. This component never touches the ledger.
    """

    def __init__(self, secret: str, *, tolerance: int = DEFAULT_TOLERANCE) -> None:
        if not secret:
            raise ValueError("Webhook signing secret must not be empty")
        self._secret = secret
        self._tolerance = tolerance

    def authenticate(self, payload: bytes, signature: str | None) -> str:
        """Return the payload text once its signature has been verified."""

        if not signature:
            raise AuthenticationFailure("Missing signature header")
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise AuthenticationFailure(
                "Payload is undecodable as UTF-8 and cannot be checked against its signature"
            ) from exc

        try:
            stripe.WebhookSignature.verify_header(
                text,
                signature,
                self._secret,
                tolerance=self._tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            raise AuthenticationFailure(str(exc)) from exc
        return text

    def verify(self, payload: bytes, signature: str | None) -> Optional[PaymentEvent]:
        """Verify a delivery and return the normalised payment event.

        Returns ``None`` for authentic events of types other than a completed
        checkout, which are acknowledged without further processing.
        """

        text = self.authenticate(payload, signature)
        return parse_event(text)


def parse_event(text: str) -> Optional[PaymentEvent]:
    try:
        raw = json.loads(text)
    except ValueError as exc:
        raise MalformedEventFailure(f"Payload is not valid JSON: {exc}") from exc

    envelope = _require_mapping(raw, "Event")
    event_id = envelope.get("id")
    event_type = envelope.get("type")
    if not isinstance(event_id, str) or not event_id:
        raise MalformedEventFailure("Event is missing its id")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEventFailure("Event is missing its type")

    if event_type != PAYMENT_COMPLETED:
        logger.info("Ignoring %s event %s", event_type, event_id)
        return None

    data = _require_mapping(envelope.get("data"), "Event data")
    session = _require_mapping(data.get("object"), "Event data.object")
    metadata = _require_mapping(session.get("metadata") or {}, "Session metadata")

    transaction_ref = session.get("payment_intent") or session.get("id")
    if not isinstance(transaction_ref, str) or not transaction_ref:
        raise MalformedEventFailure("Session has no transaction reference")

    if "userId" not in metadata:
        raise MalformedEventFailure("Session metadata is missing userId")
    user_id = _parse_user_id(metadata.get("userId"))

    plan_id = metadata.get("plan")
    if not isinstance(plan_id, str) or not plan_id.strip():
        raise MalformedEventFailure("Session metadata is missing plan")

    currency = session.get("currency") or "usd"
    if not isinstance(currency, str):
        raise MalformedEventFailure("currency must be a string")

    return PaymentEvent(
        event_id=event_id,
        event_type=event_type,
        transaction_ref=transaction_ref,
        amount=_parse_amount(session.get("amount_total")),
        currency=currency.lower(),
        user_id=user_id,
        plan_id=plan_id.strip(),
    )


__all__ = [
    "AuthenticationFailure",
    "EventIntake",
    "MalformedEventFailure",
    "PAYMENT_COMPLETED",
    "parse_event",
]
