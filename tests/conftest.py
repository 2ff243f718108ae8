from __future__ import annotations

import hashlib
import hmac
import json
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from gamehost.config import PanelSettings, Settings  # noqa: E402
from gamehost.database import Database  # noqa: E402
from gamehost.models import User  # noqa: E402
from gamehost.plans import Plan  # noqa: E402
from gamehost.pterodactyl import CreatedInstance  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a ``Stripe-Signature`` header for ``payload``."""

    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(
        secret.encode("utf-8"),
        f"{ts}.".encode("utf-8") + payload,
        hashlib.sha256,
    ).hexdigest()
    return f"t={ts},v1={digest}"


def completed_event(
    *,
    ref: Optional[str] = "txn_001",
    user_id: object = 7,
    plan: object = "plan_2gb",
    amount: Optional[int] = 500,
    currency: str = "usd",
    event_id: str = "evt_001",
    session_id: str = "cs_test_001",
) -> bytes:
    metadata: Dict[str, Any] = {}
    if user_id is not None:
        metadata["userId"] = user_id
    if plan is not None:
        metadata["plan"] = plan
    body = {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": session_id,
                "payment_intent": ref,
                "amount_total": amount,
                "currency": currency,
                "metadata": metadata,
            }
        },
    }
    return json.dumps(body).encode("utf-8")


def make_user(database: Database, user_id: int) -> User:
    """Create accounts until one with ``user_id`` exists and return it."""

    user = database.get_user(user_id)
    counter = 0
    while user is None:
        counter += 1
        created = database.create_user(f"customer{user_id}-{counter}@example.com", "CorrectHorse42!")
        if created.id > user_id:
            raise AssertionError(f"User id {user_id} was skipped")
        user = database.get_user(user_id)
    return user


class FakePanel:
    """Stand-in provisioning client recording create requests."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def create_instance(self, payload: Dict[str, Any]) -> CreatedInstance:
        with self._lock:
            self.calls.append(payload)
            call_number = len(self.calls)
        if self.error is not None:
            raise self.error
        return CreatedInstance(
            external_id=str(100 + call_number),
            identifier=f"ab{call_number:06d}",
            name=payload["name"],
            memory_mb=payload["limits"]["memory"],
            attributes={"id": 100 + call_number},
        )


class FakeBilling:
    """Stand-in payment gateway for checkout tests."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.customers: List[str] = []
        self.sessions: List[Dict[str, Any]] = []

    def create_customer(self, email: str) -> str:
        if self.error is not None:
            raise self.error
        self.customers.append(email)
        return f"cus_{len(self.customers)}"

    def create_checkout_session(self, **kwargs: Any) -> str:
        if self.error is not None:
            raise self.error
        self.sessions.append(kwargs)
        return f"https://checkout.stripe.test/session/{len(self.sessions)}"


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "gamehost.sqlite3")
    db.initialize()
    return db


@pytest.fixture()
def panel_settings() -> PanelSettings:
    return PanelSettings(base_url="https://panel.example.com", admin_key="ptla_test", egg_id=5)


@pytest.fixture()
def settings(tmp_path: Path, panel_settings: PanelSettings) -> Settings:
    return Settings(
        database_path=tmp_path / "gamehost.sqlite3",
        jwt_secret="tests-jwt-secret",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        plan_prices={Plan.PLAN_2GB: "price_2gb", Plan.PLAN_4GB: "price_4gb"},
        panel=panel_settings,
        frontend_url="https://play.example.com",
    )
