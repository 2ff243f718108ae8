"""End-to-end tests for payment notifications through the HTTP API."""

from __future__ import annotations

import logging
import sqlite3
import tempfile
import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest import mock

import httpx
from fastapi.testclient import TestClient

from conftest import WEBHOOK_SECRET, FakePanel, completed_event, make_user, sign
from gamehost.config import PanelSettings, Settings
from gamehost.database import Database
from gamehost.plans import Plan
from gamehost.pterodactyl import PterodactylClient, PterodactylRemoteError, PterodactylTimeoutError
from gamehost.service import build_webhook_processor, create_app
from gamehost.webhooks import FlowState


class PaymentWebhookTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        db_path = Path(self._tempdir.name) / "gamehost.sqlite3"
        self.database = Database(db_path)
        self.database.initialize()
        self.settings = Settings(
            database_path=db_path,
            jwt_secret="tests-jwt-secret",
            stripe_webhook_secret=WEBHOOK_SECRET,
            plan_prices={Plan.PLAN_2GB: "price_2gb", Plan.PLAN_4GB: "price_4gb"},
            panel=PanelSettings(base_url="https://panel.example.com", admin_key="ptla_test", egg_id=5),
        )
        self.user = make_user(self.database, 7)

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def _app(self, panel: FakePanel, settings: Settings | None = None):
        return create_app(
            settings=settings or self.settings,
            database=self.database,
            provisioning_client=panel,
        )

    def _deliver(self, client: TestClient, payload: bytes, signature: str | None = None):
        headers = {"Content-Type": "application/json"}
        header = sign(payload) if signature is None else signature
        if header:
            headers["Stripe-Signature"] = header
        return client.post("/api/webhook", content=payload, headers=headers)

    def test_completed_checkout_settles_and_provisions(self) -> None:
        panel = FakePanel()
        with TestClient(self._app(panel)) as client:
            response = self._deliver(client, completed_event())

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(
            response.json(),
            {"received": True, "state": FlowState.PROVISIONED.value},
        )

        payment = self.database.get_payment_by_reference("txn_001")
        self.assertIsNotNone(payment)
        self.assertEqual(payment.user_id, 7)
        self.assertEqual(payment.status, "paid")
        self.assertEqual(payment.amount, 500)

        server = self.database.get_server_for_payment(payment.id)
        self.assertIsNotNone(server)
        self.assertEqual(server.user_id, 7)
        self.assertEqual(server.plan, "plan_2gb")
        self.assertEqual(server.memory_mb, 2048)
        self.assertEqual(len(panel.calls), 1)

    def test_redelivery_is_acknowledged_without_side_effects(self) -> None:
        panel = FakePanel()
        payload = completed_event()
        with TestClient(self._app(panel)) as client:
            first = self._deliver(client, payload)
            second = self._deliver(client, payload)

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(
            second.json(),
            {"received": True, "state": FlowState.SETTLED.value, "duplicate": True},
        )
        self.assertEqual(self.database.count_payments(), 1)
        self.assertEqual(len(panel.calls), 1)
        self.assertEqual(len(self.database.list_servers_for_user(7)), 1)

    def test_unknown_plan_keeps_payment_and_raises_alert(self) -> None:
        panel = FakePanel()
        with self.assertLogs("gamehost.alerts", level=logging.ERROR) as logs:
            with TestClient(self._app(panel)) as client:
                response = self._deliver(client, completed_event(ref="txn_002", plan="plan_unknown"))

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["state"], FlowState.PROVISIONING_FAILED.value)
        payment = self.database.get_payment_by_reference("txn_002")
        self.assertIsNotNone(payment)
        self.assertIsNone(self.database.get_server_for_payment(payment.id))
        self.assertEqual(panel.calls, [])

        failures = self.database.list_provisioning_failures()
        self.assertEqual([failure.kind for failure in failures], ["configuration"])
        self.assertEqual(failures[0].payment_id, payment.id)
        self.assertTrue(any("txn_002" in line for line in logs.output))

    def test_panel_timeout_is_acknowledged_and_flagged(self) -> None:
        panel = FakePanel(PterodactylTimeoutError("slow"))
        with TestClient(self._app(panel)) as client:
            response = self._deliver(client, completed_event())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["state"], FlowState.PROVISIONING_FAILED.value)
        failures = self.database.list_provisioning_failures()
        self.assertEqual(len(failures), 1)
        self.assertTrue(failures[0].needs_audit)
        self.assertEqual(self.database.count_payments(), 1)

    def test_unreadable_panel_response_is_queued_not_lost(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(201, json={"attributes": {"id": 55, "limits": {"memory": "2G"}}})

        panel = PterodactylClient(
            "https://panel.example.com",
            "ptla_test",
            transport=httpx.MockTransport(handler),
        )
        payload = completed_event()
        with TestClient(self._app(panel)) as client:  # type: ignore[arg-type]
            first = self._deliver(client, payload)
            redelivery = self._deliver(client, payload)

        self.assertEqual(first.status_code, 200, first.text)
        self.assertEqual(first.json()["state"], FlowState.PROVISIONING_FAILED.value)
        self.assertEqual(redelivery.status_code, 200)
        self.assertTrue(redelivery.json()["duplicate"])

        failures = self.database.list_provisioning_failures()
        self.assertEqual(len(failures), 1)
        self.assertTrue(failures[0].needs_audit)
        self.assertEqual(self.database.count_payments(), 1)

    def test_failure_queue_outage_still_acknowledges(self) -> None:
        panel = FakePanel(PterodactylRemoteError("down"))
        outage = sqlite3.OperationalError("disk I/O error")
        with mock.patch.object(self.database, "record_provisioning_failure", side_effect=outage):
            with self.assertLogs("gamehost.alerts", level=logging.ERROR) as logs:
                with TestClient(self._app(panel)) as client:
                    response = self._deliver(client, completed_event(ref="txn_outage"))

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["state"], FlowState.PROVISIONING_FAILED.value)
        self.assertIsNotNone(self.database.get_payment_by_reference("txn_outage"))
        self.assertTrue(any("txn_outage" in line for line in logs.output))

    def test_tampered_payload_is_rejected(self) -> None:
        panel = FakePanel()
        original = completed_event()
        tampered = completed_event(amount=1)
        with TestClient(self._app(panel)) as client:
            response = self._deliver(client, tampered, sign(original))
            missing = self._deliver(client, original, "")

        self.assertEqual(response.status_code, 400)
        self.assertTrue(response.json()["detail"].startswith("Webhook Error:"))
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(self.database.count_payments(), 0)
        self.assertEqual(panel.calls, [])

    def test_malformed_but_signed_event_is_acknowledged(self) -> None:
        panel = FakePanel()
        with TestClient(self._app(panel)) as client:
            response = self._deliver(client, completed_event(user_id=None))

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["state"], FlowState.MALFORMED.value)
        self.assertEqual(self.database.count_payments(), 0)

    def test_out_of_range_user_id_is_acknowledged_as_malformed(self) -> None:
        with TestClient(self._app(FakePanel())) as client:
            response = self._deliver(client, completed_event(user_id="99999999999999999999999"))

        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["state"], FlowState.MALFORMED.value)
        self.assertEqual(self.database.count_payments(), 0)

    def test_other_event_types_are_ignored(self) -> None:
        payload = b'{"id": "evt_2", "type": "customer.created", "data": {"object": {}}}'
        with TestClient(self._app(FakePanel())) as client:
            response = self._deliver(client, payload)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["state"], FlowState.IGNORED.value)

    def test_missing_webhook_secret_disables_endpoint(self) -> None:
        settings = Settings(database_path=self.settings.database_path, jwt_secret="tests-jwt-secret")
        with TestClient(self._app(FakePanel(), settings)) as client:
            response = self._deliver(client, completed_event())

        self.assertEqual(response.status_code, 503)

    def test_concurrent_redeliveries_provision_once(self) -> None:
        panel = FakePanel()
        processor = build_webhook_processor(self.settings, self.database, panel)
        assert processor is not None
        payload = completed_event(ref="txn_concurrent")
        barrier = threading.Barrier(6)

        def deliver(_: int):
            barrier.wait()
            return processor.handle(payload, sign(payload))

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(deliver, range(6)))

        states = sorted(result.state.value for result in results)
        self.assertEqual(states.count(FlowState.PROVISIONED.value), 1)
        self.assertEqual(sum(1 for result in results if result.duplicate), 5)
        self.assertEqual(len(panel.calls), 1)
        self.assertEqual(self.database.count_payments(), 1)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
