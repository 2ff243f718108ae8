"""Turn settled payments into game servers on the control panel."""
from __future__ import annotations

import logging
import secrets
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from .config import PanelSettings
from .database import Database
from .models import PaymentRecord, ProvisionedServer, ProvisioningFailureRecord, User
from .plans import ConfigurationFailure, PlanResources, plan_resources, resolve_plan
from .pterodactyl import CreatedInstance, PterodactylError, PterodactylTimeoutError

logger = logging.getLogger("gamehost.orchestrator")
alerts = logging.getLogger("gamehost.alerts")

SERVER_STATUS_RUNNING = "running"


class ProvisioningClient(Protocol):
    def create_instance(self, payload: Dict[str, Any]) -> CreatedInstance:
        ...


class DataIntegrityFailure(LookupError):
    """A settled payment references a user that does not exist."""


class ProvisioningFailure(RuntimeError):
    """The control panel did not create the server."""

    def __init__(self, message: str, *, kind: str, needs_audit: bool = False) -> None:
        super().__init__(message)
        self.kind = kind
        self.needs_audit = needs_audit


@dataclass(frozen=True)
class ProvisioningOutcome:
    server: Optional[ProvisionedServer] = None
    failure: Optional[ProvisioningFailureRecord] = None

    @property
    def succeeded(self) -> bool:
        return self.server is not None


def build_instance_name(user_id: int, payment_id: int) -> str:
    """Return a panel server name that is unique per attempt."""

    return f"mc-{user_id}-{payment_id}-{secrets.token_hex(4)}"


def build_create_payload(
    *,
    name: str,
    resources: PlanResources,
    panel: PanelSettings,
    payment: PaymentRecord,
    user: User,
) -> Dict[str, Any]:
    """Assemble the panel's create-server request for a plan."""

    return {
        "name": name,
        "description": f"Provisioned for {user.email} (payment {payment.transaction_ref})",
        "external_id": f"payment-{payment.id}",
        "user": panel.owner_id,
        "egg": panel.egg_id,
        "docker_image": panel.docker_image,
        "startup": panel.startup,
        "environment": dict(panel.environment),
        "limits": {
            "memory": resources.memory_mb,
            "swap": resources.swap_mb,
            "disk": resources.disk_mb,
            "io": resources.io,
            "cpu": resources.cpu,
        },
        "feature_limits": {
            "databases": resources.databases,
            "allocations": resources.allocations,
        },
        "deploy": {
            "locations": list(panel.location_ids),
            "dedicated_ip": False,
            "port_range": [],
        },
        "start_on_completion": True,
    }


class ProvisioningOrchestrator:
    """Provision one server per newly settled payment.

    Every failure after settlement is recorded in the follow-up queue and
    logged on the ``gamehost.alerts`` logger. The payment record itself is
    never modified, and nothing is retried automatically.
    """

    def __init__(
        self,
        database: Database,
        client: ProvisioningClient | None,
        panel: PanelSettings,
    ) -> None:
        self._database = database
        self._client = client
        self._panel = panel

    def provision(self, payment: PaymentRecord, plan_id: str) -> ProvisioningOutcome:
        try:
            server = self._create_server(payment, plan_id)
        except ConfigurationFailure as exc:
            return self._fail(payment, plan_id, kind="configuration", message=str(exc))
        except DataIntegrityFailure as exc:
            return self._fail(payment, plan_id, kind="data_integrity", message=str(exc))
        except ProvisioningFailure as exc:
            return self._fail(
                payment,
                plan_id,
                kind=exc.kind,
                message=str(exc),
                needs_audit=exc.needs_audit,
            )
        except Exception as exc:
            alerts.exception("Unexpected error provisioning payment %s", payment.transaction_ref)
            return self._fail(
                payment,
                plan_id,
                kind="internal",
                message=f"Unexpected error: {exc!r}",
                needs_audit=True,
            )
        return ProvisioningOutcome(server=server)

    def retry(self, failure_id: int) -> ProvisioningOutcome:
        """Re-attempt provisioning for an unresolved follow-up entry."""

        failure = self._database.get_provisioning_failure(failure_id)
        if failure is None:
            raise KeyError(f"Provisioning failure {failure_id} not found")
        if failure.resolved:
            raise ValueError(f"Provisioning failure {failure_id} is already resolved")

        payment = self._database.get_payment(failure.payment_id)
        if payment is None:
            raise DataIntegrityFailure(
                f"Payment {failure.payment_id} for provisioning failure {failure_id} is missing"
            )

        existing = self._database.get_server_for_payment(payment.id)
        if existing is not None:
            logger.info(
                "Payment %s already has server %s; resolving failure %s",
                payment.id,
                existing.external_id,
                failure_id,
            )
            self._database.resolve_provisioning_failure(failure_id)
            return ProvisioningOutcome(server=existing)

        outcome = self.provision(payment, failure.plan)
        if outcome.succeeded:
            self._database.resolve_provisioning_failure(failure_id)
            logger.info("Provisioning failure %s resolved by retry", failure_id)
        return outcome

    def _create_server(self, payment: PaymentRecord, plan_id: str) -> ProvisionedServer:
        plan = resolve_plan(plan_id)
        resources = plan_resources(plan)

        user = self._database.get_user(payment.user_id)
        if user is None:
            raise DataIntegrityFailure(
                f"User {payment.user_id} referenced by payment {payment.transaction_ref} does not exist"
            )

        name = build_instance_name(user.id, payment.id)
        payload = build_create_payload(
            name=name,
            resources=resources,
            panel=self._panel,
            payment=payment,
            user=user,
        )

        instance = self._call_panel(payload)
        try:
            server = self._database.create_server(
                user_id=user.id,
                payment_id=payment.id,
                external_id=instance.external_id,
                name=instance.name or name,
                plan=plan.value,
                memory_mb=resources.memory_mb,
                slots=resources.slots,
                status=SERVER_STATUS_RUNNING,
            )
        except sqlite3.DatabaseError as exc:
            raise ProvisioningFailure(
                f"Panel created server {instance.external_id} but it could not be recorded: {exc}",
                kind="internal",
                needs_audit=True,
            ) from exc
        logger.info(
            "Provisioned server %s (%s) for user %s on plan %s",
            server.external_id,
            server.name,
            user.id,
            plan.value,
        )
        return server

    def _call_panel(self, payload: Dict[str, Any]) -> CreatedInstance:
        client = self._client
        if client is None:
            raise ProvisioningFailure("Provisioning panel is not configured", kind="configuration")
        try:
            return client.create_instance(payload)
        except PterodactylTimeoutError as exc:
            raise ProvisioningFailure(
                f"Panel timed out creating {payload['name']}; the server may exist: {exc}",
                kind=exc.kind,
                needs_audit=True,
            ) from exc
        except PterodactylError as exc:
            raise ProvisioningFailure(str(exc), kind=exc.kind, needs_audit=exc.may_exist) from exc

    def _fail(
        self,
        payment: PaymentRecord,
        plan_id: str,
        *,
        kind: str,
        message: str,
        needs_audit: bool = False,
    ) -> ProvisioningOutcome:
        record = self._database.record_provisioning_failure(
            payment_id=payment.id,
            user_id=payment.user_id,
            plan=plan_id if isinstance(plan_id, str) else str(plan_id),
            kind=kind,
            message=message,
            needs_audit=needs_audit,
        )
        alerts.error(
            "Provisioning failed for payment %s (user %s, plan %s): [%s] %s%s",
            payment.transaction_ref,
            payment.user_id,
            plan_id,
            kind,
            message,
            " - manual audit required" if needs_audit else "",
        )
        return ProvisioningOutcome(failure=record)


__all__ = [
    "DataIntegrityFailure",
    "ProvisioningClient",
    "ProvisioningFailure",
    "ProvisioningOrchestrator",
    "ProvisioningOutcome",
    "SERVER_STATUS_RUNNING",
    "build_create_payload",
    "build_instance_name",
]
