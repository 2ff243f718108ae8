"""HTTP API for customer accounts, checkout and payment notifications."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

import anyio
from fastapi import Depends, FastAPI, HTTPException, Request, status
from pydantic import BaseModel, Field, field_validator

from .billing import BillingError, StripeBilling
from .config import Settings, load_settings
from .database import Database
from .intake import AuthenticationFailure, EventIntake
from .ledger import SettlementLedger
from .models import PaymentRecord, ProvisionedServer
from .orchestrator import ProvisioningClient, ProvisioningOrchestrator
from .plans import ConfigurationFailure, list_plans, plan_resources, resolve_plan
from .pterodactyl import PterodactylClient
from .security import BearerAuth, TokenClaims, TokenService
from .webhooks import PaymentWebhookProcessor

logger = logging.getLogger("gamehost.service")

SIGNATURE_HEADER = "stripe-signature"


class CredentialsRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        stripped = value.strip().lower()
        if "@" not in stripped:
            raise ValueError("email must be a valid address")
        return stripped


class RegisterRequest(CredentialsRequest):
    password: str = Field(..., min_length=8, max_length=1024)


class TokenResponse(BaseModel):
    token: str


class CheckoutRequest(BaseModel):
    plan: str = Field(..., min_length=1, max_length=64)


class CheckoutResponse(BaseModel):
    url: str


class PlanResponse(BaseModel):
    id: str
    memory_mb: int
    slots: int
    disk_mb: int
    io: int
    cpu: int
    available: bool


class ServerResponse(BaseModel):
    id: int
    external_id: str
    name: str
    plan: str
    memory_mb: int
    slots: int
    status: str
    payment_id: int
    created_at: datetime


class PaymentResponse(BaseModel):
    id: int
    transaction_ref: str
    amount: Optional[int]
    currency: str
    status: str
    created_at: datetime


class AccountServersResponse(BaseModel):
    servers: List[ServerResponse]
    payments: List[PaymentResponse]


def _server_to_response(server: ProvisionedServer) -> ServerResponse:
    return ServerResponse(
        id=server.id,
        external_id=server.external_id,
        name=server.name,
        plan=server.plan,
        memory_mb=server.memory_mb,
        slots=server.slots,
        status=server.status,
        payment_id=server.payment_id,
        created_at=server.created_at,
    )


def _payment_to_response(payment: PaymentRecord) -> PaymentResponse:
    return PaymentResponse(
        id=payment.id,
        transaction_ref=payment.transaction_ref,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
        created_at=payment.created_at,
    )


def build_webhook_processor(
    settings: Settings,
    database: Database,
    client: ProvisioningClient | None,
) -> Optional[PaymentWebhookProcessor]:
    if not settings.stripe_webhook_secret:
        return None
    return PaymentWebhookProcessor(
        EventIntake(settings.stripe_webhook_secret, tolerance=settings.stripe_webhook_tolerance),
        SettlementLedger(database),
        ProvisioningOrchestrator(database, client, settings.panel),
    )


def build_provisioning_client(settings: Settings) -> Optional[PterodactylClient]:
    panel = settings.panel
    if not panel.configured:
        return None
    return PterodactylClient(
        panel.base_url or "",
        panel.admin_key or "",
        timeout=panel.timeout,
    )


def register_api_routes(
    app: FastAPI,
    database: Database,
    *,
    settings: Settings,
    tokens: TokenService,
    billing: StripeBilling | None,
    processor: PaymentWebhookProcessor | None,
) -> None:
    """Expose the JSON API endpoints on the provided FastAPI application."""

    current_user = BearerAuth(tokens)

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/plans", response_model=List[PlanResponse])
    async def plans() -> List[PlanResponse]:
        catalogue = []
        for plan in list_plans():
            resources = plan_resources(plan).to_public_dict()
            catalogue.append(
                PlanResponse(id=plan.value, available=bool(settings.price_for(plan)), **resources)
            )
        return catalogue

    @app.get("/api/servers", response_model=AccountServersResponse)
    def account_servers(claims: TokenClaims = Depends(current_user)) -> AccountServersResponse:
        servers = database.list_servers_for_user(claims.user_id)
        payments = database.list_payments_for_user(claims.user_id)
        return AccountServersResponse(
            servers=[_server_to_response(server) for server in servers],
            payments=[_payment_to_response(payment) for payment in payments],
        )

    @app.post("/api/auth/register", response_model=TokenResponse)
    async def register(request: RegisterRequest) -> TokenResponse:
        try:
            user = database.create_user(request.email, request.password)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

        logger.info("Registered user %s", user.id)
        return TokenResponse(token=tokens.issue(user))

    @app.post("/api/auth/login", response_model=TokenResponse)
    async def login(request: CredentialsRequest) -> TokenResponse:
        user = database.authenticate_user(request.email, request.password)
        if user is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="invalid credentials",
            )
        return TokenResponse(token=tokens.issue(user))

    @app.post("/api/checkout", response_model=CheckoutResponse)
    def checkout(
        request: CheckoutRequest,
        claims: TokenClaims = Depends(current_user),
    ) -> CheckoutResponse:
        try:
            plan = resolve_plan(request.plan)
        except ConfigurationFailure as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid plan") from exc

        price_id = settings.price_for(plan)
        if not price_id:
            logger.error("No checkout price configured for plan %s", plan.value)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid plan")

        if billing is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="checkout is not configured",
            )

        user = database.get_user(claims.user_id)
        if user is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token")

        try:
            customer_id = user.billing_customer_id
            if not customer_id:
                customer_id = billing.create_customer(user.email)
                database.set_billing_customer(user.id, customer_id)

            url = billing.create_checkout_session(
                customer_id=customer_id,
                price_id=price_id,
                success_url=settings.checkout_success_url,
                cancel_url=settings.checkout_cancel_url,
                metadata={"userId": str(user.id), "plan": plan.value},
            )
        except BillingError as exc:
            logger.error("Checkout for user %s failed: %s", user.id, exc)
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

        logger.info("Created checkout session for user %s on plan %s", user.id, plan.value)
        return CheckoutResponse(url=url)

    @app.post("/api/webhook")
    async def payment_webhook(request: Request) -> Dict[str, Any]:
        if processor is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="webhook is not configured",
            )

        payload = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)
        try:
            result = await anyio.to_thread.run_sync(processor.handle, payload, signature)
        except AuthenticationFailure as exc:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Webhook Error: {exc}",
            ) from exc
        return result.to_ack()


def create_app(
    *,
    settings: Settings | None = None,
    database: Database | None = None,
    billing: StripeBilling | None = None,
    provisioning_client: ProvisioningClient | None = None,
) -> FastAPI:
    """Instantiate the FastAPI application for the hosting backend.

    Collaborators that are not supplied are built from ``settings``; the
    ones built here are owned (and closed) by the application.
    """

    app_settings = settings or load_settings()
    db = database or Database(app_settings.database_path)
    db.initialize()

    owned_client: PterodactylClient | None = None
    client = provisioning_client
    if client is None:
        owned_client = build_provisioning_client(app_settings)
        client = owned_client
    if client is None:
        logger.warning("PTERODACTYL_URL/PTERODACTYL_ADMIN_KEY are not set; paid orders will queue for follow-up.")

    gateway = billing
    if gateway is None and app_settings.stripe_secret_key:
        gateway = StripeBilling(app_settings.stripe_secret_key)

    processor = build_webhook_processor(app_settings, db, client)
    if processor is None:
        logger.warning("STRIPE_WEBHOOK_SECRET is not set; payment notifications will be refused.")

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            if owned_client is not None:
                owned_client.close()

    app = FastAPI(
        title="Game Server Hosting API",
        version="0.1.0",
        description="Accounts, checkout and automatic provisioning of paid game servers.",
        lifespan=lifespan,
    )

    tokens = TokenService(app_settings.jwt_secret, ttl=app_settings.jwt_ttl)

    app.state.settings = app_settings
    app.state.database = db
    app.state.webhook_processor = processor

    register_api_routes(
        app,
        db,
        settings=app_settings,
        tokens=tokens,
        billing=gateway,
        processor=processor,
    )
    return app


__all__ = ["build_webhook_processor", "create_app", "register_api_routes"]
