"""Configuration management for the hosting backend."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from .database import resolve_database_path
from .plans import ConfigurationFailure, Plan, resolve_plan

logger = logging.getLogger("gamehost.config")

DEFAULT_JWT_SECRET = "devsecret"
DEFAULT_DOCKER_IMAGE = "ghcr.io/pterodactyl/yolks:java_17"
DEFAULT_STARTUP = "java -Xms128M -Xmx{{SERVER_MEMORY}}M -jar {{SERVER_JARFILE}}"

_PRICE_ENV_VARS: Dict[Plan, str] = {
    Plan.PLAN_2GB: "STRIPE_PRICE_2GB",
    Plan.PLAN_4GB: "STRIPE_PRICE_4GB",
}


class ConfigurationError(ValueError):
    """Raised when the service environment is misconfigured."""


def _env_str(environ: Mapping[str, str], name: str) -> Optional[str]:
    value = environ.get(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    value = environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid integer value {value!r} for {name}") from exc


def _env_int_list(environ: Mapping[str, str], name: str, default: Tuple[int, ...]) -> Tuple[int, ...]:
    value = environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = tuple(int(part) for part in value.split(",") if part.strip())
    except ValueError as exc:
        raise ConfigurationError(f"Invalid integer list {value!r} for {name}") from exc
    return parsed or default


def _env_float(environ: Mapping[str, str], name: str, default: float) -> float:
    value = environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = float(value)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid number {value!r} for {name}") from exc
    if parsed <= 0:
        raise ConfigurationError(f"{name} must be greater than zero")
    return parsed


@dataclass(frozen=True)
class PanelSettings:
    """Connection and template settings for the Pterodactyl control panel."""

    base_url: Optional[str] = None
    admin_key: Optional[str] = None
    egg_id: int = 1
    owner_id: int = 1
    location_ids: Tuple[int, ...] = (1,)
    docker_image: str = DEFAULT_DOCKER_IMAGE
    startup: str = DEFAULT_STARTUP
    environment: Dict[str, str] = field(default_factory=lambda: {"SERVER_JARFILE": "server.jar"})
    timeout: float = 30.0

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.admin_key)


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration resolved once at startup."""

    database_path: Path
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_ttl: timedelta = timedelta(days=7)
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_webhook_tolerance: int = 300
    plan_prices: Dict[Plan, str] = field(default_factory=dict)
    panel: PanelSettings = field(default_factory=PanelSettings)
    frontend_url: str = "http://localhost:3000"

    def price_for(self, plan: Plan) -> Optional[str]:
        return self.plan_prices.get(plan)

    @property
    def checkout_success_url(self) -> str:
        return f"{self.frontend_url}/dashboard?checkout=success"

    @property
    def checkout_cancel_url(self) -> str:
        return f"{self.frontend_url}/dashboard?checkout=cancelled"


def load_plan_prices(config_path: Path) -> Dict[Plan, str]:
    """Load the plan to Stripe price mapping from a YAML file.

    The file holds a single ``prices`` mapping keyed by plan identifier::

        prices:
          plan_2gb: price_123
          plan_4gb: price_456
    """

    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Plan file {config_path} must contain a mapping")

    prices_raw = raw.get("prices") or {}
    if not isinstance(prices_raw, dict):
        raise ConfigurationError("The 'prices' key must map plan identifiers to price ids")

    prices: Dict[Plan, str] = {}
    for plan_id, price_id in prices_raw.items():
        try:
            plan = resolve_plan(plan_id)
        except ConfigurationFailure as exc:
            raise ConfigurationError(f"Plan file {config_path} references {exc}") from exc
        if not price_id:
            continue
        prices[plan] = str(price_id).strip()
    return prices


def _load_plan_prices_from_env(environ: Mapping[str, str]) -> Dict[Plan, str]:
    prices: Dict[Plan, str] = {}
    for plan, variable in _PRICE_ENV_VARS.items():
        value = _env_str(environ, variable)
        if value:
            prices[plan] = value
    return prices


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from environment variables."""

    env = os.environ if environ is None else environ

    prices = _load_plan_prices_from_env(env)
    plans_file = _env_str(env, "GAMEHOST_PLANS_FILE")
    if plans_file:
        prices.update(load_plan_prices(Path(plans_file).expanduser()))

    jwt_secret = _env_str(env, "JWT_SECRET")
    if jwt_secret is None:
        logger.warning("JWT_SECRET is not set; falling back to an insecure development secret.")
        jwt_secret = DEFAULT_JWT_SECRET

    panel = PanelSettings(
        base_url=_env_str(env, "PTERODACTYL_URL"),
        admin_key=_env_str(env, "PTERODACTYL_ADMIN_KEY"),
        egg_id=_env_int(env, "PTERODACTYL_EGG_ID", 1),
        owner_id=_env_int(env, "PTERODACTYL_OWNER_ID", 1),
        location_ids=_env_int_list(env, "PTERODACTYL_LOCATION_IDS", (1,)),
        docker_image=_env_str(env, "PTERODACTYL_DOCKER_IMAGE") or DEFAULT_DOCKER_IMAGE,
        startup=_env_str(env, "PTERODACTYL_STARTUP") or DEFAULT_STARTUP,
        timeout=_env_float(env, "PTERODACTYL_TIMEOUT", 30.0),
    )

    frontend_url = (_env_str(env, "FRONTEND_URL") or "http://localhost:3000").rstrip("/")

    return Settings(
        database_path=resolve_database_path(_env_str(env, "GAMEHOST_DATABASE_URL")),
        jwt_secret=jwt_secret,
        jwt_ttl=timedelta(days=_env_int(env, "JWT_TTL_DAYS", 7)),
        stripe_secret_key=_env_str(env, "STRIPE_SECRET_KEY"),
        stripe_webhook_secret=_env_str(env, "STRIPE_WEBHOOK_SECRET"),
        stripe_webhook_tolerance=_env_int(env, "STRIPE_WEBHOOK_TOLERANCE", 300),
        plan_prices=prices,
        panel=panel,
        frontend_url=frontend_url,
    )


__all__ = [
    "ConfigurationError",
    "PanelSettings",
    "Settings",
    "load_plan_prices",
    "load_settings",
]
