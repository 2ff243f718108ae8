from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

import pytest

from gamehost.config import ConfigurationError, load_plan_prices, load_settings
from gamehost.plans import Plan


def test_defaults_when_environment_is_empty(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="gamehost.config"):
        settings = load_settings({})

    assert settings.jwt_secret == "devsecret"
    assert "JWT_SECRET" in caplog.text
    assert settings.jwt_ttl == timedelta(days=7)
    assert settings.stripe_webhook_secret is None
    assert settings.stripe_webhook_tolerance == 300
    assert settings.plan_prices == {}
    assert not settings.panel.configured
    assert settings.panel.location_ids == (1,)
    assert settings.frontend_url == "http://localhost:3000"


def test_environment_values_are_applied(tmp_path: Path) -> None:
    settings = load_settings(
        {
            "GAMEHOST_DATABASE_URL": f"sqlite:///{tmp_path / 'prod.sqlite3'}",
            "JWT_SECRET": "prod-secret",
            "JWT_TTL_DAYS": "1",
            "STRIPE_SECRET_KEY": "sk_live_x",
            "STRIPE_WEBHOOK_SECRET": "whsec_x",
            "STRIPE_WEBHOOK_TOLERANCE": "120",
            "STRIPE_PRICE_2GB": "price_a",
            "STRIPE_PRICE_4GB": " price_b ",
            "PTERODACTYL_URL": "https://panel.example.com",
            "PTERODACTYL_ADMIN_KEY": "ptla_x",
            "PTERODACTYL_EGG_ID": "3",
            "PTERODACTYL_OWNER_ID": "9",
            "PTERODACTYL_LOCATION_IDS": "2, 4",
            "PTERODACTYL_TIMEOUT": "12.5",
            "FRONTEND_URL": "https://play.example.com/",
        }
    )

    assert settings.database_path == (tmp_path / "prod.sqlite3").resolve()
    assert settings.jwt_secret == "prod-secret"
    assert settings.jwt_ttl == timedelta(days=1)
    assert settings.stripe_webhook_tolerance == 120
    assert settings.price_for(Plan.PLAN_2GB) == "price_a"
    assert settings.price_for(Plan.PLAN_4GB) == "price_b"
    assert settings.panel.configured
    assert settings.panel.egg_id == 3
    assert settings.panel.owner_id == 9
    assert settings.panel.location_ids == (2, 4)
    assert settings.panel.timeout == 12.5
    assert settings.checkout_success_url == "https://play.example.com/dashboard?checkout=success"


def test_plans_file_overrides_environment_prices(tmp_path: Path) -> None:
    plans_file = tmp_path / "plans.yaml"
    plans_file.write_text("prices:\n  plan_2gb: price_from_file\n", encoding="utf-8")

    settings = load_settings({"STRIPE_PRICE_2GB": "price_env", "GAMEHOST_PLANS_FILE": str(plans_file)})

    assert settings.price_for(Plan.PLAN_2GB) == "price_from_file"
    assert settings.price_for(Plan.PLAN_4GB) is None


def test_plans_file_with_unknown_plan_is_rejected(tmp_path: Path) -> None:
    plans_file = tmp_path / "plans.yaml"
    plans_file.write_text("prices:\n  plan_64gb: price_x\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_plan_prices(plans_file)


@pytest.mark.parametrize(
    "name, value",
    [
        ("PTERODACTYL_EGG_ID", "abc"),
        ("JWT_TTL_DAYS", "seven"),
        ("PTERODACTYL_LOCATION_IDS", "1,x"),
        ("PTERODACTYL_TIMEOUT", "0"),
    ],
)
def test_invalid_numbers_raise_configuration_error(name: str, value: str) -> None:
    with pytest.raises(ConfigurationError):
        load_settings({name: value})
