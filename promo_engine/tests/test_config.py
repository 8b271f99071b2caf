"""Configuration validation."""
import logging
import pytest

from promo_engine.core.config import Settings, validate_config


def test_missing_keys_warn_in_lenient_mode(caplog):
    cfg = Settings(DATABASE_URL=None, STRIPE_SECRET_KEY=None)
    logger = logging.getLogger("promo_engine.test_config")

    with caplog.at_level(logging.WARNING, logger="promo_engine.test_config"):
        assert validate_config(strict=False, settings_obj=cfg, logger=logger) is True

    assert "DATABASE_URL" in caplog.text
    assert "STRIPE_SECRET_KEY" in caplog.text


def test_missing_keys_raise_in_strict_mode():
    cfg = Settings(DATABASE_URL=None, STRIPE_SECRET_KEY=None)

    with pytest.raises(RuntimeError):
        validate_config(strict=True, settings_obj=cfg)


def test_secrets_are_not_logged(caplog):
    cfg = Settings(DATABASE_URL="sqlite:///x.db", STRIPE_SECRET_KEY="sk_live_supersecret", GATEWAY_TIMEOUT_SECONDS=0)
    logger = logging.getLogger("promo_engine.test_config")

    with caplog.at_level(logging.WARNING, logger="promo_engine.test_config"):
        validate_config(strict=False, settings_obj=cfg, logger=logger)

    assert "GATEWAY_TIMEOUT_SECONDS" in caplog.text
    assert "sk_live_supersecret" not in caplog.text


def test_complete_config_passes_strict():
    cfg = Settings(DATABASE_URL="sqlite:///x.db", STRIPE_SECRET_KEY="sk_test_1")

    assert validate_config(strict=True, settings_obj=cfg) is True
