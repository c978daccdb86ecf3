# backend/fiscalpos/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/fiscalpos.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///fiscalpos.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Fiscal gateway (UBL 2.1 API in front of DIAN)
    FISCAL_API_URL = os.environ.get("FISCAL_API_URL", "")
    FISCAL_API_TOKEN = os.environ.get("FISCAL_API_TOKEN", "")
    FISCAL_ENVIRONMENT = os.environ.get("FISCAL_ENVIRONMENT", "test")  # test, production
    FISCAL_USE_TEST_SET_ID = _env_bool("FISCAL_USE_TEST_SET_ID", True)
    FISCAL_TEST_SET_ID = os.environ.get("FISCAL_TEST_SET_ID", "")
    FISCAL_GATEWAY_TIMEOUT = float(os.environ.get("FISCAL_GATEWAY_TIMEOUT", "30"))
    # Issuer NIT, used when asking the gateway to e-mail a document again
    FISCAL_COMPANY_NIT = os.environ.get("FISCAL_COMPANY_NIT", "")

    # Validation worker
    FISCAL_WORKER_AUTOSTART = _env_bool("FISCAL_WORKER_AUTOSTART", False)
    FISCAL_WORKER_INTERVAL = float(os.environ.get("FISCAL_WORKER_INTERVAL", "30"))
    FISCAL_WORKER_POOL_SIZE = int(os.environ.get("FISCAL_WORKER_POOL_SIZE", "4"))
    FISCAL_MAX_RETRIES = int(os.environ.get("FISCAL_MAX_RETRIES", "3"))
    FISCAL_POLL_MIN_INTERVAL = float(os.environ.get("FISCAL_POLL_MIN_INTERVAL", "20"))
    # Polls without a verdict before a sent document raises an operator alert
    FISCAL_MAX_POLLS = int(os.environ.get("FISCAL_MAX_POLLS", "30"))
    # A validating document is treated as interrupted once its call is older
    # than FISCAL_GATEWAY_TIMEOUT + FISCAL_INFLIGHT_GRACE seconds
    FISCAL_INFLIGHT_GRACE = float(os.environ.get("FISCAL_INFLIGHT_GRACE", "60"))

    # Resolution validity windows are expressed in local calendar days
    FISCAL_TIMEZONE = os.environ.get("FISCAL_TIMEZONE", "America/Bogota")
    FISCAL_LOG_LEVEL = os.environ.get("FISCAL_LOG_LEVEL", "INFO")


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    FISCAL_API_URL = "https://fiscal.test.local"
    FISCAL_API_TOKEN = "test-token"
    FISCAL_TEST_SET_ID = "test-set-0001"
    FISCAL_COMPANY_NIT = "900123456"
    FISCAL_WORKER_AUTOSTART = False
    FISCAL_POLL_MIN_INTERVAL = 0
