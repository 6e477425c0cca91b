"""Tests for nudge.config."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError


def make_settings(**kwargs):
    """Helper to create Settings with test credentials."""
    from nudge.config import Settings

    defaults = {"db_password": "test-pass"}
    defaults.update(kwargs)
    return Settings(**defaults)  # type: ignore[call-arg]


def test_settings_defaults():
    # Drop env vars CI may inject so the field defaults are what gets tested.
    ci_vars = {
        "DB_NAME",
        "DB_USER",
        "DB_HOST",
        "DB_PORT",
        "APP_ENV",
        "DEBUG",
        "SCHEDULER_MODE",
        "SCHEDULER_INTERVAL_MS",
        "STALE_THRESHOLD_MS",
    }
    clean_env = {k: v for k, v in os.environ.items() if k not in ci_vars}
    with patch.dict(os.environ, clean_env, clear=True):
        s = make_settings(_env_file=None)
    assert s.app_name == "Nudge"
    assert s.app_env == "development"
    assert s.debug is False
    assert s.db_host == "localhost"
    assert s.db_port == 3306
    assert s.db_name == "nudge"
    assert s.scheduler_mode == "polling"
    assert s.scheduler_interval_ms == 3000
    assert s.stale_threshold_ms == 3_600_000
    assert s.recurrence_timezone == "UTC"
    assert s.callback_queue == "alerts"


def test_database_url():
    s = make_settings(db_user="u", db_password="p", db_host="h", db_port=3306, db_name="db")
    assert s.database_url == "mysql+aiomysql://u:p@h:3306/db"


def test_database_url_sync():
    s = make_settings(db_user="u", db_password="p", db_host="h", db_port=3306, db_name="db")
    assert s.database_url_sync == "mysql+pymysql://u:p@h:3306/db"


def test_redis_url_no_password():
    s = make_settings(redis_host="localhost", redis_port=6379, redis_db=0, redis_password=None)
    assert s.redis_url == "redis://localhost:6379/0"


def test_redis_url_with_password():
    s = make_settings(redis_password="mypass", redis_host="rhost", redis_port=6380, redis_db=1)
    assert s.redis_url == "redis://:mypass@rhost:6380/1"


def test_celery_falls_back_to_redis():
    s = make_settings(celery_broker_url=None, celery_result_backend=None, redis_password=None)
    assert s.effective_celery_broker == s.redis_url
    assert s.effective_celery_backend == s.redis_url


def test_celery_explicit_broker():
    s = make_settings(celery_broker_url="amqp://guest@rabbit//")
    assert s.effective_celery_broker == "amqp://guest@rabbit//"


def test_scheduler_mode_rejects_unknown():
    with pytest.raises(ValidationError):
        make_settings(scheduler_mode="cron")


def test_interval_lower_bound():
    with pytest.raises(ValidationError):
        make_settings(scheduler_interval_ms=10)


def test_settings_from_env():
    with patch.dict(os.environ, {"SCHEDULER_MODE": "webhook", "STALE_THRESHOLD_MS": "60000"}):
        s = make_settings()
    assert s.scheduler_mode == "webhook"
    assert s.stale_threshold_ms == 60000
