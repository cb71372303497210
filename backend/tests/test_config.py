from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from boipaben.core.config import Settings


def test_defaults_sweep_hourly_within_window():
    settings = Settings(_env_file=None)
    assert settings.visibility_window_hours == 12.0
    assert settings.cleanup_interval_hours == 1.0
    assert settings.cleanup_interval == timedelta(hours=1)


@pytest.mark.parametrize("interval", [6, 12])
def test_interval_not_shorter_than_window_is_rejected(interval):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, visibility_window_hours=6, cleanup_interval_hours=interval)


@pytest.mark.parametrize("field", ["visibility_window_hours", "cleanup_interval_hours"])
def test_non_positive_durations_are_rejected(field):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **{field: 0})


def test_retry_backoff_accepts_comma_separated_string():
    settings = Settings(_env_file=None, sale_retry_backoff_seconds="0.5, 1,2")
    assert settings.sale_retry_backoff_schedule == (0.5, 1.0, 2.0)


def test_retry_backoff_rejects_non_positive_values():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, sale_retry_backoff_seconds="1,0")


def test_postgres_urls_use_psycopg_driver():
    settings = Settings(_env_file=None, database_url="postgres://user:pw@db.example.com/boipaben")
    resolved = settings.resolved_database_url
    assert resolved.startswith("postgresql+psycopg://")
    assert "sslmode=require" in resolved
