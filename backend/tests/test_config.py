"""Tests for settings normalization."""

import pytest

from dispatch.config import Settings


class TestEffectiveDatabaseUrl:
    @pytest.mark.parametrize(
        "raw",
        ["postgres://u:p@db:5432/cityping", "postgresql://u:p@db:5432/cityping"],
    )
    def test_postgres_urls_pin_psycopg2(self, raw):
        settings = Settings(database_url=raw)

        assert settings.effective_database_url == "postgresql+psycopg2://u:p@db:5432/cityping"

    def test_explicit_driver_and_sqlite_untouched(self):
        assert Settings(database_url="postgresql+psycopg2://db/x").effective_database_url == "postgresql+psycopg2://db/x"
        assert Settings(database_url="sqlite:///:memory:").effective_database_url == "sqlite:///:memory:"
