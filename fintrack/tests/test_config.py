import os
import unittest
from unittest import mock

from fintrack.config import Settings, get_system_default_currency


class SettingsTests(unittest.TestCase):
    def test_defaults_without_environment(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = Settings.from_env()

        self.assertEqual(settings.database_url, "sqlite:///./fintrack.db")
        self.assertEqual(settings.default_currency, "ILS")
        self.assertFalse(settings.cascade_subscriptions)
        self.assertFalse(settings.is_development)

    def test_reads_environment_overrides(self) -> None:
        env = {
            "DATABASE_URL": "sqlite://",
            "FINTRACK_ENV": "Development",
            "FINTRACK_CASCADE_SUBSCRIPTIONS": "yes",
            "FINTRACK_MAX_RECEIPT_BYTES": "1024",
            "FINTRACK_RATES_URL": "https://rates.test/latest/",
            "DEFAULT_CURRENCY": "usd",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            settings = Settings.from_env()

        self.assertEqual(settings.database_url, "sqlite://")
        self.assertTrue(settings.is_development)
        self.assertTrue(settings.cascade_subscriptions)
        self.assertEqual(settings.max_receipt_bytes, 1024)
        self.assertEqual(settings.rates_url, "https://rates.test/latest")
        self.assertEqual(settings.default_currency, "USD")

    def test_invalid_numbers_keep_defaults(self) -> None:
        with mock.patch.dict(os.environ, {"PORT": "abc"}, clear=True):
            self.assertEqual(Settings.from_env().port, 4010)

    def test_unsupported_default_currency_falls_back(self) -> None:
        with mock.patch.dict(os.environ, {"DEFAULT_CURRENCY": "GBP"}, clear=True):
            self.assertEqual(get_system_default_currency(), "ILS")
