import os
import unittest
from unittest import mock

from moneyos.config import DEFAULT_DATABASE_URL, Settings, normalize_currency


class SettingsTests(unittest.TestCase):
    def test_defaults_when_environment_is_empty(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = Settings.from_env()

        self.assertEqual(settings.database_url, DEFAULT_DATABASE_URL)
        self.assertEqual(settings.default_currency, "INR")
        self.assertEqual(settings.sms_pull_limit, 50)
        self.assertIsNone(settings.sms_push_secret)

    def test_reads_environment(self) -> None:
        env = {
            "DATABASE_URL": "sqlite://",
            "JWT_SECRET": "s3cret",
            "SMS_PUSH_SECRET": "device",
            "SMS_PULL_LIMIT": "10",
            "DEFAULT_CURRENCY": " usd ",
            "LOG_LEVEL": "debug",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            settings = Settings.from_env()

        self.assertEqual(settings.database_url, "sqlite://")
        self.assertEqual(settings.jwt_secret, "s3cret")
        self.assertEqual(settings.sms_push_secret, "device")
        self.assertEqual(settings.sms_pull_limit, 10)
        self.assertEqual(settings.default_currency, "USD")
        self.assertEqual(settings.log_level, "DEBUG")

    def test_bad_values_fall_back(self) -> None:
        env = {"SMS_PULL_LIMIT": "many", "DEFAULT_CURRENCY": "rupees"}
        with mock.patch.dict(os.environ, env, clear=True):
            settings = Settings.from_env()

        self.assertEqual(settings.sms_pull_limit, 50)
        self.assertEqual(settings.default_currency, "INR")

    def test_normalize_currency(self) -> None:
        self.assertEqual(normalize_currency("eur"), "EUR")
        with self.assertRaises(ValueError):
            normalize_currency("EURO")


if __name__ == "__main__":
    unittest.main()
