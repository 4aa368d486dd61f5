import unittest
from dataclasses import replace
from datetime import datetime, timedelta

from moneyos.errors import AuthError, ValidationError
from moneyos.message_relay import pull_messages, push_message, verify_push_secret
from moneyos.tests.support import TEST_SETTINGS, make_store


class PushSecretTests(unittest.TestCase):
    def test_accepts_matching_secret(self) -> None:
        verify_push_secret(TEST_SETTINGS, "device-secret")

    def test_rejects_wrong_or_missing_secret(self) -> None:
        with self.assertRaises(AuthError):
            verify_push_secret(TEST_SETTINGS, "guess")
        with self.assertRaises(AuthError):
            verify_push_secret(TEST_SETTINGS, None)

    def test_rejects_everything_when_unconfigured(self) -> None:
        settings = replace(TEST_SETTINGS, sms_push_secret=None)

        with self.assertRaises(AuthError):
            verify_push_secret(settings, "device-secret")


class MessageRelayTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = make_store()

    def tearDown(self) -> None:
        self.store.dispose()

    def test_pull_returns_message_once(self) -> None:
        push_message(self.store, "Rs 250 debited", sender="AX-HDFCBK", device_id="pixel")

        first = pull_messages(self.store)
        second = pull_messages(self.store)

        self.assertEqual(len(first), 1)
        self.assertEqual(first[0]["sender"], "AX-HDFCBK")
        self.assertEqual(first[0]["device_id"], "pixel")
        self.assertEqual(second, [])

    def test_pull_takes_most_recent_up_to_limit(self) -> None:
        base = datetime(2024, 5, 1, 9, 0, 0)
        for offset in range(5):
            push_message(self.store, f"message {offset}", received_at=base + timedelta(minutes=offset))

        pulled = pull_messages(self.store, limit=3)
        remaining = pull_messages(self.store, limit=10)

        self.assertEqual([row["body"] for row in pulled], ["message 4", "message 3", "message 2"])
        self.assertEqual([row["body"] for row in remaining], ["message 1", "message 0"])

    def test_push_requires_body(self) -> None:
        with self.assertRaises(ValidationError):
            push_message(self.store, "   ")


if __name__ == "__main__":
    unittest.main()
