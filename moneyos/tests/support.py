from moneyos.auth import register_user
from moneyos.config import Settings
from moneyos.ledger_store import LedgerStore

TEST_SETTINGS = Settings(
    database_url="sqlite://",
    jwt_secret="test-secret",
    sms_push_secret="device-secret",
    log_level="WARNING",
)


def make_store() -> LedgerStore:
    store = LedgerStore.from_url("sqlite://")
    store.create_all()
    return store


def make_user(store: LedgerStore, username: str = "alice") -> int:
    return register_user(store, username, "pw123", "INR")
