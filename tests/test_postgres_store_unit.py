from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from accountcore.storage.common import SecretCipher
from accountcore.storage.models import ApprovalStatus, Role
from accountcore.storage.postgres import PostgresStore, _violated_field

from conftest import TEST_SECRET

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store() -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store._cipher = SecretCipher(TEST_SECRET)
    return store


def test_account_row_decrypts_secret_and_maps_counters():
    store = _store()
    row = {
        "id": "acct-1",
        "email": "hank@example.com",
        "password_hash": "hash",
        "role": "provider",
        "profile": '{"first_name": "Hank"}',
        "phone": "5550001111",
        "email_verified": True,
        "two_factor_enabled": True,
        "two_factor_secret": store._cipher.encrypt("JBSWY3DPEHPK3PXP"),
        "backup_code_hashes": ["h1", "h2"],
        "backup_code_salt": "salt",
        "failed_login_attempts": 3,
        "last_failed_login_at": NOW,
        "two_factor_locked_until": NOW + timedelta(minutes=5),
        "approval_status": "pending",
        "is_active": True,
        "created_at": NOW,
        "updated_at": NOW,
    }

    account = store._account_from_row(row)
    assert account.role is Role.PROVIDER
    assert account.profile == {"first_name": "Hank"}
    assert account.two_factor.secret == "JBSWY3DPEHPK3PXP"
    assert account.two_factor.backup_code_hashes == ["h1", "h2"]
    assert account.lockout.failed_attempts == 3
    assert account.two_factor_lockout.is_locked(NOW)
    assert not account.lockout.is_locked(NOW)
    assert account.approval_status is ApprovalStatus.PENDING


def test_account_row_defaults_for_sparse_rows():
    store = _store()
    account = store._account_from_row(
        {"id": "acct-2", "email": "ivy@example.com", "password_hash": "hash", "role": "customer"}
    )
    assert account.profile == {}
    assert account.two_factor.secret is None
    assert account.lockout.failed_attempts == 0
    assert account.approval_status is ApprovalStatus.APPROVED
    assert account.is_active


def test_plaintext_secret_rows_still_load():
    store = _store()
    account = store._account_from_row(
        {
            "id": "acct-3",
            "email": "jay@example.com",
            "password_hash": "hash",
            "role": "customer",
            "two_factor_secret": "JBSWY3DPEHPK3PXP",
        }
    )
    assert account.two_factor.secret == "JBSWY3DPEHPK3PXP"


def test_session_and_refresh_rows():
    session = PostgresStore._session_from_row(
        {
            "id": "sess-1",
            "account_id": "acct-1",
            "created_at": NOW,
            "expires_at": NOW + timedelta(days=7),
            "last_activity_at": None,
            "device": "laptop",
        }
    )
    assert session.last_activity_at == NOW
    assert session.device == "laptop"
    assert session.origin is None

    record = PostgresStore._refresh_from_row(
        {
            "token_hash": "rt",
            "account_id": "acct-1",
            "session_id": "sess-1",
            "created_at": NOW,
            "expires_at": NOW + timedelta(days=7),
            "revoked": False,
        }
    )
    assert record.is_live(NOW)
    assert not record.is_live(NOW + timedelta(days=8))


def test_unique_violation_field_from_constraint_name():
    phone = SimpleNamespace(diag=SimpleNamespace(constraint_name="account_phone_idx"))
    email = SimpleNamespace(diag=SimpleNamespace(constraint_name="account_email_lower_idx"))
    assert _violated_field(phone) == "phone"
    assert _violated_field(email) == "email"
    assert _violated_field(SimpleNamespace()) == "email"
