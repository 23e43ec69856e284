"""Tests for the in-memory account store."""

from datetime import datetime, timedelta, timezone

import pytest

from accountcore.storage.errors import ConstraintViolation, NotFound
from accountcore.storage.memory import MemoryStore
from accountcore.storage.models import (
    ApprovalStatus,
    AttemptKind,
    RefreshTokenRecord,
    Role,
    Session,
)

from conftest import TEST_SECRET

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def _account(store, email="frank@example.com", **kwargs):
    return store.create_account(email=email, password_hash="hash", role=Role.CUSTOMER, **kwargs)


class TestAccounts:
    def test_email_lookup_is_case_insensitive(self, memory_store):
        created = _account(memory_store, email="Frank@Example.COM")
        assert created.email == "frank@example.com"
        assert memory_store.get_account_by_email(" FRANK@example.com ").id == created.id

    def test_duplicate_email(self, memory_store):
        _account(memory_store)
        with pytest.raises(ConstraintViolation) as excinfo:
            _account(memory_store, email="FRANK@example.com")
        assert excinfo.value.field == "email"

    def test_duplicate_phone(self, memory_store):
        _account(memory_store, phone="+1 (555) 000-1111")
        with pytest.raises(ConstraintViolation) as excinfo:
            _account(memory_store, email="gina@example.com", phone="+15550001111")
        assert excinfo.value.field == "phone"

    def test_returned_records_are_copies(self, memory_store):
        created = _account(memory_store)
        created.profile["first_name"] = "Mallory"
        created.two_factor.backup_code_hashes.append("x")
        fresh = memory_store.get_account(created.id)
        assert fresh.profile == {}
        assert fresh.two_factor.backup_code_hashes == []

    def test_unknown_account_mutation(self, memory_store):
        with pytest.raises(NotFound):
            memory_store.set_active("missing", False)

    def test_session_for_unknown_account(self, memory_store):
        with pytest.raises(NotFound):
            memory_store.create_session(Session.new("missing", now=NOW))

    def test_profile_update_moves_phone(self, memory_store):
        created = _account(memory_store, phone="5550001111")
        memory_store.update_profile(created.id, {"first_name": "F"}, "5550002222")
        other = _account(memory_store, email="gina@example.com", phone="5550001111")
        assert other.phone == "5550001111"


class TestTokensOnAccount:
    def test_password_reset_consumed_once(self, memory_store):
        created = _account(memory_store)
        memory_store.set_password_reset(created.id, "reset-hash", NOW + timedelta(hours=1))

        assert memory_store.consume_password_reset("reset-hash", NOW).id == created.id
        assert memory_store.consume_password_reset("reset-hash", NOW) is None

    def test_expired_reset_is_cleared(self, memory_store):
        created = _account(memory_store)
        memory_store.set_password_reset(created.id, "reset-hash", NOW - timedelta(minutes=1))

        assert memory_store.consume_password_reset("reset-hash", NOW) is None
        assert memory_store.get_account(created.id).password_reset_token_hash is None

    def test_verification_token_lookup(self, memory_store):
        created = _account(
            memory_store,
            email_verification_token_hash="verify-hash",
            email_verification_expires_at=NOW + timedelta(hours=24),
        )
        assert memory_store.find_account_by_verification_token("verify-hash", NOW).id == created.id
        assert memory_store.find_account_by_verification_token("verify-hash", NOW + timedelta(days=2)) is None

        memory_store.mark_email_verified(created.id)
        assert memory_store.find_account_by_verification_token("verify-hash", NOW) is None


class TestTwoFactorState:
    def test_enable_requires_pending_secret(self, memory_store):
        created = _account(memory_store)
        assert not memory_store.enable_two_factor(created.id, NOW)

        memory_store.set_two_factor_pending(created.id, "JBSWY3DPEHPK3PXP", ["h1", "h2"], "salt")
        assert memory_store.enable_two_factor(created.id, NOW)
        assert not memory_store.enable_two_factor(created.id, NOW)

    def test_failed_attempt_while_locked_leaves_state(self, memory_store):
        created = _account(memory_store)
        limits = {"threshold": 1, "window": timedelta(minutes=15), "lock_duration": timedelta(minutes=15)}
        first = memory_store.record_failed_attempt(created.id, AttemptKind.PASSWORD, now=NOW, **limits)
        later = memory_store.record_failed_attempt(
            created.id, AttemptKind.PASSWORD, now=NOW + timedelta(minutes=5), **limits
        )
        assert later.locked_until == first.locked_until == NOW + timedelta(minutes=15)
        assert later.last_failed_at == NOW

    def test_clear_resets_second_factor_lockout(self, memory_store):
        created = _account(memory_store)
        memory_store.record_failed_attempt(
            created.id,
            AttemptKind.TWO_FACTOR,
            threshold=1,
            window=timedelta(minutes=5),
            lock_duration=timedelta(minutes=5),
            now=NOW,
        )
        assert memory_store.get_account(created.id).two_factor_lockout.is_locked(NOW)

        memory_store.clear_two_factor(created.id)
        assert not memory_store.get_account(created.id).two_factor_lockout.is_locked(NOW)


class TestPersistence:
    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path), encryption_key=TEST_SECRET)
        created = _account(store, phone="5550001111")
        store.set_two_factor_pending(created.id, "JBSWY3DPEHPK3PXP", ["h1"], "salt")
        store.set_approval(created.id, ApprovalStatus.REJECTED, "missing licence")
        session = store.create_session(Session.new(created.id, now=NOW, device="tablet"))
        store.save_refresh_token(
            RefreshTokenRecord(
                token_hash="rt",
                account_id=created.id,
                session_id=session.id,
                created_at=NOW,
                expires_at=NOW + timedelta(days=7),
            )
        )
        raw = (tmp_path / "state" / "account_store.json").read_text()
        assert "JBSWY3DPEHPK3PXP" not in raw

        restored = MemoryStore(fs_root=str(tmp_path), encryption_key=TEST_SECRET)
        account = restored.get_account_by_email("frank@example.com")
        assert account.two_factor.secret == "JBSWY3DPEHPK3PXP"
        assert account.rejection_reason == "missing licence"
        assert restored.get_session(session.id).device == "tablet"
        assert restored.get_refresh_token("rt").is_live(NOW)
        with pytest.raises(ConstraintViolation):
            _account(restored, email="gina@example.com", phone="5550001111")
