"""Tests for TOTP enrollment, verification and backup codes."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from accountcore.service.credentials import CredentialService
from accountcore.service.errors import (
    InvalidPasswordError,
    InvalidTwoFactorCodeError,
    TwoFactorRequiredError,
    TwoFactorStateError,
)
from accountcore.service.two_factor import (
    TwoFactorManager,
    generate_totp,
    hash_backup_code,
    normalize_backup_code,
)
from accountcore.storage.models import Role

from conftest import PASSWORD

RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


@pytest.fixture
def credentials(memory_store, settings):
    return CredentialService(memory_store, settings)


@pytest.fixture
def manager(memory_store, settings, credentials, clock):
    return TwoFactorManager(memory_store, settings, credentials, clock=clock)


@pytest.fixture
def account(credentials):
    return credentials.create_account(
        "bob@example.com", PASSWORD, Role.CUSTOMER, {"first_name": "Bob", "last_name": "Jones"}
    )


def _enable(manager, memory_store, account, clock):
    enrollment = manager.begin_enrollment(account, PASSWORD)
    pending = memory_store.get_account(account.id)
    manager.confirm_enrollment(pending, generate_totp(enrollment.secret, clock().timestamp()))
    return enrollment, memory_store.get_account(account.id)


class TestTotp:
    def test_rfc6238_vectors(self):
        assert generate_totp(RFC_SECRET, 59) == "287082"
        assert generate_totp(RFC_SECRET, 1111111109) == "081804"

    def test_invalid_secret_yields_no_code(self):
        assert generate_totp("not base32 !!", 59) == ""

    def test_backup_code_normalization(self):
        assert normalize_backup_code(" ab-12 cd34 ") == "AB12CD34"
        assert hash_backup_code("ab12cd34", "salt") == hash_backup_code("AB12-CD34", "salt")


class TestEnrollment:
    def test_requires_password(self, manager, account):
        with pytest.raises(InvalidPasswordError):
            manager.begin_enrollment(account, "wrong-password")

    def test_returns_secret_uri_and_codes_once(self, manager, memory_store, account):
        enrollment = manager.begin_enrollment(account, PASSWORD)

        assert enrollment.qr_payload.startswith("otpauth://totp/")
        assert "issuer=Marketplace" in enrollment.qr_payload
        assert f"secret={enrollment.secret}" in enrollment.qr_payload
        assert len(enrollment.backup_codes) == 10
        assert len(set(enrollment.backup_codes)) == 10

        stored = memory_store.get_account(account.id)
        assert stored.two_factor.pending
        assert not stored.two_factor.enabled
        assert stored.two_factor.secret == enrollment.secret
        for code in enrollment.backup_codes:
            assert code not in stored.two_factor.backup_code_hashes
        # the secret is encrypted at rest
        assert memory_store.accounts[account.id].two_factor.secret != enrollment.secret

    def test_confirm_rejects_wrong_code(self, manager, memory_store, account):
        manager.begin_enrollment(account, PASSWORD)
        with pytest.raises(InvalidTwoFactorCodeError):
            manager.confirm_enrollment(memory_store.get_account(account.id), "000000x")
        assert not memory_store.get_account(account.id).two_factor.enabled

    def test_confirm_without_enrollment(self, manager, account):
        with pytest.raises(TwoFactorStateError):
            manager.confirm_enrollment(account, "123456")

    def test_confirm_enables(self, manager, memory_store, account, clock):
        _, enabled = _enable(manager, memory_store, account, clock)
        assert enabled.two_factor.enabled
        assert enabled.two_factor.enrolled_at == clock()

    def test_cannot_enroll_twice(self, manager, memory_store, account, clock):
        _, enabled = _enable(manager, memory_store, account, clock)
        with pytest.raises(TwoFactorStateError):
            manager.begin_enrollment(enabled, PASSWORD)


class TestVerifyLogin:
    def test_accepts_codes_within_skew_window(self, manager, memory_store, account, clock):
        enrollment, enabled = _enable(manager, memory_store, account, clock)
        now = clock().timestamp()

        assert manager.verify_login(enabled, generate_totp(enrollment.secret, now - 60))
        assert manager.verify_login(enabled, generate_totp(enrollment.secret, now + 60))
        assert not manager.verify_login(enabled, generate_totp(enrollment.secret, now - 300))

    def test_backup_code_is_single_use(self, manager, memory_store, account, clock):
        enrollment, enabled = _enable(manager, memory_store, account, clock)
        code = enrollment.backup_codes[0]

        assert manager.verify_login(enabled, code.lower())
        reloaded = memory_store.get_account(account.id)
        assert len(reloaded.two_factor.backup_code_hashes) == 9
        assert not manager.verify_login(reloaded, code)
        # a stale view of the account still cannot reuse it
        assert not manager.verify_login(enabled, code)

    def test_concurrent_backup_code_redemption(self, manager, memory_store, account, clock):
        enrollment, enabled = _enable(manager, memory_store, account, clock)
        code = enrollment.backup_codes[3]

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: manager.verify_login(enabled, code), range(8)))

        assert results.count(True) == 1

    def test_not_enabled_never_verifies(self, manager, account, clock):
        assert not manager.verify_login(account, "123456")


class TestDisable:
    def test_requires_code_when_enabled(self, manager, memory_store, account, clock):
        _, enabled = _enable(manager, memory_store, account, clock)
        with pytest.raises(TwoFactorRequiredError):
            manager.disable(enabled, PASSWORD)

    def test_rejects_bad_code(self, manager, memory_store, account, clock):
        _, enabled = _enable(manager, memory_store, account, clock)
        with pytest.raises(InvalidTwoFactorCodeError):
            manager.disable(enabled, PASSWORD, "not-a-code")

    def test_rejects_bad_password(self, manager, memory_store, account, clock):
        enrollment, enabled = _enable(manager, memory_store, account, clock)
        with pytest.raises(InvalidPasswordError):
            manager.disable(enabled, "nope", generate_totp(enrollment.secret, clock().timestamp()))

    def test_clears_state(self, manager, memory_store, account, clock):
        enrollment, enabled = _enable(manager, memory_store, account, clock)
        manager.disable(enabled, PASSWORD, generate_totp(enrollment.secret, clock().timestamp()))

        cleared = memory_store.get_account(account.id).two_factor
        assert not cleared.enabled
        assert cleared.secret is None
        assert cleared.backup_code_hashes == []

    def test_pending_enrollment_needs_only_password(self, manager, memory_store, account):
        manager.begin_enrollment(account, PASSWORD)
        manager.disable(memory_store.get_account(account.id), PASSWORD)
        assert not memory_store.get_account(account.id).two_factor.pending
