"""Tests for the brute-force lockout policy."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from accountcore.service.errors import AccountLockedError
from accountcore.service.lockout import LoginPolicy
from accountcore.service.notifications import NotificationEvent, Notifier
from accountcore.storage.models import AttemptKind, Role


@pytest.fixture
def notifier(dispatcher):
    return Notifier(dispatcher)


@pytest.fixture
def policy(memory_store, settings, notifier, clock):
    return LoginPolicy(memory_store, settings, notifier, clock=clock)


@pytest.fixture
def account(memory_store):
    return memory_store.create_account(
        email="carol@example.com", password_hash="x", role=Role.CUSTOMER
    )


def _fail(policy, memory_store, account_id, times, kind=AttemptKind.PASSWORD):
    for _ in range(times):
        policy.record_failure(memory_store.get_account(account_id), kind)


class TestLockTransitions:
    def test_below_threshold_stays_open(self, policy, memory_store, account):
        _fail(policy, memory_store, account.id, 4)
        reloaded = memory_store.get_account(account.id)

        assert reloaded.lockout.failed_attempts == 4
        policy.ensure_unlocked(reloaded)

    def test_fifth_failure_locks_and_resets_counter(self, policy, memory_store, account):
        _fail(policy, memory_store, account.id, 4)
        with pytest.raises(AccountLockedError) as excinfo:
            policy.record_failure(memory_store.get_account(account.id))

        assert excinfo.value.retry_after_seconds == 15 * 60
        assert excinfo.value.detail["retry_after_seconds"] == 15 * 60
        locked = memory_store.get_account(account.id)
        assert locked.lockout.failed_attempts == 0
        with pytest.raises(AccountLockedError):
            policy.ensure_unlocked(locked)

    def test_lock_expires(self, policy, memory_store, account, clock):
        _fail(policy, memory_store, account.id, 4)
        with pytest.raises(AccountLockedError):
            policy.record_failure(memory_store.get_account(account.id))

        clock.advance(minutes=14)
        with pytest.raises(AccountLockedError) as excinfo:
            policy.ensure_unlocked(memory_store.get_account(account.id))
        assert excinfo.value.retry_after_seconds == 60

        clock.advance(minutes=1, seconds=1)
        policy.ensure_unlocked(memory_store.get_account(account.id))

    def test_success_does_not_unlock_early(self, policy, memory_store, account):
        _fail(policy, memory_store, account.id, 4)
        with pytest.raises(AccountLockedError):
            policy.record_failure(memory_store.get_account(account.id))

        policy.record_success(memory_store.get_account(account.id))
        with pytest.raises(AccountLockedError):
            policy.ensure_unlocked(memory_store.get_account(account.id))

    def test_success_resets_counter(self, policy, memory_store, account):
        _fail(policy, memory_store, account.id, 3)
        policy.record_success(memory_store.get_account(account.id))
        assert memory_store.get_account(account.id).lockout.failed_attempts == 0

    def test_stale_failures_fall_out_of_window(self, policy, memory_store, account, clock):
        _fail(policy, memory_store, account.id, 4)
        clock.advance(minutes=16)
        state = policy.record_failure(memory_store.get_account(account.id))
        assert state.failed_attempts == 1


class TestCounters:
    def test_two_factor_counter_is_separate(self, policy, memory_store, account):
        _fail(policy, memory_store, account.id, 4, AttemptKind.TWO_FACTOR)
        with pytest.raises(AccountLockedError) as excinfo:
            policy.record_failure(memory_store.get_account(account.id), AttemptKind.TWO_FACTOR)
        assert excinfo.value.detail["kind"] == "two_factor"
        assert excinfo.value.retry_after_seconds == 5 * 60

        reloaded = memory_store.get_account(account.id)
        policy.ensure_unlocked(reloaded)
        with pytest.raises(AccountLockedError):
            policy.ensure_unlocked(reloaded, AttemptKind.TWO_FACTOR)

    def test_failures_while_locked_do_not_extend_lock(self, policy, memory_store, account, clock):
        stale = memory_store.get_account(account.id)
        _fail(policy, memory_store, account.id, 4)
        with pytest.raises(AccountLockedError):
            policy.record_failure(memory_store.get_account(account.id))
        locked_until = memory_store.get_account(account.id).lockout.locked_until

        clock.advance(minutes=1)
        for _ in range(5):
            with pytest.raises(AccountLockedError) as excinfo:
                policy.record_failure(stale)
        assert excinfo.value.retry_after_seconds == 14 * 60
        reloaded = memory_store.get_account(account.id)
        assert reloaded.lockout.locked_until == locked_until
        assert reloaded.lockout.failed_attempts == 0

    async def test_raced_failures_notify_once(self, policy, memory_store, account, notifier, dispatcher):
        stale = memory_store.get_account(account.id)
        _fail(policy, memory_store, account.id, 4)
        with pytest.raises(AccountLockedError):
            policy.record_failure(memory_store.get_account(account.id))
        with pytest.raises(AccountLockedError):
            policy.record_failure(stale)
        await notifier.drain()
        assert len(dispatcher.payloads(NotificationEvent.ACCOUNT_LOCKED)) == 1

    def test_concurrent_failures_are_all_counted(self, policy, memory_store, account):
        snapshot = memory_store.get_account(account.id)
        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(lambda _: policy.record_failure(snapshot), range(4)))
        assert memory_store.get_account(account.id).lockout.failed_attempts == 4


class TestLockNotification:
    async def test_password_lock_notifies(self, policy, memory_store, account, notifier, dispatcher):
        _fail(policy, memory_store, account.id, 4)
        with pytest.raises(AccountLockedError):
            policy.record_failure(memory_store.get_account(account.id))
        await notifier.drain()

        events = dispatcher.payloads(NotificationEvent.ACCOUNT_LOCKED)
        assert len(events) == 1
        assert events[0]["account_id"] == account.id
        assert events[0]["retry_after_seconds"] == 15 * 60

    async def test_two_factor_lock_is_silent(self, policy, memory_store, account, notifier, dispatcher):
        _fail(policy, memory_store, account.id, 4, AttemptKind.TWO_FACTOR)
        with pytest.raises(AccountLockedError):
            policy.record_failure(memory_store.get_account(account.id), AttemptKind.TWO_FACTOR)
        await notifier.drain()
        assert dispatcher.events == []

    async def test_failing_dispatcher_does_not_block_lock(self, memory_store, settings, account, clock):
        class Broken:
            async def dispatch(self, event, payload):
                raise RuntimeError("smtp down")

        notifier = Notifier(Broken())
        policy = LoginPolicy(memory_store, settings, notifier, clock=clock)
        _fail(policy, memory_store, account.id, 4)
        with pytest.raises(AccountLockedError):
            policy.record_failure(memory_store.get_account(account.id))
        await notifier.drain()
        assert memory_store.get_account(account.id).lockout.locked_until is not None
