"""Memory store: users, refresh token ledger, password reset atomicity."""

import threading
from datetime import timedelta

import pytest

from archivum.storage.errors import ConstraintViolation
from archivum.storage.memory import MemoryStore
from archivum.storage.models import Role, utcnow


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-key")


@pytest.fixture
def user(store):
    return store.create_user("Reader@Example.com", "reader_1", "hash-value")


class TestUsers:
    def test_email_normalized_and_unique(self, store, user):
        assert user.email == "reader@example.com"
        assert store.get_user_by_email("READER@example.com").id == user.id
        with pytest.raises(ConstraintViolation):
            store.create_user("reader@example.com", "other", "h")

    def test_default_role_is_visitor(self, user):
        assert user.role is Role.VISITOR

    def test_role_and_profile_updates(self, store, user):
        store.update_user_role(user.id, Role.CURATOR)
        updated = store.update_user_profile(user.id, biography="archivist")
        assert updated.role is Role.CURATOR
        assert updated.biography == "archivist"
        assert updated.name == "reader_1"
        assert store.update_user_role("missing", Role.ADMIN) is None

    def test_general_update_rejects_taken_email(self, store, user):
        other = store.create_user("other@example.com", "other", "h")
        updated = store.update_user(user.id, email="New@Example.com", role=Role.ADMIN)
        assert updated.email == "new@example.com"
        assert updated.role is Role.ADMIN
        assert updated.name == "reader_1"
        with pytest.raises(ConstraintViolation):
            store.update_user(user.id, email=other.email)
        assert store.update_user(user.id, email="new@example.com").email == "new@example.com"
        assert store.update_user("missing", name="x") is None

    def test_two_factor_secret_encrypted_at_rest(self, store, user):
        store.set_two_factor_secret(user.id, "JBSWY3DPEHPK3PXP")
        assert store.users[user.id].two_factor_secret != "JBSWY3DPEHPK3PXP"
        fetched = store.get_user(user.id)
        assert fetched.two_factor_secret == "JBSWY3DPEHPK3PXP"
        assert fetched.two_factor_enabled is False
        assert store.enable_two_factor(user.id) is True
        assert store.get_user(user.id).two_factor_enabled is True

    def test_state_survives_reload(self, tmp_path, store, user):
        token = store.create_refresh_token(user.id)
        reloaded = MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-key")
        assert reloaded.get_user(user.id).email == user.email
        assert reloaded.find_valid_refresh_token(token.token) is not None

    def test_delete_user_cascades_to_tokens(self, store, user):
        token = store.create_refresh_token(user.id)
        assert store.delete_user(user.id) is True
        assert store.find_valid_refresh_token(token.token) is None
        assert store.delete_user(user.id) is False


class TestRefreshLedger:
    def test_token_is_80_hex_chars_with_30_day_expiry(self, store, user):
        record = store.create_refresh_token(user.id, ttl_days=30)
        assert len(record.token) == 80
        int(record.token, 16)
        delta = record.expires_at - record.created_at
        assert delta == timedelta(days=30)

    def test_unknown_user_rejected(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_refresh_token("nobody")

    def test_consume_is_single_use(self, store, user):
        record = store.create_refresh_token(user.id)
        consumed = store.consume_refresh_token(record.token)
        assert consumed.user_id == user.id
        assert store.consume_refresh_token(record.token) is None

    def test_expired_token_not_consumable(self, store, user):
        record = store.create_refresh_token(user.id)
        store.refresh_tokens[record.token].expires_at = utcnow() - timedelta(seconds=1)
        assert store.consume_refresh_token(record.token) is None
        assert record.token not in store.refresh_tokens

    def test_concurrent_consume_has_single_winner(self, store, user):
        record = store.create_refresh_token(user.id)
        barrier = threading.Barrier(8)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            outcome = store.consume_refresh_token(record.token)
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [r for r in results if r is not None]
        assert len(winners) == 1

    def test_purge_removes_only_expired(self, store, user):
        live = store.create_refresh_token(user.id)
        stale = store.create_refresh_token(user.id)
        store.refresh_tokens[stale.token].expires_at = utcnow() - timedelta(days=1)
        assert store.purge_expired_refresh_tokens() == 1
        assert store.find_valid_refresh_token(live.token) is not None
        assert store.count_refresh_tokens(user.id) == 1

    def test_delete_user_refresh_tokens_leaves_other_users(self, store, user):
        other = store.create_user("other@example.com", "other", "h")
        store.create_refresh_token(user.id)
        store.create_refresh_token(user.id)
        kept = store.create_refresh_token(other.id)
        assert store.delete_user_refresh_tokens(user.id) == 2
        assert store.count_refresh_tokens(user.id) == 0
        assert store.find_valid_refresh_token(kept.token) is not None

    def test_delete_refresh_token_reports_removal(self, store, user):
        record = store.create_refresh_token(user.id)
        assert store.delete_refresh_token(record.token) is True
        assert store.delete_refresh_token(record.token) is False


class TestPasswordReset:
    def test_reset_swaps_hash_and_revokes_every_token(self, store, user):
        for _ in range(3):
            store.create_refresh_token(user.id)
        store.set_password_reset_token(user.id, "reset-token", utcnow() + timedelta(hours=1))

        assert store.find_user_by_reset_token("reset-token").id == user.id
        assert store.complete_password_reset(user.id, "reset-token", "new-hash") is True

        refreshed = store.get_user(user.id)
        assert refreshed.password_hash == "new-hash"
        assert refreshed.password_reset_token is None
        assert store.count_refresh_tokens(user.id) == 0

    def test_reset_token_is_single_use(self, store, user):
        store.set_password_reset_token(user.id, "once", utcnow() + timedelta(hours=1))
        assert store.complete_password_reset(user.id, "once", "h1") is True
        assert store.complete_password_reset(user.id, "once", "h2") is False
        assert store.get_user(user.id).password_hash == "h1"

    def test_expired_reset_token_rejected(self, store, user):
        store.set_password_reset_token(user.id, "late", utcnow() - timedelta(seconds=1))
        assert store.find_user_by_reset_token("late") is None
        assert store.complete_password_reset(user.id, "late", "h") is False
        assert store.get_user(user.id).password_hash == "hash-value"

    def test_wrong_reset_token_rejected(self, store, user):
        token = store.create_refresh_token(user.id)
        store.set_password_reset_token(user.id, "right", utcnow() + timedelta(hours=1))
        assert store.complete_password_reset(user.id, "wrong", "h") is False
        assert store.find_valid_refresh_token(token.token) is not None
