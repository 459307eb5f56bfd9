"""
Tests for credential storage in the OS vault.
"""

from datetime import datetime, timezone

import keyring
from keyring.errors import KeyringError

from core.models import Credential
from core.secure_storage import KEYRING_SERVICE_NAME, SecureStorage


class TestSecureStorage:
    """Raw secrets and serialized service credentials."""

    def test_set_get_delete(self, memory_keyring):
        storage = SecureStorage()

        storage.set_credential("kitsu_credential", "s3cret")
        assert storage.get_credential("kitsu_credential") == "s3cret"
        assert memory_keyring.passwords == {(KEYRING_SERVICE_NAME, "kitsu_credential"): "s3cret"}

        storage.delete_credential("kitsu_credential")
        assert storage.get_credential("kitsu_credential") is None

    def test_deleting_missing_credential_is_harmless(self, memory_keyring):
        SecureStorage().delete_credential("anilist_credential")
        assert memory_keyring.passwords == {}

    def test_raw_keys_are_used_as_given(self, memory_keyring):
        storage = SecureStorage()
        storage.set_credential("anilist", "raw")
        storage.save_credential("anilist", Credential("access"))

        storage.delete_credential("anilist")

        assert storage.get_credential("anilist") is None
        assert storage.load_credential("anilist") == Credential("access")

    def test_credential_round_trip(self, memory_keyring):
        storage = SecureStorage()
        credential = Credential(
            "access", expires_at=datetime(2024, 2, 1, tzinfo=timezone.utc),
            refresh_token="refresh", metadata={"user_id": "42", "username": "yuki"},
        )

        storage.save_credential("kitsu", credential)

        assert (KEYRING_SERVICE_NAME, "kitsu_credential") in memory_keyring.passwords
        assert storage.load_credential("kitsu") == credential

    def test_forget_uses_the_credential_key(self, memory_keyring):
        storage = SecureStorage()
        storage.save_credential("anilist", Credential("access"))

        storage.forget_credential("anilist")

        assert storage.load_credential("anilist") is None

    def test_unreadable_credential_is_ignored(self, memory_keyring):
        memory_keyring.set_password(KEYRING_SERVICE_NAME, "anilist_credential", "not json")
        assert SecureStorage().load_credential("anilist") is None

    def test_vault_failures_are_logged_not_raised(self, monkeypatch, caplog):
        def broken(*args):
            raise KeyringError("vault locked")

        monkeypatch.setattr(keyring, "set_password", broken)
        monkeypatch.setattr(keyring, "get_password", broken)

        storage = SecureStorage()
        storage.set_credential("anilist_credential", "token")

        assert storage.get_credential("anilist_credential") is None
        assert "vault locked" in caplog.text
