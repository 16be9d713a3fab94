"""
Tests for credential encryption.
"""

import pytest
from cryptography.fernet import Fernet

from cluster_manager.crypto import (
    ENCRYPTION_KEY_ENV,
    SALT_ENV,
    SECRET_ENV,
    CredentialEncryption,
    generate_credentials,
    generate_password,
)


class TestCredentialEncryption:
    """Test Fernet encryption of cluster passwords."""

    def test_round_trip(self, encryption):
        token = encryption.encrypt("p@ss w0rd")
        assert token != "p@ss w0rd"
        assert encryption.decrypt(token) == "p@ss w0rd"

    def test_tokens_differ_per_call(self, encryption):
        assert encryption.encrypt("same") != encryption.encrypt("same")

    def test_empty_token_rejected(self, encryption):
        with pytest.raises(ValueError, match="Empty token"):
            encryption.decrypt("")

    def test_token_from_other_key_rejected(self, encryption):
        other = CredentialEncryption(Fernet.generate_key().decode())
        with pytest.raises(ValueError, match="cannot be decrypted"):
            encryption.decrypt(other.encrypt("secret"))

    def test_key_from_environment(self, monkeypatch):
        key = Fernet.generate_key().decode()
        monkeypatch.setenv(ENCRYPTION_KEY_ENV, key)

        token = CredentialEncryption().encrypt("secret")

        assert CredentialEncryption(key).decrypt(token) == "secret"

    def test_derived_key_is_stable(self, monkeypatch):
        monkeypatch.delenv(ENCRYPTION_KEY_ENV, raising=False)
        monkeypatch.setenv(SECRET_ENV, "manager-secret")
        monkeypatch.setenv(SALT_ENV, "a-salt-of-sixteen-chars")

        token = CredentialEncryption().encrypt("secret")

        assert CredentialEncryption().decrypt(token) == "secret"

    def test_missing_secret(self, monkeypatch):
        monkeypatch.delenv(ENCRYPTION_KEY_ENV, raising=False)
        monkeypatch.delenv(SECRET_ENV, raising=False)
        with pytest.raises(ValueError, match=SECRET_ENV):
            CredentialEncryption()

    def test_short_salt(self, monkeypatch):
        monkeypatch.delenv(ENCRYPTION_KEY_ENV, raising=False)
        monkeypatch.setenv(SECRET_ENV, "manager-secret")
        monkeypatch.setenv(SALT_ENV, "short")
        with pytest.raises(ValueError, match="at least 16"):
            CredentialEncryption()


class TestCredentialGeneration:
    def test_usernames_derive_from_cluster_id(self):
        admin, admin_pw, readonly, readonly_pw = generate_credentials(
            "5f0c2a9e-1b7d-4c6e-9a3f-0d8e7b6a5c4d"
        )
        assert admin == "cluster_admin_5f0c2a9e"
        assert readonly == "cluster_readonly_5f0c2a9e"
        assert admin_pw != readonly_pw

    def test_password_is_hex(self):
        password = generate_password()
        assert len(password) == 64
        int(password, 16)
