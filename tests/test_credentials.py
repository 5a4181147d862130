"""Tests for goveectl.credentials."""

from __future__ import annotations

import json
import time
from pathlib import Path

import pytest

from goveectl import _constants
from goveectl.credentials import AuthContext, CertificateBundle, CredentialStore


def _auth(expires_in: float = 86400) -> AuthContext:
    return AuthContext(
        client_id="cid",
        account_topic="GA/topic",
        token="tok",
        refresh_token="refresh",
        expires_at=time.time() + expires_in,
    )


class TestAuthContext:
    def test_fresh_token(self):
        assert _auth(86400).expires_soon() is False

    def test_within_buffer(self):
        assert _auth(1800).expires_soon() is True

    def test_custom_buffer(self):
        assert _auth(1800).expires_soon(buffer=60) is False

    def test_dict_round_trip(self):
        ctx = _auth()
        assert AuthContext.from_dict(ctx.to_dict()) == ctx

    def test_refresh_token_falls_back_to_token(self):
        ctx = AuthContext.from_dict({"client_id": "c", "token": "t", "expires_at": 0})
        assert ctx.refresh_token == "t"


def _bundle(directory: Path) -> CertificateBundle:
    return CertificateBundle(directory / "ca.pem", directory / "cert.pem", directory / "key.pem")


class TestCertificateBundle:
    def test_missing(self, tmp_path):
        (tmp_path / "ca.pem").write_text("ca")
        bundle = _bundle(tmp_path)
        assert bundle.missing() == [tmp_path / "cert.pem", tmp_path / "key.pem"]
        assert not bundle.is_complete()

    def test_complete(self, tmp_path):
        for name in ("ca.pem", "cert.pem", "key.pem"):
            (tmp_path / name).write_text(name)
        bundle = _bundle(tmp_path)
        assert bundle.is_complete()

    def test_default_paths(self, tmp_path, monkeypatch):
        monkeypatch.setattr(_constants, "CERT_DIR", tmp_path)
        bundle = CertificateBundle.default()
        assert bundle.ca == tmp_path / "ca.pem"
        assert bundle.key == tmp_path / "key.pem"


class TestCredentialStoreFromSaved:
    def test_no_credentials_file(self, tmp_path, monkeypatch):
        monkeypatch.setattr(_constants, "CRED_FILE", tmp_path / "nonexistent.json")
        with pytest.raises(FileNotFoundError, match="No saved credentials"):
            CredentialStore.from_saved()

    def test_loads_credentials(self, tmp_path):
        cred_file = tmp_path / "credentials.json"
        cred_file.write_text(
            json.dumps(
                {
                    "apiKey": "saved-key",
                    "email": "me@example.com",
                    "password": "pw",
                    "auth": _auth().to_dict(),
                }
            )
        )
        store = CredentialStore.from_saved(cred_file)
        assert store.api_key == "saved-key"
        assert store.email == "me@example.com"
        assert store.auth is not None
        assert store.auth.account_topic == "GA/topic"


class TestCredentialStoreFromEnv:
    def test_env_key_without_file(self, tmp_path, monkeypatch):
        monkeypatch.setattr(_constants, "CRED_FILE", tmp_path / "none.json")
        monkeypatch.setenv("GOVEE_API_KEY", "env-key")
        assert CredentialStore.from_env().api_key == "env-key"

    def test_explicit_key_overrides_saved(self, tmp_path, monkeypatch):
        cred_file = tmp_path / "credentials.json"
        cred_file.write_text(json.dumps({"apiKey": "saved-key", "email": "me@example.com"}))
        monkeypatch.setattr(_constants, "CRED_FILE", cred_file)
        monkeypatch.delenv("GOVEE_API_KEY", raising=False)

        store = CredentialStore.from_env("explicit")
        assert store.api_key == "explicit"
        assert store.email == "me@example.com"

    def test_saved_key_used_when_nothing_else(self, tmp_path, monkeypatch):
        cred_file = tmp_path / "credentials.json"
        cred_file.write_text(json.dumps({"apiKey": "saved-key"}))
        monkeypatch.setattr(_constants, "CRED_FILE", cred_file)
        monkeypatch.delenv("GOVEE_API_KEY", raising=False)

        assert CredentialStore.from_env().api_key == "saved-key"


class TestCredentialStoreSave:
    def test_save_and_permissions(self, tmp_path):
        cred_file = tmp_path / "config" / "credentials.json"
        store = CredentialStore("k", email="me@example.com", password="pw")
        store.save(cred_file)

        data = json.loads(cred_file.read_text())
        assert data == {"apiKey": "k", "email": "me@example.com", "password": "pw"}
        assert (cred_file.stat().st_mode & 0o777) == 0o600

    def test_set_auth_persists_file_backed_store(self, tmp_path):
        cred_file = tmp_path / "credentials.json"
        store = CredentialStore("k")
        store.save(cred_file)

        store.set_auth(_auth())
        data = json.loads(cred_file.read_text())
        assert data["auth"]["token"] == "tok"

    def test_set_auth_in_memory_store_writes_nothing(self, tmp_path, monkeypatch):
        monkeypatch.setattr(_constants, "CRED_FILE", tmp_path / "credentials.json")
        CredentialStore("k").set_auth(_auth())
        assert not (tmp_path / "credentials.json").exists()

    def test_set_login_clears_auth(self):
        store = CredentialStore("k", auth=_auth())
        store.set_login("new@example.com", "pw2")
        assert store.auth is None
        assert store.email == "new@example.com"
