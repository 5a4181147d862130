"""Credential storage: the API key plus the derived secondary-login session."""

from __future__ import annotations

import json
import os
import time
from dataclasses import asdict, dataclass
from pathlib import Path

from goveectl import _constants
from goveectl._constants import API_KEY_ENV, TOKEN_EXPIRY_BUFFER


@dataclass(frozen=True)
class AuthContext:
    """Broker credentials obtained from the secondary login."""

    client_id: str
    account_topic: str
    token: str
    refresh_token: str
    expires_at: float
    """Unix timestamp after which :attr:`token` is no longer valid."""

    def expires_soon(self, buffer: float = TOKEN_EXPIRY_BUFFER) -> bool:
        """True when the token expires within *buffer* seconds."""
        return time.time() >= self.expires_at - buffer

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> AuthContext:
        return cls(
            client_id=str(data["client_id"]),
            account_topic=str(data.get("account_topic", "")),
            token=str(data["token"]),
            refresh_token=str(data.get("refresh_token") or data["token"]),
            expires_at=float(str(data.get("expires_at", 0))),
        )


@dataclass(frozen=True)
class CertificateBundle:
    """Paths to the TLS material used by the certificate-authenticated broker."""

    ca: Path
    cert: Path
    key: Path

    @classmethod
    def default(cls) -> CertificateBundle:
        cert_dir = _constants.CERT_DIR
        return cls(cert_dir / "ca.pem", cert_dir / "cert.pem", cert_dir / "key.pem")

    def missing(self) -> list[Path]:
        """Paths that do not exist on disk."""
        return [p for p in (self.ca, self.cert, self.key) if not p.is_file()]

    def is_complete(self) -> bool:
        return not self.missing()


class CredentialStore:
    """Holds the API key, optional login credentials and cached AuthContext.

    Use :meth:`from_saved` to load ``~/.config/goveectl/credentials.json``;
    stores loaded from disk persist themselves whenever the cached
    :class:`AuthContext` changes.
    """

    def __init__(
        self,
        api_key: str = "",
        *,
        email: str = "",
        password: str = "",
        auth: AuthContext | None = None,
        path: Path | None = None,
    ) -> None:
        self._api_key = api_key
        self._email = email
        self._password = password
        self._auth = auth
        self._path = path

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_saved(cls, path: Path | None = None) -> CredentialStore:
        """Load a store from a credentials file.

        Raises :class:`FileNotFoundError` if the file does not exist.
        """
        path = path or _constants.CRED_FILE
        if not path.exists():
            raise FileNotFoundError(
                f"No saved credentials at {path}. Run `goveectl login` first."
            )
        data = json.loads(path.read_text())
        auth_data = data.get("auth")
        return cls(
            str(data.get("apiKey", "")),
            email=str(data.get("email", "")),
            password=str(data.get("password", "")),
            auth=AuthContext.from_dict(auth_data) if isinstance(auth_data, dict) else None,
            path=path,
        )

    @classmethod
    def from_env(cls, api_key: str | None = None) -> CredentialStore:
        """Build a store from *api_key*, ``GOVEE_API_KEY`` or the saved file.

        An explicit key or the environment variable overrides the key in
        the saved file; login credentials still come from the file when
        it exists.
        """
        key = api_key or os.environ.get(API_KEY_ENV, "")
        try:
            store = cls.from_saved()
        except FileNotFoundError:
            return cls(key)
        if key:
            store._api_key = key
        return store

    def save(self, path: Path | None = None) -> None:
        """Persist credentials (mode 0600) and remember *path* for later saves."""
        path = path or self._path or _constants.CRED_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        data: dict[str, object] = {
            "apiKey": self._api_key,
            "email": self._email,
            "password": self._password,
        }
        if self._auth is not None:
            data["auth"] = self._auth.to_dict()
        path.write_text(json.dumps(data, indent=2))
        path.chmod(0o600)
        self._path = path

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def api_key(self) -> str:
        return self._api_key

    @property
    def email(self) -> str:
        return self._email

    @property
    def password(self) -> str:
        return self._password

    @property
    def auth(self) -> AuthContext | None:
        """Cached secondary-login session, if any."""
        return self._auth

    def set_login(self, email: str, password: str) -> None:
        self._email = email
        self._password = password
        self._auth = None

    def set_auth(self, auth: AuthContext | None) -> None:
        """Replace the cached session, persisting it for file-backed stores."""
        self._auth = auth
        if self._path is not None:
            self.save()
