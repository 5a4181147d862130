"""Secondary login flow that yields MQTT broker credentials.

The primary API key is enough for HTTP control and the simple broker.
The certificate-authenticated broker and the per-device topic listing
instead need an :class:`~goveectl.credentials.AuthContext` obtained by
logging in with the account email and password::

    store = CredentialStore("api-key", email="me@example.com", password="...")
    auth = Authenticator(store)
    ctx = await auth.get()          # logs in on first use, cached after
    topics = await fetch_device_topics(ctx)
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import time

import aiohttp

from goveectl._constants import (
    APP_HEADERS,
    DEFAULT_TOKEN_LIFETIME,
    DEVICE_LIST_URL,
    HTTP_TIMEOUT,
    LOGIN_URL,
)
from goveectl.credentials import AuthContext, CredentialStore
from goveectl.exceptions import AuthError

_LOGGER = logging.getLogger(__name__)


def new_client_id() -> str:
    """A fresh 32-hex-character client identifier."""
    return secrets.token_hex(16)


def _unwrap(value: object) -> object:
    """Some login fields arrive as ``{"value": ...}``."""
    if isinstance(value, dict) and "value" in value:
        return value["value"]
    return value


async def login(email: str, password: str) -> AuthContext:
    """Exchange account credentials for broker credentials.

    Raises :class:`AuthError` when *email* or *password* is empty, when
    the login endpoint answers with an HTTP error, when it cannot
    be reached or answers with something other than JSON, or when the
    envelope ``status`` is not 200.
    """
    if not email or not password:
        raise AuthError("Email and password are required for the secondary login.")

    client_id = new_client_id()
    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                LOGIN_URL,
                json={"email": email, "password": password, "client": client_id},
                headers=APP_HEADERS,
                timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT),
            ) as resp:
                if resp.status >= 400:
                    raise AuthError(f"Login failed: HTTP {resp.status}")
                body = await resp.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise AuthError(f"Login failed: {str(e) or type(e).__name__}") from e
    except ValueError:
        raise AuthError("Login failed: bad response") from None

    if not isinstance(body, dict) or body.get("status") != 200:
        msg = body.get("message", "unknown error") if isinstance(body, dict) else "bad response"
        raise AuthError(f"Login failed: {msg}")

    client = body.get("client")
    if not isinstance(client, dict) or not client.get("token"):
        raise AuthError("Login failed: no token in response")

    token = str(client["token"])
    lifetime = client.get("tokenExpireCycle") or DEFAULT_TOKEN_LIFETIME
    ctx = AuthContext(
        client_id=str(client.get("client") or client_id),
        account_topic=str(_unwrap(client.get("topic")) or ""),
        token=token,
        refresh_token=str(client.get("refreshToken") or token),
        expires_at=time.time() + float(str(lifetime)),
    )
    _LOGGER.debug("Secondary login succeeded; token valid for %ss", lifetime)
    return ctx


async def fetch_device_topics(auth: AuthContext) -> dict[str, str]:
    """Fetch the ``device id -> MQTT topic`` map from the app device list."""
    headers = {
        **APP_HEADERS,
        "Authorization": f"Bearer {auth.token}",
        "clientId": auth.client_id,
        "timestamp": str(int(time.time() * 1000)),
    }
    async with aiohttp.ClientSession() as session:
        async with session.post(
            DEVICE_LIST_URL,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT),
        ) as resp:
            if resp.status in (401, 403):
                raise AuthError(f"Device list rejected token: HTTP {resp.status}")
            resp.raise_for_status()
            body = await resp.json(content_type=None)

    devices: list[object] = []
    if isinstance(body, dict):
        if isinstance(body.get("devices"), list):
            devices = body["devices"]
        elif isinstance(body.get("data"), dict) and isinstance(body["data"].get("devices"), list):
            devices = body["data"]["devices"]

    topics: dict[str, str] = {}
    for d in devices:
        if not isinstance(d, dict):
            continue
        device_id = d.get("device")
        topic = _unwrap(_settings(d).get("topic"))
        if isinstance(device_id, str) and device_id and isinstance(topic, str) and topic:
            topics[device_id] = topic
    return topics


def _settings(entry: dict[str, object]) -> dict[str, object]:
    """Dig ``deviceExt.deviceSettings`` out of a device entry.

    Both levels may be embedded JSON strings.
    """
    ext = _maybe_json(entry.get("deviceExt"))
    if not isinstance(ext, dict):
        return {}
    settings = _maybe_json(ext.get("deviceSettings"))
    return settings if isinstance(settings, dict) else {}


def _maybe_json(value: object) -> object:
    if isinstance(value, str) and value.strip().startswith("{"):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value


class Authenticator:
    """Lazily performs and caches the secondary login.

    The cached :class:`AuthContext` lives in the :class:`CredentialStore`
    so that file-backed stores reuse it across processes.  A context
    within one hour of expiry is replaced proactively; callers that see
    an authorization failure call :meth:`invalidate` and retry.
    """

    def __init__(self, store: CredentialStore) -> None:
        self._store = store
        self._lock = asyncio.Lock()

    @property
    def store(self) -> CredentialStore:
        return self._store

    async def get(self) -> AuthContext:
        """Return a usable AuthContext, logging in if needed."""
        auth = self._store.auth
        if auth is not None and not auth.expires_soon():
            return auth

        async with self._lock:
            # Another task may have logged in while we were waiting.
            auth = self._store.auth
            if auth is not None and not auth.expires_soon():
                return auth
            _LOGGER.info("Performing secondary login for %s", self._store.email or "<unset>")
            auth = await login(self._store.email, self._store.password)
            self._store.set_auth(auth)
            return auth

    def invalidate(self) -> None:
        """Drop the cached context so the next :meth:`get` logs in again."""
        self._store.set_auth(None)
