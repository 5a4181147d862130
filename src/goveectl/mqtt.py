"""MQTT session management for live device events.

Two broker variants share one connection loop:

* :class:`SimpleBrokerSession` authenticates with the API key as both
  username and password.  It subscribes nothing on its own; callers add
  the account topic (:func:`account_topic`) explicitly.
* :class:`CertBrokerSession` authenticates with TLS client certificates
  and the :class:`~goveectl.credentials.AuthContext` from the secondary
  login, and subscribes the account topic on every connect.

A reconnect drops every broker-side subscription, so each session keeps
its own topic set and re-subscribes all of it whenever the connection
comes back.  Broker errors are logged and never end a session; only
:meth:`BrokerSession.close` does.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import secrets
import ssl
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

import aiomqtt
import certifi

from goveectl import _constants
from goveectl._constants import ACCOUNT_TOPIC_PREFIX, MQTT_HOST, MQTT_KEEPALIVE, MQTT_PORT
from goveectl.auth import Authenticator
from goveectl.capabilities import Instance, rgb_to_int
from goveectl.credentials import CertificateBundle
from goveectl.exceptions import AuthError, ConfigError

_LOGGER = logging.getLogger(__name__)


class SessionPhase(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    CLOSING = "closing"
    CLOSED = "closed"
    ERRORING = "erroring"


@dataclass(frozen=True)
class PushEvent:
    """Capability values pushed by the broker for one device."""

    device_id: str
    sku: str = ""
    values: dict[str, object] = field(default_factory=dict)
    """``{instance: raw value}`` for every capability the message carried."""


PushCallback = Callable[[PushEvent], Awaitable[None]]

# IoT state keys -> capability instances
_STATE_KEYS: dict[str, Instance] = {
    "onOff": Instance.POWER,
    "brightness": Instance.BRIGHTNESS,
    "color": Instance.COLOR_RGB,
    "colorTemInKelvin": Instance.COLOR_TEMPERATURE,
}


def account_topic(api_key: str) -> str:
    """Account-scoped topic of the simple broker."""
    return f"{ACCOUNT_TOPIC_PREFIX}/{api_key}"


def make_transaction() -> str:
    """Time-based transaction id used to correlate published frames in logs."""
    return f"v_{int(time.time() * 1000)}000"


def build_status_payload(account: str | None = None) -> str:
    """JSON frame asking a device to report its status."""
    msg: dict[str, object] = {
        "cmd": "status",
        "cmdVersion": 2,
        "transaction": make_transaction(),
        "type": 0,
    }
    if account:
        msg["accountTopic"] = account
    return json.dumps({"msg": msg}, separators=(",", ":"))


def build_command_payload(cmd: str, data: object, account: str | None = None) -> str:
    """JSON frame carrying a device command (``turn``, ``brightness``, ...)."""
    msg: dict[str, object] = {
        "cmd": cmd,
        "data": data,
        "cmdVersion": 1,
        "transaction": make_transaction(),
        "type": 1,
    }
    if account:
        msg["accountTopic"] = account
    return json.dumps({"msg": msg}, separators=(",", ":"))


def parse_push_event(payload: bytes | bytearray | str) -> PushEvent | None:
    """Parse a broker message into a :class:`PushEvent` or ``None``.

    Understands the OpenAPI capability shape
    (``{device, capabilities: [{instance, state}]}``) and the IoT state
    shape (``{device, state: {onOff, brightness, ...}}``).  Non-JSON
    payloads, messages without a device id and messages that carry no
    values (acks, command echoes) yield ``None``.
    """
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    device_id = data.get("device")
    if not isinstance(device_id, str) or not device_id:
        return None

    values: dict[str, object] = {}
    caps = data.get("capabilities")
    if isinstance(caps, list):
        for cap in caps:
            if not isinstance(cap, dict) or not isinstance(cap.get("instance"), str):
                continue
            state = cap.get("state")
            if isinstance(state, list) and state and isinstance(state[0], dict):
                state = state[0]
            if isinstance(state, dict) and "value" in state:
                values[cap["instance"]] = state["value"]

    state = data.get("state")
    if isinstance(state, dict):
        for key, instance in _STATE_KEYS.items():
            if key not in state:
                continue
            raw = state[key]
            if instance is Instance.COLOR_RGB:
                if not isinstance(raw, dict):
                    continue
                raw = rgb_to_int((raw.get("r", 0), raw.get("g", 0), raw.get("b", 0)))
            elif instance is Instance.COLOR_TEMPERATURE and not raw:
                # 0 means "not in white mode"
                continue
            values[instance.value] = raw

    if not values:
        return None
    sku = data.get("sku")
    return PushEvent(device_id, sku if isinstance(sku, str) else "", values)


def make_insecure_tls_context() -> ssl.SSLContext:
    """TLS without peer verification.  Only for explicit opt-in."""
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    ctx.check_hostname = False
    ctx.verify_mode = ssl.CERT_NONE
    return ctx


def make_tls_context(
    certificates: CertificateBundle | None,
    *,
    use_certificates: bool = True,
    allow_insecure: bool = False,
) -> ssl.SSLContext:
    """Build the TLS context for the certificate-authenticated broker.

    Raises :class:`ConfigError` when certificates are requested but
    incomplete, or when they are not requested and *allow_insecure* is
    not set.
    """
    if use_certificates:
        if certificates is None:
            raise ConfigError("Certificate mode requested but no certificate bundle configured.")
        missing = certificates.missing()
        if missing:
            raise ConfigError(
                "Missing certificate material: " + ", ".join(str(p) for p in missing)
            )
        ctx = ssl.create_default_context(cafile=str(certificates.ca))
        ctx.load_cert_chain(certfile=str(certificates.cert), keyfile=str(certificates.key))
        return ctx
    if not allow_insecure:
        raise ConfigError(
            "Certificate use is disabled; pass allow_insecure=True to connect without "
            "verifying the broker."
        )
    return make_insecure_tls_context()


class BrokerSession:
    """One broker connection with its lifecycle phase and topic set.

    Call :meth:`start` to launch the background connection loop.
    Incoming messages are parsed with :func:`parse_push_event` and handed
    to *callback*; unparseable ones are dropped.
    """

    def __init__(
        self,
        name: str,
        callback: PushCallback,
        *,
        on_disconnect: Callable[[], Awaitable[None]] | None = None,
        reconnect_interval: float | None = None,
    ) -> None:
        self.name = name
        self._callback = callback
        self._on_disconnect = on_disconnect
        self._reconnect_interval = (
            _constants.RECONNECT_INTERVAL if reconnect_interval is None else reconnect_interval
        )
        self._phase = SessionPhase.CLOSED
        self._topics: set[str] = set()
        self._mqtt: aiomqtt.Client | None = None
        self._task: asyncio.Task[None] | None = None
        self._account: str | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def topics(self) -> frozenset[str]:
        return frozenset(self._topics)

    @property
    def is_connected(self) -> bool:
        """True when the broker connection is currently established."""
        return self._mqtt is not None

    @property
    def account_topic(self) -> str | None:
        return self._account

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._phase = SessionPhase.CONNECTING
        self._task = asyncio.create_task(self._run(), name=f"mqtt-{self.name}")

    async def close(self) -> None:
        """Unsubscribe (best effort) and stop the connection loop.

        Never raises.
        """
        if self._phase is SessionPhase.CLOSED and self._task is None:
            return
        self._phase = SessionPhase.CLOSING
        mqtt_client = self._mqtt
        if mqtt_client is not None:
            for topic in list(self._topics):
                try:
                    await mqtt_client.unsubscribe(topic)
                except (aiomqtt.MqttError, OSError) as e:
                    _LOGGER.debug("[%s] unsubscribe %s failed on close: %s", self.name, topic, e)
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._task
            self._task = None
        self._mqtt = None
        self._phase = SessionPhase.CLOSED
        _LOGGER.info("[%s] session closed", self.name)

    async def wait(self) -> None:
        """Wait until the connection loop ends (cancellation or close)."""
        if self._task is not None:
            await self._task

    # ------------------------------------------------------------------
    # Topics & publishing
    # ------------------------------------------------------------------

    async def subscribe(self, topic: str) -> None:
        """Add *topic* to the session; subscribe now if connected.

        Failures are logged; the topic stays in the set and is retried on
        the next connect.
        """
        self._topics.add(topic)
        if self._mqtt is not None:
            if await self._subscribe_one(self._mqtt, topic):
                self._phase = SessionPhase.SUBSCRIBED

    async def unsubscribe(self, topic: str) -> None:
        self._topics.discard(topic)
        if self._mqtt is not None:
            try:
                await self._mqtt.unsubscribe(topic)
            except aiomqtt.MqttError as e:
                _LOGGER.warning("[%s] unsubscribe %s failed: %s", self.name, topic, e)

    async def publish(self, topic: str, payload: str) -> bool:
        """Publish *payload* to *topic*.  Returns ``False`` (logged) on failure."""
        if self._mqtt is None:
            _LOGGER.warning("[%s] not connected; dropping publish to %s", self.name, topic)
            return False
        try:
            await self._mqtt.publish(topic, payload, qos=0)
        except aiomqtt.MqttError as e:
            _LOGGER.warning("[%s] publish to %s failed: %s", self.name, topic, e)
            return False
        _LOGGER.debug("[%s] published to %s: %s", self.name, topic, payload)
        return True

    async def publish_status(self, topic: str) -> bool:
        """Ask the device listening on *topic* to report its status."""
        return await self.publish(topic, build_status_payload(self._account))

    async def publish_command(self, topic: str, cmd: str, data: object) -> bool:
        return await self.publish(topic, build_command_payload(cmd, data, self._account))

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    async def _mqtt_params(self) -> dict[str, object]:
        """Keyword arguments for :class:`aiomqtt.Client`."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    async def _subscribe_one(self, mqtt_client: aiomqtt.Client, topic: str) -> bool:
        try:
            await mqtt_client.subscribe(topic, qos=0)
        except aiomqtt.MqttError as e:
            _LOGGER.warning("[%s] subscribe %s failed: %s", self.name, topic, e)
            return False
        _LOGGER.info("[%s] subscribed to %s", self.name, topic)
        return True

    async def _resubscribe(self, mqtt_client: aiomqtt.Client) -> None:
        results = [await self._subscribe_one(mqtt_client, t) for t in sorted(self._topics)]
        if results and all(results):
            self._phase = SessionPhase.SUBSCRIBED

    async def _dispatch(self, payload: bytes | bytearray | str) -> None:
        event = parse_push_event(payload)
        if event is None:
            _LOGGER.debug("[%s] ignoring message: %r", self.name, payload)
            return
        try:
            await self._callback(event)
        except Exception:
            _LOGGER.exception("[%s] push callback failed for %s", self.name, event.device_id)

    async def _run(self) -> None:
        """Connection loop: connect, re-subscribe, dispatch, reconnect.

        CancelledError is not caught, so :meth:`close` ends the loop.
        """
        while True:
            self._phase = SessionPhase.CONNECTING
            try:
                params = await self._mqtt_params()
                async with aiomqtt.Client(**params) as mqtt_client:  # type: ignore[arg-type]
                    self._mqtt = mqtt_client
                    self._phase = SessionPhase.CONNECTED
                    _LOGGER.info("[%s] connected to %s", self.name, params.get("hostname"))
                    try:
                        await self._resubscribe(mqtt_client)
                        async for message in mqtt_client.messages:
                            await self._dispatch(message.payload)  # type: ignore[arg-type]
                    finally:
                        self._mqtt = None
            except (aiomqtt.MqttError, AuthError, OSError) as e:
                self._phase = SessionPhase.ERRORING
                _LOGGER.warning("[%s] connection error: %s", self.name, e)
            if self._on_disconnect is not None:
                try:
                    await self._on_disconnect()
                except Exception:
                    _LOGGER.exception("[%s] disconnect callback failed", self.name)
            await asyncio.sleep(self._reconnect_interval)


class SimpleBrokerSession(BrokerSession):
    """Broker session authenticated with the API key."""

    def __init__(
        self,
        api_key: str,
        callback: PushCallback,
        *,
        name: str = "simple",
        on_disconnect: Callable[[], Awaitable[None]] | None = None,
        reconnect_interval: float | None = None,
    ) -> None:
        super().__init__(
            name, callback, on_disconnect=on_disconnect, reconnect_interval=reconnect_interval
        )
        self._api_key = api_key
        self._account = account_topic(api_key)

    async def _mqtt_params(self) -> dict[str, object]:
        return {
            "hostname": MQTT_HOST,
            "port": MQTT_PORT,
            "username": self._api_key,
            "password": self._api_key,
            "tls_context": ssl.create_default_context(cafile=certifi.where()),
            "keepalive": MQTT_KEEPALIVE,
        }


class CertBrokerSession(BrokerSession):
    """Broker session authenticated with client certificates.

    The TLS context is built eagerly so that missing certificate
    material raises :class:`ConfigError` from the constructor rather than
    inside the background loop.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        callback: PushCallback,
        *,
        certificates: CertificateBundle | None = None,
        use_certificates: bool = True,
        allow_insecure: bool = False,
        name: str = "certified",
        on_disconnect: Callable[[], Awaitable[None]] | None = None,
        reconnect_interval: float | None = None,
    ) -> None:
        super().__init__(
            name, callback, on_disconnect=on_disconnect, reconnect_interval=reconnect_interval
        )
        self._authenticator = authenticator
        self._tls_context = make_tls_context(
            certificates, use_certificates=use_certificates, allow_insecure=allow_insecure
        )
        self._insecure = not use_certificates
        self._suffix = secrets.token_hex(8)

    @property
    def insecure(self) -> bool:
        return self._insecure

    async def _mqtt_params(self) -> dict[str, object]:
        auth = await self._authenticator.get()
        if auth.account_topic:
            if self._account and self._account != auth.account_topic:
                self._topics.discard(self._account)
            self._account = auth.account_topic
            self._topics.add(auth.account_topic)
        if self._insecure:
            _LOGGER.warning(
                "[%s] INSECURE: connecting without broker certificate verification", self.name
            )
        return {
            "hostname": MQTT_HOST,
            "port": MQTT_PORT,
            "identifier": f"AP/{auth.client_id}/{self._suffix}",
            "tls_context": self._tls_context,
            "keepalive": MQTT_KEEPALIVE,
            "clean_session": True,
        }


class SessionManager:
    """Owns the live broker sessions, keyed by name."""

    def __init__(self, *, reconnect_interval: float | None = None) -> None:
        self._sessions: dict[str, BrokerSession] = {}
        self._reconnect_interval = reconnect_interval

    @property
    def sessions(self) -> dict[str, BrokerSession]:
        return dict(self._sessions)

    def get(self, name: str) -> BrokerSession | None:
        return self._sessions.get(name)

    async def open_simple(
        self,
        api_key: str,
        callback: PushCallback,
        *,
        on_disconnect: Callable[[], Awaitable[None]] | None = None,
    ) -> SimpleBrokerSession:
        session = SimpleBrokerSession(
            api_key,
            callback,
            on_disconnect=on_disconnect,
            reconnect_interval=self._reconnect_interval,
        )
        await self._register(session)
        return session

    async def open_certified(
        self,
        authenticator: Authenticator,
        callback: PushCallback,
        *,
        certificates: CertificateBundle | None = None,
        use_certificates: bool = True,
        allow_insecure: bool = False,
        on_disconnect: Callable[[], Awaitable[None]] | None = None,
    ) -> CertBrokerSession:
        """Open the certificate-authenticated session.

        Raises :class:`ConfigError` when the TLS material is unusable.
        """
        session = CertBrokerSession(
            authenticator,
            callback,
            certificates=certificates,
            use_certificates=use_certificates,
            allow_insecure=allow_insecure,
            on_disconnect=on_disconnect,
            reconnect_interval=self._reconnect_interval,
        )
        await self._register(session)
        return session

    async def close(self, name: str) -> None:
        session = self._sessions.pop(name, None)
        if session is not None:
            await session.close()

    async def close_all(self) -> None:
        for name in list(self._sessions):
            await self.close(name)

    async def _register(self, session: BrokerSession) -> None:
        await self.close(session.name)
        self._sessions[session.name] = session
        session.start()
