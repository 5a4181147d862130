"""High-level controller tying the HTTP client, broker sessions and state together.

Typical use::

    async with Controller(CredentialStore.from_env()) as ctl:
        lamp = ctl.find_device("Desk lamp")
        await ctl.toggle_power(lamp, True)
        print(ctl.get_power_state(lamp))

Entering the context runs discovery and starts the poll loop; leaving it
stops polling and closes every broker session.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

import aiohttp

from goveectl import _constants
from goveectl.auth import Authenticator, fetch_device_topics
from goveectl.capabilities import Instance, rgb_to_int
from goveectl.client import Client
from goveectl.credentials import CertificateBundle, CredentialStore
from goveectl.devices import Device, StateSnapshot
from goveectl.exceptions import GoveeError
from goveectl.mqtt import BrokerSession, PushEvent, SessionManager, account_topic
from goveectl.state import Listener, Reconciler

_LOGGER = logging.getLogger(__name__)


class Controller:
    """Owns one account's devices, their state and the push sessions.

    Args:
        store: Credential store, or a bare API key.
        client: HTTP client; built from the store's API key when omitted.
        reconciler: State reconciler; a default one when omitted.
        sessions: Broker session manager.
        authenticator: Secondary-login helper for the certificate broker.
        poll_interval: Seconds between state refreshes once started.
    """

    def __init__(
        self,
        store: CredentialStore | str,
        *,
        client: Client | None = None,
        reconciler: Reconciler | None = None,
        sessions: SessionManager | None = None,
        authenticator: Authenticator | None = None,
        poll_interval: float = _constants.POLL_INTERVAL,
    ) -> None:
        if isinstance(store, str):
            store = CredentialStore(store)
        self._store = store
        self._client = client or Client(store.api_key)
        self._reconciler = reconciler or Reconciler()
        self._sessions = sessions or SessionManager()
        self._authenticator = authenticator or Authenticator(store)
        self._poll_interval = poll_interval
        self._devices: dict[str, Device] = {}
        self._topics: dict[str, str] = {}
        self._poll_task: asyncio.Task[None] | None = None

    async def __aenter__(self) -> Controller:
        await self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def devices(self) -> list[Device]:
        """Devices from the last discovery, in API order."""
        return list(self._devices.values())

    @property
    def client(self) -> Client:
        return self._client

    @property
    def reconciler(self) -> Reconciler:
        return self._reconciler

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def is_running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def find_device(self, ref: str | int) -> Device | None:
        """Look a device up by list index, device id or name (case-insensitive)."""
        devices = self.devices
        if isinstance(ref, int) or (isinstance(ref, str) and ref.isdigit()):
            index = int(ref)
            if 0 <= index < len(devices):
                return devices[index]
        ref = str(ref)
        if ref in self._devices:
            return self._devices[ref]
        lowered = ref.lower()
        for device in devices:
            if device.name.lower() == lowered:
                return device
        return None

    # ------------------------------------------------------------------
    # Discovery & state
    # ------------------------------------------------------------------

    async def list_devices(self) -> list[Device]:
        """Re-discover the account's lights.

        Devices without an on/off capability are ignored.  State for
        devices that are no longer listed is evicted.
        """
        devices = [d for d in await self._client.list_devices() if d.is_light]
        self._devices = {d.device_id: d for d in devices}
        evicted = self._reconciler.retain(self._devices)
        if evicted:
            _LOGGER.info("Evicted %d vanished device(s): %s", len(evicted), ", ".join(evicted))
        return devices

    async def discover(self) -> list[Device]:
        """List devices, then fetch state for each one."""
        devices = await self.list_devices()
        await self.refresh_all()
        return devices

    async def get_state(self, device: Device) -> StateSnapshot:
        """Fetch *device*'s state, merge it and return the merged snapshot."""
        snapshot = await self._client.fetch_state(device)
        return self._reconciler.merge_snapshot(device.device_id, snapshot)

    def snapshot(self, device: Device) -> StateSnapshot | None:
        return self._reconciler.snapshot(device.device_id)

    async def refresh_all(self) -> None:
        """Fetch state for every known device, one at a time.

        A failing device is logged and skipped.
        """
        for device in self.devices:
            try:
                await self.get_state(device)
            except (GoveeError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                _LOGGER.warning("State refresh for %s failed: %s", device.name, e)

    def get_power_state(self, device: Device) -> bool | None:
        return self._reconciler.power(device.device_id)

    def get_brightness(self, device: Device) -> int | None:
        return self._reconciler.brightness(device.device_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call *listener* on every state change; returns an unsubscribe function."""
        return self._reconciler.add_listener(listener)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def toggle_power(self, device: Device, on: bool) -> None:
        """Switch *device* on or off; the new state shows immediately.

        Raises whatever the HTTP client raised after rolling back.
        """
        await self._reconciler.write(
            device.device_id,
            Instance.POWER,
            1 if on else 0,
            lambda: self._client.toggle_power(device, on),
        )

    async def set_brightness(self, device: Device, pct: float, *, commit: bool = True) -> None:
        """Set brightness.

        With ``commit=False`` the value is shown at once and sent after the
        slider has been still for the debounce interval.
        """
        await self._reconciler.set_brightness(
            device.device_id,
            pct,
            lambda value: self._client.set_brightness(device, value),
            commit=commit,
        )

    async def set_color(self, device: Device, rgb: tuple[int, int, int]) -> None:
        await self._reconciler.write(
            device.device_id,
            Instance.COLOR_RGB,
            rgb_to_int(rgb),
            lambda: self._client.set_color(device, rgb),
        )

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    async def connect_push(
        self,
        *,
        simple: bool = True,
        certified: bool = False,
        certificates: CertificateBundle | None = None,
        use_certificates: bool = True,
        allow_insecure: bool = False,
        on_disconnect: Callable[[], Awaitable[None]] | None = None,
    ) -> list[BrokerSession]:
        """Open broker sessions that feed push events into the state.

        The simple session subscribes the account topic.  The certified
        session logs in (raising :class:`~goveectl.exceptions.AuthError`
        on failure) and subscribes every device topic it can find.

        Raises:
            ConfigError: Certificate material is missing, or certificates
                are disabled without *allow_insecure*.
        """
        opened: list[BrokerSession] = []
        if simple:
            session = await self._sessions.open_simple(
                self._store.api_key, self._on_push, on_disconnect=on_disconnect
            )
            await session.subscribe(account_topic(self._store.api_key))
            opened.append(session)

        if certified:
            auth = await self._authenticator.get()
            cert_session = await self._sessions.open_certified(
                self._authenticator,
                self._on_push,
                certificates=certificates or CertificateBundle.default(),
                use_certificates=use_certificates,
                allow_insecure=allow_insecure,
                on_disconnect=on_disconnect,
            )
            try:
                self._topics = await fetch_device_topics(auth)
            except (GoveeError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                _LOGGER.warning("Could not fetch device topics: %s", e)
                self._topics = {}
            for topic in self._topics.values():
                await cert_session.subscribe(topic)
            opened.append(cert_session)
        return opened

    async def request_status(self, device: Device) -> bool:
        """Ask *device* to report its state over the certified session.

        Returns ``False`` when no session or topic is available, or the
        publish failed.
        """
        session = self._sessions.get("certified")
        topic = self._topics.get(device.device_id)
        if session is None or topic is None:
            _LOGGER.debug("No push topic for %s; status request skipped", device.device_id)
            return False
        return await session.publish_status(topic)

    async def _on_push(self, event: PushEvent) -> None:
        self._reconciler.apply_push(event.device_id, event.values)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Run discovery and start the poll loop."""
        await self.discover()
        if not self.is_running:
            self._poll_task = asyncio.create_task(self._poll_loop(), name="govee-poll")

    async def stop(self) -> None:
        """Stop polling, close broker sessions and drop pending writes.  Never raises."""
        if self._poll_task is not None:
            self._poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await self._poll_task
            self._poll_task = None
        await self._sessions.close_all()
        await self._reconciler.close()

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                await self.refresh_all()
            except Exception:
                _LOGGER.exception("State poll failed")
