"""Govee OpenAPI HTTP client.

Issues authenticated discovery, state and control requests against the
Govee cloud API.  Each call opens its own :class:`aiohttp.ClientSession`,
so a :class:`Client` holds nothing but the API key::

    client = Client("my-api-key")
    devices = await client.list_devices()
    state = await client.fetch_state(devices[0])
    await client.set_brightness(devices[0], 40)
"""

from __future__ import annotations

import logging
import secrets
import time

import aiohttp

from goveectl._constants import API_BASE, API_KEY_HEADER, HTTP_TIMEOUT
from goveectl.capabilities import (
    COLOR_SETTING,
    ON_OFF,
    RANGE,
    Instance,
    clamp_brightness,
    rgb_to_int,
)
from goveectl.devices import Device, StateSnapshot
from goveectl.exceptions import TransportError, VendorError

_LOGGER = logging.getLogger(__name__)

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def make_request_id() -> str:
    """Return a time-prefixed unique request identifier (``req-<ms>-<rand>``)."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"req-{int(time.time() * 1000)}-{suffix}"


class Client:
    """Stateless wrapper around the Govee OpenAPI endpoints."""

    def __init__(self, api_key: str, *, base_url: str = API_BASE) -> None:
        self._api_key = api_key
        self._base_url = base_url

    @property
    def api_key(self) -> str:
        return self._api_key

    # ------------------------------------------------------------------
    # Discovery & state
    # ------------------------------------------------------------------

    async def list_devices_raw(self) -> list[dict[str, object]]:
        """Return the raw ``data`` array of ``GET /user/devices``.

        Raises :class:`VendorError` on a non-200 envelope.
        """
        body = await self._request("GET", "/user/devices")
        data = body.get("data")
        return data if isinstance(data, list) else []

    async def list_devices(self) -> list[Device]:
        """Fetch and validate the account's devices.

        Entries that fail validation are logged and skipped.
        """
        devices: list[Device] = []
        for entry in await self.list_devices_raw():
            try:
                devices.append(Device.from_payload(entry))
            except ValueError as e:
                _LOGGER.warning("Skipping invalid device entry: %s", e)
        return devices

    async def fetch_state_raw(self, device: Device) -> dict[str, object]:
        """Return the raw ``payload`` of ``POST /device/state``."""
        body = await self._request("POST", "/device/state", {"payload": device.identity()})
        payload = body.get("payload")
        return payload if isinstance(payload, dict) else {}

    async def fetch_state(self, device: Device) -> StateSnapshot:
        """Fetch the current capability values of *device*."""
        return StateSnapshot.from_payload(await self.fetch_state_raw(device))

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    async def control(
        self,
        device: Device,
        capability_type: str,
        instance: str | Instance,
        value: object,
    ) -> dict[str, object]:
        """Write one capability value.

        Raises:
            VendorError: The envelope ``code`` is not 200.
            TransportError: The API answered with an HTTP error status.
            aiohttp.ClientError: Network failures propagate unchanged.
        """
        if isinstance(instance, Instance):
            instance = instance.value
        body = {
            "payload": {
                **device.identity(),
                "capability": {"type": capability_type, "instance": instance, "value": value},
            }
        }
        _LOGGER.debug("Control %s %s=%r", device.device_id, instance, value)
        return await self._request("POST", "/device/control", body)

    async def toggle_power(self, device: Device, on: bool) -> dict[str, object]:
        return await self.control(device, ON_OFF, Instance.POWER, 1 if on else 0)

    async def set_brightness(self, device: Device, pct: float) -> dict[str, object]:
        """Set brightness, clamped to 1..100 before it is sent."""
        return await self.control(device, RANGE, Instance.BRIGHTNESS, clamp_brightness(pct))

    async def set_color(self, device: Device, rgb: tuple[int, int, int]) -> dict[str, object]:
        return await self.control(device, COLOR_SETTING, Instance.COLOR_RGB, rgb_to_int(rgb))

    async def set_color_temperature(self, device: Device, kelvin: int) -> dict[str, object]:
        """Set color temperature, clamped to the device's declared range if any."""
        cap = device.capability(Instance.COLOR_TEMPERATURE)
        rng = cap.value_range if cap is not None else None
        if rng is not None:
            kelvin = max(rng[0], min(rng[1], kelvin))
        return await self.control(device, COLOR_SETTING, Instance.COLOR_TEMPERATURE, int(kelvin))

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    async def _request(
        self, method: str, path: str, body: dict[str, object] | None = None
    ) -> dict[str, object]:
        """Send a request and unwrap the response envelope.

        POST bodies get a ``requestId`` when the caller did not set one.
        """
        headers = {API_KEY_HEADER: self._api_key, "Content-Type": "application/json"}
        if method == "POST":
            body = dict(body or {})
            body.setdefault("requestId", make_request_id())

        async with aiohttp.ClientSession() as session:
            async with session.request(
                method,
                f"{self._base_url}{path}",
                json=body,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=HTTP_TIMEOUT),
            ) as resp:
                if resp.status >= 400:
                    raise TransportError(resp.status, await _error_message(resp))
                try:
                    envelope = await resp.json(content_type=None)
                except ValueError:
                    raise VendorError(None, "Unexpected response format") from None

        if not isinstance(envelope, dict):
            raise VendorError(None, "Unexpected response format")
        if envelope.get("code") != 200:
            message = envelope.get("message") or "Unknown error"
            raise VendorError(envelope.get("code"), str(message))
        return envelope


async def _error_message(resp: aiohttp.ClientResponse) -> str:
    """Best-effort vendor ``message`` from an HTTP error response."""
    try:
        data = await resp.json(content_type=None)
    except (aiohttp.ContentTypeError, ValueError):
        data = None
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return resp.reason or f"HTTP {resp.status}"
