"""Device identity and state snapshot models."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from goveectl.capabilities import ON_OFF, Instance, resolve

_LOGGER = logging.getLogger(__name__)


def _key(instance: str | Instance) -> str:
    return instance.value if isinstance(instance, Instance) else instance


@dataclass(frozen=True)
class Capability:
    """A capability declared by a device in the discovery response."""

    type: str
    instance: str
    parameters: dict[str, object] = field(default_factory=dict, compare=False)

    @property
    def value_range(self) -> tuple[int, int] | None:
        """``(min, max)`` of an integer range capability, if declared."""
        rng = self.parameters.get("range")
        if not isinstance(rng, dict):
            return None
        try:
            return int(rng["min"]), int(rng["max"])
        except (KeyError, TypeError, ValueError):
            return None


@dataclass(frozen=True)
class Device:
    """An immutable device identity plus its declared capabilities.

    Built from one entry of the ``/user/devices`` response via
    :meth:`from_payload`; a fresh discovery supersedes it wholesale.
    """

    sku: str
    device_id: str
    name: str
    type: str = ""
    capabilities: tuple[Capability, ...] = ()

    @classmethod
    def from_payload(cls, data: dict[str, object]) -> Device:
        """Validate and build a Device from a discovery entry.

        Raises :class:`ValueError` if ``sku`` or ``device`` is missing.
        Capabilities whose instance is known but declared under an
        unexpected type are dropped.
        """
        sku = data.get("sku")
        device_id = data.get("device")
        if not isinstance(sku, str) or not sku:
            raise ValueError(f"Device entry without sku: {data!r}")
        if not isinstance(device_id, str) or not device_id:
            raise ValueError(f"Device entry without device id: {data!r}")

        caps: list[Capability] = []
        for raw in data.get("capabilities") or []:
            if not isinstance(raw, dict):
                continue
            cap_type = str(raw.get("type", ""))
            instance = str(raw.get("instance", ""))
            kind = resolve(instance)
            if kind is not None and kind.type != cap_type:
                _LOGGER.warning(
                    "Device %s declares %s as %s (expected %s); ignoring",
                    device_id,
                    instance,
                    cap_type,
                    kind.type,
                )
                continue
            params = raw.get("parameters")
            caps.append(Capability(cap_type, instance, params if isinstance(params, dict) else {}))

        name = data.get("deviceName")
        return cls(
            sku=sku,
            device_id=device_id,
            name=name if isinstance(name, str) and name else device_id,
            type=str(data.get("type", "")),
            capabilities=tuple(caps),
        )

    def capability(self, instance: str | Instance) -> Capability | None:
        """Return the declared capability for *instance*, if any."""
        key = _key(instance)
        for cap in self.capabilities:
            if cap.instance == key:
                return cap
        return None

    def supports(self, instance: str | Instance) -> bool:
        return self.capability(instance) is not None

    @property
    def is_light(self) -> bool:
        """Whether the device can be switched on and off."""
        return any(cap.type == ON_OFF for cap in self.capabilities)

    def identity(self) -> dict[str, str]:
        """The ``{sku, device}`` pair the API uses to address this device."""
        return {"sku": self.sku, "device": self.device_id}


@dataclass(frozen=True)
class CapabilityState:
    """The current value of one capability instance."""

    instance: str
    value: object
    type: str = ""


@dataclass(frozen=True)
class StateSnapshot:
    """Ordered capability values for one device at one point in time.

    Snapshots are immutable; every change produces a new snapshot.
    """

    capabilities: tuple[CapabilityState, ...] = ()

    @classmethod
    def from_payload(cls, payload: dict[str, object]) -> StateSnapshot:
        """Build a snapshot from a ``/device/state`` payload.

        Entries are ``{type, instance, state: {value}}``; entries without
        a value are skipped.
        """
        states: list[CapabilityState] = []
        for raw in payload.get("capabilities") or []:
            if not isinstance(raw, dict):
                continue
            instance = raw.get("instance")
            state = raw.get("state")
            if not isinstance(instance, str) or not isinstance(state, dict):
                continue
            if "value" not in state:
                continue
            states.append(CapabilityState(instance, state["value"], str(raw.get("type", ""))))
        return cls(tuple(states))

    def get(self, instance: str | Instance) -> CapabilityState | None:
        key = _key(instance)
        for cap in self.capabilities:
            if cap.instance == key:
                return cap
        return None

    def value(self, instance: str | Instance) -> object:
        """Raw value for *instance*, or ``None`` if not present."""
        cap = self.get(instance)
        return cap.value if cap is not None else None

    def typed(self, instance: str | Instance) -> object:
        """Value for *instance* coerced through its :class:`CapabilityKind`."""
        raw = self.value(instance)
        kind = resolve(_key(instance))
        return kind.coerce(raw) if kind is not None else raw

    @property
    def power(self) -> bool | None:
        value = self.typed(Instance.POWER)
        return value if isinstance(value, bool) else None

    @property
    def brightness(self) -> int | None:
        value = self.typed(Instance.BRIGHTNESS)
        return value if isinstance(value, int) else None

    def with_value(self, instance: str | Instance, value: object) -> StateSnapshot:
        """Return a copy with *instance* set to *value* (appended if absent)."""
        key = _key(instance)
        caps = list(self.capabilities)
        for i, cap in enumerate(caps):
            if cap.instance == key:
                caps[i] = CapabilityState(key, value, cap.type)
                return StateSnapshot(tuple(caps))
        kind = resolve(key)
        caps.append(CapabilityState(key, value, kind.type if kind is not None else ""))
        return StateSnapshot(tuple(caps))

    def without(self, instance: str | Instance) -> StateSnapshot:
        key = _key(instance)
        return StateSnapshot(tuple(c for c in self.capabilities if c.instance != key))

    def as_dict(self) -> dict[str, object]:
        """``{instance: raw value}`` in snapshot order."""
        return {c.instance: c.value for c in self.capabilities}
