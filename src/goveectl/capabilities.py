"""Capability instances the client knows how to read, write and display."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum


class Instance(str, Enum):
    """Capability instances the client understands."""

    POWER = "powerSwitch"
    BRIGHTNESS = "brightness"
    COLOR_RGB = "colorRgb"
    COLOR_TEMPERATURE = "colorTemperatureK"
    ONLINE = "online"


ON_OFF = "devices.capabilities.on_off"
RANGE = "devices.capabilities.range"
COLOR_SETTING = "devices.capabilities.color_setting"
ONLINE = "devices.capabilities.online"


@dataclass(frozen=True)
class CapabilityKind:
    """A known capability instance.

    Maps between the vendor instance name (e.g. ``powerSwitch``), its
    capability type, a CLI-friendly slug and a human-readable label.
    """

    instance: Instance
    """Instance name used by the API (``powerSwitch``, ``brightness``)."""

    type: str
    """Capability type the instance must be declared under."""

    slug: str
    """CLI name (``power``, ``brightness``, ``color``)."""

    name: str
    """Human-readable label."""

    writable: bool = True

    unit: str = ""
    """Suffix for display (``%``, ``K``)."""

    def coerce(self, raw: object) -> object:
        """Convert a raw vendor value into this instance's typed value.

        Returns ``None`` when *raw* is ``None`` or cannot be interpreted.
        """
        if raw is None:
            return None
        if self.instance in (Instance.POWER, Instance.ONLINE):
            return is_on(raw)
        if isinstance(raw, (int, float)):
            return int(raw)
        try:
            return int(str(raw))
        except (TypeError, ValueError):
            return None

    def format_value(self, raw: object) -> str:
        """Format a raw value for human display."""
        value = self.coerce(raw)
        if value is None:
            return str(raw)
        if isinstance(value, bool):
            if self.instance is Instance.ONLINE:
                return "yes" if value else "no"
            return "ON" if value else "OFF"
        if self.instance is Instance.COLOR_RGB:
            assert isinstance(value, int)
            return f"#{value:06x}"
        return f"{value}{self.unit}"


KINDS: list[CapabilityKind] = [
    CapabilityKind(Instance.POWER, ON_OFF, "power", "Power"),
    CapabilityKind(Instance.BRIGHTNESS, RANGE, "brightness", "Brightness", unit="%"),
    CapabilityKind(Instance.COLOR_RGB, COLOR_SETTING, "color", "Color"),
    CapabilityKind(
        Instance.COLOR_TEMPERATURE, COLOR_SETTING, "color-temp", "Color temperature", unit="K"
    ),
    CapabilityKind(Instance.ONLINE, ONLINE, "online", "Online", writable=False),
]

_by_instance: dict[str, CapabilityKind] = {k.instance.value: k for k in KINDS}
_by_slug: dict[str, CapabilityKind] = {k.slug: k for k in KINDS}


def resolve(name: str | Instance) -> CapabilityKind | None:
    """Look up a CapabilityKind by instance name, enum member or slug."""
    if isinstance(name, Instance):
        return _by_instance[name.value]
    return _by_instance.get(name) or _by_slug.get(name)


def is_on(value: object) -> bool:
    """Return whether a vendor power value means "on".

    ``1``, ``"1"`` and ``True`` are on; every other value is off.
    """
    return value is True or value == "1" or (isinstance(value, (int, float)) and value == 1)


def clamp_brightness(value: float) -> int:
    """Round *value* half-up and clamp it to the 1..100 brightness range."""
    return max(1, min(100, math.floor(value + 0.5)))


def rgb_to_int(rgb: tuple[int, int, int]) -> int:
    """Pack an ``(r, g, b)`` tuple into the ``0xRRGGBB`` integer the API uses."""
    r, g, b = (max(0, min(255, int(c))) for c in rgb)
    return (r << 16) | (g << 8) | b


def int_to_rgb(value: int) -> tuple[int, int, int]:
    """Unpack a ``0xRRGGBB`` integer into ``(r, g, b)``."""
    return (value >> 16) & 0xFF, (value >> 8) & 0xFF, value & 0xFF


def parse_hex_color(text: str) -> tuple[int, int, int]:
    """Parse ``RRGGBB`` or ``#RRGGBB`` into ``(r, g, b)``.

    Raises :class:`ValueError` for anything else.
    """
    digits = text.strip().lstrip("#")
    if len(digits) != 6:
        raise ValueError(f"Invalid color '{text}'. Expected RRGGBB.")
    try:
        return int_to_rgb(int(digits, 16))
    except ValueError:
        raise ValueError(f"Invalid color '{text}'. Expected RRGGBB.") from None
