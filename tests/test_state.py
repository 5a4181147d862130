"""Tests for goveectl.state."""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from unittest.mock import AsyncMock

import pytest

from goveectl.capabilities import Instance
from goveectl.devices import StateSnapshot
from goveectl.exceptions import VendorError
from goveectl.mqtt import PushEvent
from goveectl.state import Reconciler

DEV = "AA:BB:CC:DD:EE:FF:00:11"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _snapshot(power: Any = 0, brightness: int = 30, **extra: Any) -> StateSnapshot:
    caps = [
        {
            "type": "devices.capabilities.on_off",
            "instance": "powerSwitch",
            "state": {"value": power},
        },
        {
            "type": "devices.capabilities.range",
            "instance": "brightness",
            "state": {"value": brightness},
        },
    ]
    for instance, value in extra.items():
        caps.append({"instance": instance, "state": {"value": value}})
    return StateSnapshot.from_payload({"capabilities": caps})


def _reconciler(clock: FakeClock | None = None, **kwargs: Any) -> Reconciler:
    return Reconciler(clock=clock or FakeClock(), **kwargs)


def _failing(exc: Exception | None = None) -> AsyncMock:
    return AsyncMock(side_effect=exc or VendorError(500, "boom"))


class TestMergeSnapshot:
    async def test_stores_and_reads(self):
        r = _reconciler()
        r.merge_snapshot(DEV, _snapshot(power=1, brightness=40))
        assert r.power(DEV) is True
        assert r.brightness(DEV) == 40
        assert r.value(DEV, "brightness") == 40

    async def test_unknown_device_reads_none(self):
        r = _reconciler()
        assert r.snapshot(DEV) is None
        assert r.power(DEV) is None
        assert r.brightness(DEV) is None
        assert r.value(DEV, Instance.POWER) is None

    async def test_replaces_previous_snapshot(self):
        r = _reconciler()
        r.merge_snapshot(DEV, _snapshot(power=1, colorRgb=0xFF0000))
        r.merge_snapshot(DEV, _snapshot(power=0))
        assert r.power(DEV) is False
        assert r.value(DEV, "colorRgb") is None


class TestProtectionWindow:
    async def test_poll_cannot_revert_recent_write(self):
        clock = FakeClock()
        r = _reconciler(clock)
        r.merge_snapshot(DEV, _snapshot(power=0))

        await r.write(DEV, Instance.POWER, 1, AsyncMock())
        r.merge_snapshot(DEV, _snapshot(power=0))
        assert r.power(DEV) is True

        clock.advance(3.1)
        r.merge_snapshot(DEV, _snapshot(power=0))
        assert r.power(DEV) is False

    async def test_other_capabilities_still_merge(self):
        r = _reconciler()
        r.merge_snapshot(DEV, _snapshot(power=0, brightness=30))
        await r.write(DEV, Instance.POWER, 1, AsyncMock())

        r.merge_snapshot(DEV, _snapshot(power=0, brightness=80))
        assert r.power(DEV) is True
        assert r.brightness(DEV) == 80

    async def test_protected_value_carried_over_when_absent(self):
        r = _reconciler()
        r.merge_snapshot(DEV, _snapshot(power=0))
        await r.write(DEV, Instance.COLOR_RGB, 0x00FF00, AsyncMock())

        r.merge_snapshot(DEV, _snapshot(power=0))
        assert r.value(DEV, "colorRgb") == 0x00FF00

    async def test_window_expires_lazily(self):
        clock = FakeClock()
        r = _reconciler(clock)
        await r.write(DEV, Instance.POWER, 1, AsyncMock())
        assert r.is_protected(DEV, "powerSwitch")
        clock.advance(3.0)
        assert not r.is_protected(DEV, Instance.POWER)

    async def test_superseding_write_extends_window(self):
        clock = FakeClock()
        r = _reconciler(clock)
        await r.write(DEV, Instance.POWER, 1, AsyncMock())
        clock.advance(2.0)
        await r.write(DEV, Instance.POWER, 0, AsyncMock())
        clock.advance(2.0)

        r.merge_snapshot(DEV, _snapshot(power=1))
        assert r.power(DEV) is False

    async def test_custom_window(self):
        clock = FakeClock()
        r = _reconciler(clock, protection_window=10.0)
        await r.write(DEV, Instance.POWER, 1, AsyncMock())
        clock.advance(5.0)
        r.merge_snapshot(DEV, _snapshot(power=0))
        assert r.power(DEV) is True


class TestWrite:
    async def test_optimistic_value_visible_before_send_completes(self):
        r = _reconciler()
        r.merge_snapshot(DEV, _snapshot(power=0))
        seen: list[bool | None] = []

        async def send() -> None:
            seen.append(r.power(DEV))

        await r.write(DEV, Instance.POWER, 1, send)
        assert seen == [True]
        assert r.power(DEV) is True

    async def test_failure_restores_previous_snapshot(self):
        r = _reconciler()
        before = r.merge_snapshot(DEV, _snapshot(power=0, brightness=30))

        with pytest.raises(VendorError, match="boom"):
            await r.write(DEV, Instance.POWER, 1, _failing())

        assert r.snapshot(DEV) == before
        assert not r.is_protected(DEV, Instance.POWER)

    async def test_failure_removes_previously_absent_instance(self):
        r = _reconciler()
        before = r.merge_snapshot(DEV, _snapshot())

        with pytest.raises(VendorError):
            await r.write(DEV, Instance.COLOR_RGB, 0xFF0000, _failing())

        assert r.snapshot(DEV) == before

    async def test_failure_on_unknown_device_leaves_no_snapshot(self):
        r = _reconciler()
        with pytest.raises(OSError):
            await r.write(DEV, Instance.POWER, 1, _failing(OSError("down")))
        assert r.snapshot(DEV) is None

    async def test_poll_after_failure_applies_normally(self):
        r = _reconciler()
        r.merge_snapshot(DEV, _snapshot(power=0))
        with pytest.raises(VendorError):
            await r.write(DEV, Instance.POWER, 1, _failing())

        r.merge_snapshot(DEV, _snapshot(power=1))
        assert r.power(DEV) is True

    async def test_same_pair_writes_are_serialized(self):
        r = _reconciler()
        events: list[str] = []
        release = asyncio.Event()

        async def first() -> None:
            events.append("first-start")
            await release.wait()
            events.append("first-end")

        async def second() -> None:
            events.append("second-start")

        t1 = asyncio.create_task(r.write(DEV, Instance.POWER, 1, first))
        await asyncio.sleep(0)
        t2 = asyncio.create_task(r.write(DEV, Instance.POWER, 0, second))
        await asyncio.sleep(0)
        assert events == ["first-start"]

        release.set()
        await asyncio.gather(t1, t2)
        assert events == ["first-start", "first-end", "second-start"]
        assert r.power(DEV) is False


class TestApplyPush:
    async def test_partial_update(self):
        r = _reconciler()
        r.merge_snapshot(DEV, _snapshot(power=0, brightness=30))
        event = PushEvent(DEV, "H6008", {"brightness": 75})

        r.apply_push(event.device_id, event.values)
        assert r.brightness(DEV) == 75
        assert r.power(DEV) is False

    async def test_unknown_device_ignored(self):
        r = _reconciler()
        assert r.apply_push("other", {"powerSwitch": 1}) is None
        assert r.snapshot("other") is None

    async def test_protected_pair_ignored(self):
        r = _reconciler()
        r.merge_snapshot(DEV, _snapshot(power=0, brightness=30))
        await r.write(DEV, Instance.POWER, 1, AsyncMock())

        r.apply_push(DEV, {"powerSwitch": 0, "brightness": 90})
        assert r.power(DEV) is True
        assert r.brightness(DEV) == 90


class TestListeners:
    async def test_notified_on_change_only(self):
        r = _reconciler()
        calls: list[tuple[str, StateSnapshot | None]] = []
        r.add_listener(lambda d, s: calls.append((d, s)))

        r.merge_snapshot(DEV, _snapshot(power=0))
        r.merge_snapshot(DEV, _snapshot(power=0))
        assert len(calls) == 1
        assert calls[0][0] == DEV

    async def test_notified_on_optimistic_write_and_rollback(self):
        r = _reconciler()
        r.merge_snapshot(DEV, _snapshot(power=0))
        powers: list[bool | None] = []
        r.add_listener(lambda d, s: powers.append(s.power if s else None))

        with pytest.raises(VendorError):
            await r.write(DEV, Instance.POWER, 1, _failing())
        assert powers == [True, False]

    async def test_remove_listener(self):
        r = _reconciler()
        calls: list[str] = []
        remove = r.add_listener(lambda d, s: calls.append(d))
        remove()
        remove()
        r.merge_snapshot(DEV, _snapshot())
        assert calls == []

    async def test_listener_exception_is_logged(self, caplog):
        r = _reconciler()
        calls: list[str] = []

        def broken(device_id: str, snapshot: StateSnapshot | None) -> None:
            raise RuntimeError("listener bug")

        r.add_listener(broken)
        r.add_listener(lambda d, s: calls.append(d))
        with caplog.at_level(logging.ERROR, logger="goveectl.state"):
            r.merge_snapshot(DEV, _snapshot())

        assert calls == [DEV]
        assert "State listener failed" in caplog.text


class TestRetain:
    async def test_evicts_vanished_devices(self):
        r = _reconciler()
        r.merge_snapshot("a", _snapshot())
        r.merge_snapshot("b", _snapshot())
        evicted: list[str] = []
        r.add_listener(lambda d, s: evicted.append(d) if s is None else None)

        assert r.retain(["a"]) == ["b"]
        assert r.snapshot("b") is None
        assert r.snapshot("a") is not None
        assert evicted == ["b"]


class TestBrightnessDebounce:
    async def test_drag_sends_only_final_value(self):
        r = _reconciler(debounce=0.05)
        r.merge_snapshot(DEV, _snapshot(brightness=30))
        send = AsyncMock()

        for value in (10, 50, 90):
            await r.set_brightness(DEV, value, send)
            assert r.brightness(DEV) == value
        send.assert_not_called()

        await r.wait_idle()
        send.assert_awaited_once_with(90)
        assert r.brightness(DEV) == 90

    async def test_commit_sends_immediately(self):
        r = _reconciler(debounce=10.0)
        send = AsyncMock()
        await r.set_brightness(DEV, 42.4, send, commit=True)
        send.assert_awaited_once_with(42)

    async def test_commit_after_drag_flushes_latest(self):
        r = _reconciler(debounce=10.0)
        send = AsyncMock()
        await r.set_brightness(DEV, 20, send)
        await r.set_brightness(DEV, 60, send, commit=True)
        await r.wait_idle()
        send.assert_awaited_once_with(60)

    async def test_repeated_value_not_resent(self):
        r = _reconciler()
        send = AsyncMock()
        await r.set_brightness(DEV, 70, send, commit=True)
        await r.set_brightness(DEV, 70, send, commit=True)
        assert send.await_count == 1

    async def test_value_resent_after_device_reports_another(self):
        clock = FakeClock()
        r = _reconciler(clock)
        r.merge_snapshot(DEV, _snapshot(brightness=20))
        send = AsyncMock()
        await r.set_brightness(DEV, 50, send, commit=True)

        clock.advance(10)
        r.merge_snapshot(DEV, _snapshot(brightness=20))
        assert r.brightness(DEV) == 20

        await r.set_brightness(DEV, 50, send, commit=True)
        assert send.await_count == 2
        assert r.brightness(DEV) == 50

    async def test_confirmed_value_still_not_resent(self):
        clock = FakeClock()
        r = _reconciler(clock)
        send = AsyncMock()
        await r.set_brightness(DEV, 50, send, commit=True)
        clock.advance(10)
        r.merge_snapshot(DEV, _snapshot(brightness=50))

        await r.set_brightness(DEV, 50, send, commit=True)
        assert send.await_count == 1

    async def test_poll_inside_window_keeps_last_sent(self):
        clock = FakeClock()
        r = _reconciler(clock)
        r.merge_snapshot(DEV, _snapshot(brightness=20))
        send = AsyncMock()
        await r.set_brightness(DEV, 50, send, commit=True)
        r.merge_snapshot(DEV, _snapshot(brightness=20))

        await r.set_brightness(DEV, 50, send, commit=True)
        assert send.await_count == 1

    async def test_value_is_clamped(self):
        r = _reconciler()
        send = AsyncMock()
        await r.set_brightness(DEV, 150, send, commit=True)
        send.assert_awaited_once_with(100)
        assert r.brightness(DEV) == 100

    async def test_commit_failure_rolls_back_to_pre_drag_value(self):
        r = _reconciler(debounce=10.0)
        r.merge_snapshot(DEV, _snapshot(brightness=30))
        send = _failing()

        await r.set_brightness(DEV, 50, send)
        with pytest.raises(VendorError):
            await r.set_brightness(DEV, 80, send, commit=True)

        assert r.brightness(DEV) == 30
        assert not r.is_protected(DEV, Instance.BRIGHTNESS)

    async def test_debounced_failure_is_logged_and_rolled_back(self, caplog):
        r = _reconciler(debounce=0.01)
        r.merge_snapshot(DEV, _snapshot(brightness=30))

        with caplog.at_level(logging.WARNING, logger="goveectl.state"):
            await r.set_brightness(DEV, 60, _failing())
            await r.wait_idle()

        assert r.brightness(DEV) == 30
        assert "Brightness write" in caplog.text

    async def test_drag_holds_off_polls(self):
        r = _reconciler(debounce=10.0)
        r.merge_snapshot(DEV, _snapshot(brightness=30))
        await r.set_brightness(DEV, 55, AsyncMock())

        r.merge_snapshot(DEV, _snapshot(brightness=30))
        assert r.brightness(DEV) == 55
        await r.close()

    async def test_close_cancels_pending_write(self):
        r = _reconciler(debounce=10.0)
        send = AsyncMock()
        await r.set_brightness(DEV, 55, send)
        await r.close()
        send.assert_not_called()
