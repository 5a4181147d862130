"""In-memory device state with optimistic writes.

The :class:`Reconciler` is the only writer of per-device
:class:`~goveectl.devices.StateSnapshot` objects.  Three producers feed
it concurrently: the poll loop (:meth:`Reconciler.merge_snapshot`), broker
push events (:meth:`Reconciler.apply_push`) and user writes
(:meth:`Reconciler.write`, :meth:`Reconciler.set_brightness`).

Every local write opens a protection window on its
``(device_id, instance)`` pair.  Until the window expires, incoming
values for that pair are replaced by the locally-held value, so a poll
that was issued before a toggle but answered after it cannot revert the
toggle on screen.  Other capabilities in the same incoming snapshot are
still applied.

Merges never await, which makes each one atomic within the event loop.
Writes await the network, so writes to the same pair are serialized with
a per-pair :class:`asyncio.Lock`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable, Iterable

from goveectl import _constants
from goveectl.capabilities import Instance, clamp_brightness
from goveectl.devices import StateSnapshot

_LOGGER = logging.getLogger(__name__)

Listener = Callable[[str, "StateSnapshot | None"], None]
"""Called with ``(device_id, snapshot)``; snapshot is ``None`` on eviction."""

_MISSING = object()
_BRIGHTNESS = Instance.BRIGHTNESS.value


def _key(instance: str | Instance) -> str:
    return instance.value if isinstance(instance, Instance) else instance


class _Drag:
    """Brightness slider state for one device."""

    def __init__(self) -> None:
        self.active = False
        self.pending = 0
        self.before: object = _MISSING
        self.existed = False
        self.last_sent: int | None = None
        self.send: Callable[[int], Awaitable[object]] | None = None
        self.timer: asyncio.Task[None] | None = None


class Reconciler:
    """Authoritative per-device state map.

    Args:
        protection_window: Seconds a local write stays immune to incoming
            values.
        debounce: Seconds of silence after which a pending brightness
            change is sent.
        clock: Monotonic time source.
    """

    def __init__(
        self,
        *,
        protection_window: float = _constants.PROTECTION_WINDOW,
        debounce: float = _constants.BRIGHTNESS_DEBOUNCE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._protection_window = protection_window
        self._debounce = debounce
        self._clock = clock
        self._snapshots: dict[str, StateSnapshot] = {}
        self._windows: dict[tuple[str, str], float] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._drags: dict[str, _Drag] = {}
        self._timers: set[asyncio.Task[None]] = set()
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def snapshot(self, device_id: str) -> StateSnapshot | None:
        return self._snapshots.get(device_id)

    def snapshots(self) -> dict[str, StateSnapshot]:
        return dict(self._snapshots)

    def value(self, device_id: str, instance: str | Instance) -> object:
        snap = self._snapshots.get(device_id)
        return snap.value(instance) if snap is not None else None

    def power(self, device_id: str) -> bool | None:
        """``True``/``False``, or ``None`` when unknown."""
        snap = self._snapshots.get(device_id)
        return snap.power if snap is not None else None

    def brightness(self, device_id: str) -> int | None:
        snap = self._snapshots.get(device_id)
        return snap.brightness if snap is not None else None

    def is_protected(self, device_id: str, instance: str | Instance) -> bool:
        """Whether a protection window is open for the pair.

        Expired windows are removed here.
        """
        key = (device_id, _key(instance))
        expires_at = self._windows.get(key)
        if expires_at is None:
            return False
        if self._clock() < expires_at:
            return True
        del self._windows[key]
        return False

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register *listener* for state changes; returns a remover."""
        self._listeners.append(listener)

        def remove() -> None:
            with contextlib.suppress(ValueError):
                self._listeners.remove(listener)

        return remove

    def _notify(self, device_id: str, snapshot: StateSnapshot | None) -> None:
        for listener in list(self._listeners):
            try:
                listener(device_id, snapshot)
            except Exception:
                _LOGGER.exception("State listener failed for %s", device_id)

    def _store(self, device_id: str, snapshot: StateSnapshot) -> None:
        if self._snapshots.get(device_id) == snapshot:
            return
        self._snapshots[device_id] = snapshot
        self._notify(device_id, snapshot)

    # ------------------------------------------------------------------
    # Merges
    # ------------------------------------------------------------------

    def merge_snapshot(self, device_id: str, incoming: StateSnapshot) -> StateSnapshot:
        """Replace the device's snapshot with *incoming*, keeping protected values."""
        current = self._snapshots.get(device_id)
        merged = incoming
        if current is not None:
            for cap in current.capabilities:
                if self.is_protected(device_id, cap.instance):
                    merged = merged.with_value(cap.instance, cap.value)
        self._store(device_id, merged)
        self._resync_drag(device_id, merged)
        return merged

    def apply_push(self, device_id: str, values: dict[str, object]) -> StateSnapshot | None:
        """Apply a partial push update to a known device.

        Returns the new snapshot, or ``None`` if the device is unknown.
        """
        current = self._snapshots.get(device_id)
        if current is None:
            _LOGGER.debug("Push for unknown device %s ignored", device_id)
            return None
        updated = current
        for instance, value in values.items():
            if self.is_protected(device_id, instance):
                _LOGGER.debug("Push %s.%s held by protection window", device_id, instance)
                continue
            updated = updated.with_value(instance, value)
        self._store(device_id, updated)
        self._resync_drag(device_id, updated)
        return updated

    def retain(self, device_ids: Iterable[str]) -> list[str]:
        """Evict every device not in *device_ids*; returns the evicted ids."""
        keep = set(device_ids)
        evicted = [d for d in self._snapshots if d not in keep]
        for device_id in evicted:
            self.forget(device_id)
        return evicted

    def forget(self, device_id: str) -> None:
        self._snapshots.pop(device_id, None)
        for key in [k for k in self._windows if k[0] == device_id]:
            del self._windows[key]
        drag = self._drags.pop(device_id, None)
        if drag is not None and drag.timer is not None:
            drag.timer.cancel()
        self._notify(device_id, None)

    # ------------------------------------------------------------------
    # Local writes
    # ------------------------------------------------------------------

    async def write(
        self,
        device_id: str,
        instance: str | Instance,
        value: object,
        send: Callable[[], Awaitable[object]],
    ) -> None:
        """Apply *value* optimistically, then await *send*.

        On failure the protection window is dropped, the pair is restored
        to its pre-write value and the error is re-raised.
        """
        name = _key(instance)
        key = (device_id, name)
        async with self._lock(key):
            existed = device_id in self._snapshots
            before = self._current(device_id, name)
            self._open_window(key)
            self._set(device_id, name, value)
            try:
                await send()
            except BaseException:
                self._windows.pop(key, None)
                self._restore(device_id, name, before, existed)
                raise

    async def set_brightness(
        self,
        device_id: str,
        value: float,
        send: Callable[[int], Awaitable[object]],
        *,
        commit: bool = False,
    ) -> None:
        """Show *value* at once and send it once the slider settles.

        Without *commit* the write fires after the debounce interval of
        silence; with *commit* it fires now.  A value equal to the last
        one sent is not sent again.  Errors propagate to a committing
        caller and are logged when the debounce timer fires the write.
        """
        pct = clamp_brightness(value)
        drag = self._drags.setdefault(device_id, _Drag())
        if not drag.active:
            drag.active = True
            drag.existed = device_id in self._snapshots
            drag.before = self._current(device_id, _BRIGHTNESS)
        drag.pending = pct
        drag.send = send
        self._open_window((device_id, _BRIGHTNESS))
        self._set(device_id, _BRIGHTNESS, pct)

        if drag.timer is not None:
            drag.timer.cancel()
            drag.timer = None
        if commit:
            await self._flush_brightness(device_id)
        else:
            drag.timer = asyncio.create_task(self._debounce_fire(device_id))
            self._timers.add(drag.timer)
            drag.timer.add_done_callback(self._timers.discard)

    async def wait_idle(self) -> None:
        """Wait for every scheduled brightness write to finish."""
        while self._timers:
            await asyncio.gather(*self._timers, return_exceptions=True)

    async def close(self) -> None:
        """Cancel pending brightness writes."""
        timers = list(self._timers)
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _lock(self, key: tuple[str, str]) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    def _open_window(self, key: tuple[str, str]) -> None:
        self._windows[key] = self._clock() + self._protection_window

    def _current(self, device_id: str, instance: str) -> object:
        snap = self._snapshots.get(device_id)
        if snap is None:
            return _MISSING
        cap = snap.get(instance)
        return cap.value if cap is not None else _MISSING

    def _set(self, device_id: str, instance: str, value: object) -> None:
        snap = self._snapshots.get(device_id) or StateSnapshot()
        self._store(device_id, snap.with_value(instance, value))

    def _resync_drag(self, device_id: str, snapshot: StateSnapshot) -> None:
        """Forget the last sent brightness once the device reports another one."""
        drag = self._drags.get(device_id)
        if drag is None or drag.active or drag.last_sent is None:
            return
        if snapshot.brightness != drag.last_sent:
            drag.last_sent = None

    def _restore(self, device_id: str, instance: str, before: object, existed: bool) -> None:
        snap = self._snapshots.get(device_id)
        if snap is None:
            return
        if not existed:
            del self._snapshots[device_id]
            self._notify(device_id, None)
        elif before is _MISSING:
            self._store(device_id, snap.without(instance))
        else:
            self._store(device_id, snap.with_value(instance, before))

    async def _debounce_fire(self, device_id: str) -> None:
        await asyncio.sleep(self._debounce)
        drag = self._drags.get(device_id)
        if drag is None:
            return
        # Detach so a newer change cannot cancel the write in flight.
        drag.timer = None
        try:
            await self._flush_brightness(device_id)
        except Exception as e:
            _LOGGER.warning("Brightness write for %s failed: %s", device_id, e)

    async def _flush_brightness(self, device_id: str) -> None:
        drag = self._drags.get(device_id)
        if drag is None or not drag.active or drag.send is None:
            return
        value, send = drag.pending, drag.send
        before, existed = drag.before, drag.existed
        drag.active = False
        if value == drag.last_sent:
            _LOGGER.debug("Brightness %s for %s already sent; skipping", value, device_id)
            return

        key = (device_id, _BRIGHTNESS)
        async with self._lock(key):
            self._open_window(key)
            try:
                await send(value)
            except BaseException:
                # A newer drag owns the display now; leave it alone.
                if not drag.active:
                    self._windows.pop(key, None)
                    self._restore(device_id, _BRIGHTNESS, before, existed)
                raise
            drag.last_sent = value
