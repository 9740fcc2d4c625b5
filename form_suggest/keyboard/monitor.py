from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Protocol

from ..config import settings

# Heights at or below this are treated as measurement noise, not a keyboard size.
MIN_REMEMBERED_HEIGHT = 100


@dataclass(frozen=True)
class Geometry:
    total_height: int
    visible_bottom: int

    @property
    def keyboard_height(self) -> int:
        return max(0, int(self.total_height) - int(self.visible_bottom))


class KeyboardVisibilityListener(Protocol):
    def on_keyboard_visibility_changed(self, is_visible: bool, keyboard_height: int) -> None: ...

    def on_keyboard_height_changed(self, keyboard_height: int) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], Any]


def _call_later(delay_s: float, callback: Callable[[], None]):
    return asyncio.get_running_loop().call_later(delay_s, callback)


class KeyboardVisibilityMonitor:
    """Turns visible-frame geometry samples into keyboard visibility events.

    ``on_layout`` is meant to be called from every layout pass on the UI loop.
    Evaluations are throttled, height updates need a minimum delta, and a drop
    to hidden is only published after a delayed re-check confirms it.
    """

    def __init__(
        self,
        geometry_source: Optional[Callable[[], Optional[Geometry]]] = None,
        clock: Callable[[], float] = time.monotonic,
        schedule: Scheduler = _call_later,
        throttle_ms: int | None = None,
        visibility_ratio: float | None = None,
        height_delta_px: int | None = None,
        recheck_delay_ms: int | None = None,
        default_height: int | None = None,
    ) -> None:
        self._geometry_source = geometry_source
        self._clock = clock
        self._schedule = schedule
        self.throttle_ms = settings.keyboard_throttle_ms if throttle_ms is None else throttle_ms
        self.visibility_ratio = visibility_ratio or settings.keyboard_visibility_ratio
        self.height_delta_px = settings.keyboard_height_delta_px if height_delta_px is None else height_delta_px
        self.recheck_delay_ms = settings.keyboard_recheck_delay_ms if recheck_delay_ms is None else recheck_delay_ms

        self._listeners: List[KeyboardVisibilityListener] = []
        self._visible = False
        self._last_height = default_height or settings.default_keyboard_height
        self._last_evaluation: Optional[float] = None
        self._latest: Optional[Geometry] = None
        self._pending_recheck: Any = None

    @property
    def is_visible(self) -> bool:
        return self._visible

    @property
    def keyboard_height(self) -> int:
        return self._last_height if self._visible else 0

    @property
    def panel_offset(self) -> int:
        return max(0, self._last_height)

    @property
    def hide_pending(self) -> bool:
        return self._pending_recheck is not None

    def subscribe(self, listener: KeyboardVisibilityListener) -> Callable[[], None]:
        if listener not in self._listeners:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_layout(self, total_height: int, visible_bottom: int) -> None:
        geometry = Geometry(total_height=total_height, visible_bottom=visible_bottom)
        self._latest = geometry
        if total_height <= 0:
            return

        now = self._clock()
        if self._last_evaluation is not None and (now - self._last_evaluation) * 1000 < self.throttle_ms:
            return
        self._last_evaluation = now

        if self._pending_recheck is not None:
            return
        self._evaluate(geometry)

    def close(self) -> None:
        self._cancel_recheck()
        self._listeners.clear()

    def _threshold(self, geometry: Geometry) -> float:
        return geometry.total_height * self.visibility_ratio

    def _evaluate(self, geometry: Geometry) -> None:
        height = geometry.keyboard_height
        now_visible = height > self._threshold(geometry)

        if now_visible and not self._visible:
            self._visible = True
            if height > MIN_REMEMBERED_HEIGHT:
                self._last_height = height
            logging.debug("keyboard_visible height=%s", height)
            self._notify_visibility(True, height)
        elif not now_visible and self._visible:
            self._start_recheck()
        elif self._visible and abs(height - self._last_height) > self.height_delta_px:
            self._last_height = height
            logging.debug("keyboard_height_changed height=%s", height)
            self._notify_height(height)

    def _start_recheck(self) -> None:
        try:
            self._pending_recheck = self._schedule(self.recheck_delay_ms / 1000.0, self._recheck)
        except RuntimeError as exc:
            logging.debug("keyboard_recheck_unscheduled reason=%s", exc)
            self._pending_recheck = None
            self._finalize_hidden()

    def _cancel_recheck(self) -> None:
        handle = self._pending_recheck
        self._pending_recheck = None
        if handle is not None and hasattr(handle, "cancel"):
            handle.cancel()

    def _recheck(self) -> None:
        self._pending_recheck = None
        geometry = self._geometry_source() if self._geometry_source else self._latest
        if geometry is None or geometry.total_height <= 0:
            self._finalize_hidden()
            return
        height = geometry.keyboard_height
        if height > self._threshold(geometry):
            logging.debug("keyboard_hide_cancelled height=%s", height)
            if abs(height - self._last_height) > self.height_delta_px:
                self._last_height = height
                self._notify_height(height)
            return
        self._finalize_hidden()

    def _finalize_hidden(self) -> None:
        if not self._visible:
            return
        self._visible = False
        logging.debug("keyboard_hidden")
        self._notify_visibility(False, 0)

    def _notify_visibility(self, is_visible: bool, height: int) -> None:
        for listener in list(self._listeners):
            try:
                listener.on_keyboard_visibility_changed(is_visible, height)
            except Exception as exc:  # noqa: BLE001
                logging.warning("keyboard_listener_failed event=visibility reason=%s", exc)

    def _notify_height(self, height: int) -> None:
        for listener in list(self._listeners):
            try:
                listener.on_keyboard_height_changed(height)
            except Exception as exc:  # noqa: BLE001
                logging.warning("keyboard_listener_failed event=height reason=%s", exc)
