from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
from typing import Any, Dict, Set

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .bridge.coordinator import BridgeCoordinator, HostContext
from .config import settings
from .keyboard.monitor import KeyboardVisibilityMonitor

VIEWPORT_GEOMETRY_SCRIPT = """
() => {
    const total = window.innerHeight;
    const viewport = window.visualViewport;
    const visibleBottom = viewport ? viewport.offsetTop + viewport.height : total;
    return { total: Math.round(total), visibleBottom: Math.round(visibleBottom) };
}
"""


class ViewportGeometrySampler:
    """Feeds ``visualViewport`` geometry of the active page into the keyboard monitor.

    On a touch device the visual viewport shrinks while the on-screen keyboard is
    open, so ``innerHeight - (offsetTop + height)`` is the keyboard height.
    """

    def __init__(self, monitor: KeyboardVisibilityMonitor, interval_ms: int | None = None) -> None:
        self.monitor = monitor
        self.interval_ms = interval_ms or settings.keyboard_throttle_ms
        self.page: Page | None = None
        self._task: asyncio.Task | None = None

    def follow(self, page: Page | None) -> None:
        self.page = page

    async def sample_once(self) -> bool:
        page = self.page
        if page is None or page.is_closed():
            return False
        try:
            geometry: Dict[str, Any] = await page.evaluate(VIEWPORT_GEOMETRY_SCRIPT)
        except PlaywrightError as exc:
            logging.debug("viewport_sample_failed reason=%s", exc)
            return False
        self.monitor.on_layout(int(geometry.get("total") or 0), int(geometry.get("visibleBottom") or 0))
        return True

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            await self.sample_once()
            await asyncio.sleep(self.interval_ms / 1000.0)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


class BrowserSession:
    """Persistent Chromium context whose tabs are bound to the suggestion coordinator."""

    def __init__(
        self,
        coordinator: BridgeCoordinator | None = None,
        host_context: HostContext | None = None,
        user_data_dir: str | None = None,
        sample_geometry: bool = True,
    ) -> None:
        self.browser: Browser | None = None
        self.context: BrowserContext | None = None
        self.pages: Dict[str, Page] = {}
        self._closing: Set[asyncio.Task] = set()
        self._playwright: Playwright | None = None
        self.user_data_dir = os.path.expanduser(
            user_data_dir or settings.user_data_dir or "~/.form_suggest_profiles/default"
        )
        host_context = host_context or HostContext()
        self.keyboard = host_context.keyboard or KeyboardVisibilityMonitor()
        # The coordinator must listen to the same monitor the sampler feeds.
        self.host_context = dataclasses.replace(host_context, keyboard=self.keyboard)
        self.coordinator = coordinator or BridgeCoordinator()
        self.sampler = ViewportGeometrySampler(self.keyboard) if sample_geometry else None

    async def __aenter__(self) -> "BrowserSession":
        self._playwright = await async_playwright().start()
        self.context = await self._playwright.chromium.launch_persistent_context(
            user_data_dir=self.user_data_dir,
            headless=settings.headless,
            has_touch=True,
        )
        self.coordinator.start(self.host_context)
        if self.sampler is not None:
            self.sampler.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        if self.sampler is not None:
            await self.sampler.stop()
        await self.coordinator.stop()
        self.keyboard.close()
        if self.context:
            await self.context.close()
        if self._playwright:
            await self._playwright.stop()

    async def open_tab(self, tab_id: str, url: str | None = None, wait_ms: int = 0) -> Page:
        """Open a page, bind it for suggestions and optionally navigate it."""
        if not self.context:
            raise RuntimeError("Browser context is not initialized. Use within an async context manager.")
        if tab_id in self.pages:
            await self.close_tab(tab_id)

        page = await self.context.new_page()
        self.pages[tab_id] = page
        page.on("close", lambda _page: self._on_page_closed(tab_id, _page))

        await self.coordinator.bind(page, tab_id)
        self.activate(tab_id)
        if url:
            await self.goto(tab_id, url, wait_ms=wait_ms)
        return page

    def activate(self, tab_id: str) -> None:
        page = self.pages.get(tab_id)
        if page is None:
            return
        self.coordinator.activate(tab_id)
        if self.sampler is not None:
            self.sampler.follow(page)

    async def goto(self, tab_id: str, url: str, wait_ms: int = 0) -> None:
        page = self.pages.get(tab_id)
        if page is None:
            raise KeyError(f"unknown tab {tab_id!r}")

        await page.goto(url, wait_until="domcontentloaded", timeout=30000)
        try:
            await page.wait_for_load_state("networkidle", timeout=5000)
        except PlaywrightTimeoutError:
            print("[browser] networkidle wait timed out, continuing anyway")

        if wait_ms > 0:
            await page.wait_for_timeout(wait_ms)

    async def close_tab(self, tab_id: str) -> None:
        await self.coordinator.unbind(tab_id)
        page = self.pages.pop(tab_id, None)
        if self.sampler is not None and self.sampler.page is page:
            self.sampler.follow(next(iter(self.pages.values()), None))
        if page is not None and not page.is_closed():
            await page.close()

    def _on_page_closed(self, tab_id: str, page: Page) -> None:
        if self.pages.get(tab_id) is not page:
            return
        self.pages.pop(tab_id, None)
        task = asyncio.get_running_loop().create_task(self.coordinator.unbind(tab_id))
        self._closing.add(task)
        task.add_done_callback(self._unbind_finished)

    def _unbind_finished(self, task: asyncio.Task) -> None:
        self._closing.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logging.warning("unbind_after_close_failed reason=%s", task.exception())

    def __repr__(self) -> str:
        return f"BrowserSession(headless={settings.headless}, tabs={len(self.pages)})"
