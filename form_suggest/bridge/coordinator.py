from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from playwright.async_api import Error as PlaywrightError

from ..config import settings
from ..errors import BridgeNotReadyError, SerializationError, StoreError, UntrackableFieldError
from ..keyboard.monitor import KeyboardVisibilityMonitor
from ..models import SuggestionSource
from ..panel.state_machine import LoggingPanelRenderer, PanelRenderer, PanelStateMachine
from ..suggestion.query import SuggestionQueryEngine
from ..suggestion.store import SuggestionStore, call_in_worker
from .observer_script import (
    FOCUSED_FIELD_SCRIPT,
    PRESENCE_CHECK_SCRIPT,
    SET_INPUT_VALUE_SCRIPT,
    TEARDOWN_SCRIPT,
    build_observer_script,
    is_eligible_field_type,
)
from .protocol import (
    BridgeEvent,
    ErrorLogged,
    FieldCountReported,
    InputBlurred,
    InputFocused,
    InputValueChanged,
    PageUrlChanged,
    SaveSubmittedValue,
    ensure_ready,
    parse_bridge_call,
    url_scope_from_url,
)


class ContentSurface(Protocol):
    """The slice of a Playwright ``Page`` the coordinator relies on."""

    @property
    def url(self) -> str: ...

    async def evaluate(self, expression: str, arg: Any = None) -> Any: ...

    async def expose_binding(self, name: str, callback: Callable[..., Any]) -> None: ...

    async def add_init_script(self, script: str) -> None: ...


class FieldFocusState:
    """Currently focused field of one binding; written only by bridge events."""

    def __init__(self) -> None:
        self._current: Optional[str] = None

    @property
    def current(self) -> Optional[str]:
        return self._current

    def focus(self, field_identifier: str) -> None:
        self._current = field_identifier

    def blur(self, field_identifier: str) -> bool:
        # A late blur for a field that already lost focus to another one is ignored.
        if self._current != field_identifier:
            return False
        self._current = None
        return True


@dataclass
class HostContext:
    keyboard: Optional[KeyboardVisibilityMonitor] = None
    renderer_factory: Callable[[str], PanelRenderer] = LoggingPanelRenderer


@dataclass
class Binding:
    tab_id: str
    surface: ContentSurface
    panel: PanelStateMachine
    focus: FieldFocusState = field(default_factory=FieldFocusState)
    url: Optional[str] = None
    url_scope: Optional[str] = None
    ready: bool = False
    field_count: int = 0
    live_query: Optional[asyncio.TimerHandle] = None

    def cancel_live_query(self) -> None:
        if self.live_query is not None:
            self.live_query.cancel()
            self.live_query = None


class BridgeCoordinator:
    """Binds content surfaces to the suggestion subsystem.

    The coordinator is the only reader and writer of the store on behalf of its
    bindings. Every failure is handled locally; nothing raised here reaches the
    page or the tab lifecycle.
    """

    def __init__(
        self,
        store: Optional[SuggestionStore] = None,
        query_engine: Optional[SuggestionQueryEngine] = None,
        binding_name: str | None = None,
        registry_key: str | None = None,
        verify_delay_ms: int | None = None,
        retry_delay_ms: int | None = None,
        live_debounce_ms: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store or SuggestionStore()
        self.query_engine = query_engine or SuggestionQueryEngine(self.store)
        self.binding_name = binding_name or settings.bridge_binding_name
        self.registry_key = registry_key or settings.observer_registry_key
        self.verify_delay_ms = settings.injection_verify_delay_ms if verify_delay_ms is None else verify_delay_ms
        self.retry_delay_ms = settings.injection_retry_delay_ms if retry_delay_ms is None else retry_delay_ms
        self.live_debounce_ms = settings.live_query_debounce_ms if live_debounce_ms is None else live_debounce_ms
        self._sleep = sleep
        self._script = build_observer_script(self.binding_name, self.registry_key)

        self._bindings: Dict[str, Binding] = {}
        self._active_tab: Optional[str] = None
        self._host: Optional[HostContext] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._handlers: Dict[type, Callable[[Binding, Any], Any]] = {
            InputFocused: self.on_input_focused,
            InputBlurred: self.on_input_blurred,
            InputValueChanged: self.on_input_value_changed,
            SaveSubmittedValue: self.save_submitted_value,
            PageUrlChanged: self.on_page_url_changed,
            FieldCountReported: self.on_field_count_reported,
            ErrorLogged: self.on_page_error,
        }

    # lifecycle

    @property
    def started(self) -> bool:
        return self._host is not None

    @property
    def keyboard_visible(self) -> bool:
        keyboard = self._host.keyboard if self._host else None
        return bool(keyboard and keyboard.is_visible)

    def start(self, host_context: HostContext) -> None:
        if self._host is not None:
            logging.debug("coordinator_already_started")
            return
        self._host = host_context
        if host_context.keyboard is not None:
            self._unsubscribe = host_context.keyboard.subscribe(self)
        logging.info("coordinator_started")

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for tab_id in list(self._bindings):
            await self.unbind(tab_id)
        self._host = None
        logging.info("coordinator_stopped")

    def get_binding(self, tab_id: str) -> Optional[Binding]:
        return self._bindings.get(tab_id)

    @property
    def bindings(self) -> Dict[str, Binding]:
        return dict(self._bindings)

    @property
    def active_binding(self) -> Optional[Binding]:
        if self._active_tab in self._bindings:
            return self._bindings[self._active_tab]
        return next(iter(self._bindings.values()), None)

    def activate(self, tab_id: str) -> None:
        if tab_id in self._bindings:
            self._active_tab = tab_id

    # binding management

    async def bind(self, surface: ContentSurface, tab_id: str) -> Binding:
        if tab_id in self._bindings:
            await self.unbind(tab_id)

        binding = self._new_binding(surface, tab_id)
        self._bindings[tab_id] = binding
        if self._active_tab is None:
            self._active_tab = tab_id

        try:
            await surface.expose_binding(self.binding_name, self._make_dispatcher(surface))
        except PlaywrightError as exc:
            # Already exposed when the same page is bound again; the dispatcher resolves bindings by surface.
            logging.debug("bridge_expose_skipped tab=%s reason=%s", tab_id, exc)
        try:
            await surface.add_init_script(self._script)
        except PlaywrightError as exc:
            logging.warning("bridge_init_script_failed tab=%s reason=%s", tab_id, exc)

        binding.ready = await self._inject_and_verify(binding)
        return binding

    def _new_binding(self, surface: ContentSurface, tab_id: str) -> Binding:
        focus = FieldFocusState()
        renderer_factory = self._host.renderer_factory if self._host else LoggingPanelRenderer

        async def write_back(field_identifier: str, value: str) -> Any:
            try:
                return await surface.evaluate(SET_INPUT_VALUE_SCRIPT, [self.registry_key, field_identifier, value])
            except PlaywrightError as exc:
                logging.warning("bridge_write_back_failed tab=%s field=%s reason=%s", tab_id, field_identifier, exc)
                return False

        panel = PanelStateMachine(
            query_engine=self.query_engine,
            store=self.store,
            write_back=write_back,
            renderer=renderer_factory(tab_id),
            focused_field=lambda: focus.current,
            offset_provider=self._panel_offset,
        )
        url = getattr(surface, "url", None)
        return Binding(
            tab_id=tab_id,
            surface=surface,
            panel=panel,
            focus=focus,
            url=url,
            url_scope=url_scope_from_url(url),
        )

    async def _inject_and_verify(self, binding: Binding) -> bool:
        surface = binding.surface
        for attempt in (1, 2):
            if attempt > 1:
                await self._sleep(self.retry_delay_ms / 1000.0)
                logging.info("bridge_injection_retry tab=%s", binding.tab_id)
            try:
                await surface.evaluate(self._script)
                await self._sleep(self.verify_delay_ms / 1000.0)
                raw = await surface.evaluate(PRESENCE_CHECK_SCRIPT, [self.registry_key, self.binding_name])
                ensure_ready(raw)
                logging.info("bridge_ready tab=%s attempt=%s", binding.tab_id, attempt)
                return True
            except (BridgeNotReadyError, SerializationError) as exc:
                logging.warning("bridge_not_ready tab=%s attempt=%s reason=%s", binding.tab_id, attempt, exc)
            except PlaywrightError as exc:
                logging.warning("bridge_injection_failed tab=%s attempt=%s reason=%s", binding.tab_id, attempt, exc)
        logging.warning("bridge_suggestions_disabled tab=%s", binding.tab_id)
        return False

    async def unbind(self, tab_id: str) -> None:
        binding = self._bindings.pop(tab_id, None)
        if binding is None:
            return
        if self._active_tab == tab_id:
            self._active_tab = None
        binding.cancel_live_query()
        binding.panel.close()
        try:
            await binding.surface.evaluate(TEARDOWN_SCRIPT, self.registry_key)
        except PlaywrightError as exc:
            logging.debug("bridge_teardown_skipped tab=%s reason=%s", tab_id, exc)
        logging.info("bridge_unbound tab=%s", tab_id)

    def _binding_for_surface(self, surface: ContentSurface) -> Optional[Binding]:
        for binding in self._bindings.values():
            if binding.surface is surface:
                return binding
        return None

    def _make_dispatcher(self, surface: ContentSurface) -> Callable[..., Awaitable[None]]:
        async def dispatch(_source: Any, call_name: Any = None, args: Any = None) -> None:
            binding = self._binding_for_surface(surface)
            if binding is None:
                return None
            await self.handle_bridge_call(binding.tab_id, call_name, args)
            return None

        return dispatch

    async def handle_bridge_call(self, tab_id: str, call_name: Any, args: Any) -> None:
        binding = self._bindings.get(tab_id)
        if binding is None:
            return
        try:
            event: BridgeEvent = parse_bridge_call(call_name, args)
        except UntrackableFieldError as exc:
            logging.debug("bridge_call_untrackable tab=%s reason=%s", tab_id, exc)
            return
        except SerializationError as exc:
            logging.warning("bridge_call_malformed tab=%s reason=%s", tab_id, exc)
            return

        handler = self._handlers[type(event)]
        try:
            result = handler(binding, event)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # noqa: BLE001
            logging.warning("bridge_handler_failed tab=%s call=%s reason=%s", tab_id, call_name, exc)

    # typed event handlers

    def on_input_focused(self, binding: Binding, event: InputFocused) -> None:
        if not is_eligible_field_type(event.field_type):
            logging.debug("bridge_focus_ignored tab=%s type=%s", binding.tab_id, event.field_type)
            return
        self._active_tab = binding.tab_id
        binding.cancel_live_query()
        binding.focus.focus(event.field_identifier)
        if self.keyboard_visible:
            binding.panel.request_show(event.field_identifier, binding.url_scope)

    def on_input_blurred(self, binding: Binding, event: InputBlurred) -> None:
        if binding.focus.blur(event.field_identifier):
            binding.cancel_live_query()
        binding.panel.on_field_blurred(event.field_identifier)

    def on_input_value_changed(self, binding: Binding, event: InputValueChanged) -> None:
        value = event.value.strip()
        if len(value) <= settings.live_value_min_length:
            return
        if binding.focus.current != event.field_identifier or not self.keyboard_visible:
            return
        binding.cancel_live_query()
        binding.live_query = asyncio.get_running_loop().call_later(
            self.live_debounce_ms / 1000.0,
            self._issue_live_query,
            binding,
            event.field_identifier,
            event.value,
        )

    def _issue_live_query(self, binding: Binding, field_identifier: str, value: str) -> None:
        binding.live_query = None
        if self._bindings.get(binding.tab_id) is not binding:
            return
        if binding.focus.current != field_identifier or not self.keyboard_visible:
            return
        binding.panel.request_show(field_identifier, binding.url_scope, seed=value)

    async def save_submitted_value(self, binding: Binding, event: SaveSubmittedValue) -> Optional[int]:
        if not is_eligible_field_type(event.field_type):
            logging.debug("bridge_save_ignored tab=%s type=%s", binding.tab_id, event.field_type)
            return None
        try:
            return await call_in_worker(
                self.store.upsert,
                event.field_identifier,
                event.value,
                event.field_type,
                SuggestionSource.USER_INPUT,
                binding.url_scope,
            )
        except StoreError as exc:
            logging.warning("bridge_save_failed tab=%s field=%s reason=%s", binding.tab_id, event.field_identifier, exc)
            return None

    def on_page_url_changed(self, binding: Binding, event: PageUrlChanged) -> None:
        binding.url = event.url
        binding.url_scope = url_scope_from_url(event.url)
        logging.debug("bridge_url_changed tab=%s scope=%s", binding.tab_id, binding.url_scope)

    def on_field_count_reported(self, binding: Binding, event: FieldCountReported) -> None:
        binding.field_count = event.count
        logging.debug("bridge_field_count tab=%s count=%s", binding.tab_id, event.count)

    def on_page_error(self, binding: Binding, event: ErrorLogged) -> None:
        logging.warning("bridge_page_error tab=%s message=%s", binding.tab_id, event.message)

    # keyboard listener

    def on_keyboard_visibility_changed(self, is_visible: bool, keyboard_height: int) -> None:
        if is_visible:
            binding = self.active_binding
            if binding is not None and binding.focus.current:
                binding.panel.request_show(binding.focus.current, binding.url_scope)
            return
        for binding in self._bindings.values():
            binding.cancel_live_query()
            binding.panel.on_keyboard_hidden()

    def on_keyboard_height_changed(self, keyboard_height: int) -> None:
        binding = self.active_binding
        if binding is not None:
            binding.panel.on_keyboard_height_changed(keyboard_height)

    def _panel_offset(self) -> int:
        keyboard = self._host.keyboard if self._host else None
        return keyboard.panel_offset if keyboard is not None else 0

    # panel actions surfaced to the host UI

    async def select_suggestion(self, tab_id: str, record_id: int) -> bool:
        binding = self._bindings.get(tab_id)
        return await binding.panel.select(record_id) if binding else False

    async def delete_suggestion(self, tab_id: str, record_id: int) -> bool:
        binding = self._bindings.get(tab_id)
        return await binding.panel.delete(record_id) if binding else False

    async def delete_all_suggestions(self, tab_id: str) -> int:
        binding = self._bindings.get(tab_id)
        return await binding.panel.delete_all() if binding else 0

    def dismiss(self, tab_id: str) -> None:
        binding = self._bindings.get(tab_id)
        if binding is not None:
            binding.panel.dismiss()

    async def focused_field(self, tab_id: str) -> Optional[dict]:
        binding = self._bindings.get(tab_id)
        if binding is None:
            return None
        try:
            result = await binding.surface.evaluate(FOCUSED_FIELD_SCRIPT, self.registry_key)
        except PlaywrightError as exc:
            logging.debug("bridge_focused_field_failed tab=%s reason=%s", tab_id, exc)
            return None
        return result if isinstance(result, dict) else None
