from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence, Tuple, Union

from ..bridge.protocol import write_back_succeeded
from ..config import settings
from ..errors import StoreError
from ..models import SuggestionRecord
from ..suggestion.query import SuggestionQueryEngine
from ..suggestion.store import SuggestionStore, call_in_worker


@dataclass(frozen=True)
class Hidden:
    pass


@dataclass(frozen=True)
class Loading:
    field_identifier: str


@dataclass(frozen=True)
class Shown:
    field_identifier: str
    candidates: Tuple[SuggestionRecord, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.candidates

    def find(self, record_id: int) -> Optional[SuggestionRecord]:
        return next((c for c in self.candidates if c.id == record_id), None)


PanelState = Union[Hidden, Loading, Shown]

HIDDEN = Hidden()


class PanelRenderer(Protocol):
    """Drawing side of the panel; the UI toolkit owns the actual views."""

    def show_loading(self, field_identifier: str) -> None: ...

    def show(self, field_identifier: str, candidates: Sequence[SuggestionRecord], offset: int) -> None: ...

    def show_empty(self, field_identifier: str, offset: int) -> None: ...

    def reposition(self, offset: int) -> None: ...

    def hide(self) -> None: ...


class LoggingPanelRenderer:
    """Renderer for headless runs: every panel change becomes a log line."""

    def __init__(self, tab_id: str = "") -> None:
        self.tab_id = tab_id

    def show_loading(self, field_identifier: str) -> None:
        logging.info("[panel] tab=%s loading field=%s", self.tab_id, field_identifier)

    def show(self, field_identifier: str, candidates: Sequence[SuggestionRecord], offset: int) -> None:
        values = ", ".join(f"{c.value!r}x{c.usage_count}" for c in candidates)
        logging.info("[panel] tab=%s field=%s offset=%s candidates=[%s]", self.tab_id, field_identifier, offset, values)

    def show_empty(self, field_identifier: str, offset: int) -> None:
        logging.info("[panel] tab=%s field=%s offset=%s no suggestions for this field", self.tab_id, field_identifier, offset)

    def reposition(self, offset: int) -> None:
        logging.info("[panel] tab=%s offset=%s", self.tab_id, offset)

    def hide(self) -> None:
        logging.info("[panel] tab=%s hidden", self.tab_id)


WriteBack = Callable[[str, str], Awaitable[Any]]


class PanelStateMachine:
    """Visible/hidden/loading lifecycle of one binding's suggestion panel.

    All methods are called on the UI loop. Queries run in a worker thread and
    at most one is in flight; each new request supersedes the previous job and
    a superseded job's result is dropped when it eventually completes.
    """

    def __init__(
        self,
        query_engine: SuggestionQueryEngine,
        store: SuggestionStore,
        write_back: WriteBack,
        renderer: PanelRenderer,
        focused_field: Callable[[], Optional[str]],
        offset_provider: Callable[[], int] = lambda: 0,
        store_timeout_s: float | None = None,
        limit: int | None = None,
    ) -> None:
        self.query_engine = query_engine
        self.store = store
        self._write_back = write_back
        self.renderer = renderer
        self._focused_field = focused_field
        self._offset_provider = offset_provider
        self.store_timeout_s = settings.store_timeout_s if store_timeout_s is None else store_timeout_s
        self.limit = limit or settings.suggestion_limit

        self._state: PanelState = HIDDEN
        self._job: Optional[asyncio.Task] = None
        self._generation = 0

    @property
    def state(self) -> PanelState:
        return self._state

    @property
    def job(self) -> Optional[asyncio.Task]:
        return self._job

    def request_show(self, field_identifier: str, url_scope: Optional[str], seed: Optional[str] = None) -> asyncio.Task:
        self._cancel_job()
        self._generation += 1
        generation = self._generation
        self._state = Loading(field_identifier)
        self._render("show_loading", field_identifier)
        self._job = asyncio.get_running_loop().create_task(
            self._run_query(generation, field_identifier, url_scope, seed)
        )
        return self._job

    async def _run_query(
        self, generation: int, field_identifier: str, url_scope: Optional[str], seed: Optional[str]
    ) -> bool:
        try:
            candidates = await call_in_worker(
                self.query_engine.get_suggestions,
                field_identifier,
                url_scope,
                self.limit,
                seed,
                timeout=self.store_timeout_s,
            )
        except StoreError as exc:
            logging.warning("panel_query_failed field=%s reason=%s", field_identifier, exc)
            candidates = []
        return self._complete(generation, field_identifier, candidates)

    def _complete(self, generation: int, field_identifier: str, candidates: Sequence[SuggestionRecord]) -> bool:
        state = self._state
        stale = (
            generation != self._generation
            or not isinstance(state, Loading)
            or state.field_identifier != field_identifier
            or self._focused_field() != field_identifier
        )
        if stale:
            logging.debug("panel_result_discarded field=%s generation=%s", field_identifier, generation)
            return False
        self._state = Shown(field_identifier, tuple(candidates))
        self._render_shown()
        return True

    def on_keyboard_hidden(self) -> None:
        self.hide("keyboard_hidden")

    def on_keyboard_height_changed(self, height: int) -> None:
        if isinstance(self._state, Shown) and height > 0:
            self._render("reposition", height)

    def on_field_blurred(self, field_identifier: str) -> None:
        state = self._state
        if isinstance(state, (Loading, Shown)) and state.field_identifier == field_identifier:
            self.hide("field_blurred")

    def dismiss(self) -> None:
        self.hide("dismissed")

    def hide(self, reason: str = "") -> None:
        self._cancel_job()
        self._generation += 1
        if isinstance(self._state, Hidden):
            return
        logging.debug("panel_hidden reason=%s", reason)
        self._state = HIDDEN
        self._render("hide")

    def close(self) -> None:
        self.hide("closed")

    async def select(self, record_id: int) -> bool:
        """Write the candidate into the page, count the use, then hide."""
        state = self._state
        if not isinstance(state, Shown):
            return False
        record = state.find(record_id)
        if record is None:
            return False

        field_identifier = state.field_identifier
        try:
            result = await self._write_back(field_identifier, record.value)
        except Exception as exc:  # noqa: BLE001
            logging.warning("panel_write_back_failed field=%s reason=%s", field_identifier, exc)
            return False
        if not write_back_succeeded(result):
            logging.info("panel_write_back_rejected field=%s result=%r", field_identifier, result)
            return False

        try:
            await call_in_worker(
                self.store.upsert,
                field_identifier,
                record.value,
                record.field_type,
                record.source,
                record.url_scope,
                timeout=self.store_timeout_s,
            )
        except StoreError as exc:
            logging.warning("panel_usage_update_failed field=%s reason=%s", field_identifier, exc)

        if self._still_showing(field_identifier):
            self.hide("selected")
        return True

    async def delete(self, record_id: int) -> bool:
        state = self._state
        if not isinstance(state, Shown) or state.find(record_id) is None:
            return False
        try:
            await call_in_worker(self.store.delete, record_id, timeout=self.store_timeout_s)
        except StoreError as exc:
            logging.warning("panel_delete_failed id=%s reason=%s", record_id, exc)
            return False

        current = self._state
        if isinstance(current, Shown) and current.field_identifier == state.field_identifier:
            remaining = tuple(c for c in current.candidates if c.id != record_id)
            self._state = Shown(current.field_identifier, remaining)
            self._render_shown()
        return True

    async def delete_all(self) -> int:
        state = self._state
        if not isinstance(state, Shown):
            return 0
        try:
            removed = await call_in_worker(
                self.store.delete_all_for_field, state.field_identifier, timeout=self.store_timeout_s
            )
        except StoreError as exc:
            logging.warning("panel_delete_all_failed field=%s reason=%s", state.field_identifier, exc)
            return 0

        if self._still_showing(state.field_identifier):
            self._state = Shown(state.field_identifier, ())
            self._render_shown()
        return removed

    def _still_showing(self, field_identifier: str) -> bool:
        return isinstance(self._state, Shown) and self._state.field_identifier == field_identifier

    def _cancel_job(self) -> None:
        job = self._job
        self._job = None
        if job is not None and not job.done():
            job.cancel()

    def _render_shown(self) -> None:
        state = self._state
        if not isinstance(state, Shown):
            return
        offset = self._offset_provider()
        if state.is_empty:
            self._render("show_empty", state.field_identifier, offset)
        else:
            self._render("show", state.field_identifier, state.candidates, offset)

    def _render(self, method: str, *args: Any) -> None:
        try:
            getattr(self.renderer, method)(*args)
        except Exception as exc:  # noqa: BLE001
            logging.warning("panel_render_failed method=%s reason=%s", method, exc)
