from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, List, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import StoreError
from ..models import SessionLocal, Suggestion, SuggestionRecord, SuggestionSource

DEFAULT_LIMIT = 15
PASSWORD_FIELD_TYPE = "password"


def epoch_millis() -> int:
    return int(time.time() * 1000)


def is_persistable(field_identifier: Optional[str], value: Optional[str], field_type: Optional[str] = None) -> bool:
    """Whether an observation may be written to the store at all."""
    if not field_identifier or not field_identifier.strip():
        return False
    if (field_type or "").strip().lower() == PASSWORD_FIELD_TYPE:
        return False
    if not value:
        return False
    trimmed = value.strip()
    return bool(trimmed) and trimmed != "."


def _ranked(stmt):
    return stmt.order_by(
        Suggestion.usage_count.desc(),
        Suggestion.last_used_timestamp.desc(),
        Suggestion.id.desc(),
    )


class SuggestionStore:
    """Ranked, deduplicated table of field -> value observations.

    Every public method opens its own short session, so a store instance can be
    shared between bindings and called from worker threads.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Callable[[], int] = epoch_millis,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def upsert(
        self,
        field_identifier: str,
        value: str,
        field_type: str = "text",
        source: SuggestionSource = SuggestionSource.USER_INPUT,
        url_scope: Optional[str] = None,
    ) -> Optional[int]:
        """Insert the observation or bump the existing row for (field, value).

        Returns the row id, or None when the value is not persistable.
        """
        if not is_persistable(field_identifier, value, field_type):
            logging.debug("store_upsert_skipped field=%s type=%s", field_identifier, field_type)
            return None

        now = self._clock()
        try:
            with self._session_factory() as session:
                try:
                    record_id = self._upsert_in_session(
                        session, field_identifier, value, field_type or "text", source, url_scope, now
                    )
                    session.commit()
                except IntegrityError:
                    # Lost an insert race on the unique constraint; the row exists now.
                    session.rollback()
                    record_id = self._increment_existing(session, field_identifier, value, now)
                    session.commit()
                return record_id
        except SQLAlchemyError as exc:
            raise StoreError(f"upsert failed for field {field_identifier!r}: {exc}") from exc

    def _upsert_in_session(
        self,
        session: Session,
        field_identifier: str,
        value: str,
        field_type: str,
        source: SuggestionSource,
        url_scope: Optional[str],
        now: int,
    ) -> Optional[int]:
        existing_id = self._increment_existing(session, field_identifier, value, now)
        if existing_id is not None:
            return existing_id

        row = Suggestion(
            field_identifier=field_identifier,
            value=value,
            last_used_timestamp=now,
            usage_count=1,
            field_type=field_type,
            source=SuggestionSource(source).value,
            url_scope=url_scope,
        )
        session.add(row)
        session.flush()
        return row.id

    def _increment_existing(self, session: Session, field_identifier: str, value: str, now: int) -> Optional[int]:
        existing_id = session.execute(
            select(Suggestion.id).where(
                Suggestion.field_identifier == field_identifier,
                Suggestion.value == value,
            )
        ).scalar_one_or_none()
        if existing_id is None:
            return None
        session.execute(
            update(Suggestion)
            .where(Suggestion.id == existing_id)
            .values(usage_count=Suggestion.usage_count + 1, last_used_timestamp=now)
        )
        return existing_id

    def query_by_field(self, field_identifier: str, limit: int = DEFAULT_LIMIT) -> List[SuggestionRecord]:
        stmt = _ranked(select(Suggestion).where(Suggestion.field_identifier == field_identifier)).limit(limit)
        return self._fetch(stmt, "query_by_field")

    def query_by_field_and_scope(
        self, field_identifier: str, url_scope: Optional[str], limit: int = DEFAULT_LIMIT
    ) -> List[SuggestionRecord]:
        scope_filter = Suggestion.url_scope.is_(None)
        if url_scope is not None:
            scope_filter = or_(scope_filter, Suggestion.url_scope == url_scope)
        stmt = _ranked(
            select(Suggestion).where(Suggestion.field_identifier == field_identifier, scope_filter)
        ).limit(limit)
        return self._fetch(stmt, "query_by_field_and_scope")

    def most_used(self, limit: int = 50) -> List[SuggestionRecord]:
        return self._fetch(_ranked(select(Suggestion)).limit(limit), "most_used")

    def all_records(self) -> List[SuggestionRecord]:
        stmt = select(Suggestion).order_by(Suggestion.last_used_timestamp.desc(), Suggestion.id.desc())
        return self._fetch(stmt, "all_records")

    def get(self, record_id: int) -> Optional[SuggestionRecord]:
        try:
            with self._session_factory() as session:
                row = session.get(Suggestion, record_id)
                return row.to_record() if row is not None else None
        except SQLAlchemyError as exc:
            raise StoreError(f"get failed for id {record_id}: {exc}") from exc

    def delete(self, record_id: int) -> bool:
        return self._delete(delete(Suggestion).where(Suggestion.id == record_id), "delete") > 0

    def delete_by_value(self, field_identifier: str, value: str) -> bool:
        stmt = delete(Suggestion).where(
            Suggestion.field_identifier == field_identifier,
            Suggestion.value == value,
        )
        return self._delete(stmt, "delete_by_value") > 0

    def delete_all_for_field(self, field_identifier: str) -> int:
        stmt = delete(Suggestion).where(Suggestion.field_identifier == field_identifier)
        return self._delete(stmt, "delete_all_for_field")

    def _fetch(self, stmt, operation: str) -> List[SuggestionRecord]:
        try:
            with self._session_factory() as session:
                return [row.to_record() for row in session.execute(stmt).scalars()]
        except SQLAlchemyError as exc:
            raise StoreError(f"{operation} failed: {exc}") from exc

    def _delete(self, stmt, operation: str) -> int:
        try:
            with self._session_factory() as session:
                result = session.execute(stmt)
                session.commit()
                return result.rowcount or 0
        except SQLAlchemyError as exc:
            raise StoreError(f"{operation} failed: {exc}") from exc


async def call_in_worker(func: Callable[..., Any], *args: Any, timeout: float | None = None) -> Any:
    """Run a blocking store call off the UI loop, bounded by the store timeout.

    A timeout is reported as StoreError and never retried. Cancelling the
    awaiting task does not stop the worker thread; callers discard late results.
    """
    timeout = settings.store_timeout_s if timeout is None else timeout
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout)
    except asyncio.TimeoutError as exc:
        name = getattr(func, "__name__", repr(func))
        raise StoreError(f"{name} timed out after {timeout}s") from exc
