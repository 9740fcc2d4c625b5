from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..errors import StoreError
from ..models import SuggestionRecord, SuggestionSource, init_db
from ..suggestion.query import SuggestionQueryEngine
from ..suggestion.store import SuggestionStore, is_persistable


@asynccontextmanager
async def lifespan(_app: FastAPI):
    init_db()
    yield


app = FastAPI(title="form-suggest admin", lifespan=lifespan)


class SuggestionOut(BaseModel):
    id: int
    field_identifier: str
    value: str
    last_used_timestamp: int
    usage_count: int
    field_type: str
    source: SuggestionSource
    url_scope: str | None


class SuggestionIn(BaseModel):
    field_identifier: str = Field(min_length=1)
    value: str = Field(min_length=1)
    field_type: str = "text"
    source: SuggestionSource = SuggestionSource.PREFILLED
    url_scope: str | None = None


class UpsertResponse(BaseModel):
    id: int
    usage_count: int


class DeleteResponse(BaseModel):
    deleted: int


def get_store() -> SuggestionStore:
    return SuggestionStore()


def _out(record: SuggestionRecord) -> SuggestionOut:
    return SuggestionOut(
        id=record.id,
        field_identifier=record.field_identifier,
        value=record.value,
        last_used_timestamp=record.last_used_timestamp,
        usage_count=record.usage_count,
        field_type=record.field_type,
        source=record.source,
        url_scope=record.url_scope,
    )


def _store_failure(exc: StoreError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


@app.get("/api/suggestions", response_model=List[SuggestionOut])
def list_suggestions(
    field: str = Query(..., min_length=1),
    scope: Optional[str] = None,
    limit: int = Query(15, ge=1, le=200),
    store: SuggestionStore = Depends(get_store),
):
    """Same ranked list the panel would show for ``field`` on ``scope``."""
    engine = SuggestionQueryEngine(store)
    try:
        records = engine.get_suggestions(field, scope, limit)
    except StoreError as exc:
        raise _store_failure(exc) from exc
    return [_out(r) for r in records]


@app.get("/api/suggestions/most-used", response_model=List[SuggestionOut])
def most_used(limit: int = Query(50, ge=1, le=500), store: SuggestionStore = Depends(get_store)):
    try:
        return [_out(r) for r in store.most_used(limit)]
    except StoreError as exc:
        raise _store_failure(exc) from exc


@app.post("/api/suggestions", response_model=UpsertResponse, status_code=status.HTTP_201_CREATED)
def add_suggestion(payload: SuggestionIn, store: SuggestionStore = Depends(get_store)):
    field_identifier = payload.field_identifier.strip()
    field_type = payload.field_type.strip().lower() or "text"
    if not is_persistable(field_identifier, payload.value, field_type):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="value is not storable")
    try:
        record_id = store.upsert(
            field_identifier,
            payload.value,
            field_type,
            payload.source,
            payload.url_scope,
        )
        record = store.get(record_id) if record_id is not None else None
    except StoreError as exc:
        raise _store_failure(exc) from exc
    if record is None:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="suggestion vanished")
    return UpsertResponse(id=record.id, usage_count=record.usage_count)


@app.delete("/api/suggestions/{suggestion_id}", response_model=DeleteResponse)
def delete_suggestion(suggestion_id: int, store: SuggestionStore = Depends(get_store)):
    try:
        removed = store.delete(suggestion_id)
    except StoreError as exc:
        raise _store_failure(exc) from exc
    if not removed:
        raise HTTPException(status_code=404, detail="Suggestion not found")
    return DeleteResponse(deleted=1)


@app.delete("/api/fields/{field_identifier}/suggestions", response_model=DeleteResponse)
def delete_field_suggestions(field_identifier: str, store: SuggestionStore = Depends(get_store)):
    try:
        return DeleteResponse(deleted=store.delete_all_for_field(field_identifier))
    except StoreError as exc:
        raise _store_failure(exc) from exc
