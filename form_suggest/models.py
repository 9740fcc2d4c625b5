from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import BigInteger, Integer, String, Text, UniqueConstraint, create_engine
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, sessionmaker

from .config import settings


def _connect_args(database_url: str) -> dict:
    # Store calls run on worker threads, so SQLite must not pin connections.
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(settings.database_url, connect_args=_connect_args(settings.database_url))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
Base = declarative_base()


class SuggestionSource(str, enum.Enum):
    USER_INPUT = "USER_INPUT"
    PREFILLED = "PREFILLED"


class Suggestion(Base):
    __tablename__ = "suggestions"
    __table_args__ = (UniqueConstraint("field_identifier", "value", name="uq_suggestions_field_value"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    field_identifier: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    last_used_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    field_type: Mapped[str] = mapped_column(String(32), nullable=False, default="text")
    source: Mapped[str] = mapped_column(String(16), nullable=False, default=SuggestionSource.USER_INPUT.value)
    url_scope: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    def to_record(self) -> "SuggestionRecord":
        return SuggestionRecord(
            id=self.id,
            field_identifier=self.field_identifier,
            value=self.value,
            last_used_timestamp=self.last_used_timestamp,
            usage_count=self.usage_count,
            field_type=self.field_type,
            source=SuggestionSource(self.source),
            url_scope=self.url_scope,
        )


@dataclass(frozen=True)
class SuggestionRecord:
    """Detached copy of a suggestions row, safe to hand across threads."""

    id: int
    field_identifier: str
    value: str
    last_used_timestamp: int
    usage_count: int
    field_type: str = "text"
    source: SuggestionSource = SuggestionSource.USER_INPUT
    url_scope: Optional[str] = None


def init_db(bind=None) -> None:
    Base.metadata.create_all(bind or engine)
