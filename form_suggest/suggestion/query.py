from __future__ import annotations

from typing import List, Optional, Sequence

from ..config import settings
from ..models import SuggestionRecord
from .store import SuggestionStore


def apply_seed(candidates: Sequence[SuggestionRecord], seed: Optional[str]) -> List[SuggestionRecord]:
    """Move candidates that extend the typed prefix to the front.

    A candidate identical to the typed value is dropped since the field already
    holds it. Relative order inside each group is preserved.
    """
    if not seed or not seed.strip():
        return list(candidates)
    typed = seed.strip().lower()
    matching: List[SuggestionRecord] = []
    rest: List[SuggestionRecord] = []
    for candidate in candidates:
        lowered = candidate.value.strip().lower()
        if lowered == typed:
            continue
        if lowered.startswith(typed):
            matching.append(candidate)
        else:
            rest.append(candidate)
    return matching + rest


class SuggestionQueryEngine:
    """Two-tier lookup: the current site's history first, then everything else."""

    def __init__(
        self,
        store: SuggestionStore,
        default_limit: int | None = None,
        scoped_min_results: int | None = None,
    ) -> None:
        self.store = store
        self.default_limit = default_limit or settings.suggestion_limit
        self.scoped_min_results = scoped_min_results or settings.scoped_min_results

    def get_suggestions(
        self,
        field_identifier: str,
        current_url_scope: Optional[str] = None,
        limit: int | None = None,
        seed: Optional[str] = None,
    ) -> List[SuggestionRecord]:
        limit = self.default_limit if limit is None else limit
        if limit <= 0:
            return []

        if current_url_scope:
            merged = list(self.store.query_by_field_and_scope(field_identifier, current_url_scope, limit))
            if len(merged) < self.scoped_min_results:
                seen = {record.id for record in merged}
                for record in self.store.query_by_field(field_identifier, limit):
                    if record.id not in seen:
                        seen.add(record.id)
                        merged.append(record)
        else:
            merged = list(self.store.query_by_field(field_identifier, limit))

        return apply_seed(merged, seed)[:limit]
