from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError

from recordexport.core.config import Settings, get_settings
from recordexport.schemas.export import FilterPredicate, SortOrder

logger = logging.getLogger(__name__)

Record = Mapping[str, Any]

_FILTERS_ADAPTER = TypeAdapter(dict[str, FilterPredicate])


class SearchUnavailable(RuntimeError):
    pass


class InvalidFilter(ValueError):
    pass


@dataclass(frozen=True)
class SearchQuery:
    record_type: str
    filters: Mapping[str, FilterPredicate] = field(default_factory=dict)
    order: SortOrder | None = None
    query: str | None = None
    match_criteria: Mapping[str, Any] | None = None
    # None means unrestricted; an empty tuple matches nothing.
    managed_user_names: tuple[str, ...] | None = None


@dataclass(frozen=True)
class RecordPage:
    records: tuple[Record, ...]
    next_page: int | None
    total: int


@dataclass(frozen=True)
class PageToken:
    page: int = 1
    total: int | None = None


def parse_filters(raw: Mapping[str, Any] | None) -> dict[str, FilterPredicate]:
    if not raw:
        return {}
    if any(not isinstance(name, str) or not name.strip() for name in raw):
        raise InvalidFilter("Filter field names must be non-empty strings")
    try:
        return _FILTERS_ADAPTER.validate_python(dict(raw))
    except ValidationError as exc:
        raise InvalidFilter(f"Malformed filters: {exc.errors(include_url=False)}") from exc


def dump_filters(filters: Mapping[str, FilterPredicate]) -> dict[str, dict[str, Any]]:
    return {name: predicate.model_dump(mode="json") for name, predicate in filters.items()}


def next_page_for(page: int, page_size: int, total: int) -> int | None:
    return page + 1 if page * page_size < total else None


def _check_paging(page: int, page_size: int) -> None:
    if page < 1:
        raise ValueError("page must be >= 1")
    if page_size < 1:
        raise ValueError("page_size must be a positive integer")


def _as_values(value: Any) -> tuple[Any, ...]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(value)
    return (value,)


class SearchBackend:
    def fetch_page(self, query: SearchQuery, page: int, page_size: int) -> RecordPage:
        raise NotImplementedError

    def close(self) -> None:
        return None


class InMemorySearchBackend(SearchBackend):
    """Search over record mappings held in memory, keyed by record type."""

    def __init__(self, records_by_type: Mapping[str, Iterable[Record]] | None = None) -> None:
        self._records = {record_type: list(records) for record_type, records in (records_by_type or {}).items()}

    @classmethod
    def from_file(cls, path: Path) -> "InMemorySearchBackend":
        return cls(json.loads(path.read_text(encoding="utf-8")))

    def fetch_page(self, query: SearchQuery, page: int, page_size: int) -> RecordPage:
        _check_paging(page, page_size)
        matches = self._sorted([r for r in self._records.get(query.record_type, []) if self._matches(r, query)], query.order)
        start = (page - 1) * page_size
        return RecordPage(
            records=tuple(matches[start : start + page_size]),
            next_page=next_page_for(page, page_size, len(matches)),
            total=len(matches),
        )

    @staticmethod
    def _sorted(records: list[Record], order: SortOrder | None) -> list[Record]:
        ordered = sorted(records, key=lambda r: str(r.get("id", "")))
        if order is None:
            return ordered
        # Ties stay in id order and missing values go last in both directions.
        present = [r for r in ordered if r.get(order.field) is not None]
        missing = [r for r in ordered if r.get(order.field) is None]
        present.sort(key=lambda r: _sort_key(r.get(order.field)), reverse=order.direction == "desc")
        return present + missing

    def _matches(self, record: Record, query: SearchQuery) -> bool:
        if query.managed_user_names is not None and record.get("owned_by") not in query.managed_user_names:
            return False
        for name, predicate in query.filters.items():
            if not _predicate_matches(record.get(name), predicate):
                return False
        if query.match_criteria and not _criteria_match(record, query.match_criteria):
            return False
        if query.query and not _text_matches(record, query.query):
            return False
        return True


def _sort_key(value: Any) -> tuple[int, Any]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value)
    return (1, str(value))


def _predicate_matches(value: Any, predicate: FilterPredicate) -> bool:
    values = _as_values(value)
    if predicate.type == "single":
        return predicate.value in values
    if predicate.type == "list":
        return any(candidate in predicate.value for candidate in values)
    if predicate.type == "not":
        return predicate.value not in values
    if value is None:
        return False
    lower, upper = predicate.value.get("from"), predicate.value.get("to")
    try:
        return (lower is None or value >= lower) and (upper is None or value <= upper)
    except TypeError:
        return False


def _criteria_match(record: Record, criteria: Mapping[str, Any]) -> bool:
    for name, wanted in criteria.items():
        present = _as_values(record.get(name))
        if any(candidate in present for candidate in _as_values(wanted)):
            return True
    return False


def _text_matches(record: Record, text: str) -> bool:
    haystack = " ".join(str(v) for v in record.values() if isinstance(v, (str, int, float))).lower()
    return all(token in haystack for token in text.lower().split())


def _solr_quote(value: Any) -> str:
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _solr_any(name: str, values: Sequence[Any]) -> str:
    return f"{name}:({' OR '.join(_solr_quote(v) for v in values)})"


class SolrSearchBackend(SearchBackend):
    def __init__(self, base_url: str, timeout: float = 30.0, client: httpx.Client | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self.client.close()

    def build_params(self, query: SearchQuery, page: int, page_size: int) -> list[tuple[str, str | int]]:
        filter_queries = [f"record_type:{_solr_quote(query.record_type)}"]
        for name, predicate in query.filters.items():
            if predicate.type == "single":
                filter_queries.append(f"{name}:{_solr_quote(predicate.value)}")
            elif predicate.type == "list":
                filter_queries.append(_solr_any(name, predicate.value))
            elif predicate.type == "not":
                filter_queries.append(f"-{name}:{_solr_quote(predicate.value)}")
            else:
                lower = predicate.value.get("from")
                upper = predicate.value.get("to")
                lower_term = "*" if lower is None else _solr_quote(lower)
                upper_term = "*" if upper is None else _solr_quote(upper)
                filter_queries.append(f"{name}:[{lower_term} TO {upper_term}]")
        if query.managed_user_names is not None:
            filter_queries.append(_solr_any("owned_by", query.managed_user_names))

        clauses: list[str] = []
        if query.query:
            clauses.append(f"({query.query})")
        if query.match_criteria:
            criteria = " OR ".join(_solr_any(name, _as_values(v)) for name, v in query.match_criteria.items())
            clauses.append(f"({criteria})")

        sort = "id asc"
        if query.order is not None:
            sort = f"{query.order.field} {query.order.direction}, id asc"

        params: list[tuple[str, str | int]] = [
            ("q", " AND ".join(clauses) if clauses else "*:*"),
            ("wt", "json"),
            ("start", (page - 1) * page_size),
            ("rows", page_size),
            ("sort", sort),
        ]
        params.extend(("fq", fq) for fq in filter_queries)
        return params

    def fetch_page(self, query: SearchQuery, page: int, page_size: int) -> RecordPage:
        _check_paging(page, page_size)
        if query.managed_user_names is not None and not query.managed_user_names:
            return RecordPage(records=(), next_page=None, total=0)

        try:
            response = self.client.get(f"{self.base_url}/select", params=self.build_params(query, page, page_size))
            response.raise_for_status()
        except httpx.TransportError as exc:
            raise SearchUnavailable(f"Search index unreachable at {self.base_url}: {exc}") from exc
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code >= 500:
                raise SearchUnavailable(
                    f"Search index at {self.base_url} returned {exc.response.status_code}"
                ) from exc
            raise

        body = response.json().get("response") or {}
        total = int(body.get("numFound") or 0)
        return RecordPage(
            records=tuple(body.get("docs") or []),
            next_page=next_page_for(page, page_size, total),
            total=total,
        )


def iter_pages(backend: SearchBackend, query: SearchQuery, page_size: int) -> Iterator[RecordPage]:
    """Yield pages from the first until the backend reports no next page.

    The total reported on every yielded page is the one seen on the first page.
    """
    token = PageToken()
    while True:
        page = backend.fetch_page(query, token.page, page_size)
        total = page.total if token.total is None else token.total
        yield replace(page, total=total)
        if page.next_page is None:
            return
        if page.next_page <= token.page:
            raise RuntimeError(f"Search backend returned non-advancing page {page.next_page} after {token.page}")
        token = PageToken(page=page.next_page, total=total)


def fetch_all(
    backend: SearchBackend,
    query: SearchQuery,
    page_size: int | None = None,
    settings: Settings | None = None,
) -> tuple[list[Record], int]:
    page_size = page_size or (settings or get_settings()).fetch_all_page_size
    records: list[Record] = []
    total = 0
    for page in iter_pages(backend, query, page_size):
        records.extend(page.records)
        total = page.total
    return records, total


def build_search_backend(settings: Settings | None = None) -> SearchBackend:
    settings = settings or get_settings()
    kind = settings.search_backend.strip().lower()

    if kind == "solr":
        return SolrSearchBackend(settings.solr_url, timeout=settings.solr_timeout_seconds)
    if kind == "memory":
        if settings.memory_records_path is not None:
            return InMemorySearchBackend.from_file(settings.memory_records_path)
        return InMemorySearchBackend()

    raise ValueError(f"Unsupported SEARCH_BACKEND '{settings.search_backend}'")
