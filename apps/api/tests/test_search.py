import httpx
import pytest

from recordexport.core.config import Settings
from recordexport.schemas import SortOrder
from recordexport.services.search import (
    InMemorySearchBackend,
    InvalidFilter,
    RecordPage,
    SearchBackend,
    SearchQuery,
    SearchUnavailable,
    SolrSearchBackend,
    build_search_backend,
    fetch_all,
    iter_pages,
    parse_filters,
)


def _records(count: int) -> list[dict]:
    return [{"id": f"r{i:02d}", "owned_by": "user1", "status": "open", "age": i} for i in range(count)]


def _query(**kwargs) -> SearchQuery:
    return SearchQuery(record_type="case", **kwargs)


@pytest.mark.parametrize("page_size", [1, 7, 8])
def test_paging_is_exhaustive_without_duplicates(page_size: int) -> None:
    backend = InMemorySearchBackend({"case": _records(7)})
    seen = [record["id"] for page in iter_pages(backend, _query(), page_size) for record in page.records]
    assert len(seen) == 7
    assert len(set(seen)) == 7


def test_last_page_has_no_next_page() -> None:
    backend = InMemorySearchBackend({"case": _records(5)})
    pages = list(iter_pages(backend, _query(), 2))
    assert [page.next_page for page in pages] == [2, 3, None]
    assert [len(page.records) for page in pages] == [2, 2, 1]


def test_empty_result_yields_single_empty_page() -> None:
    backend = InMemorySearchBackend({"case": []})
    pages = list(iter_pages(backend, _query(), 500))
    assert len(pages) == 1
    assert pages[0].records == ()
    assert pages[0].total == 0


class _GrowingBackend(SearchBackend):
    """Reports one more record on every call, as if writes land mid-scan."""

    def __init__(self) -> None:
        self.calls = 0

    def fetch_page(self, query: SearchQuery, page: int, page_size: int) -> RecordPage:
        self.calls += 1
        total = 4 + self.calls
        next_page = page + 1 if page < 3 else None
        return RecordPage(records=({"id": f"p{page}"},), next_page=next_page, total=total)


def test_total_is_pinned_to_first_page() -> None:
    pages = list(iter_pages(_GrowingBackend(), _query(), 1))
    assert [page.total for page in pages] == [5, 5, 5]


def test_non_advancing_backend_is_rejected() -> None:
    class _Stuck(SearchBackend):
        def fetch_page(self, query: SearchQuery, page: int, page_size: int) -> RecordPage:
            return RecordPage(records=(), next_page=page, total=10)

    with pytest.raises(RuntimeError):
        list(iter_pages(_Stuck(), _query(), 5))


def test_invalid_paging_arguments() -> None:
    backend = InMemorySearchBackend({"case": _records(3)})
    with pytest.raises(ValueError):
        backend.fetch_page(_query(), 0, 10)
    with pytest.raises(ValueError):
        backend.fetch_page(_query(), 1, 0)


def test_managed_scope_limits_owners(case_records) -> None:
    backend = InMemorySearchBackend({"case": case_records})
    records, total = fetch_all(backend, _query(managed_user_names=("user2",)), page_size=10)
    assert total == 2
    assert {record["owned_by"] for record in records} == {"user2"}

    nobody, total = fetch_all(backend, _query(managed_user_names=()), page_size=10)
    assert nobody == []
    assert total == 0


def test_filter_types(case_records) -> None:
    backend = InMemorySearchBackend({"case": case_records})

    def ids(raw_filters: dict) -> set[str]:
        records, _ = fetch_all(backend, _query(filters=parse_filters(raw_filters)), page_size=3)
        return {record["id"] for record in records}

    assert ids({"status": {"type": "single", "value": "closed"}}) == {"case-006"}
    assert ids({"owned_by": {"type": "list", "value": ["stranger", "user2"]}}) == {"case-002", "case-004", "case-007"}
    assert ids({"age": {"type": "range", "value": {"from": 9, "to": 10}}}) == {"case-004", "case-005"}
    assert ids({"status": {"type": "not", "value": "open"}}) == {"case-006"}
    assert ids({"protection_concerns": {"type": "single", "value": "separated"}}) == {r["id"] for r in case_records}


def test_text_query_and_match_criteria(case_records) -> None:
    backend = InMemorySearchBackend({"case": case_records})
    records, _ = fetch_all(backend, _query(query="child 3"), page_size=10)
    assert [record["id"] for record in records] == ["case-003"]

    records, _ = fetch_all(backend, _query(match_criteria={"name": ["Child 1", "Child 2"], "sex": "nobody"}), page_size=10)
    assert {record["id"] for record in records} == {"case-001", "case-002"}


def test_sort_order_with_id_tiebreak() -> None:
    records = [
        {"id": "b", "rank": 1},
        {"id": "a", "rank": 1},
        {"id": "c", "rank": 0},
    ]
    backend = InMemorySearchBackend({"case": records})
    ascending, _ = fetch_all(backend, _query(order=SortOrder(field="rank")), page_size=1)
    assert [record["id"] for record in ascending] == ["c", "a", "b"]
    descending, _ = fetch_all(backend, _query(order=SortOrder(field="rank", direction="desc")), page_size=2)
    assert [record["id"] for record in descending] == ["a", "b", "c"]


def test_sort_puts_missing_values_last_and_handles_mixed_types() -> None:
    records = [
        {"id": "d", "rank": None},
        {"id": "b", "rank": 2},
        {"id": "a"},
        {"id": "e", "rank": "high"},
        {"id": "c", "rank": 2},
    ]
    backend = InMemorySearchBackend({"case": records})
    ascending, _ = fetch_all(backend, _query(order=SortOrder(field="rank")), page_size=10)
    assert [record["id"] for record in ascending] == ["b", "c", "e", "a", "d"]
    descending, _ = fetch_all(backend, _query(order=SortOrder(field="rank", direction="desc")), page_size=10)
    assert [record["id"] for record in descending] == ["e", "b", "c", "a", "d"]


@pytest.mark.parametrize(
    "raw",
    [
        {"status": {"type": "single"}},
        {"status": {"type": "single", "value": ["open"]}},
        {"status": {"type": "list", "value": []}},
        {"age": {"type": "range", "value": {"above": 3}}},
        {"status": {"type": "fuzzy", "value": "open"}},
        {"": {"type": "single", "value": "open"}},
    ],
)
def test_malformed_filters_are_rejected(raw: dict) -> None:
    with pytest.raises(InvalidFilter):
        parse_filters(raw)


def test_fetch_all_uses_configured_page_size(case_records) -> None:
    calls: list[int] = []

    class _Recording(InMemorySearchBackend):
        def fetch_page(self, query: SearchQuery, page: int, page_size: int) -> RecordPage:
            calls.append(page_size)
            return super().fetch_page(query, page, page_size)

    backend = _Recording({"case": case_records})
    records, total = fetch_all(backend, _query(), settings=Settings(fetch_all_page_size=3))
    assert total == len(case_records)
    assert len(records) == len(case_records)
    assert set(calls) == {3}


def _solr_backend(handler) -> SolrSearchBackend:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return SolrSearchBackend("http://solr.test/solr/records", client=client)


def test_solr_params_cover_filters_scope_and_sort() -> None:
    backend = _solr_backend(lambda request: httpx.Response(200, json={}))
    query = _query(
        filters=parse_filters(
            {
                "status": {"type": "single", "value": "open"},
                "sex": {"type": "list", "value": ["male", "female"]},
                "age": {"type": "range", "value": {"from": 5}},
                "flagged": {"type": "not", "value": True},
            }
        ),
        order=SortOrder(field="created_at", direction="desc"),
        query="maria",
        match_criteria={"name": ["Maria"]},
        managed_user_names=("user1", "user2"),
    )
    params = backend.build_params(query, page=3, page_size=50)
    values = dict((key, value) for key, value in params if key != "fq")
    filter_queries = [value for key, value in params if key == "fq"]

    assert values["start"] == 100
    assert values["rows"] == 50
    assert values["sort"] == "created_at desc, id asc"
    assert values["q"] == '(maria) AND (name:("Maria"))'
    assert 'record_type:"case"' in filter_queries
    assert 'status:"open"' in filter_queries
    assert 'sex:("male" OR "female")' in filter_queries
    assert 'age:["5" TO *]' in filter_queries
    assert '-flagged:"True"' in filter_queries
    assert 'owned_by:("user1" OR "user2")' in filter_queries


def test_solr_fetch_page_parses_docs_and_next_page() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/solr/records/select"
        return httpx.Response(200, json={"response": {"numFound": 3, "docs": [{"id": "a"}, {"id": "b"}]}})

    page = _solr_backend(handler).fetch_page(_query(), 1, 2)
    assert [doc["id"] for doc in page.records] == ["a", "b"]
    assert page.total == 3
    assert page.next_page == 2


def test_solr_unreachable_raises_search_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(SearchUnavailable):
        _solr_backend(handler).fetch_page(_query(), 1, 10)


def test_solr_server_error_raises_search_unavailable() -> None:
    backend = _solr_backend(lambda request: httpx.Response(503, text="down"))
    with pytest.raises(SearchUnavailable):
        backend.fetch_page(_query(), 1, 10)


def test_solr_empty_scope_skips_request() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    page = _solr_backend(handler).fetch_page(_query(managed_user_names=()), 1, 10)
    assert page == RecordPage(records=(), next_page=None, total=0)


def test_build_search_backend_selects_implementation(tmp_path) -> None:
    records_path = tmp_path / "records.json"
    records_path.write_text('{"case": [{"id": "a"}]}', encoding="utf-8")

    memory = build_search_backend(Settings(search_backend="memory", memory_records_path=records_path))
    assert isinstance(memory, InMemorySearchBackend)
    assert memory.fetch_page(_query(), 1, 10).total == 1

    solr = build_search_backend(Settings(search_backend="solr"))
    assert isinstance(solr, SolrSearchBackend)
    solr.close()

    with pytest.raises(ValueError):
        build_search_backend(Settings(search_backend="elastic"))
