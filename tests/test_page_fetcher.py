import pytest
import requests

from spe_cantines.core.cancellation import CancellationToken, OperationCancelled
from spe_cantines.core.page_fetcher import PageFetcher
from spe_cantines.vendors import tabular_api
from spe_cantines.vendors.tabular_api import TabularApiError


class FakeUpstream:
    """Serves `total` rows in pages; optional failures per (resource, page)."""

    def __init__(self, total, report_total=True, failures=None, short_pages=None):
        self.total = total
        self.report_total = report_total
        self.failures = failures or {}
        self.short_pages = short_pages or set()
        self.calls = []

    def __call__(self, resource_id, filters, page, page_size):
        self.calls.append((resource_id, page, page_size))
        status = self.failures.get((resource_id, page))
        if status:
            raise TabularApiError(f"API error: {status}", status_code=status)
        start = (page - 1) * page_size
        end = min(start + page_size, self.total)
        rows = [] if page in self.short_pages else [{"id": i} for i in range(start, end)]
        payload = {"data": rows}
        if self.report_total:
            payload["meta"] = {"total": self.total}
        return payload


def test_fetch_all_stops_when_total_reached():
    upstream = FakeUpstream(total=125)

    result = PageFetcher(upstream).fetch_all(["rid"], [], page_size=50)

    assert len(result.records) == 125
    assert result.total_count == 125
    assert len(upstream.calls) == 3
    assert result.pages_fetched == 3
    assert result.partial is False
    assert [row["id"] for row in result.records] == list(range(125))


def test_progress_is_reported_after_every_page():
    events = []

    PageFetcher(FakeUpstream(total=120)).fetch_all(["rid"], [], page_size=50, progress=lambda *args: events.append(args))

    assert events == [(50, 120, 1), (100, 120, 2), (120, 120, 3)]


def test_missing_total_assumes_single_page():
    upstream = FakeUpstream(total=30, report_total=False)

    result = PageFetcher(upstream).fetch_all(["rid"], [], page_size=50)

    assert result.total_count == 30
    assert len(upstream.calls) == 1


def test_empty_page_stops_pagination():
    upstream = FakeUpstream(total=200, short_pages={2})

    result = PageFetcher(upstream).fetch_all(["rid"], [], page_size=50)

    assert len(result.records) == 50
    assert len(upstream.calls) == 2


def test_page_ceiling_is_a_normal_stop():
    upstream = FakeUpstream(total=1000)

    result = PageFetcher(upstream).fetch_all(["rid"], [], page_size=50, max_pages=3)

    assert len(upstream.calls) == 3
    assert len(result.records) == 150
    assert result.partial is False


def test_first_page_failure_is_fatal():
    upstream = FakeUpstream(total=10, failures={("rid", 1): 500})

    with pytest.raises(TabularApiError) as excinfo:
        PageFetcher(upstream).fetch_all(["rid"], [], page_size=50)

    assert excinfo.value.status_code == 500


def test_later_page_failure_returns_partial_rows():
    upstream = FakeUpstream(total=150, failures={("rid", 3): 502})

    result = PageFetcher(upstream).fetch_all(["rid"], [], page_size=50)

    assert len(result.records) == 100
    assert result.partial is True
    assert result.total_count == 150


def test_fallback_resource_used_when_preferred_fails():
    upstream = FakeUpstream(total=60, failures={("preferred", 1): 410})

    result = PageFetcher(upstream).fetch_all(["preferred", "fallback"], [], page_size=50)

    assert result.resource_id == "fallback"
    assert [call[0] for call in upstream.calls] == ["preferred", "fallback", "fallback"]
    assert len(result.records) == 60


def test_page_size_is_capped_to_upstream_limit():
    upstream = FakeUpstream(total=10)

    PageFetcher(upstream).fetch_all(["rid"], [], page_size=500)

    assert upstream.calls[0][2] == 50


def test_cancelled_token_stops_fetch():
    token = CancellationToken()
    upstream = FakeUpstream(total=500)

    def cancel_after_first(fetched, total, page):
        token.cancel()

    with pytest.raises(OperationCancelled):
        PageFetcher(upstream).fetch_all(["rid"], [], page_size=50, progress=cancel_after_first, token=token)

    assert len(upstream.calls) == 1


class _PagedResponse:
    def __init__(self, payload=None, body=None):
        self.status_code = 200
        self._payload = payload
        self._body = body

    def json(self):
        if self._body is not None:
            raise requests.exceptions.JSONDecodeError("Expecting value", self._body, 0)
        return self._payload


class _ScriptedSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.urls = []

    def get(self, url, headers=None, timeout=None):
        self.urls.append(url)
        return self.responses.pop(0)


def test_malformed_later_page_returns_partial_result(monkeypatch):
    session = _ScriptedSession([
        _PagedResponse(payload={"data": [{"id": i} for i in range(50)], "meta": {"total": 150}}),
        _PagedResponse(body="<html>maintenance</html>"),
    ])
    monkeypatch.setattr(tabular_api, "_SESSION", session)

    result = PageFetcher().fetch_all(["rid"], [], page_size=50)

    assert result.partial is True
    assert len(result.records) == 50
    assert len(session.urls) == 2
