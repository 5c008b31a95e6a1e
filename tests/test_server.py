import pytest

from spe_cantines.core.cancellation import OperationCancelled
from spe_cantines.jobs import server
from spe_cantines.models import (
    AggregationResult,
    Classification,
    EnrichedEstablishment,
    Establishment,
    GeocodeStats,
)
from spe_cantines.vendors.tabular_api import TabularApiError


class FakeOrchestrator:
    def compare_ministries(self, year):
        return [{"ministry": "Culture", "total": 4, "declared": 4, "rate": 100.0}]


class FakeLoader:
    def __init__(self, outcome=None):
        self.outcome = outcome
        self.calls = []
        self.orchestrator = FakeOrchestrator()

    def load(self, cohort, year):
        self.calls.append((cohort, year))
        if isinstance(self.outcome, Exception):
            raise self.outcome
        rows = [
            EnrichedEstablishment(
                establishment=Establishment(id=str(i), name=f"Cantine {i}"),
                classification=Classification.NEEDS_REVIEW,
                flags=frozenset(),
                priority=1,
            )
            for i in range(3)
        ]
        return AggregationResult(
            cohort=cohort,
            year=year,
            establishments=rows,
            total_count=3,
            statistics={"total": 3},
            geocode_stats=GeocodeStats(unresolved=3),
        )


@pytest.fixture
def client():
    server.app.config["TESTING"] = True
    return server.app.test_client()


@pytest.fixture
def loader(monkeypatch):
    fake = FakeLoader()
    monkeypatch.setattr(server, "get_loader", lambda: fake)
    return fake


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_aggregate_requires_a_scope(client, loader):
    response = client.post("/aggregate", json={})

    assert response.status_code == 400
    assert loader.calls == []


def test_aggregate_rejects_both_scopes(client, loader):
    response = client.post("/aggregate", json={"ministry": "Justice", "region": "Bretagne"})

    assert response.status_code == 400


@pytest.mark.parametrize("limit", ["abc", 0, -2])
def test_aggregate_validates_limit(client, loader, limit):
    response = client.post("/aggregate", json={"ministry": "Justice", "limit": limit})

    assert response.status_code == 400


def test_aggregate_returns_ranked_rows(client, loader):
    response = client.post("/aggregate", json={"region": "Bretagne", "year": "2023", "limit": 2})

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["cohort"] == {"mode": "region", "ministry": None, "region": "Bretagne"}
    assert data["year"] == "2023"
    assert [row["id"] for row in data["establishments"]] == ["0", "1"]
    assert data["geocode_stats"]["unresolved"] == 3
    cohort, year = loader.calls[0]
    assert (cohort.region, year) == ("Bretagne", "2023")


def test_aggregate_defaults_to_configured_year(client, loader, monkeypatch):
    monkeypatch.delenv("DEFAULT_TD_YEAR", raising=False)

    client.post("/aggregate", json={"ministry": "Justice"})

    assert loader.calls[0][1] == "2024"


def test_superseded_load_returns_conflict(client, loader):
    loader.outcome = OperationCancelled("cancelled")

    response = client.post("/aggregate", json={"ministry": "Justice"})

    assert response.status_code == 409


def test_upstream_failure_returns_bad_gateway(client, loader):
    loader.outcome = TabularApiError("API error: 503", status_code=503)

    response = client.post("/aggregate", json={"ministry": "Justice"})

    assert response.status_code == 502
    assert response.get_json()["status"] == 503


def test_exports_returns_csv_links(client):
    response = client.get("/exports", query_string={"ministry": "Justice", "year": "2023"})

    assert response.status_code == 200
    data = response.get_json()["data"]
    assert data["establishments"]["filename"] == "etablissements_Justice.csv"
    assert data["declarations"]["filename"] == "teledeclarations_campagne2024_Justice.csv"


def test_exports_requires_a_scope(client):
    assert client.get("/exports").status_code == 400


def test_ministries_comparison(client, loader):
    response = client.get("/ministries/comparison", query_string={"year": "2024"})

    assert response.status_code == 200
    assert response.get_json()["data"]["ministries"][0]["ministry"] == "Culture"


def test_aggregate_filters_by_query_and_lists_sectors(client, loader):
    response = client.post("/aggregate", json={"ministry": "Justice", "query": "cantine 2"})

    data = response.get_json()["data"]
    assert response.status_code == 200
    assert [row["id"] for row in data["establishments"]] == ["2"]
    assert data["matched"] == 1
    assert data["sectors"] == []


def test_aggregate_rejects_non_list_sectors(client, loader):
    response = client.post("/aggregate", json={"ministry": "Justice", "sectors": "RIA"})

    assert response.status_code == 400
