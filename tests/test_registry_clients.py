import pytest
import requests

from spe_cantines.vendors import geo_api, recherche_entreprises

SIRET = "13000000000017"


class DummyResponse:
    def __init__(self, status_code=200, payload=None, body=None):
        self.status_code = status_code
        self._payload = payload if payload is not None else {}
        self._body = body

    def json(self):
        if self._body is not None:
            raise requests.exceptions.JSONDecodeError("Expecting value", self._body, 0)
        return self._payload


class DummySession:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params, timeout))
        return self.response


def test_siege_with_same_siret_has_address_precision():
    result = {
        "nature_juridique": "7389",
        "siege": {"siret": SIRET, "latitude": "48.85", "longitude": "2.35", "geo_adresse": "1 rue de Rivoli"},
        "matching_etablissements": [{"siret": SIRET, "latitude": "1", "longitude": "1"}],
    }

    record = recherche_entreprises.parse_registry_result(SIRET, result)

    assert record.legal_category == "7389"
    assert record.geocode.coordinates == (48.85, 2.35)
    assert record.geocode.precision == "address"
    assert record.geocode.source_address == "1 rue de Rivoli"


def test_matching_establishment_used_when_siege_differs():
    result = {
        "siege": {"siret": "13000000000001", "latitude": "45.0", "longitude": "4.0"},
        "matching_etablissements": [
            {"siret": "13000000000099", "latitude": "1", "longitude": "1"},
            {"siret": SIRET, "latitude": "43.6", "longitude": "1.44", "adresse": "Toulouse"},
        ],
    }

    record = recherche_entreprises.parse_registry_result(SIRET, result)

    assert record.geocode.coordinates == (43.6, 1.44)
    assert record.geocode.precision == "address"


def test_siege_of_same_legal_unit_is_approximate():
    result = {
        "siege": {"siret": "13000000000001", "latitude": "45.0", "longitude": "4.0"},
        "matching_etablissements": [],
    }

    record = recherche_entreprises.parse_registry_result(SIRET, result)

    assert record.geocode.coordinates == (45.0, 4.0)
    assert record.geocode.precision == "municipality"


def test_record_without_coordinates_keeps_legal_category():
    record = recherche_entreprises.parse_registry_result(SIRET, {"nature_juridique": "7210", "siege": {"siret": SIRET}})

    assert record.legal_category == "7210"
    assert record.geocode is None


def test_lookup_siret_rate_limited(monkeypatch):
    monkeypatch.setattr(recherche_entreprises, "_SESSION", DummySession(DummyResponse(status_code=429)))

    with pytest.raises(recherche_entreprises.RegistryRateLimited):
        recherche_entreprises.lookup_siret(SIRET)


def test_lookup_siret_server_error(monkeypatch):
    monkeypatch.setattr(recherche_entreprises, "_SESSION", DummySession(DummyResponse(status_code=503)))

    with pytest.raises(recherche_entreprises.RegistryError):
        recherche_entreprises.lookup_siret(SIRET)


def test_lookup_siret_no_result(monkeypatch):
    session = DummySession(DummyResponse(payload={"results": []}))
    monkeypatch.setattr(recherche_entreprises, "_SESSION", session)

    assert recherche_entreprises.lookup_siret(SIRET) is None
    url, params, _ = session.calls[0]
    assert url.endswith("/search")
    assert params["q"] == SIRET


def test_commune_centroid_swaps_geojson_order(monkeypatch):
    payload = {"nom": "Lyon", "centre": {"type": "Point", "coordinates": [4.835, 45.758]}}
    session = DummySession(DummyResponse(payload=payload))
    monkeypatch.setattr(geo_api, "_SESSION", session)

    result = geo_api.commune_centroid("69123")

    assert result.coordinates == (45.758, 4.835)
    assert result.precision == "municipality"
    assert result.commune_name == "Lyon"
    assert session.calls[0][0].endswith("/communes/69123")


def test_commune_centroid_unknown_code(monkeypatch):
    monkeypatch.setattr(geo_api, "_SESSION", DummySession(DummyResponse(status_code=404)))

    assert geo_api.commune_centroid("00000") is None


def test_commune_centroid_rate_limited(monkeypatch):
    monkeypatch.setattr(geo_api, "_SESSION", DummySession(DummyResponse(status_code=429)))

    with pytest.raises(geo_api.GeoApiRateLimited):
        geo_api.commune_centroid("69123")


def test_lookup_siret_html_body_is_a_registry_error(monkeypatch):
    monkeypatch.setattr(recherche_entreprises, "_SESSION", DummySession(DummyResponse(body="<html>maintenance</html>")))

    with pytest.raises(recherche_entreprises.RegistryError):
        recherche_entreprises.lookup_siret(SIRET)


def test_lookup_siret_unexpected_shape_is_a_registry_error(monkeypatch):
    monkeypatch.setattr(recherche_entreprises, "_SESSION", DummySession(DummyResponse(payload=["not", "a", "dict"])))

    with pytest.raises(recherche_entreprises.RegistryError):
        recherche_entreprises.lookup_siret(SIRET)


def test_commune_centroid_html_body_is_a_geo_error(monkeypatch):
    monkeypatch.setattr(geo_api, "_SESSION", DummySession(DummyResponse(body="<html>maintenance</html>")))

    with pytest.raises(geo_api.GeoApiError):
        geo_api.commune_centroid("69123")


def test_commune_centroid_bad_coordinates_is_a_geo_error(monkeypatch):
    payload = {"nom": "Lyon", "centre": {"coordinates": ["east", "north"]}}
    monkeypatch.setattr(geo_api, "_SESSION", DummySession(DummyResponse(payload=payload)))

    with pytest.raises(geo_api.GeoApiError):
        geo_api.commune_centroid("69123")
