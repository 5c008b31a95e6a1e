"""Client utilities for the data.gouv.fr tabular API."""

import logging
from typing import Any, Dict, Iterable, Optional, Tuple
from urllib.parse import urlencode

import requests

from spe_cantines.core.config import get_settings

logger = logging.getLogger(__name__)
_SESSION = requests.Session()


class TabularApiError(RuntimeError):
    """Raised when the tabular API answers with a non-successful status."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _resource_url(resource_id: str, suffix: str = "data/") -> str:
    return f"{get_settings().tabular_api_url}/{resource_id}/{suffix}"


def encode_filters(filters: Iterable[Tuple[str, str]]) -> str:
    """Query string shared by JSON pages and CSV exports."""
    return urlencode(list(filters))


def fetch_page(
    resource_id: str,
    filters: Iterable[Tuple[str, str]],
    page: int,
    page_size: int,
) -> Dict[str, Any]:
    params = list(filters) + [("page", str(page)), ("page_size", str(page_size))]
    url = f"{_resource_url(resource_id)}?{urlencode(params)}"
    try:
        response = _SESSION.get(url, headers={"Accept": "application/json"}, timeout=get_settings().http_timeout)
    except requests.RequestException as exc:
        logger.error("tabular fetch failed: resource=%s page=%d error=%s", resource_id, page, exc)
        raise TabularApiError(f"request failed: {exc}") from exc

    if not 200 <= response.status_code < 300:
        logger.error("tabular fetch failed: resource=%s page=%d status=%s", resource_id, page, response.status_code)
        raise TabularApiError(f"API error: {response.status_code}", status_code=response.status_code)

    try:
        payload = response.json()
    except ValueError as exc:
        logger.error("tabular fetch failed: resource=%s page=%d malformed body: %s", resource_id, page, exc)
        raise TabularApiError(f"malformed response: {exc}", status_code=response.status_code) from exc
    if not isinstance(payload, dict):
        logger.error("tabular fetch failed: resource=%s page=%d unexpected payload type", resource_id, page)
        raise TabularApiError("unexpected response shape", status_code=response.status_code)
    return payload


def extract_total(payload: Dict[str, Any]) -> Optional[int]:
    """Read the row count from `meta.total` or `total_count`."""
    meta = payload.get("meta") or {}
    for candidate in (meta.get("total"), payload.get("total_count")):
        if candidate is None:
            continue
        try:
            return int(candidate)
        except (TypeError, ValueError):
            logger.debug("Unparseable total count: %r", candidate)
    return None


def count_rows(resource_id: str, filters: Iterable[Tuple[str, str]]) -> int:
    """Number of rows matching filters, using a single-row page."""
    payload = fetch_page(resource_id, filters, page=1, page_size=1)
    return extract_total(payload) or 0


def csv_export_url(resource_id: str, filters: Iterable[Tuple[str, str]]) -> str:
    query = encode_filters(filters)
    url = _resource_url(resource_id, "data/csv/")
    return f"{url}?{query}" if query else url
