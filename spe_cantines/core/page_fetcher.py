"""Multi-page retrieval of one logical dataset from the tabular API."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from spe_cantines.core.cancellation import CancellationToken
from spe_cantines.core.config import MAX_PAGE_SIZE
from spe_cantines.models import FetchResult
from spe_cantines.vendors import tabular_api
from spe_cantines.vendors.tabular_api import TabularApiError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, int], None]


class PageFetcher:
    """Walks every page of a resource and merges rows in upstream order."""

    def __init__(self, fetch_page: Optional[Callable[..., Dict[str, Any]]] = None) -> None:
        self._fetch_page = fetch_page or tabular_api.fetch_page

    def fetch_all(
        self,
        resource_ids: Sequence[str],
        filters: Sequence[Tuple[str, str]],
        *,
        page_size: int = MAX_PAGE_SIZE,
        max_pages: int = 100,
        progress: Optional[ProgressCallback] = None,
        token: Optional[CancellationToken] = None,
    ) -> FetchResult:
        if not resource_ids:
            raise ValueError("at least one resource id is required")
        page_size = max(1, min(page_size, MAX_PAGE_SIZE))

        resource_id, first = self._first_page(resource_ids, filters, page_size, token)
        records: List[Dict[str, Any]] = list(first.get("data") or [])
        total = tabular_api.extract_total(first)
        if total is None:
            total = len(records)
        pages = 1
        partial = False
        self._notify(progress, len(records), total, pages)

        while len(records) < total:
            if pages >= max_pages:
                logger.info(
                    "Page ceiling reached for resource=%s: %d/%d rows after %d pages",
                    resource_id, len(records), total, pages,
                )
                break
            if token is not None:
                token.raise_if_cancelled()
            try:
                payload = self._fetch_page(resource_id, filters, page=pages + 1, page_size=page_size)
            except TabularApiError as exc:
                logger.warning(
                    "Stopping pagination at page %d for resource=%s (%s); keeping %d rows",
                    pages + 1, resource_id, exc, len(records),
                )
                partial = True
                break
            pages += 1
            rows = payload.get("data") or []
            if not rows:
                logger.warning("Empty page %d before reaching total=%d; stopping", pages, total)
                break
            records.extend(rows)
            self._notify(progress, len(records), total, pages)

        if token is not None:
            token.raise_if_cancelled()
        logger.info("Fetched %d/%d rows from resource=%s in %d pages", len(records), total, resource_id, pages)
        return FetchResult(records=records, total_count=total, pages_fetched=pages, partial=partial, resource_id=resource_id)

    def _first_page(
        self,
        resource_ids: Sequence[str],
        filters: Sequence[Tuple[str, str]],
        page_size: int,
        token: Optional[CancellationToken],
    ) -> Tuple[str, Dict[str, Any]]:
        last_error: Optional[TabularApiError] = None
        for resource_id in resource_ids:
            if token is not None:
                token.raise_if_cancelled()
            try:
                return resource_id, self._fetch_page(resource_id, filters, page=1, page_size=page_size)
            except TabularApiError as exc:
                logger.warning("Resource %s unavailable (%s); trying next", resource_id, exc)
                last_error = exc
        raise last_error

    @staticmethod
    def _notify(progress: Optional[ProgressCallback], fetched: int, total: int, page: int) -> None:
        if progress is None:
            return
        progress(fetched, total, page)
