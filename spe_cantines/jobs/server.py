"""HTTP entrypoint exposing cohort aggregation as JSON."""

from __future__ import annotations

import dataclasses
import logging
import os
from typing import Any, Dict, Optional, Tuple

from flask import Flask, jsonify, request

from spe_cantines.core.cancellation import OperationCancelled
from spe_cantines.core.config import get_settings
from spe_cantines.etl.search import available_sectors, filter_establishments
from spe_cantines.jobs.aggregate import AggregationOrchestrator, CohortLoader, export_links
from spe_cantines.models import Cohort
from spe_cantines.vendors.tabular_api import TabularApiError

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- App & shared pipeline ----------
app = Flask(__name__)
_loader: Optional[CohortLoader] = None


def get_loader() -> CohortLoader:
    """Single loader per process so the geocoding cache outlives each request."""
    global _loader
    if _loader is None:
        _loader = CohortLoader(AggregationOrchestrator())
    return _loader


def _parse_cohort(payload: Dict[str, Any]) -> Tuple[Optional[Cohort], Optional[str]]:
    ministry = str(payload.get("ministry") or "").strip()
    region = str(payload.get("region") or "").strip()
    if ministry and region:
        return None, "provide either ministry or region, not both"
    if ministry:
        return Cohort.for_ministry(ministry), None
    if region:
        return Cohort.for_region(region), None
    return None, "missing fields: ministry or region"


# ---------- Routes ----------


@app.get("/healthz")
def healthcheck() -> Any:
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "default_year": settings.default_year,
                "revision": os.getenv("K_REVISION", "unknown"),
            }
        ),
        200,
    )


@app.post("/aggregate")
def aggregate_cohort() -> Any:
    """
    Load, enrich and rank one cohort.
    Required JSON fields: ministry or region
    Optional: year (str), limit (int), query (str), sectors (list[str])
    """
    payload: Dict[str, Any] = request.get_json(silent=True) or {}
    cohort, error = _parse_cohort(payload)
    if error:
        return jsonify({"error": error}), 400

    year = str(payload.get("year") or get_settings().default_year)
    limit_raw = payload.get("limit")
    limit = None
    if limit_raw is not None:
        try:
            limit = int(limit_raw)
        except (TypeError, ValueError):
            return jsonify({"error": "limit must be numeric"}), 400
        if limit <= 0:
            return jsonify({"error": "limit must be positive"}), 400

    query = str(payload.get("query") or "")
    sectors = payload.get("sectors") or []
    if not isinstance(sectors, list):
        return jsonify({"error": "sectors must be a list"}), 400

    try:
        result = get_loader().load(cohort, year)
    except OperationCancelled:
        logger.info("Load for %s superseded by a newer request", cohort.label)
        return jsonify({"error": "superseded by a newer request"}), 409
    except TabularApiError as exc:
        logger.error("Cohort load failed for %s: %s", cohort.label, exc)
        return jsonify({"error": str(exc), "status": exc.status_code}), 502

    sector_options = available_sectors(result.establishments)
    if query.strip() or sectors:
        matched = filter_establishments(result.establishments, query, [str(sector) for sector in sectors])
        result = dataclasses.replace(result, establishments=matched)

    data = result.to_dict(limit=limit)
    data["matched"] = len(result.establishments)
    data["sectors"] = sector_options
    return jsonify({"data": data}), 200


@app.get("/exports")
def exports() -> Any:
    cohort, error = _parse_cohort(request.args)
    if error:
        return jsonify({"error": error}), 400
    settings = get_settings()
    year = request.args.get("year") or settings.default_year
    return jsonify({"data": export_links(cohort, year, settings)}), 200


@app.get("/ministries/comparison")
def ministries_comparison() -> Any:
    year = request.args.get("year") or get_settings().default_year
    rows = get_loader().orchestrator.compare_ministries(year)
    return jsonify({"data": {"year": year, "ministries": rows}}), 200


def main() -> None:
    port = get_settings().port
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
