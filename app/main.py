import logging
import os
import platform
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from flask import Blueprint, Flask, current_app, jsonify, request
from pydantic import ValidationError

import transformer
from errors import ErrorKind, UpstreamError
from fetcher import EmdexClient
from models import SearchRequest, VerifyRequest
from settings import get_settings
from transport import build_transport

logger = logging.getLogger(__name__)

SERVICE_NAME = "scanrx-backend"
VERSION = "1.0.0"

BRAND_SEARCH = "/api/v1/brands/search"
BRAND_DETAILS = "/api/v1/brands/details"
GENERIC_SEARCH = "/api/v1/generic/search"
GENERIC_DETAILS = "/api/v1/generic/details"
GENERIC_BRANDS = "/api/v1/generic/brands"
VERIFY = "/api/v1/verify"

bp = Blueprint("emdex", __name__)


def get_client() -> EmdexClient:
    return current_app.extensions["emdex"]


def pop_cache_meta(response):
    return response.pop("_cache", None) or {"hit": False}


def pop_cache_info(response):
    return pop_cache_meta(response).get("hit", False)


def upstream_error_response(error, message):
    if error.kind == ErrorKind.NETWORK_ERROR:
        return jsonify({
            "success": False,
            "error": "Drug database temporarily unavailable",
            "code": "SERVICE_UNAVAILABLE",
        }), 503

    if error.kind == ErrorKind.AUTH_FAILED:
        return jsonify({
            "success": False,
            "error": "Drug database authentication failed",
            "code": "AUTH_ERROR",
        }), 503

    if error.status_code == 404:
        return jsonify({"success": False, "error": "Drug not found", "code": "NOT_FOUND"}), 404

    return jsonify({"success": False, "error": message, "code": "INTERNAL_ERROR"}), 500


def validation_error_response(error, message):
    return jsonify({
        "success": False,
        "error": message,
        "details": [err["msg"] for err in error.errors()],
    }), 400


def not_found_response():
    return jsonify({"success": False, "error": "Drug not found", "code": "NOT_FOUND"}), 404


def cache_header(hits):
    if hits and all(hits):
        return "HIT"
    if any(hits):
        return "PARTIAL"
    return "MISS"


@bp.before_app_request
def count_request():
    current_app.config["REQUEST_COUNT"] += 1


@bp.route("/health")
def health():
    return jsonify({
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": SERVICE_NAME,
    })


@bp.route("/status")
def status():
    client = get_client()
    uptime = time.time() - current_app.config["START_TIME"]

    hours = int(uptime // 3600)
    minutes = int((uptime % 3600) // 60)
    seconds = int(uptime % 60)

    return jsonify({
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": os.getenv("FLASK_ENV", "development"),
        "api": {
            "name": SERVICE_NAME,
            "version": VERSION,
            "uptime": f"{hours}h {minutes}m {seconds}s",
            "uptime_seconds": uptime,
            "started_at": datetime.fromtimestamp(current_app.config["START_TIME"], timezone.utc).isoformat(),
            "total_requests": current_app.config["REQUEST_COUNT"],
        },
        "system": {
            "hostname": socket.gethostname(),
            "python_version": platform.python_version(),
            "platform": platform.platform(),
        },
        "dependencies": {
            "cache": client.get_cache_stats(),
            "token": client.tokens.state(),
            "mock_upstream": client.settings.use_mock_emdex,
            "last_fetch": client.last_fetch,
        },
    })


@bp.route("/test/emdex-auth")
def test_emdex_auth():
    try:
        get_client().get_token()
    except UpstreamError as e:
        logger.error("EMDEX auth test failed: %s", e.message)
        return jsonify({"success": False, "error": e.message, "code": e.kind.value}), 500

    return jsonify({"success": True, "message": "EMDEX authentication successful"})


@bp.route("/drugs/search", methods=["POST"])
def search_drugs():
    try:
        search = SearchRequest.model_validate(request.get_json(silent=True) or {})
    except ValidationError as e:
        return validation_error_response(e, "Invalid search request")

    client = get_client()
    ttl = client.settings.search_cache_ttl
    params = {"query": search.query}
    logger.info('Unified search for "%s" (type: %s)', search.query, search.type)

    hits = []
    brand_results, generic_results = [], []

    try:
        if search.type == "brand":
            response = client.cached_request(BRAND_SEARCH, params, ttl)
            hits.append(pop_cache_info(response))
            brand_results = transformer.transform_results(response, "brand")
        elif search.type == "generic":
            response = client.cached_request(GENERIC_SEARCH, params, ttl)
            hits.append(pop_cache_info(response))
            generic_results = transformer.transform_results(response, "generic")
        else:
            with ThreadPoolExecutor(max_workers=2) as pool:
                brand_future = pool.submit(client.cached_request, BRAND_SEARCH, params, ttl)
                generic_future = pool.submit(client.cached_request, GENERIC_SEARCH, params, ttl)

            for future, drug_type in ((brand_future, "brand"), (generic_future, "generic")):
                try:
                    response = future.result()
                except UpstreamError as e:
                    logger.error("%s search failed: %s", drug_type.capitalize(), e.message)
                    continue
                hits.append(pop_cache_info(response))
                results = transformer.transform_results(response, drug_type)
                if drug_type == "brand":
                    brand_results = results
                else:
                    generic_results = results
    except UpstreamError as e:
        logger.error("Unified search error: %r", e)
        return upstream_error_response(e, "An error occurred while searching drugs")

    all_results = transformer.remove_duplicates(brand_results + generic_results)
    total = len(all_results)
    if search.limit > 0:
        all_results = all_results[:search.limit]

    x_cache = cache_header(hits)
    response = jsonify({
        "success": True,
        "query": search.query,
        "source": "emdex",
        "type": search.type,
        "results": [drug.model_dump(exclude={"raw_data"}) for drug in all_results],
        "total": total,
        "brand_count": len(brand_results),
        "generic_count": len(generic_results),
        "cached": x_cache == "HIT",
    })
    response.headers["X-Cache"] = x_cache
    return response


@bp.route("/drugs/search/brands", methods=["POST"])
def search_brands():
    try:
        search = SearchRequest.model_validate(request.get_json(silent=True) or {})
    except ValidationError as e:
        return validation_error_response(e, "Search query is required")

    client = get_client()
    logger.info('Searching brands for "%s"', search.query)

    try:
        response = client.cached_request(BRAND_SEARCH, {"query": search.query}, client.settings.search_cache_ttl)
    except UpstreamError as e:
        logger.error("Brand search error: %r", e)
        return upstream_error_response(e, "An error occurred while searching drugs")

    cache_info = pop_cache_meta(response)
    results = transformer.transform_results(response, "brand")
    total = len(results)
    if search.limit > 0:
        results = results[:search.limit]

    response = jsonify({
        "success": True,
        "query": search.query,
        "source": "emdex",
        "results": [drug.model_dump(exclude={"raw_data"}) for drug in results],
        "total": total,
        "cached": cache_info["hit"],
    })
    response.headers["X-Cache"] = "HIT" if cache_info["hit"] else "MISS"
    if cache_info.get("ttl"):
        response.headers["X-Cache-TTL"] = str(cache_info["ttl"])
    return response


@bp.route("/drugs/<drug_id>")
def drug_details(drug_id):
    parsed = transformer.parse_app_drug_id(drug_id)
    if parsed is None:
        return jsonify({
            "success": False,
            "error": "Invalid drug ID format. Expected format: emdex_brand_XXX or emdex_generic_XXX",
            "code": "INVALID_ID_FORMAT",
        }), 400

    drug_type, emdex_id = parsed
    client = get_client()
    settings = client.settings
    logger.info("Fetching %s details for ID: %s", drug_type, emdex_id)

    try:
        if drug_type == "brand":
            response = client.cached_request(BRAND_DETAILS, {"brand_id": emdex_id}, settings.details_cache_ttl)
        else:
            response = client.cached_request(GENERIC_DETAILS, {"generic_id": emdex_id}, settings.details_cache_ttl)
    except UpstreamError as e:
        logger.error("Drug details error: %r", e)
        return upstream_error_response(e, "An error occurred while fetching drug details")

    cache_hit = pop_cache_info(response)
    raw = transformer.extract_drug_data(response)
    if raw is None:
        return not_found_response()

    drug = transformer.transform_details(raw, drug_type, app_id=drug_id)
    if drug is None:
        return not_found_response()

    # related lookups are best effort
    try:
        if drug_type == "brand" and drug.generic_name:
            related = client.cached_request(BRAND_SEARCH, {"query": drug.generic_name}, settings.search_cache_ttl)
            pop_cache_info(related)
            similar = transformer.transform_results(related, "brand")
            drug.similar_drugs = [d for d in similar if d.id != drug_id][:5]
        elif drug_type == "generic":
            brands = client.cached_request(GENERIC_BRANDS, {"generic_id": emdex_id}, settings.search_cache_ttl)
            pop_cache_info(brands)
            drug.brand_alternatives = transformer.transform_results(brands, "brand")[:10]
    except UpstreamError as e:
        logger.info("Could not fetch related drugs for %s: %s", drug_id, e.message)

    response = jsonify({"success": True, "drug": drug.model_dump(), "cached": cache_hit})
    response.headers["X-Cache"] = "HIT" if cache_hit else "MISS"
    return response


@bp.route("/drugs/verify", methods=["POST"])
def verify_drug():
    try:
        body = VerifyRequest.model_validate(request.get_json(silent=True) or {})
    except ValidationError as e:
        return validation_error_response(e, "NAFDAC number is required")

    client = get_client()
    try:
        response = client.cached_request(
            VERIFY, {"nafdac_number": body.nafdac_number}, client.settings.verify_cache_ttl
        )
    except UpstreamError as e:
        logger.error("NAFDAC verification error: %r", e)
        return upstream_error_response(e, "An error occurred while verifying the drug")

    cache_hit = pop_cache_info(response)
    raw = response.get("data") if response.get("verified") else None
    drug = transformer.transform_drug(raw, "brand") if raw else None

    return jsonify({
        "success": True,
        "nafdac_number": body.nafdac_number,
        "verified": drug is not None,
        "drug": drug.model_dump(exclude={"raw_data"}) if drug else None,
        "cached": cache_hit,
    })


@bp.route("/cache/stats")
def cache_stats():
    return jsonify(get_client().get_cache_stats())


@bp.route("/cache", methods=["DELETE"])
def clear_cache():
    get_client().clear_response_cache()
    return jsonify({"success": True, "message": "Response cache cleared"})


@bp.route("/cache/token", methods=["DELETE"])
def clear_token():
    get_client().clear_token_cache()
    return jsonify({"success": True, "message": "Token cache cleared"})


def create_app(settings=None, transport=None):
    settings = settings or get_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app = Flask(__name__)
    app.config["START_TIME"] = time.time()
    app.config["REQUEST_COUNT"] = 0

    client = EmdexClient(transport or build_transport(settings), settings)
    app.extensions["emdex"] = client
    app.register_blueprint(bp)
    return app


app = create_app()

if __name__ == "__main__":
    app.run(debug=True)
