"""In-memory stand-in for the EMDEX API, enabled with USE_MOCK_EMDEX=true."""

import json
import logging
import time
from pathlib import Path

from transport import UpstreamResponse

logger = logging.getLogger(__name__)

MOCK_DATA_PATH = Path(__file__).parent / "data" / "mock_drugs.json"


def load_mock_data(path=MOCK_DATA_PATH):
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error("Failed to load mock EMDEX data from %s: %s", path, e)
        return {"brands": [], "generics": []}

    logger.info(
        "Loaded %d mock brands and %d mock generics",
        len(data.get("brands", [])),
        len(data.get("generics", [])),
    )
    return data


def _matches(record, query, fields):
    return any(query in str(record.get(field, "")).lower() for field in fields)


class MockTransport:
    requires_credentials = False
    base_url = "mock://emdex"

    def __init__(self, data=None):
        self.data = data if data is not None else load_mock_data()
        self.routes = {
            "/api/v1/brands/search": self.brand_search,
            "/api/v1/brands/details": self.brand_details,
            "/api/v1/generic/search": self.generic_search,
            "/api/v1/generic/details": self.generic_details,
            "/api/v1/generic/brands": self.generic_brands,
            "/api/v1/verify": self.verify,
        }

    def login(self, path, email, password):
        return UpstreamResponse(
            status_code=200,
            data={"success": True, "token": f"mock_token_{int(time.time())}", "expires_in": 86400},
        )

    def post(self, endpoint, params, token=None):
        handler = self.routes.get(endpoint)
        if handler is None:
            logger.info("Unknown mock endpoint: %s", endpoint)
            return UpstreamResponse(status_code=200, data={"success": False, "error": f"Unknown endpoint: {endpoint}"})
        return UpstreamResponse(status_code=200, data=handler(params or {}))

    def brand_search(self, params):
        query = str(params.get("query") or "").lower().strip()
        if not query:
            return {"success": True, "data": [], "total": 0}

        fields = ("brand_name", "generic_name", "nafdac_number", "category", "manufacturer")
        results = [b for b in self.data.get("brands", []) if _matches(b, query, fields)]
        return {"success": True, "data": results, "total": len(results)}

    def generic_search(self, params):
        query = str(params.get("query") or "").lower().strip()
        if not query:
            return {"success": True, "data": [], "total": 0}

        fields = ("generic_name", "category", "therapeutic_class")
        results = [g for g in self.data.get("generics", []) if _matches(g, query, fields)]
        return {"success": True, "data": results, "total": len(results)}

    def brand_details(self, params):
        brand = self._find("brands", params.get("brand_id"))
        if brand is None:
            return {"success": False, "error": "Brand not found"}
        return {"success": True, "data": brand}

    def generic_details(self, params):
        generic = self._find("generics", params.get("generic_id"))
        if generic is None:
            return {"success": False, "error": "Generic not found"}
        return {"success": True, "data": {**generic, "brands": self._brands_for(generic)}}

    def generic_brands(self, params):
        generic = self._find("generics", params.get("generic_id"))
        if generic is None:
            return {"success": False, "error": "Generic not found"}
        brands = self._brands_for(generic)
        return {"success": True, "data": brands, "total": len(brands)}

    def verify(self, params):
        nafdac_number = str(params.get("nafdac_number") or "")
        wanted = "".join(nafdac_number.upper().split())
        if not wanted:
            return {"success": False, "verified": False, "error": "NAFDAC number is required"}

        for brand in self.data.get("brands", []):
            if "".join(brand.get("nafdac_number", "").upper().split()) == wanted:
                return {"success": True, "verified": True, "data": brand}
        return {"success": True, "verified": False, "data": None}

    def _find(self, section, record_id):
        for record in self.data.get(section, []):
            if record.get("id") == str(record_id):
                return record
        return None

    def _brands_for(self, generic):
        name = generic.get("generic_name", "").lower()
        return [b for b in self.data.get("brands", []) if b.get("generic_name", "").lower() == name]
