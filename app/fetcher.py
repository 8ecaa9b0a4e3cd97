import logging
import time
from datetime import datetime, timezone

import requests

from cache import TTLCache, generate_key
from errors import ErrorKind, UpstreamError
from inflight import SingleFlight
from token_manager import TokenManager

logger = logging.getLogger(__name__)

KEY_PREFIX = "source"
DEFAULT_TTL = 3600  # 1 hour


def endpoint_prefix(endpoint):
    return f"{KEY_PREFIX}_{endpoint.strip('/').replace('/', '_')}"


class EmdexClient:
    """Authenticated, cached access to the EMDEX API.

    Owns the bearer token, the response cache and the in-flight registry for
    one application. Handlers receive this object instead of importing
    module-level state.
    """

    def __init__(self, transport, settings, cache=None, clock=time.time):
        self.transport = transport
        self.settings = settings
        self.clock = clock
        self.flight = SingleFlight()
        self.tokens = TokenManager(transport, settings, clock=clock, flight=self.flight)
        self.cache = cache or TTLCache(
            max_size=settings.cache_max_size,
            eviction_ratio=settings.cache_eviction_ratio,
            clock=clock,
        )
        self.last_fetch = {"timestamp": None, "endpoint": None, "status_code": None}

    def get_token(self):
        return self.tokens.get_token()

    def raw_request(self, endpoint, params=None, is_retry=False):
        if not self.transport.base_url:
            raise UpstreamError("EMDEX_API_URL not configured", ErrorKind.REQUEST_FAILED)

        try:
            token = self.tokens.get_token()
            response = self.transport.post(endpoint, params or {}, token=token)
        except UpstreamError:
            raise
        except requests.RequestException as e:
            self._record_fetch(endpoint, None)
            logger.error("Network error calling %s: %s", endpoint, e)
            raise UpstreamError(
                f"Network error during EMDEX request: {e}",
                ErrorKind.NETWORK_ERROR,
                original=e,
            ) from e

        self._record_fetch(endpoint, response.status_code)

        # token may have been revoked upstream; log in again once
        if response.status_code == 401 and not is_retry:
            logger.info("EMDEX rejected token for %s, retrying with a fresh login", endpoint)
            self.tokens.clear()
            return self.raw_request(endpoint, params, is_retry=True)

        if not response.ok:
            raise UpstreamError(
                f"EMDEX request failed: {response.status_code} {response.reason}. {response.text}",
                ErrorKind.REQUEST_FAILED,
                status_code=response.status_code,
            )

        if response.data is None:
            raise UpstreamError(
                f"EMDEX returned a non-JSON body for {endpoint}",
                ErrorKind.REQUEST_FAILED,
            )

        return response.data

    def cached_request(self, endpoint, params=None, ttl=DEFAULT_TTL):
        params = params or {}
        key = generate_key(endpoint_prefix(endpoint), params)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Cache HIT: %s", key)
            return self._annotate(cached, hit=True, key=key, ttl=self.cache.remaining_ttl(key))

        logger.debug("Cache MISS: %s", key)
        result, hit = self.flight.do(key, lambda: self._fetch_and_store(endpoint, params, key, ttl))
        if hit:
            return self._annotate(result, hit=True, key=key, ttl=self.cache.remaining_ttl(key))
        return self._annotate(result, hit=False, key=key, ttl=ttl)

    def _fetch_and_store(self, endpoint, params, key, ttl):
        # a previous leader may have filled the entry since our lookup
        if self.cache.has(key):
            cached = self.cache.get(key)
            if cached is not None:
                return cached, True

        result = self.raw_request(endpoint, params)

        # upstream errors arrive as {"error": ...} payloads; those are not cached
        if not (isinstance(result, dict) and result.get("error")):
            self.cache.set(key, result, ttl)
            logger.debug("Cached result for %ss: %s", ttl, key)
        return result, False

    @staticmethod
    def _annotate(payload, hit, key, ttl):
        meta = {"hit": hit, "key": key, "ttl": ttl}
        if isinstance(payload, dict):
            return {**payload, "_cache": meta}
        return {"data": payload, "_cache": meta}

    def _record_fetch(self, endpoint, status_code):
        self.last_fetch = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "endpoint": endpoint,
            "status_code": status_code,
        }

    def get_cache_stats(self):
        return self.cache.stats()

    def clear_response_cache(self):
        self.cache.clear()

    def clear_token_cache(self):
        self.tokens.clear()
