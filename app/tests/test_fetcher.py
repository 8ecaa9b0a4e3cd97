import threading
import time

import pytest
import requests
import requests_mock

from cache import TTLCache
from errors import ErrorKind, UpstreamError
from fetcher import EmdexClient, endpoint_prefix
from transport import HttpTransport, UpstreamResponse

API_URL = "https://emdex.test"
LOGIN_URL = f"{API_URL}/api/v1/login"
BRAND_SEARCH_URL = f"{API_URL}/api/v1/brands/search"

PANADOL = {"success": True, "data": [{"id": "1001", "brand_name": "Panadol", "nafdac_number": "04-0393"}]}


@pytest.fixture
def mock_http():
    with requests_mock.Mocker(real_http=False) as m:
        m.post(LOGIN_URL, json={"token": "tok", "expires_in": 3600})
        yield m


@pytest.fixture
def client(settings, clock):
    return EmdexClient(HttpTransport(settings.emdex_api_url), settings, clock=clock)


def calls_to(mock_http, url):
    return sum(1 for r in mock_http.request_history if r.url == url)


def test_endpoint_prefix():
    assert endpoint_prefix("/api/v1/brands/search") == "source_api_v1_brands_search"
    assert endpoint_prefix("search") == "source_search"


def test_cold_then_warm_search(mock_http, client, clock):
    mock_http.post(f"{API_URL}/search", json={"success": True, "data": [{"brand_name": "Panadol"}]})

    first = client.cached_request("search", {"query": "panadol"}, 3600)

    assert calls_to(mock_http, LOGIN_URL) == 1
    assert calls_to(mock_http, f"{API_URL}/search") == 1
    assert client.get_cache_stats()["sets"] == 1
    assert first["_cache"] == {"hit": False, "key": "source_search_query=panadol", "ttl": 3600}

    clock.advance(1800)
    second = client.cached_request("search", {"query": "panadol"}, 3600)

    assert mock_http.call_count == 2
    assert second["_cache"] == {"hit": True, "key": "source_search_query=panadol", "ttl": 1800}
    first.pop("_cache")
    second.pop("_cache")
    assert first == second


def test_equivalent_params_share_cache_entry(mock_http, client):
    mock_http.post(BRAND_SEARCH_URL, json=PANADOL)

    client.cached_request("/api/v1/brands/search", {"query": "Panadol ", "page": None}, 3600)
    response = client.cached_request("/api/v1/brands/search", {"query": "panadol"}, 3600)

    assert response["_cache"]["hit"] is True
    assert calls_to(mock_http, BRAND_SEARCH_URL) == 1


def test_prepopulated_cache_served_without_upstream_calls(mock_http, client):
    client.cache.set("source_api_v1_brands_search_query=panadol", PANADOL, 600)

    response = client.cached_request("/api/v1/brands/search", {"query": "panadol"}, 3600)

    assert response["_cache"]["hit"] is True
    assert response["data"] == PANADOL["data"]
    assert mock_http.call_count == 0


def test_cache_entry_expires(mock_http, client, clock):
    mock_http.post(BRAND_SEARCH_URL, json=PANADOL)

    client.cached_request("/api/v1/brands/search", {"query": "panadol"}, 60)
    clock.advance(61)
    response = client.cached_request("/api/v1/brands/search", {"query": "panadol"}, 60)

    assert response["_cache"]["hit"] is False
    assert calls_to(mock_http, BRAND_SEARCH_URL) == 2


def test_bearer_token_and_form_body_sent(mock_http, client):
    mock_http.post(BRAND_SEARCH_URL, json=PANADOL)

    client.raw_request("/api/v1/brands/search", {"query": "panadol", "limit": None})

    request = mock_http.last_request
    assert request.headers["Authorization"] == "Bearer tok"
    assert request.text == "query=panadol"


def test_unauthorized_retries_once_with_fresh_login(mock_http, client):
    mock_http.post(LOGIN_URL, [
        {"json": {"token": "stale", "expires_in": 3600}},
        {"json": {"token": "fresh", "expires_in": 3600}},
    ])
    mock_http.post(BRAND_SEARCH_URL, [
        {"status_code": 401, "text": "token expired"},
        {"json": PANADOL},
    ])

    result = client.raw_request("/api/v1/brands/search", {"query": "panadol"})

    assert result == PANADOL
    assert calls_to(mock_http, LOGIN_URL) == 2
    assert calls_to(mock_http, BRAND_SEARCH_URL) == 2
    assert mock_http.last_request.headers["Authorization"] == "Bearer fresh"
    assert client.tokens.token == "fresh"


def test_second_unauthorized_is_terminal(mock_http, client):
    mock_http.post(BRAND_SEARCH_URL, [
        {"status_code": 401, "text": "nope"},
        {"status_code": 401, "text": "still nope"},
        {"json": PANADOL},
    ])

    with pytest.raises(UpstreamError) as exc:
        client.cached_request("/api/v1/brands/search", {"query": "panadol"}, 3600)

    assert exc.value.kind == ErrorKind.REQUEST_FAILED
    assert exc.value.status_code == 401
    assert calls_to(mock_http, BRAND_SEARCH_URL) == 2
    assert client.get_cache_stats()["size"] == 0


def test_server_error_raises_request_failed_and_is_not_cached(mock_http, client):
    mock_http.post(BRAND_SEARCH_URL, status_code=500, text="boom")

    with pytest.raises(UpstreamError) as exc:
        client.cached_request("/api/v1/brands/search", {"query": "panadol"}, 3600)

    assert exc.value.kind == ErrorKind.REQUEST_FAILED
    assert exc.value.status_code == 500
    assert calls_to(mock_http, BRAND_SEARCH_URL) == 1
    assert client.get_cache_stats()["sets"] == 0


def test_network_error_on_data_call(mock_http, client):
    mock_http.post(BRAND_SEARCH_URL, exc=requests.exceptions.ConnectionError)

    with pytest.raises(UpstreamError) as exc:
        client.raw_request("/api/v1/brands/search", {"query": "panadol"})

    assert exc.value.kind == ErrorKind.NETWORK_ERROR
    assert client.last_fetch["status_code"] is None


def test_login_failure_propagates_unchanged(mock_http, client):
    mock_http.post(LOGIN_URL, status_code=403, text="forbidden")
    mock_http.post(BRAND_SEARCH_URL, json=PANADOL)

    with pytest.raises(UpstreamError) as exc:
        client.cached_request("/api/v1/brands/search", {"query": "panadol"}, 3600)

    assert exc.value.kind == ErrorKind.AUTH_FAILED
    assert calls_to(mock_http, BRAND_SEARCH_URL) == 0


def test_missing_base_url_is_request_failed(mock_http, settings, clock):
    client = EmdexClient(HttpTransport(""), settings, clock=clock)

    with pytest.raises(UpstreamError) as exc:
        client.raw_request("/api/v1/brands/search", {"query": "panadol"})

    assert exc.value.kind == ErrorKind.REQUEST_FAILED
    assert mock_http.call_count == 0


def test_non_json_success_is_request_failed(mock_http, client):
    mock_http.post(BRAND_SEARCH_URL, text="<html>maintenance</html>")

    with pytest.raises(UpstreamError) as exc:
        client.raw_request("/api/v1/brands/search", {"query": "panadol"})
    assert exc.value.kind == ErrorKind.REQUEST_FAILED


def test_error_payloads_are_returned_but_not_cached(mock_http, client):
    mock_http.post(f"{API_URL}/api/v1/brands/details", json={"success": False, "error": "Brand not found"})

    response = client.cached_request("/api/v1/brands/details", {"brand_id": "9999"}, 3600)

    assert response["error"] == "Brand not found"
    assert response["_cache"]["hit"] is False
    assert client.get_cache_stats()["size"] == 0


def test_bare_list_payload_is_cached(mock_http, client):
    mock_http.post(BRAND_SEARCH_URL, json=[{"brand_name": "Panadol"}])

    first = client.cached_request("/api/v1/brands/search", {"query": "panadol"}, 3600)
    second = client.cached_request("/api/v1/brands/search", {"query": "panadol"}, 3600)

    assert first["data"] == [{"brand_name": "Panadol"}]
    assert second["_cache"]["hit"] is True
    assert second["data"] == first["data"]


def test_clear_caches(mock_http, client):
    mock_http.post(BRAND_SEARCH_URL, json=PANADOL)
    client.cached_request("/api/v1/brands/search", {"query": "panadol"}, 3600)

    client.clear_response_cache()
    client.clear_token_cache()

    assert client.get_cache_stats()["size"] == 0
    assert client.tokens.state()["has_token"] is False


class CountingTransport:
    base_url = "https://emdex.test"
    requires_credentials = True

    def __init__(self):
        self.lock = threading.Lock()
        self.logins = 0
        self.posts = 0

    def login(self, path, email, password):
        with self.lock:
            self.logins += 1
        return UpstreamResponse(status_code=200, data={"token": "tok", "expires_in": 3600})

    def post(self, endpoint, params, token=None):
        with self.lock:
            self.posts += 1
        time.sleep(0.2)
        return UpstreamResponse(status_code=200, data={"data": [params["query"]]})


def test_concurrent_misses_share_one_upstream_call(settings):
    transport = CountingTransport()
    client = EmdexClient(transport, settings)
    barrier = threading.Barrier(6)
    results = []

    def worker():
        barrier.wait()
        results.append(client.cached_request("/api/v1/brands/search", {"query": "panadol"}, 3600))

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert transport.logins == 1
    assert transport.posts == 1
    assert len(results) == 6
    assert all(r["data"] == ["panadol"] for r in results)
    # each caller gets its own annotated copy
    assert len({id(r) for r in results}) == 6


class LateCache(TTLCache):
    """Misses the first lookup, as if another leader stored the entry just after it."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.lookups = 0

    def get(self, key):
        self.lookups += 1
        if self.lookups == 1:
            return None
        return super().get(key)


def test_leader_reuses_entry_stored_after_its_lookup(settings):
    transport = CountingTransport()
    cache = LateCache()
    client = EmdexClient(transport, settings, cache=cache)
    cache.set("source_api_v1_brands_search_query=panadol", {"data": ["panadol"]}, 600)

    response = client.cached_request("/api/v1/brands/search", {"query": "panadol"}, 3600)

    assert transport.posts == 0
    assert transport.logins == 0
    assert response["data"] == ["panadol"]
    assert response["_cache"]["hit"] is True
    assert client.flight.calls == {}
