import logging
from dataclasses import dataclass
from typing import Any, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10


@dataclass
class UpstreamResponse:
    status_code: int
    data: Any = None
    text: str = ""
    reason: str = ""

    @property
    def ok(self):
        return 200 <= self.status_code < 300


class HttpTransport:
    """Talks to the real EMDEX API with form-encoded POSTs.

    Transport failures are not caught here; requests.RequestException
    reaches the caller so it can be classified as a network error.
    """

    requires_credentials = True

    def __init__(self, base_url, timeout=DEFAULT_TIMEOUT, session: Optional[requests.Session] = None):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def login(self, path, email, password):
        return self._post(path, {"email": email, "password": password})

    def post(self, endpoint, params, token=None):
        body = {k: v for k, v in (params or {}).items() if v is not None}
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        return self._post(endpoint, body, headers)

    def _post(self, path, body, headers=None):
        response = self.session.post(
            f"{self.base_url}/{path.lstrip('/')}",
            data=body,
            headers=headers or {},
            timeout=self.timeout,
        )

        try:
            data = response.json()
        except ValueError:
            data = None

        return UpstreamResponse(
            status_code=response.status_code,
            data=data,
            text=response.text,
            reason=response.reason or "",
        )


def build_transport(settings):
    if settings.use_mock_emdex:
        from mock_transport import MockTransport

        logger.warning("USE_MOCK_EMDEX is set, serving mock EMDEX data")
        return MockTransport()
    return HttpTransport(settings.emdex_api_url, timeout=settings.emdex_timeout)
