import logging
import time

import requests

from errors import ErrorKind, UpstreamError
from inflight import SingleFlight

logger = logging.getLogger(__name__)

TOKEN_REFRESH_KEY = "token-refresh"


class TokenManager:
    """Holds the EMDEX bearer token and logs in again when it goes stale.

    A token counts as valid only while ``now < expires_at - refresh_buffer``.
    Concurrent refreshes are coalesced so a cold start performs one login.
    """

    def __init__(self, transport, settings, clock=time.time, flight=None):
        self.transport = transport
        self.settings = settings
        self.clock = clock
        self.flight = flight or SingleFlight()
        self.refresh_buffer = settings.token_refresh_buffer
        self.default_expires_in = settings.token_default_expires_in
        self.token = None
        self.expires_at = None

    def get_token(self):
        token, expires_at = self.token, self.expires_at
        if token and expires_at and self.clock() < expires_at - self.refresh_buffer:
            return token

        return self.flight.do(TOKEN_REFRESH_KEY, self._login)

    def clear(self):
        self.token = None
        self.expires_at = None

    def state(self):
        if not self.token or not self.expires_at:
            return {"has_token": False, "expires_in": 0}
        return {
            "has_token": True,
            "expires_in": max(0, int(self.expires_at - self.clock())),
        }

    def _login(self):
        try:
            return self._request_token()
        except UpstreamError:
            self.clear()
            raise
        except requests.RequestException as e:
            self.clear()
            logger.error("Network error during EMDEX login: %s", e)
            raise UpstreamError(
                f"Network error during EMDEX authentication: {e}",
                ErrorKind.NETWORK_ERROR,
                original=e,
            ) from e

    def _request_token(self):
        if not self.transport.base_url or (
            self.transport.requires_credentials and not self.settings.emdex_configured
        ):
            raise UpstreamError(
                "EMDEX credentials not configured. Please set EMDEX_API_URL, "
                "EMDEX_EMAIL, and EMDEX_PASSWORD environment variables.",
                ErrorKind.AUTH_FAILED,
            )

        now = self.clock()
        response = self.transport.login(
            self.settings.emdex_login_path,
            self.settings.emdex_email,
            self.settings.emdex_password,
        )

        if not response.ok:
            logger.warning("EMDEX login rejected with status %s", response.status_code)
            raise UpstreamError(
                f"EMDEX login failed: {response.status_code} {response.reason}. {response.text}",
                ErrorKind.AUTH_FAILED,
                status_code=response.status_code,
            )

        data = response.data if isinstance(response.data, dict) else {}
        token = data.get("token") or data.get("access_token")
        if not token:
            raise UpstreamError(
                "EMDEX login response did not contain a token",
                ErrorKind.AUTH_FAILED,
            )

        try:
            expires_in = float(data.get("expires_in") or data.get("expiresIn") or self.default_expires_in)
        except (TypeError, ValueError):
            expires_in = float(self.default_expires_in)

        self.token = token
        self.expires_at = now + expires_in
        logger.info("Obtained EMDEX token, expires in %ss", expires_in)
        return token
