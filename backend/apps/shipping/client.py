# apps/shipping/client.py
import logging
import requests
from django.conf import settings
from django.core.cache import cache

from apps.utils.exceptions import CarrierAPIError
from apps.utils.resilience import CircuitBreaker, CircuitBreakerOpenException
from .responses import AwbAssignment, CarrierOrder, parse_pickup_locations

logger = logging.getLogger(__name__)

TOKEN_CACHE_KEY = "shiprocket:auth_token"
# Shiprocket tokens live ten days; refresh an hour early
TOKEN_DEFAULT_TTL = 10 * 24 * 3600
TOKEN_REFRESH_MARGIN = 3600

# Network errors and 5xx only. A 4xx is the carrier rejecting one payload,
# not the carrier being down.
shiprocket_breaker = CircuitBreaker(
    service_name="shiprocket",
    failure_threshold=5,
    recovery_timeout=60,
    counted_exceptions=(requests.RequestException,),
)


class ShiprocketClient:
    """
    Thin wrapper over the Shiprocket external API.
    Safe to share between threads: no per-instance mutable state,
    the bearer token lives in the Django cache.
    """

    def __init__(self, base_url, email, password, timeout=15):
        self.base_url = base_url.rstrip("/")
        self.email = email
        self.password = password
        self.timeout = timeout

    @classmethod
    def from_settings(cls):
        return cls(
            base_url=settings.SHIPROCKET_BASE_URL,
            email=settings.SHIPROCKET_EMAIL,
            password=settings.SHIPROCKET_PASSWORD,
            timeout=settings.SHIPROCKET_TIMEOUT,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def create_order(self, payload) -> CarrierOrder:
        data = self._request("POST", "/orders/create/adhoc", json=payload)
        return CarrierOrder.from_response(data)

    def assign_awb(self, shipment_id, courier_id=None) -> AwbAssignment:
        body = {"shipment_id": shipment_id}
        if courier_id:
            body["courier_id"] = int(courier_id) if str(courier_id).isdigit() else courier_id
        data = self._request("POST", "/courier/assign/awb", json=body)
        return AwbAssignment.from_response(data)

    def get_pickup_locations(self):
        data = self._request("GET", "/settings/company/pickup")
        return parse_pickup_locations(data)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _request(self, method, path, **kwargs):
        try:
            return shiprocket_breaker(self._send)(method, path, **kwargs)
        except CircuitBreakerOpenException as e:
            raise CarrierAPIError(str(e), code="carrier_unavailable") from e
        except requests.RequestException as e:
            logger.error(f"Shiprocket {method} {path} failed: {e}")
            raise CarrierAPIError(f"Shiprocket {method} {path} failed: {e}") from e

    def _send(self, method, path, authenticated=True, retry_auth=True, **kwargs):
        headers = {"Content-Type": "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {self._token()}"

        response = requests.request(
            method,
            f"{self.base_url}{path}",
            headers=headers,
            timeout=self.timeout,
            **kwargs,
        )

        if response.status_code >= 500:
            response.raise_for_status()

        data = self._json(response)

        if response.status_code == 401 and authenticated and retry_auth:
            logger.info("Shiprocket token rejected, re-authenticating")
            cache.delete(TOKEN_CACHE_KEY)
            return self._send(method, path, authenticated=True, retry_auth=False, **kwargs)

        if response.status_code >= 400:
            message = data.get("message") if isinstance(data, dict) else None
            raise CarrierAPIError(
                f"Shiprocket {method} {path} rejected ({response.status_code}): "
                f"{message or response.reason}"
            )

        return data

    def _token(self):
        token = cache.get(TOKEN_CACHE_KEY)
        if token:
            return token

        if not (self.email and self.password):
            raise CarrierAPIError("Shiprocket credentials not configured", code="config_error")

        data = self._send(
            "POST",
            "/auth/login",
            authenticated=False,
            json={"email": self.email, "password": self.password},
        )
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise CarrierAPIError("Shiprocket login returned no token")

        ttl = int(data.get("expires_in") or TOKEN_DEFAULT_TTL)
        cache.set(TOKEN_CACHE_KEY, token, timeout=max(ttl - TOKEN_REFRESH_MARGIN, 60))
        return token

    @staticmethod
    def _json(response):
        try:
            return response.json()
        except ValueError:
            return {}
