"""Market!N conversion API client.

WHAT:
    Sends conversion payloads to Market!N and validates brand API keys.

WHY:
    The conversion queue classifies failures purely by HTTP status, so this
    client turns every failure (network errors, timeouts, non-2xx responses
    and 2xx responses whose body reports a failure) into `MarketinAPIError`
    carrying the status that best describes it.

HOW:
    POST {MARKETIN_API_URL}/conversions with a Bearer key. Configuration is an
    explicit `MarketinConfig` passed to the constructor; `send()` accepts a
    per-call `api_key` for brands with their own key. Tests inject an
    `httpx.MockTransport` through `transport`.

REFERENCES:
    - orderbridge/services/conversion_queue.py (only consumer of `send`)
    - orderbridge/routers/admin.py (`validate_api_key` on brand configuration)
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)


class MarketinAPIError(Exception):
    """Delivery failure.

    Attributes:
        status_code: HTTP status, None for network errors and timeouts
        response_body: Parsed JSON body (or raw text) when a response was received
        code: Symbolic error code (TIMEOUT, NETWORK_ERROR, NOT_CONFIGURED, ...)
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Any = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.code = code


@dataclass
class MarketinConfig:
    base_url: str
    api_key: Optional[str] = None
    timeout_seconds: float = 15.0

    @classmethod
    def from_settings(cls, settings=None) -> "MarketinConfig":
        if settings is None:
            from orderbridge.deps import get_settings
            settings = get_settings()
        return cls(
            base_url=settings.MARKETIN_API_URL,
            api_key=settings.MARKETIN_API_KEY,
            timeout_seconds=settings.MARKETIN_TIMEOUT_SECONDS,
        )


@dataclass
class KeyValidation:
    valid: Optional[bool]  # None when Market!N could not be reached
    message: str


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_status_from_body(body: Dict[str, Any]) -> int:
    for key in ("status", "statusCode"):
        value = body.get(key)
        if isinstance(value, int) and 400 <= value <= 599:
            return value
    return 422


class MarketinClient:
    """Thin async wrapper around the Market!N REST API.

    Usage:
        ```python
        client = MarketinClient(MarketinConfig.from_settings())
        result = await client.send(payload, api_key=brand_key)
        ```
    """

    def __init__(self, config: MarketinConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/"),
            timeout=self.config.timeout_seconds,
            transport=self._transport,
        )

    @staticmethod
    def _headers(api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    async def send(self, payload: Dict[str, Any], api_key: Optional[str] = None) -> Dict[str, Any]:
        """Submit one conversion.

        Args:
            payload: Conversion payload built by the webhook handler
            api_key: Per-brand key; falls back to the configured default key

        Returns:
            Parsed response body (e.g. {"success": true, "conversionId": ...})

        Raises:
            MarketinAPIError: For any failure, see module docstring
        """
        key = api_key or self.config.api_key
        if not key:
            raise MarketinAPIError(
                "Market!N API key not configured",
                status_code=401,
                code="NOT_CONFIGURED",
            )

        try:
            async with self._client() as client:
                response = await client.post("/conversions", json=payload, headers=self._headers(key))
        except httpx.TimeoutException as e:
            logger.warning(f"[MARKETIN] Timeout sending conversion {payload.get('externalOrderId')}: {e}")
            raise MarketinAPIError(f"Market!N request timed out: {e}", code="TIMEOUT") from e
        except httpx.RequestError as e:
            logger.warning(f"[MARKETIN] Network error sending conversion {payload.get('externalOrderId')}: {e}")
            raise MarketinAPIError(f"Network error sending to Market!N: {e}", code="NETWORK_ERROR") from e

        body = _parse_body(response)

        if not response.is_success:
            message = body.get("message") or body.get("error") if isinstance(body, dict) else None
            logger.error(
                f"[MARKETIN] API error: {response.status_code}",
                extra={"response": body, "external_order_id": payload.get("externalOrderId")},
            )
            raise MarketinAPIError(
                str(message or f"Market!N API error: HTTP {response.status_code}"),
                status_code=response.status_code,
                response_body=body,
            )

        if isinstance(body, dict) and body.get("success") is False:
            status_code = _error_status_from_body(body)
            message = body.get("message") or body.get("error") or "Market!N rejected the conversion"
            logger.error(
                f"[MARKETIN] Conversion rejected with HTTP {response.status_code}: {message}",
                extra={"response": body},
            )
            raise MarketinAPIError(str(message), status_code=status_code, response_body=body)

        result = body if isinstance(body, dict) else {"success": True}
        logger.info(
            f"[MARKETIN] Conversion accepted for order {payload.get('externalOrderId')}",
            extra={"conversion_id": result.get("conversionId") or result.get("id")},
        )
        return result

    async def validate_api_key(self, api_key: str) -> KeyValidation:
        """Check a brand API key against Market!N.

        Returns valid=False only for a definite rejection (401/403);
        valid=None when Market!N cannot be reached or answers unexpectedly.
        """
        try:
            async with self._client() as client:
                response = await client.get("/health", headers=self._headers(api_key))
        except httpx.RequestError as e:
            logger.warning(f"[MARKETIN] Could not validate API key: {e}")
            return KeyValidation(valid=None, message=f"Market!N unreachable: {e}")

        if response.status_code in (401, 403):
            return KeyValidation(valid=False, message="Invalid Market!N API key")
        if response.is_success:
            return KeyValidation(valid=True, message="API key is valid")
        return KeyValidation(valid=None, message=f"Unexpected response: HTTP {response.status_code}")
