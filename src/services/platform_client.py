"""Marketing platform API client.

Thin async wrapper over the platform's JSON:API endpoints used by the
segment engine: metric discovery and segment creation.

Example usage:
    async with PlatformClient(api_key="pk_...") as client:
        metrics = await client.list_metrics()
        response = await client.create_segment("VIP Customers", {...})
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx

from src.db.models import PlatformConnection
from src.errors.platform_translation import extract_platform_error

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://a.klaviyo.com"
DEFAULT_REVISION = "2024-10-15"


class PlatformConnectionError(Exception):
    """Raised when the platform cannot be reached at all."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Marketing platform unreachable: {reason}")


class PlatformAPIError(Exception):
    """Raised when a platform endpoint returns an error status.

    Attributes:
        status_code: HTTP status code.
        detail: Error detail extracted from the response body.
    """

    def __init__(self, status_code: int, detail: str) -> None:
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"{status_code}: {detail}")


class PlatformAuthError(PlatformAPIError):
    """Raised when the API key is rejected (401) or lacks scopes (403)."""

    pass


@dataclass
class SegmentCreateResponse:
    """Outcome of one segment creation request.

    Attributes:
        status_code: HTTP status code returned by the platform.
        external_id: Platform segment ID when created.
        detail: Error detail for non-2xx responses.
    """

    status_code: int
    external_id: str | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class PlatformClient:
    """Async client for the marketing platform's segment APIs.

    Attributes:
        base_url: Platform API root.
        revision: API revision header value.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        revision: str = DEFAULT_REVISION,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            api_key: Private API key for the account.
            base_url: Platform API root.
            revision: API revision header value.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (tests use MockTransport).
        """
        self.base_url = base_url.rstrip("/")
        self.revision = revision
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Klaviyo-API-Key {api_key}",
                "Accept": "application/json",
                "revision": revision,
            },
        )

    async def __aenter__(self) -> "PlatformClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        url: str,
        json: dict[str, Any] | None = None,
    ) -> httpx.Response:
        try:
            return await self._client.request(method, url, json=json)
        except httpx.RequestError as e:
            logger.warning("Platform request %s %s failed: %s", method, url, e)
            raise PlatformConnectionError(str(e) or type(e).__name__) from e

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or response.reason_phrase
        return extract_platform_error(body) or response.text

    async def list_metrics(self) -> dict[str, str]:
        """Fetch the account's metrics, following pagination.

        Returns:
            Metric name -> metric ID.

        Raises:
            PlatformAuthError: API key rejected.
            PlatformAPIError: Any other error status.
            PlatformConnectionError: Platform unreachable.
        """
        metrics: dict[str, str] = {}
        url: str | None = "/api/metrics/"
        while url:
            response = await self._request("GET", url)
            if response.status_code in (401, 403):
                raise PlatformAuthError(response.status_code, self._error_detail(response))
            if response.is_error:
                raise PlatformAPIError(response.status_code, self._error_detail(response))

            body = response.json()
            for metric in body.get("data") or []:
                name = (metric.get("attributes") or {}).get("name")
                if name and metric.get("id"):
                    metrics[name] = metric["id"]
            url = (body.get("links") or {}).get("next")

        logger.info("Found %d account metrics", len(metrics))
        return metrics

    async def create_segment(self, name: str, definition: dict[str, Any]) -> SegmentCreateResponse:
        """Create one segment.

        Non-auth error statuses are returned rather than raised so the
        caller can classify them (exists, throttled, rejected).

        Args:
            name: Segment display name.
            definition: Segment definition body (condition groups).

        Returns:
            The creation outcome.

        Raises:
            PlatformAuthError: API key rejected.
            PlatformConnectionError: Platform unreachable.
        """
        payload = {
            "data": {
                "type": "segment",
                "attributes": {"name": name, "definition": definition},
            }
        }
        response = await self._request("POST", "/api/segments/", json=payload)

        if response.status_code in (401, 403):
            raise PlatformAuthError(response.status_code, self._error_detail(response))
        if response.is_error:
            return SegmentCreateResponse(
                status_code=response.status_code,
                detail=self._error_detail(response),
            )

        external_id = None
        if response.content:
            external_id = (response.json().get("data") or {}).get("id")
        return SegmentCreateResponse(status_code=response.status_code, external_id=external_id)


def make_client_factory(
    base_url: str = DEFAULT_BASE_URL,
    revision: str = DEFAULT_REVISION,
    timeout: float = 30.0,
) -> Callable[[PlatformConnection], PlatformClient]:
    """Return a factory building a client for a connection's API key."""

    def factory(connection: PlatformConnection) -> PlatformClient:
        return PlatformClient(
            api_key=connection.api_key,
            base_url=base_url,
            revision=revision,
            timeout=timeout,
        )

    return factory
