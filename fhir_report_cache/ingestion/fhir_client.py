"""Async client for the FHIR server holding the source records."""

from typing import Any

import httpx
import structlog

from fhir_report_cache.utils.errors import CursorExpiredError, FetchError, RetryExhaustedError
from fhir_report_cache.utils.retry import exponential_backoff_retry

log = structlog.stdlib.get_logger()

FHIR_JSON = "application/fhir+json"


class FhirClient:
    """Thin wrapper around httpx.AsyncClient speaking the FHIR REST API."""

    def __init__(
        self,
        base_url: str,
        username: str = "",
        password: str = "",
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize FHIR client.

        Args:
            base_url: FHIR base URL
            username: Basic auth username (no auth when empty)
            password: Basic auth password
            timeout: Per request timeout in seconds
            client: Preconfigured httpx client, mainly for tests
        """
        self._base_url = base_url.rstrip("/")
        auth = httpx.BasicAuth(username, password) if username else None
        self._client = client or httpx.AsyncClient(
            auth=auth,
            timeout=timeout,
            headers={"Accept": FHIR_JSON},
        )
        log.info("fhir_client_initialized", base_url=self._base_url)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "FhirClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def url(self, *segments: str, params: dict[str, Any] | None = None) -> str:
        """Build an absolute URL below the base URL."""
        path = "/".join(segment.strip("/") for segment in segments if segment)
        url = httpx.URL(f"{self._base_url}/{path}")
        if params:
            url = url.copy_merge_params({k: v for k, v in params.items() if v is not None})
        return str(url)

    async def get_bundle(self, url: str) -> dict[str, Any]:
        """
        Fetch a Bundle (search or history page) from an absolute URL.

        Raises:
            CursorExpiredError: If the server no longer knows the paging cursor
            FetchError: On network errors or any other non-2xx answer
        """
        response = await self._get(url)

        if response.status_code == 410:
            raise CursorExpiredError(
                "Paging cursor expired", status_code=response.status_code, url=url
            )
        self._raise_for_status(response, url)

        bundle = response.json()
        if bundle.get("resourceType") != "Bundle":
            raise FetchError(f"Expected a Bundle from {url}", status_code=response.status_code, url=url)
        return bundle

    async def read(self, reference: str) -> dict[str, Any] | None:
        """
        Read a resource by relative reference, e.g. ``Practitioner/10``.

        Returns:
            The resource, or None when it does not exist (anymore)

        Raises:
            FetchError: On network errors or unexpected answers
        """
        url = self.url(reference)
        response = await self._get(url)
        if response.status_code in (404, 410):
            log.info("reference_not_found", reference=reference, status_code=response.status_code)
            return None
        self._raise_for_status(response, url)
        return response.json()

    async def vread(self, resource_type: str, resource_id: str, version_id: str) -> dict[str, Any] | None:
        """Read one historical version of a resource."""
        return await self.read(f"{resource_type}/{resource_id}/_history/{version_id}")

    async def history(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        """History Bundle of a single resource, newest entry first."""
        return await self.get_bundle(self.url(resource_type, resource_id, "_history"))

    async def _get(self, url: str) -> httpx.Response:
        try:
            return await self._send(url)
        except RetryExhaustedError as e:
            log.error("fhir_request_failed", url=url, error=str(e.last_error))
            raise FetchError(f"Request to {url} failed: {e.last_error}", url=url) from e

    @exponential_backoff_retry(
        max_retries=3,
        base_delay=1.0,
        max_delay=30.0,
        exceptions=(httpx.TransportError,),
    )
    async def _send(self, url: str) -> httpx.Response:
        return await self._client.get(url)

    def _raise_for_status(self, response: httpx.Response, url: str) -> None:
        if response.is_success:
            return
        log.error(
            "fhir_request_rejected",
            url=url,
            status_code=response.status_code,
            body=response.text[:500],
        )
        raise FetchError(
            f"FHIR server answered {response.status_code} for {url}",
            status_code=response.status_code,
            url=url,
        )
