"""Transports used by the data table client to reach the record endpoints."""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Dict, Optional, TypeVar

import httpx

from datagrid.core.config import ClientSettings
from datagrid.core.errors import (
    CancelledRequest,
    CommitValidationError,
    MisconfigurationError,
    TransportError,
)
from datagrid.schemas.table_api import RequestParams

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Marks one in-flight request as superseded."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise CancelledRequest("Request was superseded")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token is cancelled first.

        On cancellation the pending work is cancelled and ``CancelledRequest``
        is raised instead of waiting for the result.
        """
        if self.cancelled and asyncio.iscoroutine(awaitable):
            awaitable.close()
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if not work.done():
            work.cancel()
            raise CancelledRequest("Request was superseded")
        return work.result()


class Transport(ABC):
    """Abstract base class for record endpoint transports."""

    @abstractmethod
    async def fetch_page(self, params: RequestParams, token: CancellationToken) -> Any:
        """Fetch one page of records; returns the raw response payload."""
        pass

    @abstractmethod
    async def update_record(self, row_id: Any, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a partial patch and return the full updated record."""
        pass

    @abstractmethod
    async def fetch_facets(self, field: str, url: Optional[str] = None) -> Any:
        """Fetch the raw option list for a field."""
        pass

    async def aclose(self) -> None:
        """Release any network resources."""
        return None


def derive_facets_url(api_url: str) -> str:
    """``http://host/api/v1/records`` -> ``http://host/api/v1/facets``."""
    base = api_url.split("?")[0].rstrip("/")
    parent = base.rsplit("/", 1)[0] if "/" in base else base
    return f"{parent}/facets"


class HttpxTransport(Transport):
    """Transport that talks to the record API over HTTP using httpx."""

    def __init__(
        self,
        api_url: str,
        facets_url: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the HTTP transport."""
        if not api_url:
            raise MisconfigurationError("Misconfiguration: provide an api_url or a custom fetcher.")
        self.api_url = api_url.split("?")[0].rstrip("/")
        self.facets_url = (facets_url or derive_facets_url(self.api_url)).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> "HttpxTransport":
        return cls(
            api_url=settings.api_url,
            facets_url=settings.facets_url,
            timeout=settings.request_timeout,
        )

    async def fetch_page(self, params: RequestParams, token: CancellationToken) -> Any:
        response = await token.guard(self._request("GET", self.api_url, params=params.to_query()))
        return response.json()

    async def update_record(self, row_id: Any, updates: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request("PUT", f"{self.api_url}/{row_id}", json=updates)
        return response.json()

    async def fetch_facets(self, field: str, url: Optional[str] = None) -> Any:
        response = await self._request("GET", url or f"{self.facets_url}/{field}")
        return response.json()

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(f"Request timed out: {method} {url}") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Network error: {e}") from e

        if response.is_success:
            return response

        detail = _error_detail(response)
        if method == "PUT" and 400 <= response.status_code < 500:
            raise CommitValidationError(f"Update rejected: {detail}", response.status_code)
        raise TransportError(f"API Error: {response.status_code} {detail}", response.status_code)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict):
        return str(body.get("detail") or body.get("error") or body)
    return str(body)
