"""
Users API Client - Paginated Remote Source

Thin async wrapper around the DummyJSON-style users endpoint:

    GET {USERS_API_BASE}?skip=<offset>&limit=<limit>
    → {"users": [...], "skip": 0, "limit": 100, "total": 208}

Network failures, timeouts and 429/5xx responses are raised as TransientError
so the coordinator can retry them; any other HTTP error is permanent.
"""

import logging
from typing import Optional, Protocol

import httpx
from pydantic import ValidationError

from utils.config import settings
from utils.errors import CorruptionError, TransientError
from utils.schemas import PageResponse

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


class RecordSource(Protocol):
    """Paginated read access to the remote collection."""

    async def fetch(self, offset: int, limit: int) -> PageResponse: ...

    async def fetch_total(self) -> int: ...


class UsersApiClient:
    """httpx-based RecordSource for the users API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url or settings.USERS_API_BASE
        self.timeout = timeout if timeout is not None else settings.API_TIMEOUT
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "UsersApiClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def fetch(self, offset: int, limit: int) -> PageResponse:
        """
        Fetch one page.

        Raises:
            TransientError: On transport errors, timeouts or retryable status codes
            CorruptionError: If the response body is not a valid page
            httpx.HTTPStatusError: On non-retryable HTTP errors
        """
        params = {"skip": offset, "limit": limit}

        try:
            response = await self._get_client().get(self.base_url, params=params)
        except httpx.TransportError as e:
            raise TransientError(f"Request to {self.base_url} failed at skip={offset}: {e}") from e

        if response.status_code in RETRYABLE_STATUS:
            raise TransientError(
                f"Retryable HTTP {response.status_code} from {self.base_url} at skip={offset}"
            )
        response.raise_for_status()

        try:
            page = PageResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise CorruptionError(f"Malformed page at skip={offset}: {e}") from e

        logger.debug(
            "Fetched page: skip=%d, limit=%d, total=%d, records=%d",
            page.offset, page.limit, page.total, len(page.records),
        )
        return page

    async def fetch_total(self) -> int:
        """Probe the collection size with a single-record page."""
        page = await self.fetch(0, 1)
        return page.total

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
