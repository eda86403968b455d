"""
HTTP client for the dashboard's commit and read endpoints.

Failures are classified so the sync engine can decide between retrying and
dead-lettering: connection problems, timeouts, auth hiccups, throttling and 5xx
responses are transient; any other 4xx is a permanent rejection.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

import aiohttp

from .logging_service import get_logger
from ..errors import NetworkError, RemoteTimeoutError, ValidationRejectedError, PermanentError
from ..models.operation import OperationKind
from ..models.records import CommittedRecord

logger = get_logger(__name__)

SYNC_ENDPOINT = "/api/sync"

# Cache key -> read endpoint
READ_ENDPOINTS: Dict[str, str] = {
    "dashboard-summary": "/api/analytics/dashboard-summary",
    "weekly-summary": "/api/analytics/weekly-summary",
    "vehicle-transactions": "/api/vehicles/transactions/all",
    "scrap-transactions": "/api/scrap/transactions",
    "bills": "/api/bills",
}

TRANSIENT_STATUSES = frozenset({401, 403, 408, 425, 429})

HeadersProvider = Callable[[], Union[Dict[str, str], Awaitable[Dict[str, str]]]]


def is_transient_status(status: int, transient_statuses: Iterable[int] = TRANSIENT_STATUSES) -> bool:
    return status in transient_statuses or status >= 500


class RemoteApiClient:
    """aiohttp client for the remote source of truth.

    open() must be called before use and close() at shutdown; the client is also an
    async context manager.

    401 and 403 count as transient by default because `headers_provider` is expected
    to hand out refreshed credentials on the next attempt. Deployments without such
    a provider should pass `transient_statuses` without them.
    """

    def __init__(
        self,
        base_url: str,
        request_timeout: float = 10.0,
        headers_provider: Optional[HeadersProvider] = None,
        session: Optional[aiohttp.ClientSession] = None,
        transient_statuses: Iterable[int] = TRANSIENT_STATUSES,
    ):
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.transient_statuses = frozenset(transient_statuses)
        self.headers_provider = headers_provider
        self._session = session
        self._owns_session = session is None

    async def open(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> 'RemoteApiClient':
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def submit(self, kind: OperationKind, payload: Dict[str, Any], idempotency_token: str) -> CommittedRecord:
        """Commit one mutation.

        Raises:
            NetworkError, RemoteTimeoutError: retry later
            ValidationRejectedError: the server will never accept this payload
        """
        body = {"kind": kind.value, "payload": payload, "idempotencyToken": idempotency_token}
        data = await self._request(
            "POST",
            SYNC_ENDPOINT,
            json=body,
            headers={"Idempotency-Key": idempotency_token},
        )
        record = self._unwrap(data, "committed")
        if not isinstance(record, dict):
            raise PermanentError("Commit response carried no record", details={"body": data})
        return CommittedRecord.model_validate(record)

    async def fetch(self, key: str) -> Any:
        """Read the current value behind a cache key."""
        path = READ_ENDPOINTS.get(key)
        if path is None:
            raise KeyError(f"No read endpoint for cache key '{key}'")
        data = await self._request("GET", path)
        return self._unwrap(data, None)

    def loader(self, key: str) -> Callable[[], Awaitable[Any]]:
        """Zero-argument coroutine factory for CacheStore.read_through()."""
        async def load() -> Any:
            return await self.fetch(key)
        return load

    @staticmethod
    def _unwrap(data: Any, field: Optional[str]) -> Any:
        if not isinstance(data, dict):
            return data
        if field and field in data:
            return data[field]
        if "data" in data and ("success" in data or len(data) == 1):
            return data["data"]
        return data

    async def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.headers_provider is not None:
            extra = self.headers_provider()
            if asyncio.iscoroutine(extra):
                extra = await extra
            headers.update(extra or {})
        return headers

    async def _request(self, method: str, path: str, json: Any = None, headers: Optional[Dict[str, str]] = None) -> Any:
        if self._session is None:
            await self.open()

        url = f"{self.base_url}{path}"
        request_headers = await self._headers()
        request_headers.update(headers or {})

        try:
            async with self._session.request(method, url, json=json, headers=request_headers) as response:
                status = response.status
                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = None

                if 200 <= status < 300:
                    return data

                message = self._error_message(data) or response.reason or f"HTTP {status}"
                if is_transient_status(status, self.transient_statuses):
                    logger.warning("Remote call failed, will retry", method=method, path=path, status=status)
                    raise NetworkError(message, status_code=status)

                logger.error("Remote rejected request", method=method, path=path, status=status)
                raise ValidationRejectedError(
                    message,
                    status_code=status,
                    details=data if isinstance(data, dict) else {},
                )
        except asyncio.TimeoutError as e:
            raise RemoteTimeoutError(f"{method} {path} timed out after {self.request_timeout}s") from e
        except aiohttp.ClientError as e:
            logger.warning("Remote unreachable", method=method, path=path, error_type=type(e).__name__)
            raise NetworkError(f"{method} {path} failed: {e}") from e

    @staticmethod
    def _error_message(data: Any) -> Optional[str]:
        if isinstance(data, dict):
            for field in ("message", "error", "detail"):
                if data.get(field):
                    return str(data[field])
        return None
