"""Archive server API client implementation."""

import asyncio
import json
from typing import Any, Dict, List, Optional, Type, TypeVar

import aiohttp
from pydantic import BaseModel, ValidationError

from .base import (
    RetryPolicy,
    APIError,
    RateLimitError,
    AuthenticationError,
    APIConnectionError,
    ResponseValidationError,
    RetryExhaustedError,
)
from .models import (
    ErrorResponse,
    HeartbeatRequest,
    LogEntry,
    RegisterRequest,
    RegisterResponse,
    SubmitLogsResponse,
    SyncRequest,
    SyncResponse,
    SyncStateResponse,
)
from ..utils.logging import get_logger


ModelT = TypeVar("ModelT", bound=BaseModel)

API_KEY_HEADER = "X-API-Key"


class ArchiveAPIClient:
    """Client for the archive server's collector endpoints.

    Requests are serialized through a lock so one client never has two calls
    in flight. Transient failures (network errors, 5xx, 429) are retried
    according to the injected ``RetryPolicy``; other 4xx responses raise
    ``APIError`` immediately.
    """

    def __init__(
        self,
        server_url: str,
        api_key: str,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: float = 120.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize the archive client.

        Args:
            server_url: Base URL of the archive server
            api_key: API key sent with every request
            retry_policy: Retry schedule for transient failures
            timeout: Total timeout per request in seconds
            session: Existing aiohttp session to reuse (not closed by us)
        """
        self.base_url = server_url.rstrip('/')
        self.api_key = api_key
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session = session
        self._owns_session = session is None
        self._lock = asyncio.Lock()
        self.logger = get_logger(self.__class__.__name__)

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self):
        if self.session and self._owns_session and not self.session.closed:
            await self.session.close()
        if self._owns_session:
            self.session = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self.session

    # Operations

    async def register(self, request: RegisterRequest) -> RegisterResponse:
        """Register this collector with the server."""
        data = await self._request(
            "register", "POST", "/api/collectors/register", body=request.to_wire()
        )
        return self._parse("register", RegisterResponse, data)

    async def heartbeat(
        self, collector_id: str, request: Optional[HeartbeatRequest] = None
    ) -> None:
        """Send a heartbeat to the server."""
        body = (request or HeartbeatRequest()).to_wire()
        await self._request(
            "heartbeat", "POST", f"/api/collectors/{collector_id}/heartbeat", body=body
        )

    async def fetch_sync_state(self, collector_id: str, host: str) -> SyncStateResponse:
        """Fetch known commit shas and session watermarks for a host."""
        data = await self._request(
            "fetch_sync_state",
            "GET",
            f"/api/collectors/{collector_id}/sync-state",
            params={"host": host},
        )
        return self._parse("fetch_sync_state", SyncStateResponse, data)

    async def submit_sync(self, request: SyncRequest) -> SyncResponse:
        """Submit a delta payload."""
        data = await self._request(
            "submit_sync",
            "POST",
            f"/api/collectors/{request.collector_id}/sync",
            body=request.to_wire(),
        )
        return self._parse("submit_sync", SyncResponse, data)

    async def submit_logs(
        self, collector_id: str, logs: List[LogEntry]
    ) -> SubmitLogsResponse:
        """Submit run log records."""
        data = await self._request(
            "submit_logs",
            "POST",
            f"/api/collectors/{collector_id}/logs",
            body={"logs": [log.to_wire() for log in logs]},
        )
        return self._parse("submit_logs", SubmitLogsResponse, data)

    # Transport

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Any:
        """Perform a request with retry logic."""
        async with self._lock:
            last_error: Optional[Exception] = None

            for attempt in range(self.retry_policy.max_attempts):
                try:
                    return await self._send(method, path, body, params)

                except APIError as e:
                    if not e.retryable:
                        self.logger.error(
                            "API request rejected",
                            operation=operation,
                            status=e.status,
                            error=e.message,
                        )
                        raise
                    last_error = e
                    retry_after = e.retry_after if isinstance(e, RateLimitError) else None

                except APIConnectionError as e:
                    last_error = e
                    retry_after = None

                if attempt < self.retry_policy.max_retries:
                    delay = self.retry_policy.backoff(attempt, retry_after)
                    self.logger.warning(
                        "Transient API failure, retrying after backoff",
                        operation=operation,
                        attempt=attempt + 1,
                        backoff_seconds=round(delay, 3),
                        error=str(last_error),
                    )
                    await asyncio.sleep(delay)

            raise RetryExhaustedError(operation, self.retry_policy.max_attempts, last_error)

    async def _send(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]],
        params: Optional[Dict[str, str]],
    ) -> Any:
        session = await self._ensure_session()
        url = f"{self.base_url}{path}"
        headers = {
            API_KEY_HEADER: self.api_key,
            "Accept": "application/json",
        }

        try:
            async with session.request(
                method, url, json=body, params=params, headers=headers
            ) as response:
                if response.status >= 400:
                    await self._raise_for_status(response)

                if response.status == 204:
                    return None

                try:
                    return await response.json(content_type=None)
                except ValueError:
                    return None

        except aiohttp.ClientError as e:
            raise APIConnectionError(f"Network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise APIConnectionError(f"Request timed out: {method} {path}") from e

    async def _raise_for_status(self, response: aiohttp.ClientResponse):
        text = await response.text()
        message = response.reason or f"HTTP {response.status}"

        try:
            body: Any = json.loads(text) if text else None
        except ValueError:
            body = text

        if isinstance(body, dict):
            try:
                error = ErrorResponse.model_validate(body)
                message = error.message or error.error
            except ValidationError:
                pass

        if response.status == 429:
            raise RateLimitError(message, self._retry_after(response), body)
        if response.status in (401, 403):
            raise AuthenticationError(response.status, message, body)
        raise APIError(response.status, message, body)

    @staticmethod
    def _retry_after(response: aiohttp.ClientResponse) -> Optional[float]:
        value = response.headers.get("Retry-After")
        if value is None:
            return None
        try:
            return float(value)
        except ValueError:
            return None

    @staticmethod
    def _parse(operation: str, model: Type[ModelT], data: Any) -> ModelT:
        try:
            return model.model_validate(data if data is not None else {})
        except ValidationError as e:
            raise ResponseValidationError(operation, e.errors()) from e
