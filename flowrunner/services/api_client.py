"""Outbound HTTP collaborator used by live-mode http, webhook and call nodes.

One shared ``httpx.AsyncClient`` serves every concurrent run. Failures
never raise: callers get an ApiCallResult with ``success=False``.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from flowrunner.core.config import Settings
from flowrunner.core.logging import get_logger

logger = get_logger(__name__)

RETRYABLE_STATUS = frozenset([429, 500, 502, 503, 504])
BODY_METHODS = frozenset(["POST", "PUT", "PATCH", "DELETE"])


@dataclass
class ApiCallResult:
    success: bool
    status: Optional[int] = None
    data: Any = None
    error: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    duration_ms: int = 0
    retry_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "data": self.data,
            "error": self.error,
            "durationMs": self.duration_ms,
            "retryCount": self.retry_count,
        }


def _parse_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class ApiClient:
    """Async HTTP client with transport-level retries.

    Retries connection errors, timeouts and 429/5xx responses with
    exponential delay ``api_retry_delay * 2^attempt``. 4xx responses are
    returned as failures without retrying.
    """

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None,
                 sleep=None):
        self.settings = settings
        self._transport = transport
        self._sleep = sleep or asyncio.sleep
        self._client: Optional[httpx.AsyncClient] = None

    async def startup(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                timeout=self.settings.api_timeout,
                follow_redirects=True,
            )
            logger.info("API client initialized", timeout=self.settings.api_timeout)

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("API client closed")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            await self.startup()
        return self._client

    async def execute_api_call(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        query: Optional[Dict[str, Any]] = None,
        body: Any = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        auth: Optional[httpx.Auth] = None,
    ) -> ApiCallResult:
        """Perform one HTTP call with retries.

        Args:
            method: HTTP method (case-insensitive)
            url: Absolute URL
            headers: Request headers
            query: Query string parameters
            body: JSON body (dict/list) or raw string content
            timeout: Per-attempt timeout in seconds
            retries: Extra attempts after the first; defaults to API_MAX_RETRIES

        Returns:
            ApiCallResult; ``success`` is true for 2xx/3xx responses
        """
        method = (method or "GET").upper()
        max_retries = self.settings.api_max_retries if retries is None else max(0, int(retries))
        request_timeout = timeout or self.settings.api_timeout

        kwargs: Dict[str, Any] = {
            "method": method,
            "url": url,
            "headers": headers or {},
            "params": query or None,
            "timeout": request_timeout,
        }
        if auth is not None:
            kwargs["auth"] = auth
        if body is not None and method in BODY_METHODS:
            if isinstance(body, (dict, list)):
                kwargs["json"] = body
            else:
                kwargs["content"] = str(body)

        client = await self._get_client()
        start_time = time.time()
        attempt = 0
        last_error: Optional[str] = None
        last_status: Optional[int] = None

        while True:
            try:
                response = await client.request(**kwargs)
                last_status = response.status_code
                data = _parse_body(response)

                if response.status_code < 400:
                    return ApiCallResult(
                        success=True,
                        status=response.status_code,
                        data=data,
                        headers=dict(response.headers),
                        duration_ms=int((time.time() - start_time) * 1000),
                        retry_count=attempt,
                    )

                last_error = f"HTTP {response.status_code}"
                if response.status_code not in RETRYABLE_STATUS or attempt >= max_retries:
                    logger.warning("API call failed", method=method, url=url, status=response.status_code,
                                   attempts=attempt + 1)
                    return ApiCallResult(
                        success=False,
                        status=response.status_code,
                        data=data,
                        error=last_error,
                        headers=dict(response.headers),
                        duration_ms=int((time.time() - start_time) * 1000),
                        retry_count=attempt,
                    )

            except httpx.TimeoutException:
                last_error = f"Request timed out after {request_timeout} seconds"
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"

            if attempt >= max_retries:
                logger.error("API call failed", method=method, url=url, error=last_error, attempts=attempt + 1)
                return ApiCallResult(
                    success=False,
                    status=last_status,
                    error=last_error,
                    duration_ms=int((time.time() - start_time) * 1000),
                    retry_count=attempt,
                )

            delay = self.settings.api_retry_delay * (2 ** attempt)
            attempt += 1
            logger.info("Retrying API call", method=method, url=url, attempt=attempt, delay_s=delay, error=last_error)
            await self._sleep(delay)
