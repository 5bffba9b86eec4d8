"""
Resilient protocol client for bank APIs.

Wraps httpx.AsyncClient with:
- per-key sliding-window rate limiting (checked before every attempt)
- a hard per-attempt timeout
- exponential backoff for transport failures and 5xx responses
- normalization of bank error bodies into BankApiError
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from .exceptions import BankErrorCode
from .rate_limiter import SlidingWindowRateLimiter
from .schemas import BankApiResponse, RateLimitInfo


logger = logging.getLogger(__name__)

USER_AGENT = "FinancialDashboard/1.0"


class BankApiClient:
    """
    HTTP client bound to one bank's base URL.

    Every call returns a BankApiResponse; transport problems never escape
    as exceptions except task cancellation.
    """

    def __init__(
        self,
        base_url: str,
        rate_limiter: SlidingWindowRateLimiter,
        timeout: float = 30.0,
        retries: int = 3,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        default_headers: Optional[Dict[str, str]] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self._transport = transport
        self._sleep = sleep
        self.default_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        if default_headers:
            self.default_headers.update(default_headers)

    def build_url(self, endpoint: str) -> str:
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    async def execute(
        self,
        endpoint: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        json_body: Optional[Any] = None,
        rate_limit_key: str = "default",
        cancel_event: Optional[asyncio.Event] = None
    ) -> BankApiResponse:
        """
        Send a request with rate limiting, timeout and retries.

        Args:
            endpoint: Path relative to base_url, or an absolute URL
            method: HTTP method
            headers: Extra headers (override defaults)
            params: Query string parameters
            data: Form fields, sent as application/x-www-form-urlencoded
            json_body: JSON body
            rate_limit_key: Limiter key for this call
            cancel_event: Set to abandon the call between attempts

        Returns:
            BankApiResponse with parsed JSON data (None for empty bodies)
        """
        method = method.upper()
        url = self.build_url(endpoint)
        request_headers = dict(self.default_headers)
        if data is not None:
            request_headers["Content-Type"] = "application/x-www-form-urlencoded"
        if headers:
            request_headers.update(headers)

        last_error = None

        for attempt in range(self.retries + 1):
            if cancel_event is not None and cancel_event.is_set():
                return BankApiResponse.fail(BankErrorCode.CANCELLED, "Request cancelled")

            if not self.rate_limiter.try_acquire(rate_limit_key):
                logger.warning(f"Rate limit exceeded for key {rate_limit_key}")
                return BankApiResponse.fail(
                    BankErrorCode.RATE_LIMIT_EXCEEDED,
                    "Rate limit exceeded. Please try again later.",
                    key=rate_limit_key
                )

            try:
                response = await self._send(method, url, request_headers, params, data, json_body)
            except httpx.TimeoutException as e:
                logger.warning(f"{method} {url} timed out after {self.timeout}s")
                return BankApiResponse.fail(
                    BankErrorCode.TIMEOUT,
                    f"Request timed out after {self.timeout} seconds",
                    reason=str(e)
                )
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"{method} {url} attempt {attempt + 1} failed: {last_error}")
            else:
                if response.is_success:
                    return BankApiResponse.ok(
                        self._parse_body(response, method),
                        rate_limit=self._parse_rate_limit(response)
                    )
                if response.status_code >= 500:
                    last_error = f"HTTP {response.status_code}: {response.reason_phrase}"
                    logger.warning(f"{method} {url} attempt {attempt + 1} failed: {last_error}")
                else:
                    return self._error_response(response)

            if attempt < self.retries:
                if cancel_event is not None and cancel_event.is_set():
                    return BankApiResponse.fail(BankErrorCode.CANCELLED, "Request cancelled")
                await self._sleep(self.retry_delay * (2 ** attempt))

        logger.error(f"{method} {url} failed after {self.retries + 1} attempts: {last_error}")
        return BankApiResponse.fail(
            BankErrorCode.REQUEST_FAILED,
            f"Request failed after {self.retries + 1} attempts: {last_error}"
        )

    async def _send(self, method, url, headers, params, data, json_body) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            return await client.request(
                method,
                url,
                headers=headers,
                params=params,
                data=data,
                json=json_body
            )

    @staticmethod
    def _parse_body(response: httpx.Response, method: str) -> Any:
        if method == "HEAD" or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _parse_rate_limit(response: httpx.Response) -> Optional[RateLimitInfo]:
        limit = response.headers.get("X-RateLimit-Limit")
        remaining = response.headers.get("X-RateLimit-Remaining")
        reset = response.headers.get("X-RateLimit-Reset")
        if limit is None or remaining is None or reset is None:
            return None
        try:
            return RateLimitInfo(limit=int(limit), remaining=int(remaining), reset=int(reset))
        except ValueError:
            return None

    @staticmethod
    def _error_response(response: httpx.Response) -> BankApiResponse:
        """Map a non-2xx, non-5xx response onto a BankApiResponse failure."""
        status_code = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = None

        logger.warning(f"Bank API error {status_code}: {response.text[:500]}")

        if isinstance(body, dict):
            errors = body.get("Errors")
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                first = errors[0]
                return BankApiResponse.fail(
                    first.get("ErrorCode") or BankErrorCode.HTTP_ERROR,
                    first.get("Message") or body.get("Message") or f"HTTP {status_code}",
                    status=status_code,
                    path=first.get("Path"),
                    url=first.get("Url"),
                    more_info=body.get("Code")
                )
            if body.get("error"):
                return BankApiResponse.fail(
                    str(body["error"]),
                    body.get("error_description") or body.get("message") or str(body["error"]),
                    status=status_code
                )
            if body.get("message"):
                return BankApiResponse.fail(
                    BankErrorCode.HTTP_ERROR,
                    str(body["message"]),
                    status=status_code
                )

        return BankApiResponse.fail(
            BankErrorCode.HTTP_ERROR,
            f"HTTP {status_code}: {response.reason_phrase}",
            status=status_code
        )
