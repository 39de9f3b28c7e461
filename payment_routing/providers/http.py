"""
Shared HTTP plumbing for providers that expose a JSON REST API.

Implements:
- A pooled httpx.AsyncClient per adapter with bearer authentication
- Error classification into transient / rate limit / permanent
- Exponential backoff retry (tenacity) for retryable failures
- Per-call Prometheus metrics
"""
import time
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from payment_routing.monitoring.metrics import metrics

from .base import PaymentProvider, ProviderError, ProviderErrorType

logger = structlog.get_logger(__name__)


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


class HTTPPaymentProvider(PaymentProvider):
    """
    Base class for REST providers (Paystack, Flutterwave).

    Subclasses call :meth:`_request` and translate the JSON payload; any
    transport or HTTP failure surfaces as :class:`ProviderError`.
    """

    def __init__(
        self,
        base_url: str,
        secret_key: str,
        timeout: float = 30.0,
        max_attempts: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_wait: Optional[wait_base] = None,
    ):
        """
        Initialize the HTTP client.

        Args:
            base_url: Provider API root
            secret_key: Secret API key sent as a bearer token
            timeout: Request timeout in seconds
            max_attempts: Attempts per call, including the first one
            transport: Optional transport (tests use httpx.MockTransport)
            retry_wait: Optional tenacity wait strategy
        """
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=8)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=httpx.Timeout(timeout, connect=10.0),
            transport=transport,
        )

    def _classify_status(self, status_code: int) -> ProviderErrorType:
        if status_code == 429:
            return ProviderErrorType.RATE_LIMIT
        if status_code >= 500 or status_code == 408:
            return ProviderErrorType.TRANSIENT
        return ProviderErrorType.PERMANENT

    async def _send(self, method: str, path: str, operation: str, **kwargs: Any) -> Dict[str, Any]:
        started = time.perf_counter()
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            metrics.record_provider_api_call(
                self.name, operation, "error", time.perf_counter() - started
            )
            metrics.record_provider_api_error(self.name, ProviderErrorType.TRANSIENT.value)
            logger.warning(
                "provider_transport_error",
                provider=self.name,
                operation=operation,
                error=str(e),
            )
            raise ProviderError(
                f"{self.name} unreachable: {e}",
                ProviderErrorType.TRANSIENT,
                provider=self.name,
                original_error=e,
            ) from e

        duration = time.perf_counter() - started
        if response.is_error:
            error_type = self._classify_status(response.status_code)
            metrics.record_provider_api_call(self.name, operation, "error", duration)
            metrics.record_provider_api_error(self.name, error_type.value)
            message = self._error_message(response)
            logger.error(
                "provider_api_error",
                provider=self.name,
                operation=operation,
                status_code=response.status_code,
                error_type=error_type.value,
                error_message=message,
            )
            raise ProviderError(message, error_type, provider=self.name)

        metrics.record_provider_api_call(self.name, operation, "success", duration)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(
                f"{self.name} returned a non-JSON body",
                ProviderErrorType.TRANSIENT,
                provider=self.name,
                original_error=e,
            ) from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"
        if isinstance(body, dict) and body.get("message"):
            return str(body["message"])
        return f"HTTP {response.status_code}"

    async def _request(self, method: str, path: str, operation: str, **kwargs: Any) -> Dict[str, Any]:
        """
        Send a request, retrying transient and rate-limit failures.

        Args:
            method: HTTP method
            path: Path relative to the provider base URL
            operation: Operation name used in logs and metrics
            **kwargs: Passed to httpx (json, params, ...)

        Returns:
            Dict[str, Any]: Decoded JSON body

        Raises:
            ProviderError: When the call fails permanently or retries run out
        """
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=self.retry_wait,
            reraise=True,
        ):
            with attempt:
                return await self._send(method, path, operation, **kwargs)
        raise ProviderError(  # pragma: no cover
            f"{self.name} request did not complete", ProviderErrorType.TRANSIENT, provider=self.name
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
