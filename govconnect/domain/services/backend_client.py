"""
Backend client: the HTTP transport under the session manager and the takeover
coordinator.

Every endpoint answers with a { success, data?, error? } envelope. This
client unwraps it, turns non-2xx responses and `success: false` into
BackendError, retries idempotent reads on transient failures, and runs every
call through the backend circuit breaker.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import httpx

from govconnect.core.circuit_breaker import CircuitBreaker, get_backend_circuit_breaker
from govconnect.core.config import settings
from govconnect.core.exceptions import BackendError, ServiceTimeoutError
from govconnect.core.logging import get_correlation_id, get_logger
from govconnect.schemas.envelope import ApiEnvelope

logger = get_logger(__name__)

# Only reads are safe to repeat; a repeated POST could send a message twice
RETRYABLE_METHODS = frozenset({"GET"})


class BackendClient:
    """
    Async client for the channel/livechat backend.

    Tenant scoping is a query parameter (`tenant_id`), added to every request
    that names one.
    """

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        *,
        circuit_breaker: CircuitBreaker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_base: float = 1.0,
    ) -> None:
        self._base_url = (base_url or settings.BACKEND_BASE_URL).rstrip("/")
        self._token = token if token is not None else settings.BACKEND_API_TOKEN
        self._circuit_breaker = circuit_breaker or get_backend_circuit_breaker()
        self._transport = transport
        self._timeout = timeout or settings.BACKEND_TIMEOUT_SECONDS
        self._max_retries = max_retries or settings.BACKEND_MAX_RETRIES
        self._backoff_base = backoff_base
        self._transient_status_codes = settings.transient_status_codes
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers={"Authorization": f"Bearer {self._token}"},
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    # ── public helpers ──

    async def get(self, path: str, *, tenant_id: str | None = None, params: dict | None = None) -> Any:
        return await self.request("GET", path, tenant_id=tenant_id, params=params)

    async def post(self, path: str, *, tenant_id: str | None = None, json: dict | None = None) -> Any:
        return await self.request("POST", path, tenant_id=tenant_id, json=json)

    async def put(self, path: str, *, tenant_id: str | None = None, json: dict | None = None) -> Any:
        return await self.request("PUT", path, tenant_id=tenant_id, json=json)

    async def delete(self, path: str, *, tenant_id: str | None = None, json: dict | None = None) -> Any:
        return await self.request("DELETE", path, tenant_id=tenant_id, json=json)

    async def request(
        self,
        method: str,
        path: str,
        *,
        tenant_id: str | None = None,
        params: dict | None = None,
        json: dict | None = None,
    ) -> Any:
        """
        Send one request and return the envelope's `data`.

        Raises:
            BackendError: non-2xx status, `success: false` or unreadable body
            ServiceTimeoutError: the backend did not answer in time
            CircuitBreakerOpenError: the backend is failing, call not attempted
        """
        method = method.upper()
        query = {k: v for k, v in (params or {}).items() if v is not None}
        if tenant_id is not None:
            query["tenant_id"] = tenant_id

        async def _send() -> ApiEnvelope:
            return await self._request_with_retry(method, path, query, json)

        envelope = await self._circuit_breaker.execute(_send)
        return envelope.data

    # ── retry helper ──

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        params: dict,
        payload: dict | None,
    ) -> ApiEnvelope:
        """Send a request, retrying reads with exponential backoff."""
        client = self._get_client()
        attempts = self._max_retries if method in RETRYABLE_METHODS else 1
        operation = f"{method} {path}"
        headers = {"X-Correlation-ID": get_correlation_id()}

        for attempt in range(attempts):
            is_last = attempt >= attempts - 1
            try:
                response = await client.request(
                    method,
                    path,
                    params=params or None,
                    json=payload,
                    headers=headers,
                )
            except httpx.TimeoutException:
                if not is_last:
                    await self._backoff(operation, attempt, reason="timeout")
                    continue
                raise ServiceTimeoutError("backend", self._timeout)
            except httpx.RequestError as exc:
                if not is_last:
                    await self._backoff(operation, attempt, reason="network", error=str(exc))
                    continue
                raise BackendError(
                    message=f"{operation} network error: {exc}",
                    details={"operation": operation, "network_error": True, "attempts": attempt + 1},
                ) from exc

            if response.status_code in self._transient_status_codes and not is_last:
                await self._backoff(operation, attempt, reason="status", status_code=response.status_code)
                continue

            return self._parse_envelope(operation, response)

        # range() always runs at least once and every path above returns or raises
        raise AssertionError("unreachable")

    async def _backoff(self, operation: str, attempt: int, *, reason: str, **extra: Any) -> None:
        delay = self._backoff_base * (2 ** attempt)
        logger.warning(
            f"Transient backend failure on {operation}, retrying",
            extra_data={
                "operation": operation,
                "reason": reason,
                "attempt": attempt + 1,
                "max_retries": self._max_retries,
                "backoff_seconds": delay,
                **extra,
            },
        )
        if delay > 0:
            await asyncio.sleep(delay)

    @staticmethod
    def _parse_envelope(operation: str, response: httpx.Response) -> ApiEnvelope:
        body: Optional[Any]
        try:
            body = response.json()
        except ValueError:
            body = None

        if not response.is_success:
            error_text = ""
            if isinstance(body, dict):
                error_text = ApiEnvelope.model_validate(
                    {"error": body.get("error"), "message": body.get("message")}
                ).error_text
            raise BackendError.from_response(operation, response, message=error_text or None)

        if not isinstance(body, dict):
            raise BackendError.from_response(
                operation, response, message=f"{operation} returned a non-JSON body"
            )

        # A bare 2xx JSON object without the envelope is treated as data
        if "success" not in body:
            return ApiEnvelope(success=True, data=body)

        envelope = ApiEnvelope.model_validate(body)
        if not envelope.success:
            raise BackendError.from_response(
                operation,
                response,
                message=envelope.error_text or f"{operation} failed",
            )
        return envelope
