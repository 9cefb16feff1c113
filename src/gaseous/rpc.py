"""
Minimal async JSON-RPC transport shared by the ledger and bundler clients.

Features:
- Bounded request timeout (httpx)
- Transport failures and RPC error responses kept distinct
- Bounded retry with exponential backoff and jitter for transient failures
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar

import httpx

from .config import RetrySettings
from .errors import GaslessError, TransientError
from .logging_utils import PipelineLogger, get_pipeline_logger

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class RPCTransportError(TransientError):
    """The endpoint could not be reached, timed out, or answered with a server error."""

    def __init__(self, method: str, reason: str, status_code: Optional[int] = None):
        self.method = method
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"{method}: {reason}")


class RPCError(GaslessError):
    """The endpoint answered with a JSON-RPC error object."""

    def __init__(self, method: str, message: str, code: Optional[int] = None, data: Any = None):
        self.method = method
        self.message = message
        self.code = code
        self.data = data
        super().__init__(f"RPC error ({method}): {message}")


class JsonRpcClient:
    """Async JSON-RPC 2.0 client over a single HTTP endpoint."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        plog: Optional[PipelineLogger] = None,
    ):
        if not url:
            raise ValueError("JSON-RPC endpoint URL is required")
        self._url = url
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout_seconds, headers=headers or {}
        )
        self._ids = itertools.count(1)
        self._plog = plog or get_pipeline_logger()

    @property
    def url(self) -> str:
        return self._url

    async def call(self, method: str, params: List[Any]) -> Any:
        """Perform one request/response round trip and return ``result``."""
        request_id = next(self._ids)
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        started = time.monotonic()
        try:
            response = await self._client.post(self._url, json=payload)
        except httpx.TimeoutException as e:
            self._record(method, started, False, error_message="timeout")
            raise RPCTransportError(method, f"timed out: {e}") from e
        except httpx.HTTPError as e:
            self._record(method, started, False, error_message=str(e))
            raise RPCTransportError(method, str(e)) from e

        data = self._decode(method, response)
        error = data.get("error") if isinstance(data, dict) else None
        if error:
            if not isinstance(error, dict):
                error = {"message": str(error)}
            self._record(method, started, False, error.get("code"), str(error.get("message")))
            raise RPCError(
                method,
                str(error.get("message") or "unknown error"),
                code=error.get("code"),
                data=error.get("data"),
            )
        if response.status_code >= 400:
            self._record(method, started, False, response.status_code)
            if response.status_code in RETRYABLE_STATUS_CODES:
                raise RPCTransportError(
                    method, f"HTTP {response.status_code}", status_code=response.status_code
                )
            raise RPCError(method, f"HTTP {response.status_code}", code=response.status_code)

        self._record(method, started, True)
        return data.get("result") if isinstance(data, dict) else None

    def _decode(self, method: str, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            # HTTP errors without a JSON body are classified by status code
            if response.status_code >= 400:
                return {}
            raise RPCTransportError(method, "response is not valid JSON") from e

    def _record(
        self,
        method: str,
        started: float,
        success: bool,
        error_code: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        self._plog.log_rpc_call(
            method=method,
            endpoint_url=self._url,
            duration_ms=(time.monotonic() - started) * 1000,
            success=success,
            error_code=error_code,
            error_message=error_message,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def calculate_backoff(attempt: int, settings: RetrySettings) -> float:
    """Exponential delay with jitter for the given zero-based attempt."""
    base_delay = settings.initial_delay_seconds * (settings.backoff_multiplier ** attempt)
    jitter = base_delay * settings.jitter_factor * random.uniform(-1, 1)
    return max(0.0, min(base_delay + jitter, settings.max_delay_seconds))


async def retry_async(
    func: Callable[[], Awaitable[T]],
    settings: RetrySettings,
    *,
    retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call ``func`` until it succeeds, retrying only ``retry_on`` errors.

    Attempts are bounded by ``settings.max_attempts``; the last error is
    re-raised unchanged.
    """
    attempts = max(1, settings.max_attempts)
    for attempt in range(attempts):
        try:
            return await func()
        except retry_on as e:
            if attempt + 1 >= attempts:
                logger.warning(f"{description} failed after {attempts} attempts: {e}")
                raise
            delay = calculate_backoff(attempt, settings)
            logger.info(
                f"{description} failed (attempt {attempt + 1}/{attempts}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            await sleep(delay)
    raise AssertionError("unreachable")
