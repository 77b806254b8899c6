"""
HTTP API Client for the DocFiscal credential refresh exchange.

This module performs `POST /api/auth/refresh` against the DocFiscal server with
a bounded timeout, classifies every failure into the credential error
hierarchy and optionally retries pure transport failures.
"""

import asyncio
import json
import logging
import random
from typing import Optional, Dict, Any

from aiohttp import ClientSession, ClientTimeout, ClientError

from shared.exceptions import (
    ErrorCode, MalformedResponseError, NetworkFailureError, RefreshRejectedError
)
from shared.interfaces import ITokenRefreshClient
from docfiscal_client.auth.schemas import RefreshRequest

logger = logging.getLogger(__name__)


DEFAULT_REFRESH_PATH = '/api/auth/refresh'


class RetryConfig:
    """
    Configuration for retrying transport failures.

    Refresh failures are terminal by default, so max_retries starts at 0.
    Rejections and malformed responses are never retried.
    """

    def __init__(
        self,
        max_retries: int = 0,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retry number `attempt + 1`."""
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


class AuthAPIClient(ITokenRefreshClient):
    """
    HTTP client for the DocFiscal authentication endpoints.

    Owns one aiohttp session, created lazily and closed by close() or by
    leaving the async context manager.
    """

    def __init__(
        self,
        server_url: str,
        timeout: float = 30.0,
        refresh_path: str = DEFAULT_REFRESH_PATH,
        retry_config: Optional[RetryConfig] = None
    ):
        self.server_url = server_url.rstrip('/')
        self.timeout = ClientTimeout(total=timeout)
        self.refresh_path = refresh_path
        self.retry_config = retry_config or RetryConfig()

        self._session: Optional[ClientSession] = None

        logger.info(f"API client initialized for server: {self.server_url}")

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                timeout=self.timeout,
                headers={
                    'User-Agent': 'DocFiscalClient/1.0',
                    'Content-Type': 'application/json'
                }
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _url(self, path: str) -> str:
        return f"{self.server_url}/{path.lstrip('/')}"

    async def _post_json(self, path: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST a JSON body and decode a 2xx JSON response.

        Raises:
            RefreshRejectedError: On a non-2xx status
            MalformedResponseError: If a 2xx body is not JSON
            NetworkFailureError: After transport failures exhaust the retries
        """
        await self._ensure_session()
        url = self._url(path)

        attempt = 0
        while True:
            try:
                logger.debug(f"POST {url} (attempt {attempt + 1})")

                async with self._session.post(url, json=data) as response:
                    if not 200 <= response.status < 300:
                        detail = await self._get_error_detail(response)
                        raise RefreshRejectedError(
                            f"Token refresh failed: {response.status}",
                            status_code=response.status,
                            context={'detail': detail} if detail else None
                        )

                    body = await response.text()
                    try:
                        return json.loads(body)
                    except ValueError as e:
                        raise MalformedResponseError(
                            "Refresh response is not valid JSON",
                            context={'status_code': response.status},
                            cause=e
                        )

            except (ClientError, asyncio.TimeoutError, OSError) as e:
                is_timeout = isinstance(e, asyncio.TimeoutError)
                logger.warning(f"Network error on attempt {attempt + 1}: {type(e).__name__}: {e}")

                if attempt >= self.retry_config.max_retries:
                    raise NetworkFailureError(
                        f"Refresh request failed after {attempt + 1} attempt(s): {type(e).__name__}",
                        error_code=ErrorCode.NETWORK_TIMEOUT if is_timeout else ErrorCode.NETWORK_CONNECTION_FAILED,
                        cause=e
                    )

                delay = self.retry_config.delay_for(attempt)
                logger.info(f"Retrying in {delay:.1f} seconds...")
                await asyncio.sleep(delay)
                attempt += 1

    async def _get_error_detail(self, response) -> Optional[str]:
        """Best-effort error text from a failed response; never trusted."""
        try:
            payload = await response.json(content_type=None)
        except (ValueError, ClientError):
            return None
        if isinstance(payload, dict):
            detail = payload.get('error') or payload.get('detail')
            return str(detail)[:200] if detail else None
        return None

    async def refresh_tokens(self, refresh_token: str) -> Dict[str, Any]:
        """
        Exchange a refresh token for a new token pair.

        Args:
            refresh_token: Current refresh token

        Returns:
            Decoded response body (validated by the caller)
        """
        request = RefreshRequest(refresh_token=refresh_token)
        logger.info("Attempting token refresh")
        return await self._post_json(self.refresh_path, request.model_dump())
