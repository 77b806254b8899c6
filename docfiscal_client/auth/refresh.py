"""
Single-flight token refresh.

RefreshCoordinator turns the stored refresh token into a new token pair.
Concurrent callers share one network exchange: the first caller starts it,
later callers await the same pending task, and every waiter receives the same
outcome. A failed exchange purges the stored credentials, unless the stored
pair was replaced or cleared while the exchange was in flight.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Callable, List

from jose import jwt, JWTError

from shared.exceptions import (
    CredentialError, ErrorCode, RefreshRejectedError, StorageUnavailableError,
    handle_exception
)
from shared.interfaces import ITokenRefreshClient
from shared.logging_config import AuditLogger, log_structured_error
from shared.models import (
    TokenPair, TokenRefreshResult, RefreshState, RefreshFailureReason, utc_now
)
from docfiscal_client.auth.schemas import RefreshFailure, RefreshedTokens, parse_refresh_response
from docfiscal_client.auth.token_storage import CredentialStore

logger = logging.getLogger(__name__)


DEFAULT_EXPIRES_IN = 3600

_REASON_BY_CODE = {
    ErrorCode.NETWORK_CONNECTION_FAILED: RefreshFailureReason.NETWORK_FAILURE,
    ErrorCode.NETWORK_TIMEOUT: RefreshFailureReason.NETWORK_FAILURE,
    ErrorCode.REFRESH_REJECTED: RefreshFailureReason.REFRESH_REJECTED,
    ErrorCode.REFRESH_MALFORMED_RESPONSE: RefreshFailureReason.MALFORMED_RESPONSE,
    ErrorCode.REFRESH_NO_CREDENTIALS: RefreshFailureReason.NO_REFRESH_TOKEN,
}


def failure_reason(error: CredentialError) -> RefreshFailureReason:
    """Map a structured error onto the refresh outcome taxonomy."""
    return _REASON_BY_CODE.get(error.error_code, RefreshFailureReason.UNEXPECTED_ERROR)


def token_expiration(token: str) -> Optional[datetime]:
    """
    Read the `exp` claim of a JWT access token without verifying it.

    Returns:
        Expiration datetime or None if the token is not a JWT with `exp`
    """
    try:
        payload = jwt.get_unverified_claims(token)
    except JWTError:
        return None

    exp = payload.get('exp') if isinstance(payload, dict) else None
    if isinstance(exp, (int, float)) and not isinstance(exp, bool):
        try:
            return datetime.fromtimestamp(exp, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return None


class RefreshCoordinator:
    """
    Executes the refresh exchange with single-flight semantics.

    The refresh state is owned by the instance: `_pending` holds the shared
    task while a refresh is in flight and is reset before waiters resume.
    Bound to the event loop that runs it.
    """

    def __init__(
        self,
        store: CredentialStore,
        refresh_client: ITokenRefreshClient,
        clock: Optional[Callable[[], datetime]] = None,
        default_expires_in: int = DEFAULT_EXPIRES_IN,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.store = store
        self.refresh_client = refresh_client
        self.default_expires_in = default_expires_in
        self._clock = clock or utc_now
        self._audit = audit_logger or AuditLogger()

        self._pending: Optional[asyncio.Task] = None
        self._exchange_count = 0
        self._listeners: List[Callable[[TokenRefreshResult], None]] = []

    @property
    def state(self) -> RefreshState:
        return RefreshState.IN_FLIGHT if self._pending is not None else RefreshState.IDLE

    @property
    def in_flight(self) -> bool:
        return self._pending is not None

    @property
    def exchange_count(self) -> int:
        """Number of refresh exchanges started by this coordinator."""
        return self._exchange_count

    def add_listener(self, callback: Callable[[TokenRefreshResult], None]) -> None:
        """
        Add a callback invoked once per settled exchange.

        Args:
            callback: Function called with the TokenRefreshResult
        """
        self._listeners.append(callback)

    async def refresh(self) -> Optional[str]:
        """
        Refresh the access token, joining an in-flight refresh if any.

        Returns:
            New access token, or None if the refresh failed
        """
        result = await self.refresh_with_result()
        return result.access_token

    async def refresh_with_result(self) -> TokenRefreshResult:
        """Same single flight as refresh(), returning the full outcome."""
        if self._pending is None:
            # No await between the check and the assignment
            self._pending = asyncio.ensure_future(self._run())
        else:
            logger.debug("Joining in-flight token refresh")

        # A cancelled waiter must not cancel the shared exchange
        return await asyncio.shield(self._pending)

    async def wait_idle(self) -> None:
        """Wait until an in-flight exchange, if any, has settled."""
        pending = self._pending
        if pending is not None:
            await asyncio.wait({pending})

    async def _run(self) -> TokenRefreshResult:
        try:
            result = await self._exchange()
        finally:
            self._pending = None

        self._notify(result)
        return result

    async def _exchange(self) -> TokenRefreshResult:
        current = self.store.read()
        if current is None:
            logger.info("No refresh token available, skipping refresh")
            return TokenRefreshResult.failed(
                RefreshFailureReason.NO_REFRESH_TOKEN, "No refresh token available"
            )

        generation = self.store.generation
        self._exchange_count += 1
        logger.info("Refreshing access token")

        try:
            payload = await self.refresh_client.refresh_tokens(current.refresh_token)
            response = parse_refresh_response(payload)

            if isinstance(response, RefreshFailure):
                raise RefreshRejectedError("Refresh endpoint reported success=false")

            new_pair = self._build_pair(response.tokens, current.refresh_token)
        except Exception as e:
            error = handle_exception(e)
            if self.store.generation != generation:
                return self._superseded(TokenRefreshResult.failed(failure_reason(error), error.message))
            return self._fail(error)

        if self.store.generation != generation:
            # A logout or a new login replaced the pair mid-flight
            return self._superseded(TokenRefreshResult.succeeded(new_pair))

        try:
            self.store.store(new_pair)
        except StorageUnavailableError as e:
            # The old refresh token may be rotated already; keep nothing stale
            log_structured_error(logger, e)
            self.store.clear()
            self._audit.log_tokens_cleared("refreshed pair could not be persisted")
        else:
            self._audit.log_tokens_stored(new_pair.expires_at, source="refresh")

        self._audit.log_token_refresh(True, expires_at=new_pair.expires_at)
        logger.info("Token refresh successful")
        return TokenRefreshResult.succeeded(new_pair)

    def _build_pair(self, tokens: RefreshedTokens, current_refresh_token: str) -> TokenPair:
        now = self._clock()
        if tokens.expires_in is not None:
            expires_at = now + timedelta(seconds=tokens.expires_in)
        else:
            expires_at = token_expiration(tokens.access_token) or (
                now + timedelta(seconds=self.default_expires_in)
            )

        return TokenPair(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token or current_refresh_token,
            expires_at=expires_at,
        )

    def _fail(self, error: CredentialError) -> TokenRefreshResult:
        reason = failure_reason(error)
        log_structured_error(logger, error, level=logging.WARNING)

        self.store.clear()
        self._audit.log_token_refresh(False, reason=reason.value)
        self._audit.log_tokens_cleared(f"refresh failed: {reason.value}")

        return TokenRefreshResult.failed(reason, error.message)

    def _superseded(self, result: TokenRefreshResult) -> TokenRefreshResult:
        logger.info("Stored credentials changed during refresh, discarding its outcome")
        result.superseded = True
        return result

    def _notify(self, result: TokenRefreshResult) -> None:
        for callback in self._listeners:
            try:
                callback(result)
            except Exception as e:
                logger.error(f"Error in refresh listener: {e}")
