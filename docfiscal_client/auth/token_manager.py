"""
Token Lifecycle Manager for the DocFiscal client.

This module is the single entry point the rest of the application uses to
obtain a valid access token. It composes the credential store, the expiry
policy and the single-flight refresh coordinator, and adds authentication
callbacks and optional background refresh.
"""

import asyncio
import logging
from typing import Optional, Callable, List

from shared.exceptions import StorageUnavailableError
from shared.interfaces import ITokenRefreshClient
from shared.logging_config import AuditLogger, log_structured_error
from shared.models import TokenPair, TokenRefreshResult
from docfiscal_client.auth.expiry import ExpiryPolicy
from docfiscal_client.auth.refresh import RefreshCoordinator
from docfiscal_client.auth.token_storage import CredentialStore, create_backend

logger = logging.getLogger(__name__)


MIN_AUTO_REFRESH_SLEEP = 1.0
MAX_AUTO_REFRESH_SLEEP = 3600.0
# Floor after a refresh whose new token is already inside the refresh window
MIN_AUTO_REFRESH_INTERVAL = 60.0


class TokenLifecycleManager:
    """
    Keeps a usable access token for the lifetime of the application.

    get_valid_token() returns the stored token while it is outside the
    refresh threshold, otherwise renews it through the coordinator. It never
    raises: None means re-authentication is required.
    """

    def __init__(
        self,
        store: CredentialStore,
        refresh_client: ITokenRefreshClient,
        expiry_policy: Optional[ExpiryPolicy] = None,
        coordinator: Optional[RefreshCoordinator] = None,
        audit_logger: Optional[AuditLogger] = None,
        auto_refresh: bool = False
    ):
        self.store = store
        self.auto_refresh = auto_refresh
        self.refresh_client = refresh_client
        self.expiry_policy = expiry_policy or ExpiryPolicy()
        self._audit = audit_logger or AuditLogger()
        self.coordinator = coordinator or RefreshCoordinator(
            store,
            refresh_client,
            clock=self.expiry_policy.now,
            audit_logger=self._audit
        )

        # Callbacks for authentication events
        self._auth_callbacks: List[Callable[[bool], None]] = []
        self._token_refresh_callbacks: List[Callable[[str], None]] = []
        self.coordinator.add_listener(self._on_refresh_settled)

        # Automatic refresh task
        self._refresh_task: Optional[asyncio.Task] = None

        logger.info("Token lifecycle manager initialized")

    @classmethod
    def from_config(cls, config) -> 'TokenLifecycleManager':
        """
        Build a manager from a ClientConfiguration.

        Args:
            config: ClientConfiguration instance
        """
        from docfiscal_client.api_client import AuthAPIClient, RetryConfig

        backend = create_backend(
            config.get_storage_backend(),
            storage_path=config.get_storage_path(),
            service_name=config.get_service_name()
        )
        refresh_client = AuthAPIClient(
            config.get_server_url(),
            timeout=config.get_server_timeout(),
            refresh_path=config.get_refresh_path(),
            retry_config=RetryConfig(
                max_retries=config.get_network_retries(),
                base_delay=config.get_retry_delay()
            )
        )
        expiry_policy = ExpiryPolicy(config.get_refresh_threshold_minutes())
        store = CredentialStore(backend)
        coordinator = RefreshCoordinator(
            store,
            refresh_client,
            clock=expiry_policy.now,
            default_expires_in=config.get_default_expires_in()
        )
        return cls(
            store,
            refresh_client,
            expiry_policy=expiry_policy,
            coordinator=coordinator,
            auto_refresh=config.is_auto_refresh_enabled()
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown()

    def add_auth_callback(self, callback: Callable[[bool], None]) -> None:
        """
        Add callback for authentication state changes.

        Args:
            callback: Function called with authentication status (bool)
        """
        self._auth_callbacks.append(callback)

    def add_token_refresh_callback(self, callback: Callable[[str], None]) -> None:
        """
        Add callback for token refresh events.

        Args:
            callback: Function called with new access token (str)
        """
        self._token_refresh_callbacks.append(callback)

    def _notify_auth_change(self, is_authenticated: bool) -> None:
        for callback in self._auth_callbacks:
            try:
                callback(is_authenticated)
            except Exception as e:
                logger.error(f"Error in auth callback: {e}")

    def _notify_token_refresh(self, new_token: str) -> None:
        for callback in self._token_refresh_callbacks:
            try:
                callback(new_token)
            except Exception as e:
                logger.error(f"Error in token refresh callback: {e}")

    def _on_refresh_settled(self, result: TokenRefreshResult) -> None:
        if result.superseded:
            # store_tokens/clear_tokens already reported the newer state
            return
        if result.success:
            self._notify_token_refresh(result.access_token)
        else:
            self._notify_auth_change(False)

    def store_tokens(self, tokens: TokenPair) -> bool:
        """
        Persist a token pair issued by login, registration or an external exchange.

        Returns:
            True if the pair was persisted
        """
        try:
            self.store.store(tokens)
        except StorageUnavailableError as e:
            log_structured_error(logger, e)
            return False

        self._audit.log_tokens_stored(tokens.expires_at)
        self._notify_auth_change(True)
        self._maybe_start_auto_refresh()
        logger.info("Tokens stored successfully")
        return True

    def get_stored_tokens(self) -> Optional[TokenPair]:
        """Stored pair without refresh side effects (inspection only)."""
        return self.store.read()

    def is_token_expired(self, token: str) -> bool:
        """
        Check a token against the stored expiry.

        Args:
            token: Access token to check

        Returns:
            True if expired or not the stored access token
        """
        try:
            tokens = self.store.read()
            if tokens is None or tokens.access_token != token:
                return True
            return self.expiry_policy.is_expired(tokens.expires_at)
        except Exception as e:
            logger.error(f"Error checking token expiration: {e}")
            return True

    async def get_valid_token(self) -> Optional[str]:
        """
        Get a valid access token, refreshing it if necessary.

        Returns:
            Access token, or None when re-authentication is required
        """
        try:
            tokens = self.store.read()
            if tokens is None or not tokens.refresh_token:
                return None

            if not self.expiry_policy.needs_refresh(tokens.expires_at):
                return tokens.access_token

            logger.info("Token expired or about to expire, attempting refresh")
            return await self.coordinator.refresh()

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected error while getting a valid token: {e}", exc_info=True)
            return None

    async def refresh_token(self) -> TokenRefreshResult:
        """
        Force a refresh regardless of expiry, sharing any in-flight exchange.

        Returns:
            Outcome of the exchange
        """
        return await self.coordinator.refresh_with_result()

    def clear_tokens(self) -> None:
        """Clear all stored credentials (logout)."""
        logger.info("Clearing stored credentials")
        self.stop_auto_refresh()
        self.store.clear()
        self._audit.log_tokens_cleared("logout")
        self._notify_auth_change(False)

    async def is_authenticated(self) -> bool:
        """Check if a valid token is available (refreshing if needed)."""
        return await self.get_valid_token() is not None

    async def initialize(self) -> bool:
        """
        Restore the persisted session on startup.

        Returns:
            True if a valid session is available
        """
        has_session = await self.is_authenticated()
        if has_session:
            self._maybe_start_auto_refresh()
        logger.info(f"Token manager initialized - valid session: {has_session}")
        return has_session

    def start_auto_refresh(self) -> None:
        """Start renewing the token in the background ahead of expiry."""
        if self._refresh_task and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.ensure_future(self._refresh_loop())

    def _maybe_start_auto_refresh(self) -> None:
        if not self.auto_refresh:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Synchronous caller; initialize() starts it later
            return
        self.start_auto_refresh()

    def stop_auto_refresh(self) -> None:
        """Stop background renewal; an in-flight exchange still completes."""
        if self._refresh_task and not self._refresh_task.done():
            self._refresh_task.cancel()
        self._refresh_task = None

    @property
    def auto_refresh_running(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    def _next_refresh_delay(self, tokens: TokenPair, after_refresh: bool) -> float:
        """
        Seconds to sleep before the next refresh check.

        A token issued with a lifetime inside the refresh window is due again
        immediately, so the check right after a refresh waits at least
        MIN_AUTO_REFRESH_INTERVAL.
        """
        delay = self.expiry_policy.seconds_until_refresh(tokens.expires_at)
        floor = MIN_AUTO_REFRESH_INTERVAL if after_refresh else MIN_AUTO_REFRESH_SLEEP
        return min(max(floor, delay), MAX_AUTO_REFRESH_SLEEP)

    async def _refresh_loop(self) -> None:
        """Automatic token refresh loop."""
        refreshed = False
        try:
            while True:
                tokens = self.store.read()
                if tokens is None:
                    logger.info("No stored credentials, stopping automatic refresh")
                    return

                sleep_seconds = self._next_refresh_delay(tokens, refreshed)
                logger.debug(f"Token refresh check in {sleep_seconds:.0f} seconds")
                await asyncio.sleep(sleep_seconds)

                refreshed = False
                tokens = self.store.read()
                if tokens is not None and self.expiry_policy.needs_refresh(tokens.expires_at):
                    logger.info("Automatic token refresh triggered")
                    if await self.get_valid_token() is None:
                        logger.info("Automatic refresh failed, stopping")
                        return
                    refreshed = True

        except asyncio.CancelledError:
            logger.debug("Token refresh task cancelled")
            raise

    async def shutdown(self) -> None:
        """Stop background work and release network resources."""
        logger.info("Shutting down token manager")

        task = self._refresh_task
        self.stop_auto_refresh()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

        # An in-flight exchange needs the session until it settles
        await self.coordinator.wait_idle()
        await self.refresh_client.close()
