"""
Unit tests for TokenLifecycleManager.

Tests the get_valid_token contract, storage delegation, authentication
callbacks and automatic background refresh.
"""

import asyncio
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest

from shared.exceptions import RefreshRejectedError
from shared.models import RefreshFailureReason, TokenPair
from docfiscal_client.auth.expiry import ExpiryPolicy
from docfiscal_client.auth.token_manager import TokenLifecycleManager
from docfiscal_client.auth.token_storage import CredentialStore, EncryptedFileBackend, MemoryBackend
from docfiscal_client.api_client import AuthAPIClient
from docfiscal_client.config import ClientConfiguration

from conftest import NOW, FailingBackend, FakeRefreshClient, fixed_clock, success_payload


class TestGetValidToken:
    """Test the primary get_valid_token contract."""

    @pytest.mark.asyncio
    async def test_fresh_token_returned_without_network(self, manager, refresh_client, fresh_pair):
        manager.store_tokens(fresh_pair)

        assert await manager.get_valid_token() == "A1"
        assert refresh_client.calls == []

    @pytest.mark.asyncio
    async def test_expired_token_refreshed(self, manager, refresh_client, expired_pair):
        manager.store_tokens(expired_pair)

        assert await manager.get_valid_token() == "A2"
        assert refresh_client.calls == ["R1"]
        assert manager.get_stored_tokens() == TokenPair("A2", "R2", NOW + timedelta(seconds=3600))

    @pytest.mark.asyncio
    async def test_token_within_threshold_refreshed(self, manager, refresh_client):
        manager.store_tokens(TokenPair("A1", "R1", NOW + timedelta(minutes=4)))

        assert await manager.get_valid_token() == "A2"
        assert len(refresh_client.calls) == 1

    @pytest.mark.asyncio
    async def test_no_credentials(self, manager, refresh_client):
        assert await manager.get_valid_token() is None
        assert refresh_client.calls == []

    @pytest.mark.asyncio
    async def test_rejected_refresh_returns_none_and_clears(self, store, expiry_policy, expired_pair):
        client = FakeRefreshClient(RefreshRejectedError("Token refresh failed: 401", status_code=401))
        manager = TokenLifecycleManager(store, client, expiry_policy=expiry_policy)
        manager.store_tokens(expired_pair)

        assert await manager.get_valid_token() is None
        assert manager.get_stored_tokens() is None

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, manager, refresh_client, expired_pair):
        manager.store_tokens(expired_pair)
        refresh_client.gate = asyncio.Event()

        tasks = [asyncio.ensure_future(manager.get_valid_token()) for _ in range(8)]
        await asyncio.sleep(0)
        refresh_client.gate.set()
        results = await asyncio.gather(*tasks)

        assert results == ["A2"] * 8
        assert refresh_client.calls == ["R1"]

    @pytest.mark.asyncio
    async def test_unexpected_error_returns_none(self, manager, store, fresh_pair):
        manager.store_tokens(fresh_pair)

        with patch.object(store, 'read', side_effect=RuntimeError("boom")):
            assert await manager.get_valid_token() is None


class TestStoreChangedDuringRefresh:
    """Test logout, login and shutdown while a refresh is in flight."""

    async def start_refresh(self, manager, client):
        client.gate = asyncio.Event()
        task = asyncio.ensure_future(manager.get_valid_token())
        while not client.calls:
            await asyncio.sleep(0)
        return task

    @pytest.mark.asyncio
    async def test_logout_is_not_undone_by_refresh(self, manager, refresh_client, expired_pair):
        on_refresh = Mock()
        manager.add_token_refresh_callback(on_refresh)
        manager.store_tokens(expired_pair)
        task = await self.start_refresh(manager, refresh_client)

        manager.clear_tokens()
        refresh_client.gate.set()
        await task

        assert manager.get_stored_tokens() is None
        on_refresh.assert_not_called()

    @pytest.mark.asyncio
    async def test_login_survives_failed_refresh(self, store, expiry_policy, expired_pair):
        login_pair = TokenPair("L1", "LR1", NOW + timedelta(hours=1))
        client = FakeRefreshClient(RefreshRejectedError("401", status_code=401))
        manager = TokenLifecycleManager(store, client, expiry_policy=expiry_policy)
        manager.store_tokens(expired_pair)
        task = await self.start_refresh(manager, client)

        on_auth = Mock()
        manager.add_auth_callback(on_auth)
        manager.store_tokens(login_pair)
        client.gate.set()

        assert await task is None
        assert manager.get_stored_tokens() == login_pair
        assert [c.args[0] for c in on_auth.call_args_list] == [True]
        assert await manager.get_valid_token() == "L1"

    @pytest.mark.asyncio
    async def test_login_not_overwritten_by_successful_refresh(self, manager, refresh_client, expired_pair):
        login_pair = TokenPair("L1", "LR1", NOW + timedelta(hours=1))
        manager.store_tokens(expired_pair)
        task = await self.start_refresh(manager, refresh_client)

        manager.store_tokens(login_pair)
        refresh_client.gate.set()
        await task

        assert manager.get_stored_tokens() == login_pair

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_refresh(self, manager, refresh_client, expired_pair):
        manager.store_tokens(expired_pair)
        task = await self.start_refresh(manager, refresh_client)

        shutdown = asyncio.ensure_future(manager.shutdown())
        await asyncio.sleep(0.01)
        assert refresh_client.closed is False

        refresh_client.gate.set()
        await asyncio.wait_for(shutdown, timeout=1)

        assert await task == "A2"
        assert refresh_client.closed is True
        assert manager.get_stored_tokens().access_token == "A2"


class TestStorageDelegation:
    """Test store_tokens, get_stored_tokens, is_token_expired and clear_tokens."""

    def test_store_and_get(self, manager, fresh_pair):
        assert manager.store_tokens(fresh_pair) is True
        assert manager.get_stored_tokens() == fresh_pair

    def test_store_failure_returns_false(self, expiry_policy, fresh_pair):
        manager = TokenLifecycleManager(
            CredentialStore(FailingBackend(fail_on={1})), FakeRefreshClient(), expiry_policy=expiry_policy
        )

        assert manager.store_tokens(fresh_pair) is False
        assert manager.get_stored_tokens() is None

    def test_is_token_expired(self, manager, fresh_pair, expired_pair):
        manager.store_tokens(fresh_pair)
        assert manager.is_token_expired("A1") is False

        manager.store_tokens(expired_pair)
        assert manager.is_token_expired("A1") is True

    def test_unknown_token_is_expired(self, manager, fresh_pair):
        manager.store_tokens(fresh_pair)

        assert manager.is_token_expired("someone-elses-token") is True

    def test_is_token_expired_without_credentials(self, manager):
        assert manager.is_token_expired("A1") is True

    def test_clear_tokens(self, manager, fresh_pair):
        manager.store_tokens(fresh_pair)
        manager.clear_tokens()

        assert manager.get_stored_tokens() is None


class TestForcedRefresh:
    """Test refresh_token, is_authenticated and initialize."""

    @pytest.mark.asyncio
    async def test_refresh_token_ignores_expiry(self, manager, refresh_client, fresh_pair):
        manager.store_tokens(fresh_pair)

        result = await manager.refresh_token()

        assert result.success is True
        assert result.access_token == "A2"
        assert refresh_client.calls == ["R1"]

    @pytest.mark.asyncio
    async def test_refresh_token_without_credentials(self, manager):
        result = await manager.refresh_token()

        assert result.success is False
        assert result.reason == RefreshFailureReason.NO_REFRESH_TOKEN

    @pytest.mark.asyncio
    async def test_is_authenticated(self, manager, fresh_pair):
        assert await manager.is_authenticated() is False

        manager.store_tokens(fresh_pair)
        assert await manager.is_authenticated() is True

    @pytest.mark.asyncio
    async def test_initialize_restores_session(self, expiry_policy, fresh_pair):
        backend = MemoryBackend(fresh_pair.to_storage())
        manager = TokenLifecycleManager(CredentialStore(backend), FakeRefreshClient(), expiry_policy=expiry_policy)

        assert await manager.initialize() is True


class TestCallbacks:
    """Test authentication and refresh callbacks."""

    @pytest.mark.asyncio
    async def test_refresh_callback(self, manager, expired_pair):
        on_refresh = Mock()
        manager.add_token_refresh_callback(on_refresh)
        manager.store_tokens(expired_pair)

        await manager.get_valid_token()

        on_refresh.assert_called_once_with("A2")

    @pytest.mark.asyncio
    async def test_auth_callback_on_failed_refresh(self, store, expiry_policy, expired_pair):
        manager = TokenLifecycleManager(
            store, FakeRefreshClient(RefreshRejectedError("403", status_code=403)), expiry_policy=expiry_policy
        )
        on_auth = Mock()
        manager.store_tokens(expired_pair)
        manager.add_auth_callback(on_auth)

        await manager.get_valid_token()

        on_auth.assert_called_once_with(False)

    def test_auth_callback_on_store_and_clear(self, manager, fresh_pair):
        on_auth = Mock()
        manager.add_auth_callback(on_auth)

        manager.store_tokens(fresh_pair)
        manager.clear_tokens()

        assert [c.args[0] for c in on_auth.call_args_list] == [True, False]

    def test_callback_error_is_ignored(self, manager, fresh_pair):
        manager.add_auth_callback(Mock(side_effect=RuntimeError("callback failed")))

        assert manager.store_tokens(fresh_pair) is True


class TestAutoRefresh:
    """Test background refresh ahead of expiry."""

    @pytest.mark.asyncio
    async def test_auto_refresh_renews_due_token(self, manager, refresh_client):
        manager.store_tokens(TokenPair("A1", "R1", NOW + timedelta(minutes=2)))

        with patch('docfiscal_client.auth.token_manager.MIN_AUTO_REFRESH_SLEEP', 0.01):
            manager.start_auto_refresh()
            assert manager.auto_refresh_running is True

            for _ in range(100):
                if refresh_client.calls:
                    break
                await asyncio.sleep(0.01)

            await manager.shutdown()

        assert refresh_client.calls == ["R1"]
        assert manager.get_stored_tokens().access_token == "A2"
        assert manager.auto_refresh_running is False

    @pytest.mark.asyncio
    async def test_auto_refresh_stops_without_credentials(self, manager):
        manager.start_auto_refresh()
        task = manager._refresh_task

        await asyncio.wait_for(task, timeout=1)

        assert manager.auto_refresh_running is False

    @pytest.mark.asyncio
    async def test_auto_refresh_stops_after_failed_refresh(self, store, expiry_policy):
        client = FakeRefreshClient(RefreshRejectedError("401", status_code=401))
        manager = TokenLifecycleManager(store, client, expiry_policy=expiry_policy)
        manager.store_tokens(TokenPair("A1", "R1", NOW + timedelta(minutes=1)))

        with patch('docfiscal_client.auth.token_manager.MIN_AUTO_REFRESH_SLEEP', 0.01):
            manager.start_auto_refresh()
            await asyncio.wait_for(manager._refresh_task, timeout=1)

        assert client.calls == ["R1"]
        assert manager.get_stored_tokens() is None

    @pytest.mark.asyncio
    async def test_short_lived_tokens_do_not_spin(self, store, expiry_policy):
        """Test that tokens issued inside the refresh window are not renewed back to back."""
        client = FakeRefreshClient(success_payload("A2", "R2", 60))
        manager = TokenLifecycleManager(store, client, expiry_policy=expiry_policy)
        manager.store_tokens(TokenPair("A1", "R1", NOW + timedelta(minutes=1)))

        with patch('docfiscal_client.auth.token_manager.MIN_AUTO_REFRESH_SLEEP', 0.01), \
                patch('docfiscal_client.auth.token_manager.MIN_AUTO_REFRESH_INTERVAL', 30.0):
            manager.start_auto_refresh()
            for _ in range(100):
                if client.calls:
                    break
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.1)

            assert client.calls == ["R1"]
            assert manager.auto_refresh_running is True
            await manager.shutdown()

    def test_next_refresh_delay(self, manager):
        due = TokenPair("A1", "R1", NOW + timedelta(minutes=2))
        later = TokenPair("A1", "R1", NOW + timedelta(minutes=15))

        assert manager._next_refresh_delay(due, after_refresh=False) == 1.0
        assert manager._next_refresh_delay(due, after_refresh=True) == 60.0
        assert manager._next_refresh_delay(later, after_refresh=True) == 600.0
        assert manager._next_refresh_delay(
            TokenPair("A1", "R1", NOW + timedelta(days=2)), after_refresh=False
        ) == 3600.0

    @pytest.mark.asyncio
    async def test_start_twice_keeps_single_task(self, manager, fresh_pair):
        manager.store_tokens(fresh_pair)

        manager.start_auto_refresh()
        task = manager._refresh_task
        manager.start_auto_refresh()

        assert manager._refresh_task is task
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_initialize_starts_auto_refresh_when_enabled(self, store, expiry_policy, fresh_pair):
        store.store(fresh_pair)
        manager = TokenLifecycleManager(store, FakeRefreshClient(), expiry_policy=expiry_policy, auto_refresh=True)

        assert await manager.initialize() is True
        assert manager.auto_refresh_running is True

        await manager.shutdown()
        assert manager.auto_refresh_running is False

    @pytest.mark.asyncio
    async def test_auto_refresh_disabled_by_default(self, manager, fresh_pair):
        manager.store_tokens(fresh_pair)

        await manager.initialize()

        assert manager.auto_refresh_running is False

    @pytest.mark.asyncio
    async def test_clear_tokens_stops_auto_refresh(self, manager, fresh_pair):
        manager.store_tokens(fresh_pair)
        manager.start_auto_refresh()

        manager.clear_tokens()
        await asyncio.sleep(0)

        assert manager.auto_refresh_running is False


class TestLifecycle:
    """Test context manager support and construction from configuration."""

    @pytest.mark.asyncio
    async def test_context_manager_closes_client(self, store, expiry_policy):
        client = FakeRefreshClient()

        async with TokenLifecycleManager(store, client, expiry_policy=expiry_policy):
            pass

        assert client.closed is True

    def test_from_config(self, tmp_path, clean_environment):
        config_file = tmp_path / "client.conf"
        config_file.write_text(
            "[server]\n"
            "url = https://docfiscal.example.com\n"
            "timeout = 12\n"
            "network_retries = 2\n"
            "\n"
            "[auth]\n"
            "storage_backend = file\n"
            f"storage_path = {tmp_path / 'creds.enc'}\n"
            "refresh_threshold_minutes = 10\n"
        )

        manager = TokenLifecycleManager.from_config(ClientConfiguration(str(config_file)))

        assert isinstance(manager.store.backend, EncryptedFileBackend)
        assert manager.store.backend.storage_path == tmp_path / "creds.enc"
        assert isinstance(manager.refresh_client, AuthAPIClient)
        assert manager.refresh_client.server_url == "https://docfiscal.example.com"
        assert manager.refresh_client.timeout.total == 12.0
        assert manager.refresh_client.retry_config.max_retries == 2
        assert manager.expiry_policy.threshold == timedelta(minutes=10)
        assert manager.auto_refresh is False

    @pytest.mark.asyncio
    async def test_default_coordinator_uses_policy_clock(self, store, expired_pair):
        client = FakeRefreshClient(success_payload("A2", "R2", 60))
        manager = TokenLifecycleManager(store, client, expiry_policy=ExpiryPolicy(clock=fixed_clock))
        manager.store_tokens(expired_pair)

        await manager.get_valid_token()

        assert manager.get_stored_tokens().expires_at == NOW + timedelta(seconds=60)
