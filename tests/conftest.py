"""
Shared fixtures for the credential lifecycle tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from shared.interfaces import ITokenRefreshClient
from shared.models import TokenPair
from docfiscal_client.auth.expiry import ExpiryPolicy
from docfiscal_client.auth.refresh import RefreshCoordinator
from docfiscal_client.auth.token_manager import TokenLifecycleManager
from docfiscal_client.auth.token_storage import CredentialStore, MemoryBackend


NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def success_payload(access_token: str = "A2", refresh_token: Optional[str] = "R2",
                    expires_in: Optional[int] = 3600) -> Dict[str, Any]:
    """Refresh endpoint success body."""
    tokens = {'access_token': access_token}
    if refresh_token is not None:
        tokens['refresh_token'] = refresh_token
    if expires_in is not None:
        tokens['expires_in'] = expires_in
    return {'success': True, 'tokens': tokens}


class FakeRefreshClient(ITokenRefreshClient):
    """
    Scripted refresh client.

    Each call pops the next scripted outcome: a dict is returned, an exception
    instance is raised. When `gate` is set the call blocks until it opens.
    """

    def __init__(self, *outcomes):
        self.outcomes: List[Any] = list(outcomes) or [success_payload()]
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.closed = False

    async def refresh_tokens(self, refresh_token: str) -> Dict[str, Any]:
        self.calls.append(refresh_token)
        if self.gate is not None:
            await self.gate.wait()

        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def close(self) -> None:
        self.closed = True


class FailingBackend(MemoryBackend):
    """
    Memory backend with scripted write failures.

    `fail_on` lists 1-based set() attempts that raise; every attempt from
    `fail_from` onwards raises as well.
    """

    def __init__(self, initial=None, fail_on=(), fail_from=None, fail_reads=False):
        super().__init__(initial)
        self.fail_on = set(fail_on)
        self.fail_from = fail_from
        self.fail_reads = fail_reads
        self.set_attempts = 0

    def get(self, key):
        if self.fail_reads:
            raise OSError("backend unreadable")
        return super().get(key)

    def set(self, key, value):
        self.set_attempts += 1
        if self.set_attempts in self.fail_on or (
            self.fail_from is not None and self.set_attempts >= self.fail_from
        ):
            raise OSError("disk full")
        super().set(key, value)


def fixed_clock():
    return NOW


@pytest.fixture
def clock():
    return fixed_clock


@pytest.fixture
def expiry_policy():
    return ExpiryPolicy(threshold_minutes=5, clock=fixed_clock)


@pytest.fixture
def store():
    return CredentialStore(MemoryBackend())


@pytest.fixture
def fresh_pair():
    """Pair with an hour left."""
    return TokenPair("A1", "R1", NOW + timedelta(hours=1))


@pytest.fixture
def expired_pair():
    return TokenPair("A1", "R1", NOW - timedelta(minutes=1))


@pytest.fixture
def refresh_client():
    return FakeRefreshClient()


@pytest.fixture
def coordinator(store, refresh_client):
    return RefreshCoordinator(store, refresh_client, clock=fixed_clock)


@pytest.fixture
def manager(store, refresh_client, expiry_policy, coordinator):
    return TokenLifecycleManager(
        store, refresh_client, expiry_policy=expiry_policy, coordinator=coordinator
    )


@pytest.fixture
def clean_environment(monkeypatch):
    """Remove DOCFISCAL_* variables inherited from the host."""
    import os

    for name in list(os.environ):
        if name.startswith('DOCFISCAL_'):
            monkeypatch.delenv(name, raising=False)
