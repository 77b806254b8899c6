"""
Core data models for the DocFiscal client credentials.

This module defines the data structures shared by the credential store,
the refresh coordinator and the token lifecycle facade.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from enum import Enum


ACCESS_TOKEN_KEY = "docfiscal_access_token"
REFRESH_TOKEN_KEY = "docfiscal_refresh_token"
EXPIRES_AT_KEY = "docfiscal_token_expires_at"

TOKEN_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, EXPIRES_AT_KEY)


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 timestamp as written by the credential store.

    Args:
        value: ISO-8601 string, optionally with a trailing 'Z'

    Returns:
        Timezone-aware UTC datetime

    Raises:
        ValueError: If the string is not a valid timestamp
    """
    text = value.strip()
    if text.endswith('Z') or text.endswith('z'):
        text = text[:-1] + '+00:00'
    return ensure_utc(datetime.fromisoformat(text))


class RefreshState(Enum):
    """State of the refresh single flight."""
    IDLE = "idle"
    IN_FLIGHT = "in_flight"


class RefreshFailureReason(Enum):
    """Why a refresh exchange did not produce a new token pair."""
    NO_REFRESH_TOKEN = "no_refresh_token"
    NETWORK_FAILURE = "network_failure"
    REFRESH_REJECTED = "refresh_rejected"
    MALFORMED_RESPONSE = "malformed_response"
    UNEXPECTED_ERROR = "unexpected_error"


@dataclass(frozen=True)
class TokenPair:
    """Access/refresh token pair with the absolute expiry of the access token."""
    access_token: str
    refresh_token: str
    expires_at: datetime

    def __post_init__(self):
        if not isinstance(self.access_token, str) or not self.access_token.strip():
            raise ValueError("Access token cannot be empty")
        if not isinstance(self.refresh_token, str) or not self.refresh_token.strip():
            raise ValueError("Refresh token cannot be empty")
        if not isinstance(self.expires_at, datetime):
            raise ValueError("Token expiry must be a datetime")
        # frozen dataclass: normalize through object.__setattr__
        object.__setattr__(self, 'expires_at', ensure_utc(self.expires_at))

    def to_storage(self) -> Dict[str, str]:
        """Serialize to the three persisted key/value entries."""
        return {
            ACCESS_TOKEN_KEY: self.access_token,
            REFRESH_TOKEN_KEY: self.refresh_token,
            EXPIRES_AT_KEY: self.expires_at.isoformat(),
        }

    @classmethod
    def from_storage(cls, values: Dict[str, Optional[str]]) -> 'TokenPair':
        """
        Build a pair from persisted entries.

        Raises:
            ValueError: If any entry is missing, blank or unparsable
        """
        access_token = values.get(ACCESS_TOKEN_KEY)
        refresh_token = values.get(REFRESH_TOKEN_KEY)
        expires_at = values.get(EXPIRES_AT_KEY)

        if not access_token or not refresh_token or not expires_at or not expires_at.strip():
            raise ValueError("Incomplete token pair")

        return cls(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=parse_timestamp(expires_at),
        )

    def to_dict(self, mask: bool = True) -> Dict[str, Any]:
        """Dictionary view for status output; tokens are masked by default."""
        from shared.logging_config import mask_token

        return {
            'access_token': mask_token(self.access_token) if mask else self.access_token,
            'refresh_token': mask_token(self.refresh_token) if mask else self.refresh_token,
            'expires_at': self.expires_at.isoformat(),
        }


@dataclass
class TokenRefreshResult:
    """
    Outcome of one refresh exchange, shared by every caller that awaited it.

    `superseded` marks an exchange whose outcome was not applied to the store
    because the stored pair was replaced or cleared while it was in flight.
    """
    success: bool
    tokens: Optional[TokenPair] = None
    error: Optional[str] = None
    reason: Optional[RefreshFailureReason] = None
    superseded: bool = False

    @property
    def access_token(self) -> Optional[str]:
        return self.tokens.access_token if self.success and self.tokens else None

    @classmethod
    def succeeded(cls, tokens: TokenPair) -> 'TokenRefreshResult':
        return cls(success=True, tokens=tokens)

    @classmethod
    def failed(cls, reason: RefreshFailureReason, error: str) -> 'TokenRefreshResult':
        return cls(success=False, error=error, reason=reason)
