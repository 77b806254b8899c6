"""
Expiry evaluation for access tokens.

Pure time arithmetic: whether a token is expired and whether it is close
enough to expiry to be renewed ahead of time.
"""

from datetime import datetime, timedelta
from typing import Optional, Callable

from shared.models import utc_now, ensure_utc


DEFAULT_REFRESH_THRESHOLD_MINUTES = 5


def is_expired(expires_at: Optional[datetime], now: datetime) -> bool:
    """True once `now` has reached `expires_at`; a missing expiry is expired."""
    if expires_at is None:
        return True
    return ensure_utc(expires_at) <= ensure_utc(now)


def needs_refresh(
    expires_at: Optional[datetime],
    now: datetime,
    threshold_minutes: float = DEFAULT_REFRESH_THRESHOLD_MINUTES
) -> bool:
    """True when the token expires within `threshold_minutes` of `now`."""
    if expires_at is None:
        return True
    return ensure_utc(expires_at) - ensure_utc(now) <= timedelta(minutes=threshold_minutes)


class ExpiryPolicy:
    """Expiry checks bound to a refresh threshold and a clock."""

    def __init__(
        self,
        threshold_minutes: float = DEFAULT_REFRESH_THRESHOLD_MINUTES,
        clock: Optional[Callable[[], datetime]] = None
    ):
        if threshold_minutes < 0:
            raise ValueError("Refresh threshold cannot be negative")
        self.threshold_minutes = threshold_minutes
        self._clock = clock or utc_now

    @property
    def threshold(self) -> timedelta:
        return timedelta(minutes=self.threshold_minutes)

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    def is_expired(self, expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
        return is_expired(expires_at, now or self.now())

    def needs_refresh(self, expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
        return needs_refresh(expires_at, now or self.now(), self.threshold_minutes)

    def seconds_until_refresh(self, expires_at: Optional[datetime], now: Optional[datetime] = None) -> float:
        """Seconds until the token enters the refresh window; 0 if already inside it."""
        if expires_at is None:
            return 0.0
        current = ensure_utc(now) if now else self.now()
        remaining = ensure_utc(expires_at) - self.threshold - current
        return max(0.0, remaining.total_seconds())
