"""
Core interfaces for the DocFiscal client credentials.

This module defines the abstract interfaces that storage backends and
refresh clients must implement.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any


class IKeyValueBackend(ABC):
    """Durable string key-value storage used by the credential store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the stored value or None if the key is absent."""
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store a value, replacing any previous one."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key; removing an absent key is not an error."""
        pass


class ITokenRefreshClient(ABC):
    """Client performing the network refresh exchange."""

    @abstractmethod
    async def refresh_tokens(self, refresh_token: str) -> Dict[str, Any]:
        """
        Exchange a refresh token for a new token pair.

        Returns:
            Decoded JSON body of a 2xx response

        Raises:
            NetworkFailureError: If the server could not be reached
            RefreshRejectedError: On a non-2xx response
            MalformedResponseError: If the body is not valid JSON
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass


class IConfigurationManager(ABC):
    """Interface for configuration management."""

    @abstractmethod
    def get_server_url(self) -> str:
        """Get server URL."""
        pass

    @abstractmethod
    def get_storage_backend(self) -> str:
        """Get credential storage backend name."""
        pass

    @abstractmethod
    def get_refresh_threshold_minutes(self) -> float:
        """Get refresh threshold in minutes."""
        pass

    @abstractmethod
    def set_config(self, key: str, value: Any) -> None:
        """Set configuration value."""
        pass

    @abstractmethod
    def get_config(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        pass
