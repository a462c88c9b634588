"""
Core interfaces for the IDaaS session client.

This module defines the abstract interfaces the session manager depends on,
so that the HTTP transport and the secure storage backend can be swapped or
replaced by test doubles.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any

from .models import AuthResponse, RefreshResponse, SSOStatus


class IAuthClient(ABC):
    """Interface for the identity-service transport."""

    @property
    @abstractmethod
    def timeout_budget(self) -> float:
        """Worst-case duration in seconds of a single call, retries included."""
        pass

    @abstractmethod
    async def authenticate(
        self,
        email: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None
    ) -> AuthResponse:
        """Exchange identity credentials for a refresh/access token pair."""
        pass

    @abstractmethod
    async def obtain_captcha(self) -> Dict[str, Any]:
        """Request a captcha challenge for the single sign-on flow."""
        pass

    @abstractmethod
    async def start_challenge(
        self,
        captcha_token: str,
        captcha_code: str,
        email: Optional[str] = None,
        phone: Optional[str] = None
    ) -> SSOStatus:
        """Start a single sign-on challenge for an email address or phone number."""
        pass

    @abstractmethod
    async def refresh(self, refresh_token: str) -> RefreshResponse:
        """Obtain a new access token with a refresh token."""
        pass

    @abstractmethod
    async def revoke(self, refresh_token: str) -> bool:
        """Invalidate a refresh token on the server."""
        pass

    @abstractmethod
    async def fetch_profile(self, access_token: str) -> Dict[str, Any]:
        """Fetch the profile of the authenticated user."""
        pass

    async def close(self) -> None:
        """Release transport resources."""
        pass


class ISecureStore(ABC):
    """Interface for persisting the credential bundle."""

    @abstractmethod
    async def load(self) -> Optional[Dict[str, Any]]:
        """Load the stored bundle, or None if nothing is stored."""
        pass

    @abstractmethod
    async def save(self, values: Dict[str, Any]) -> None:
        """Merge values into the stored bundle; None values remove their key."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove the stored bundle entirely."""
        pass


class IConfigurationManager(ABC):
    """Interface for configuration management."""

    @abstractmethod
    def get_domain(self) -> str:
        """Get identity service domain."""
        pass

    @abstractmethod
    def get_api_version(self) -> str:
        """Get API version path segment."""
        pass

    @abstractmethod
    def set_config(self, key: str, value: Any) -> None:
        """Set configuration value."""
        pass

    @abstractmethod
    def get_config(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        pass
