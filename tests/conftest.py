"""
Shared fixtures for the IDaaS session client unit tests.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from idaas_client.auth.session_manager import SessionManager
from idaas_client.auth.token_storage import InMemoryTokenStorage
from idaas_shared.interfaces import IAuthClient
from idaas_shared.models import AuthResponse, RefreshResponse

NOW = 1_700_000_000
HOUR = 3600
DAY = 24 * HOUR


class FakeClock:
    """Settable clock returning epoch seconds."""

    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


def session_bundle(now: int = NOW, access_valid: bool = True, refresh_valid: bool = True, user=None):
    """Persisted-form bundle with tokens valid or expired relative to now."""
    return {
        'refreshToken': 'refresh-token-1',
        'refreshTokenExpiry': now + DAY if refresh_valid else now - 1,
        'accessToken': 'access-token-1',
        'accessTokenExpiry': now + HOUR if access_valid else now - 1,
        'user': user
    }


def refresh_response(access_token: str = 'access-token-2', now: int = NOW, **kwargs) -> RefreshResponse:
    return RefreshResponse(access_token=access_token, access_token_expiry=now + HOUR, **kwargs)


def auth_response(now: int = NOW, user=None) -> AuthResponse:
    return AuthResponse(
        refresh_token='refresh-token-1',
        access_token='access-token-1',
        refresh_token_expiry=now + DAY,
        access_token_expiry=now + HOUR,
        user=user
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def auth_client():
    """Mock identity-service transport."""
    client = MagicMock(spec=IAuthClient)
    client.timeout_budget = 5.0
    client.domain = 'id.example.com'
    client.authenticate = AsyncMock(return_value=auth_response())
    client.obtain_captcha = AsyncMock(return_value={'captchaToken': 'captcha-1', 'image': '<svg/>'})
    client.start_challenge = AsyncMock()
    client.refresh = AsyncMock(return_value=refresh_response())
    client.revoke = AsyncMock(return_value=True)
    client.fetch_profile = AsyncMock(return_value={'id': 'user-1', 'email': 'user@example.com'})
    client.close = AsyncMock()
    return client


@pytest.fixture
def store():
    return InMemoryTokenStorage()


@pytest.fixture
def deauth_handler():
    return MagicMock()


@pytest.fixture
def manager(auth_client, store, clock, deauth_handler):
    return SessionManager(auth_client, store, clock=clock, deauth_handler=deauth_handler)
