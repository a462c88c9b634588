"""
In-memory credential bundle for the IDaaS session client.

TokenState holds the refresh token, the access token derived from it, their
expiries and the cached user profile. It performs no I/O; the session manager
is the only writer so that persistence stays paired with every change.
"""

import time
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any, Protocol
import copy


class Clock(Protocol):
    """Callable returning the current time as whole seconds since the epoch."""

    def __call__(self) -> int: ...


def default_clock() -> int:
    return int(time.time())


# Keys of the persisted bundle
REFRESH_TOKEN = 'refreshToken'
REFRESH_TOKEN_EXPIRY = 'refreshTokenExpiry'
ACCESS_TOKEN = 'accessToken'
ACCESS_TOKEN_EXPIRY = 'accessTokenExpiry'
USER = 'user'

USER_ID_FIELDS = ('user_id', 'id')


def _as_expiry(value: Any) -> int:
    """Coerce a stored expiry to epoch seconds; missing or invalid values mean never set."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


@dataclass
class TokenState:
    """
    Current session credentials.

    Expiries are epoch seconds and 0 means "never set". A token is valid only
    while its expiry is strictly greater than now.
    """
    refresh_token: Optional[str] = None
    refresh_token_expiry: int = 0
    access_token: Optional[str] = None
    access_token_expiry: int = 0
    user: Optional[Dict[str, Any]] = field(default=None)

    def has_valid_refresh(self, now: int) -> bool:
        return bool(self.refresh_token) and self.refresh_token_expiry > now

    def has_valid_access(self, now: int) -> bool:
        """An access token is never valid without a refresh token behind it."""
        if not self.refresh_token:
            return False
        return bool(self.access_token) and self.access_token_expiry > now

    def cached_user_id(self) -> Optional[str]:
        """Identifier of the cached user record, if there is a usable one."""
        if not isinstance(self.user, dict):
            return None
        for key in USER_ID_FIELDS:
            if self.user.get(key):
                return str(self.user[key])
        return None

    def is_empty(self) -> bool:
        return not self.refresh_token and not self.access_token

    def copy(self) -> 'TokenState':
        return replace(self, user=copy.deepcopy(self.user))

    def apply(self, values: Dict[str, Any]) -> 'TokenState':
        """
        Return a new state with persisted-form values merged in.

        Keys absent from values keep their current value; keys present with
        None clear their field.
        """
        state = self.copy()
        if REFRESH_TOKEN in values:
            state.refresh_token = values[REFRESH_TOKEN] or None
        if REFRESH_TOKEN_EXPIRY in values:
            state.refresh_token_expiry = _as_expiry(values[REFRESH_TOKEN_EXPIRY])
        if ACCESS_TOKEN in values:
            state.access_token = values[ACCESS_TOKEN] or None
        if ACCESS_TOKEN_EXPIRY in values:
            state.access_token_expiry = _as_expiry(values[ACCESS_TOKEN_EXPIRY])
        if USER in values:
            state.user = copy.deepcopy(values[USER])
        return state

    def to_dict(self) -> Dict[str, Any]:
        """Persisted form of the bundle."""
        return {
            REFRESH_TOKEN: self.refresh_token,
            REFRESH_TOKEN_EXPIRY: self.refresh_token_expiry,
            ACCESS_TOKEN: self.access_token,
            ACCESS_TOKEN_EXPIRY: self.access_token_expiry,
            USER: copy.deepcopy(self.user)
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'TokenState':
        if not data:
            return cls()
        return cls().apply(data)

    def __repr__(self) -> str:
        # Tokens are credentials; keep them out of reprs and logs
        return (
            f"TokenState(refresh_token={'set' if self.refresh_token else None}, "
            f"refresh_token_expiry={self.refresh_token_expiry}, "
            f"access_token={'set' if self.access_token else None}, "
            f"access_token_expiry={self.access_token_expiry}, "
            f"user_id={self.cached_user_id()})"
        )
