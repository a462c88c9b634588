"""
Data models for the IDaaS session client.

This module defines the structures exchanged between the transport layer and
the session manager: parsed identity-service responses, single sign-on
challenge outcomes and deauthorization notifications.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any
from enum import Enum


class SSOStatus(Enum):
    """Outcome of a single sign-on challenge request."""
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    INVALID_CAPTCHA = "invalid_captcha"
    RATE_LIMITED = "rate_limited"
    REJECTED = "rejected"
    TRANSPORT_FAILURE = "transport_failure"

    @classmethod
    def from_status_code(cls, status_code: int) -> "SSOStatus":
        """Classify an HTTP status returned by the challenge endpoint."""
        if 200 <= status_code < 300:
            return cls.SUCCESS
        if status_code == 404:
            return cls.NOT_FOUND
        if status_code == 401:
            return cls.INVALID_CAPTCHA
        if status_code == 429:
            return cls.RATE_LIMITED
        return cls.REJECTED


class DeauthReason(Enum):
    """Why a session was declared unrecoverable."""
    NO_REFRESH_TOKEN = "no_refresh_token"
    REFRESH_TOKEN_EXPIRED = "refresh_token_expired"
    REFRESH_REJECTED = "refresh_rejected"
    REFRESH_FAILED = "refresh_failed"


@dataclass
class DeauthEvent:
    """Payload handed to the deauthorization handler."""
    reason: DeauthReason
    status_code: Optional[int] = None
    detail: Optional[str] = None
    occurred_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'reason': self.reason.value,
            'status_code': self.status_code,
            'detail': self.detail,
            'occurred_at': self.occurred_at.isoformat()
        }


@dataclass
class AuthResponse:
    """Credentials issued by a successful authentication."""
    refresh_token: str
    access_token: Optional[str] = None
    refresh_token_expiry: int = 0
    access_token_expiry: int = 0
    user: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.refresh_token:
            raise ValueError("Refresh token cannot be empty")


@dataclass
class RefreshResponse:
    """Access token issued by a refresh call, with an optional rotated refresh token."""
    access_token: str
    access_token_expiry: int = 0
    user: Optional[Dict[str, Any]] = None
    refresh_token: Optional[str] = None
    refresh_token_expiry: Optional[int] = None

    def __post_init__(self):
        if not self.access_token:
            raise ValueError("Access token cannot be empty")
