#!/usr/bin/env python3
"""
Unit tests for TokenState.

Tests expiry predicates, cached user identification and conversion to and
from the persisted bundle form.
"""

from idaas_client.auth.token_state import TokenState, USER_ID_FIELDS

NOW = 1_700_000_000


def make_state(**overrides):
    values = {
        'refresh_token': 'rt',
        'refresh_token_expiry': NOW + 100,
        'access_token': 'at',
        'access_token_expiry': NOW + 10,
        'user': None
    }
    values.update(overrides)
    return TokenState(**values)


class TestExpiryPredicates:
    """Test token validity checks."""

    def test_valid_tokens(self):
        state = make_state()

        assert state.has_valid_refresh(NOW) is True
        assert state.has_valid_access(NOW) is True

    def test_expiry_boundary_is_exclusive(self):
        """Test that a token expiring exactly now is expired."""
        state = make_state(refresh_token_expiry=NOW, access_token_expiry=NOW)

        assert state.has_valid_refresh(NOW) is False
        assert state.has_valid_access(NOW) is False
        assert state.has_valid_refresh(NOW - 1) is True
        assert state.has_valid_access(NOW - 1) is True

    def test_never_set_expiry(self):
        state = make_state(refresh_token_expiry=0, access_token_expiry=0)

        assert state.has_valid_refresh(NOW) is False
        assert state.has_valid_access(NOW) is False

    def test_access_requires_refresh_token(self):
        """Test that an access token alone is never valid."""
        state = make_state(refresh_token=None)

        assert state.has_valid_access(NOW) is False

    def test_missing_tokens(self):
        state = TokenState()

        assert state.has_valid_refresh(NOW) is False
        assert state.has_valid_access(NOW) is False
        assert state.is_empty() is True


class TestCachedUser:
    """Test identification of the cached user record."""

    def test_user_id_fields(self):
        assert USER_ID_FIELDS == ('user_id', 'id')

        assert make_state(user={'user_id': 'u-1'}).cached_user_id() == 'u-1'
        assert make_state(user={'id': 42}).cached_user_id() == '42'

    def test_user_without_identifier(self):
        assert make_state(user={'name': 'Test'}).cached_user_id() is None
        assert make_state(user={'id': ''}).cached_user_id() is None
        assert make_state(user=None).cached_user_id() is None


class TestBundleConversion:
    """Test persisted form conversion."""

    def test_to_dict(self):
        state = make_state(user={'id': 'u-1'})

        assert state.to_dict() == {
            'refreshToken': 'rt',
            'refreshTokenExpiry': NOW + 100,
            'accessToken': 'at',
            'accessTokenExpiry': NOW + 10,
            'user': {'id': 'u-1'}
        }

    def test_from_dict(self):
        state = TokenState.from_dict({
            'refreshToken': 'rt',
            'refreshTokenExpiry': str(NOW + 100),
            'accessToken': 'at',
            'accessTokenExpiry': NOW + 10
        })

        assert state == make_state()

    def test_from_empty_dict(self):
        assert TokenState.from_dict(None) == TokenState()
        assert TokenState.from_dict({}) == TokenState()

    def test_from_dict_invalid_expiry(self):
        """Test that unusable expiries read as never set."""
        state = TokenState.from_dict({
            'refreshToken': 'rt',
            'refreshTokenExpiry': 'soon',
            'accessTokenExpiry': True
        })

        assert state.refresh_token_expiry == 0
        assert state.access_token_expiry == 0

    def test_apply_partial_update(self):
        """Test that absent keys are kept and None clears."""
        state = make_state(user={'id': 'u-1'})

        updated = state.apply({'accessToken': 'at-2', 'user': None})

        assert updated.access_token == 'at-2'
        assert updated.refresh_token == 'rt'
        assert updated.user is None
        assert state.access_token == 'at'
        assert state.user == {'id': 'u-1'}

    def test_copy_is_independent(self):
        state = make_state(user={'id': 'u-1', 'roles': ['admin']})

        copied = state.copy()
        copied.user['roles'].append('owner')

        assert state.user == {'id': 'u-1', 'roles': ['admin']}

    def test_repr_hides_tokens(self):
        state = make_state(refresh_token='secret-refresh', access_token='secret-access')

        text = repr(state)

        assert 'secret-refresh' not in text
        assert 'secret-access' not in text
