"""
HTTP API Client for the IDaaS session client.

This module talks to the identity service: authentication, captcha and single
sign-on challenges, access token refresh, revocation and profile lookup. Network
failures are retried with exponential backoff; HTTP error statuses never are.
"""

import asyncio
import json
import random
import logging
from typing import Optional, Dict, Any, Tuple

import aiohttp
from aiohttp import ClientSession, ClientTimeout, ClientError
from jose import jwt, JWTError

from idaas_shared.exceptions import AuthenticationError, NetworkError, ErrorCode
from idaas_shared.interfaces import IAuthClient
from idaas_shared.models import AuthResponse, RefreshResponse, SSOStatus

logger = logging.getLogger(__name__)


REFRESH_TOKEN_HEADER = 'x-refresh-token'
ACCESS_TOKEN_HEADER = 'x-access-token'
CAPTCHA_TOKEN_HEADER = 'x-captcha-token'
CAPTCHA_CODE_HEADER = 'x-captcha-code'


class RetryConfig:
    """Configuration for retry logic."""

    def __init__(
        self,
        max_retries: int = 2,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def delay_for(self, attempt: int) -> float:
        """Upper bound of the backoff delay after the given failed attempt."""
        return min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)


def token_expiry(token: Optional[str], explicit: Any = None) -> int:
    """
    Expiry of a token in epoch seconds.

    Uses the expiry the server sent alongside the token; when there is none,
    falls back to the token's own JWT claims (read without verification).
    Returns 0 when neither is available.
    """
    if explicit is not None and not isinstance(explicit, bool):
        try:
            value = int(explicit)
            if value > 0:
                return value
        except (TypeError, ValueError):
            logger.warning(f"Ignoring malformed token expiry: {explicit!r}")

    if not token:
        return 0

    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError:
        return 0

    for claim in ('exp', 'expires_at'):
        if claims.get(claim):
            try:
                return int(claims[claim])
            except (TypeError, ValueError):
                continue
    return 0


class IDaaSAPIClient(IAuthClient):
    """
    HTTP client for the identity service.

    Endpoint addresses are built as https://{domain}/{api_version}/{name}. The
    domain may carry an explicit scheme (e.g. http://localhost:8080) for local
    development.
    """

    def __init__(
        self,
        domain: str,
        api_version: str = 'v1',
        timeout: float = 30.0,
        retry_config: Optional[RetryConfig] = None,
        verify_ssl: bool = True
    ):
        self.domain = domain.rstrip('/')
        self.api_version = api_version.strip('/')
        self.timeout_seconds = timeout
        self.timeout = ClientTimeout(total=timeout)
        self.retry_config = retry_config or RetryConfig()
        self.verify_ssl = verify_ssl

        self._session: Optional[ClientSession] = None

        logger.info(f"API client initialized for identity service: {self.domain}")

    @classmethod
    def from_config(cls, config) -> 'IDaaSAPIClient':
        """Build a client from a ClientConfiguration."""
        return cls(
            domain=config.get_domain(),
            api_version=config.get_api_version(),
            timeout=config.get_server_timeout(),
            retry_config=RetryConfig(
                max_retries=config.get_retry_attempts(),
                base_delay=config.get_retry_delay()
            ),
            verify_ssl=config.get_verify_ssl()
        )

    async def __aenter__(self):
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    @property
    def timeout_budget(self) -> float:
        attempts = self.retry_config.max_retries + 1
        backoff = sum(self.retry_config.delay_for(attempt) for attempt in range(self.retry_config.max_retries))
        return self.timeout_seconds * attempts + backoff

    def uri(self, name: str) -> str:
        """Address of a named endpoint."""
        if self.domain.startswith(('http://', 'https://')):
            base = self.domain
        else:
            base = f"https://{self.domain}"
        return f"{base}/{self.api_version}/{name.lstrip('/')}"

    async def _ensure_session(self) -> None:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector_options = {} if self.verify_ssl else {'ssl': False}
            connector = aiohttp.TCPConnector(
                limit=10,
                keepalive_timeout=30,
                **connector_options
            )
            self._session = ClientSession(
                connector=connector,
                timeout=self.timeout,
                headers={
                    'User-Agent': 'IDaaSSessionClient/1.0',
                    'Accept': 'application/json'
                }
            )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        retry: bool = True
    ) -> Tuple[int, Dict[str, Any]]:
        """
        Make HTTP request with retry logic and error handling.

        Args:
            method: HTTP method (GET, POST, DELETE)
            endpoint: Endpoint name, e.g. 'auth'
            data: JSON request body
            params: Query parameters; None values are dropped
            headers: Extra request headers
            retry: Whether to retry on network failure

        Returns:
            HTTP status and decoded JSON body of a 2xx response

        Raises:
            AuthenticationError: On a non-2xx response
            NetworkError: When the request could not be completed
        """
        await self._ensure_session()

        url = self.uri(endpoint)
        if params:
            params = {key: value for key, value in params.items() if value is not None}

        attempt = 0
        max_attempts = self.retry_config.max_retries if retry else 0
        last_exception: Optional[BaseException] = None

        while attempt <= max_attempts:
            try:
                logger.debug(f"Making {method} request to {url} (attempt {attempt + 1})")

                async with self._session.request(
                    method=method,
                    url=url,
                    json=data,
                    params=params or None,
                    headers=headers
                ) as response:
                    if 200 <= response.status < 300:
                        return response.status, await self._read_json(response)

                    error_data = await self._get_error_response(response)
                    detail = error_data.get('detail') or error_data.get('message') or 'Request rejected'
                    raise AuthenticationError(
                        f"{method} {endpoint} failed ({response.status}): {detail}",
                        status_code=response.status,
                        context={'endpoint': endpoint}
                    )

            except (ClientError, asyncio.TimeoutError, OSError) as e:
                last_exception = e
                logger.warning(f"Network error on attempt {attempt + 1} for {endpoint}: {e!r}")

                # Certificate problems do not go away on retry
                if attempt >= max_attempts or isinstance(e, aiohttp.ClientSSLError):
                    break

                delay = self.retry_config.delay_for(attempt)
                if self.retry_config.jitter:
                    delay *= (0.5 + random.random() * 0.5)

                logger.info(f"Retrying in {delay:.1f} seconds...")
                await asyncio.sleep(delay)
                attempt += 1

        if isinstance(last_exception, asyncio.TimeoutError):
            error_code = ErrorCode.NETWORK_TIMEOUT
        elif isinstance(last_exception, aiohttp.ClientSSLError):
            error_code = ErrorCode.NETWORK_SSL_ERROR
        else:
            error_code = ErrorCode.NETWORK_CONNECTION_FAILED
        raise NetworkError(
            f"{method} {endpoint} failed after {attempt + 1} attempts: {last_exception!r}",
            error_code=error_code,
            context={'endpoint': endpoint},
            cause=last_exception if isinstance(last_exception, Exception) else None
        )

    async def _read_json(self, response) -> Dict[str, Any]:
        """Decode a JSON body; empty bodies decode to an empty dict."""
        text = await response.text()
        if not text.strip():
            return {}
        try:
            body = json.loads(text)
        except json.JSONDecodeError as e:
            raise NetworkError(
                f"Identity service returned invalid JSON: {e}",
                error_code=ErrorCode.NETWORK_INVALID_RESPONSE,
                cause=e
            )
        return body if isinstance(body, dict) else {'data': body}

    async def _get_error_response(self, response) -> Dict[str, Any]:
        """Extract error information from response."""
        try:
            body = await response.json(content_type=None)
            if isinstance(body, dict):
                return body
        except (ValueError, ClientError):
            pass
        try:
            return {"detail": await response.text() or "Unknown error"}
        except ClientError:
            return {"detail": "Unknown error"}

    @staticmethod
    def _payload(body: Dict[str, Any], endpoint: str) -> Dict[str, Any]:
        """Unwrap the {'data': ...} envelope of a success response."""
        payload = body.get('data')
        if not isinstance(payload, dict):
            raise AuthenticationError(
                f"Response from {endpoint} has no data object",
                error_code=ErrorCode.AUTH_MALFORMED_RESPONSE,
                context={'endpoint': endpoint}
            )
        return payload

    async def authenticate(
        self,
        email: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None
    ) -> AuthResponse:
        """
        Exchange identity credentials for a token pair.

        Raises:
            AuthenticationError: On rejection or a response without a refresh token
            NetworkError: On transport failure
        """
        logger.info(f"Authenticating against {self.domain}")

        credentials = {'email': email, 'username': username, 'password': password}
        _, body = await self._make_request(
            method='POST',
            endpoint='auth',
            data={key: value for key, value in credentials.items() if value is not None}
        )
        payload = self._payload(body, 'auth')

        refresh_token = payload.get('refreshToken')
        if not refresh_token:
            raise AuthenticationError(
                "Authentication response did not include a refresh token",
                error_code=ErrorCode.AUTH_MALFORMED_RESPONSE
            )

        access_token = payload.get('accessToken') or None
        return AuthResponse(
            refresh_token=refresh_token,
            access_token=access_token,
            refresh_token_expiry=token_expiry(refresh_token, payload.get('refreshTokenExpiry')),
            access_token_expiry=token_expiry(access_token, payload.get('accessTokenExpiry')),
            user=payload.get('user')
        )

    async def obtain_captcha(self) -> Dict[str, Any]:
        """Request a captcha challenge; the payload is returned unchanged."""
        _, body = await self._make_request(method='GET', endpoint='captcha')
        return self._payload(body, 'captcha')

    async def start_challenge(
        self,
        captcha_token: str,
        captcha_code: str,
        email: Optional[str] = None,
        phone: Optional[str] = None
    ) -> SSOStatus:
        """
        Start a single sign-on challenge.

        Error statuses are classified rather than raised; only transport
        failures raise. The request is never retried.

        Raises:
            NetworkError: On transport failure
        """
        try:
            status, _ = await self._make_request(
                method='GET',
                endpoint='sso',
                params={'email': email, 'phone': phone},
                headers={
                    CAPTCHA_TOKEN_HEADER: captcha_token,
                    CAPTCHA_CODE_HEADER: captcha_code
                },
                retry=False
            )
        except AuthenticationError as e:
            return SSOStatus.from_status_code(e.status_code or 0)

        return SSOStatus.from_status_code(status)

    async def refresh(self, refresh_token: str) -> RefreshResponse:
        """
        Obtain a new access token.

        Raises:
            AuthenticationError: On rejection or a response without an access token
            NetworkError: On transport failure
        """
        try:
            status, body = await self._make_request(
                method='GET',
                endpoint='auth',
                headers={REFRESH_TOKEN_HEADER: refresh_token}
            )
        except AuthenticationError as e:
            raise AuthenticationError(
                f"Refresh token rejected: {e.message}",
                error_code=ErrorCode.AUTH_REFRESH_REJECTED,
                status_code=e.status_code,
                cause=e
            )
        payload = self._payload(body, 'auth')

        access_token = payload.get('accessToken')
        if not access_token:
            raise AuthenticationError(
                "Refresh response did not include an access token",
                error_code=ErrorCode.AUTH_MALFORMED_RESPONSE,
                status_code=status
            )

        rotated = payload.get('refreshToken') or None
        return RefreshResponse(
            access_token=access_token,
            access_token_expiry=token_expiry(access_token, payload.get('expiry')),
            user=payload.get('user'),
            refresh_token=rotated,
            refresh_token_expiry=token_expiry(rotated, payload.get('refreshTokenExpiry')) if rotated else None
        )

    async def revoke(self, refresh_token: str) -> bool:
        """
        Invalidate a refresh token.

        Raises:
            AuthenticationError: On rejection
            NetworkError: On transport failure
        """
        await self._make_request(
            method='DELETE',
            endpoint='auth',
            headers={REFRESH_TOKEN_HEADER: refresh_token},
            retry=False
        )
        return True

    async def fetch_profile(self, access_token: str) -> Dict[str, Any]:
        """
        Fetch the authenticated user's profile.

        Raises:
            AuthenticationError: On rejection or malformed response
            NetworkError: On transport failure
        """
        _, body = await self._make_request(
            method='GET',
            endpoint='user',
            headers={ACCESS_TOKEN_HEADER: access_token}
        )
        return self._payload(body, 'user')
