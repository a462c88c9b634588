"""
Session Manager for the IDaaS session client.

This module owns the credential bundle: it loads it from secure storage,
renews the access token when it expires (one remote refresh at a time, shared
by every caller waiting on it), persists every change before adopting it, and
reports unrecoverable sessions through a single deauthorization handler.
"""

import asyncio
import inspect
import logging
from typing import Optional, Dict, Any, Callable, Union, Awaitable, TypeVar

from idaas_client.auth.token_state import (
    TokenState, Clock, default_clock,
    REFRESH_TOKEN, REFRESH_TOKEN_EXPIRY, ACCESS_TOKEN, ACCESS_TOKEN_EXPIRY, USER
)
from idaas_shared.exceptions import (
    AuthenticationError, NetworkError, StorageError, ValidationError, ErrorCode, handle_exception
)
from idaas_shared.interfaces import IAuthClient, ISecureStore
from idaas_shared.logging_config import AuditLogger, AuditEventType, log_structured_error, redact_token
from idaas_shared.models import DeauthEvent, DeauthReason, SSOStatus

logger = logging.getLogger(__name__)

T = TypeVar('T')

DeauthHandler = Callable[[DeauthEvent], Any]
AuthenticatedAction = Callable[[Optional[str]], Union[T, Awaitable[T]]]


class SessionManager:
    """
    Manages the refresh/access token pair of one identity-service session.

    All public coroutines must run on the same event loop. Any of them may be
    called before init(); they wait for the stored bundle to be loaded first.
    Expected failures (transport errors, rejections, storage errors) are
    reported as False or an SSOStatus, never raised. Only caller mistakes
    such as missing credentials raise ValidationError.
    """

    def __init__(
        self,
        auth_client: IAuthClient,
        token_store: ISecureStore,
        clock: Clock = default_clock,
        deauth_handler: Optional[DeauthHandler] = None,
        refresh_timeout: Optional[float] = None,
        domain: Optional[str] = None
    ):
        self.auth_client = auth_client
        self.token_store = token_store
        self.clock = clock
        self.refresh_timeout = refresh_timeout if refresh_timeout is not None else auth_client.timeout_budget
        self.domain = domain or getattr(auth_client, 'domain', None)

        self._state = TokenState()
        self._deauth_handler: Optional[DeauthHandler] = deauth_handler
        self._captcha_token: Optional[str] = None

        self._initialized = False
        self._init_lock = asyncio.Lock()
        # Serializes persist-then-adopt sequences
        self._mutation_lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task] = None

        self.audit = AuditLogger()

        logger.info("Session manager created")

    @classmethod
    def from_config(
        cls,
        config,
        deauth_handler: Optional[DeauthHandler] = None,
        clock: Clock = default_clock
    ) -> 'SessionManager':
        """Build a manager with the transport and store a ClientConfiguration selects."""
        from idaas_client.api_client import IDaaSAPIClient
        from idaas_client.auth.token_storage import SecureTokenStorage

        return cls(
            auth_client=IDaaSAPIClient.from_config(config),
            token_store=SecureTokenStorage.from_config(config),
            clock=clock,
            deauth_handler=deauth_handler
        )

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        """Release the transport."""
        await self.auth_client.close()

    # State

    async def init(self) -> bool:
        """
        Load the stored credential bundle.

        An empty store yields an empty session. Calling init() again after a
        successful load is a no-op.

        Returns:
            False if the store could not be read; a later call retries
        """
        if self._initialized:
            return True

        async with self._init_lock:
            if self._initialized:
                return True

            try:
                stored = await self.token_store.load()
            except StorageError as e:
                log_structured_error(logger, e, domain=self.domain)
                return False

            self._state = TokenState.from_dict(stored)
            self._initialized = True

            logger.info(f"Session initialized: {self._state!r}")
            return True

    def snapshot(self) -> TokenState:
        """Copy of the in-memory credential bundle."""
        return self._state.copy()

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    def set_deauth_handler(self, handler: Optional[DeauthHandler]) -> None:
        """
        Register the callback run when the session becomes unrecoverable.

        Replaces any previous handler; None unregisters. The handler is called
        synchronously with a DeauthEvent and must not block.
        """
        self._deauth_handler = handler

    def _notify_deauth(self, event: DeauthEvent) -> None:
        logger.warning(f"Session deauthorized: {event.reason.value}")
        self.audit.log_deauthorization(self.domain, event.reason.value, event.status_code)

        handler = self._deauth_handler
        if handler is None:
            return
        try:
            handler(event)
        except Exception as e:
            logger.error(f"Error in deauth handler: {e}")

    async def _persist(self, values: Dict[str, Any]) -> bool:
        try:
            await self.token_store.save(values)
            return True
        except StorageError as e:
            log_structured_error(logger, e, domain=self.domain)
            return False

    # Queries

    async def is_authenticated(self) -> bool:
        """
        Whether the session can make authenticated calls.

        Note that this is not a pure query: when the refresh token is valid
        but the access token has expired, it performs a renewal (a network
        call) and reports whether that renewal succeeded.
        """
        if not await self.init():
            return False

        now = self.clock()
        if not self._state.has_valid_refresh(now):
            return False

        if self._state.has_valid_access(now):
            return True

        return await self.ensure_access_token()

    # Authentication

    async def login(
        self,
        email: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None
    ) -> bool:
        """
        Authenticate with identity credentials and adopt the issued tokens.

        Args:
            email: Account email (email or username required)
            username: Account username
            password: Account password

        Returns:
            True if the session was established and persisted

        Raises:
            ValidationError: If no identifier or no password is given
        """
        if not email and not username:
            raise ValidationError(
                "An email or username is required to log in",
                field_name='email',
                error_code=ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD
            )
        if not password:
            raise ValidationError(
                "A password is required to log in",
                field_name='password',
                error_code=ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD
            )

        if not await self.init():
            logger.warning("Stored session could not be loaded; a successful login will replace it")

        try:
            response = await self.auth_client.authenticate(email=email, username=username, password=password)
        except (AuthenticationError, NetworkError) as e:
            logger.warning(f"Login failed: {e.message}")
            self.audit.log_authentication(self.domain, success=False, failure_reason=e.error_code.value)
            return False

        state = TokenState(
            refresh_token=response.refresh_token,
            refresh_token_expiry=response.refresh_token_expiry,
            access_token=response.access_token,
            access_token_expiry=response.access_token_expiry,
            user=response.user
        )

        async with self._mutation_lock:
            if not await self._persist(state.to_dict()):
                self.audit.log_authentication(
                    self.domain, success=False, failure_reason=ErrorCode.STORAGE_WRITE_FAILED.value
                )
                return False
            self._state = state
            self._initialized = True
            # A refresh still running belongs to the previous session
            self._refresh_task = None

        self.audit.log_authentication(self.domain, success=True, user_id=state.cached_user_id())
        logger.info("Login successful")
        return True

    async def obtain_captcha(self) -> Union[Dict[str, Any], bool]:
        """
        Fetch a captcha challenge for single sign-on.

        The challenge's token is kept for the next start_sso() call.

        Returns:
            The challenge data to present to the user, or False on failure
        """
        try:
            challenge = await self.auth_client.obtain_captcha()
        except (AuthenticationError, NetworkError) as e:
            logger.warning(f"Failed to obtain captcha: {e.message}")
            return False

        token = challenge.get('captchaToken') or challenge.get('token')
        if not token:
            logger.warning("Captcha response did not include a captcha token")
            return False

        self._captcha_token = token
        return challenge

    async def start_sso(
        self,
        captcha_code: str,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        captcha_token: Optional[str] = None
    ) -> Union[SSOStatus, bool]:
        """
        Start a single sign-on challenge for an email address or phone number.

        Args:
            captcha_code: The user's answer to the captcha
            email: Email identifier (exactly one of email or phone)
            phone: Phone identifier
            captcha_token: Token of the captcha being answered; defaults to
                the one kept by obtain_captcha()

        Returns:
            False without a captcha token (no request is made), otherwise the
            SSOStatus of the challenge. Session state is never changed.

        Raises:
            ValidationError: Unless exactly one of email or phone is given
        """
        if bool(email) == bool(phone):
            raise ValidationError(
                "Exactly one of email or phone is required for single sign-on",
                field_name='email',
                error_code=ErrorCode.VALIDATION_MISSING_REQUIRED_FIELD
            )

        token = captcha_token or self._captcha_token
        if not token:
            logger.warning("Single sign-on requested without a captcha token")
            return False

        try:
            status = await self.auth_client.start_challenge(token, captcha_code, email=email, phone=phone)
        except NetworkError as e:
            logger.warning(f"Single sign-on challenge failed: {e.message}")
            status = SSOStatus.TRANSPORT_FAILURE

        self.audit.log_event(
            event_type=AuditEventType.SSO_CHALLENGE,
            message=f"Single sign-on challenge: {status.value}",
            domain=self.domain,
            result=status.value,
            additional_context={'channel': 'email' if email else 'phone'}
        )
        return status

    # Renewal

    async def ensure_access_token(self, force: bool = False) -> bool:
        """
        Make sure a valid access token is held, renewing it if needed.

        Concurrent callers share one in-flight refresh and all receive its
        outcome. A rejected or failed refresh is final for the session: the
        deauth handler is notified and no retry is attempted.

        Args:
            force: Renew even if the current access token is still valid

        Returns:
            True if a valid access token is held afterwards
        """
        if not await self.init():
            return False

        if not self._state.refresh_token:
            self._notify_deauth(DeauthEvent(DeauthReason.NO_REFRESH_TOKEN))
            return False

        # No await between this check and the task assignment
        task = self._refresh_task
        if task is None:
            if not force and self._state.has_valid_access(self.clock()):
                return True

            task = asyncio.get_running_loop().create_task(self._refresh(self._state.refresh_token))
            task.add_done_callback(self._on_refresh_done)
            self._refresh_task = task
        else:
            logger.debug("Joining in-flight access token refresh")

        try:
            # A waiter timing out leaves the refresh running
            return await asyncio.wait_for(asyncio.shield(task), timeout=self.refresh_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Access token refresh did not finish within {self.refresh_timeout:.1f}s")
            return False

    def _on_refresh_done(self, task: asyncio.Task) -> None:
        # Runs before any waiter resumes
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled() and task.exception() is not None:
            error = handle_exception(task.exception(), context={'operation': 'token_refresh'})
            log_structured_error(logger, error, domain=self.domain)
            self.audit.log_error(error, domain=self.domain)

    async def _refresh(self, refresh_token: str) -> bool:
        logger.debug(f"Refreshing access token with refresh token {redact_token(refresh_token)}")
        try:
            response = await self.auth_client.refresh(refresh_token)
        except AuthenticationError as e:
            logger.warning(f"Access token refresh rejected: {e.message}")
            self.audit.log_token_refresh(self.domain, success=False, failure_reason=e.error_code.value)
            if self._state.refresh_token == refresh_token:
                self._notify_deauth(DeauthEvent(
                    DeauthReason.REFRESH_REJECTED, status_code=e.status_code, detail=e.message
                ))
            return False
        except NetworkError as e:
            logger.warning(f"Access token refresh failed: {e.message}")
            self.audit.log_token_refresh(self.domain, success=False, failure_reason=e.error_code.value)
            if self._state.refresh_token == refresh_token:
                self._notify_deauth(DeauthEvent(DeauthReason.REFRESH_FAILED, detail=e.message))
            return False

        values: Dict[str, Any] = {
            ACCESS_TOKEN: response.access_token,
            ACCESS_TOKEN_EXPIRY: response.access_token_expiry
        }
        if response.user is not None:
            values[USER] = response.user
        if response.refresh_token:
            values[REFRESH_TOKEN] = response.refresh_token
            if response.refresh_token_expiry:
                values[REFRESH_TOKEN_EXPIRY] = response.refresh_token_expiry

        async with self._mutation_lock:
            if self._state.refresh_token != refresh_token:
                logger.info("Session changed during refresh; discarding the new access token")
                return False

            if not await self._persist(values):
                return False
            self._state = self._state.apply(values)

        self.audit.log_token_refresh(self.domain, success=True, expires_at=response.access_token_expiry)
        logger.info("Access token refreshed")
        return True

    # Deauthorization

    async def logout(self) -> bool:
        """
        End the session locally and revoke the refresh token remotely.

        Stored credentials are cleared before the revocation is attempted, so
        an interrupted logout never leaves them behind. The revocation is best
        effort and does not affect the result.

        Returns:
            False if there was no session or the store could not be cleared
        """
        if not await self.init():
            return False

        async with self._mutation_lock:
            refresh_token = self._state.refresh_token
            if not refresh_token:
                return False

            try:
                await self.token_store.clear()
            except StorageError as e:
                log_structured_error(logger, e, domain=self.domain)
                return False

            self._state = TokenState()
            self._captcha_token = None
            self._refresh_task = None

        revoked = False
        try:
            revoked = await asyncio.wait_for(self.auth_client.revoke(refresh_token), timeout=self.refresh_timeout)
        except (AuthenticationError, NetworkError) as e:
            logger.warning(f"Remote revocation failed: {e.message}")
        except asyncio.TimeoutError:
            logger.warning("Remote revocation timed out")

        self.audit.log_logout(self.domain, revoked=bool(revoked))
        logger.info("Logged out")
        return True

    # Authenticated calls

    async def run_authenticated(self, action: AuthenticatedAction) -> Optional[T]:
        """
        Run an action with the current access token, renewing it first if expired.

        The action receives the access token even if renewal failed, and must
        handle a rejected token itself; it is not retried.

        Returns:
            The action's result (awaited if awaitable), or None if the session
            is not renewable, in which case the deauth handler was notified
            and the action was not called
        """
        if not await self.init():
            return None

        now = self.clock()
        if not self._state.has_valid_refresh(now):
            reason = (
                DeauthReason.REFRESH_TOKEN_EXPIRED if self._state.refresh_token
                else DeauthReason.NO_REFRESH_TOKEN
            )
            self._notify_deauth(DeauthEvent(reason))
            return None

        if not self._state.has_valid_access(now):
            await self.ensure_access_token()

        result = action(self._state.access_token)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def fetch_user(self, force_remote: bool = False) -> Union[Dict[str, Any], bool]:
        """
        Get the profile of the authenticated user.

        Args:
            force_remote: Skip the cached profile

        Returns:
            The user record, or False when not authenticated or the profile
            could not be fetched (use is_authenticated() to tell them apart)
        """
        if not await self.is_authenticated():
            return False

        if not force_remote and self._state.cached_user_id():
            return self.snapshot().user

        refresh_token = self._state.refresh_token
        try:
            user = await self.auth_client.fetch_profile(self._state.access_token)
        except (AuthenticationError, NetworkError) as e:
            logger.warning(f"Failed to fetch user profile: {e.message}")
            return False

        async with self._mutation_lock:
            if self._state.refresh_token != refresh_token:
                logger.info("Session changed while fetching the profile; discarding it")
                return False

            if not await self._persist({USER: user}):
                return False
            self._state = self._state.apply({USER: user})

        return self.snapshot().user
