"""
Auth Coordinator for the BizFlow API client.

This module attaches bearer tokens to outgoing requests and recovers from
access-token expiry with a single-flight refresh: however many requests fail
with 401 at the same time, exactly one refresh call is made, and every held
request is replayed with the new token (or rejected with TokenExpiredError
when the refresh fails).
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, FrozenSet, Iterable, List, Optional

from bizflow_shared.exceptions import ApiError, UnauthorizedError, TokenExpiredError
from bizflow_shared.interfaces import ICredentialStore
from bizflow_shared.logging_config import AuditLogger
from bizflow_shared.models import ApiResponse, RefreshState, RequestDescriptor, TokenPair

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_PATH = '/api/auth/refresh'

DEFAULT_NO_AUTH_PATHS: FrozenSet[str] = frozenset([
    '/api/auth/login',
    '/api/auth/register',
    '/api/auth/signup',
    '/api/auth/forgot-password',
    '/api/auth/reset-password',
    DEFAULT_REFRESH_PATH,
])

SendFunc = Callable[[RequestDescriptor], Awaitable[ApiResponse]]


def normalize_path(path: str) -> str:
    """Strip query string, fragment and trailing slash from a request path."""
    path = path.split('?', 1)[0].split('#', 1)[0]
    if not path.startswith('/'):
        path = '/' + path
    if len(path) > 1:
        path = path.rstrip('/')
    return path


@dataclass
class PendingRequest:
    """A request held while a refresh is in flight, resolved exactly once."""
    request: RequestDescriptor
    future: 'asyncio.Future[ApiResponse]'


class RefreshFailed(Exception):
    """Internal signal: the refresh episode could not produce a new token."""


class AuthCoordinator:
    """
    Token attachment and single-flight refresh for one API client.

    ``send`` must perform the transport call and map failures to ApiError,
    without going back through this coordinator.
    """

    def __init__(
        self,
        credential_store: ICredentialStore,
        send: SendFunc,
        refresh_path: str = DEFAULT_REFRESH_PATH,
        no_auth_paths: Optional[Iterable[str]] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.credential_store = credential_store
        self._send = send
        self.refresh_path = normalize_path(refresh_path)

        paths = set(DEFAULT_NO_AUTH_PATHS if no_auth_paths is None else no_auth_paths)
        paths.add(self.refresh_path)
        self.no_auth_paths: FrozenSet[str] = frozenset(normalize_path(p) for p in paths)

        self._audit = audit_logger or AuditLogger()

        self._state = RefreshState.IDLE
        self._pending: List[PendingRequest] = []
        self._refresh_task: Optional[asyncio.Task] = None
        self._session_epoch = 0

        logger.debug(f"Auth coordinator initialized (refresh path: {self.refresh_path})")

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def refresh_in_progress(self) -> bool:
        return self._state is RefreshState.REFRESHING

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_no_auth_path(self, path: str) -> bool:
        return normalize_path(path) in self.no_auth_paths

    async def prepare_request(self, request: RequestDescriptor) -> RequestDescriptor:
        """
        Pre-request hook: attach the stored access token.

        Requests without a stored token are sent unauthenticated; the server
        decides whether to reject them.
        """
        if self.is_no_auth_path(request.path):
            return request

        access_token = await self.credential_store.get_access_token()
        if access_token:
            request.headers['Authorization'] = f'Bearer {access_token}'
        else:
            logger.debug(f"No access token stored, sending {request.method} {request.path} unauthenticated")

        return request

    async def handle_failure(self, request: RequestDescriptor, error: ApiError) -> ApiResponse:
        """
        Post-response hook for failed requests.

        Returns the replayed response when a refresh recovers the request,
        otherwise raises: the original error when it is not recoverable, or
        TokenExpiredError when the refresh fails.
        """
        if not self._is_recoverable(request, error):
            raise error

        loop = asyncio.get_running_loop()
        pending = PendingRequest(request=request, future=loop.create_future())
        self._pending.append(pending)

        # Check and set happen in one step, with no await in between.
        if self._state is RefreshState.IDLE:
            self._state = RefreshState.REFRESHING
            logger.info(f"Access token rejected for {request.method} {request.path}, starting token refresh")
            self._refresh_task = loop.create_task(self._run_refresh(self._session_epoch))
        else:
            logger.debug(f"Refresh already in progress, queued {request.method} {request.path} "
                         f"({len(self._pending)} pending)")

        # Cancelling this caller cancels only its own future, never the refresh task.
        return await pending.future

    def invalidate_session(self) -> None:
        """
        Mark the current session as ended (logout).

        An in-flight refresh still settles and resolves its pending requests,
        but the tokens it obtains are discarded.
        """
        self._session_epoch += 1
        if self.refresh_in_progress:
            logger.info("Session invalidated while a token refresh is in flight")

    async def wait_idle(self) -> None:
        """Wait for the in-flight refresh episode, if any, to settle."""
        task = self._refresh_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    def _is_recoverable(self, request: RequestDescriptor, error: ApiError) -> bool:
        if not isinstance(error, UnauthorizedError) or error.status_code != 401:
            return False
        if self.is_no_auth_path(request.path):
            return False
        # A retried request that is rejected again must not start another episode.
        return not request.is_retry

    async def _run_refresh(self, epoch: int) -> None:
        try:
            try:
                tokens = await self._refresh_tokens()
            except RefreshFailed as e:
                await self._fail_all(str(e))
                return

            if epoch != self._session_epoch:
                logger.info("Discarding refreshed tokens for an invalidated session")
                self._reject_all("Session ended during token refresh")
                return

            try:
                await self.credential_store.save_tokens(tokens.access_token, tokens.refresh_token)
            except Exception as e:
                await self._fail_all(f"Failed to persist refreshed tokens: {e}")
                return

            if epoch != self._session_epoch:
                # Logout happened while the tokens were being saved.
                await self.credential_store.clear_tokens()
                self._reject_all("Session ended during token refresh")
                return

            logger.info("Token refresh successful, replaying held requests")

            # Requests queued while replay runs are drained with the same token.
            replayed = 0
            while self._pending:
                if epoch != self._session_epoch:
                    logger.info("Session ended during replay, rejecting remaining held requests")
                    self._reject_all("Session ended during token refresh")
                    break
                batch, self._pending = self._pending, []
                replayed += len(batch)
                await asyncio.gather(*(self._replay(entry, tokens.access_token) for entry in batch))

            self._audit.log_token_refresh(True, pending_requests=replayed)

        except asyncio.CancelledError:
            self._reject_all("Token refresh cancelled")
            raise
        except Exception as e:
            logger.exception(f"Unexpected error during token refresh: {e}")
            self._reject_all("Token refresh failed unexpectedly")
        finally:
            self._state = RefreshState.IDLE
            self._refresh_task = None

    async def _refresh_tokens(self) -> TokenPair:
        try:
            refresh_token = await self.credential_store.get_refresh_token()
        except Exception as e:
            raise RefreshFailed(f"Refresh token unavailable: {e}")

        if not refresh_token:
            raise RefreshFailed("No refresh token stored")

        refresh_request = RequestDescriptor(
            method='POST',
            path=self.refresh_path,
            body={'refreshToken': refresh_token}
        )

        try:
            response = await self._send(refresh_request)
        except ApiError as e:
            raise RefreshFailed(f"Refresh request rejected: {e.message}")

        try:
            return TokenPair.from_payload(response.data, fallback_refresh_token=refresh_token)
        except ValueError as e:
            raise RefreshFailed(f"Malformed refresh response: {e}")

    async def _fail_all(self, reason: str) -> None:
        logger.warning(f"Token refresh failed: {reason}")
        try:
            await self.credential_store.clear_tokens()
        except Exception as e:
            logger.error(f"Failed to clear stored tokens: {e}")

        self._audit.log_token_refresh(False, pending_requests=len(self._pending), failure_reason=reason)
        self._audit.log_session_cleared(reason)
        self._reject_all(reason)

    def _reject_all(self, reason: str) -> None:
        batch, self._pending = self._pending, []
        for entry in batch:
            if not entry.future.done():
                entry.future.set_exception(TokenExpiredError(cause=RefreshFailed(reason)))

    async def _replay(self, entry: PendingRequest, access_token: str) -> None:
        if entry.future.done():
            # Caller gave up (cancelled) while waiting.
            return

        try:
            response = await self._send(entry.request.with_bearer(access_token))
        except asyncio.CancelledError:
            entry.future.cancel()
            raise
        except Exception as e:
            # A second 401 surfaces here as UnauthorizedError, a timeout as NetworkError.
            if not entry.future.done():
                entry.future.set_exception(e)
        else:
            if not entry.future.done():
                entry.future.set_result(response)
