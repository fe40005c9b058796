"""
HTTP API Client for the BizFlow API.

This module provides the HTTP client facade used by application code: every
request carries the active tenant and a bearer token, expired access tokens
are refreshed transparently, and every failure surfaces as an ApiError.
"""

import asyncio
import logging
from typing import Optional, Dict, Any, Iterable, List, Tuple, Callable

import aiohttp
from aiohttp import ClientSession, ClientTimeout

from bizflow_shared.exceptions import ApiError, GenericError, TokenStorageError, UnauthorizedError
from bizflow_shared.interfaces import IAPIClient, ICredentialStore, ITenantStore
from bizflow_shared.logging_config import AuditLogger, log_structured_error
from bizflow_shared.models import ApiResponse, RequestDescriptor, TokenPair

from . import __version__
from .auth.coordinator import AuthCoordinator, DEFAULT_REFRESH_PATH
from .auth.token_storage import SecureTokenStorage
from .config import ClientConfiguration
from .error_mapping import decode_body, map_error_response, map_transport_error
from .pagination import PaginatedResponse, PaginationParams
from .tenant import TenantContextInjector, DEFAULT_TENANT_HEADER

logger = logging.getLogger(__name__)

USER_AGENT = f'BizflowClient/{__version__}'

LOGIN_PATH = '/api/auth/login'
LOGOUT_PATH = '/api/auth/logout'
SWITCH_TENANT_PATH = '/api/auth/switch-tenant'


class BizflowAPIClient(IAPIClient):
    """
    HTTP API client for the BizFlow server.

    Requests go through tenant injection and bearer token attachment; a 401
    is handed to the auth coordinator, which refreshes the token once and
    replays the request.
    """

    def __init__(
        self,
        server_url: str,
        credential_store: ICredentialStore,
        tenant_store: Optional[ITenantStore] = None,
        timeout: float = 30.0,
        refresh_path: str = DEFAULT_REFRESH_PATH,
        no_auth_paths: Optional[Iterable[str]] = None,
        tenant_header: str = DEFAULT_TENANT_HEADER,
        session: Optional[ClientSession] = None,
        audit_logger: Optional[AuditLogger] = None
    ):
        self.server_url = server_url.rstrip('/')
        self.timeout = ClientTimeout(total=timeout)
        self.credential_store = credential_store

        if tenant_store is None and isinstance(credential_store, ITenantStore):
            tenant_store = credential_store
        self.tenant_store = tenant_store

        self.audit = audit_logger or AuditLogger()
        self.tenant_injector = TenantContextInjector(tenant_store, header_name=tenant_header)
        self.auth = AuthCoordinator(
            credential_store,
            send=self._send,
            refresh_path=refresh_path,
            no_auth_paths=no_auth_paths,
            audit_logger=self.audit
        )

        self._session = session
        self._owns_session = session is None

        logger.info(f"API client initialized for server: {self.server_url}")

    @classmethod
    def from_config(
        cls,
        config: ClientConfiguration,
        credential_store: Optional[ICredentialStore] = None,
        tenant_store: Optional[ITenantStore] = None,
        **kwargs
    ) -> 'BizflowAPIClient':
        """Build a client (and, unless given, its token storage) from configuration."""
        if credential_store is None:
            credential_store = SecureTokenStorage(
                service_name=config.get_storage_service_name(),
                storage_path=config.get_storage_path()
            )

        return cls(
            server_url=config.get_server_url(),
            credential_store=credential_store,
            tenant_store=tenant_store,
            timeout=config.get_timeout(),
            refresh_path=config.get_refresh_path(),
            no_auth_paths=config.get_no_auth_paths(),
            tenant_header=config.get_tenant_header(),
            **kwargs
        )

    async def __aenter__(self):
        """Async context manager entry."""
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def _ensure_session(self) -> ClientSession:
        """Ensure HTTP session is available."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=10,
                limit_per_host=5,
                keepalive_timeout=30,
                enable_cleanup_closed=True
            )
            self._session = ClientSession(connector=connector, timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session, unless it was supplied by the caller."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    # Request pipeline

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        query: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> ApiResponse:
        """
        Send an API request.

        Args:
            method: HTTP method (GET, POST, PUT, PATCH, DELETE)
            path: API path relative to the server URL
            body: JSON-serializable request body
            query: Query parameters
            headers: Additional request headers

        Returns:
            ApiResponse for any 2xx status

        Raises:
            ApiError: One of the ApiError variants for every failure
        """
        request = RequestDescriptor(method=method, path=path, body=body, query=query, headers=headers or {})
        request = await self.tenant_injector.apply(request)
        request = await self.auth.prepare_request(request)

        try:
            return await self._send(request)
        except UnauthorizedError as e:
            return await self.auth.handle_failure(request, e)

    async def _send(self, request: RequestDescriptor) -> ApiResponse:
        """Perform one HTTP exchange and map any failure to an ApiError."""
        session = await self._ensure_session()
        url = self._build_url(request.path)

        headers = {'User-Agent': USER_AGENT, 'Accept': 'application/json'}
        headers.update(request.headers)

        logger.debug(f"Making {request.method} request to {url}"
                     f"{' (retry after token refresh)' if request.is_retry else ''}")

        try:
            async with session.request(
                method=request.method,
                url=url,
                json=request.body,
                params=self._encode_query(request.query),
                headers=headers,
                timeout=self.timeout
            ) as response:
                raw = await response.read()
                status = response.status
                content_type = response.content_type
                response_headers = dict(response.headers)
                text = self._decode_text(raw, response.charset)

        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as e:
            error = map_transport_error(e, request.method, request.path)
            log_structured_error(logger, error, request.method, request.path)
            raise error

        if 200 <= status < 300:
            return ApiResponse(
                status_code=status,
                data=self._decode_success_body(text, content_type, status),
                headers=response_headers
            )

        error = map_error_response(status, decode_body(text), response_headers)
        log_structured_error(logger, error, request.method, request.path)
        raise error

    def _build_url(self, path: str) -> str:
        return f"{self.server_url}/{path.lstrip('/')}"

    @staticmethod
    def _decode_text(raw: bytes, charset: Optional[str]) -> str:
        """Decode a response body, falling back to UTF-8 for unknown charsets."""
        if not raw:
            return ''
        try:
            return raw.decode(charset or 'utf-8', errors='replace')
        except LookupError:
            logger.debug(f"Unknown response charset {charset!r}, decoding as UTF-8")
            return raw.decode('utf-8', errors='replace')

    @staticmethod
    def _decode_success_body(text: str, content_type: str, status: int) -> Any:
        if not text:
            return None

        if content_type.endswith('json'):
            data = decode_body(text)
            if data is None and text.strip() != 'null':
                raise GenericError("Malformed JSON response", status_code=status)
            return data

        return text

    @staticmethod
    def _encode_query(query: Optional[Dict[str, Any]]) -> Optional[List[Tuple[str, str]]]:
        """Encode query values: booleans as true/false, None dropped, lists repeated."""
        if not query:
            return None

        params: List[Tuple[str, str]] = []
        for key, value in query.items():
            values = value if isinstance(value, (list, tuple)) else [value]
            for item in values:
                if item is None:
                    continue
                if isinstance(item, bool):
                    params.append((key, 'true' if item else 'false'))
                else:
                    params.append((key, str(item)))

        return params or None

    # Session operations

    async def login(self, email: str, password: str, **device_fields: Any) -> TokenPair:
        """
        Log in and persist the returned session.

        Args:
            email: Account email
            password: Account password
            device_fields: Extra fields sent along (e.g. deviceName, platform)

        Returns:
            The stored token pair

        Raises:
            ApiError: If the server rejects the login or answers malformed data
        """
        logger.info(f"Logging in as {email}")

        try:
            response = await self.post(LOGIN_PATH, {'email': email, 'password': password, **device_fields})
        except ApiError as e:
            self.audit.log_authentication(email, success=False, failure_reason=e.message)
            raise

        tokens = self._decode_tokens(response, "login")

        tenant_id = None
        if isinstance(response.data, dict):
            tenant_id = self._extract_tenant_id(response.data.get('currentTenant'))
        await self._persist_session(tokens, tenant_id, "login")

        self.audit.log_authentication(email, success=True, tenant_id=tenant_id)
        logger.info("Login successful")
        return tokens

    async def switch_tenant(self, tenant_id: str) -> TokenPair:
        """
        Switch the session to another tenant.

        The server issues tokens scoped to the new tenant; both the tokens
        and the tenant id are persisted.
        """
        response = await self.post(SWITCH_TENANT_PATH, {'tenantId': tenant_id})
        tokens = self._decode_tokens(response, "tenant switch")

        if isinstance(response.data, dict):
            tenant_id = self._extract_tenant_id(response.data.get('tenant')) or tenant_id
        await self._persist_session(tokens, tenant_id, "tenant switch")

        self.audit.log_tenant_switch(tenant_id)
        return tokens

    async def logout(self) -> None:
        """
        End the session.

        The local session is always cleared; telling the server is best-effort.
        """
        access_token = await self.credential_store.get_access_token()
        refresh_token = await self.credential_store.get_refresh_token()

        # A refresh still in flight must not resurrect this session.
        self.auth.invalidate_session()

        try:
            await self.credential_store.clear_tokens()
            if self.tenant_store is not None:
                await self.tenant_store.clear_tenant_id()
        except TokenStorageError as e:
            raise GenericError(f"Failed to clear stored session: {e.message}", cause=e)
        self.audit.log_session_cleared("logout")

        if not access_token:
            return

        request = RequestDescriptor(
            method='POST',
            path=LOGOUT_PATH,
            body={'refreshToken': refresh_token} if refresh_token else None,
            headers={'Authorization': f'Bearer {access_token}'}
        )
        try:
            await self._send(request)
        except ApiError as e:
            logger.warning(f"Server logout failed, local session cleared anyway: {e.message}")

    async def is_authenticated(self) -> bool:
        """Check whether an access token is stored."""
        return bool(await self.credential_store.get_access_token())

    async def get_paginated(
        self,
        path: str,
        params: Optional[PaginationParams] = None,
        item_factory: Optional[Callable[[Dict[str, Any]], Any]] = None,
        query: Optional[Dict[str, Any]] = None
    ) -> PaginatedResponse:
        """
        Fetch one page of a list endpoint.

        Raises:
            GenericError: If the response does not have the paginated shape
        """
        params = params or PaginationParams()
        merged_query = dict(query or {})
        merged_query.update(params.to_query_params())

        response = await self.get(path, query=merged_query)
        try:
            return PaginatedResponse.from_dict(response.data, item_factory)
        except (ValueError, TypeError, KeyError) as e:
            raise GenericError(f"Malformed paginated response: {e}", status_code=response.status_code, cause=e)

    async def _persist_session(self, tokens: TokenPair, tenant_id: Optional[str], operation: str) -> None:
        """Store tokens (and the tenant, when known); storage failures become GenericError."""
        try:
            await self.credential_store.save_tokens(tokens.access_token, tokens.refresh_token)
            if tenant_id and self.tenant_store is not None:
                await self.tenant_store.set_tenant_id(tenant_id)
        except TokenStorageError as e:
            logger.error(f"Failed to store session after {operation}: {e.message}")
            raise GenericError(f"Failed to store session after {operation}: {e.message}", cause=e)

    @staticmethod
    def _decode_tokens(response: ApiResponse, operation: str) -> TokenPair:
        try:
            return TokenPair.from_payload(response.data)
        except ValueError as e:
            raise GenericError(f"Malformed {operation} response: {e}", status_code=response.status_code, cause=e)

    @staticmethod
    def _extract_tenant_id(tenant: Any) -> Optional[str]:
        if isinstance(tenant, dict):
            tenant = tenant.get('id')
        if isinstance(tenant, (str, int)) and str(tenant).strip():
            return str(tenant).strip()
        return None
