"""
Integration tests for the BizFlow API client.

These tests run the client against a local aiohttp server that imitates
the BizFlow API: protected routes, token refresh, login and tenant switch.
"""

import asyncio
from typing import Any, Dict, List

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer, unused_port

from bizflow_client.api_client import BizflowAPIClient, USER_AGENT
from bizflow_client.pagination import PaginationParams
from bizflow_shared.exceptions import (
    ErrorCode, GenericError, NetworkError, NotFoundError, RateLimitError,
    ServerError, TokenExpiredError, TokenStorageError, UnauthorizedError, ValidationError
)

from conftest import InMemorySessionStore


class FakeBizflowServer:
    """Minimal BizFlow API imitation recording what it receives."""

    def __init__(self):
        self.valid_tokens = {"valid"}
        self.refresh_delay = 0.1
        self.refresh_ok = True
        self.refresh_calls = 0
        self.logout_calls: List[Dict[str, Any]] = []
        self.seen: List[Dict[str, Any]] = []
        self.url = ""

    def make_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/api/auth/refresh", self.refresh)
        app.router.add_post("/api/auth/login", self.login)
        app.router.add_post("/api/auth/logout", self.logout)
        app.router.add_post("/api/auth/switch-tenant", self.switch_tenant)
        app.router.add_get("/api/customers", self.customers)
        app.router.add_get("/api/text", self.text)
        app.router.add_get("/api/slow", self.slow)
        app.router.add_get("/api/status/{code}", self.status)
        app.router.add_get("/api/bogus-charset/{code}", self.bogus_charset)
        app.router.add_route("*", "/{name}", self.protected)
        return app

    def _record(self, request: web.Request) -> None:
        self.seen.append({
            "path": request.path,
            "authorization": request.headers.get("Authorization"),
            "tenant": request.headers.get("X-Tenant-ID"),
            "user_agent": request.headers.get("User-Agent"),
            "query": list(request.query.items()),
        })

    def _authorized(self, request: web.Request) -> bool:
        auth = request.headers.get("Authorization", "")
        return auth.startswith("Bearer ") and auth[len("Bearer "):] in self.valid_tokens

    @staticmethod
    def _expired() -> web.Response:
        return web.json_response({"error": "TOKEN_EXPIRED", "message": "Access token expired"}, status=401)

    async def protected(self, request: web.Request) -> web.Response:
        self._record(request)
        if not self._authorized(request):
            return self._expired()
        return web.json_response({"name": request.match_info["name"]})

    async def refresh(self, request: web.Request) -> web.Response:
        self.refresh_calls += 1
        body = await request.json()
        await asyncio.sleep(self.refresh_delay)
        if not self.refresh_ok or body.get("refreshToken") != "r1":
            return web.json_response({"error": "INVALID_REFRESH_TOKEN", "message": "Invalid refresh token"},
                                     status=401)
        return web.json_response({"tokens": {"accessToken": "valid", "refreshToken": "r2"}})

    async def login(self, request: web.Request) -> web.Response:
        self._record(request)
        body = await request.json()
        if body.get("password") != "secret":
            return web.json_response({"error": "INVALID_CREDENTIALS", "message": "Invalid email or password"},
                                     status=401)
        return web.json_response({
            "user": {"id": "u-1", "email": body["email"]},
            "tenants": [{"id": "t-9", "name": "Acme"}],
            "currentTenant": {"id": "t-9", "name": "Acme"},
            "tokens": {"accessToken": "valid", "refreshToken": "r1"},
        })

    async def logout(self, request: web.Request) -> web.Response:
        self.logout_calls.append({
            "authorization": request.headers.get("Authorization"),
            "body": await request.json() if request.can_read_body else None,
        })
        return web.json_response({"message": "Logged out"})

    async def switch_tenant(self, request: web.Request) -> web.Response:
        self._record(request)
        if not self._authorized(request):
            return self._expired()
        body = await request.json()
        self.valid_tokens.add("valid-2")
        return web.json_response({
            "tenant": {"id": body["tenantId"], "name": "Other"},
            "tokens": {"accessToken": "valid-2", "refreshToken": "r1"},
        })

    async def customers(self, request: web.Request) -> web.Response:
        self._record(request)
        if request.query.get("malformed") == "true":
            return web.json_response({"items": []})
        page = int(request.query.get("page", "1"))
        return web.json_response({
            "data": [{"id": 1, "name": "Acme"}, {"id": 2, "name": "Globex"}],
            "pagination": {"page": page, "limit": 2, "total": 5, "totalPages": 3},
        })

    async def text(self, request: web.Request) -> web.Response:
        return web.Response(text="pong")

    async def slow(self, request: web.Request) -> web.Response:
        self._record(request)
        if not self._authorized(request):
            return self._expired()
        await asyncio.sleep(2)
        return web.json_response({"slow": True})

    async def bogus_charset(self, request: web.Request) -> web.Response:
        code = int(request.match_info["code"])
        body = b'{"x": 1}' if code == 200 else b'{"message": "Customer not found"}'
        return web.Response(body=body, status=code,
                            headers={"Content-Type": "application/json; charset=bogus-xyz"})

    async def status(self, request: web.Request) -> web.Response:
        code = int(request.match_info["code"])
        if code == 422:
            return web.json_response({
                "error": "VALIDATION_ERROR",
                "message": "Validation failed",
                "errors": {"email": "Invalid email", "name": ["Required", "Too short"]},
            }, status=422)
        if code == 429:
            return web.json_response({"error": "RATE_LIMIT_EXCEEDED", "message": "Slow down", "retryAfter": 60},
                                     status=429, headers={"Retry-After": "30"})
        if code == 500:
            return web.Response(text="<html>boom</html>", status=500, content_type="text/html")
        return web.json_response({"message": f"Status {code}"}, status=code)


@pytest_asyncio.fixture
async def server():
    backend = FakeBizflowServer()
    test_server = TestServer(backend.make_app())
    await test_server.start_server()
    backend.url = f"http://{test_server.host}:{test_server.port}"
    yield backend
    await test_server.close()


@pytest_asyncio.fixture
async def client(server, expired_session):
    api_client = BizflowAPIClient(server.url, expired_session, timeout=5.0)
    yield api_client
    await api_client.close()


class TestRequestHeaders:
    """Test headers attached to outgoing requests."""

    @pytest.mark.asyncio
    async def test_tenant_and_bearer_headers(self, client, server, expired_session):
        expired_session.access_token = "valid"

        response = await client.get("/a")

        assert response.status_code == 200
        assert response.data == {"name": "a"}
        assert server.seen[0]["authorization"] == "Bearer valid"
        assert server.seen[0]["tenant"] == "t-1"
        assert server.seen[0]["user_agent"] == USER_AGENT

    @pytest.mark.asyncio
    async def test_tenant_header_omitted_without_tenant(self, client, server, expired_session):
        expired_session.access_token = "valid"
        expired_session.tenant_id = "   "

        await client.get("/a")

        assert server.seen[0]["tenant"] is None

    @pytest.mark.asyncio
    async def test_tenant_change_applies_to_next_request(self, client, server, expired_session):
        expired_session.access_token = "valid"

        await client.get("/a")
        await expired_session.set_tenant_id("t-2")
        await client.get("/b")

        assert [s["tenant"] for s in server.seen] == ["t-1", "t-2"]

    @pytest.mark.asyncio
    async def test_query_encoding(self, client, server, expired_session):
        expired_session.access_token = "valid"

        await client.get("/a", query={"active": True, "archived": False, "search": None,
                                      "page": 2, "tag": ["x", "y"]})

        assert server.seen[0]["query"] == [
            ("active", "true"), ("archived", "false"), ("page", "2"), ("tag", "x"), ("tag", "y")
        ]


class TestTokenRefresh:
    """Test transparent refresh against the server."""

    @pytest.mark.asyncio
    async def test_concurrent_expired_requests_refresh_once(self, client, server, expired_session):
        """Test /a /b /c with an expired token: one refresh, three successes."""
        responses = await asyncio.gather(client.get("/a"), client.get("/b"), client.get("/c"))

        assert [r.data["name"] for r in responses] == ["a", "b", "c"]
        assert server.refresh_calls == 1
        assert expired_session.access_token == "valid"
        assert expired_session.refresh_token == "r2"
        await client.auth.wait_idle()
        assert client.auth.refresh_in_progress is False

        retried = [s for s in server.seen if s["authorization"] == "Bearer valid"]
        assert sorted(s["path"] for s in retried) == ["/a", "/b", "/c"]
        assert all(s["tenant"] == "t-1" for s in retried)

    @pytest.mark.asyncio
    async def test_failed_refresh_expires_session(self, client, server, expired_session):
        """Test /a /b /c with a rejected refresh: all TokenExpiredError, tokens cleared."""
        server.refresh_ok = False

        results = await asyncio.gather(client.get("/a"), client.get("/b"), client.get("/c"),
                                       return_exceptions=True)

        assert all(isinstance(r, TokenExpiredError) for r in results)
        assert server.refresh_calls == 1
        assert expired_session.clear_calls == 1
        assert expired_session.access_token is None
        assert expired_session.tenant_id == "t-1"

    @pytest.mark.asyncio
    async def test_retried_request_rejected_again(self, client, server):
        """Test a second 401 after a successful refresh surfaces as UnauthorizedError."""
        server.valid_tokens = set()
        server.refresh_ok = True

        with pytest.raises(UnauthorizedError) as exc_info:
            await client.get("/a")

        assert exc_info.value.status_code == 401
        assert exc_info.value.context["server_code"] == "TOKEN_EXPIRED"
        assert server.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_retried_request_timeout(self, server, expired_session):
        """Test a timeout on the replayed request surfaces as NetworkError."""
        server.refresh_delay = 0
        api_client = BizflowAPIClient(server.url, expired_session, timeout=0.5)
        try:
            with pytest.raises(NetworkError) as exc_info:
                await api_client.get("/api/slow")
        finally:
            await api_client.close()

        assert exc_info.value.error_code == ErrorCode.NETWORK_TIMEOUT
        assert server.refresh_calls == 1


class TestErrorMapping:
    """Test HTTP failures surface as ApiError variants."""

    @pytest.mark.asyncio
    async def test_validation_error(self, client):
        with pytest.raises(ValidationError) as exc_info:
            await client.get("/api/status/422")

        error = exc_info.value
        assert error.status_code == 422
        assert error.field_errors == {"email": ["Invalid email"], "name": ["Required", "Too short"]}
        assert error.first_error("name") == "Required"

    @pytest.mark.asyncio
    async def test_rate_limit_error(self, client):
        with pytest.raises(RateLimitError) as exc_info:
            await client.get("/api/status/429")

        assert exc_info.value.retry_after == 30.0
        assert exc_info.value.message == "Slow down"

    @pytest.mark.asyncio
    async def test_not_found(self, client):
        with pytest.raises(NotFoundError):
            await client.get("/api/status/404")

    @pytest.mark.asyncio
    async def test_server_error_with_html_body(self, client):
        with pytest.raises(ServerError) as exc_info:
            await client.get("/api/status/500")

        assert exc_info.value.message == "Internal server error"

    @pytest.mark.asyncio
    async def test_unlisted_status_is_generic(self, client):
        with pytest.raises(GenericError) as exc_info:
            await client.get("/api/status/504")

        assert exc_info.value.status_code == 504
        assert exc_info.value.message == "Status 504"

    @pytest.mark.asyncio
    async def test_connection_refused(self, expired_session):
        api_client = BizflowAPIClient(f"http://127.0.0.1:{unused_port()}", expired_session, timeout=2.0)
        try:
            with pytest.raises(NetworkError) as exc_info:
                await api_client.get("/a")
        finally:
            await api_client.close()

        assert exc_info.value.error_code == ErrorCode.NETWORK_CONNECTION_FAILED

    @pytest.mark.asyncio
    async def test_unknown_charset_decoded_as_utf8(self, client):
        response = await client.get("/api/bogus-charset/200")
        assert response.data == {"x": 1}

    @pytest.mark.asyncio
    async def test_unknown_charset_on_error_response(self, client):
        with pytest.raises(NotFoundError) as exc_info:
            await client.get("/api/bogus-charset/404")

        assert exc_info.value.message == "Customer not found"

    @pytest.mark.asyncio
    async def test_text_body(self, client):
        response = await client.get("/api/text")
        assert response.data == "pong"


class TestSessionOperations:
    """Test login, tenant switch and logout."""

    @pytest.mark.asyncio
    async def test_login_stores_tokens_and_tenant(self, server):
        store = InMemorySessionStore()
        async with BizflowAPIClient(server.url, store) as api_client:
            tokens = await api_client.login("owner@example.com", "secret", platform="cli")

        assert tokens.access_token == "valid"
        assert store.access_token == "valid"
        assert store.refresh_token == "r1"
        assert store.tenant_id == "t-9"
        assert server.seen[0]["authorization"] is None

    @pytest.mark.asyncio
    async def test_login_rejected(self, server):
        store = InMemorySessionStore()
        async with BizflowAPIClient(server.url, store) as api_client:
            with pytest.raises(UnauthorizedError) as exc_info:
                await api_client.login("owner@example.com", "wrong")

        assert exc_info.value.message == "Invalid email or password"
        assert server.refresh_calls == 0
        assert store.access_token is None

    @pytest.mark.asyncio
    async def test_login_storage_failure_is_generic_error(self, server):
        store = InMemorySessionStore()
        store.save_error = TokenStorageError("Keyring is locked")
        async with BizflowAPIClient(server.url, store) as api_client:
            with pytest.raises(GenericError) as exc_info:
                await api_client.login("owner@example.com", "secret")

        assert isinstance(exc_info.value.cause, TokenStorageError)
        assert "Keyring is locked" in exc_info.value.message
        assert store.tenant_id is None

    @pytest.mark.asyncio
    async def test_switch_tenant_storage_failure_is_generic_error(self, client, expired_session):
        expired_session.access_token = "valid"
        expired_session.save_error = TokenStorageError("Disk full")

        with pytest.raises(GenericError) as exc_info:
            await client.switch_tenant("t-2")

        assert isinstance(exc_info.value.cause, TokenStorageError)
        assert expired_session.tenant_id == "t-1"

    @pytest.mark.asyncio
    async def test_switch_tenant(self, client, expired_session):
        expired_session.access_token = "valid"

        tokens = await client.switch_tenant("t-2")

        assert tokens.access_token == "valid-2"
        assert expired_session.access_token == "valid-2"
        assert expired_session.tenant_id == "t-2"

    @pytest.mark.asyncio
    async def test_logout_clears_session(self, client, server, expired_session):
        expired_session.access_token = "valid"

        await client.logout()

        assert server.logout_calls == [{"authorization": "Bearer valid", "body": {"refreshToken": "r1"}}]
        assert expired_session.access_token is None
        assert expired_session.refresh_token is None
        assert expired_session.tenant_id is None
        assert await client.is_authenticated() is False

    @pytest.mark.asyncio
    async def test_logout_is_best_effort(self, expired_session):
        api_client = BizflowAPIClient(f"http://127.0.0.1:{unused_port()}", expired_session, timeout=2.0)
        try:
            await api_client.logout()
        finally:
            await api_client.close()

        assert expired_session.access_token is None


class TestPaginationAndSession:
    """Test paginated fetches and session ownership."""

    @pytest.mark.asyncio
    async def test_get_paginated(self, client, server, expired_session):
        expired_session.access_token = "valid"

        page = await client.get_paginated(
            "/api/customers",
            PaginationParams(page=2, limit=2, search="ac", sort_by="name", sort_order="desc"),
            item_factory=lambda item: item["name"],
            query={"status": "active"}
        )

        assert page.data == ["Acme", "Globex"]
        assert page.pagination.page == 2
        assert page.pagination.has_next is True
        assert page.pagination.has_prev is True
        assert dict(server.seen[0]["query"]) == {
            "status": "active", "page": "2", "limit": "2", "search": "ac",
            "sortBy": "name", "sortOrder": "desc",
        }

    @pytest.mark.asyncio
    async def test_malformed_paginated_response(self, client, expired_session):
        expired_session.access_token = "valid"

        with pytest.raises(GenericError):
            await client.get_paginated("/api/customers", query={"malformed": True})

    @pytest.mark.asyncio
    async def test_caller_session_not_closed(self, server, expired_session):
        expired_session.access_token = "valid"
        async with aiohttp.ClientSession() as session:
            api_client = BizflowAPIClient(server.url, expired_session, session=session)
            await api_client.get("/a")
            await api_client.close()

            assert not session.closed
