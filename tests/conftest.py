"""
Shared fixtures for the BizFlow API client tests.
"""

import asyncio
from typing import Optional

import pytest

from bizflow_shared.interfaces import ICredentialStore, ITenantStore


class InMemorySessionStore(ICredentialStore, ITenantStore):
    """Credential and tenant store kept in memory, with call counters."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        tenant_id: Optional[str] = None
    ):
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.tenant_id = tenant_id

        self.save_calls = 0
        self.clear_calls = 0
        self.save_error: Optional[Exception] = None
        self.save_delay = 0.0

    async def save_tokens(self, access_token: str, refresh_token: str) -> None:
        self.save_calls += 1
        if self.save_delay:
            await asyncio.sleep(self.save_delay)
        if self.save_error is not None:
            raise self.save_error
        self.access_token = access_token
        self.refresh_token = refresh_token

    async def get_access_token(self) -> Optional[str]:
        return self.access_token

    async def get_refresh_token(self) -> Optional[str]:
        return self.refresh_token

    async def clear_tokens(self) -> None:
        self.clear_calls += 1
        self.access_token = None
        self.refresh_token = None

    async def get_tenant_id(self) -> Optional[str]:
        return self.tenant_id

    async def set_tenant_id(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id

    async def clear_tenant_id(self) -> None:
        self.tenant_id = None


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the event loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def expired_session():
    """Store holding an expired access token, a valid refresh token and a tenant."""
    return InMemorySessionStore(access_token="expired", refresh_token="r1", tenant_id="t-1")
