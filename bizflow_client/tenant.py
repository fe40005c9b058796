"""
Tenant context injection for outgoing requests.
"""

import logging
from typing import Optional

from bizflow_shared.interfaces import ITenantStore
from bizflow_shared.models import RequestDescriptor

logger = logging.getLogger(__name__)

DEFAULT_TENANT_HEADER = 'X-Tenant-ID'


class TenantContextInjector:
    """
    Attaches the active tenant identifier to every outgoing request.

    The tenant is read from the store on each call, so a tenant switch
    between two requests is reflected in the second one.
    """

    def __init__(self, tenant_store: Optional[ITenantStore], header_name: str = DEFAULT_TENANT_HEADER):
        self.tenant_store = tenant_store
        self.header_name = header_name

    async def apply(self, request: RequestDescriptor) -> RequestDescriptor:
        if self.tenant_store is None:
            return request

        tenant_id = await self.tenant_store.get_tenant_id()
        if tenant_id and tenant_id.strip():
            request.headers[self.header_name] = tenant_id.strip()
            logger.debug(f"Tenant {tenant_id.strip()} attached to {request.method} {request.path}")

        return request
