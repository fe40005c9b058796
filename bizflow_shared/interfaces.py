"""
Core interfaces for the BizFlow API client.

This module defines the abstract interfaces that components must implement
to ensure consistent behavior across the system.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any

from .models import ApiResponse


class ICredentialStore(ABC):
    """
    Durable storage for the access/refresh token pair.

    Implementations must be sequentially consistent: a ``get_access_token()``
    issued after ``save_tokens()`` has completed observes the new value.
    """

    @abstractmethod
    async def save_tokens(self, access_token: str, refresh_token: str) -> None:
        """Persist a new token pair, replacing the previous one."""
        pass

    @abstractmethod
    async def get_access_token(self) -> Optional[str]:
        """Get the stored access token."""
        pass

    @abstractmethod
    async def get_refresh_token(self) -> Optional[str]:
        """Get the stored refresh token."""
        pass

    @abstractmethod
    async def clear_tokens(self) -> None:
        """Remove both tokens."""
        pass


class ITenantStore(ABC):
    """Storage for the tenant the current session is scoped to."""

    @abstractmethod
    async def get_tenant_id(self) -> Optional[str]:
        """Get the active tenant identifier."""
        pass

    @abstractmethod
    async def set_tenant_id(self, tenant_id: str) -> None:
        """Set the active tenant identifier."""
        pass

    @abstractmethod
    async def clear_tenant_id(self) -> None:
        """Forget the active tenant."""
        pass


class IAPIClient(ABC):
    """Interface for API client communication."""

    @abstractmethod
    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        query: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> ApiResponse:
        """Send a request and return the response or raise an ApiError."""
        pass

    async def get(self, path: str, query: Optional[Dict[str, Any]] = None,
                  headers: Optional[Dict[str, str]] = None) -> ApiResponse:
        return await self.request('GET', path, query=query, headers=headers)

    async def post(self, path: str, body: Any = None, query: Optional[Dict[str, Any]] = None,
                   headers: Optional[Dict[str, str]] = None) -> ApiResponse:
        return await self.request('POST', path, body=body, query=query, headers=headers)

    async def put(self, path: str, body: Any = None, query: Optional[Dict[str, Any]] = None,
                  headers: Optional[Dict[str, str]] = None) -> ApiResponse:
        return await self.request('PUT', path, body=body, query=query, headers=headers)

    async def patch(self, path: str, body: Any = None, query: Optional[Dict[str, Any]] = None,
                    headers: Optional[Dict[str, str]] = None) -> ApiResponse:
        return await self.request('PATCH', path, body=body, query=query, headers=headers)

    async def delete(self, path: str, body: Any = None, query: Optional[Dict[str, Any]] = None,
                     headers: Optional[Dict[str, str]] = None) -> ApiResponse:
        return await self.request('DELETE', path, body=body, query=query, headers=headers)


class IConfigurationManager(ABC):
    """Interface for configuration management."""

    @abstractmethod
    def get_server_url(self) -> str:
        """Get server URL."""
        pass

    @abstractmethod
    def get_refresh_path(self) -> str:
        """Get the token refresh endpoint path."""
        pass

    @abstractmethod
    def get_tenant_header(self) -> str:
        """Get the tenant header name."""
        pass

    @abstractmethod
    def set_config(self, key: str, value: Any) -> None:
        """Set configuration value."""
        pass

    @abstractmethod
    def get_config(self, key: str, default: Any = None) -> Any:
        """Get configuration value."""
        pass
