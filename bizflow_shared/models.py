"""
Core data models for the BizFlow API client.

This module defines the value objects that travel between the HTTP facade,
the auth coordinator and the credential store.
"""

from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any
from enum import Enum


class RefreshState(Enum):
    """Token refresh state of an auth coordinator."""
    IDLE = "idle"
    REFRESHING = "refreshing"


class HttpMethod(Enum):
    """HTTP methods supported by the client facade."""
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


@dataclass
class TokenPair:
    """Access/refresh token pair as persisted by the credential store."""
    access_token: str
    refresh_token: str

    def __post_init__(self):
        if not self.access_token:
            raise ValueError("Access token cannot be empty")

    @classmethod
    def from_payload(cls, payload: Any, fallback_refresh_token: Optional[str] = None) -> 'TokenPair':
        """
        Decode a login/refresh response body.

        Accepts ``{accessToken, refreshToken?}`` or the same object nested
        under ``tokens``. A missing refresh token keeps the fallback.

        Raises:
            ValueError: If the payload carries no usable access token
        """
        if isinstance(payload, dict) and isinstance(payload.get('tokens'), dict):
            payload = payload['tokens']

        if not isinstance(payload, dict):
            raise ValueError("Token response is not an object")

        access_token = payload.get('accessToken')
        if not isinstance(access_token, str) or not access_token:
            raise ValueError("Token response has no access token")

        refresh_token = payload.get('refreshToken')
        if not isinstance(refresh_token, str) or not refresh_token:
            refresh_token = fallback_refresh_token or ''

        return cls(access_token=access_token, refresh_token=refresh_token)


@dataclass
class RequestDescriptor:
    """Everything needed to (re)send one API request."""
    method: str
    path: str
    body: Any = None
    query: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    is_retry: bool = False

    def __post_init__(self):
        if not self.path:
            raise ValueError("Request path cannot be empty")
        self.method = self.method.upper()
        if self.method not in HttpMethod.__members__:
            raise ValueError(f"Unsupported HTTP method: {self.method}")
        # Callers may pass their own dict; never mutate it.
        self.headers = dict(self.headers or {})

    def with_bearer(self, access_token: str) -> 'RequestDescriptor':
        """Return a retry copy of this request carrying the given access token."""
        headers = dict(self.headers)
        headers['Authorization'] = f'Bearer {access_token}'
        return replace(self, headers=headers, is_retry=True)


@dataclass
class ApiResponse:
    """Successful HTTP response with its decoded body."""
    status_code: int
    data: Any = None
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        return self.data
