"""
Pagination value objects for list endpoints.

List endpoints accept ``page``, ``limit``, ``search``, ``sortBy``,
``sortOrder`` and endpoint-specific filters as query parameters, and answer
with ``{"data": [...], "pagination": {...}}``.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar
from enum import Enum

T = TypeVar('T')


class SortOrder(Enum):
    """Sort direction for list endpoints."""
    ASC = "asc"
    DESC = "desc"


@dataclass
class PaginationParams:
    """Request-side pagination, search, sort and filter parameters."""
    page: int = 1
    limit: int = 20
    search: Optional[str] = None
    sort_by: Optional[str] = None
    sort_order: Optional[SortOrder] = None
    filters: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.page < 1:
            raise ValueError("Page must be at least 1")
        if self.limit < 1:
            raise ValueError("Limit must be at least 1")
        if isinstance(self.sort_order, str):
            self.sort_order = SortOrder(self.sort_order.lower())

    def to_query_params(self) -> Dict[str, Any]:
        """Build the query mapping sent to the server."""
        params: Dict[str, Any] = {
            'page': self.page,
            'limit': self.limit,
        }
        if self.search:
            params['search'] = self.search
        if self.sort_by:
            params['sortBy'] = self.sort_by
        if self.sort_order:
            params['sortOrder'] = self.sort_order.value

        for key, value in self.filters.items():
            if value is not None:
                params[key] = value

        return params

    def next_page(self) -> 'PaginationParams':
        return replace(self, page=self.page + 1, filters=dict(self.filters))


@dataclass
class PaginationMeta:
    """Response-side pagination metadata."""
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaginationMeta':
        if not isinstance(data, dict):
            raise ValueError("Pagination metadata is not an object")

        try:
            page = int(data.get('page', 1))
            limit = int(data.get('limit', 0))
            total = int(data.get('total', 0))
            total_pages = int(data.get('totalPages', 0))
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid pagination metadata: {e}")

        has_next = data.get('hasNext')
        has_prev = data.get('hasPrev')

        return cls(
            page=page,
            limit=limit,
            total=total,
            total_pages=total_pages,
            has_next=bool(has_next) if has_next is not None else page < total_pages,
            has_prev=bool(has_prev) if has_prev is not None else page > 1,
        )


@dataclass
class PaginatedResponse(Generic[T]):
    """One page of results."""
    data: List[T]
    pagination: PaginationMeta

    @classmethod
    def from_dict(
        cls,
        payload: Any,
        item_factory: Optional[Callable[[Dict[str, Any]], T]] = None
    ) -> 'PaginatedResponse[T]':
        """
        Decode a paginated response body.

        Args:
            payload: Decoded JSON body
            item_factory: Optional callable converting each raw item

        Raises:
            ValueError: If the payload does not have the paginated shape
        """
        if not isinstance(payload, dict):
            raise ValueError("Paginated response is not an object")

        items = payload.get('data')
        if not isinstance(items, list):
            raise ValueError("Paginated response has no data list")

        if item_factory is not None:
            items = [item_factory(item) for item in items]

        return cls(data=items, pagination=PaginationMeta.from_dict(payload.get('pagination')))

    def __len__(self) -> int:
        return len(self.data)

    def __iter__(self):
        return iter(self.data)
