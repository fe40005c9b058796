"""
Error taxonomy mapping for the BizFlow API client.

Converts transport-level outcomes (status code and body, timeouts, connection
failures) into exactly one ApiError variant, so nothing above the HTTP client
ever sees a raw aiohttp exception or a loosely-typed error body.
"""

import asyncio
import json
import logging
from typing import Optional, Dict, Any, List, Mapping, Type

import aiohttp

from bizflow_shared.exceptions import (
    ApiError, ErrorCode, NetworkError, UnauthorizedError, ForbiddenError,
    NotFoundError, ConflictError, ValidationError, RateLimitError,
    ServerError, GenericError
)

logger = logging.getLogger(__name__)


STATUS_ERROR_MAP: Dict[int, Type[ApiError]] = {
    400: ValidationError,
    401: UnauthorizedError,
    403: ForbiddenError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
    429: RateLimitError,
    500: ServerError,
    502: ServerError,
    503: ServerError,
}


def decode_body(text: Optional[str]) -> Any:
    """Parse a response body as JSON, returning None when it is not JSON."""
    if not text:
        return None
    try:
        return json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None


def extract_message(body: Any) -> Optional[str]:
    """Pick the human-readable message out of an error envelope."""
    if not isinstance(body, dict):
        return None

    for key in ('message', 'error', 'detail'):
        value = body.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None


def parse_field_errors(errors: Any) -> Dict[str, List[str]]:
    """
    Normalize the ``errors`` member of an error envelope.

    Accepts ``{field: message}``, ``{field: [messages]}`` and a list of
    ``{path|field, message}`` issues. Anything else yields an empty mapping.
    """
    field_errors: Dict[str, List[str]] = {}

    if isinstance(errors, dict):
        for field_name, messages in errors.items():
            if isinstance(messages, str):
                field_errors[str(field_name)] = [messages]
            elif isinstance(messages, list):
                field_errors[str(field_name)] = [str(m) for m in messages if m is not None]

    elif isinstance(errors, list):
        for issue in errors:
            if not isinstance(issue, dict) or 'message' not in issue:
                continue
            field_name = issue.get('field', issue.get('path', '_'))
            if isinstance(field_name, list):
                field_name = '.'.join(str(part) for part in field_name) or '_'
            field_errors.setdefault(str(field_name), []).append(str(issue['message']))

    return field_errors


def _parse_retry_after(body: Any, headers: Optional[Mapping[str, str]]) -> Optional[float]:
    raw = None
    if headers:
        raw = headers.get('Retry-After')
    if raw is None and isinstance(body, dict):
        raw = body.get('retryAfter')
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        # HTTP-date form is not used by the backend
        return None


def map_error_response(
    status: int,
    body: Any,
    headers: Optional[Mapping[str, str]] = None
) -> ApiError:
    """
    Map a non-2xx response to an ApiError variant.

    Args:
        status: HTTP status code
        body: Decoded response body (dict for JSON envelopes, else None/str)
        headers: Response headers

    Returns:
        The matching ApiError instance (never raises)
    """
    error_class = STATUS_ERROR_MAP.get(status, GenericError)
    message = extract_message(body)

    context: Dict[str, Any] = {}
    if isinstance(body, dict):
        server_code = body.get('error')
        if isinstance(server_code, str) and server_code != message:
            context['server_code'] = server_code
        if body.get('details') is not None:
            context['details'] = body['details']

    kwargs: Dict[str, Any] = {'status_code': status, 'context': context}

    if error_class is ValidationError and isinstance(body, dict):
        kwargs['field_errors'] = parse_field_errors(body.get('errors'))
    elif error_class is RateLimitError:
        kwargs['retry_after'] = _parse_retry_after(body, headers)

    return error_class(message, **kwargs)


def map_transport_error(exc: BaseException, method: str = '', path: str = '') -> NetworkError:
    """
    Map a failure that produced no HTTP response to a NetworkError.

    asyncio.CancelledError must never be passed here; cancellation is
    propagated to the caller as-is.
    """
    target = f"{method} {path}".strip()

    if isinstance(exc, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return NetworkError(
            f"Request timed out: {target}" if target else "Request timed out",
            error_code=ErrorCode.NETWORK_TIMEOUT,
            cause=exc if isinstance(exc, Exception) else None
        )

    return NetworkError(
        f"Connection failed: {target}" if target else "Connection failed",
        error_code=ErrorCode.NETWORK_CONNECTION_FAILED,
        cause=exc if isinstance(exc, Exception) else None
    )
