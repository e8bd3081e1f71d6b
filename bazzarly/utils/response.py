"""
Response envelope helpers for the Bazzarly API.

Every endpoint answers with ``{success, message?, data?, errors?}``. Helpers
return ``(body, status_code)`` tuples that Flask serializes to JSON.
"""

from typing import Any, Dict, Mapping, Optional, Tuple

ResponseTuple = Tuple[Dict[str, Any], int]


def success_response(
    data: Any = None,
    message: Optional[str] = None,
    status_code: int = 200
) -> ResponseTuple:
    body: Dict[str, Any] = {'success': True}
    if message is not None:
        body['message'] = message
    if data is not None:
        body['data'] = data
    return body, status_code


def created_response(data: Any = None, message: Optional[str] = None) -> ResponseTuple:
    return success_response(data, message, status_code=201)


def error_response(
    message: str,
    status_code: int = 400,
    errors: Optional[Mapping[str, str]] = None,
    error_code: Optional[str] = None,
    **extra: Any
) -> ResponseTuple:
    body: Dict[str, Any] = {'success': False, 'message': message}
    if error_code:
        body['error_code'] = error_code
    if errors:
        body['errors'] = dict(errors)
    body.update(extra)
    return body, status_code


def paginated_response(
    key: str,
    items: Any,
    page: int,
    limit: int,
    total: int,
    message: Optional[str] = None
) -> ResponseTuple:
    """
    Wrap one page of results.

    The pagination block reports the current page, page size, total matches,
    page count and whether neighbouring pages exist.
    """
    pages = (total + limit - 1) // limit if limit else 0
    return success_response({
        key: items,
        'pagination': {
            'current_page': page,
            'limit': limit,
            'total': total,
            'total_pages': pages,
            'has_next': page * limit < total,
            'has_prev': page > 1,
        },
    }, message)


__all__ = [
    'created_response',
    'error_response',
    'paginated_response',
    'success_response',
]
