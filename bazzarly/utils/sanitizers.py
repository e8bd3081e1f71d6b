"""
Field sanitizers applied before validation.

Each sanitizer is a pure function from a raw request value to a cleaned value.
They are referenced by tag from the declarative validation schemas:

- ``string``: trim and HTML-escape through bleach (no tags allowed), quotes included
- ``email``: trim and normalize case/format
- ``phone``: keep digits, ``+``, ``-``, whitespace and parentheses only
- ``number``: coerce to a number, ``0`` when not parseable
- ``boolean``: truthiness coercion
"""

import math
import re
from typing import Any, Callable, Dict, Optional, Union

import bleach

PHONE_STRIP_PATTERN = re.compile(r'[^\d+\-\s()]')

# Providers that ignore dots and sub-addresses in the local part
GMAIL_DOMAINS = ('gmail.com', 'googlemail.com')

# bleach leaves quotes in text nodes untouched
QUOTE_ENTITIES = str.maketrans({'"': '&quot;', "'": '&#x27;'})


class SanitizerNotFoundError(KeyError):
    """Raised when a schema references an unknown sanitizer tag."""
    pass


def sanitize_string(value: Any) -> str:
    """
    Trim and HTML-escape a string value.

    Markup characters and both quote characters are escaped. Non-string input
    sanitizes to an empty string. Existing character entities are kept as-is,
    so sanitizing already-clean text is a no-op.
    """
    if not isinstance(value, str):
        return ''
    cleaned = bleach.clean(value.strip(), tags=[], attributes={}, strip=False)
    return cleaned.translate(QUOTE_ENTITIES)


def sanitize_email(value: Any) -> str:
    """
    Trim and normalize an email address.

    The address is lower-cased; for Gmail addresses the dots and ``+tag``
    suffix of the local part are removed and the domain is canonicalized.
    Values without an ``@`` are returned trimmed and lower-cased so that the
    format check can still report them.
    """
    if not isinstance(value, str):
        return ''
    email = value.strip().lower()
    local, sep, domain = email.rpartition('@')
    if not sep or not local or not domain:
        return email
    if domain in GMAIL_DOMAINS:
        local = local.split('+', 1)[0].replace('.', '')
        domain = 'gmail.com'
    return f"{local}@{domain}"


def sanitize_phone(value: Any) -> str:
    """Strip everything except digits, ``+``, ``-``, whitespace and parentheses."""
    if not isinstance(value, str):
        return ''
    return PHONE_STRIP_PATTERN.sub('', value)


def to_number(value: Any) -> Optional[Union[int, float]]:
    """
    Parse a numeric value, returning ``None`` when it is not numeric.

    Integral values come back as ``int`` so they render without a trailing
    ``.0`` in messages.
    """
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return None if math.isnan(value) or math.isinf(value) else value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return None
    return None if math.isnan(number) or math.isinf(number) else number


def sanitize_number(value: Any) -> Union[int, float]:
    """Coerce to a number, defaulting to ``0``."""
    number = to_number(value)
    return 0 if number is None else number


def sanitize_boolean(value: Any) -> bool:
    return bool(value)


SANITIZERS: Dict[str, Callable[[Any], Any]] = {
    'string': sanitize_string,
    'email': sanitize_email,
    'phone': sanitize_phone,
    'number': sanitize_number,
    'boolean': sanitize_boolean,
}


def sanitize(tag: str, value: Any) -> Any:
    """
    Run the sanitizer registered under ``tag``.

    Raises:
        SanitizerNotFoundError: When the tag is unknown
    """
    try:
        sanitizer = SANITIZERS[tag]
    except KeyError:
        raise SanitizerNotFoundError(tag)
    return sanitizer(value)


__all__ = [
    'SANITIZERS',
    'SanitizerNotFoundError',
    'sanitize',
    'sanitize_boolean',
    'sanitize_email',
    'sanitize_number',
    'sanitize_phone',
    'sanitize_string',
    'to_number',
]
