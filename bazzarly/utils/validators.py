"""
Declarative request validation for the Bazzarly API.

Schemas are plain data: each field maps to a ``FieldSpec`` holding an optional
sanitizer tag and a tuple of ``Rule(kind, param)`` entries. A single
interpreter walks the rules in a fixed order, so a field reports at most one
message (the first failing check) no matter how its rules were declared.

Check order:
    required -> min_length -> max_length -> type -> min -> max -> enum -> pattern

Body validation (``validate``) always materializes a sanitized entry for every
schema field. Query validation (``validate_query_params``) only reports the
parameters the client actually sent.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

import phonenumbers
from email_validator import EmailNotValidError, validate_email as check_email

from bazzarly.utils.sanitizers import sanitize, to_number


class RuleKind(str, Enum):
    """Kinds of field rules, declared in evaluation order."""
    REQUIRED = 'required'
    MIN_LENGTH = 'min_length'
    MAX_LENGTH = 'max_length'
    TYPE = 'type'
    MIN = 'min'
    MAX = 'max'
    ENUM = 'enum'
    PATTERN = 'pattern'


RULE_ORDER: Tuple[RuleKind, ...] = tuple(RuleKind)


@dataclass(frozen=True)
class Rule:
    kind: RuleKind
    param: Any = True


@dataclass(frozen=True)
class FieldSpec:
    """Rules and optional sanitizer tag for one schema field."""
    rules: Tuple[Rule, ...] = ()
    sanitize: Optional[str] = None

    def rule(self, kind: RuleKind) -> Optional[Rule]:
        for rule in self.rules:
            if rule.kind == kind:
                return rule
        return None


@dataclass
class ValidationResult:
    """
    Outcome of validating a record against a schema.

    Attributes:
        is_valid: True when no field produced an error
        errors: At most one message per field
        data: Sanitized values keyed by field name
    """
    is_valid: bool
    errors: Dict[str, str] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'is_valid': self.is_valid, 'errors': dict(self.errors), 'data': dict(self.data)}


class SchemaNotFoundError(KeyError):
    """Raised when ``validate`` is called with an unknown schema name."""

    def __init__(self, schema_name: str):
        super().__init__(schema_name)
        self.schema_name = schema_name


# ============================================================================
# RULE HELPERS
# ============================================================================

def required() -> Rule:
    return Rule(RuleKind.REQUIRED)


def min_length(n: int) -> Rule:
    return Rule(RuleKind.MIN_LENGTH, n)


def max_length(n: int) -> Rule:
    return Rule(RuleKind.MAX_LENGTH, n)


def of_type(type_name: str) -> Rule:
    return Rule(RuleKind.TYPE, type_name)


def minimum(value: float) -> Rule:
    return Rule(RuleKind.MIN, value)


def maximum(value: float) -> Rule:
    return Rule(RuleKind.MAX, value)


def one_of(*choices: str) -> Rule:
    return Rule(RuleKind.ENUM, tuple(choices))


def matches(pattern: str) -> Rule:
    return Rule(RuleKind.PATTERN, re.compile(pattern))


def _spec(*rules: Rule, sanitize: Optional[str] = None) -> FieldSpec:
    return FieldSpec(rules=tuple(rules), sanitize=sanitize)


# ============================================================================
# SCHEMAS
# ============================================================================

PRODUCT_CONDITIONS = ('new', 'like-new', 'good', 'fair', 'poor')
STOCK_LEVELS = ('in-stock', 'low-stock', 'out-of-stock')
SORT_OPTIONS = ('newest', 'price-low', 'price-high', 'rating')
PASSWORD_PATTERN = r'^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)'

SCHEMAS: Mapping[str, Mapping[str, FieldSpec]] = MappingProxyType({
    'product': MappingProxyType({
        'title': _spec(required(), min_length(3), max_length(100), sanitize='string'),
        'description': _spec(required(), min_length(10), max_length(1000), sanitize='string'),
        'price': _spec(required(), of_type('number'), minimum(0.01), maximum(999999.99)),
        'location': _spec(required(), min_length(2), max_length(100), sanitize='string'),
        'condition': _spec(required(), one_of(*PRODUCT_CONDITIONS)),
        'categoryId': _spec(required(), sanitize='string'),
    }),
    'user': MappingProxyType({
        'email': _spec(required(), of_type('email'), sanitize='email'),
        'password': _spec(required(), min_length(8), matches(PASSWORD_PATTERN)),
        'firstName': _spec(required(), min_length(2), max_length(30), sanitize='string'),
        'lastName': _spec(required(), min_length(2), max_length(30), sanitize='string'),
        'phone': _spec(of_type('phone')),
    }),
    'search': MappingProxyType({
        'q': _spec(required(), min_length(2), max_length(100), sanitize='string'),
    }),
})

PRODUCT_QUERY_RULES: Mapping[str, FieldSpec] = MappingProxyType({
    'category': _spec(sanitize='string'),
    'minPrice': _spec(of_type('number'), minimum(0)),
    'maxPrice': _spec(of_type('number'), minimum(0)),
    'location': _spec(sanitize='string'),
    'condition': _spec(one_of(*PRODUCT_CONDITIONS)),
    'availability': _spec(one_of(*STOCK_LEVELS)),
    'sortBy': _spec(one_of(*SORT_OPTIONS)),
    'page': _spec(of_type('number'), minimum(1)),
    'limit': _spec(of_type('number'), minimum(1), maximum(100)),
})

SEARCH_QUERY_RULES: Mapping[str, FieldSpec] = MappingProxyType({
    'q': _spec(required(), min_length(2), max_length(100), sanitize='string'),
})


# ============================================================================
# INTERPRETER
# ============================================================================

def field_label(field_name: str) -> str:
    """Upper-case the first letter of a field name for messages."""
    return field_name[:1].upper() + field_name[1:]


def is_empty(value: Any) -> bool:
    return value is None or value == '' or (isinstance(value, (list, dict)) and not value)


def _format_bound(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def is_valid_email(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        check_email(value, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def is_valid_phone(value: Any, region: str = 'US') -> bool:
    if not isinstance(value, str):
        return False
    try:
        parsed = phonenumbers.parse(re.sub(r'\s', '', value), region)
    except phonenumbers.NumberParseException:
        return False
    return phonenumbers.is_valid_number(parsed)


def is_valid_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


TYPE_CHECKS = {
    'email': (is_valid_email, '{label} must be a valid email address'),
    'number': (lambda value: to_number(value) is not None, '{label} must be a number'),
    'phone': (is_valid_phone, '{label} must be a valid phone number'),
    'url': (is_valid_url, '{label} must be a valid URL'),
}


def check_rule(rule: Rule, value: Any, label: str) -> Optional[str]:
    """
    Evaluate a single non-required rule against a present value.

    Returns:
        The error message, or None when the rule passes or does not apply
    """
    kind, param = rule.kind, rule.param

    if kind == RuleKind.MIN_LENGTH:
        if isinstance(value, (str, list)) and len(value) < param:
            return f"{label} must be at least {param} characters long"
    elif kind == RuleKind.MAX_LENGTH:
        if isinstance(value, (str, list)) and len(value) > param:
            return f"{label} must be no more than {param} characters long"
    elif kind == RuleKind.TYPE:
        check, message = TYPE_CHECKS[param]
        if not check(value):
            return message.format(label=label)
    elif kind == RuleKind.MIN:
        number = to_number(value)
        if number is not None and number < param:
            return f"{label} must be at least {_format_bound(param)}"
    elif kind == RuleKind.MAX:
        number = to_number(value)
        if number is not None and number > param:
            return f"{label} must be no more than {_format_bound(param)}"
    elif kind == RuleKind.ENUM:
        if value not in param:
            return f"{label} must be one of: {', '.join(param)}"
    elif kind == RuleKind.PATTERN:
        if not isinstance(value, str) or not param.search(value):
            return f"{label} format is invalid"
    return None


def check_field(
    spec: FieldSpec,
    value: Any,
    label: str,
    skip_empty_optional: bool = True
) -> Optional[str]:
    """Run every rule of ``spec`` in fixed order and return the first failure."""
    if spec.rule(RuleKind.REQUIRED) is not None:
        if is_empty(value):
            return f"{label} is required"
    elif skip_empty_optional and not value:
        return None

    for kind in RULE_ORDER[1:]:
        rule = spec.rule(kind)
        if rule is None:
            continue
        message = check_rule(rule, value, label)
        if message:
            return message
    return None


def validate_record(schema: Mapping[str, FieldSpec], record: Optional[Mapping[str, Any]]) -> ValidationResult:
    """Validate ``record`` against an explicit schema mapping."""
    record = record or {}
    errors: Dict[str, str] = {}
    data: Dict[str, Any] = {}

    for field_name, spec in schema.items():
        value = record.get(field_name)
        if spec.sanitize:
            value = sanitize(spec.sanitize, value)
        data[field_name] = value

        message = check_field(spec, value, field_label(field_name))
        if message:
            errors[field_name] = message

    return ValidationResult(is_valid=not errors, errors=errors, data=data)


def validate(schema_name: str, record: Optional[Mapping[str, Any]]) -> ValidationResult:
    """
    Validate a request body against a named schema.

    Args:
        schema_name: One of ``product``, ``user`` or ``search``
        record: Raw request body

    Returns:
        ValidationResult with one sanitized ``data`` entry per schema field

    Raises:
        SchemaNotFoundError: When the schema name is unknown
    """
    try:
        schema = SCHEMAS[schema_name]
    except KeyError:
        raise SchemaNotFoundError(schema_name)
    return validate_record(schema, record)


def validate_query_params(
    params: Mapping[str, Any],
    rules: Mapping[str, FieldSpec]
) -> ValidationResult:
    """
    Validate query-string parameters against a rule set.

    Only parameters present in ``params`` appear in ``data``. Numeric
    parameters are coerced; messages use the raw parameter name.
    """
    errors: Dict[str, str] = {}
    data: Dict[str, Any] = {}

    for param, spec in rules.items():
        if param not in params:
            if spec.rule(RuleKind.REQUIRED) is not None:
                errors[param] = f"{param} is required"
            continue

        value = params[param]
        if spec.sanitize:
            value = sanitize(spec.sanitize, value)

        type_rule = spec.rule(RuleKind.TYPE)
        if type_rule is not None and type_rule.param == 'number':
            number = to_number(value)
            if number is None:
                data[param] = value
                errors[param] = f"{param} must be a number"
                continue
            value = number
        data[param] = value

        message = check_field(spec, value, param, skip_empty_optional=False)
        if message:
            errors[param] = message

    return ValidationResult(is_valid=not errors, errors=errors, data=data)


__all__ = [
    'FieldSpec',
    'PRODUCT_QUERY_RULES',
    'Rule',
    'RuleKind',
    'SCHEMAS',
    'SEARCH_QUERY_RULES',
    'SchemaNotFoundError',
    'ValidationResult',
    'check_field',
    'field_label',
    'is_valid_email',
    'is_valid_phone',
    'is_valid_url',
    'validate',
    'validate_query_params',
    'validate_record',
]
