"""
Request helpers shared by the API blueprints.
"""

from typing import Any, Dict, Mapping

from flask import request

from bazzarly.business.exceptions import DataValidationError
from bazzarly.monitoring.metrics import validation_failures_total
from bazzarly.utils.validators import FieldSpec, ValidationResult, validate, validate_query_params


def json_body() -> Dict[str, Any]:
    """The JSON request body, or an empty dict when absent or not an object."""
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def _require_valid(result: ValidationResult, schema: str, message: str) -> Dict[str, Any]:
    if not result.is_valid:
        validation_failures_total.labels(schema=schema).inc()
        raise DataValidationError(message, errors=result.errors)
    return result.data


def validated_body(schema_name: str, body: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Run a declarative body schema.

    Raises:
        DataValidationError: "Validation failed" with per-field messages
    """
    return _require_valid(validate(schema_name, body), schema_name, "Validation failed")


def validated_query(rules: Mapping[str, FieldSpec], schema: str, message: str) -> Dict[str, Any]:
    """Run query-string rules against ``request.args``."""
    params = request.args.to_dict()
    return _require_valid(validate_query_params(params, rules), schema, message)


def load_schema(schema_class, body: Mapping[str, Any]) -> Dict[str, Any]:
    """Load ``body`` through a marshmallow request schema, counting failures."""
    try:
        return schema_class().load_or_raise(body)
    except DataValidationError:
        validation_failures_total.labels(schema=schema_class.__name__).inc()
        raise


def client_ip() -> str:
    return request.remote_addr or 'unknown'


def query_flag(name: str) -> bool:
    return request.args.get(name, '').strip().lower() in ('1', 'true', 'yes')


__all__ = [
    'client_ip',
    'json_body',
    'load_schema',
    'query_flag',
    'validated_body',
    'validated_query',
]
