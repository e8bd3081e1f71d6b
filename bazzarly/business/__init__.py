"""
Business layer: domain entities (users, stores, products), their lifecycle
rules, the exception taxonomy and the services that orchestrate them.
"""

from bazzarly.business.exceptions import (
    AccountLockedError,
    AuthenticationError,
    AuthorizationError,
    BaseBusinessException,
    ConflictError,
    DataValidationError,
    ResourceNotFoundError,
    StateTransitionError,
)
from bazzarly.business.products import Product
from bazzarly.business.stores import Store
from bazzarly.business.users import User

__all__ = [
    'AccountLockedError',
    'AuthenticationError',
    'AuthorizationError',
    'BaseBusinessException',
    'ConflictError',
    'DataValidationError',
    'Product',
    'ResourceNotFoundError',
    'StateTransitionError',
    'Store',
    'User',
]
