"""
Data access layer: the PyMongo manager, its exception hierarchy and the
per-collection repositories.
"""

from bazzarly.data.exceptions import (
    ConnectionException,
    DatabaseException,
    DatabaseOperationType,
    DuplicateKeyException,
    QueryException,
    TimeoutException,
)
from bazzarly.data.mongodb import MongoDBManager, is_object_id, validate_object_id
from bazzarly.data.repositories import ProductRepository, StoreRepository, UserRepository

__all__ = [
    'ConnectionException',
    'DatabaseException',
    'DatabaseOperationType',
    'DuplicateKeyException',
    'MongoDBManager',
    'ProductRepository',
    'QueryException',
    'StoreRepository',
    'TimeoutException',
    'UserRepository',
    'is_object_id',
    'validate_object_id',
]
