"""
MongoDB access layer built on PyMongo.

``MongoDBManager`` wraps a ``MongoClient`` and exposes the collection
operations the repositories need. Every operation translates pymongo errors
into ``bazzarly.data.exceptions`` types and logs with structlog; reads are
retried on transient failures.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import structlog
from bson import ObjectId
from bson.errors import InvalidId
from pymongo import MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import PyMongoError

from bazzarly.data.exceptions import (
    DatabaseOperationType,
    QueryException,
    handle_database_error,
    with_database_retry,
)

logger = structlog.get_logger(__name__)

SortSpec = Optional[Sequence[Tuple[str, int]]]


class MongoDBManager:
    """
    Synchronous MongoDB manager.

    Args:
        client: Connected ``MongoClient`` (or a compatible test double)
        database_name: Database holding the marketplace collections
    """

    def __init__(self, client: MongoClient, database_name: str):
        self._client = client
        self.database_name = database_name
        logger.info("MongoDB manager initialized", database_name=database_name)

    @classmethod
    def from_uri(cls, uri: str, database_name: str, **client_options: Any) -> 'MongoDBManager':
        return cls(MongoClient(uri, tz_aware=True, **client_options), database_name)

    @property
    def client(self) -> MongoClient:
        return self._client

    @property
    def database(self) -> Database:
        return self._client[self.database_name]

    def get_collection(self, collection_name: str) -> Collection:
        return self.database[collection_name]

    def _fail(self, error: PyMongoError, operation: DatabaseOperationType, collection_name: str):
        return handle_database_error(error, operation, self.database_name, collection_name)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @with_database_retry(DatabaseOperationType.READ)
    def find_one(self, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        start_time = time.perf_counter()
        try:
            result = self.get_collection(collection_name).find_one(filter_dict or {})
        except PyMongoError as e:
            raise self._fail(e, DatabaseOperationType.READ, collection_name)
        logger.debug(
            "Find one operation completed",
            collection=collection_name,
            filter_fields=list((filter_dict or {}).keys()),
            found=result is not None,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2)
        )
        return result

    def find_one_by_id(self, collection_name: str, document_id: Union[str, ObjectId]) -> Optional[Dict[str, Any]]:
        return self.find_one(collection_name, {'_id': validate_object_id(document_id)})

    @with_database_retry(DatabaseOperationType.READ)
    def find_many(
        self,
        collection_name: str,
        filter_dict: Optional[Dict[str, Any]] = None,
        sort: SortSpec = None,
        skip: int = 0,
        limit: int = 0
    ) -> List[Dict[str, Any]]:
        try:
            cursor = self.get_collection(collection_name).find(filter_dict or {})
            if sort:
                cursor = cursor.sort(list(sort))
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)
        except PyMongoError as e:
            raise self._fail(e, DatabaseOperationType.READ, collection_name)

    @with_database_retry(DatabaseOperationType.READ)
    def count_documents(self, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
        try:
            return self.get_collection(collection_name).count_documents(filter_dict or {})
        except PyMongoError as e:
            raise self._fail(e, DatabaseOperationType.READ, collection_name)

    @with_database_retry(DatabaseOperationType.AGGREGATE)
    def aggregate(self, collection_name: str, pipeline: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        try:
            return list(self.get_collection(collection_name).aggregate(pipeline))
        except PyMongoError as e:
            raise self._fail(e, DatabaseOperationType.AGGREGATE, collection_name)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert_one(self, collection_name: str, document: Dict[str, Any]) -> ObjectId:
        try:
            result = self.get_collection(collection_name).insert_one(document)
        except PyMongoError as e:
            raise self._fail(e, DatabaseOperationType.WRITE, collection_name)
        logger.debug("Document inserted", collection=collection_name, document_id=str(result.inserted_id))
        return result.inserted_id

    def replace_one(self, collection_name: str, filter_dict: Dict[str, Any], document: Dict[str, Any]) -> int:
        try:
            result = self.get_collection(collection_name).replace_one(filter_dict, document)
        except PyMongoError as e:
            raise self._fail(e, DatabaseOperationType.WRITE, collection_name)
        return result.matched_count

    def find_one_and_update(
        self,
        collection_name: str,
        filter_dict: Dict[str, Any],
        update: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Apply ``update`` atomically and return the document after the change."""
        try:
            return self.get_collection(collection_name).find_one_and_update(
                filter_dict, update, return_document=ReturnDocument.AFTER
            )
        except PyMongoError as e:
            raise self._fail(e, DatabaseOperationType.WRITE, collection_name)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def create_index(self, collection_name: str, keys: Union[str, List[Tuple[str, int]]], **kwargs) -> str:
        try:
            return self.get_collection(collection_name).create_index(keys, **kwargs)
        except PyMongoError as e:
            raise self._fail(e, DatabaseOperationType.INDEX, collection_name)

    def health_check(self) -> Dict[str, Any]:
        """Ping the server and report latency."""
        health_status: Dict[str, Any] = {
            'status': 'unknown',
            'database': self.database_name,
            'timestamp': datetime.now(timezone.utc).isoformat(),
        }
        try:
            start_time = time.perf_counter()
            self.client.admin.command('ping')
            health_status['latency_ms'] = round((time.perf_counter() - start_time) * 1000, 2)
            health_status['status'] = 'healthy'
        except PyMongoError as e:
            health_status['status'] = 'unhealthy'
            health_status['error_type'] = type(e).__name__
        return health_status

    def close(self) -> None:
        self._client.close()


def validate_object_id(object_id: Union[str, ObjectId]) -> ObjectId:
    """
    Convert a string id into an ``ObjectId``.

    Raises:
        QueryException: On a malformed id
    """
    if isinstance(object_id, ObjectId):
        return object_id
    try:
        return ObjectId(str(object_id))
    except (InvalidId, TypeError) as e:
        raise QueryException(
            f"Invalid ObjectId format: {object_id}",
            operation=DatabaseOperationType.READ,
            original_error=e
        )


def is_object_id(value: Any) -> bool:
    return isinstance(value, ObjectId) or (isinstance(value, str) and ObjectId.is_valid(value))


__all__ = ['MongoDBManager', 'is_object_id', 'validate_object_id']
