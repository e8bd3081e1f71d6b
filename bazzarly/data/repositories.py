"""
Repositories mapping Bazzarly entities to MongoDB collections.

Repositories are the persistence boundary: ``save`` runs the entity's
``normalized`` step immediately before the single write, and ``apply`` runs a
mutator's update document atomically, optionally guarded by the state the
caller expects the document to be in.
"""

import re
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, Tuple, Type, TypeVar

import structlog
from bson import ObjectId

from bazzarly.business.exceptions import ConflictError
from bazzarly.business.models import MongoBaseModel, utc_now
from bazzarly.business.products import Product
from bazzarly.business.stores import Store
from bazzarly.business.users import User
from bazzarly.config.settings import DEFAULT_LIFECYCLE, LifecycleSettings
from bazzarly.data.exceptions import DuplicateKeyException
from bazzarly.data.mongodb import MongoDBManager, SortSpec, is_object_id, validate_object_id

logger = structlog.get_logger(__name__)

EntityT = TypeVar('EntityT', bound=MongoBaseModel)


class BaseRepository(Generic[EntityT]):
    """Common load/save/update operations for one collection."""

    collection_name: str = ''
    model_class: Type[EntityT]
    duplicate_message = "Resource already exists"

    def __init__(self, db: MongoDBManager, settings: LifecycleSettings = DEFAULT_LIFECYCLE):
        self.db = db
        self.settings = settings

    def ensure_indexes(self) -> None:
        """Create the collection's indexes."""

    def _to_entity(self, document: Optional[Dict[str, Any]]) -> Optional[EntityT]:
        return self.model_class.from_mongo_dict(document)

    def get(self, entity_id: Any) -> Optional[EntityT]:
        """Load by id; malformed ids resolve to nothing."""
        if not is_object_id(entity_id):
            return None
        return self._to_entity(self.db.find_one_by_id(self.collection_name, entity_id))

    def find_one(self, filter_dict: Dict[str, Any]) -> Optional[EntityT]:
        return self._to_entity(self.db.find_one(self.collection_name, filter_dict))

    def find_many(
        self,
        filter_dict: Optional[Dict[str, Any]] = None,
        sort: SortSpec = None,
        skip: int = 0,
        limit: int = 0
    ) -> List[EntityT]:
        documents = self.db.find_many(self.collection_name, filter_dict, sort=sort, skip=skip, limit=limit)
        return [self._to_entity(document) for document in documents]

    def count(self, filter_dict: Optional[Dict[str, Any]] = None) -> int:
        return self.db.count_documents(self.collection_name, filter_dict)

    def aggregate(self, pipeline: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return self.db.aggregate(self.collection_name, pipeline)

    def paginate(
        self,
        filter_dict: Dict[str, Any],
        page: int = 1,
        limit: int = 20,
        sort: SortSpec = None
    ) -> Tuple[List[EntityT], int]:
        """Return one page of entities and the total match count."""
        skip = (page - 1) * limit
        return self.find_many(filter_dict, sort=sort, skip=skip, limit=limit), self.count(filter_dict)

    def save(self, entity: EntityT, now: Optional[datetime] = None) -> EntityT:
        """
        Normalize and persist an entity, inserting it when it has no id.

        Raises:
            ConflictError: On a unique index violation
        """
        normalized = entity.normalized(self.settings, now or utc_now())
        document = normalized.to_mongo_dict()
        try:
            if normalized.id is None:
                normalized.id = self.db.insert_one(self.collection_name, document)
            else:
                self.db.replace_one(self.collection_name, {'_id': normalized.id}, document)
        except DuplicateKeyException as e:
            raise ConflictError(self.duplicate_message, context={'key': e.key_value})
        logger.debug("Entity saved", collection=self.collection_name, entity_id=str(normalized.id))
        return normalized

    def apply(
        self,
        entity_id: Any,
        update: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> Optional[EntityT]:
        """
        Apply an update document atomically.

        Args:
            entity_id: Target document id
            update: MongoDB update operators produced by an entity mutator
            expected: Extra filter conditions the document must still satisfy

        Returns:
            The updated entity, or None when no document matched
        """
        filter_dict: Dict[str, Any] = {'_id': validate_object_id(entity_id)}
        filter_dict.update(expected or {})
        update = {operator: dict(values) for operator, values in update.items() if values}
        update.setdefault('$set', {})['updated_at'] = now or utc_now()
        try:
            document = self.db.find_one_and_update(self.collection_name, filter_dict, update)
        except DuplicateKeyException as e:
            raise ConflictError(self.duplicate_message, context={'key': e.key_value})
        return self._to_entity(document)


def _contains(text: str) -> Dict[str, Any]:
    return {'$regex': re.escape(text), '$options': 'i'}


class UserRepository(BaseRepository[User]):
    collection_name = 'users'
    model_class = User
    duplicate_message = "User already exists with this email or phone number"

    def ensure_indexes(self) -> None:
        self.db.create_index(self.collection_name, [('email', 1)], unique=True)
        self.db.create_index(self.collection_name, [('phone', 1)], unique=True, sparse=True)
        self.db.create_index(self.collection_name, [('role', 1), ('status', 1)])

    def find_by_identifier(self, identifier: str) -> Optional[User]:
        """Look a user up by email (case-insensitive) or phone."""
        identifier = (identifier or '').strip()
        if not identifier:
            return None
        return self.find_one({'$or': [{'email': identifier.lower()}, {'phone': identifier}]})

    def exists_with_contact(self, email: str, phone: Optional[str] = None) -> bool:
        clauses: List[Dict[str, Any]] = [{'email': email.lower()}]
        if phone:
            clauses.append({'phone': phone})
        return self.db.find_one(self.collection_name, {'$or': clauses}) is not None

    def find_by_reset_token(self, token_digest: str, now: datetime) -> Optional[User]:
        return self.find_one({
            'reset_password_token': token_digest,
            'reset_password_expires': {'$gt': now},
        })

    def find_by_email_token(self, token: str) -> Optional[User]:
        return self.find_one({'email_verification_token': token})


class StoreRepository(BaseRepository[Store]):
    collection_name = 'stores'
    model_class = Store
    duplicate_message = "A store with this name already exists"

    def ensure_indexes(self) -> None:
        self.db.create_index(self.collection_name, [('slug', 1)], unique=True)
        self.db.create_index(self.collection_name, [('owner', 1)])
        self.db.create_index(self.collection_name, [('status', 1)])

    def find_by_slug(self, slug: str) -> Optional[Store]:
        return self.find_one({'slug': (slug or '').lower()})

    def search_filter(self, query: Optional[str] = None, category: Optional[str] = None) -> Dict[str, Any]:
        """Active public stores matching a name/description/tagline query."""
        filter_dict: Dict[str, Any] = {'status': 'active', 'settings.is_public': True}
        if query:
            filter_dict['$or'] = [
                {'name': _contains(query)},
                {'description': _contains(query)},
                {'tagline': _contains(query)},
            ]
        if category:
            filter_dict['business.category'] = category
        return filter_dict


class ProductRepository(BaseRepository[Product]):
    collection_name = 'products'
    model_class = Product
    duplicate_message = "A product with this slug already exists"

    def ensure_indexes(self) -> None:
        self.db.create_index(self.collection_name, [('slug', 1)])
        self.db.create_index(self.collection_name, [('seller', 1), ('created_at', -1)])
        self.db.create_index(self.collection_name, [('category', 1), ('availability', 1)])
        self.db.create_index(self.collection_name, [('moderation.status', 1)])
        self.db.create_index(self.collection_name, [('location.city', 1)])

    @staticmethod
    def available_filter(now: datetime) -> Dict[str, Any]:
        """Query matching listings that can currently be bought."""
        return {
            'availability': 'available',
            'settings.is_active': True,
            'settings.is_public': True,
            'moderation.status': 'approved',
            'quantity': {'$gt': 0},
            '$or': [
                {'settings.expires_at': None},
                {'settings.expires_at': {'$gt': now}},
            ],
        }

    def search_filter(self, query: str, now: datetime) -> Dict[str, Any]:
        """Available listings whose title, description or tags contain ``query``."""
        filter_dict = self.available_filter(now)
        filter_dict['$and'] = [{'$or': [
            {'title': _contains(query)},
            {'description': _contains(query)},
            {'tags': _contains(query)},
        ]}]
        return filter_dict

    def seller_products(self, seller_id: Any, limit: int = 0) -> List[Product]:
        return self.find_many({'seller': ObjectId(str(seller_id))}, sort=[('created_at', -1)], limit=limit)


__all__ = [
    'BaseRepository',
    'ProductRepository',
    'StoreRepository',
    'UserRepository',
]
