"""
Shared model foundation for the Bazzarly domain entities.

Provides the pydantic base class for MongoDB documents, the ``ObjectId``
field type, timezone-aware datetime handling, the enumerations used across
entities, and the normalization helpers shared by the entity lifecycle rules:

- ``slugify``: deterministic URL slug from a title or name
- ``enforce_single_primary``: exactly one flagged entry in an ordered list
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Sequence

from bson import ObjectId
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator
from pydantic_core import core_schema


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes (as returned by pymongo) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDateTime = Annotated[datetime, AfterValidator(ensure_utc)]

# MongoDB update document produced by entity mutators, e.g. {"$inc": {...}}
UpdateDocument = Dict[str, Dict[str, Any]]


class PyObjectId(ObjectId):
    """ObjectId field type: stays an ``ObjectId`` in Python, a string in JSON."""

    @classmethod
    def validate(cls, v):
        if not ObjectId.is_valid(v):
            raise ValueError("Invalid ObjectId")
        return ObjectId(v)

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type, handler):
        return core_schema.json_or_python_schema(
            json_schema=core_schema.chain_schema([
                core_schema.str_schema(),
                core_schema.no_info_plain_validator_function(cls.validate),
            ]),
            python_schema=core_schema.union_schema([
                core_schema.is_instance_schema(ObjectId),
                core_schema.chain_schema([
                    core_schema.str_schema(),
                    core_schema.no_info_plain_validator_function(cls.validate),
                ]),
            ]),
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda x: str(x), when_used='json'
            ),
        )


def same_id(left: Any, right: Any) -> bool:
    """Compare two ids that may be ObjectIds or their string form."""
    if left is None or right is None:
        return False
    return str(left) == str(right)


class MongoBaseModel(BaseModel):
    """
    Base model for documents stored in MongoDB.

    Fields are stored under their Python names; the primary key is exposed as
    ``id`` and stored as ``_id``.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=True,
        validate_assignment=True,
        use_enum_values=True,
        validate_default=True,
        extra='ignore',
    )

    id: Optional[PyObjectId] = Field(default=None, alias="_id")
    created_at: Optional[UtcDateTime] = None
    updated_at: Optional[UtcDateTime] = None

    @field_validator('created_at', 'updated_at', mode='before')
    @classmethod
    def parse_datetime_fields(cls, v):
        if isinstance(v, str):
            return datetime.fromisoformat(v.replace('Z', '+00:00'))
        return v

    def to_mongo_dict(self) -> Dict[str, Any]:
        """Dump to a document suitable for pymongo, omitting an unset ``_id``."""
        data = self.model_dump(by_alias=True, mode='python')
        if data.get('_id') is None:
            data.pop('_id', None)
        return data

    @classmethod
    def from_mongo_dict(cls, data: Optional[Dict[str, Any]]):
        if data is None:
            return None
        return cls.model_validate(data)


class EmbeddedModel(BaseModel):
    """Base for sub-documents owned by an aggregate."""

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=True,
        validate_assignment=True,
        use_enum_values=True,
        validate_default=True,
        extra='ignore',
    )


# ============================================================================
# ENUMERATIONS
# ============================================================================

class UserRole(str, Enum):
    USER = "user"
    STORE_OWNER = "store_owner"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class UserStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"
    PENDING = "pending"


class Permission(str, Enum):
    MANAGE_USERS = "manage_users"
    MANAGE_STORES = "manage_stores"
    MANAGE_PRODUCTS = "manage_products"
    VIEW_ANALYTICS = "view_analytics"
    MANAGE_CATEGORIES = "manage_categories"
    MANAGE_ADS = "manage_ads"
    MODERATE_CONTENT = "moderate_content"
    MANAGE_PAYMENTS = "manage_payments"
    SYSTEM_CONFIG = "system_config"


class StoreAdminRole(str, Enum):
    MANAGER = "manager"
    EDITOR = "editor"
    VIEWER = "viewer"


class StorePermission(str, Enum):
    MANAGE_PRODUCTS = "manage_products"
    MANAGE_ORDERS = "manage_orders"
    MANAGE_CUSTOMERS = "manage_customers"
    VIEW_ANALYTICS = "view_analytics"
    MANAGE_SETTINGS = "manage_settings"
    MANAGE_STAFF = "manage_staff"


class StoreStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class AddressType(str, Enum):
    PRIMARY = "primary"
    WAREHOUSE = "warehouse"
    PICKUP = "pickup"
    BILLING = "billing"


class SubscriptionPlan(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class ProductCondition(str, Enum):
    NEW = "new"
    LIKE_NEW = "like-new"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    FOR_PARTS = "for-parts"


class Availability(str, Enum):
    AVAILABLE = "available"
    SOLD = "sold"
    RESERVED = "reserved"
    PENDING = "pending"


class SellerType(str, Enum):
    INDIVIDUAL = "individual"
    STORE = "store"


class ModerationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FLAGGED = "flagged"


class CommentType(str, Enum):
    QUESTION = "question"
    PRICE_INQUIRY = "price_inquiry"
    INTEREST = "interest"
    OFFER = "offer"
    GENERAL = "general"


class CommentStatus(str, Enum):
    ACTIVE = "active"
    HIDDEN = "hidden"
    REPORTED = "reported"


class TransactionType(str, Enum):
    INQUIRY = "inquiry"
    OFFER = "offer"
    NEGOTIATION = "negotiation"
    SALE = "sale"
    CANCELLED = "cancelled"


class ContactMethod(str, Enum):
    PHONE = "phone"
    EMAIL = "email"
    MESSAGE = "message"
    ANY = "any"


# ============================================================================
# NORMALIZATION HELPERS
# ============================================================================

_NON_ALPHANUMERIC = re.compile(r'[^a-z0-9]+')


def slugify(text: str, max_length: Optional[int] = 100) -> str:
    """
    Derive a URL slug.

    Lower-cases the text, collapses every run of non-alphanumeric characters
    into one hyphen and trims hyphens from both ends.

        >>> slugify("Nice  Lamp!!")
        'nice-lamp'
    """
    slug = _NON_ALPHANUMERIC.sub('-', (text or '').lower()).strip('-')
    if max_length is not None:
        slug = slug[:max_length].rstrip('-')
    return slug


def enforce_single_primary(items: Sequence[Any], flag: str) -> None:
    """
    Ensure exactly one entry of a non-empty list has ``flag`` set.

    A single flagged entry keeps the flag. With none, or with several, the
    flag moves to the first entry and is cleared everywhere else. Mutates the
    entries in place.
    """
    if not items:
        return
    flagged = [item for item in items if getattr(item, flag)]
    if len(flagged) == 1:
        return
    for index, item in enumerate(items):
        setattr(item, flag, index == 0)


def enum_values(enum_cls) -> List[str]:
    return [member.value for member in enum_cls]


def merge_updates(*updates: UpdateDocument) -> UpdateDocument:
    """Combine mutator update documents operator by operator."""
    merged: UpdateDocument = {}
    for update in updates:
        for operator, values in (update or {}).items():
            merged.setdefault(operator, {}).update(values)
    return merged


__all__ = [
    'AddressType',
    'Availability',
    'CommentStatus',
    'CommentType',
    'ContactMethod',
    'EmbeddedModel',
    'ModerationStatus',
    'MongoBaseModel',
    'Permission',
    'ProductCondition',
    'PyObjectId',
    'SellerType',
    'StoreAdminRole',
    'StorePermission',
    'StoreStatus',
    'SubscriptionPlan',
    'TransactionType',
    'UserRole',
    'UserStatus',
    'UpdateDocument',
    'UtcDateTime',
    'enforce_single_primary',
    'ensure_utc',
    'enum_values',
    'merge_updates',
    'same_id',
    'slugify',
    'utc_now',
]
