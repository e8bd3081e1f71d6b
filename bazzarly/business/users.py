"""
User entity and its lifecycle rules.

Covers registration defaults, password hashing on persist, email/phone
verification, the login-attempt lockout counter, permission checks and the
privacy-filtered public projection.

Mutators change the in-memory user and return the equivalent MongoDB update
document so the service layer can apply the same change atomically.
"""

import hashlib
import secrets
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from pydantic import Field, PrivateAttr, field_validator
from werkzeug.security import check_password_hash, generate_password_hash

from bazzarly.business.models import (
    EmbeddedModel,
    MongoBaseModel,
    Permission,
    PyObjectId,
    UpdateDocument,
    UserRole,
    UserStatus,
    UtcDateTime,
    same_id,
    utc_now,
)
from bazzarly.config.settings import DEFAULT_LIFECYCLE, LifecycleSettings

# Permissions an admin holds without an explicit grant
ADMIN_IMPLIED_PERMISSIONS: FrozenSet[str] = frozenset({
    Permission.MANAGE_USERS.value,
    Permission.MANAGE_STORES.value,
    Permission.MANAGE_PRODUCTS.value,
    Permission.VIEW_ANALYTICS.value,
    Permission.MANAGE_CATEGORIES.value,
    Permission.MANAGE_ADS.value,
    Permission.MODERATE_CONTENT.value,
})

PRIVILEGED_ROLES: FrozenSet[str] = frozenset({UserRole.ADMIN.value, UserRole.SUPER_ADMIN.value})

# Never leave the server
SECRET_FIELDS = {
    'password',
    'email_verification_token',
    'phone_verification_code',
    'reset_password_token',
    'reset_password_expires',
    'login_attempts',
    'lock_until',
}


class NotificationPreferences(EmbeddedModel):
    email: bool = True
    sms: bool = False
    push: bool = True


class PrivacyPreferences(EmbeddedModel):
    show_phone: bool = False
    show_email: bool = False
    show_location: bool = True


class UserPreferences(EmbeddedModel):
    notifications: NotificationPreferences = Field(default_factory=NotificationPreferences)
    privacy: PrivacyPreferences = Field(default_factory=PrivacyPreferences)
    language: str = 'en'
    currency: str = 'USD'


class UserLocation(EmbeddedModel):
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    zip_code: Optional[str] = None


class BusinessInfo(EmbeddedModel):
    business_name: Optional[str] = None
    business_type: Optional[str] = None
    tax_id: Optional[str] = None
    website: Optional[str] = None


class UserStats(EmbeddedModel):
    total_listings: int = 0
    active_listings: int = 0
    sold_items: int = 0
    rating: float = 0.0
    review_count: int = 0
    join_date: UtcDateTime = Field(default_factory=utc_now)
    last_active: UtcDateTime = Field(default_factory=utc_now)


def hash_token(token: str) -> str:
    """One-way digest used to store reset tokens."""
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def generate_verification_code() -> str:
    """Six-digit phone verification code."""
    return f"{secrets.randbelow(900000) + 100000}"


class User(MongoBaseModel):
    """Marketplace account."""

    first_name: str
    last_name: str
    email: str
    phone: Optional[str] = None
    password: Optional[str] = None

    email_verified: bool = False
    phone_verified: bool = False
    email_verification_token: Optional[str] = None
    phone_verification_code: Optional[str] = None

    role: UserRole = UserRole.USER
    permissions: List[Permission] = Field(default_factory=list)

    avatar: Optional[str] = None
    bio: Optional[str] = Field(default=None, max_length=500)
    location: UserLocation = Field(default_factory=UserLocation)
    business_info: BusinessInfo = Field(default_factory=BusinessInfo)
    preferences: UserPreferences = Field(default_factory=UserPreferences)
    stats: UserStats = Field(default_factory=UserStats)

    status: UserStatus = UserStatus.PENDING
    suspension_reason: Optional[str] = None

    reset_password_token: Optional[str] = None
    reset_password_expires: Optional[UtcDateTime] = None
    login_attempts: int = 0
    lock_until: Optional[UtcDateTime] = None

    store_id: Optional[PyObjectId] = None

    _pending_password: Optional[str] = PrivateAttr(default=None)

    @field_validator('email')
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator('phone')
    @classmethod
    def blank_phone_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return v.strip()

    @classmethod
    def create(cls, *, password: str, **fields: Any) -> 'User':
        """Build a new account; the password is hashed when it is persisted."""
        user = cls(**fields)
        user.set_password(password)
        return user

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def is_locked_at(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    @property
    def is_locked(self) -> bool:
        return self.is_locked_at(utc_now())

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def set_password(self, raw_password: str) -> None:
        """Mark a new plain password to be hashed on the next persist."""
        self._pending_password = raw_password

    @property
    def has_pending_password(self) -> bool:
        return self._pending_password is not None

    def check_password(self, raw_password: str) -> bool:
        if not self.password or raw_password is None:
            return False
        return check_password_hash(self.password, raw_password)

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalized(
        self,
        settings: LifecycleSettings = DEFAULT_LIFECYCLE,
        now: Optional[datetime] = None
    ) -> 'User':
        """
        Return a copy ready to persist.

        A pending plain password is replaced by its hash; an existing stored
        hash is left untouched.
        """
        now = now or utc_now()
        user = self.model_copy(deep=True)
        if user.has_pending_password:
            user.password = generate_password_hash(
                user._pending_password, method=settings.password_hash_method
            )
            user._pending_password = None
        if user.created_at is None:
            user.created_at = now
        user.updated_at = now
        return user

    # ------------------------------------------------------------------
    # Login lockout
    # ------------------------------------------------------------------

    def register_failed_login(
        self,
        settings: LifecycleSettings = DEFAULT_LIFECYCLE,
        now: Optional[datetime] = None
    ) -> UpdateDocument:
        """
        Count a failed credential check.

        An expired lock restarts the counter at 1. Otherwise the counter is
        incremented and, on reaching ``max_login_attempts`` while not already
        locked, the account locks for ``lock_duration``.
        """
        now = now or utc_now()
        if self.lock_until is not None and self.lock_until < now:
            self.login_attempts = 1
            self.lock_until = None
            return {'$set': {'login_attempts': 1}, '$unset': {'lock_until': ''}}

        update: UpdateDocument = {'$inc': {'login_attempts': 1}}
        if self.login_attempts + 1 >= settings.max_login_attempts and not self.is_locked_at(now):
            self.lock_until = now + settings.lock_duration
            update['$set'] = {'lock_until': self.lock_until}
        self.login_attempts += 1
        return update

    def reset_login_attempts(self) -> UpdateDocument:
        self.login_attempts = 0
        self.lock_until = None
        return {'$set': {'login_attempts': 0}, '$unset': {'lock_until': ''}}

    def touch_last_active(self, now: Optional[datetime] = None) -> UpdateDocument:
        self.stats.last_active = now or utc_now()
        return {'$set': {'stats.last_active': self.stats.last_active}}

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def _activate_if_verified(self, update: UpdateDocument) -> None:
        if self.status != UserStatus.PENDING:
            return
        if self.email_verified and (self.phone_verified or not self.phone):
            self.status = UserStatus.ACTIVE
            update['$set']['status'] = UserStatus.ACTIVE.value

    def confirm_email(self) -> UpdateDocument:
        """Mark the email verified and activate the account when nothing else is pending."""
        self.email_verified = True
        self.email_verification_token = None
        update: UpdateDocument = {
            '$set': {'email_verified': True},
            '$unset': {'email_verification_token': ''},
        }
        self._activate_if_verified(update)
        return update

    def confirm_phone(self) -> UpdateDocument:
        self.phone_verified = True
        self.phone_verification_code = None
        update: UpdateDocument = {
            '$set': {'phone_verified': True},
            '$unset': {'phone_verification_code': ''},
        }
        self._activate_if_verified(update)
        return update

    def issue_email_verification(self) -> UpdateDocument:
        self.email_verification_token = secrets.token_hex(32)
        return {'$set': {'email_verification_token': self.email_verification_token}}

    def issue_password_reset(
        self,
        settings: LifecycleSettings = DEFAULT_LIFECYCLE,
        now: Optional[datetime] = None
    ) -> Tuple[str, UpdateDocument]:
        """
        Create a reset token.

        Returns:
            The raw token to deliver, and the update storing only its digest
        """
        now = now or utc_now()
        raw_token = secrets.token_hex(32)
        self.reset_password_token = hash_token(raw_token)
        self.reset_password_expires = now + settings.password_reset_ttl
        return raw_token, {'$set': {
            'reset_password_token': self.reset_password_token,
            'reset_password_expires': self.reset_password_expires,
        }}

    def clear_password_reset(self) -> None:
        self.reset_password_token = None
        self.reset_password_expires = None

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    def has_permission(self, permission: str) -> bool:
        permission = getattr(permission, 'value', permission)
        if self.role == UserRole.SUPER_ADMIN:
            return True
        if self.role == UserRole.ADMIN:
            return permission in ADMIN_IMPLIED_PERMISSIONS
        return permission in self.permissions

    def can_manage_store(self, store_id: Any) -> bool:
        if self.role in PRIVILEGED_ROLES:
            return True
        return self.role == UserRole.STORE_OWNER and same_id(self.store_id, store_id)

    @property
    def is_admin(self) -> bool:
        return self.role in PRIVILEGED_ROLES

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------

    def to_mongo_dict(self) -> Dict[str, Any]:
        # Absent rather than null so the sparse unique phone index skips it
        data = super().to_mongo_dict()
        if data.get('phone') is None:
            data.pop('phone', None)
        return data

    def to_owner_json(self) -> Dict[str, Any]:
        """The account holder's own view: everything except secrets."""
        data = self.model_dump(mode='json', exclude=SECRET_FIELDS)
        data['full_name'] = self.full_name
        return data

    def to_public_json(self) -> Dict[str, Any]:
        """View shown to other users, honouring the privacy preferences."""
        data = self.to_owner_json()
        privacy = self.preferences.privacy
        if not privacy.show_phone:
            data.pop('phone', None)
        if not privacy.show_email:
            data.pop('email', None)
        if not privacy.show_location:
            data.pop('location', None)
        return data


__all__ = [
    'ADMIN_IMPLIED_PERMISSIONS',
    'PRIVILEGED_ROLES',
    'SECRET_FIELDS',
    'User',
    'UserPreferences',
    'generate_verification_code',
    'hash_token',
]
