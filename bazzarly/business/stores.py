"""
Store entity: a seller storefront owned by one user and optionally
co-managed by a bounded list of store admins.
"""

from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from bson import ObjectId
from pydantic import Field

from bazzarly.business.exceptions import ConflictError, DataValidationError, StateTransitionError
from bazzarly.business.models import (
    AddressType,
    EmbeddedModel,
    MongoBaseModel,
    PyObjectId,
    StoreAdminRole,
    StorePermission,
    StoreStatus,
    SubscriptionPlan,
    UpdateDocument,
    UtcDateTime,
    enforce_single_primary,
    same_id,
    slugify,
    utc_now,
)
from bazzarly.config.settings import DEFAULT_LIFECYCLE, LifecycleSettings

ALL_STORE_PERMISSIONS: FrozenSet[str] = frozenset(p.value for p in StorePermission)

# Permissions that satisfy each management action
ACTION_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    'view': ALL_STORE_PERMISSIONS,
    'edit': frozenset({StorePermission.MANAGE_PRODUCTS.value, StorePermission.MANAGE_SETTINGS.value}),
    'manage_products': frozenset({StorePermission.MANAGE_PRODUCTS.value}),
    'manage_orders': frozenset({StorePermission.MANAGE_ORDERS.value}),
    'manage_settings': frozenset({StorePermission.MANAGE_SETTINGS.value}),
    'view_analytics': frozenset({StorePermission.VIEW_ANALYTICS.value}),
}

STATUS_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    StoreStatus.PENDING.value: frozenset({StoreStatus.ACTIVE.value, StoreStatus.CLOSED.value}),
    StoreStatus.ACTIVE.value: frozenset({StoreStatus.SUSPENDED.value, StoreStatus.CLOSED.value}),
    StoreStatus.SUSPENDED.value: frozenset({StoreStatus.ACTIVE.value, StoreStatus.CLOSED.value}),
    StoreStatus.CLOSED.value: frozenset(),
}

WEEKDAYS = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')


class StoreAdmin(EmbeddedModel):
    user: PyObjectId
    role: StoreAdminRole = StoreAdminRole.VIEWER
    permissions: List[StorePermission] = Field(default_factory=list)
    added_at: UtcDateTime = Field(default_factory=utc_now)


class StoreBranding(EmbeddedModel):
    logo: Optional[str] = None
    banner: Optional[str] = None
    primary_color: str = '#007bff'
    secondary_color: str = '#6c757d'


class StoreSocial(EmbeddedModel):
    facebook: Optional[str] = None
    twitter: Optional[str] = None
    instagram: Optional[str] = None
    linkedin: Optional[str] = None


class StoreContact(EmbeddedModel):
    email: str
    phone: Optional[str] = None
    website: Optional[str] = None
    social: StoreSocial = Field(default_factory=StoreSocial)


class StoreAddress(EmbeddedModel):
    type: AddressType = AddressType.PRIMARY
    street: Optional[str] = None
    city: str
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: str = 'US'
    is_default: bool = False


class StoreBusiness(EmbeddedModel):
    type: str = 'individual'
    category: Optional[str] = None
    tax_id: Optional[str] = None
    business_license: Optional[str] = None
    registration_number: Optional[str] = None
    years_in_business: Optional[int] = None


class StoreSettings(EmbeddedModel):
    is_public: bool = True
    allow_reviews: bool = True
    auto_approve_products: bool = False
    currency: str = 'USD'
    timezone: str = 'UTC'


class StoreAnalytics(EmbeddedModel):
    total_views: int = 0
    total_products: int = 0
    total_orders: int = 0
    total_revenue: float = 0.0
    average_rating: float = 0.0
    review_count: int = 0
    followers: int = 0


class StoreDocument(EmbeddedModel):
    type: str
    url: str
    uploaded_at: UtcDateTime = Field(default_factory=utc_now)


class StoreVerification(EmbeddedModel):
    is_verified: bool = False
    verified_at: Optional[UtcDateTime] = None
    documents: List[StoreDocument] = Field(default_factory=list)


class SubscriptionLimits(EmbeddedModel):
    products: int = 10
    admin_users: int = 1


class StoreSubscription(EmbeddedModel):
    plan: SubscriptionPlan = SubscriptionPlan.FREE
    limits: SubscriptionLimits = Field(default_factory=SubscriptionLimits)
    expires_at: Optional[UtcDateTime] = None


class StorePolicies(EmbeddedModel):
    return_policy: Optional[str] = None
    shipping_policy: Optional[str] = None
    privacy_policy: Optional[str] = None


class DayHours(EmbeddedModel):
    open: str = '09:00'
    close: str = '17:00'
    closed: bool = False


class StoreHours(EmbeddedModel):
    monday: DayHours = Field(default_factory=DayHours)
    tuesday: DayHours = Field(default_factory=DayHours)
    wednesday: DayHours = Field(default_factory=DayHours)
    thursday: DayHours = Field(default_factory=DayHours)
    friday: DayHours = Field(default_factory=DayHours)
    saturday: DayHours = Field(default_factory=DayHours)
    sunday: DayHours = Field(default_factory=lambda: DayHours(closed=True))


class StoreDeal(EmbeddedModel):
    title: str
    description: Optional[str] = None
    discount: float = 0.0
    valid_until: Optional[UtcDateTime] = None
    is_active: bool = True


class StoreFeatured(EmbeddedModel):
    products: List[PyObjectId] = Field(default_factory=list)
    deals: List[StoreDeal] = Field(default_factory=list)
    announcements: List[str] = Field(default_factory=list)


class Store(MongoBaseModel):
    """Storefront aggregate. Admins and addresses are owned child records."""

    name: str = Field(max_length=100)
    slug: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=1000)
    tagline: Optional[str] = Field(default=None, max_length=200)
    owner: PyObjectId
    admins: List[StoreAdmin] = Field(default_factory=list)
    branding: StoreBranding = Field(default_factory=StoreBranding)
    contact: StoreContact
    addresses: List[StoreAddress] = Field(default_factory=list)
    business: StoreBusiness = Field(default_factory=StoreBusiness)
    settings: StoreSettings = Field(default_factory=StoreSettings)
    analytics: StoreAnalytics = Field(default_factory=StoreAnalytics)
    status: StoreStatus = StoreStatus.PENDING
    verification: StoreVerification = Field(default_factory=StoreVerification)
    subscription: StoreSubscription = Field(default_factory=StoreSubscription)
    policies: StorePolicies = Field(default_factory=StorePolicies)
    hours: StoreHours = Field(default_factory=StoreHours)
    featured: StoreFeatured = Field(default_factory=StoreFeatured)

    @property
    def url(self) -> str:
        return f"/store/{self.slug}"

    @property
    def primary_address(self) -> Optional[StoreAddress]:
        for address in self.addresses:
            if address.is_default:
                return address
        return self.addresses[0] if self.addresses else None

    def is_open(self, now: Optional[datetime] = None) -> bool:
        """Whether ``now`` falls inside today's opening hours."""
        now = now or utc_now()
        day = getattr(self.hours, WEEKDAYS[now.weekday()])
        if day.closed:
            return False
        current = now.strftime('%H:%M')
        return day.open <= current < day.close

    def normalized(
        self,
        settings: LifecycleSettings = DEFAULT_LIFECYCLE,
        now: Optional[datetime] = None
    ) -> 'Store':
        """Copy with slug derived from the name and a single default address."""
        now = now or utc_now()
        store = self.model_copy(deep=True)
        if not store.slug:
            store.slug = slugify(store.name, settings.slug_max_length)
        enforce_single_primary(store.addresses, 'is_default')
        if store.created_at is None:
            store.created_at = now
        store.updated_at = now
        return store

    # ------------------------------------------------------------------
    # Staff
    # ------------------------------------------------------------------

    def find_admin(self, user_id: Any) -> Optional[StoreAdmin]:
        for admin in self.admins:
            if same_id(admin.user, user_id):
                return admin
        return None

    def can_user_manage(self, user_id: Any, action: str = 'view') -> bool:
        """
        Check whether a user may perform a management action on this store.

        The owner may do anything. Other users need an admin entry whose
        permissions intersect the set required by ``action``. Actions missing
        from ``ACTION_PERMISSIONS`` are reserved for the owner.
        """
        if same_id(self.owner, user_id):
            return True
        admin = self.find_admin(user_id)
        if admin is None:
            return False
        required = ACTION_PERMISSIONS.get(action, frozenset())
        return any(permission in required for permission in admin.permissions)

    def add_admin(
        self,
        user_id: Any,
        role: str = StoreAdminRole.VIEWER.value,
        permissions: Optional[List[str]] = None,
        now: Optional[datetime] = None
    ) -> UpdateDocument:
        """
        Raises:
            ConflictError: When the user already manages the store or the
                subscription's admin limit is reached
        """
        if same_id(self.owner, user_id) or self.find_admin(user_id) is not None:
            raise ConflictError("User is already a store administrator")
        if len(self.admins) >= self.subscription.limits.admin_users:
            raise ConflictError(
                "Store administrator limit reached for the current subscription",
                context={'limit': self.subscription.limits.admin_users}
            )
        admin = StoreAdmin(
            user=ObjectId(str(user_id)),
            role=role,
            permissions=permissions or [],
            added_at=now or utc_now(),
        )
        self.admins.append(admin)
        return {'$push': {'admins': admin.model_dump()}}

    def remove_admin(self, user_id: Any) -> UpdateDocument:
        admin = self.find_admin(user_id)
        if admin is None:
            return {}
        self.admins.remove(admin)
        return {'$pull': {'admins': {'user': admin.user}}}

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def change_status(self, target: str, verified: Optional[bool] = None, now: Optional[datetime] = None) -> UpdateDocument:
        """
        Move the store through pending -> active <-> suspended, any -> closed.

        Raises:
            StateTransitionError: When ``target`` is not reachable from the current status
        """
        current = self.status
        if target not in STATUS_TRANSITIONS[current]:
            raise StateTransitionError(
                f"Cannot change store status from {current} to {target}",
                current_state=current,
                target_state=target,
            )
        self.status = target
        updates: Dict[str, Any] = {'status': target}
        if verified is not None:
            self.verification.is_verified = verified
            self.verification.verified_at = (now or utc_now()) if verified else None
            updates['verification.is_verified'] = verified
            updates['verification.verified_at'] = self.verification.verified_at
        return {'$set': updates}

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def update_analytics(self, **counters: float) -> UpdateDocument:
        """
        Increment analytics counters, e.g. ``update_analytics(total_orders=1, total_revenue=25.0)``.

        Raises:
            DataValidationError: When a name is not an analytics counter
        """
        unknown = sorted(set(counters) - set(StoreAnalytics.model_fields))
        if unknown:
            raise DataValidationError(f"Unknown store analytics metric: {', '.join(unknown)}")
        increments = {}
        for metric, amount in counters.items():
            setattr(self.analytics, metric, getattr(self.analytics, metric) + amount)
            increments[f'analytics.{metric}'] = amount
        return {'$inc': increments} if increments else {}

    def add_view(self) -> UpdateDocument:
        return self.update_analytics(total_views=1)

    def active_deals(self, now: Optional[datetime] = None) -> List[StoreDeal]:
        now = now or utc_now()
        return [
            deal for deal in self.featured.deals
            if deal.is_active and (deal.valid_until is None or deal.valid_until > now)
        ]

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def to_public_json(self) -> Dict[str, Any]:
        """Public view without tax, licensing, verification documents or subscription."""
        data = self.model_dump(mode='json')
        for key in ('tax_id', 'business_license', 'registration_number'):
            data['business'].pop(key, None)
        data['verification'].pop('documents', None)
        data.pop('subscription', None)
        data['url'] = self.url
        primary = self.primary_address
        data['primary_address'] = primary.model_dump(mode='json') if primary else None
        data['is_open'] = self.is_open()
        return data


__all__ = [
    'ACTION_PERMISSIONS',
    'STATUS_TRANSITIONS',
    'Store',
    'StoreAddress',
    'StoreAdmin',
    'StoreContact',
    'StoreDeal',
]
