"""
Product listing entity and its lifecycle rules.

A product is an aggregate root owning its images, comments (with embedded
offers), moderation flags and transaction log. Rules implemented here:

- Pre-persist normalization: slug derivation, single primary image,
  one-time ``original_price`` backfill, default listing expiry
- Engagement mutators: views, comments, offers
- Guarded availability transitions: available -> reserved | pending | sold,
  reserved | pending -> available | sold; sold is terminal
- Moderation workflow: pending | flagged -> approved | rejected
- The viewer-dependent public projection
"""

from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, List, Optional

from bson import ObjectId
from pydantic import Field

from bazzarly.business.exceptions import DataValidationError, StateTransitionError
from bazzarly.business.models import (
    Availability,
    CommentStatus,
    CommentType,
    ContactMethod,
    EmbeddedModel,
    ModerationStatus,
    MongoBaseModel,
    ProductCondition,
    PyObjectId,
    SellerType,
    TransactionType,
    UpdateDocument,
    UtcDateTime,
    enforce_single_primary,
    same_id,
    slugify,
    utc_now,
)
from bazzarly.config.settings import DEFAULT_LIFECYCLE, LifecycleSettings

AVAILABILITY_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    Availability.AVAILABLE.value: frozenset({
        Availability.RESERVED.value, Availability.PENDING.value, Availability.SOLD.value,
    }),
    Availability.RESERVED.value: frozenset({Availability.AVAILABLE.value, Availability.SOLD.value}),
    Availability.PENDING.value: frozenset({Availability.AVAILABLE.value, Availability.SOLD.value}),
    Availability.SOLD.value: frozenset(),
}

MODERATION_ACTIONS = {
    'approve': ModerationStatus.APPROVED.value,
    'reject': ModerationStatus.REJECTED.value,
}

MODERATABLE_STATES: FrozenSet[str] = frozenset({
    ModerationStatus.PENDING.value, ModerationStatus.FLAGGED.value,
})


def format_amount(amount: float) -> str:
    if float(amount).is_integer():
        return str(int(amount))
    return f"{amount:.2f}"


# ============================================================================
# EMBEDDED DOCUMENTS
# ============================================================================

class ProductImage(EmbeddedModel):
    url: str
    alt: str = ''
    is_primary: bool = False
    order: int = 0


class CommentOffer(EmbeddedModel):
    amount: float = Field(gt=0)
    is_active: bool = True
    expires_at: Optional[UtcDateTime] = None


class ProductComment(EmbeddedModel):
    id: PyObjectId = Field(default_factory=ObjectId, alias='_id')
    user: PyObjectId
    message: str = Field(max_length=1000)
    type: CommentType = CommentType.GENERAL
    is_public: bool = True
    parent_comment: Optional[PyObjectId] = None
    offers: Optional[CommentOffer] = None
    status: CommentStatus = CommentStatus.ACTIVE
    created_at: UtcDateTime = Field(default_factory=utc_now)
    updated_at: UtcDateTime = Field(default_factory=utc_now)


class ProductAnalytics(EmbeddedModel):
    views: int = 0
    unique_views: int = 0
    inquiries: int = 0
    favorites: int = 0
    shares: int = 0
    last_viewed: Optional[UtcDateTime] = None


class ModerationFlag(EmbeddedModel):
    reason: str
    reported_by: PyObjectId
    reported_at: UtcDateTime = Field(default_factory=utc_now)
    status: str = 'pending'


class ProductModeration(EmbeddedModel):
    status: ModerationStatus = ModerationStatus.PENDING
    approved_by: Optional[PyObjectId] = None
    approved_at: Optional[UtcDateTime] = None
    rejection_reason: Optional[str] = None
    flags: List[ModerationFlag] = Field(default_factory=list)
    is_promoted: bool = False
    promoted_until: Optional[UtcDateTime] = None


class ProductSettings(EmbeddedModel):
    is_active: bool = True
    is_public: bool = True
    allow_offers: bool = True
    allow_questions: bool = True
    auto_renew: bool = False
    expires_at: Optional[UtcDateTime] = None
    urgent_sale: bool = False
    featured_until: Optional[UtcDateTime] = None


class ProductTransaction(EmbeddedModel):
    type: TransactionType
    user: Optional[PyObjectId] = None
    amount: Optional[float] = None
    status: str = 'pending'
    notes: Optional[str] = None
    created_at: UtcDateTime = Field(default_factory=utc_now)


class PhoneContact(EmbeddedModel):
    number: Optional[str] = None
    is_public: bool = False
    is_verified: bool = False


class EmailContact(EmbeddedModel):
    address: Optional[str] = None
    is_public: bool = False


class ProductContact(EmbeddedModel):
    preferred_method: ContactMethod = ContactMethod.MESSAGE
    phone: PhoneContact = Field(default_factory=PhoneContact)
    email: EmailContact = Field(default_factory=EmailContact)
    meeting_preferences: List[str] = Field(default_factory=list)


class Coordinates(EmbeddedModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class ProductLocation(EmbeddedModel):
    address: Optional[str] = None
    city: str
    state: str = ''
    country: str = 'US'
    zip_code: Optional[str] = None
    coordinates: Optional[Coordinates] = None
    is_exact: bool = False
    pickup_only: bool = False
    delivery_available: bool = False
    delivery_radius: Optional[float] = None
    delivery_fee: Optional[float] = None

    @classmethod
    def from_text(cls, text: str) -> 'ProductLocation':
        """Parse a free-form ``"City, State"`` location."""
        city, _, state = (text or '').partition(',')
        return cls(city=city.strip(), state=state.strip())


class ProductBoost(EmbeddedModel):
    is_boosted: bool = False
    boost_type: Optional[str] = None
    boosted_until: Optional[UtcDateTime] = None


# ============================================================================
# PRODUCT AGGREGATE
# ============================================================================

class Product(MongoBaseModel):
    """Marketplace listing."""

    title: str = Field(max_length=100)
    description: str = Field(max_length=2000)
    short_description: Optional[str] = Field(default=None, max_length=200)
    slug: Optional[str] = None

    price: float = Field(ge=0)
    original_price: Optional[float] = Field(default=None, ge=0)
    currency: str = 'USD'
    is_negotiable: bool = False
    min_price: Optional[float] = Field(default=None, ge=0)

    category: str
    sub_category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    brand: Optional[str] = None
    model: Optional[str] = None
    condition: ProductCondition
    availability: Availability = Availability.AVAILABLE
    quantity: int = Field(default=1, ge=0)

    seller_type: SellerType = SellerType.INDIVIDUAL
    seller: PyObjectId
    store: Optional[PyObjectId] = None

    contact: ProductContact = Field(default_factory=ProductContact)
    location: ProductLocation
    images: List[ProductImage] = Field(default_factory=list)
    comments: List[ProductComment] = Field(default_factory=list)
    analytics: ProductAnalytics = Field(default_factory=ProductAnalytics)
    moderation: ProductModeration = Field(default_factory=ProductModeration)
    settings: ProductSettings = Field(default_factory=ProductSettings)
    transactions: List[ProductTransaction] = Field(default_factory=list)
    boost: ProductBoost = Field(default_factory=ProductBoost)

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def url(self) -> str:
        return f"/product/{self.slug or self.id}"

    @property
    def primary_image(self) -> Optional[ProductImage]:
        for image in self.images:
            if image.is_primary:
                return image
        return self.images[0] if self.images else None

    @property
    def discount_percentage(self) -> int:
        if self.original_price and self.original_price > self.price:
            return round((self.original_price - self.price) / self.original_price * 100)
        return 0

    def is_expired_at(self, now: datetime) -> bool:
        expires_at = self.settings.expires_at
        return expires_at is not None and expires_at < now

    @property
    def is_expired(self) -> bool:
        return self.is_expired_at(utc_now())

    @property
    def active_comments(self) -> List[ProductComment]:
        return [c for c in self.comments if c.status == CommentStatus.ACTIVE]

    @property
    def public_comments(self) -> List[ProductComment]:
        return [c for c in self.active_comments if c.is_public]

    def is_available_for_purchase(self, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        return (
            self.availability == Availability.AVAILABLE
            and self.settings.is_active
            and self.settings.is_public
            and self.moderation.status == ModerationStatus.APPROVED
            and not self.is_expired_at(now)
            and self.quantity > 0
        )

    def can_user_edit(self, user_id: Any) -> bool:
        """Only the individual seller may edit; store listings are not editable here."""
        if self.seller_type == SellerType.STORE:
            return False
        return same_id(self.seller, user_id)

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalized(
        self,
        settings: LifecycleSettings = DEFAULT_LIFECYCLE,
        now: Optional[datetime] = None
    ) -> 'Product':
        """
        Return a copy ready to persist.

        Derives a missing slug, enforces a single primary image, back-fills
        ``original_price`` when unset and defaults the listing expiry.
        """
        now = now or utc_now()
        product = self.model_copy(deep=True)
        if not product.slug:
            product.slug = slugify(product.title, settings.slug_max_length)
        enforce_single_primary(product.images, 'is_primary')
        if product.original_price is None:
            product.original_price = product.price
        if product.created_at is None:
            product.created_at = now
        if product.settings.expires_at is None:
            product.settings.expires_at = product.created_at + settings.listing_lifetime
        product.updated_at = now
        return product

    # ------------------------------------------------------------------
    # Engagement
    # ------------------------------------------------------------------

    def add_view(self, viewer_id: Any = None, now: Optional[datetime] = None) -> UpdateDocument:
        """
        Count a view. Any viewer other than the seller also counts towards
        ``unique_views``; repeat visits are not deduplicated.
        """
        now = now or utc_now()
        increments = {'analytics.views': 1}
        self.analytics.views += 1
        if viewer_id is not None and not same_id(viewer_id, self.seller):
            increments['analytics.unique_views'] = 1
            self.analytics.unique_views += 1
        self.analytics.last_viewed = now
        return {'$inc': increments, '$set': {'analytics.last_viewed': now}}

    def find_comment(self, comment_id: Any) -> Optional[ProductComment]:
        for comment in self.comments:
            if same_id(comment.id, comment_id):
                return comment
        return None

    def add_comment(
        self,
        user_id: Any,
        message: str,
        comment_type: str = CommentType.GENERAL.value,
        is_public: bool = True,
        parent_id: Any = None,
        now: Optional[datetime] = None
    ) -> UpdateDocument:
        """
        Append a comment and count it as an inquiry.

        Raises:
            StateTransitionError: When questions are disabled on the listing
            DataValidationError: When ``parent_id`` does not match a comment
        """
        if not self.settings.allow_questions:
            raise StateTransitionError("Questions are disabled for this listing")
        if parent_id is not None and self.find_comment(parent_id) is None:
            raise DataValidationError("Parent comment not found")
        now = now or utc_now()
        comment = ProductComment(
            user=ObjectId(str(user_id)),
            message=message,
            type=comment_type,
            is_public=is_public,
            parent_comment=ObjectId(str(parent_id)) if parent_id is not None else None,
            created_at=now,
            updated_at=now,
        )
        self.comments.append(comment)
        self.analytics.inquiries += 1
        return {
            '$push': {'comments': comment.model_dump(by_alias=True)},
            '$inc': {'analytics.inquiries': 1},
        }

    def make_offer(
        self,
        user_id: Any,
        amount: float,
        message: str = '',
        expires_in_days: Optional[int] = None,
        settings: LifecycleSettings = DEFAULT_LIFECYCLE,
        now: Optional[datetime] = None
    ) -> UpdateDocument:
        """
        Append a private ``offer`` comment. Offers do not count as inquiries.

        Raises:
            StateTransitionError: When offers are disabled on the listing
            DataValidationError: When the amount is not positive
        """
        if not self.settings.allow_offers:
            raise StateTransitionError("Offers are not accepted for this listing")
        if amount is None or amount <= 0:
            raise DataValidationError("Offer amount must be greater than 0")
        now = now or utc_now()
        days = settings.offer_expiry_days if expires_in_days is None else expires_in_days
        comment = ProductComment(
            user=ObjectId(str(user_id)),
            message=message or f"Offering ${format_amount(amount)}",
            type=CommentType.OFFER,
            is_public=False,
            offers=CommentOffer(amount=amount, is_active=True, expires_at=now + timedelta(days=days)),
            created_at=now,
            updated_at=now,
        )
        self.comments.append(comment)
        return {'$push': {'comments': comment.model_dump(by_alias=True)}}

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def _transition_availability(self, target: str) -> str:
        current = self.availability
        if target not in AVAILABILITY_TRANSITIONS[current]:
            raise StateTransitionError(
                f"Cannot change availability from {current} to {target}",
                current_state=current,
                target_state=target,
            )
        self.availability = target
        return current

    def mark_as_sold(
        self,
        buyer_id: Any = None,
        final_price: Optional[float] = None,
        now: Optional[datetime] = None
    ) -> UpdateDocument:
        """
        Close the listing as sold.

        Raises:
            StateTransitionError: When the product is already sold
        """
        self._transition_availability(Availability.SOLD.value)
        now = now or utc_now()
        self.settings.is_active = False
        updates: Dict[str, Any] = {
            'availability': Availability.SOLD.value,
            'settings.is_active': False,
        }
        if final_price is not None:
            self.price = final_price
            updates['price'] = final_price
        update: UpdateDocument = {'$set': updates}
        if buyer_id is not None:
            transaction = ProductTransaction(
                type=TransactionType.SALE,
                user=ObjectId(str(buyer_id)),
                amount=final_price if final_price is not None else self.price,
                status='completed',
                created_at=now,
            )
            self.transactions.append(transaction)
            update['$push'] = {'transactions': transaction.model_dump()}
        return update

    def reserve(self, buyer_id: Any = None, now: Optional[datetime] = None) -> UpdateDocument:
        """Hold the listing for a buyer while a deal is negotiated."""
        self._transition_availability(Availability.RESERVED.value)
        update: UpdateDocument = {'$set': {'availability': Availability.RESERVED.value}}
        if buyer_id is not None:
            transaction = ProductTransaction(
                type=TransactionType.NEGOTIATION,
                user=ObjectId(str(buyer_id)),
                amount=self.price,
                created_at=now or utc_now(),
            )
            self.transactions.append(transaction)
            update['$push'] = {'transactions': transaction.model_dump()}
        return update

    def mark_pending(self) -> UpdateDocument:
        self._transition_availability(Availability.PENDING.value)
        return {'$set': {'availability': Availability.PENDING.value}}

    def release(self) -> UpdateDocument:
        self._transition_availability(Availability.AVAILABLE.value)
        return {'$set': {'availability': Availability.AVAILABLE.value}}

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    def moderate(
        self,
        action: str,
        admin_id: Any,
        reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> UpdateDocument:
        """
        Approve or reject a pending or flagged listing.

        Raises:
            DataValidationError: When ``action`` is not approve/reject
            StateTransitionError: When the listing was already decided
        """
        if action not in MODERATION_ACTIONS:
            raise DataValidationError('Invalid action. Must be "approve" or "reject"')
        target = MODERATION_ACTIONS[action]
        current = self.moderation.status
        if current not in MODERATABLE_STATES:
            raise StateTransitionError(
                f"Cannot {action} a product whose moderation status is {current}",
                current_state=current,
                target_state=target,
            )
        now = now or utc_now()
        self.moderation.status = target
        self.moderation.approved_by = ObjectId(str(admin_id))
        self.moderation.approved_at = now
        self.moderation.rejection_reason = reason if action == 'reject' else None
        return {'$set': {
            'moderation.status': target,
            'moderation.approved_by': self.moderation.approved_by,
            'moderation.approved_at': now,
            'moderation.rejection_reason': self.moderation.rejection_reason,
        }}

    def flag(self, reporter_id: Any, reason: str, now: Optional[datetime] = None) -> UpdateDocument:
        """Record a user report; live or pending listings move to ``flagged``."""
        flag = ModerationFlag(reason=reason, reported_by=ObjectId(str(reporter_id)), reported_at=now or utc_now())
        self.moderation.flags.append(flag)
        update: UpdateDocument = {'$push': {'moderation.flags': flag.model_dump()}}
        if self.moderation.status in (ModerationStatus.PENDING.value, ModerationStatus.APPROVED.value):
            self.moderation.status = ModerationStatus.FLAGGED.value
            update['$set'] = {'moderation.status': ModerationStatus.FLAGGED.value}
        return update

    # ------------------------------------------------------------------
    # Projection
    # ------------------------------------------------------------------

    def to_public_json(self, viewer_id: Any = None) -> Dict[str, Any]:
        """
        Listing as shown to ``viewer_id``.

        Transactions are never included. Non-public contact details and
        imprecise locations are withheld, and only the seller sees private
        comments such as offers.
        """
        data = self.model_dump(mode='json', exclude={'transactions'})

        contact = data['contact']
        if not self.contact.phone.is_public:
            contact['phone'].pop('number', None)
        if not self.contact.email.is_public:
            contact['email'].pop('address', None)

        if not self.location.is_exact:
            data['location'].pop('address', None)
            data['location'].pop('coordinates', None)

        if not same_id(viewer_id, self.seller):
            data['comments'] = [c for c in data['comments'] if c['is_public']]

        primary = self.primary_image
        data['url'] = self.url
        data['primary_image'] = primary.model_dump(mode='json') if primary else None
        data['discount_percentage'] = self.discount_percentage
        data['is_expired'] = self.is_expired
        data['is_available_for_purchase'] = self.is_available_for_purchase()
        return data


__all__ = [
    'AVAILABILITY_TRANSITIONS',
    'CommentOffer',
    'Product',
    'ProductComment',
    'ProductImage',
    'ProductLocation',
    'format_amount',
]
