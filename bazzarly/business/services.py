"""
Business service layer for the Bazzarly marketplace.

Services orchestrate one business operation each: load the aggregate through
its repository, run the entity rule that decides the change, and persist the
resulting update atomically. Entity rules never touch storage; services never
decide business outcomes on their own.

Service Categories:
    UserService: registration, login with lockout, verification, password reset
        and change, administrative account updates
    ProductService: listing creation, views, comments and offers, availability
        transitions, flagging, moderation, browse and search
    StoreService: storefront creation, lookup, staff management, search
    AdminService: dashboard and analytics aggregates

``build_services`` wires all of them over one ``MongoDBManager`` and returns a
``ServiceRegistry`` the Flask application stores in ``app.extensions``.
"""

import re
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import structlog
from bson import ObjectId
from pydantic import ValidationError

from bazzarly.auth.tokens import create_access_token
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
from bazzarly.business.models import (
    Availability,
    ModerationStatus,
    SellerType,
    StoreStatus,
    UserRole,
    UserStatus,
    merge_updates,
    same_id,
    utc_now,
)
from bazzarly.business.products import MODERATION_ACTIONS, Product, ProductLocation
from bazzarly.business.stores import Store
from bazzarly.business.users import User, UserStats, generate_verification_code, hash_token
from bazzarly.config.settings import DEFAULT_LIFECYCLE, LifecycleSettings
from bazzarly.data.mongodb import MongoDBManager, SortSpec, is_object_id
from bazzarly.data.repositories import ProductRepository, StoreRepository, UserRepository
from bazzarly.monitoring.logging import BusinessEventLogger, SecurityAuditLogger
from bazzarly.utils.validators import SCHEMAS, check_field, field_label

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]

INVALID_CREDENTIALS = "Invalid credentials"
DUPLICATE_USER_MESSAGE = "User already exists with this email or phone number"

# Roles a registrant may pick for themselves
SELF_ASSIGNABLE_ROLES = frozenset({UserRole.USER.value, UserRole.STORE_OWNER.value})

DASHBOARD_RANGES = {'7d': 7, '30d': 30, '90d': 90, '1y': 365}
ANALYTICS_TYPES = ('users', 'stores', 'products', 'geography')

PRODUCT_SORTS: Dict[str, SortSpec] = {
    'newest': [('created_at', -1)],
    'price-low': [('price', 1), ('created_at', -1)],
    'price-high': [('price', -1), ('created_at', -1)],
    'rating': [('analytics.favorites', -1), ('created_at', -1)],
}

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
SEARCH_RESULT_LIMIT = 100


def validation_errors(error: ValidationError) -> Dict[str, str]:
    """Flatten pydantic errors into ``{dotted.path: message}``."""
    errors: Dict[str, str] = {}
    for item in error.errors():
        path = '.'.join(str(part) for part in item['loc']) or '__root__'
        errors.setdefault(path, item['msg'])
    return errors


def build_entity(model_class, **fields: Any):
    """
    Instantiate an entity, reporting model constraint failures as input errors.

    Raises:
        DataValidationError: When pydantic rejects a field
    """
    try:
        return model_class(**fields)
    except ValidationError as e:
        raise DataValidationError("Validation failed", errors=validation_errors(e))


def page_window(page: Any = 1, limit: Any = DEFAULT_PAGE_SIZE) -> Tuple[int, int]:
    """Clamp client paging input to ``page >= 1`` and ``1 <= limit <= 100``."""
    try:
        page = max(int(page or 1), 1)
    except (TypeError, ValueError):
        page = 1
    try:
        limit = min(max(int(limit or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    except (TypeError, ValueError):
        limit = DEFAULT_PAGE_SIZE
    return page, limit


def sort_spec(sort_by: Optional[str], sort_order: Optional[str], allowed: Iterable[str]) -> SortSpec:
    """Single-key sort restricted to ``allowed`` fields, newest first by default."""
    field = sort_by if sort_by in set(allowed) else 'created_at'
    return [(field, 1 if sort_order == 'asc' else -1)]


@dataclass
class Page:
    """One page of entities plus the paging inputs that produced it."""
    items: List[Any]
    total: int
    page: int
    limit: int


class BaseBusinessService:
    """
    Base class for the marketplace services.

    Provides the injected clock, lifecycle settings, the event loggers and
    ``service_operation`` which logs the outcome and duration of each call.
    """

    def __init__(
        self,
        settings: LifecycleSettings = DEFAULT_LIFECYCLE,
        clock: Optional[Clock] = None,
        security_log: Optional[SecurityAuditLogger] = None,
        business_log: Optional[BusinessEventLogger] = None
    ):
        self.settings = settings
        self.clock = clock or utc_now
        self.security_log = security_log or SecurityAuditLogger()
        self.business_log = business_log or BusinessEventLogger()

    def now(self) -> datetime:
        return self.clock()

    @contextmanager
    def service_operation(self, operation_name: str, **context: Any):
        start_time = time.perf_counter()
        try:
            yield
        except BaseBusinessException as e:
            logger.info(
                "Business operation rejected",
                service=self.__class__.__name__,
                operation=operation_name,
                error_code=e.error_code,
                reason=e.message,
                **context
            )
            raise
        logger.debug(
            "Business operation completed",
            service=self.__class__.__name__,
            operation=operation_name,
            duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            **context
        )


# ============================================================================
# USERS
# ============================================================================

class UserService(BaseBusinessService):
    """Account lifecycle: registration, login, verification and recovery."""

    def __init__(
        self,
        users: UserRepository,
        token_secret: str,
        token_algorithm: str = 'HS256',
        products: Optional[ProductRepository] = None,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.users = users
        self.products = products
        self.token_secret = token_secret
        self.token_algorithm = token_algorithm

    def issue_token(self, user: User) -> str:
        return create_access_token(
            user.id,
            user.role,
            self.token_secret,
            self.settings.jwt_lifetime,
            algorithm=self.token_algorithm,
            now=self.now(),
        )

    def get_user(self, user_id: Any) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise ResourceNotFoundError("User", str(user_id))
        return user

    def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        phone: Optional[str] = None,
        role: Optional[str] = None,
        ip: Optional[str] = None
    ) -> Tuple[User, str]:
        """
        Create a pending account and issue its access token.

        Privileged roles cannot be self-assigned and fall back to ``user``.

        Raises:
            ConflictError: When the email or phone is already registered (400)
        """
        with self.service_operation('register'):
            if role not in SELF_ASSIGNABLE_ROLES:
                role = UserRole.USER.value
            if self.users.exists_with_contact(email, phone):
                self.security_log.log_suspicious_activity('duplicate_registration', email=email, ip=ip)
                raise ConflictError(DUPLICATE_USER_MESSAGE, error_code="USER_EXISTS", http_status_code=400)

            now = self.now()
            user = User.create(
                password=password,
                email=email,
                first_name=first_name,
                last_name=last_name,
                phone=phone or None,
                role=role,
                stats=UserStats(join_date=now, last_active=now),
            )
            user.issue_email_verification()
            if user.phone:
                user.phone_verification_code = generate_verification_code()

            try:
                user = self.users.save(user, now)
            except ConflictError:
                raise ConflictError(DUPLICATE_USER_MESSAGE, error_code="USER_EXISTS", http_status_code=400)

            logger.info(
                "Verification requested",
                user_id=str(user.id),
                email_pending=True,
                phone_pending=user.phone is not None,
            )
            self.business_log.user_registered(user.id, user.role)
            return user, self.issue_token(user)

    def authenticate(self, identifier: str, password: str, ip: Optional[str] = None) -> Tuple[User, str]:
        """
        Check credentials.

        Order of checks: lock, account status, password. A wrong password
        counts towards the lockout; a success clears the counter.

        Raises:
            AccountLockedError: While ``lock_until`` is in the future
            AuthenticationError: Unknown identifier, wrong password or inactive account
        """
        with self.service_operation('authenticate'):
            user = self.users.find_by_identifier(identifier)
            if user is None:
                self.security_log.log_failed_login(identifier, 'unknown_identifier', ip)
                raise AuthenticationError(INVALID_CREDENTIALS)

            now = self.now()
            if user.is_locked_at(now):
                self.security_log.log_failed_login(identifier, 'account_locked', ip)
                raise AccountLockedError(user.lock_until)

            if user.status != UserStatus.ACTIVE.value:
                self.security_log.log_failed_login(identifier, f'status_{user.status}', ip)
                raise AuthenticationError("Account is not active", error_code="ACCOUNT_INACTIVE")

            if not user.check_password(password):
                update = user.register_failed_login(self.settings, now)
                self.users.apply(user.id, update, now=now)
                self.security_log.log_failed_login(identifier, 'invalid_password', ip)
                if user.is_locked_at(now):
                    self.security_log.log_account_locked(user.id, user.lock_until)
                raise AuthenticationError(INVALID_CREDENTIALS)

            updates = [user.touch_last_active(now)]
            if user.login_attempts > 0 or user.lock_until is not None:
                updates.append(user.reset_login_attempts())
            user = self.users.apply(user.id, merge_updates(*updates), now=now) or user

            self.security_log.log_successful_login(user.id, ip)
            return user, self.issue_token(user)

    def verify_email(self, token: str) -> User:
        with self.service_operation('verify_email'):
            user = self.users.find_by_email_token(token)
            if user is None:
                raise DataValidationError("Invalid verification token")
            return self.users.apply(user.id, user.confirm_email(), now=self.now())

    def verify_phone(self, phone: str, code: str, ip: Optional[str] = None) -> User:
        with self.service_operation('verify_phone'):
            user = self.users.find_one({'phone': phone, 'phone_verification_code': code})
            if user is None:
                self.security_log.log_suspicious_activity('invalid_verification_code', phone=phone, ip=ip)
                raise DataValidationError("Invalid phone number or verification code")
            return self.users.apply(user.id, user.confirm_phone(), now=self.now())

    def resend_email_verification(self, email: str) -> User:
        """
        Raises:
            ResourceNotFoundError: Unknown email
            DataValidationError: Email already verified
        """
        with self.service_operation('resend_email_verification'):
            user = self.users.find_one({'email': (email or '').strip().lower()})
            if user is None:
                raise ResourceNotFoundError("User")
            if user.email_verified:
                raise DataValidationError("Email already verified")
            user = self.users.apply(user.id, user.issue_email_verification(), now=self.now())
            logger.info("Verification email re-issued", user_id=str(user.id))
            return user

    def request_password_reset(self, identifier: str, ip: Optional[str] = None) -> Optional[str]:
        """
        Store a hashed reset token for the matching account.

        Returns:
            The raw token for delivery, or None when no account matches. The
            caller answers identically in both cases.
        """
        with self.service_operation('request_password_reset'):
            user = self.users.find_by_identifier(identifier)
            if user is None:
                logger.info("Password reset requested for unknown account", ip=ip)
                return None
            raw_token, update = user.issue_password_reset(self.settings, self.now())
            self.users.apply(user.id, update, now=self.now())
            logger.info("Password reset token issued", user_id=str(user.id), ip=ip)
            return raw_token

    def reset_password(self, token: str, new_password: str) -> User:
        """
        Raises:
            DataValidationError: Weak password, or an unknown or expired token
        """
        with self.service_operation('reset_password'):
            message = check_field(SCHEMAS['user']['password'], new_password, field_label('newPassword'))
            if message:
                raise DataValidationError(message, errors={'newPassword': message})

            now = self.now()
            user = self.users.find_by_reset_token(hash_token(token), now)
            if user is None:
                raise DataValidationError("Invalid or expired reset token")

            user.set_password(new_password)
            user.clear_password_reset()
            user.reset_login_attempts()
            return self.users.save(user, now)

    def change_password(self, user: User, current_password: str, new_password: str, ip: Optional[str] = None) -> User:
        """
        Replace the password of a signed-in account.

        Raises:
            DataValidationError: Wrong current password, or a weak new one
        """
        with self.service_operation('change_password', user_id=str(user.id)):
            if not user.check_password(current_password):
                self.security_log.log_failed_login(user.email, 'invalid_current_password', ip)
                message = "Current password is incorrect"
                raise DataValidationError(message, errors={'currentPassword': message})

            message = check_field(SCHEMAS['user']['password'], new_password, field_label('newPassword'))
            if message:
                raise DataValidationError(message, errors={'newPassword': message})

            user.set_password(new_password)
            return self.users.save(user, self.now())

    def admin_update(
        self,
        actor: User,
        user_id: Any,
        status: Optional[str] = None,
        role: Optional[str] = None,
        permissions: Optional[List[str]] = None,
        suspension_reason: Optional[str] = None
    ) -> User:
        """
        Change status, role or permissions on behalf of an administrator.

        Raises:
            AuthorizationError: When a non super admin grants ``super_admin``
            DataValidationError: Unknown status, role or permission
        """
        with self.service_operation('admin_update', target_user_id=str(user_id)):
            user = self.get_user(user_id)
            if actor.role != UserRole.SUPER_ADMIN.value:
                if role == UserRole.SUPER_ADMIN.value:
                    raise AuthorizationError("Only a super admin can grant the super_admin role")
                if user.role == UserRole.SUPER_ADMIN.value:
                    raise AuthorizationError("Only a super admin can modify a super admin account")

            changes = {
                'status': status,
                'role': role,
                'permissions': permissions,
                'suspension_reason': suspension_reason,
            }
            changes = {key: value for key, value in changes.items() if value is not None}
            if not changes:
                return user

            try:
                for key, value in changes.items():
                    setattr(user, key, value)
            except ValidationError as e:
                raise DataValidationError("Validation failed", errors=validation_errors(e))

            updated = self.users.apply(
                user.id,
                {'$set': {key: getattr(user, key) for key in changes}},
                now=self.now(),
            )
            logger.info(
                "User updated by admin",
                user_id=str(user.id),
                admin_id=str(actor.id),
                fields=sorted(changes),
            )
            return updated

    def list_users(
        self,
        page: Any = 1,
        limit: Any = DEFAULT_PAGE_SIZE,
        search: Optional[str] = None,
        role: Optional[str] = None,
        status: Optional[str] = None,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = 'desc'
    ) -> Page:
        filter_dict: Dict[str, Any] = {}
        if search:
            pattern = {'$regex': re.escape(search), '$options': 'i'}
            filter_dict['$or'] = [
                {'first_name': pattern},
                {'last_name': pattern},
                {'email': pattern},
                {'phone': pattern},
            ]
        if role:
            filter_dict['role'] = role
        if status:
            filter_dict['status'] = status
        page, limit = page_window(page, limit)
        sort = sort_spec(sort_by, sort_order, ('created_at', 'email', 'first_name', 'last_name', 'role', 'status'))
        items, total = self.users.paginate(filter_dict, page=page, limit=limit, sort=sort)
        return Page(items, total, page, limit)

    def user_details(self, user_id: Any) -> Tuple[User, List[Product]]:
        """The account and its ten most recent listings."""
        user = self.get_user(user_id)
        products: List[Product] = []
        if self.products is not None:
            products = self.products.seller_products(user.id, limit=10)
        return user, products


# ============================================================================
# PRODUCTS
# ============================================================================

class ProductService(BaseBusinessService):
    """Listing lifecycle and discovery."""

    def __init__(
        self,
        products: ProductRepository,
        stores: StoreRepository,
        users: UserRepository,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.products = products
        self.stores = stores
        self.users = users

    def _load(self, product_id: Any) -> Product:
        product = self.products.get(product_id)
        if product is None:
            raise ResourceNotFoundError("Product", str(product_id))
        return product

    def _store_for(self, product: Product) -> Optional[Store]:
        if product.store is None:
            return None
        return self.stores.get(product.store)

    def can_manage(self, product: Product, user: Optional[User]) -> bool:
        """Seller, a store manager of the listing's store, or an administrator."""
        if user is None:
            return False
        if user.is_admin or same_id(product.seller, user.id):
            return True
        store = self._store_for(product)
        return store is not None and store.can_user_manage(user.id, 'manage_products')

    def is_visible_to(self, product: Product, viewer: Optional[User]) -> bool:
        if product.settings.is_public and product.moderation.status == ModerationStatus.APPROVED.value:
            return True
        return self.can_manage(product, viewer)

    def create(self, seller: User, fields: Dict[str, Any]) -> Product:
        """
        Create a listing for ``seller``.

        ``fields`` holds model field names. A ``location`` string is parsed as
        ``"City, State"``. A ``store`` id makes it a store listing; the seller
        must manage that store's products.

        Raises:
            ResourceNotFoundError: Unknown store
            AuthorizationError: Seller cannot list for the store
            DataValidationError: Model constraints
        """
        with self.service_operation('create_product', seller_id=str(seller.id)):
            fields = dict(fields)
            now = self.now()

            location = fields.get('location')
            if isinstance(location, str):
                fields['location'] = ProductLocation.from_text(location)

            store_id = fields.pop('store', None)
            store = None
            if store_id:
                store = self.stores.get(store_id)
                if store is None:
                    raise ResourceNotFoundError("Store", str(store_id))
                if not (seller.is_admin or store.can_user_manage(seller.id, 'manage_products')):
                    raise AuthorizationError("You cannot list products for this store")
                fields['store'] = store.id
                fields['seller_type'] = SellerType.STORE.value
            else:
                fields['seller_type'] = SellerType.INDIVIDUAL.value

            product = build_entity(Product, seller=seller.id, **fields)
            if store is not None and store.settings.auto_approve_products:
                product.moderation.status = ModerationStatus.APPROVED.value
                product.moderation.approved_at = now

            product = self.products.save(product, now)
            self.users.apply(
                seller.id,
                {'$inc': {'stats.total_listings': 1, 'stats.active_listings': 1}},
                now=now,
            )
            if store is not None:
                self.stores.apply(store.id, store.update_analytics(total_products=1), now=now)

            self.business_log.product_created(product.id, seller.id, product.category, product.price)
            return product

    def get_for_viewer(self, product_id: Any, viewer: Optional[User] = None) -> Product:
        """
        Load a listing and count the view.

        Listings that are not public and approved look missing to everyone
        except the people who can manage them.
        """
        product = self._load(product_id)
        if not self.is_visible_to(product, viewer):
            raise ResourceNotFoundError("Product", str(product_id))
        now = self.now()
        viewer_id = viewer.id if viewer is not None else None
        product = self.products.apply(product.id, product.add_view(viewer_id, now), now=now) or product
        self.business_log.product_viewed(product.id, viewer_id)
        return product

    def add_comment(
        self,
        product_id: Any,
        author: User,
        message: str,
        comment_type: str = 'general',
        is_public: bool = True,
        parent_id: Any = None
    ) -> Product:
        with self.service_operation('add_comment', product_id=str(product_id)):
            product = self._load(product_id)
            if not self.is_visible_to(product, author):
                raise ResourceNotFoundError("Product", str(product_id))
            if parent_id is not None and not is_object_id(parent_id):
                raise DataValidationError("Parent comment not found")
            now = self.now()
            update = product.add_comment(author.id, message, comment_type, is_public, parent_id, now)
            return self.products.apply(product.id, update, now=now)

    def make_offer(
        self,
        product_id: Any,
        buyer: User,
        amount: float,
        message: str = '',
        expires_in_days: Optional[int] = None
    ) -> Product:
        """
        Raises:
            DataValidationError: Offer on one's own listing or a non-positive amount
            StateTransitionError: Listing not purchasable or not accepting offers
        """
        with self.service_operation('make_offer', product_id=str(product_id)):
            product = self._load(product_id)
            if not self.is_visible_to(product, buyer):
                raise ResourceNotFoundError("Product", str(product_id))
            if same_id(product.seller, buyer.id):
                raise DataValidationError("You cannot make an offer on your own listing")
            now = self.now()
            if not product.is_available_for_purchase(now):
                raise StateTransitionError(
                    "Product is not available for purchase",
                    current_state=product.availability,
                )
            update = product.make_offer(buyer.id, amount, message, expires_in_days, self.settings, now)
            return self.products.apply(product.id, update, now=now)

    def _transition(self, product_id: Any, actor: User, operation: str, mutate: Callable[[Product], Dict]) -> Product:
        product = self._load(product_id)
        if not self.can_manage(product, actor):
            raise AuthorizationError("You do not have permission to manage this listing")
        previous = product.availability
        update = mutate(product)
        updated = self.products.apply(product.id, update, expected={'availability': previous}, now=self.now())
        if updated is None:
            raise StateTransitionError(
                "Product availability changed concurrently, please retry",
                current_state=previous,
                target_state=product.availability,
            )
        logger.info(
            "Product availability changed",
            operation=operation,
            product_id=str(product.id),
            from_state=previous,
            to_state=updated.availability,
        )
        return updated

    def mark_as_sold(
        self,
        product_id: Any,
        actor: User,
        buyer_id: Any = None,
        final_price: Optional[float] = None
    ) -> Product:
        with self.service_operation('mark_as_sold', product_id=str(product_id)):
            if buyer_id is not None and not is_object_id(buyer_id):
                raise DataValidationError("Invalid buyer id")
            now = self.now()
            product = self._transition(
                product_id, actor, 'mark_as_sold',
                lambda p: p.mark_as_sold(buyer_id, final_price, now),
            )
            self.users.apply(
                product.seller,
                {'$inc': {'stats.sold_items': 1, 'stats.active_listings': -1}},
                now=now,
            )
            self.business_log.product_sold(product.id, buyer_id, product.price)
            return product

    def reserve(self, product_id: Any, actor: User, buyer_id: Any = None) -> Product:
        with self.service_operation('reserve', product_id=str(product_id)):
            if buyer_id is not None and not is_object_id(buyer_id):
                raise DataValidationError("Invalid buyer id")
            now = self.now()
            return self._transition(product_id, actor, 'reserve', lambda p: p.reserve(buyer_id, now))

    def release(self, product_id: Any, actor: User) -> Product:
        with self.service_operation('release', product_id=str(product_id)):
            return self._transition(product_id, actor, 'release', lambda p: p.release())

    def flag(self, product_id: Any, reporter: User, reason: str, ip: Optional[str] = None) -> Product:
        with self.service_operation('flag', product_id=str(product_id)):
            product = self._load(product_id)
            now = self.now()
            updated = self.products.apply(product.id, product.flag(reporter.id, reason, now), now=now)
            logger.info(
                "Product flagged",
                product_id=str(product.id),
                reporter_id=str(reporter.id),
                moderation_status=updated.moderation.status,
                ip=ip,
            )
            return updated

    def moderate(self, product_id: Any, admin: User, action: str, reason: Optional[str] = None) -> Product:
        """
        Raises:
            DataValidationError: ``action`` is not approve or reject
            ResourceNotFoundError: Unknown product
            StateTransitionError: Moderation already decided
        """
        with self.service_operation('moderate', product_id=str(product_id), action=action):
            if action not in MODERATION_ACTIONS:
                raise DataValidationError('Invalid action. Must be "approve" or "reject"')
            product = self._load(product_id)
            previous = product.moderation.status
            now = self.now()
            update = product.moderate(action, admin.id, reason, now)
            updated = self.products.apply(
                product.id, update, expected={'moderation.status': previous}, now=now
            )
            if updated is None:
                raise StateTransitionError(
                    "Product moderation changed concurrently, please retry",
                    current_state=previous,
                    target_state=MODERATION_ACTIONS[action],
                )
            self.business_log.product_moderated(product.id, admin.id, updated.moderation.status)
            return updated

    def browse_filter(self, query: Dict[str, Any]) -> Dict[str, Any]:
        """
        Translate validated browse parameters into a MongoDB filter over
        purchasable listings.
        """
        filter_dict = self.products.available_filter(self.now())
        clauses: List[Dict[str, Any]] = []

        if query.get('category'):
            filter_dict['category'] = query['category']

        price: Dict[str, Any] = {}
        if query.get('minPrice') is not None:
            price['$gte'] = query['minPrice']
        if query.get('maxPrice') is not None:
            price['$lte'] = query['maxPrice']
        if price:
            filter_dict['price'] = price

        if query.get('location'):
            pattern = {'$regex': re.escape(query['location']), '$options': 'i'}
            clauses.append({'$or': [{'location.city': pattern}, {'location.state': pattern}]})

        if query.get('condition'):
            filter_dict['condition'] = query['condition']

        stock = query.get('availability')
        threshold = self.settings.low_stock_threshold
        if stock == 'in-stock':
            filter_dict['quantity'] = {'$gt': threshold}
        elif stock == 'low-stock':
            filter_dict['quantity'] = {'$gt': 0, '$lte': threshold}
        elif stock == 'out-of-stock':
            filter_dict['quantity'] = 0

        if clauses:
            filter_dict['$and'] = clauses
        return filter_dict

    def list_products(self, query: Dict[str, Any]) -> Page:
        page, limit = page_window(query.get('page'), query.get('limit') or 10)
        sort = PRODUCT_SORTS.get(query.get('sortBy') or 'newest', PRODUCT_SORTS['newest'])
        items, total = self.products.paginate(self.browse_filter(query), page=page, limit=limit, sort=sort)
        logger.info("Products retrieved", result_count=len(items), total_count=total)
        return Page(items, total, page, limit)

    def search(self, query: str, viewer: Optional[User] = None) -> List[Product]:
        results = self.products.find_many(
            self.products.search_filter(query, self.now()),
            sort=[('created_at', -1)],
            limit=SEARCH_RESULT_LIMIT,
        )
        self.business_log.search_performed(query, len(results), viewer.id if viewer else None)
        return results

    def admin_list(
        self,
        page: Any = 1,
        limit: Any = DEFAULT_PAGE_SIZE,
        status: Optional[str] = None,
        seller_type: Optional[str] = None,
        flagged: bool = False,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = 'desc'
    ) -> Page:
        filter_dict: Dict[str, Any] = {}
        if status:
            filter_dict['moderation.status'] = status
        if seller_type:
            filter_dict['seller_type'] = seller_type
        if flagged:
            filter_dict['moderation.flags'] = {'$exists': True, '$ne': []}
        page, limit = page_window(page, limit)
        sort = sort_spec(sort_by, sort_order, ('created_at', 'price', 'title', 'analytics.views'))
        items, total = self.products.paginate(filter_dict, page=page, limit=limit, sort=sort)
        return Page(items, total, page, limit)


# ============================================================================
# STORES
# ============================================================================

class StoreService(BaseBusinessService):
    """Storefronts and their staff."""

    def __init__(self, stores: StoreRepository, users: UserRepository, **kwargs):
        super().__init__(**kwargs)
        self.stores = stores
        self.users = users

    def _load(self, store_id: Any) -> Store:
        store = self.stores.get(store_id)
        if store is None:
            raise ResourceNotFoundError("Store", str(store_id))
        return store

    def create(self, owner: User, fields: Dict[str, Any]) -> Store:
        """
        Open a store for ``owner`` and link it from the owner's account.

        A plain user becomes a ``store_owner``; administrators keep their role.

        Raises:
            ConflictError: The owner already has a store, or the slug is taken
        """
        with self.service_operation('create_store', owner_id=str(owner.id)):
            if owner.store_id is not None and self.stores.get(owner.store_id) is not None:
                raise ConflictError("You already own a store")
            now = self.now()
            store = build_entity(Store, owner=owner.id, **fields)
            store = self.stores.save(store, now)

            account: Dict[str, Any] = {'store_id': store.id}
            if owner.role == UserRole.USER.value:
                account['role'] = UserRole.STORE_OWNER.value
            self.users.apply(owner.id, {'$set': account}, now=now)

            logger.info("Store created", store_id=str(store.id), slug=store.slug, owner_id=str(owner.id))
            return store

    def get_by_slug(self, slug: str, viewer: Optional[User] = None) -> Store:
        """Active stores are public; others are visible to their staff and admins."""
        store = self.stores.find_by_slug(slug)
        if store is None:
            raise ResourceNotFoundError("Store", slug)
        if store.status != StoreStatus.ACTIVE.value:
            allowed = viewer is not None and (viewer.is_admin or store.can_user_manage(viewer.id))
            if not allowed:
                raise ResourceNotFoundError("Store", slug)
        return self.stores.apply(store.id, store.add_view(), now=self.now()) or store

    def add_admin(
        self,
        store_id: Any,
        actor: User,
        user_id: Any,
        role: str = 'viewer',
        permissions: Optional[List[str]] = None
    ) -> Store:
        """
        Raises:
            AuthorizationError: Actor cannot manage the store's staff
            ResourceNotFoundError: Unknown store or user
            ConflictError: Already an administrator, or the plan limit is reached
        """
        with self.service_operation('add_store_admin', store_id=str(store_id)):
            store = self._load(store_id)
            if not (actor.is_admin or same_id(store.owner, actor.id)):
                raise AuthorizationError("You cannot manage staff for this store")
            target = self.users.get(user_id)
            if target is None:
                raise ResourceNotFoundError("User", str(user_id))
            try:
                update = store.add_admin(target.id, role, permissions, self.now())
            except ValidationError as e:
                raise DataValidationError("Validation failed", errors=validation_errors(e))
            updated = self.stores.apply(
                store.id,
                update,
                expected={'admins.user': {'$ne': ObjectId(str(target.id))}},
                now=self.now(),
            )
            if updated is None:
                raise ConflictError("User is already a store administrator")
            return updated

    def set_status(self, store_id: Any, admin: User, status: str, verified: Optional[bool] = None) -> Store:
        """
        Raises:
            StateTransitionError: Status not reachable, or changed concurrently
        """
        with self.service_operation('set_store_status', store_id=str(store_id), status=status):
            store = self._load(store_id)
            previous = store.status
            now = self.now()
            update = store.change_status(status, verified, now)
            updated = self.stores.apply(store.id, update, expected={'status': previous}, now=now)
            if updated is None:
                raise StateTransitionError(
                    "Store status changed concurrently, please retry",
                    current_state=previous,
                    target_state=status,
                )
            logger.info(
                "Store status changed",
                store_id=str(store.id),
                admin_id=str(admin.id),
                from_state=previous,
                to_state=status,
            )
            return updated

    def search(
        self,
        query: Optional[str] = None,
        category: Optional[str] = None,
        page: Any = 1,
        limit: Any = DEFAULT_PAGE_SIZE
    ) -> Page:
        page, limit = page_window(page, limit)
        items, total = self.stores.paginate(
            self.stores.search_filter(query, category),
            page=page,
            limit=limit,
            sort=[('analytics.total_views', -1), ('created_at', -1)],
        )
        return Page(items, total, page, limit)

    def admin_list(
        self,
        page: Any = 1,
        limit: Any = DEFAULT_PAGE_SIZE,
        search: Optional[str] = None,
        status: Optional[str] = None,
        verified: Optional[bool] = None,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = 'desc'
    ) -> Page:
        filter_dict: Dict[str, Any] = {}
        if search:
            pattern = {'$regex': re.escape(search), '$options': 'i'}
            filter_dict['$or'] = [{'name': pattern}, {'business.category': pattern}]
        if status:
            filter_dict['status'] = status
        if verified is not None:
            filter_dict['verification.is_verified'] = verified
        page, limit = page_window(page, limit)
        sort = sort_spec(sort_by, sort_order, ('created_at', 'name', 'status', 'analytics.total_views'))
        items, total = self.stores.paginate(filter_dict, page=page, limit=limit, sort=sort)
        return Page(items, total, page, limit)


# ============================================================================
# ADMIN
# ============================================================================

class AdminService(BaseBusinessService):
    """Cross-collection aggregates for the admin dashboard and analytics."""

    def __init__(
        self,
        users: UserRepository,
        stores: StoreRepository,
        products: ProductRepository,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.users = users
        self.stores = stores
        self.products = products

    def _window(self, range_key: str) -> Tuple[str, datetime]:
        if range_key not in DASHBOARD_RANGES:
            range_key = '30d'
        return range_key, self.now() - timedelta(days=DASHBOARD_RANGES[range_key])

    def dashboard(self, range_key: str = '30d') -> Dict[str, Any]:
        range_key, since = self._window(range_key)
        now = self.now()
        recent = {'created_at': {'$gte': since}}

        pending_products = self.products.find_many(
            {'moderation.status': {'$in': [ModerationStatus.PENDING.value, ModerationStatus.FLAGGED.value]}},
            sort=[('created_at', -1)],
            limit=10,
        )
        pending_stores = self.stores.find_many(
            {'status': StoreStatus.PENDING.value}, sort=[('created_at', -1)], limit=10
        )
        pending_total = (
            self.products.count({'moderation.status': {'$in': [
                ModerationStatus.PENDING.value, ModerationStatus.FLAGGED.value,
            ]}})
            + self.stores.count({'status': StoreStatus.PENDING.value})
        )

        top_categories = self.products.aggregate([
            {'$group': {'_id': '$category', 'count': {'$sum': 1}}},
            {'$sort': {'count': -1}},
            {'$limit': 5},
        ])

        return {
            'range': range_key,
            'overview': {
                'total_users': self.users.count(),
                'new_users': self.users.count(recent),
                'total_stores': self.stores.count(),
                'new_stores': self.stores.count(recent),
                'total_products': self.products.count(),
                'new_products': self.products.count(recent),
                'active_users': self.users.count({'stats.last_active': {'$gte': now - timedelta(days=30)}}),
                'available_products': self.products.count({'availability': Availability.AVAILABLE.value}),
                'pending_approvals': pending_total,
            },
            'categories': [{'category': row['_id'], 'count': row['count']} for row in top_categories],
            'pending_items': {
                'products': [{'id': str(p.id), 'title': p.title, 'status': p.moderation.status} for p in pending_products],
                'stores': [{'id': str(s.id), 'name': s.name, 'slug': s.slug} for s in pending_stores],
            },
        }

    def analytics(self, kind: Optional[str] = None, range_key: str = '30d') -> Dict[str, Any]:
        """
        Breakdown for one area of the marketplace over a dashboard range.

        Without ``kind`` the dashboard overview counters are returned.

        Raises:
            DataValidationError: When ``kind`` is not one of ``ANALYTICS_TYPES``
        """
        if kind and kind not in ANALYTICS_TYPES:
            message = f"Type must be one of: {', '.join(ANALYTICS_TYPES)}"
            raise DataValidationError(message, errors={'type': message})
        range_key, since = self._window(range_key)
        if not kind:
            return {'type': 'overview', 'range': range_key, **self._overview_analytics(range_key)}
        builder = getattr(self, f'_{kind}_analytics')
        return {'type': kind, 'range': range_key, **builder(since)}

    def _overview_analytics(self, range_key: str) -> Dict[str, Any]:
        return {'overview': self.dashboard(range_key)['overview']}

    def _users_analytics(self, since: datetime) -> Dict[str, Any]:
        return {
            'total_users': self.users.count(),
            'new_users': self.users.count({'created_at': {'$gte': since}}),
            'active_users': self.users.count({'stats.last_active': {'$gte': since}}),
            'users_by_role': self._counts_by(self.users, '$role'),
            'users_by_status': self._counts_by(self.users, '$status'),
        }

    def _stores_analytics(self, since: datetime) -> Dict[str, Any]:
        averages = self.stores.aggregate([
            {'$group': {'_id': None, 'avg_products': {'$avg': '$analytics.total_products'}}},
        ])
        return {
            'total_stores': self.stores.count(),
            'new_stores': self.stores.count({'created_at': {'$gte': since}}),
            'active_stores': self.stores.count({'status': StoreStatus.ACTIVE.value}),
            'verified_stores': self.stores.count({'verification.is_verified': True}),
            'avg_products_per_store': round(averages[0]['avg_products'] or 0, 2) if averages else 0,
            'stores_by_status': self._counts_by(self.stores, '$status'),
        }

    def _products_analytics(self, since: datetime) -> Dict[str, Any]:
        averages = self.products.aggregate([
            {'$group': {'_id': None, 'avg_price': {'$avg': '$price'}}},
        ])
        return {
            'total_products': self.products.count(),
            'new_products': self.products.count({'created_at': {'$gte': since}}),
            'available_products': self.products.count({'availability': Availability.AVAILABLE.value}),
            'sold_products': self.products.count({'availability': Availability.SOLD.value}),
            'avg_price': round(averages[0]['avg_price'] or 0, 2) if averages else 0,
            'products_by_condition': self._counts_by(self.products, '$condition'),
        }

    def _geography_analytics(self, since: datetime) -> Dict[str, Any]:
        return {
            'product_cities': self._top_cities(self.products, since),
            'user_cities': self._top_cities(self.users, since),
        }

    @staticmethod
    def _counts_by(repository, field: str) -> Dict[str, int]:
        rows = repository.aggregate([{'$group': {'_id': field, 'count': {'$sum': 1}}}])
        return {row['_id']: row['count'] for row in rows if row['_id'] is not None}

    @staticmethod
    def _top_cities(repository, since: datetime, limit: int = 10) -> List[Dict[str, Any]]:
        rows = repository.aggregate([
            {'$match': {'created_at': {'$gte': since}, 'location.city': {'$gt': ''}}},
            {'$group': {'_id': '$location.city', 'count': {'$sum': 1}}},
            {'$sort': {'count': -1, '_id': 1}},
            {'$limit': limit},
        ])
        return [{'city': row['_id'], 'count': row['count']} for row in rows]


# ============================================================================
# REGISTRY
# ============================================================================

@dataclass
class ServiceRegistry:
    """Services and repositories shared by the request handlers."""
    db: MongoDBManager
    users: UserService
    products: ProductService
    stores: StoreService
    admin: AdminService
    user_repository: UserRepository
    product_repository: ProductRepository
    store_repository: StoreRepository

    def ensure_indexes(self) -> None:
        for repository in (self.user_repository, self.store_repository, self.product_repository):
            repository.ensure_indexes()


def build_services(
    db: MongoDBManager,
    token_secret: str,
    token_algorithm: str = 'HS256',
    settings: LifecycleSettings = DEFAULT_LIFECYCLE,
    clock: Optional[Clock] = None,
    security_log: Optional[SecurityAuditLogger] = None,
    business_log: Optional[BusinessEventLogger] = None
) -> ServiceRegistry:
    user_repository = UserRepository(db, settings)
    store_repository = StoreRepository(db, settings)
    product_repository = ProductRepository(db, settings)
    common = dict(
        settings=settings,
        clock=clock,
        security_log=security_log,
        business_log=business_log,
    )
    return ServiceRegistry(
        db=db,
        users=UserService(
            user_repository, token_secret, token_algorithm, products=product_repository, **common
        ),
        products=ProductService(product_repository, store_repository, user_repository, **common),
        stores=StoreService(store_repository, user_repository, **common),
        admin=AdminService(user_repository, store_repository, product_repository, **common),
        user_repository=user_repository,
        product_repository=product_repository,
        store_repository=store_repository,
    )


__all__ = [
    'AdminService',
    'BaseBusinessService',
    'Page',
    'ProductService',
    'ServiceRegistry',
    'StoreService',
    'UserService',
    'build_services',
]
