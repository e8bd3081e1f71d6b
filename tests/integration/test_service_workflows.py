"""
Integration tests for the business services over a mongomock database.

Each test drives one marketplace workflow end to end through the services
(account lifecycle, listing lifecycle, storefronts, dashboard) and checks the
persisted documents, not just the returned entities.
"""

import pytest
from bson import ObjectId

from bazzarly.business.exceptions import (
    AccountLockedError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    DataValidationError,
    ResourceNotFoundError,
    StateTransitionError,
)
from bazzarly.business.products import ProductLocation

STRONG_PASSWORD = 'Secret123'

pytestmark = pytest.mark.integration


def register_jane(services, **kwargs):
    return services.users.register(
        email=kwargs.pop('email', 'jane@example.com'),
        password=kwargs.pop('password', STRONG_PASSWORD),
        first_name='Jane',
        last_name='Doe',
        **kwargs
    )


# ============================================================================
# ACCOUNTS
# ============================================================================

class TestRegistration:

    def test_creates_pending_account_with_hashed_password(self, services, db):
        user, token = register_jane(services)

        document = db.find_one('users', {'email': 'jane@example.com'})
        assert document['status'] == 'pending'
        assert document['password'] != STRONG_PASSWORD
        assert document['email_verification_token']
        assert 'phone' not in document
        assert token
        assert user.stats.join_date is not None

    def test_privileged_role_cannot_be_self_assigned(self, services):
        user, _ = register_jane(services, role='admin')
        assert user.role == 'user'

        owner, _ = register_jane(services, email='owner@example.com', role='store_owner')
        assert owner.role == 'store_owner'

    def test_duplicate_email_or_phone(self, services):
        register_jane(services, phone='+16502530000')

        with pytest.raises(ConflictError) as exc_info:
            register_jane(services, email='JANE@example.com')
        assert exc_info.value.http_status_code == 400

        with pytest.raises(ConflictError):
            register_jane(services, email='other@example.com', phone='+16502530000')

    def test_accounts_without_phone_do_not_collide(self, services):
        register_jane(services)
        register_jane(services, email='second@example.com')

        assert services.user_repository.count() == 2


class TestLogin:

    def test_pending_account_cannot_log_in(self, services):
        register_jane(services)

        with pytest.raises(AuthenticationError) as exc_info:
            services.users.authenticate('jane@example.com', STRONG_PASSWORD)
        assert exc_info.value.message == 'Account is not active'

    def test_email_verification_activates_and_allows_login(self, services):
        user, _ = register_jane(services)
        services.users.verify_email(user.email_verification_token)

        logged_in, token = services.users.authenticate('Jane@Example.com', STRONG_PASSWORD)
        assert logged_in.status == 'active'
        assert logged_in.email_verified
        assert token

    def test_phone_login_after_both_verifications(self, services):
        user, _ = register_jane(services, phone='+16502530000')
        services.users.verify_email(user.email_verification_token)
        assert services.users.get_user(user.id).status == 'pending'

        services.users.verify_phone('+16502530000', user.phone_verification_code)
        logged_in, _ = services.users.authenticate('+16502530000', STRONG_PASSWORD)
        assert logged_in.phone_verified

    def test_unknown_identifier_and_wrong_password_look_alike(self, services, make_user):
        make_user(email='known@example.com')

        with pytest.raises(AuthenticationError) as unknown:
            services.users.authenticate('nobody@example.com', STRONG_PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            services.users.authenticate('known@example.com', 'Wrong1234')
        assert unknown.value.message == wrong.value.message == 'Invalid credentials'

    def test_lockout_after_five_failures(self, services, make_user, clock):
        user = make_user(email='target@example.com')
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                services.users.authenticate('target@example.com', 'Wrong1234')

        stored = services.users.get_user(user.id)
        assert stored.login_attempts == 5
        assert stored.lock_until is not None

        with pytest.raises(AccountLockedError):
            services.users.authenticate('target@example.com', STRONG_PASSWORD)

        clock.advance(hours=2, minutes=1)
        logged_in, _ = services.users.authenticate('target@example.com', STRONG_PASSWORD)
        assert logged_in.login_attempts == 0
        assert logged_in.lock_until is None

    def test_success_resets_counter(self, services, make_user):
        make_user(email='target@example.com')
        with pytest.raises(AuthenticationError):
            services.users.authenticate('target@example.com', 'Wrong1234')

        user, _ = services.users.authenticate('target@example.com', STRONG_PASSWORD)
        assert user.login_attempts == 0

    def test_suspended_account(self, services, make_user):
        make_user(email='banned@example.com', status='suspended')

        with pytest.raises(AuthenticationError):
            services.users.authenticate('banned@example.com', STRONG_PASSWORD)


class TestRecovery:

    def test_reset_flow(self, services, make_user, db):
        user = make_user(email='forgetful@example.com')
        raw_token = services.users.request_password_reset('forgetful@example.com')

        document = db.find_one('users', {'email': 'forgetful@example.com'})
        assert document['reset_password_token'] != raw_token

        services.users.reset_password(raw_token, 'NewSecret9')
        services.users.authenticate('forgetful@example.com', 'NewSecret9')

        with pytest.raises(DataValidationError):
            services.users.reset_password(raw_token, 'Another99X')
        assert services.users.get_user(user.id).reset_password_token is None

    def test_unknown_account_gets_no_token(self, services):
        assert services.users.request_password_reset('ghost@example.com') is None

    def test_expired_token(self, services, make_user, clock):
        make_user(email='slow@example.com')
        raw_token = services.users.request_password_reset('slow@example.com')
        clock.advance(minutes=11)

        with pytest.raises(DataValidationError) as exc_info:
            services.users.reset_password(raw_token, 'NewSecret9')
        assert exc_info.value.message == 'Invalid or expired reset token'

    def test_weak_new_password(self, services, make_user):
        make_user(email='weak@example.com')
        raw_token = services.users.request_password_reset('weak@example.com')

        with pytest.raises(DataValidationError) as exc_info:
            services.users.reset_password(raw_token, 'password')
        assert 'newPassword' in exc_info.value.errors

    def test_change_password(self, services, make_user):
        user = make_user(email='mover@example.com')

        services.users.change_password(user, STRONG_PASSWORD, 'NewSecret9')

        services.users.authenticate('mover@example.com', 'NewSecret9')
        with pytest.raises(AuthenticationError):
            services.users.authenticate('mover@example.com', STRONG_PASSWORD)

    def test_change_password_checks_both_passwords(self, services, make_user):
        user = make_user()

        with pytest.raises(DataValidationError) as exc_info:
            services.users.change_password(user, 'Wrong1234', 'NewSecret9')
        assert exc_info.value.errors == {'currentPassword': 'Current password is incorrect'}

        with pytest.raises(DataValidationError) as exc_info:
            services.users.change_password(user, STRONG_PASSWORD, 'Sh0rt')
        assert exc_info.value.errors == {'newPassword': 'NewPassword must be at least 8 characters long'}

    def test_resend_verification(self, services, make_user):
        user, _ = register_jane(services)
        first_token = user.email_verification_token

        resent = services.users.resend_email_verification('jane@example.com')
        assert resent.email_verification_token != first_token

        verified = make_user(email='done@example.com')
        with pytest.raises(DataValidationError):
            services.users.resend_email_verification(verified.email)
        with pytest.raises(ResourceNotFoundError):
            services.users.resend_email_verification('ghost@example.com')

    def test_invalid_phone_code(self, services):
        register_jane(services, phone='+16502530000')

        with pytest.raises(DataValidationError):
            services.users.verify_phone('+16502530000', '000000x')


class TestAdminAccountUpdates:

    def test_admin_suspends_user(self, services, make_user):
        admin = make_user(role='admin')
        target = make_user()

        updated = services.users.admin_update(admin, target.id, status='suspended', suspension_reason='Spam')
        assert updated.status == 'suspended'
        assert updated.suspension_reason == 'Spam'

    def test_only_super_admin_grants_super_admin(self, services, make_user):
        admin = make_user(role='admin')
        root = make_user(role='super_admin')
        target = make_user()

        with pytest.raises(AuthorizationError):
            services.users.admin_update(admin, target.id, role='super_admin')
        with pytest.raises(AuthorizationError):
            services.users.admin_update(admin, root.id, status='suspended')

        assert services.users.admin_update(root, target.id, role='super_admin').role == 'super_admin'

    def test_invalid_permission(self, services, make_user):
        root = make_user(role='super_admin')
        target = make_user()

        with pytest.raises(DataValidationError):
            services.users.admin_update(root, target.id, permissions=['launch_rockets'])

    def test_list_and_details(self, services, make_user, make_product):
        seller = make_user(first_name='Searchable')
        make_user()
        make_product(seller)

        page = services.users.list_users(search='searchable')
        assert page.total == 1

        user, products = services.users.user_details(seller.id)
        assert user.id == seller.id
        assert len(products) == 1

        with pytest.raises(ResourceNotFoundError):
            services.users.user_details(ObjectId())


# ============================================================================
# LISTINGS
# ============================================================================

def listing_fields(**overrides):
    fields = {
        'title': 'Vintage Road Bike',
        'description': 'Steel frame road bike in great shape',
        'price': 250,
        'location': 'Austin, TX',
        'condition': 'good',
        'category': 'sports',
    }
    fields.update(overrides)
    return fields


class TestListingLifecycle:

    def test_new_listing_waits_for_moderation(self, services, make_user):
        seller = make_user()
        product = services.products.create(seller, listing_fields())

        assert product.moderation.status == 'pending'
        assert product.seller_type == 'individual'
        assert product.location.city == 'Austin'
        assert services.products.list_products({}).total == 0

        stats = services.users.get_user(seller.id).stats
        assert (stats.total_listings, stats.active_listings) == (1, 1)

    def test_approved_listing_is_browsable_and_searchable(self, services, make_user):
        seller = make_user()
        admin = make_user(role='admin')
        product = services.products.create(seller, listing_fields())
        services.products.moderate(product.id, admin, 'approve')

        assert services.products.list_products({}).total == 1
        assert [p.id for p in services.products.search('road')] == [product.id]
        assert services.products.search('kayak') == []

    def test_pending_listing_hidden_from_strangers(self, services, make_user):
        seller = make_user()
        product = services.products.create(seller, listing_fields())

        with pytest.raises(ResourceNotFoundError):
            services.products.get_for_viewer(product.id, make_user())
        with pytest.raises(ResourceNotFoundError):
            services.products.get_for_viewer(product.id, None)

        seen = services.products.get_for_viewer(product.id, seller)
        assert seen.analytics.views == 1
        assert seen.analytics.unique_views == 0

    def test_views_are_counted(self, services, make_user, make_product):
        product = make_product(make_user())
        services.products.get_for_viewer(product.id, make_user())
        seen = services.products.get_for_viewer(product.id, None)

        assert seen.analytics.views == 2
        assert seen.analytics.unique_views == 1
        assert seen.analytics.last_viewed is not None

    def test_comments_and_offers(self, services, make_user, make_product):
        seller = make_user()
        buyer = make_user()
        product = make_product(seller)

        product = services.products.add_comment(product.id, buyer, 'Is it still available?', 'question')
        product = services.products.make_offer(product.id, buyer, 220)

        assert len(product.comments) == 2
        assert product.analytics.inquiries == 1
        assert product.comments[1].offers.amount == 220

        with pytest.raises(DataValidationError):
            services.products.make_offer(product.id, seller, 200)

    def test_reply_to_unknown_comment(self, services, make_user, make_product):
        product = make_product(make_user())

        with pytest.raises(DataValidationError):
            services.products.add_comment(product.id, make_user(), 'Reply', parent_id=str(ObjectId()))
        with pytest.raises(DataValidationError):
            services.products.add_comment(product.id, make_user(), 'Reply', parent_id='not-an-id')

    def test_sale(self, services, make_user, make_product, db):
        seller = make_user()
        buyer = make_user()
        product = make_product(seller)
        services.users.users.apply(seller.id, {'$set': {'stats.active_listings': 1}})

        with pytest.raises(AuthorizationError):
            services.products.mark_as_sold(product.id, buyer)

        sold = services.products.mark_as_sold(product.id, seller, buyer_id=str(buyer.id), final_price=230)
        assert sold.availability == 'sold'
        assert sold.price == 230
        assert sold.transactions[0].type == 'sale'

        stats = services.users.get_user(seller.id).stats
        assert (stats.sold_items, stats.active_listings) == (1, 0)

        with pytest.raises(StateTransitionError):
            services.products.mark_as_sold(product.id, seller)
        with pytest.raises(StateTransitionError):
            services.products.make_offer(product.id, buyer, 100)

    def test_reserve_and_release(self, services, make_user, make_product):
        seller = make_user()
        buyer = make_user()
        product = make_product(seller)

        reserved = services.products.reserve(product.id, seller, buyer_id=buyer.id)
        assert reserved.availability == 'reserved'
        assert services.products.list_products({}).total == 0

        with pytest.raises(StateTransitionError):
            services.products.make_offer(product.id, buyer, 100)

        released = services.products.release(product.id, seller)
        assert released.availability == 'available'

    def test_admin_can_manage_any_listing(self, services, make_user, make_product):
        product = make_product(make_user())
        admin = make_user(role='admin')

        assert services.products.reserve(product.id, admin).availability == 'reserved'

    def test_invalid_buyer_id(self, services, make_user, make_product):
        seller = make_user()
        product = make_product(seller)

        with pytest.raises(DataValidationError):
            services.products.mark_as_sold(product.id, seller, buyer_id='nope')

    def test_flag_and_moderate(self, services, make_user, make_product):
        product = make_product(make_user())
        admin = make_user(role='admin')

        flagged = services.products.flag(product.id, make_user(), 'Looks like a scam')
        assert flagged.moderation.status == 'flagged'
        assert services.products.list_products({}).total == 0
        assert services.products.admin_list(flagged=True).total == 1

        rejected = services.products.moderate(product.id, admin, 'reject', 'Counterfeit')
        assert rejected.moderation.status == 'rejected'
        assert rejected.moderation.rejection_reason == 'Counterfeit'

        with pytest.raises(StateTransitionError):
            services.products.moderate(product.id, admin, 'approve')
        with pytest.raises(DataValidationError):
            services.products.moderate(product.id, admin, 'delete')

    def test_unknown_product(self, services, make_user):
        with pytest.raises(ResourceNotFoundError):
            services.products.get_for_viewer(ObjectId())
        with pytest.raises(ResourceNotFoundError):
            services.products.flag('garbage', make_user(), 'Spam listing')


class TestBrowse:

    @pytest.fixture
    def catalogue(self, make_user, make_product):
        seller = make_user()
        return {
            'cheap': make_product(seller, title='Kids Bike', price=40, quantity=2,
                                  location=ProductLocation(city='Dallas', state='TX')),
            'mid': make_product(seller, title='Road Bike', price=250, quantity=10),
            'pricey': make_product(seller, title='Carbon Bike', price=2500, condition='like-new', quantity=1),
            'other': make_product(seller, title='Sofa', category='furniture', price=300),
            'hidden': make_product(seller, title='Hidden Bike', moderation_status='pending'),
        }

    def test_category_and_price_range(self, services, catalogue):
        page = services.products.list_products({'category': 'sports', 'minPrice': 100, 'maxPrice': 1000})
        assert [p.title for p in page.items] == ['Road Bike']

    def test_location_matches_city_or_state(self, services, catalogue):
        assert services.products.list_products({'location': 'dallas'}).total == 1
        assert services.products.list_products({'location': 'tx'}).total == 4

    def test_stock_levels(self, services, catalogue):
        low = services.products.list_products({'availability': 'low-stock'})
        assert {p.title for p in low.items} == {'Kids Bike', 'Carbon Bike', 'Sofa'}

        in_stock = services.products.list_products({'availability': 'in-stock'})
        assert [p.title for p in in_stock.items] == ['Road Bike']

    def test_sorting_and_paging(self, services, catalogue):
        page = services.products.list_products({'sortBy': 'price-low', 'limit': 2, 'page': 2})

        assert [p.title for p in page.items] == ['Sofa', 'Carbon Bike']
        assert page.total == 4

    def test_condition(self, services, catalogue):
        page = services.products.list_products({'condition': 'like-new'})
        assert [p.title for p in page.items] == ['Carbon Bike']

    def test_expired_listing_is_hidden(self, services, catalogue, clock):
        clock.advance(days=31)
        assert services.products.list_products({}).total == 0
        assert services.products.search('bike') == []


# ============================================================================
# STORES
# ============================================================================

def store_fields(**overrides):
    fields = {'name': 'Corner Bikes', 'contact': {'email': 'shop@example.com'}}
    fields.update(overrides)
    return fields


class TestStores:

    def test_create_promotes_owner(self, services, make_user):
        owner = make_user()
        store = services.stores.create(owner, store_fields())

        assert store.slug == 'corner-bikes'
        assert store.status == 'pending'
        account = services.users.get_user(owner.id)
        assert account.role == 'store_owner'
        assert account.store_id == store.id

    def test_one_store_per_owner(self, services, make_user):
        owner = make_user()
        services.stores.create(owner, store_fields())

        with pytest.raises(ConflictError):
            services.stores.create(services.users.get_user(owner.id), store_fields(name='Second Shop'))

    def test_duplicate_name(self, services, make_user):
        services.stores.create(make_user(), store_fields())

        with pytest.raises(ConflictError) as exc_info:
            services.stores.create(make_user(), store_fields(name='Corner  Bikes!'))
        assert exc_info.value.message == 'A store with this name already exists'

    def test_pending_store_visibility(self, services, make_user):
        owner = make_user()
        services.stores.create(owner, store_fields())

        with pytest.raises(ResourceNotFoundError):
            services.stores.get_by_slug('corner-bikes', make_user())
        assert services.stores.get_by_slug('corner-bikes', owner).analytics.total_views == 1
        assert services.stores.search().total == 0

    def test_activation_makes_store_public(self, services, make_user):
        owner = make_user()
        admin = make_user(role='admin')
        store = services.stores.create(owner, store_fields(description='Bikes and repairs'))

        active = services.stores.set_status(store.id, admin, 'active', verified=True)
        assert active.verification.is_verified

        assert services.stores.get_by_slug('Corner-Bikes').name == 'Corner Bikes'
        assert services.stores.search('repairs').total == 1

        with pytest.raises(StateTransitionError):
            services.stores.set_status(store.id, admin, 'pending')

    def test_store_staff(self, services, make_user):
        owner = make_user()
        staff = make_user()
        store = services.stores.create(owner, store_fields())

        with pytest.raises(AuthorizationError):
            services.stores.add_admin(store.id, staff, staff.id)
        with pytest.raises(ResourceNotFoundError):
            services.stores.add_admin(store.id, owner, ObjectId())

        updated = services.stores.add_admin(store.id, owner, staff.id, 'editor', ['manage_products'])
        assert updated.can_user_manage(staff.id, 'manage_products')

        with pytest.raises(ConflictError):
            services.stores.add_admin(store.id, owner, make_user().id)

    def test_staff_cannot_grow_the_staff_list(self, services, make_user):
        owner = make_user()
        manager = make_user()
        store = services.stores.create(owner, store_fields())
        services.stores.add_admin(store.id, owner, manager.id, 'manager', ['manage_staff', 'manage_customers'])

        with pytest.raises(AuthorizationError):
            services.stores.add_admin(store.id, manager, make_user().id)

    def test_store_listing(self, services, make_user, make_store):
        owner = make_user()
        outsider = make_user()
        store = make_store(owner, settings={'auto_approve_products': True})

        product = services.products.create(owner, listing_fields(store=str(store.id)))
        assert product.seller_type == 'store'
        assert product.moderation.status == 'approved'
        assert services.stores.get_by_slug(store.slug).analytics.total_products == 1

        with pytest.raises(AuthorizationError):
            services.products.create(outsider, listing_fields(store=str(store.id)))
        with pytest.raises(ResourceNotFoundError):
            services.products.create(owner, listing_fields(store=str(ObjectId())))

    def test_admin_list(self, services, make_user, make_store):
        make_store(make_user(), name='Alpha Shop')
        make_store(make_user(), name='Beta Shop', status='pending')

        assert services.stores.admin_list(status='pending').total == 1
        assert services.stores.admin_list(search='alpha').total == 1
        assert services.stores.admin_list(verified=False).total == 2


class TestDashboard:

    def test_overview(self, services, make_user, make_product, make_store):
        seller = make_user()
        make_product(seller)
        make_product(seller, title='Desk', category='furniture', moderation_status='pending')
        make_store(make_user(), status='pending')

        data = services.admin.dashboard('7d')

        assert data['range'] == '7d'
        assert data['overview']['total_users'] == 2
        assert data['overview']['total_products'] == 2
        assert data['overview']['pending_approvals'] == 2
        assert data['pending_items']['products'][0]['title'] == 'Desk'
        assert {row['category'] for row in data['categories']} == {'sports', 'furniture'}

    def test_unknown_range_defaults(self, services):
        assert services.admin.dashboard('5y')['range'] == '30d'


class TestAnalytics:

    @pytest.fixture
    def marketplace(self, services, make_user, make_product, make_store):
        seller = make_user()
        make_user(role='admin')
        make_store(make_user(), status='active')
        make_product(seller)
        make_product(seller, title='Commuter Bike')
        make_product(
            seller,
            title='Oak Desk',
            price=100.0,
            condition='fair',
            location=ProductLocation(city='Dallas', state='TX'),
        )
        return seller

    def test_users(self, services, marketplace):
        data = services.admin.analytics('users', '7d')

        assert (data['type'], data['range']) == ('users', '7d')
        assert data['total_users'] == data['new_users'] == 3
        assert data['users_by_role'] == {'user': 1, 'admin': 1, 'store_owner': 1}
        assert data['users_by_status'] == {'active': 3}

    def test_stores(self, services, marketplace):
        data = services.admin.analytics('stores')

        assert data['total_stores'] == data['active_stores'] == 1
        assert data['verified_stores'] == 0
        assert data['avg_products_per_store'] == 0
        assert data['stores_by_status'] == {'active': 1}

    def test_products(self, services, marketplace):
        data = services.admin.analytics('products')

        assert data['total_products'] == data['available_products'] == 3
        assert data['sold_products'] == 0
        assert data['avg_price'] == 200.0
        assert data['products_by_condition'] == {'good': 2, 'fair': 1}

    def test_geography(self, services, marketplace):
        data = services.admin.analytics('geography')

        assert data['product_cities'] == [{'city': 'Austin', 'count': 2}, {'city': 'Dallas', 'count': 1}]
        assert data['user_cities'] == []

    def test_listings_outside_the_range_are_left_out(self, services, marketplace, clock):
        clock.advance(days=8)

        assert services.admin.analytics('geography', '7d')['product_cities'] == []
        assert services.admin.analytics('products', '7d')['new_products'] == 0

    def test_overview_and_unknown_type(self, services, marketplace):
        data = services.admin.analytics(None, '5y')
        assert (data['type'], data['range']) == ('overview', '30d')
        assert data['overview']['total_products'] == 3

        with pytest.raises(DataValidationError) as exc_info:
            services.admin.analytics('revenue')
        assert set(exc_info.value.errors) == {'type'}
