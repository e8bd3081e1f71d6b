"""
Global pytest configuration and fixtures.

By default the suite runs in-process against ``mongomock``; pass
``--mongodb=container`` to run the same tests against a MongoDB Testcontainer.
The services receive a controllable clock, so lockout windows, token expiry
and listing expiry can be exercised without sleeping.

Key fixtures:
- ``clock``: mutable UTC clock injected into the services
- ``services``: ``ServiceRegistry`` over a fresh mongomock database
- ``make_user`` / ``make_product`` / ``make_store``: persisted test entities
- ``app`` / ``client``: Flask application and test client on the same database
- ``auth_headers``: bearer headers for a persisted user
"""

import itertools
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from pymongo import MongoClient

from bazzarly.app import create_app
from bazzarly.business.models import ModerationStatus, UserRole, UserStatus
from bazzarly.business.products import Product, ProductLocation
from bazzarly.business.services import build_services
from bazzarly.business.stores import Store
from bazzarly.business.users import User
from bazzarly.config.settings import DEFAULT_LIFECYCLE
from bazzarly.data.mongodb import MongoDBManager

# Few hash iterations keep the suite fast
FAST_LIFECYCLE = replace(DEFAULT_LIFECYCLE, password_hash_method='pbkdf2:sha256:1000')

STRONG_PASSWORD = 'Secret123'
TEST_TOKEN_SECRET = 'unit-test-secret'


def pytest_addoption(parser):
    parser.addoption(
        "--mongodb",
        choices=("mock", "container"),
        default="mock",
        help="Backend for database tests: mongomock (default) or a MongoDB testcontainer",
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests without external services")
    config.addinivalue_line("markers", "integration: tests exercising repositories or the HTTP API over mongomock")


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


# ============================================================================
# CORE FIXTURES
# ============================================================================

@pytest.fixture
def now():
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def clock(now):
    return FrozenClock(now)


@pytest.fixture
def lifecycle():
    return FAST_LIFECYCLE


@pytest.fixture(scope="session")
def mongodb_container(request):
    """Session-scoped MongoDB container, started only with ``--mongodb=container``."""
    if request.config.getoption("--mongodb") != "container":
        yield None
        return

    from testcontainers.mongodb import MongoDbContainer

    container = MongoDbContainer("mongo:7.0")
    container.start()
    try:
        yield container
    finally:
        container.stop()


@pytest.fixture
def mongo_client(mongodb_container):
    if mongodb_container is None:
        client = mongomock.MongoClient(tz_aware=True)
    else:
        client = MongoClient(mongodb_container.get_connection_url(), tz_aware=True)
    yield client
    client.drop_database("bazzarly_test")
    client.close()


@pytest.fixture
def db(mongo_client):
    return MongoDBManager(mongo_client, 'bazzarly_test')


@pytest.fixture
def services(db, clock, lifecycle):
    registry = build_services(db, TEST_TOKEN_SECRET, settings=lifecycle, clock=clock)
    registry.ensure_indexes()
    return registry


# ============================================================================
# ENTITY FACTORIES
# ============================================================================

@pytest.fixture
def make_user(services, clock):
    """Persist a user; active and email-verified unless told otherwise."""
    counter = itertools.count(1)

    def factory(
        email=None,
        role=UserRole.USER.value,
        status=UserStatus.ACTIVE.value,
        password=STRONG_PASSWORD,
        **fields
    ):
        number = next(counter)
        fields.setdefault('first_name', 'Test')
        fields.setdefault('last_name', f'User{number}')
        fields.setdefault('email_verified', status == UserStatus.ACTIVE.value)
        user = User.create(
            password=password,
            email=email or f'user{number}@example.com',
            role=role,
            status=status,
            **fields
        )
        return services.user_repository.save(user, clock())

    return factory


@pytest.fixture
def make_product(services, clock):
    """Persist a listing for ``seller``; approved unless told otherwise."""

    def factory(seller, moderation_status=ModerationStatus.APPROVED.value, **fields):
        fields.setdefault('title', 'Vintage Road Bike')
        fields.setdefault('description', 'Steel frame road bike in great shape')
        fields.setdefault('price', 250.0)
        fields.setdefault('category', 'sports')
        fields.setdefault('condition', 'good')
        fields.setdefault('location', ProductLocation(city='Austin', state='TX'))
        product = Product(seller=seller.id, **fields)
        product.moderation.status = moderation_status
        return services.product_repository.save(product, clock())

    return factory


@pytest.fixture
def make_store(services, clock):
    """Persist a store owned by ``owner``; active unless told otherwise."""

    def factory(owner, status='active', **fields):
        fields.setdefault('name', 'Corner Bikes')
        fields.setdefault('contact', {'email': 'shop@example.com'})
        store = Store(owner=owner.id, status=status, **fields)
        store = services.store_repository.save(store, clock())
        services.user_repository.apply(
            owner.id,
            {'$set': {'store_id': store.id, 'role': UserRole.STORE_OWNER.value}},
            now=clock(),
        )
        return store

    return factory


# ============================================================================
# FLASK FIXTURES
# ============================================================================

@pytest.fixture
def app(mongo_client, lifecycle):
    return create_app('testing', mongo_client=mongo_client, LIFECYCLE=lifecycle)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def registry(app):
    return app.extensions['bazzarly']


@pytest.fixture
def app_user(registry):
    """Factory persisting users through the application's own repositories."""
    counter = itertools.count(1)

    def factory(role=UserRole.USER.value, status=UserStatus.ACTIVE.value, email=None):
        number = next(counter)
        user = User.create(
            password=STRONG_PASSWORD,
            email=email or f'member{number}@example.com',
            first_name='Member',
            last_name=f'Number{number}',
            role=role,
            status=status,
            email_verified=True,
        )
        return registry.user_repository.save(user)

    return factory


@pytest.fixture
def auth_headers(registry):
    def factory(user):
        return {'Authorization': f'Bearer {registry.users.issue_token(user)}'}

    return factory
