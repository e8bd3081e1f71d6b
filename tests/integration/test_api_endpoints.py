"""
HTTP-level integration tests through the Flask test client.

Requests go through the full stack (blueprints, authentication decorators,
validation, services, mongomock) and assertions target the JSON envelope
clients depend on: ``{success, message, data, errors}``.
"""

import pytest

from bazzarly.auth.decorators import require_permission
from bazzarly.business.models import Permission

pytestmark = pytest.mark.integration

PASSWORD = 'Secret123'


def registration(**overrides):
    body = {
        'email': 'jane@example.com',
        'password': PASSWORD,
        'firstName': 'Jane',
        'lastName': 'Doe',
    }
    body.update(overrides)
    return body


def listing(**overrides):
    body = {
        'title': 'Vintage Road Bike',
        'description': 'Steel frame road bike in great shape',
        'price': 250,
        'location': 'Austin, TX',
        'condition': 'good',
        'categoryId': 'sports',
    }
    body.update(overrides)
    return body


class TestPlatformEndpoints:

    def test_health(self, client):
        response = client.get('/api/health')
        body = response.get_json()

        assert response.status_code == 200
        assert body['status'] == 'OK'
        assert body['database']['status'] == 'healthy'

    def test_health_degraded_when_database_unreachable(self, client, registry, mocker):
        mocker.patch.object(
            registry.db, 'health_check', return_value={'status': 'unhealthy', 'database': 'bazzarly_test'}
        )
        response = client.get('/api/health')

        assert response.status_code == 503
        assert response.get_json()['status'] == 'DEGRADED'

    def test_metrics_exposition(self, client):
        client.get('/api/health')
        response = client.get('/api/metrics')

        assert response.status_code == 200
        assert response.content_type.startswith('text/plain')
        assert b'bazzarly_request_duration_seconds' in response.data
        assert b'bazzarly_auth_events_total' in response.data

    def test_unknown_route(self, client):
        response = client.get('/api/nothing-here')
        body = response.get_json()

        assert response.status_code == 404
        assert body == {
            'success': False,
            'message': 'Route not found',
            'error_code': 'NOT_FOUND',
            'endpoint': '/api/nothing-here',
        }

    def test_method_not_allowed(self, client):
        response = client.delete('/api/health')
        assert response.status_code == 405
        assert response.get_json()['success'] is False

    def test_security_headers(self, client):
        response = client.get('/api/health')
        assert response.headers.get('X-Content-Type-Options') == 'nosniff'


class TestAuthEndpoints:

    def test_register_verify_login_me(self, client, registry):
        response = client.post('/api/auth/register', json=registration())
        body = response.get_json()

        assert response.status_code == 201
        assert body['message'] == 'Registration successful. Please verify your email and phone number.'
        assert body['data']['expires_in'] == '7d'
        assert 'password' not in body['data']['user']
        assert body['data']['user']['status'] == 'pending'

        response = client.post('/api/auth/login', json={'identifier': 'jane@example.com', 'password': PASSWORD})
        assert response.status_code == 401
        assert response.get_json()['message'] == 'Account is not active'

        stored = registry.user_repository.find_by_identifier('jane@example.com')
        response = client.post('/api/auth/verify-email', json={'token': stored.email_verification_token})
        assert response.status_code == 200
        assert response.get_json()['data']['user']['status'] == 'active'

        response = client.post('/api/auth/login', json={'identifier': 'Jane@Example.com', 'password': PASSWORD})
        assert response.status_code == 200
        token = response.get_json()['data']['token']

        response = client.get('/api/auth/me', headers={'Authorization': f'Bearer {token}'})
        assert response.status_code == 200
        assert response.get_json()['data']['user']['email'] == 'jane@example.com'

    def test_pending_account_token_still_reaches_me(self, client):
        token = client.post('/api/auth/register', json=registration()).get_json()['data']['token']

        response = client.get('/api/auth/me', headers={'Authorization': f'Bearer {token}'})
        assert response.status_code == 200

    def test_registration_validation(self, client):
        response = client.post('/api/auth/register', json=registration(email='nope', firstName='J'))
        body = response.get_json()

        assert response.status_code == 400
        assert body['message'] == 'Validation failed'
        assert body['errors'] == {
            'email': 'Email must be a valid email address',
            'firstName': 'FirstName must be at least 2 characters long',
        }

    def test_duplicate_registration(self, client):
        client.post('/api/auth/register', json=registration())
        response = client.post('/api/auth/register', json=registration())

        assert response.status_code == 400
        assert response.get_json()['message'] == 'User already exists with this email or phone number'

    def test_login_requires_both_fields(self, client):
        response = client.post('/api/auth/login', json={'identifier': 'jane@example.com'})

        assert response.status_code == 400
        assert response.get_json()['message'] == 'Email/phone and password are required'

    def test_wrong_password(self, client, app_user, registry, mocker):
        app_user(email='member@example.com')
        audit = mocker.spy(registry.users.security_log, 'log_failed_login')

        response = client.post('/api/auth/login', json={'identifier': 'member@example.com', 'password': 'Wrong1234'})

        assert response.status_code == 401
        assert response.get_json()['message'] == 'Invalid credentials'
        audit.assert_called_once_with('member@example.com', 'invalid_password', '127.0.0.1')

    def test_forgot_password_does_not_reveal_accounts(self, client, app_user):
        app_user(email='member@example.com')

        known = client.post('/api/auth/forgot-password', json={'identifier': 'member@example.com'})
        unknown = client.post('/api/auth/forgot-password', json={'identifier': 'ghost@example.com'})

        assert known.status_code == unknown.status_code == 200
        assert known.get_json() == unknown.get_json()

    def test_reset_password_rejects_bad_token(self, client):
        response = client.post('/api/auth/reset-password', json={'token': 'abc', 'newPassword': 'NewSecret9'})

        assert response.status_code == 400
        assert response.get_json()['message'] == 'Invalid or expired reset token'

    def test_change_password(self, client, app_user, auth_headers):
        headers = auth_headers(app_user(email='member@example.com'))
        url = '/api/auth/change-password'

        assert client.post(url, json={'currentPassword': PASSWORD, 'newPassword': 'NewSecret9'}).status_code == 401

        response = client.post(url, json={'currentPassword': PASSWORD}, headers=headers)
        assert response.status_code == 400
        assert response.get_json()['message'] == 'Current password and new password are required'

        response = client.post(url, json={'currentPassword': 'Wrong1234', 'newPassword': 'NewSecret9'}, headers=headers)
        assert response.status_code == 400
        assert response.get_json()['errors'] == {'currentPassword': 'Current password is incorrect'}

        response = client.post(url, json={'currentPassword': PASSWORD, 'newPassword': 'password'}, headers=headers)
        assert response.status_code == 400
        assert response.get_json()['errors'] == {'newPassword': 'NewPassword format is invalid'}

        response = client.post(url, json={'currentPassword': PASSWORD, 'newPassword': 'NewSecret9'}, headers=headers)
        assert response.status_code == 200
        assert response.get_json()['message'] == 'Password changed successfully'

        old = client.post('/api/auth/login', json={'identifier': 'member@example.com', 'password': PASSWORD})
        new = client.post('/api/auth/login', json={'identifier': 'member@example.com', 'password': 'NewSecret9'})
        assert old.status_code == 401
        assert new.status_code == 200

    def test_missing_and_invalid_tokens(self, client):
        assert client.get('/api/auth/me').status_code == 401

        response = client.get('/api/auth/me', headers={'Authorization': 'Bearer not-a-token'})
        assert response.status_code == 401
        assert response.get_json()['error_code'] == 'INVALID_TOKEN'

    def test_suspended_account_token_rejected(self, client, app_user, auth_headers, registry):
        user = app_user()
        headers = auth_headers(user)
        registry.user_repository.apply(user.id, {'$set': {'status': 'suspended'}})

        assert client.get('/api/auth/me', headers=headers).status_code == 401


class TestProductEndpoints:

    def test_listing_moderation_and_discovery(self, client, app_user, auth_headers):
        seller = auth_headers(app_user())
        buyer = auth_headers(app_user())
        admin = auth_headers(app_user(role='admin'))

        response = client.post('/api/products', json=listing(tags=['bike']), headers=seller)
        assert response.status_code == 201
        product = response.get_json()['data']['product']
        assert product['moderation']['status'] == 'pending'
        assert product['location']['city'] == 'Austin'
        assert product['category'] == 'sports'

        assert client.get('/api/products').get_json()['data']['pagination']['total'] == 0
        assert client.get(f"/api/products/{product['id']}").status_code == 404

        response = client.put(
            f"/api/admin/products/{product['id']}/moderate", json={'action': 'approve'}, headers=admin
        )
        assert response.status_code == 200
        assert response.get_json()['message'] == 'Product approved successfully'

        body = client.get('/api/products?category=sports&sortBy=price-low').get_json()['data']
        assert [p['title'] for p in body['products']] == ['Vintage Road Bike']
        assert body['pagination'] == {
            'current_page': 1, 'limit': 10, 'total': 1, 'total_pages': 1, 'has_next': False, 'has_prev': False,
        }

        search = client.get('/api/search?q=road').get_json()['data']
        assert search['count'] == 1
        assert search['query'] == 'road'

        response = client.post(f"/api/products/{product['id']}/offers", json={'amount': 200}, headers=buyer)
        assert response.status_code == 201

        seller_view = client.get(f"/api/products/{product['id']}", headers=seller).get_json()['data']['product']
        public_view = client.get(f"/api/products/{product['id']}").get_json()['data']['product']
        assert len(seller_view['comments']) == 1
        assert public_view['comments'] == []
        assert 'transactions' not in public_view

        response = client.post(f"/api/products/{product['id']}/sold", json={'finalPrice': 210}, headers=buyer)
        assert response.status_code == 403

        response = client.post(f"/api/products/{product['id']}/sold", json={'finalPrice': 210}, headers=seller)
        assert response.status_code == 200
        assert response.get_json()['data']['product']['availability'] == 'sold'

        response = client.post(f"/api/products/{product['id']}/sold", json={}, headers=seller)
        assert response.status_code == 409
        assert response.get_json()['error_code'] == 'INVALID_STATE_TRANSITION'

    def test_create_requires_authentication(self, client):
        response = client.post('/api/products', json=listing())
        assert response.status_code == 401

    def test_create_validation(self, client, app_user, auth_headers):
        response = client.post(
            '/api/products', json=listing(price=0, condition='broken'), headers=auth_headers(app_user())
        )
        body = response.get_json()

        assert response.status_code == 400
        assert body['errors'] == {
            'price': 'Price must be at least 0.01',
            'condition': 'Condition must be one of: new, like-new, good, fair, poor',
        }

    def test_create_reports_every_bad_field(self, client, app_user, auth_headers):
        body = {
            'title': 'ab',
            'description': 'short',
            'price': -1,
            'location': '',
            'condition': 'mint',
            'categoryId': 'c1',
        }
        response = client.post('/api/products', json=body, headers=auth_headers(app_user()))

        assert response.status_code == 400
        assert response.get_json()['errors'] == {
            'title': 'Title must be at least 3 characters long',
            'description': 'Description must be at least 10 characters long',
            'price': 'Price must be at least 0.01',
            'location': 'Location is required',
            'condition': 'Condition must be one of: new, like-new, good, fair, poor',
        }

    def test_invalid_query_parameters(self, client):
        response = client.get('/api/products?limit=500&minPrice=abc')
        body = response.get_json()

        assert response.status_code == 400
        assert body['message'] == 'Invalid query parameters'
        assert set(body['errors']) == {'limit', 'minPrice'}

    def test_search_validation(self, client):
        response = client.get('/api/search?q=a')

        assert response.status_code == 400
        assert response.get_json()['message'] == 'Invalid search query'
        assert client.get('/api/search').status_code == 400

    def test_comment_and_flag(self, client, app_user, auth_headers, registry):
        seller = app_user()
        reader = auth_headers(app_user())
        product = registry.products.create(seller, {
            'title': 'Oak Table', 'description': 'Solid oak dining table', 'price': 120,
            'location': 'Austin, TX', 'condition': 'good', 'category': 'furniture',
        })
        registry.products.moderate(product.id, app_user(role='admin'), 'approve')

        response = client.post(f'/api/products/{product.id}/comments', json={'message': 'Any scratches?'}, headers=reader)
        assert response.status_code == 201
        assert response.get_json()['data']['product']['analytics']['inquiries'] == 1

        response = client.post(f'/api/products/{product.id}/flag', json={'reason': 'Looks stolen'}, headers=reader)
        assert response.status_code == 200
        assert response.get_json()['message'] == 'Product reported for review'
        assert client.get(f'/api/products/{product.id}').status_code == 404

    def test_malformed_id_is_not_found(self, client):
        assert client.get('/api/products/not-an-id').status_code == 404


class TestStoreEndpoints:

    def test_store_lifecycle(self, client, app_user, auth_headers, registry):
        owner = app_user()
        owner_headers = auth_headers(owner)
        admin = auth_headers(app_user(role='admin'))

        response = client.post('/api/stores', json={
            'name': 'Corner Bikes',
            'description': 'Bikes and repairs',
            'contact': {'email': 'shop@example.com'},
            'business': {'taxId': '12-3456789', 'category': 'sports'},
        }, headers=owner_headers)
        assert response.status_code == 201
        store = response.get_json()['data']['store']
        assert store['slug'] == 'corner-bikes'
        assert 'tax_id' not in store['business']
        assert registry.user_repository.get(owner.id).role == 'store_owner'

        assert client.get('/api/stores/corner-bikes').status_code == 404
        assert client.get('/api/stores/corner-bikes', headers=owner_headers).status_code == 200

        response = client.put(
            f"/api/admin/stores/{store['id']}/status", json={'status': 'active', 'verified': True}, headers=admin
        )
        assert response.status_code == 200
        assert response.get_json()['data']['store']['verification']['is_verified'] is True

        assert client.get('/api/stores/corner-bikes').status_code == 200
        listing_page = client.get('/api/stores?q=repairs').get_json()['data']
        assert [s['name'] for s in listing_page['stores']] == ['Corner Bikes']

        response = client.put(f"/api/admin/stores/{store['id']}/status", json={'status': 'pending'}, headers=admin)
        assert response.status_code == 409

    def test_store_staff(self, client, app_user, auth_headers, registry):
        owner = app_user()
        staff = app_user()
        store = registry.stores.create(owner, {'name': 'Corner Bikes', 'contact': {'email': 'shop@example.com'}})

        response = client.post(
            f'/api/stores/{store.id}/admins',
            json={'userId': str(staff.id), 'role': 'editor', 'permissions': ['manage_products']},
            headers=auth_headers(staff),
        )
        assert response.status_code == 403

        response = client.post(
            f'/api/stores/{store.id}/admins',
            json={'userId': str(staff.id), 'role': 'editor', 'permissions': ['manage_products']},
            headers=auth_headers(owner),
        )
        assert response.status_code == 200
        assert response.get_json()['message'] == 'Store administrator added'

    def test_store_requires_contact(self, client, app_user, auth_headers):
        response = client.post('/api/stores', json={'name': 'Corner Bikes'}, headers=auth_headers(app_user()))

        assert response.status_code == 400
        assert response.get_json()['message'] == 'Store name and contact email are required'


class TestAdminEndpoints:

    def test_requires_admin_role(self, client, app_user, auth_headers):
        assert client.get('/api/admin/dashboard').status_code == 401

        response = client.get('/api/admin/dashboard', headers=auth_headers(app_user()))
        assert response.status_code == 403
        assert response.get_json()['message'] == 'Insufficient permissions'

    def test_permission_grant_without_admin_role(self, app, client, app_user, auth_headers, registry):
        @app.route('/api/categories/manage')
        @require_permission(Permission.MANAGE_CATEGORIES)
        def manage_categories():
            return {'success': True}

        editor = app_user()
        registry.user_repository.apply(editor.id, {'$set': {'permissions': ['manage_categories']}})

        assert client.get('/api/categories/manage').status_code == 401
        assert client.get('/api/categories/manage', headers=auth_headers(app_user())).status_code == 403
        assert client.get('/api/categories/manage', headers=auth_headers(editor)).status_code == 200
        assert client.get('/api/categories/manage', headers=auth_headers(app_user(role='admin'))).status_code == 200

    def test_dashboard(self, client, app_user, auth_headers):
        response = client.get('/api/admin/dashboard?range=7d', headers=auth_headers(app_user(role='admin')))
        body = response.get_json()['data']

        assert response.status_code == 200
        assert body['range'] == '7d'
        assert body['overview']['total_users'] == 1

    def test_analytics_breakdowns(self, client, app_user, auth_headers):
        admin = auth_headers(app_user(role='admin'))
        app_user(role='store_owner')

        users = client.get('/api/admin/analytics?type=users&range=7d', headers=admin)
        assert users.status_code == 200
        body = users.get_json()['data']
        assert (body['type'], body['range']) == ('users', '7d')
        assert body['users_by_role'] == {'admin': 1, 'store_owner': 1}

        overview = client.get('/api/admin/analytics', headers=admin).get_json()['data']
        assert overview['type'] == 'overview'
        assert overview['overview']['total_users'] == 2

        for kind in ('stores', 'products', 'geography'):
            assert client.get(f'/api/admin/analytics?type={kind}', headers=admin).status_code == 200

        response = client.get('/api/admin/analytics?type=revenue', headers=admin)
        assert response.status_code == 400
        assert response.get_json()['errors'] == {'type': 'Type must be one of: users, stores, products, geography'}

    def test_analytics_requires_admin(self, client, app_user, auth_headers):
        assert client.get('/api/admin/analytics').status_code == 401
        assert client.get('/api/admin/analytics', headers=auth_headers(app_user())).status_code == 403

    def test_user_management(self, client, app_user, auth_headers):
        admin = auth_headers(app_user(role='admin'))
        target = app_user(email='target@example.com')

        listed = client.get('/api/admin/users?search=target', headers=admin).get_json()['data']
        assert [u['email'] for u in listed['users']] == ['target@example.com']

        details = client.get(f'/api/admin/users/{target.id}', headers=admin).get_json()['data']
        assert details['activity']['total_listings'] == 0
        assert details['activity']['locked'] is False

        response = client.put(
            f'/api/admin/users/{target.id}',
            json={'status': 'suspended', 'suspensionReason': 'Spam'},
            headers=admin,
        )
        assert response.status_code == 200
        assert response.get_json()['data']['user']['status'] == 'suspended'

        response = client.put(f'/api/admin/users/{target.id}', json={'role': 'super_admin'}, headers=admin)
        assert response.status_code == 403

        response = client.put(f'/api/admin/users/{target.id}', json={'status': 'sleeping'}, headers=admin)
        assert response.status_code == 400

    def test_unknown_user(self, client, app_user, auth_headers):
        admin = auth_headers(app_user(role='admin'))
        response = client.get('/api/admin/users/64b7f0c2a1b2c3d4e5f60718', headers=admin)

        assert response.status_code == 404
        assert response.get_json()['message'] == 'User not found'

    def test_moderation_requires_valid_action(self, client, app_user, auth_headers, registry):
        seller = app_user()
        product = registry.products.create(seller, {
            'title': 'Oak Table', 'description': 'Solid oak dining table', 'price': 120,
            'location': 'Austin, TX', 'condition': 'good', 'category': 'furniture',
        })
        admin = auth_headers(app_user(role='admin'))

        response = client.put(f'/api/admin/products/{product.id}/moderate', json={'action': 'burn'}, headers=admin)
        assert response.status_code == 400
        assert response.get_json()['message'] == 'Invalid action. Must be "approve" or "reject"'

        listed = client.get('/api/admin/products?status=pending', headers=admin).get_json()['data']
        assert listed['pagination']['total'] == 1
