"""
Administration endpoints under ``/api/admin``.

Every route requires the ``admin`` or ``super_admin`` role and the admin
permission covering its resource. Lists accept ``page``, ``limit``, ``sortBy``
and ``sortOrder`` plus per-resource filters.
"""

import structlog
from flask import Blueprint, request

from bazzarly.auth.decorators import get_current_user, require_permission, require_roles
from bazzarly.blueprints.common import json_body, load_schema, query_flag
from bazzarly.business.models import Permission, UserRole
from bazzarly.business.schemas import AdminUserUpdateSchema, ModerationSchema, StoreStatusSchema
from bazzarly.extensions import get_services
from bazzarly.utils.response import paginated_response, success_response

logger = structlog.get_logger(__name__)

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')

ADMIN_ROLES = (UserRole.ADMIN, UserRole.SUPER_ADMIN)


def _paging():
    args = request.args
    return {
        'page': args.get('page', 1),
        'limit': args.get('limit', 20),
        'sort_by': args.get('sortBy'),
        'sort_order': args.get('sortOrder', 'desc'),
    }


def _activity(user):
    stats = user.stats
    return {
        'join_date': stats.join_date.isoformat() if stats.join_date else None,
        'last_active': stats.last_active.isoformat() if stats.last_active else None,
        'total_listings': stats.total_listings,
        'active_listings': stats.active_listings,
        'sold_items': stats.sold_items,
        'login_attempts': user.login_attempts,
        'locked': user.is_locked,
    }


@admin_bp.route('/dashboard', methods=['GET'])
@require_roles(*ADMIN_ROLES)
@require_permission(Permission.VIEW_ANALYTICS)
def dashboard():
    return success_response(get_services().admin.dashboard(request.args.get('range', '30d')))


@admin_bp.route('/analytics', methods=['GET'])
@require_roles(*ADMIN_ROLES)
@require_permission(Permission.VIEW_ANALYTICS)
def analytics():
    args = request.args
    return success_response(get_services().admin.analytics(args.get('type'), args.get('range', '30d')))


@admin_bp.route('/users', methods=['GET'])
@require_roles(*ADMIN_ROLES)
@require_permission(Permission.MANAGE_USERS)
def list_users():
    args = request.args
    page = get_services().users.list_users(
        search=args.get('search'),
        role=args.get('role'),
        status=args.get('status'),
        **_paging()
    )
    return paginated_response(
        'users', [user.to_owner_json() for user in page.items], page.page, page.limit, page.total
    )


@admin_bp.route('/users/<user_id>', methods=['GET'])
@require_roles(*ADMIN_ROLES)
@require_permission(Permission.MANAGE_USERS)
def get_user(user_id):
    user, products = get_services().users.user_details(user_id)
    return success_response({
        'user': user.to_owner_json(),
        'products': [product.to_public_json(user.id) for product in products],
        'activity': _activity(user),
    })


@admin_bp.route('/users/<user_id>', methods=['PUT'])
@require_roles(*ADMIN_ROLES)
@require_permission(Permission.MANAGE_USERS)
def update_user(user_id):
    data = load_schema(AdminUserUpdateSchema, json_body())
    user = get_services().users.admin_update(get_current_user(), user_id, **data)
    return success_response({'user': user.to_owner_json()}, 'User updated successfully')


@admin_bp.route('/stores', methods=['GET'])
@require_roles(*ADMIN_ROLES)
@require_permission(Permission.MANAGE_STORES)
def list_stores():
    args = request.args
    verified = None
    if 'verified' in args:
        verified = query_flag('verified')
    page = get_services().stores.admin_list(
        search=args.get('search'),
        status=args.get('status'),
        verified=verified,
        **_paging()
    )
    return paginated_response(
        'stores', [store.model_dump(mode='json') for store in page.items], page.page, page.limit, page.total
    )


@admin_bp.route('/products', methods=['GET'])
@require_roles(*ADMIN_ROLES)
@require_permission(Permission.MODERATE_CONTENT)
def list_products():
    args = request.args
    page = get_services().products.admin_list(
        status=args.get('status'),
        seller_type=args.get('sellerType'),
        flagged=query_flag('flagged'),
        **_paging()
    )
    return paginated_response(
        'products', [product.model_dump(mode='json') for product in page.items], page.page, page.limit, page.total
    )


@admin_bp.route('/products/<product_id>/moderate', methods=['PUT'])
@require_roles(*ADMIN_ROLES)
@require_permission(Permission.MODERATE_CONTENT)
def moderate_product(product_id):
    data = load_schema(ModerationSchema, json_body())
    action = data['action']
    product = get_services().products.moderate(product_id, get_current_user(), action, data['reason'])
    logger.info(
        "Product moderated",
        product_id=str(product.id),
        admin_id=str(get_current_user().id),
        action=action,
    )
    return success_response({'product': product.model_dump(mode='json')}, f'Product {action}d successfully')


@admin_bp.route('/stores/<store_id>/status', methods=['PUT'])
@require_roles(*ADMIN_ROLES)
@require_permission(Permission.MANAGE_STORES)
def update_store_status(store_id):
    data = load_schema(StoreStatusSchema, json_body())
    store = get_services().stores.set_status(store_id, get_current_user(), data['status'], data['verified'])
    return success_response({'store': store.model_dump(mode='json')}, 'Store status updated successfully')
