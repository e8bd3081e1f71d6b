"""
Storefront endpoints under ``/api/stores``.
"""

from flask import Blueprint, request

from bazzarly.auth.decorators import get_current_user, optional_authentication, require_authentication
from bazzarly.blueprints.common import json_body, load_schema
from bazzarly.business.schemas import StoreAdminSchema, StoreCreateSchema
from bazzarly.extensions import get_services
from bazzarly.utils.response import created_response, paginated_response, success_response

stores_bp = Blueprint('stores', __name__, url_prefix='/api/stores')


@stores_bp.route('', methods=['GET'])
def list_stores():
    args = request.args
    page = get_services().stores.search(
        query=args.get('q') or args.get('search'),
        category=args.get('category'),
        page=args.get('page', 1),
        limit=args.get('limit', 20),
    )
    return paginated_response(
        'stores',
        [store.to_public_json() for store in page.items],
        page.page,
        page.limit,
        page.total,
    )


@stores_bp.route('/<slug>', methods=['GET'])
@optional_authentication
def get_store(slug):
    store = get_services().stores.get_by_slug(slug, get_current_user())
    return success_response({'store': store.to_public_json()})


@stores_bp.route('', methods=['POST'])
@require_authentication
def create_store():
    data = load_schema(StoreCreateSchema, json_body())
    store = get_services().stores.create(get_current_user(), data)
    return created_response({'store': store.to_public_json()}, 'Store created successfully')


@stores_bp.route('/<store_id>/admins', methods=['POST'])
@require_authentication
def add_store_admin(store_id):
    data = load_schema(StoreAdminSchema, json_body())
    store = get_services().stores.add_admin(
        store_id,
        get_current_user(),
        data['user_id'],
        role=data['role'],
        permissions=data['permissions'],
    )
    return success_response({'store': store.to_public_json()}, 'Store administrator added')
