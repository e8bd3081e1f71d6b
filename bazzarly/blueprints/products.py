"""
Listing endpoints under ``/api/products`` and the public search endpoint.

Browsing and search only return listings that are available for purchase.
Single listings are projected for the caller: the seller sees private
comments and offers, everyone else the public view.
"""

import structlog
from flask import Blueprint

from bazzarly.auth.decorators import get_current_user, optional_authentication, require_authentication
from bazzarly.blueprints.common import (
    client_ip,
    json_body,
    load_schema,
    validated_body,
    validated_query,
)
from bazzarly.business.schemas import (
    CommentSchema,
    FlagSchema,
    OfferSchema,
    ProductExtrasSchema,
    ReserveSchema,
    SaleSchema,
)
from bazzarly.extensions import config_limit, get_services, limiter
from bazzarly.utils.response import created_response, paginated_response, success_response
from bazzarly.utils.sanitizers import to_number
from bazzarly.utils.validators import PRODUCT_QUERY_RULES, SEARCH_QUERY_RULES

logger = structlog.get_logger(__name__)

products_bp = Blueprint('products', __name__, url_prefix='/api/products')
search_bp = Blueprint('search', __name__, url_prefix='/api')

SEARCH_LIMIT_MESSAGE = 'Too many search requests, please try again later.'


def _viewer_id():
    viewer = get_current_user()
    return viewer.id if viewer is not None else None


def _product_body(product):
    return {'product': product.to_public_json(_viewer_id())}


@products_bp.route('', methods=['GET'])
def list_products():
    query = validated_query(PRODUCT_QUERY_RULES, 'product_query', 'Invalid query parameters')
    page = get_services().products.list_products(query)
    return paginated_response(
        'products',
        [product.to_public_json() for product in page.items],
        page.page,
        page.limit,
        page.total,
    )


@products_bp.route('/<product_id>', methods=['GET'])
@optional_authentication
def get_product(product_id):
    product = get_services().products.get_for_viewer(product_id, get_current_user())
    return success_response(_product_body(product))


@products_bp.route('', methods=['POST'])
@require_authentication
def create_product():
    body = json_body()
    data = validated_body('product', body)
    extras = load_schema(ProductExtrasSchema, body)

    fields = {
        'title': data['title'],
        'description': data['description'],
        'price': to_number(data['price']),
        'location': data['location'],
        'condition': data['condition'],
        'category': data['categoryId'],
    }
    fields.update(extras)

    product = get_services().products.create(get_current_user(), fields)
    return created_response(_product_body(product), 'Product created successfully')


@products_bp.route('/<product_id>/comments', methods=['POST'])
@require_authentication
def add_comment(product_id):
    data = load_schema(CommentSchema, json_body())
    product = get_services().products.add_comment(
        product_id,
        get_current_user(),
        data['message'],
        comment_type=data['comment_type'],
        is_public=data['is_public'],
        parent_id=data['parent_id'],
    )
    return created_response(_product_body(product), 'Comment added successfully')


@products_bp.route('/<product_id>/offers', methods=['POST'])
@require_authentication
def make_offer(product_id):
    data = load_schema(OfferSchema, json_body())
    product = get_services().products.make_offer(
        product_id,
        get_current_user(),
        data['amount'],
        message=data['message'],
        expires_in_days=data['expires_in_days'],
    )
    return created_response(_product_body(product), 'Offer submitted successfully')


@products_bp.route('/<product_id>/sold', methods=['POST'])
@require_authentication
def mark_sold(product_id):
    data = load_schema(SaleSchema, json_body())
    product = get_services().products.mark_as_sold(
        product_id, get_current_user(), buyer_id=data['buyer_id'], final_price=data['final_price']
    )
    return success_response(_product_body(product), 'Product marked as sold')


@products_bp.route('/<product_id>/reserve', methods=['POST'])
@require_authentication
def reserve(product_id):
    data = load_schema(ReserveSchema, json_body())
    product = get_services().products.reserve(product_id, get_current_user(), buyer_id=data['buyer_id'])
    return success_response(_product_body(product), 'Product reserved')


@products_bp.route('/<product_id>/release', methods=['POST'])
@require_authentication
def release(product_id):
    product = get_services().products.release(product_id, get_current_user())
    return success_response(_product_body(product), 'Product is available again')


@products_bp.route('/<product_id>/flag', methods=['POST'])
@require_authentication
def flag(product_id):
    data = load_schema(FlagSchema, json_body())
    get_services().products.flag(product_id, get_current_user(), data['reason'], client_ip())
    return success_response(message='Product reported for review')


@search_bp.route('/search', methods=['GET'])
@limiter.limit(config_limit('RATELIMIT_SEARCH'), error_message=SEARCH_LIMIT_MESSAGE)
@optional_authentication
def search():
    query = validated_query(SEARCH_QUERY_RULES, 'search', 'Invalid search query')
    results = get_services().products.search(query['q'], get_current_user())
    return success_response({
        'query': query['q'],
        'results': [product.to_public_json() for product in results],
        'count': len(results),
    })
