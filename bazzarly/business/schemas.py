"""
Marshmallow request schemas for the endpoints that take ad hoc bodies.

The three declarative schemas (product, user, search) live in
``bazzarly.utils.validators``; everything else a client posts (credentials,
verification codes, comments, offers, moderation decisions, store data) is
loaded here. Loaded data uses model field names (snake_case) so it can be
passed straight to the services.
"""

from typing import Any, Dict, Mapping, Optional

from marshmallow import EXCLUDE, Schema, ValidationError, fields, pre_load, validate

from bazzarly.business.exceptions import DataValidationError
from bazzarly.business.models import (
    AddressType,
    CommentType,
    Permission,
    StoreAdminRole,
    StorePermission,
    StoreStatus,
    UserRole,
    UserStatus,
    enum_values,
)
from bazzarly.utils.sanitizers import sanitize_string

MISSING_FIELD = "Missing data for required field."


def first_messages(messages: Mapping[str, Any], prefix: str = '') -> Dict[str, str]:
    """Flatten marshmallow's nested error structure to one message per field."""
    flat: Dict[str, str] = {}
    for key, value in messages.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(first_messages(value, path))
        elif isinstance(value, list) and value:
            flat[path] = str(value[0])
        else:
            flat[path] = str(value)
    return flat


class BaseRequestSchema(Schema):
    """
    Base schema for request bodies.

    Unknown keys are dropped. Fields listed in ``text_fields`` are passed
    through the string sanitizer before validation. When a required field is
    absent and ``missing_message`` is set, that message becomes the error
    message.
    """

    text_fields: tuple = ()
    missing_message: Optional[str] = None

    class Meta:
        unknown = EXCLUDE
        ordered = True

    @pre_load
    def sanitize_text(self, data, **kwargs):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for name in self.text_fields:
            if isinstance(data.get(name), str):
                data[name] = sanitize_string(data[name])
        return data

    def load_or_raise(self, data: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """
        Raises:
            DataValidationError: With per-field messages
        """
        try:
            return self.load(data or {})
        except ValidationError as e:
            errors = first_messages(e.messages) if isinstance(e.messages, dict) else {'_schema': str(e.messages)}
            message = "Validation failed"
            if self.missing_message and MISSING_FIELD in errors.values():
                message = self.missing_message
            raise DataValidationError(message, errors=errors)


# ============================================================================
# AUTH
# ============================================================================

class LoginSchema(BaseRequestSchema):
    missing_message = "Email/phone and password are required"

    identifier = fields.Str(required=True, validate=validate.Length(min=1))
    password = fields.Str(required=True, validate=validate.Length(min=1))


class VerifyEmailSchema(BaseRequestSchema):
    missing_message = "Verification token is required"

    token = fields.Str(required=True, validate=validate.Length(min=1))


class VerifyPhoneSchema(BaseRequestSchema):
    missing_message = "Phone number and verification code are required"

    phone = fields.Str(required=True, validate=validate.Length(min=1))
    code = fields.Str(required=True, validate=validate.Length(min=1))


class ResendVerificationSchema(BaseRequestSchema):
    missing_message = "Email is required"

    email = fields.Str(required=True, validate=validate.Length(min=1))


class ForgotPasswordSchema(BaseRequestSchema):
    missing_message = "Email or phone number is required"

    identifier = fields.Str(required=True, validate=validate.Length(min=1))


class ResetPasswordSchema(BaseRequestSchema):
    missing_message = "Token and new password are required"

    token = fields.Str(required=True, validate=validate.Length(min=1))
    new_password = fields.Str(required=True, data_key='newPassword', validate=validate.Length(min=1))


class ChangePasswordSchema(BaseRequestSchema):
    missing_message = "Current password and new password are required"

    current_password = fields.Str(required=True, data_key='currentPassword', validate=validate.Length(min=1))
    new_password = fields.Str(required=True, data_key='newPassword', validate=validate.Length(min=1))


class RegistrationExtrasSchema(BaseRequestSchema):
    """Registration fields outside the declarative user schema."""

    role = fields.Str(load_default=None)


# ============================================================================
# PRODUCTS
# ============================================================================

class ProductImageSchema(BaseRequestSchema):
    text_fields = ('alt',)

    url = fields.Url(required=True)
    alt = fields.Str(load_default='')
    is_primary = fields.Bool(data_key='isPrimary', load_default=False)
    order = fields.Int(load_default=0, validate=validate.Range(min=0))


class ProductExtrasSchema(BaseRequestSchema):
    """Optional listing attributes accepted alongside the product schema."""

    text_fields = ('brand', 'model', 'subCategory', 'shortDescription')

    tags = fields.List(
        fields.Str(validate=validate.Length(min=1, max=30)),
        validate=validate.Length(max=20),
    )
    images = fields.List(fields.Nested(ProductImageSchema), validate=validate.Length(max=10))
    is_negotiable = fields.Bool(data_key='isNegotiable')
    min_price = fields.Float(data_key='minPrice', validate=validate.Range(min=0))
    quantity = fields.Int(validate=validate.Range(min=0))
    brand = fields.Str(validate=validate.Length(max=50))
    model = fields.Str(validate=validate.Length(max=50))
    sub_category = fields.Str(data_key='subCategory')
    short_description = fields.Str(data_key='shortDescription', validate=validate.Length(max=200))
    store = fields.Str(data_key='storeId')


class CommentSchema(BaseRequestSchema):
    missing_message = "Message is required"
    text_fields = ('message',)

    message = fields.Str(required=True, validate=validate.Length(min=1, max=1000))
    comment_type = fields.Str(
        data_key='type',
        load_default=CommentType.GENERAL.value,
        validate=validate.OneOf([t for t in enum_values(CommentType) if t != CommentType.OFFER.value]),
    )
    is_public = fields.Bool(data_key='isPublic', load_default=True)
    parent_id = fields.Str(data_key='parentId', load_default=None)


class OfferSchema(BaseRequestSchema):
    missing_message = "Offer amount is required"
    text_fields = ('message',)

    amount = fields.Float(required=True)
    message = fields.Str(load_default='', validate=validate.Length(max=1000))
    expires_in_days = fields.Int(data_key='expiresInDays', load_default=None, validate=validate.Range(min=1, max=30))


class SaleSchema(BaseRequestSchema):
    buyer_id = fields.Str(data_key='buyerId', load_default=None)
    final_price = fields.Float(data_key='finalPrice', load_default=None, validate=validate.Range(min=0))


class ReserveSchema(BaseRequestSchema):
    buyer_id = fields.Str(data_key='buyerId', load_default=None)


class FlagSchema(BaseRequestSchema):
    missing_message = "A reason is required to report a listing"
    text_fields = ('reason',)

    reason = fields.Str(required=True, validate=validate.Length(min=3, max=500))


class ModerationSchema(BaseRequestSchema):
    text_fields = ('reason',)

    action = fields.Str(load_default=None)
    reason = fields.Str(load_default=None, validate=validate.Length(max=500))


# ============================================================================
# ADMIN
# ============================================================================

class AdminUserUpdateSchema(BaseRequestSchema):
    text_fields = ('suspensionReason',)

    status = fields.Str(validate=validate.OneOf(enum_values(UserStatus)))
    role = fields.Str(validate=validate.OneOf(enum_values(UserRole)))
    permissions = fields.List(fields.Str(validate=validate.OneOf(enum_values(Permission))))
    suspension_reason = fields.Str(data_key='suspensionReason', validate=validate.Length(max=500))


# ============================================================================
# STORES
# ============================================================================

class StoreContactSchema(BaseRequestSchema):
    email = fields.Email(required=True)
    phone = fields.Str()
    website = fields.Url()


class StoreAddressSchema(BaseRequestSchema):
    text_fields = ('street', 'city', 'state')

    type = fields.Str(load_default=AddressType.PRIMARY.value, validate=validate.OneOf(enum_values(AddressType)))
    street = fields.Str()
    city = fields.Str(required=True, validate=validate.Length(min=1, max=100))
    state = fields.Str()
    zip_code = fields.Str(data_key='zipCode')
    country = fields.Str(load_default='US')
    is_default = fields.Bool(data_key='isDefault', load_default=False)


class StoreBusinessSchema(BaseRequestSchema):
    type = fields.Str(load_default='individual')
    category = fields.Str()
    tax_id = fields.Str(data_key='taxId')
    business_license = fields.Str(data_key='businessLicense')
    registration_number = fields.Str(data_key='registrationNumber')
    years_in_business = fields.Int(data_key='yearsInBusiness', validate=validate.Range(min=0))


class StoreCreateSchema(BaseRequestSchema):
    missing_message = "Store name and contact email are required"
    text_fields = ('name', 'description', 'tagline')

    name = fields.Str(required=True, validate=validate.Length(min=2, max=100))
    description = fields.Str(validate=validate.Length(max=1000))
    tagline = fields.Str(validate=validate.Length(max=200))
    contact = fields.Nested(StoreContactSchema, required=True)
    addresses = fields.List(fields.Nested(StoreAddressSchema), load_default=list)
    business = fields.Nested(StoreBusinessSchema)


class StoreStatusSchema(BaseRequestSchema):
    missing_message = "Status is required"

    status = fields.Str(required=True, validate=validate.OneOf(enum_values(StoreStatus)))
    verified = fields.Bool(load_default=None)


class StoreAdminSchema(BaseRequestSchema):
    missing_message = "User id is required"

    user_id = fields.Str(required=True, data_key='userId')
    role = fields.Str(load_default=StoreAdminRole.VIEWER.value, validate=validate.OneOf(enum_values(StoreAdminRole)))
    permissions = fields.List(
        fields.Str(validate=validate.OneOf(enum_values(StorePermission))),
        load_default=list,
    )


__all__ = [
    'AdminUserUpdateSchema',
    'BaseRequestSchema',
    'ChangePasswordSchema',
    'CommentSchema',
    'FlagSchema',
    'ForgotPasswordSchema',
    'LoginSchema',
    'ModerationSchema',
    'OfferSchema',
    'ProductExtrasSchema',
    'RegistrationExtrasSchema',
    'ReserveSchema',
    'ResendVerificationSchema',
    'ResetPasswordSchema',
    'SaleSchema',
    'StoreAdminSchema',
    'StoreCreateSchema',
    'StoreStatusSchema',
    'VerifyEmailSchema',
    'VerifyPhoneSchema',
]
