"""
Authentication endpoints under ``/api/auth``.

Registration, login, email/phone verification, password recovery and change. Login
and recovery share the authentication rate limit; registration has its own,
stricter one.
"""

import structlog
from flask import Blueprint, current_app

from bazzarly.auth.decorators import get_current_user, require_authentication
from bazzarly.blueprints.common import client_ip, json_body, load_schema, validated_body
from bazzarly.business.exceptions import AuthenticationError
from bazzarly.business.schemas import (
    ChangePasswordSchema,
    ForgotPasswordSchema,
    LoginSchema,
    RegistrationExtrasSchema,
    ResendVerificationSchema,
    ResetPasswordSchema,
    VerifyEmailSchema,
    VerifyPhoneSchema,
)
from bazzarly.extensions import config_limit, get_services, limiter
from bazzarly.monitoring.metrics import auth_events_total
from bazzarly.utils.response import created_response, success_response

logger = structlog.get_logger(__name__)

auth_bp = Blueprint('auth', __name__, url_prefix='/api/auth')

AUTH_LIMIT_MESSAGE = 'Too many authentication attempts, please try again later.'
REGISTRATION_LIMIT_MESSAGE = 'Too many registration attempts, please try again later.'
RESET_REQUESTED_MESSAGE = 'If an account exists with this email/phone, you will receive reset instructions'


def _token_lifetime() -> str:
    return f"{current_app.config['LIFECYCLE'].jwt_lifetime.days}d"


@auth_bp.route('/register', methods=['POST'])
@limiter.limit(config_limit('RATELIMIT_REGISTRATION'), error_message=REGISTRATION_LIMIT_MESSAGE)
def register():
    body = json_body()
    data = validated_body('user', body)
    extras = load_schema(RegistrationExtrasSchema, body)

    user, token = get_services().users.register(
        email=data['email'],
        password=data['password'],
        first_name=data['firstName'],
        last_name=data['lastName'],
        phone=data.get('phone') or None,
        role=extras.get('role'),
        ip=client_ip(),
    )
    auth_events_total.labels(event='register', outcome='success').inc()
    return created_response(
        {'user': user.to_owner_json(), 'token': token, 'expires_in': _token_lifetime()},
        'Registration successful. Please verify your email and phone number.',
    )


@auth_bp.route('/login', methods=['POST'])
@limiter.limit(config_limit('RATELIMIT_AUTH'), error_message=AUTH_LIMIT_MESSAGE)
def login():
    data = load_schema(LoginSchema, json_body())
    try:
        user, token = get_services().users.authenticate(data['identifier'], data['password'], client_ip())
    except AuthenticationError:
        auth_events_total.labels(event='login', outcome='failure').inc()
        raise
    auth_events_total.labels(event='login', outcome='success').inc()
    return success_response(
        {'user': user.to_owner_json(), 'token': token, 'expires_in': _token_lifetime()},
        'Login successful',
    )


@auth_bp.route('/verify-email', methods=['POST'])
def verify_email():
    data = load_schema(VerifyEmailSchema, json_body())
    user = get_services().users.verify_email(data['token'])
    logger.info("Email verified", user_id=str(user.id), ip=client_ip())
    return success_response({'user': user.to_owner_json()}, 'Email verified successfully')


@auth_bp.route('/verify-phone', methods=['POST'])
def verify_phone():
    data = load_schema(VerifyPhoneSchema, json_body())
    user = get_services().users.verify_phone(data['phone'], data['code'], client_ip())
    logger.info("Phone verified", user_id=str(user.id), ip=client_ip())
    return success_response({'user': user.to_owner_json()}, 'Phone number verified successfully')


@auth_bp.route('/resend-email-verification', methods=['POST'])
@limiter.limit(config_limit('RATELIMIT_AUTH'), error_message=AUTH_LIMIT_MESSAGE)
def resend_email_verification():
    data = load_schema(ResendVerificationSchema, json_body())
    get_services().users.resend_email_verification(data['email'])
    return success_response(message='Verification email sent successfully')


@auth_bp.route('/forgot-password', methods=['POST'])
@limiter.limit(config_limit('RATELIMIT_AUTH'), error_message=AUTH_LIMIT_MESSAGE)
def forgot_password():
    data = load_schema(ForgotPasswordSchema, json_body())
    get_services().users.request_password_reset(data['identifier'], client_ip())
    return success_response(message=RESET_REQUESTED_MESSAGE)


@auth_bp.route('/reset-password', methods=['POST'])
def reset_password():
    data = load_schema(ResetPasswordSchema, json_body())
    user = get_services().users.reset_password(data['token'], data['new_password'])
    logger.info("Password reset", user_id=str(user.id), ip=client_ip())
    return success_response(message='Password reset successfully')


@auth_bp.route('/change-password', methods=['POST'])
@limiter.limit(config_limit('RATELIMIT_AUTH'), error_message=AUTH_LIMIT_MESSAGE)
@require_authentication
def change_password():
    data = load_schema(ChangePasswordSchema, json_body())
    user = get_services().users.change_password(
        get_current_user(), data['current_password'], data['new_password'], client_ip()
    )
    logger.info("Password changed", user_id=str(user.id), ip=client_ip())
    return success_response(message='Password changed successfully')


@auth_bp.route('/me', methods=['GET'])
@require_authentication
def me():
    return success_response({'user': get_current_user().to_owner_json()})
