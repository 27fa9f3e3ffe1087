"""
logoforge/auth.py

Bearer-token authentication.

Users sign in with the external auth provider, which issues a JWT. Every API
request carries it as `Authorization: Bearer <token>`; we validate the
signature and expiry and use the `sub` claim as the opaque user ID. Account
management itself lives with the auth provider.

Usage:
    from logoforge.auth import init_auth

    init_auth(app)

    # In a route (after @requires_auth):
    current_user.id      # 'sub' claim
    current_user.email   # may be None
"""

import logging
from typing import Optional

from flask_login import LoginManager, UserMixin
from jose import JWTError, jwt

from logoforge.config import BillingSettings
from logoforge.errors import Unauthorized
from logoforge.extensions import get_services

logger = logging.getLogger(__name__)


# =============================================================================
# FLASK-LOGIN SETUP
# =============================================================================

login_manager = LoginManager()


class AuthenticatedUser(UserMixin):
    """The caller, as described by a validated access token."""

    def __init__(self, user_id: str, email: Optional[str] = None):
        self.id = user_id
        self.email = email

    def __repr__(self):
        return f'<AuthenticatedUser {self.id}>'


def decode_access_token(token: str, settings: BillingSettings) -> dict:
    """
    Decode and validate an access token.

    Raises:
        Unauthorized: bad signature, expired, wrong audience or no subject
    """
    if not settings.auth_jwt_secret:
        raise Unauthorized('Authentication is not configured')

    try:
        claims = jwt.decode(
            token,
            settings.auth_jwt_secret,
            algorithms=[settings.auth_jwt_algorithm],
            audience=settings.auth_jwt_audience,
            options={'verify_aud': bool(settings.auth_jwt_audience)},
        )
    except JWTError as exc:
        raise Unauthorized('Invalid or expired access token') from exc

    subject = str(claims.get('sub', '')).strip()
    if not subject:
        raise Unauthorized('Access token missing subject')
    return claims


@login_manager.request_loader
def load_user_from_request(request) -> Optional[AuthenticatedUser]:
    """Load the caller from the Authorization header for Flask-Login."""
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None

    settings = get_services().settings
    try:
        claims = decode_access_token(token.strip(), settings)
    except Unauthorized as e:
        logger.info("[Auth] Rejected bearer token: %s", e.message)
        return None

    return AuthenticatedUser(claims['sub'], claims.get('email'))


def init_auth(app):
    """
    Initialize authentication for Flask app.

    Call during app startup:
        app = Flask(__name__)
        init_auth(app)
    """
    login_manager.init_app(app)
    logger.info("[Auth] Bearer authentication initialized")
