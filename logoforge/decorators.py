"""
logoforge/decorators.py

Decorators for route protection.

Usage:
    from logoforge.decorators import requires_auth

    @billing_bp.route('/balance')
    @requires_auth
    def balance():
        ...

Credit checks are NOT a decorator: a check-then-spend decorator races with
concurrent requests. Routes that cost credits go through DeductionGate.run().
"""

from functools import wraps

from flask import jsonify
from flask_login import current_user

from logoforge.errors import Unauthorized


def requires_auth(f):
    """
    Decorator that requires a valid bearer token.

    Returns 401 if not authenticated.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            return jsonify(Unauthorized('Authentication required').to_dict()), 401
        return f(*args, **kwargs)
    return decorated_function
