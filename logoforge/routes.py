"""
logoforge/routes.py

Flask Blueprints for the credit system.

Endpoints:
    Generation:
        POST /api/generate-logo - Spend credits on one logo

    Billing:
        GET  /billing/products - List credit packs
        GET  /billing/balance - Get credit balance
        GET  /billing/history - Credit transaction log
        POST /billing/checkout - Create checkout session
        POST /billing/verify-payment - Confirm a checkout session (read-only)
        GET  /billing/purchase-status - Has the webhook credited a session yet?
        GET  /billing/subscription - Subscription status
        POST /billing/webhook - Stripe webhook handler
        GET  /billing/health - Health check

Errors raised by the services are BillingError subclasses; the handler at
the bottom renders them as {"success": false, "error": ..., "code": ...}.
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user

from logoforge.config import get_purchasable_entries
from logoforge.decorators import requires_auth
from logoforge.errors import BillingError, InvalidRequest
from logoforge.extensions import get_services
from logoforge.generation import build_logo_prompt

logger = logging.getLogger(__name__)


billing_bp = Blueprint('billing_bp', __name__, url_prefix='/billing')
api_bp = Blueprint('api_bp', __name__, url_prefix='/api')


def _int_arg(name: str, default: int, maximum: int = None) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        raise InvalidRequest(f'{name} must be an integer')
    if value < 0:
        raise InvalidRequest(f'{name} must not be negative')
    return min(value, maximum) if maximum is not None else value


# =============================================================================
# GENERATION
# =============================================================================

@api_bp.route('/generate-logo', methods=['POST'])
@requires_auth
def generate_logo():
    """
    Generate one logo for credits.

    Request:
        {
            "companyName": "Acme",
            "industry": "Tech",
            "style": "minimal",
            "colorScheme": "blue",
            "description": "...",
            "keywords": ["bold", "simple"]
        }

    Response:
        {
            "imageUrl": "https://...",
            "creditsRemaining": 9
        }
    """
    data = request.get_json(silent=True) or {}
    company_name = (data.get('companyName') or '').strip()
    if not company_name:
        raise InvalidRequest('companyName is required')

    services = get_services()
    prompt = build_logo_prompt(data)

    result = services.gate.run(
        user_id=current_user.id,
        cost=services.settings.credits_per_generation,
        description=f'Logo generation for {company_name}',
        action=lambda: services.generator.generate(prompt),
    )

    return jsonify({
        'imageUrl': result.value,
        'creditsRemaining': result.credits_remaining,
    })


# =============================================================================
# BILLING ROUTES
# =============================================================================

@billing_bp.route('/products', methods=['GET'])
def products():
    """
    List available credit packs.

    Response:
        {
            "products": [
                {
                    "price_id": "price_...",
                    "name": "55 Credits",
                    "credits": 55,
                    "price": 20.0,
                    "mode": "payment",
                    "popular": true
                },
                ...
            ]
        }
    """
    return jsonify({
        'products': [
            {
                'price_id': e.price_id,
                'name': e.name,
                'credits': e.credits,
                'price': e.price_dollars,
                'price_cents': e.price_cents,
                'price_per_credit': round(e.price_per_credit, 2),
                'currency': e.currency,
                'mode': e.mode,
                'popular': e.popular,
                'description': e.description,
            }
            for e in get_purchasable_entries()
        ]
    })


@billing_bp.route('/balance', methods=['GET'])
@requires_auth
def balance():
    """
    Get current user's credit balance.

    Response:
        {
            "credits": 10,
            "credits_per_generation": 1
        }
    """
    services = get_services()
    return jsonify({
        'credits': services.store.get_balance(current_user.id),
        'credits_per_generation': services.settings.credits_per_generation,
    })


@billing_bp.route('/history', methods=['GET'])
@requires_auth
def history():
    """
    Get user's credit history, most recent first.

    Query params:
        - limit: Max entries to return (default 50, max 100)
        - offset: Pagination offset (default 0)
    """
    limit = _int_arg('limit', 50, maximum=100)
    offset = _int_arg('offset', 0)

    entries = get_services().store.history(current_user.id, limit=limit, offset=offset)
    return jsonify({'history': [e.to_dict() for e in entries]})


@billing_bp.route('/checkout', methods=['POST'])
@requires_auth
def checkout():
    """
    Create a checkout session.

    Request:
        {
            "price_id": "price_...",
            "success_url": "https://...",   (optional)
            "cancel_url": "https://..."     (optional)
        }

    Response:
        {
            "success": true,
            "checkout_url": "https://checkout.stripe.com/...",
            "session_id": "cs_..."
        }
    """
    data = request.get_json(silent=True) or {}
    price_id = data.get('price_id')
    if not price_id:
        raise InvalidRequest('price_id is required')

    services = get_services()
    base_url = (services.settings.app_base_url or request.host_url).rstrip('/')
    success_url = data.get('success_url') or f"{base_url}/purchase/success?session_id={{CHECKOUT_SESSION_ID}}"
    cancel_url = data.get('cancel_url') or f"{base_url}/purchase"

    result = services.billing.create_checkout(
        user_id=current_user.id,
        email=getattr(current_user, 'email', None),
        price_id=price_id,
        success_url=success_url,
        cancel_url=cancel_url,
    )

    return jsonify({
        'success': True,
        'checkout_url': result.checkout_url,
        'session_id': result.provider_session_id,
    })


@billing_bp.route('/verify-payment', methods=['POST'])
@requires_auth
def verify_payment():
    """
    Confirm a checkout session for the success page. Never grants credits.

    Request:
        {"session_id": "cs_..."}

    Response (paid):
        {
            "success": true,
            "payment_status": "paid",
            "credits": 55,
            "amount": 2000,
            "session_id": "cs_...",
            "credited": false
        }
    """
    data = request.get_json(silent=True) or {}
    result = get_services().verifier.verify(current_user.id, data.get('session_id'))
    return jsonify(result.to_dict())


@billing_bp.route('/purchase-status', methods=['GET'])
@requires_auth
def purchase_status():
    """
    Whether the webhook has credited a session yet.

    The client polls this after checkout at most poll.max_attempts times,
    poll.interval_seconds apart, then stops and shows the balance it has.
    Credits land regardless of whether anyone is polling.

    Response:
        {
            "session_id": "cs_...",
            "credited": true,
            "balance": 65,
            "poll": {"max_attempts": 10, "interval_seconds": 2.0}
        }
    """
    session_id = request.args.get('session_id')
    if not session_id:
        raise InvalidRequest('session_id is required')

    services = get_services()
    return jsonify({
        'session_id': session_id,
        'credited': services.verifier.is_credited(current_user.id, session_id),
        'balance': services.store.get_balance(current_user.id),
        'poll': {
            'max_attempts': services.settings.purchase_poll_max_attempts,
            'interval_seconds': services.settings.purchase_poll_interval_seconds,
        },
    })


@billing_bp.route('/subscription', methods=['GET'])
@requires_auth
def subscription():
    """
    Get user's subscription status.

    Response:
        {"subscription": {...}} or {"subscription": null}
    """
    row = get_services().billing.get_subscription(current_user.id)
    return jsonify({'subscription': row.to_dict() if row else None})


@billing_bp.route('/webhook', methods=['POST'])
def webhook():
    """
    Stripe webhook handler.

    Reads the raw body; the signature covers the exact bytes Stripe sent.
    Returns 200 once the event is verified and recorded, whatever happens
    during processing. Only signature failures return 400.
    """
    payload = request.get_data()
    signature = request.headers.get('Stripe-Signature', '')

    ack = get_services().ingestor.handle_webhook(payload, signature)
    return jsonify(ack.to_dict()), 200


# =============================================================================
# HEALTH CHECK
# =============================================================================

@billing_bp.route('/health', methods=['GET'])
def health():
    """
    Health check endpoint for load balancers.

    Response:
        {
            "status": "healthy",
            "db": "connected"
        }
    """
    if get_services().database.check_connection():
        return jsonify({
            'status': 'healthy',
            'db': 'connected',
        })
    return jsonify({
        'status': 'unhealthy',
        'db': 'disconnected',
    }), 500


# =============================================================================
# ERRORS
# =============================================================================

@billing_bp.app_errorhandler(BillingError)
def handle_billing_error(error: BillingError):
    if error.status_code >= 500:
        logger.error("[Billing] %s on %s %s: %s", error.code, request.method, request.path, error.message)
    return jsonify(error.to_dict()), error.status_code
