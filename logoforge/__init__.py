"""
logoforge/__init__.py

LogoForge credit ledger and payment reconciliation.

    - Per-user credit balances with an append-only transaction log
    - Deduct-before / refund-on-failure around logo generation
    - Stripe webhooks as the only path from payment to credits
    - Read-only checkout verification for the success page

Quick Start:
    from logoforge import create_app

    app = create_app()

    # Tests: inject fakes and override settings
    app = create_app(
        overrides={'database_url': 'sqlite:///test.db', 'webhook_processing': 'inline'},
        provider=FakeStripeProvider(...),
        generator=FakeGenerator(),
    )
"""

import logging
import os
from typing import Optional

from flask import Flask

from logoforge.auth import init_auth
from logoforge.cli import billing_cli
from logoforge.config import BillingSettings, load_settings
from logoforge.extensions import EXTENSION_KEY, BillingServices, build_services, get_services
from logoforge.generation import ImageGenerator
from logoforge.providers import PaymentProvider
from logoforge.routes import api_bp, billing_bp

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s %(levelname)s %(name)s: %(message)s'


def configure_logging(level: str):
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    logging.getLogger().setLevel(level.upper())


def create_app(
    overrides: Optional[dict] = None,
    provider: Optional[PaymentProvider] = None,
    generator: Optional[ImageGenerator] = None,
    settings: Optional[BillingSettings] = None,
) -> Flask:
    """
    Build the Flask app.

    Args:
        overrides: BillingSettings fields to replace after reading the env
        provider: Payment provider (defaults to Stripe from settings)
        generator: Image generator (defaults to OpenAI from settings)
        settings: Complete settings, skipping the environment
    """
    settings = settings or load_settings()
    if overrides:
        settings = settings.with_overrides(**overrides)

    configure_logging(settings.log_level)

    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = 1 * 1024 * 1024
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-key-change-in-prod')

    init_billing(app, build_services(settings, provider=provider, generator=generator))
    return app


def init_billing(app: Flask, services: BillingServices):
    """
    Initialize the credit system for a Flask app.

    This initializes:
        - Database tables
        - Stale webhook sweep (once, or periodically in background mode)
        - Bearer-token authentication
        - Blueprints and the `flask billing` commands
    """
    app.extensions[EXTENSION_KEY] = services
    services.database.create_all()
    services.ingestor.start_sweeper()

    init_auth(app)
    app.register_blueprint(billing_bp)
    app.register_blueprint(api_bp)
    app.cli.add_command(billing_cli)

    logger.info(
        "[Billing] Initialized (db=%s, stripe=%s, webhooks=%s)",
        services.database.dialect,
        'test' if services.settings.stripe_test_mode else ('live' if services.settings.stripe_secret_key else 'unconfigured'),
        services.settings.webhook_processing,
    )


__all__ = [
    'create_app',
    'init_billing',
    'get_services',
    'BillingServices',
]
