"""
logoforge/extensions.py

The per-app service container.

create_app() builds one BillingServices and stores it on
app.extensions['logoforge']. Routes, auth and CLI commands fetch it with
get_services(); nothing in the package holds a process-wide service.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from flask import current_app

from logoforge.audit_log import AuditLogger
from logoforge.config import BillingSettings
from logoforge.db import Database
from logoforge.gate import DeductionGate
from logoforge.generation import ImageGenerator
from logoforge.ledger import CreditStore
from logoforge.providers import PaymentProvider, StripeProvider
from logoforge.service import BillingService
from logoforge.verifier import SessionVerifier
from logoforge.webhooks import PaymentEventIngestor

EXTENSION_KEY = 'logoforge'


@dataclass
class BillingServices:
    settings: BillingSettings
    database: Database
    audit: AuditLogger
    provider: PaymentProvider
    store: CreditStore
    gate: DeductionGate
    billing: BillingService
    ingestor: PaymentEventIngestor
    verifier: SessionVerifier
    generator: ImageGenerator


def build_services(
    settings: BillingSettings,
    provider: Optional[PaymentProvider] = None,
    generator: Optional[ImageGenerator] = None,
    database: Optional[Database] = None,
) -> BillingServices:
    """Wire every service from settings; provider/generator/database may be injected."""
    database = database or Database(settings.database_url or None)
    audit = AuditLogger(Path(settings.audit_log_dir) / 'audit.log')

    if provider is None:
        provider = StripeProvider(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            tolerance=settings.stripe_webhook_tolerance,
        )
    if generator is None:
        generator = ImageGenerator(
            api_key=settings.openai_api_key,
            model=settings.image_model,
            timeout=settings.image_timeout_seconds,
        )

    store = CreditStore(database)
    billing = BillingService(database, provider)

    return BillingServices(
        settings=settings,
        database=database,
        audit=audit,
        provider=provider,
        store=store,
        gate=DeductionGate(store, audit),
        billing=billing,
        ingestor=PaymentEventIngestor(database, store, billing, provider, settings, audit),
        verifier=SessionVerifier(store, billing, provider, audit),
        generator=generator,
    )


def get_services() -> BillingServices:
    """Services of the current Flask app."""
    return current_app.extensions[EXTENSION_KEY]
