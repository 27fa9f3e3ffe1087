"""
logoforge/config.py

Billing configuration and the price catalog.

Design principles:
    1. Credit packs are defined HERE and mirrored in the Stripe dashboard
    2. Prices in cents (avoid floating point)
    3. One fallback tier table shared by every credit computation
    4. Settings are read from the environment once and passed around

Product lineup:
    - 10 credits  @ $5.00
    - 25 credits  @ $10.00
    - 55 credits  @ $20.00  (Most Popular)
    - 150 credits @ $50.00
    - optional monthly subscription (STRIPE_SUBSCRIPTION_PRICE_ID)

Drift between this table and the Stripe products is a configuration error.
Unknown price IDs degrade to the amount-based fallback instead of failing.
"""

import os
from dataclasses import dataclass, replace
from typing import Dict, List, Optional


# =============================================================================
# PRICE CATALOG
# =============================================================================

class PriceMode:
    """Stripe checkout modes."""
    PAYMENT = 'payment'              # One-time purchase
    SUBSCRIPTION = 'subscription'    # Recurring


@dataclass(frozen=True)
class PriceCatalogEntry:
    """A purchasable Stripe price and the credits it grants."""
    price_id: str
    credits: int
    mode: str = PriceMode.PAYMENT
    name: str = ''
    price_cents: int = 0
    currency: str = 'usd'
    description: Optional[str] = None
    popular: bool = False

    @property
    def price_dollars(self) -> float:
        """Price in dollars for display."""
        return self.price_cents / 100

    @property
    def price_per_credit(self) -> float:
        """Price per credit in dollars."""
        if self.credits == 0:
            return 0.0
        return self.price_cents / 100 / self.credits


def _build_catalog() -> Dict[str, PriceCatalogEntry]:
    entries = [
        PriceCatalogEntry(
            price_id='price_1SXDQDLkzHXwN84vsj54I3Ly',
            credits=10,
            name='10 Credits',
            price_cents=500,
            description='Perfect for trying out our service',
        ),
        PriceCatalogEntry(
            price_id='price_1SXDR5LkzHXwN84vNGKH0EJH',
            credits=25,
            name='25 Credits',
            price_cents=1000,
            description='Great for small projects',
        ),
        PriceCatalogEntry(
            price_id='price_1SXDSPLkzHXwN84vLo9kQlbE',
            credits=55,
            name='55 Credits',
            price_cents=2000,
            description='Most popular choice for regular users',
            popular=True,
        ),
        PriceCatalogEntry(
            price_id='price_1SXDSoLkzHXwN84vSe77zkio',
            credits=150,
            name='150 Credits',
            price_cents=5000,
            description='Best value for power users',
        ),
    ]

    subscription_price_id = os.environ.get('STRIPE_SUBSCRIPTION_PRICE_ID', '')
    if subscription_price_id:
        entries.append(PriceCatalogEntry(
            price_id=subscription_price_id,
            credits=int(os.environ.get('SUBSCRIPTION_MONTHLY_CREDITS', '100')),
            mode=PriceMode.SUBSCRIPTION,
            name='Monthly Plan',
            price_cents=int(os.environ.get('SUBSCRIPTION_PRICE_CENTS', '2900')),
            description='Fresh credits every month',
        ))

    return {entry.price_id: entry for entry in entries}


# The catalog - static after import
PRICE_CATALOG: Dict[str, PriceCatalogEntry] = _build_catalog()


def get_entry(price_id: Optional[str]) -> Optional[PriceCatalogEntry]:
    """Get catalog entry by Stripe price ID."""
    if not price_id:
        return None
    return PRICE_CATALOG.get(price_id)


def lookup_credits(price_id: Optional[str]) -> Optional[int]:
    """Credits granted for a price, or None if the price is unknown."""
    entry = get_entry(price_id)
    return entry.credits if entry else None


def get_purchasable_entries() -> List[PriceCatalogEntry]:
    """Catalog entries ordered by credit count."""
    return sorted(PRICE_CATALOG.values(), key=lambda e: (e.mode, e.credits))


# =============================================================================
# AMOUNT FALLBACK
# =============================================================================

# (minimum amount in cents, credits) - highest tier first
FALLBACK_TIERS = (
    (5000, 150),
    (2000, 55),
    (1000, 25),
    (500, 10),
)
FALLBACK_MINIMUM_CREDITS = 5


def fallback_credits(amount_cents: Optional[int]) -> int:
    """
    Derive credits from a raw payment amount.

    Used when a price ID is missing or not in the catalog. Monotonic in
    amount; a zero or missing amount grants nothing.
    """
    amount = int(amount_cents or 0)
    if amount <= 0:
        return 0
    for minimum, credits in FALLBACK_TIERS:
        if amount >= minimum:
            return credits
    return FALLBACK_MINIMUM_CREDITS


def credits_for(price_id: Optional[str], amount_cents: Optional[int]) -> int:
    """
    Credits for a purchase: catalog first, amount fallback second.

    Both the webhook ingestor and the session verifier go through here so
    they always agree on the number for the same payment.
    """
    credits = lookup_credits(price_id)
    if credits is not None:
        return credits
    return fallback_credits(amount_cents)


def print_catalog_report():
    """Print the catalog and the fallback tiers."""
    print("\n" + "=" * 64)
    print("LOGOFORGE PRICE CATALOG")
    print("=" * 64)
    print(f"{'Price ID':<32} {'Mode':<13} {'Price':>8} {'Credits':>8}")
    print("-" * 64)
    for entry in get_purchasable_entries():
        print(
            f"{entry.price_id:<32} "
            f"{entry.mode:<13} "
            f"${entry.price_dollars:>7.2f} "
            f"{entry.credits:>8}"
        )
    print("-" * 64)
    print("Fallback tiers (unknown price IDs):")
    for minimum, credits in FALLBACK_TIERS:
        print(f"  >= ${minimum / 100:>6.2f} -> {credits} credits")
    print(f"  <  ${FALLBACK_TIERS[-1][0] / 100:>6.2f} -> {FALLBACK_MINIMUM_CREDITS} credits")
    print("=" * 64 + "\n")


# =============================================================================
# SETTINGS
# =============================================================================

class WebhookProcessing:
    BACKGROUND = 'background'
    INLINE = 'inline'


@dataclass(frozen=True)
class BillingSettings:
    """Runtime settings, read from the environment once at startup."""
    database_url: str = ''

    stripe_secret_key: str = ''
    stripe_webhook_secret: str = ''
    stripe_webhook_tolerance: int = 300

    auth_jwt_secret: str = ''
    auth_jwt_audience: Optional[str] = None
    auth_jwt_algorithm: str = 'HS256'

    openai_api_key: str = ''
    image_model: str = 'dall-e-3'
    image_timeout_seconds: float = 60.0

    credits_per_generation: int = 1

    webhook_processing: str = WebhookProcessing.BACKGROUND
    webhook_max_attempts: int = 5
    webhook_backoff_seconds: float = 0.5
    webhook_workers: int = 4
    webhook_stale_after_seconds: float = 300.0
    webhook_sweep_interval_seconds: float = 300.0

    purchase_poll_max_attempts: int = 10
    purchase_poll_interval_seconds: float = 2.0

    audit_log_dir: str = '/data/audit'
    log_level: str = 'INFO'
    app_base_url: str = ''

    @property
    def stripe_test_mode(self) -> bool:
        return self.stripe_secret_key.startswith('sk_test_')

    def with_overrides(self, **overrides) -> 'BillingSettings':
        return replace(self, **overrides)


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    return int(value) if value else default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    return float(value) if value else default


def load_settings() -> BillingSettings:
    """Build settings from environment variables."""
    return BillingSettings(
        database_url=os.environ.get('DATABASE_URL', ''),
        stripe_secret_key=os.environ.get('STRIPE_SECRET_KEY', ''),
        stripe_webhook_secret=os.environ.get('STRIPE_WEBHOOK_SECRET', ''),
        stripe_webhook_tolerance=_env_int('STRIPE_WEBHOOK_TOLERANCE', 300),
        auth_jwt_secret=os.environ.get('AUTH_JWT_SECRET', ''),
        auth_jwt_audience=os.environ.get('AUTH_JWT_AUDIENCE') or None,
        openai_api_key=os.environ.get('OPENAI_API_KEY', ''),
        image_model=os.environ.get('IMAGE_MODEL', 'dall-e-3'),
        image_timeout_seconds=_env_float('IMAGE_TIMEOUT_SECONDS', 60.0),
        credits_per_generation=_env_int('CREDITS_PER_GENERATION', 1),
        webhook_processing=os.environ.get('WEBHOOK_PROCESSING', WebhookProcessing.BACKGROUND),
        webhook_max_attempts=_env_int('WEBHOOK_MAX_ATTEMPTS', 5),
        webhook_backoff_seconds=_env_float('WEBHOOK_BACKOFF_SECONDS', 0.5),
        webhook_workers=_env_int('WEBHOOK_WORKERS', 4),
        webhook_stale_after_seconds=_env_float('WEBHOOK_STALE_AFTER_SECONDS', 300.0),
        webhook_sweep_interval_seconds=_env_float('WEBHOOK_SWEEP_INTERVAL_SECONDS', 300.0),
        purchase_poll_max_attempts=_env_int('PURCHASE_POLL_MAX_ATTEMPTS', 10),
        purchase_poll_interval_seconds=_env_float('PURCHASE_POLL_INTERVAL_SECONDS', 2.0),
        audit_log_dir=os.environ.get('AUDIT_LOG_DIR', '/data/audit'),
        log_level=os.environ.get('LOG_LEVEL', 'INFO'),
        app_base_url=os.environ.get('APP_BASE_URL', ''),
    )
