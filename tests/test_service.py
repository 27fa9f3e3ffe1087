from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import func, select

from logoforge.config import PriceMode
from logoforge.errors import InvalidRequest
from logoforge.models import PaymentCustomerLink
from logoforge.providers import SubscriptionSnapshot

from conftest import PRICE_55


def test_ensure_customer_is_idempotent(billing, provider):
    first = billing.ensure_customer('user-1', 'a@example.com')
    second = billing.ensure_customer('user-1', 'a@example.com')

    assert first == second
    assert provider.customers == [first]
    assert billing.get_user_for_customer(first) == 'user-1'
    assert billing.get_user_for_customer('cus_nobody') is None
    assert billing.get_user_for_customer(None) is None


def test_concurrent_first_checkouts_link_one_customer(billing, provider, database):
    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(lambda _: billing.ensure_customer('user-1'), range(6)))

    assert len(set(results)) == 1
    assert sorted(provider.deleted_customers) == sorted(c for c in provider.customers if c != results[0])
    with database.session() as db:
        assert db.scalar(select(func.count()).select_from(PaymentCustomerLink)) == 1


def test_create_checkout_uses_catalog_mode(billing, provider):
    result = billing.create_checkout(
        user_id='user-1',
        email='a@example.com',
        price_id=PRICE_55,
        success_url='https://app.example.com/ok?session_id={CHECKOUT_SESSION_ID}',
        cancel_url='https://app.example.com/cancel',
    )

    assert result.success
    [checkout] = provider.checkouts
    assert checkout['mode'] == PriceMode.PAYMENT
    assert checkout['customer_id'] == billing.get_customer_id('user-1')
    assert checkout['session_id'] == result.provider_session_id


def test_create_checkout_rejects_unknown_price(billing, provider):
    with pytest.raises(InvalidRequest):
        billing.create_checkout('user-1', None, 'price_fake', 'https://ok', 'https://cancel')
    assert provider.customers == []


def test_subscription_upsert_and_lookup(billing):
    customer = billing.ensure_customer('user-1')
    assert billing.get_subscription('user-1') is None

    billing.upsert_subscription(customer, SubscriptionSnapshot('sub_1', 'trialing', price_id='price_monthly'))
    billing.upsert_subscription(customer, SubscriptionSnapshot('sub_1', 'active', price_id='price_monthly'))

    subscription = billing.get_subscription('user-1')
    assert subscription.to_dict()['status'] == 'active'
    assert subscription.subscription_id == 'sub_1'
    assert billing.get_subscription('user-2') is None
