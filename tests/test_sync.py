from datetime import datetime, timedelta, timezone

import pytest

from dojo import config, store
from dojo.payments import get_payment
from dojo.providers import MockPaymentProvider, SquarePaymentProvider
from dojo.sync import sync_pending_payments

NOW = datetime(2026, 6, 1, 18, 0, tzinfo=timezone.utc)
OLD = (NOW - timedelta(hours=1)).isoformat()


@pytest.fixture
def mock_provider():
    return MockPaymentProvider()


def _pending(supabase, school, intent_id, created_at=OLD, total=12705):
    payment = supabase.seed('payments', {
        'family_id': school.family['id'], 'type': 'monthly_group', 'status': 'pending',
        'subtotal_amount': 12100, 'tax_amount': 605, 'total_amount': total,
        'payment_intent_id': intent_id, 'created_at': created_at,
    })
    supabase.seed('payment_students', {'payment_id': payment['id'], 'student_id': school.kenji['id']})
    return payment


def test_succeeded_intent_settles_payment(supabase, school, mock_provider):
    intent = mock_provider.create_payment_intent(12705)
    mock_provider.set_status(intent.id, 'succeeded', card_last4='1234')
    payment = _pending(supabase, school, intent.id)

    summary = sync_pending_payments(supabase, providers={'mock': mock_provider}, now=NOW)

    assert summary['checked'] == 1
    assert summary['updated'] == 1
    assert summary['status_breakdown'] == {'succeeded': 1}
    payment = get_payment(supabase, payment['id'])
    assert payment['status'] == 'succeeded'
    assert payment['card_last4'] == '1234'
    assert school.enrollments[0]['paid_until']


def test_canceled_intent_fails_payment(supabase, school, mock_provider):
    intent = mock_provider.create_payment_intent(12705)
    mock_provider.set_status(intent.id, 'canceled')
    payment = _pending(supabase, school, intent.id)

    summary = sync_pending_payments(supabase, providers={'mock': mock_provider}, now=NOW)
    assert summary['failed'] == 1
    assert get_payment(supabase, payment['id'])['status'] == 'failed'


def test_recent_and_unsettled_payments_are_left_alone(supabase, school, mock_provider):
    recent = mock_provider.create_payment_intent(12705)
    mock_provider.set_status(recent.id, 'succeeded')
    recent_payment = _pending(supabase, school, recent.id, created_at=(NOW - timedelta(minutes=5)).isoformat())
    waiting = mock_provider.create_payment_intent(12705)
    waiting_payment = _pending(supabase, school, waiting.id)

    summary = sync_pending_payments(supabase, providers={'mock': mock_provider}, now=NOW)
    assert summary['checked'] == 1
    assert summary['updated'] == 0
    assert get_payment(supabase, recent_payment['id'])['status'] == 'pending'
    assert get_payment(supabase, waiting_payment['id'])['status'] == 'pending'


def test_stale_square_reference_is_failed(supabase, school, monkeypatch):
    monkeypatch.setattr(config, 'SQUARE_ACCESS_TOKEN', 'token')
    monkeypatch.setattr(config, 'SQUARE_APPLICATION_ID', 'app')
    monkeypatch.setattr(config, 'SQUARE_LOCATION_ID', 'loc')
    payment = _pending(supabase, school, 'karate_1717000000000_abcd1234')

    summary = sync_pending_payments(supabase, providers={'square': SquarePaymentProvider()}, now=NOW)
    assert summary['failed'] == 1
    assert summary['status_breakdown'] == {'stale_reference': 1}
    assert get_payment(supabase, payment['id'])['status'] == 'failed'


def test_unconfigured_provider_is_skipped(supabase, school):
    payment = _pending(supabase, school, 'pi_123')
    summary = sync_pending_payments(supabase, providers={}, now=NOW)
    assert summary['checked'] == 0
    assert summary['skipped'][0]['payment_id'] == payment['id']


def test_provider_errors_are_skipped(supabase, school, mock_provider):
    payment = _pending(supabase, school, 'mock_pi_unknown')
    summary = sync_pending_payments(supabase, providers={'mock': mock_provider}, now=NOW)
    assert summary['skipped'] == [{'payment_id': payment['id'], 'reason': 'Mock payment intent mock_pi_unknown not found'}]
    assert get_payment(supabase, payment['id'])['status'] == 'pending'


def test_synced_store_payment_completes_order(supabase, school, mock_provider):
    product = store.create_product(supabase, {'name': 'Gi'})
    variant = store.create_variant(supabase, product['id'], {'size': 'M', 'price': '45.00', 'stock_quantity': 5})
    order = store.create_store_order(supabase, school.family['id'], school.kenji['id'],
                                     [{'variant_id': variant['id'], 'quantity': 2}])
    intent = mock_provider.create_payment_intent(order['total_amount'])
    mock_provider.set_status(intent.id, 'succeeded')
    payment = supabase.rows('payments', id=order['payment_id'])[0]
    payment.update({'payment_intent_id': intent.id, 'created_at': OLD})

    summary = sync_pending_payments(supabase, providers={'mock': mock_provider}, now=NOW)

    assert summary['updated'] == 1
    assert supabase.rows('orders', id=order['order_id'])[0]['status'] == 'paid_pending_pickup'
    assert supabase.rows('product_variants', id=variant['id'])[0]['stock_quantity'] == 3
