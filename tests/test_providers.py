import base64
import hashlib
import hmac
import json
import time

import pytest

from dojo import config
from dojo.errors import NotFoundError, PaymentError, ProviderNotConfiguredError, WebhookSignatureError
from dojo.providers import (
    MockPaymentProvider,
    SquarePaymentProvider,
    StripePaymentProvider,
    detect_provider_for_intent,
    get_payment_provider,
)

STRIPE_SECRET = 'whsec_test'
SQUARE_KEY = 'square-signature-key'
SQUARE_URL = 'https://dojo.example.com/api/webhooks/square'


def stripe_signature(payload, secret=STRIPE_SECRET, timestamp=None):
    timestamp = timestamp or int(time.time())
    signed = hmac.new(secret.encode('utf-8'), f"{timestamp}.{payload}".encode('utf-8'), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signed}"


def square_signature(payload, url=SQUARE_URL, key=SQUARE_KEY):
    digest = hmac.new(key.encode('utf-8'), (url + payload).encode('utf-8'), hashlib.sha256).digest()
    return base64.b64encode(digest).decode('utf-8')


class FakeResponse:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self.ok = status_code < 400
        self.body = body

    def json(self):
        return self.body


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def get(self, url, **kwargs):
        self.requests.append(('GET', url, kwargs))
        return self.response

    def post(self, url, **kwargs):
        self.requests.append(('POST', url, kwargs))
        return self.response


def stripe_event(event_type='payment_intent.succeeded', status='succeeded'):
    return json.dumps({
        'id': 'evt_123',
        'type': event_type,
        'data': {'object': {'id': 'pi_123', 'amount': 12705, 'amount_received': 12705, 'currency': 'cad',
                            'status': status, 'metadata': {'paymentId': 'p1'}}},
    })


def test_stripe_webhook_is_verified_and_mapped():
    provider = StripePaymentProvider(secret_key='sk_test', webhook_secret=STRIPE_SECRET)
    payload = stripe_event()
    event = provider.parse_webhook_event(payload.encode('utf-8'), {'stripe-signature': stripe_signature(payload)})
    assert event.event_id == 'evt_123'
    assert event.type == 'payment.succeeded'
    assert event.raw_type == 'payment_intent.succeeded'
    assert event.intent.id == 'pi_123'
    assert event.intent.amount_cents == 12705
    assert event.intent.currency == 'CAD'
    assert event.intent.metadata == {'paymentId': 'p1'}


def test_stripe_failed_event_type():
    provider = StripePaymentProvider(secret_key='sk_test', webhook_secret=STRIPE_SECRET)
    payload = stripe_event('payment_intent.payment_failed', 'requires_payment_method')
    event = provider.parse_webhook_event(payload, {'Stripe-Signature': stripe_signature(payload)})
    assert event.type == 'payment.failed'
    assert event.intent.status == 'pending'
    assert event.intent.raw_status == 'requires_payment_method'


def test_stripe_rejects_bad_signatures(monkeypatch):
    provider = StripePaymentProvider(secret_key='sk_test', webhook_secret=STRIPE_SECRET)
    payload = stripe_event()
    with pytest.raises(WebhookSignatureError):
        provider.parse_webhook_event(payload, {})
    with pytest.raises(WebhookSignatureError):
        provider.parse_webhook_event(payload, {'Stripe-Signature': stripe_signature(payload, 'whsec_other')})
    with pytest.raises(WebhookSignatureError):
        provider.parse_webhook_event(payload, {'Stripe-Signature': stripe_signature(payload, timestamp=1)})

    monkeypatch.setattr(config, 'STRIPE_WEBHOOK_SECRET', None)
    with pytest.raises(ProviderNotConfiguredError):
        StripePaymentProvider(secret_key='sk_test').parse_webhook_event(payload, {})


def test_stripe_requires_secret_key(monkeypatch):
    monkeypatch.setattr(config, 'STRIPE_SECRET_KEY', None)
    with pytest.raises(ProviderNotConfiguredError):
        StripePaymentProvider().create_payment_intent(1000)


@pytest.mark.parametrize('status, mapped', [
    ('requires_action', 'pending'),
    ('processing', 'processing'),
    ('succeeded', 'succeeded'),
    ('canceled', 'canceled'),
    ('something_else', 'failed'),
])
def test_stripe_status_mapping(status, mapped):
    assert StripePaymentProvider.map_status(status) == mapped


def square_event(status='COMPLETED', event_type='payment.updated'):
    return json.dumps({
        'event_id': 'sq_evt_1',
        'type': event_type,
        'data': {'object': {'payment': {
            'id': 'sq_pay_1', 'status': status, 'reference_id': 'karate_1_abcd',
            'amount_money': {'amount': 12705, 'currency': 'CAD'}, 'receipt_url': 'https://squareup.com/r/1',
            'source_type': 'CARD', 'card_details': {'card': {'last_4': '1111'}},
        }}},
    })


def square_provider(session=None):
    return SquarePaymentProvider(access_token='token', application_id='app', location_id='loc',
                                 environment='sandbox', webhook_signature_key=SQUARE_KEY, webhook_url=SQUARE_URL,
                                 session=session)


@pytest.mark.parametrize('status, event_type', [
    ('COMPLETED', 'payment.succeeded'),
    ('FAILED', 'payment.failed'),
    ('CANCELED', 'payment.failed'),
    ('APPROVED', 'payment.processing'),
])
def test_square_webhook_types(status, event_type):
    payload = square_event(status)
    event = square_provider().parse_webhook_event(payload, {'x-square-hmacsha256-signature': square_signature(payload)})
    assert event.type == event_type
    assert event.intent.id == 'sq_pay_1'
    assert event.intent.card_last4 == '1111'
    assert event.intent.payment_method_type == 'card'
    assert event.intent.metadata['referenceId'] == 'karate_1_abcd'


def test_square_legacy_signature_signs_body_only():
    payload = square_event()
    digest = hmac.new(SQUARE_KEY.encode('utf-8'), payload.encode('utf-8'), hashlib.sha256).digest()
    headers = {'X-Square-Signature': base64.b64encode(digest).decode('utf-8')}
    assert square_provider().parse_webhook_event(payload, headers).event_id == 'sq_evt_1'


def test_square_rejects_bad_signature():
    payload = square_event()
    with pytest.raises(WebhookSignatureError):
        square_provider().parse_webhook_event(payload, {'x-square-hmacsha256-signature': 'bogus'})
    with pytest.raises(WebhookSignatureError):
        square_provider().parse_webhook_event(payload, {})


def test_square_enriches_metadata_from_reference(supabase):
    payment = supabase.seed('payments', {'family_id': 'f1', 'type': 'monthly_group', 'subtotal_amount': 12100,
                                         'tax_amount': 605, 'total_amount': 12705,
                                         'payment_intent_id': 'karate_1_abcd'})
    metadata = square_provider().enrich_webhook_metadata(supabase, {'referenceId': 'karate_1_abcd'}, 'sq_pay_1')
    assert metadata['paymentId'] == payment['id']
    assert metadata['total_amount'] == '12705'


def test_square_reference_creation_and_lookup():
    provider = square_provider()
    intent = provider.create_payment_intent(12705)
    assert intent.id.startswith('karate_')
    assert intent.status == 'pending'
    assert provider.retrieve_payment_intent(intent.id).status == 'pending'


def test_square_retrieve_payment():
    session = FakeSession(FakeResponse(200, {'payment': {'id': 'sq_pay_1', 'status': 'COMPLETED',
                                                         'amount_money': {'amount': 500, 'currency': 'CAD'}}}))
    intent = square_provider(session).retrieve_payment_intent('sq_pay_1')
    assert intent.status == 'succeeded'
    assert intent.amount_cents == 500
    method, url, kwargs = session.requests[0]
    assert url == 'https://connect.squareupsandbox.com/v2/payments/sq_pay_1'
    assert kwargs['headers']['Authorization'] == 'Bearer token'


def test_square_retrieve_missing_payment_is_pending():
    session = FakeSession(FakeResponse(404, {'errors': [{'code': 'NOT_FOUND'}]}))
    assert square_provider(session).retrieve_payment_intent('sq_gone').status == 'pending'


def test_square_confirm_payment(supabase):
    payment = supabase.seed('payments', {'family_id': 'f1', 'type': 'monthly_group', 'total_amount': 12705,
                                         'payment_intent_id': 'karate_1_abcd', 'status': 'pending'})
    session = FakeSession(FakeResponse(200, {'payment': {'id': 'sq_pay_9', 'status': 'COMPLETED',
                                                         'amount_money': {'amount': 12705, 'currency': 'CAD'}}}))
    intent = square_provider(session).confirm_payment(supabase, 'karate_1_abcd', 'cnon:card-nonce')
    assert intent.id == 'sq_pay_9'
    assert payment['payment_intent_id'] == 'sq_pay_9'
    body = session.requests[0][2]['json']
    assert body['amount_money'] == {'amount': 12705, 'currency': 'CAD'}
    assert body['reference_id'] == 'karate_1_abcd'
    assert body['location_id'] == 'loc'


def test_square_confirm_error(supabase):
    supabase.seed('payments', {'family_id': 'f1', 'total_amount': 100, 'payment_intent_id': 'karate_2_beef'})
    session = FakeSession(FakeResponse(400, {'errors': [{'code': 'CARD_DECLINED', 'detail': 'Card declined'}]}))
    with pytest.raises(PaymentError, match='Card declined'):
        square_provider(session).confirm_payment(supabase, 'karate_2_beef', 'cnon:bad')


def test_provider_detection(monkeypatch):
    monkeypatch.setattr(config, 'SQUARE_ACCESS_TOKEN', None)
    assert detect_provider_for_intent('pi_123') == 'stripe'
    assert detect_provider_for_intent('karate_1_abcd') == 'stripe'
    assert detect_provider_for_intent('mock_pi_1') == 'mock'
    assert detect_provider_for_intent(None) is None

    monkeypatch.setattr(config, 'SQUARE_ACCESS_TOKEN', 'token')
    monkeypatch.setattr(config, 'SQUARE_APPLICATION_ID', 'app')
    monkeypatch.setattr(config, 'SQUARE_LOCATION_ID', 'loc')
    assert detect_provider_for_intent('karate_1_abcd') == 'square'


def test_get_payment_provider():
    assert isinstance(get_payment_provider('mock'), MockPaymentProvider)
    assert isinstance(get_payment_provider('Stripe'), StripePaymentProvider)
    with pytest.raises(ValueError):
        get_payment_provider('paypal')


@pytest.mark.parametrize('payload', ['[]', '"payment.succeeded"', '42'])
def test_webhook_payload_must_be_an_object(payload):
    stripe = StripePaymentProvider(secret_key='sk_test', webhook_secret=STRIPE_SECRET)
    with pytest.raises(ValueError):
        stripe.parse_webhook_event(payload, {'Stripe-Signature': stripe_signature(payload)})
    with pytest.raises(ValueError):
        square_provider().parse_webhook_event(payload, {'x-square-hmacsha256-signature': square_signature(payload)})
    with pytest.raises(ValueError):
        MockPaymentProvider().parse_webhook_event(payload, {})


def test_mock_intents_are_shared_and_bounded(monkeypatch):
    monkeypatch.setattr(MockPaymentProvider, '_intents', {})
    monkeypatch.setattr(MockPaymentProvider, 'MAX_INTENTS', 2)
    first = MockPaymentProvider().create_payment_intent(100)
    second = MockPaymentProvider().create_payment_intent(200)
    assert MockPaymentProvider().retrieve_payment_intent(second.id).amount_cents == 200

    MockPaymentProvider().create_payment_intent(300)
    assert len(MockPaymentProvider._intents) == 2
    with pytest.raises(NotFoundError):
        MockPaymentProvider().retrieve_payment_intent(first.id)
