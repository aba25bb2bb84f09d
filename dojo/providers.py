"""Payment provider adapters.

Each provider creates and looks up payment intents and turns its webhook
deliveries into a ParsedWebhookEvent with one of the internal event types:
payment.succeeded, payment.failed or payment.processing.
"""
import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional

import requests
import stripe

from dojo import config
from dojo.errors import NotFoundError, PaymentError, ProviderNotConfiguredError, WebhookSignatureError
from dojo.payments import build_payment_metadata

logger = logging.getLogger(__name__)


@dataclass
class PaymentIntent:
    id: str
    amount_cents: Optional[int] = None
    currency: str = config.CURRENCY
    status: str = 'pending'
    raw_status: Optional[str] = None
    client_secret: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    receipt_url: Optional[str] = None
    payment_method_type: Optional[str] = None
    card_last4: Optional[str] = None


@dataclass
class ParsedWebhookEvent:
    event_id: str
    type: str
    raw_type: str
    intent: PaymentIntent
    raw: dict = field(default_factory=dict)


def _header(headers, name):
    """Case-insensitive header lookup for plain dicts and werkzeug Headers."""
    if headers is None:
        return None
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key in headers.keys():
        if key.lower() == lowered:
            return headers[key]
    return None


def _payload_text(payload):
    return payload.decode('utf-8') if isinstance(payload, (bytes, bytearray)) else payload


def _load_event(text):
    event = json.loads(text)
    if not isinstance(event, dict):
        raise ValueError('Webhook payload must be a JSON object')
    return event


class PaymentProvider:
    provider_id = None
    display_name = None

    def is_configured(self):
        raise NotImplementedError

    def create_payment_intent(self, amount_cents, currency=config.CURRENCY, metadata=None,
                              description=None, receipt_email=None) -> PaymentIntent:
        raise NotImplementedError

    def retrieve_payment_intent(self, intent_id, include_payment_method=False,
                                include_latest_charge=False) -> PaymentIntent:
        raise NotImplementedError

    def cancel_payment_intent(self, intent_id) -> PaymentIntent:
        raise NotImplementedError

    def parse_webhook_event(self, payload, headers, request_url=None) -> ParsedWebhookEvent:
        raise NotImplementedError

    def enrich_webhook_metadata(self, supabase, metadata, intent_id):
        return metadata

    def get_client_config(self):
        return {'provider': self.provider_id}

    def get_dashboard_url(self, intent_id):
        return None

    def requires_client_secret(self):
        return False


class StripePaymentProvider(PaymentProvider):
    provider_id = 'stripe'
    display_name = 'Stripe'

    EVENT_TYPES = {
        'payment_intent.succeeded': 'payment.succeeded',
        'payment_intent.payment_failed': 'payment.failed',
        'payment_intent.processing': 'payment.processing',
    }

    def __init__(self, secret_key=None, publishable_key=None, webhook_secret=None):
        self.secret_key = secret_key or config.STRIPE_SECRET_KEY
        self.publishable_key = publishable_key or config.STRIPE_PUBLISHABLE_KEY
        self.webhook_secret = webhook_secret or config.STRIPE_WEBHOOK_SECRET

    def is_configured(self):
        return bool(self.secret_key and self.publishable_key)

    def _require_key(self):
        if not self.secret_key:
            raise ProviderNotConfiguredError('Stripe secret key is not configured')

    @staticmethod
    def map_status(status):
        if status in ('requires_payment_method', 'requires_confirmation', 'requires_action', 'requires_capture'):
            return 'pending'
        if status in ('processing', 'succeeded'):
            return status
        if status == 'canceled':
            return 'canceled'
        return 'failed'

    def _to_intent(self, obj) -> PaymentIntent:
        receipt_url = None
        method_type = None
        card_last4 = None

        charge = getattr(obj, 'latest_charge', None)
        if charge is not None and not isinstance(charge, str):
            receipt_url = getattr(charge, 'receipt_url', None)
            details = getattr(charge, 'payment_method_details', None)
            card = getattr(details, 'card', None) if details is not None else None
            if card is not None:
                card_last4 = getattr(card, 'last4', None)
            if details is not None:
                method_type = getattr(details, 'type', None)

        method = getattr(obj, 'payment_method', None)
        if method is not None and not isinstance(method, str):
            method_type = getattr(method, 'type', None) or method_type
            card = getattr(method, 'card', None)
            if card is not None:
                card_last4 = getattr(card, 'last4', None) or card_last4

        raw_status = getattr(obj, 'status', None)
        metadata = getattr(obj, 'metadata', None)
        return PaymentIntent(
            id=obj.id,
            amount_cents=getattr(obj, 'amount', None),
            currency=(getattr(obj, 'currency', None) or config.CURRENCY).upper(),
            status=self.map_status(raw_status),
            raw_status=raw_status,
            client_secret=getattr(obj, 'client_secret', None),
            metadata=dict(metadata) if metadata else {},
            receipt_url=receipt_url,
            payment_method_type=method_type,
            card_last4=card_last4,
        )

    def create_payment_intent(self, amount_cents, currency=config.CURRENCY, metadata=None,
                              description=None, receipt_email=None):
        self._require_key()
        params = {
            'amount': int(amount_cents),
            'currency': currency.lower(),
            'metadata': {k: str(v) for k, v in (metadata or {}).items() if v is not None},
            'automatic_payment_methods': {'enabled': True},
        }
        if description:
            params['description'] = description
        if receipt_email:
            params['receipt_email'] = receipt_email
        try:
            intent = stripe.PaymentIntent.create(api_key=self.secret_key, **params)
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating payment intent: {str(e)}")
            raise PaymentError(f"Stripe error: {e.user_message or str(e)}") from e
        logger.info(f"Created Stripe payment intent {intent.id} for {amount_cents} cents")
        return self._to_intent(intent)

    def retrieve_payment_intent(self, intent_id, include_payment_method=False, include_latest_charge=False):
        self._require_key()
        expand = []
        if include_payment_method:
            expand.append('payment_method')
        if include_latest_charge:
            expand.append('latest_charge')
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, expand=expand, api_key=self.secret_key)
        except stripe.InvalidRequestError as e:
            raise NotFoundError(f"Stripe payment intent {intent_id} not found") from e
        except stripe.StripeError as e:
            raise PaymentError(f"Stripe error: {str(e)}") from e
        return self._to_intent(intent)

    def cancel_payment_intent(self, intent_id):
        self._require_key()
        try:
            intent = stripe.PaymentIntent.cancel(intent_id, api_key=self.secret_key)
        except stripe.StripeError as e:
            raise PaymentError(f"Stripe error: {str(e)}") from e
        return self._to_intent(intent)

    def parse_webhook_event(self, payload, headers, request_url=None):
        if not self.webhook_secret:
            raise ProviderNotConfiguredError('Stripe webhook secret is not configured')
        signature = _header(headers, 'Stripe-Signature')
        if not signature:
            raise WebhookSignatureError('Missing Stripe-Signature header')
        text = _payload_text(payload)
        try:
            stripe.WebhookSignature.verify_header(text, signature, self.webhook_secret,
                                                  stripe.Webhook.DEFAULT_TOLERANCE)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid Stripe signature: {str(e)}") from e

        event = _load_event(text)
        obj = (event.get('data') or {}).get('object') or {}
        raw_type = event.get('type', '')
        raw_status = obj.get('status')
        intent = PaymentIntent(
            id=obj.get('id'),
            amount_cents=obj.get('amount_received') or obj.get('amount'),
            currency=(obj.get('currency') or config.CURRENCY).upper(),
            status=self.map_status(raw_status),
            raw_status=raw_status,
            metadata=obj.get('metadata') or {},
        )
        return ParsedWebhookEvent(event_id=event.get('id'), type=self.EVENT_TYPES.get(raw_type, raw_type),
                                  raw_type=raw_type, intent=intent, raw=event)

    def get_client_config(self):
        return {'provider': self.provider_id, 'publishable_key': self.publishable_key}

    def get_dashboard_url(self, intent_id):
        return f"https://dashboard.stripe.com/payments/{intent_id}"

    def requires_client_secret(self):
        return True


class SquarePaymentProvider(PaymentProvider):
    """Square has no payment intents: a reference id is issued up front and the
    payment is created when the browser returns a card token."""

    provider_id = 'square'
    display_name = 'Square'
    API_VERSION = '2024-08-15'
    REFERENCE_PREFIX = 'karate_'

    STATUS_MAP = {
        'APPROVED': 'processing',
        'PENDING': 'pending',
        'COMPLETED': 'succeeded',
        'CANCELED': 'canceled',
        'FAILED': 'failed',
    }

    def __init__(self, access_token=None, application_id=None, location_id=None, environment=None,
                 webhook_signature_key=None, webhook_url=None, session=None):
        self.access_token = access_token or config.SQUARE_ACCESS_TOKEN
        self.application_id = application_id or config.SQUARE_APPLICATION_ID
        self.location_id = location_id or config.SQUARE_LOCATION_ID
        self.environment = environment or config.SQUARE_ENVIRONMENT
        self.webhook_signature_key = webhook_signature_key or config.SQUARE_WEBHOOK_SIGNATURE_KEY
        self.webhook_url = webhook_url or config.SQUARE_WEBHOOK_URL
        self.session = session or requests.Session()

    @property
    def base_url(self):
        if self.environment == 'production':
            return 'https://connect.squareup.com'
        return 'https://connect.squareupsandbox.com'

    def is_configured(self):
        return bool(self.access_token and self.application_id and self.location_id)

    def _headers(self):
        if not self.access_token:
            raise ProviderNotConfiguredError('Square access token is not configured')
        return {
            'Square-Version': self.API_VERSION,
            'Authorization': f"Bearer {self.access_token}",
            'Content-Type': 'application/json',
        }

    @staticmethod
    def _error_detail(response):
        try:
            errors = response.json().get('errors') or []
        except ValueError:
            errors = []
        if errors:
            return '; '.join(e.get('detail') or e.get('code', 'Unknown error') for e in errors)
        return f"HTTP {response.status_code}"

    def _to_intent(self, payment) -> PaymentIntent:
        raw_status = payment.get('status')
        card = (payment.get('card_details') or {}).get('card') or {}
        metadata = {}
        if payment.get('order_id'):
            metadata['orderId'] = payment['order_id']
        if payment.get('reference_id'):
            metadata['referenceId'] = payment['reference_id']
        money = payment.get('amount_money') or {}
        return PaymentIntent(
            id=payment['id'],
            amount_cents=money.get('amount'),
            currency=money.get('currency') or config.CURRENCY,
            status=self.STATUS_MAP.get(raw_status, 'pending'),
            raw_status=raw_status,
            metadata=metadata,
            receipt_url=payment.get('receipt_url'),
            payment_method_type=(payment.get('source_type') or '').lower() or None,
            card_last4=card.get('last_4'),
        )

    def create_payment_intent(self, amount_cents, currency=config.CURRENCY, metadata=None,
                              description=None, receipt_email=None):
        reference_id = f"{self.REFERENCE_PREFIX}{int(time.time() * 1000)}_{secrets.token_hex(4)}"
        logger.info(f"Issued Square payment reference {reference_id} for {amount_cents} cents")
        return PaymentIntent(id=reference_id, amount_cents=int(amount_cents), currency=currency,
                             status='pending', metadata=dict(metadata or {}))

    def confirm_payment(self, supabase, reference_id, source_id, note=None) -> PaymentIntent:
        """Charge the card token for the payment registered under reference_id."""
        rows = supabase.table('payments').select('*').eq('payment_intent_id', reference_id).limit(1).execute().data
        if not rows:
            raise NotFoundError(f"No payment found for reference {reference_id}")
        payment = rows[0]
        body = {
            'source_id': source_id,
            'idempotency_key': str(uuid.uuid4()),
            'amount_money': {'amount': payment['total_amount'], 'currency': config.CURRENCY},
            'location_id': self.location_id,
            'reference_id': reference_id,
            'autocomplete': True,
        }
        if note:
            body['note'] = note
        try:
            response = self.session.post(f"{self.base_url}/v2/payments", json=body, headers=self._headers(), timeout=30)
        except requests.RequestException as e:
            raise PaymentError(f"Square request failed: {str(e)}") from e
        if not response.ok:
            raise PaymentError(f"Square payment failed: {self._error_detail(response)}")

        intent = self._to_intent(response.json()['payment'])
        supabase.table('payments').update({'payment_intent_id': intent.id}).eq('id', payment['id']).execute()
        logger.info(f"Square payment {intent.id} created for payment {payment['id']}, status {intent.raw_status}")
        return intent

    def retrieve_payment_intent(self, intent_id, include_payment_method=False, include_latest_charge=False):
        if intent_id.startswith(self.REFERENCE_PREFIX):
            return PaymentIntent(id=intent_id, status='pending')
        try:
            response = self.session.get(f"{self.base_url}/v2/payments/{intent_id}",
                                        headers=self._headers(), timeout=30)
        except requests.RequestException as e:
            raise PaymentError(f"Square request failed: {str(e)}") from e
        if response.status_code == 404:
            return PaymentIntent(id=intent_id, status='pending')
        if not response.ok:
            raise PaymentError(f"Square error: {self._error_detail(response)}")
        return self._to_intent(response.json()['payment'])

    def cancel_payment_intent(self, intent_id):
        if intent_id.startswith(self.REFERENCE_PREFIX):
            return PaymentIntent(id=intent_id, status='canceled', raw_status='CANCELED')
        try:
            response = self.session.post(f"{self.base_url}/v2/payments/{intent_id}/cancel",
                                         json={}, headers=self._headers(), timeout=30)
        except requests.RequestException as e:
            raise PaymentError(f"Square request failed: {str(e)}") from e
        if not response.ok:
            raise PaymentError(f"Square error: {self._error_detail(response)}")
        return self._to_intent(response.json()['payment'])

    def verify_signature(self, payload_text, headers, request_url=None):
        if not self.webhook_signature_key:
            raise ProviderNotConfiguredError('Square webhook signature key is not configured')
        signature = _header(headers, 'x-square-hmacsha256-signature')
        if signature:
            message = (self.webhook_url or request_url or '') + payload_text
        else:
            signature = _header(headers, 'x-square-signature')
            message = payload_text
        if not signature:
            raise WebhookSignatureError('Missing Square signature header')
        digest = hmac.new(self.webhook_signature_key.encode('utf-8'), message.encode('utf-8'), hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode('utf-8')
        if not hmac.compare_digest(expected, signature):
            raise WebhookSignatureError('Invalid Square signature')

    def parse_webhook_event(self, payload, headers, request_url=None):
        text = _payload_text(payload)
        self.verify_signature(text, headers, request_url)
        event = _load_event(text)
        raw_type = event.get('type', '')
        payment = ((event.get('data') or {}).get('object') or {}).get('payment') or {}
        intent = self._to_intent(payment) if payment.get('id') else PaymentIntent(id=None)

        event_type = raw_type
        if raw_type in ('payment.created', 'payment.updated'):
            if intent.raw_status == 'COMPLETED':
                event_type = 'payment.succeeded'
            elif intent.raw_status in ('FAILED', 'CANCELED'):
                event_type = 'payment.failed'
            else:
                event_type = 'payment.processing'
        return ParsedWebhookEvent(event_id=event.get('event_id'), type=event_type, raw_type=raw_type,
                                  intent=intent, raw=event)

    def enrich_webhook_metadata(self, supabase, metadata, intent_id):
        """Square events carry no custom metadata, so rebuild it from the stored payment."""
        rows = []
        if intent_id:
            rows = supabase.table('payments').select('*').eq('payment_intent_id', intent_id).limit(1).execute().data
        if not rows and metadata.get('referenceId'):
            rows = supabase.table('payments').select('*') \
                .eq('payment_intent_id', metadata['referenceId']).limit(1).execute().data
        if not rows:
            logger.warning(f"[Webhook square] No payment found for Square payment {intent_id}")
            return metadata
        enriched = dict(metadata)
        enriched.update(build_payment_metadata(rows[0]))
        return enriched

    def get_client_config(self):
        return {'provider': self.provider_id, 'application_id': self.application_id,
                'location_id': self.location_id, 'environment': self.environment}

    def get_dashboard_url(self, intent_id):
        host = 'squareup.com' if self.environment == 'production' else 'squareupsandbox.com'
        return f"https://{host}/dashboard/sales/transactions/{intent_id}"


class MockPaymentProvider(PaymentProvider):
    """In-process provider for local development. Webhooks are unsigned JSON."""

    provider_id = 'mock'
    display_name = 'Mock'

    # Process-wide so a webhook request sees intents created by an earlier
    # request. Development only; the oldest intents are evicted past MAX_INTENTS.
    _intents = {}
    MAX_INTENTS = 500

    def is_configured(self):
        return True

    def create_payment_intent(self, amount_cents, currency=config.CURRENCY, metadata=None,
                              description=None, receipt_email=None):
        intent = PaymentIntent(id=f"mock_pi_{uuid.uuid4().hex}", amount_cents=int(amount_cents), currency=currency,
                               status='pending', raw_status='pending', client_secret=f"mock_secret_{uuid.uuid4().hex}",
                               metadata=dict(metadata or {}))
        while len(self._intents) >= self.MAX_INTENTS:
            self._intents.pop(next(iter(self._intents)))
        self._intents[intent.id] = intent
        return intent

    def set_status(self, intent_id, status, card_last4='4242'):
        intent = self._intents[intent_id]
        intent.status = status
        intent.raw_status = status
        intent.card_last4 = card_last4
        intent.payment_method_type = 'card'
        intent.receipt_url = f"https://example.com/receipts/{intent_id}"
        return intent

    def retrieve_payment_intent(self, intent_id, include_payment_method=False, include_latest_charge=False):
        if intent_id not in self._intents:
            raise NotFoundError(f"Mock payment intent {intent_id} not found")
        return self._intents[intent_id]

    def cancel_payment_intent(self, intent_id):
        return self.set_status(intent_id, 'canceled')

    def parse_webhook_event(self, payload, headers, request_url=None):
        event = _load_event(_payload_text(payload))
        obj = (event.get('data') or {}).get('object') or {}
        intent = PaymentIntent(id=obj.get('id'), amount_cents=obj.get('amount'), status=obj.get('status', 'pending'),
                               raw_status=obj.get('status'), metadata=obj.get('metadata') or {})
        raw_type = event.get('type', '')
        return ParsedWebhookEvent(event_id=event.get('id'), type=raw_type, raw_type=raw_type, intent=intent, raw=event)


PROVIDERS = {
    'stripe': StripePaymentProvider,
    'square': SquarePaymentProvider,
    'mock': MockPaymentProvider,
}


def get_payment_provider(name=None) -> PaymentProvider:
    name = (name or config.PAYMENT_PROVIDER or 'stripe').lower()
    if name not in PROVIDERS:
        raise ValueError(f"Unknown payment provider: {name}")
    return PROVIDERS[name]()


def detect_provider_for_intent(intent_id):
    """Guess which provider issued an intent id."""
    if not intent_id:
        return None
    if intent_id.startswith('pi_'):
        return 'stripe'
    if intent_id.startswith(SquarePaymentProvider.REFERENCE_PREFIX):
        return 'square' if SquarePaymentProvider().is_configured() else 'stripe'
    if intent_id.startswith('mock_'):
        return 'mock'
    return config.PAYMENT_PROVIDER
