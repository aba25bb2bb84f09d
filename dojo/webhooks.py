import logging
import time
from dataclasses import dataclass
from typing import Optional

from dojo.errors import DojoError, DuplicateEventError, NotFoundError, PaymentError
from dojo.payments import apply_payment_status
from dojo.webhook_events import (
    check_webhook_idempotency,
    create_webhook_event,
    increment_webhook_retry_count,
    mark_webhook_event_duplicate,
    mark_webhook_event_failed,
    mark_webhook_event_succeeded,
)

logger = logging.getLogger(__name__)

REQUIRED_SUCCESS_METADATA = ['paymentId', 'type', 'familyId', 'subtotal_amount', 'tax_amount', 'total_amount']
ACKNOWLEDGED_EVENTS = ('payment.processing', 'mandate.updated', 'charge.succeeded', 'charge.updated')


@dataclass
class WebhookResult:
    success: bool
    error: Optional[str] = None
    is_duplicate: bool = False
    payment_id: Optional[str] = None


def _missing(metadata, keys):
    return [k for k in keys if metadata.get(k) in (None, '')]


def _amount(metadata, key):
    try:
        return int(metadata[key])
    except (TypeError, ValueError):
        raise PaymentError(f"Invalid {key} in payment metadata: {metadata.get(key)}")


def handle_payment_success(supabase, provider, intent, metadata):
    """Settle a payment from a success event. Returns ``(payment_id, changed)``."""
    prefix = f"[Webhook {provider.provider_id}]"
    missing = _missing(metadata, REQUIRED_SUCCESS_METADATA)
    if metadata.get('type') == 'store_purchase' and not metadata.get('orderId'):
        missing.append('orderId')
    if missing:
        raise PaymentError(f"Missing required metadata: {', '.join(missing)}")

    payment_id = metadata['paymentId']
    subtotal = _amount(metadata, 'subtotal_amount')
    tax = _amount(metadata, 'tax_amount')
    total = _amount(metadata, 'total_amount')

    details = intent
    try:
        details = provider.retrieve_payment_intent(intent.id, include_payment_method=True, include_latest_charge=True)
    except (PaymentError, NotFoundError) as e:
        logger.warning(f"{prefix} Could not load payment details for {intent.id}: {str(e)}")

    charged = details.amount_cents if details.amount_cents is not None else intent.amount_cents
    if charged is not None and charged != total:
        logger.error(f"{prefix} Amount mismatch for payment {payment_id}: charged {charged}, expected {total}")
        raise PaymentError('Amount mismatch detected')

    quantity = metadata.get('quantity')
    _, changed = apply_payment_status(
        supabase, payment_id, 'succeeded',
        receipt_url=details.receipt_url or intent.receipt_url,
        payment_method=details.payment_method_type or intent.payment_method_type,
        payment_intent_id=intent.id,
        payment_type=metadata['type'],
        family_id=metadata['familyId'],
        quantity=int(quantity) if quantity else None,
        subtotal=subtotal,
        tax=tax,
        total=total,
        card_last4=details.card_last4 or intent.card_last4,
        order_id=metadata.get('orderId'),
    )
    return payment_id, changed


def handle_payment_failure(supabase, provider, intent, metadata):
    payment_id = metadata.get('paymentId')
    if not payment_id:
        raise PaymentError('Missing required metadata: paymentId')
    _, changed = apply_payment_status(supabase, payment_id, 'failed', payment_intent_id=intent.id,
                                      payment_method=intent.payment_method_type, card_last4=intent.card_last4,
                                      order_id=metadata.get('orderId'))
    return payment_id, changed


def _record_event(supabase, provider, event, metadata, source_ip):
    """Return ``(webhook_event_id, is_duplicate)`` for a delivery.

    A delivery whose earlier attempt failed is processed again on the same
    audit row.
    """
    prefix = f"[Webhook {provider.provider_id}]"
    _, existing = check_webhook_idempotency(supabase, provider.provider_id, event.event_id)
    if existing:
        if existing.get('status') == 'failed':
            logger.info(f"{prefix} Retrying previously failed event {event.event_id}")
            increment_webhook_retry_count(supabase, existing['id'])
            return existing['id'], False
        return existing['id'], True

    try:
        return create_webhook_event(supabase, {
            'provider': provider.provider_id,
            'event_id': event.event_id,
            'event_type': event.type,
            'raw_type': event.raw_type,
            'raw_payload': event.raw,
            'parsed_metadata': metadata,
            'source_ip': source_ip,
            'signature_verified': True,
        }), False
    except DuplicateEventError:
        logger.info(f"{prefix} Event {event.event_id} recorded concurrently, skipping")
        return None, True
    except DojoError as e:
        logger.error(f"{prefix} {str(e)}, continuing without audit record")
        return None, False


def handle_payment_webhook(supabase, provider, payload, headers, request_url=None, source_ip=None) -> WebhookResult:
    """Verify, deduplicate, audit and apply one webhook delivery.

    Signature and payload errors propagate to the caller. Everything after
    parsing is reported through the returned WebhookResult.
    """
    started = time.perf_counter()
    prefix = f"[Webhook {provider.provider_id}]"
    event = provider.parse_webhook_event(payload, headers, request_url)
    metadata = provider.enrich_webhook_metadata(supabase, dict(event.intent.metadata or {}), event.intent.id)
    logger.info(f"{prefix} Received {event.raw_type} ({event.event_id}) for {event.intent.id}")

    webhook_event_id, is_duplicate = _record_event(supabase, provider, event, metadata, source_ip)
    if is_duplicate:
        logger.info(f"{prefix} Duplicate event {event.event_id}, skipping")
        return WebhookResult(True, is_duplicate=True)

    try:
        payment_id, changed = None, True
        if event.type == 'payment.succeeded':
            payment_id, changed = handle_payment_success(supabase, provider, event.intent, metadata)
        elif event.type == 'payment.failed':
            payment_id, changed = handle_payment_failure(supabase, provider, event.intent, metadata)
        elif event.type in ACKNOWLEDGED_EVENTS:
            logger.info(f"{prefix} Acknowledged {event.type}")
        else:
            logger.info(f"{prefix} Unhandled event type {event.raw_type}")

        if not changed:
            # Another event for the same payment already settled it
            logger.info(f"{prefix} Payment {payment_id} already settled, {event.event_id} changed nothing")
            if webhook_event_id:
                mark_webhook_event_duplicate(supabase, webhook_event_id, payment_id, started)
            return WebhookResult(True, is_duplicate=True, payment_id=payment_id)
        if webhook_event_id:
            mark_webhook_event_succeeded(supabase, webhook_event_id, payment_id, started)
        return WebhookResult(True, payment_id=payment_id)
    except Exception as e:
        logger.error(f"{prefix} Error processing {event.event_id}: {str(e)}")
        if webhook_event_id:
            mark_webhook_event_failed(supabase, webhook_event_id, str(e),
                                      {'error_type': type(e).__name__, 'event_type': event.type}, started)
        return WebhookResult(False, error=str(e))
