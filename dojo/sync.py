import logging
from collections import Counter
from datetime import timedelta

from postgrest.exceptions import APIError

from dojo import config
from dojo.dates import utc_now
from dojo.errors import DojoError
from dojo.payments import update_payment_status
from dojo.providers import SquarePaymentProvider, detect_provider_for_intent, get_payment_provider

logger = logging.getLogger(__name__)

# Raw provider statuses that settle a payment that is still pending
SYNC_STATUS_MAP = {
    'stripe': {
        'succeeded': 'succeeded',
        'requires_payment_method': 'failed',
        'canceled': 'failed',
    },
    'square': {
        'approved': 'succeeded',
        'completed': 'succeeded',
        'captured': 'succeeded',
        'failed': 'failed',
        'canceled': 'failed',
        'declined': 'failed',
    },
    'mock': {
        'succeeded': 'succeeded',
        'failed': 'failed',
        'canceled': 'failed',
    },
}


def configured_providers():
    providers = {}
    for name in ('stripe', 'square'):
        provider = get_payment_provider(name)
        if provider.is_configured():
            providers[name] = provider
    return providers


def sync_pending_payments(supabase, providers=None, now=None, threshold_minutes=config.PENDING_THRESHOLD_MINUTES):
    """Reconcile payments left pending because a webhook never arrived."""
    providers = configured_providers() if providers is None else providers
    cutoff = (now or utc_now()) - timedelta(minutes=threshold_minutes)
    pending = supabase.table('payments').select('*').eq('status', 'pending') \
        .lt('created_at', cutoff.isoformat()).order('created_at').execute().data
    pending = [p for p in pending if p.get('payment_intent_id')]
    logger.info(f"Found {len(pending)} pending payments older than {threshold_minutes} minutes")

    summary = {'checked': 0, 'updated': 0, 'failed': 0, 'status_breakdown': Counter(), 'skipped': []}
    for payment in pending:
        intent_id = payment['payment_intent_id']
        provider_name = detect_provider_for_intent(intent_id)
        provider = providers.get(provider_name)
        if provider is None:
            summary['skipped'].append({'payment_id': payment['id'], 'reason': f"Provider {provider_name} not configured"})
            continue
        summary['checked'] += 1

        try:
            if intent_id.startswith(SquarePaymentProvider.REFERENCE_PREFIX):
                # The card token never came back, so no Square payment exists
                update_payment_status(supabase, payment['id'], 'failed')
                summary['failed'] += 1
                summary['status_breakdown']['stale_reference'] += 1
                logger.info(f"Marked stale Square reference {intent_id} as failed")
                continue

            intent = provider.retrieve_payment_intent(intent_id, include_payment_method=True, include_latest_charge=True)
            raw_status = (intent.raw_status or intent.status or '').lower()
            summary['status_breakdown'][raw_status] += 1
            new_status = SYNC_STATUS_MAP.get(provider_name, {}).get(raw_status)
            if new_status == 'succeeded':
                update_payment_status(supabase, payment['id'], 'succeeded',
                                      receipt_url=intent.receipt_url,
                                      payment_method=intent.payment_method_type,
                                      payment_intent_id=intent.id,
                                      card_last4=intent.card_last4)
                summary['updated'] += 1
                logger.info(f"Payment {payment['id']} synced to succeeded from {provider_name}")
            elif new_status == 'failed':
                update_payment_status(supabase, payment['id'], 'failed', payment_intent_id=intent.id)
                summary['failed'] += 1
                logger.info(f"Payment {payment['id']} synced to failed ({raw_status})")
        except (DojoError, APIError) as e:
            logger.error(f"Error syncing payment {payment['id']}: {str(e)}")
            summary['skipped'].append({'payment_id': payment['id'], 'reason': str(e)})

    summary['status_breakdown'] = dict(summary['status_breakdown'])
    logger.info(f"Sync complete: checked {summary['checked']}, updated {summary['updated']}, "
                f"failed {summary['failed']}, skipped {len(summary['skipped'])}")
    return summary
