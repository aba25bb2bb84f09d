import logging
import time
import uuid

from postgrest.exceptions import APIError

from dojo.dates import utc_now
from dojo.errors import DojoError, DuplicateEventError

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = '23505'


def check_webhook_idempotency(supabase, provider, event_id):
    """Return (is_duplicate, existing_event) for a provider event id."""
    if not event_id:
        return False, None
    try:
        rows = supabase.table('webhook_events').select('*') \
            .eq('provider', provider).eq('event_id', event_id).limit(1).execute().data
    except APIError as e:
        logger.error(f"[Webhook {provider}] Idempotency check failed for {event_id}: {e.message}")
        return False, None
    if rows:
        return True, rows[0]
    return False, None


def create_webhook_event(supabase, data):
    """Insert a processing audit row and return its id."""
    row = {
        'id': str(uuid.uuid4()),
        'status': 'processing',
        'received_at': utc_now().isoformat(),
        'retry_count': 0,
    }
    row.update(data)
    try:
        supabase.table('webhook_events').insert(row).execute()
    except APIError as e:
        if e.code == UNIQUE_VIOLATION:
            raise DuplicateEventError(f"Webhook event {data.get('event_id')} already recorded") from e
        raise DojoError(f"Failed to create webhook event: {e.message}") from e
    return row['id']


def _duration_ms(started):
    return int((time.perf_counter() - started) * 1000) if started is not None else None


def _update(supabase, webhook_event_id, update):
    try:
        supabase.table('webhook_events').update(update).eq('id', webhook_event_id).execute()
    except APIError as e:
        logger.error(f"Failed to update webhook event {webhook_event_id}: {e.message}")


def mark_webhook_event_succeeded(supabase, webhook_event_id, payment_id=None, started=None):
    _update(supabase, webhook_event_id, {
        'status': 'succeeded',
        'processed_at': utc_now().isoformat(),
        'payment_id': payment_id,
        'processing_duration_ms': _duration_ms(started),
    })


def mark_webhook_event_failed(supabase, webhook_event_id, error_message, error_details=None, started=None):
    _update(supabase, webhook_event_id, {
        'status': 'failed',
        'processed_at': utc_now().isoformat(),
        'error_message': error_message,
        'error_details': error_details,
        'processing_duration_ms': _duration_ms(started),
    })


def mark_webhook_event_duplicate(supabase, webhook_event_id, payment_id=None, started=None):
    _update(supabase, webhook_event_id, {
        'status': 'duplicate',
        'processed_at': utc_now().isoformat(),
        'payment_id': payment_id,
        'processing_duration_ms': _duration_ms(started),
    })


def increment_webhook_retry_count(supabase, webhook_event_id):
    try:
        rows = supabase.table('webhook_events').select('retry_count').eq('id', webhook_event_id).limit(1).execute().data
    except APIError as e:
        logger.error(f"Failed to read webhook event {webhook_event_id}: {e.message}")
        return
    if rows:
        _update(supabase, webhook_event_id, {'retry_count': (rows[0].get('retry_count') or 0) + 1})


def list_webhook_events(supabase, status=None, limit=50):
    query = supabase.table('webhook_events').select('*')
    if status:
        query = query.eq('status', status)
    return query.order('received_at', desc=True).limit(limit).execute().data
