"""Decide how far a payment extends an enrollment's paid_until date.

Rules, first match wins:

1. The current period has not expired: extend from paid_until.
2. Paid within GRACE_PERIOD_DAYS of expiry: extend from paid_until so a late
   payment does not shift the billing cycle.
3. Paid later than that, but the student attended class after expiry: extend
   from paid_until since those classes were used.
4. Otherwise start a fresh period on the payment date.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta

from dateutil.relativedelta import relativedelta
from postgrest.exceptions import APIError

from dojo import config
from dojo.dates import as_date

logger = logging.getLogger(__name__)


@dataclass
class PaidUntilResult:
    new_paid_until: object
    reason: str
    rule_applied: str


def add_billing_period(start, payment_type):
    if payment_type == 'monthly_group':
        return start + relativedelta(months=1)
    if payment_type == 'yearly_group':
        return start + relativedelta(years=1)
    logger.warning(f"Unknown payment type for paid_until calculation: {payment_type}, defaulting to one month")
    return start + relativedelta(months=1)


def find_attendance_after_expiration(supabase, student_id, expiration_date, lookback_days=config.ATTENDANCE_LOOKBACK_DAYS):
    """Earliest date the student was present in class within the lookback window after expiry."""
    window_end = expiration_date + timedelta(days=lookback_days)
    try:
        attendance = supabase.table('attendance').select('class_session_id') \
            .eq('student_id', student_id).eq('status', 'present').execute().data
        session_ids = [a['class_session_id'] for a in attendance if a.get('class_session_id')]
        if not session_ids:
            return None
        sessions = supabase.table('class_sessions').select('id, session_date') \
            .in_('id', session_ids) \
            .gte('session_date', expiration_date.isoformat()) \
            .lte('session_date', window_end.isoformat()) \
            .order('session_date').limit(1).execute().data
    except APIError as e:
        logger.error(f"Error checking attendance for student {student_id}: {e.message}")
        return None
    return as_date(sessions[0]['session_date']) if sessions else None


def calculate_paid_until(supabase, enrollment, payment_date, payment_type) -> PaidUntilResult:
    payment_date = as_date(payment_date)
    current = as_date(enrollment.get('paid_until'))

    if current is None:
        return PaidUntilResult(add_billing_period(payment_date, payment_type), 'First payment', 'default')

    if current > payment_date:
        return PaidUntilResult(add_billing_period(current, payment_type),
                               'Current subscription not expired', 'default')

    days_overdue = (payment_date - current).days
    if days_overdue <= config.GRACE_PERIOD_DAYS:
        return PaidUntilResult(add_billing_period(current, payment_type),
                               f"Paid {days_overdue} days late, within grace period", 'grace_period')

    attended_on = find_attendance_after_expiration(supabase, enrollment['student_id'], current)
    if attended_on:
        return PaidUntilResult(add_billing_period(current, payment_type),
                               f"Attended class on {attended_on.isoformat()} after expiration", 'attendance_credit')

    return PaidUntilResult(add_billing_period(payment_date, payment_type),
                           f"Paid {days_overdue} days late with no attendance, new period starts on payment date",
                           'default')
