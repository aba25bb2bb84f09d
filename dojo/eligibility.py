import logging
from dataclasses import dataclass
from typing import Optional

from postgrest.exceptions import APIError

from dojo import config
from dojo.dates import as_date, local_today
from dojo.payments import get_student_payment_options

logger = logging.getLogger(__name__)

TIER_LABELS = {
    'monthly': 'Monthly',
    'yearly': 'Yearly',
    'individual': 'Individual Session',
}


@dataclass
class EligibilityStatus:
    eligible: bool
    reason: str
    last_payment_date: Optional[str] = None


def _succeeded_payments_for_student(supabase, student_id):
    links = supabase.table('payment_students').select('payment_id').eq('student_id', student_id).execute().data
    payment_ids = [link['payment_id'] for link in links]
    if not payment_ids:
        return []
    payments = supabase.table('payments').select('id, type, payment_date') \
        .in_('id', payment_ids).eq('status', 'succeeded').execute().data
    return [p for p in payments if p.get('payment_date')]


def check_student_eligibility(supabase, student_id, today=None) -> EligibilityStatus:
    """Trial until the first payment, Paid within the validity window, Expired after."""
    today = today or local_today()
    try:
        payments = _succeeded_payments_for_student(supabase, student_id)
    except APIError as e:
        logger.error(f"Error checking eligibility for student {student_id}: {e.message}")
        return EligibilityStatus(False, 'Expired')

    if not payments:
        return EligibilityStatus(True, 'Trial')

    last_payment = max(payments, key=lambda p: as_date(p['payment_date']))
    last_date = as_date(last_payment['payment_date'])
    days_since = (today - last_date).days
    if days_since <= config.PAYMENT_VALIDITY_DAYS:
        return EligibilityStatus(True, 'Paid', last_date.isoformat())
    return EligibilityStatus(False, 'Expired', last_date.isoformat())


def get_family_individual_sessions(supabase, family_id):
    try:
        purchases = supabase.table('one_on_one_sessions').select('*').eq('family_id', family_id) \
            .order('purchase_date', desc=True).execute().data
    except APIError as e:
        logger.error(f"Error loading individual sessions for family {family_id}: {e.message}")
        return {'total_purchased': 0, 'total_remaining': 0, 'purchases': []}
    return {
        'total_purchased': sum(p.get('quantity_purchased') or 0 for p in purchases),
        'total_remaining': sum(p.get('quantity_remaining') or 0 for p in purchases),
        'purchases': purchases,
    }


def _has_available_discounts(supabase, family_id):
    codes = supabase.table('discount_codes').select('id, family_id').eq('is_active', True).execute().data
    return any(not c.get('family_id') or c['family_id'] == family_id for c in codes)


def _next_payment(options):
    for key, column in (('monthly', 'monthly_amount'), ('yearly', 'yearly_amount'),
                        ('individual', 'individual_session_amount')):
        for option in options:
            if option.get(column):
                return option[column], TIER_LABELS[key]
    return 0, TIER_LABELS['monthly']


def get_family_payment_eligibility(supabase, family_id, today=None):
    """Per-student eligibility, next amount due and individual session balance for a family."""
    result = {
        'family_id': family_id,
        'family_name': None,
        'student_payment_details': [],
        'has_available_discounts': False,
        'error': None,
    }
    families = supabase.table('families').select('id, name').eq('id', family_id).limit(1).execute().data
    if not families:
        result['error'] = 'Family not found'
        return result
    result['family_name'] = families[0]['name']

    students = supabase.table('students').select('id, first_name, last_name') \
        .eq('family_id', family_id).execute().data
    if not students:
        result['error'] = 'No students found for this family'
        return result

    try:
        individual_sessions = get_family_individual_sessions(supabase, family_id)
        for student in sorted(students, key=lambda s: (s.get('first_name') or '').lower()):
            eligibility = check_student_eligibility(supabase, student['id'], today)
            past_payments = _succeeded_payments_for_student(supabase, student['id'])
            options = get_student_payment_options(supabase, student['id'], today)
            amount, tier_label = _next_payment(options)
            result['student_payment_details'].append({
                'student_id': student['id'],
                'first_name': student['first_name'],
                'last_name': student['last_name'],
                'eligibility': eligibility,
                'needs_payment': eligibility.reason in ('Trial', 'Expired'),
                'past_payment_count': len(past_payments),
                'next_payment_amount': amount,
                'next_payment_tier_label': tier_label,
                'enrollments': options,
                'individual_sessions': individual_sessions,
            })
        result['has_available_discounts'] = _has_available_discounts(supabase, family_id)
    except APIError as e:
        logger.error(f"Error loading payment eligibility for family {family_id}: {e.message}")
        result['error'] = 'Failed to load payment information'
        result['student_payment_details'] = []
    return result


def get_student_payment_eligibility(supabase, student_id, today=None):
    students = supabase.table('students').select('id, family_id').eq('id', student_id).limit(1).execute().data
    if not students:
        return {'student_id': student_id, 'error': 'Student not found'}
    if not students[0].get('family_id'):
        return {'student_id': student_id, 'error': 'Student is not linked to a family'}
    family = get_family_payment_eligibility(supabase, students[0]['family_id'], today)
    family['student_payment_details'] = [d for d in family['student_payment_details'] if d['student_id'] == student_id]
    family['student_id'] = student_id
    return family
