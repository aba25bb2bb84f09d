import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from dojo.dates import as_datetime, utc_now
from dojo.errors import NotFoundError, ValidationError
from dojo.money import multiply_cents, to_cents

logger = logging.getLogger(__name__)

DISCOUNT_TYPES = ('percentage', 'fixed_amount')
APPLICABLE_TYPES = ('monthly_group', 'yearly_group', 'individual_session', 'store_purchase', 'event_registration')


@dataclass
class DiscountValidation:
    is_valid: bool
    discount_amount_cents: int = 0
    discount_code_id: Optional[str] = None
    error_message: Optional[str] = None


def get_discount_code_by_code(supabase, code):
    if not code:
        return None
    rows = supabase.table('discount_codes').select('*').eq('code', code.strip().upper()).limit(1).execute().data
    return rows[0] if rows else None


def list_discount_codes(supabase):
    return supabase.table('discount_codes').select('*').order('created_at', desc=True).execute().data


def validate_discount_code(supabase, code, family_id, subtotal_cents, applicable_to, student_id=None, now=None):
    """Check a code against a prospective payment and price the discount."""
    now = now or utc_now()
    discount = get_discount_code_by_code(supabase, code)
    if not discount:
        return DiscountValidation(False, error_message='Invalid discount code')
    if not discount.get('is_active'):
        return DiscountValidation(False, error_message='This discount code is no longer active')

    valid_from = as_datetime(discount.get('valid_from'))
    if valid_from and valid_from > now:
        return DiscountValidation(False, error_message='This discount code is not yet valid')
    valid_until = as_datetime(discount.get('valid_until'))
    if valid_until and valid_until < now:
        return DiscountValidation(False, error_message='This discount code has expired')

    max_uses = discount.get('max_uses')
    if max_uses is not None and (discount.get('current_uses') or 0) >= max_uses:
        return DiscountValidation(False, error_message='This discount code has reached its usage limit')

    if discount.get('family_id') and discount['family_id'] != family_id:
        return DiscountValidation(False, error_message='This discount code is not valid for your family')
    if discount.get('student_id') and discount['student_id'] != student_id:
        return DiscountValidation(False, error_message='This discount code is not valid for this student')

    allowed = discount.get('applicable_to') or []
    if allowed and applicable_to not in allowed:
        return DiscountValidation(False, error_message='This discount code does not apply to this purchase')

    try:
        value = Decimal(str(discount['discount_value']))
    except (InvalidOperation, KeyError):
        logger.error(f"Discount code {discount['id']} has an invalid value: {discount.get('discount_value')}")
        return DiscountValidation(False, error_message='Invalid discount code')

    if discount['discount_type'] == 'percentage':
        amount = multiply_cents(subtotal_cents, value / 100)
    else:
        amount = to_cents(value)
    amount = max(0, min(amount, subtotal_cents))
    logger.info(f"Validated discount code {discount['code']} for family {family_id}: {amount} cents")
    return DiscountValidation(True, discount_amount_cents=amount, discount_code_id=discount['id'])


def apply_discount_code(supabase, discount_code_id, payment_id, family_id, discount_amount_cents, student_id=None):
    """Record a use of the code and bump its usage count."""
    rows = supabase.table('discount_codes').select('id, current_uses').eq('id', discount_code_id).limit(1).execute().data
    if not rows:
        raise NotFoundError(f"Discount code {discount_code_id} not found")
    supabase.table('discount_code_usage').insert({
        'id': str(uuid.uuid4()),
        'discount_code_id': discount_code_id,
        'payment_id': payment_id,
        'family_id': family_id,
        'student_id': student_id,
        'discount_amount': discount_amount_cents,
    }).execute()
    supabase.table('discount_codes').update({
        'current_uses': (rows[0].get('current_uses') or 0) + 1,
    }).eq('id', discount_code_id).execute()
    logger.info(f"Applied discount code {discount_code_id} to payment {payment_id}")


def clean_discount_terms(data):
    """Validate the type, value and applicable payment types shared by codes and templates."""
    discount_type = data.get('discount_type')
    errors = {}
    value = None
    if discount_type not in DISCOUNT_TYPES:
        errors['discount_type'] = 'Must be percentage or fixed_amount'
    try:
        value = Decimal(str(data.get('discount_value')))
        if value <= 0 or (discount_type == 'percentage' and value > 100):
            errors['discount_value'] = 'Out of range'
    except InvalidOperation:
        errors['discount_value'] = 'Must be a number'
    applicable_to = [t for t in (data.get('applicable_to') or []) if t]
    unknown = [t for t in applicable_to if t not in APPLICABLE_TYPES]
    if unknown:
        errors['applicable_to'] = f"Unknown payment types: {', '.join(unknown)}"
    max_uses = None
    if data.get('max_uses'):
        try:
            max_uses = int(data['max_uses'])
        except (TypeError, ValueError):
            errors['max_uses'] = 'Must be a whole number'
    terms = {
        'discount_type': discount_type,
        'discount_value': float(value) if 'discount_value' not in errors else None,
        'applicable_to': applicable_to,
        'max_uses': max_uses,
    }
    return terms, errors


def create_discount_code(supabase, data):
    code = (data.get('code') or '').strip().upper()
    terms, errors = clean_discount_terms(data)
    if not code:
        errors['code'] = 'Required'
    if errors:
        raise ValidationError('Invalid discount code', errors)
    if get_discount_code_by_code(supabase, code):
        raise ValidationError(f"Discount code {code} already exists", {'code': 'Already exists'})

    row = {
        'id': str(uuid.uuid4()),
        'code': code,
        'name': data.get('name') or code,
        'description': data.get('description') or None,
        'family_id': data.get('family_id') or None,
        'student_id': data.get('student_id') or None,
        'current_uses': 0,
        'is_active': True,
        'valid_from': data.get('valid_from') or utc_now().isoformat(),
        'valid_until': data.get('valid_until') or None,
    }
    row.update(terms)
    row = supabase.table('discount_codes').insert(row).execute().data[0]
    logger.info(f"Created discount code: {code}")
    return row


def set_discount_code_active(supabase, discount_code_id, is_active):
    rows = supabase.table('discount_codes').update({'is_active': bool(is_active)}).eq('id', discount_code_id).execute().data
    if not rows:
        raise NotFoundError(f"Discount code {discount_code_id} not found")
    return rows[0]
