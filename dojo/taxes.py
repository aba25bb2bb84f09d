import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List

from dojo import config
from dojo.dates import calculate_age
from dojo.money import multiply_cents

logger = logging.getLogger(__name__)

PST_TAX_NAME = 'PST_BC'
# BC PST does not apply to martial arts instruction
PST_EXEMPT_ITEM_TYPES = ('class_enrollment', 'individual_session')


@dataclass
class TaxCalculation:
    total_tax_cents: int = 0
    payment_taxes: List[dict] = field(default_factory=list)


def get_active_tax_rates(supabase):
    return supabase.table('tax_rates').select('*').eq('is_active', True).order('name').execute().data


def get_tax_rates_by_ids(supabase, tax_rate_ids):
    if not tax_rate_ids:
        return []
    return supabase.table('tax_rates').select('*').in_('id', list(tax_rate_ids)).execute().data


def item_type_for_payment(payment_type):
    if payment_type in ('monthly_group', 'yearly_group'):
        return 'class_enrollment'
    if payment_type in ('individual_session', 'event_registration'):
        return 'individual_session'
    return 'product'


def get_applicable_tax_rates(supabase, item_type, exempt_from_pst=False):
    rates = get_active_tax_rates(supabase)
    if exempt_from_pst or item_type in PST_EXEMPT_ITEM_TYPES:
        rates = [r for r in rates if r['name'] != PST_TAX_NAME]
    return rates


def has_students_under(supabase, student_ids, age=config.PST_EXEMPT_AGE, today=None):
    """True when any of the students is younger than age."""
    if not student_ids:
        return False
    students = supabase.table('students').select('id, birth_date').in_('id', list(student_ids)).execute().data
    for student in students:
        student_age = calculate_age(student.get('birth_date'), today)
        if student_age is not None and student_age < age:
            return True
    return False


def calculate_taxes_for_payment(supabase, subtotal_cents, payment_type, student_ids=None) -> TaxCalculation:
    """Tax each applicable rate separately on the subtotal and snapshot the rate used."""
    exempt_from_pst = False
    if payment_type == 'store_purchase' and student_ids:
        exempt_from_pst = has_students_under(supabase, student_ids)
        if exempt_from_pst:
            logger.info(f"PST exemption applied for store purchase, students: {student_ids}")

    rates = get_applicable_tax_rates(supabase, item_type_for_payment(payment_type), exempt_from_pst)
    result = TaxCalculation()
    if not rates or subtotal_cents <= 0:
        return result

    for rate in rates:
        try:
            rate_value = Decimal(str(rate['rate']))
        except (InvalidOperation, KeyError, TypeError):
            logger.error(f"Invalid tax rate value for {rate.get('name')}: {rate.get('rate')}")
            continue
        tax_amount = multiply_cents(subtotal_cents, rate_value)
        result.total_tax_cents += tax_amount
        result.payment_taxes.append({
            'tax_rate_id': rate['id'],
            'tax_amount': tax_amount,
            'tax_rate_snapshot': float(rate_value),
            'tax_name_snapshot': rate['name'],
        })
    return result
