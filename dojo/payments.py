import logging
import uuid
from datetime import timedelta
from typing import List

from postgrest.exceptions import APIError

from dojo import config
from dojo.dates import as_date, local_today, utc_now
from dojo.auto_discounts import record_first_payment
from dojo.discounts import apply_discount_code
from dojo.errors import NotFoundError, ValidationError
from dojo.money import to_cents
from dojo.paid_until import calculate_paid_until
from dojo.taxes import calculate_taxes_for_payment

logger = logging.getLogger(__name__)

PAYMENT_TYPES = ('monthly_group', 'yearly_group', 'individual_session', 'store_purchase', 'event_registration', 'other')
GROUP_PAYMENT_TYPES = ('monthly_group', 'yearly_group')
PAYMENT_OPTIONS = ('monthly', 'yearly', 'individual')


def get_payment(supabase, payment_id):
    rows = supabase.table('payments').select('*').eq('id', payment_id).limit(1).execute().data
    if not rows:
        raise NotFoundError(f"Payment {payment_id} not found")
    return rows[0]


def get_payment_student_ids(supabase, payment_id) -> List[str]:
    links = supabase.table('payment_students').select('student_id').eq('payment_id', payment_id).execute().data
    return [link['student_id'] for link in links]


def get_family_payments(supabase, family_id):
    payments = supabase.table('payments').select('*').eq('family_id', family_id) \
        .order('created_at', desc=True).execute().data
    payment_ids = [p['id'] for p in payments]
    if not payment_ids:
        return []
    links = supabase.table('payment_students').select('payment_id, student_id').in_('payment_id', payment_ids).execute().data
    taxes = supabase.table('payment_taxes').select('*').in_('payment_id', payment_ids).execute().data

    students_map = {}
    for link in links:
        students_map.setdefault(link['payment_id'], []).append(link['student_id'])
    taxes_map = {}
    for tax in taxes:
        taxes_map.setdefault(tax['payment_id'], []).append(tax)

    processed = []
    for payment in payments:
        payment_copy = payment.copy()
        payment_copy['student_ids'] = students_map.get(payment['id'], [])
        payment_copy['payment_taxes'] = taxes_map.get(payment['id'], [])
        processed.append(payment_copy)
    return processed


def list_payments(supabase, status=None, limit=100):
    query = supabase.table('payments').select('*')
    if status:
        query = query.eq('status', status)
    return query.order('created_at', desc=True).limit(limit).execute().data


def build_payment_metadata(payment) -> dict:
    """Metadata attached to a provider payment so webhooks can find the payment again."""
    taxable = max(0, (payment.get('subtotal_amount') or 0) - (payment.get('discount_amount') or 0))
    metadata = {
        'paymentId': payment['id'],
        'familyId': payment['family_id'],
        'type': payment['type'],
        'subtotal_amount': str(payment.get('subtotal_amount') or 0),
        'tax_amount': str(payment.get('tax_amount') if payment.get('tax_amount') is not None
                          else payment['total_amount'] - taxable),
        'total_amount': str(payment['total_amount']),
    }
    if payment.get('order_id'):
        metadata['orderId'] = payment['order_id']
    if payment.get('quantity'):
        metadata['quantity'] = str(payment['quantity'])
    return metadata


# Payment options

def _recent_group_payment_types(supabase, student_id, today):
    payment_ids = [l['payment_id'] for l in supabase.table('payment_students').select('payment_id')
                   .eq('student_id', student_id).execute().data]
    if not payment_ids:
        return set()
    since = (today - timedelta(days=config.RECENT_PAYMENT_DAYS)).isoformat()
    payments = supabase.table('payments').select('id, type, payment_date') \
        .in_('id', payment_ids).eq('status', 'succeeded').gte('payment_date', since).execute().data
    return {p['type'] for p in payments}


def get_student_payment_options(supabase, student_id, today=None):
    """Pricing and current status for each of a student's active or trial enrollments."""
    today = today or local_today()
    enrollments = supabase.table('enrollments').select('*').eq('student_id', student_id) \
        .in_('status', ['active', 'trial']).execute().data
    if not enrollments:
        return []

    class_ids = list({e['class_id'] for e in enrollments if e.get('class_id')})
    classes = supabase.table('classes').select('id, name, program_id').in_('id', class_ids).execute().data
    class_map = {c['id']: c for c in classes}
    program_ids = list({c['program_id'] for c in classes if c.get('program_id')})
    programs = supabase.table('programs').select('*').in_('id', program_ids).execute().data if program_ids else []
    program_map = {p['id']: p for p in programs}
    recent_types = _recent_group_payment_types(supabase, student_id, today)

    options = []
    for enrollment in enrollments:
        cls = class_map.get(enrollment.get('class_id'))
        program = program_map.get(cls.get('program_id')) if cls else None
        if not cls or not program:
            logger.error(f"Enrollment {enrollment['id']} is missing its class or program")
            continue

        if 'yearly_group' in recent_types:
            current_status = 'active_yearly'
        elif 'monthly_group' in recent_types:
            current_status = 'active_monthly'
        elif enrollment['status'] == 'trial':
            current_status = 'trial'
        else:
            current_status = 'expired'

        amounts = {
            'monthly': program.get('monthly_fee_cents'),
            'yearly': program.get('yearly_fee_cents'),
            'individual': program.get('individual_session_fee_cents'),
        }
        options.append({
            'enrollment_id': enrollment['id'],
            'class_id': cls['id'],
            'class_name': cls['name'],
            'program_id': program['id'],
            'program_name': program['name'],
            'monthly_amount': amounts['monthly'],
            'yearly_amount': amounts['yearly'],
            'individual_session_amount': amounts['individual'],
            'supported_payment_types': [k for k, v in amounts.items() if v],
            'current_status': current_status,
            'paid_until': enrollment.get('paid_until'),
        })
    return options


def get_family_payment_options(supabase, family_id):
    students = supabase.table('students').select('id, first_name, last_name').eq('family_id', family_id).execute().data
    results = []
    for student in students:
        try:
            enrollments = get_student_payment_options(supabase, student['id'])
            name = f"{student['first_name']} {student['last_name']}"
        except APIError as e:
            logger.error(f"Error loading payment options for student {student['id']}: {e.message}")
            enrollments = []
            name = 'Unknown Student'
        results.append({'student_id': student['id'], 'student_name': name, 'enrollments': enrollments})
    return results


def resolve_program_pricing(supabase, student_ids=None, enrollment_id=None) -> dict:
    """Fees in cents: site defaults overridden by the enrollment's program."""
    pricing = {
        'monthly': to_cents(config.PRICING['monthly']),
        'yearly': to_cents(config.PRICING['yearly']),
        'individual': to_cents(config.PRICING['one_on_one_session']),
    }
    enrollment = None
    if enrollment_id:
        rows = supabase.table('enrollments').select('*').eq('id', enrollment_id).limit(1).execute().data
        enrollment = rows[0] if rows else None
    elif student_ids:
        rows = supabase.table('enrollments').select('*').eq('student_id', student_ids[0]) \
            .in_('status', ['active', 'trial']).limit(1).execute().data
        enrollment = rows[0] if rows else None
    if not enrollment or not enrollment.get('program_id'):
        return pricing

    programs = supabase.table('programs').select('*').eq('id', enrollment['program_id']).limit(1).execute().data
    if programs:
        program = programs[0]
        for key, column in (('monthly', 'monthly_fee_cents'), ('yearly', 'yearly_fee_cents'),
                            ('individual', 'individual_session_fee_cents')):
            if program.get(column):
                pricing[key] = program[column]
    return pricing


def calculate_payment_subtotal(payment_option, student_count, quantity, monthly_cents, yearly_cents, individual_cents):
    """Return (subtotal_cents, payment_type) for a family payment option."""
    if payment_option == 'individual':
        return individual_cents * quantity, 'individual_session'
    if payment_option == 'yearly':
        return yearly_cents * student_count, 'yearly_group'
    return monthly_cents * student_count, 'monthly_group'


# Payment records

def create_initial_payment_record(supabase, family_id, subtotal_cents, student_ids, payment_type,
                                  order_id=None, discount_code_id=None, discount_amount_cents=0, quantity=None):
    """Insert a pending payment with its student links and per-rate tax rows."""
    if not family_id:
        raise ValidationError('Family ID is required to create a payment', {'family_id': 'Required'})
    if payment_type not in PAYMENT_TYPES:
        raise ValidationError(f"Unknown payment type: {payment_type}", {'type': 'Invalid'})

    taxable = max(0, subtotal_cents - (discount_amount_cents or 0))
    taxes = calculate_taxes_for_payment(supabase, taxable, payment_type, student_ids)
    payment = {
        'id': str(uuid.uuid4()),
        'family_id': family_id,
        'type': payment_type,
        'status': 'pending',
        'subtotal_amount': subtotal_cents,
        'discount_amount': discount_amount_cents or 0,
        'tax_amount': taxes.total_tax_cents,
        'total_amount': taxable + taxes.total_tax_cents,
        'discount_code_id': discount_code_id,
        'order_id': order_id,
        'quantity': quantity,
    }
    row = supabase.table('payments').insert(payment).execute().data[0]

    if student_ids:
        supabase.table('payment_students').insert(
            [{'payment_id': row['id'], 'student_id': sid} for sid in student_ids]
        ).execute()

    if taxes.payment_taxes:
        try:
            supabase.table('payment_taxes').insert(
                [dict(tax, payment_id=row['id']) for tax in taxes.payment_taxes]
            ).execute()
        except APIError as e:
            logger.error(f"Error saving tax breakdown for payment {row['id']}: {e.message}")

    if discount_code_id:
        apply_discount_code(supabase, discount_code_id, row['id'], family_id, discount_amount_cents,
                            student_ids[0] if student_ids and len(student_ids) == 1 else None)

    logger.info(f"Created pending {payment_type} payment {row['id']} for family {family_id}: "
                f"subtotal {subtotal_cents}, tax {taxes.total_tax_cents}, total {row['total_amount']}")
    return row


def check_family_students(supabase, family_id, student_ids):
    """Raise ValidationError unless every student belongs to the family."""
    if not student_ids:
        return
    rows = supabase.table('students').select('id').eq('family_id', family_id).in_('id', student_ids).execute().data
    unknown = set(student_ids) - {row['id'] for row in rows}
    if unknown:
        logger.warning(f"Family {family_id} asked to pay for students outside the family: {sorted(unknown)}")
        raise ValidationError('Invalid payment request', {'student_ids': 'Select students from your family'})


def initiate_family_payment(supabase, family_id, payment_option, student_ids=None, quantity=1,
                            enrollment_id=None, discount_code_id=None, discount_amount_cents=0):
    """Create the payment a family chose on the payment page.

    A discount that covers the whole subtotal completes the payment on the spot.
    """
    student_ids = [s for s in (student_ids or []) if s]
    errors = {}
    if payment_option not in PAYMENT_OPTIONS:
        errors['payment_option'] = 'Please choose a payment option'
    elif payment_option in ('monthly', 'yearly') and not student_ids:
        errors['student_ids'] = 'Select at least one student'
    elif payment_option == 'individual':
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            quantity = 0
        if quantity < 1:
            errors['quantity'] = 'Quantity must be at least 1'
    if errors:
        raise ValidationError('Invalid payment request', errors)
    check_family_students(supabase, family_id, student_ids)

    pricing = resolve_program_pricing(supabase, student_ids, enrollment_id)
    subtotal, payment_type = calculate_payment_subtotal(
        payment_option, len(student_ids), quantity, pricing['monthly'], pricing['yearly'], pricing['individual'])
    discount_amount_cents = min(discount_amount_cents or 0, subtotal)
    final_subtotal = max(0, subtotal - discount_amount_cents)

    payment = create_initial_payment_record(
        supabase, family_id, subtotal, student_ids, payment_type,
        discount_code_id=discount_code_id, discount_amount_cents=discount_amount_cents,
        quantity=quantity if payment_type == 'individual_session' else None)

    if final_subtotal == 0:
        logger.info(f"Payment {payment['id']} fully covered by discount, completing immediately")
        payment = update_payment_status(supabase, payment['id'], 'succeeded',
                                        payment_method='discount_100_percent',
                                        payment_type=payment_type, family_id=family_id,
                                        quantity=quantity, subtotal=subtotal, tax=0, total=0)
    return {
        'payment_id': payment['id'],
        'zero_payment': final_subtotal == 0,
        'total_amount': payment['total_amount'],
    }


def _extend_enrollments(supabase, payment_id, payment_date, payment_type, already_succeeded=False):
    student_ids = get_payment_student_ids(supabase, payment_id)
    if not student_ids:
        return 0
    enrollments = supabase.table('enrollments').select('*').in_('student_id', student_ids) \
        .in_('status', ['active', 'trial']).execute().data
    extended = 0
    for enrollment in enrollments:
        current = as_date(enrollment.get('paid_until'))
        # A replayed success must not extend the same enrollment twice
        if already_succeeded and current and current > payment_date:
            logger.info(f"Enrollment {enrollment['id']} already paid until {current}, skipping extension")
            continue
        result = calculate_paid_until(supabase, enrollment, payment_date, payment_type)
        supabase.table('enrollments').update({
            'paid_until': result.new_paid_until.isoformat(),
            'status': 'active',
        }).eq('id', enrollment['id']).execute()
        logger.info(f"Enrollment {enrollment['id']} paid until {result.new_paid_until} "
                    f"({result.rule_applied}: {result.reason})")
        extended += 1
    return extended


def _complete_store_order(supabase, order_id):
    supabase.table('orders').update({'status': 'paid_pending_pickup'}).eq('id', order_id).execute()
    items = supabase.table('order_items').select('product_variant_id, quantity').eq('order_id', order_id).execute().data
    for item in items:
        try:
            supabase.rpc('decrement_variant_stock', {
                'variant_id': item['product_variant_id'],
                'decrement_quantity': item['quantity'],
            }).execute()
        except APIError as e:
            logger.error(f"Failed to decrement stock for variant {item['product_variant_id']}: {e.message}")
    logger.info(f"Order {order_id} paid, awaiting pickup")


def _after_success(supabase, payment, payment_type, order_id=None):
    order_id = order_id or payment.get('order_id')
    if payment_type == 'store_purchase' and order_id:
        _complete_store_order(supabase, order_id)
    if payment_type == 'event_registration':
        supabase.table('event_registrations').update({'registration_status': 'confirmed'}) \
            .eq('payment_id', payment['id']).execute()
        logger.info(f"Confirmed event registrations for payment {payment['id']}")
    if payment.get('family_id'):
        record_first_payment(supabase, payment['family_id'], payment.get('total_amount'))


def _after_failure(supabase, payment, order_id=None):
    order_id = order_id or payment.get('order_id')
    if payment.get('type') == 'store_purchase' and order_id:
        supabase.table('orders').update({'status': 'cancelled'}).eq('id', order_id).execute()
        logger.info(f"Cancelled order {order_id} after failed payment")


def apply_payment_status(supabase, payment_id, status, receipt_url=None, payment_method=None,
                         payment_intent_id=None, payment_type=None, family_id=None, quantity=None,
                         subtotal=None, tax=None, total=None, card_last4=None, order_id=None):
    """Apply a provider-reported status to a payment. Safe to call repeatedly.

    Returns ``(payment, changed)``. Order, stock and registration side effects
    only run when ``changed`` is true, so two provider events for one payment
    settle it once.
    """
    payment = get_payment(supabase, payment_id)
    payment_type = payment_type or payment.get('type')
    family_id = family_id or payment.get('family_id')

    if status == 'succeeded':
        already_succeeded = payment.get('status') == 'succeeded' and bool(payment.get('payment_date'))
        if already_succeeded:
            logger.info(f"Payment {payment_id} already succeeded on {payment['payment_date']}, skipping update")
            updated = payment
        else:
            update = {
                'status': 'succeeded',
                'payment_date': local_today().isoformat(),
                'updated_at': utc_now().isoformat(),
            }
            optional = {
                'receipt_url': receipt_url,
                'payment_method': payment_method,
                'payment_intent_id': payment_intent_id,
                'card_last4': card_last4,
                'subtotal_amount': subtotal,
                'tax_amount': tax,
                'total_amount': total,
            }
            update.update({k: v for k, v in optional.items() if v is not None})
            updated = supabase.table('payments').update(update).eq('id', payment_id).execute().data[0]
            logger.info(f"Payment {payment_id} marked succeeded")

            if payment_type == 'individual_session':
                sessions = int(quantity or payment.get('quantity') or 1)
                supabase.table('one_on_one_sessions').insert({
                    'id': str(uuid.uuid4()),
                    'payment_id': payment_id,
                    'family_id': family_id,
                    'purchase_date': updated['payment_date'],
                    'quantity_purchased': sessions,
                    'quantity_remaining': sessions,
                }).execute()
                logger.info(f"Recorded {sessions} individual sessions for family {family_id}")
            _after_success(supabase, updated, payment_type, order_id)

        if payment_type in GROUP_PAYMENT_TYPES:
            _extend_enrollments(supabase, payment_id, as_date(updated['payment_date']), payment_type,
                                already_succeeded)
        return updated, not already_succeeded

    if status == 'failed':
        if payment.get('status') == 'succeeded':
            logger.warning(f"Ignoring failure for payment {payment_id} which already succeeded")
            return payment, False
        update = {'status': 'failed', 'updated_at': utc_now().isoformat()}
        optional = {'payment_method': payment_method, 'payment_intent_id': payment_intent_id, 'card_last4': card_last4}
        update.update({k: v for k, v in optional.items() if v is not None})
        updated = supabase.table('payments').update(update).eq('id', payment_id).execute().data[0]
        logger.info(f"Payment {payment_id} marked failed")
        changed = payment.get('status') != 'failed'
        if changed:
            _after_failure(supabase, updated, order_id)
        return updated, changed

    if status == 'pending':
        rows = supabase.table('payments').update({
            'status': 'pending', 'updated_at': utc_now().isoformat(),
        }).eq('id', payment_id).neq('status', 'succeeded').execute().data
        return (rows[0], payment.get('status') != 'pending') if rows else (payment, False)

    raise ValidationError(f"Unknown payment status: {status}", {'status': 'Invalid'})


def update_payment_status(supabase, payment_id, status, **kwargs):
    return apply_payment_status(supabase, payment_id, status, **kwargs)[0]


def attach_payment_intent(supabase, payment_id, payment_intent_id):
    rows = supabase.table('payments').update({
        'payment_intent_id': payment_intent_id, 'updated_at': utc_now().isoformat(),
    }).eq('id', payment_id).execute().data
    if not rows:
        raise NotFoundError(f"Payment {payment_id} not found")
    return rows[0]
