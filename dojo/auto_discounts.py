"""Discount templates and rule-based automatic discounts.

A template describes a discount without a code. An automation rule ties
templates to a discount event type (a student enrolling, a family's first
payment, an attendance milestone and so on). Recording an event checks the
active rules and issues a family or student scoped discount code for each
matching rule, once per rule and student/family.
"""
import logging
import secrets
import string
import uuid

from postgrest.exceptions import APIError

from dojo.dates import as_datetime, utc_now
from dojo.discounts import clean_discount_terms, create_discount_code, get_discount_code_by_code
from dojo.errors import DojoError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

DISCOUNT_EVENT_TYPES = (
    'student_enrollment',
    'first_payment',
    'belt_promotion',
    'attendance_milestone',
    'family_referral',
    'birthday',
    'seasonal_promotion',
)
DISCOUNT_SCOPES = ('per_family', 'per_student')
ATTENDED_STATUSES = ('present', 'late')
ATTENDANCE_MILESTONE_STEP = 5
CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_unique_code(supabase, prefix='AUTO', length=8):
    for _ in range(10):
        code = prefix + ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))
        if not get_discount_code_by_code(supabase, code):
            return code
    raise DojoError(f"Could not generate a unique {prefix} discount code")


# Templates

def list_discount_templates(supabase, active_only=False):
    query = supabase.table('discount_templates').select('*')
    if active_only:
        query = query.eq('is_active', True)
    return query.order('name').execute().data


def get_discount_template(supabase, template_id):
    rows = supabase.table('discount_templates').select('*').eq('id', template_id).limit(1).execute().data
    if not rows:
        raise NotFoundError(f"Discount template {template_id} not found")
    return rows[0]


def create_discount_template(supabase, data):
    terms, errors = clean_discount_terms(data)
    name = (data.get('name') or '').strip()
    if not name:
        errors['name'] = 'Required'
    scope = data.get('scope') or 'per_family'
    if scope not in DISCOUNT_SCOPES:
        errors['scope'] = 'Must be per_family or per_student'
    if errors:
        raise ValidationError('Invalid discount template', errors)
    template = {
        'id': str(uuid.uuid4()),
        'name': name,
        'description': data.get('description') or None,
        'scope': scope,
        'is_active': True,
    }
    template.update(terms)
    row = supabase.table('discount_templates').insert(template).execute().data[0]
    logger.info(f"Created discount template: {name}")
    return row


def set_discount_template_active(supabase, template_id, is_active):
    rows = supabase.table('discount_templates').update({'is_active': bool(is_active)}) \
        .eq('id', template_id).execute().data
    if not rows:
        raise NotFoundError(f"Discount template {template_id} not found")
    return rows[0]


def delete_discount_template(supabase, template_id):
    rules = supabase.table('discount_automation_rules').select('id, discount_template_ids').execute().data
    if any(template_id in (rule.get('discount_template_ids') or []) for rule in rules):
        raise ValidationError('Cannot delete a template used by an automation rule')
    supabase.table('discount_templates').delete().eq('id', template_id).execute()
    logger.info(f"Deleted discount template: {template_id}")


def create_discount_from_template(supabase, template_id, family_id=None, student_id=None, code=None,
                                  valid_until=None, name=None, prefix='TMPL'):
    """Issue a discount code carrying a template's terms."""
    template = get_discount_template(supabase, template_id)
    if template.get('scope') == 'per_student' and not student_id:
        raise ValidationError('A student is required for a per-student template', {'student_id': 'Required'})
    if template.get('scope') == 'per_family' and not family_id:
        raise ValidationError('A family is required for a per-family template', {'family_id': 'Required'})
    return create_discount_code(supabase, {
        'code': code or generate_unique_code(supabase, prefix),
        'name': name or template['name'],
        'description': template.get('description'),
        'discount_type': template['discount_type'],
        'discount_value': template['discount_value'],
        'applicable_to': template.get('applicable_to') or [],
        'max_uses': template.get('max_uses'),
        'family_id': family_id,
        'student_id': student_id if template.get('scope') == 'per_student' else None,
        'valid_from': utc_now().isoformat(),
        'valid_until': valid_until,
    })


# Automation rules

def list_automation_rules(supabase):
    return supabase.table('discount_automation_rules').select('*').order('created_at', desc=True).execute().data


def _clean_conditions(conditions, errors):
    cleaned = {}
    for key in ('min_family_size', 'attendance_count'):
        if conditions.get(key) not in (None, ''):
            try:
                cleaned[key] = int(conditions[key])
            except (TypeError, ValueError):
                errors[key] = 'Must be a whole number'
    if conditions.get('belt_rank'):
        cleaned['belt_rank'] = conditions['belt_rank']
    return cleaned


def create_automation_rule(supabase, data):
    errors = {}
    name = (data.get('name') or '').strip()
    if not name:
        errors['name'] = 'Required'
    if data.get('event_type') not in DISCOUNT_EVENT_TYPES:
        errors['event_type'] = 'Unknown discount event type'
    template_ids = [t for t in (data.get('discount_template_ids') or [data.get('discount_template_id')]) if t]
    if not template_ids:
        errors['discount_template_ids'] = 'Select at least one template'
    conditions = _clean_conditions(data.get('conditions') or {}, errors)
    if errors:
        raise ValidationError('Invalid automation rule', errors)
    for template_id in template_ids:
        get_discount_template(supabase, template_id)

    row = supabase.table('discount_automation_rules').insert({
        'id': str(uuid.uuid4()),
        'name': name,
        'event_type': data['event_type'],
        'discount_template_ids': template_ids,
        'conditions': conditions or None,
        'applicable_programs': [p for p in (data.get('applicable_programs') or []) if p] or None,
        'valid_from': data.get('valid_from') or None,
        'valid_until': data.get('valid_until') or None,
        'is_active': data.get('is_active', True),
    }).execute().data[0]
    logger.info(f"Created automation rule {name} for {data['event_type']}")
    return row


def set_automation_rule_active(supabase, rule_id, is_active):
    rows = supabase.table('discount_automation_rules').update({'is_active': bool(is_active)}) \
        .eq('id', rule_id).execute().data
    if not rows:
        raise NotFoundError(f"Automation rule {rule_id} not found")
    return rows[0]


def delete_automation_rule(supabase, rule_id):
    supabase.table('discount_automation_rules').delete().eq('id', rule_id).execute()
    logger.info(f"Deleted automation rule: {rule_id}")


def list_discount_assignments(supabase, family_id=None):
    query = supabase.table('discount_assignments').select('*')
    if family_id:
        query = query.eq('family_id', family_id)
    assignments = query.order('assigned_at', desc=True).execute().data
    code_ids = [a['discount_code_id'] for a in assignments]
    codes = supabase.table('discount_codes').select('id, code, is_active, current_uses') \
        .in_('id', code_ids).execute().data if code_ids else []
    code_map = {c['id']: c for c in codes}
    for assignment in assignments:
        assignment['discount_code'] = code_map.get(assignment['discount_code_id'])
    return assignments


# Events

def _student_programs(supabase, student_id):
    rows = supabase.table('enrollments').select('program_id').eq('student_id', student_id) \
        .eq('status', 'active').execute().data
    return {r['program_id'] for r in rows if r.get('program_id')}


def count_attended_sessions(supabase, student_id):
    rows = supabase.table('attendance').select('id').eq('student_id', student_id) \
        .in_('status', list(ATTENDED_STATUSES)).execute().data
    return len(rows)


def rule_is_current(rule, now):
    valid_from = as_datetime(rule.get('valid_from'))
    valid_until = as_datetime(rule.get('valid_until'))
    return (valid_from is None or valid_from <= now) and (valid_until is None or valid_until >= now)


def evaluate_rule_conditions(supabase, rule, event):
    """True when the event's student and family meet the rule's program filter and conditions."""
    student_id = event.get('student_id')
    programs = rule.get('applicable_programs') or []
    if programs and student_id and not _student_programs(supabase, student_id) & set(programs):
        return False

    conditions = rule.get('conditions') or {}
    if conditions.get('belt_rank') and student_id:
        rows = supabase.table('students').select('belt_rank').eq('id', student_id).limit(1).execute().data
        if not rows or rows[0].get('belt_rank') != conditions['belt_rank']:
            return False
    if conditions.get('min_family_size') and event.get('family_id'):
        students = supabase.table('students').select('id').eq('family_id', event['family_id']).execute().data
        if len(students) < conditions['min_family_size']:
            return False
    if conditions.get('attendance_count') and student_id:
        if count_attended_sessions(supabase, student_id) < conditions['attendance_count']:
            return False
    return True


def _already_assigned(supabase, rule, event):
    rows = supabase.table('discount_assignments').select('student_id, family_id') \
        .eq('automation_rule_id', rule['id']).execute().data
    return any(r.get('student_id') == event.get('student_id') and r.get('family_id') == event.get('family_id')
               for r in rows)


def _assign(supabase, rule, event):
    codes = []
    for template_id in rule.get('discount_template_ids') or []:
        template = get_discount_template(supabase, template_id)
        code = create_discount_from_template(
            supabase, template_id,
            family_id=event.get('family_id'),
            student_id=event.get('student_id'),
            valid_until=rule.get('valid_until'),
            name=f"{template['name']} - Auto Assigned",
            prefix='AUTO',
        )
        supabase.table('discount_assignments').insert({
            'id': str(uuid.uuid4()),
            'automation_rule_id': rule['id'],
            'discount_event_id': event['id'],
            'discount_code_id': code['id'],
            'student_id': event.get('student_id'),
            'family_id': event.get('family_id'),
            'assigned_at': utc_now().isoformat(),
        }).execute()
        logger.info(f"Assigned discount {code['code']} from rule {rule['name']} for event {event['id']}")
        codes.append(code)
    return codes


def record_discount_event(supabase, event_type, family_id=None, student_id=None, event_data=None, now=None):
    """Store a discount event and issue codes for every matching active rule. Returns the codes."""
    if event_type not in DISCOUNT_EVENT_TYPES:
        raise ValidationError(f"Unknown discount event type: {event_type}", {'event_type': 'Invalid'})
    now = now or utc_now()
    event = supabase.table('discount_events').insert({
        'id': str(uuid.uuid4()),
        'event_type': event_type,
        'family_id': family_id,
        'student_id': student_id,
        'event_data': event_data,
    }).execute().data[0]

    rules = supabase.table('discount_automation_rules').select('*').eq('event_type', event_type) \
        .eq('is_active', True).execute().data
    codes = []
    for rule in rules:
        if not rule_is_current(rule, now):
            continue
        # One failing rule must not stop the others
        try:
            if evaluate_rule_conditions(supabase, rule, event) and not _already_assigned(supabase, rule, event):
                codes.extend(_assign(supabase, rule, event))
        except (DojoError, APIError) as e:
            logger.error(f"Error processing automation rule {rule['id']}: {str(e)}")
    return codes


def record_event_quietly(supabase, event_type, family_id=None, student_id=None, event_data=None):
    """Record a discount event from a business flow; failures are logged, never raised."""
    try:
        return record_discount_event(supabase, event_type, family_id, student_id, event_data)
    except (DojoError, APIError) as e:
        logger.error(f"Failed to record {event_type} discount event: {str(e)}")
        return []


def record_student_enrollment(supabase, student_id, family_id):
    return record_event_quietly(supabase, 'student_enrollment', family_id, student_id,
                                {'enrollment_date': utc_now().isoformat()})


def record_first_payment(supabase, family_id, amount_cents):
    """Record a first_payment event when the family has exactly one succeeded payment."""
    try:
        succeeded = supabase.table('payments').select('id').eq('family_id', family_id) \
            .eq('status', 'succeeded').limit(2).execute().data
    except APIError as e:
        logger.error(f"Error checking payment history for family {family_id}: {e.message}")
        return []
    if len(succeeded) != 1:
        return []
    return record_event_quietly(supabase, 'first_payment', family_id,
                                event_data={'payment_amount': amount_cents, 'payment_date': utc_now().isoformat()})


def record_belt_promotion(supabase, student_id, family_id, belt_rank):
    return record_event_quietly(supabase, 'belt_promotion', family_id, student_id,
                                {'new_belt_rank': belt_rank, 'promotion_date': utc_now().isoformat()})


def record_attendance_milestone(supabase, student_id, family_id, attendance_count):
    if not attendance_count or attendance_count % ATTENDANCE_MILESTONE_STEP:
        return []
    return record_event_quietly(supabase, 'attendance_milestone', family_id, student_id,
                                {'attendance_count': attendance_count, 'milestone_date': utc_now().isoformat()})
