import logging
import uuid

from dojo.dates import as_date, local_today
from dojo.errors import AlreadyRegisteredError, NotFoundError, ValidationError, WaiverRequiredError
from dojo.money import to_cents
from dojo.payments import create_initial_payment_record
from dojo.waivers import get_missing_event_waivers

logger = logging.getLogger(__name__)

EVENT_STATUSES = ('draft', 'published', 'registration_open', 'registration_closed', 'completed', 'cancelled')
VISIBLE_STATUSES = ('published', 'registration_open')
EVENT_FIELDS = ('title', 'description', 'event_type', 'status', 'start_date', 'end_date', 'start_time', 'end_time',
                'location', 'registration_deadline', 'max_participants', 'is_public')


def get_upcoming_events(supabase, today=None, public_only=True):
    today = today or local_today()
    query = supabase.table('events').select('*').in_('status', list(VISIBLE_STATUSES)) \
        .gte('start_date', today.isoformat())
    if public_only:
        query = query.eq('is_public', True)
    return query.order('start_date').execute().data


def list_events(supabase):
    return supabase.table('events').select('*').order('start_date', desc=True).execute().data


def get_event(supabase, event_id):
    rows = supabase.table('events').select('*').eq('id', event_id).limit(1).execute().data
    if not rows:
        raise NotFoundError(f"Event {event_id} not found")
    return rows[0]


def registration_fee_cents(event, today=None):
    today = today or local_today()
    deadline = as_date(event.get('registration_deadline'))
    if deadline and today > deadline and event.get('late_registration_fee_cents'):
        return event['late_registration_fee_cents']
    return event.get('registration_fee_cents') or 0


def _resolve_participants(supabase, family_id, participants):
    """Split participants into existing student ids and new students to add."""
    family_student_ids = {s['id'] for s in supabase.table('students').select('id')
                          .eq('family_id', family_id).execute().data}
    student_ids = []
    new_students = []
    for participant in participants:
        student_id = participant.get('student_id')
        if student_id:
            if student_id not in family_student_ids:
                raise ValidationError(f"Student {student_id} does not belong to this family",
                                      {'student_id': 'Not in family'})
            student_ids.append(student_id)
            continue
        first_name = (participant.get('first_name') or '').strip()
        last_name = (participant.get('last_name') or '').strip()
        if not first_name or not last_name:
            logger.warning(f"Skipping participant without a full name for family {family_id}")
            continue
        new_students.append({
            'id': str(uuid.uuid4()),
            'family_id': family_id,
            'first_name': first_name,
            'last_name': last_name,
            'birth_date': participant.get('birth_date') or None,
            'belt_rank': participant.get('belt_rank') or None,
        })
    return student_ids, new_students


def register_for_event(supabase, event_id, user_id, family_id, participants, today=None):
    """Register family members for an event, creating a pending payment when there is a fee.

    New participants are only added to the family once every check has passed.
    """
    today = today or local_today()
    event = get_event(supabase, event_id)
    if event.get('status') != 'registration_open':
        raise ValidationError('Registration is not open for this event')
    deadline = as_date(event.get('registration_deadline'))
    if deadline and today > deadline and not event.get('late_registration_fee_cents'):
        raise ValidationError('The registration deadline has passed')

    missing_waivers = get_missing_event_waivers(supabase, event_id, user_id)
    if missing_waivers:
        raise WaiverRequiredError('Required waivers must be signed before registration', missing_waivers)

    student_ids, new_students = _resolve_participants(supabase, family_id, participants)
    if not student_ids and not new_students:
        raise ValidationError('At least one participant is required', {'participants': 'Required'})

    registrations = supabase.table('event_registrations').select('student_id, registration_status') \
        .eq('event_id', event_id).execute().data
    already = [r['student_id'] for r in registrations
               if r['student_id'] in student_ids and r.get('registration_status') != 'cancelled']
    if already:
        raise AlreadyRegisteredError('Some students are already registered for this event', already)

    if event.get('max_participants'):
        active = [r for r in registrations if r.get('registration_status') != 'cancelled']
        if len(active) + len(student_ids) + len(new_students) > event['max_participants']:
            raise ValidationError('This event does not have enough spots left')

    for student in new_students:
        supabase.table('students').insert(student).execute()
        logger.info(f"Added student {student['id']} during event registration")
        student_ids.append(student['id'])

    fee = registration_fee_cents(event, today)
    rows = [{
        'id': str(uuid.uuid4()),
        'event_id': event_id,
        'student_id': student_id,
        'family_id': family_id,
        'registration_status': 'pending' if fee > 0 else 'confirmed',
    } for student_id in student_ids]
    supabase.table('event_registrations').insert(rows).execute()
    registration_ids = [r['id'] for r in rows]

    payment_id = None
    if fee > 0:
        payment = create_initial_payment_record(supabase, family_id, fee * len(student_ids), student_ids,
                                                'event_registration')
        payment_id = payment['id']
        supabase.table('event_registrations').update({
            'payment_id': payment_id,
            'payment_amount_cents': fee,
            'payment_required': True,
        }).in_('id', registration_ids).execute()

    logger.info(f"Registered {len(student_ids)} students for event {event_id}, payment {payment_id}")
    return {'registration_ids': registration_ids, 'payment_required': fee > 0, 'payment_id': payment_id}


def cancel_registration(supabase, registration_id):
    rows = supabase.table('event_registrations').update({'registration_status': 'cancelled'}) \
        .eq('id', registration_id).execute().data
    if not rows:
        raise NotFoundError(f"Registration {registration_id} not found")
    logger.info(f"Cancelled event registration {registration_id}")
    return rows[0]


def _event_data(data):
    event = {k: data[k] for k in EVENT_FIELDS if k in data}
    for key in ('start_date', 'end_date', 'registration_deadline', 'start_time', 'end_time', 'location', 'description'):
        if key in event and not event[key]:
            event[key] = None
    if 'status' in event and event['status'] not in EVENT_STATUSES:
        raise ValidationError(f"Invalid event status: {event['status']}", {'status': 'Invalid'})
    if 'max_participants' in event:
        event['max_participants'] = int(event['max_participants']) if event['max_participants'] else None
    for key in ('registration_fee', 'late_registration_fee'):
        if key in data:
            event[f"{key}_cents"] = to_cents(data[key]) if data[key] not in (None, '') else None
    return event


def create_event(supabase, data):
    event = _event_data(data)
    if not event.get('title') or not event.get('start_date'):
        raise ValidationError('Title and start date are required', {'title': 'Required', 'start_date': 'Required'})
    event.setdefault('status', 'draft')
    event['id'] = str(uuid.uuid4())
    row = supabase.table('events').insert(event).execute().data[0]
    logger.info(f"Added event: {row['id']}, {row['title']}")
    return row


def update_event(supabase, event_id, data):
    rows = supabase.table('events').update(_event_data(data)).eq('id', event_id).execute().data
    if not rows:
        raise NotFoundError(f"Event {event_id} not found")
    logger.info(f"Edited event: {event_id}")
    return rows[0]


def delete_event(supabase, event_id):
    registrations = supabase.table('event_registrations').select('id').eq('event_id', event_id) \
        .neq('registration_status', 'cancelled').execute().data
    if registrations:
        raise ValidationError('Cannot delete an event with active registrations')
    supabase.table('event_waivers').delete().eq('event_id', event_id).execute()
    supabase.table('events').delete().eq('id', event_id).execute()
    logger.info(f"Deleted event: {event_id}")


def set_event_waivers(supabase, event_id, waiver_ids):
    supabase.table('event_waivers').delete().eq('event_id', event_id).execute()
    rows = [{'id': str(uuid.uuid4()), 'event_id': event_id, 'waiver_id': w, 'is_required': True}
            for w in waiver_ids if w]
    if rows:
        supabase.table('event_waivers').insert(rows).execute()
    return rows
