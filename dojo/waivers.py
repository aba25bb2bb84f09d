import logging
import uuid

from dojo.dates import as_datetime, utc_now
from dojo.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def list_waivers(supabase):
    return supabase.table('waivers').select('*').order('title').execute().data


def get_waiver(supabase, waiver_id):
    rows = supabase.table('waivers').select('*').eq('id', waiver_id).limit(1).execute().data
    if not rows:
        raise NotFoundError(f"Waiver {waiver_id} not found")
    return rows[0]


def _family_user_ids(supabase, family_id):
    users = supabase.table('users').select('id').eq('family_id', family_id).execute().data
    return [u['id'] for u in users]


def _signatures(supabase, user_ids, waiver_ids=None):
    if not user_ids:
        return []
    query = supabase.table('waiver_signatures').select('*').in_('user_id', list(user_ids))
    if waiver_ids is not None:
        if not waiver_ids:
            return []
        query = query.in_('waiver_id', list(waiver_ids))
    return query.execute().data


def _summary(waiver):
    return {'id': waiver['id'], 'title': waiver['title']}


def get_family_registration_waiver_status(supabase, family_id):
    """Whether the family has signed every waiver required at registration."""
    waivers = supabase.table('waivers').select('id, title').eq('required_for_registration', True).execute().data
    user_ids = _family_user_ids(supabase, family_id)
    signatures = _signatures(supabase, user_ids, [w['id'] for w in waivers])
    signed_ids = {s['waiver_id'] for s in signatures}

    missing = [_summary(w) for w in waivers if w['id'] not in signed_ids]
    signed = [_summary(w) for w in waivers if w['id'] in signed_ids]
    is_complete = bool(waivers) and bool(user_ids) and not missing
    completed_at = None
    if is_complete and signatures:
        completed_at = max(signatures, key=lambda s: as_datetime(s['signed_at']))['signed_at']
    return {
        'is_complete': is_complete,
        'completed_at': completed_at,
        'missing_waivers': missing,
        'signed_waivers': signed,
    }


def get_program_waiver_status(supabase, user_id, program_id, enrollment_type='active'):
    """Waivers a user must sign before a student can train in a program."""
    flag = 'required_for_trial' if enrollment_type == 'trial' else 'required_for_full_enrollment'
    links = supabase.table('program_waivers').select('*').eq('program_id', program_id).execute().data
    waiver_ids = [l['waiver_id'] for l in links if l.get(flag)]
    if not waiver_ids:
        return {'is_complete': True, 'missing_waivers': [], 'signed_waivers': []}

    waivers = supabase.table('waivers').select('id, title').in_('id', waiver_ids).execute().data
    signed_ids = {s['waiver_id'] for s in _signatures(supabase, [user_id] if user_id else [], waiver_ids)}
    missing = [_summary(w) for w in waivers if w['id'] not in signed_ids]
    return {
        'is_complete': not missing,
        'missing_waivers': missing,
        'signed_waivers': [_summary(w) for w in waivers if w['id'] in signed_ids],
    }


def get_missing_event_waivers(supabase, event_id, user_id):
    links = supabase.table('event_waivers').select('waiver_id, is_required').eq('event_id', event_id).execute().data
    waiver_ids = [l['waiver_id'] for l in links if l.get('is_required', True)]
    if not waiver_ids:
        return []
    waivers = supabase.table('waivers').select('id, title').in_('id', waiver_ids).execute().data
    signed_ids = {s['waiver_id'] for s in _signatures(supabase, [user_id], waiver_ids)}
    return [_summary(w) for w in waivers if w['id'] not in signed_ids]


def _activate_pending_enrollments(supabase, user_id):
    users = supabase.table('users').select('family_id').eq('id', user_id).limit(1).execute().data
    if not users or not users[0].get('family_id'):
        return 0
    students = supabase.table('students').select('id').eq('family_id', users[0]['family_id']).execute().data
    if not students:
        return 0
    enrollments = supabase.table('enrollments').select('*') \
        .in_('student_id', [s['id'] for s in students]).eq('status', 'pending_waivers').execute().data
    activated = 0
    for enrollment in enrollments:
        if not enrollment.get('program_id'):
            continue
        status = get_program_waiver_status(supabase, user_id, enrollment['program_id'])
        if status['is_complete']:
            supabase.table('enrollments').update({'status': 'active'}).eq('id', enrollment['id']).execute()
            logger.info(f"Enrollment {enrollment['id']} activated after waivers signed")
            activated += 1
    return activated


def sign_waiver(supabase, waiver_id, user_id, signature_data, student_ids=None):
    if not signature_data:
        raise ValidationError('Signature is required', {'signature_data': 'Required'})
    get_waiver(supabase, waiver_id)
    existing = supabase.table('waiver_signatures').select('*') \
        .eq('waiver_id', waiver_id).eq('user_id', user_id).limit(1).execute().data
    if existing:
        logger.info(f"Waiver {waiver_id} already signed by user {user_id}")
        return existing[0]
    signature = supabase.table('waiver_signatures').insert({
        'id': str(uuid.uuid4()),
        'waiver_id': waiver_id,
        'user_id': user_id,
        'student_ids': student_ids or [],
        'signature_data': signature_data,
        'signed_at': utc_now().isoformat(),
    }).execute().data[0]
    logger.info(f"Waiver {waiver_id} signed by user {user_id}")
    _activate_pending_enrollments(supabase, user_id)
    return signature


def create_waiver(supabase, data):
    if not data.get('title') or not data.get('content'):
        raise ValidationError('Title and content are required', {'title': 'Required', 'content': 'Required'})
    row = supabase.table('waivers').insert({
        'id': str(uuid.uuid4()),
        'title': data['title'].strip(),
        'description': data.get('description') or None,
        'content': data['content'],
        'required': bool(data.get('required')),
        'required_for_registration': bool(data.get('required_for_registration')),
    }).execute().data[0]
    logger.info(f"Added waiver: {row['id']}, {row['title']}")
    return row


def update_waiver(supabase, waiver_id, data):
    update = {k: data[k] for k in ('title', 'description', 'content', 'required', 'required_for_registration') if k in data}
    rows = supabase.table('waivers').update(update).eq('id', waiver_id).execute().data
    if not rows:
        raise NotFoundError(f"Waiver {waiver_id} not found")
    return rows[0]


def delete_waiver(supabase, waiver_id):
    signatures = supabase.table('waiver_signatures').select('id').eq('waiver_id', waiver_id).execute().data
    if signatures:
        raise ValidationError('Cannot delete a waiver that has been signed')
    supabase.table('program_waivers').delete().eq('waiver_id', waiver_id).execute()
    supabase.table('event_waivers').delete().eq('waiver_id', waiver_id).execute()
    supabase.table('waivers').delete().eq('id', waiver_id).execute()
    logger.info(f"Deleted waiver: {waiver_id}")


def set_program_waivers(supabase, program_id, links):
    """Replace a program's waiver requirements with links [{waiver_id, required_for_trial, ...}]."""
    supabase.table('program_waivers').delete().eq('program_id', program_id).execute()
    rows = [{
        'id': str(uuid.uuid4()),
        'program_id': program_id,
        'waiver_id': link['waiver_id'],
        'is_required': link.get('is_required', True),
        'required_for_trial': bool(link.get('required_for_trial')),
        'required_for_full_enrollment': bool(link.get('required_for_full_enrollment', True)),
    } for link in links if link.get('waiver_id')]
    if rows:
        supabase.table('program_waivers').insert(rows).execute()
    logger.info(f"Program {program_id} now requires {len(rows)} waivers")
    return rows
