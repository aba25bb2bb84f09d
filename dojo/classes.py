import logging
import re
import uuid
from datetime import datetime, timedelta
from typing import Iterator, List, Optional, Tuple

from dojo.auto_discounts import (
    ATTENDED_STATUSES,
    count_attended_sessions,
    record_attendance_milestone,
    record_student_enrollment,
)
from dojo.dates import as_date
from dojo.errors import NotFoundError, ValidationError
from dojo.money import to_cents
from dojo.waivers import get_program_waiver_status

logger = logging.getLogger(__name__)

WEEKDAYS = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']
ATTENDANCE_STATUSES = ('present', 'absent', 'excused', 'late')
SESSION_STATUSES = ('scheduled', 'completed', 'cancelled')
DEFAULT_DURATION_MINUTES = 60
TIME_PATTERN = re.compile(r'^([01]?\d|2[0-3]):([0-5]\d)$')


def normalize_weekday(day: str) -> str:
    """'tue', 'Tues', 'TUESDAY' -> 'Tuesday'."""
    cleaned = (day or '').strip().lower()
    for name in WEEKDAYS:
        if len(cleaned) >= 3 and name.lower().startswith(cleaned):
            return name
    raise ValidationError(f"Invalid day of week: {day}", {'schedule': 'Invalid day'})


def normalize_time(value: str) -> str:
    match = TIME_PATTERN.match((value or '').strip())
    if not match:
        raise ValidationError(f"Invalid time: {value}", {'schedule': 'Invalid time'})
    return f"{int(match.group(1)):02d}:{match.group(2)}"


def parse_schedule_pairs(text: str) -> List[List[str]]:
    """Parse 'Tue 17:45; Thu 17:45' into [['Tuesday', '17:45'], ['Thursday', '17:45']]."""
    pairs = []
    for entry in re.split(r'[;\n]', text or ''):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.replace(',', ' ').split()
        if len(parts) != 2:
            raise ValidationError(f"Invalid schedule entry: {entry}", {'schedule': 'Use "Day HH:MM"'})
        pairs.append([normalize_weekday(parts[0]), normalize_time(parts[1])])
    return pairs


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(':')[:2]
    return int(hours) * 60 + int(minutes)


# Programs

def list_programs(supabase, active_only=False):
    query = supabase.table('programs').select('*')
    if active_only:
        query = query.eq('is_active', True)
    return query.order('name').execute().data


def get_program(supabase, program_id):
    rows = supabase.table('programs').select('*').eq('id', program_id).limit(1).execute().data
    if not rows:
        raise NotFoundError(f"Program {program_id} not found")
    return rows[0]


def _program_data(data):
    program = {k: data[k] for k in ('name', 'description', 'is_active') if k in data}
    for key in ('duration_minutes', 'max_capacity', 'min_age', 'max_age'):
        if key in data:
            program[key] = int(data[key]) if data[key] not in (None, '') else None
    for key in ('monthly_fee', 'yearly_fee', 'individual_session_fee'):
        if key in data:
            try:
                program[f"{key}_cents"] = to_cents(data[key]) or None
            except ValueError:
                raise ValidationError(f"Invalid {key.replace('_', ' ')}", {key: 'Must be a dollar amount'})
    return program


def create_program(supabase, data):
    program = _program_data(data)
    if not program.get('name'):
        raise ValidationError('Program name is required', {'name': 'Required'})
    program.setdefault('duration_minutes', DEFAULT_DURATION_MINUTES)
    program.setdefault('is_active', True)
    program['id'] = str(uuid.uuid4())
    row = supabase.table('programs').insert(program).execute().data[0]
    logger.info(f"Added program: {row['id']}, {row['name']}")
    return row


def update_program(supabase, program_id, data):
    rows = supabase.table('programs').update(_program_data(data)).eq('id', program_id).execute().data
    if not rows:
        raise NotFoundError(f"Program {program_id} not found")
    logger.info(f"Edited program: {program_id}")
    return rows[0]


def delete_program(supabase, program_id):
    classes = supabase.table('classes').select('id').eq('program_id', program_id).execute().data
    if classes:
        raise ValidationError('Cannot delete program with classes')
    supabase.table('program_waivers').delete().eq('program_id', program_id).execute()
    supabase.table('programs').delete().eq('id', program_id).execute()
    logger.info(f"Deleted program: {program_id}")


# Classes

def list_classes(supabase):
    classes = supabase.table('classes').select('*').order('name').execute().data
    programs = supabase.table('programs').select('id, name, duration_minutes').execute().data
    enrollments = supabase.table('enrollments').select('class_id, status').in_('status', ['active', 'trial']).execute().data
    program_map = {p['id']: p for p in programs}
    counts = {}
    for enrollment in enrollments:
        counts[enrollment['class_id']] = counts.get(enrollment['class_id'], 0) + 1
    processed = []
    for cls in classes:
        cls_copy = cls.copy()
        cls_copy['program'] = program_map.get(cls.get('program_id'))
        cls_copy['enrolled_count'] = counts.get(cls['id'], 0)
        processed.append(cls_copy)
    return processed


def get_class(supabase, class_id):
    rows = supabase.table('classes').select('*').eq('id', class_id).limit(1).execute().data
    if not rows:
        raise NotFoundError(f"Class {class_id} not found")
    return rows[0]


def _class_data(data):
    cls = {k: data[k] for k in ('name', 'description', 'program_id', 'instructor_id', 'is_active') if k in data}
    if 'instructor_id' in cls and not cls['instructor_id']:
        cls['instructor_id'] = None
    if 'max_capacity' in data:
        cls['max_capacity'] = int(data['max_capacity']) if data['max_capacity'] not in (None, '') else None
    if 'schedule_pairs' in data:
        pairs = data['schedule_pairs']
        if isinstance(pairs, str):
            pairs = parse_schedule_pairs(pairs)
        else:
            pairs = [[normalize_weekday(day), normalize_time(start)] for day, start in pairs]
        if not pairs:
            raise ValidationError('At least one schedule entry is required', {'schedule': 'Required'})
        cls['schedule_pairs'] = pairs
    return cls


def create_class(supabase, data):
    cls = _class_data(data)
    if not cls.get('name') or not cls.get('program_id'):
        raise ValidationError('Name and program are required', {'name': 'Required', 'program_id': 'Required'})
    if 'schedule_pairs' not in cls:
        raise ValidationError('At least one schedule entry is required', {'schedule': 'Required'})
    get_program(supabase, cls['program_id'])
    cls.setdefault('is_active', True)
    cls['id'] = str(uuid.uuid4())
    row = supabase.table('classes').insert(cls).execute().data[0]
    logger.info(f"Added class: {row['id']}, {row['name']}, schedule {row['schedule_pairs']}")
    return row


def update_class(supabase, class_id, data):
    rows = supabase.table('classes').update(_class_data(data)).eq('id', class_id).execute().data
    if not rows:
        raise NotFoundError(f"Class {class_id} not found")
    logger.info(f"Edited class: {class_id}")
    return rows[0]


def delete_class(supabase, class_id):
    enrollments = supabase.table('enrollments').select('id').eq('class_id', class_id) \
        .in_('status', ['active', 'trial']).execute().data
    if enrollments:
        logger.warning(f"Attempted to delete class {class_id} with {len(enrollments)} enrolled students")
        raise ValidationError('Cannot delete class with enrolled students')
    supabase.table('class_sessions').delete().eq('class_id', class_id).execute()
    supabase.table('classes').delete().eq('id', class_id).execute()
    logger.info(f"Deleted class: {class_id}")


def check_schedule_conflicts(supabase, instructor_id, weekday, start_time, duration_minutes, exclude_class_id=None):
    """Other classes the instructor teaches that overlap the given slot."""
    if not instructor_id:
        return []
    weekday = normalize_weekday(weekday)
    start = _minutes(normalize_time(start_time))
    end = start + duration_minutes
    classes = supabase.table('classes').select('*').eq('instructor_id', instructor_id).eq('is_active', True).execute().data
    program_ids = list({c['program_id'] for c in classes if c.get('program_id')})
    programs = supabase.table('programs').select('id, duration_minutes').in_('id', program_ids).execute().data if program_ids else []
    durations = {p['id']: p.get('duration_minutes') or DEFAULT_DURATION_MINUTES for p in programs}

    conflicts = []
    for cls in classes:
        if cls['id'] == exclude_class_id:
            continue
        other_duration = durations.get(cls.get('program_id'), DEFAULT_DURATION_MINUTES)
        for day, other_start in cls.get('schedule_pairs') or []:
            if day != weekday:
                continue
            other_start_min = _minutes(other_start)
            if start < other_start_min + other_duration and other_start_min < end:
                conflicts.append({'class_id': cls['id'], 'class_name': cls['name'], 'day': day, 'start_time': other_start})
    return conflicts


# Sessions

def generate_session_dates(schedule_pairs, start, end, duration_minutes=DEFAULT_DURATION_MINUTES,
                           exclude_dates=()) -> Iterator[Tuple[object, str, str]]:
    """Yield (date, start_time, end_time) for each scheduled day in [start, end]."""
    start = as_date(start)
    end = as_date(end)
    if end < start:
        raise ValidationError('End date must be on or after start date', {'end_date': 'Before start date'})
    excluded = {as_date(d) for d in exclude_dates}
    by_day = {}
    for day, start_time in schedule_pairs:
        by_day.setdefault(normalize_weekday(day), normalize_time(start_time))

    current = start
    while current <= end:
        start_time = by_day.get(WEEKDAYS[current.weekday()])
        if start_time and current not in excluded:
            begins = datetime.combine(current, datetime.strptime(start_time, '%H:%M').time())
            ends = begins + timedelta(minutes=duration_minutes)
            yield current, start_time, ends.strftime('%H:%M')
        current += timedelta(days=1)


def generate_class_sessions(supabase, class_id, start, end, exclude_dates=()) -> int:
    cls = get_class(supabase, class_id)
    duration = DEFAULT_DURATION_MINUTES
    if cls.get('program_id'):
        duration = get_program(supabase, cls['program_id']).get('duration_minutes') or DEFAULT_DURATION_MINUTES

    dates = list(generate_session_dates(cls.get('schedule_pairs') or [], start, end, duration, exclude_dates))
    if not dates:
        return 0
    existing = supabase.table('class_sessions').select('session_date').eq('class_id', class_id) \
        .gte('session_date', dates[0][0].isoformat()).lte('session_date', dates[-1][0].isoformat()).execute().data
    existing_dates = {as_date(s['session_date']) for s in existing}

    rows = [{
        'id': str(uuid.uuid4()),
        'class_id': class_id,
        'session_date': session_date.isoformat(),
        'start_time': start_time,
        'end_time': end_time,
        'instructor_id': cls.get('instructor_id'),
        'status': 'scheduled',
    } for session_date, start_time, end_time in dates if session_date not in existing_dates]
    if rows:
        supabase.table('class_sessions').insert(rows).execute()
    logger.info(f"Generated {len(rows)} sessions for class {class_id} ({len(dates) - len(rows)} already existed)")
    return len(rows)


def list_sessions(supabase, class_id=None, start=None, end=None):
    query = supabase.table('class_sessions').select('*')
    if class_id:
        query = query.eq('class_id', class_id)
    if start:
        query = query.gte('session_date', as_date(start).isoformat())
    if end:
        query = query.lte('session_date', as_date(end).isoformat())
    return query.order('session_date').execute().data


def create_session(supabase, class_id, session_date, start_time, end_time, instructor_id=None):
    get_class(supabase, class_id)
    start_time = normalize_time(start_time)
    end_time = normalize_time(end_time)
    if _minutes(end_time) <= _minutes(start_time):
        raise ValidationError('End time must be after start time', {'end_time': 'Before start time'})
    row = supabase.table('class_sessions').insert({
        'id': str(uuid.uuid4()),
        'class_id': class_id,
        'session_date': as_date(session_date).isoformat(),
        'start_time': start_time,
        'end_time': end_time,
        'instructor_id': instructor_id,
        'status': 'scheduled',
    }).execute().data[0]
    logger.info(f"Added session {row['id']} for class {class_id} on {row['session_date']}")
    return row


def update_session_status(supabase, session_id, status):
    if status not in SESSION_STATUSES:
        raise ValidationError(f"Invalid session status: {status}", {'status': 'Invalid'})
    rows = supabase.table('class_sessions').update({'status': status}).eq('id', session_id).execute().data
    if not rows:
        raise NotFoundError(f"Session {session_id} not found")
    return rows[0]


def delete_session(supabase, session_id):
    supabase.table('attendance').delete().eq('class_session_id', session_id).execute()
    supabase.table('class_sessions').delete().eq('id', session_id).execute()
    logger.info(f"Deleted session: {session_id}")


# Enrollments

def enroll_student(supabase, student_id, class_id, status: Optional[str] = None):
    """Enroll a student, waitlisting when full and holding for unsigned program waivers."""
    cls = get_class(supabase, class_id)
    existing = supabase.table('enrollments').select('id, status').eq('student_id', student_id) \
        .eq('class_id', class_id).execute().data
    if any(e['status'] not in ('dropped', 'completed') for e in existing):
        raise ValidationError('Student is already enrolled in this class', {'class_id': 'Already enrolled'})

    program = get_program(supabase, cls['program_id']) if cls.get('program_id') else {}
    status = status or 'trial'
    capacity = cls.get('max_capacity') or program.get('max_capacity')
    if capacity:
        enrolled = supabase.table('enrollments').select('id').eq('class_id', class_id) \
            .in_('status', ['active', 'trial']).execute().data
        if len(enrolled) >= capacity:
            logger.info(f"Class {class_id} is full, waitlisting student {student_id}")
            status = 'waitlist'

    student = supabase.table('students').select('family_id').eq('id', student_id).limit(1).execute().data
    family_id = student[0].get('family_id') if student else None
    if status in ('active', 'trial') and program:
        users = supabase.table('users').select('id').eq('family_id', family_id).limit(1).execute().data if family_id else []
        waiver_status = get_program_waiver_status(supabase, users[0]['id'] if users else None, program['id'], status)
        if not waiver_status['is_complete']:
            status = 'pending_waivers'

    row = supabase.table('enrollments').insert({
        'id': str(uuid.uuid4()),
        'student_id': student_id,
        'class_id': class_id,
        'program_id': cls.get('program_id'),
        'status': status,
        'paid_until': None,
    }).execute().data[0]
    logger.info(f"Enrolled student {student_id} in class {class_id} as {status}")
    if status != 'waitlist':
        record_student_enrollment(supabase, student_id, family_id)
    return row


def drop_enrollment(supabase, enrollment_id):
    rows = supabase.table('enrollments').update({'status': 'dropped'}).eq('id', enrollment_id).execute().data
    if not rows:
        raise NotFoundError(f"Enrollment {enrollment_id} not found")
    logger.info(f"Dropped enrollment {enrollment_id}")
    return rows[0]


# Attendance

def record_session_attendance(supabase, session_id, records) -> int:
    """Upsert attendance for a session from [{student_id, status, notes}]."""
    for record in records:
        if record.get('status') not in ATTENDANCE_STATUSES:
            raise ValidationError(f"Invalid attendance status: {record.get('status')}", {'status': 'Invalid'})
    existing = supabase.table('attendance').select('id, student_id, status').eq('class_session_id', session_id) \
        .execute().data
    existing_map = {a['student_id']: a for a in existing}
    newly_attended = []
    for record in records:
        data = {'status': record['status'], 'notes': record.get('notes') or None}
        previous = existing_map.get(record['student_id'])
        if previous:
            supabase.table('attendance').update(data).eq('id', previous['id']).execute()
        else:
            data.update({'id': str(uuid.uuid4()), 'student_id': record['student_id'], 'class_session_id': session_id})
            supabase.table('attendance').insert(data).execute()
        if record['status'] in ATTENDED_STATUSES and (not previous or previous.get('status') not in ATTENDED_STATUSES):
            newly_attended.append(record['student_id'])
    logger.info(f"Recorded attendance for {len(records)} students in session {session_id}")

    if newly_attended:
        students = supabase.table('students').select('id, family_id').in_('id', newly_attended).execute().data
        for student in students:
            record_attendance_milestone(supabase, student['id'], student.get('family_id'),
                                        count_attended_sessions(supabase, student['id']))
    return len(records)


def get_student_attendance_stats(supabase, student_id):
    records = supabase.table('attendance').select('status').eq('student_id', student_id).execute().data
    stats = {status: 0 for status in ATTENDANCE_STATUSES}
    for record in records:
        if record.get('status') in stats:
            stats[record['status']] += 1
    total = sum(stats.values())
    stats['total'] = total
    stats['attendance_rate'] = round((stats['present'] + stats['late']) * 100 / total, 1) if total else 0.0
    return stats
