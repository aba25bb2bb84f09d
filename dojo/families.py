import logging
import re
import uuid
from typing import Optional, Tuple

from dojo import eligibility
from dojo.auto_discounts import record_belt_promotion
from dojo.dates import as_date, calculate_age
from dojo.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

FAMILY_FIELDS = ['name', 'email', 'primary_phone', 'address', 'city', 'province', 'postal_code']
GUARDIAN_FIELDS = ['family_id', 'first_name', 'last_name', 'relationship', 'email', 'cell_phone']
STUDENT_FIELDS = ['family_id', 'first_name', 'last_name', 'birth_date', 'gender', 'belt_rank',
                  'email', 'cell_phone', 'allergies', 'medications', 'special_needs']
PHONE_FIELDS = ('primary_phone', 'cell_phone')


def format_phone(phone):
    if not phone:
        return ""
    digits = ''.join(filter(str.isdigit, str(phone)))
    if len(digits) == 11 and digits.startswith('1'):
        digits = digits[1:]
    if len(digits) != 10:
        return phone
    return f"({digits[:3]}){digits[3:6]}-{digits[6:]}"


def parse_student_name(name) -> Tuple[Optional[str], Optional[str]]:
    """Parse 'Last, First (Nickname)' into (first_name, last_name), preferring the nickname."""
    if not name or not isinstance(name, str):
        return None, None
    name = name.strip().strip('"')
    match = re.match(r"([^,]+),\s*([^\(]+)(?:\s*\((.+)\))?", name)
    if not match:
        return None, None
    last_name = match.group(1).strip()
    first_name = match.group(3).strip() if match.group(3) else match.group(2).strip()
    return first_name, last_name


def _clean(data, fields):
    cleaned = {}
    for field in fields:
        if field not in data:
            continue
        value = data[field]
        if isinstance(value, str):
            value = value.strip() or None
        if field in PHONE_FIELDS and value:
            value = format_phone(value)
        cleaned[field] = value
    return cleaned


def _require(data, fields, label):
    missing = [f for f in fields if not data.get(f)]
    if missing:
        raise ValidationError(f"{label}: {', '.join(missing)} required",
                              {f: 'Required' for f in missing})


# Families

def list_families(supabase):
    families = supabase.table('families').select('*').execute().data
    return sorted(families, key=lambda f: (f.get('name') or '').lower())


def get_family(supabase, family_id):
    rows = supabase.table('families').select('*').eq('id', family_id).limit(1).execute().data
    if not rows:
        raise NotFoundError(f"Family {family_id} not found")
    return rows[0]


def create_family(supabase, data):
    family = _clean(data, FAMILY_FIELDS)
    _require(family, ['name'], 'Family')
    family['id'] = str(uuid.uuid4())
    row = supabase.table('families').insert(family).execute().data[0]
    logger.info(f"Added family: {row['id']}, {row['name']}")
    return row


def update_family(supabase, family_id, data):
    family = _clean(data, FAMILY_FIELDS)
    if 'name' in family:
        _require(family, ['name'], 'Family')
    rows = supabase.table('families').update(family).eq('id', family_id).execute().data
    if not rows:
        raise NotFoundError(f"Family {family_id} not found")
    logger.info(f"Edited family: {family_id}")
    return rows[0]


def delete_family(supabase, family_id):
    students = supabase.table('students').select('id').eq('family_id', family_id).execute().data
    if students:
        raise ValidationError('Cannot delete family with associated students')
    supabase.table('guardians').delete().eq('family_id', family_id).execute()
    supabase.table('families').delete().eq('id', family_id).execute()
    logger.info(f"Deleted family: {family_id}")


# Guardians

def create_guardian(supabase, data):
    guardian = _clean(data, GUARDIAN_FIELDS)
    _require(guardian, ['family_id', 'first_name', 'last_name'], 'Guardian')
    guardian['id'] = str(uuid.uuid4())
    row = supabase.table('guardians').insert(guardian).execute().data[0]
    logger.info(f"Added guardian: {row['id']} for family {row['family_id']}")
    return row


def update_guardian(supabase, guardian_id, data):
    guardian = _clean(data, GUARDIAN_FIELDS)
    rows = supabase.table('guardians').update(guardian).eq('id', guardian_id).execute().data
    if not rows:
        raise NotFoundError(f"Guardian {guardian_id} not found")
    return rows[0]


def delete_guardian(supabase, guardian_id):
    supabase.table('guardians').delete().eq('id', guardian_id).execute()
    logger.info(f"Deleted guardian: {guardian_id}")


# Students

def list_students(supabase, family_id=None):
    query = supabase.table('students').select('*')
    if family_id:
        query = query.eq('family_id', family_id)
    students = query.execute().data
    return sorted(students, key=lambda s: ((s.get('last_name') or '').lower(), (s.get('first_name') or '').lower()))


def get_student(supabase, student_id):
    rows = supabase.table('students').select('*').eq('id', student_id).limit(1).execute().data
    if not rows:
        raise NotFoundError(f"Student {student_id} not found")
    return rows[0]


def create_student(supabase, data):
    student = _clean(data, STUDENT_FIELDS)
    _require(student, ['family_id', 'first_name', 'last_name'], 'Student')
    if student.get('birth_date'):
        try:
            student['birth_date'] = as_date(student['birth_date']).isoformat()
        except ValueError:
            raise ValidationError('Invalid birth date', {'birth_date': 'Invalid date'})
    student['id'] = str(uuid.uuid4())
    row = supabase.table('students').insert(student).execute().data[0]
    logger.info(f"Added student: {row['id']}, {row['first_name']} {row['last_name']}")
    return row


def update_student(supabase, student_id, data):
    student = _clean(data, STUDENT_FIELDS)
    if student.get('birth_date'):
        try:
            student['birth_date'] = as_date(student['birth_date']).isoformat()
        except ValueError:
            raise ValidationError('Invalid birth date', {'birth_date': 'Invalid date'})
    previous = supabase.table('students').select('belt_rank').eq('id', student_id).limit(1).execute().data
    rows = supabase.table('students').update(student).eq('id', student_id).execute().data
    if not rows:
        raise NotFoundError(f"Student {student_id} not found")
    logger.info(f"Edited student: {student_id}")
    new_rank = rows[0].get('belt_rank')
    if new_rank and previous and previous[0].get('belt_rank') != new_rank:
        record_belt_promotion(supabase, student_id, rows[0].get('family_id'), new_rank)
    return rows[0]


def delete_student(supabase, student_id):
    supabase.table('enrollments').delete().eq('student_id', student_id).execute()
    supabase.table('students').delete().eq('id', student_id).execute()
    logger.info(f"Deleted student: {student_id}")


def get_family_detail(supabase, family_id):
    """Family with guardians and students, each student carrying eligibility."""
    family = get_family(supabase, family_id)
    guardians = supabase.table('guardians').select('*').eq('family_id', family_id).execute().data
    students = []
    for student in list_students(supabase, family_id):
        student_copy = student.copy()
        student_copy['age'] = calculate_age(student.get('birth_date'))
        student_copy['eligibility'] = eligibility.check_student_eligibility(supabase, student['id'])
        students.append(student_copy)
    return {'family': family, 'guardians': guardians, 'students': students}
