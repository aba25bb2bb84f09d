from datetime import date, timedelta

import pytest

from dojo import auto_discounts, classes, families, payments
from dojo.discounts import validate_discount_code
from dojo.errors import ValidationError


@pytest.fixture
def welcome(supabase):
    return auto_discounts.create_discount_template(supabase, {
        'name': 'Welcome', 'discount_type': 'percentage', 'discount_value': '10',
        'applicable_to': ['monthly_group'], 'scope': 'per_family',
    })


def _rule(supabase, template, event_type, **extra):
    data = {'name': f"{event_type} rule", 'event_type': event_type, 'discount_template_ids': [template['id']]}
    data.update(extra)
    return auto_discounts.create_automation_rule(supabase, data)


def _aiko(supabase, school, **fields):
    return supabase.seed('students', dict({'family_id': school.family['id'], 'first_name': 'Aiko',
                                           'last_name': 'Tanaka'}, **fields))


def test_template_validation(supabase):
    with pytest.raises(ValidationError) as excinfo:
        auto_discounts.create_discount_template(supabase, {'discount_type': 'percentage', 'discount_value': '150',
                                                           'scope': 'per_household'})
    assert set(excinfo.value.field_errors) == {'name', 'discount_value', 'scope'}


def test_rule_validation(supabase, welcome):
    with pytest.raises(ValidationError) as excinfo:
        auto_discounts.create_automation_rule(supabase, {'name': 'Bad', 'event_type': 'graduation',
                                                         'conditions': {'min_family_size': 'two'}})
    assert set(excinfo.value.field_errors) == {'event_type', 'discount_template_ids', 'min_family_size'}

    rule = _rule(supabase, welcome, 'student_enrollment', conditions={'min_family_size': '2', 'belt_rank': ''})
    assert rule['conditions'] == {'min_family_size': 2}
    assert rule['applicable_programs'] is None


def test_template_in_use_cannot_be_deleted(supabase, welcome):
    rule = _rule(supabase, welcome, 'student_enrollment')
    with pytest.raises(ValidationError):
        auto_discounts.delete_discount_template(supabase, welcome['id'])
    auto_discounts.delete_automation_rule(supabase, rule['id'])
    auto_discounts.delete_discount_template(supabase, welcome['id'])
    assert supabase.rows('discount_templates') == []


def test_enrollment_assigns_family_code_once(supabase, school, welcome):
    _rule(supabase, welcome, 'student_enrollment')
    aiko = _aiko(supabase, school)
    classes.enroll_student(supabase, aiko['id'], school.cls['id'])

    [assignment] = auto_discounts.list_discount_assignments(supabase, school.family['id'])
    code = assignment['discount_code']
    assert code['code'].startswith('AUTO')
    stored = supabase.rows('discount_codes', id=code['id'])[0]
    assert stored['family_id'] == school.family['id']
    assert stored['student_id'] is None
    assert stored['name'] == 'Welcome - Auto Assigned'
    assert validate_discount_code(supabase, code['code'], school.family['id'], 12100, 'monthly_group').is_valid
    assert not validate_discount_code(supabase, code['code'], 'other-family', 12100, 'monthly_group').is_valid

    second_class = supabase.seed('classes', {'name': 'Saturday Juniors', 'program_id': school.program['id'],
                                             'is_active': True})
    classes.enroll_student(supabase, aiko['id'], second_class['id'])
    assert len(supabase.rows('discount_assignments')) == 1
    assert len(supabase.rows('discount_events', event_type='student_enrollment')) == 2


def test_waitlisted_enrollment_records_nothing(supabase, school, welcome):
    _rule(supabase, welcome, 'student_enrollment')
    school.cls['max_capacity'] = 2
    aiko = _aiko(supabase, school)
    assert classes.enroll_student(supabase, aiko['id'], school.cls['id'])['status'] == 'waitlist'
    assert supabase.rows('discount_events') == []


def test_per_student_template_scopes_code_to_student(supabase, school):
    template = auto_discounts.create_discount_template(supabase, {
        'name': 'Promotion', 'discount_type': 'fixed_amount', 'discount_value': '20', 'scope': 'per_student',
    })
    _rule(supabase, template, 'belt_promotion')
    families.update_student(supabase, school.kenji['id'], {'belt_rank': 'yellow'})
    families.update_student(supabase, school.kenji['id'], {'belt_rank': 'yellow', 'allergies': 'None'})

    [code] = supabase.rows('discount_codes')
    assert code['student_id'] == school.kenji['id']
    assert code['family_id'] == school.family['id']
    assert len(supabase.rows('discount_events', event_type='belt_promotion')) == 1
    assert not validate_discount_code(supabase, code['code'], school.family['id'], 12100, 'monthly_group',
                                      student_id=school.yumi['id']).is_valid


@pytest.mark.parametrize('conditions, qualifies', [
    ({'min_family_size': 3}, False),
    ({'min_family_size': 2}, True),
    ({'belt_rank': 'green'}, True),
    ({'belt_rank': 'black'}, False),
    ({'attendance_count': 1}, False),
])
def test_rule_conditions(supabase, school, welcome, conditions, qualifies):
    school.kenji['belt_rank'] = 'green'
    _rule(supabase, welcome, 'seasonal_promotion', conditions=conditions)
    codes = auto_discounts.record_discount_event(supabase, 'seasonal_promotion', school.family['id'],
                                                 school.kenji['id'])
    assert bool(codes) is qualifies


def test_applicable_programs_filter(supabase, school, welcome):
    kobudo = supabase.seed('programs', {'name': 'Kobudo', 'is_active': True})
    _rule(supabase, welcome, 'family_referral', applicable_programs=[kobudo['id']])
    assert auto_discounts.record_discount_event(supabase, 'family_referral', school.family['id'],
                                                school.kenji['id']) == []
    _rule(supabase, welcome, 'family_referral', applicable_programs=[school.program['id']])
    assert len(auto_discounts.record_discount_event(supabase, 'family_referral', school.family['id'],
                                                    school.kenji['id'])) == 1


def test_inactive_and_expired_rules_are_ignored(supabase, school, welcome):
    rule = _rule(supabase, welcome, 'birthday')
    auto_discounts.set_automation_rule_active(supabase, rule['id'], False)
    assert auto_discounts.record_discount_event(supabase, 'birthday', school.family['id']) == []

    _rule(supabase, welcome, 'birthday', valid_until='2020-01-01T00:00:00+00:00')
    assert auto_discounts.record_discount_event(supabase, 'birthday', school.family['id']) == []
    assert len(supabase.rows('discount_events', event_type='birthday')) == 2


def test_failing_rule_does_not_stop_others(supabase, school, welcome):
    per_student = auto_discounts.create_discount_template(supabase, {
        'name': 'Student only', 'discount_type': 'percentage', 'discount_value': '5', 'scope': 'per_student',
    })
    _rule(supabase, per_student, 'seasonal_promotion')
    _rule(supabase, welcome, 'seasonal_promotion')
    codes = auto_discounts.record_discount_event(supabase, 'seasonal_promotion', school.family['id'])
    assert [c['name'] for c in codes] == ['Welcome - Auto Assigned']


def test_unknown_event_type(supabase, school):
    with pytest.raises(ValidationError):
        auto_discounts.record_discount_event(supabase, 'graduation', school.family['id'])
    assert auto_discounts.record_event_quietly(supabase, 'graduation', school.family['id']) == []


def test_first_payment_only_counts_once(supabase, school, welcome):
    _rule(supabase, welcome, 'first_payment')
    for _ in range(2):
        payment = payments.create_initial_payment_record(supabase, school.family['id'], 12100,
                                                         [school.kenji['id']], 'monthly_group')
        payments.update_payment_status(supabase, payment['id'], 'succeeded')
        payments.update_payment_status(supabase, payment['id'], 'succeeded')
    events = supabase.rows('discount_events', event_type='first_payment')
    assert len(events) == 1
    assert events[0]['event_data']['payment_amount'] == 12705
    assert len(supabase.rows('discount_assignments')) == 1


def test_attendance_milestone_every_five_sessions(supabase, school, welcome):
    _rule(supabase, welcome, 'attendance_milestone')
    start = date(2026, 6, 2)
    sessions = [classes.create_session(supabase, school.cls['id'], (start + timedelta(days=7 * i)).isoformat(),
                                       '17:45', '18:45') for i in range(5)]
    for session in sessions[:4]:
        classes.record_session_attendance(supabase, session['id'], [{'student_id': school.kenji['id'],
                                                                     'status': 'present'}])
    assert supabase.rows('discount_events') == []

    classes.record_session_attendance(supabase, sessions[4]['id'], [{'student_id': school.kenji['id'],
                                                                     'status': 'late'}])
    classes.record_session_attendance(supabase, sessions[4]['id'], [{'student_id': school.kenji['id'],
                                                                     'status': 'present'}])
    [event] = supabase.rows('discount_events', event_type='attendance_milestone')
    assert event['event_data']['attendance_count'] == 5
    assert event['student_id'] == school.kenji['id']
    assert len(supabase.rows('discount_assignments')) == 1


def test_issue_code_from_template(supabase, school, welcome):
    with pytest.raises(ValidationError):
        auto_discounts.create_discount_from_template(supabase, welcome['id'])
    code = auto_discounts.create_discount_from_template(supabase, welcome['id'], family_id=school.family['id'],
                                                        code='tanaka10')
    assert code['code'] == 'TANAKA10'
    assert code['discount_value'] == 10.0
    assert code['applicable_to'] == ['monthly_group']
