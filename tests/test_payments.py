import pytest
from dateutil.relativedelta import relativedelta

from dojo import payments
from dojo.dates import local_today
from dojo.errors import NotFoundError, ValidationError


def test_initial_payment_record_snapshots_taxes(supabase, school):
    student_ids = [school.kenji['id'], school.yumi['id']]
    payment = payments.create_initial_payment_record(supabase, school.family['id'], 24200, student_ids,
                                                     'monthly_group')
    assert payment['status'] == 'pending'
    assert payment['subtotal_amount'] == 24200
    assert payment['tax_amount'] == 1210
    assert payment['total_amount'] == 25410
    assert sorted(payments.get_payment_student_ids(supabase, payment['id'])) == sorted(student_ids)
    taxes = supabase.rows('payment_taxes', payment_id=payment['id'])
    assert [(t['tax_name_snapshot'], t['tax_amount']) for t in taxes] == [('GST', 1210)]


def test_discount_reduces_taxable_amount(supabase, school):
    code = supabase.seed('discount_codes', {'code': 'TEN', 'current_uses': 0, 'is_active': True})
    payment = payments.create_initial_payment_record(supabase, school.family['id'], 24200, [school.kenji['id']],
                                                     'monthly_group', discount_code_id=code['id'],
                                                     discount_amount_cents=2420)
    assert payment['discount_amount'] == 2420
    assert payment['tax_amount'] == 1089
    assert payment['total_amount'] == 21780 + 1089
    assert code['current_uses'] == 1
    assert supabase.rows('discount_code_usage')[0]['student_id'] == school.kenji['id']


def test_tax_breakdown_failure_keeps_payment(supabase, school):
    supabase.fail('payment_taxes', 'insert')
    payment = payments.create_initial_payment_record(supabase, school.family['id'], 12100, [school.kenji['id']],
                                                     'monthly_group')
    assert payment['total_amount'] == 12705


def test_initial_payment_requires_family(supabase):
    with pytest.raises(ValidationError):
        payments.create_initial_payment_record(supabase, None, 100, [], 'store_purchase')


@pytest.mark.parametrize('option, student_ids, quantity, field', [
    ('weekly', ['s1'], 1, 'payment_option'),
    ('monthly', [], 1, 'student_ids'),
    ('individual', [], 0, 'quantity'),
])
def test_initiate_family_payment_validation(supabase, school, option, student_ids, quantity, field):
    with pytest.raises(ValidationError) as excinfo:
        payments.initiate_family_payment(supabase, school.family['id'], option, student_ids, quantity)
    assert field in excinfo.value.field_errors


def test_initiate_individual_sessions_uses_program_price(supabase, school):
    result = payments.initiate_family_payment(supabase, school.family['id'], 'individual', [school.kenji['id']], '3')
    payment = payments.get_payment(supabase, result['payment_id'])
    assert payment['type'] == 'individual_session'
    assert payment['subtotal_amount'] == 24000
    assert payment['quantity'] == 3
    assert result['total_amount'] == 25200
    assert result['zero_payment'] is False


def test_fully_discounted_payment_completes_immediately(supabase, school):
    code = supabase.seed('discount_codes', {'code': 'FREE', 'current_uses': 0, 'is_active': True})
    result = payments.initiate_family_payment(supabase, school.family['id'], 'monthly', [school.kenji['id']],
                                              discount_code_id=code['id'], discount_amount_cents=12100)
    assert result['zero_payment'] is True
    payment = payments.get_payment(supabase, result['payment_id'])
    assert payment['status'] == 'succeeded'
    assert payment['payment_method'] == 'discount_100_percent'
    assert payment['total_amount'] == 0
    enrollment = supabase.rows('enrollments', student_id=school.kenji['id'])[0]
    assert enrollment['paid_until'] == (local_today() + relativedelta(months=1)).isoformat()


def test_success_extends_enrollments_once(supabase, school):
    payment = payments.create_initial_payment_record(
        supabase, school.family['id'], 24200, [school.kenji['id'], school.yumi['id']], 'monthly_group')
    payments.update_payment_status(supabase, payment['id'], 'succeeded', receipt_url='https://receipts/1',
                                   card_last4='4242')
    expected = (local_today() + relativedelta(months=1)).isoformat()
    kenji, yumi = school.enrollments
    assert kenji['paid_until'] == expected
    assert yumi['paid_until'] == expected
    assert yumi['status'] == 'active'

    updated = payments.update_payment_status(supabase, payment['id'], 'succeeded')
    assert kenji['paid_until'] == expected
    assert updated['receipt_url'] == 'https://receipts/1'
    assert updated['card_last4'] == '4242'


def test_individual_session_success_records_sessions(supabase, school):
    payment = payments.create_initial_payment_record(supabase, school.family['id'], 16000, [school.kenji['id']],
                                                     'individual_session', quantity=2)
    payments.update_payment_status(supabase, payment['id'], 'succeeded')
    sessions = supabase.rows('one_on_one_sessions', payment_id=payment['id'])
    assert sessions[0]['quantity_purchased'] == 2
    assert sessions[0]['quantity_remaining'] == 2
    assert school.enrollments[0].get('paid_until') is None


def test_failure_never_downgrades_success(supabase, school):
    payment = payments.create_initial_payment_record(supabase, school.family['id'], 5000, [], 'store_purchase')
    payments.update_payment_status(supabase, payment['id'], 'succeeded')
    result = payments.update_payment_status(supabase, payment['id'], 'failed')
    assert result['status'] == 'succeeded'
    assert payments.get_payment(supabase, payment['id'])['status'] == 'succeeded'


def test_unknown_status_and_missing_payment(supabase, school):
    payment = payments.create_initial_payment_record(supabase, school.family['id'], 5000, [], 'store_purchase')
    with pytest.raises(ValidationError):
        payments.update_payment_status(supabase, payment['id'], 'refunded')
    with pytest.raises(NotFoundError):
        payments.update_payment_status(supabase, 'missing', 'succeeded')


def test_payment_metadata():
    metadata = payments.build_payment_metadata({
        'id': 'p1', 'family_id': 'f1', 'type': 'store_purchase', 'subtotal_amount': 5000,
        'discount_amount': 0, 'tax_amount': 600, 'total_amount': 5600, 'order_id': 'o1',
    })
    assert metadata == {
        'paymentId': 'p1', 'familyId': 'f1', 'type': 'store_purchase', 'subtotal_amount': '5000',
        'tax_amount': '600', 'total_amount': '5600', 'orderId': 'o1',
    }


def test_student_payment_options(supabase, school):
    payment = payments.create_initial_payment_record(supabase, school.family['id'], 12100, [school.kenji['id']],
                                                     'monthly_group')
    payments.update_payment_status(supabase, payment['id'], 'succeeded')

    kenji_options = payments.get_student_payment_options(supabase, school.kenji['id'])
    assert kenji_options[0]['current_status'] == 'active_monthly'
    assert kenji_options[0]['monthly_amount'] == 12100
    assert kenji_options[0]['supported_payment_types'] == ['monthly', 'yearly', 'individual']

    family_options = payments.get_family_payment_options(supabase, school.family['id'])
    yumi = next(o for o in family_options if o['student_id'] == school.yumi['id'])
    assert yumi['student_name'] == 'Yumi Tanaka'
    assert yumi['enrollments'][0]['current_status'] == 'trial'


def test_family_payments_include_links(supabase, school):
    payment = payments.create_initial_payment_record(supabase, school.family['id'], 12100, [school.kenji['id']],
                                                     'monthly_group')
    history = payments.get_family_payments(supabase, school.family['id'])
    assert history[0]['id'] == payment['id']
    assert history[0]['student_ids'] == [school.kenji['id']]
    assert history[0]['payment_taxes'][0]['tax_amount'] == 605


def test_early_monthly_payment_extends_from_paid_until(supabase, school):
    paid_until = local_today() + relativedelta(days=25)
    school.enrollments[0]['paid_until'] = paid_until.isoformat()
    payment = payments.create_initial_payment_record(supabase, school.family['id'], 12100, [school.kenji['id']],
                                                     'monthly_group')
    payments.update_payment_status(supabase, payment['id'], 'succeeded')
    assert school.enrollments[0]['paid_until'] == (paid_until + relativedelta(months=1)).isoformat()

    payments.update_payment_status(supabase, payment['id'], 'succeeded')
    assert school.enrollments[0]['paid_until'] == (paid_until + relativedelta(months=1)).isoformat()


def test_yearly_upgrade_extends_active_monthly_enrollment(supabase, school):
    paid_until = local_today() + relativedelta(days=28)
    school.enrollments[0]['paid_until'] = paid_until.isoformat()
    payment = payments.create_initial_payment_record(supabase, school.family['id'], 120000, [school.kenji['id']],
                                                     'yearly_group')
    payments.update_payment_status(supabase, payment['id'], 'succeeded')
    assert school.enrollments[0]['paid_until'] == (paid_until + relativedelta(years=1)).isoformat()


def test_apply_payment_status_reports_first_transition(supabase, school):
    payment = payments.create_initial_payment_record(supabase, school.family['id'], 5000, [], 'store_purchase')
    assert payments.apply_payment_status(supabase, payment['id'], 'failed')[1] is True
    assert payments.apply_payment_status(supabase, payment['id'], 'failed')[1] is False
    assert payments.apply_payment_status(supabase, payment['id'], 'succeeded')[1] is True
    assert payments.apply_payment_status(supabase, payment['id'], 'succeeded')[1] is False
    assert payments.apply_payment_status(supabase, payment['id'], 'failed')[1] is False


def test_initiate_payment_rejects_students_from_other_family(supabase, school):
    other = supabase.seed('families', {'name': 'Sato'})
    stranger = supabase.seed('students', {'family_id': other['id'], 'first_name': 'Ren', 'last_name': 'Sato'})
    with pytest.raises(ValidationError) as excinfo:
        payments.initiate_family_payment(supabase, school.family['id'], 'monthly',
                                         [school.kenji['id'], stranger['id']])
    assert 'student_ids' in excinfo.value.field_errors
    assert supabase.rows('payments') == []
