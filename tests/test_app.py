import json

import pytest
from postgrest.exceptions import APIError

import app as app_module
from dojo import config
from dojo.payments import build_payment_metadata, create_initial_payment_record, get_payment

PASSWORD = 'kiai-2026'


@pytest.fixture
def client(supabase):
    app_module.app.config['TESTING'] = True
    with app_module.app.test_client() as client:
        yield client


@pytest.fixture
def accounts(supabase, school):
    password_hash = app_module.bcrypt.generate_password_hash(PASSWORD).decode('utf-8')
    school.user['password_hash'] = password_hash
    admin = supabase.seed('users', {'email': 'sensei@example.com', 'role': 'admin', 'password_hash': password_hash})
    instructor = supabase.seed('users', {'email': 'sempai@example.com', 'role': 'instructor',
                                         'password_hash': password_hash})
    return {'family': school.user, 'admin': admin, 'instructor': instructor}


def login(client, email, password=PASSWORD):
    return client.post('/login', data={'email': email, 'password': password})


def test_login_redirects_by_role(client, accounts):
    response = login(client, 'Parent@Example.com')
    assert response.status_code == 302
    assert response.headers['Location'].endswith('/family')

    client.get('/logout')
    response = login(client, 'sensei@example.com')
    assert response.status_code == 302
    assert '/family' not in response.headers['Location']


def test_login_rejects_bad_password(client, accounts):
    response = login(client, 'sensei@example.com', 'wrong')
    assert response.status_code == 200
    assert b'Invalid email or password' in response.data


def test_pages_require_login(client, accounts):
    response = client.get('/families')
    assert response.status_code == 302
    assert '/login' in response.headers['Location']


def test_admin_sees_families(client, accounts):
    login(client, 'sensei@example.com')
    response = client.get('/families')
    assert response.status_code == 200
    assert b'Tanaka' in response.data


def test_family_accounts_cannot_manage_students(client, supabase, accounts, school):
    login(client, 'parent@example.com')
    response = client.post('/add_student', data={'family_id': school.family['id'], 'first_name': 'Aiko',
                                                 'last_name': 'Tanaka'})
    assert response.status_code == 302
    assert supabase.rows('students', first_name='Aiko') == []


def test_instructors_cannot_delete_students(client, supabase, accounts, school):
    login(client, 'sempai@example.com')
    client.post(f"/delete_student/{school.yumi['id']}")
    assert supabase.rows('students', id=school.yumi['id'])


def test_family_payment(client, supabase, accounts, school):
    login(client, 'parent@example.com')
    response = client.post('/family/payment', json={'payment_option': 'monthly', 'student_ids': [school.kenji['id']]})
    assert response.status_code == 200
    body = response.get_json()
    assert body['success']
    assert body['total_amount'] == 12705
    assert get_payment(supabase, body['payment_id'])['family_id'] == school.family['id']


def test_family_payment_rejects_bad_discount(client, accounts, school):
    login(client, 'parent@example.com')
    response = client.post('/family/payment', json={'payment_option': 'monthly', 'student_ids': [school.kenji['id']],
                                                    'discount_code': 'NOPE'})
    assert response.status_code == 400
    assert response.get_json()['field_errors'] == {'discount_code': 'Invalid discount code'}


def test_family_payment_validation_errors(client, accounts, school):
    login(client, 'parent@example.com')
    response = client.post('/family/payment', json={'payment_option': 'weekly', 'student_ids': [school.kenji['id']]})
    assert response.status_code == 400
    assert 'payment_option' in response.get_json()['field_errors']


def test_family_endpoints_reject_staff(client, accounts, school):
    login(client, 'sempai@example.com')
    response = client.post('/family/payment', json={'payment_option': 'monthly', 'student_ids': [school.kenji['id']]})
    assert response.status_code == 403


def test_event_registration_reports_missing_waivers(client, supabase, accounts, school):
    event = supabase.seed('events', {'title': 'Spring Tournament', 'status': 'registration_open',
                                     'start_date': '2099-07-01'})
    waiver = supabase.seed('waivers', {'title': 'Tournament Release'})
    supabase.seed('event_waivers', {'event_id': event['id'], 'waiver_id': waiver['id'], 'is_required': True})
    login(client, 'parent@example.com')
    response = client.post(f"/events/{event['id']}/register",
                           json={'participants': [{'student_id': school.kenji['id']}]})
    assert response.status_code == 400
    assert response.get_json()['missing_waivers'] == [{'id': waiver['id'], 'title': 'Tournament Release'}]


def test_stripe_webhook_rejects_bad_signature(client, monkeypatch):
    monkeypatch.setattr(config, 'STRIPE_WEBHOOK_SECRET', 'whsec_test')
    response = client.post('/api/webhooks/stripe', data='{"id": "evt_1"}',
                           headers={'Stripe-Signature': 't=1,v1=bogus'})
    assert response.status_code == 400
    assert response.get_json()['received'] is False


def test_stripe_webhook_without_secret(client, monkeypatch):
    monkeypatch.setattr(config, 'STRIPE_WEBHOOK_SECRET', None)
    response = client.post('/api/webhooks/stripe', data='{}')
    assert response.status_code == 500


def test_mock_webhook_only_in_mock_mode(client, supabase, school, monkeypatch):
    payment = create_initial_payment_record(supabase, school.family['id'], 12100, [school.kenji['id']],
                                            'monthly_group')
    payload = json.dumps({'id': 'evt_mock_1', 'type': 'payment.succeeded', 'data': {'object': {
        'id': 'mock_pi_app', 'amount': payment['total_amount'], 'status': 'succeeded',
        'metadata': build_payment_metadata(payment)}}})

    monkeypatch.setattr(config, 'PAYMENT_PROVIDER', 'stripe')
    assert client.post('/api/webhooks/mock', data=payload).status_code == 404

    monkeypatch.setattr(config, 'PAYMENT_PROVIDER', 'mock')
    response = client.post('/api/webhooks/mock', data=payload)
    assert response.status_code == 200
    assert response.get_json() == {'received': True, 'duplicate': False}
    assert get_payment(supabase, payment['id'])['status'] == 'succeeded'

    response = client.post('/api/webhooks/mock', data=payload)
    assert response.get_json()['duplicate'] is True


def test_mock_webhook_rejects_garbage(client, monkeypatch):
    monkeypatch.setattr(config, 'PAYMENT_PROVIDER', 'mock')
    assert client.post('/api/webhooks/mock', data='not json').status_code == 400


def test_mock_webhook_rejects_non_object_payload(client, monkeypatch):
    monkeypatch.setattr(config, 'PAYMENT_PROVIDER', 'mock')
    response = client.post('/api/webhooks/mock', data='[]')
    assert response.status_code == 400
    assert response.get_json() == {'received': False, 'error': 'Invalid payload'}


def test_webhook_database_error_returns_json(client, monkeypatch):
    def broken_handler(*args, **kwargs):
        raise APIError({'message': 'connection reset', 'code': 'PGRST000', 'hint': None, 'details': None})

    monkeypatch.setattr(config, 'PAYMENT_PROVIDER', 'mock')
    monkeypatch.setattr(app_module, 'handle_payment_webhook', broken_handler)
    response = client.post('/api/webhooks/mock', data='{}')
    assert response.status_code == 500
    assert response.get_json() == {'received': False, 'error': 'Webhook processing failed'}


def test_family_payment_rejects_non_numeric_quantity(client, supabase, accounts, school):
    login(client, 'parent@example.com')
    response = client.post('/family/payment', json={'payment_option': 'individual',
                                                    'student_ids': [school.kenji['id']], 'quantity': 'abc'})
    assert response.status_code == 400
    assert 'quantity' in response.get_json()['field_errors']
    assert supabase.rows('payments') == []


def test_family_payment_rejects_other_family_students(client, supabase, accounts, school):
    other = supabase.seed('families', {'name': 'Sato'})
    stranger = supabase.seed('students', {'family_id': other['id'], 'first_name': 'Ren', 'last_name': 'Sato'})
    login(client, 'parent@example.com')
    response = client.post('/family/payment', json={'payment_option': 'monthly', 'student_ids': [stranger['id']]})
    assert response.status_code == 400
    assert 'student_ids' in response.get_json()['field_errors']
    assert supabase.rows('payments') == []


def test_admin_manages_automatic_discounts(client, supabase, accounts, school):
    login(client, 'sensei@example.com')
    client.post('/add_discount_template', data={'name': 'Welcome', 'discount_type': 'percentage',
                                                'discount_value': '10', 'scope': 'per_family'})
    template = supabase.rows('discount_templates', name='Welcome')[0]
    client.post('/add_automation_rule', data={'name': 'New students', 'event_type': 'student_enrollment',
                                              'discount_template_ids': [template['id']]})
    rule = supabase.rows('discount_automation_rules', name='New students')[0]
    assert rule['discount_template_ids'] == [template['id']]

    response = client.get('/automatic_discounts')
    assert response.status_code == 200
    assert b'Welcome' in response.data
    assert b'New students' in response.data


def test_family_cannot_manage_automatic_discounts(client, supabase, accounts):
    login(client, 'parent@example.com')
    client.post('/add_discount_template', data={'name': 'Free', 'discount_type': 'percentage',
                                                'discount_value': '100'})
    assert supabase.rows('discount_templates') == []


def test_family_account_without_family_is_refused(client, supabase, accounts):
    supabase.seed('users', {'email': 'orphan@example.com', 'role': 'family', 'family_id': None,
                            'password_hash': accounts['admin']['password_hash']})
    login(client, 'orphan@example.com')
    response = client.post('/family/payment', json={'payment_option': 'monthly', 'student_ids': []})
    assert response.status_code == 403
