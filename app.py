import logging
from flask import Flask, render_template, request, redirect, url_for, flash, jsonify
from flask_login import LoginManager, UserMixin, login_user, logout_user, login_required, current_user
from flask_bcrypt import Bcrypt
from werkzeug.local import LocalProxy
from postgrest.exceptions import APIError
import pandas as pd
import io
import uuid

from dojo import classes as class_service
from dojo import auto_discounts, config, discounts, events, families, payments, store, waivers
from dojo.db import get_client
from dojo.eligibility import get_family_payment_eligibility
from dojo.errors import (
    AlreadyRegisteredError,
    DojoError,
    NotFoundError,
    ProviderNotConfiguredError,
    ValidationError,
    WaiverRequiredError,
    WebhookSignatureError,
)
from dojo.families import format_phone, parse_student_name
from dojo.log import configure_logging
from dojo.money import format_money, to_cents
from dojo.providers import SquarePaymentProvider, get_payment_provider
from dojo.webhook_events import list_webhook_events
from dojo.webhooks import handle_payment_webhook

configure_logging(config.LOG_FILE)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.secret_key = config.FLASK_SECRET_KEY

# Initialize Bcrypt and LoginManager
bcrypt = Bcrypt(app)
login_manager = LoginManager(app)
login_manager.login_view = 'login'

supabase = LocalProxy(get_client)

STAFF_ROLES = ['admin', 'instructor']


# User class for Flask-Login
class User(UserMixin):
    def __init__(self, user_id, email, role, family_id=None):
        self.id = user_id
        self.email = email
        self.role = role
        self.family_id = family_id


def _user_from_row(row):
    return User(row['id'], row['email'], row['role'], row.get('family_id'))


@login_manager.user_loader
def load_user(user_id):
    response = supabase.table('users').select('*').eq('id', user_id).execute()
    if response.data:
        return _user_from_row(response.data[0])
    return None


app.jinja_env.filters['format_phone'] = format_phone
app.jinja_env.filters['format_money'] = format_money


def home_for(user):
    return url_for('family_portal') if user.role == 'family' else url_for('students')


def json_error(e, status=None):
    """Translate a service error into a JSON response."""
    body = {'success': False, 'error': str(e)}
    if isinstance(e, ValidationError):
        body['field_errors'] = e.field_errors
        status = status or 400
    elif isinstance(e, WaiverRequiredError):
        body['missing_waivers'] = e.missing_waivers
        status = status or 400
    elif isinstance(e, AlreadyRegisteredError):
        body['student_ids'] = e.student_ids
        status = status or 400
    elif isinstance(e, NotFoundError):
        status = status or 404
    return jsonify(body), status or 500


def family_only():
    """Return an error response unless the current user belongs to a family."""
    if current_user.role != 'family' or not current_user.family_id:
        return jsonify({'success': False, 'error': 'Access denied: Family accounts only'}), 403
    return None


# Login route
@app.route('/login', methods=['GET', 'POST'])
def login():
    if current_user.is_authenticated:
        return redirect(home_for(current_user))
    if request.method == 'POST':
        email = (request.form.get('email') or '').strip().lower()
        password = request.form.get('password') or ''
        response = supabase.table('users').select('*').eq('email', email).execute()
        if response.data and bcrypt.check_password_hash(response.data[0]['password_hash'], password):
            user = _user_from_row(response.data[0])
            login_user(user)
            logger.info(f"User {user.id} logged in")
            flash('Logged in successfully', 'success')
            return redirect(request.args.get('next') or home_for(user))
        flash('Invalid email or password', 'danger')
    return render_template('login.html')


# Logout route
@app.route('/logout')
@login_required
def logout():
    logout_user()
    flash('Logged out successfully', 'success')
    return redirect(url_for('login'))


# Students route
@app.route('/', methods=['GET'])
@app.route('/students', methods=['GET'])
@login_required
def students():
    if current_user.role == 'family':
        return redirect(url_for('family_portal'))
    try:
        family_list = families.list_families(supabase)
        family_map = {f['id']: f for f in family_list}
        processed_students = []
        for student in families.list_students(supabase):
            student_copy = student.copy()
            student_copy['family'] = family_map.get(student.get('family_id'))
            student_copy['age'] = families.calculate_age(student.get('birth_date'))
            processed_students.append(student_copy)
        return render_template('index.html',
                               active_tab='students',
                               students=processed_students,
                               families=family_list,
                               user_role=current_user.role)
    except Exception as e:
        flash(f"Error fetching students: {str(e)}", 'danger')
        logger.error(f"Error fetching students: {str(e)}")
        return render_template('index.html', active_tab='students', students=[], families=[], user_role=current_user.role)


# Add student route
@app.route('/add_student', methods=['POST'])
@login_required
def add_student():
    if current_user.role not in STAFF_ROLES:
        flash('Access denied: Insufficient permissions', 'danger')
        return redirect(url_for('students'))
    try:
        student = families.create_student(supabase, request.form.to_dict())
        flash(f"Student {student['first_name']} {student['last_name']} added successfully", 'success')
    except ValidationError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error adding student: {str(e)}", 'danger')
        logger.error(f"Error adding student: {str(e)}")
    return redirect(url_for('students'))


# Edit student route
@app.route('/edit_student', methods=['POST'])
@login_required
def edit_student():
    if current_user.role not in STAFF_ROLES:
        flash('Access denied: Insufficient permissions', 'danger')
        return redirect(url_for('students'))
    try:
        data = request.form.to_dict()
        student_id = data.pop('student_id', None)
        families.update_student(supabase, student_id, data)
        flash('Student updated successfully', 'success')
    except (ValidationError, NotFoundError) as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error updating student: {str(e)}", 'danger')
        logger.error(f"Error updating student: {str(e)}")
    return redirect(url_for('students'))


# Delete student route
@app.route('/delete_student/<student_id>', methods=['POST'])
@login_required
def delete_student(student_id):
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('students'))
    try:
        families.delete_student(supabase, student_id)
        flash('Student deleted successfully', 'success')
    except Exception as e:
        flash(f"Error deleting student: {str(e)}", 'danger')
        logger.error(f"Error deleting student {student_id}: {str(e)}")
    return redirect(url_for('students'))


# Families route
@app.route('/families', methods=['GET'])
@login_required
def families_tab():
    if current_user.role not in STAFF_ROLES:
        flash('Access denied: Insufficient permissions', 'danger')
        return redirect(home_for(current_user))
    try:
        family_list = families.list_families(supabase)
        guardians = supabase.table('guardians').select('*').execute().data
        guardian_map = {}
        for guardian in guardians:
            guardian_map.setdefault(guardian['family_id'], []).append(guardian)
        processed = []
        for family in family_list:
            family_copy = family.copy()
            family_copy['guardians'] = guardian_map.get(family['id'], [])
            processed.append(family_copy)
        return render_template('index.html', active_tab='families', families=processed, user_role=current_user.role)
    except Exception as e:
        flash(f"Error fetching families: {str(e)}", 'danger')
        logger.error(f"Error fetching families: {str(e)}")
        return render_template('index.html', active_tab='families', families=[], user_role=current_user.role)


@app.route('/families/<family_id>', methods=['GET'])
@login_required
def family_detail(family_id):
    if current_user.role not in STAFF_ROLES:
        flash('Access denied: Insufficient permissions', 'danger')
        return redirect(home_for(current_user))
    try:
        detail = families.get_family_detail(supabase, family_id)
        return render_template('index.html', active_tab='family_detail', detail=detail,
                               payments=payments.get_family_payments(supabase, family_id),
                               waiver_status=waivers.get_family_registration_waiver_status(supabase, family_id),
                               user_role=current_user.role)
    except NotFoundError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error fetching family: {str(e)}", 'danger')
        logger.error(f"Error fetching family {family_id}: {str(e)}")
    return redirect(url_for('families_tab'))


@app.route('/add_family', methods=['POST'])
@login_required
def add_family():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('families_tab'))
    try:
        family = families.create_family(supabase, request.form.to_dict())
        if request.form.get('guardian_first_name'):
            families.create_guardian(supabase, {
                'family_id': family['id'],
                'first_name': request.form.get('guardian_first_name'),
                'last_name': request.form.get('guardian_last_name') or family['name'],
                'relationship': request.form.get('guardian_relationship') or None,
                'email': request.form.get('email'),
                'cell_phone': request.form.get('primary_phone'),
            })
        flash('Family added successfully', 'success')
    except ValidationError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error adding family: {str(e)}", 'danger')
        logger.error(f"Error adding family: {str(e)}")
    return redirect(url_for('families_tab'))


@app.route('/edit_family', methods=['POST'])
@login_required
def edit_family():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('families_tab'))
    try:
        data = request.form.to_dict()
        family_id = data.pop('family_id', None)
        families.update_family(supabase, family_id, data)
        flash('Family updated successfully', 'success')
    except (ValidationError, NotFoundError) as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error updating family: {str(e)}", 'danger')
        logger.error(f"Error updating family: {str(e)}")
    return redirect(url_for('families_tab'))


@app.route('/delete_family/<family_id>', methods=['POST'])
@login_required
def delete_family(family_id):
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('families_tab'))
    try:
        families.delete_family(supabase, family_id)
        flash('Family deleted successfully', 'success')
    except ValidationError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error deleting family: {str(e)}", 'danger')
        logger.error(f"Error deleting family: {str(e)}")
    return redirect(url_for('families_tab'))


@app.route('/add_guardian', methods=['POST'])
@login_required
def add_guardian():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('families_tab'))
    try:
        families.create_guardian(supabase, request.form.to_dict())
        flash('Guardian added successfully', 'success')
    except ValidationError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error adding guardian: {str(e)}", 'danger')
        logger.error(f"Error adding guardian: {str(e)}")
    return redirect(url_for('families_tab'))


@app.route('/delete_guardian/<guardian_id>', methods=['POST'])
@login_required
def delete_guardian(guardian_id):
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('families_tab'))
    try:
        families.delete_guardian(supabase, guardian_id)
        flash('Guardian deleted successfully', 'success')
    except Exception as e:
        flash(f"Error deleting guardian: {str(e)}", 'danger')
        logger.error(f"Error deleting guardian: {str(e)}")
    return redirect(url_for('families_tab'))


def _find_or_create_family(name, cache):
    key = name.strip().lower()
    if key not in cache:
        family = families.create_family(supabase, {'name': name.strip()})
        cache[key] = family['id']
    return cache[key]


# Import CSV route
@app.route('/import_from_csv', methods=['POST'])
@login_required
def import_from_csv():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(request.referrer or url_for('students'))
    try:
        if 'file' not in request.files:
            flash('No file uploaded', 'danger')
            return redirect(request.referrer or url_for('students'))
        file = request.files['file']
        if not file.filename.endswith('.csv'):
            flash('Please upload a CSV file', 'danger')
            return redirect(request.referrer or url_for('students'))

        file_content = file.read()
        if len(file_content) == 0:
            flash('Uploaded file is empty', 'danger')
            return redirect(request.referrer or url_for('students'))

        df = pd.read_csv(io.BytesIO(file_content), dtype=str)
        df.columns = [col.strip() for col in df.columns]
        logger.info(f"CSV import: {len(df)} rows, headers {list(df.columns)}")

        student_mappings = {
            'first_name': ['First Name', 'FirstName', 'Given Name', 'StudentName', 'Student Name'],
            'last_name': ['Last Name', 'LastName', 'Surname'],
            'birth_date': ['Birth Date', 'Birthdate', 'DOB', 'Date of Birth'],
            'belt_rank': ['Belt', 'Belt Rank', 'Rank'],
            'gender': ['Gender'],
            'email': ['Email', 'E-mail'],
            'cell_phone': ['Phone', 'Cell', 'Cell Phone', 'Phone Number'],
            'allergies': ['Allergies', 'Allergy'],
            'medications': ['Medications', 'Medicines', 'Medication'],
            'special_needs': ['Special Needs', 'Medical Conditions', 'Notes'],
            'family': ['Family', 'Family Name', 'Parent', 'Household'],
        }
        family_mappings = {
            'name': ['Family', 'Family Name', 'Name', 'Household'],
            'email': ['Email', 'E-mail'],
            'primary_phone': ['Phone', 'Phone Number', 'Primary Phone'],
            'address': ['Address', 'Street'],
            'city': ['City'],
            'province': ['Province', 'State'],
            'postal_code': ['Postal Code', 'Zip'],
        }

        lowered = {c.lower(): c for c in df.columns}
        if any(h.lower() in lowered for h in student_mappings['first_name']):
            table, mappings = 'students', student_mappings
        elif any(h.lower() in lowered for h in family_mappings['name']):
            table, mappings = 'families', family_mappings
        else:
            flash('Invalid CSV: No recognizable student or family name column', 'danger')
            return redirect(request.referrer or url_for('students'))

        column_map = {}
        for field, possible_headers in mappings.items():
            for header in possible_headers:
                if header.lower() in lowered:
                    column_map[field] = lowered[header.lower()]
                    break

        required = ['first_name', 'family'] if table == 'students' else ['name']
        missing = [r for r in required if r not in column_map]
        if missing:
            flash(f'Missing required columns: {", ".join(missing)}', 'danger')
            return redirect(request.referrer or url_for('students'))

        family_cache = {f['name'].strip().lower(): f['id'] for f in families.list_families(supabase)}
        imported = 0
        skipped = 0
        for _, row in df.iterrows():
            data = {}
            for field, csv_column in column_map.items():
                value = row[csv_column] if pd.notna(row[csv_column]) else None
                data[field] = value.strip() if isinstance(value, str) else value
            try:
                if table == 'students':
                    if column_map['first_name'] in ('StudentName', 'Student Name') or 'last_name' not in column_map:
                        data['first_name'], data['last_name'] = parse_student_name(data.get('first_name'))
                    if not data.get('first_name') or not data.get('last_name') or not data.get('family'):
                        logger.warning(f"Skipping student row {_ + 1}: missing name or family")
                        skipped += 1
                        continue
                    data['family_id'] = _find_or_create_family(data.pop('family'), family_cache)
                    families.create_student(supabase, data)
                else:
                    if not data.get('name'):
                        skipped += 1
                        continue
                    if data['name'].strip().lower() in family_cache:
                        logger.warning(f"Skipping existing family: {data['name']}")
                        skipped += 1
                        continue
                    family = families.create_family(supabase, data)
                    family_cache[family['name'].lower()] = family['id']
                imported += 1
            except ValidationError as e:
                logger.warning(f"Skipping row {_ + 1}: {str(e)}")
                skipped += 1

        flash(f"Successfully imported {imported} records into {table} ({skipped} skipped)", 'success')
        return redirect(request.referrer or url_for('students'))
    except Exception as e:
        flash(f"Error importing CSV: {str(e)}", 'danger')
        logger.error(f"Error importing CSV: {str(e)}")
        return redirect(request.referrer or url_for('students'))


# Programs route
@app.route('/programs', methods=['GET'])
@login_required
def programs():
    if current_user.role not in STAFF_ROLES:
        flash('Access denied: Insufficient permissions', 'danger')
        return redirect(home_for(current_user))
    try:
        links = supabase.table('program_waivers').select('*').execute().data
        link_map = {}
        for link in links:
            link_map.setdefault(link['program_id'], []).append(link)
        processed = []
        for program in class_service.list_programs(supabase):
            program_copy = program.copy()
            program_copy['waiver_links'] = link_map.get(program['id'], [])
            processed.append(program_copy)
        return render_template('index.html', active_tab='programs', programs=processed,
                               waivers=waivers.list_waivers(supabase), user_role=current_user.role)
    except Exception as e:
        flash(f"Error fetching programs: {str(e)}", 'danger')
        logger.error(f"Error fetching programs: {str(e)}")
        return render_template('index.html', active_tab='programs', programs=[], waivers=[], user_role=current_user.role)


@app.route('/add_program', methods=['POST'])
@login_required
def add_program():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('programs'))
    try:
        class_service.create_program(supabase, request.form.to_dict())
        flash('Program added successfully', 'success')
    except ValidationError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error adding program: {str(e)}", 'danger')
        logger.error(f"Error adding program: {str(e)}")
    return redirect(url_for('programs'))


@app.route('/edit_program', methods=['POST'])
@login_required
def edit_program():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('programs'))
    try:
        data = request.form.to_dict()
        program_id = data.pop('program_id', None)
        data['is_active'] = request.form.get('is_active') == 'on'
        class_service.update_program(supabase, program_id, data)
        waiver_ids = request.form.getlist('waiver_ids')
        trial_ids = set(request.form.getlist('trial_waiver_ids'))
        waivers.set_program_waivers(supabase, program_id, [{
            'waiver_id': waiver_id,
            'required_for_trial': waiver_id in trial_ids,
            'required_for_full_enrollment': True,
        } for waiver_id in waiver_ids])
        flash('Program updated successfully', 'success')
    except (ValidationError, NotFoundError) as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error updating program: {str(e)}", 'danger')
        logger.error(f"Error updating program: {str(e)}")
    return redirect(url_for('programs'))


@app.route('/delete_program/<program_id>', methods=['POST'])
@login_required
def delete_program(program_id):
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('programs'))
    try:
        class_service.delete_program(supabase, program_id)
        flash('Program deleted successfully', 'success')
    except ValidationError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error deleting program: {str(e)}", 'danger')
        logger.error(f"Error deleting program {program_id}: {str(e)}")
    return redirect(url_for('programs'))


# Classes route
@app.route('/classes', methods=['GET'])
@login_required
def classes():
    if current_user.role not in STAFF_ROLES:
        flash('Access denied: Insufficient permissions', 'danger')
        return redirect(home_for(current_user))
    try:
        class_list = class_service.list_classes(supabase)
        class_summary = [{'id': c['id'], 'name': c['name'], 'enrolled': c['enrolled_count']} for c in class_list]
        logger.debug(f"Classes tab data: {class_summary}")
        instructors = supabase.table('users').select('id, first_name, last_name').eq('role', 'instructor').execute().data
        return render_template('index.html',
                               active_tab='classes',
                               classes=class_list,
                               programs=class_service.list_programs(supabase, active_only=True),
                               instructors=instructors,
                               students=families.list_students(supabase),
                               weekdays=class_service.WEEKDAYS,
                               user_role=current_user.role)
    except Exception as e:
        flash(f"Error fetching classes: {str(e)}", 'danger')
        logger.error(f"Error fetching classes: {str(e)}")
        return render_template('index.html', active_tab='classes', classes=[], programs=[], instructors=[],
                               students=[], weekdays=class_service.WEEKDAYS, user_role=current_user.role)


def _schedule_from_form():
    days = request.form.getlist('days')
    times = request.form.getlist('start_times')
    if request.form.get('schedule'):
        return request.form.get('schedule')
    return [[day, start] for day, start in zip(days, times) if day and start]


@app.route('/add_class', methods=['POST'])
@login_required
def add_class():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('classes'))
    try:
        data = request.form.to_dict()
        data['schedule_pairs'] = _schedule_from_form()
        cls = class_service.create_class(supabase, data)
        program = class_service.get_program(supabase, cls['program_id'])
        for day, start in cls['schedule_pairs']:
            conflicts = class_service.check_schedule_conflicts(
                supabase, cls.get('instructor_id'), day, start,
                program.get('duration_minutes') or class_service.DEFAULT_DURATION_MINUTES, cls['id'])
            for conflict in conflicts:
                flash(f"Warning: overlaps {conflict['class_name']} on {conflict['day']} at {conflict['start_time']}",
                      'warning')
        flash('Class added successfully', 'success')
    except (ValidationError, NotFoundError) as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error adding class: {str(e)}", 'danger')
        logger.error(f"Error adding class: {str(e)}")
    return redirect(url_for('classes'))


@app.route('/edit_class', methods=['POST'])
@login_required
def edit_class():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('classes'))
    try:
        data = request.form.to_dict()
        class_id = data.pop('class_id', None)
        schedule = _schedule_from_form()
        if schedule:
            data['schedule_pairs'] = schedule
        data.pop('schedule', None)
        class_service.update_class(supabase, class_id, data)
        flash('Class updated successfully', 'success')
    except (ValidationError, NotFoundError) as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error updating class: {str(e)}", 'danger')
        logger.error(f"Error updating class: {str(e)}")
    return redirect(url_for('classes'))


# Delete class route
@app.route('/delete_class/<class_id>', methods=['POST'])
@login_required
def delete_class(class_id):
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('classes'))
    try:
        class_service.delete_class(supabase, class_id)
        flash('Class deleted successfully', 'success')
    except ValidationError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error deleting class: {str(e)}", 'danger')
        logger.error(f"Error deleting class {class_id}: {str(e)}")
    return redirect(url_for('classes'))


# Enroll students in class route
@app.route('/enroll_students', methods=['POST'])
@login_required
def enroll_students():
    if current_user.role not in STAFF_ROLES:
        flash('Access denied: Admins or instructors only', 'danger')
        return redirect(url_for('classes'))
    class_id = request.form.get('class_id')
    student_ids = [s for s in request.form.getlist('student_ids') if s]
    status = request.form.get('status') or None
    enrolled = 0
    for student_id in student_ids:
        try:
            enrollment = class_service.enroll_student(supabase, student_id, class_id, status)
            enrolled += 1
            if enrollment['status'] in ('waitlist', 'pending_waivers'):
                flash(f"Student {student_id} added as {enrollment['status'].replace('_', ' ')}", 'warning')
        except (ValidationError, NotFoundError) as e:
            flash(str(e), 'danger')
        except Exception as e:
            flash(f"Error enrolling student: {str(e)}", 'danger')
            logger.error(f"Error enrolling student {student_id} in class {class_id}: {str(e)}")
    logger.info(f"Enrolled {enrolled} students in class {class_id}")
    if enrolled:
        flash(f"{enrolled} students enrolled", 'success')
    return redirect(url_for('classes'))


@app.route('/drop_enrollment/<enrollment_id>', methods=['POST'])
@login_required
def drop_enrollment(enrollment_id):
    if current_user.role not in STAFF_ROLES:
        flash('Access denied: Admins or instructors only', 'danger')
        return redirect(url_for('classes'))
    try:
        class_service.drop_enrollment(supabase, enrollment_id)
        flash('Enrollment dropped', 'success')
    except Exception as e:
        flash(f"Error dropping enrollment: {str(e)}", 'danger')
        logger.error(f"Error dropping enrollment {enrollment_id}: {str(e)}")
    return redirect(url_for('classes'))


# Sessions route
@app.route('/sessions', methods=['GET'])
@login_required
def sessions():
    if current_user.role not in STAFF_ROLES:
        flash('Access denied: Insufficient permissions', 'danger')
        return redirect(home_for(current_user))
    try:
        class_id = request.args.get('class_id') or None
        session_list = class_service.list_sessions(supabase, class_id, request.args.get('start') or None,
                                                   request.args.get('end') or None)
        return render_template('index.html', active_tab='sessions', sessions=session_list,
                               classes=class_service.list_classes(supabase), selected_class_id=class_id,
                               user_role=current_user.role)
    except Exception as e:
        flash(f"Error fetching sessions: {str(e)}", 'danger')
        logger.error(f"Error fetching sessions: {str(e)}")
        return render_template('index.html', active_tab='sessions', sessions=[], classes=[], user_role=current_user.role)


@app.route('/generate_sessions', methods=['POST'])
@login_required
def generate_sessions():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('sessions'))
    try:
        exclude = [d.strip() for d in (request.form.get('exclude_dates') or '').split(',') if d.strip()]
        created = class_service.generate_class_sessions(supabase, request.form.get('class_id'),
                                                        request.form.get('start_date'), request.form.get('end_date'),
                                                        exclude)
        flash(f"Generated {created} sessions", 'success')
    except (ValidationError, NotFoundError) as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error generating sessions: {str(e)}", 'danger')
        logger.error(f"Error generating sessions: {str(e)}")
    return redirect(url_for('sessions', class_id=request.form.get('class_id')))


@app.route('/add_session', methods=['POST'])
@login_required
def add_session():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('sessions'))
    try:
        class_service.create_session(supabase, request.form.get('class_id'), request.form.get('session_date'),
                                     request.form.get('start_time'), request.form.get('end_time'),
                                     request.form.get('instructor_id') or None)
        flash('Session added successfully', 'success')
    except (ValidationError, NotFoundError) as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error adding session: {str(e)}", 'danger')
        logger.error(f"Error adding session: {str(e)}")
    return redirect(url_for('sessions'))


@app.route('/update_session_status/<session_id>', methods=['POST'])
@login_required
def update_session_status(session_id):
    if current_user.role not in STAFF_ROLES:
        flash('Access denied: Admins or instructors only', 'danger')
        return redirect(url_for('sessions'))
    try:
        class_service.update_session_status(supabase, session_id, request.form.get('status'))
        flash('Session updated', 'success')
    except (ValidationError, NotFoundError) as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error updating session: {str(e)}", 'danger')
        logger.error(f"Error updating session {session_id}: {str(e)}")
    return redirect(url_for('sessions'))


@app.route('/delete_session/<session_id>', methods=['POST'])
@login_required
def delete_session(session_id):
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('sessions'))
    try:
        class_service.delete_session(supabase, session_id)
        flash('Session deleted', 'success')
    except Exception as e:
        flash(f"Error deleting session: {str(e)}", 'danger')
        logger.error(f"Error deleting session {session_id}: {str(e)}")
    return redirect(url_for('sessions'))


@app.route('/record_attendance', methods=['POST'])
@login_required
def record_attendance():
    if current_user.role not in STAFF_ROLES:
        flash('Access denied: Admins or instructors only', 'danger')
        return redirect(url_for('sessions'))
    session_id = request.form.get('session_id')
    try:
        records = [{
            'student_id': student_id,
            'status': request.form.get(f"status_{student_id}") or 'present',
            'notes': request.form.get(f"notes_{student_id}"),
        } for student_id in request.form.getlist('student_ids') if student_id]
        count = class_service.record_session_attendance(supabase, session_id, records)
        flash(f"Attendance recorded for {count} students", 'success')
    except ValidationError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error recording attendance: {str(e)}", 'danger')
        logger.error(f"Error recording attendance for session {session_id}: {str(e)}")
    return redirect(url_for('sessions'))


# Events route
@app.route('/events', methods=['GET'])
@login_required
def events_tab():
    try:
        if current_user.role == 'family':
            event_list = events.get_upcoming_events(supabase)
        else:
            event_list = events.list_events(supabase)
        return render_template('index.html', active_tab='events', events=event_list,
                               waivers=waivers.list_waivers(supabase), user_role=current_user.role)
    except Exception as e:
        flash(f"Error fetching events: {str(e)}", 'danger')
        logger.error(f"Error fetching events: {str(e)}")
        return render_template('index.html', active_tab='events', events=[], waivers=[], user_role=current_user.role)


@app.route('/add_event', methods=['POST'])
@login_required
def add_event():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('events_tab'))
    try:
        data = request.form.to_dict()
        data['is_public'] = request.form.get('is_public') == 'on'
        event = events.create_event(supabase, data)
        events.set_event_waivers(supabase, event['id'], request.form.getlist('waiver_ids'))
        flash('Event added successfully', 'success')
    except ValidationError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error adding event: {str(e)}", 'danger')
        logger.error(f"Error adding event: {str(e)}")
    return redirect(url_for('events_tab'))


@app.route('/edit_event', methods=['POST'])
@login_required
def edit_event():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('events_tab'))
    try:
        data = request.form.to_dict()
        event_id = data.pop('event_id', None)
        data.pop('waiver_ids', None)
        data['is_public'] = request.form.get('is_public') == 'on'
        events.update_event(supabase, event_id, data)
        events.set_event_waivers(supabase, event_id, request.form.getlist('waiver_ids'))
        flash('Event updated successfully', 'success')
    except (ValidationError, NotFoundError) as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error updating event: {str(e)}", 'danger')
        logger.error(f"Error updating event: {str(e)}")
    return redirect(url_for('events_tab'))


@app.route('/delete_event/<event_id>', methods=['POST'])
@login_required
def delete_event(event_id):
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('events_tab'))
    try:
        events.delete_event(supabase, event_id)
        flash('Event deleted successfully', 'success')
    except ValidationError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error deleting event: {str(e)}", 'danger')
        logger.error(f"Error deleting event {event_id}: {str(e)}")
    return redirect(url_for('events_tab'))


@app.route('/events/<event_id>/register', methods=['POST'])
@login_required
def register_event(event_id):
    denied = family_only()
    if denied:
        return denied
    try:
        body = request.get_json(silent=True) or {}
        result = events.register_for_event(supabase, event_id, current_user.id, current_user.family_id,
                                           body.get('participants') or [])
        return jsonify(dict(result, success=True))
    except DojoError as e:
        return json_error(e)
    except Exception as e:
        logger.error(f"Error registering for event {event_id}: {str(e)}")
        return jsonify({'success': False, 'error': 'Registration failed'}), 500


# Waivers route
@app.route('/waivers', methods=['GET'])
@login_required
def waivers_tab():
    try:
        waiver_list = waivers.list_waivers(supabase)
        status = None
        if current_user.role == 'family' and current_user.family_id:
            status = waivers.get_family_registration_waiver_status(supabase, current_user.family_id)
        return render_template('index.html', active_tab='waivers', waivers=waiver_list, waiver_status=status,
                               user_role=current_user.role)
    except Exception as e:
        flash(f"Error fetching waivers: {str(e)}", 'danger')
        logger.error(f"Error fetching waivers: {str(e)}")
        return render_template('index.html', active_tab='waivers', waivers=[], user_role=current_user.role)


@app.route('/add_waiver', methods=['POST'])
@login_required
def add_waiver():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('waivers_tab'))
    try:
        data = request.form.to_dict()
        data['required'] = request.form.get('required') == 'on'
        data['required_for_registration'] = request.form.get('required_for_registration') == 'on'
        waivers.create_waiver(supabase, data)
        flash('Waiver added successfully', 'success')
    except ValidationError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error adding waiver: {str(e)}", 'danger')
        logger.error(f"Error adding waiver: {str(e)}")
    return redirect(url_for('waivers_tab'))


@app.route('/delete_waiver/<waiver_id>', methods=['POST'])
@login_required
def delete_waiver(waiver_id):
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('waivers_tab'))
    try:
        waivers.delete_waiver(supabase, waiver_id)
        flash('Waiver deleted successfully', 'success')
    except ValidationError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error deleting waiver: {str(e)}", 'danger')
        logger.error(f"Error deleting waiver {waiver_id}: {str(e)}")
    return redirect(url_for('waivers_tab'))


@app.route('/waivers/<waiver_id>/sign', methods=['POST'])
@login_required
def sign_waiver(waiver_id):
    denied = family_only()
    if denied:
        return denied
    try:
        body = request.get_json(silent=True) or request.form.to_dict()
        student_ids = body.get('student_ids') or []
        signature = waivers.sign_waiver(supabase, waiver_id, current_user.id, body.get('signature_data'), student_ids)
        return jsonify({'success': True, 'signature_id': signature['id'], 'signed_at': signature['signed_at']})
    except DojoError as e:
        return json_error(e)
    except Exception as e:
        logger.error(f"Error signing waiver {waiver_id}: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to sign waiver'}), 500


# Store routes
@app.route('/products', methods=['GET'])
@login_required
def products():
    if current_user.role not in STAFF_ROLES:
        flash('Access denied: Insufficient permissions', 'danger')
        return redirect(home_for(current_user))
    try:
        return render_template('index.html', active_tab='products', products=store.list_products(supabase),
                               orders=store.list_orders(supabase), user_role=current_user.role)
    except Exception as e:
        flash(f"Error fetching products: {str(e)}", 'danger')
        logger.error(f"Error fetching products: {str(e)}")
        return render_template('index.html', active_tab='products', products=[], orders=[], user_role=current_user.role)


@app.route('/add_product', methods=['POST'])
@login_required
def add_product():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('products'))
    try:
        product = store.create_product(supabase, request.form.to_dict())
        if request.form.get('price'):
            store.create_variant(supabase, product['id'], {
                'size': request.form.get('size') or None,
                'price': request.form.get('price'),
                'stock_quantity': request.form.get('stock_quantity') or 0,
            })
        flash('Product added successfully', 'success')
    except ValidationError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error adding product: {str(e)}", 'danger')
        logger.error(f"Error adding product: {str(e)}")
    return redirect(url_for('products'))


@app.route('/add_variant', methods=['POST'])
@login_required
def add_variant():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('products'))
    try:
        data = request.form.to_dict()
        store.create_variant(supabase, data.pop('product_id', None), data)
        flash('Variant added successfully', 'success')
    except ValidationError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error adding variant: {str(e)}", 'danger')
        logger.error(f"Error adding variant: {str(e)}")
    return redirect(url_for('products'))


@app.route('/edit_variant', methods=['POST'])
@login_required
def edit_variant():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('products'))
    try:
        data = request.form.to_dict()
        variant_id = data.pop('variant_id', None)
        data['is_active'] = request.form.get('is_active') == 'on'
        store.update_variant(supabase, variant_id, data)
        flash('Variant updated successfully', 'success')
    except (ValidationError, NotFoundError) as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error updating variant: {str(e)}", 'danger')
        logger.error(f"Error updating variant: {str(e)}")
    return redirect(url_for('products'))


@app.route('/delete_product/<product_id>', methods=['POST'])
@login_required
def delete_product(product_id):
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('products'))
    try:
        store.delete_product(supabase, product_id)
        flash('Product deactivated', 'success')
    except Exception as e:
        flash(f"Error deleting product: {str(e)}", 'danger')
        logger.error(f"Error deleting product {product_id}: {str(e)}")
    return redirect(url_for('products'))


@app.route('/orders/<order_id>/picked_up', methods=['POST'])
@login_required
def order_picked_up(order_id):
    if current_user.role not in STAFF_ROLES:
        flash('Access denied: Admins or instructors only', 'danger')
        return redirect(url_for('products'))
    try:
        store.mark_order_picked_up(supabase, order_id)
        flash('Order marked as picked up', 'success')
    except (ValidationError, NotFoundError) as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error updating order: {str(e)}", 'danger')
        logger.error(f"Error updating order {order_id}: {str(e)}")
    return redirect(url_for('products'))


@app.route('/family/store/purchase', methods=['POST'])
@login_required
def store_purchase():
    denied = family_only()
    if denied:
        return denied
    try:
        body = request.get_json(silent=True) or {}
        result = store.create_store_order(supabase, current_user.family_id, body.get('student_id'),
                                          body.get('items') or [])
        return jsonify(dict(result, success=True))
    except DojoError as e:
        return json_error(e)
    except Exception as e:
        logger.error(f"Error creating store order: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to create order'}), 500


# Payments admin routes
@app.route('/payments', methods=['GET'])
@login_required
def payments_tab():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(home_for(current_user))
    try:
        payment_list = payments.list_payments(supabase, request.args.get('status') or None)
        family_map = {f['id']: f for f in families.list_families(supabase)}
        for payment in payment_list:
            payment['family'] = family_map.get(payment.get('family_id'))
        return render_template('index.html', active_tab='payments', payments=payment_list,
                               user_role=current_user.role)
    except Exception as e:
        flash(f"Error fetching payments: {str(e)}", 'danger')
        logger.error(f"Error fetching payments: {str(e)}")
        return render_template('index.html', active_tab='payments', payments=[], user_role=current_user.role)


@app.route('/tax_rates', methods=['GET'])
@login_required
def tax_rates():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(home_for(current_user))
    try:
        rates = supabase.table('tax_rates').select('*').order('name').execute().data
        return render_template('index.html', active_tab='tax_rates', tax_rates=rates, user_role=current_user.role)
    except Exception as e:
        flash(f"Error fetching tax rates: {str(e)}", 'danger')
        logger.error(f"Error fetching tax rates: {str(e)}")
        return render_template('index.html', active_tab='tax_rates', tax_rates=[], user_role=current_user.role)


@app.route('/add_tax_rate', methods=['POST'])
@login_required
def add_tax_rate():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('tax_rates'))
    try:
        name = (request.form.get('name') or '').strip().upper()
        percent = float(request.form.get('rate_percent') or 0)
        if not name or percent <= 0 or percent >= 100:
            flash('Name and a rate between 0 and 100 percent are required', 'danger')
            return redirect(url_for('tax_rates'))
        supabase.table('tax_rates').insert({
            'id': str(uuid.uuid4()),
            'name': name,
            'rate': round(percent / 100, 6),
            'region': request.form.get('region') or None,
            'description': request.form.get('description') or None,
            'is_active': True,
        }).execute()
        logger.info(f"Added tax rate: {name} {percent}%")
        flash('Tax rate added successfully', 'success')
    except ValueError:
        flash('Rate must be a number', 'danger')
    except Exception as e:
        flash(f"Error adding tax rate: {str(e)}", 'danger')
        logger.error(f"Error adding tax rate: {str(e)}")
    return redirect(url_for('tax_rates'))


@app.route('/toggle_tax_rate/<tax_rate_id>', methods=['POST'])
@login_required
def toggle_tax_rate(tax_rate_id):
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('tax_rates'))
    try:
        supabase.table('tax_rates').update({'is_active': request.form.get('is_active') == 'on'}) \
            .eq('id', tax_rate_id).execute()
        flash('Tax rate updated', 'success')
    except Exception as e:
        flash(f"Error updating tax rate: {str(e)}", 'danger')
        logger.error(f"Error updating tax rate {tax_rate_id}: {str(e)}")
    return redirect(url_for('tax_rates'))


@app.route('/discount_codes', methods=['GET'])
@login_required
def discount_codes():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(home_for(current_user))
    try:
        return render_template('index.html', active_tab='discount_codes',
                               discount_codes=discounts.list_discount_codes(supabase),
                               families=families.list_families(supabase),
                               applicable_types=discounts.APPLICABLE_TYPES,
                               user_role=current_user.role)
    except Exception as e:
        flash(f"Error fetching discount codes: {str(e)}", 'danger')
        logger.error(f"Error fetching discount codes: {str(e)}")
        return render_template('index.html', active_tab='discount_codes', discount_codes=[], families=[],
                               user_role=current_user.role)


@app.route('/add_discount_code', methods=['POST'])
@login_required
def add_discount_code():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('discount_codes'))
    try:
        data = request.form.to_dict()
        data['applicable_to'] = request.form.getlist('applicable_to')
        discounts.create_discount_code(supabase, data)
        flash('Discount code added successfully', 'success')
    except ValidationError as e:
        flash(f"{str(e)}: {', '.join(f'{k} {v}' for k, v in e.field_errors.items())}", 'danger')
    except Exception as e:
        flash(f"Error adding discount code: {str(e)}", 'danger')
        logger.error(f"Error adding discount code: {str(e)}")
    return redirect(url_for('discount_codes'))


@app.route('/toggle_discount_code/<discount_code_id>', methods=['POST'])
@login_required
def toggle_discount_code(discount_code_id):
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('discount_codes'))
    try:
        discounts.set_discount_code_active(supabase, discount_code_id, request.form.get('is_active') == 'on')
        flash('Discount code updated', 'success')
    except Exception as e:
        flash(f"Error updating discount code: {str(e)}", 'danger')
        logger.error(f"Error updating discount code {discount_code_id}: {str(e)}")
    return redirect(url_for('discount_codes'))


@app.route('/automatic_discounts', methods=['GET'])
@login_required
def automatic_discounts():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(home_for(current_user))
    try:
        return render_template('index.html', active_tab='automatic_discounts',
                               discount_templates=auto_discounts.list_discount_templates(supabase),
                               automation_rules=auto_discounts.list_automation_rules(supabase),
                               discount_assignments=auto_discounts.list_discount_assignments(supabase),
                               event_types=auto_discounts.DISCOUNT_EVENT_TYPES,
                               programs=class_service.list_programs(supabase),
                               families=families.list_families(supabase),
                               applicable_types=discounts.APPLICABLE_TYPES,
                               user_role=current_user.role)
    except Exception as e:
        flash(f"Error fetching automatic discounts: {str(e)}", 'danger')
        logger.error(f"Error fetching automatic discounts: {str(e)}")
        return render_template('index.html', active_tab='automatic_discounts', discount_templates=[],
                               automation_rules=[], discount_assignments=[], user_role=current_user.role)


@app.route('/add_discount_template', methods=['POST'])
@login_required
def add_discount_template():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('automatic_discounts'))
    try:
        data = request.form.to_dict()
        data['applicable_to'] = request.form.getlist('applicable_to')
        auto_discounts.create_discount_template(supabase, data)
        flash('Discount template added successfully', 'success')
    except ValidationError as e:
        flash(f"{str(e)}: {', '.join(f'{k} {v}' for k, v in e.field_errors.items())}", 'danger')
    except Exception as e:
        flash(f"Error adding discount template: {str(e)}", 'danger')
        logger.error(f"Error adding discount template: {str(e)}")
    return redirect(url_for('automatic_discounts'))


@app.route('/toggle_discount_template/<template_id>', methods=['POST'])
@login_required
def toggle_discount_template(template_id):
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('automatic_discounts'))
    try:
        auto_discounts.set_discount_template_active(supabase, template_id, request.form.get('is_active') == 'on')
        flash('Discount template updated', 'success')
    except Exception as e:
        flash(f"Error updating discount template: {str(e)}", 'danger')
        logger.error(f"Error updating discount template {template_id}: {str(e)}")
    return redirect(url_for('automatic_discounts'))


@app.route('/delete_discount_template/<template_id>', methods=['POST'])
@login_required
def delete_discount_template(template_id):
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('automatic_discounts'))
    try:
        auto_discounts.delete_discount_template(supabase, template_id)
        flash('Discount template deleted', 'success')
    except ValidationError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error deleting discount template: {str(e)}", 'danger')
        logger.error(f"Error deleting discount template {template_id}: {str(e)}")
    return redirect(url_for('automatic_discounts'))


@app.route('/issue_discount_from_template/<template_id>', methods=['POST'])
@login_required
def issue_discount_from_template(template_id):
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('automatic_discounts'))
    try:
        code = auto_discounts.create_discount_from_template(
            supabase, template_id, family_id=request.form.get('family_id') or None,
            student_id=request.form.get('student_id') or None, code=request.form.get('code') or None,
            valid_until=request.form.get('valid_until') or None)
        flash(f"Discount code {code['code']} created", 'success')
    except (ValidationError, NotFoundError) as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error creating discount from template: {str(e)}", 'danger')
        logger.error(f"Error creating discount from template {template_id}: {str(e)}")
    return redirect(url_for('automatic_discounts'))


@app.route('/add_automation_rule', methods=['POST'])
@login_required
def add_automation_rule():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('automatic_discounts'))
    try:
        data = request.form.to_dict()
        data['discount_template_ids'] = request.form.getlist('discount_template_ids')
        data['applicable_programs'] = request.form.getlist('applicable_programs')
        data['conditions'] = {key: request.form.get(key) for key in ('belt_rank', 'min_family_size', 'attendance_count')}
        auto_discounts.create_automation_rule(supabase, data)
        flash('Automation rule added successfully', 'success')
    except (ValidationError, NotFoundError) as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error adding automation rule: {str(e)}", 'danger')
        logger.error(f"Error adding automation rule: {str(e)}")
    return redirect(url_for('automatic_discounts'))


@app.route('/toggle_automation_rule/<rule_id>', methods=['POST'])
@login_required
def toggle_automation_rule(rule_id):
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('automatic_discounts'))
    try:
        auto_discounts.set_automation_rule_active(supabase, rule_id, request.form.get('is_active') == 'on')
        flash('Automation rule updated', 'success')
    except Exception as e:
        flash(f"Error updating automation rule: {str(e)}", 'danger')
        logger.error(f"Error updating automation rule {rule_id}: {str(e)}")
    return redirect(url_for('automatic_discounts'))


@app.route('/delete_automation_rule/<rule_id>', methods=['POST'])
@login_required
def delete_automation_rule(rule_id):
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('automatic_discounts'))
    try:
        auto_discounts.delete_automation_rule(supabase, rule_id)
        flash('Automation rule deleted', 'success')
    except Exception as e:
        flash(f"Error deleting automation rule: {str(e)}", 'danger')
        logger.error(f"Error deleting automation rule {rule_id}: {str(e)}")
    return redirect(url_for('automatic_discounts'))


# Manually trigger events that have no hook, such as referrals or seasonal promotions
@app.route('/record_discount_event', methods=['POST'])
@login_required
def record_discount_event():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(url_for('automatic_discounts'))
    try:
        codes = auto_discounts.record_discount_event(
            supabase, request.form.get('event_type'), family_id=request.form.get('family_id') or None,
            student_id=request.form.get('student_id') or None,
            event_data={'note': request.form.get('note')} if request.form.get('note') else None)
        flash(f"Event recorded, {len(codes)} discount codes assigned", 'success')
    except ValidationError as e:
        flash(str(e), 'danger')
    except Exception as e:
        flash(f"Error recording discount event: {str(e)}", 'danger')
        logger.error(f"Error recording discount event: {str(e)}")
    return redirect(url_for('automatic_discounts'))


@app.route('/webhook_events', methods=['GET'])
@login_required
def webhook_events():
    if current_user.role != 'admin':
        flash('Access denied: Admins only', 'danger')
        return redirect(home_for(current_user))
    try:
        event_list = list_webhook_events(supabase, request.args.get('status') or None)
        return render_template('index.html', active_tab='webhook_events', webhook_events=event_list,
                               user_role=current_user.role)
    except Exception as e:
        flash(f"Error fetching webhook events: {str(e)}", 'danger')
        logger.error(f"Error fetching webhook events: {str(e)}")
        return render_template('index.html', active_tab='webhook_events', webhook_events=[],
                               user_role=current_user.role)


# Family portal
@app.route('/family', methods=['GET'])
@login_required
def family_portal():
    if current_user.role != 'family' or not current_user.family_id:
        flash('Access denied: Family accounts only', 'danger')
        return redirect(url_for('students'))
    try:
        eligibility = get_family_payment_eligibility(supabase, current_user.family_id)
        if eligibility['error']:
            flash(eligibility['error'], 'warning')
        return render_template('family.html',
                               eligibility=eligibility,
                               payment_options=payments.get_family_payment_options(supabase, current_user.family_id),
                               payments=payments.get_family_payments(supabase, current_user.family_id),
                               waiver_status=waivers.get_family_registration_waiver_status(supabase, current_user.family_id),
                               events=events.get_upcoming_events(supabase),
                               products=store.list_products(supabase, active_only=True),
                               provider=get_payment_provider().get_client_config())
    except Exception as e:
        flash(f"Error loading family page: {str(e)}", 'danger')
        logger.error(f"Error loading family page for {current_user.family_id}: {str(e)}")
        return render_template('family.html', eligibility=None, payment_options=[], payments=[],
                               waiver_status=None, events=[], products=[], provider={})


@app.route('/family/payment', methods=['POST'])
@login_required
def family_payment():
    denied = family_only()
    if denied:
        return denied
    try:
        body = request.get_json(silent=True) or {}
        student_ids = body.get('student_ids') or []
        payment_option = body.get('payment_option')
        try:
            quantity = int(body.get('quantity') or 1)
        except (TypeError, ValueError):
            raise ValidationError('Invalid payment request', {'quantity': 'Quantity must be a whole number'})
        payments.check_family_students(supabase, current_user.family_id, student_ids)
        discount_code_id = None
        discount_amount = 0
        if body.get('discount_code') and payment_option in payments.PAYMENT_OPTIONS:
            pricing = payments.resolve_program_pricing(supabase, student_ids, body.get('enrollment_id'))
            subtotal, payment_type = payments.calculate_payment_subtotal(
                payment_option, len(student_ids), quantity, pricing['monthly'], pricing['yearly'],
                pricing['individual'])
            validation = discounts.validate_discount_code(supabase, body['discount_code'], current_user.family_id,
                                                          subtotal, payment_type,
                                                          student_ids[0] if len(student_ids) == 1 else None)
            if not validation.is_valid:
                return jsonify({'success': False, 'error': validation.error_message,
                                'field_errors': {'discount_code': validation.error_message}}), 400
            discount_code_id = validation.discount_code_id
            discount_amount = validation.discount_amount_cents
        result = payments.initiate_family_payment(
            supabase, current_user.family_id, payment_option, student_ids, quantity,
            enrollment_id=body.get('enrollment_id'), discount_code_id=discount_code_id,
            discount_amount_cents=discount_amount)
        return jsonify(dict(result, success=True))
    except DojoError as e:
        return json_error(e)
    except Exception as e:
        logger.error(f"Error creating payment for family {current_user.family_id}: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to create payment'}), 500


def _family_payment(payment_id):
    payment = payments.get_payment(supabase, payment_id)
    if payment['family_id'] != current_user.family_id:
        raise NotFoundError(f"Payment {payment_id} not found")
    return payment


@app.route('/family/payment/<payment_id>/intent', methods=['POST'])
@login_required
def create_payment_intent(payment_id):
    denied = family_only()
    if denied:
        return denied
    try:
        payment = _family_payment(payment_id)
        if payment['status'] != 'pending':
            raise ValidationError(f"Payment is already {payment['status']}")
        provider = get_payment_provider()
        intent = provider.create_payment_intent(
            payment['total_amount'], config.CURRENCY, payments.build_payment_metadata(payment),
            description=f"{config.SITE_NAME} {payment['type'].replace('_', ' ')}", receipt_email=current_user.email)
        payments.attach_payment_intent(supabase, payment_id, intent.id)
        return jsonify({
            'success': True,
            'payment_intent_id': intent.id,
            'client_secret': intent.client_secret if provider.requires_client_secret() else None,
            'provider': provider.get_client_config(),
            'total_amount': payment['total_amount'],
        })
    except ProviderNotConfiguredError as e:
        logger.error(f"Payment provider not configured: {str(e)}")
        return json_error(e, 503)
    except DojoError as e:
        return json_error(e)
    except Exception as e:
        logger.error(f"Error creating payment intent for {payment_id}: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to start payment'}), 500


@app.route('/family/payment/<payment_id>/confirm', methods=['POST'])
@login_required
def confirm_square_payment(payment_id):
    denied = family_only()
    if denied:
        return denied
    try:
        payment = _family_payment(payment_id)
        body = request.get_json(silent=True) or {}
        if not body.get('source_id'):
            raise ValidationError('Card token is required', {'source_id': 'Required'})
        provider = SquarePaymentProvider()
        intent = provider.confirm_payment(supabase, payment['payment_intent_id'], body['source_id'])
        return jsonify({'success': True, 'payment_intent_id': intent.id, 'status': intent.status})
    except DojoError as e:
        return json_error(e)
    except Exception as e:
        logger.error(f"Error confirming Square payment {payment_id}: {str(e)}")
        return jsonify({'success': False, 'error': 'Failed to confirm payment'}), 500


@app.route('/api/discounts/validate', methods=['POST'])
@login_required
def validate_discount():
    denied = family_only()
    if denied:
        return denied
    try:
        body = request.get_json(silent=True) or {}
        validation = discounts.validate_discount_code(
            supabase, body.get('code'), current_user.family_id,
            to_cents(body.get('subtotal') or 0) if 'subtotal' in body else int(body.get('subtotal_cents') or 0),
            body.get('applicable_to'), body.get('student_id'))
        return jsonify({
            'is_valid': validation.is_valid,
            'discount_amount': validation.discount_amount_cents,
            'discount_code_id': validation.discount_code_id,
            'error': validation.error_message,
        }), 200 if validation.is_valid else 400
    except ValueError as e:
        return jsonify({'is_valid': False, 'error': str(e)}), 400
    except Exception as e:
        logger.error(f"Error validating discount code: {str(e)}")
        return jsonify({'is_valid': False, 'error': 'Failed to validate discount code'}), 500


# Payment provider webhooks
def _webhook(provider_name, request_url=None):
    try:
        provider = get_payment_provider(provider_name)
        result = handle_payment_webhook(supabase, provider, request.get_data(), request.headers,
                                        request_url or request.url, request.remote_addr)
    except WebhookSignatureError as e:
        logger.warning(f"[Webhook {provider_name}] Signature verification failed: {str(e)}")
        return jsonify({'received': False, 'error': str(e)}), 400
    except ProviderNotConfiguredError as e:
        logger.error(f"[Webhook {provider_name}] {str(e)}")
        return jsonify({'received': False, 'error': 'Webhook not configured'}), 500
    except ValueError as e:
        logger.warning(f"[Webhook {provider_name}] Invalid payload: {str(e)}")
        return jsonify({'received': False, 'error': 'Invalid payload'}), 400
    except APIError as e:
        logger.error(f"[Webhook {provider_name}] Database error before processing: {e.message}")
        return jsonify({'received': False, 'error': 'Webhook processing failed'}), 500
    if result.success:
        return jsonify({'received': True, 'duplicate': result.is_duplicate}), 200
    return jsonify({'received': False, 'error': result.error}), 500


@app.route('/api/webhooks/stripe', methods=['POST'])
def stripe_webhook():
    return _webhook('stripe')


@app.route('/api/webhooks/square', methods=['POST'])
def square_webhook():
    return _webhook('square', config.SQUARE_WEBHOOK_URL)


# Only reachable in local development
@app.route('/api/webhooks/mock', methods=['POST'])
def mock_webhook():
    if config.PAYMENT_PROVIDER != 'mock':
        return jsonify({'received': False, 'error': 'Not found'}), 404
    return _webhook('mock')


if __name__ == '__main__':
    app.run(debug=True)
