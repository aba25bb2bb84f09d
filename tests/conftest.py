import operator
import os
import tempfile
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

os.environ.setdefault('LOG_FILE', os.path.join(tempfile.gettempdir(), 'dojo_test_app.log'))

import pytest  # noqa: E402
from postgrest.exceptions import APIError  # noqa: E402

from dojo import db  # noqa: E402

UNIQUE_KEYS = {
    'webhook_events': ('provider', 'event_id'),
}


def _api_error(message, code='PGRST000'):
    return APIError({'message': message, 'code': code, 'hint': None, 'details': None})


def _sort_key(value):
    if value is None:
        return (1, 0)
    return (0, value)


class FakeQuery:
    """Chainable stand-in for a postgrest request builder over in-memory rows."""

    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.action = 'select'
        self.payload = None
        self.filters = []
        self.ordering = []
        self.row_limit = None
        self.count = None

    def select(self, columns='*', count=None):
        self.action = 'select'
        self.count = count
        return self

    def insert(self, payload):
        self.action = 'insert'
        self.payload = payload
        return self

    def update(self, payload):
        self.action = 'update'
        self.payload = payload
        return self

    def delete(self):
        self.action = 'delete'
        return self

    def _filter(self, predicate):
        self.filters.append(predicate)
        return self

    def eq(self, column, value):
        return self._filter(lambda row: row.get(column) == value)

    def neq(self, column, value):
        return self._filter(lambda row: row.get(column) != value)

    def in_(self, column, values):
        values = list(values)
        return self._filter(lambda row: row.get(column) in values)

    def is_(self, column, value):
        expected = None if value in (None, 'null') else value
        return self._filter(lambda row: row.get(column) is expected)

    def _compare(self, column, value, op):
        def predicate(row):
            current = row.get(column)
            if current is None:
                return False
            if isinstance(value, (int, float)) and isinstance(current, (int, float)):
                return op(current, value)
            return op(str(current), str(value))
        return self._filter(predicate)

    def gt(self, column, value):
        return self._compare(column, value, operator.gt)

    def gte(self, column, value):
        return self._compare(column, value, operator.ge)

    def lt(self, column, value):
        return self._compare(column, value, operator.lt)

    def lte(self, column, value):
        return self._compare(column, value, operator.le)

    def order(self, column, desc=False):
        self.ordering.append((column, desc))
        return self

    def limit(self, size):
        self.row_limit = size
        return self

    def _matches(self, row):
        return all(predicate(row) for predicate in self.filters)

    def execute(self):
        self.db.calls.append((self.table, self.action))
        if (self.table, self.action) in self.db.failures:
            raise _api_error(f"Simulated failure on {self.action} {self.table}")
        rows = self.db.tables.setdefault(self.table, [])

        if self.action == 'insert':
            payload = self.payload if isinstance(self.payload, list) else [self.payload]
            inserted = []
            for item in payload:
                row = dict(item)
                row.setdefault('id', str(uuid.uuid4()))
                row.setdefault('created_at', datetime.now(timezone.utc).isoformat())
                self.db.check_unique(self.table, row)
                rows.append(row)
                inserted.append(dict(row))
            return SimpleNamespace(data=inserted, count=None)

        matched = [row for row in rows if self._matches(row)]
        if self.action == 'update':
            for row in matched:
                row.update(self.payload)
            return SimpleNamespace(data=[dict(row) for row in matched], count=None)
        if self.action == 'delete':
            self.db.tables[self.table] = [row for row in rows if not self._matches(row)]
            return SimpleNamespace(data=[dict(row) for row in matched], count=None)

        for column, desc in reversed(self.ordering):
            matched.sort(key=lambda row: _sort_key(row.get(column)), reverse=desc)
        total = len(matched)
        if self.row_limit is not None:
            matched = matched[:self.row_limit]
        return SimpleNamespace(data=[dict(row) for row in matched], count=total if self.count else None)


class FakeRPC:
    def __init__(self, db, name, params):
        self.db = db
        self.name = name
        self.params = params

    def execute(self):
        self.db.calls.append((self.name, 'rpc'))
        if (self.name, 'rpc') in self.db.failures:
            raise _api_error(f"Simulated failure on rpc {self.name}")
        handler = getattr(self.db, f"rpc_{self.name}")
        return SimpleNamespace(data=handler(**self.params), count=None)


class FakeSupabase:
    """In-memory Supabase client covering the query builder calls the app makes."""

    def __init__(self):
        self.tables = {}
        self.failures = set()
        self.calls = []

    def table(self, name):
        return FakeQuery(self, name)

    def rpc(self, name, params=None):
        return FakeRPC(self, name, params or {})

    def seed(self, table, *rows):
        stored = []
        for row in rows:
            row = dict(row)
            row.setdefault('id', str(uuid.uuid4()))
            self.tables.setdefault(table, []).append(row)
            stored.append(row)
        return stored[0] if len(stored) == 1 else stored

    def rows(self, table, **filters):
        return [row for row in self.tables.get(table, [])
                if all(row.get(k) == v for k, v in filters.items())]

    def fail(self, table, action):
        self.failures.add((table, action))

    def check_unique(self, table, row):
        columns = UNIQUE_KEYS.get(table)
        if not columns:
            return
        key = tuple(row.get(c) for c in columns)
        for existing in self.tables.get(table, []):
            if tuple(existing.get(c) for c in columns) == key:
                raise _api_error(f"duplicate key value violates unique constraint on {table}", '23505')

    def rpc_decrement_variant_stock(self, variant_id, decrement_quantity):
        for variant in self.tables.get('product_variants', []):
            if variant['id'] == variant_id:
                variant['stock_quantity'] = max(0, (variant.get('stock_quantity') or 0) - decrement_quantity)
                return variant['stock_quantity']
        raise _api_error(f"Variant {variant_id} not found")


@pytest.fixture
def supabase():
    fake = FakeSupabase()
    db.set_client(fake)
    yield fake
    db.set_client(None)


@pytest.fixture
def school(supabase):
    """A family with two students enrolled in a priced program, plus BC tax rates."""
    family = supabase.seed('families', {'name': 'Tanaka', 'email': 'tanaka@example.com'})
    kenji, yumi = supabase.seed(
        'students',
        {'family_id': family['id'], 'first_name': 'Kenji', 'last_name': 'Tanaka', 'birth_date': '2010-03-14'},
        {'family_id': family['id'], 'first_name': 'Yumi', 'last_name': 'Tanaka', 'birth_date': '2016-08-02'},
    )
    program = supabase.seed('programs', {
        'name': 'Junior Karate',
        'duration_minutes': 60,
        'monthly_fee_cents': 12100,
        'yearly_fee_cents': 120000,
        'individual_session_fee_cents': 8000,
        'is_active': True,
    })
    cls = supabase.seed('classes', {
        'name': 'Juniors Tue/Thu',
        'program_id': program['id'],
        'schedule_pairs': [['Tuesday', '17:45'], ['Thursday', '17:45']],
        'is_active': True,
    })
    enrollments = supabase.seed(
        'enrollments',
        {'student_id': kenji['id'], 'class_id': cls['id'], 'program_id': program['id'], 'status': 'active'},
        {'student_id': yumi['id'], 'class_id': cls['id'], 'program_id': program['id'], 'status': 'trial'},
    )
    gst, pst = supabase.seed(
        'tax_rates',
        {'name': 'GST', 'rate': 0.05, 'is_active': True},
        {'name': 'PST_BC', 'rate': 0.07, 'is_active': True},
    )
    user = supabase.seed('users', {'email': 'parent@example.com', 'role': 'family', 'family_id': family['id']})
    return SimpleNamespace(family=family, kenji=kenji, yumi=yumi, program=program, cls=cls,
                           enrollments=enrollments, gst=gst, pst=pst, user=user)
