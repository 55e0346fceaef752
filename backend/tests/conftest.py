"""
Pytest fixtures for cashdesk backend tests.

Provides test database setup, tenant/facility/employee fixtures, a scripted
fiscal gateway, and the test client.
"""

import pytest
from cashdesk import create_app
from cashdesk.extensions import db
from cashdesk.models import Tenant, Facility, Employee
from cashdesk.services import cash_session_service, sale_service
from cashdesk.services.fiscal_gateway import GatewayResult
from cashdesk.services.fiscal_service import GATEWAY_EXTENSION_KEY


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'FISCAL_SETTLE_SECONDS': 0,
        'FISCAL_RETRY_DELAY_SECONDS': 0,
        'LOG_LEVEL': 'WARNING',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        app.extensions.pop(GATEWAY_EXTENSION_KEY, None)

        yield db.session

        # Cleanup after test
        db.session.rollback()
        app.extensions.pop(GATEWAY_EXTENSION_KEY, None)


@pytest.fixture(scope='function')
def tenant(db_session):
    tenant = Tenant(code="SALON1", name="Salon One", is_active=True)
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture(scope='function')
def other_tenant(db_session):
    tenant = Tenant(code="SALON2", name="Salon Two", is_active=True)
    db_session.add(tenant)
    db_session.commit()
    return tenant


@pytest.fixture(scope='function')
def facility(db_session, tenant):
    facility = Facility(tenant_id=tenant.id, name="Downtown", is_active=True)
    db_session.add(facility)
    db_session.commit()
    return facility


@pytest.fixture(scope='function')
def second_facility(db_session, tenant):
    facility = Facility(tenant_id=tenant.id, name="Uptown", is_active=True)
    db_session.add(facility)
    db_session.commit()
    return facility


@pytest.fixture(scope='function')
def operator(db_session, tenant):
    employee = Employee(tenant_id=tenant.id, first_name="Ana", last_name="Kovac", is_active=True)
    db_session.add(employee)
    db_session.commit()
    return employee


@pytest.fixture(scope='function')
def open_session(db_session, tenant, facility, operator):
    """OPEN session with a 5000.00 float."""
    return cash_session_service.open_session(
        tenant_id=tenant.id,
        facility_id=facility.id,
        opening_float_cents=500000,
        operator_id=operator.id,
    )


def ring_up(session_id: int, cashier_id: int, amount_cents: int, method: str = "cash", change_cents: int = 0):
    """Record a one-item sale paid with a single tender."""
    return sale_service.record_sale(
        session_id=session_id,
        items=[{"ref_id": "svc-1", "type": "service", "name": "Haircut", "qty": 1, "unit_price_cents": amount_cents}],
        payments=[{"method": method, "amount_cents": amount_cents + change_cents, "change_cents": change_cents}],
        cashier_id=cashier_id,
    )


@pytest.fixture(scope='function')
def cash_sale(open_session, operator):
    """A 1200.00 cash sale on the open session."""
    return ring_up(open_session.id, operator.id, 120000)


class ScriptedGateway:
    """
    Fiscal gateway double that replays scripted submit results and records calls.

    Once the script runs out, the last result repeats.
    """

    def __init__(self, submit_results=None, reset_results=None):
        self.submit_results = list(submit_results or [GatewayResult.success("FN-0001")])
        self.reset_results = list(reset_results or [GatewayResult.success()])
        self.calls = []

    @staticmethod
    def _next(results):
        if len(results) > 1:
            return results.pop(0)
        return results[0]

    def reset(self, sale_id):
        self.calls.append(("reset", sale_id))
        return self._next(self.reset_results)

    def submit(self, sale_id, facility_id):
        self.calls.append(("submit", sale_id, facility_id))
        return self._next(self.submit_results)

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture(scope='function')
def sleeper():
    return RecordingSleep()
