from datetime import date, timedelta
from types import SimpleNamespace

import pytest

import db_single
from config import TestingConfig
from fee_helpers import define_structure
from factories import make_tenant, make_class, make_student, make_user, monthly_components


@pytest.fixture
def database_uri(tmp_path):
    # File-backed so threads and sessions share one database
    return f"sqlite:///{tmp_path / 'fees.db'}"


@pytest.fixture
def db(database_uri):
    db_single.init_database(database_uri, TestingConfig())
    db_single.create_tables()
    yield
    db_single.ENGINE.dispose()


@pytest.fixture
def session(db):
    s = db_single.get_session()
    yield s
    s.close()


@pytest.fixture
def future_due():
    return date.today() + timedelta(days=30)


@pytest.fixture
def school(session):
    """One tenant with class 10-A: a full-fee student and a 10% scholarship student"""
    tenant = make_tenant(session)
    class_a = make_class(session, tenant.id, '10', 'A')
    full_fee = make_student(session, tenant.id, class_a.id, 'A001')
    scholar = make_student(session, tenant.id, class_a.id, 'A002', scholarship=10)
    return SimpleNamespace(
        tenant_id=tenant.id,
        slug=tenant.slug,
        class_id=class_a.id,
        full_fee_id=full_fee.id,
        scholar_id=scholar.id,
    )


@pytest.fixture
def other_school(session):
    tenant = make_tenant(session, slug='riverside', name='Riverside School')
    class_b = make_class(session, tenant.id, '10', 'A')
    student = make_student(session, tenant.id, class_b.id, 'R001')
    return SimpleNamespace(tenant_id=tenant.id, slug=tenant.slug, class_id=class_b.id, student_id=student.id)


@pytest.fixture
def structure(session, school):
    structure = define_structure(
        session, school.tenant_id, '2024-25', monthly_components(),
        name='Standard Fees', class_ids=[school.class_id]
    )
    return structure.id


@pytest.fixture
def app(db, database_uri):
    from main import create_app
    app = create_app('testing', database_uri)
    app.config.update(TESTING=True)
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client, session, school):
    """Create a user with the given role and log the test client in as them"""
    def _login(role='school_admin', username=None):
        username = username or role
        make_user(session, school.tenant_id, username=username, role=role)
        response = client.post(f"/{school.slug}/login", json={'username': username, 'password': 'secret123'})
        assert response.status_code == 200
        return response
    return _login
