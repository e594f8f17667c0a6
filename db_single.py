"""
Database management for single database multi-tenant system
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from config import Config
from models import Base, Tenant
from datetime import date
from decimal import Decimal
import logging

logger = logging.getLogger(__name__)

# Global engine and session factory
ENGINE = None
SessionLocal = None

def init_database(database_uri: str = None, config_obj: Config = None):
    """Initialize database engine and session factory"""
    global ENGINE, SessionLocal

    config_obj = config_obj or Config()
    database_uri = database_uri or config_obj.get_database_uri()

    if ENGINE is not None:
        ENGINE.dispose()

    ENGINE = create_engine(
        database_uri,
        **config_obj.get_engine_options(database_uri)
    )

    SessionLocal = sessionmaker(bind=ENGINE, autoflush=False, autocommit=False)

    logger.info(f"Database initialized: {ENGINE.url.render_as_string(hide_password=True)}")
    return ENGINE, SessionLocal

def get_session():
    """Get a database session"""
    if SessionLocal is None:
        init_database()
    return SessionLocal()

def create_tables():
    """Create every registered table that does not exist yet"""
    if ENGINE is None:
        init_database()
    # Fee tables register themselves on Base.metadata when imported
    import fee_models  # noqa: F401
    Base.metadata.create_all(ENGINE)

def create_school(slug: str, name: str, **kwargs) -> tuple[bool, str]:
    """
    Create a new school (tenant) with optional sample data

    Args:
        slug: URL-friendly identifier (e.g., 'xyz')
        name: Full school name (e.g., 'XYZ Public School')
        **kwargs: Additional school data (create_sample_data, etc.)

    Returns:
        tuple: (success: bool, message: str)
    """
    session = get_session()
    try:
        # Check if slug already exists
        existing = session.query(Tenant).filter_by(slug=slug).first()
        if existing:
            return False, f"School with slug '{slug}' already exists"

        school = Tenant(
            slug=slug,
            name=name,
            is_active=True
        )

        session.add(school)
        session.flush()  # Get the ID but don't commit yet

        if kwargs.get('create_sample_data', False):
            _create_sample_school_data(session, school.id)

        session.commit()

        logger.info(f"✅ Created school: {name} ({slug})")
        return True, f"School '{name}' created successfully with slug '{slug}'"

    except Exception as e:
        session.rollback()
        logger.error(f"❌ Failed to create school: {e}")
        return False, f"Error creating school: {str(e)}"
    finally:
        session.close()

def _create_sample_school_data(session, tenant_id: int):
    """Create a sample class with two students and a monthly fee structure"""
    from models import Class, Student, StudentStatusEnum
    from fee_helpers import define_structure

    student_class = Class(tenant_id=tenant_id, class_name="10", section="A")
    session.add(student_class)
    session.flush()

    students = [
        Student(
            tenant_id=tenant_id,
            admission_number="2024001",
            first_name="John",
            last_name="Doe",
            full_name="John Doe",
            class_id=student_class.id,
            status=StudentStatusEnum.ACTIVE
        ),
        Student(
            tenant_id=tenant_id,
            admission_number="2024002",
            first_name="Jane",
            last_name="Smith",
            full_name="Jane Smith",
            class_id=student_class.id,
            status=StudentStatusEnum.ACTIVE,
            scholarship_percentage=Decimal('10.00')
        )
    ]
    session.add_all(students)
    session.flush()

    today = date.today()
    academic_year = f"{today.year}-{str(today.year + 1)[-2:]}"
    define_structure(
        session, tenant_id, academic_year,
        [
            {'name': 'Tuition Fee', 'component_type': 'tuition', 'amount': '500.00', 'frequency': 'monthly'},
            {'name': 'Annual Charges', 'component_type': 'other', 'amount': '1200.00', 'frequency': 'yearly'},
        ],
        name='Standard Fees',
        class_ids=[student_class.id],
        commit=False
    )
    logger.info(f"📚 Created sample data for tenant {tenant_id}")

def list_schools() -> list:
    """List all schools/tenants"""
    session = get_session()
    try:
        schools = session.query(Tenant).filter_by(is_active=True).order_by(Tenant.name).all()
        return schools
    finally:
        session.close()
