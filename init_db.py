"""
Database Initialization and Integrity Checker
Runs on startup to ensure all fee billing tables exist
"""

import sys
from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.schema import sort_tables

# Import all models to register them with Base.metadata
from models import Base, Tenant, User, Student, Class  # noqa: F401
from fee_models import (  # noqa: F401
    FeeStructure, FeeStructureComponent, FeeInvoice, FeeInvoiceItem, FeePayment
)
import db_single


def get_existing_tables(engine):
    """Get list of existing tables in database"""
    inspector = inspect(engine)
    return set(inspector.get_table_names())


def get_expected_tables():
    """Get list of all expected tables from models"""
    return set(Base.metadata.tables.keys())


def create_missing_tables(engine, existing_tables, expected_tables, verbose=True):
    """Create any missing tables in foreign key order"""
    missing_tables = expected_tables - existing_tables

    if not missing_tables:
        if verbose:
            print(" All tables exist")
        return [], []

    if verbose:
        print(f"\n Found {len(missing_tables)} missing tables:")
        for table in sorted(missing_tables):
            print(f"  - {table}")

    created = []
    failed = []
    for table in sort_tables([Base.metadata.tables[name] for name in missing_tables]):
        try:
            table.create(engine, checkfirst=True)
            created.append(table.name)
        except (OperationalError, ProgrammingError) as e:
            failed.append((table.name, str(e)))
            if verbose:
                print(f"   {table.name}: {str(e)[:80]}")

    return created, failed


def initialize_database(database_uri=None, verbose=True):
    """
    Check the configured database and create missing tables
    Returns:
        tuple: (success, created_tables, failed_tables)
    """
    try:
        if database_uri or db_single.ENGINE is None:
            db_single.init_database(database_uri)
        engine = db_single.ENGINE

        if verbose:
            print("\n" + "=" * 60)
            print("DATABASE INTEGRITY CHECK")
            print("=" * 60)

        created, failed = create_missing_tables(
            engine, get_existing_tables(engine), get_expected_tables(), verbose=verbose
        )

        if verbose:
            if created:
                print(f"[OK] Created {len(created)} tables")
            if failed:
                print(f"[WARNING] {len(failed)} tables could not be created")
            else:
                print("[OK] Database integrity verified")
            print("=" * 60 + "\n")

        return not failed, created, failed

    except (OperationalError, ProgrammingError) as e:
        print(f"\n[ERROR] Database initialization failed: {e}")
        return False, [], [('database', str(e))]


def run_on_startup(database_uri=None):
    """Wrapper function to run on application startup"""
    success, created_tables, failed_tables = initialize_database(database_uri, verbose=True)

    if not success:
        print("\n[WARNING] Database initialization failed!")
        print("Please check the database configuration and try again.\n")
        return False

    return True


if __name__ == '__main__':
    success = run_on_startup()
    sys.exit(0 if success else 1)
