from datetime import date, timedelta

import pytest

from models import Tenant, User
from fee_models import FeeStructure, FeeInvoice


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


@pytest.fixture
def sample_school(runner, session):
    result = runner.invoke(args=['add-school', '--slug', 'demo', '--name', 'Demo School', '--sample-data'])
    assert 'created successfully' in result.output
    tenant = session.query(Tenant).filter_by(slug='demo').one()
    structure = session.query(FeeStructure).filter_by(tenant_id=tenant.id).one()
    return tenant.id, structure.id


def test_setup_db(runner):
    result = runner.invoke(args=['setup-db'])
    assert result.exit_code == 0
    assert 'Database setup completed successfully' in result.output


def test_add_and_list_schools(runner, sample_school):
    result = runner.invoke(args=['add-school', '--slug', 'demo', '--name', 'Again'])
    assert 'already exists' in result.output

    result = runner.invoke(args=['list-schools'])
    assert 'Demo School' in result.output
    assert 'Slug: demo' in result.output


def test_sample_structure_totals(session, sample_school):
    tenant_id, structure_id = sample_school
    structure = session.get(FeeStructure, structure_id)
    assert str(structure.annual_total) == '7200.00'
    assert len(structure.classes) == 1


def test_create_school_admin(runner, session, sample_school):
    result = runner.invoke(args=[
        'create-school-admin', '--slug', 'demo', '--username', 'bursar', '--email', 'bursar@demo.test',
        '--password', 'pw12345', '--first-name', 'Bea', '--last-name', 'Ursar', '--role', 'accountant'
    ])
    assert result.exit_code == 0
    user = session.query(User).filter_by(username='bursar').one()
    assert user.role == 'accountant'
    assert user.check_password('pw12345')


def test_create_school_admin_unknown_school(runner):
    result = runner.invoke(args=[
        'create-school-admin', '--slug', 'nowhere', '--username', 'a', '--email', 'a@b.c',
        '--password', 'x', '--first-name', 'A', '--last-name', 'B'
    ])
    assert result.exit_code != 0
    assert "not found" in result.output


def test_generate_invoices_command(runner, session, sample_school):
    tenant_id, structure_id = sample_school
    due_date = (date.today() + timedelta(days=20)).isoformat()
    args = ['generate-invoices', '--slug', 'demo', '--structure-id', str(structure_id),
            '--month', '6', '--due-date', due_date]

    result = runner.invoke(args=args)
    assert result.exit_code == 0, result.output
    assert 'Generated: 2' in result.output

    result = runner.invoke(args=args)
    assert 'Generated: 0' in result.output
    assert 'Skipped (already invoiced): 2' in result.output
    assert session.query(FeeInvoice).filter_by(tenant_id=tenant_id).count() == 2


def test_generate_invoices_command_reports_errors(runner, sample_school):
    result = runner.invoke(args=['generate-invoices', '--slug', 'demo', '--structure-id', '9999', '--month', '6'])
    assert result.exit_code != 0
    assert 'Fee structure not found' in result.output


def test_refresh_and_check_ledger(runner, session, sample_school):
    tenant_id, structure_id = sample_school
    past = (date.today() - timedelta(days=3)).isoformat()
    runner.invoke(args=['generate-invoices', '--slug', 'demo', '--structure-id', str(structure_id),
                        '--month', '5', '--due-date', past])

    # Created already overdue, so nothing is left to refresh
    result = runner.invoke(args=['refresh-fee-status', '--slug', 'demo'])
    assert result.exit_code == 0
    assert '0 invoice(s) updated' in result.output

    result = runner.invoke(args=['check-ledger', '--slug', 'demo'])
    assert result.exit_code == 0
    assert '2 invoice(s) checked, ledger balanced' in result.output


def test_check_ledger_flags_mismatch(runner, session, sample_school):
    tenant_id, structure_id = sample_school
    due_date = (date.today() + timedelta(days=20)).isoformat()
    runner.invoke(args=['generate-invoices', '--slug', 'demo', '--structure-id', str(structure_id),
                        '--month', '6', '--due-date', due_date])

    # Simulate drift: paid amount moved without a payment row
    invoice = session.query(FeeInvoice).filter_by(tenant_id=tenant_id).order_by(FeeInvoice.id).first()
    invoice.paid_amount = invoice.paid_amount + 1
    invoice.due_amount = invoice.total_amount - invoice.paid_amount
    session.commit()

    result = runner.invoke(args=['check-ledger', '--slug', 'demo'])
    assert result.exit_code == 1
    assert 'out of balance' in result.output
