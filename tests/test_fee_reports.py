from datetime import date, timedelta
from decimal import Decimal

import pytest

from fee_models import FeeInvoice
from fee_validators import NotFoundError, ValidationError
from fee_helpers import generate_invoices
from fee_ledger_helpers import record_payment, void_payment, cancel_invoice
from fee_report_helpers import get_fee_statistics, get_daily_collection, get_student_fee_summary


@pytest.fixture
def billed(session, school, structure, future_due):
    generate_invoices(session, school.tenant_id, structure, month=7, due_date=future_due)
    ids = {i.student_id: i.id for i in session.query(FeeInvoice).all()}
    return ids


def test_statistics_summary_and_breakdowns(session, school, billed):
    record_payment(session, school.tenant_id, billed[school.scholar_id], '450', 'cash')
    record_payment(session, school.tenant_id, billed[school.full_fee_id], '100', 'upi')
    bounced = record_payment(session, school.tenant_id, billed[school.full_fee_id], '50', 'cheque')
    void_payment(session, school.tenant_id, bounced.id)

    stats = get_fee_statistics(session, school.tenant_id, academic_year='2024-25', month=7)

    assert stats['summary'] == {
        'total_invoices': 2,
        'total_amount': Decimal('950.00'),
        'total_paid': Decimal('550.00'),
        'total_due': Decimal('400.00'),
    }
    assert stats['status_breakdown'] == [
        {'status': 'paid', 'count': 1, 'amount': Decimal('450.00')},
        {'status': 'partial', 'count': 1, 'amount': Decimal('500.00')},
    ]
    assert stats['payment_method_breakdown'] == [
        {'method': 'cash', 'count': 1, 'amount': Decimal('450.00')},
        {'method': 'upi', 'count': 1, 'amount': Decimal('100.00')},
    ]


def test_statistics_exclude_cancelled_invoices_from_summary(session, school, billed):
    cancel_invoice(session, school.tenant_id, billed[school.full_fee_id])

    stats = get_fee_statistics(session, school.tenant_id)
    assert stats['summary']['total_invoices'] == 1
    assert stats['summary']['total_amount'] == Decimal('450.00')
    assert {row['status'] for row in stats['status_breakdown']} == {'pending', 'cancelled'}


def test_statistics_empty_tenant(session, other_school):
    stats = get_fee_statistics(session, other_school.tenant_id)
    assert stats['summary']['total_invoices'] == 0
    assert stats['summary']['total_amount'] == Decimal('0.00')
    assert stats['status_breakdown'] == []


def test_daily_collection(session, school, billed):
    yesterday = date.today() - timedelta(days=1)
    record_payment(session, school.tenant_id, billed[school.full_fee_id], '100', 'cash', payment_date=yesterday)
    record_payment(session, school.tenant_id, billed[school.full_fee_id], '25.50', 'cash')
    record_payment(session, school.tenant_id, billed[school.scholar_id], '74.50', 'upi')

    rows = get_daily_collection(session, school.tenant_id, yesterday, date.today())
    assert rows == [
        {'date': yesterday.isoformat(), 'count': 1, 'amount': Decimal('100.00')},
        {'date': date.today().isoformat(), 'count': 2, 'amount': Decimal('100.00')},
    ]


def test_daily_collection_rejects_inverted_range(session, school):
    with pytest.raises(ValidationError):
        get_daily_collection(session, school.tenant_id, date(2024, 7, 10), date(2024, 7, 1))


def test_student_fee_summary(session, school, billed, future_due):
    record_payment(session, school.tenant_id, billed[school.full_fee_id], '100', 'cash')

    summary = get_student_fee_summary(session, school.tenant_id, school.full_fee_id)
    assert summary['student']['id'] == school.full_fee_id
    assert summary['total_fee'] == Decimal('500.00')
    assert summary['total_paid'] == Decimal('100.00')
    assert summary['total_due'] == Decimal('400.00')
    assert summary['overdue_amount'] == Decimal('0.00')
    assert summary['invoice_count'] == 1
    assert summary['pending_count'] == 1

    later = get_student_fee_summary(session, school.tenant_id, school.full_fee_id, today=future_due + timedelta(days=1))
    assert later['overdue_amount'] == Decimal('400.00')


def test_student_summary_is_tenant_scoped(session, school, other_school):
    with pytest.raises(NotFoundError):
        get_student_fee_summary(session, other_school.tenant_id, school.full_fee_id)
