import threading
from datetime import date, timedelta
from decimal import Decimal

import pytest

import db_single
from fee_models import FeeInvoice, FeePayment, InvoiceStatusEnum, PaymentStatusEnum, PaymentMethodEnum
from fee_validators import ValidationError, BadRequestError, ConflictError, NotFoundError
from fee_helpers import generate_invoices
from fee_ledger_helpers import (
    record_payment, void_payment, update_invoice, cancel_invoice, issue_invoice,
    reconcile_invoice, refresh_invoice_statuses, get_invoice, list_invoices,
    list_payments, list_invoice_payments
)


@pytest.fixture
def invoice_id(session, school, structure, future_due):
    """Invoice of the 10% scholarship student: total 450"""
    generate_invoices(session, school.tenant_id, structure, month=7, due_date=future_due)
    return session.query(FeeInvoice.id).filter_by(student_id=school.scholar_id).scalar()


def fresh_invoice(invoice_id):
    s = db_single.get_session()
    try:
        invoice = s.get(FeeInvoice, invoice_id)
        s.expunge(invoice)
        return invoice
    finally:
        s.close()


def assert_ledger_invariant(invoice):
    assert invoice.due_amount == invoice.total_amount - invoice.paid_amount
    assert Decimal('0') <= invoice.paid_amount <= invoice.total_amount


def test_full_payment_marks_invoice_paid(session, school, invoice_id):
    payment = record_payment(session, school.tenant_id, invoice_id, '450', 'cash', actor_id=7)

    invoice = fresh_invoice(invoice_id)
    assert invoice.paid_amount == Decimal('450.00')
    assert invoice.due_amount == Decimal('0.00')
    assert invoice.status == InvoiceStatusEnum.PAID
    assert payment.status == PaymentStatusEnum.COMPLETED
    assert payment.payment_method == PaymentMethodEnum.CASH
    assert payment.collected_by == 7
    assert payment.student_id == school.scholar_id
    assert payment.receipt_number.startswith(f"RCP-{date.today().strftime('%Y%m%d')}-")


def test_payment_on_paid_invoice_rejected(session, school, invoice_id):
    record_payment(session, school.tenant_id, invoice_id, '450', 'cash')

    with pytest.raises(BadRequestError) as exc:
        record_payment(session, school.tenant_id, invoice_id, '100', 'cash')
    assert exc.value.message == "Payment amount exceeds due amount"

    invoice = fresh_invoice(invoice_id)
    assert invoice.paid_amount == Decimal('450.00')
    assert session.query(FeePayment).count() == 1


def test_partial_payments_accumulate(session, school, invoice_id):
    record_payment(session, school.tenant_id, invoice_id, '100.10', 'upi', details={'transaction_id': 'T1'})
    record_payment(session, school.tenant_id, invoice_id, Decimal('0.20'), 'card')

    invoice = fresh_invoice(invoice_id)
    assert invoice.paid_amount == Decimal('100.30')
    assert invoice.due_amount == Decimal('349.70')
    assert invoice.status == InvoiceStatusEnum.PARTIAL
    assert_ledger_invariant(invoice)


def test_overdue_then_partial(session, school, structure):
    generate_invoices(session, school.tenant_id, structure, month=4, due_date=date.today() - timedelta(days=5))
    invoice_id = session.query(FeeInvoice.id).filter_by(student_id=school.full_fee_id).scalar()
    assert fresh_invoice(invoice_id).status == InvoiceStatusEnum.OVERDUE

    record_payment(session, school.tenant_id, invoice_id, '200', 'cash')
    assert fresh_invoice(invoice_id).status == InvoiceStatusEnum.PARTIAL


@pytest.mark.parametrize('amount, method', [
    ('0', 'cash'),
    ('-10', 'cash'),
    ('10.001', 'cash'),
    ('abc', 'cash'),
    ('10', 'barter'),
])
def test_invalid_payment_input(session, school, invoice_id, amount, method):
    with pytest.raises(ValidationError):
        record_payment(session, school.tenant_id, invoice_id, amount, method)
    assert fresh_invoice(invoice_id).paid_amount == Decimal('0.00')


def test_payment_on_other_tenant_invoice_not_found(session, school, other_school, invoice_id):
    with pytest.raises(NotFoundError):
        record_payment(session, other_school.tenant_id, invoice_id, '10', 'cash')


def test_idempotency_key_replays_original_payment(session, school, invoice_id):
    first = record_payment(session, school.tenant_id, invoice_id, '100', 'cash', idempotency_key='req-1')
    second = record_payment(session, school.tenant_id, invoice_id, '100', 'cash', idempotency_key='req-1')

    assert second.id == first.id
    assert session.query(FeePayment).count() == 1
    assert fresh_invoice(invoice_id).paid_amount == Decimal('100.00')

    with pytest.raises(ConflictError):
        record_payment(session, school.tenant_id, invoice_id, '120', 'cash', idempotency_key='req-1')


def test_void_restores_balance_and_status(session, school, invoice_id):
    payment = record_payment(session, school.tenant_id, invoice_id, '450', 'cheque',
                             details={'cheque_number': '000123'})
    assert fresh_invoice(invoice_id).status == InvoiceStatusEnum.PAID

    voided = void_payment(session, school.tenant_id, payment.id, reason='Cheque bounced', actor_id=3)
    assert voided.status == PaymentStatusEnum.VOIDED
    assert voided.void_reason == 'Cheque bounced'
    assert voided.voided_by == 3

    invoice = fresh_invoice(invoice_id)
    assert invoice.paid_amount == Decimal('0.00')
    assert invoice.due_amount == Decimal('450.00')
    assert invoice.status == InvoiceStatusEnum.PENDING

    with pytest.raises(BadRequestError):
        void_payment(session, school.tenant_id, payment.id)


def test_draft_invoice_must_be_issued_before_payment(session, school, structure, future_due):
    generate_invoices(session, school.tenant_id, structure, month=7, due_date=future_due, draft=True)
    invoice_id = session.query(FeeInvoice.id).filter_by(student_id=school.full_fee_id).scalar()

    with pytest.raises(BadRequestError):
        record_payment(session, school.tenant_id, invoice_id, '100', 'cash')

    invoice = issue_invoice(session, school.tenant_id, invoice_id)
    assert invoice.status == InvoiceStatusEnum.PENDING
    record_payment(session, school.tenant_id, invoice_id, '100', 'cash')

    with pytest.raises(BadRequestError):
        issue_invoice(session, school.tenant_id, invoice_id)


def test_cancelled_invoice_rejects_payments(session, school, invoice_id):
    invoice = cancel_invoice(session, school.tenant_id, invoice_id, reason='Left school', actor_id=1)
    assert invoice.status == InvoiceStatusEnum.CANCELLED
    assert invoice.cancellation_reason == 'Left school'
    assert invoice.due_amount == Decimal('450.00')

    with pytest.raises(BadRequestError):
        record_payment(session, school.tenant_id, invoice_id, '10', 'cash')
    with pytest.raises(BadRequestError):
        cancel_invoice(session, school.tenant_id, invoice_id)
    with pytest.raises(BadRequestError):
        update_invoice(session, school.tenant_id, invoice_id, {'remarks': 'x'})


def test_cannot_cancel_invoice_with_payments(session, school, invoice_id):
    payment = record_payment(session, school.tenant_id, invoice_id, '50', 'cash')
    with pytest.raises(BadRequestError) as exc:
        cancel_invoice(session, school.tenant_id, invoice_id)
    assert f"Void payment(s) {payment.receipt_number} first" in exc.value.message

    void_payment(session, school.tenant_id, payment.id)
    assert cancel_invoice(session, school.tenant_id, invoice_id).status == InvoiceStatusEnum.CANCELLED


def test_update_invoice_recomputes_total(session, school, invoice_id):
    invoice = update_invoice(session, school.tenant_id, invoice_id, {
        'late_fee': '50',
        'previous_due': '100.50',
        'discount': {'amount': '20', 'reason': 'Sibling', 'approved_by': 2},
        'remarks': 'Adjusted',
    })
    assert invoice.total_amount == Decimal('580.50')
    assert invoice.due_amount == Decimal('580.50')
    assert invoice.discount_reason == 'Sibling'
    assert invoice.remarks == 'Adjusted'
    assert_ledger_invariant(invoice)


def test_update_invoice_replaces_items(session, school, invoice_id):
    invoice = update_invoice(session, school.tenant_id, invoice_id, {
        'items': [
            {'name': 'Tuition Fee', 'type': 'tuition', 'amount': '500', 'discount': '50'},
            {'name': 'Lab Fee', 'type': 'lab', 'amount': '75'},
        ]
    })
    assert invoice.subtotal == Decimal('525.00')
    assert invoice.total_amount == Decimal('525.00')
    assert [i.name for i in invoice.items] == ['Tuition Fee', 'Lab Fee']


def test_update_invoice_past_due_date_makes_it_overdue(session, school, invoice_id):
    invoice = update_invoice(session, school.tenant_id, invoice_id, {'due_date': '2020-01-10'})
    assert invoice.status == InvoiceStatusEnum.OVERDUE


def test_paid_invoice_cannot_be_modified(session, school, invoice_id):
    record_payment(session, school.tenant_id, invoice_id, '450', 'cash')
    with pytest.raises(BadRequestError) as exc:
        update_invoice(session, school.tenant_id, invoice_id, {'remarks': 'late'})
    assert exc.value.message == "Cannot modify paid invoice"


@pytest.mark.parametrize('field', ['due_amount', 'status', 'paid_amount', 'total_amount', 'subtotal'])
def test_derived_fields_cannot_be_set(session, school, invoice_id, field):
    with pytest.raises(ValidationError):
        update_invoice(session, school.tenant_id, invoice_id, {field: '1'})


def test_total_cannot_drop_below_paid(session, school, invoice_id):
    record_payment(session, school.tenant_id, invoice_id, '400', 'cash')
    with pytest.raises(BadRequestError):
        update_invoice(session, school.tenant_id, invoice_id, {'discount': {'amount': '100'}})
    assert fresh_invoice(invoice_id).total_amount == Decimal('450.00')


def test_reconcile_invoice(session, school, invoice_id):
    payment = record_payment(session, school.tenant_id, invoice_id, '200', 'cash')
    record_payment(session, school.tenant_id, invoice_id, '100', 'upi')
    void_payment(session, school.tenant_id, payment.id)

    report = reconcile_invoice(session, school.tenant_id, invoice_id)
    assert report['consistent'] is True
    assert report['paid_amount'] == Decimal('100.00')
    assert report['payments_total'] == Decimal('100.00')


def test_refresh_marks_past_due_invoices_overdue(session, school, structure, future_due):
    generate_invoices(session, school.tenant_id, structure, month=7, due_date=future_due)
    invoice_id = session.query(FeeInvoice.id).filter_by(student_id=school.full_fee_id).scalar()
    record_payment(session, school.tenant_id, invoice_id, '100', 'cash')

    later = future_due + timedelta(days=1)
    # The partly paid invoice stays partial; only the untouched one becomes overdue
    assert refresh_invoice_statuses(session, school.tenant_id, today=later) == 1
    assert refresh_invoice_statuses(session, school.tenant_id, today=later) == 0

    statuses = {i.student_id: i.status for i in session.query(FeeInvoice).all()}
    assert statuses == {school.full_fee_id: InvoiceStatusEnum.PARTIAL, school.scholar_id: InvoiceStatusEnum.OVERDUE}


def test_stale_read_cannot_overpay(session, school, invoice_id):
    # Session A reads the invoice while it is still fully due
    stale = get_invoice(session, school.tenant_id, invoice_id)
    assert stale.paid_amount == Decimal('0.00')

    other = db_single.get_session()
    try:
        record_payment(other, school.tenant_id, invoice_id, '450', 'cash')
    finally:
        other.close()

    with pytest.raises(BadRequestError):
        record_payment(session, school.tenant_id, invoice_id, '300', 'cash')

    invoice = fresh_invoice(invoice_id)
    assert invoice.paid_amount == Decimal('450.00')
    assert_ledger_invariant(invoice)


def test_concurrent_payments_accept_exactly_one(school, invoice_id):
    barrier = threading.Barrier(2)
    accepted = []
    rejected = []

    def pay(amount):
        s = db_single.get_session()
        try:
            barrier.wait()
            accepted.append(record_payment(s, school.tenant_id, invoice_id, amount, 'cash').id)
        except BadRequestError as e:
            rejected.append(e)
        finally:
            s.close()

    threads = [threading.Thread(target=pay, args=(amount,)) for amount in ('300', '250')]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert len(accepted) == 1
    assert len(rejected) == 1

    invoice = fresh_invoice(invoice_id)
    assert invoice.paid_amount in (Decimal('300.00'), Decimal('250.00'))
    assert invoice.status == InvoiceStatusEnum.PARTIAL
    assert_ledger_invariant(invoice)


def test_listing_and_filters(session, school, invoice_id):
    record_payment(session, school.tenant_id, invoice_id, '100', 'cash')
    record_payment(session, school.tenant_id, invoice_id, '50', 'upi')

    result = list_invoices(session, school.tenant_id, {'status': 'partial'})
    assert [i.id for i in result['items']] == [invoice_id]
    assert result['total'] == 1

    result = list_invoices(session, school.tenant_id, {'month': 7}, page=1, per_page=1)
    assert result['total'] == 2
    assert result['pages'] == 2
    assert len(result['items']) == 1

    assert list_payments(session, school.tenant_id, {'payment_method': 'upi'})['total'] == 1
    assert len(list_invoice_payments(session, school.tenant_id, invoice_id)) == 2


@pytest.mark.parametrize('lister, filters, field', [
    (list_invoices, {'student_id': 'abc'}, 'Student'),
    (list_invoices, {'fee_structure_id': '1.5'}, 'Fee Structure'),
    (list_invoices, {'academic_year': 'last year'}, 'Academic Year'),
    (list_payments, {'student_id': '-3'}, 'Student'),
    (list_payments, {'invoice_id': 'x'}, 'Invoice'),
])
def test_malformed_list_filters_rejected(session, school, lister, filters, field):
    with pytest.raises(ValidationError) as exc:
        lister(session, school.tenant_id, filters)
    assert exc.value.field == field


def test_malformed_invoice_id_rejected(session, school, invoice_id):
    with pytest.raises(ValidationError) as exc:
        record_payment(session, school.tenant_id, 'abc', '10', 'cash')
    assert exc.value.field == 'Invoice'

    payment = record_payment(session, school.tenant_id, str(invoice_id), '10', 'cash', idempotency_key='k-1')
    replay = record_payment(session, school.tenant_id, invoice_id, '10', 'cash', idempotency_key='k-1')
    assert replay.id == payment.id
