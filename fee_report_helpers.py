"""
Fee Reporting Helpers
Read-only aggregates over invoices and payments for dashboards and reports
"""

from datetime import date

from sqlalchemy import func, case
from sqlalchemy.orm import Session

from fee_models import (
    FeeInvoice, FeePayment, InvoiceStatusEnum, PaymentStatusEnum, to_money
)
from fee_validators import NotFoundError, ValidationError, FeeValidator
from cohort_helpers import get_student


def get_fee_statistics(session: Session, tenant_id: int, academic_year: str = None, month: int = None) -> dict:
    """
    Get invoice totals, a breakdown by status and a breakdown of completed
    payments by method. Cancelled invoices are left out of the summary.
    """
    month = FeeValidator.validate_month(month)

    invoice_filters = [FeeInvoice.tenant_id == tenant_id]
    if academic_year:
        invoice_filters.append(FeeInvoice.academic_year == FeeValidator.validate_academic_year(academic_year))
    if month:
        invoice_filters.append(FeeInvoice.month == month)

    summary = session.query(
        func.count(FeeInvoice.id).label('total_invoices'),
        func.sum(FeeInvoice.total_amount).label('total_amount'),
        func.sum(FeeInvoice.paid_amount).label('total_paid'),
        func.sum(FeeInvoice.due_amount).label('total_due')
    ).filter(
        *invoice_filters,
        FeeInvoice.status != InvoiceStatusEnum.CANCELLED
    ).first()

    status_rows = session.query(
        FeeInvoice.status,
        func.count(FeeInvoice.id).label('num'),
        func.sum(FeeInvoice.total_amount).label('amount')
    ).filter(*invoice_filters).group_by(FeeInvoice.status).all()

    method_query = session.query(
        FeePayment.payment_method,
        func.count(FeePayment.id).label('num'),
        func.sum(FeePayment.amount).label('amount')
    ).filter(
        FeePayment.tenant_id == tenant_id,
        FeePayment.status == PaymentStatusEnum.COMPLETED
    )
    if academic_year or month:
        method_query = method_query.join(FeeInvoice, FeeInvoice.id == FeePayment.invoice_id).filter(*invoice_filters)
    method_rows = method_query.group_by(FeePayment.payment_method).all()

    return {
        'summary': {
            'total_invoices': summary.total_invoices or 0,
            'total_amount': to_money(summary.total_amount),
            'total_paid': to_money(summary.total_paid),
            'total_due': to_money(summary.total_due),
        },
        'status_breakdown': [
            {'status': row.status.value, 'count': row.num, 'amount': to_money(row.amount)}
            for row in sorted(status_rows, key=lambda r: r.status.value)
        ],
        'payment_method_breakdown': [
            {'method': row.payment_method.value, 'count': row.num, 'amount': to_money(row.amount)}
            for row in sorted(method_rows, key=lambda r: r.payment_method.value)
        ],
    }


def get_daily_collection(session: Session, tenant_id: int, start_date, end_date) -> list:
    """Per-day count and amount of completed payments in the date range"""
    start_date = FeeValidator.validate_date(start_date, "Start Date")
    end_date = FeeValidator.validate_date(end_date, "End Date")
    if end_date < start_date:
        raise ValidationError("End Date", "must not be before the start date")

    rows = session.query(
        FeePayment.payment_date,
        func.count(FeePayment.id).label('num'),
        func.sum(FeePayment.amount).label('amount')
    ).filter(
        FeePayment.tenant_id == tenant_id,
        FeePayment.status == PaymentStatusEnum.COMPLETED,
        FeePayment.payment_date.between(start_date, end_date)
    ).group_by(FeePayment.payment_date).order_by(FeePayment.payment_date).all()

    return [
        {'date': row.payment_date.isoformat(), 'count': row.num, 'amount': to_money(row.amount)}
        for row in rows
    ]


def get_student_fee_summary(session: Session, tenant_id: int, student_id: int, today: date = None) -> dict:
    """Fee position of one student across all of their non-cancelled invoices"""
    student = get_student(session, tenant_id, student_id)
    if not student:
        raise NotFoundError("Student not found")

    today = today or date.today()
    open_statuses = [InvoiceStatusEnum.PENDING, InvoiceStatusEnum.PARTIAL, InvoiceStatusEnum.OVERDUE]

    result = session.query(
        func.count(FeeInvoice.id).label('invoice_count'),
        func.sum(FeeInvoice.total_amount).label('total_fee'),
        func.sum(FeeInvoice.paid_amount).label('total_paid'),
        func.sum(FeeInvoice.due_amount).label('total_due'),
        func.sum(case(
            (FeeInvoice.status.in_(open_statuses) & (FeeInvoice.due_date < today), FeeInvoice.due_amount),
            else_=None
        )).label('overdue_amount'),
        func.sum(case((FeeInvoice.status == InvoiceStatusEnum.PAID, 1), else_=0)).label('paid_count'),
        func.sum(case((FeeInvoice.status.in_([InvoiceStatusEnum.PENDING, InvoiceStatusEnum.PARTIAL]), 1), else_=0)).label('pending_count'),
        func.sum(case((FeeInvoice.status == InvoiceStatusEnum.OVERDUE, 1), else_=0)).label('overdue_count')
    ).filter(
        FeeInvoice.tenant_id == tenant_id,
        FeeInvoice.student_id == student.id,
        FeeInvoice.status.notin_([InvoiceStatusEnum.CANCELLED, InvoiceStatusEnum.DRAFT])
    ).first()

    return {
        'student': student.to_dict(),
        'total_fee': to_money(result.total_fee),
        'total_paid': to_money(result.total_paid),
        'total_due': to_money(result.total_due),
        'overdue_amount': to_money(result.overdue_amount),
        'invoice_count': result.invoice_count or 0,
        'paid_count': int(result.paid_count or 0),
        'pending_count': int(result.pending_count or 0),
        'overdue_count': int(result.overdue_count or 0),
    }
