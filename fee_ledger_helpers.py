"""
Fee Payment Ledger
Payments, administrative invoice edits, cancellation and voiding. Every
mutation re-derives the invoice's due amount and status before committing.
"""

from datetime import datetime, date
from decimal import Decimal
import logging
import math
import uuid

from sqlalchemy import update, func, literal
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import Config
from fee_models import (
    FeeInvoice, FeeInvoiceItem, FeePayment, Money,
    FeeComponentTypeEnum, InvoiceStatusEnum, PaymentStatusEnum,
    to_money, ZERO
)
from fee_validators import (
    NotFoundError, ValidationError, BadRequestError, ConflictError, FeeValidator
)
from fee_helpers import (
    apply_derived_fields, calculate_invoice_total, HELD_STATUSES
)

logger = logging.getLogger(__name__)


OPEN_STATUSES = (InvoiceStatusEnum.PENDING, InvoiceStatusEnum.PARTIAL, InvoiceStatusEnum.OVERDUE)

INVOICE_PATCH_FIELDS = {'due_date', 'discount', 'late_fee', 'previous_due', 'items', 'remarks'}
DERIVED_INVOICE_FIELDS = {'due_amount', 'status', 'paid_amount', 'total_amount', 'subtotal'}


# ===== RECEIPT NUMBER GENERATION =====

def generate_receipt_number(prefix: str = None, today: date = None) -> str:
    """
    Generate receipt number in format: RCP-YYYYMMDD-XXXXXXXX
    The random suffix keeps concurrent collectors from racing on a counter.
    """
    prefix = prefix or Config.RECEIPT_NUMBER_PREFIX
    today = today or date.today()
    return f"{prefix}-{today.strftime('%Y%m%d')}-{uuid.uuid4().hex[:8].upper()}"


# ===== INVOICE QUERIES =====

def get_invoice(session: Session, tenant_id: int, invoice_id: int, for_update: bool = False) -> FeeInvoice:
    query = session.query(FeeInvoice).filter_by(id=invoice_id, tenant_id=tenant_id)
    if for_update:
        query = query.with_for_update().populate_existing()
    invoice = query.first()
    if not invoice:
        raise NotFoundError("Invoice not found")
    return invoice


def _paginate(query, page, per_page) -> dict:
    try:
        page = max(int(page or 1), 1)
        per_page = int(per_page or Config.FEES_PAGE_SIZE)
    except (TypeError, ValueError):
        raise ValidationError("Page", "must be a whole number")
    per_page = min(max(per_page, 1), 200)

    total = query.count()
    items = query.offset((page - 1) * per_page).limit(per_page).all()
    return {
        'items': items,
        'total': total,
        'page': page,
        'per_page': per_page,
        'pages': math.ceil(total / per_page) if total else 0,
    }


def list_invoices(session: Session, tenant_id: int, filters: dict = None, page: int = 1, per_page: int = None) -> dict:
    """
    List invoices newest first
    Filters: student_id, status, academic_year, month, fee_structure_id
    """
    filters = filters or {}
    query = session.query(FeeInvoice).filter(FeeInvoice.tenant_id == tenant_id)

    if filters.get('student_id'):
        query = query.filter(FeeInvoice.student_id == FeeValidator.validate_id(filters['student_id'], "Student"))
    if filters.get('status'):
        status = FeeValidator.validate_enum(filters['status'], InvoiceStatusEnum, "Status")
        query = query.filter(FeeInvoice.status == status)
    if filters.get('academic_year'):
        query = query.filter(FeeInvoice.academic_year == FeeValidator.validate_academic_year(filters['academic_year']))
    if filters.get('month') not in (None, ''):
        query = query.filter(FeeInvoice.month == (FeeValidator.validate_month(filters['month']) or 0))
    if filters.get('fee_structure_id'):
        query = query.filter(FeeInvoice.fee_structure_id == FeeValidator.validate_id(filters['fee_structure_id'], "Fee Structure"))

    query = query.order_by(FeeInvoice.created_at.desc(), FeeInvoice.id.desc())
    return _paginate(query, page, per_page)


def list_invoice_payments(session: Session, tenant_id: int, invoice_id: int) -> list:
    invoice = get_invoice(session, tenant_id, invoice_id)
    return session.query(FeePayment).filter_by(
        tenant_id=tenant_id, invoice_id=invoice.id
    ).order_by(FeePayment.payment_date.desc(), FeePayment.id.desc()).all()


def list_payments(session: Session, tenant_id: int, filters: dict = None, page: int = 1, per_page: int = None) -> dict:
    """
    List payments newest first
    Filters: student_id, invoice_id, payment_method, status, start_date, end_date
    """
    filters = filters or {}
    query = session.query(FeePayment).filter(FeePayment.tenant_id == tenant_id)

    if filters.get('student_id'):
        query = query.filter(FeePayment.student_id == FeeValidator.validate_id(filters['student_id'], "Student"))
    if filters.get('invoice_id'):
        query = query.filter(FeePayment.invoice_id == FeeValidator.validate_id(filters['invoice_id'], "Invoice"))
    if filters.get('payment_method'):
        query = query.filter(FeePayment.payment_method == FeeValidator.validate_payment_method(filters['payment_method']))
    if filters.get('status'):
        status = FeeValidator.validate_enum(filters['status'], PaymentStatusEnum, "Status")
        query = query.filter(FeePayment.status == status)
    start_date = FeeValidator.validate_date(filters.get('start_date'), "Start Date", required=False)
    end_date = FeeValidator.validate_date(filters.get('end_date'), "End Date", required=False)
    if start_date:
        query = query.filter(FeePayment.payment_date >= start_date)
    if end_date:
        query = query.filter(FeePayment.payment_date <= end_date)

    query = query.order_by(FeePayment.payment_date.desc(), FeePayment.id.desc())
    return _paginate(query, page, per_page)


# ===== PAYMENT PROCESSING =====

def _find_payment_by_key(session: Session, tenant_id: int, idempotency_key: str):
    return session.query(FeePayment).filter_by(tenant_id=tenant_id, idempotency_key=idempotency_key).first()


def _replay_payment(existing: FeePayment, invoice_id, amount: Decimal) -> FeePayment:
    if existing.invoice_id != invoice_id or to_money(existing.amount) != amount:
        raise ConflictError("Idempotency key was already used for a different payment")
    logger.info(f"Replayed payment {existing.receipt_number} for idempotency key {existing.idempotency_key}")
    return existing


def record_payment(session: Session, tenant_id: int, invoice_id: int, amount, method,
                   details: dict = None, actor_id: int = None, payment_date=None,
                   paid_by: dict = None, remarks: str = None, idempotency_key: str = None,
                   today: date = None) -> FeePayment:
    """
    Record a payment against an invoice.

    The balance check and the paid amount increment happen in one conditional
    UPDATE, so concurrent payments whose sum exceeds the due amount cannot
    both be accepted. The payment row and the re-derived invoice commit
    together.

    Raises:
        ValidationError: amount not positive, unknown method, malformed details
        NotFoundError: invoice missing or owned by another tenant
        BadRequestError: invoice cancelled or draft, amount exceeds due amount
        ConflictError: idempotency key reused for a different payment
    """
    invoice_id = FeeValidator.validate_id(invoice_id, "Invoice")
    amount = FeeValidator.validate_amount(amount, "Amount", allow_zero=False)
    method = FeeValidator.validate_payment_method(method)
    details = FeeValidator.validate_free_form(details, "Payment Details")
    paid_by = FeeValidator.validate_free_form(paid_by, "Paid By")
    payment_date = FeeValidator.validate_date(payment_date, "Payment Date", required=False) or date.today()

    key = str(idempotency_key).strip() if idempotency_key else None
    if key and len(key) > 100:
        raise ValidationError("Idempotency Key", "must not exceed 100 characters")
    if key:
        existing = _find_payment_by_key(session, tenant_id, key)
        if existing:
            return _replay_payment(existing, invoice_id, amount)

    invoice = get_invoice(session, tenant_id, invoice_id)
    if invoice.status == InvoiceStatusEnum.CANCELLED:
        raise BadRequestError("Cannot record payment on a cancelled invoice")
    if invoice.status == InvoiceStatusEnum.DRAFT:
        raise BadRequestError("Cannot record payment on a draft invoice")
    if amount > to_money(invoice.total_amount) - to_money(invoice.paid_amount):
        raise BadRequestError("Payment amount exceeds due amount")

    invoice_id = invoice.id
    student_id = invoice.student_id
    amount_param = literal(amount, Money())

    try:
        result = session.execute(
            update(FeeInvoice)
            .where(
                FeeInvoice.id == invoice_id,
                FeeInvoice.tenant_id == tenant_id,
                FeeInvoice.status.notin_(HELD_STATUSES),
                FeeInvoice.paid_amount + amount_param <= FeeInvoice.total_amount
            )
            .values(
                paid_amount=FeeInvoice.paid_amount + amount_param,
                version=FeeInvoice.version + 1
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            logger.warning(f"Rejected payment of {amount} on invoice {invoice_id}: balance changed concurrently")
            raise BadRequestError("Payment amount exceeds due amount")

        payment = FeePayment(
            tenant_id=tenant_id,
            student_id=student_id,
            invoice_id=invoice_id,
            receipt_number=generate_receipt_number(),
            amount=amount,
            payment_method=method,
            payment_details=details,
            paid_by=paid_by,
            payment_date=payment_date,
            status=PaymentStatusEnum.COMPLETED,
            idempotency_key=key,
            collected_by=actor_id,
            remarks=remarks
        )
        session.add(payment)
        session.flush()

        invoice = session.get(FeeInvoice, invoice_id, populate_existing=True)
        apply_derived_fields(invoice, today)
        session.commit()

    except IntegrityError:
        # Same idempotency key committed by a concurrent request
        session.rollback()
        if key:
            existing = _find_payment_by_key(session, tenant_id, key)
            if existing:
                return _replay_payment(existing, invoice_id, amount)
        logger.exception(f"Payment on invoice {invoice_id} could not be saved")
        raise ConflictError("Payment could not be recorded, please retry")

    logger.info(
        f"✅ Payment {payment.receipt_number} of {amount} ({method.value}) recorded on invoice "
        f"{invoice.invoice_number}, status now {invoice.status.value}"
    )
    return payment


def void_payment(session: Session, tenant_id: int, payment_id: int, reason: str = None, actor_id: int = None,
                 today: date = None) -> FeePayment:
    """Void a completed payment and give its amount back to the invoice balance"""
    payment = session.query(FeePayment).filter_by(id=payment_id, tenant_id=tenant_id).first()
    if not payment:
        raise NotFoundError("Payment not found")
    if payment.status == PaymentStatusEnum.VOIDED:
        raise BadRequestError("Payment is already voided")

    payment_id = payment.id
    invoice_id = payment.invoice_id
    amount_param = literal(to_money(payment.amount), Money())

    voided = session.execute(
        update(FeePayment)
        .where(FeePayment.id == payment_id, FeePayment.status == PaymentStatusEnum.COMPLETED)
        .values(
            status=PaymentStatusEnum.VOIDED,
            voided_by=actor_id,
            voided_at=datetime.utcnow(),
            void_reason=reason
        )
        .execution_options(synchronize_session=False)
    )
    if voided.rowcount != 1:
        session.rollback()
        raise BadRequestError("Payment is already voided")

    restored = session.execute(
        update(FeeInvoice)
        .where(FeeInvoice.id == invoice_id, FeeInvoice.paid_amount >= amount_param)
        .values(
            paid_amount=FeeInvoice.paid_amount - amount_param,
            version=FeeInvoice.version + 1
        )
        .execution_options(synchronize_session=False)
    )
    if restored.rowcount != 1:
        session.rollback()
        logger.error(f"❌ Invoice {invoice_id} paid amount is below payment {payment_id}; ledger needs reconciling")
        raise ConflictError("Invoice paid amount is inconsistent with its payments")

    invoice = session.get(FeeInvoice, invoice_id, populate_existing=True)
    apply_derived_fields(invoice, today)
    session.commit()

    payment = session.get(FeePayment, payment_id, populate_existing=True)
    logger.info(f"Payment {payment.receipt_number} voided; invoice {invoice.invoice_number} status now {invoice.status.value}")
    return payment


# ===== INVOICE ADMINISTRATION =====

def _validate_items(items) -> list:
    if not items or not isinstance(items, (list, tuple)):
        raise ValidationError("Items", "at least one item is required")

    validated = []
    for position, data in enumerate(items):
        label = f"Item {position + 1}"
        if not isinstance(data, dict):
            raise ValidationError(label, "must be an object")
        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationError(f"{label} name", "is required")
        amount = FeeValidator.validate_amount(data.get('amount'), f"{label} amount")
        discount = FeeValidator.validate_amount(data.get('discount') or 0, f"{label} discount")
        if discount > amount:
            raise ValidationError(f"{label} discount", "cannot exceed the item amount")
        item_type = FeeValidator.validate_enum(
            data.get('type') or FeeComponentTypeEnum.OTHER, FeeComponentTypeEnum, f"{label} type"
        )
        validated.append({
            'position': position,
            'name': name,
            'item_type': item_type.value,
            'amount': amount,
            'discount': discount,
            'final_amount': amount - discount,
        })
    return validated


def _commit_invoice(session: Session, invoice: FeeInvoice):
    """Commit an administrative change; a concurrent payment bumps the version"""
    invoice_id = invoice.id
    try:
        session.commit()
    except StaleDataError:
        session.rollback()
        logger.warning(f"Invoice {invoice_id} changed while being edited")
        raise ConflictError("Invoice was modified by another request, please retry")


def update_invoice(session: Session, tenant_id: int, invoice_id: int, patch: dict, today: date = None) -> FeeInvoice:
    """
    Administrative edit of an unpaid invoice.
    Editable: due_date, discount (amount, reason, approved_by), late_fee,
    previous_due, items, remarks. The total is recomputed and must stay at or
    above the amount already paid.
    """
    patch = patch or {}
    derived = set(patch) & DERIVED_INVOICE_FIELDS
    if derived:
        raise ValidationError(sorted(derived)[0], "is derived and cannot be set directly")
    unknown = set(patch) - INVOICE_PATCH_FIELDS
    if unknown:
        raise ValidationError("Invoice", f"cannot update fields: {', '.join(sorted(unknown))}")

    invoice = get_invoice(session, tenant_id, invoice_id, for_update=True)
    if invoice.status == InvoiceStatusEnum.PAID:
        raise BadRequestError("Cannot modify paid invoice")
    if invoice.status == InvoiceStatusEnum.CANCELLED:
        raise BadRequestError("Cannot modify cancelled invoice")

    # Validate the whole patch before mutating anything
    due_date = FeeValidator.validate_date(patch['due_date'], "Due Date") if 'due_date' in patch else invoice.due_date
    late_fee = FeeValidator.validate_amount(patch['late_fee'], "Late Fee") if 'late_fee' in patch else to_money(invoice.late_fee)
    previous_due = FeeValidator.validate_amount(patch['previous_due'], "Previous Due") if 'previous_due' in patch else to_money(invoice.previous_due)
    items = _validate_items(patch['items']) if 'items' in patch else None

    discount = patch.get('discount')
    if discount is not None and not isinstance(discount, dict):
        raise ValidationError("Discount", "must be an object")
    discount_amount = to_money(invoice.discount_amount)
    if discount and 'amount' in discount:
        discount_amount = FeeValidator.validate_amount(discount['amount'], "Discount amount")

    subtotal = to_money(sum((i['final_amount'] for i in items), ZERO)) if items is not None else to_money(invoice.subtotal)
    total_amount = calculate_invoice_total(subtotal, discount_amount, late_fee, previous_due)
    if total_amount < 0:
        raise ValidationError("Discount amount", "cannot exceed the invoice amount")
    if total_amount < to_money(invoice.paid_amount):
        raise BadRequestError("Invoice total cannot be less than the amount already paid")

    if items is not None:
        invoice.items = [FeeInvoiceItem(**item) for item in items]
    invoice.subtotal = subtotal
    invoice.discount_amount = discount_amount
    if discount:
        if 'reason' in discount:
            invoice.discount_reason = discount['reason']
        if 'approved_by' in discount:
            invoice.discount_approved_by = discount['approved_by']
    invoice.late_fee = late_fee
    invoice.previous_due = previous_due
    invoice.total_amount = total_amount
    invoice.due_date = due_date
    if 'remarks' in patch:
        invoice.remarks = patch['remarks']

    apply_derived_fields(invoice, today)
    _commit_invoice(session, invoice)

    logger.info(f"Invoice {invoice.invoice_number} updated: total {invoice.total_amount}, status {invoice.status.value}")
    return invoice


def cancel_invoice(session: Session, tenant_id: int, invoice_id: int, reason: str = None, actor_id: int = None) -> FeeInvoice:
    invoice = get_invoice(session, tenant_id, invoice_id, for_update=True)
    if invoice.status == InvoiceStatusEnum.PAID:
        raise BadRequestError("Cannot cancel paid invoice")
    if invoice.status == InvoiceStatusEnum.CANCELLED:
        raise BadRequestError("Invoice is already cancelled")

    receipts = [r for (r,) in session.query(FeePayment.receipt_number).filter(
        FeePayment.invoice_id == invoice.id,
        FeePayment.status == PaymentStatusEnum.COMPLETED
    ).order_by(FeePayment.id).all()]
    if receipts:
        raise BadRequestError(
            "Cannot cancel an invoice with completed payments. "
            f"Void payment(s) {', '.join(receipts)} first, then cancel the invoice"
        )

    invoice.status = InvoiceStatusEnum.CANCELLED
    invoice.cancelled_at = datetime.utcnow()
    invoice.cancelled_by = actor_id
    invoice.cancellation_reason = reason
    apply_derived_fields(invoice)
    _commit_invoice(session, invoice)

    logger.info(f"Invoice {invoice.invoice_number} cancelled by user {actor_id}")
    return invoice


def issue_invoice(session: Session, tenant_id: int, invoice_id: int, today: date = None) -> FeeInvoice:
    """Release a draft invoice so it can be paid"""
    invoice = get_invoice(session, tenant_id, invoice_id, for_update=True)
    if invoice.status != InvoiceStatusEnum.DRAFT:
        raise BadRequestError("Only draft invoices can be issued")

    invoice.status = InvoiceStatusEnum.PENDING
    apply_derived_fields(invoice, today)
    _commit_invoice(session, invoice)

    logger.info(f"Invoice {invoice.invoice_number} issued with status {invoice.status.value}")
    return invoice


# ===== LEDGER MAINTENANCE =====

def reconcile_invoice(session: Session, tenant_id: int, invoice_id: int) -> dict:
    """Compare the invoice's paid amount with the sum of its completed payments"""
    invoice = get_invoice(session, tenant_id, invoice_id)
    payments_total = session.query(func.sum(FeePayment.amount)).filter(
        FeePayment.invoice_id == invoice.id,
        FeePayment.status == PaymentStatusEnum.COMPLETED
    ).scalar()
    payments_total = to_money(payments_total)
    paid_amount = to_money(invoice.paid_amount)
    due_amount = to_money(invoice.due_amount)
    total_amount = to_money(invoice.total_amount)

    return {
        'invoice_id': invoice.id,
        'invoice_number': invoice.invoice_number,
        'paid_amount': paid_amount,
        'payments_total': payments_total,
        'difference': paid_amount - payments_total,
        'consistent': paid_amount == payments_total and due_amount == total_amount - paid_amount,
    }


def refresh_invoice_statuses(session: Session, tenant_id: int = None, today: date = None) -> int:
    """
    Re-derive open invoices whose stored status went stale as the clock moved
    (pending invoices past their due date become overdue).
    Returns the number of invoices whose status changed.
    """
    query = session.query(FeeInvoice).filter(FeeInvoice.status.in_(OPEN_STATUSES))
    if tenant_id is not None:
        query = query.filter(FeeInvoice.tenant_id == tenant_id)
    invoice_ids = [row.id for row in query.with_entities(FeeInvoice.id).order_by(FeeInvoice.id).all()]

    changed = 0
    for invoice_id in invoice_ids:
        invoice = session.get(FeeInvoice, invoice_id, populate_existing=True)
        if invoice is None or invoice.status not in OPEN_STATUSES:
            continue
        previous = invoice.status
        apply_derived_fields(invoice, today)
        if invoice.status == previous:
            continue
        try:
            session.commit()
            changed += 1
        except StaleDataError:
            session.rollback()
            logger.warning(f"Invoice {invoice_id} changed during status refresh, skipped")

    logger.info(f"Status refresh{f' for tenant {tenant_id}' if tenant_id else ''}: {changed} invoice(s) changed")
    return changed
