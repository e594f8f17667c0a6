"""
Fee Management Helper Functions
Contains the fee catalog, invoice status derivation and bulk invoice generation
"""

from datetime import datetime, date
from decimal import Decimal
import logging

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import Class
from fee_models import (
    FeeStructure, FeeStructureComponent, FeeInvoice, FeeInvoiceItem,
    FeeFrequencyEnum, InvoiceStatusEnum, InvoicePeriodEnum,
    to_money, ZERO
)
from fee_validators import (
    FeeError, NotFoundError, ValidationError, BadRequestError, ConflictError,
    FeeValidator
)
from cohort_helpers import resolve_cohort

logger = logging.getLogger(__name__)


FREQUENCY_MULTIPLIERS = {
    FeeFrequencyEnum.ONE_TIME: 1,
    FeeFrequencyEnum.MONTHLY: 12,
    FeeFrequencyEnum.QUARTERLY: 4,
    FeeFrequencyEnum.HALF_YEARLY: 2,
    FeeFrequencyEnum.YEARLY: 1,
}

# Periodic runs only bill components that recur every period or happen once
BILLABLE_FREQUENCIES = (FeeFrequencyEnum.MONTHLY, FeeFrequencyEnum.ONE_TIME)

# Statuses that derive_status never moves out of
HELD_STATUSES = (InvoiceStatusEnum.CANCELLED, InvoiceStatusEnum.DRAFT)


def _field(obj, key):
    """Read a component field from either a dict or a model instance"""
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key)


# ===== NUMBER GENERATION =====

def generate_invoice_number(academic_year: str, month: int, student_id: int, prefix: str = None) -> str:
    """
    Generate invoice number in format: FEE-<year>-<MM>-<student>
    Example: FEE-202425-07-000123

    Derived from the billing period and the student. Academic years are
    normalized to YYYY-YY first, so the number is unique per tenant exactly
    when the (student, academic year, month) key is.
    """
    prefix = prefix or Config.INVOICE_NUMBER_PREFIX
    year_code = FeeValidator.validate_academic_year(academic_year).replace('-', '')
    return f"{prefix}-{year_code}-{(month or 0):02d}-{student_id:06d}"


# ===== FEE CALCULATION HELPERS =====

def calculate_annual_total(components) -> Decimal:
    """annual total = sum of amount x frequency multiplier"""
    total = ZERO
    for component in components:
        frequency = _field(component, 'frequency')
        total += to_money(_field(component, 'amount')) * FREQUENCY_MULTIPLIERS[frequency]
    return to_money(total)


def calculate_line_discount(amount, rate) -> tuple:
    """
    Apply a percentage discount to one line.
    Returns (discount, final_amount); discount is rounded half-up to cents and
    final_amount is never negative.
    """
    amount = to_money(amount)
    discount = to_money(amount * Decimal(rate) / 100) if rate else ZERO
    final_amount = amount - discount
    if final_amount < 0:
        final_amount = ZERO
    return discount, to_money(final_amount)


def calculate_invoice_total(subtotal, discount_amount=ZERO, late_fee=ZERO, previous_due=ZERO) -> Decimal:
    return to_money(to_money(subtotal) - to_money(discount_amount) + to_money(late_fee) + to_money(previous_due))


def derive_status(invoice, today: date = None) -> tuple:
    """
    Derive (due_amount, status) from total_amount, paid_amount and due_date.

    Pure: reads the invoice, never writes it. Cancelled and draft invoices keep
    their status; their due amount is still derived.
    """
    today = today or date.today()
    total_amount = to_money(invoice.total_amount)
    paid_amount = to_money(invoice.paid_amount)
    due_amount = total_amount - paid_amount

    current = invoice.status
    if current in HELD_STATUSES:
        return due_amount, current

    if due_amount <= 0:
        status = InvoiceStatusEnum.PAID
    elif paid_amount > 0:
        status = InvoiceStatusEnum.PARTIAL
    elif invoice.due_date and today > invoice.due_date:
        status = InvoiceStatusEnum.OVERDUE
    else:
        status = InvoiceStatusEnum.PENDING
    return due_amount, status


def apply_derived_fields(invoice, today: date = None):
    """Write the derived due_amount and status onto the invoice"""
    invoice.due_amount, invoice.status = derive_status(invoice, today)
    return invoice


# ===== FEE STRUCTURE HELPERS =====

def get_structure(session: Session, tenant_id: int, structure_id: int) -> FeeStructure:
    structure = session.query(FeeStructure).filter_by(id=structure_id, tenant_id=tenant_id).first()
    if not structure:
        raise NotFoundError("Fee structure not found")
    return structure


def list_structures(session: Session, tenant_id: int, academic_year: str = None, class_id: int = None) -> list:
    query = session.query(FeeStructure).filter_by(tenant_id=tenant_id)
    if academic_year:
        query = query.filter_by(academic_year=FeeValidator.validate_academic_year(academic_year))
    if class_id:
        query = query.filter(FeeStructure.classes.any(Class.id == class_id))
    return query.order_by(FeeStructure.created_at.desc(), FeeStructure.id.desc()).all()


def _load_classes(session: Session, tenant_id: int, class_ids) -> list:
    if not class_ids:
        return []
    try:
        wanted = {int(cid) for cid in class_ids}
    except (TypeError, ValueError):
        raise ValidationError("Classes", "must be a list of class ids")

    classes = session.query(Class).filter(Class.tenant_id == tenant_id, Class.id.in_(wanted)).all()
    missing = wanted - {c.id for c in classes}
    if missing:
        raise ValidationError("Classes", f"unknown class ids: {', '.join(str(m) for m in sorted(missing))}")
    return classes


def _set_components(structure: FeeStructure, tenant_id: int, validated: list):
    structure.components = [
        FeeStructureComponent(tenant_id=tenant_id, position=position, **data)
        for position, data in enumerate(validated)
    ]
    structure.annual_total = calculate_annual_total(validated)


def _ensure_unique_name(session: Session, tenant_id: int, academic_year: str, name: str, exclude_id: int = None):
    query = session.query(FeeStructure.id).filter_by(tenant_id=tenant_id, academic_year=academic_year, name=name)
    if exclude_id:
        query = query.filter(FeeStructure.id != exclude_id)
    if query.first():
        raise ConflictError(f"Fee structure '{name}' already exists for {academic_year}")


def define_structure(session: Session, tenant_id: int, academic_year: str, components: list,
                     name: str = None, class_ids: list = None, late_fee: dict = None,
                     description: str = None, created_by: int = None, commit: bool = True) -> FeeStructure:
    """Validate and persist a new fee structure with its derived annual total"""
    academic_year = FeeValidator.validate_academic_year(academic_year)
    validated = FeeValidator.validate_components(components)
    late_fee_fields = FeeValidator.validate_late_fee(late_fee)

    name = (name or '').strip() or f"Fee Structure {academic_year}"
    _ensure_unique_name(session, tenant_id, academic_year, name)

    structure = FeeStructure(
        tenant_id=tenant_id,
        name=name,
        academic_year=academic_year,
        description=description,
        created_by=created_by,
        **late_fee_fields
    )
    structure.classes = _load_classes(session, tenant_id, class_ids)
    _set_components(structure, tenant_id, validated)

    session.add(structure)
    try:
        session.flush()
    except IntegrityError:
        session.rollback()
        raise ConflictError(f"Fee structure '{name}' already exists for {academic_year}")

    if commit:
        session.commit()
        logger.info(f"Fee structure {structure.id} '{name}' defined for tenant {tenant_id} (annual total {structure.annual_total})")
    return structure


STRUCTURE_PATCH_FIELDS = {'name', 'academic_year', 'description', 'components', 'class_ids', 'late_fee', 'is_active'}


def update_structure(session: Session, tenant_id: int, structure_id: int, patch: dict) -> FeeStructure:
    """Apply a partial update; components, when given, replace the whole list"""
    structure = get_structure(session, tenant_id, structure_id)

    patch = patch or {}
    unknown = set(patch) - STRUCTURE_PATCH_FIELDS
    if unknown:
        raise ValidationError("Fee Structure", f"cannot update fields: {', '.join(sorted(unknown))}")

    # Validate everything before touching the structure
    academic_year = FeeValidator.validate_academic_year(patch['academic_year']) if 'academic_year' in patch else structure.academic_year
    name = structure.name
    if 'name' in patch:
        name = (patch['name'] or '').strip()
        if not name:
            raise ValidationError("Name", "is required")
    validated = FeeValidator.validate_components(patch['components']) if 'components' in patch else None
    late_fee_fields = FeeValidator.validate_late_fee(patch.get('late_fee'))
    classes = _load_classes(session, tenant_id, patch['class_ids']) if 'class_ids' in patch else None

    if name != structure.name or academic_year != structure.academic_year:
        _ensure_unique_name(session, tenant_id, academic_year, name, exclude_id=structure.id)

    structure.name = name
    structure.academic_year = academic_year
    if 'description' in patch:
        structure.description = patch['description']
    if 'is_active' in patch:
        structure.is_active = bool(patch['is_active'])
    for key, value in late_fee_fields.items():
        setattr(structure, key, value)
    if classes is not None:
        structure.classes = classes
    if validated is not None:
        _set_components(structure, tenant_id, validated)
    else:
        structure.annual_total = calculate_annual_total(structure.components)

    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ConflictError(f"Fee structure '{name}' already exists for {academic_year}")

    logger.info(f"Fee structure {structure.id} updated for tenant {tenant_id} (annual total {structure.annual_total})")
    return structure


def delete_structure(session: Session, tenant_id: int, structure_id: int):
    """Delete a fee structure if no invoice was generated from it"""
    structure = get_structure(session, tenant_id, structure_id)

    invoice_count = session.query(FeeInvoice).filter_by(fee_structure_id=structure.id).count()
    if invoice_count > 0:
        raise ConflictError(
            f"Cannot delete fee structure: {invoice_count} invoice(s) were generated from it. Deactivate it instead."
        )

    session.delete(structure)
    session.commit()
    logger.info(f"Fee structure {structure_id} deleted for tenant {tenant_id}")


# ===== INVOICE GENERATION =====

def select_billable_components(components) -> list:
    return [c for c in components if _field(c, 'frequency') in BILLABLE_FREQUENCIES]


def build_invoice_items(components, rate) -> list:
    """Turn billable components into invoice line dicts with the student's discount"""
    items = []
    for component in components:
        discount, final_amount = calculate_line_discount(_field(component, 'amount'), rate)
        items.append({
            'name': _field(component, 'name'),
            'item_type': _field(component, 'component_type').value,
            'amount': to_money(_field(component, 'amount')),
            'discount': discount,
            'final_amount': final_amount,
        })
    return items


def default_due_date(components, today: date = None) -> date:
    """Earliest component due day on or after today"""
    today = today or date.today()
    due_days = [_field(c, 'due_day') for c in components if _field(c, 'due_day')]
    due_day = min(due_days) if due_days else 10
    candidate = today + relativedelta(day=due_day)
    if candidate < today:
        candidate += relativedelta(months=1)
    return candidate


def _invoice_exists(session: Session, tenant_id: int, student_id: int, academic_year: str, month_key: int) -> bool:
    return session.query(FeeInvoice.id).filter_by(
        tenant_id=tenant_id,
        student_id=student_id,
        academic_year=academic_year,
        month=month_key
    ).first() is not None


def _build_invoice(tenant_id, structure_id, academic_year, month, student_id, rate, components,
                   due_date, generated_by, draft, today) -> FeeInvoice:
    rate = FeeValidator.validate_percentage(rate, "Scholarship percentage")
    items = build_invoice_items(components, rate)
    subtotal = to_money(sum((item['final_amount'] for item in items), ZERO))

    invoice = FeeInvoice(
        tenant_id=tenant_id,
        invoice_number=generate_invoice_number(academic_year, month, student_id),
        student_id=student_id,
        fee_structure_id=structure_id,
        academic_year=academic_year,
        month=month or 0,
        period=InvoicePeriodEnum.MONTHLY if month else InvoicePeriodEnum.CUSTOM,
        items=[FeeInvoiceItem(position=i, **item) for i, item in enumerate(items)],
        subtotal=subtotal,
        discount_amount=ZERO,
        late_fee=ZERO,
        previous_due=ZERO,
        total_amount=calculate_invoice_total(subtotal),
        paid_amount=ZERO,
        due_date=due_date,
        status=InvoiceStatusEnum.DRAFT if draft else InvoiceStatusEnum.PENDING,
        generated_at=datetime.utcnow(),
        generated_by=generated_by
    )
    return apply_derived_fields(invoice, today)


def generate_invoices(session: Session, tenant_id: int, structure_id: int, month: int = None,
                      due_date=None, academic_year: str = None, class_name: str = None,
                      section: str = None, generated_by: int = None, draft: bool = False,
                      cancel_event=None, today: date = None) -> dict:
    """
    Generate one invoice per active student of the cohort for a billing period.

    Students already invoiced for (academic year, month) are skipped. Each
    student's invoice is committed on its own, so a failing student, or a
    cancellation through cancel_event, leaves earlier invoices in place.

    Returns:
        dict with generated (list of FeeInvoice), skipped (int),
        errors (list of dicts) and cancelled (bool)
    """
    today = today or date.today()
    structure = get_structure(session, tenant_id, structure_id)
    month = FeeValidator.validate_month(month)

    if academic_year and FeeValidator.validate_academic_year(academic_year) != structure.academic_year:
        raise ValidationError(
            "Academic Year",
            f"does not match the fee structure's academic year ({structure.academic_year})"
        )
    if not structure.is_active:
        raise BadRequestError("Fee structure is inactive")

    # Snapshot everything needed per student; a per-student rollback expires ORM state
    academic_year = structure.academic_year
    structure_id = structure.id
    components = [
        {
            'name': c.name,
            'component_type': c.component_type,
            'amount': c.amount,
            'frequency': c.frequency,
            'due_day': c.due_day,
        }
        for c in select_billable_components(structure.components)
    ]
    if not components:
        raise ValidationError("Fee Structure", "has no monthly or one-time components to bill")

    if due_date in (None, ''):
        due_date = default_due_date(components, today)
    else:
        due_date = FeeValidator.validate_date(due_date, "Due Date")

    class_ids = None if class_name else [c.id for c in structure.classes]
    roster = [
        (student.id, student.scholarship_percentage)
        for student in resolve_cohort(session, tenant_id, class_name=class_name, section=section, class_ids=class_ids)
    ]

    month_key = month or 0
    generated = []
    errors = []
    skipped = 0
    cancelled = False

    for student_id, rate in roster:
        if cancel_event is not None and cancel_event.is_set():
            cancelled = True
            logger.warning(f"Invoice generation for structure {structure_id} cancelled after {len(generated)} invoice(s)")
            break

        try:
            if _invoice_exists(session, tenant_id, student_id, academic_year, month_key):
                skipped += 1
                continue

            invoice = _build_invoice(
                tenant_id, structure_id, academic_year, month, student_id, rate,
                components, due_date, generated_by, draft, today
            )
            session.add(invoice)
            session.commit()
            generated.append(invoice)

        except IntegrityError:
            # Lost the race to a concurrent run; the unique key decides
            session.rollback()
            if _invoice_exists(session, tenant_id, student_id, academic_year, month_key):
                skipped += 1
            else:
                logger.exception(f"Integrity error generating invoice for student {student_id}")
                errors.append({'account_id': student_id, 'error': 'integrity_error',
                               'message': 'Invoice could not be saved'})

        except FeeError as e:
            session.rollback()
            logger.warning(f"Skipping student {student_id}: {e.message}")
            errors.append({'account_id': student_id, 'error': e.kind, 'message': e.message})

        except Exception:
            session.rollback()
            logger.exception(f"Error generating invoice for student {student_id}")
            errors.append({'account_id': student_id, 'error': 'internal_error',
                           'message': 'Invoice could not be generated'})

    logger.info(
        f"Invoice generation for tenant {tenant_id}, structure {structure_id}, "
        f"{academic_year}/{month_key:02d}: {len(generated)} generated, {skipped} skipped, "
        f"{len(errors)} failed{' (cancelled)' if cancelled else ''}"
    )

    return {
        'generated': generated,
        'skipped': skipped,
        'errors': errors,
        'cancelled': cancelled,
    }
