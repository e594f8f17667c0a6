"""
Fee Management Models for Multi-Tenant School Management System
This file contains all fee billing models: fee structures and their components,
invoices with their line items, and payments recorded against invoices
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, Date, Enum, BigInteger, Index, UniqueConstraint, JSON, Table, TypeDecorator
from sqlalchemy.orm import relationship
from datetime import datetime, date
from decimal import Decimal, ROUND_HALF_UP
from models import Base
import enum


TWO_PLACES = Decimal('0.01')
ZERO = Decimal('0.00')


def to_money(value) -> Decimal:
    """Convert to a Decimal rounded half-up to two places"""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


class Money(TypeDecorator):
    """
    Money column stored as integer minor units (cents).

    Python side always sees a two-place Decimal, the database only ever adds
    and compares integers, so repeated payments cannot drift.
    """

    impl = BigInteger
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return int(to_money(value) * 100)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return (Decimal(int(value)) / 100).quantize(TWO_PLACES)


# ===== ENUMS =====

class FeeComponentTypeEnum(enum.Enum):
    TUITION = "tuition"
    ADMISSION = "admission"
    EXAM = "exam"
    LIBRARY = "library"
    TRANSPORT = "transport"
    HOSTEL = "hostel"
    SPORTS = "sports"
    LAB = "lab"
    COMPUTER = "computer"
    OTHER = "other"


class FeeFrequencyEnum(enum.Enum):
    ONE_TIME = "one_time"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    HALF_YEARLY = "half_yearly"
    YEARLY = "yearly"


class LateFeeTypeEnum(enum.Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"


class InvoicePeriodEnum(enum.Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    HALF_YEARLY = "half_yearly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class InvoiceStatusEnum(enum.Enum):
    DRAFT = "draft"
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class PaymentMethodEnum(enum.Enum):
    CASH = "cash"
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"
    ONLINE = "online"
    UPI = "upi"
    OTHER = "other"


class PaymentStatusEnum(enum.Enum):
    COMPLETED = "completed"
    VOIDED = "voided"


def _enum_values(obj):
    return [e.value for e in obj]


# ===== FEE STRUCTURE MODELS =====

fee_structure_classes = Table(
    'fee_structure_classes',
    Base.metadata,
    Column('fee_structure_id', BigInteger, ForeignKey('fee_structures.id', ondelete='CASCADE'), primary_key=True),
    Column('class_id', Integer, ForeignKey('classes.id', ondelete='CASCADE'), primary_key=True),
)


class FeeStructure(Base):
    """Fee catalog for one academic year, applicable to a set of classes"""
    __tablename__ = 'fee_structures'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'academic_year', 'name', name='unique_tenant_year_structure_name'),
        Index('idx_fee_struct_tenant_year', 'tenant_id', 'academic_year'),
        Index('idx_fee_struct_active', 'is_active'),
    )

    id = Column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    name = Column(String(200), nullable=False)
    academic_year = Column(String(20), nullable=False)  # e.g. "2024-25"
    description = Column(Text, nullable=True)

    # Derived from the components, see fee_helpers.calculate_annual_total
    annual_total = Column(Money, nullable=False, default=ZERO)

    # Late fee settings, stored only
    late_fee_applicable = Column(Boolean, default=True)
    late_fee_type = Column(Enum(LateFeeTypeEnum, values_callable=_enum_values), default=LateFeeTypeEnum.FIXED)
    late_fee_amount = Column(Money, default=Decimal('50.00'))
    grace_period_days = Column(Integer, default=7)

    is_active = Column(Boolean, default=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant")
    classes = relationship("Class", secondary=fee_structure_classes)
    components = relationship(
        "FeeStructureComponent", back_populates="structure",
        cascade="all, delete-orphan", order_by="FeeStructureComponent.position"
    )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'academic_year': self.academic_year,
            'description': self.description,
            'class_ids': [c.id for c in self.classes],
            'components': [c.to_dict() for c in self.components],
            'annual_total': self.annual_total,
            'late_fee': {
                'applicable': self.late_fee_applicable,
                'type': self.late_fee_type.value if self.late_fee_type else None,
                'amount': self.late_fee_amount,
                'grace_period_days': self.grace_period_days,
            },
            'is_active': self.is_active,
            'created_by': self.created_by,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<FeeStructure {self.name} ({self.academic_year})>"


class FeeStructureComponent(Base):
    """Individual fee component within a fee structure"""
    __tablename__ = 'fee_structure_components'
    __table_args__ = (
        Index('idx_fee_component_structure', 'fee_structure_id'),
    )

    id = Column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    fee_structure_id = Column(BigInteger, ForeignKey('fee_structures.id', ondelete='CASCADE'), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    name = Column(String(100), nullable=False)
    component_type = Column(Enum(FeeComponentTypeEnum, values_callable=_enum_values), nullable=False, default=FeeComponentTypeEnum.OTHER)
    amount = Column(Money, nullable=False, default=ZERO)
    frequency = Column(Enum(FeeFrequencyEnum, values_callable=_enum_values), nullable=False, default=FeeFrequencyEnum.MONTHLY)
    is_mandatory = Column(Boolean, default=True)
    due_day = Column(Integer, default=10)  # Day of month, 1-28

    # Relationships
    structure = relationship("FeeStructure", back_populates="components")

    def to_dict(self):
        return {
            'name': self.name,
            'component_type': self.component_type.value,
            'amount': self.amount,
            'frequency': self.frequency.value,
            'is_mandatory': self.is_mandatory,
            'due_day': self.due_day,
        }

    def __repr__(self):
        return f"<FeeStructureComponent {self.name}: {self.amount} {self.frequency.value}>"


# ===== INVOICE MODELS =====

class FeeInvoice(Base):
    """Fee invoice for one student and one billing period"""
    __tablename__ = 'fee_invoices'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'student_id', 'academic_year', 'month', name='unique_tenant_student_period'),
        UniqueConstraint('tenant_id', 'invoice_number', name='unique_tenant_invoice_number'),
        Index('idx_invoice_tenant', 'tenant_id'),
        Index('idx_invoice_student', 'tenant_id', 'student_id', 'academic_year'),
        Index('idx_invoice_structure', 'fee_structure_id'),
        Index('idx_invoice_status_due', 'status', 'due_date'),
    )

    id = Column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    invoice_number = Column(String(50), nullable=False)
    student_id = Column(Integer, ForeignKey('students.id', ondelete='CASCADE'), nullable=False)
    fee_structure_id = Column(BigInteger, ForeignKey('fee_structures.id'), nullable=True)

    # Billing period; month 0 marks a non-periodic invoice so the unique key still applies
    academic_year = Column(String(20), nullable=False)
    month = Column(Integer, nullable=False, default=0)
    period = Column(Enum(InvoicePeriodEnum, values_callable=_enum_values), default=InvoicePeriodEnum.MONTHLY)

    # Amounts
    subtotal = Column(Money, nullable=False, default=ZERO)
    discount_amount = Column(Money, nullable=False, default=ZERO)
    discount_reason = Column(Text, nullable=True)
    discount_approved_by = Column(Integer, nullable=True)
    late_fee = Column(Money, nullable=False, default=ZERO)
    previous_due = Column(Money, nullable=False, default=ZERO)
    total_amount = Column(Money, nullable=False, default=ZERO)
    paid_amount = Column(Money, nullable=False, default=ZERO)
    due_amount = Column(Money, nullable=False, default=ZERO)  # Derived, see fee_helpers.derive_status

    # Status and dates
    due_date = Column(Date, nullable=False)
    status = Column(Enum(InvoiceStatusEnum, values_callable=_enum_values), nullable=False, default=InvoiceStatusEnum.PENDING)
    generated_at = Column(DateTime, default=datetime.utcnow)
    generated_by = Column(Integer, nullable=True)

    # Cancellation
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(Integer, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    # Metadata
    remarks = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = {'version_id_col': version}

    # Relationships
    tenant = relationship("Tenant")
    student = relationship("Student")
    fee_structure = relationship("FeeStructure")
    items = relationship(
        "FeeInvoiceItem", back_populates="invoice",
        cascade="all, delete-orphan", order_by="FeeInvoiceItem.position"
    )
    payments = relationship("FeePayment", back_populates="invoice", order_by="FeePayment.id")

    def to_dict(self, include_payments=False):
        data = {
            'id': self.id,
            'invoice_number': self.invoice_number,
            'student_id': self.student_id,
            'fee_structure_id': self.fee_structure_id,
            'academic_year': self.academic_year,
            'month': self.month or None,
            'period': self.period.value if self.period else None,
            'items': [item.to_dict() for item in self.items],
            'subtotal': self.subtotal,
            'discount': {
                'amount': self.discount_amount,
                'reason': self.discount_reason,
                'approved_by': self.discount_approved_by,
            },
            'late_fee': self.late_fee,
            'previous_due': self.previous_due,
            'total_amount': self.total_amount,
            'paid_amount': self.paid_amount,
            'due_amount': self.due_amount,
            'due_date': self.due_date.isoformat() if self.due_date else None,
            'status': self.status.value,
            'generated_at': self.generated_at.isoformat() if self.generated_at else None,
            'generated_by': self.generated_by,
            'cancelled_at': self.cancelled_at.isoformat() if self.cancelled_at else None,
            'cancellation_reason': self.cancellation_reason,
            'remarks': self.remarks,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_payments:
            data['payments'] = [p.to_dict() for p in self.payments]
        return data

    def __repr__(self):
        return f"<FeeInvoice {self.invoice_number} total={self.total_amount} status={self.status.value}>"


class FeeInvoiceItem(Base):
    """Line item copied from a fee component at generation time"""
    __tablename__ = 'fee_invoice_items'
    __table_args__ = (
        Index('idx_invoice_item_invoice', 'invoice_id'),
    )

    id = Column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    invoice_id = Column(BigInteger, ForeignKey('fee_invoices.id', ondelete='CASCADE'), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    name = Column(String(100), nullable=False)
    item_type = Column(String(20), nullable=False, default=FeeComponentTypeEnum.OTHER.value)
    amount = Column(Money, nullable=False, default=ZERO)
    discount = Column(Money, nullable=False, default=ZERO)
    final_amount = Column(Money, nullable=False, default=ZERO)

    # Relationships
    invoice = relationship("FeeInvoice", back_populates="items")

    def to_dict(self):
        return {
            'name': self.name,
            'type': self.item_type,
            'amount': self.amount,
            'discount': self.discount,
            'final_amount': self.final_amount,
        }

    def __repr__(self):
        return f"<FeeInvoiceItem {self.name}: {self.final_amount}>"


# ===== PAYMENT MODEL =====

class FeePayment(Base):
    """Payment recorded against an invoice; append-only apart from voiding"""
    __tablename__ = 'fee_payments'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'receipt_number', name='unique_tenant_receipt_number'),
        UniqueConstraint('tenant_id', 'idempotency_key', name='unique_tenant_idempotency_key'),
        Index('idx_payment_tenant_student', 'tenant_id', 'student_id'),
        Index('idx_payment_invoice', 'invoice_id'),
        Index('idx_payment_date', 'payment_date'),
    )

    id = Column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    student_id = Column(Integer, ForeignKey('students.id', ondelete='CASCADE'), nullable=False)
    invoice_id = Column(BigInteger, ForeignKey('fee_invoices.id'), nullable=False)
    receipt_number = Column(String(50), nullable=False)

    amount = Column(Money, nullable=False)
    payment_method = Column(Enum(PaymentMethodEnum, values_callable=_enum_values), nullable=False)
    payment_details = Column(JSON, nullable=True)  # transaction id, bank, cheque number, ...
    paid_by = Column(JSON, nullable=True)  # name, relation, phone
    payment_date = Column(Date, nullable=False, default=date.today)
    status = Column(Enum(PaymentStatusEnum, values_callable=_enum_values), nullable=False, default=PaymentStatusEnum.COMPLETED)
    idempotency_key = Column(String(100), nullable=True)

    # User tracking
    collected_by = Column(Integer, nullable=True)
    voided_by = Column(Integer, nullable=True)
    voided_at = Column(DateTime, nullable=True)
    void_reason = Column(Text, nullable=True)

    remarks = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant")
    student = relationship("Student")
    invoice = relationship("FeeInvoice", back_populates="payments")

    def to_dict(self):
        return {
            'id': self.id,
            'receipt_number': self.receipt_number,
            'invoice_id': self.invoice_id,
            'student_id': self.student_id,
            'amount': self.amount,
            'payment_method': self.payment_method.value,
            'payment_details': self.payment_details,
            'paid_by': self.paid_by,
            'payment_date': self.payment_date.isoformat() if self.payment_date else None,
            'status': self.status.value,
            'collected_by': self.collected_by,
            'voided_at': self.voided_at.isoformat() if self.voided_at else None,
            'void_reason': self.void_reason,
            'remarks': self.remarks,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<FeePayment {self.receipt_number} amount={self.amount}>"
