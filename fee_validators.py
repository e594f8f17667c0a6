"""
Fee Validation Utilities
Error types shared by the fee billing helpers and the validators that guard
every write before anything touches the database
"""

import re
from datetime import datetime, date
from decimal import Decimal, InvalidOperation

from fee_models import (
    FeeComponentTypeEnum, FeeFrequencyEnum, PaymentMethodEnum, LateFeeTypeEnum,
    TWO_PLACES
)

# Largest single amount accepted; twelve monthly charges of many components
# still fit comfortably in int64 cents
MAX_AMOUNT = Decimal('10000000000.00')

ACADEMIC_YEAR_PATTERN = re.compile(r'^(\d{4})\s*[-/]?\s*(\d{2}|\d{4})$')


class FeeError(Exception):
    """Base class for every rejection raised by the fee billing helpers"""
    kind = 'fee_error'
    status_code = 400

    def __init__(self, message):
        self.message = message
        super().__init__(message)

    def to_dict(self):
        return {'success': False, 'error': self.kind, 'message': self.message}


class NotFoundError(FeeError):
    """Referenced record does not exist or belongs to another tenant"""
    kind = 'not_found'
    status_code = 404


class ValidationError(FeeError):
    """Custom exception for validation errors"""
    kind = 'validation_error'
    status_code = 422

    def __init__(self, field, message):
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self):
        data = super().to_dict()
        data['field'] = self.field
        return data


class BadRequestError(FeeError):
    kind = 'bad_request'
    status_code = 400


class ConflictError(FeeError):
    kind = 'conflict'
    status_code = 409


class FeeValidator:
    """Validates fee catalog, invoice and payment input"""

    COMPONENT_FIELDS = {'name', 'component_type', 'amount', 'frequency', 'is_mandatory', 'due_day'}

    @staticmethod
    def validate_amount(value, field_name="Amount", allow_zero=True):
        """
        Validate a monetary amount
        Args:
            value: Decimal, int or numeric string (floats are converted through str)
            field_name: Name of the field for error messages
            allow_zero: Whether 0 is acceptable
        Returns:
            Decimal with exactly two decimal places
        Raises:
            ValidationError if invalid
        """
        if value is None or value == '':
            raise ValidationError(field_name, "is required")
        if isinstance(value, bool):
            raise ValidationError(field_name, "must be a number")

        try:
            amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(field_name, "must be a number")

        if not amount.is_finite():
            raise ValidationError(field_name, "must be a number")

        if amount < 0:
            raise ValidationError(field_name, "cannot be negative")

        if amount > MAX_AMOUNT:
            raise ValidationError(field_name, f"is too large (maximum {MAX_AMOUNT})")

        try:
            rounded = amount.quantize(TWO_PLACES)
        except InvalidOperation:
            raise ValidationError(field_name, "must be a number")
        if rounded != amount:
            raise ValidationError(field_name, "cannot have more than 2 decimal places")

        if not allow_zero and amount == 0:
            raise ValidationError(field_name, "must be greater than zero")

        return rounded

    @staticmethod
    def validate_id(value, field_name="Id"):
        """Record ids arrive as path, query or JSON values; they must be positive integers"""
        if isinstance(value, bool):
            raise ValidationError(field_name, "must be a positive whole number")
        try:
            record_id = int(str(value).strip())
        except (TypeError, ValueError):
            raise ValidationError(field_name, "must be a positive whole number")
        if record_id < 1:
            raise ValidationError(field_name, "must be a positive whole number")
        return record_id

    @staticmethod
    def validate_percentage(value, field_name="Percentage"):
        """Validate a 0-100 percentage; None means no discount"""
        if value is None or value == '':
            return Decimal('0')

        try:
            rate = value if isinstance(value, Decimal) else Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValidationError(field_name, "must be a number")

        if not rate.is_finite() or rate < 0 or rate > 100:
            raise ValidationError(field_name, "must be between 0 and 100")

        return rate

    @staticmethod
    def validate_enum(value, enum_cls, field_name):
        """Accept an enum member, its value or its name (case-insensitive)"""
        if isinstance(value, enum_cls):
            return value
        if value is None or value == '':
            raise ValidationError(field_name, "is required")

        cleaned = str(value).strip().lower()
        for member in enum_cls:
            if member.value == cleaned or member.name.lower() == cleaned:
                return member

        allowed = ', '.join(m.value for m in enum_cls)
        raise ValidationError(field_name, f"must be one of: {allowed}")

    @staticmethod
    def validate_month(month):
        """Billing month is optional; when present it must be 1-12"""
        if month is None or month == '':
            return None
        try:
            month = int(month)
        except (TypeError, ValueError):
            raise ValidationError("Month", "must be a number between 1 and 12")
        if month < 1 or month > 12:
            raise ValidationError("Month", "must be a number between 1 and 12")
        return month

    @staticmethod
    def validate_date(value, field_name="Date", required=True):
        """Accept a date or a YYYY-MM-DD string"""
        if value is None or value == '':
            if required:
                raise ValidationError(field_name, "is required")
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        try:
            return datetime.strptime(str(value).strip(), '%Y-%m-%d').date()
        except ValueError:
            raise ValidationError(field_name, "must be in YYYY-MM-DD format")

    @staticmethod
    def validate_academic_year(academic_year):
        """
        Normalize an academic year to YYYY-YY
        2024-25, 2024/25, 2024-2025 and 202425 all become 2024-25
        """
        if not academic_year or not str(academic_year).strip():
            raise ValidationError("Academic Year", "is required")

        match = ACADEMIC_YEAR_PATTERN.match(str(academic_year).strip())
        if not match:
            raise ValidationError("Academic Year", "must be in YYYY-YY format, e.g. 2024-25")

        start, end = int(match.group(1)), int(match.group(2))
        expected_end = start + 1 if len(match.group(2)) == 4 else (start + 1) % 100
        if end != expected_end:
            raise ValidationError("Academic Year", "must span two consecutive years, e.g. 2024-25")

        return f"{start}-{(start + 1) % 100:02d}"

    @staticmethod
    def validate_component(data, position):
        """
        Validate one fee component definition
        Args:
            data: Dictionary with name, component_type, amount, frequency,
                  is_mandatory and due_day
            position: Index of the component, used in error messages
        Returns:
            Dictionary of validated and cleaned data
        Raises:
            ValidationError on first validation failure
        """
        label = f"Component {position + 1}"
        if not isinstance(data, dict):
            raise ValidationError(label, "must be an object")

        unknown = set(data) - FeeValidator.COMPONENT_FIELDS
        if unknown:
            raise ValidationError(label, f"unknown fields: {', '.join(sorted(unknown))}")

        name = (data.get('name') or '').strip()
        if not name:
            raise ValidationError(f"{label} name", "is required")
        if len(name) > 100:
            raise ValidationError(f"{label} name", "must not exceed 100 characters")

        due_day = data.get('due_day', 10)
        try:
            due_day = int(due_day)
        except (TypeError, ValueError):
            raise ValidationError(f"{label} due day", "must be a number between 1 and 28")
        if due_day < 1 or due_day > 28:
            raise ValidationError(f"{label} due day", "must be a number between 1 and 28")

        return {
            'name': name,
            'component_type': FeeValidator.validate_enum(
                data.get('component_type') or FeeComponentTypeEnum.OTHER,
                FeeComponentTypeEnum, f"{label} type"
            ),
            'amount': FeeValidator.validate_amount(data.get('amount'), f"{label} amount"),
            'frequency': FeeValidator.validate_enum(
                data.get('frequency') or FeeFrequencyEnum.MONTHLY,
                FeeFrequencyEnum, f"{label} frequency"
            ),
            'is_mandatory': bool(data.get('is_mandatory', True)),
            'due_day': due_day,
        }

    @staticmethod
    def validate_components(components):
        if not components:
            raise ValidationError("Components", "at least one fee component is required")
        if not isinstance(components, (list, tuple)):
            raise ValidationError("Components", "must be a list")
        return [FeeValidator.validate_component(c, i) for i, c in enumerate(components)]

    @staticmethod
    def validate_late_fee(data):
        """Late fee settings are stored on the structure, all keys optional"""
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValidationError("Late Fee", "must be an object")

        validated = {}
        if 'applicable' in data:
            validated['late_fee_applicable'] = bool(data['applicable'])
        if 'type' in data:
            validated['late_fee_type'] = FeeValidator.validate_enum(data['type'], LateFeeTypeEnum, "Late Fee type")
        if 'amount' in data:
            validated['late_fee_amount'] = FeeValidator.validate_amount(data['amount'], "Late Fee amount")
        if 'grace_period_days' in data:
            try:
                grace = int(data['grace_period_days'])
            except (TypeError, ValueError):
                raise ValidationError("Grace Period", "must be a whole number of days")
            if grace < 0:
                raise ValidationError("Grace Period", "cannot be negative")
            validated['grace_period_days'] = grace
        return validated

    @staticmethod
    def validate_payment_method(value):
        return FeeValidator.validate_enum(value, PaymentMethodEnum, "Payment Method")

    @staticmethod
    def validate_free_form(value, field_name):
        """Payment details and payer info are free-form JSON objects"""
        if value is None:
            return None
        if not isinstance(value, dict):
            raise ValidationError(field_name, "must be an object")
        return value
