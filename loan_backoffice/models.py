"""
Data Model Module

Records exchanged with the record store: loan applications, loans,
installments and payment receipts. Monetary values are Decimal in memory and
Decimal strings on the wire; statuses are closed enums.
"""

from dataclasses import dataclass, field, fields
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Type, TypeVar
import json

from .errors import InvalidFrequencyError, ValidationError
from .money import ZERO, optional_decimal, to_decimal


class ApplicationStatus(Enum):
    """Loan application workflow statuses"""
    CREATED = "created"              # Drafted, not yet submitted
    PENDING = "pending"              # Submitted, awaiting review
    VERIFICATION = "verification"    # Documents under review
    APPROVED = "approved"            # Loan created, application frozen
    DECLINED = "declined"            # Declined with a reason
    REJECTED = "rejected"            # Administrative override


class LoanStatus(Enum):
    """Loan lifecycle states"""
    RUNNING = "running"
    COMPLETED = "completed"
    TERMINATED = "terminated"


class InstallmentStatus(Enum):
    """Installment payment states"""
    PENDING = "pending"
    PAID = "paid"
    PARTIAL = "partial"
    OVERDUE = "overdue"


class ReceiptStatus(Enum):
    """Payment receipt review states"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RepaymentFrequency(Enum):
    """How often installments fall due"""
    MONTHLY = "monthly"
    BI_WEEKLY = "bi-weekly"
    WEEKLY = "weekly"
    DAILY = "daily"

    @property
    def installments_per_month(self) -> int:
        """Number of installments falling due per month of tenure"""
        return {
            RepaymentFrequency.MONTHLY: 1,
            RepaymentFrequency.BI_WEEKLY: 2,
            RepaymentFrequency.WEEKLY: 4,
            RepaymentFrequency.DAILY: 30,
        }[self]

    @classmethod
    def parse(cls, value: Any) -> 'RepaymentFrequency':
        """Parse a frequency, accepting the spellings seen in stored data"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower().replace("_", "-")
            if normalized == "biweekly":
                normalized = "bi-weekly"
            for member in cls:
                if member.value == normalized:
                    return member
        raise InvalidFrequencyError(value)


E = TypeVar('E', bound=Enum)
R = TypeVar('R', bound='StoreRecord')


def parse_enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    """Convert a stored string into a closed enum"""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"Invalid {field_name} '{value}'. Allowed: {allowed}",
            {"field": field_name, "value": value},
        )


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO timestamps as returned by the record store"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_date(value: Any) -> Optional[date]:
    """Parse a calendar date; timestamps are truncated to their date"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_int(value: Any, field_name: str) -> Optional[int]:
    """Parse integers that may be stored as strings (tenure is stored as "3")"""
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        raise ValidationError(f"{field_name} must be an integer, got {value!r}",
                              {"field": field_name})


def parse_user_data(value: Any) -> Dict[str, Any]:
    """Applicant data blob; older rows store it as a JSON string"""
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str) and value.strip():
        try:
            parsed = json.loads(value)
        except ValueError:
            raise ValidationError("user_data is not valid JSON", {"field": "user_data"})
        return parsed if isinstance(parsed, dict) else {}
    return {}


def serialize_value(value: Any) -> Any:
    """Convert a python value into its JSON wire form"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


@dataclass
class StoreRecord:
    """Base class for records kept in the remote record store"""
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            # Unset store-managed columns are left for the store to fill in
            if value is None and f.name in ('id', 'created_at', 'updated_at'):
                continue
            result[f.name] = serialize_value(value)
        return result

    @classmethod
    def converters(cls) -> Dict[str, Any]:
        return {'created_at': parse_datetime, 'updated_at': parse_datetime}

    @classmethod
    def from_dict(cls: Type[R], data: Dict[str, Any]) -> R:
        """Create instance from a stored row, ignoring columns this model does not know"""
        declared = {f.name: f for f in fields(cls) if f.init}
        converters = cls.converters()
        kwargs = {}
        for key, value in data.items():
            f = declared.get(key)
            if f is None:
                continue
            if value is None:
                # Null columns fall back to the model default
                continue
            converter = converters.get(key)
            kwargs[key] = converter(value) if converter else value
        if kwargs.get('id') is not None:
            kwargs['id'] = str(kwargs['id'])
        return cls(**kwargs)


@dataclass
class LoanApplication(StoreRecord):
    """Loan application moving through the status workflow"""
    user_id: Optional[str] = None
    requested_amount: Optional[Decimal] = None
    loan_purpose: Optional[str] = None
    status: ApplicationStatus = ApplicationStatus.PENDING
    stage: Optional[str] = None
    tenure: Optional[int] = None
    repayment_type: Optional[RepaymentFrequency] = None
    principal_amount: Optional[Decimal] = None
    interest_amount: Optional[Decimal] = None
    closing_fees: Optional[Decimal] = None
    total_repayment: Optional[Decimal] = None
    user_data: Dict[str, Any] = field(default_factory=dict)

    # Decline metadata
    decline_reason: Optional[str] = None
    decline_notes: Optional[str] = None
    declined_by: Optional[str] = None
    declined_at: Optional[datetime] = None

    # Verification metadata
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None

    @classmethod
    def converters(cls) -> Dict[str, Any]:
        result = super().converters()
        result.update({
            'requested_amount': lambda v: optional_decimal(v, 'requested_amount'),
            'principal_amount': lambda v: optional_decimal(v, 'principal_amount'),
            'interest_amount': lambda v: optional_decimal(v, 'interest_amount'),
            'closing_fees': lambda v: optional_decimal(v, 'closing_fees'),
            'total_repayment': lambda v: optional_decimal(v, 'total_repayment'),
            'status': lambda v: parse_enum(ApplicationStatus, v, 'status'),
            'tenure': lambda v: parse_int(v, 'tenure'),
            'repayment_type': RepaymentFrequency.parse,
            'user_data': parse_user_data,
            'declined_at': parse_datetime,
            'verified_at': parse_datetime,
        })
        return result

    @property
    def financed_amount(self) -> Optional[Decimal]:
        """Principal to finance, falling back to the requested amount"""
        if self.principal_amount is not None and self.principal_amount > ZERO:
            return self.principal_amount
        return self.requested_amount


@dataclass
class Loan(StoreRecord):
    """Running loan created when an application is approved"""
    application_id: Optional[str] = None
    user_id: Optional[str] = None
    principal_amount: Decimal = ZERO
    interest_amount: Optional[Decimal] = None
    closing_fees: Optional[Decimal] = None
    total_repayment: Decimal = ZERO
    amount_paid: Decimal = ZERO
    repayment_type: RepaymentFrequency = RepaymentFrequency.MONTHLY
    tenure: int = 3
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    status: LoanStatus = LoanStatus.RUNNING
    settlement_date: Optional[datetime] = None
    termination_date: Optional[datetime] = None

    @classmethod
    def converters(cls) -> Dict[str, Any]:
        result = super().converters()
        result.update({
            'application_id': str,
            'principal_amount': lambda v: to_decimal(v, 'principal_amount'),
            'interest_amount': lambda v: optional_decimal(v, 'interest_amount'),
            'closing_fees': lambda v: optional_decimal(v, 'closing_fees'),
            'total_repayment': lambda v: to_decimal(v, 'total_repayment'),
            'amount_paid': lambda v: to_decimal(v, 'amount_paid'),
            'repayment_type': RepaymentFrequency.parse,
            'tenure': lambda v: parse_int(v, 'tenure'),
            'start_date': parse_date,
            'end_date': parse_date,
            'status': lambda v: parse_enum(LoanStatus, v, 'status'),
            'settlement_date': parse_datetime,
            'termination_date': parse_datetime,
        })
        return result

    @property
    def remaining_balance(self) -> Decimal:
        """Outstanding amount; never negative"""
        return max(ZERO, self.total_repayment - self.amount_paid)


@dataclass
class Installment(StoreRecord):
    """Single dated installment of a loan's repayment schedule"""
    loan_id: Optional[str] = None
    installment_number: int = 1
    due_date: Optional[date] = None
    amount_due: Decimal = ZERO
    amount_paid: Decimal = ZERO
    paid_at: Optional[datetime] = None
    payment_verified: bool = False
    status: InstallmentStatus = InstallmentStatus.PENDING

    @classmethod
    def converters(cls) -> Dict[str, Any]:
        result = super().converters()
        result.update({
            'loan_id': str,
            'installment_number': lambda v: parse_int(v, 'installment_number'),
            'due_date': parse_date,
            'amount_due': lambda v: to_decimal(v, 'amount_due'),
            'amount_paid': lambda v: to_decimal(v, 'amount_paid'),
            'paid_at': parse_datetime,
            'payment_verified': bool,
            'status': lambda v: parse_enum(InstallmentStatus, v, 'status'),
        })
        return result


@dataclass
class PaymentReceipt(StoreRecord):
    """Customer-submitted proof of payment against an installment"""
    installment_id: Optional[str] = None
    user_id: Optional[str] = None
    file_url: Optional[str] = None
    received_at: Optional[datetime] = None
    payment_confirmed: bool = False
    amount: Decimal = ZERO
    amount_paid: Optional[Decimal] = None
    status: Optional[ReceiptStatus] = None
    paid_at: Optional[datetime] = None

    def __post_init__(self):
        # Older receipts only carry the payment_confirmed flag
        if self.status is None:
            self.status = ReceiptStatus.APPROVED if self.payment_confirmed else ReceiptStatus.PENDING

    @classmethod
    def converters(cls) -> Dict[str, Any]:
        result = super().converters()
        result.update({
            'installment_id': str,
            'received_at': parse_datetime,
            'payment_confirmed': bool,
            'amount': lambda v: to_decimal(v, 'amount'),
            'amount_paid': lambda v: optional_decimal(v, 'amount_paid'),
            'status': lambda v: parse_enum(ReceiptStatus, v, 'status'),
            'paid_at': parse_datetime,
        })
        return result
