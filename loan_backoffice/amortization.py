"""
Amortization Calculator Module

Simple (non-compounding) flat-rate pricing: a closing fee plus a fixed monthly
percentage of principal, spread evenly over the installments. Pure function,
no I/O. All financial math uses Decimal.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from .errors import ValidationError
from .models import RepaymentFrequency
from .money import round2, to_decimal

DEFAULT_MONTHLY_INTEREST_RATE = Decimal('0.20')
DEFAULT_CLOSING_FEE_RATE = Decimal('0.05')


@dataclass(frozen=True)
class AmortizationBreakdown:
    """Fee, interest and repayment breakdown for a loan"""
    principal: Decimal
    tenure_months: int
    frequency: RepaymentFrequency
    interest_rate_monthly: str      # e.g. "20.00%"
    closing_fee: Decimal
    total_interest: Decimal
    total_repayment: Decimal
    installment_count: int
    installment_amount: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal": str(self.principal),
            "tenure_months": self.tenure_months,
            "frequency": self.frequency.value,
            "interest_rate_monthly": self.interest_rate_monthly,
            "closing_fee": str(self.closing_fee),
            "total_interest": str(self.total_interest),
            "total_repayment": str(self.total_repayment),
            "installment_count": self.installment_count,
            "installment_amount": str(self.installment_amount),
        }


def installment_count(tenure_months: int, frequency: Union[RepaymentFrequency, str]) -> int:
    """Number of installments for a tenure: monthly=1, bi-weekly=2, weekly=4, daily=30 per month"""
    return tenure_months * RepaymentFrequency.parse(frequency).installments_per_month


def compute_amortization(
    principal: Any,
    tenure_months: int,
    frequency: Union[RepaymentFrequency, str],
    monthly_interest_rate: Optional[Any] = None,
    closing_fee_rate: Optional[Any] = None
) -> AmortizationBreakdown:
    """
    Compute the repayment breakdown of a loan.

    The {3, 6} tenure policy is not enforced here; callers validate it.

    Args:
        principal: Amount financed, positive
        tenure_months: Loan duration in months, positive
        frequency: Repayment frequency
        monthly_interest_rate: Share of principal charged per month (default 0.20)
        closing_fee_rate: Share of principal charged once (default 0.05)

    Raises:
        InvalidFrequencyError: frequency is not recognized
        ValidationError: principal, tenure or rates out of range
    """
    frequency = RepaymentFrequency.parse(frequency)
    principal = to_decimal(principal, "principal")
    if principal <= 0:
        raise ValidationError("Principal must be positive", {"principal": str(principal)})
    if isinstance(tenure_months, bool) or not isinstance(tenure_months, int) or tenure_months <= 0:
        raise ValidationError("Tenure must be a positive number of months",
                              {"tenure_months": tenure_months})

    monthly_rate = to_decimal(
        DEFAULT_MONTHLY_INTEREST_RATE if monthly_interest_rate is None else monthly_interest_rate,
        "monthly_interest_rate",
    )
    fee_rate = to_decimal(
        DEFAULT_CLOSING_FEE_RATE if closing_fee_rate is None else closing_fee_rate,
        "closing_fee_rate",
    )
    if monthly_rate < 0 or fee_rate < 0:
        raise ValidationError("Rates must not be negative")

    principal = round2(principal)
    closing_fee = round2(principal * fee_rate)
    total_interest = round2(principal * monthly_rate * tenure_months)
    # Sum of the rounded parts so the stored breakdown adds up exactly
    total_repayment = principal + total_interest + closing_fee
    count = installment_count(tenure_months, frequency)

    return AmortizationBreakdown(
        principal=principal,
        tenure_months=tenure_months,
        frequency=frequency,
        interest_rate_monthly=f"{round2(monthly_rate * 100)}%",
        closing_fee=closing_fee,
        total_interest=total_interest,
        total_repayment=total_repayment,
        installment_count=count,
        installment_amount=round2(total_repayment / count),
    )
