"""
Installment Generator Module

Turns an approved loan into its dated repayment schedule. Every installment
but the last carries the rounded even share; the last one absorbs the
rounding drift so the schedule sums exactly to the loan's total repayment.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence
import calendar

from .amortization import installment_count
from .errors import ValidationError
from .models import Installment, InstallmentStatus, Loan, RepaymentFrequency
from .money import ZERO, money_sum, round2


def add_months(start: date, months: int) -> date:
    """Calendar month arithmetic; the day is clamped to the end of the target month"""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def due_date_for(start: date, frequency: RepaymentFrequency, period: int) -> date:
    """Start date advanced by the given number of repayment periods"""
    if frequency == RepaymentFrequency.MONTHLY:
        return add_months(start, period)
    if frequency == RepaymentFrequency.BI_WEEKLY:
        return start + timedelta(weeks=2 * period)
    if frequency == RepaymentFrequency.WEEKLY:
        return start + timedelta(weeks=period)
    return start + timedelta(days=period)


def split_amounts(total_repayment: Decimal, count: int) -> List[Decimal]:
    """Even split rounded to cents, with the remainder on the final share"""
    if count <= 0:
        raise ValidationError("Installment count must be positive", {"count": count})
    total = round2(total_repayment)
    share = round2(total / count)
    amounts = [share] * (count - 1)
    last = total - share * (count - 1)
    if last < ZERO:
        raise ValidationError(
            f"Total repayment {total} is too small to split into {count} installments",
            {"total_repayment": str(total), "count": count},
        )
    amounts.append(last)
    return amounts


def generate_installments(loan: Loan) -> List[Installment]:
    """
    Generate the installment schedule for a loan.

    Tenure values outside the product policy are accepted here; the approval
    procedure rejects them before a loan exists.

    Args:
        loan: Loan with total_repayment, tenure, repayment_type and start_date set

    Returns:
        Installments numbered 1..N, not yet persisted
    """
    if loan.start_date is None:
        raise ValidationError("Loan start date is required to generate installments")
    if loan.total_repayment is None or loan.total_repayment <= ZERO:
        raise ValidationError("Loan total repayment must be positive",
                              {"total_repayment": str(loan.total_repayment)})
    if not loan.tenure or loan.tenure <= 0:
        raise ValidationError("Loan tenure must be a positive number of months",
                              {"tenure": loan.tenure})

    frequency = RepaymentFrequency.parse(loan.repayment_type)
    count = installment_count(loan.tenure, frequency)
    amounts = split_amounts(loan.total_repayment, count)

    return [
        Installment(
            loan_id=loan.id,
            installment_number=number,
            due_date=due_date_for(loan.start_date, frequency, number),
            amount_due=amount,
            amount_paid=ZERO,
            paid_at=None,
            payment_verified=False,
            status=InstallmentStatus.PENDING,
        )
        for number, amount in enumerate(amounts, start=1)
    ]


def summarize_installments(installments: Sequence[Installment]) -> Dict[str, Any]:
    """Counts, totals and the next payment due for a schedule"""
    ordered = sorted(installments, key=lambda i: i.installment_number)
    next_pending: Optional[Installment] = next(
        (i for i in ordered if i.status == InstallmentStatus.PENDING), None
    )

    def count_of(status: InstallmentStatus) -> int:
        return sum(1 for i in ordered if i.status == status)

    return {
        "total_installments": len(ordered),
        "paid_installments": count_of(InstallmentStatus.PAID),
        "pending_installments": count_of(InstallmentStatus.PENDING),
        "partial_installments": count_of(InstallmentStatus.PARTIAL),
        "overdue_installments": count_of(InstallmentStatus.OVERDUE),
        "total_amount_due": str(money_sum(i.amount_due for i in ordered)),
        "total_amount_paid": str(money_sum(i.amount_paid for i in ordered)),
        "next_due_date": next_pending.due_date.isoformat() if next_pending and next_pending.due_date else None,
        "next_due_amount": str(next_pending.amount_due) if next_pending else str(ZERO),
    }
