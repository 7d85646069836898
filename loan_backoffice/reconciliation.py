"""
Payment Reconciliation Module

Plans how a reviewed payment receipt changes the receipt itself, the
installment it pays and the parent loan. Planning is pure; the lifecycle
orchestrator applies the three change sets in order (receipt, installment,
loan).
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .errors import ConflictError, ValidationError
from .models import (
    Installment, InstallmentStatus, Loan, LoanStatus, PaymentReceipt,
    ReceiptStatus, serialize_value
)
from .money import ZERO, round2


@dataclass
class ReconciliationResult:
    """Updated records plus the column changes needed to persist them"""
    receipt: PaymentReceipt
    installment: Installment
    loan: Loan
    confirmed: bool
    receipt_changes: Dict[str, Any] = field(default_factory=dict)
    installment_changes: Dict[str, Any] = field(default_factory=dict)
    loan_changes: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "receipt": self.receipt.to_dict(),
            "installment": self.installment.to_dict(),
            "loan": self.loan.to_dict(),
        }


def _check_links(receipt: PaymentReceipt, installment: Installment, loan: Loan) -> None:
    if receipt.installment_id is not None and installment.id is not None \
            and str(receipt.installment_id) != str(installment.id):
        raise ValidationError(
            f"Receipt {receipt.id} belongs to installment {receipt.installment_id}, not {installment.id}",
            {"receipt_id": receipt.id, "installment_id": installment.id},
        )
    if installment.loan_id is not None and loan.id is not None \
            and str(installment.loan_id) != str(loan.id):
        raise ValidationError(
            f"Installment {installment.id} belongs to loan {installment.loan_id}, not {loan.id}",
            {"installment_id": installment.id, "loan_id": loan.id},
        )


def reconcile_payment(
    receipt: PaymentReceipt,
    installment: Installment,
    loan: Loan,
    confirmed: bool,
    now: Optional[datetime] = None
) -> ReconciliationResult:
    """
    Apply a receipt review decision to the receipt, installment and loan.

    Confirmation credits the receipt amount to the installment and the loan.
    Rejection only marks the receipt; nothing was credited yet so nothing is
    reversed.

    Only pending receipts can be reviewed; a confirmed or rejected receipt is
    final.

    Raises:
        ConflictError: receipt already reviewed, or loan no longer running
        ValidationError: records not linked, non-positive amount, or an amount
            above the loan's remaining balance
    """
    if receipt.payment_confirmed or receipt.status != ReceiptStatus.PENDING:
        state = "confirmed" if receipt.payment_confirmed else receipt.status.value
        raise ConflictError(
            f"Receipt {receipt.id} is already {state}",
            {"receipt_id": receipt.id, "status": state},
        )
    _check_links(receipt, installment, loan)
    now = now or datetime.now(timezone.utc)

    if not confirmed:
        receipt_changes = {
            "payment_confirmed": False,
            "status": ReceiptStatus.REJECTED,
        }
        return ReconciliationResult(
            receipt=replace(receipt, payment_confirmed=False, status=ReceiptStatus.REJECTED, updated_at=now),
            installment=installment,
            loan=loan,
            confirmed=False,
            receipt_changes=_wire(receipt_changes),
        )

    if loan.status != LoanStatus.RUNNING:
        raise ConflictError(
            f"Loan {loan.id} is {loan.status.value}; payments can only be applied to running loans",
            {"loan_id": loan.id, "status": loan.status.value},
        )
    amount = round2(receipt.amount)
    if amount <= ZERO:
        raise ValidationError(
            f"Receipt {receipt.id} amount must be positive to confirm",
            {"receipt_id": receipt.id, "amount": str(amount)},
        )
    remaining = loan.remaining_balance
    if amount > remaining:
        raise ValidationError(
            f"Receipt {receipt.id} amount {amount} exceeds the remaining balance {remaining} of loan {loan.id}",
            {"receipt_id": receipt.id, "amount": str(amount), "remaining_balance": str(remaining)},
        )

    receipt_changes = {
        "payment_confirmed": True,
        "amount_paid": amount,
        "paid_at": now,
        "status": ReceiptStatus.APPROVED,
    }

    amount_paid = round2(installment.amount_paid + amount)
    amount_due = max(ZERO, round2(installment.amount_due - amount))
    installment_changes = {
        "amount_paid": amount_paid,
        "amount_due": amount_due,
        "status": InstallmentStatus.PAID if amount_due <= ZERO else InstallmentStatus.PARTIAL,
        "paid_at": now,
        "payment_verified": True,
    }

    loan_changes = {
        "amount_paid": round2(loan.amount_paid + amount),
    }

    return ReconciliationResult(
        receipt=replace(receipt, updated_at=now, **receipt_changes),
        installment=replace(installment, updated_at=now, **installment_changes),
        loan=replace(loan, updated_at=now, **loan_changes),
        confirmed=True,
        receipt_changes=_wire(receipt_changes),
        installment_changes=_wire(installment_changes),
        loan_changes=_wire(loan_changes),
    )


def _wire(changes: Dict[str, Any]) -> Dict[str, Any]:
    return {key: serialize_value(value) for key, value in changes.items()}
