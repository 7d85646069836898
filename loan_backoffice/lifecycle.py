"""
Loan Lifecycle Module

Drives loan applications and loans through verification, decline, rejection,
approval, payment reconciliation, settlement and termination against the
record store.

Each procedure:
- runs at most once at a time per entity within the process,
- re-verifies status with conditional updates (filtered on the status that was
  read), so a concurrent change surfaces as ConflictError instead of a lost
  update,
- validates everything it can before the first mutation,
- owns its failure handling: compensating rollback (approve, settle),
  fail-closed abort (terminate) or a consistency incident (reconcile).
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import logging
import uuid

from .amortization import compute_amortization
from .audit import AuditEventType, AuditTrail
from .compensation import CompensationStack
from .config import BackofficeConfig, get_config
from .documents import (
    documents_from_user_data, missing_required_documents, set_verification, with_documents
)
from .errors import (
    ConflictError, ConsistencyIncidentError, LoanBackofficeError, NotFoundError,
    UpstreamStoreError, ValidationError
)
from .installments import add_months, generate_installments, summarize_installments
from .logging_config import entity_ref, log_action
from .models import (
    ApplicationStatus, Installment, InstallmentStatus, Loan, LoanApplication,
    LoanStatus, PaymentReceipt, ReceiptStatus, serialize_value
)
from .money import ZERO, round2
from .reconciliation import reconcile_payment
from .status_workflow import TransitionRecord, is_terminal, reject_override, transition
from .storage import Filter, RecordStore

logger = logging.getLogger("loan_backoffice.lifecycle")

APPLICATIONS_TABLE = "loan_applications"
LOANS_TABLE = "loans"
INSTALLMENTS_TABLE = "installments"
RECEIPTS_TABLE = "payment_receipts"


class InFlightRegistry:
    """Tracks which entities have a procedure running in this process"""

    def __init__(self):
        self._active: Set[str] = set()

    @asynccontextmanager
    async def claim(self, entity_type: str, entity_id: Any):
        key = f"{entity_type}:{entity_id}"
        # No await between the check and the add, so this is atomic on the event loop
        if key in self._active:
            raise ConflictError(
                f"Another operation on {entity_type.replace('_', ' ')} {entity_id} is in progress",
                {"entity_type": entity_type, "entity_id": str(entity_id)},
            )
        self._active.add(key)
        try:
            yield
        finally:
            self._active.discard(key)


@dataclass
class _Snapshot:
    """Column values to put back when undoing a step"""
    table: str
    filters: Dict[str, Any]
    values: Dict[str, Any]


class LoanLifecycle:
    """
    Orchestrates lifecycle procedures over applications, loans, installments
    and payment receipts
    """

    def __init__(
        self,
        store: RecordStore,
        audit: Optional[AuditTrail] = None,
        config: Optional[BackofficeConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store
        self.config = config or get_config()
        self.audit = audit or AuditTrail(store, enabled=self.config.enable_audit_logging)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._in_flight = InFlightRegistry()

    # Reads

    async def _call(self, step: str, awaitable):
        """Await a store call, tagging failures with the procedure step"""
        try:
            return await awaitable
        except UpstreamStoreError as e:
            raise UpstreamStoreError(
                f"{step} failed: {e.message}", step=step, details=e.details
            ) from e

    async def _fetch(self, table: str, entity_type: str, entity_id: Any, model):
        rows = await self._call(
            f"fetch {entity_type}", self.store.select(table, {"id": entity_id}, limit=1)
        )
        if not rows:
            raise NotFoundError(entity_type, entity_id)
        return model.from_dict(rows[0])

    async def get_application(self, application_id: Any) -> LoanApplication:
        """Load a loan application"""
        return await self._fetch(APPLICATIONS_TABLE, "loan_application", application_id, LoanApplication)

    async def get_loan(self, loan_id: Any) -> Loan:
        """Load a loan"""
        return await self._fetch(LOANS_TABLE, "loan", loan_id, Loan)

    async def get_installments(self, loan_id: Any) -> List[Installment]:
        """Load a loan's installments in schedule order"""
        rows = await self._call(
            "fetch installments",
            self.store.select(INSTALLMENTS_TABLE, {"loan_id": loan_id}, order="installment_number.asc"),
        )
        return [Installment.from_dict(row) for row in rows]

    async def list_installments(self, loan_id: Any) -> Dict[str, Any]:
        """Loan schedule with its summary"""
        loan = await self.get_loan(loan_id)
        installments = await self.get_installments(loan_id)
        return {
            "loan": loan,
            "installments": installments,
            "summary": summarize_installments(installments),
        }

    async def _conditional_update(
        self,
        table: str,
        entity_type: str,
        entity_id: Any,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
        step: str
    ) -> Dict[str, Any]:
        """
        Update a row only if it still has the expected column values.

        Raises:
            ConflictError: the row changed since it was read
        """
        filters = {"id": entity_id}
        filters.update(expected)
        rows = await self._call(step, self.store.update(table, filters, serialize_value(changes)))
        if not rows:
            current = await self._call(step, self.store.select(table, {"id": entity_id}, limit=1))
            if not current:
                raise NotFoundError(entity_type, entity_id)
            raise ConflictError(
                f"{entity_type.replace('_', ' ').capitalize()} {entity_id} changed while {step} was in progress",
                {
                    "entity_type": entity_type,
                    "entity_id": str(entity_id),
                    "expected": serialize_value(expected),
                    "current": {k: current[0].get(k) for k in expected},
                },
            )
        return rows[0]

    async def _restore(self, snapshot: _Snapshot) -> None:
        await self._call(
            f"restore {snapshot.table}",
            self.store.update(snapshot.table, snapshot.filters, serialize_value(snapshot.values)),
        )

    async def _delete(self, table: str, filters: Dict[str, Any]) -> None:
        await self._call(f"delete from {table}", self.store.delete(table, filters))

    async def _fail(
        self,
        procedure: str,
        entity_type: str,
        entity_id: Any,
        stack: CompensationStack,
        error: LoanBackofficeError,
        before: Dict[str, Any]
    ) -> None:
        """Unwind applied steps, then raise the error that describes the outcome"""
        if not stack.applied:
            raise error

        applied = list(stack.applied)
        report = await stack.unwind()
        step = getattr(error, "step", None)

        if report.clean:
            log_action(
                logger, "warning", f"{procedure} failed for {entity_type} {entity_id}; rolled back",
                procedure=procedure, step=step,
                entity=entity_ref(entity_type, entity_id),
                details={"error": error.message, "applied": applied, "rolled_back": report.undone},
            )
            await self.audit.record(
                AuditEventType.ROLLBACK_APPLIED, entity_type, entity_id,
                metadata={"procedure": procedure, "error": error.message, "undone": report.undone},
            )
            details = dict(error.details)
            details.update({"rolled_back": report.undone})
            raise UpstreamStoreError(
                f"{procedure} failed and was rolled back: {error.message}", step=step, details=details
            ) from error

        after = {"applied": applied, "rollback": report.to_dict(), "error": error.message}
        incident = ConsistencyIncidentError(
            f"{procedure} failed for {entity_type} {entity_id} and could not be fully rolled back",
            step=step, before=before, after=after,
        )
        log_action(
            logger, "error", incident.message,
            procedure=procedure, step=incident.step, entity=entity_ref(entity_type, entity_id),
            details={"before": before, "after": after},
        )
        await self.audit.record(
            AuditEventType.CONSISTENCY_INCIDENT, entity_type, entity_id,
            metadata={"procedure": procedure, "before": before, "after": after},
        )
        raise incident from error

    # Application status procedures

    async def _apply_transition(
        self,
        application: LoanApplication,
        record: TransitionRecord,
        changes: Dict[str, Any],
        step: str
    ) -> LoanApplication:
        values = {"status": record.to_status, "stage": record.to_status.value}
        values.update(changes)
        row = await self._conditional_update(
            APPLICATIONS_TABLE, "loan_application", application.id,
            {"status": application.status}, values, step,
        )
        log_action(
            logger, "info",
            f"Application {application.id} moved {record.from_status.value} -> {record.to_status.value}",
            actor=record.actor, procedure=step, entity=entity_ref("loan_application", application.id),
        )
        await self.audit.record_transition(record, application.id)
        return LoanApplication.from_dict(row)

    async def verify_application(self, application_id: Any, actor: Optional[str] = None) -> Dict[str, Any]:
        """
        Move a pending application into verification.

        Raises:
            InvalidTransitionError: application is not pending
        """
        async with self._in_flight.claim("loan_application", application_id):
            application = await self.get_application(application_id)
            now = self._clock()
            record = transition(
                application.status, ApplicationStatus.VERIFICATION,
                actor=actor, loan_id=str(application_id), now=now,
            )
            updated = await self._apply_transition(
                application, record, {"verified_by": actor, "verified_at": now}, "verify application"
            )
            return {"application": updated, "transition": record}

    async def decline_application(
        self,
        application_id: Any,
        reason: Optional[str],
        actor: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Decline a pending or under-verification application.

        Raises:
            ValidationError: reason is missing
            IllegalTransitionError: application can no longer be declined
        """
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("Decline reason is required", {"field": "reason"})

        async with self._in_flight.claim("loan_application", application_id):
            application = await self.get_application(application_id)
            now = self._clock()
            record = transition(
                application.status, ApplicationStatus.DECLINED,
                actor=actor, reason=reason, loan_id=str(application_id),
                metadata={"notes": notes, "declined_at": now.isoformat()}, now=now,
            )
            updated = await self._apply_transition(
                application, record,
                {
                    "decline_reason": reason,
                    "decline_notes": notes,
                    "declined_by": actor,
                    "declined_at": now,
                },
                "decline application",
            )
            return {"application": updated, "transition": record}

    async def reject_application(
        self,
        application_id: Any,
        actor: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """Administrative rejection of an undecided application"""
        async with self._in_flight.claim("loan_application", application_id):
            application = await self.get_application(application_id)
            record = reject_override(
                application.status, actor=actor, reason=reason,
                loan_id=str(application_id), now=self._clock(),
            )
            updated = await self._apply_transition(application, record, {}, "reject application")
            return {"application": updated, "transition": record}

    async def verify_document(
        self,
        application_id: Any,
        document_type: str,
        actor: Optional[str] = None,
        verified: bool = True
    ) -> Dict[str, Any]:
        """
        Mark one KYC document verified. Never changes the application status;
        moving to verification or approval stays an explicit procedure.
        """
        async with self._in_flight.claim("loan_application", application_id):
            application = await self.get_application(application_id)
            if is_terminal(application.status):
                raise ConflictError(
                    f"Application {application_id} is {application.status.value}; documents can no longer change",
                    {"status": application.status.value},
                )
            documents = set_verification(
                documents_from_user_data(application.user_data),
                document_type, verified=verified, actor=actor, now=self._clock(),
            )
            row = await self._conditional_update(
                APPLICATIONS_TABLE, "loan_application", application_id,
                {"status": application.status},
                {"user_data": with_documents(application.user_data, documents)},
                "verify document",
            )
            await self.audit.record(
                AuditEventType.DOCUMENT_VERIFIED, "loan_application", application_id,
                metadata={"document_type": document_type, "verified": verified}, user_id=actor,
            )
            return {
                "application": LoanApplication.from_dict(row),
                "documents": documents,
                "missing_required_documents": missing_required_documents(documents),
            }

    # Approval

    def _validate_for_approval(self, application: LoanApplication) -> Tuple[Decimal, int]:
        if application.tenure not in self.config.allowed_tenures:
            raise ValidationError(
                f"Tenure must be one of {', '.join(str(t) for t in self.config.allowed_tenures)} months",
                {"tenure": application.tenure, "allowed": list(self.config.allowed_tenures)},
            )
        if application.repayment_type is None:
            raise ValidationError("Repayment type is required", {"field": "repayment_type"})
        principal = application.financed_amount
        if principal is None or principal <= ZERO:
            raise ValidationError("Principal amount must be positive",
                                  {"principal_amount": serialize_value(principal)})
        return principal, application.tenure

    async def approve_application(self, application_id: Any, actor: Optional[str] = None) -> Dict[str, Any]:
        """
        Approve an application under verification and create its loan and
        installment schedule.

        Raises:
            ConflictError: already approved, or a loan already exists for it
            IllegalTransitionError: application is not under verification
            ValidationError: tenure, frequency or principal invalid
            UpstreamStoreError: a step failed and was rolled back
            ConsistencyIncidentError: a step failed and rollback failed too
        """
        async with self._in_flight.claim("loan_application", application_id):
            application = await self.get_application(application_id)
            if application.status == ApplicationStatus.APPROVED:
                raise ConflictError(
                    f"Application {application_id} is already approved",
                    {"application_id": str(application_id)},
                )
            now = self._clock()
            record = transition(
                application.status, ApplicationStatus.APPROVED,
                actor=actor, loan_id=str(application_id), now=now,
            )
            principal, tenure = self._validate_for_approval(application)

            existing = await self._call(
                "check existing loan",
                self.store.select(LOANS_TABLE, {"application_id": str(application_id)}, limit=1),
            )
            if existing:
                raise ConflictError(
                    f"Application {application_id} already has loan {existing[0].get('id')}",
                    {"application_id": str(application_id), "loan_id": str(existing[0].get('id'))},
                )

            breakdown = compute_amortization(
                principal, tenure, application.repayment_type,
                monthly_interest_rate=self.config.monthly_interest_rate,
                closing_fee_rate=self.config.closing_fee_rate,
            )
            start_date = now.date()
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                application_id=str(application_id),
                user_id=application.user_id,
                principal_amount=breakdown.principal,
                interest_amount=breakdown.total_interest,
                closing_fees=breakdown.closing_fee,
                total_repayment=breakdown.total_repayment,
                amount_paid=ZERO,
                repayment_type=breakdown.frequency,
                tenure=tenure,
                start_date=start_date,
                end_date=add_months(start_date, tenure),
                status=LoanStatus.RUNNING,
            )
            schedule = generate_installments(loan)

            before = {"application": application.to_dict()}
            stack = CompensationStack("approve application", application_id)
            try:
                row = await self._conditional_update(
                    APPLICATIONS_TABLE, "loan_application", application_id,
                    {"status": ApplicationStatus.VERIFICATION},
                    {
                        "status": ApplicationStatus.APPROVED,
                        "stage": ApplicationStatus.APPROVED.value,
                        "principal_amount": breakdown.principal,
                        "interest_amount": breakdown.total_interest,
                        "closing_fees": breakdown.closing_fee,
                        "total_repayment": breakdown.total_repayment,
                    },
                    "approve application",
                )
                stack.push("revert application status", lambda: self._restore(_Snapshot(
                    APPLICATIONS_TABLE, {"id": application_id},
                    {
                        "status": application.status,
                        "stage": application.stage,
                        "principal_amount": application.principal_amount,
                        "interest_amount": application.interest_amount,
                        "closing_fees": application.closing_fees,
                        "total_repayment": application.total_repayment,
                    },
                )))

                loan_rows = await self._call("create loan", self.store.insert(LOANS_TABLE, loan.to_dict()))
                stack.push("delete loan", lambda: self._delete(LOANS_TABLE, {"id": loan.id}))
                if loan_rows:
                    loan = Loan.from_dict(loan_rows[0])

                # Registered before the insert so a partially applied batch is cleaned up too
                stack.push("delete installments", lambda: self._delete(INSTALLMENTS_TABLE, {"loan_id": loan.id}))
                installment_rows = await self._call(
                    "create installments",
                    self.store.insert(INSTALLMENTS_TABLE, [i.to_dict() for i in schedule]),
                )
            except LoanBackofficeError as e:
                await self._fail("approve application", "loan_application", application_id, stack, e, before)
                raise

            installments = [Installment.from_dict(r) for r in installment_rows] if installment_rows else schedule
            log_action(
                logger, "info",
                f"Application {application_id} approved; loan {loan.id} created with {len(installments)} installments",
                actor=actor, procedure="approve application", entity=entity_ref("loan", loan.id),
                details={"total_repayment": str(loan.total_repayment)},
            )
            await self.audit.record_transition(record, application_id)
            await self.audit.record(
                AuditEventType.LOAN_CREATED, "loan", loan.id,
                metadata={"application_id": str(application_id), "breakdown": breakdown.to_dict()},
                user_id=actor,
            )
            await self.audit.record(
                AuditEventType.INSTALLMENTS_GENERATED, "loan", loan.id,
                metadata={"count": len(installments)}, user_id=actor,
            )
            return {
                "application": LoanApplication.from_dict(row),
                "loan": loan,
                "installments": installments,
                "breakdown": breakdown,
            }

    # Payment reconciliation

    @staticmethod
    def _reconciled(result) -> Dict[str, Any]:
        return {
            "receipt": result.receipt,
            "installment": result.installment,
            "loan": result.loan,
            "confirmed": result.confirmed,
        }

    async def reconcile_receipt(
        self,
        receipt_id: Any,
        confirmed: bool,
        actor: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Confirm or reject a payment receipt.

        Confirmation updates receipt, installment and loan in that order.
        Nothing is rolled back automatically once the receipt is confirmed;
        a later failure raises ConsistencyIncidentError for an operator.
        """
        async with self._in_flight.claim("payment_receipt", receipt_id):
            receipt = await self._fetch(RECEIPTS_TABLE, "payment_receipt", receipt_id, PaymentReceipt)
            if receipt.installment_id is None:
                raise ValidationError(f"Receipt {receipt_id} is not linked to an installment")
            installment = await self._fetch(
                INSTALLMENTS_TABLE, "installment", receipt.installment_id, Installment
            )
            loan = await self.get_loan(installment.loan_id)

            async with self._in_flight.claim("loan", loan.id):
                now = self._clock()
                result = reconcile_payment(receipt, installment, loan, confirmed, now=now)

                await self._conditional_update(
                    RECEIPTS_TABLE, "payment_receipt", receipt_id,
                    {"payment_confirmed": False, "status": ReceiptStatus.PENDING}, result.receipt_changes,
                    "confirm receipt" if confirmed else "reject receipt",
                )
                if not confirmed:
                    log_action(logger, "info", f"Receipt {receipt_id} rejected",
                               actor=actor, procedure="reject receipt",
                               entity=entity_ref("payment_receipt", receipt_id))
                    await self.audit.record(
                        AuditEventType.RECEIPT_REJECTED, "payment_receipt", receipt_id, user_id=actor,
                    )
                    return self._reconciled(result)

                applied = ["receipt"]
                try:
                    await self._conditional_update(
                        INSTALLMENTS_TABLE, "installment", installment.id,
                        {"amount_paid": installment.amount_paid}, result.installment_changes,
                        "apply payment to installment",
                    )
                    applied.append("installment")
                    await self._conditional_update(
                        LOANS_TABLE, "loan", loan.id,
                        {"status": LoanStatus.RUNNING, "amount_paid": loan.amount_paid},
                        result.loan_changes,
                        "apply payment to loan",
                    )
                    applied.append("loan")
                except LoanBackofficeError as e:
                    before = {
                        "receipt": receipt.to_dict(),
                        "installment": installment.to_dict(),
                        "loan": loan.to_dict(),
                    }
                    after = {"applied": applied, "planned": result.to_dict(), "error": e.message}
                    incident = ConsistencyIncidentError(
                        f"Receipt {receipt_id} was confirmed but applying it failed after: {', '.join(applied)}",
                        step=getattr(e, "step", None), before=before, after=after,
                    )
                    log_action(logger, "error", incident.message, actor=actor,
                               procedure="reconcile receipt", step=incident.step,
                               entity=entity_ref("payment_receipt", receipt_id),
                               details={"before": before, "after": after})
                    await self.audit.record(
                        AuditEventType.CONSISTENCY_INCIDENT, "payment_receipt", receipt_id,
                        metadata={"procedure": "reconcile receipt", "before": before, "after": after},
                        user_id=actor,
                    )
                    raise incident from e

                log_action(
                    logger, "info",
                    f"Receipt {receipt_id} applied: {result.receipt.amount_paid} to installment "
                    f"{installment.id} of loan {loan.id}",
                    actor=actor, procedure="reconcile receipt", entity=entity_ref("loan", loan.id),
                )
                await self.audit.record(
                    AuditEventType.PAYMENT_RECONCILED, "loan", loan.id,
                    metadata={
                        "receipt_id": str(receipt_id),
                        "installment_id": str(installment.id),
                        "amount": str(result.receipt.amount_paid),
                    },
                    user_id=actor,
                )
                return self._reconciled(result)

    # Settlement

    def _installment_flag_snapshots(self, installments: List[Installment]) -> List[_Snapshot]:
        """Group installments by their payment flags so each group restores in one call"""
        groups: Dict[tuple, List[str]] = {}
        for inst in installments:
            key = (inst.payment_verified, serialize_value(inst.paid_at), inst.status.value)
            groups.setdefault(key, []).append(inst.id)
        return [
            _Snapshot(
                INSTALLMENTS_TABLE,
                {"id": Filter("in", ids)},
                {"payment_verified": verified, "paid_at": paid_at, "status": status},
            )
            for (verified, paid_at, status), ids in groups.items()
        ]

    async def _restore_installment_flags(self, snapshots: List[_Snapshot]) -> None:
        for snapshot in snapshots:
            await self._restore(snapshot)

    async def settle_loan(self, loan_id: Any, actor: Optional[str] = None) -> Dict[str, Any]:
        """
        Settle a running loan in one lump sum.

        Steps: complete the loan, mark every installment paid, book the
        remaining balance on a settlement installment (or on the last
        installment when nothing was unpaid), then record a system receipt.
        Failure after the first step rolls back the applied steps.
        """
        async with self._in_flight.claim("loan", loan_id):
            loan = await self.get_loan(loan_id)
            if loan.status != LoanStatus.RUNNING:
                raise ConflictError(
                    f"Loan {loan_id} is {loan.status.value}; only running loans can be settled",
                    {"loan_id": str(loan_id), "status": loan.status.value},
                )
            installments = await self.get_installments(loan_id)
            now = self._clock()
            remaining = round2(loan.remaining_balance)
            unpaid = [i for i in installments if not i.payment_verified]
            flag_snapshots = self._installment_flag_snapshots(installments)

            before = {
                "loan": loan.to_dict(),
                "installments": [i.to_dict() for i in installments],
            }
            stack = CompensationStack("settle loan", loan_id)
            try:
                # Step 1: complete the loan
                loan_row = await self._conditional_update(
                    LOANS_TABLE, "loan", loan_id, {"status": LoanStatus.RUNNING},
                    {
                        "status": LoanStatus.COMPLETED,
                        "settlement_date": now,
                        "amount_paid": loan.total_repayment,
                    },
                    "complete loan",
                )
                stack.push("restore loan", lambda: self._restore(_Snapshot(
                    LOANS_TABLE, {"id": loan_id},
                    {"status": loan.status, "settlement_date": None, "amount_paid": loan.amount_paid},
                )))

                # Step 2: mark every installment paid
                if installments:
                    stack.push("restore installment flags",
                               lambda: self._restore_installment_flags(flag_snapshots))
                    await self._call("mark installments paid", self.store.update(
                        INSTALLMENTS_TABLE, {"loan_id": loan_id},
                        serialize_value({
                            "payment_verified": True,
                            "paid_at": now,
                            "status": InstallmentStatus.PAID,
                        }),
                    ))

                # Step 3: book the remaining balance
                if unpaid or not installments:
                    settlement = Installment(
                        id=str(uuid.uuid4()),
                        loan_id=str(loan_id),
                        installment_number=max((i.installment_number for i in installments), default=0) + 1,
                        due_date=now.date(),
                        amount_due=ZERO,
                        amount_paid=remaining,
                        paid_at=now,
                        payment_verified=True,
                        status=InstallmentStatus.PAID,
                    )
                    stack.push("delete settlement installment",
                               lambda: self._delete(INSTALLMENTS_TABLE, {"id": settlement.id}))
                    rows = await self._call("create settlement installment",
                                            self.store.insert(INSTALLMENTS_TABLE, settlement.to_dict()))
                else:
                    last = max(
                        installments,
                        key=lambda i: (serialize_value(i.created_at) or "", i.installment_number),
                    )
                    settlement = last
                    stack.push("restore last installment", lambda: self._restore(_Snapshot(
                        INSTALLMENTS_TABLE, {"id": last.id}, {"amount_paid": last.amount_paid},
                    )))
                    rows = await self._call("update last installment", self.store.update(
                        INSTALLMENTS_TABLE, {"id": last.id},
                        serialize_value({
                            "amount_paid": round2(last.amount_paid + remaining),
                            "payment_verified": True,
                            "paid_at": now,
                        }),
                    ))
                if rows:
                    settlement = Installment.from_dict(rows[0])

                # Step 4: system receipt evidencing the settlement
                receipt = PaymentReceipt(
                    id=str(uuid.uuid4()),
                    installment_id=settlement.id,
                    user_id=loan.user_id,
                    file_url=self.config.settlement_evidence_marker,
                    received_at=now,
                    payment_confirmed=True,
                    amount=remaining,
                    amount_paid=remaining,
                    status=ReceiptStatus.APPROVED,
                    paid_at=now,
                )
                stack.push("delete settlement receipt",
                           lambda: self._delete(RECEIPTS_TABLE, {"id": receipt.id}))
                receipt_rows = await self._call("create settlement receipt",
                                                self.store.insert(RECEIPTS_TABLE, receipt.to_dict()))
                if receipt_rows:
                    receipt = PaymentReceipt.from_dict(receipt_rows[0])
            except LoanBackofficeError as e:
                await self._fail("settle loan", "loan", loan_id, stack, e, before)
                raise

            log_action(
                logger, "info", f"Loan {loan_id} settled; {remaining} booked on installment {settlement.id}",
                actor=actor, procedure="settle loan", entity=entity_ref("loan", loan_id),
                details={"unpaid_installments": len(unpaid)},
            )
            await self.audit.record(
                AuditEventType.LOAN_SETTLED, "loan", loan_id,
                metadata={
                    "remaining_amount": str(remaining),
                    "settlement_installment_id": settlement.id,
                    "receipt_id": receipt.id,
                },
                user_id=actor,
            )
            return {
                "loan": Loan.from_dict(loan_row),
                "settlement_installment": settlement,
                "receipt": receipt,
                "remaining_amount": remaining,
            }

    # Termination

    async def terminate_loan(self, loan_id: Any, actor: Optional[str] = None) -> Dict[str, Any]:
        """
        Terminate a running loan and discard its schedule.

        If deleting the installments fails the loan is left untouched. If some
        installments survive the delete, termination still proceeds and the
        remainder is reported for follow-up.
        """
        async with self._in_flight.claim("loan", loan_id):
            loan = await self.get_loan(loan_id)
            if loan.status != LoanStatus.RUNNING:
                raise ConflictError(
                    f"Loan {loan_id} is {loan.status.value}; only running loans can be terminated",
                    {"loan_id": str(loan_id), "status": loan.status.value},
                )

            try:
                deleted = await self.store.delete(INSTALLMENTS_TABLE, {"loan_id": loan_id})
            except UpstreamStoreError as e:
                log_action(logger, "error", f"Installment deletion failed; loan {loan_id} not terminated",
                           actor=actor, procedure="terminate loan", entity=entity_ref("loan", loan_id),
                           step="delete installments", details={"error": e.message})
                raise UpstreamStoreError(
                    f"Could not delete installments of loan {loan_id}; loan was not terminated",
                    step="delete installments", details=e.details,
                ) from e

            remaining = await self._call(
                "count remaining installments", self.store.count(INSTALLMENTS_TABLE, {"loan_id": loan_id})
            )
            now = self._clock()
            try:
                loan_row = await self._conditional_update(
                    LOANS_TABLE, "loan", loan_id, {"status": LoanStatus.RUNNING},
                    {"status": LoanStatus.TERMINATED, "termination_date": now},
                    "terminate loan",
                )
            except LoanBackofficeError as e:
                before = {"loan": loan.to_dict()}
                after = {"deleted_installments": len(deleted), "remaining_installments": remaining,
                         "error": e.message}
                incident = ConsistencyIncidentError(
                    f"Installments of loan {loan_id} were deleted but the loan could not be terminated",
                    step="terminate loan", before=before, after=after,
                )
                log_action(logger, "error", incident.message, actor=actor, procedure="terminate loan",
                           step=incident.step, entity=entity_ref("loan", loan_id),
                           details={"before": before, "after": after})
                await self.audit.record(
                    AuditEventType.CONSISTENCY_INCIDENT, "loan", loan_id,
                    metadata={"procedure": "terminate loan", "before": before, "after": after},
                    user_id=actor,
                )
                raise incident from e

            if remaining:
                log_action(logger, "warning",
                           f"Loan {loan_id} terminated with {remaining} installments left behind",
                           actor=actor, procedure="terminate loan", entity=entity_ref("loan", loan_id))
            else:
                log_action(logger, "info", f"Loan {loan_id} terminated",
                           actor=actor, procedure="terminate loan", entity=entity_ref("loan", loan_id),
                           details={"deleted_installments": len(deleted)})
            await self.audit.record(
                AuditEventType.LOAN_TERMINATED, "loan", loan_id,
                metadata={"deleted_installments": len(deleted), "remaining_installments": remaining},
                user_id=actor,
            )
            return {
                "loan": Loan.from_dict(loan_row),
                "remaining_installment_count": remaining,
                "deleted_installment_count": len(deleted),
            }
