"""
Loan Back Office API

Thin FastAPI surface over the lifecycle procedures. Every response uses the
envelope {"success": true, "data": ...}; failures use
{"success": false, "error": ..., "code": ...}.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .amortization import compute_amortization
from .config import BackofficeConfig, get_config
from .errors import (
    ConflictError, ConsistencyIncidentError, IllegalTransitionError, LoanBackofficeError,
    NotFoundError, UpstreamStoreError, ValidationError
)
from .lifecycle import LoanLifecycle
from .models import serialize_value
from .status_workflow import (
    STATUS_WORKFLOW, evaluate_transition, next_statuses, workflow_progress
)
from .storage import create_record_store

logger = logging.getLogger("loan_backoffice.api")


# Error code -> HTTP status; subclasses are listed before their bases
ERROR_STATUS = (
    (ConsistencyIncidentError, 500),
    (UpstreamStoreError, 502),
    (ValidationError, 400),
    (IllegalTransitionError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
)


def status_for(error: LoanBackofficeError) -> int:
    for error_cls, status_code in ERROR_STATUS:
        if isinstance(error, error_cls):
            return status_code
    return 500


def envelope(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": _serialize(data)}


def _serialize(value: Any) -> Any:
    """Turn records and results into JSON-ready structures"""
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return serialize_value(value)


# Request schemas

class ActorRequest(BaseModel):
    actor: Optional[str] = Field(None, description="Admin user performing the action")


class DeclineRequest(ActorRequest):
    reason: str = Field(..., description="Why the application was declined")
    notes: Optional[str] = None


class RejectRequest(ActorRequest):
    reason: Optional[str] = None


class VerifyDocumentRequest(ActorRequest):
    document_type: str = Field(..., description="e.g. id_card_front, bank_statements")
    verified: bool = True


class ReconcileReceiptRequest(ActorRequest):
    payment_confirmed: bool = Field(..., description="True to confirm, False to reject")


class CalculatorRequest(BaseModel):
    principal: str = Field(..., description="Decimal amount as string")
    tenure_months: int
    frequency: str = "monthly"


class TransitionCheckRequest(BaseModel):
    current: str
    target: str


def get_lifecycle(request: Request) -> LoanLifecycle:
    return request.app.state.lifecycle


def get_app_config(request: Request) -> BackofficeConfig:
    return request.app.state.config


# Loan applications

applications_router = APIRouter()


@applications_router.get("/{application_id}")
async def get_application(application_id: str, lifecycle: LoanLifecycle = Depends(get_lifecycle)):
    """Get a loan application with its workflow progress"""
    application = await lifecycle.get_application(application_id)
    data = application.to_dict()
    data["workflow_progress"] = workflow_progress(application.status)
    data["next_statuses"] = [s.value for s in next_statuses(application.status)]
    return envelope(data)


@applications_router.post("/{application_id}/verify")
async def verify_application(
    application_id: str,
    request: ActorRequest = ActorRequest(),
    lifecycle: LoanLifecycle = Depends(get_lifecycle)
):
    """Move a pending application into verification"""
    return envelope(await lifecycle.verify_application(application_id, actor=request.actor))


@applications_router.post("/{application_id}/decline")
async def decline_application(
    application_id: str,
    request: DeclineRequest,
    lifecycle: LoanLifecycle = Depends(get_lifecycle)
):
    """Decline an application with a reason"""
    return envelope(await lifecycle.decline_application(
        application_id, request.reason, actor=request.actor, notes=request.notes
    ))


@applications_router.post("/{application_id}/reject")
async def reject_application(
    application_id: str,
    request: RejectRequest = RejectRequest(),
    lifecycle: LoanLifecycle = Depends(get_lifecycle)
):
    """Administratively reject an undecided application"""
    return envelope(await lifecycle.reject_application(
        application_id, actor=request.actor, reason=request.reason
    ))


@applications_router.post("/{application_id}/approve", status_code=201)
async def approve_application(
    application_id: str,
    request: ActorRequest = ActorRequest(),
    lifecycle: LoanLifecycle = Depends(get_lifecycle)
):
    """Approve an application and create its loan and schedule"""
    return envelope(await lifecycle.approve_application(application_id, actor=request.actor))


@applications_router.post("/{application_id}/documents/verify")
async def verify_document(
    application_id: str,
    request: VerifyDocumentRequest,
    lifecycle: LoanLifecycle = Depends(get_lifecycle)
):
    """Mark a KYC document verified"""
    return envelope(await lifecycle.verify_document(
        application_id, request.document_type, actor=request.actor, verified=request.verified
    ))


# Loans

loans_router = APIRouter()


@loans_router.get("/{loan_id}")
async def get_loan(loan_id: str, lifecycle: LoanLifecycle = Depends(get_lifecycle)):
    """Get loan details"""
    loan = await lifecycle.get_loan(loan_id)
    data = loan.to_dict()
    data["remaining_balance"] = str(loan.remaining_balance)
    return envelope(data)


@loans_router.get("/{loan_id}/installments")
async def list_installments(loan_id: str, lifecycle: LoanLifecycle = Depends(get_lifecycle)):
    """Get a loan's installment schedule with summary counts and totals"""
    return envelope(await lifecycle.list_installments(loan_id))


@loans_router.post("/{loan_id}/settle")
async def settle_loan(
    loan_id: str,
    request: ActorRequest = ActorRequest(),
    lifecycle: LoanLifecycle = Depends(get_lifecycle)
):
    """Settle a running loan in one lump sum"""
    return envelope(await lifecycle.settle_loan(loan_id, actor=request.actor))


@loans_router.post("/{loan_id}/terminate")
async def terminate_loan(
    loan_id: str,
    request: ActorRequest = ActorRequest(),
    lifecycle: LoanLifecycle = Depends(get_lifecycle)
):
    """Terminate a running loan and discard its schedule"""
    return envelope(await lifecycle.terminate_loan(loan_id, actor=request.actor))


# Payment receipts

receipts_router = APIRouter()


@receipts_router.patch("/{receipt_id}")
async def reconcile_receipt(
    receipt_id: str,
    request: ReconcileReceiptRequest,
    lifecycle: LoanLifecycle = Depends(get_lifecycle)
):
    """Confirm or reject a payment receipt"""
    return envelope(await lifecycle.reconcile_receipt(
        receipt_id, request.payment_confirmed, actor=request.actor
    ))


# Workflow and calculator

workflow_router = APIRouter()


@workflow_router.get("/statuses")
async def list_statuses():
    """Application statuses with labels and legal next statuses"""
    return envelope([
        {
            "status": status.value,
            "label": info.label,
            "description": info.description,
            "next": [s.value for s in info.next_statuses],
            "progress": workflow_progress(status),
        }
        for status, info in STATUS_WORKFLOW.items()
    ])


@workflow_router.post("/transitions/check")
async def check_transition(request: TransitionCheckRequest):
    """Whether a status change is legal, and what is legal instead"""
    result = evaluate_transition(request.current, request.target)
    return envelope(result)


calculator_router = APIRouter()


@calculator_router.post("")
async def calculate(request: CalculatorRequest, config: BackofficeConfig = Depends(get_app_config)):
    """Amortization breakdown for a prospective loan"""
    breakdown = compute_amortization(
        request.principal, request.tenure_months, request.frequency,
        monthly_interest_rate=config.monthly_interest_rate,
        closing_fee_rate=config.closing_fee_rate,
    )
    return envelope(breakdown)


def create_app(lifecycle: Optional[LoanLifecycle] = None,
               config: Optional[BackofficeConfig] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    config = config or get_config()
    if lifecycle is None:
        lifecycle = LoanLifecycle(create_record_store(config), config=config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Close the record store connection on shutdown"""
        yield
        await lifecycle.store.close()

    app = FastAPI(
        title="Loan Back Office API",
        description="Loan application review, approval, repayment and closure",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.lifecycle = lifecycle
    app.state.config = config

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LoanBackofficeError)
    async def handle_backoffice_error(request: Request, exc: LoanBackofficeError):
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={
            "success": False,
            "error": "Invalid request body",
            "code": ValidationError.code,
            "details": {"errors": serialize_value(jsonable_errors(exc.errors()))},
        })

    app.include_router(applications_router, prefix="/loan-applications", tags=["Loan Applications"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(receipts_router, prefix="/receipts", tags=["Payment Receipts"])
    app.include_router(workflow_router, prefix="/workflow", tags=["Workflow"])
    app.include_router(calculator_router, prefix="/calculator", tags=["Calculator"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_backoffice_api",
            "version": __version__
        }

    return app


def jsonable_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Keep only the JSON-safe parts of pydantic error entries"""
    return [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": str(err.get("msg", ""))}
        for err in errors
    ]


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the API server with uvicorn"""
    import uvicorn
    from .logging_config import setup_logging

    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format)
    uvicorn.run(
        create_app(config=config),
        host=host or config.api_host,
        port=port or config.api_port,
        log_level="debug" if debug else "info",
    )
