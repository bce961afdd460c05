from enum import Enum
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..db import get_session, run_atomic
from ..models import DiagnosticExam, Enrollment
from ..security import require_roles
from ..services.payments import PaymentApprovalWorkflow
from ..utils.group_access import ensure_student_self


router = APIRouter(prefix="/payments", tags=["payments"])


class PayableKind(str, Enum):
    enrollments = "enrollments"
    exams = "exams"


class PaymentProof(BaseModel):
    monto_pago: float
    comprobante: Optional[str] = None


class PaymentApproval(BaseModel):
    monto_pago: float
    observaciones: Optional[str] = None


class PaymentRejection(BaseModel):
    motivo: Optional[str] = None


class PendingPayments(BaseModel):
    inscripciones: List[Enrollment]
    examenes: List[DiagnosticExam]


@router.post("/{kind}/{item_id}/proof")
def submit_payment_proof(
    kind: PayableKind,
    item_id: int,
    payload: PaymentProof,
    session=Depends(get_session),
    user=Depends(require_roles("admin", "student")),
):
    workflow = PaymentApprovalWorkflow(session)
    ensure_student_self(session, user, workflow.get_item(kind.value, item_id).student_id)

    def _submit():
        return workflow.submit_proof(
            workflow.get_item(kind.value, item_id),
            payload.monto_pago,
            comprobante=payload.comprobante,
            realizado_por=user.id,
        )

    item = run_atomic(session, _submit)
    session.refresh(item)
    return item


@router.post("/{kind}/{item_id}/approve")
def approve_payment(
    kind: PayableKind,
    item_id: int,
    payload: PaymentApproval,
    session=Depends(get_session),
    user=Depends(require_roles("admin")),
):
    workflow = PaymentApprovalWorkflow(session)

    def _approve():
        return workflow.receive_and_approve(
            workflow.get_item(kind.value, item_id),
            payload.monto_pago,
            observaciones=payload.observaciones,
            realizado_por=user.id,
        )

    item = run_atomic(session, _approve)
    session.refresh(item)
    return item


@router.post("/{kind}/{item_id}/reject")
def reject_payment(
    kind: PayableKind,
    item_id: int,
    payload: PaymentRejection,
    session=Depends(get_session),
    user=Depends(require_roles("admin")),
):
    workflow = PaymentApprovalWorkflow(session)

    def _reject():
        return workflow.reject(workflow.get_item(kind.value, item_id), payload.motivo, realizado_por=user.id)

    item = run_atomic(session, _reject)
    session.refresh(item)
    return item


@router.get("/pending", response_model=PendingPayments)
def pending_payments(session=Depends(get_session), user=Depends(require_roles("admin"))):
    return PaymentApprovalWorkflow(session).pending_approvals()
