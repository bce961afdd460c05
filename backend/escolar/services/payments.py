import logging
from typing import Dict, List, Optional, Union

from sqlmodel import Session, select

from ..errors import (
    EntityNotFound,
    ImmutableState,
    InvalidAmount,
    MissingReason,
    PaymentNotPending,
    PaymentNotRequired,
)
from ..models import (
    DiagnosticExam,
    Enrollment,
    EnrollmentStatusEnum,
    ExamStatusEnum,
    PaymentStatusEnum,
    utcnow,
)
from .capacity import CapacityLedger
from .history import record_activity


logger = logging.getLogger(__name__)

PayableItem = Union[Enrollment, DiagnosticExam]

ITEM_KINDS = {
    "enrollments": Enrollment,
    "exams": DiagnosticExam,
}


def _label(item: PayableItem) -> str:
    return "inscripcion" if isinstance(item, Enrollment) else "examen"


def _history_ref(item: PayableItem) -> Dict[str, int]:
    if isinstance(item, Enrollment):
        return {"enrollment_id": item.id}
    return {"exam_id": item.id}


class PaymentApprovalWorkflow:
    """Payment gate for enrollments and exams.

    PENDIENTE_PAGO -> PAGO_PENDIENTE_APROBACION -> PAGO_APROBADO, or back to
    PENDIENTE_PAGO when rejected. The seat of the item's group is reserved
    only when the payment is approved.
    """

    def __init__(self, session: Session, ledger: Optional[CapacityLedger] = None):
        self.session = session
        self.ledger = ledger or CapacityLedger(session)

    def get_item(self, kind: str, item_id: int) -> PayableItem:
        model = ITEM_KINDS.get(kind)
        if model is None:
            raise EntityNotFound("Tipo de registro", kind)
        item = self.session.get(model, item_id)
        if not item:
            raise EntityNotFound("Inscripción" if model is Enrollment else "Examen", item_id)
        return item

    def _ensure_pending(self, item: PayableItem) -> None:
        if not item.requiere_pago:
            raise PaymentNotRequired(_label(item), item.id)
        if item.pago_aprobado is True or item.estado_pago == PaymentStatusEnum.pago_aprobado:
            raise PaymentNotPending(_label(item), item.id, item.estado_pago)

    def _ensure_not_cancelled(self, item: PayableItem) -> None:
        cancelled = (
            item.estatus == EnrollmentStatusEnum.cancelado
            if isinstance(item, Enrollment)
            else item.estatus == ExamStatusEnum.cancelado
        )
        if cancelled:
            raise ImmutableState(item.estatus.value, ["estado_pago"])

    @staticmethod
    def _validate_amount(monto_pago) -> float:
        if monto_pago is None or isinstance(monto_pago, bool):
            raise InvalidAmount(monto_pago)
        try:
            monto = float(monto_pago)
        except (TypeError, ValueError):
            raise InvalidAmount(monto_pago)
        if monto <= 0:
            raise InvalidAmount(monto_pago)
        return monto

    def submit_proof(
        self,
        item: PayableItem,
        monto_pago: float,
        comprobante: Optional[str] = None,
        realizado_por: Optional[int] = None,
    ) -> PayableItem:
        monto = self._validate_amount(monto_pago)
        self._ensure_pending(item)
        self._ensure_not_cancelled(item)
        if item.estado_pago != PaymentStatusEnum.pendiente_pago:
            raise PaymentNotPending(_label(item), item.id, item.estado_pago)

        item.monto_pago = monto
        item.comprobante_pago = comprobante
        item.estado_pago = PaymentStatusEnum.pago_pendiente_aprobacion
        item.motivo_rechazo = None
        item.updated_at = utcnow()
        self.session.add(item)
        record_activity(
            self.session,
            "PAYMENT_SUBMITTED",
            campo="estado_pago",
            valor_anterior=PaymentStatusEnum.pendiente_pago,
            valor_nuevo=item.estado_pago,
            descripcion=f"Comprobante de pago registrado por ${monto:.2f}",
            realizado_por=realizado_por,
            **_history_ref(item),
        )
        logger.info("Comprobante de pago recibido para %s %s", _label(item), item.id)
        return item

    def receive_and_approve(
        self,
        item: PayableItem,
        monto_pago: float,
        observaciones: Optional[str] = None,
        realizado_por: Optional[int] = None,
    ) -> PayableItem:
        monto = self._validate_amount(monto_pago)
        self._ensure_pending(item)
        self._ensure_not_cancelled(item)

        # El cupo se ocupa hasta que se aprueba el pago
        if item.group_id is not None:
            self.ledger.reserve(item.group_id)

        previous = item.estado_pago
        item.pago_aprobado = True
        item.monto_pago = monto
        item.fecha_pago_aprobado = utcnow()
        item.estado_pago = PaymentStatusEnum.pago_aprobado
        item.motivo_rechazo = None
        if observaciones:
            item.observaciones = observaciones
        item.updated_at = utcnow()
        self.session.add(item)
        record_activity(
            self.session,
            "PAYMENT_APPROVED",
            campo="estado_pago",
            valor_anterior=previous,
            valor_nuevo=item.estado_pago,
            descripcion=f"Pago aprobado por ${monto:.2f}",
            realizado_por=realizado_por,
            **_history_ref(item),
        )
        logger.info("Pago aprobado para %s %s (monto=%.2f)", _label(item), item.id, monto)
        return item

    def reject(self, item: PayableItem, motivo: Optional[str], realizado_por: Optional[int] = None) -> PayableItem:
        if motivo is None or not motivo.strip():
            raise MissingReason()
        self._ensure_pending(item)

        motivo = motivo.strip()
        previous = item.estado_pago
        item.pago_aprobado = False
        item.monto_pago = None
        item.comprobante_pago = None
        item.estado_pago = PaymentStatusEnum.pendiente_pago
        item.motivo_rechazo = motivo
        item.observaciones = f"Pago rechazado. Motivo: {motivo}"
        item.updated_at = utcnow()
        self.session.add(item)
        record_activity(
            self.session,
            "PAYMENT_REJECTED",
            campo="estado_pago",
            valor_anterior=previous,
            valor_nuevo=item.estado_pago,
            descripcion=item.observaciones,
            realizado_por=realizado_por,
            **_history_ref(item),
        )
        logger.info("Pago rechazado para %s %s: %s", _label(item), item.id, motivo)
        return item

    def pending_approvals(self) -> Dict[str, List[PayableItem]]:
        awaiting = PaymentStatusEnum.pago_pendiente_aprobacion
        enrollments = self.session.exec(
            select(Enrollment)
            .where(Enrollment.estado_pago == awaiting, Enrollment.estatus != EnrollmentStatusEnum.cancelado)
            .order_by(Enrollment.updated_at)
        ).all()
        exams = self.session.exec(
            select(DiagnosticExam)
            .where(DiagnosticExam.estado_pago == awaiting, DiagnosticExam.estatus != ExamStatusEnum.cancelado)
            .order_by(DiagnosticExam.updated_at)
        ).all()
        return {"inscripciones": list(enrollments), "examenes": list(exams)}
