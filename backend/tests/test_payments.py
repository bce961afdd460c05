import pytest
from sqlmodel import select

from escolar.db import run_atomic
from escolar.errors import (
    EntityNotFound,
    GroupFull,
    ImmutableState,
    InvalidAmount,
    MissingReason,
    PaymentNotPending,
    PaymentNotRequired,
)
from escolar.models import (
    ActivityHistory,
    EnrollmentStatusEnum,
    EnrollmentTypeEnum,
    Group,
    PaymentStatusEnum,
)
from escolar.services.english import EnglishProgressionEngine
from escolar.services.enrollments import EnrollmentStateMachine
from escolar.services.payments import PaymentApprovalWorkflow


def _cupo(session, group_id):
    return session.get(Group, group_id, populate_existing=True).cupo_actual


@pytest.fixture()
def workflow(session):
    return PaymentApprovalWorkflow(session)


@pytest.fixture()
def paid_enrollment(session, make_student, make_group):
    def _make(**group_kwargs):
        group = make_group(**group_kwargs)
        return run_atomic(
            session,
            EnrollmentStateMachine(session).create,
            make_student().id,
            group.id,
            tipo_inscripcion=EnrollmentTypeEnum.especial,
            requiere_pago=True,
            monto_pago=500,
        )

    return _make


def test_submit_then_approve_reserves_seat(session, workflow, paid_enrollment):
    enrollment = paid_enrollment(cupo_maximo=2)
    assert _cupo(session, enrollment.group_id) == 0

    run_atomic(session, workflow.submit_proof, enrollment, 500, "transferencia-123.pdf")
    assert enrollment.estado_pago == PaymentStatusEnum.pago_pendiente_aprobacion
    assert enrollment.comprobante_pago == "transferencia-123.pdf"
    assert enrollment.pago_aprobado is None

    run_atomic(session, workflow.receive_and_approve, enrollment, 500, "Pago verificado")
    assert enrollment.estado_pago == PaymentStatusEnum.pago_aprobado
    assert enrollment.pago_aprobado is True
    assert enrollment.fecha_pago_aprobado is not None
    assert enrollment.observaciones == "Pago verificado"
    assert _cupo(session, enrollment.group_id) == 1

    acciones = session.exec(
        select(ActivityHistory.accion)
        .where(ActivityHistory.enrollment_id == enrollment.id)
        .order_by(ActivityHistory.id)
    ).all()
    assert acciones == ["CREATED", "PAYMENT_SUBMITTED", "PAYMENT_APPROVED"]


def test_approved_enrollment_can_start(session, workflow, paid_enrollment):
    enrollment = paid_enrollment()
    run_atomic(session, workflow.receive_and_approve, enrollment, 500)
    run_atomic(session, EnrollmentStateMachine(session).change_status, enrollment, EnrollmentStatusEnum.en_curso)
    assert enrollment.estatus == EnrollmentStatusEnum.en_curso


def test_approval_on_full_group_changes_nothing(session, workflow, paid_enrollment):
    enrollment = paid_enrollment(cupo_maximo=1)
    session.get(Group, enrollment.group_id).cupo_actual = 1
    session.commit()

    with pytest.raises(GroupFull):
        run_atomic(session, workflow.receive_and_approve, enrollment, 500)
    session.refresh(enrollment)
    assert enrollment.estado_pago == PaymentStatusEnum.pendiente_pago
    assert enrollment.pago_aprobado is None


@pytest.mark.parametrize("monto", [0, -10, None, "mucho", True])
def test_invalid_amounts_are_rejected(session, workflow, paid_enrollment, monto):
    enrollment = paid_enrollment()
    with pytest.raises(InvalidAmount):
        run_atomic(session, workflow.receive_and_approve, enrollment, monto)
    with pytest.raises(InvalidAmount):
        run_atomic(session, workflow.submit_proof, enrollment, monto)


def test_reject_returns_to_pending_with_reason(session, workflow, paid_enrollment):
    enrollment = paid_enrollment()
    run_atomic(session, workflow.submit_proof, enrollment, 500, "comprobante.jpg")

    run_atomic(session, workflow.reject, enrollment, "  Comprobante ilegible ")
    assert enrollment.estado_pago == PaymentStatusEnum.pendiente_pago
    assert enrollment.pago_aprobado is False
    assert enrollment.monto_pago is None
    assert enrollment.motivo_rechazo == "Comprobante ilegible"
    assert enrollment.observaciones == "Pago rechazado. Motivo: Comprobante ilegible"
    assert _cupo(session, enrollment.group_id) == 0

    # Puede volver a enviar comprobante después del rechazo
    run_atomic(session, workflow.submit_proof, enrollment, 450)
    assert enrollment.estado_pago == PaymentStatusEnum.pago_pendiente_aprobacion
    assert enrollment.motivo_rechazo is None


@pytest.mark.parametrize("motivo", [None, "", "   "])
def test_reject_requires_reason(session, workflow, paid_enrollment, motivo):
    enrollment = paid_enrollment()
    with pytest.raises(MissingReason):
        run_atomic(session, workflow.reject, enrollment, motivo)


def test_items_without_payment_are_not_gated(session, workflow, make_student, make_group):
    enrollment = run_atomic(session, EnrollmentStateMachine(session).create, make_student().id, make_group().id)
    with pytest.raises(PaymentNotRequired):
        run_atomic(session, workflow.receive_and_approve, enrollment, 100)
    with pytest.raises(PaymentNotRequired):
        run_atomic(session, workflow.reject, enrollment, "sin motivo real")


def test_approved_payment_is_final(session, workflow, paid_enrollment):
    enrollment = paid_enrollment()
    run_atomic(session, workflow.receive_and_approve, enrollment, 500)

    with pytest.raises(PaymentNotPending):
        run_atomic(session, workflow.receive_and_approve, enrollment, 500)
    with pytest.raises(PaymentNotPending):
        run_atomic(session, workflow.reject, enrollment, "tarde")
    with pytest.raises(PaymentNotPending):
        run_atomic(session, workflow.submit_proof, enrollment, 500)
    assert _cupo(session, enrollment.group_id) == 1


def test_cancelled_enrollment_cannot_be_approved(session, workflow, paid_enrollment):
    enrollment = paid_enrollment()
    run_atomic(session, EnrollmentStateMachine(session).change_status, enrollment, EnrollmentStatusEnum.cancelado)
    with pytest.raises(ImmutableState):
        run_atomic(session, workflow.receive_and_approve, enrollment, 500)


def test_paid_exam_reserves_exam_group_on_approval(session, workflow, make_student, make_group):
    group = make_group(nombre="EXAMEN-DIAG", cupo_maximo=40)
    english = EnglishProgressionEngine(session)
    student = make_student()
    exam = run_atomic(
        session, english.request_diagnostic_exam, student.id, group_id=group.id, requiere_pago=True, monto_pago=350
    )
    assert exam.codigo.startswith("EXA-")
    assert _cupo(session, group.id) == 0

    run_atomic(session, workflow.receive_and_approve, exam, 350)
    assert _cupo(session, group.id) == 1

    outcome = run_atomic(session, english.process_diagnostic_result, exam, 75, 0)
    assert outcome.placement.kind == "NO_SKIP"


def test_pending_approvals_lists_both_kinds(session, workflow, paid_enrollment, make_student):
    waiting = paid_enrollment()
    untouched = paid_enrollment()
    run_atomic(session, workflow.submit_proof, waiting, 500)

    english = EnglishProgressionEngine(session)
    exam = run_atomic(session, english.request_diagnostic_exam, make_student().id, requiere_pago=True, monto_pago=300)
    run_atomic(session, workflow.submit_proof, exam, 300)

    pending = workflow.pending_approvals()
    assert [e.id for e in pending["inscripciones"]] == [waiting.id]
    assert [e.id for e in pending["examenes"]] == [exam.id]
    assert untouched.id not in [e.id for e in pending["inscripciones"]]


def test_get_item_by_kind(session, workflow, paid_enrollment):
    enrollment = paid_enrollment()
    assert workflow.get_item("enrollments", enrollment.id).id == enrollment.id
    with pytest.raises(EntityNotFound):
        workflow.get_item("exams", 9999)
    with pytest.raises(EntityNotFound):
        workflow.get_item("facturas", enrollment.id)
