import logging
from typing import Dict, FrozenSet, Iterable, Optional, Sequence

from sqlmodel import Session, select

from ..errors import (
    DuplicateEnrollment,
    EntityNotFound,
    GroupChangeNotAllowed,
    GroupLevelMismatch,
    ImmutableState,
    InvalidTransition,
    PaymentPending,
    StatusGradeMismatch,
    StudentNotEligible,
)
from ..models import (
    Enrollment,
    EnrollmentStatusEnum as ES,
    EnrollmentTypeEnum,
    Group,
    PaymentStatusEnum,
    Student,
    StudentStatusEnum,
    utcnow,
)
from .capacity import CapacityLedger
from .grades import GradeAggregator
from .history import record_activity


logger = logging.getLogger(__name__)

# Tabla única de transiciones permitidas
TRANSITIONS: Dict[ES, FrozenSet[ES]] = {
    ES.inscrito: frozenset({ES.en_curso, ES.baja, ES.cancelado}),
    ES.en_curso: frozenset({ES.baja, ES.aprobado, ES.reprobado}),
    ES.baja: frozenset({ES.en_curso}),
    ES.aprobado: frozenset(),
    ES.reprobado: frozenset(),
    ES.cancelado: frozenset(),
}

TERMINAL_STATUSES = frozenset({ES.aprobado, ES.reprobado, ES.cancelado})
SEAT_HOLDING_STATUSES = frozenset({ES.inscrito, ES.en_curso})
GROUP_CHANGE_STATUSES = frozenset({ES.inscrito, ES.en_curso})


def can_transition(current: ES, target: ES) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def payment_cleared(item) -> bool:
    """True when the item needs no payment or its payment was approved."""
    return not item.requiere_pago or item.pago_aprobado is True


def holds_seat(enrollment: Enrollment) -> bool:
    return enrollment.estatus in SEAT_HOLDING_STATUSES and payment_cleared(enrollment)


def build_code(prefix: str, item_id: int) -> str:
    return f"{prefix}-{item_id:08d}"


def recompute_student_average(session: Session, student_id: int) -> Optional[float]:
    """promedio_general over graded, non-English enrollments."""
    student = session.get(Student, student_id)
    if not student:
        raise EntityNotFound("Estudiante", student_id)
    finals = session.exec(
        select(Enrollment.calificacion_final).where(
            Enrollment.student_id == student_id,
            Enrollment.tipo_inscripcion != EnrollmentTypeEnum.curso_ingles,
            Enrollment.estatus != ES.cancelado,
            Enrollment.calificacion_final.is_not(None),
        )
    ).all()
    student.promedio_general = round(sum(finals) / len(finals), 2) if finals else None
    session.add(student)
    return student.promedio_general


class EnrollmentStateMachine:
    def __init__(self, session: Session, ledger: Optional[CapacityLedger] = None, grades: Optional[GradeAggregator] = None):
        self.session = session
        self.ledger = ledger or CapacityLedger(session)
        self.grades = grades or GradeAggregator()

    def get(self, enrollment_id: int) -> Enrollment:
        enrollment = self.session.get(Enrollment, enrollment_id)
        if not enrollment:
            raise EntityNotFound("Inscripción", enrollment_id)
        return enrollment

    def ensure_mutable(self, enrollment: Enrollment, fields: Iterable[str]) -> None:
        if enrollment.estatus in TERMINAL_STATUSES:
            raise ImmutableState(enrollment.estatus.value, list(fields))

    def _ensure_payment_cleared(self, enrollment: Enrollment) -> None:
        if not payment_cleared(enrollment):
            raise PaymentPending("inscripcion", enrollment.id, enrollment.estado_pago)

    def create(
        self,
        student_id: int,
        group_id: int,
        tipo_inscripcion: EnrollmentTypeEnum = EnrollmentTypeEnum.normal,
        requiere_pago: bool = False,
        monto_pago: Optional[float] = None,
        nivel_ingles: Optional[int] = None,
        observaciones: Optional[str] = None,
        realizado_por: Optional[int] = None,
    ) -> Enrollment:
        student = self.session.get(Student, student_id)
        if not student:
            raise EntityNotFound("Estudiante", student_id)
        if student.estatus != StudentStatusEnum.activo:
            raise StudentNotEligible(student_id, student.estatus.value)

        duplicate = self.session.exec(
            select(Enrollment).where(
                Enrollment.student_id == student_id,
                Enrollment.group_id == group_id,
                Enrollment.estatus != ES.cancelado,
            )
        ).first()
        if duplicate:
            raise DuplicateEnrollment(student_id, group_id)

        if requiere_pago:
            # El cupo se aparta hasta que se aprueba el pago
            self.ledger.ensure_available(group_id)
        else:
            self.ledger.reserve(group_id)

        enrollment = Enrollment(
            student_id=student_id,
            group_id=group_id,
            tipo_inscripcion=tipo_inscripcion,
            estatus=ES.inscrito,
            fecha_inscripcion=utcnow(),
            nivel_ingles=nivel_ingles,
            observaciones=observaciones,
            requiere_pago=requiere_pago,
            monto_pago=monto_pago if requiere_pago else None,
            pago_aprobado=None,
            estado_pago=PaymentStatusEnum.pendiente_pago if requiere_pago else None,
        )
        self.session.add(enrollment)
        self.session.flush()
        prefix = "ING" if tipo_inscripcion == EnrollmentTypeEnum.curso_ingles else "INS"
        enrollment.codigo = build_code(prefix, enrollment.id)
        self.session.add(enrollment)

        record_activity(
            self.session,
            "CREATED",
            enrollment_id=enrollment.id,
            campo="estatus",
            valor_nuevo=enrollment.estatus,
            descripcion=f"Inscripción {enrollment.codigo} creada en grupo {group_id}",
            realizado_por=realizado_por,
        )
        logger.info(
            "Inscripción %s creada (estudiante=%s, grupo=%s, pago=%s)",
            enrollment.codigo,
            student_id,
            group_id,
            "pendiente" if requiere_pago else "no requerido",
        )
        return enrollment

    def change_status(self, enrollment: Enrollment, new_status: ES, realizado_por: Optional[int] = None) -> Enrollment:
        new_status = ES(new_status)
        current = enrollment.estatus
        if not can_transition(current, new_status):
            raise InvalidTransition(current.value, new_status.value)
        if not payment_cleared(enrollment) and new_status != ES.cancelado:
            raise PaymentPending("inscripcion", enrollment.id, enrollment.estado_pago)
        final = enrollment.calificacion_final
        if new_status in (ES.aprobado, ES.reprobado) and final is not None:
            if self.grades.is_passing(final) != (new_status == ES.aprobado):
                raise StatusGradeMismatch(new_status.value, final, self.grades.passing_grade)

        if new_status in (ES.baja, ES.cancelado):
            if holds_seat(enrollment):
                self.ledger.release(enrollment.group_id)
            if new_status == ES.baja:
                enrollment.fecha_baja = utcnow()
        elif current == ES.baja and new_status == ES.en_curso:
            self.ledger.reserve(enrollment.group_id)
            enrollment.fecha_baja = None

        if new_status in (ES.aprobado, ES.reprobado) and final is not None:
            self.grades.apply_approval(enrollment, utcnow().date())
        elif new_status == ES.aprobado:
            enrollment.aprobado = True
            if enrollment.fecha_aprobacion is None:
                enrollment.fecha_aprobacion = utcnow().date()
        elif new_status == ES.reprobado:
            enrollment.aprobado = False
            enrollment.fecha_aprobacion = None

        enrollment.estatus = new_status
        enrollment.updated_at = utcnow()
        self.session.add(enrollment)
        record_activity(
            self.session,
            "STATUS_CHANGED",
            enrollment_id=enrollment.id,
            campo="estatus",
            valor_anterior=current,
            valor_nuevo=new_status,
            realizado_por=realizado_por,
        )
        logger.info("Inscripción %s: %s -> %s", enrollment.id, current.value, new_status.value)
        return enrollment

    def change_group(self, enrollment: Enrollment, new_group_id: int, realizado_por: Optional[int] = None) -> Enrollment:
        if enrollment.estatus not in GROUP_CHANGE_STATUSES:
            raise GroupChangeNotAllowed(enrollment.estatus.value)
        old_group_id = enrollment.group_id
        if new_group_id == old_group_id:
            return enrollment

        new_group = self.session.get(Group, new_group_id)
        if not new_group:
            raise EntityNotFound("Grupo", new_group_id)
        if (
            enrollment.nivel_ingles is not None
            and new_group.nivel_ingles is not None
            and new_group.nivel_ingles != enrollment.nivel_ingles
        ):
            raise GroupLevelMismatch(new_group_id, new_group.nivel_ingles, enrollment.nivel_ingles)

        if holds_seat(enrollment):
            self.ledger.reserve(new_group_id)
            try:
                self.ledger.release(old_group_id)
            except Exception:
                # Compensación: no dejar al estudiante contado en dos grupos
                logger.exception(
                    "Fallo al liberar cupo del grupo %s; revirtiendo reserva en grupo %s",
                    old_group_id,
                    new_group_id,
                )
                self.ledger.release(new_group_id)
                raise
        else:
            self.ledger.ensure_available(new_group_id)

        enrollment.group_id = new_group_id
        enrollment.updated_at = utcnow()
        self.session.add(enrollment)
        record_activity(
            self.session,
            "GROUP_CHANGED",
            enrollment_id=enrollment.id,
            campo="group_id",
            valor_anterior=old_group_id,
            valor_nuevo=new_group_id,
            realizado_por=realizado_por,
        )
        logger.info("Inscripción %s cambiada de grupo %s a %s", enrollment.id, old_group_id, new_group_id)
        return enrollment

    def update_grades(
        self,
        enrollment: Enrollment,
        partials: Optional[Sequence[Optional[float]]] = None,
        final: Optional[float] = None,
        extra: Optional[float] = None,
        realizado_por: Optional[int] = None,
    ) -> Enrollment:
        self.ensure_mutable(enrollment, ["calificaciones"])
        self._ensure_payment_cleared(enrollment)
        previous = enrollment.calificacion_final
        self.grades.apply_grades(enrollment, partials=partials, final=final, extra=extra)
        enrollment.updated_at = utcnow()
        self.session.add(enrollment)
        if previous != enrollment.calificacion_final:
            record_activity(
                self.session,
                "GRADES_UPDATED",
                enrollment_id=enrollment.id,
                campo="calificacion_final",
                valor_anterior=previous,
                valor_nuevo=enrollment.calificacion_final,
                realizado_por=realizado_por,
            )
        if enrollment.tipo_inscripcion != EnrollmentTypeEnum.curso_ingles:
            self.session.flush()
            recompute_student_average(self.session, enrollment.student_id)
        return enrollment

    def update_attendance(
        self,
        enrollment: Enrollment,
        asistencias: Optional[int] = None,
        faltas: Optional[int] = None,
        retardos: Optional[int] = None,
    ) -> Enrollment:
        self.ensure_mutable(enrollment, ["asistencias"])
        self._ensure_payment_cleared(enrollment)
        self.grades.apply_attendance(enrollment, asistencias=asistencias, faltas=faltas, retardos=retardos)
        enrollment.updated_at = utcnow()
        self.session.add(enrollment)
        return enrollment

    def update_observations(self, enrollment: Enrollment, observaciones: Optional[str]) -> Enrollment:
        enrollment.observaciones = observaciones
        enrollment.updated_at = utcnow()
        self.session.add(enrollment)
        return enrollment
