"""English-level progression.

Each student has a sparse map level -> grade (levels 1-6) kept as
``EnglishLevelRecord`` rows. Levels come from two sources: a passed English
course (COURSE) or a placement exam that certifies the levels below the
assigned one (DIAGNOSTIC_SKIP). A course record always wins over a diagnostic
one for the same level.

The requirement is satisfied when all six levels are recorded and their
average is at least the passing grade. The aggregate columns on ``Student``
are recomputed after every write, with the student row locked.
"""

import logging
from typing import Annotated, Dict, List, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field
from sqlmodel import Session, select

from ..errors import (
    CourseAlreadyRequested,
    DiagnosticRequired,
    EntityNotFound,
    ExamAlreadyRequested,
    GroupLevelMismatch,
    ImmutableState,
    InvalidGrade,
    InvalidLevel,
    LevelAlreadyCompleted,
    LevelBelowPlacement,
    MissingLevelGrade,
    MissingPlacementLevel,
    NotEnglishCourse,
    PaymentPending,
    RequirementAlreadySatisfied,
    StudentNotEligible,
)
from ..models import (
    DiagnosticExam,
    Enrollment,
    EnrollmentStatusEnum,
    EnrollmentTypeEnum,
    EnglishLevelRecord,
    ExamStatusEnum,
    ExamTypeEnum,
    Group,
    LevelSourceEnum,
    PaymentStatusEnum,
    Student,
    StudentStatusEnum,
    utcnow,
)
from .capacity import CapacityLedger
from .enrollments import EnrollmentStateMachine, build_code, payment_cleared
from .exam_periods import ExamPeriodService
from .grades import GradeAggregator
from .history import record_activity


logger = logging.getLogger(__name__)

LEVELS = (1, 2, 3, 4, 5, 6)
PERFECT_SCORE = 100.0
OPEN_COURSE_STATUSES = (
    EnrollmentStatusEnum.inscrito,
    EnrollmentStatusEnum.en_curso,
    EnrollmentStatusEnum.baja,
)

PERFECT_SCORE_MESSAGE = (
    "El estudiante obtuvo 100% en el examen de diagnóstico. Todos los niveles de inglés (1-6) "
    "han sido completados automáticamente y el requisito de inglés ha sido marcado como cumplido."
)
NO_LEVEL_MESSAGE = (
    "Examen procesado exitosamente. El estudiante puede inscribirse al nivel 6 como curso real. "
    "No se crearon registros automáticos de niveles."
)
DEFAULT_MESSAGE = "Examen procesado exitosamente."


class AllLevelsSkipped(BaseModel):
    kind: Literal["ALL_LEVELS_SKIPPED"] = "ALL_LEVELS_SKIPPED"
    niveles_acreditados: List[int] = Field(default_factory=lambda: list(LEVELS))


class LevelsSkippedTo(BaseModel):
    kind: Literal["LEVELS_SKIPPED_TO"] = "LEVELS_SKIPPED_TO"
    nivel: int
    niveles_acreditados: List[int]


class NoSkip(BaseModel):
    kind: Literal["NO_SKIP"] = "NO_SKIP"
    # None: sin nivel asignado, puede cursar directamente el nivel 6
    nivel_asignado: Optional[int] = None


Placement = Annotated[Union[AllLevelsSkipped, LevelsSkippedTo, NoSkip], Field(discriminator="kind")]


class EnglishProgress(BaseModel):
    student_id: int
    niveles: Dict[int, float]
    niveles_completados: List[int]
    niveles_pendientes: List[int]
    progreso: int
    promedio: Optional[float] = None
    cumple_requisito: bool
    razon_no_cumple: Optional[str] = None
    nivel_actual: Optional[int] = None
    nivel_certificado: Optional[int] = None


class DiagnosticOutcome(BaseModel):
    exam_id: int
    student_id: int
    exam_type: ExamTypeEnum
    resultado: float
    estatus: ExamStatusEnum
    placement: Optional[Placement] = None
    mensaje: str
    progress: Optional[EnglishProgress] = None


class CourseOutcome(BaseModel):
    enrollment_id: int
    student_id: int
    nivel: int
    calificacion: float
    aprobado: bool
    estatus: EnrollmentStatusEnum
    progress: EnglishProgress


def _normalize_level_grades(calificaciones: Optional[Mapping]) -> Dict[int, Optional[float]]:
    normalized: Dict[int, Optional[float]] = {}
    for key, value in (calificaciones or {}).items():
        try:
            level = int(key)
        except (TypeError, ValueError):
            raise InvalidLevel(key)
        normalized[level] = value
    return normalized


def _validate_level(value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value not in LEVELS:
        raise InvalidLevel(value)
    return value


class EnglishProgressionEngine:
    def __init__(
        self,
        session: Session,
        machine: Optional[EnrollmentStateMachine] = None,
        grades: Optional[GradeAggregator] = None,
    ):
        self.session = session
        self.grades = grades or GradeAggregator()
        self.machine = machine or EnrollmentStateMachine(session, grades=self.grades)
        self.ledger: CapacityLedger = self.machine.ledger
        self.periods = ExamPeriodService(session, self.ledger)

    # Consultas

    def _get_student(self, student_id: int, lock: bool = False) -> Student:
        if lock:
            student = self.session.get(Student, student_id, with_for_update=True, populate_existing=True)
        else:
            student = self.session.get(Student, student_id)
        if not student:
            raise EntityNotFound("Estudiante", student_id)
        return student

    def get_exam(self, exam_id: int) -> DiagnosticExam:
        exam = self.session.get(DiagnosticExam, exam_id)
        if not exam:
            raise EntityNotFound("Examen", exam_id)
        return exam

    def level_records(self, student_id: int) -> List[EnglishLevelRecord]:
        stmt = (
            select(EnglishLevelRecord)
            .where(EnglishLevelRecord.student_id == student_id)
            .order_by(EnglishLevelRecord.nivel)
        )
        return list(self.session.exec(stmt).all())

    def _progress_from(self, student: Student, records: List[EnglishLevelRecord]) -> EnglishProgress:
        passing = self.grades.passing_grade
        niveles = {r.nivel: r.calificacion for r in records}
        completados = sorted(niveles)
        pendientes = [level for level in LEVELS if level not in niveles]
        promedio = round(sum(niveles.values()) / len(niveles), 2) if niveles else None
        promedio_ok = promedio is not None and promedio >= passing
        cumple = not pendientes and promedio_ok

        razon = None
        promedio_txt = f"{promedio:.2f}" if promedio is not None else "N/A"
        if not cumple:
            if not promedio_ok and pendientes:
                razon = f"Promedio insuficiente ({promedio_txt}%) y faltan {len(pendientes)} nivel(es)"
            elif not promedio_ok:
                razon = f"Promedio insuficiente: {promedio_txt}% (requiere ≥{passing:g}%)"
            else:
                razon = f"Faltan {len(pendientes)} nivel(es): {', '.join(str(p) for p in pendientes)}"

        return EnglishProgress(
            student_id=student.id,
            niveles=niveles,
            niveles_completados=completados,
            niveles_pendientes=pendientes,
            progreso=round(len(completados) / len(LEVELS) * 100),
            promedio=promedio,
            cumple_requisito=cumple,
            razon_no_cumple=razon,
            nivel_actual=student.nivel_ingles_actual,
            nivel_certificado=max(completados) if completados else None,
        )

    def recompute_progress(self, student_id: int) -> EnglishProgress:
        self.session.flush()
        student = self._get_student(student_id, lock=True)
        progress = self._progress_from(student, self.level_records(student_id))
        student.promedio_ingles = progress.promedio
        student.cumple_requisito_ingles = progress.cumple_requisito
        student.nivel_ingles_certificado = progress.nivel_certificado
        self.session.add(student)
        return progress

    def english_status(self, student_id: int) -> dict:
        student = self._get_student(student_id)
        progress = self._progress_from(student, self.level_records(student_id))
        exams = self.session.exec(
            select(DiagnosticExam)
            .where(DiagnosticExam.student_id == student_id)
            .order_by(DiagnosticExam.fecha_inscripcion)
        ).all()
        courses = self.session.exec(
            select(Enrollment)
            .where(
                Enrollment.student_id == student_id,
                Enrollment.tipo_inscripcion == EnrollmentTypeEnum.curso_ingles,
            )
            .order_by(Enrollment.fecha_inscripcion)
        ).all()
        return {
            "progress": progress,
            "porcentaje_diagnostico": student.porcentaje_ingles,
            "fecha_examen_diagnostico": student.fecha_examen_diagnostico,
            "examenes": list(exams),
            "cursos": list(courses),
        }

    # Registro de niveles

    def _record_level(
        self,
        student_id: int,
        nivel: int,
        calificacion: float,
        source: LevelSourceEnum,
        enrollment_id: Optional[int] = None,
        exam_id: Optional[int] = None,
    ) -> Optional[EnglishLevelRecord]:
        existing = self.session.exec(
            select(EnglishLevelRecord).where(
                EnglishLevelRecord.student_id == student_id,
                EnglishLevelRecord.nivel == nivel,
            )
        ).first()
        if existing:
            if source == LevelSourceEnum.diagnostic_skip and existing.source == LevelSourceEnum.course:
                logger.info(
                    "Nivel %s del estudiante %s ya acreditado por curso; se conserva la calificación %s",
                    nivel,
                    student_id,
                    existing.calificacion,
                )
                return None
            record = existing
        else:
            record = EnglishLevelRecord(student_id=student_id, nivel=nivel, calificacion=calificacion, source=source)
        record.calificacion = calificacion
        record.source = source
        record.enrollment_id = enrollment_id
        record.exam_id = exam_id
        record.updated_at = utcnow()
        self.session.add(record)
        return record

    # Examen de diagnóstico

    def request_diagnostic_exam(
        self,
        student_id: int,
        exam_type: ExamTypeEnum = ExamTypeEnum.diagnostico,
        group_id: Optional[int] = None,
        requiere_pago: bool = False,
        monto_pago: Optional[float] = None,
        realizado_por: Optional[int] = None,
        period_id: Optional[int] = None,
    ) -> DiagnosticExam:
        """Register a student for an exam.

        With ``period_id`` the exam takes one of the period's seats right away
        and the payment terms come from the period. A group seat is taken now
        only when no payment is required; otherwise on payment approval.
        """
        exam_type = ExamTypeEnum(exam_type)
        student = self._get_student(student_id)
        if student.estatus != StudentStatusEnum.activo:
            raise StudentNotEligible(student_id, student.estatus.value)

        if exam_type == ExamTypeEnum.diagnostico:
            if student.cumple_requisito_ingles:
                raise RequirementAlreadySatisfied(student_id)
            open_exam = self.session.exec(
                select(DiagnosticExam).where(
                    DiagnosticExam.student_id == student_id,
                    DiagnosticExam.exam_type == ExamTypeEnum.diagnostico,
                    DiagnosticExam.estatus == ExamStatusEnum.inscrito,
                )
            ).first()
            if open_exam:
                raise ExamAlreadyRequested(student_id, open_exam.id, open_exam.estatus.value)

        if period_id is not None:
            period = self.periods.reserve_seat(period_id)
            requiere_pago = period.requiere_pago
            monto_pago = period.monto_pago

        if group_id is not None:
            if requiere_pago:
                self.ledger.ensure_available(group_id)
            else:
                self.ledger.reserve(group_id)

        exam = DiagnosticExam(
            student_id=student_id,
            group_id=group_id,
            period_id=period_id,
            exam_type=exam_type,
            estatus=ExamStatusEnum.inscrito,
            requiere_pago=requiere_pago,
            monto_pago=monto_pago if requiere_pago else None,
            estado_pago=PaymentStatusEnum.pendiente_pago if requiere_pago else None,
        )
        self.session.add(exam)
        self.session.flush()
        exam.codigo = build_code("EXA", exam.id)
        self.session.add(exam)
        record_activity(
            self.session,
            "CREATED",
            exam_id=exam.id,
            campo="estatus",
            valor_nuevo=exam.estatus,
            descripcion=f"Examen {exam.codigo} ({exam_type.value}) solicitado",
            realizado_por=realizado_por,
        )
        logger.info("Examen %s solicitado para estudiante %s", exam.codigo, student_id)
        return exam

    def cancel_exam(self, exam: DiagnosticExam, realizado_por: Optional[int] = None) -> DiagnosticExam:
        if exam.estatus != ExamStatusEnum.inscrito:
            raise ImmutableState(exam.estatus.value, ["estatus"])
        if exam.group_id is not None and payment_cleared(exam):
            self.ledger.release(exam.group_id)
        if exam.period_id is not None:
            self.ledger.release_period(exam.period_id)

        previous = exam.estatus
        exam.estatus = ExamStatusEnum.cancelado
        exam.updated_at = utcnow()
        self.session.add(exam)
        record_activity(
            self.session,
            "STATUS_CHANGED",
            exam_id=exam.id,
            campo="estatus",
            valor_anterior=previous,
            valor_nuevo=exam.estatus,
            realizado_por=realizado_por,
        )
        logger.info("Examen %s cancelado", exam.id)
        return exam

    def _placement_for(
        self,
        resultado: float,
        nivel_final: Optional[int],
        calificaciones_por_nivel: Optional[Mapping],
    ):
        """Validate the inputs of a diagnostic and decide the placement.

        Returns the placement and the level grades to record. Nothing is
        written here, so a rejected input leaves no partial state behind.
        """

        if resultado == PERFECT_SCORE:
            return AllLevelsSkipped(), {level: PERFECT_SCORE for level in LEVELS}

        if nivel_final is None or nivel_final == 0:
            if resultado < self.grades.passing_grade:
                raise MissingPlacementLevel(resultado)
            return NoSkip(nivel_asignado=None), {}

        nivel_final = _validate_level(nivel_final)
        if nivel_final == 1:
            return NoSkip(nivel_asignado=1), {}

        provided = _normalize_level_grades(calificaciones_por_nivel)
        to_record: Dict[int, float] = {}
        for level in range(1, nivel_final):
            if provided.get(level) is None:
                raise MissingLevelGrade(level)
            to_record[level] = self.grades.validate_grade(provided[level], f"calificaciones_por_nivel[{level}]")
        return LevelsSkippedTo(nivel=nivel_final, niveles_acreditados=sorted(to_record)), to_record

    def process_diagnostic_result(
        self,
        exam: DiagnosticExam,
        resultado: float,
        nivel_final: Optional[int] = None,
        calificaciones_por_nivel: Optional[Mapping] = None,
        realizado_por: Optional[int] = None,
    ) -> DiagnosticOutcome:
        # Un resultado ya registrado no se reprocesa
        if exam.estatus != ExamStatusEnum.inscrito:
            raise ImmutableState(exam.estatus.value, ["resultado"])
        if not payment_cleared(exam):
            raise PaymentPending("examen", exam.id, exam.estado_pago)
        if resultado is None:
            raise InvalidGrade("resultado", resultado)
        resultado = self.grades.validate_grade(resultado, "resultado")

        is_diagnostic = exam.exam_type == ExamTypeEnum.diagnostico
        placement = None
        to_record: Dict[int, float] = {}
        if is_diagnostic:
            placement, to_record = self._placement_for(resultado, nivel_final, calificaciones_por_nivel)

        previous = exam.resultado
        if self.grades.is_passing(resultado):
            exam.estatus = ExamStatusEnum.aprobado
        elif is_diagnostic:
            exam.estatus = ExamStatusEnum.evaluado
        else:
            exam.estatus = ExamStatusEnum.reprobado
        exam.resultado = resultado
        exam.fecha_resultado = utcnow()
        exam.updated_at = utcnow()

        progress = None
        mensaje = DEFAULT_MESSAGE
        if is_diagnostic:
            self.session.flush()
            student = self._get_student(exam.student_id, lock=True)
            if isinstance(placement, AllLevelsSkipped):
                exam.nivel_ingles = 6
                student.nivel_ingles_actual = 6
                mensaje = PERFECT_SCORE_MESSAGE
            elif isinstance(placement, LevelsSkippedTo):
                exam.nivel_ingles = placement.nivel
                student.nivel_ingles_actual = placement.nivel
            else:
                exam.nivel_ingles = placement.nivel_asignado or 0
                student.nivel_ingles_actual = placement.nivel_asignado
                if placement.nivel_asignado is None:
                    mensaje = NO_LEVEL_MESSAGE
            student.porcentaje_ingles = resultado
            student.fecha_examen_diagnostico = utcnow()
            self.session.add(student)

            for level, grade in to_record.items():
                self._record_level(
                    exam.student_id, level, grade, LevelSourceEnum.diagnostic_skip, exam_id=exam.id
                )
                record_activity(
                    self.session,
                    "LEVEL_RECORDED",
                    exam_id=exam.id,
                    campo=f"nivel_{level}",
                    valor_nuevo=grade,
                    descripcion=f"Nivel {level} de inglés completado mediante examen de diagnóstico (calificación: {grade:g})",
                    realizado_por=realizado_por,
                )
        self.session.add(exam)

        record_activity(
            self.session,
            "GRADE_UPDATED",
            exam_id=exam.id,
            campo="resultado",
            valor_anterior=previous,
            valor_nuevo=resultado,
            realizado_por=realizado_por,
        )
        if is_diagnostic:
            progress = self.recompute_progress(exam.student_id)
        logger.info(
            "Examen %s procesado: resultado=%s estatus=%s colocación=%s",
            exam.id,
            resultado,
            exam.estatus.value,
            placement.kind if placement else None,
        )
        return DiagnosticOutcome(
            exam_id=exam.id,
            student_id=exam.student_id,
            exam_type=exam.exam_type,
            resultado=resultado,
            estatus=exam.estatus,
            placement=placement,
            mensaje=mensaje,
            progress=progress,
        )

    # Cursos de inglés

    def enroll_in_course(
        self,
        student_id: int,
        group_id: int,
        nivel_ingles: int,
        requiere_pago: bool = False,
        monto_pago: Optional[float] = None,
        realizado_por: Optional[int] = None,
    ) -> Enrollment:
        nivel_ingles = _validate_level(nivel_ingles)
        group = self.session.get(Group, group_id)
        if not group:
            raise EntityNotFound("Grupo", group_id)
        if group.nivel_ingles is not None and group.nivel_ingles != nivel_ingles:
            raise GroupLevelMismatch(group_id, group.nivel_ingles, nivel_ingles)

        student = self._get_student(student_id)
        if student.estatus != StudentStatusEnum.activo:
            raise StudentNotEligible(student_id, student.estatus.value)
        if student.fecha_examen_diagnostico is None:
            raise DiagnosticRequired(student_id)

        progress = self._progress_from(student, self.level_records(student_id))
        if progress.cumple_requisito:
            raise RequirementAlreadySatisfied(student_id)
        if nivel_ingles in progress.niveles:
            raise LevelAlreadyCompleted(student_id, nivel_ingles)
        if student.nivel_ingles_actual and nivel_ingles < student.nivel_ingles_actual:
            raise LevelBelowPlacement(student_id, nivel_ingles, student.nivel_ingles_actual)

        open_course = self.session.exec(
            select(Enrollment).where(
                Enrollment.student_id == student_id,
                Enrollment.tipo_inscripcion == EnrollmentTypeEnum.curso_ingles,
                Enrollment.nivel_ingles == nivel_ingles,
                Enrollment.estatus.in_(OPEN_COURSE_STATUSES),
            )
        ).first()
        if open_course:
            raise CourseAlreadyRequested(student_id, nivel_ingles, open_course.id)

        return self.machine.create(
            student_id,
            group_id,
            tipo_inscripcion=EnrollmentTypeEnum.curso_ingles,
            requiere_pago=requiere_pago,
            monto_pago=monto_pago,
            nivel_ingles=nivel_ingles,
            realizado_por=realizado_por,
        )

    def complete_course(
        self,
        enrollment: Enrollment,
        calificacion: float,
        realizado_por: Optional[int] = None,
    ) -> CourseOutcome:
        if enrollment.tipo_inscripcion != EnrollmentTypeEnum.curso_ingles or enrollment.nivel_ingles is None:
            raise NotEnglishCourse(enrollment.id)
        self.machine.ensure_mutable(enrollment, ["calificacion_final"])
        if calificacion is None:
            raise InvalidGrade("calificacion", calificacion)
        calificacion = self.grades.validate_grade(calificacion, "calificacion")

        if enrollment.estatus == EnrollmentStatusEnum.inscrito:
            self.machine.change_status(enrollment, EnrollmentStatusEnum.en_curso, realizado_por=realizado_por)
        passed = self.grades.is_passing(calificacion)
        target = EnrollmentStatusEnum.aprobado if passed else EnrollmentStatusEnum.reprobado
        # Calificación primero: el estatus final se valida contra ella
        enrollment.calificacion_final = calificacion
        self.machine.change_status(enrollment, target, realizado_por=realizado_por)

        if passed:
            self._record_level(
                enrollment.student_id,
                enrollment.nivel_ingles,
                calificacion,
                LevelSourceEnum.course,
                enrollment_id=enrollment.id,
            )
        progress = self.recompute_progress(enrollment.student_id)
        logger.info(
            "Curso de inglés %s (nivel %s) concluido con %s; requisito=%s",
            enrollment.id,
            enrollment.nivel_ingles,
            calificacion,
            progress.cumple_requisito,
        )
        return CourseOutcome(
            enrollment_id=enrollment.id,
            student_id=enrollment.student_id,
            nivel=enrollment.nivel_ingles,
            calificacion=calificacion,
            aprobado=enrollment.aprobado,
            estatus=enrollment.estatus,
            progress=progress,
        )
