from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..db import get_session, run_atomic
from ..models import DiagnosticExam, Enrollment, ExamTypeEnum
from ..security import require_roles
from ..services.english import CourseOutcome, DiagnosticOutcome, EnglishProgress, EnglishProgressionEngine
from ..utils.group_access import ensure_enrollment_access, ensure_student_self, require_student


router = APIRouter(prefix="/english", tags=["english"])


class DiagnosticExamRequest(BaseModel):
    student_id: Optional[int] = None
    exam_type: ExamTypeEnum = ExamTypeEnum.diagnostico
    group_id: Optional[int] = None
    # Con período, el pago lo define el período
    period_id: Optional[int] = None
    requiere_pago: bool = False
    monto_pago: Optional[float] = None


class DiagnosticResultRequest(BaseModel):
    resultado: float
    # 0 o vacío: sin nivel asignado (solo con resultado >= 70)
    nivel_ingles: Optional[int] = None
    calificaciones_por_nivel: Optional[Dict[int, float]] = None


class EnglishCourseRequest(BaseModel):
    student_id: Optional[int] = None
    group_id: int
    nivel_ingles: int
    requiere_pago: bool = False
    monto_pago: Optional[float] = None


class CourseCompletion(BaseModel):
    calificacion: float


class EnglishStatusResponse(BaseModel):
    progress: EnglishProgress
    porcentaje_diagnostico: Optional[float] = None
    fecha_examen_diagnostico: Optional[datetime] = None
    examenes: List[DiagnosticExam]
    cursos: List[Enrollment]


def _resolve_student_id(session, user, student_id: Optional[int]) -> int:
    if user.role == "student" and student_id is None:
        return require_student(session, user).id
    if student_id is None:
        raise HTTPException(status_code=400, detail="student_id es obligatorio")
    ensure_student_self(session, user, student_id)
    return student_id


@router.post("/diagnostic-exams", response_model=DiagnosticExam)
def request_diagnostic_exam(
    payload: DiagnosticExamRequest,
    session=Depends(get_session),
    user=Depends(require_roles("admin", "student")),
):
    student_id = _resolve_student_id(session, user, payload.student_id)
    engine = EnglishProgressionEngine(session)
    exam = run_atomic(
        session,
        engine.request_diagnostic_exam,
        student_id,
        exam_type=payload.exam_type,
        group_id=payload.group_id,
        requiere_pago=payload.requiere_pago,
        monto_pago=payload.monto_pago,
        realizado_por=user.id,
        period_id=payload.period_id,
    )
    session.refresh(exam)
    return exam


@router.post("/diagnostic-exams/{exam_id}/cancel", response_model=DiagnosticExam)
def cancel_diagnostic_exam(
    exam_id: int,
    session=Depends(get_session),
    user=Depends(require_roles("admin", "student")),
):
    engine = EnglishProgressionEngine(session)

    def _cancel():
        exam = engine.get_exam(exam_id)
        ensure_student_self(session, user, exam.student_id)
        return engine.cancel_exam(exam, realizado_por=user.id)

    exam = run_atomic(session, _cancel)
    session.refresh(exam)
    return exam


@router.post("/diagnostic-exams/{exam_id}/result", response_model=DiagnosticOutcome)
def process_diagnostic_result(
    exam_id: int,
    payload: DiagnosticResultRequest,
    session=Depends(get_session),
    user=Depends(require_roles("admin")),
):
    engine = EnglishProgressionEngine(session)

    def _process():
        return engine.process_diagnostic_result(
            engine.get_exam(exam_id),
            payload.resultado,
            nivel_final=payload.nivel_ingles,
            calificaciones_por_nivel=payload.calificaciones_por_nivel,
            realizado_por=user.id,
        )

    return run_atomic(session, _process)


@router.post("/courses", response_model=Enrollment)
def request_english_course(
    payload: EnglishCourseRequest,
    session=Depends(get_session),
    user=Depends(require_roles("admin", "student")),
):
    student_id = _resolve_student_id(session, user, payload.student_id)
    engine = EnglishProgressionEngine(session)
    enrollment = run_atomic(
        session,
        engine.enroll_in_course,
        student_id,
        payload.group_id,
        payload.nivel_ingles,
        requiere_pago=payload.requiere_pago,
        monto_pago=payload.monto_pago,
        realizado_por=user.id,
    )
    session.refresh(enrollment)
    return enrollment


@router.post("/courses/{enrollment_id}/complete", response_model=CourseOutcome)
def complete_english_course(
    enrollment_id: int,
    payload: CourseCompletion,
    session=Depends(get_session),
    user=Depends(require_roles("admin", "teacher")),
):
    ensure_enrollment_access(session, user, enrollment_id, write=True)
    engine = EnglishProgressionEngine(session)

    def _complete():
        return engine.complete_course(engine.machine.get(enrollment_id), payload.calificacion, realizado_por=user.id)

    return run_atomic(session, _complete)


@router.get("/students/{student_id}/status", response_model=EnglishStatusResponse)
def english_status(student_id: int, session=Depends(get_session), user=Depends(require_roles("admin"))):
    return EnglishProgressionEngine(session).english_status(student_id)


@router.get("/me/status", response_model=EnglishStatusResponse)
def my_english_status(session=Depends(get_session), user=Depends(require_roles("student"))):
    student = require_student(session, user)
    return EnglishProgressionEngine(session).english_status(student.id)
