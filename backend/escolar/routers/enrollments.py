from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..db import get_session, run_atomic
from ..models import ActivityHistory, Enrollment, EnrollmentStatusEnum, EnrollmentTypeEnum
from ..security import require_roles
from ..services.enrollments import EnrollmentStateMachine
from ..services.history import history_for_enrollment
from ..utils.group_access import ensure_enrollment_access


router = APIRouter(prefix="/enrollments", tags=["enrollments"])


class EnrollmentCreate(BaseModel):
    student_id: int
    group_id: int
    tipo_inscripcion: EnrollmentTypeEnum = EnrollmentTypeEnum.normal
    requiere_pago: bool = False
    monto_pago: Optional[float] = None
    observaciones: Optional[str] = None


class StatusChange(BaseModel):
    estatus: EnrollmentStatusEnum


class GroupChange(BaseModel):
    group_id: int


class GradesUpdate(BaseModel):
    calificacion_parcial1: Optional[float] = None
    calificacion_parcial2: Optional[float] = None
    calificacion_parcial3: Optional[float] = None
    calificacion_final: Optional[float] = None
    calificacion_extra: Optional[float] = None


class AttendanceUpdate(BaseModel):
    asistencias: Optional[int] = None
    faltas: Optional[int] = None
    retardos: Optional[int] = None


class ObservationsUpdate(BaseModel):
    observaciones: Optional[str] = None


@router.post("/", response_model=Enrollment)
def create_enrollment(payload: EnrollmentCreate, session=Depends(get_session), user=Depends(require_roles("admin"))):
    if payload.tipo_inscripcion == EnrollmentTypeEnum.curso_ingles:
        raise HTTPException(status_code=400, detail="Los cursos de inglés se solicitan en /english/courses")
    machine = EnrollmentStateMachine(session)
    enrollment = run_atomic(
        session,
        machine.create,
        payload.student_id,
        payload.group_id,
        tipo_inscripcion=payload.tipo_inscripcion,
        requiere_pago=payload.requiere_pago,
        monto_pago=payload.monto_pago,
        observaciones=payload.observaciones,
        realizado_por=user.id,
    )
    session.refresh(enrollment)
    return enrollment


@router.get("/{enrollment_id}", response_model=Enrollment)
def get_enrollment(enrollment_id: int, session=Depends(get_session), user=Depends(require_roles("admin", "teacher", "student"))):
    return ensure_enrollment_access(session, user, enrollment_id)


@router.get("/{enrollment_id}/history", response_model=List[ActivityHistory])
def get_enrollment_history(enrollment_id: int, session=Depends(get_session), user=Depends(require_roles("admin", "teacher"))):
    ensure_enrollment_access(session, user, enrollment_id)
    return history_for_enrollment(session, enrollment_id)


@router.patch("/{enrollment_id}/status", response_model=Enrollment)
def change_enrollment_status(
    enrollment_id: int,
    payload: StatusChange,
    session=Depends(get_session),
    user=Depends(require_roles("admin")),
):
    machine = EnrollmentStateMachine(session)

    def _change():
        return machine.change_status(machine.get(enrollment_id), payload.estatus, realizado_por=user.id)

    enrollment = run_atomic(session, _change)
    session.refresh(enrollment)
    return enrollment


@router.patch("/{enrollment_id}/group", response_model=Enrollment)
def change_enrollment_group(
    enrollment_id: int,
    payload: GroupChange,
    session=Depends(get_session),
    user=Depends(require_roles("admin")),
):
    machine = EnrollmentStateMachine(session)

    def _change():
        return machine.change_group(machine.get(enrollment_id), payload.group_id, realizado_por=user.id)

    enrollment = run_atomic(session, _change)
    session.refresh(enrollment)
    return enrollment


@router.patch("/{enrollment_id}/grades", response_model=Enrollment)
def update_enrollment_grades(
    enrollment_id: int,
    payload: GradesUpdate,
    session=Depends(get_session),
    user=Depends(require_roles("admin", "teacher")),
):
    ensure_enrollment_access(session, user, enrollment_id, write=True)
    machine = EnrollmentStateMachine(session)
    sent = payload.model_fields_set

    def _update():
        enrollment = machine.get(enrollment_id)
        partials = None
        partial_fields = ("calificacion_parcial1", "calificacion_parcial2", "calificacion_parcial3")
        if sent.intersection(partial_fields):
            # Los parciales no enviados conservan su valor actual
            partials = [getattr(payload if f in sent else enrollment, f) for f in partial_fields]
        return machine.update_grades(
            enrollment,
            partials=partials,
            final=payload.calificacion_final,
            extra=payload.calificacion_extra,
            realizado_por=user.id,
        )

    enrollment = run_atomic(session, _update)
    session.refresh(enrollment)
    return enrollment


@router.patch("/{enrollment_id}/attendance", response_model=Enrollment)
def update_enrollment_attendance(
    enrollment_id: int,
    payload: AttendanceUpdate,
    session=Depends(get_session),
    user=Depends(require_roles("admin", "teacher")),
):
    ensure_enrollment_access(session, user, enrollment_id, write=True)
    machine = EnrollmentStateMachine(session)

    def _update():
        return machine.update_attendance(
            machine.get(enrollment_id),
            asistencias=payload.asistencias,
            faltas=payload.faltas,
            retardos=payload.retardos,
        )

    enrollment = run_atomic(session, _update)
    session.refresh(enrollment)
    return enrollment


@router.patch("/{enrollment_id}/observations", response_model=Enrollment)
def update_enrollment_observations(
    enrollment_id: int,
    payload: ObservationsUpdate,
    session=Depends(get_session),
    user=Depends(require_roles("admin", "teacher")),
):
    ensure_enrollment_access(session, user, enrollment_id, write=True)
    machine = EnrollmentStateMachine(session)
    enrollment = run_atomic(
        session, lambda: machine.update_observations(machine.get(enrollment_id), payload.observaciones)
    )
    session.refresh(enrollment)
    return enrollment
