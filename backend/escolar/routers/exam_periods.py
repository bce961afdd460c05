from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..db import get_session, run_atomic
from ..models import ExamPeriod
from ..security import require_roles
from ..services.exam_periods import ExamPeriodService, PeriodAvailability


router = APIRouter(prefix="/exam-periods", tags=["exam-periods"])


class ExamPeriodCreate(BaseModel):
    nombre: str = Field(min_length=1)
    descripcion: Optional[str] = None
    fecha_inicio: datetime
    fecha_fin: datetime
    fecha_inscripcion_inicio: datetime
    fecha_inscripcion_fin: datetime
    cupo_maximo: int = 100
    requiere_pago: bool = False
    monto_pago: Optional[float] = None
    observaciones: Optional[str] = None


@router.post("/", response_model=ExamPeriod)
def create_exam_period(
    payload: ExamPeriodCreate,
    session=Depends(get_session),
    user=Depends(require_roles("admin")),
):
    period = run_atomic(session, ExamPeriodService(session).create, **payload.model_dump())
    session.refresh(period)
    return period


@router.get("/available", response_model=List[PeriodAvailability])
def available_exam_periods(session=Depends(get_session), user=Depends(require_roles("admin", "student"))):
    return ExamPeriodService(session).available()


@router.get("/{period_id}", response_model=PeriodAvailability)
def get_exam_period(period_id: int, session=Depends(get_session), user=Depends(require_roles("admin", "student"))):
    service = ExamPeriodService(session)
    return service.availability(service.get(period_id))


@router.post("/{period_id}/open", response_model=ExamPeriod)
def open_exam_period(period_id: int, session=Depends(get_session), user=Depends(require_roles("admin"))):
    service = ExamPeriodService(session)

    def _open():
        return service.open(service.get(period_id))

    period = run_atomic(session, _open)
    session.refresh(period)
    return period


@router.post("/{period_id}/close", response_model=ExamPeriod)
def close_exam_period(period_id: int, session=Depends(get_session), user=Depends(require_roles("admin"))):
    service = ExamPeriodService(session)

    def _close():
        return service.close(service.get(period_id))

    period = run_atomic(session, _close)
    session.refresh(period)
    return period
