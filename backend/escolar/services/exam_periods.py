"""Diagnostic exam periods.

A period has an exam window, a registration window and its own seat count.
Students can only request an exam in a period while it is ABIERTO and the
registration window contains the current moment.
"""

import logging
from datetime import UTC, datetime
from typing import List, Optional

from pydantic import BaseModel
from sqlmodel import Session, select

from ..errors import (
    EntityNotFound,
    ExamPeriodClosed,
    InvalidAmount,
    InvalidPeriodDates,
    InvalidTransition,
    ValidationError,
)
from ..models import ExamPeriod, ExamPeriodStatusEnum as PS, utcnow
from .capacity import CapacityLedger


logger = logging.getLogger(__name__)

REGISTRATION_CLOSED_MESSAGE = "El período de inscripciones no está activo en este momento"

OPENABLE_STATUSES = frozenset({PS.planeado, PS.cerrado})


def as_utc(value: datetime) -> datetime:
    # SQLite devuelve fechas sin zona horaria
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def validate_period_dates(
    fecha_inicio: datetime,
    fecha_fin: datetime,
    fecha_inscripcion_inicio: datetime,
    fecha_inscripcion_fin: datetime,
) -> None:
    inicio, fin = as_utc(fecha_inicio), as_utc(fecha_fin)
    insc_inicio, insc_fin = as_utc(fecha_inscripcion_inicio), as_utc(fecha_inscripcion_fin)
    fechas = dict(
        fecha_inicio=fecha_inicio,
        fecha_fin=fecha_fin,
        fecha_inscripcion_inicio=fecha_inscripcion_inicio,
        fecha_inscripcion_fin=fecha_inscripcion_fin,
    )
    if insc_inicio >= insc_fin:
        raise InvalidPeriodDates("La fecha de inicio de inscripciones debe ser anterior a la fecha de fin", **fechas)
    if inicio >= fin:
        raise InvalidPeriodDates("La fecha de inicio del período debe ser anterior a la fecha de fin", **fechas)
    if insc_fin > inicio:
        raise InvalidPeriodDates(
            "Las inscripciones deben cerrar antes o el mismo día que inician los exámenes", **fechas
        )
    if insc_inicio > inicio:
        raise InvalidPeriodDates("Las inscripciones deben iniciar antes del período de exámenes", **fechas)


class PeriodAvailability(BaseModel):
    id: int
    nombre: str
    descripcion: Optional[str] = None
    fecha_inicio: datetime
    fecha_fin: datetime
    fecha_inscripcion_inicio: datetime
    fecha_inscripcion_fin: datetime
    cupo_maximo: int
    cupo_actual: int
    cupos_disponibles: int
    esta_disponible: bool
    requiere_pago: bool
    monto_pago: Optional[float] = None


class ExamPeriodService:
    def __init__(self, session: Session, ledger: Optional[CapacityLedger] = None):
        self.session = session
        self.ledger = ledger or CapacityLedger(session)

    def get(self, period_id: int) -> ExamPeriod:
        period = self.session.get(ExamPeriod, period_id)
        if not period:
            raise EntityNotFound("Período de exámenes", period_id)
        return period

    def create(
        self,
        nombre: str,
        fecha_inicio: datetime,
        fecha_fin: datetime,
        fecha_inscripcion_inicio: datetime,
        fecha_inscripcion_fin: datetime,
        cupo_maximo: int = 100,
        descripcion: Optional[str] = None,
        requiere_pago: bool = False,
        monto_pago: Optional[float] = None,
        observaciones: Optional[str] = None,
    ) -> ExamPeriod:
        validate_period_dates(fecha_inicio, fecha_fin, fecha_inscripcion_inicio, fecha_inscripcion_fin)
        if isinstance(cupo_maximo, bool) or not isinstance(cupo_maximo, int) or cupo_maximo < 1:
            raise ValidationError("El cupo máximo debe ser un entero mayor a cero", cupo_maximo=cupo_maximo)
        if requiere_pago and monto_pago is not None and monto_pago <= 0:
            raise InvalidAmount(monto_pago)

        period = ExamPeriod(
            nombre=nombre,
            descripcion=descripcion,
            fecha_inicio=fecha_inicio,
            fecha_fin=fecha_fin,
            fecha_inscripcion_inicio=fecha_inscripcion_inicio,
            fecha_inscripcion_fin=fecha_inscripcion_fin,
            cupo_maximo=cupo_maximo,
            requiere_pago=requiere_pago,
            monto_pago=monto_pago if requiere_pago else None,
            observaciones=observaciones,
        )
        self.session.add(period)
        self.session.flush()
        logger.info("Período de exámenes %s creado (%s, cupo=%s)", period.id, nombre, cupo_maximo)
        return period

    def _set_status(self, period: ExamPeriod, target: PS) -> ExamPeriod:
        previous = period.estatus
        period.estatus = target
        period.updated_at = utcnow()
        self.session.add(period)
        logger.info("Período de exámenes %s: %s -> %s", period.id, previous.value, target.value)
        return period

    def open(self, period: ExamPeriod) -> ExamPeriod:
        if period.estatus not in OPENABLE_STATUSES:
            raise InvalidTransition(period.estatus.value, PS.abierto.value)
        return self._set_status(period, PS.abierto)

    def close(self, period: ExamPeriod) -> ExamPeriod:
        if period.estatus != PS.abierto:
            raise InvalidTransition(period.estatus.value, PS.cerrado.value)
        return self._set_status(period, PS.cerrado)

    @staticmethod
    def registration_open(period: ExamPeriod, now: Optional[datetime] = None) -> bool:
        now = as_utc(now or utcnow())
        return (
            period.estatus == PS.abierto
            and as_utc(period.fecha_inscripcion_inicio) <= now <= as_utc(period.fecha_inscripcion_fin)
        )

    def ensure_registration_open(self, period: ExamPeriod, now: Optional[datetime] = None) -> ExamPeriod:
        if period.estatus != PS.abierto:
            raise ExamPeriodClosed(period.id, period.estatus.value)
        if not self.registration_open(period, now):
            raise ExamPeriodClosed(period.id, period.estatus.value, REGISTRATION_CLOSED_MESSAGE)
        return period

    def reserve_seat(self, period_id: int, now: Optional[datetime] = None) -> ExamPeriod:
        """Check the registration window, then take a seat through the ledger."""
        self.ensure_registration_open(self.get(period_id), now)
        return self.ledger.reserve_period(period_id)

    def availability(self, period: ExamPeriod, now: Optional[datetime] = None) -> PeriodAvailability:
        disponibles = max(period.cupo_maximo - period.cupo_actual, 0)
        return PeriodAvailability(
            id=period.id,
            nombre=period.nombre,
            descripcion=period.descripcion,
            fecha_inicio=period.fecha_inicio,
            fecha_fin=period.fecha_fin,
            fecha_inscripcion_inicio=period.fecha_inscripcion_inicio,
            fecha_inscripcion_fin=period.fecha_inscripcion_fin,
            cupo_maximo=period.cupo_maximo,
            cupo_actual=period.cupo_actual,
            cupos_disponibles=disponibles,
            esta_disponible=disponibles > 0 and self.registration_open(period, now),
            requiere_pago=period.requiere_pago,
            monto_pago=period.monto_pago,
        )

    def available(self, now: Optional[datetime] = None) -> List[PeriodAvailability]:
        """Open periods whose registration window contains ``now``."""
        now = now or utcnow()
        periods = self.session.exec(
            select(ExamPeriod).where(ExamPeriod.estatus == PS.abierto).order_by(ExamPeriod.fecha_inicio)
        ).all()
        return [self.availability(p, now) for p in periods if self.registration_open(p, now)]
