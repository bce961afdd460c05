"""Seat accounting for groups and exam periods.

``cupo_actual`` is only ever written here. Every operation is a single
conditional ``UPDATE`` so the availability check and the write cannot be
split by a concurrent transaction; the row stays write-locked until the
caller commits.
"""

import logging

from pydantic import BaseModel
from sqlalchemy import update
from sqlmodel import Session

from ..errors import EntityNotFound, ExamPeriodClosed, ExamPeriodFull, GroupFull, GroupUnavailable
from ..models import ExamPeriod, ExamPeriodStatusEnum, Group, GroupStatusEnum


logger = logging.getLogger(__name__)

UNAVAILABLE_STATUSES = (
    GroupStatusEnum.cerrado,
    GroupStatusEnum.cancelado,
    GroupStatusEnum.finalizado,
)


class CapacitySnapshot(BaseModel):
    group_id: int
    estatus: GroupStatusEnum
    cupo_actual: int
    cupo_maximo: int
    cupo_minimo: int
    disponibles: int
    bajo_minimo: bool
    lleno: bool


class CapacityLedger:
    def __init__(self, session: Session):
        self.session = session

    def _reload(self, group_id: int) -> Group:
        group = self.session.get(Group, group_id, populate_existing=True)
        if not group:
            raise EntityNotFound("Grupo", group_id)
        return group

    def reserve(self, group_id: int) -> Group:
        stmt = (
            update(Group)
            .where(
                Group.id == group_id,
                Group.cupo_actual < Group.cupo_maximo,
                Group.estatus.not_in(UNAVAILABLE_STATUSES),
            )
            .values(cupo_actual=Group.cupo_actual + 1)
        )
        result = self.session.connection().execute(stmt)
        if result.rowcount == 1:
            group = self._reload(group_id)
            logger.info("Cupo reservado en grupo %s (%s/%s)", group_id, group.cupo_actual, group.cupo_maximo)
            return group

        # Sin filas afectadas: identificar la regla que lo impidió
        group = self._reload(group_id)
        if group.estatus in UNAVAILABLE_STATUSES:
            raise GroupUnavailable(group_id, group.estatus.value)
        raise GroupFull(group_id, group.cupo_maximo)

    def release(self, group_id: int) -> Group:
        stmt = (
            update(Group)
            .where(Group.id == group_id, Group.cupo_actual > 0)
            .values(cupo_actual=Group.cupo_actual - 1)
        )
        result = self.session.connection().execute(stmt)
        group = self._reload(group_id)
        if result.rowcount == 1:
            logger.info("Cupo liberado en grupo %s (%s/%s)", group_id, group.cupo_actual, group.cupo_maximo)
        else:
            logger.warning("Liberación de cupo ignorada en grupo %s: cupo_actual ya es 0", group_id)
        return group

    def ensure_available(self, group_id: int) -> Group:
        """Check a group can take enrollments without taking a seat."""
        group = self._reload(group_id)
        if group.estatus in UNAVAILABLE_STATUSES:
            raise GroupUnavailable(group_id, group.estatus.value)
        return group

    def _reload_period(self, period_id: int) -> ExamPeriod:
        period = self.session.get(ExamPeriod, period_id, populate_existing=True)
        if not period:
            raise EntityNotFound("Período de exámenes", period_id)
        return period

    def reserve_period(self, period_id: int) -> ExamPeriod:
        """Take one exam seat in an open period."""
        stmt = (
            update(ExamPeriod)
            .where(
                ExamPeriod.id == period_id,
                ExamPeriod.cupo_actual < ExamPeriod.cupo_maximo,
                ExamPeriod.estatus == ExamPeriodStatusEnum.abierto,
            )
            .values(cupo_actual=ExamPeriod.cupo_actual + 1)
        )
        result = self.session.connection().execute(stmt)
        period = self._reload_period(period_id)
        if result.rowcount == 1:
            logger.info(
                "Cupo reservado en período %s (%s/%s)", period_id, period.cupo_actual, period.cupo_maximo
            )
            return period
        if period.estatus != ExamPeriodStatusEnum.abierto:
            raise ExamPeriodClosed(period_id, period.estatus.value)
        raise ExamPeriodFull(period_id, period.cupo_maximo)

    def release_period(self, period_id: int) -> ExamPeriod:
        stmt = (
            update(ExamPeriod)
            .where(ExamPeriod.id == period_id, ExamPeriod.cupo_actual > 0)
            .values(cupo_actual=ExamPeriod.cupo_actual - 1)
        )
        result = self.session.connection().execute(stmt)
        period = self._reload_period(period_id)
        if result.rowcount == 1:
            logger.info("Cupo liberado en período %s (%s/%s)", period_id, period.cupo_actual, period.cupo_maximo)
        else:
            logger.warning("Liberación de cupo ignorada en período %s: cupo_actual ya es 0", period_id)
        return period

    def snapshot(self, group_id: int) -> CapacitySnapshot:
        group = self._reload(group_id)
        return CapacitySnapshot(
            group_id=group.id,
            estatus=group.estatus,
            cupo_actual=group.cupo_actual,
            cupo_maximo=group.cupo_maximo,
            cupo_minimo=group.cupo_minimo,
            disponibles=max(group.cupo_maximo - group.cupo_actual, 0),
            bajo_minimo=group.cupo_actual < group.cupo_minimo,
            lleno=group.cupo_actual >= group.cupo_maximo,
        )
