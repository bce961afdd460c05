from enum import Enum
from typing import Any, List, Optional

from sqlmodel import Session, select

from ..models import ActivityHistory


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def record_activity(
    session: Session,
    accion: str,
    *,
    enrollment_id: Optional[int] = None,
    exam_id: Optional[int] = None,
    campo: Optional[str] = None,
    valor_anterior: Any = None,
    valor_nuevo: Any = None,
    descripcion: Optional[str] = None,
    realizado_por: Optional[int] = None,
) -> ActivityHistory:
    entry = ActivityHistory(
        enrollment_id=enrollment_id,
        exam_id=exam_id,
        accion=accion,
        campo=campo,
        valor_anterior=_as_text(valor_anterior),
        valor_nuevo=_as_text(valor_nuevo),
        descripcion=descripcion,
        realizado_por=realizado_por,
    )
    session.add(entry)
    return entry


def history_for_enrollment(session: Session, enrollment_id: int) -> List[ActivityHistory]:
    stmt = (
        select(ActivityHistory)
        .where(ActivityHistory.enrollment_id == enrollment_id)
        .order_by(ActivityHistory.created_at, ActivityHistory.id)
    )
    return list(session.exec(stmt).all())
