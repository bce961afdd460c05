from fastapi import APIRouter, Depends

from ..db import get_session
from ..security import require_roles
from ..services.capacity import CapacityLedger, CapacitySnapshot
from ..utils.group_access import ensure_group_access


router = APIRouter(prefix="/groups", tags=["groups"])


@router.get("/{group_id}/capacity", response_model=CapacitySnapshot)
def group_capacity(group_id: int, session=Depends(get_session), user=Depends(require_roles("admin", "teacher"))):
    ensure_group_access(session, user, group_id)
    return CapacityLedger(session).snapshot(group_id)
