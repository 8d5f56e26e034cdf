from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import require_roles
from ..schemas.events import GroupMemberUpsertedEvent, VehicleUpsertedEvent
from ..services.projections import apply_group_member_event, apply_vehicle_event

router = APIRouter(prefix="/integration", tags=["integration"])


@router.post("/vehicles")
def vehicle_upserted(
    event: VehicleUpsertedEvent,
    db: Session = Depends(get_db),
    _=Depends(require_roles("service")),
):
    """Consume a vehicle event from the vehicle service"""
    return {"applied": apply_vehicle_event(db, event)}


@router.post("/group-members")
def group_member_upserted(
    event: GroupMemberUpsertedEvent,
    db: Session = Depends(get_db),
    _=Depends(require_roles("service")),
):
    """Consume a membership event from the group service"""
    return {"applied": apply_group_member_event(db, event)}
