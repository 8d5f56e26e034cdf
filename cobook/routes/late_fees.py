import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..db import get_db
from ..auth.security import CurrentUser, get_current_user, require_roles
from ..schemas.bookings import LateFeeQuoteRequest, LateFeeQuoteResponse, LateFeeWaive, LateReturnFeeResponse
from ..services.late_fees import calculate_late_fee, get_late_fee, list_user_late_fees, waive_late_fee

router = APIRouter(prefix="/late-fees", tags=["late-fees"])


@router.get("", response_model=List[LateReturnFeeResponse])
def my_late_fees(
    limit: Optional[int] = Query(None, ge=1, le=500),
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    return list_user_late_fees(db, user.id, limit)


@router.post("/quote", response_model=LateFeeQuoteResponse)
def quote_late_fee(
    payload: LateFeeQuoteRequest,
    _: CurrentUser = Depends(get_current_user),
):
    """Price a hypothetical return with the configured band table"""
    quote = calculate_late_fee(payload.actual_return, payload.scheduled_end)
    return LateFeeQuoteResponse(
        fee_amount=quote.fee_amount,
        late_minutes=quote.late_minutes,
        chargeable_minutes=quote.chargeable_minutes,
        calculation_method=quote.calculation_method,
    )


@router.get("/{fee_id}", response_model=LateReturnFeeResponse)
def get_fee(
    fee_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    fee = get_late_fee(db, fee_id)
    if fee.user_id != user.id and not user.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")
    return fee


@router.post("/{fee_id}/waive", response_model=LateReturnFeeResponse)
def waive_fee(
    fee_id: uuid.UUID,
    payload: LateFeeWaive,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_roles("admin")),
):
    return waive_late_fee(db, fee_id, admin.id, payload.reason)
