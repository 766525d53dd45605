from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from auth import current_user_id, verify_engine_key
from db import get_db
from schemas import RollOut, RollRequest
from services.dice_service import record_roll, to_roll_out

router = APIRouter(prefix="/v1/campaigns", tags=["dice"])


@router.post("/{campaign_id}/roll", response_model=RollOut)
def roll(
    campaign_id: int,
    body: RollRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    _key: str = Depends(verify_engine_key),
):
    try:
        return to_roll_out(record_roll(db, campaign_id, body, user_id=user_id))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
