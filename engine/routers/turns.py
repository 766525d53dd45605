from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from auth import current_user_id, verify_engine_key
from db import get_db
from schemas import TurnBasedUpdate, TurnStateOut
from services import turn_service

router = APIRouter(prefix="/v1/campaigns", tags=["turns"])


@router.get("/{campaign_id}/turn", response_model=TurnStateOut)
def current_turn(
    campaign_id: int,
    db: Session = Depends(get_db),
    _key: str = Depends(verify_engine_key),
):
    return turn_service.get_current_turn(db, campaign_id)


@router.patch("/{campaign_id}/turn-based", response_model=TurnStateOut)
def set_turn_based(
    campaign_id: int,
    body: TurnBasedUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    _key: str = Depends(verify_engine_key),
):
    return turn_service.set_turn_based(db, campaign_id, user_id, body.is_turn_based, body.turn_time_limit)


@router.post("/{campaign_id}/turn/next", response_model=TurnStateOut)
def next_turn(
    campaign_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    _key: str = Depends(verify_engine_key),
):
    return turn_service.start_next_turn(db, campaign_id, user_id)


@router.post("/{campaign_id}/turn/end", response_model=TurnStateOut)
def end_turn(
    campaign_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    _key: str = Depends(verify_engine_key),
):
    return turn_service.end_current_turn(db, campaign_id, user_id)
