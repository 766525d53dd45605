from typing import List
from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session
from auth import current_user_id, verify_engine_key
from db import get_db
from schemas import JoinRequest, NpcActionRequest, ParticipantCreate, ParticipantOut, ParticipantUpdate
from services import participant_service

router = APIRouter(prefix="/v1/campaigns", tags=["participants"])


@router.get("/{campaign_id}/participants", response_model=List[ParticipantOut])
def list_participants(
    campaign_id: int,
    db: Session = Depends(get_db),
    _key: str = Depends(verify_engine_key),
):
    return participant_service.list_participants(db, campaign_id)


@router.post("/{campaign_id}/participants", response_model=ParticipantOut)
def add_participant(
    campaign_id: int,
    body: ParticipantCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    _key: str = Depends(verify_engine_key),
):
    return participant_service.add_participant(db, campaign_id, user_id, body)


@router.post("/{campaign_id}/join", response_model=ParticipantOut)
def join(
    campaign_id: int,
    body: JoinRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    _key: str = Depends(verify_engine_key),
):
    return participant_service.join_campaign(db, campaign_id, user_id, body)


@router.patch("/{campaign_id}/participants/{participant_id}", response_model=ParticipantOut)
def update_participant(
    campaign_id: int,
    participant_id: int,
    body: ParticipantUpdate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    _key: str = Depends(verify_engine_key),
):
    return participant_service.set_participant_active(db, campaign_id, participant_id, user_id, body.is_active)


@router.delete("/{campaign_id}/participants/{participant_id}", status_code=204)
def remove_participant(
    campaign_id: int,
    participant_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    _key: str = Depends(verify_engine_key),
):
    participant_service.remove_participant(db, campaign_id, participant_id, user_id)
    return Response(status_code=204)


@router.post("/{campaign_id}/participants/{participant_id}/npc-action")
def npc_action(
    campaign_id: int,
    participant_id: int,
    body: NpcActionRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    _key: str = Depends(verify_engine_key),
):
    return participant_service.announce_npc_action(db, campaign_id, participant_id, user_id, body.action)
