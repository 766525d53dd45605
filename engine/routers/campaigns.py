from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from auth import current_user_id, verify_engine_key
from db import get_db
from schemas import CampaignCreate, CampaignCreatedOut, CampaignOut, CampaignStateOut
from services import campaign_service
from services.narrative_service import NarrativeGenerator, get_narrative_generator

router = APIRouter(prefix="/v1/campaigns", tags=["campaigns"])


@router.post("", response_model=CampaignCreatedOut)
def create_campaign(
    body: CampaignCreate,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    generator: NarrativeGenerator = Depends(get_narrative_generator),
    _key: str = Depends(verify_engine_key),
):
    campaign, result = campaign_service.create_campaign(db, user_id, body, generator)
    return CampaignCreatedOut(
        campaign=CampaignOut.model_validate(campaign),
        session=result.session,
        used_fallback=result.used_fallback,
    )


@router.get("/{campaign_id}/state", response_model=CampaignStateOut)
def get_state(
    campaign_id: int,
    db: Session = Depends(get_db),
    _key: str = Depends(verify_engine_key),
):
    return campaign_service.get_campaign_state(db, campaign_id)


@router.post("/{campaign_id}/archive", response_model=CampaignOut)
def archive(
    campaign_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    _key: str = Depends(verify_engine_key),
):
    return campaign_service.archive_campaign(db, campaign_id, user_id)


@router.post("/{campaign_id}/restore", response_model=CampaignOut)
def restore(
    campaign_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    _key: str = Depends(verify_engine_key),
):
    return campaign_service.restore_campaign(db, campaign_id, user_id)


@router.post("/{campaign_id}/complete", response_model=CampaignOut)
def complete(
    campaign_id: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    _key: str = Depends(verify_engine_key),
):
    return campaign_service.complete_campaign(db, campaign_id, user_id)
