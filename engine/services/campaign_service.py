import logging
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session
from errors import ForbiddenError, NotFoundError
from models import Campaign, Character, Participant
from schemas import CampaignCreate, CampaignOut, CampaignStateOut, ParticipantOut

logger = logging.getLogger(__name__)


def load_campaign(db: Session, campaign_id: int, for_update: bool = False) -> Campaign:
    query = db.query(Campaign).filter(Campaign.id == campaign_id)
    if for_update:
        query = query.with_for_update()
    campaign = query.first()
    if campaign is None:
        raise NotFoundError(f"Campaign not found: {campaign_id}")
    return campaign


def is_dm(campaign: Campaign, user_id: Optional[int]) -> bool:
    return user_id is not None and campaign.owner_user_id == user_id


def require_dm(campaign: Campaign, user_id: Optional[int], action: str = "manage this campaign") -> None:
    if not is_dm(campaign, user_id):
        raise ForbiddenError(f"Only the DM can {action}")


def create_campaign(db: Session, owner_user_id: int, body: CampaignCreate, generator):
    """Create the campaign, seat its DM, and synthesize session 1 through the story pipeline."""
    from services.story_service import OPENING_ACTION, create_session_from_action

    if body.character_id is not None:
        character = db.query(Character).filter(Character.id == body.character_id).first()
        if character is None:
            raise NotFoundError(f"Character not found: {body.character_id}")

    now = datetime.utcnow()
    campaign = Campaign(
        owner_user_id=owner_user_id,
        title=body.title,
        description=body.description,
        narrative_style=body.narrative_style,
        difficulty=body.difficulty,
        total_sessions=body.total_sessions,
        current_session_number=0,
        is_private=body.is_private,
        created_at=now,
        updated_at=now,
    )
    db.add(campaign)
    db.flush()

    db.add(Participant(
        campaign_id=campaign.id,
        user_id=owner_user_id,
        character_id=body.character_id,
        role="dm",
        turn_order=1,
        is_active=True,
        joined_at=now,
    ))
    db.commit()
    db.refresh(campaign)
    logger.info("Created campaign %s for DM %s", campaign.id, owner_user_id)

    result = create_session_from_action(
        db,
        campaign,
        OPENING_ACTION,
        campaign.narrative_style,
        campaign.difficulty,
        generator,
    )
    db.refresh(campaign)
    return campaign, result


def _set_flags(db: Session, campaign_id: int, user_id: int, action: str, **flags) -> Campaign:
    campaign = load_campaign(db, campaign_id)
    require_dm(campaign, user_id, action)
    for key, value in flags.items():
        setattr(campaign, key, value)
    campaign.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(campaign)
    logger.info("Campaign %s: %s", campaign_id, action)
    return campaign


def archive_campaign(db: Session, campaign_id: int, user_id: int) -> Campaign:
    return _set_flags(db, campaign_id, user_id, "archive this campaign", is_archived=True)


def restore_campaign(db: Session, campaign_id: int, user_id: int) -> Campaign:
    return _set_flags(db, campaign_id, user_id, "restore this campaign", is_archived=False)


def complete_campaign(db: Session, campaign_id: int, user_id: int) -> Campaign:
    return _set_flags(db, campaign_id, user_id, "complete this campaign", is_completed=True)


def get_campaign_state(db: Session, campaign_id: int) -> CampaignStateOut:
    from services.participant_service import list_participants
    from services.turn_service import describe_turn

    campaign = load_campaign(db, campaign_id)
    participants = list_participants(db, campaign_id)
    return CampaignStateOut(
        campaign=CampaignOut.model_validate(campaign),
        participants=[ParticipantOut.model_validate(p) for p in participants],
        turn=describe_turn(db, campaign),
    )
