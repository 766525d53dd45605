import logging
from datetime import datetime
from typing import List, Optional
from sqlalchemy.orm import Session
from errors import ForbiddenError, InvalidStateError, NoParticipantsError
from models import Campaign, Participant
from schemas import TurnStateOut
from services.broadcast import hub
from services.campaign_service import is_dm, load_campaign, require_dm
from services.locks import campaign_lock
from services.participant_service import active_participants

logger = logging.getLogger(__name__)

DISABLED = "disabled"
IDLE = "idle"
ACTIVE = "active"


def turn_state(campaign: Campaign) -> str:
    if not campaign.is_turn_based:
        return DISABLED
    if campaign.current_turn_participant_id is None:
        return IDLE
    return ACTIVE


def _holder(db: Session, campaign: Campaign) -> Optional[Participant]:
    if campaign.current_turn_participant_id is None:
        return None
    return db.query(Participant).filter(Participant.id == campaign.current_turn_participant_id).first()


def describe_turn(db: Session, campaign: Campaign) -> TurnStateOut:
    holder = _holder(db, campaign)
    return TurnStateOut(
        campaign_id=campaign.id,
        state=turn_state(campaign),
        is_turn_based=bool(campaign.is_turn_based),
        participant_id=holder.id if holder else None,
        user_id=holder.user_id if holder else None,
        npc_id=holder.npc_id if holder else None,
        started_at=campaign.turn_started_at,
        time_limit=campaign.turn_time_limit,
    )


def get_current_turn(db: Session, campaign_id: int) -> TurnStateOut:
    return describe_turn(db, load_campaign(db, campaign_id))


def next_participant(participants: List[Participant], current_id: Optional[int]) -> Participant:
    """Successor of ``current_id`` in turn order, wrapping; the first participant when nobody holds the turn."""
    if not participants:
        raise NoParticipantsError("No active participants to take the turn")
    ids = [p.id for p in participants]
    if current_id in ids:
        next_idx = (ids.index(current_id) + 1) % len(ids)
    else:
        next_idx = 0
    return participants[next_idx]


def _assign(campaign: Campaign, participant: Optional[Participant]) -> None:
    now = datetime.utcnow()
    if participant is None:
        campaign.current_turn_participant_id = None
        campaign.turn_started_at = None
    else:
        campaign.current_turn_participant_id = participant.id
        campaign.turn_started_at = now
        participant.last_active_at = now
    campaign.updated_at = now


def _publish_turn_change(campaign: Campaign, participant: Participant) -> None:
    hub.publish("turn_change", {
        "campaign_id": campaign.id,
        "participant_id": participant.id,
        "user_id": participant.user_id,
        "npc_id": participant.npc_id,
        "started_at": campaign.turn_started_at,
    })


def publish_turn_ended(campaign: Campaign) -> None:
    hub.publish("turn_ended", {
        "campaign_id": campaign.id,
        "participant_id": None,
        "ended_at": datetime.utcnow(),
    })


def _publish_mode(campaign: Campaign) -> None:
    hub.publish("turn_based_changed", {
        "campaign_id": campaign.id,
        "is_turn_based": bool(campaign.is_turn_based),
        "turn_time_limit": campaign.turn_time_limit,
        "participant_id": campaign.current_turn_participant_id,
        "started_at": campaign.turn_started_at,
    })


def enable_turn_mode(
    db: Session,
    campaign_id: int,
    user_id: int,
    turn_time_limit: Optional[int] = None,
) -> TurnStateOut:
    with campaign_lock(campaign_id):
        campaign = load_campaign(db, campaign_id, for_update=True)
        require_dm(campaign, user_id, "change turn-based settings")
        if campaign.is_turn_based:
            raise InvalidStateError(f"Campaign {campaign_id} is already turn-based")

        # The DM takes the first turn so play can start without an extra step.
        dm = next(
            (p for p in active_participants(db, campaign_id) if p.role == "dm"),
            None,
        )
        campaign.is_turn_based = True
        campaign.turn_time_limit = turn_time_limit
        _assign(campaign, dm)
        db.commit()
        db.refresh(campaign)

        _publish_mode(campaign)
        if dm is not None:
            _publish_turn_change(campaign, dm)
        logger.info("Campaign %s turn mode enabled, holder=%s", campaign_id, campaign.current_turn_participant_id)
        return describe_turn(db, campaign)


def disable_turn_mode(db: Session, campaign_id: int, user_id: int) -> TurnStateOut:
    with campaign_lock(campaign_id):
        campaign = load_campaign(db, campaign_id, for_update=True)
        require_dm(campaign, user_id, "change turn-based settings")
        if not campaign.is_turn_based:
            raise InvalidStateError(f"Campaign {campaign_id} is not turn-based")

        campaign.is_turn_based = False
        _assign(campaign, None)
        db.commit()
        db.refresh(campaign)

        _publish_mode(campaign)
        logger.info("Campaign %s turn mode disabled", campaign_id)
        return describe_turn(db, campaign)


def set_turn_based(
    db: Session,
    campaign_id: int,
    user_id: int,
    is_turn_based: bool,
    turn_time_limit: Optional[int] = None,
) -> TurnStateOut:
    with campaign_lock(campaign_id):
        campaign = load_campaign(db, campaign_id, for_update=True)
        require_dm(campaign, user_id, "change turn-based settings")

        # The lock is re-entrant, so the mode switch runs in this same critical section.
        if is_turn_based and not campaign.is_turn_based:
            return enable_turn_mode(db, campaign_id, user_id, turn_time_limit)
        if not is_turn_based and campaign.is_turn_based:
            return disable_turn_mode(db, campaign_id, user_id)

        campaign.turn_time_limit = turn_time_limit
        campaign.updated_at = datetime.utcnow()
        db.commit()
        db.refresh(campaign)
        _publish_mode(campaign)
        return describe_turn(db, campaign)


def rotate_turn(db: Session, campaign: Campaign) -> Participant:
    """Hand the turn to the next active participant. Caller holds the campaign lock."""
    participant = next_participant(
        active_participants(db, campaign.id),
        campaign.current_turn_participant_id,
    )
    _assign(campaign, participant)
    db.commit()
    db.refresh(campaign)
    _publish_turn_change(campaign, participant)
    logger.info("Campaign %s turn -> participant %s", campaign.id, participant.id)
    return participant


def start_next_turn(db: Session, campaign_id: int, user_id: int) -> TurnStateOut:
    with campaign_lock(campaign_id):
        campaign = load_campaign(db, campaign_id, for_update=True)
        require_dm(campaign, user_id, "advance turns")
        if not campaign.is_turn_based:
            raise InvalidStateError(f"Campaign {campaign_id} is not turn-based")
        rotate_turn(db, campaign)
        return describe_turn(db, campaign)


def end_current_turn(db: Session, campaign_id: int, user_id: int) -> TurnStateOut:
    with campaign_lock(campaign_id):
        campaign = load_campaign(db, campaign_id, for_update=True)
        holder = _holder(db, campaign)
        holds_turn = holder is not None and holder.user_id is not None and holder.user_id == user_id
        if not (is_dm(campaign, user_id) or holds_turn):
            raise ForbiddenError("Only the DM or the current turn holder can end the turn")
        if turn_state(campaign) != ACTIVE:
            raise InvalidStateError(f"Campaign {campaign_id} has no active turn")

        _assign(campaign, None)
        db.commit()
        db.refresh(campaign)
        publish_turn_ended(campaign)
        logger.info("Campaign %s turn ended", campaign_id)
        return describe_turn(db, campaign)


def release_turn_if_held(campaign: Campaign, participant: Participant) -> bool:
    """Clear the turn when ``participant`` holds it; the caller commits and publishes."""
    if campaign.current_turn_participant_id != participant.id:
        return False
    _assign(campaign, None)
    return True
