import logging
from datetime import datetime
from typing import List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session
from errors import ForbiddenError, InvalidStateError, NotFoundError
from models import Character, Npc, Participant
from schemas import JoinRequest, ParticipantCreate, ParticipantOut
from services.broadcast import hub
from services.campaign_service import is_dm, load_campaign, require_dm
from services.locks import campaign_lock

logger = logging.getLogger(__name__)


def list_participants(db: Session, campaign_id: int) -> List[Participant]:
    return (
        db.query(Participant)
        .filter(Participant.campaign_id == campaign_id)
        .order_by(Participant.turn_order, Participant.id)
        .all()
    )


def active_participants(db: Session, campaign_id: int) -> List[Participant]:
    return (
        db.query(Participant)
        .filter(Participant.campaign_id == campaign_id, Participant.is_active.is_(True))
        .order_by(Participant.turn_order, Participant.id)
        .all()
    )


def find_participant_for_user(db: Session, campaign_id: int, user_id: Optional[int]) -> Optional[Participant]:
    if user_id is None:
        return None
    return db.query(Participant).filter(
        Participant.campaign_id == campaign_id,
        Participant.user_id == user_id,
    ).first()


def load_participant(db: Session, campaign_id: int, participant_id: int) -> Participant:
    participant = db.query(Participant).filter(
        Participant.campaign_id == campaign_id,
        Participant.id == participant_id,
    ).first()
    if participant is None:
        raise NotFoundError(f"Participant not found: {participant_id}")
    return participant


def _next_turn_order(db: Session, campaign_id: int) -> int:
    current_max = db.query(func.max(Participant.turn_order)).filter(
        Participant.campaign_id == campaign_id,
    ).scalar()
    return (current_max or 0) + 1


def _check_character(db: Session, character_id: Optional[int]) -> None:
    if character_id is None:
        return
    if db.query(Character).filter(Character.id == character_id).first() is None:
        raise NotFoundError(f"Character not found: {character_id}")


def _insert(db: Session, campaign_id: int, **fields) -> Participant:
    participant = Participant(
        campaign_id=campaign_id,
        turn_order=_next_turn_order(db, campaign_id),
        is_active=True,
        joined_at=datetime.utcnow(),
        **fields,
    )
    db.add(participant)
    db.commit()
    db.refresh(participant)
    return participant


def _event_payload(participant: Participant) -> dict:
    return {
        "campaign_id": participant.campaign_id,
        "participant": ParticipantOut.model_validate(participant).model_dump(mode="json"),
    }


def join_campaign(db: Session, campaign_id: int, user_id: int, body: JoinRequest) -> Participant:
    """A user seats themself as a player."""
    load_campaign(db, campaign_id)
    if find_participant_for_user(db, campaign_id, user_id) is not None:
        raise InvalidStateError(f"User {user_id} is already a participant in campaign {campaign_id}")
    _check_character(db, body.character_id)

    with campaign_lock(campaign_id):
        participant = _insert(db, campaign_id, user_id=user_id, character_id=body.character_id, role="player")
    logger.info("User %s joined campaign %s as participant %s", user_id, campaign_id, participant.id)
    hub.publish("participant_joined", _event_payload(participant))
    return participant


def add_participant(db: Session, campaign_id: int, user_id: int, body: ParticipantCreate) -> Participant:
    """The DM seats another player or an NPC companion."""
    campaign = load_campaign(db, campaign_id)
    require_dm(campaign, user_id, "add participants")

    if body.role == "companion":
        if db.query(Npc).filter(Npc.id == body.npc_id).first() is None:
            raise NotFoundError(f"NPC not found: {body.npc_id}")
        duplicate = db.query(Participant).filter(
            Participant.campaign_id == campaign_id,
            Participant.npc_id == body.npc_id,
        ).first()
        fields = {"npc_id": body.npc_id, "role": "companion", "companion_role": body.companion_role}
    else:
        duplicate = find_participant_for_user(db, campaign_id, body.user_id)
        fields = {"user_id": body.user_id, "character_id": body.character_id, "role": "player"}
    if duplicate is not None:
        raise InvalidStateError("Participant is already seated in this campaign")
    _check_character(db, body.character_id)

    with campaign_lock(campaign_id):
        participant = _insert(db, campaign_id, **fields)
    logger.info("Added %s participant %s to campaign %s", participant.role, participant.id, campaign_id)
    hub.publish("participant_added", _event_payload(participant))
    return participant


def _require_self_or_dm(campaign, participant: Participant, user_id: Optional[int], action: str) -> None:
    if is_dm(campaign, user_id):
        return
    if participant.user_id is not None and participant.user_id == user_id:
        return
    raise ForbiddenError(f"Not authorized to {action}")


def set_participant_active(
    db: Session,
    campaign_id: int,
    participant_id: int,
    user_id: int,
    is_active: bool,
) -> Participant:
    from services.turn_service import publish_turn_ended, release_turn_if_held

    with campaign_lock(campaign_id):
        campaign = load_campaign(db, campaign_id, for_update=True)
        participant = load_participant(db, campaign_id, participant_id)
        _require_self_or_dm(campaign, participant, user_id, "change this participant")

        participant.is_active = is_active
        if is_active:
            participant.last_active_at = datetime.utcnow()
            released = False
        else:
            released = release_turn_if_held(campaign, participant)
        db.commit()
        db.refresh(participant)
        if released:
            publish_turn_ended(campaign)

    logger.info("Participant %s in campaign %s is_active=%s", participant_id, campaign_id, is_active)
    return participant


def remove_participant(db: Session, campaign_id: int, participant_id: int, user_id: int) -> None:
    from services.turn_service import publish_turn_ended, release_turn_if_held

    with campaign_lock(campaign_id):
        campaign = load_campaign(db, campaign_id, for_update=True)
        participant = load_participant(db, campaign_id, participant_id)
        _require_self_or_dm(campaign, participant, user_id, "remove this participant")
        if participant.role == "dm":
            raise InvalidStateError("The DM cannot be removed from their own campaign")

        released = release_turn_if_held(campaign, participant)
        payload = {
            "campaign_id": campaign_id,
            "participant_id": participant.id,
            "user_id": participant.user_id,
            "npc_id": participant.npc_id,
        }
        db.delete(participant)
        db.commit()
        if released:
            publish_turn_ended(campaign)

    logger.info("Removed participant %s from campaign %s", participant_id, campaign_id)
    hub.publish("participant_removed", payload)


def announce_npc_action(db: Session, campaign_id: int, participant_id: int, user_id: int, action: str) -> dict:
    campaign = load_campaign(db, campaign_id)
    require_dm(campaign, user_id, "direct companions")
    participant = load_participant(db, campaign_id, participant_id)
    if participant.role != "companion":
        raise InvalidStateError(f"Participant {participant_id} is not a companion")

    npc = db.query(Npc).filter(Npc.id == participant.npc_id).first()
    payload = {
        "campaign_id": campaign_id,
        "participant_id": participant.id,
        "npc_id": participant.npc_id,
        "npc_name": npc.name if npc else None,
        "action": action,
    }
    hub.publish("npc_action", payload)
    return payload
