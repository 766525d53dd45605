import json
import logging
from datetime import datetime
from typing import Any, List, Optional
from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session
from config import settings
from errors import ForbiddenError, GenerationFailure, NotFoundError
from models import Campaign, CampaignSession, Character, DiceRoll, Npc
from schemas import Choice, Reward, SessionOut, StoryAdvanceOut, StoryPayload
from services.campaign_service import is_dm, load_campaign
from services.dice_service import describe_outcome, load_roll
from services.locks import campaign_lock
from services.participant_service import active_participants

logger = logging.getLogger(__name__)

OPENING_ACTION = "The adventure begins"

FALLBACK_SESSION = {
    "sessionTitle": "The Adventure Begins",
    "location": "Starting Village",
    "narrative": (
        "Your journey begins in a small settlement at the edge of the known world. "
        "The air is filled with possibility as you prepare to embark on your first adventure."
    ),
    "choices": [
        {
            "action": "Visit the local tavern",
            "description": "Gather information from the locals",
            "requiresDiceRoll": False,
        },
        {
            "action": "Meet with the town elder",
            "description": "Learn about problems facing the settlement",
            "requiresDiceRoll": False,
        },
        {
            "action": "Investigate nearby ruins",
            "description": "Search for treasure and adventure",
            "requiresDiceRoll": True,
            "diceType": "d20",
            "rollDC": 12,
            "rollModifier": 0,
        },
    ],
    "rewards": [],
}


def session_xp_for(session_number: int) -> int:
    return settings.SESSION_XP_BASE + settings.SESSION_XP_PER_SESSION * session_number


def latest_session(db: Session, campaign_id: int) -> Optional[CampaignSession]:
    return (
        db.query(CampaignSession)
        .filter(CampaignSession.campaign_id == campaign_id)
        .order_by(CampaignSession.session_number.desc())
        .first()
    )


def _party_lines(db: Session, campaign_id: int) -> List[str]:
    lines = []
    for p in active_participants(db, campaign_id):
        if p.role == "companion":
            npc = db.query(Npc).filter(Npc.id == p.npc_id).first()
            if npc is None:
                continue
            role = f", {p.companion_role}" if p.companion_role else ""
            lines.append(f"- {npc.name} (companion: {npc.race} {npc.occupation or 'adventurer'}{role})")
        elif p.character_id is not None:
            ch = db.query(Character).filter(Character.id == p.character_id).first()
            if ch is not None:
                lines.append(f"- {ch.name} (Level {ch.level} {ch.race} {ch.character_class})")
    return lines


def _roll_lines(roll: DiceRoll) -> List[str]:
    lines = [
        "DICE ROLL:",
        f"- Roll: {roll.count}{roll.dice_type}",
        f"- Result: {json.loads(roll.results)}",
        f"- Modifier: {roll.modifier:+d}",
        f"- Total: {roll.total}",
    ]
    if roll.is_critical:
        lines.append("- CRITICAL SUCCESS! Make the outcome exceptional.")
    elif roll.is_fumble:
        lines.append("- CRITICAL FAILURE! Introduce a dramatic complication.")
    return lines


def build_story_prompt(
    campaign: Campaign,
    action: str,
    narrative_style: str,
    difficulty: str,
    party: List[str],
    previous: Optional[CampaignSession] = None,
    roll: Optional[DiceRoll] = None,
) -> str:
    parts = [
        f"You are an expert Dungeon Master running a {narrative_style} tabletop campaign.",
        "",
        "CAMPAIGN:",
        f"- Title: {campaign.title}",
        f"- Description: {campaign.description or 'An unfolding adventure'}",
        f"- Difficulty: {difficulty}",
        "",
        "Characters in party:",
    ]
    parts.extend(party or ["- (no characters yet)"])

    if previous is not None:
        parts += [
            "",
            f"PREVIOUS SESSION {previous.session_number}: {previous.title}",
            f"- Location: {previous.location}",
            f"- What happened: {previous.narrative}",
        ]
        choices = json.loads(previous.choices or "[]")
        if choices:
            parts.append("- Choices offered: " + "; ".join(c.get("action", "") for c in choices))

    parts += ["", f"PLAYER ACTION: {action}"]
    if roll is not None:
        parts += [""] + _roll_lines(roll)

    parts += [
        "",
        "Continue the story from this action:",
        "- Progress any combat with clear consequences; do not stall encounters.",
        "- Award tangible rewards (items, currency, experience) when the party earns them.",
        "- Move the story toward a resolution; avoid endless side threads.",
        "- Companions act on their own and take part in the scene.",
        "",
        "Respond ONLY with a JSON object of this shape:",
        "{",
        '  "narrative": "2-4 paragraphs continuing the scene",',
        '  "sessionTitle": "short title",',
        '  "location": "where the party is now",',
        '  "rewards": [{"type": "item|currency|experience", "name": "...", "description": "...", '
        '"value": 0, "rarity": "common"}],',
        '  "choices": [{"action": "...", "description": "...", "icon": "...", "requiresDiceRoll": true, '
        '"diceType": "d20", "rollDC": 12, "rollModifier": 0, "rollPurpose": "...", '
        '"successText": "...", "failureText": "..."}]',
        "}",
        "Provide exactly 4 choices; at least 2 of them must require a dice roll.",
    ]
    return "\n".join(parts)


def parse_story_payload(raw: Any) -> StoryPayload:
    """Validate generator output and normalize it once; malformed rewards are dropped."""
    if not isinstance(raw, dict):
        raise GenerationFailure("Generator output is not an object")

    for key in ("narrative", "sessionTitle", "location"):
        value = raw.get(key, raw.get("session_title") if key == "sessionTitle" else None)
        if not isinstance(value, str) or not value.strip():
            raise GenerationFailure(f"Generator output is missing {key}")

    choices = raw.get("choices")
    if not isinstance(choices, list) or not choices:
        raise GenerationFailure("Generator output has no choices")

    raw_rewards = raw.get("rewards") or []
    if not isinstance(raw_rewards, list):
        logger.warning("Ignoring non-list rewards %r", raw_rewards)
        raw_rewards = []

    rewards = []
    for entry in raw_rewards:
        try:
            rewards.append(Reward.model_validate(entry))
        except ValidationError as exc:
            logger.warning("Dropping malformed reward %r: %s", entry, exc.errors()[0]["msg"])

    try:
        return StoryPayload.model_validate({**raw, "rewards": rewards})
    except ValidationError as exc:
        raise GenerationFailure(f"Generator output failed validation: {exc}") from exc


def fallback_payload() -> StoryPayload:
    return StoryPayload.model_validate(FALLBACK_SESSION)


def to_session_out(session: CampaignSession) -> SessionOut:
    return SessionOut(
        id=session.id,
        campaign_id=session.campaign_id,
        session_number=session.session_number,
        title=session.title,
        narrative=session.narrative,
        location=session.location,
        choices=[Choice.model_validate(c) for c in json.loads(session.choices or "[]")],
        rewards=[Reward.model_validate(r) for r in json.loads(session.rewards or "[]")],
        session_xp_reward=session.session_xp_reward,
        is_completed=bool(session.is_completed),
        completed_at=session.completed_at,
        created_at=session.created_at,
    )


def _generate(generator, prompt: str, campaign_id: int):
    try:
        return parse_story_payload(generator.generate(prompt, settings.NARRATIVE_MAX_TOKENS)), False
    except GenerationFailure as exc:
        logger.warning("Campaign %s: generation failed, using fallback session (%s)", campaign_id, exc)
        return fallback_payload(), True
    except Exception:
        # Any generator error falls back, not only GenerationFailure.
        logger.warning("Campaign %s: generator raised, using fallback session", campaign_id, exc_info=True)
        return fallback_payload(), True


def _persist_session(db: Session, campaign_id: int, payload: StoryPayload) -> CampaignSession:
    """Number and insert the session. Caller holds the campaign lock."""
    campaign = load_campaign(db, campaign_id, for_update=True)
    max_existing = db.query(func.max(CampaignSession.session_number)).filter(
        CampaignSession.campaign_id == campaign_id,
    ).scalar()
    number = max(campaign.current_session_number or 0, max_existing or 0) + 1

    now = datetime.utcnow()
    session = CampaignSession(
        campaign_id=campaign_id,
        session_number=number,
        title=payload.session_title,
        narrative=payload.narrative,
        location=payload.location,
        choices=json.dumps([c.model_dump() for c in payload.choices]),
        rewards=json.dumps([r.model_dump() for r in payload.rewards]),
        session_xp_reward=session_xp_for(number),
        is_completed=False,
        created_at=now,
        updated_at=now,
    )
    db.add(session)
    campaign.current_session_number = number
    campaign.updated_at = now
    db.commit()
    db.refresh(session)
    logger.info("Campaign %s session %s created: %r", campaign_id, number, session.title)
    return session


def create_session_from_action(
    db: Session,
    campaign: Campaign,
    action: str,
    narrative_style: str,
    difficulty: str,
    generator,
    roll: Optional[DiceRoll] = None,
    advance_turn: bool = False,
) -> StoryAdvanceOut:
    from services.reward_service import distribute_rewards
    from services.turn_service import rotate_turn

    prompt = build_story_prompt(
        campaign,
        action,
        narrative_style,
        difficulty,
        _party_lines(db, campaign.id),
        previous=latest_session(db, campaign.id),
        roll=roll,
    )
    payload, used_fallback = _generate(generator, prompt, campaign.id)

    with campaign_lock(campaign.id):
        session = _persist_session(db, campaign.id, payload)
        if advance_turn:
            locked = load_campaign(db, campaign.id, for_update=True)
            if locked.is_turn_based:
                rotate_turn(db, locked)

    if payload.rewards:
        failures = distribute_rewards(db, campaign.id, payload.rewards, session.id)
        if failures:
            logger.warning("Campaign %s session %s: %d reward(s) failed", campaign.id, session.session_number, len(failures))

    return StoryAdvanceOut(
        campaign_id=campaign.id,
        new_session_number=session.session_number,
        used_fallback=used_fallback,
        session=to_session_out(session),
    )


def _require_actor(db: Session, campaign: Campaign, user_id: int) -> None:
    if is_dm(campaign, user_id):
        return
    participant = next((p for p in active_participants(db, campaign.id) if p.user_id == user_id), None)
    if participant is None:
        raise ForbiddenError("Only the DM or an active participant can advance the story")
    if campaign.is_turn_based and campaign.current_turn_participant_id not in (None, participant.id):
        raise ForbiddenError("It is not your turn")


def advance_story(
    db: Session,
    campaign_id: int,
    action: str,
    narrative_style: Optional[str],
    difficulty: Optional[str],
    generator,
    user_id: Optional[int] = None,
    roll_id: Optional[int] = None,
    roll_dc: Optional[int] = None,
    advance_turn: bool = False,
) -> StoryAdvanceOut:
    """Turn a player action (and optional persisted roll) into the campaign's next session."""
    campaign = load_campaign(db, campaign_id)
    if user_id is not None:
        _require_actor(db, campaign, user_id)

    roll = None
    if roll_id is not None:
        roll = load_roll(db, campaign_id, roll_id)
        if roll_dc is not None:
            action = describe_outcome(action, roll.total, roll_dc)

    return create_session_from_action(
        db,
        campaign,
        action,
        narrative_style or campaign.narrative_style,
        difficulty or campaign.difficulty,
        generator,
        roll=roll,
        advance_turn=advance_turn,
    )


def list_sessions(db: Session, campaign_id: int) -> List[CampaignSession]:
    load_campaign(db, campaign_id)
    return (
        db.query(CampaignSession)
        .filter(CampaignSession.campaign_id == campaign_id)
        .order_by(CampaignSession.session_number)
        .all()
    )


def get_session(db: Session, campaign_id: int, session_number: int) -> CampaignSession:
    session = db.query(CampaignSession).filter(
        CampaignSession.campaign_id == campaign_id,
        CampaignSession.session_number == session_number,
    ).first()
    if session is None:
        raise NotFoundError(f"Session {session_number} not found in campaign {campaign_id}")
    return session
