import logging
import random
from bisect import bisect_right
from datetime import datetime
from typing import Iterable, List, Optional, Tuple
from sqlalchemy.orm import Session
from errors import InvalidStateError, NotFoundError, RewardApplicationError
from models import Character, CharacterItem, CurrencyTransaction, Item
from schemas import Reward, RewardFailure, RewardGrant, SessionCompletionOut
from services.broadcast import hub
from services.campaign_service import load_campaign, require_dm
from services.locks import campaign_lock
from services.participant_service import active_participants

logger = logging.getLogger(__name__)

# Minimum experience for levels 1..20.
XP_THRESHOLDS = [
    0, 300, 900, 2700, 6500, 14000, 23000, 34000, 48000, 64000,
    85000, 100000, 120000, 140000, 165000, 195000, 225000, 265000, 305000, 355000,
]

SESSION_REFERENCE = "campaign_session"
LOOT_CHANCE = 0.3


def level_for_experience(experience: int) -> int:
    return max(1, bisect_right(XP_THRESHOLDS, experience))


def _load_character(db: Session, character_id: int) -> Character:
    character = db.query(Character).filter(Character.id == character_id).first()
    if character is None:
        raise NotFoundError(f"Character not found: {character_id}")
    return character


def _credit_currency(
    db: Session,
    character_id: int,
    gold: int,
    silver: int,
    copper: int,
    reason: str,
    reference_id: Optional[int] = None,
    reference_type: Optional[str] = None,
) -> int:
    _load_character(db, character_id)
    # Increment in SQL so concurrent credits to the same character are not lost.
    db.query(Character).filter(Character.id == character_id).update(
        {
            Character.gold_coins: Character.gold_coins + gold,
            Character.silver_coins: Character.silver_coins + silver,
            Character.copper_coins: Character.copper_coins + copper,
        },
        synchronize_session=False,
    )
    amount = gold * 10000 + silver * 100 + copper
    db.add(CurrencyTransaction(
        character_id=character_id,
        amount=amount,
        reason=reason,
        reference_id=reference_id,
        reference_type=reference_type,
        created_at=datetime.utcnow(),
    ))
    return amount


def _grant_item(
    db: Session,
    character_id: int,
    reward: Reward,
    notes: Optional[str] = None,
) -> Tuple[Item, CharacterItem]:
    _load_character(db, character_id)
    item = db.query(Item).filter(Item.name == reward.name).first()
    if item is None:
        item = Item(
            name=reward.name,
            description=reward.description,
            category="loot",
            rarity=reward.rarity or "common",
        )
        db.add(item)
        db.flush()

    owned = db.query(CharacterItem).filter(
        CharacterItem.character_id == character_id,
        CharacterItem.item_id == item.id,
    ).first()
    if owned is None:
        owned = CharacterItem(
            character_id=character_id,
            item_id=item.id,
            quantity=reward.quantity,
            acquired_from="quest_reward",
            notes=notes if notes is not None else reward.description,
            acquired_at=datetime.utcnow(),
        )
        db.add(owned)
    else:
        db.query(CharacterItem).filter(CharacterItem.id == owned.id).update(
            {CharacterItem.quantity: CharacterItem.quantity + reward.quantity},
            synchronize_session=False,
        )
    db.add(CurrencyTransaction(
        character_id=character_id,
        amount=0,
        reason="item_reward",
        reference_id=item.id,
        reference_type="item",
        created_at=datetime.utcnow(),
    ))
    return item, owned


def _grant_experience(db: Session, character_id: int, amount: int) -> Tuple[int, int]:
    character = _load_character(db, character_id)
    db.query(Character).filter(Character.id == character_id).update(
        {Character.experience: Character.experience + amount},
        synchronize_session=False,
    )
    db.flush()
    db.refresh(character)
    # Milestone levels above the XP table are kept.
    level = level_for_experience(character.experience)
    if level > character.level:
        logger.info("Character %s reached level %s", character_id, level)
        character.level = level
    return character.experience, character.level


def apply_reward(
    db: Session,
    character_id: int,
    reward: Reward,
    campaign_id: Optional[int] = None,
    reference_session_id: Optional[int] = None,
) -> None:
    """Credit one reward to one character and commit."""
    if reward.type == "currency":
        amount = _credit_currency(
            db, character_id, reward.gold, reward.silver, reward.copper,
            reason="quest_reward",
            reference_id=reference_session_id,
            reference_type=SESSION_REFERENCE if reference_session_id else None,
        )
        db.commit()
        logger.info("Character %s credited %s copper", character_id, amount)
        hub.publish("currency_rewarded", {
            "campaign_id": campaign_id,
            "character_id": character_id,
            "gold": reward.gold,
            "silver": reward.silver,
            "copper": reward.copper,
            "reason": "quest_reward",
        })
    elif reward.type == "item":
        item, _ = _grant_item(db, character_id, reward)
        db.commit()
        logger.info("Character %s received %s x%s", character_id, item.name, reward.quantity)
        hub.publish("item_rewarded", {
            "campaign_id": campaign_id,
            "character_id": character_id,
            "item_id": item.id,
            "name": item.name,
            "rarity": item.rarity,
            "quantity": reward.quantity,
        })
    else:
        experience, level = _grant_experience(db, character_id, reward.value)
        db.commit()
        logger.info("Character %s gained %s XP (total %s, level %s)", character_id, reward.value, experience, level)


def distribute_rewards(
    db: Session,
    campaign_id: int,
    rewards: Iterable[Reward],
    reference_session_id: Optional[int] = None,
) -> List[RewardApplicationError]:
    """Apply every reward to every active participant character; failures are collected, not raised."""
    rewards = list(rewards)
    failures = []
    for participant in active_participants(db, campaign_id):
        if participant.character_id is None:
            continue
        for reward in rewards:
            try:
                apply_reward(db, participant.character_id, reward, campaign_id, reference_session_id)
            except Exception as exc:
                db.rollback()
                logger.exception("Reward %r for character %s failed", reward.name or reward.type, participant.character_id)
                failures.append(RewardApplicationError(participant.character_id, str(exc)))
    return failures


def _roll_coins(level: int, rng) -> Tuple[int, int, int]:
    gold = 5 + 2 * level + int(rng.random() * 3 * level)
    silver = 10 + 3 * level + int(rng.random() * 5 * level)
    copper = 15 + 5 * level + int(rng.random() * 10 * level)
    return gold, silver, copper


def _roll_loot(db: Session, level: int, rng) -> Optional[Item]:
    """Thirty percent of the time, pick a catalogue item at most two levels above ``level``, favouring common ones."""
    if rng.random() >= LOOT_CHANCE:
        return None
    candidates = db.query(Item).filter(Item.required_level <= level + 2).order_by(Item.id).all()
    if not candidates:
        return None

    if rng.random() < 0.7:
        pool = [item for item in candidates if item.rarity == "common"]
    elif rng.random() < 0.8:
        pool = [item for item in candidates if item.rarity in ("common", "uncommon")]
    else:
        pool = candidates
    pool = pool or candidates
    return pool[int(rng.random() * len(pool))]


def complete_session(
    db: Session,
    campaign_id: int,
    session_number: int,
    user_id: int,
    rng: Optional[random.Random] = None,
) -> SessionCompletionOut:
    """Mark a session finished and pay each active participant's character once."""
    from services.story_service import get_session, to_session_out

    rng = rng or random
    with campaign_lock(campaign_id):
        campaign = load_campaign(db, campaign_id, for_update=True)
        require_dm(campaign, user_id, "complete sessions")
        session = get_session(db, campaign_id, session_number)
        if session.is_completed:
            raise InvalidStateError(f"Session {session_number} is already completed")

        now = datetime.utcnow()
        session.is_completed = True
        session.completed_at = now
        session.updated_at = now
        db.commit()
        logger.info("Campaign %s session %s completed", campaign_id, session_number)

        awarded, failures = [], []
        for participant in active_participants(db, campaign_id):
            if participant.character_id is None:
                continue
            try:
                character = _load_character(db, participant.character_id)
                level = character.level
                gold, silver, copper = _roll_coins(level, rng)
                _credit_currency(
                    db, character.id, gold, silver, copper,
                    reason="quest_reward",
                    reference_id=session.id,
                    reference_type=SESSION_REFERENCE,
                )
                _grant_experience(db, character.id, session.session_xp_reward)
                db.commit()
            except Exception as exc:
                db.rollback()
                logger.exception("Session reward for character %s failed", participant.character_id)
                failures.append(RewardFailure(
                    participant_id=participant.id,
                    character_id=participant.character_id,
                    error=str(exc),
                ))
                continue

            # A failed loot grant leaves the coins and XP in place.
            loot = None
            try:
                loot = _roll_loot(db, level, rng)
                if loot is not None:
                    _grant_item(
                        db, character.id,
                        Reward(type="item", name=loot.name, rarity=loot.rarity, quantity=1),
                        notes=f'Reward from completing "{session.title}"',
                    )
                    db.commit()
            except Exception:
                db.rollback()
                logger.exception("Loot for character %s failed", participant.character_id)
                loot = None

            awarded.append(RewardGrant(
                participant_id=participant.id,
                character_id=character.id,
                gold=gold,
                silver=silver,
                copper=copper,
                experience=session.session_xp_reward,
                item_id=loot.id if loot else None,
                item_name=loot.name if loot else None,
            ))
            hub.publish("currency_rewarded", {
                "campaign_id": campaign_id,
                "character_id": character.id,
                "gold": gold,
                "silver": silver,
                "copper": copper,
                "reason": "quest_reward",
            })
            if loot is not None:
                hub.publish("item_rewarded", {
                    "campaign_id": campaign_id,
                    "character_id": character.id,
                    "item_id": loot.id,
                    "name": loot.name,
                    "rarity": loot.rarity,
                    "quantity": 1,
                })

        db.refresh(session)
        return SessionCompletionOut(session=to_session_out(session), awarded=awarded, failures=failures)
