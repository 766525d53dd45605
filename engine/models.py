from datetime import datetime
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from db import Base


class Campaign(Base):
    __tablename__ = "campaigns"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_user_id = Column(Integer, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, default="")
    narrative_style = Column(String, default="descriptive")
    difficulty = Column(String, default="Normal - Balanced Challenge")
    total_sessions = Column(Integer, nullable=True)
    current_session_number = Column(Integer, default=0, nullable=False)
    is_turn_based = Column(Boolean, default=False, nullable=False)
    current_turn_participant_id = Column(Integer, nullable=True)  # participants.id
    turn_started_at = Column(DateTime, nullable=True)
    turn_time_limit = Column(Integer, nullable=True)  # seconds
    is_published = Column(Boolean, default=False)
    is_private = Column(Boolean, default=False)
    is_archived = Column(Boolean, default=False)
    is_completed = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class Participant(Base):
    __tablename__ = "participants"
    __table_args__ = (
        UniqueConstraint("campaign_id", "user_id", name="uq_participant_user"),
        UniqueConstraint("campaign_id", "npc_id", name="uq_participant_npc"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=False)
    user_id = Column(Integer, nullable=True)
    npc_id = Column(Integer, ForeignKey("npcs.id"), nullable=True)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=True)
    role = Column(String, nullable=False)  # dm/player/companion
    companion_role = Column(String, nullable=True)
    turn_order = Column(Integer, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    joined_at = Column(DateTime, default=datetime.utcnow)
    last_active_at = Column(DateTime, nullable=True)


class Character(Base):
    __tablename__ = "characters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    race = Column(String, default="Human")
    character_class = Column(String, default="Fighter")
    level = Column(Integer, default=1, nullable=False)
    experience = Column(Integer, default=0, nullable=False)
    gold_coins = Column(Integer, default=0, nullable=False)
    silver_coins = Column(Integer, default=0, nullable=False)
    copper_coins = Column(Integer, default=0, nullable=False)


class Npc(Base):
    __tablename__ = "npcs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    race = Column(String, default="Human")
    occupation = Column(String, default="")


class CampaignSession(Base):
    __tablename__ = "campaign_sessions"
    __table_args__ = (
        UniqueConstraint("campaign_id", "session_number", name="uq_session_number"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=False)
    session_number = Column(Integer, nullable=False)
    title = Column(String, nullable=False)
    narrative = Column(Text, nullable=False)
    location = Column(String, nullable=False)
    choices = Column(Text, default="[]")  # JSON list
    rewards = Column(Text, default="[]")  # JSON list
    session_xp_reward = Column(Integer, default=0, nullable=False)
    is_completed = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)


class DiceRoll(Base):
    __tablename__ = "dice_rolls"

    id = Column(Integer, primary_key=True, autoincrement=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=True)
    user_id = Column(Integer, nullable=True)
    character_id = Column(Integer, nullable=True)
    dice_type = Column(String, nullable=False)
    count = Column(Integer, default=1, nullable=False)
    modifier = Column(Integer, default=0, nullable=False)
    purpose = Column(String, default="")
    results = Column(String, nullable=False)  # JSON list
    total = Column(Integer, nullable=False)
    is_critical = Column(Boolean, default=False)
    is_fumble = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Item(Base):
    __tablename__ = "items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, default="")
    category = Column(String, default="loot")
    rarity = Column(String, default="common")
    required_level = Column(Integer, default=1, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class CharacterItem(Base):
    __tablename__ = "character_items"
    __table_args__ = (
        UniqueConstraint("character_id", "item_id", name="uq_character_item"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=False)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False)
    quantity = Column(Integer, default=1, nullable=False)
    acquired_from = Column(String, default="quest_reward")
    notes = Column(String, default="")
    acquired_at = Column(DateTime, default=datetime.utcnow)


class CurrencyTransaction(Base):
    __tablename__ = "currency_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    character_id = Column(Integer, ForeignKey("characters.id"), nullable=False)
    amount = Column(Integer, nullable=False)  # signed, in copper
    reason = Column(String, nullable=False)
    reference_id = Column(Integer, nullable=True)
    reference_type = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
