import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

DICE_TYPES = ("d4", "d6", "d8", "d10", "d12", "d20", "d100")
REWARD_TYPES = ("item", "currency", "experience")


def normalize_dice_type(value: Optional[str]) -> str:
    """Map a loosely-specified die onto the supported faces, falling back to d20."""
    normalized = str(value or "").strip().lower()
    if normalized in DICE_TYPES:
        return normalized
    logger.warning("Unrecognized dice type %r, using d20", value)
    return "d20"


def _either(snake: str, camel: str) -> AliasChoices:
    # Generator output arrives in camelCase, API input in snake_case.
    return AliasChoices(snake, camel)


# ── Narrative payload ────────────────────────────────────────────────────────


class Choice(BaseModel):
    action: str
    description: str = ""
    icon: Optional[str] = None
    requires_dice_roll: bool = Field(False, validation_alias=_either("requires_dice_roll", "requiresDiceRoll"))
    dice_type: Optional[str] = Field(None, validation_alias=_either("dice_type", "diceType"))
    roll_dc: Optional[int] = Field(None, validation_alias=_either("roll_dc", "rollDC"))
    roll_modifier: int = Field(0, validation_alias=_either("roll_modifier", "rollModifier"))
    roll_purpose: Optional[str] = Field(None, validation_alias=_either("roll_purpose", "rollPurpose"))
    success_text: Optional[str] = Field(None, validation_alias=_either("success_text", "successText"))
    failure_text: Optional[str] = Field(None, validation_alias=_either("failure_text", "failureText"))

    @field_validator("dice_type", mode="before")
    @classmethod
    def _coerce_dice_type(cls, value):
        # Generators sometimes send the face count alone, e.g. 20.
        if value is None:
            return None
        text = str(value).strip().lower()
        if text.isdigit():
            text = f"d{text}"
        return normalize_dice_type(text)

    @field_validator("roll_modifier", mode="before")
    @classmethod
    def _default_modifier(cls, value):
        return 0 if value is None else value

    @field_validator("action")
    @classmethod
    def _action_required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("choice action must not be empty")
        return value

    @model_validator(mode="after")
    def _normalize_dice_type(self):
        if self.requires_dice_roll or self.dice_type is not None:
            self.dice_type = normalize_dice_type(self.dice_type)
        return self


class Reward(BaseModel):
    type: str
    name: str = ""
    description: str = ""
    rarity: Optional[str] = None
    quantity: int = 1
    value: int = 0
    gold: int = 0
    silver: int = 0
    copper: int = 0

    @field_validator("type", mode="before")
    @classmethod
    def _known_type(cls, value):
        value = str(value or "").strip().lower()
        if value not in REWARD_TYPES:
            raise ValueError(f"Unknown reward type: {value}")
        return value

    @model_validator(mode="after")
    def _currency_from_value(self):
        if self.type == "currency" and not (self.gold or self.silver or self.copper):
            self.gold = self.value
        if self.type == "item" and self.quantity < 1:
            self.quantity = 1
        return self

    @property
    def total_copper(self) -> int:
        return self.gold * 10000 + self.silver * 100 + self.copper


class StoryPayload(BaseModel):
    narrative: str
    session_title: str = Field(validation_alias=_either("session_title", "sessionTitle"))
    location: str
    choices: List[Choice]
    rewards: List[Reward] = []


# ── Campaigns & participants ─────────────────────────────────────────────────


class CampaignCreate(BaseModel):
    title: str
    description: str = ""
    narrative_style: str = "descriptive"
    difficulty: str = "Normal - Balanced Challenge"
    total_sessions: Optional[int] = None
    is_private: bool = False
    character_id: Optional[int] = None


class CampaignOut(BaseModel):
    id: int
    owner_user_id: int
    title: str
    description: Optional[str] = ""
    narrative_style: str
    difficulty: str
    total_sessions: Optional[int] = None
    current_session_number: int
    is_turn_based: bool
    current_turn_participant_id: Optional[int] = None
    turn_started_at: Optional[datetime] = None
    turn_time_limit: Optional[int] = None
    is_published: bool
    is_private: bool
    is_archived: bool
    is_completed: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class ParticipantCreate(BaseModel):
    role: str = "player"
    user_id: Optional[int] = None
    character_id: Optional[int] = None
    npc_id: Optional[int] = None
    companion_role: Optional[str] = None

    @model_validator(mode="after")
    def _identity_matches_role(self):
        if self.role not in ("player", "companion"):
            raise ValueError("role must be 'player' or 'companion'")
        if self.role == "companion" and self.npc_id is None:
            raise ValueError("companions require npc_id")
        if self.role == "player" and self.user_id is None:
            raise ValueError("players require user_id")
        return self


class JoinRequest(BaseModel):
    character_id: Optional[int] = None


class ParticipantUpdate(BaseModel):
    is_active: bool


class ParticipantOut(BaseModel):
    id: int
    campaign_id: int
    user_id: Optional[int] = None
    npc_id: Optional[int] = None
    character_id: Optional[int] = None
    role: str
    companion_role: Optional[str] = None
    turn_order: int
    is_active: bool
    joined_at: datetime
    last_active_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class NpcActionRequest(BaseModel):
    action: str


class CampaignStateOut(BaseModel):
    campaign: CampaignOut
    participants: List[ParticipantOut]
    turn: "TurnStateOut"


# ── Turns ────────────────────────────────────────────────────────────────────


class TurnBasedUpdate(BaseModel):
    is_turn_based: bool
    turn_time_limit: Optional[int] = None


class TurnStateOut(BaseModel):
    campaign_id: int
    state: str  # disabled/idle/active
    is_turn_based: bool
    participant_id: Optional[int] = None
    user_id: Optional[int] = None
    npc_id: Optional[int] = None
    started_at: Optional[datetime] = None
    time_limit: Optional[int] = None


CampaignStateOut.model_rebuild()


# ── Dice ─────────────────────────────────────────────────────────────────────


class RollRequest(BaseModel):
    dice_type: Optional[str] = None
    count: int = Field(1, ge=1)
    modifier: int = 0
    expr: Optional[str] = None
    purpose: str = ""
    character_id: Optional[int] = None

    @model_validator(mode="after")
    def _needs_dice(self):
        if self.dice_type is None and self.expr is None:
            raise ValueError("either dice_type or expr is required")
        return self


class RollOut(BaseModel):
    id: int
    campaign_id: Optional[int] = None
    user_id: Optional[int] = None
    character_id: Optional[int] = None
    dice_type: str
    count: int
    modifier: int
    purpose: str
    results: List[int]
    total: int
    is_critical: bool
    is_fumble: bool
    created_at: datetime


# ── Sessions ─────────────────────────────────────────────────────────────────


class StoryAdvanceRequest(BaseModel):
    action: str
    narrative_style: Optional[str] = None
    difficulty: Optional[str] = None
    roll_id: Optional[int] = None
    roll_dc: Optional[int] = None
    advance_turn: bool = False


class SessionOut(BaseModel):
    id: int
    campaign_id: int
    session_number: int
    title: str
    narrative: str
    location: str
    choices: List[Choice]
    rewards: List[Reward]
    session_xp_reward: int
    is_completed: bool
    completed_at: Optional[datetime] = None
    created_at: datetime


class StoryAdvanceOut(BaseModel):
    campaign_id: int
    new_session_number: int
    used_fallback: bool
    session: SessionOut


class RewardGrant(BaseModel):
    participant_id: int
    character_id: int
    gold: int
    silver: int
    copper: int
    experience: int
    item_id: Optional[int] = None
    item_name: Optional[str] = None


class RewardFailure(BaseModel):
    participant_id: Optional[int] = None
    character_id: int
    error: str


class SessionCompletionOut(BaseModel):
    session: SessionOut
    awarded: List[RewardGrant]
    failures: List[RewardFailure]


class CampaignCreatedOut(BaseModel):
    campaign: CampaignOut
    session: SessionOut
    used_fallback: bool


class EventEnvelope(BaseModel):
    type: str
    payload: Dict[str, Any]
