import json
import logging
import random
import re
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple
from sqlalchemy.orm import Session
from errors import NotFoundError
from models import Campaign, DiceRoll
from schemas import DICE_TYPES, RollOut, RollRequest

logger = logging.getLogger(__name__)


@dataclass
class RollResult:
    dice_type: str
    count: int
    modifier: int
    results: List[int]
    total: int
    is_critical: bool
    is_fumble: bool

    @property
    def breakdown(self) -> str:
        rolls_str = str(self.results[0]) if len(self.results) == 1 else str(self.results)
        if self.modifier > 0:
            return f"{self.count}{self.dice_type}+{self.modifier}: {rolls_str}+{self.modifier}={self.total}"
        elif self.modifier < 0:
            return f"{self.count}{self.dice_type}{self.modifier}: {rolls_str}{self.modifier}={self.total}"
        return f"{self.count}{self.dice_type}: {rolls_str}={self.total}"


def parse_dice_expr(expr: str) -> Tuple[int, str, int]:
    """Parse dice notation like ``2d6+3`` into (count, dice_type, modifier)."""
    expr = expr.strip().replace(" ", "")

    pattern = r'^(\d*)d(\d+)([+-]\d+)?$'
    match = re.match(pattern, expr, re.IGNORECASE)

    if not match:
        raise ValueError(f"Invalid dice expression: {expr}")

    count_str, sides_str, mod_str = match.groups()
    count = int(count_str) if count_str else 1
    dice_type = f"d{int(sides_str)}"
    modifier = int(mod_str) if mod_str else 0

    if count < 1:
        raise ValueError(f"Die count must be at least 1: {expr}")
    if dice_type not in DICE_TYPES:
        raise ValueError(f"Unsupported die {dice_type} in {expr}")

    return count, dice_type, modifier


def roll_dice(dice_type: str, count: int = 1, modifier: int = 0, rng: Optional[random.Random] = None) -> RollResult:
    if dice_type not in DICE_TYPES:
        raise ValueError(f"Unsupported dice type: {dice_type}")
    if count < 1:
        raise ValueError(f"Die count must be at least 1: {count}")

    rng = rng or random
    sides = int(dice_type[1:])
    results = [rng.randint(1, sides) for _ in range(count)]
    total = sum(results) + modifier

    # Crits and fumbles are a d20 concept only.
    is_d20 = dice_type == "d20"
    return RollResult(
        dice_type=dice_type,
        count=count,
        modifier=modifier,
        results=results,
        total=total,
        is_critical=is_d20 and any(r == 20 for r in results),
        is_fumble=is_d20 and any(r == 1 for r in results),
    )


def resolve_check(total: int, dc: int) -> bool:
    return total >= dc


def describe_outcome(action: str, total: int, dc: int) -> str:
    outcome = "Success" if resolve_check(total, dc) else "Failure"
    return f"{action} - {outcome} ({total} vs DC {dc})"


def to_roll_out(roll: DiceRoll) -> RollOut:
    return RollOut(
        id=roll.id,
        campaign_id=roll.campaign_id,
        user_id=roll.user_id,
        character_id=roll.character_id,
        dice_type=roll.dice_type,
        count=roll.count,
        modifier=roll.modifier,
        purpose=roll.purpose or "",
        results=json.loads(roll.results),
        total=roll.total,
        is_critical=bool(roll.is_critical),
        is_fumble=bool(roll.is_fumble),
        created_at=roll.created_at,
    )


def record_roll(
    db: Session,
    campaign_id: int,
    body: RollRequest,
    user_id: Optional[int] = None,
    rng: Optional[random.Random] = None,
) -> DiceRoll:
    """Roll server-side and persist the outcome; the stored total is the only one ever trusted."""
    if db.query(Campaign).filter(Campaign.id == campaign_id).first() is None:
        raise NotFoundError(f"Campaign not found: {campaign_id}")

    if body.expr:
        count, dice_type, modifier = parse_dice_expr(body.expr)
    else:
        dice_type = body.dice_type.strip().lower()
        count, modifier = body.count, body.modifier

    result = roll_dice(dice_type, count, modifier, rng=rng)
    roll = DiceRoll(
        campaign_id=campaign_id,
        user_id=user_id,
        character_id=body.character_id,
        dice_type=result.dice_type,
        count=result.count,
        modifier=result.modifier,
        purpose=body.purpose,
        results=json.dumps(result.results),
        total=result.total,
        is_critical=result.is_critical,
        is_fumble=result.is_fumble,
        created_at=datetime.utcnow(),
    )
    db.add(roll)
    db.commit()
    db.refresh(roll)
    logger.info("Campaign %s roll %s for %r: %s", campaign_id, roll.id, body.purpose, result.breakdown)
    return roll


def load_roll(db: Session, campaign_id: int, roll_id: int) -> DiceRoll:
    roll = db.query(DiceRoll).filter(DiceRoll.id == roll_id, DiceRoll.campaign_id == campaign_id).first()
    if roll is None:
        raise NotFoundError(f"Dice roll not found: {roll_id}")
    return roll
