from typing import List
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from auth import current_user_id, verify_engine_key
from db import get_db
from schemas import SessionCompletionOut, SessionOut, StoryAdvanceOut, StoryAdvanceRequest
from services import story_service
from services.narrative_service import NarrativeGenerator, get_narrative_generator
from services.reward_service import complete_session

router = APIRouter(prefix="/v1/campaigns", tags=["story"])


@router.post("/{campaign_id}/story/advance", response_model=StoryAdvanceOut)
def advance(
    campaign_id: int,
    body: StoryAdvanceRequest,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    generator: NarrativeGenerator = Depends(get_narrative_generator),
    _key: str = Depends(verify_engine_key),
):
    return story_service.advance_story(
        db,
        campaign_id,
        body.action,
        body.narrative_style,
        body.difficulty,
        generator,
        user_id=user_id,
        roll_id=body.roll_id,
        roll_dc=body.roll_dc,
        advance_turn=body.advance_turn,
    )


@router.get("/{campaign_id}/sessions", response_model=List[SessionOut])
def list_sessions(
    campaign_id: int,
    db: Session = Depends(get_db),
    _key: str = Depends(verify_engine_key),
):
    return [story_service.to_session_out(s) for s in story_service.list_sessions(db, campaign_id)]


@router.get("/{campaign_id}/sessions/{session_number}", response_model=SessionOut)
def get_session(
    campaign_id: int,
    session_number: int,
    db: Session = Depends(get_db),
    _key: str = Depends(verify_engine_key),
):
    return story_service.to_session_out(story_service.get_session(db, campaign_id, session_number))


@router.post("/{campaign_id}/sessions/{session_number}/complete", response_model=SessionCompletionOut)
def complete(
    campaign_id: int,
    session_number: int,
    db: Session = Depends(get_db),
    user_id: int = Depends(current_user_id),
    _key: str = Depends(verify_engine_key),
):
    return complete_session(db, campaign_id, session_number, user_id)
