import sys
import os

# Add engine/ directory to sys.path so absolute imports work
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from app import app
from db import Base, get_db
from auth import verify_engine_key
from models import Character, Npc
from services.broadcast import hub
from services.narrative_service import NarrativeGenerator, get_narrative_generator

TEST_DB_URL = "sqlite:///:memory:"

# StaticPool ensures all connections reuse the same in-memory SQLite DB
test_engine = create_engine(
    TEST_DB_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

DM_USER = 1


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


async def override_verify_engine_key():
    return "test-key"


app.dependency_overrides[get_db] = override_get_db
app.dependency_overrides[verify_engine_key] = override_verify_engine_key


def headers(user_id=DM_USER):
    return {"X-ENGINE-KEY": "test-key", "X-USER-ID": str(user_id)}


def story_payload(title="The Road North", location="Crossroads", rewards=None, **overrides):
    payload = {
        "narrative": "Rain hammers the crossroads as the party weighs its options.",
        "sessionTitle": title,
        "location": location,
        "rewards": rewards or [],
        "choices": [
            {"action": "Follow the tracks", "description": "Into the woods", "requiresDiceRoll": True,
             "diceType": "d20", "rollDC": 13, "rollModifier": 2},
            {"action": "Question the merchant", "description": "He saw something", "requiresDiceRoll": True,
             "diceType": "d20", "rollDC": 11},
            {"action": "Make camp", "description": "Rest until dawn", "requiresDiceRoll": False},
            {"action": "Return to town", "description": "Report back", "requiresDiceRoll": False},
        ],
    }
    payload.update(overrides)
    return payload


class FakeGenerator(NarrativeGenerator):
    """Replays queued responses; an exception in the queue is raised instead of returned."""

    def __init__(self):
        self.responses = []
        self.prompts = []

    def queue(self, *responses):
        self.responses.extend(responses)

    def generate(self, prompt, max_tokens):
        self.prompts.append(prompt)
        if not self.responses:
            return story_payload(title=f"Session {len(self.prompts)}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class RecordingConnection:
    def __init__(self):
        self.messages = []

    def send(self, message):
        self.messages.append(message)

    def types(self):
        return [m["type"] for m in self.messages]

    def of_type(self, event_type):
        return [m["payload"] for m in self.messages if m["type"] == event_type]


class BrokenConnection:
    def send(self, message):
        raise ConnectionError("socket closed")


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def generator():
    fake = FakeGenerator()
    app.dependency_overrides[get_narrative_generator] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_narrative_generator, None)


@pytest.fixture
def events():
    conn = RecordingConnection()
    hub.subscribe(conn)
    yield conn
    hub.unsubscribe(conn)


def make_character(db, user_id, name, level=1, experience=0, **fields):
    character = Character(
        user_id=user_id,
        name=name,
        race=fields.pop("race", "Human"),
        character_class=fields.pop("character_class", "Fighter"),
        level=level,
        experience=experience,
        **fields,
    )
    db.add(character)
    db.commit()
    db.refresh(character)
    return character


def make_npc(db, name="Brakka", race="Dwarf", occupation="Blacksmith"):
    npc = Npc(name=name, race=race, occupation=occupation)
    db.add(npc)
    db.commit()
    db.refresh(npc)
    return npc


@pytest.fixture
def campaign(client, db, generator):
    dm_character = make_character(db, DM_USER, "Aldric", level=3)
    resp = client.post(
        "/v1/campaigns",
        json={
            "title": "Test Campaign",
            "description": "Goblins in the hills",
            "character_id": dm_character.id,
        },
        headers=headers(DM_USER),
    )
    assert resp.status_code == 200
    return resp.json()


def join(client, db, campaign_id, user_id, name, level=1):
    character = make_character(db, user_id, name, level=level)
    resp = client.post(
        f"/v1/campaigns/{campaign_id}/join",
        json={"character_id": character.id},
        headers=headers(user_id),
    )
    assert resp.status_code == 200
    return resp.json()
