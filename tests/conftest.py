import time
from decimal import Decimal

import pytest

from companion.db import init_db, make_engine, make_session_factory, session_scope
from companion.models import Mission
from companion.service import CompanionService
from companion.services.ledger import Ledger
from companion.services.missions import MissionRepository
from companion.services.policy import FixedPolicy


def make_draft(**overrides):
    draft = {
        "label": "focus",
        "title": "Deep work block",
        "description": "One task, no notifications.",
        "duration_minutes": 25,
        "source": "custom",
    }
    draft.update(overrides)
    return draft


def total_of(transactions):
    return sum((Decimal(tx.amount) for tx in transactions), Decimal("0"))


class StubGenerator:
    """Content generator double: returns ``payload``, raises ``exc``, or sleeps first."""

    def __init__(self, payload=None, exc=None, delay=0):
        self.payload = payload if payload is not None else {
            "label": "mouvement",
            "title": "Stretch break",
            "description": "Stand up and stretch.",
            "duration_minutes": 5,
            "scheduled_at": "2026-10-18T10:00:00Z",
            "source": "auto",
        }
        self.exc = exc
        self.delay = delay
        self.calls = []
        self.feedback_calls = []

    def generate_next_mission(self, recent_missions, label_stats, preferences):
        self.calls.append((recent_missions, label_stats, preferences))
        if self.delay:
            time.sleep(self.delay)
        if self.exc:
            raise self.exc
        return dict(self.payload)

    def analyze_feedback(self, mission, feedback):
        self.feedback_calls.append((mission.id, feedback.rating))
        return {"insights": "Short movement works well.", "nextLabelSuggestion": "focus",
                "nextDurationSuggestion": 20}


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'companion.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def ledger(session_factory):
    ledger = Ledger(session_factory, initial_points=10)
    ledger.open()
    return ledger


@pytest.fixture
def repo(session_factory):
    return MissionRepository(session_factory)


@pytest.fixture
def insert_mission(session_factory):
    """Store a mission directly in any status, bypassing the state machine."""
    def _insert(status="pending", **fields):
        values = dict(label="focus", title="Seeded", duration_minutes=10, source="custom")
        values.update(fields)
        with session_scope(session_factory) as db:
            mission = Mission(status=status, **values)
            db.add(mission)
            db.flush()
            return mission
    return _insert


@pytest.fixture
def generator():
    return StubGenerator()


@pytest.fixture
def service(session_factory, generator):
    svc = CompanionService(
        session_factory,
        generator=generator,
        policy=FixedPolicy(essential=True, reward=Decimal("5"), penalty=Decimal("3")),
        initial_points=10,
        generation_timeout=2,
    )
    yield svc
    svc.close()
