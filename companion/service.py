"""
The companion core as one service object.

CompanionService owns the ledger, the mission repository and the policies
around them. The surrounding application builds one and passes it around;
nothing in the core is reachable through module globals.
"""
from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .config import GENERATION_TIMEOUT_SECONDS, INITIAL_POINTS, REVEAL_COST, UserSettings
from .db import init_db, make_engine, make_session_factory, session_scope
from .errors import GenerationBlocked, InsufficientBalance, StateTransitionError, ValidationError
from .models import Mission, MissionFeedback, MissionStatus, Transaction, TransactionType, utcnow
from .services.coordinator import GenerationCoordinator
from .services.generator import OpenRouterGenerator, default_generator
from .services.ledger import Ledger
from .services.missions import MissionRepository, parse_datetime, parse_status
from .services.policy import EconomyPolicy
from .services.rest import GateStatus, RestScheduler
from .services.stats import label_stats
from .services.visibility import VisibilityGate

logger = logging.getLogger(__name__)


class CompanionService:
    def __init__(
        self,
        session_factory=None,
        *,
        settings: Optional[UserSettings] = None,
        generator=None,
        policy: Optional[EconomyPolicy] = None,
        initial_points=INITIAL_POINTS,
        reveal_cost=REVEAL_COST,
        generation_timeout: float = GENERATION_TIMEOUT_SECONDS,
    ):
        self.settings = (settings or UserSettings()).validate()
        self.policy = policy or EconomyPolicy()
        self.ledger = Ledger(session_factory, initial_points=initial_points)
        self.missions = MissionRepository(self.ledger.session_factory)
        self.visibility = VisibilityGate(self.ledger, self.missions, cost=reveal_cost)
        self.rest = RestScheduler(self.settings.rest_time_short, self.settings.rest_time_long, self.policy)
        self.coordinator = GenerationCoordinator(
            self.missions,
            generator or default_generator(self.settings.ai_model),
            policy=self.policy,
            timeout=generation_timeout,
        )
        self.next_allowed_at: Optional[datetime] = None
        self.ledger.open()

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "CompanionService":
        """Build a service on its own engine, creating tables if needed."""
        engine = make_engine(url)
        init_db(engine)
        return cls(make_session_factory(engine), **kwargs)

    # -- missions --

    def create_mission(self, draft: dict) -> Mission:
        return self.missions.create(draft)

    def transition_mission(self, mission_id, status, completed_at=None) -> Mission:
        """
        Move a mission to ``status``, then apply what that transition owes.

        Completion credits the reward and starts the rest period; refusing an
        essential mission debits its penalty. Each happens once per mission.
        """
        status = parse_status(status)
        if status == MissionStatus.COMPLETED:
            completed_at = parse_datetime(completed_at) or utcnow()
        mission = self.missions.transition(mission_id, status, completed_at)
        self._observe(mission, status, completed_at)
        return mission

    def settle_transition(self, mission_id) -> Optional[Transaction]:
        """Re-apply the side effects of a mission's current status. Safe to call repeatedly."""
        mission = self.missions.get(mission_id)
        return self.ledger.settle(mission, parse_status(mission.status))

    def _observe(self, mission: Mission, status: MissionStatus, completed_at: Optional[datetime]):
        self.ledger.settle(mission, status)
        if status == MissionStatus.COMPLETED:
            window = self.rest.next_allowed_at(completed_at)
            self.next_allowed_at = window.next_allowed_at
            kind = "Short" if window.rest_minutes <= self.settings.rest_time_short else "Long"
            logger.info("%s rest of %d minutes before the next mission", kind, window.rest_minutes)

    def record_feedback(self, mission_id, rating: int, comment: str = None) -> MissionFeedback:
        return self.missions.record_feedback(mission_id, rating, comment)

    def analyze_feedback(self, mission_id) -> Optional[dict]:
        """Model insights on a mission's feedback, when the generator offers them."""
        analyze = getattr(self.coordinator.generator, "analyze_feedback", None)
        feedback = self.missions.get_feedback(mission_id)
        if analyze is None or feedback is None:
            return None
        return analyze(self.missions.get(mission_id), feedback)

    def schedule_mission(self, mission_id, scheduled_at, visible: bool = False) -> Mission:
        return self.missions.schedule(mission_id, scheduled_at, visible)

    def set_visibility(self, mission_id, visible: bool) -> bool:
        """Reveal (paid) or hide (free). False when the balance cannot cover a reveal."""
        if not visible:
            self.visibility.hide(mission_id)
            return True
        try:
            self.visibility.reveal(mission_id)
        except InsufficientBalance:
            return False
        return True

    def active_mission(self) -> Optional[Mission]:
        return self.missions.active()

    def list_missions(self, status=None, label=None) -> list:
        return self.missions.find(status=status, label=label)

    def get_missions_by_label(self, label) -> list:
        return self.missions.find(label=label)

    def get_completed_missions(self) -> list:
        return self.missions.find(status=MissionStatus.COMPLETED)

    def label_stats(self) -> list:
        with session_scope(self.ledger.session_factory) as db:
            return label_stats(db)

    def clear_all_missions(self) -> int:
        return self.missions.clear_all()

    # -- points --

    def credit_points(self, amount, description: str, mission_id=None) -> Transaction:
        return self.ledger.credit(amount, description, mission_id)

    def spend_points(self, amount, description: str) -> bool:
        try:
            self.ledger.debit(amount, description, kind=TransactionType.PURCHASE)
        except InsufficientBalance:
            return False
        return True

    def list_transactions(self) -> list:
        return self.ledger.list_transactions()

    def balance(self) -> Decimal:
        return self.ledger.balance_of()

    # -- generation --

    def check_generation_gate(self, now: datetime = None) -> GateStatus:
        return self.rest.check(now or utcnow(), self.next_allowed_at)

    def generate_mission(self, now: datetime = None, activate: bool = True) -> Mission:
        """
        Generate, store and (by default) activate the next mission.

        Raises:
            GenerationBlocked: still inside the rest period
            StateTransitionError: activation requested while a mission is active.
                If another mission became active while the generator was
                running, the new mission is kept as pending and can be
                activated later.
            GenerationFailed: the generator failed; nothing was stored
        """
        gate = self.check_generation_gate(now)
        if not gate.allowed:
            raise GenerationBlocked(gate)
        if activate:
            current = self.missions.active()
            if current is not None:
                raise StateTransitionError(f"Mission {current.id} is still active")

        mission = self.coordinator.generate(self.settings.preferences())
        if activate:
            try:
                mission = self.transition_mission(mission.id, MissionStatus.ACTIVE)
            except StateTransitionError as e:
                logger.warning("Generated mission %s kept as pending: %s", mission.id, e)
                raise StateTransitionError(f"Mission {mission.id} was generated but kept pending: {e}") from e
        return mission

    def update_settings(self, **changes) -> UserSettings:
        try:
            settings = dataclasses.replace(self.settings, **changes).validate()
        except TypeError as e:
            raise ValidationError(f"Unknown setting: {e}") from e
        self.settings = settings
        self.rest.rest_time_short = settings.rest_time_short
        self.rest.rest_time_long = settings.rest_time_long
        if isinstance(self.coordinator.generator, OpenRouterGenerator):
            self.coordinator.generator.model = settings.ai_model
        return settings

    def close(self):
        self.coordinator.shutdown()
