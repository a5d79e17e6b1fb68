import logging

from ..config import REVEAL_COST
from ..db import session_scope
from ..models import Mission, TransactionType
from .ledger import Ledger, as_amount
from .missions import MissionRepository

logger = logging.getLogger(__name__)


class VisibilityGate:
    """Pay to reveal a hidden mission. Hiding is free."""

    def __init__(self, ledger: Ledger, repository: MissionRepository, cost=REVEAL_COST):
        self.ledger = ledger
        self.repository = repository
        self.cost = as_amount(cost)

    def reveal(self, mission_id) -> Mission:
        """
        Spend ``cost`` points and mark the mission visible, in one database transaction.

        Already-visible missions are returned untouched. InsufficientBalance
        propagates with neither the balance nor the mission changed.
        """
        with self.repository.lock_for(mission_id), self.ledger.lock, \
                session_scope(self.ledger.session_factory) as db:
            mission = self.repository._get(db, mission_id)
            if mission.visible:
                return mission
            self.ledger._debit(
                db, self.cost, f"Unlock mission: {mission.title}",
                mission_id=mission.id, kind=TransactionType.PURCHASE,
            )
            self.repository._set_visible(db, mission, True)
            logger.info("Mission %s revealed for %s points", mission_id, self.cost)
            return mission

    def hide(self, mission_id) -> Mission:
        return self.repository.set_visible(mission_id, False)
