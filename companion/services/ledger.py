import logging
import threading
from decimal import Decimal, InvalidOperation
from typing import Optional

from sqlalchemy.orm import Session

from ..config import INITIAL_POINTS
from ..db import SessionLocal, session_scope
from ..errors import InsufficientBalance, ValidationError
from ..models import Mission, MissionStatus, Transaction, TransactionType, Wallet

logger = logging.getLogger(__name__)

WALLET_ID = 1
_CENTS = Decimal("0.01")


def as_amount(value) -> Decimal:
    """Coerce a non-negative points amount to a 2-place Decimal."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid amount {value!r}")
    try:
        amount = Decimal(str(value)).quantize(_CENTS)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount {value!r}")
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"Amount must be a non-negative number, got {value!r}")
    return amount


class Ledger:
    """
    Point balance plus its append-only transaction log.

    Each write appends a Transaction and moves the Wallet balance in the same
    database transaction, under ``self.lock``. The purchase check and the
    debit it guards therefore run as one unit, and ``balance_of()`` always
    equals the sum of the log.
    """

    def __init__(self, session_factory=None, initial_points=INITIAL_POINTS):
        self.session_factory = session_factory or SessionLocal
        self.initial_points = as_amount(initial_points)
        self.lock = threading.RLock()

    # -- helpers that work inside a caller's session, lock already held --

    def _wallet(self, db: Session) -> Wallet:
        wallet = db.query(Wallet).filter(Wallet.id == WALLET_ID).with_for_update().first()
        if wallet is None:
            wallet = Wallet(id=WALLET_ID, balance=Decimal("0.00"))
            db.add(wallet)
            if self.initial_points:
                db.add(Transaction(
                    amount=self.initial_points,
                    description="Initial points",
                    type=TransactionType.REWARD.value,
                ))
                wallet.balance = self.initial_points
            db.flush()
            logger.info("Opened wallet with %s points", wallet.balance)
        return wallet

    def _append(self, db: Session, amount: Decimal, description: str,
                mission_id: Optional[int], kind: TransactionType, settlement: bool = False) -> Transaction:
        wallet = self._wallet(db)
        tx = Transaction(amount=amount, description=description, mission_id=mission_id,
                         type=kind.value, settlement=settlement)
        db.add(tx)
        wallet.balance = Decimal(wallet.balance) + amount
        db.flush()
        logger.info("Ledger %s %s (%s), balance now %s", kind.value, amount, description, wallet.balance)
        return tx

    def _debit(self, db: Session, amount, description: str, mission_id: Optional[int] = None,
               kind: TransactionType = TransactionType.PURCHASE) -> Transaction:
        amount = as_amount(amount)
        kind = TransactionType(kind)
        if kind == TransactionType.REWARD:
            raise ValidationError("A debit must be a penalty or a purchase")
        if kind == TransactionType.PURCHASE:
            balance = Decimal(self._wallet(db).balance)
            if balance < amount:
                logger.warning("Purchase of %s refused, balance is %s", amount, balance)
                raise InsufficientBalance(amount, balance)
        return self._append(db, -amount, description, mission_id, kind)

    # -- public operations --

    def open(self) -> Decimal:
        with self.lock, session_scope(self.session_factory) as db:
            return Decimal(self._wallet(db).balance)

    def credit(self, amount, description: str, mission_id: Optional[int] = None) -> Transaction:
        amount = as_amount(amount)
        with self.lock, session_scope(self.session_factory) as db:
            return self._append(db, amount, description, mission_id, TransactionType.REWARD)

    def debit(self, amount, description: str, mission_id: Optional[int] = None,
              kind: TransactionType = TransactionType.PURCHASE) -> Transaction:
        """Penalties always go through; purchases raise InsufficientBalance and write nothing."""
        with self.lock, session_scope(self.session_factory) as db:
            return self._debit(db, amount, description, mission_id, kind)

    def balance_of(self) -> Decimal:
        with self.lock, session_scope(self.session_factory) as db:
            return Decimal(self._wallet(db).balance)

    def list_transactions(self) -> list:
        with session_scope(self.session_factory) as db:
            return db.query(Transaction).order_by(Transaction.created_at.desc(), Transaction.id.desc()).all()

    def settle(self, mission: Mission, status: MissionStatus) -> Optional[Transaction]:
        """
        Apply the reward or penalty owed for a mission having reached ``status``.

        At most one settlement reward and one settlement penalty are ever
        written per mission, so observing the same transition twice is
        harmless. Manual credits or purchases tagged with the mission id do
        not count as its settlement.

        Returns:
            The transaction written, or None if nothing was owed or it was already paid
        """
        status = MissionStatus(status)
        if status == MissionStatus.COMPLETED and mission.reward_amount is not None:
            kind = TransactionType.REWARD
            amount = as_amount(mission.reward_amount)
            description = f"Reward for mission: {mission.title}"
        elif status == MissionStatus.REFUSED and mission.essential and mission.penalty_amount is not None:
            kind = TransactionType.PENALTY
            amount = as_amount(mission.penalty_amount)
            description = f"Penalty for refusing essential mission: {mission.title}"
        else:
            return None

        with self.lock, session_scope(self.session_factory) as db:
            already = db.query(Transaction).filter(
                Transaction.mission_id == mission.id,
                Transaction.type == kind.value,
                Transaction.settlement.is_(True),
            ).first()
            if already:
                logger.info("Mission %s already settled (%s), skipping", mission.id, kind.value)
                return None
            signed = amount if kind == TransactionType.REWARD else -amount
            return self._append(db, signed, description, mission.id, kind, settlement=True)
