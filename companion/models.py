import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text, Numeric, Index, text
from .db import Base


def utcnow():
    return datetime.now(timezone.utc)


class Label(str, enum.Enum):
    LECTURE = "lecture"
    MOUVEMENT = "mouvement"
    FOCUS = "focus"
    PAUSE_MENTALE = "pause_mentale"
    CREATIVITE = "créativité"
    ROUTINE = "routine"
    SOCIAL = "social"
    ADMIN = "admin"


class MissionStatus(str, enum.Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"
    REFUSED = "refused"
    FAILED = "failed"

    @property
    def is_terminal(self):
        return self in TERMINAL_STATUSES


class MissionSource(str, enum.Enum):
    AUTO = "auto"
    CUSTOM = "custom"


class TransactionType(str, enum.Enum):
    REWARD = "reward"
    PENALTY = "penalty"
    PURCHASE = "purchase"


TERMINAL_STATUSES = frozenset({MissionStatus.COMPLETED, MissionStatus.REFUSED, MissionStatus.FAILED})

# The only status edges a mission may take. FAILED has no way in.
TRANSITIONS = {
    MissionStatus.PENDING: frozenset({MissionStatus.ACTIVE, MissionStatus.REFUSED}),
    MissionStatus.SCHEDULED: frozenset({MissionStatus.ACTIVE, MissionStatus.REFUSED}),
    MissionStatus.ACTIVE: frozenset({MissionStatus.COMPLETED}),
    MissionStatus.COMPLETED: frozenset(),
    MissionStatus.REFUSED: frozenset(),
    MissionStatus.FAILED: frozenset(),
}

# Statuses from which schedule_mission may (re)schedule a mission.
SCHEDULABLE_STATUSES = frozenset({MissionStatus.PENDING, MissionStatus.SCHEDULED})


class Mission(Base):
    __tablename__ = "missions"
    id = Column(Integer, primary_key=True)
    label = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    duration_minutes = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=MissionStatus.PENDING.value, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    source = Column(String, nullable=False, default=MissionSource.AUTO.value)
    visible = Column(Boolean, nullable=False, default=False)
    essential = Column(Boolean, nullable=False, default=False)
    reward_amount = Column(Numeric(12, 2), nullable=True)
    penalty_amount = Column(Numeric(12, 2), nullable=True)

    __table_args__ = (
        # Storage-level backstop for the single active mission rule.
        Index(
            "uq_missions_single_active",
            "status",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        # Ids are never handed out twice, even after clear_all.
        {"sqlite_autoincrement": True},
    )

    def __repr__(self):
        return f"<Mission {self.id} {self.label} {self.status!s} {self.title!r}>"


class MissionFeedback(Base):
    __tablename__ = "mission_feedback"
    id = Column(Integer, primary_key=True)
    mission_id = Column(Integer, ForeignKey("missions.id", ondelete="CASCADE"), unique=True, nullable=False)
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Transaction(Base):
    __tablename__ = "transactions"
    id = Column(Integer, primary_key=True)
    amount = Column(Numeric(12, 2), nullable=False)
    description = Column(String, nullable=False)
    mission_id = Column(Integer, ForeignKey("missions.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    type = Column(String, nullable=False)
    # True only on the reward or penalty written by Ledger.settle.
    settlement = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index(
            "uq_transactions_settlement",
            "mission_id",
            "type",
            unique=True,
            sqlite_where=text("settlement = 1"),
            postgresql_where=text("settlement"),
        ),
    )


class Wallet(Base):
    """Materialised balance. Only the ledger writes it, alongside the transaction it reflects."""
    __tablename__ = "wallet"
    id = Column(Integer, primary_key=True)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
