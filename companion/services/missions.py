import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db import SessionLocal, session_scope
from ..errors import MissionNotFound, StateTransitionError, ValidationError
from ..models import (
    Label, Mission, MissionFeedback, MissionSource, MissionStatus, Transaction,
    SCHEDULABLE_STATUSES, TRANSITIONS, utcnow,
)
from .ledger import as_amount

logger = logging.getLogger(__name__)

REQUIRED_DRAFT_FIELDS = ("label", "title", "duration_minutes", "source")


def parse_status(value) -> MissionStatus:
    try:
        return MissionStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown mission status {value!r}")


def parse_datetime(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid datetime {value!r}")
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    raise ValidationError(f"Invalid datetime {value!r}")


def validate_draft(draft: dict) -> dict:
    """
    Check a mission draft and turn it into column values.

    Returns:
        dict ready for ``Mission(**values)``

    Raises:
        ValidationError listing every problem found
    """
    if not isinstance(draft, dict):
        raise ValidationError("Mission draft must be a mapping")

    errors = []
    for field in REQUIRED_DRAFT_FIELDS:
        if draft.get(field) in (None, ""):
            errors.append(f"missing {field}")

    values = {}
    label = draft.get("label")
    if label not in (None, ""):
        try:
            values["label"] = Label(label).value
        except ValueError:
            errors.append(f"invalid label {label!r}")

    title = draft.get("title")
    if title not in (None, ""):
        if not isinstance(title, str) or not title.strip():
            errors.append("title must be a non-empty string")
        else:
            values["title"] = title.strip()

    description = draft.get("description")
    if description is not None and not isinstance(description, str):
        errors.append("description must be a string")
    values["description"] = description or None

    duration = draft.get("duration_minutes")
    if duration is not None:
        if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
            errors.append(f"duration_minutes must be a positive integer, got {duration!r}")
        else:
            values["duration_minutes"] = duration

    source = draft.get("source")
    if source not in (None, ""):
        try:
            values["source"] = MissionSource(source).value
        except ValueError:
            errors.append(f"invalid source {source!r}")

    try:
        values["scheduled_at"] = parse_datetime(draft.get("scheduled_at"))
    except ValidationError as e:
        errors.append(str(e))

    values["visible"] = bool(draft.get("visible", False))
    values["essential"] = bool(draft.get("essential", False))
    for field in ("reward_amount", "penalty_amount"):
        raw = draft.get(field)
        if raw is None:
            values[field] = None
            continue
        try:
            values[field] = as_amount(raw)
        except ValidationError as e:
            errors.append(f"{field}: {e}")

    if errors:
        raise ValidationError("Invalid mission draft: " + "; ".join(errors))
    return values


class MissionRepository:
    """
    Mission and feedback records, and the only writer of ``Mission.status``.

    Writes to one mission id are serialised by a per-id lock and applied with
    a conditional UPDATE on the status read, so two racing transitions cannot
    both succeed. Different ids do not block each other. A lock entry lives
    only while someone holds or waits on it.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal
        self._locks = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def lock_for(self, mission_id):
        with self._locks_guard:
            entry = self._locks.get(mission_id)
            if entry is None:
                entry = self._locks[mission_id] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[mission_id]

    def _get(self, db: Session, mission_id) -> Mission:
        mission = db.query(Mission).filter(Mission.id == mission_id).first()
        if mission is None:
            raise MissionNotFound(mission_id)
        return mission

    def _set_visible(self, db: Session, mission: Mission, visible: bool) -> Mission:
        mission.visible = bool(visible)
        db.flush()
        return mission

    def create(self, draft: dict, status: MissionStatus = MissionStatus.PENDING) -> Mission:
        status = parse_status(status)
        if status not in SCHEDULABLE_STATUSES:
            raise StateTransitionError(f"A new mission starts as pending or scheduled, not {status.value}")
        values = validate_draft(draft)
        if status == MissionStatus.SCHEDULED and values["scheduled_at"] is None:
            raise ValidationError("A scheduled mission needs scheduled_at")
        with session_scope(self.session_factory) as db:
            mission = Mission(status=status.value, **values)
            db.add(mission)
            db.flush()
            logger.info("Created mission %s (%s, %s)", mission.id, mission.label, status.value)
            return mission

    def get(self, mission_id) -> Mission:
        with session_scope(self.session_factory) as db:
            return self._get(db, mission_id)

    def find(self, status=None, label=None) -> list:
        with session_scope(self.session_factory) as db:
            q = db.query(Mission)
            if status is not None:
                q = q.filter(Mission.status == parse_status(status).value)
            if label is not None:
                try:
                    q = q.filter(Mission.label == Label(label).value)
                except ValueError:
                    raise ValidationError(f"invalid label {label!r}")
            return q.order_by(Mission.created_at.asc(), Mission.id.asc()).all()

    def recent(self, limit: int = 5) -> list:
        """Last ``limit`` missions, oldest first."""
        with session_scope(self.session_factory) as db:
            rows = db.query(Mission).order_by(Mission.created_at.desc(), Mission.id.desc()).limit(limit).all()
            return list(reversed(rows))

    def active(self) -> Optional[Mission]:
        with session_scope(self.session_factory) as db:
            return db.query(Mission).filter(Mission.status == MissionStatus.ACTIVE.value).first()

    def transition(self, mission_id, target, completed_at: datetime = None) -> Mission:
        """
        Move a mission along one edge of TRANSITIONS.

        Status and completed_at change together or not at all. Rewards and
        penalties are not applied here; see Ledger.settle.

        Raises:
            StateTransitionError: the edge is not allowed, another mission is
                active, or the record changed underneath us
        """
        target = parse_status(target)
        with self.lock_for(mission_id), session_scope(self.session_factory) as db:
            mission = self._get(db, mission_id)
            current = parse_status(mission.status)
            if current.is_terminal:
                raise StateTransitionError(f"Mission {mission_id} is already {current.value}")
            if target not in TRANSITIONS[current]:
                raise StateTransitionError(
                    f"Mission {mission_id} cannot go from {current.value} to {target.value}"
                )

            if target == MissionStatus.ACTIVE:
                other = db.query(Mission).filter(
                    Mission.status == MissionStatus.ACTIVE.value,
                    Mission.id != mission_id,
                ).first()
                if other is not None:
                    raise StateTransitionError(f"Mission {other.id} is already active")

            values = {Mission.status: target.value}
            if target == MissionStatus.COMPLETED:
                values[Mission.completed_at] = parse_datetime(completed_at) or utcnow()

            try:
                updated = db.query(Mission).filter(
                    Mission.id == mission_id,
                    Mission.status == current.value,
                ).update(values, synchronize_session=False)
            except IntegrityError:
                raise StateTransitionError("Another mission became active concurrently")
            if updated != 1:
                raise StateTransitionError(f"Mission {mission_id} changed concurrently")

            db.refresh(mission)
            logger.info("Mission %s: %s -> %s", mission_id, current.value, target.value)
            return mission

    def schedule(self, mission_id, scheduled_at, visible: bool = False) -> Mission:
        when = parse_datetime(scheduled_at)
        if when is None:
            raise ValidationError("scheduled_at is required")
        with self.lock_for(mission_id), session_scope(self.session_factory) as db:
            mission = self._get(db, mission_id)
            current = parse_status(mission.status)
            if current not in SCHEDULABLE_STATUSES:
                raise StateTransitionError(f"Mission {mission_id} is {current.value} and cannot be scheduled")
            mission.status = MissionStatus.SCHEDULED.value
            mission.scheduled_at = when
            mission.visible = bool(visible)
            db.flush()
            logger.info("Mission %s scheduled for %s", mission_id, when.isoformat())
            return mission

    def set_visible(self, mission_id, visible: bool) -> Mission:
        with self.lock_for(mission_id), session_scope(self.session_factory) as db:
            return self._set_visible(db, self._get(db, mission_id), visible)

    def record_feedback(self, mission_id, rating: int, comment: str = None) -> MissionFeedback:
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError(f"Rating must be an integer from 1 to 5, got {rating!r}")
        with self.lock_for(mission_id), session_scope(self.session_factory) as db:
            mission = self._get(db, mission_id)
            if mission.status != MissionStatus.COMPLETED.value:
                raise ValidationError(f"Feedback is only taken on completed missions (mission {mission_id} is {mission.status})")
            if db.query(MissionFeedback).filter(MissionFeedback.mission_id == mission_id).first():
                raise ValidationError(f"Feedback already recorded for mission {mission_id}")
            feedback = MissionFeedback(mission_id=mission_id, rating=rating, comment=comment or None)
            db.add(feedback)
            try:
                db.flush()
            except IntegrityError:
                raise ValidationError(f"Feedback already recorded for mission {mission_id}")
            return feedback

    def get_feedback(self, mission_id) -> Optional[MissionFeedback]:
        with session_scope(self.session_factory) as db:
            return db.query(MissionFeedback).filter(MissionFeedback.mission_id == mission_id).first()

    def clear_all(self) -> int:
        """
        Delete every mission and its feedback.

        Transactions are kept with their mission_id nulled, so the balance is
        unchanged and no later mission can be mistaken for an old one.
        """
        with session_scope(self.session_factory) as db:
            db.query(Transaction).filter(Transaction.mission_id.isnot(None)).update(
                {Transaction.mission_id: None}, synchronize_session=False)
            db.query(MissionFeedback).delete(synchronize_session=False)
            count = db.query(Mission).delete(synchronize_session=False)
            logger.info("Cleared %d missions", count)
            return count
