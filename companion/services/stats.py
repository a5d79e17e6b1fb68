from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import Label, Mission, MissionFeedback, MissionStatus


def label_stats(db: Session) -> list:
    """
    Per-label aggregates for every label, including ones never used.

    Returns:
        List of dicts with {label, totalCount, completedCount, completionRate,
        averageRating, totalDuration}
    """
    counts = dict(
        db.query(Mission.label, func.count(Mission.id)).group_by(Mission.label).all()
    )
    durations = dict(
        db.query(Mission.label, func.coalesce(func.sum(Mission.duration_minutes), 0))
        .group_by(Mission.label).all()
    )
    completed = dict(
        db.query(Mission.label, func.count(Mission.id))
        .filter(Mission.status == MissionStatus.COMPLETED.value)
        .group_by(Mission.label).all()
    )
    ratings = dict(
        db.query(Mission.label, func.avg(MissionFeedback.rating))
        .join(MissionFeedback, MissionFeedback.mission_id == Mission.id)
        .filter(Mission.status == MissionStatus.COMPLETED.value)
        .group_by(Mission.label).all()
    )

    stats = []
    for label in Label:
        total = int(counts.get(label.value, 0))
        done = int(completed.get(label.value, 0))
        avg = ratings.get(label.value)
        stats.append({
            "label": label.value,
            "totalCount": total,
            "completedCount": done,
            "completionRate": done / total if total else 0,
            "averageRating": round(float(avg), 2) if avg is not None else 0,
            "totalDuration": int(durations.get(label.value, 0)),
        })
    return stats


def mission_summary(mission: Mission, feedback: MissionFeedback = None) -> dict:
    """Compact view of a mission as sent to the content generator."""
    created = mission.created_at.isoformat() if mission.created_at else None
    return {
        "label": mission.label,
        "title": mission.title,
        "duration_minutes": mission.duration_minutes,
        "status": mission.status,
        "created_at": created,
        "feedback": {"rating": feedback.rating, "comment": feedback.comment} if feedback else None,
    }


def recent_with_feedback(db: Session, limit: int = 5) -> list:
    """Last ``limit`` missions, oldest first, summarised with their feedback."""
    rows = (
        db.query(Mission, MissionFeedback)
        .outerjoin(MissionFeedback, MissionFeedback.mission_id == Mission.id)
        .order_by(Mission.created_at.desc(), Mission.id.desc())
        .limit(limit)
        .all()
    )
    return [mission_summary(m, f) for m, f in reversed(rows)]
