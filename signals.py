"""
Raw signal aggregation.

Read-only pass over tasks, commits and peer reviews that produces the full
signal set for a project's roster. Nothing is written here; callers get either
every student's signals or an exception.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from errors import SignalAggregationError
from models import db, Task, CommitRecord, PeerReview, StudentGroup

WEIGHT_ADDITIONS = 1.0
WEIGHT_DELETIONS = 1.25
MAX_COMMIT_LINES = 1000  # per-commit soft cap on additions/deletions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RosterEntry:
    student_id: int
    group_id: int


@dataclass(frozen=True)
class RawSignals:
    student_id: int
    group_id: int
    task_completion_raw: float = 0.0
    peer_review_raw: float = 0.0
    total_additions: int = 0
    total_deletions: int = 0
    late_task_count: int = 0

    @property
    def code_raw(self):
        return code_contribution(self.total_additions, self.total_deletions)


def code_contribution(additions, deletions):
    return (additions or 0) * WEIGHT_ADDITIONS + (deletions or 0) * WEIGHT_DELETIONS


def capped(lines):
    return min(int(lines or 0), MAX_COMMIT_LINES)


def end_of_day(day):
    return datetime.combine(day + timedelta(days=1), time.min)


def is_late(task, now):
    if task.deadline is None:
        return False
    due = end_of_day(task.deadline)
    if task.is_completed:
        return task.completed_at is not None and task.completed_at >= due
    return now >= due


def project_roster(project):
    """Every student in the project's groups, first group wins for duplicates."""
    seen = {}
    groups = StudentGroup.query.filter_by(project_id=project.id).order_by(StudentGroup.id.asc()).all()
    for group in groups:
        for student_id in group.student_ids():
            if student_id not in seen:
                seen[student_id] = RosterEntry(student_id=student_id, group_id=group.id)
    return list(seen.values())


def group_roster(group):
    return [RosterEntry(student_id=sid, group_id=group.id) for sid in group.student_ids()]


def _tasks_by_assignee(project_id, student_ids):
    if not student_ids:
        return {}
    tasks = (Task.query
             .filter(Task.project_id == project_id, Task.assignee_student_id.in_(student_ids))
             .order_by(Task.id.asc())
             .all())
    out = {}
    for task in tasks:
        out.setdefault(task.assignee_student_id, []).append(task)
    return out


def _peer_averages(project_id, student_ids):
    if not student_ids:
        return {}
    rating = (PeerReview.completion_score + PeerReview.cooperation_score) / 2.0
    rows = (db.session.query(PeerReview.reviewee_student_id, func.avg(rating))
            .filter(PeerReview.project_id == project_id,
                    PeerReview.reviewee_student_id.in_(student_ids))
            .group_by(PeerReview.reviewee_student_id)
            .all())
    return {sid: float(avg) for sid, avg in rows if avg is not None}


def _code_totals(task_ids):
    """(additions, deletions) per task id over valid commits, each commit capped."""
    if not task_ids:
        return {}
    commits = CommitRecord.query.filter(CommitRecord.task_id.in_(task_ids), CommitRecord.valid.is_(True)).all()
    totals = {}
    for c in commits:
        adds, dels = totals.get(c.task_id, (0, 0))
        totals[c.task_id] = (adds + capped(c.additions), dels + capped(c.deletions))
    return totals


def aggregate(project, roster, now=None):
    """RawSignals for every roster entry, in roster order."""
    now = now or datetime.now()
    student_ids = [r.student_id for r in roster]
    try:
        tasks_by_student = _tasks_by_assignee(project.id, student_ids)
        peer_avg = _peer_averages(project.id, student_ids)
        all_task_ids = [t.id for tasks in tasks_by_student.values() for t in tasks]
        code_by_task = _code_totals(all_task_ids)
    except SQLAlchemyError as exc:
        logger.error("Signal aggregation failed for project %s: %s", project.id, exc)
        raise SignalAggregationError(f"Could not gather contribution signals for project {project.id}.") from exc

    signals = []
    for entry in roster:
        tasks = tasks_by_student.get(entry.student_id, [])
        additions = sum(code_by_task.get(t.id, (0, 0))[0] for t in tasks)
        deletions = sum(code_by_task.get(t.id, (0, 0))[1] for t in tasks)
        sig = RawSignals(
            student_id=entry.student_id,
            group_id=entry.group_id,
            task_completion_raw=float(sum(t.difficulty_weight for t in tasks if t.is_completed)),
            peer_review_raw=peer_avg.get(entry.student_id, 0.0),
            total_additions=additions,
            total_deletions=deletions,
            late_task_count=sum(1 for t in tasks if is_late(t, now)),
        )
        logger.debug("raw signals %s", sig)
        signals.append(sig)
    return signals


def aggregate_project_signals(project, now=None):
    return aggregate(project, project_roster(project), now=now)


def active_tasks(project_id, student_ids):
    """student_id -> [(difficulty_weight, deadline)] for tasks not yet completed."""
    try:
        by_student = _tasks_by_assignee(project_id, list(student_ids))
    except SQLAlchemyError as exc:
        raise SignalAggregationError(f"Could not load tasks for project {project_id}.") from exc
    return {
        sid: [(t.difficulty_weight, t.deadline) for t in tasks if not t.is_completed]
        for sid, tasks in by_student.items()
    }
