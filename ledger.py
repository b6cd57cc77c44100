"""
Assessment ledger: recalculation, manual adjustments and finalization.

Every write runs in one SQLAlchemy transaction and ends with a conditional
bump of projects.assessment_version that only succeeds while the project is
still DRAFT and nobody else has written since we read it. Losing that race
rolls the whole transaction back, so a recalculation can never interleave
with a finalize and a run is either fully applied or not at all.
"""
import logging
from datetime import datetime

from sqlalchemy import update

from errors import (
    NotFound, ProjectLocked, ValidationError, ConcurrentAssessmentWrite,
)
from models import db, Project, ContributionScore, StudentGroup, Student
from normalizer import normalize_signals, describe
from scoring import (
    AssessmentStatus, PressureStatus, contribution_score, flag_free_riders, evaluate_pressure,
    PRESSURE_MODE_COUNT, DEFAULT_AT_RISK_RATIO,
)
from signals import aggregate_project_signals, project_roster, group_roster, active_tasks
from weights import WeightConfig

MIN_SCORE = 0.0
MAX_SCORE = 10.0
MAX_REASON_LENGTH = 500

logger = logging.getLogger(__name__)


# --------------------------------------------------------------------
# Lookups
# --------------------------------------------------------------------
def get_project(project_id, for_update=False):
    query = db.session.query(Project).filter(Project.id == project_id)
    if for_update:
        query = query.with_for_update().populate_existing()
    project = query.one_or_none()
    if project is None:
        raise NotFound(f"Project {project_id} not found.")
    return project

def get_group(project, group_id):
    group = StudentGroup.query.filter_by(id=group_id, project_id=project.id).first()
    if group is None:
        raise NotFound(f"Group {group_id} not found in project {project.id}.")
    return group

def get_score(score_id):
    row = db.session.get(ContributionScore, score_id)
    if row is None:
        raise NotFound(f"Contribution score {score_id} not found.")
    return row

def project_scores(project_id):
    return (ContributionScore.query
            .filter_by(project_id=project_id)
            .order_by(ContributionScore.id.asc())
            .all())

def score_for_student(project_id, student_id):
    get_project(project_id)
    row = ContributionScore.query.filter_by(project_id=project_id, student_id=student_id).first()
    if row is None:
        raise NotFound(f"No contribution score for student {student_id} in project {project_id}.")
    return row

def config_in_force(project):
    """Frozen snapshot for finalized projects, live settings otherwise."""
    if project.is_finalized and project.finalized_weights:
        return WeightConfig.from_dict(project.finalized_weights)
    return WeightConfig.from_project(project)


# --------------------------------------------------------------------
# Transactional guard
# --------------------------------------------------------------------
def _claim(project_id, expected_version, **values):
    """Conditionally bump the assessment version; caller commits."""
    values["assessment_version"] = expected_version + 1
    result = db.session.execute(
        update(Project)
        .where(Project.id == project_id,
               Project.assessment_version == expected_version,
               Project.assessment_status == AssessmentStatus.DRAFT.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1

def _lost_claim(project_id):
    db.session.rollback()
    project = get_project(project_id)
    if project.is_finalized:
        return ProjectLocked(f"Assessment for project {project_id} is finalized.")
    return ConcurrentAssessmentWrite(
        f"Assessment for project {project_id} changed while this request was running; try again."
    )

def _open_project(project_id):
    project = get_project(project_id, for_update=True)
    if project.is_finalized:
        logger.warning("Rejected write on finalized project %s", project_id)
        raise ProjectLocked(f"Assessment for project {project_id} is finalized.")
    return project


# --------------------------------------------------------------------
# Recalculation
# --------------------------------------------------------------------
def recalculate(project_id, now=None, actor=None):
    """Recompute every non-final calculated score for the project.

    Manual overrides are left alone. Returns the project's score rows.
    """
    project = _open_project(project_id)
    config = WeightConfig.from_project(project).validate()
    version = project.assessment_version
    logger.info("Recalculating contribution scores for project %s (%s) by %s",
                project.id, project.name, getattr(actor, "email", "system"))
    try:
        signals = aggregate_project_signals(project, now=now)
        normalized = normalize_signals(signals)
        logger.info("project %s task raw %s, peer raw %s, code raw %s",
                    project.id,
                    describe(s.task_completion_raw for s in signals),
                    describe(s.peer_review_raw for s in signals),
                    describe(s.code_raw for s in signals))

        existing = {row.student_id: row for row in project_scores(project.id)}
        for sig in signals:
            components = normalized[sig.student_id]
            score = contribution_score(components, config)
            row = existing.get(sig.student_id)
            if row is None:
                row = ContributionScore(project_id=project.id, student_id=sig.student_id)
                db.session.add(row)
            elif row.is_final:
                continue
            row.task_completion_score = components.task_completion
            row.peer_review_score = components.peer_review
            row.code_contribution_score = components.code_contribution
            row.late_task_count = components.late_task_count
            row.total_additions = sig.total_additions
            row.total_deletions = sig.total_deletions
            row.calculated_score = score
            logger.debug("student %s: task=%.2f peer=%.2f code=%.2f late=%d -> %.2f",
                         sig.student_id, components.task_completion, components.peer_review,
                         components.code_contribution, components.late_task_count, score)

        if not _claim(project.id, version):
            raise _lost_claim(project.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Recalculated %d contribution score(s) for project %s", len(signals), project_id)
    return project_scores(project_id)


# --------------------------------------------------------------------
# Adjustments
# --------------------------------------------------------------------
def validate_adjustment(new_score, reason):
    problems = []
    value = None
    if isinstance(new_score, bool):
        problems.append("adjustedScore must be a number.")
    else:
        try:
            value = float(new_score)
        except (TypeError, ValueError):
            problems.append("adjustedScore must be a number.")
    if value is not None and not MIN_SCORE <= value <= MAX_SCORE:
        problems.append(f"adjustedScore must be between {MIN_SCORE:g} and {MAX_SCORE:g}.")
    if reason is not None and not isinstance(reason, str):
        problems.append("adjustmentReason must be text.")
        reason = ""
    reason = (reason or "").strip()
    if not reason:
        problems.append("adjustmentReason is required.")
    elif len(reason) > MAX_REASON_LENGTH:
        problems.append(f"adjustmentReason cannot exceed {MAX_REASON_LENGTH} characters.")
    if problems:
        raise ValidationError(problems[0], details=problems)
    return value, reason

def adjust_score(score_id, new_score, reason, actor=None):
    value, reason = validate_adjustment(new_score, reason)
    row = get_score(score_id)
    project = _open_project(row.project_id)
    version = project.assessment_version
    previous = row.adjusted_score
    try:
        row.adjusted_score = value
        row.adjustment_reason = reason
        row.updated_at = datetime.now()
        if not _claim(project.id, version):
            raise _lost_claim(project.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Score adjustment: student %s in project %s: %s -> %.2f (calculated %.2f) by %s, reason: %s",
                row.student_id, project.id,
                "none" if previous is None else f"{previous:.2f}",
                value, row.calculated_score, getattr(actor, "email", "system"), reason)
    return row

def clear_adjustment(score_id, actor=None):
    row = get_score(score_id)
    project = _open_project(row.project_id)
    version = project.assessment_version
    try:
        row.adjusted_score = None
        row.adjustment_reason = None
        row.updated_at = datetime.now()
        if not _claim(project.id, version):
            raise _lost_claim(project.id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Cleared adjustment on score %s (project %s) by %s",
                score_id, project.id, getattr(actor, "email", "system"))
    return row


# --------------------------------------------------------------------
# Finalization
# --------------------------------------------------------------------
def finalize(project_id, actor=None):
    """Lock the project's assessment. Repeating it is a no-op success."""
    project = get_project(project_id, for_update=True)
    if project.is_finalized:
        logger.info("Project %s already finalized; nothing to do", project_id)
        db.session.rollback()
        return project_scores(project_id)
    if not project_scores(project_id):
        raise ValidationError("No contribution scores to finalize; calculate scores first.")

    version = project.assessment_version
    snapshot = WeightConfig.from_project(project).to_dict()
    try:
        claimed = _claim(
            project.id, version,
            assessment_status=AssessmentStatus.FINALIZED.value,
            finalized_at=datetime.now(),
            finalized_by_user_id=getattr(actor, "id", None),
            finalized_weights=snapshot,
        )
        if not claimed:
            err = _lost_claim(project.id)
            if isinstance(err, ProjectLocked):
                # a concurrent finalize won; same end state
                return project_scores(project_id)
            raise err
        db.session.execute(
            update(ContributionScore)
            .where(ContributionScore.project_id == project.id)
            .values(is_final=True)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    db.session.expire_all()
    logger.info("Finalized assessment for project %s by %s", project_id, getattr(actor, "email", "system"))
    return project_scores(project_id)


# --------------------------------------------------------------------
# Read views
# --------------------------------------------------------------------
def _score_rows_with_flags(project, rows, peer_key_by_student):
    config = config_in_force(project)
    effective = {row.student_id: row.effective_score() for row in rows}
    flags = flag_free_riders(effective, peer_key_by_student, config.freerider_threshold)
    out = []
    for row in rows:
        flagged, peer_avg = flags[row.student_id]
        item = row.to_dict()
        item["isFreeRider"] = flagged
        item["peerAverageScore"] = round(peer_avg, 4)
        out.append(item)
    return out

def roster_scores(project, roster):
    """Rows for students still on the roster.

    Rows of students who left every group stay stored but are not listed.
    """
    return [row for row in project_scores(project.id) if row.student_id in roster]

def project_assessment(project_id):
    project = get_project(project_id)
    roster = {entry.student_id: entry.group_id for entry in project_roster(project)}
    rows = roster_scores(project, roster)
    groups = {g.id: g for g in StudentGroup.query.filter_by(project_id=project.id).all()}
    students = _score_rows_with_flags(project, rows, roster)
    for item in students:
        group = groups.get(roster.get(item["userId"]))
        item["groupId"] = group.id if group else None
        item["groupName"] = group.name if group else None
    config = config_in_force(project)
    return {
        "projectId": project.id,
        "projectName": project.name,
        "assessmentStatus": project.status.value,
        "finalizedAt": project.finalized_at.isoformat() if project.finalized_at else None,
        "totalStudents": len(students),
        "totalGroups": len(groups),
        "averageScore": round(sum(s["effectiveScore"] for s in students) / len(students), 4) if students else 0.0,
        "freeRiderCount": sum(1 for s in students if s["isFreeRider"]),
        "weightConfig": config.to_dict(),
        "students": students,
    }

def scored_rows(project_id):
    """Project score rows annotated with free-rider flags (group peer sets)."""
    project = get_project(project_id)
    roster = {entry.student_id: entry.group_id for entry in project_roster(project)}
    return _score_rows_with_flags(project, roster_scores(project, roster), roster)

def group_scores(group_id):
    group = db.session.get(StudentGroup, group_id)
    if group is None:
        raise NotFound(f"Group {group_id} not found.")
    project = group.project
    member_ids = group.student_ids()
    rows = (ContributionScore.query
            .filter(ContributionScore.project_id == project.id,
                    ContributionScore.student_id.in_(member_ids))
            .order_by(ContributionScore.id.asc())
            .all()) if member_ids else []
    return group, _score_rows_with_flags(project, rows, {sid: group.id for sid in member_ids})


# --------------------------------------------------------------------
# Pressure (always live)
# --------------------------------------------------------------------
def _pressure_for(project, roster, mode, at_risk_ratio, today):
    student_ids = [r.student_id for r in roster]
    tasks = active_tasks(project.id, student_ids)
    names = {s.id: s.name for s in Student.query.filter(Student.id.in_(student_ids)).all()} if roster else {}
    today = today or datetime.now().date()
    return [
        evaluate_pressure(
            r.student_id, r.group_id, tasks.get(r.student_id, []),
            project.pressure_threshold, mode=mode, at_risk_ratio=at_risk_ratio,
            today=today, student_name=names.get(r.student_id),
        )
        for r in roster
    ]

def group_pressure(project_id, group_id, mode=PRESSURE_MODE_COUNT,
                   at_risk_ratio=DEFAULT_AT_RISK_RATIO, today=None):
    project = get_project(project_id)
    group = get_group(project, group_id)
    return _pressure_for(project, group_roster(group), mode, at_risk_ratio, today)

def project_pressure(project_id, mode=PRESSURE_MODE_COUNT,
                     at_risk_ratio=DEFAULT_AT_RISK_RATIO, today=None):
    """One entry per roster student, reported against their first group."""
    project = get_project(project_id)
    results = _pressure_for(project, project_roster(project), mode, at_risk_ratio, today)
    overloaded = [r.student_id for r in results if r.status is PressureStatus.OVERLOADED]
    if overloaded:
        logger.warning("Project %s has %d overloaded student(s): %s", project.id, len(overloaded), overloaded)
    return results

def student_pressure(project_id, student_id, mode=PRESSURE_MODE_COUNT,
                     at_risk_ratio=DEFAULT_AT_RISK_RATIO, today=None):
    project = get_project(project_id)
    entry = next((r for r in project_roster(project) if r.student_id == student_id), None)
    if entry is None:
        raise NotFound(f"Student {student_id} is not in project {project_id}.")
    [result] = _pressure_for(project, [entry], mode, at_risk_ratio, today)
    return result


# --------------------------------------------------------------------
# Weight configuration
# --------------------------------------------------------------------
def update_weight_config(project_id, config, actor=None):
    config.validate()
    project = get_project(project_id)
    before = WeightConfig.from_project(project)
    config.apply_to(project)
    db.session.commit()
    logger.info("Weight configuration for project %s changed by %s: %s -> %s",
                project_id, getattr(actor, "email", "system"), before.to_dict(), config.to_dict())
    return project
