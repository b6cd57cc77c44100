from datetime import date

import pytest
from sqlalchemy import create_engine, update

import ledger
from errors import (
    ConcurrentAssessmentWrite, InvalidConfiguration, NotFound, ProjectLocked,
    SignalAggregationError, ValidationError,
)
from models import db, ContributionScore, Project, StudentGroupMembership
from weights import WeightConfig


def _scores(project):
    db.session.expire_all()
    return {row.student_id: row for row in ledger.project_scores(project.id)}


def test_recalculate_creates_bounded_scores(build):
    project, _, students = build.team(3)
    rows = ledger.recalculate(project.id)
    assert len(rows) == 3
    for row in rows:
        for value in (row.task_completion_score, row.peer_review_score,
                      row.code_contribution_score, row.calculated_score):
            assert 0.0 <= value <= 10.0
    by_student = _scores(project)
    assert by_student[students[0].id].calculated_score == pytest.approx(10.0)


def test_invalid_weights_stop_recalculation(build):
    project, _, _ = build.team(2, weight_w1=0.6)
    with pytest.raises(InvalidConfiguration):
        ledger.recalculate(project.id)
    assert ContributionScore.query.count() == 0


def test_override_survives_recalculation(build):
    project, group, students = build.team(3)
    ledger.recalculate(project.id)
    slacker = students[-1]
    row = _scores(project)[slacker.id]
    ledger.adjust_score(row.id, 6.5, "Did the deployment work off-platform")
    before = row.calculated_score

    for _ in range(6):
        t = build.task(group, slacker, difficulty="HARD")
        build.commit(t, additions=200)
    ledger.recalculate(project.id)

    row = _scores(project)[slacker.id]
    assert row.adjusted_score == 6.5
    assert row.adjustment_reason == "Did the deployment work off-platform"
    assert row.calculated_score != before
    assert row.effective_score() == 6.5


def test_adjust_then_flag_flips(build):
    project, _, students = build.team(2)
    ledger.recalculate(project.id)
    weaker = _scores(project)[students[1].id]
    flags = {r["userId"]: r["isFreeRider"] for r in ledger.scored_rows(project.id)}
    assert flags[students[1].id] is False

    ledger.adjust_score(weaker.id, 1.0, "Missed every meeting")
    flags = {r["userId"]: r["isFreeRider"] for r in ledger.scored_rows(project.id)}
    assert flags[students[1].id] is True
    assert flags[students[0].id] is False


@pytest.mark.parametrize("value,reason", [
    (10.5, "too high"),
    (-1, "too low"),
    ("abc", "not a number"),
    (5, "   "),
    (5, None),
    (5, "x" * 501),
    (True, "booleans are not scores"),
    (float("nan"), "not a real score"),
])
def test_adjustment_validation(build, value, reason):
    project, _, _ = build.team(1)
    [row] = ledger.recalculate(project.id)
    with pytest.raises(ValidationError):
        ledger.adjust_score(row.id, value, reason)


def test_adjust_unknown_score(app):
    with pytest.raises(NotFound):
        ledger.adjust_score(999, 5, "reason")


def test_clear_adjustment(build):
    project, _, _ = build.team(1)
    [row] = ledger.recalculate(project.id)
    ledger.adjust_score(row.id, 2.0, "reason")
    row = ledger.clear_adjustment(row.id)
    assert row.adjusted_score is None
    assert row.adjustment_reason is None
    assert row.effective_score() == row.calculated_score


def test_finalize_is_idempotent_and_locks(build):
    instructor = build.user()
    project, _, _ = build.team(2)
    ledger.recalculate(project.id)
    first = [r.to_dict() for r in ledger.finalize(project.id, actor=instructor)]
    second = [r.to_dict() for r in ledger.finalize(project.id, actor=instructor)]
    assert first == second
    assert all(r["isFinal"] for r in second)

    project = db.session.get(Project, project.id)
    assert project.is_finalized
    assert project.finalized_by_user_id == instructor.id
    version = project.assessment_version

    with pytest.raises(ProjectLocked):
        ledger.recalculate(project.id)
    with pytest.raises(ProjectLocked):
        ledger.adjust_score(first[0]["id"], 4.0, "late change")
    with pytest.raises(ProjectLocked):
        ledger.clear_adjustment(first[0]["id"])
    assert db.session.get(Project, project.id).assessment_version == version


def test_finalize_without_scores_is_rejected(build):
    project = build.project()
    with pytest.raises(ValidationError):
        ledger.finalize(project.id)
    assert not db.session.get(Project, project.id).is_finalized


def test_finalized_assessment_keeps_its_weights(build):
    project, _, _ = build.team(2)
    ledger.recalculate(project.id)
    ledger.finalize(project.id)
    ledger.update_weight_config(project.id, WeightConfig(task_weight=0.2, peer_weight=0.4,
                                                         code_weight=0.4, freerider_threshold=0.9))
    view = ledger.project_assessment(project.id)
    assert view["assessmentStatus"] == "FINALIZED"
    assert view["weightConfig"] == WeightConfig().to_dict()


def test_failed_aggregation_leaves_scores_untouched(build, monkeypatch):
    project, _, _ = build.team(2)
    ledger.recalculate(project.id)
    before = {sid: row.calculated_score for sid, row in _scores(project).items()}
    version = db.session.get(Project, project.id).assessment_version

    def boom(*a, **kw):
        raise SignalAggregationError("tasks table unavailable")
    monkeypatch.setattr(ledger, "aggregate_project_signals", boom)

    with pytest.raises(SignalAggregationError):
        ledger.recalculate(project.id)
    after = {sid: row.calculated_score for sid, row in _scores(project).items()}
    assert after == before
    assert db.session.get(Project, project.id).assessment_version == version


def test_concurrent_write_rolls_back_whole_run(build, monkeypatch):
    project, _, _ = build.team(3)
    real = ledger.normalize_signals

    def racing(signals):
        # another writer bumps the version while we compute
        db.session.execute(
            update(Project).where(Project.id == project.id)
            .values(assessment_version=Project.assessment_version + 1)
        )
        return real(signals)
    monkeypatch.setattr(ledger, "normalize_signals", racing)

    with pytest.raises(ConcurrentAssessmentWrite):
        ledger.recalculate(project.id)
    assert ContributionScore.query.filter_by(project_id=project.id).count() == 0


def test_group_pressure_statuses(build):
    project = build.project(pressure_threshold=5.0)
    busy, steady, idle = build.student("Busy"), build.student("Steady"), build.student("Idle")
    group = build.group(project, [busy, steady, idle])
    for _ in range(5):
        build.task(group, busy, status="IN_PROGRESS")
    for _ in range(4):
        build.task(group, steady, status="NOT_STARTED")
    build.task(group, idle)

    results = {r.student_id: r for r in ledger.group_pressure(project.id, group.id, today=date(2026, 3, 10))}
    assert results[busy.id].status.value == "OVERLOADED"
    assert results[steady.id].status.value == "AT_RISK"
    assert results[idle.id].status.value == "SAFE"
    assert results[idle.id].task_count == 0
    assert results[busy.id].to_dict()["fullName"] == "Busy"


def test_group_pressure_wrong_project(build):
    project, group, _ = build.team(1)
    other = build.project()
    with pytest.raises(NotFound):
        ledger.group_pressure(other.id, group.id)


def test_group_scores_use_group_average(build):
    project, group, students = build.team(2)
    ledger.recalculate(project.id)
    found, rows = ledger.group_scores(group.id)
    assert found.id == group.id
    assert {r["userId"] for r in rows} == {s.id for s in students}


def test_update_weight_config_validates(build):
    project = build.project()
    with pytest.raises(InvalidConfiguration):
        ledger.update_weight_config(project.id, WeightConfig(task_weight=0.9))


def _finalize_elsewhere(project_id):
    """Commit a finalize through a separate engine, as another worker would."""
    engine = create_engine(db.engine.url)
    projects, scores = Project.__table__, ContributionScore.__table__
    try:
        with engine.begin() as conn:
            conn.execute(update(projects).where(projects.c.id == project_id)
                         .values(assessment_status="FINALIZED",
                                 assessment_version=projects.c.assessment_version + 1))
            conn.execute(update(scores).where(scores.c.project_id == project_id).values(is_final=True))
    finally:
        engine.dispose()


@pytest.mark.file_db
def test_recalculate_losing_to_finalize_reports_locked(build, monkeypatch):
    project, group, students = build.team(2)
    ledger.recalculate(project.id)
    before = {sid: row.calculated_score for sid, row in _scores(project).items()}
    build.task(group, students[1], difficulty="HARD")
    real = ledger.normalize_signals

    def racing(signals):
        _finalize_elsewhere(project.id)
        return real(signals)
    monkeypatch.setattr(ledger, "normalize_signals", racing)

    with pytest.raises(ProjectLocked):
        ledger.recalculate(project.id)
    rows = _scores(project)
    assert {sid: row.calculated_score for sid, row in rows.items()} == before
    assert all(row.is_final for row in rows.values())


@pytest.mark.file_db
def test_finalize_losing_to_finalize_is_a_no_op(build, monkeypatch):
    project, _, _ = build.team(2)
    ledger.recalculate(project.id)
    real = ledger.project_scores
    raced = []

    def racing(project_id):
        if not raced:
            raced.append(project_id)
            _finalize_elsewhere(project_id)
        return real(project_id)
    monkeypatch.setattr(ledger, "project_scores", racing)

    rows = ledger.finalize(project.id)
    assert raced == [project.id]
    assert len(rows) == 2
    assert all(row.is_final for row in rows)
    db.session.expire_all()
    stored = db.session.get(Project, project.id)
    assert stored.is_finalized
    # the other worker's finalize stands; ours wrote nothing
    assert stored.finalized_weights is None


def test_students_who_left_every_group_are_not_listed(build):
    project, group, students = build.team(3)
    ledger.recalculate(project.id)
    leaver = students[0]
    StudentGroupMembership.query.filter_by(group_id=group.id, student_id=leaver.id).delete()
    db.session.commit()
    ledger.recalculate(project.id)

    listed = {r["userId"] for r in ledger.scored_rows(project.id)}
    assert leaver.id not in listed
    view = ledger.project_assessment(project.id)
    assert view["totalStudents"] == 2
    assert leaver.id not in {s["userId"] for s in view["students"]}
    # the stored row is kept for the record
    assert ledger.score_for_student(project.id, leaver.id).student_id == leaver.id


def test_project_pressure_covers_every_group(build):
    project = build.project(pressure_threshold=2.0)
    a, b, lead = build.student(), build.student(), build.student()
    g1 = build.group(project, [a], leader=lead)
    g2 = build.group(project, [b])
    build.task(g1, a, status="IN_PROGRESS")
    build.task(g1, a, status="IN_PROGRESS")
    build.task(g2, b, status="NOT_STARTED")

    results = ledger.project_pressure(project.id, today=date(2026, 3, 10))
    assert [(r.student_id, r.group_id) for r in results] == [(a.id, g1.id), (lead.id, g1.id), (b.id, g2.id)]
    by_id = {r.student_id: r.status.value for r in results}
    assert by_id == {a.id: "OVERLOADED", lead.id: "SAFE", b.id: "SAFE"}


def test_student_pressure(build):
    project = build.project(pressure_threshold=5.0)
    s, outsider = build.student(), build.student()
    group = build.group(project, [s])
    for _ in range(4):
        build.task(group, s, status="IN_PROGRESS")

    result = ledger.student_pressure(project.id, s.id)
    assert result.group_id == group.id
    assert result.status.value == "AT_RISK"
    with pytest.raises(NotFound):
        ledger.student_pressure(project.id, outsider.id)
