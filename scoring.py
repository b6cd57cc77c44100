"""
Contribution and pressure scoring.

Pure functions only: nothing here touches the database, so the same code
serves recalculation, the assessment view and the tests.
"""
import enum
import math
import logging
from dataclasses import dataclass, asdict

from errors import InvalidConfiguration
from normalizer import NormalizedComponents, TARGET_MAX, TARGET_MIN

logger = logging.getLogger(__name__)

# pressure status boundaries are percentages of the project's pressure threshold
OVERLOADED_PERCENT = 100.0
DEFAULT_AT_RISK_RATIO = 0.8
PERCENT_EPSILON = 1e-9

PRESSURE_MODE_COUNT = "count"
PRESSURE_MODE_WEIGHTED = "weighted"
PRESSURE_MODES = (PRESSURE_MODE_COUNT, PRESSURE_MODE_WEIGHTED)


class AssessmentStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    FINALIZED = "FINALIZED"


class PressureStatus(str, enum.Enum):
    SAFE = "SAFE"
    AT_RISK = "AT_RISK"
    OVERLOADED = "OVERLOADED"


def clamp(value, lo=TARGET_MIN, hi=TARGET_MAX):
    return max(lo, min(hi, value))


# --------------------------------------------------------------------
# Contribution
# --------------------------------------------------------------------
def contribution_score(components, config):
    """Weighted 0..10 score for one student.

    W1*task + W2*peer + W3*code - W4*late, clamped to [0, 10].
    """
    if not isinstance(components, NormalizedComponents):
        raise TypeError("components must be NormalizedComponents")
    config.validate()
    weighted = (
        config.task_weight * components.task_completion
        + config.peer_weight * components.peer_review
        + config.code_weight * components.code_contribution
    )
    raw = weighted - config.late_penalty_weight * (components.late_task_count or 0)
    score = clamp(raw)
    logger.debug(
        "score: (%.3f x %.2f) + (%.3f x %.2f) + (%.3f x %.2f) - (%.3f x %d) = %.3f -> %.2f",
        config.task_weight, components.task_completion,
        config.peer_weight, components.peer_review,
        config.code_weight, components.code_contribution,
        config.late_penalty_weight, components.late_task_count or 0,
        raw, score,
    )
    return score


def effective_score(calculated_score, adjusted_score):
    """The manual override when present, otherwise the system score."""
    if adjusted_score is not None:
        return float(adjusted_score)
    return float(calculated_score or 0.0)


def team_average(scores):
    scores = list(scores)
    if not scores:
        return 0.0
    return sum(scores) / len(scores)


def is_free_rider(score, average, threshold):
    return score < average * threshold


def flag_free_riders(effective_by_student, peer_key_by_student, threshold):
    """Relative free-rider flags.

    `peer_key_by_student` maps each student to the key of the peer set used for
    the average (a group id). Students with no key are compared against the
    whole project. Returns student_id -> (flag, peer_average).
    """
    if threshold is None or not 0.0 <= threshold <= 1.0:
        raise InvalidConfiguration("freerider_threshold must be between 0 and 1.")
    members = {}
    for student_id in effective_by_student:
        key = peer_key_by_student.get(student_id)
        if key is not None:
            members.setdefault(key, []).append(student_id)
    averages = {
        key: team_average(effective_by_student[sid] for sid in sids)
        for key, sids in members.items()
    }
    averages[None] = team_average(effective_by_student.values())
    out = {}
    for student_id, score in effective_by_student.items():
        avg = averages[peer_key_by_student.get(student_id)]
        out[student_id] = (is_free_rider(score, avg, threshold), avg)
    return out


# --------------------------------------------------------------------
# Pressure
# --------------------------------------------------------------------
def time_urgency_factor(days_remaining):
    if days_remaining < 0:
        return 3.5
    if days_remaining <= 1:
        return 3.0
    if days_remaining <= 3:
        return 2.0
    if days_remaining <= 7:
        return 1.5
    return 1.0


def pressure_score(active_tasks, mode=PRESSURE_MODE_COUNT, today=None):
    """Workload proxy for one student.

    `active_tasks` is a list of (difficulty_weight, deadline_date) for tasks not
    yet completed. In count mode every task weighs 1; in weighted mode each task
    weighs difficulty x time urgency.
    """
    if mode not in PRESSURE_MODES:
        raise InvalidConfiguration(f"Unknown pressure mode '{mode}'.")
    if mode == PRESSURE_MODE_COUNT:
        return float(len(active_tasks))
    total = 0.0
    for difficulty, deadline in active_tasks:
        if deadline is None or today is None:
            factor = 1.0
        else:
            factor = time_urgency_factor((deadline - today).days)
        total += (difficulty or 1) * factor
    return total


def threshold_percentage(score, threshold):
    if threshold is None or not math.isfinite(threshold) or threshold <= 0:
        raise InvalidConfiguration("pressure_threshold must be a positive number.")
    return score / threshold * 100.0


def classify_pressure(percentage, at_risk_ratio=DEFAULT_AT_RISK_RATIO):
    """OVERLOADED from 100%, AT_RISK from at_risk_ratio*100%, SAFE below."""
    if percentage >= OVERLOADED_PERCENT - PERCENT_EPSILON:
        return PressureStatus.OVERLOADED
    if percentage >= at_risk_ratio * 100.0 - PERCENT_EPSILON:
        return PressureStatus.AT_RISK
    return PressureStatus.SAFE


@dataclass
class PressureResult:
    student_id: int
    group_id: int
    task_count: int
    pressure_score: float
    threshold: float
    threshold_percentage: float
    status: PressureStatus
    student_name: str = None

    def to_dict(self):
        out = asdict(self)
        out["status"] = self.status.value
        return {
            "userId": out["student_id"],
            "fullName": out["student_name"],
            "groupId": out["group_id"],
            "taskCount": out["task_count"],
            "pressureScore": round(out["pressure_score"], 4),
            "threshold": out["threshold"],
            "thresholdPercentage": round(out["threshold_percentage"], 4),
            "status": out["status"],
        }


def evaluate_pressure(student_id, group_id, active_tasks, threshold,
                      mode=PRESSURE_MODE_COUNT, at_risk_ratio=DEFAULT_AT_RISK_RATIO,
                      today=None, student_name=None):
    score = pressure_score(active_tasks, mode=mode, today=today)
    pct = threshold_percentage(score, threshold)
    return PressureResult(
        student_id=student_id,
        group_id=group_id,
        task_count=len(active_tasks),
        pressure_score=score,
        threshold=threshold,
        threshold_percentage=pct,
        status=classify_pressure(pct, at_risk_ratio),
        student_name=student_name,
    )
