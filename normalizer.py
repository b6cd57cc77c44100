"""Min-max rescaling of raw contribution signals onto the 0..10 band."""
import logging
from dataclasses import dataclass

TARGET_MIN = 0.0
TARGET_MAX = 10.0
EPSILON = 1e-9

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NormalizedComponents:
    task_completion: float
    peer_review: float
    code_contribution: float
    late_task_count: int = 0


def normalize_value(value, lo, hi):
    if abs(hi - lo) < EPSILON:
        return TARGET_MAX
    scaled = (value - lo) / (hi - lo) * (TARGET_MAX - TARGET_MIN) + TARGET_MIN
    # float noise can land a hair outside the band
    return max(TARGET_MIN, min(TARGET_MAX, scaled))


def normalize(values):
    """Rescale a list of raw values, preserving order.

    All-equal input (including a single value) maps every entry to TARGET_MAX.
    """
    values = [float(v or 0.0) for v in values]
    if not values:
        return []
    lo, hi = min(values), max(values)
    if abs(hi - lo) < EPSILON:
        logger.debug("All %d values equal (%s); assigning %s", len(values), lo, TARGET_MAX)
        return [TARGET_MAX] * len(values)
    return [normalize_value(v, lo, hi) for v in values]


def normalize_signals(signals):
    """Normalize task/peer/code dimensions independently across one project.

    `signals` is a list of RawSignals; returns a dict student_id -> NormalizedComponents.
    Late-task counts are carried through untouched.
    """
    task = normalize([s.task_completion_raw for s in signals])
    peer = normalize([s.peer_review_raw for s in signals])
    code = normalize([s.code_raw for s in signals])
    out = {}
    for idx, s in enumerate(signals):
        out[s.student_id] = NormalizedComponents(
            task_completion=task[idx],
            peer_review=peer[idx],
            code_contribution=code[idx],
            late_task_count=s.late_task_count,
        )
    return out


def describe(values):
    """min/max/avg/count summary used in recalculation log lines."""
    values = [float(v) for v in values]
    if not values:
        return {"min": 0.0, "max": 0.0, "avg": 0.0, "count": 0}
    return {
        "min": round(min(values), 2),
        "max": round(max(values), 2),
        "avg": round(sum(values) / len(values), 2),
        "count": len(values),
    }
