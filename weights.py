"""
Per-project weight configuration.

The engine always works in fraction space (0..1). Percent conversion only
happens at the HTTP boundary through from_percent_payload / to_percent_payload.
"""
import math
from dataclasses import dataclass, asdict

from errors import InvalidConfiguration

WEIGHT_SUM_TOLERANCE = 0.001

DEFAULT_TASK_WEIGHT = 0.5
DEFAULT_PEER_WEIGHT = 0.3
DEFAULT_CODE_WEIGHT = 0.2
DEFAULT_LATE_PENALTY_WEIGHT = 0.1
DEFAULT_FREERIDER_THRESHOLD = 0.3
DEFAULT_PRESSURE_THRESHOLD = 15.0

# payload key -> dataclass field; these are shown to users as percentages
PERCENT_FIELDS = {
    "weightW1": "task_weight",
    "weightW2": "peer_weight",
    "weightW3": "code_weight",
    "weightW4": "late_penalty_weight",
    "freeriderThreshold": "freerider_threshold",
}


@dataclass(frozen=True)
class WeightConfig:
    task_weight: float = DEFAULT_TASK_WEIGHT
    peer_weight: float = DEFAULT_PEER_WEIGHT
    code_weight: float = DEFAULT_CODE_WEIGHT
    late_penalty_weight: float = DEFAULT_LATE_PENALTY_WEIGHT
    freerider_threshold: float = DEFAULT_FREERIDER_THRESHOLD
    pressure_threshold: float = DEFAULT_PRESSURE_THRESHOLD

    @property
    def split_sum(self):
        return self.task_weight + self.peer_weight + self.code_weight

    def problems(self):
        """Return a list of human-readable problems; empty when usable."""
        issues = []
        unusable = set()
        for name in self.__dataclass_fields__:
            value = getattr(self, name)
            if value is None:
                issues.append(f"{name} is required.")
                unusable.add(name)
            elif not math.isfinite(value):
                issues.append(f"{name} must be a finite number (got {value}).")
                unusable.add(name)
        for name in ("task_weight", "peer_weight", "code_weight", "late_penalty_weight", "freerider_threshold"):
            value = getattr(self, name)
            if name not in unusable and not 0.0 <= value <= 1.0:
                issues.append(f"{name} must be between 0 and 1 (got {value:.3f}).")
        if "pressure_threshold" not in unusable and self.pressure_threshold <= 0:
            issues.append("pressure_threshold must be a positive number.")
        if not unusable.intersection(("task_weight", "peer_weight", "code_weight")):
            total = self.split_sum
            if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
                issues.append(
                    f"task_weight + peer_weight + code_weight must equal 1.0 "
                    f"({self.task_weight:.3f} + {self.peer_weight:.3f} + {self.code_weight:.3f} = {total:.3f})."
                )
        return issues

    def validate(self):
        issues = self.problems()
        if issues:
            raise InvalidConfiguration("Invalid weight configuration.", details=issues)
        return self

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        if not data:
            return cls()
        fields = cls.__dataclass_fields__
        return cls(**{k: _as_float(v, k) for k, v in data.items() if k in fields})

    @classmethod
    def from_project(cls, project):
        return cls(
            task_weight=project.weight_w1,
            peer_weight=project.weight_w2,
            code_weight=project.weight_w3,
            late_penalty_weight=project.weight_w4,
            freerider_threshold=project.freerider_threshold,
            pressure_threshold=project.pressure_threshold,
        )

    def apply_to(self, project):
        project.weight_w1 = self.task_weight
        project.weight_w2 = self.peer_weight
        project.weight_w3 = self.code_weight
        project.weight_w4 = self.late_penalty_weight
        project.freerider_threshold = self.freerider_threshold
        project.pressure_threshold = self.pressure_threshold


def _as_float(value, name):
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidConfiguration(f"{name} must be a number.", details=[f"{name}={value!r}"])


def from_percent_payload(payload, base=None):
    """Build a validated WeightConfig from a UI payload (percent values).

    Keys missing from the payload keep the value from `base`.
    """
    if not isinstance(payload, dict):
        raise InvalidConfiguration("Weight payload must be a JSON object.")
    values = (base or WeightConfig()).to_dict()
    for key, field in PERCENT_FIELDS.items():
        if key in payload:
            pct = _as_float(payload[key], key)
            values[field] = None if pct is None else pct / 100.0
    if "pressureThreshold" in payload:
        values["pressure_threshold"] = _as_float(payload["pressureThreshold"], "pressureThreshold")
    return WeightConfig(**values).validate()


def to_percent_payload(config):
    out = {key: round(getattr(config, field) * 100.0, 4) for key, field in PERCENT_FIELDS.items()}
    out["pressureThreshold"] = config.pressure_threshold
    return out
