"""Error kinds raised by the assessment engine and rendered by the API layer."""


class AssessmentError(Exception):
    status_code = 500
    kind = "assessment_error"

    def __init__(self, message, details=None):
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_dict(self):
        body = {"success": False, "error": self.kind, "message": self.message}
        if self.details:
            body["details"] = list(self.details)
        return body


class InvalidConfiguration(AssessmentError):
    """Weights or thresholds that cannot be used for scoring."""
    status_code = 400
    kind = "invalid_configuration"


class ValidationError(AssessmentError):
    status_code = 400
    kind = "validation_error"


class NotFound(AssessmentError):
    status_code = 404
    kind = "not_found"


class ProjectLocked(AssessmentError):
    """The assessment is FINALIZED; terminal for the project, not worth retrying."""
    status_code = 409
    kind = "project_locked"


class ConcurrentAssessmentWrite(AssessmentError):
    """Another recalculation/adjustment committed first. Safe to retry."""
    status_code = 409
    kind = "concurrent_write"


class SignalAggregationError(AssessmentError):
    status_code = 500
    kind = "signal_aggregation_failed"
