"""Job lifecycle transition rules."""

from clipforge.models.job import JobStatus

PIPELINE_ORDER: list[JobStatus] = [
    JobStatus.PENDING,
    JobStatus.DOWNLOADING,
    JobStatus.TRANSCRIBING,
    JobStatus.ANALYZING,
    JobStatus.GENERATING,
    JobStatus.COMPLETED,
]

TERMINAL_STATES: set[JobStatus] = {
    JobStatus.COMPLETED,
    JobStatus.FAILED,
}

ACTIVE_STATES: set[JobStatus] = {
    JobStatus.DOWNLOADING,
    JobStatus.TRANSCRIBING,
    JobStatus.ANALYZING,
    JobStatus.GENERATING,
}

# Each status may be re-entered so a resumed worker can re-checkpoint the same step.
_ALLOWED_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.DOWNLOADING, JobStatus.FAILED},
    JobStatus.DOWNLOADING: {JobStatus.DOWNLOADING, JobStatus.TRANSCRIBING, JobStatus.FAILED},
    JobStatus.TRANSCRIBING: {JobStatus.TRANSCRIBING, JobStatus.ANALYZING, JobStatus.FAILED},
    JobStatus.ANALYZING: {JobStatus.ANALYZING, JobStatus.GENERATING, JobStatus.FAILED},
    JobStatus.GENERATING: {JobStatus.GENERATING, JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class InvalidTransitionError(Exception):
    """Raised when a status change would break the pipeline order."""

    def __init__(self, current: JobStatus, attempted: JobStatus):
        self.current = current
        self.attempted = attempted
        if current in TERMINAL_STATES:
            message = f"Job is {current.value}; terminal state cannot be mutated"
        else:
            message = f"Invalid status transition {current.value} -> {attempted.value}"
        super().__init__(message)


def allowed_next_statuses(status: JobStatus) -> list[JobStatus]:
    """Return deterministically ordered allowed successors for a status."""
    return sorted(_ALLOWED_TRANSITIONS.get(status, set()), key=lambda s: s.value)


def can_transition(old_status: JobStatus, new_status: JobStatus) -> bool:
    return new_status in _ALLOWED_TRANSITIONS.get(old_status, set())


def ensure_transition(old_status: JobStatus, new_status: JobStatus) -> None:
    """Validate transition according to lifecycle rules."""
    if not can_transition(old_status, new_status):
        raise InvalidTransitionError(old_status, new_status)


def next_status(status: JobStatus) -> JobStatus:
    """The pipeline status that follows ``status``."""
    if status in TERMINAL_STATES:
        raise InvalidTransitionError(status, status)
    return PIPELINE_ORDER[PIPELINE_ORDER.index(status) + 1]
