"""Deadline arithmetic for timed assessments."""

from datetime import datetime, timedelta
from typing import Optional

from gradebook.config import settings
from gradebook.models import Assessment, Assignment, AssignmentState, utcnow


def deadline(assignment: Assignment, assessment: Assessment) -> Optional[datetime]:
    """When the attempt must be handed in, or None if it is untimed.

    A duration counts from the moment the student started; a due date is
    absolute. When both apply the earlier one wins.
    """
    candidates = []
    if assessment.duration_minutes and assignment.started_at:
        candidates.append(assignment.started_at + timedelta(minutes=assessment.duration_minutes))
    if assessment.due_date:
        candidates.append(assessment.due_date)
    return min(candidates) if candidates else None


def remaining_seconds(
    assignment: Assignment,
    assessment: Assessment,
    now: Optional[datetime] = None,
) -> Optional[int]:
    """Seconds left before the deadline, floored at 0. None when untimed."""
    end = deadline(assignment, assessment)
    if end is None:
        return None
    now = now or utcnow()
    return max(0, int((end - now).total_seconds()))


def is_time_expired(
    assignment: Assignment,
    assessment: Assessment,
    with_grace: bool = False,
    now: Optional[datetime] = None,
    grace_seconds: Optional[int] = None,
) -> bool:
    """Whether an in-progress attempt has run past its deadline.

    ``with_grace`` adds the configured latency tolerance, used when deciding
    to force-submit rather than when displaying the countdown.
    """
    if assignment.state is not AssignmentState.IN_PROGRESS:
        return False
    end = deadline(assignment, assessment)
    if end is None:
        return False
    if with_grace:
        if grace_seconds is None:
            grace_seconds = settings.GRACE_PERIOD_SECONDS
        end += timedelta(seconds=grace_seconds)
    return (now or utcnow()) > end
