"""
Booking status and conflict helpers for the lab reservation system.

Nothing in this module reads the clock: every function that depends on time
takes the evaluation instant as ``now`` so a request can capture it once and
reuse it everywhere.
"""
import datetime
from dataclasses import dataclass
from datetime import timezone
from enum import Enum
from typing import Optional


class PersistedStatus(str, Enum):
    """Statuses stored in the bookings table."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class EffectiveStatus(str, Enum):
    """Status of a booking as seen at a given instant."""

    PENDING = "pending"
    APPROVED = "approved"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


# Bookings in these states still hold their slot.
LIVE_STATUSES = frozenset({
    EffectiveStatus.PENDING,
    EffectiveStatus.APPROVED,
    EffectiveStatus.IN_PROGRESS,
})

CANCELLABLE_STATUSES = frozenset({EffectiveStatus.PENDING, EffectiveStatus.APPROVED})

STATUS_LABELS = {
    EffectiveStatus.PENDING: "Pending Approval",
    EffectiveStatus.APPROVED: "Approved",
    EffectiveStatus.IN_PROGRESS: "In Progress",
    EffectiveStatus.COMPLETED: "Completed",
    EffectiveStatus.REJECTED: "Rejected",
    EffectiveStatus.CANCELLED: "Cancelled",
}


@dataclass
class ResourceScope:
    """What a booking claims: one computer, or any computer in the lab."""

    lab_id: int
    computer_id: Optional[int] = None


@dataclass
class Booking:
    """A single reservation as read from storage."""

    id: int
    user_id: str
    lab_id: int
    start_time: datetime.datetime
    end_time: datetime.datetime
    status: PersistedStatus = PersistedStatus.PENDING
    computer_id: Optional[int] = None
    user_name: str = ""
    purpose: Optional[str] = None

    def effective_status(self, now):
        return resolve_status(self.status, self.start_time, self.end_time, now)


@dataclass(frozen=True)
class TimeRemaining:
    """Countdown breakdown until a target instant."""

    days: int
    hours: int
    minutes: int
    seconds: int
    is_overdue: bool

    @property
    def total_seconds(self):
        return ((self.days * 24 + self.hours) * 60 + self.minutes) * 60 + self.seconds

    @property
    def text(self):
        if self.is_overdue:
            return "Overdue"
        if self.days > 0:
            plural = "s" if self.days > 1 else ""
            return f"{self.days} day{plural}, {self.hours}h {self.minutes}m {self.seconds}s"
        if self.hours > 0:
            return f"{self.hours}h {self.minutes}m {self.seconds}s"
        if self.minutes > 0:
            return f"{self.minutes}m {self.seconds}s"
        if self.seconds > 0:
            return f"{self.seconds}s"
        return "Starting now"

    def to_dict(self):
        return {
            "days": self.days,
            "hours": self.hours,
            "minutes": self.minutes,
            "seconds": self.seconds,
            "is_overdue": self.is_overdue,
            "text": self.text,
        }


def parse_timestamp(value):
    """
    Parse an ISO-8601 timestamp (or pass a datetime through) as an aware UTC datetime.
    A trailing 'Z' is accepted; naive values are taken to be UTC.
    Raises ValueError for anything else.
    """
    if isinstance(value, datetime.datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.datetime.fromisoformat(text)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError:
        # e.g. 0001-01-01T00:00:00+01:00 has no UTC representation
        raise ValueError(f"Timestamp out of range: {value!r}")


def format_timestamp(value):
    """Serialize a datetime the way the bookings table stores it."""
    if value is None:
        return None
    return parse_timestamp(value).isoformat()


def intervals_overlap(start1, end1, start2, end2):
    """
    Check whether two half-open intervals [start1, end1) and [start2, end2) overlap.
    Back-to-back intervals (end1 == start2) do not overlap.
    """
    return start1 < end2 and start2 < end1


def _as_effective(status):
    if isinstance(status, EffectiveStatus):
        return status
    if isinstance(status, PersistedStatus):
        return EffectiveStatus(status.value)
    return EffectiveStatus(str(status).lower())


def resolve_status(persisted_status, start_time, end_time, now):
    """
    Derive the effective status of a booking at ``now``.

    Pending, rejected and cancelled bookings keep their stored status.
    Approved bookings become IN_PROGRESS at their start instant and
    COMPLETED at their end instant.
    """
    status = PersistedStatus(
        persisted_status.value if isinstance(persisted_status, Enum) else str(persisted_status).lower()
    )
    if status != PersistedStatus.APPROVED:
        return EffectiveStatus(status.value)

    if now < start_time:
        return EffectiveStatus.APPROVED
    if now < end_time:
        return EffectiveStatus.IN_PROGRESS
    return EffectiveStatus.COMPLETED


def _in_scope(booking, scope):
    if booking.lab_id != scope.lab_id:
        return False
    if scope.computer_id is None:
        return True
    return booking.computer_id == scope.computer_id


def find_conflicts(candidate_start, candidate_end, scope, existing_bookings, now=None):
    """
    Return the live bookings in ``scope`` that overlap [candidate_start, candidate_end),
    earliest start first.

    When ``now`` is given each booking's effective status decides liveness,
    otherwise the stored status does.
    """
    if candidate_end <= candidate_start:
        raise ValueError("Candidate interval must end after it starts.")

    conflicts = []
    for booking in existing_bookings:
        if not _in_scope(booking, scope):
            continue
        if now is None:
            status = _as_effective(booking.status)
        else:
            status = booking.effective_status(now)
        if status not in LIVE_STATUSES:
            continue
        if intervals_overlap(candidate_start, candidate_end, booking.start_time, booking.end_time):
            conflicts.append(booking)

    conflicts.sort(key=lambda b: (b.start_time, b.id))
    return conflicts


def has_conflict(candidate_start, candidate_end, scope, existing_bookings, now=None):
    """Return True if any live booking in ``scope`` overlaps the candidate interval."""
    return bool(find_conflicts(candidate_start, candidate_end, scope, existing_bookings, now=now))


def time_remaining(target, now):
    """Break the time left until ``target`` into days/hours/minutes/seconds."""
    diff = (target - now).total_seconds()
    if diff < 0:
        return TimeRemaining(0, 0, 0, 0, True)

    total_seconds = int(diff)
    days, rest = divmod(total_seconds, 24 * 60 * 60)
    hours, rest = divmod(rest, 60 * 60)
    minutes, seconds = divmod(rest, 60)
    return TimeRemaining(days, hours, minutes, seconds, False)


def countdown_target(booking, now):
    """Instant a booking is counting down to: its end while running, its start while upcoming."""
    status = booking.effective_status(now)
    if status == EffectiveStatus.IN_PROGRESS:
        return booking.end_time
    if status in CANCELLABLE_STATUSES and now < booking.start_time:
        return booking.start_time
    return None


def can_cancel_booking(persisted_status, start_time, end_time, now):
    """A booking can be cancelled while pending or approved and not yet started."""
    status = resolve_status(persisted_status, start_time, end_time, now)
    return status in CANCELLABLE_STATUSES and now < start_time


def is_upcoming(booking, now):
    """Pending or approved and not started before ``now``. These count as a user's active bookings."""
    return _as_effective(booking.status) in CANCELLABLE_STATUSES and booking.start_time >= now


def status_label(status):
    return STATUS_LABELS.get(_as_effective(status), "Unknown")


def booking_to_dict(booking, now):
    """JSON view of a booking with its status resolved at ``now``."""
    effective = booking.effective_status(now)
    target = countdown_target(booking, now)
    return {
        "id": booking.id,
        "college_id": booking.user_id,
        "name": booking.user_name,
        "lab_id": booking.lab_id,
        "computer_id": booking.computer_id,
        "start_time": format_timestamp(booking.start_time),
        "end_time": format_timestamp(booking.end_time),
        "purpose": booking.purpose,
        "status": booking.status.value,
        "effective_status": effective.value,
        "status_label": status_label(effective),
        "can_cancel": can_cancel_booking(booking.status, booking.start_time, booking.end_time, now),
        "time_remaining": time_remaining(target, now).to_dict() if target else None,
    }
