"""
Seat-level occupancy for computer labs.

A computer is classified from its hardware flag and the bookings placed on it:
MAINTENANCE beats OCCUPIED, which beats RESERVED, which beats AVAILABLE.
"""
import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from booking_utils import (
    EffectiveStatus,
    Booking,
    ResourceScope,
    format_timestamp,
    has_conflict,
)

DEFAULT_LOOKAHEAD = datetime.timedelta(hours=4)

OCCUPYING_STATUSES = frozenset({EffectiveStatus.APPROVED, EffectiveStatus.IN_PROGRESS})
RESERVING_STATUSES = frozenset({EffectiveStatus.APPROVED, EffectiveStatus.PENDING})


class OccupancyStatus(str, Enum):
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    RESERVED = "reserved"
    MAINTENANCE = "maintenance"


@dataclass
class Computer:
    """A bookable seat in a lab."""

    id: int
    name: str
    lab_id: int
    is_working: bool = True
    specifications: Optional[str] = None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "lab_id": self.lab_id,
            "is_working": self.is_working,
            "specifications": self.specifications,
        }


@dataclass
class ComputerOccupancy:
    computer: Computer
    status: OccupancyStatus
    booking: Optional[Booking] = None

    @property
    def is_available(self):
        return self.status == OccupancyStatus.AVAILABLE

    def to_dict(self):
        data = self.computer.to_dict()
        data["occupancy_status"] = self.status.value
        data["is_available"] = self.is_available
        data["current_booking"] = None
        if self.booking is not None:
            data["current_booking"] = {
                "id": self.booking.id,
                "college_id": self.booking.user_id,
                "user_name": self.booking.user_name,
                "start_time": format_timestamp(self.booking.start_time),
                "end_time": format_timestamp(self.booking.end_time),
                "status": self.booking.status.value,
            }
        return data


@dataclass
class LabOccupancy:
    """Occupancy snapshot of one lab at one instant."""

    lab_id: Optional[int]
    lab_name: Optional[str]
    total_seats: int
    available_seats: int
    occupied_seats: int
    maintenance_seats: int
    reserved_seats: int
    occupancy_rate: float
    computers: List[ComputerOccupancy] = field(default_factory=list)

    def to_dict(self):
        return {
            "lab_id": self.lab_id,
            "lab_name": self.lab_name,
            "total_seats": self.total_seats,
            "available_seats": self.available_seats,
            "occupied_seats": self.occupied_seats,
            "maintenance_seats": self.maintenance_seats,
            "reserved_seats": self.reserved_seats,
            "occupancy_rate": self.occupancy_rate,
            "occupancy_level": occupancy_rate_level(self.occupancy_rate),
            "computers": [c.to_dict() for c in self.computers],
            # Rows of computer ids, in the order the seats are drawn
            "seat_map": [
                [seat.computer.id for seat in row] for row in generate_seat_map(self.computers)
            ],
        }


def _earliest(bookings):
    if not bookings:
        return None
    return min(bookings, key=lambda b: (b.start_time, b.id))


def classify_computer(computer, bookings, now, lookahead=DEFAULT_LOOKAHEAD):
    """
    Classify one computer at ``now``.

    1. A computer that is not working is in MAINTENANCE.
    2. An approved booking on this computer covering ``now`` makes it OCCUPIED.
    3. An approved or pending booking starting within ``lookahead`` makes it RESERVED.
    4. Otherwise it is AVAILABLE.

    If several bookings match a step the one starting earliest is attached.
    """
    if not computer.is_working:
        return ComputerOccupancy(computer, OccupancyStatus.MAINTENANCE)

    own = [b for b in bookings if b.computer_id == computer.id]

    current = _earliest([
        b for b in own
        if b.effective_status(now) in OCCUPYING_STATUSES and b.start_time <= now < b.end_time
    ])
    if current is not None:
        return ComputerOccupancy(computer, OccupancyStatus.OCCUPIED, current)

    horizon = now + lookahead
    upcoming = _earliest([
        b for b in own
        if b.effective_status(now) in RESERVING_STATUSES and now < b.start_time <= horizon
    ])
    if upcoming is not None:
        return ComputerOccupancy(computer, OccupancyStatus.RESERVED, upcoming)

    return ComputerOccupancy(computer, OccupancyStatus.AVAILABLE)


def compute_occupancy(computers, bookings, now, lab_id=None, lab_name=None, lookahead=DEFAULT_LOOKAHEAD):
    """Classify every computer of a lab and aggregate the seat counts."""
    seats = [classify_computer(c, bookings, now, lookahead=lookahead) for c in computers]

    counts = {status: 0 for status in OccupancyStatus}
    for seat in seats:
        counts[seat.status] += 1

    total = len(seats)
    if total > 0:
        busy = counts[OccupancyStatus.OCCUPIED] + counts[OccupancyStatus.RESERVED]
        rate = round(busy / total * 100, 2)
    else:
        rate = 0.0

    return LabOccupancy(
        lab_id=lab_id,
        lab_name=lab_name,
        total_seats=total,
        available_seats=counts[OccupancyStatus.AVAILABLE],
        occupied_seats=counts[OccupancyStatus.OCCUPIED],
        maintenance_seats=counts[OccupancyStatus.MAINTENANCE],
        reserved_seats=counts[OccupancyStatus.RESERVED],
        occupancy_rate=rate,
        computers=seats,
    )


def find_available_computers(computers, bookings, start_time, end_time, now=None):
    """
    Working computers with no live booking overlapping [start_time, end_time).
    Pending bookings count as live so a seat is never offered twice.
    Liveness is decided exactly as the conflict checker decides it.
    """
    return [
        computer for computer in computers
        if computer.is_working
        and not has_conflict(
            start_time, end_time, ResourceScope(computer.lab_id, computer.id), bookings, now=now
        )
    ]


def occupancy_rate_level(occupancy_rate):
    if occupancy_rate >= 90:
        return "critical"
    if occupancy_rate >= 75:
        return "high"
    if occupancy_rate >= 50:
        return "moderate"
    return "low"


def generate_seat_map(computers, max_columns=6):
    """Lay seats out row by row, ``max_columns`` per row."""
    if max_columns < 1:
        raise ValueError("max_columns must be at least 1.")
    return [computers[i:i + max_columns] for i in range(0, len(computers), max_columns)]
