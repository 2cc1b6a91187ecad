"""
Unit tests for per-seat occupancy classification and lab aggregation.
"""
import datetime
from datetime import timezone, timedelta

import pytest

from booking_utils import Booking, PersistedStatus
from seat_booking_utils import (
    Computer,
    OccupancyStatus,
    classify_computer,
    compute_occupancy,
    find_available_computers,
    generate_seat_map,
    occupancy_rate_level,
)

NOW = datetime.datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc)


def booking(booking_id, computer_id, start_offset, hours, status=PersistedStatus.APPROVED, name="Ana"):
    start = NOW + start_offset
    return Booking(
        id=booking_id,
        user_id=f"STU{booking_id:03d}",
        user_name=name,
        lab_id=1,
        computer_id=computer_id,
        start_time=start,
        end_time=start + timedelta(hours=hours),
        status=status,
    )


def pc(computer_id, is_working=True):
    return Computer(id=computer_id, name=f"PC-{computer_id:02d}", lab_id=1, is_working=is_working)


# --- Per-computer classification ---

def test_broken_computer_without_bookings_is_in_maintenance():
    result = classify_computer(pc(1, is_working=False), [], NOW)
    assert result.status == OccupancyStatus.MAINTENANCE
    assert result.booking is None
    assert not result.is_available


def test_maintenance_wins_over_a_running_booking():
    bookings = [booking(1, 1, timedelta(hours=-1), 2)]
    assert classify_computer(pc(1, is_working=False), bookings, NOW).status == OccupancyStatus.MAINTENANCE


def test_running_approved_booking_occupies_the_seat():
    bookings = [booking(1, 1, timedelta(hours=-1), 2, name="Ben")]
    result = classify_computer(pc(1), bookings, NOW)
    assert result.status == OccupancyStatus.OCCUPIED
    assert result.booking.user_name == "Ben"


def test_booking_starting_now_occupies_the_seat():
    result = classify_computer(pc(1), [booking(1, 1, timedelta(0), 1)], NOW)
    assert result.status == OccupancyStatus.OCCUPIED


def test_booking_ending_now_frees_the_seat():
    result = classify_computer(pc(1), [booking(1, 1, timedelta(hours=-2), 2)], NOW)
    assert result.status == OccupancyStatus.AVAILABLE


def test_started_pending_booking_does_not_occupy():
    bookings = [booking(1, 1, timedelta(hours=-1), 2, status=PersistedStatus.PENDING)]
    assert classify_computer(pc(1), bookings, NOW).status == OccupancyStatus.AVAILABLE


@pytest.mark.parametrize("status", [PersistedStatus.APPROVED, PersistedStatus.PENDING])
def test_upcoming_booking_within_horizon_reserves_the_seat(status):
    bookings = [booking(1, 1, timedelta(hours=2), 1, status=status)]
    result = classify_computer(pc(1), bookings, NOW)
    assert result.status == OccupancyStatus.RESERVED
    assert result.booking.id == 1


def test_horizon_boundary_is_inclusive():
    bookings = [booking(1, 1, timedelta(hours=4), 1)]
    assert classify_computer(pc(1), bookings, NOW).status == OccupancyStatus.RESERVED


def test_booking_beyond_horizon_leaves_seat_available():
    bookings = [booking(1, 1, timedelta(hours=5), 1)]
    assert classify_computer(pc(1), bookings, NOW).status == OccupancyStatus.AVAILABLE


def test_lookahead_is_configurable():
    bookings = [booking(1, 1, timedelta(hours=5), 1)]
    result = classify_computer(pc(1), bookings, NOW, lookahead=timedelta(hours=6))
    assert result.status == OccupancyStatus.RESERVED


@pytest.mark.parametrize("status", [PersistedStatus.REJECTED, PersistedStatus.CANCELLED])
def test_closed_bookings_do_not_reserve(status):
    bookings = [booking(1, 1, timedelta(hours=1), 1, status=status)]
    assert classify_computer(pc(1), bookings, NOW).status == OccupancyStatus.AVAILABLE


def test_bookings_on_other_computers_and_lab_wide_bookings_are_ignored():
    bookings = [
        booking(1, 2, timedelta(hours=-1), 2),
        booking(2, None, timedelta(hours=-1), 2),
    ]
    assert classify_computer(pc(1), bookings, NOW).status == OccupancyStatus.AVAILABLE


def test_earliest_booking_is_attached_when_several_match():
    bookings = [
        booking(1, 1, timedelta(hours=3), 1),
        booking(2, 1, timedelta(hours=1), 1),
        booking(3, 1, timedelta(hours=2), 1),
    ]
    assert classify_computer(pc(1), bookings, NOW).booking.id == 2


# --- Lab aggregation ---

def test_lab_with_mixed_seats_has_sixty_percent_occupancy():
    """5 computers: 2 occupied, 1 reserved, 1 maintenance, 1 available."""
    computers = [pc(1), pc(2), pc(3), pc(4, is_working=False), pc(5)]
    bookings = [
        booking(1, 1, timedelta(hours=-1), 2),
        booking(2, 2, timedelta(minutes=-30), 1),
        booking(3, 3, timedelta(hours=1), 1, status=PersistedStatus.PENDING),
    ]
    occupancy = compute_occupancy(computers, bookings, NOW, lab_id=1, lab_name="Lab A")

    assert occupancy.total_seats == 5
    assert occupancy.occupied_seats == 2
    assert occupancy.reserved_seats == 1
    assert occupancy.maintenance_seats == 1
    assert occupancy.available_seats == 1
    assert occupancy.occupancy_rate == 60.0
    assert [c.status for c in occupancy.computers] == [
        OccupancyStatus.OCCUPIED,
        OccupancyStatus.OCCUPIED,
        OccupancyStatus.RESERVED,
        OccupancyStatus.MAINTENANCE,
        OccupancyStatus.AVAILABLE,
    ]


def test_seat_counts_always_add_up_to_total():
    computers = [pc(i, is_working=(i % 4 != 0)) for i in range(1, 13)]
    bookings = [booking(i, i, timedelta(hours=(i % 6) - 2), 1) for i in range(1, 13)]
    occupancy = compute_occupancy(computers, bookings, NOW)
    total = (
        occupancy.available_seats
        + occupancy.occupied_seats
        + occupancy.maintenance_seats
        + occupancy.reserved_seats
    )
    assert total == occupancy.total_seats == 12
    assert 0 <= occupancy.occupancy_rate <= 100


def test_empty_lab_has_zero_occupancy():
    occupancy = compute_occupancy([], [], NOW)
    assert occupancy.total_seats == 0
    assert occupancy.occupancy_rate == 0


def test_occupancy_rate_is_rounded_to_two_decimals():
    computers = [pc(1), pc(2), pc(3)]
    occupancy = compute_occupancy(computers, [booking(1, 1, timedelta(hours=-1), 2)], NOW)
    assert occupancy.occupancy_rate == 33.33


def test_occupancy_to_dict():
    computers = [pc(1)]
    data = compute_occupancy(
        computers, [booking(1, 1, timedelta(hours=-1), 2, name="Cleo")], NOW, lab_id=3, lab_name="Lab C"
    ).to_dict()
    assert data["lab_id"] == 3
    assert data["occupancy_rate"] == 100.0
    assert data["occupancy_level"] == "critical"
    seat = data["computers"][0]
    assert seat["occupancy_status"] == "occupied"
    assert seat["current_booking"]["user_name"] == "Cleo"
    assert seat["current_booking"]["end_time"] == "2025-03-10T10:00:00+00:00"
    assert data["seat_map"] == [[1]]


# --- Available computers ---

def test_find_available_computers():
    computers = [pc(1), pc(2), pc(3), pc(4, is_working=False), pc(5)]
    bookings = [
        booking(1, 1, timedelta(hours=1), 2),
        booking(2, 2, timedelta(hours=2), 1, status=PersistedStatus.PENDING),
        booking(3, 3, timedelta(hours=3), 1),
        booking(4, 5, timedelta(hours=1), 2, status=PersistedStatus.CANCELLED),
    ]
    start, end = NOW + timedelta(hours=2), NOW + timedelta(hours=3)
    available = find_available_computers(computers, bookings, start, end)
    # PC-3 starts exactly when the request ends
    assert [c.id for c in available] == [3, 5]


def test_find_available_computers_skips_completed_bookings_when_now_is_given():
    computers = [pc(1)]
    bookings = [booking(1, 1, timedelta(hours=-3), 2)]
    start, end = NOW - timedelta(hours=2), NOW
    assert find_available_computers(computers, bookings, start, end) == []
    assert find_available_computers(computers, bookings, start, end, now=NOW) == computers


# --- Display helpers ---

@pytest.mark.parametrize("rate,level", [
    (0, "low"), (49.99, "low"), (50, "moderate"), (75, "high"), (90, "critical"), (100, "critical"),
])
def test_occupancy_rate_level(rate, level):
    assert occupancy_rate_level(rate) == level


def test_generate_seat_map():
    seats = list(range(14))
    assert generate_seat_map(seats) == [list(range(6)), list(range(6, 12)), [12, 13]]
    assert generate_seat_map(seats, max_columns=7) == [list(range(7)), list(range(7, 14))]
    assert generate_seat_map([]) == []
    with pytest.raises(ValueError):
        generate_seat_map(seats, max_columns=0)


def test_seat_map_rows_of_computer_ids():
    computers = [pc(i) for i in range(1, 9)]
    data = compute_occupancy(computers, [], NOW).to_dict()
    assert data["seat_map"] == [[1, 2, 3, 4, 5, 6], [7, 8]]
    assert compute_occupancy([], [], NOW).to_dict()["seat_map"] == []


def test_find_available_computers_accepts_plain_string_statuses():
    computers = [pc(1), pc(2)]
    bookings = [
        booking(1, 1, timedelta(hours=1), 1, status="pending"),
        booking(2, 2, timedelta(hours=1), 1, status="cancelled"),
    ]
    start, end = NOW + timedelta(hours=1), NOW + timedelta(hours=2)
    assert [c.id for c in find_available_computers(computers, bookings, start, end)] == [2]
    assert [c.id for c in find_available_computers(computers, bookings, start, end, now=NOW)] == [2]


def test_find_available_computers_rejects_inverted_interval():
    with pytest.raises(ValueError):
        find_available_computers([pc(1)], [], NOW + timedelta(hours=2), NOW + timedelta(hours=1))
