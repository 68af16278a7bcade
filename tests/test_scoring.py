import datetime as dt

import pytest

from fleetguard.scoring import ViolationCategory, ViolationScorer, calculate_level, is_driving
from fleetguard.telemetry import VehicleFix

UTC = dt.timezone.utc
DAYTIME = dt.datetime(2025, 11, 29, 10, 0, tzinfo=UTC)


def fix(speed=60.0, event="", status="", timestamp=DAYTIME, plate="ABC123", driver="John Smith"):
    return VehicleFix(plate=plate, driver_name=driver, latitude=-26.2, longitude=28.0,
                      speed_kmh=speed, timestamp=timestamp, event_text=event, status_text=status)


@pytest.mark.parametrize("points,level", [
    (100, "Gold"), (80, "Gold"), (79, "Silver"), (60, "Silver"),
    (59, "Bronze"), (40, "Bronze"), (39, "Critical"), (0, "Critical"),
])
def test_levels(points, level):
    assert calculate_level(points) == level


def test_five_speeding_fixes_cost_one_point():
    scorer = ViolationScorer()
    for _ in range(5):
        scorer.process_fix(fix(speed=125))

    state = scorer.get("John Smith")
    assert state.counts[ViolationCategory.SPEED] == 5
    assert state.current_points == 99
    assert state.level == "Gold"
    assert state.threshold_exceeded[ViolationCategory.SPEED]


def test_fifth_violation_is_the_first_to_deduct():
    scorer = ViolationScorer(threshold=4)
    events = [scorer.record_violation("Jane", ViolationCategory.ROUTE) for _ in range(6)]

    assert [e.points_deducted for e in events] == [0, 0, 0, 0, 1, 1]
    assert not any(scorer.get("Jane").threshold_exceeded[c] for c in ViolationCategory
                   if c is not ViolationCategory.ROUTE)


def test_points_never_increase_and_stay_in_range():
    scorer = ViolationScorer(threshold=0)
    seen = []
    for i in range(150):
        category = list(ViolationCategory)[i % len(ViolationCategory)]
        seen.append(scorer.record_violation("Jane", category).current_points)

    assert all(0 <= p <= 100 for p in seen)
    assert all(a >= b for a, b in zip(seen, seen[1:]))
    assert seen[-1] == 0
    assert scorer.get("Jane").level == "Critical"


def test_is_driving():
    assert not is_driving(fix(speed=90, event="Ignition Off"))
    assert not is_driving(fix(speed=90, status="Parked"))
    assert is_driving(fix(speed=0, event="Vehicle in motion"))
    assert is_driving(fix(speed=0, status="engine running"))
    assert is_driving(fix(speed=6))
    assert not is_driving(fix(speed=5))


def test_stationary_fixes_never_score():
    scorer = ViolationScorer()
    assert scorer.process_fix(fix(speed=150, status="Engine Off")) == []


@pytest.mark.parametrize("utc_hour,night", [(23, True), (6, True), (7, False), (12, False), (22, False)])
def test_night_driving_uses_server_offset(utc_hour, night):
    scorer = ViolationScorer(server_time_offset_hours=-1)
    timestamp = DAYTIME.replace(hour=utc_hour, minute=30)
    categories = scorer.triggered_categories(fix(timestamp=timestamp))
    assert (ViolationCategory.NIGHT_DRIVING in categories) is night


def test_harsh_braking_from_event_text():
    scorer = ViolationScorer()
    events = scorer.process_fix(fix(speed=40, event="Harsh Braking detected"))
    assert [e.category for e in events] == [ViolationCategory.HARSH_BRAKING]


@pytest.mark.parametrize("driver,plate", [("UNKNOWN", "ABC123"), ("null", "ABC123"), ("", "ABC123"),
                                          ("John Smith", None)])
def test_unscored_identities(driver, plate):
    scorer = ViolationScorer()
    assert scorer.process_fix(fix(speed=150, driver=driver, plate=plate)) == []
    assert scorer.drivers() == []


@pytest.mark.asyncio
async def test_failed_flush_keeps_records_dirty():
    scorer = ViolationScorer()
    scorer.process_fix(fix(speed=150))
    written = []

    async def broken(records):
        raise ConnectionError("db down")

    async def writer(records):
        written.extend(records)

    assert await scorer.flush(broken) == 0
    assert scorer.pending() == 1

    assert await scorer.flush(writer) == 1
    assert scorer.pending() == 0
    assert written[0]["driver_name"] == "John Smith"
    assert written[0]["speed_violations_count"] == 1
    assert written[0]["current_level"] == "Gold"

    assert await scorer.flush(writer) == 0


def test_load_seeds_state_from_store():
    scorer = ViolationScorer()
    scorer.load([{"driver_name": "Jane", "current_points": 61, "route_violations_count": 45,
                  "route_threshold_exceeded": True}])

    event = scorer.record_violation("Jane", ViolationCategory.ROUTE)
    assert event.count == 46
    assert event.current_points == 60
    assert event.level == "Silver"


def test_snapshot_records_total_violations():
    scorer = ViolationScorer()
    scorer.record_violation("Jane", ViolationCategory.SPEED)
    scorer.record_violation("Jane", ViolationCategory.OTHER)
    snapshot_date = dt.date(2025, 11, 29)

    [row] = scorer.snapshot_records(snapshot_date)
    assert row["snapshot_date"] == snapshot_date
    assert row["total_violations"] == 2
    assert row["speed_violations"] == 1
    assert row["other_violations"] == 1
