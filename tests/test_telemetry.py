import datetime as dt

import pytest

from fleetguard.crud import to_dt
from fleetguard.exceptions import TelemetryError
from fleetguard.telemetry import parse_fix, try_parse_fix

from conftest import payload

UTC = dt.timezone.utc
RECEIVED = dt.datetime(2025, 11, 29, 12, 0, tzinfo=UTC)


def test_parse_full_payload():
    fix = parse_fix(payload(NameEvent="Vehicle In Motion", Statuses="Engine On", Mileage="12345",
                            Geozone="N1 North"))
    assert fix.plate == "ABC123"
    assert fix.driver_name == "John Smith"
    assert fix.speed_kmh == 60
    assert fix.timestamp == dt.datetime(2025, 11, 29, 10, 0, tzinfo=UTC)
    assert fix.event_text == "Vehicle In Motion"
    assert fix.status_text == "Engine On"
    assert fix.odometer == 12345
    assert fix.geozone == "N1 North"


def test_field_names_are_case_insensitive():
    fix = parse_fix({"plate": "X1", "LATITUDE": "-26.1", "longitude": 28.0, "speed": "12.5"})
    assert fix.plate == "X1"
    assert fix.position == (-26.1, 28.0)
    assert fix.speed_kmh == 12.5


@pytest.mark.parametrize("data", [
    {"Latitude": None, "Longitude": 28.0},
    {"Longitude": 28.0},
    {"Latitude": 0, "Longitude": 0},
    {"Latitude": "north", "Longitude": 28.0},
    {"Latitude": 95, "Longitude": 28.0},
    {"Latitude": -26.0, "Longitude": 28.0, "Speed": "fast"},
    {"Latitude": -26.0, "Longitude": 28.0, "LocTime": "yesterday-ish"},
    {"Latitude": 10 ** 400, "Longitude": 28.0},
    {"Latitude": -26.0, "Longitude": 28.0, "Speed": -10 ** 400},
    {"Latitude": -26.0, "Longitude": 28.0, "LocTime": 1e20},
    {"Latitude": -26.0, "Longitude": 28.0, "LocTime": -1e20},
])
def test_unusable_fixes_are_rejected(data):
    with pytest.raises(TelemetryError):
        parse_fix(data, RECEIVED)
    assert try_parse_fix(data, RECEIVED) is None


def test_non_dict_payload_is_rejected():
    with pytest.raises(TelemetryError):
        parse_fix(["not", "a", "fix"])


def test_defaults_for_missing_speed_and_time():
    fix = parse_fix({"Latitude": -26.0, "Longitude": 28.0}, RECEIVED)
    assert fix.speed_kmh == 0
    assert fix.timestamp == RECEIVED
    assert fix.plate is None


def test_epoch_timestamps():
    seconds = RECEIVED.timestamp()
    assert parse_fix({"Latitude": 1, "Longitude": 1, "LocTime": seconds}).timestamp == RECEIVED
    assert parse_fix({"Latitude": 1, "Longitude": 1, "LocTime": seconds * 1000}).timestamp == RECEIVED


def test_zulu_suffix_is_understood():
    fix = parse_fix({"Latitude": 1, "Longitude": 1, "LocTime": "2025-11-29T12:00:00Z"})
    assert fix.timestamp == RECEIVED


def test_garbage_mileage_does_not_drop_the_fix():
    fix = parse_fix({"Latitude": 1, "Longitude": 1, "Mileage": "n/a"}, RECEIVED)
    assert fix.odometer is None
    assert parse_fix({"Latitude": 1, "Longitude": 1, "Mileage": 10 ** 400}, RECEIVED).odometer is None


def test_vehicle_key_prefers_plate():
    assert parse_fix(payload(plate=" AbC123 ")).vehicle_key == "abc123"
    assert parse_fix(payload(plate=None, driver="Jane")).vehicle_key == "jane"


def test_to_dt_makes_naive_times_utc():
    assert to_dt("2025-11-29T12:00:00") == RECEIVED
    assert to_dt(dt.datetime(2025, 11, 29, 12, 0)) == RECEIVED
    assert to_dt(None) is None
