import datetime as dt

from fleetguard.alerts import AlertCategory, AlertDebouncer, AlertRecord, cooldown_key

T0 = dt.datetime(2025, 11, 29, 10, 0, tzinfo=dt.timezone.utc)


def later(**kwargs):
    return T0 + dt.timedelta(**kwargs)


def test_duplicate_within_window_is_suppressed():
    debouncer = AlertDebouncer()
    key = cooldown_key("ABC123", 4, AlertCategory.TOLL_GATE)

    assert debouncer.try_fire(key, T0)
    assert not debouncer.try_fire(key, later(minutes=29, seconds=59))
    assert debouncer.try_fire(key, later(minutes=30))
    assert not debouncer.try_fire(key, later(minutes=31))


def test_keys_are_independent():
    debouncer = AlertDebouncer()
    assert debouncer.try_fire(cooldown_key("ABC123", 4, AlertCategory.TOLL_GATE), T0)
    assert debouncer.try_fire(cooldown_key("ABC123", 5, AlertCategory.TOLL_GATE), T0)
    assert debouncer.try_fire(cooldown_key("XYZ999", 4, AlertCategory.TOLL_GATE), T0)
    assert debouncer.try_fire(cooldown_key("ABC123", 4, AlertCategory.HIGH_RISK), T0)


def test_windows_can_be_overridden_by_name():
    debouncer = AlertDebouncer(windows={"border": 10})
    key = cooldown_key(7, "border-1", AlertCategory.BORDER)

    assert debouncer.windows[AlertCategory.BORDER] == dt.timedelta(seconds=10)
    assert debouncer.windows[AlertCategory.HIGH_RISK] == dt.timedelta(minutes=5)
    assert debouncer.try_fire(key, T0)
    assert debouncer.try_fire(key, later(seconds=10))


def test_remaining_and_clear():
    debouncer = AlertDebouncer()
    key = cooldown_key("ABC123", 1, AlertCategory.HIGH_RISK)
    debouncer.try_fire(key, T0)

    assert debouncer.remaining(key, later(minutes=2)) == dt.timedelta(minutes=3)
    assert debouncer.clear(key)
    assert debouncer.remaining(key, later(minutes=2)) == dt.timedelta(0)
    assert debouncer.try_fire(key, later(minutes=2))


def test_sweep_drops_only_expired_entries():
    debouncer = AlertDebouncer()
    debouncer.try_fire(cooldown_key("ABC123", 1, AlertCategory.HIGH_RISK), T0)
    debouncer.try_fire(cooldown_key("ABC123", 2, AlertCategory.TOLL_GATE), T0)

    assert debouncer.sweep(later(minutes=10)) == 1
    assert len(debouncer) == 1
    assert debouncer.sweep(later(minutes=30)) == 1
    assert len(debouncer) == 0


def test_clear_subject():
    debouncer = AlertDebouncer()
    debouncer.try_fire(cooldown_key(7, "a", AlertCategory.BORDER), T0)
    debouncer.try_fire(cooldown_key(7, "b", AlertCategory.DESTINATION), T0)
    debouncer.try_fire(cooldown_key(8, "a", AlertCategory.BORDER), T0)

    assert debouncer.clear_subject(7) == 2
    assert len(debouncer) == 1


def test_record_key_uses_zone_then_reason():
    by_zone = AlertRecord("ABC123", AlertCategory.TOLL_GATE, "at gate", T0, zone_id=4)
    by_reason = AlertRecord("7", AlertCategory.UNAUTHORIZED_STOP, "stopped", T0, reason="Stop points not found")

    assert by_zone.cooldown_key == ("ABC123", "4", AlertCategory.TOLL_GATE)
    assert by_reason.cooldown_key == ("7", "Stop points not found", AlertCategory.UNAUTHORIZED_STOP)
