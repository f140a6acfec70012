"""Alarm rule engine tests."""

import pytest

from iiot_listener.alarm_rules import (
    AlarmEvent,
    AlarmRuleEngine,
    SOURCE_EXPLICIT,
    SOURCE_PLACEHOLDER,
    format_value,
)
from iiot_listener.delta_detector import DeltaResult


@pytest.fixture
def engine(config) -> AlarmRuleEngine:
    return AlarmRuleEngine(config)


@pytest.fixture
def device(config):
    return config.devices["esp32_02"]


def _oil_delta(previous, changed=True) -> DeltaResult:
    return DeltaResult(
        device_id="esp32_02",
        significant=True,
        relevant_changed=changed,
        changed_params=frozenset({"oilLevel"}) if changed else frozenset(),
        previous={"oilLevel": previous},
        thresholds={"temperature": 0.5, "humidity": 2.0, "oilLevel": 1.0},
    )


_NO_CHANGE = DeltaResult(
    device_id="esp32_02",
    significant=True,
    relevant_changed=False,
    changed_params=frozenset(),
)


# =============================================================================
# BANDS
# =============================================================================

class TestBands:

    @pytest.mark.parametrize("parameter,value,code", [
        ("temperature", 50.1, "IO_ALR_100"),
        ("temperature", 50, None),
        ("temperature", 10, None),
        ("temperature", 9.9, "IO_ALR_101"),
        ("humidity", 81, "IO_ALR_103"),
        ("humidity", 80, None),
        ("humidity", 19.5, "IO_ALR_104"),
        ("oilLevel", -1, "IO_ALR_108"),
        ("oilLevel", 0, "IO_ALR_108"),
        ("oilLevel", 10, "IO_ALR_107"),
        ("oilLevel", 10.5, "IO_ALR_106"),
        ("oilLevel", 30, "IO_ALR_106"),
        ("oilLevel", 50, "IO_ALR_105"),
        ("oilLevel", 50.1, None),
    ])
    def test_band_boundaries(self, engine, parameter, value, code):
        band = engine.match_band(parameter, value)
        assert (band.code if band else None) == code

    def test_band_alarm_fields(self, engine, device, reading, payload):
        r = reading(**payload(temperature=51))

        alarm = engine.evaluate_band("temperature", 51.0, r, device)

        assert alarm.alarm_code == "IO_ALR_100"
        assert alarm.description == "High temperature detected (> Threshold) - Plant C"
        assert alarm.value == "51"
        assert alarm.plant_name == "Plant C"
        assert alarm.device_number == 1
        assert alarm.telemetry_key_id == 1
        assert alarm.root_cause_id == 1
        assert alarm.notify
        assert alarm.device_fields == r.fields

    def test_half_tank_is_recorded_but_not_notified(self, engine, device, reading, payload):
        alarm = engine.evaluate_band("oilLevel", 45.0, reading(**payload(oilLevel=45)), device)
        assert alarm.alarm_code == "IO_ALR_105"
        assert not alarm.notify

    def test_placeholder_alarms_never_notify(self, engine, device, reading, payload):
        alarm = engine.evaluate_band(
            "oilLevel", 5.0, reading(**payload(oilLevel=5)), device, source=SOURCE_PLACEHOLDER,
        )
        assert alarm.alarm_code == "IO_ALR_107"
        assert alarm.source == SOURCE_PLACEHOLDER
        assert not alarm.notify


# =============================================================================
# OIL LEVEL RE-CHECK
# =============================================================================

class TestOilLevel:

    def test_oil_alarm_needs_a_previous_value(self, engine, device, reading, payload):
        alarms = engine.evaluate(reading(**payload(oilLevel=30)), _oil_delta(None), device)
        assert alarms == []

    def test_oil_alarm_on_real_drop(self, engine, device, reading, payload):
        alarms = engine.evaluate(reading(**payload(oilLevel=5)), _oil_delta(30.0), device)

        assert [a.alarm_code for a in alarms] == ["IO_ALR_107"]
        assert alarms[0].description == "Oil level at 10% - Plant C"
        assert alarms[0].telemetry_key_id == 3

    def test_oil_not_flagged_by_detector(self, engine, device, reading, payload):
        alarms = engine.evaluate(reading(**payload(oilLevel=5)), _NO_CHANGE, device)
        assert alarms == []

    def test_recheck_rejects_sub_tolerance_difference(self, engine, reading, payload):
        delta = _oil_delta(5.5)
        assert not engine.oil_level_rechecked(reading(**payload(oilLevel=5)), delta)

    def test_empty_tank(self, engine, device, reading, payload):
        alarms = engine.evaluate(reading(**payload(oilLevel=0)), _oil_delta(20.0), device)
        assert [a.alarm_code for a in alarms] == ["IO_ALR_108"]
        assert alarms[0].description == "Oil tank empty - Plant C"


# =============================================================================
# EXPLICIT ALERTS
# =============================================================================

class TestExplicitAlerts:

    def test_refill_from_alerts_list(self, engine, device, reading, payload):
        r = reading(**payload(alerts=[{"code": "IO_ALR_109", "desc": "Oil refilled", "value": 80}]))

        alarm = engine.explicit_alarm(r, device)

        assert alarm.alarm_code == "IO_ALR_109"
        assert alarm.description == "Oil refilled"
        assert alarm.value == "80"
        assert alarm.telemetry_key_id == 3
        assert alarm.source == SOURCE_EXPLICIT
        assert alarm.notify

    def test_generic_code_is_stored_but_not_notified(self, engine, device, reading, payload):
        alarm = engine.explicit_alarm(reading(**payload(alert_code="IO_ALR_110")), device)

        assert alarm.alarm_code == "IO_ALR_110"
        assert alarm.value == "0"
        assert alarm.telemetry_key_id is None
        assert not alarm.notify

    def test_first_alert_wins_over_alert_code(self, engine, device, reading, payload):
        r = reading(**payload(
            alerts=[{"code": "IO_ALR_111"}, {"code": "IO_ALR_112"}],
            alert_code="IO_ALR_113",
        ))
        assert engine.explicit_alarm(r, device).alarm_code == "IO_ALR_111"

    @pytest.mark.parametrize("code", ["WARN_1", "", "io_alr_100"])
    def test_code_without_prefix_is_ignored(self, engine, device, reading, payload, code):
        assert engine.explicit_alarm(reading(**payload(alert_code=code)), device) is None


# =============================================================================
# EVALUATION ORDER
# =============================================================================

class TestEvaluate:

    def test_in_band_reading_produces_nothing(self, engine, device, reading, payload):
        assert engine.evaluate(reading(**payload()), _NO_CHANGE, device) == []

    def test_fixed_order(self, engine, device, reading, payload):
        r = reading(**payload(temperature=55, humidity=10, oilLevel=5, alert_code="IO_ALR_110"))

        alarms = engine.evaluate(r, _oil_delta(30.0), device)

        assert [a.alarm_code for a in alarms] == [
            "IO_ALR_100", "IO_ALR_104", "IO_ALR_107", "IO_ALR_110",
        ]

    def test_at_most_one_alarm_per_parameter(self, engine, device, reading, payload):
        alarms = engine.evaluate(reading(**payload(oilLevel=-5)), _oil_delta(30.0), device)
        assert len([a for a in alarms if a.parameter == "oilLevel"]) == 1

    def test_startup_zeros_raise_nothing(self, engine, device, reading, payload):
        r = reading(**payload(temperature=0, humidity=0, msgCount=0))
        assert engine.evaluate(r, _NO_CHANGE, device) == []

    def test_zeros_after_startup_raise_low_bands(self, engine, device, reading, payload):
        alarms = engine.evaluate(reading(**payload(temperature=0, humidity=0, msgCount=4)), _NO_CHANGE, device)
        assert [a.alarm_code for a in alarms] == ["IO_ALR_101", "IO_ALR_104"]

    def test_device_fields_are_a_private_copy(self, engine, device, reading, payload):
        r = reading(**payload(temperature=55))
        (alarm,) = engine.evaluate(r, _NO_CHANGE, device)

        alarm.device_fields["temperature"] = -1

        assert r.fields["temperature"] == 55
        assert alarm.device_fields is not r.fields


class TestAlarmEvent:

    def test_requires_code(self):
        with pytest.raises(ValueError):
            AlarmEvent(
                alarm_code="", description="", value="0", parameter="alert",
                device_name="esp32_02", device_id="esp32_02", plant_name="Plant C",
            )

    def test_requires_device(self):
        with pytest.raises(ValueError):
            AlarmEvent(
                alarm_code="IO_ALR_100", description="", value="0", parameter="alert",
                device_name="", device_id="", plant_name="Plant C",
            )

    @pytest.mark.parametrize("value,text", [(30.0, "30"), (25.5, "25.5"), (-1, "-1")])
    def test_format_value(self, value, text):
        assert format_value(value) == text
