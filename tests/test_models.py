"""
Unit tests for openf1_replay/data/models.py

Validation of raw API rows into typed telemetry records.
"""
import pytest
from pydantic import ValidationError

from openf1_replay.data.models import (
    CarTelemetrySample,
    DriverInfo,
    LapRecord,
    LocationSample,
    PositionRecord,
    ResourceKind,
    SessionInfo,
    WeatherSample,
    parse_records,
    parse_rows,
)
from openf1_replay.errors import RecordError

from conftest import SESSION_KEY, SESSION_START, session_row


class TestResourceKind:

    @pytest.mark.parametrize("kind,expected", [
        (ResourceKind.LOCATION, True),
        (ResourceKind.CAR_DATA, True),
        (ResourceKind.POSITION, True),
        (ResourceKind.WEATHER, True),
        (ResourceKind.LAPS, False),
    ])
    def test_time_indexed(self, kind, expected):
        assert kind.time_indexed is expected

    def test_values_match_api_resource_names(self):
        assert ResourceKind("car_data") is ResourceKind.CAR_DATA


class TestLocationSample:

    def test_date_maps_to_timestamp(self):
        sample = LocationSample.model_validate({
            "date": "2023-09-17T12:00:01+00:00", "driver_number": "44", "x": 100, "y": -20.5, "z": 3,
        })
        assert sample == LocationSample(driver_number=44, timestamp=SESSION_START + 1, x=100.0, y=-20.5, z=3.0)

    def test_z_is_optional(self):
        sample = LocationSample.model_validate({"date": "2023-09-17T12:00:01Z", "driver_number": 1, "x": 1, "y": 2})
        assert sample.z is None

    def test_frozen(self):
        sample = LocationSample(driver_number=1, timestamp=SESSION_START, x=0.0, y=0.0)
        with pytest.raises(ValidationError):
            sample.x = 5.0

    @pytest.mark.parametrize("row", [
        {"driver_number": 1, "x": 1, "y": 2},                                     # no date
        {"date": "2023-09-17T12:00:01Z", "x": 1, "y": 2},                         # no driver
        {"date": "2023-09-17T12:00:01Z", "driver_number": 1, "y": 2},             # no x
        {"date": None, "driver_number": 1, "x": 1, "y": 2},
        {"date": "garbage", "driver_number": 1, "x": 1, "y": 2},
        {"date": "2023-09-17T12:00:01Z", "driver_number": "one", "x": 1, "y": 2},
        {"date": "2023-09-17T12:00:01Z", "driver_number": 44.7, "x": 1, "y": 2},
        {"date": "2023-09-17T12:00:01Z", "driver_number": 1, "x": "left", "y": 2},
    ])
    def test_invalid_rows_raise(self, row):
        with pytest.raises(ValidationError):
            LocationSample.model_validate(row)


class TestPositionRecord:

    def test_from_row(self):
        record = PositionRecord.model_validate({"date": "2023-09-17T12:10:00Z", "driver_number": 44, "position": 2})
        assert record.position == 2
        assert record.timestamp == pytest.approx(SESSION_START + 600)

    @pytest.mark.parametrize("position", [0, -3, 2.9, "second"])
    def test_position_must_be_a_positive_integer(self, position):
        with pytest.raises(ValidationError):
            PositionRecord.model_validate({"date": "2023-09-17T12:10:00Z", "driver_number": 44, "position": position})

    def test_fractional_driver_number_rejected(self):
        with pytest.raises(ValidationError):
            PositionRecord.model_validate({"date": "2023-09-17T12:10:00Z", "driver_number": 44.7, "position": 2})


class TestCarTelemetrySample:

    def test_from_row(self):
        sample = CarTelemetrySample.model_validate({
            "date": "2023-09-17T12:00:00Z", "driver_number": 1, "speed": 301, "rpm": 11800, "n_gear": 8, "drs": 12,
        })
        assert sample.speed == 301.0
        assert sample.n_gear == 8
        assert sample.throttle is None

    def test_speed_required(self):
        with pytest.raises(ValidationError):
            CarTelemetrySample.model_validate({"date": "2023-09-17T12:00:00Z", "driver_number": 1})


class TestLapRecord:

    def test_missing_optionals(self):
        lap = LapRecord.model_validate({"driver_number": 1, "lap_number": 3, "date_start": None})
        assert lap.date_start is None
        assert lap.lap_duration is None
        assert lap.is_pit_out_lap is False

    @pytest.mark.parametrize("raw,expected", [
        (None, False), (False, False), (True, True), ("false", False), ("true", True), (0, False),
    ])
    def test_is_pit_out_lap(self, raw, expected):
        lap = LapRecord.model_validate({"driver_number": 1, "lap_number": 1, "is_pit_out_lap": raw})
        assert lap.is_pit_out_lap is expected

    def test_unrecognised_pit_out_flag_rejected(self):
        with pytest.raises(ValidationError):
            LapRecord.model_validate({"driver_number": 1, "lap_number": 1, "is_pit_out_lap": "maybe"})

    def test_date_start_parsed(self):
        lap = LapRecord.model_validate({"driver_number": 1, "lap_number": 1, "date_start": "2023-09-17T12:00:00Z"})
        assert lap.date_start == pytest.approx(SESSION_START)


class TestWeatherSample:

    def test_from_row(self):
        sample = WeatherSample.model_validate({"date": "2023-09-17T12:00:00Z", "air_temp": 30.1, "rainfall": 0})
        assert sample.timestamp == pytest.approx(SESSION_START)
        assert sample.air_temp == pytest.approx(30.1)
        assert sample.humidity is None


class TestSessionInfo:

    def test_from_row(self):
        info = SessionInfo.model_validate(session_row(SESSION_KEY))
        assert info.session_key == SESSION_KEY
        assert info.duration == pytest.approx(3600)
        assert str(info) == "2023 Singapore Race"

    def test_end_must_follow_start(self):
        row = session_row(SESSION_KEY)
        row["date_end"] = row["date_start"]
        with pytest.raises(ValidationError):
            SessionInfo.model_validate(row)

    def test_str_falls_back_to_key(self):
        info = SessionInfo(session_key=7, date_start=SESSION_START, date_end=SESSION_START + 1)
        assert str(info) == "Session 7"


class TestDriverInfo:

    def test_code_prefers_acronym(self):
        assert DriverInfo(driver_number=44, name_acronym="HAM").code == "HAM"
        assert DriverInfo(driver_number=44).code == "#44"

    def test_broadcast_name_fallback(self):
        driver = DriverInfo.model_validate({"driver_number": 44, "broadcast_name": "L HAMILTON"})
        assert driver.name_acronym == "L HAMILTON"


class TestParseRows:

    def test_invalid_rows_are_dropped(self):
        payload = [
            {"date": "2023-09-17T12:00:01Z", "driver_number": 1, "position": 1},
            {"date": "2023-09-17T12:00:01Z", "driver_number": 11},
            "not a row",
            {"date": "2023-09-17T12:00:01Z", "driver_number": 44.7, "position": 2.9},
            {"date": "2023-09-17T12:00:01Z", "driver_number": 44, "position": 3},
        ]
        records = parse_rows(PositionRecord, payload)
        assert [r.driver_number for r in records] == [1, 44]

    def test_non_list_payload_raises(self):
        with pytest.raises(RecordError):
            parse_rows(PositionRecord, {"detail": "error"})

    def test_parse_records_by_kind(self):
        records = parse_records("position", [{"date": "2023-09-17T12:00:01Z", "driver_number": 1, "position": 1}])
        assert isinstance(records[0], PositionRecord)
