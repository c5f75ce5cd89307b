"""
Telemetry record types.

Every OpenF1 resource gets its own frozen pydantic model. Rows coming off
the wire go through ``parse_rows`` so the rest of the engine never sees a
half-filled dict. OpenF1 calls the sample time ``date``; the models expose
it as ``timestamp`` in epoch seconds.
"""
import logging
from enum import Enum
from typing import Annotated, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..errors import RecordError
from ..lib.time import parse_timestamp

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    LOCATION = "location"
    CAR_DATA = "car_data"
    POSITION = "position"
    WEATHER = "weather"
    LAPS = "laps"

    @property
    def time_indexed(self) -> bool:
        return self is not ResourceKind.LAPS


def _epoch_seconds(value):
    if value is None:
        return None
    ts = parse_timestamp(value)
    if ts is None:
        raise ValueError(f"not a timestamp: {value!r}")
    return ts


EpochSeconds = Annotated[float, BeforeValidator(_epoch_seconds)]


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


class LocationSample(_Record):
    """Car position on track (~3.7 Hz)."""

    driver_number: int
    timestamp: EpochSeconds = Field(alias="date")
    x: float
    y: float
    z: Optional[float] = None


class CarTelemetrySample(_Record):
    """Car sensor readings (~3.7 Hz)."""

    driver_number: int
    timestamp: EpochSeconds = Field(alias="date")
    speed: float
    rpm: Optional[int] = None
    n_gear: Optional[int] = None
    throttle: Optional[float] = None
    brake: Optional[float] = None
    drs: Optional[int] = None


class PositionRecord(_Record):
    """Race position reported for a driver at a moment in time."""

    driver_number: int
    timestamp: EpochSeconds = Field(alias="date")
    position: int = Field(ge=1)


class LapRecord(_Record):
    driver_number: int
    lap_number: int
    date_start: Optional[EpochSeconds] = None
    lap_duration: Optional[float] = None
    duration_sector_1: Optional[float] = None
    duration_sector_2: Optional[float] = None
    duration_sector_3: Optional[float] = None
    i1_speed: Optional[float] = None
    i2_speed: Optional[float] = None
    st_speed: Optional[float] = None
    is_pit_out_lap: bool = False

    @field_validator("is_pit_out_lap", mode="before")
    @classmethod
    def null_pit_out_is_false(cls, value):
        return False if value is None else value


class WeatherSample(_Record):
    timestamp: EpochSeconds = Field(alias="date")
    air_temp: Optional[float] = None
    track_temp: Optional[float] = None
    humidity: Optional[float] = None
    rainfall: Optional[float] = None
    wind_speed: Optional[float] = None
    wind_direction: Optional[float] = None


class SessionInfo(_Record):
    session_key: int
    date_start: EpochSeconds
    date_end: EpochSeconds
    session_name: Optional[str] = None
    session_type: Optional[str] = None
    circuit_short_name: Optional[str] = None
    country_name: Optional[str] = None
    year: Optional[int] = None

    @model_validator(mode="after")
    def check_end_after_start(self):
        if self.date_end <= self.date_start:
            raise ValueError("session date_end must be after date_start")
        return self

    @property
    def duration(self) -> float:
        return self.date_end - self.date_start

    def __str__(self):
        parts = [p for p in (str(self.year or ""), self.country_name, self.session_name) if p]
        return " ".join(parts) or f"Session {self.session_key}"


class DriverInfo(_Record):
    driver_number: int
    name_acronym: Optional[str] = None
    full_name: Optional[str] = None
    team_name: Optional[str] = None
    team_colour: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def acronym_from_broadcast_name(cls, data):
        if isinstance(data, dict) and not data.get("name_acronym") and data.get("broadcast_name"):
            data = {**data, "name_acronym": data["broadcast_name"]}
        return data

    @property
    def code(self) -> str:
        return self.name_acronym or f"#{self.driver_number}"


RECORD_TYPES = {
    ResourceKind.LOCATION: LocationSample,
    ResourceKind.CAR_DATA: CarTelemetrySample,
    ResourceKind.POSITION: PositionRecord,
    ResourceKind.WEATHER: WeatherSample,
    ResourceKind.LAPS: LapRecord,
}


def parse_rows(record_cls, payload) -> List:
    """
    Validate raw API rows into records of ``record_cls``.

    Rows that fail validation are dropped and counted in a single warning.
    A payload that is not a list raises ``RecordError``.
    """
    if not isinstance(payload, list):
        raise RecordError(f"expected a JSON list, got {type(payload).__name__}")

    records = []
    dropped = 0
    for row in payload:
        try:
            records.append(record_cls.model_validate(row))
        except ValidationError as e:
            dropped += 1
            logger.debug("Dropping %s row: %s", record_cls.__name__, e)
    if dropped:
        logger.warning("Dropped %d of %d invalid %s rows", dropped, len(payload), record_cls.__name__)
    return records


def parse_records(kind: ResourceKind, payload) -> List:
    return parse_rows(RECORD_TYPES[ResourceKind(kind)], payload)
