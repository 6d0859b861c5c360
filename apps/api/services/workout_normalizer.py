"""
Workout Unit & Pace Normalizer

Pure functions, no I/O. Turns a decoded source record (any declared units)
into canonical SI values plus derived pace.

RULES:
- Duration is seconds, distance is meters, energy kcal, temperature Celsius.
- Pace (sec/km) exists only when distance > 0. Otherwise it is None:
  never 0, never infinite, never a placeholder.
- Only workouts whose name contains "run" (case-insensitive) enter the
  pipeline; everything else is dropped before identity resolution.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

METERS_PER_MILE = 1609.344
METERS_PER_FOOT = 0.3048
KJ_PER_KCAL = 4.184

MAX_DURATION_SECONDS = 7 * 24 * 3600
MAX_DISTANCE_METERS = 1_000_000
MIN_HEART_RATE = 30
MAX_HEART_RATE = 250

_DURATION_FACTORS = {
    "s": 1.0, "sec": 1.0, "secs": 1.0, "second": 1.0, "seconds": 1.0,
    "min": 60.0, "mins": 60.0, "minute": 60.0, "minutes": 60.0,
    "h": 3600.0, "hr": 3600.0, "hrs": 3600.0, "hour": 3600.0, "hours": 3600.0,
}

_DISTANCE_FACTORS = {
    "m": 1.0, "meter": 1.0, "meters": 1.0, "metre": 1.0, "metres": 1.0,
    "km": 1000.0, "kilometer": 1000.0, "kilometers": 1000.0,
    "mi": METERS_PER_MILE, "mile": METERS_PER_MILE, "miles": METERS_PER_MILE,
}

_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S %z",  # Health Auto Export: "2025-01-15 08:00:00 -0500"
    "%Y-%m-%d %H:%M:%S",
)


class NormalizationError(ValueError):
    """A record that cannot be turned into a canonical workout."""

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass
class RawWorkout:
    """A source record after schema decoding, before unit conversion."""
    source: str
    name: str
    start: Any
    end: Any
    duration: float
    duration_units: str = "s"
    distance: Optional[float] = None
    distance_units: str = "m"
    source_id: Optional[str] = None
    client_id: Optional[str] = None
    active_energy: Optional[float] = None
    active_energy_units: str = "kcal"
    avg_heart_rate: Optional[float] = None
    max_heart_rate: Optional[float] = None
    elevation_gain: Optional[float] = None
    elevation_units: str = "m"
    temperature: Optional[float] = None
    temperature_units: str = "degC"
    weather: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NormalizedWorkout:
    """Canonical SI workout, ready for identity resolution."""
    source: str
    name: str
    date_local: date
    start_time: datetime
    end_time: datetime
    duration_seconds: float
    distance_meters: float
    avg_pace_seconds_per_km: Optional[float]
    source_id: Optional[str] = None
    client_id: Optional[str] = None
    energy_burned_kcal: Optional[float] = None
    avg_heart_rate: Optional[float] = None
    max_heart_rate: Optional[float] = None
    elevation_gain_meters: Optional[float] = None
    weather_temp_c: Optional[float] = None
    weather_condition: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def year(self) -> int:
        return self.date_local.year

    def supplemental(self) -> Dict[str, Any]:
        return {
            "energy_burned_kcal": self.energy_burned_kcal,
            "avg_heart_rate": self.avg_heart_rate,
            "max_heart_rate": self.max_heart_rate,
            "elevation_gain_meters": self.elevation_gain_meters,
            "weather_temp_c": self.weather_temp_c,
            "weather_condition": self.weather_condition,
        }


def is_running_workout(name: Optional[str]) -> bool:
    return bool(name) and "run" in name.lower()


def _unit_key(units: Optional[str]) -> str:
    return (units or "").strip().lower()


def to_seconds(qty: float, units: Optional[str] = "s") -> float:
    factor = _DURATION_FACTORS.get(_unit_key(units) or "s")
    if factor is None:
        raise NormalizationError("unsupported_unit", f"Unsupported duration unit: {units!r}")
    return float(qty) * factor


def to_meters(qty: float, units: Optional[str] = "m") -> float:
    factor = _DISTANCE_FACTORS.get(_unit_key(units) or "m")
    if factor is None:
        raise NormalizationError("unsupported_unit", f"Unsupported distance unit: {units!r}")
    return float(qty) * factor


def to_kcal(qty: Optional[float], units: Optional[str] = "kcal") -> Optional[float]:
    if qty is None:
        return None
    key = _unit_key(units) or "kcal"
    if key in ("kcal", "cal", "calories"):
        return float(qty)
    if key == "kj":
        return float(qty) / KJ_PER_KCAL
    raise NormalizationError("unsupported_unit", f"Unsupported energy unit: {units!r}")


def to_elevation_meters(qty: Optional[float], units: Optional[str] = "m") -> Optional[float]:
    if qty is None:
        return None
    key = _unit_key(units) or "m"
    if key in ("m", "meter", "meters"):
        return float(qty)
    if key in ("ft", "foot", "feet"):
        return float(qty) * METERS_PER_FOOT
    raise NormalizationError("unsupported_unit", f"Unsupported elevation unit: {units!r}")


def to_celsius(qty: Optional[float], units: Optional[str] = "degC") -> Optional[float]:
    if qty is None:
        return None
    key = _unit_key(units) or "degc"
    if key in ("degc", "c", "celsius"):
        return float(qty)
    if key in ("degf", "f", "fahrenheit"):
        return (float(qty) - 32.0) * 5.0 / 9.0
    raise NormalizationError("unsupported_unit", f"Unsupported temperature unit: {units!r}")


def calculate_pace_seconds_per_km(duration_seconds: float, distance_meters: Optional[float]) -> Optional[float]:
    """Seconds per kilometer, or None when there is no distance to divide by."""
    if not distance_meters or distance_meters <= 0:
        return None
    return duration_seconds / (distance_meters / 1000)


def parse_timestamp(value: Any) -> datetime:
    """
    Parse a source timestamp, keeping the offset it was reported in.

    Naive values are taken as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        parsed = None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            for fmt in _TIMESTAMP_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            raise NormalizationError("invalid_timestamp", f"Unparseable timestamp: {value!r}")
    else:
        raise NormalizationError("invalid_timestamp", f"Missing or invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _check_heart_rate(value: Optional[float], label: str) -> Optional[float]:
    if value is None:
        return None
    if not MIN_HEART_RATE <= value <= MAX_HEART_RATE:
        raise NormalizationError("out_of_range", f"{label} {value} outside {MIN_HEART_RATE}-{MAX_HEART_RATE}")
    return float(value)


def normalize_workout(raw: RawWorkout) -> NormalizedWorkout:
    """
    Convert one decoded record to canonical units.

    Raises:
        NormalizationError: unknown units, unparseable timestamps, or
            values outside physical bounds.
    """
    start = parse_timestamp(raw.start)
    end = parse_timestamp(raw.end)
    if end < start:
        raise NormalizationError("invalid_interval", "Workout ends before it starts")

    if raw.duration is None:
        raise NormalizationError("missing_duration", "Workout has no duration")
    duration_seconds = to_seconds(raw.duration, raw.duration_units)
    if duration_seconds <= 0:
        raise NormalizationError("out_of_range", "Duration must be greater than zero")
    if duration_seconds > MAX_DURATION_SECONDS:
        raise NormalizationError("out_of_range", "Duration exceeds 7 days")

    distance_meters = to_meters(raw.distance, raw.distance_units) if raw.distance is not None else 0.0
    if distance_meters < 0:
        raise NormalizationError("out_of_range", "Distance must not be negative")
    if distance_meters > MAX_DISTANCE_METERS:
        raise NormalizationError("out_of_range", "Distance exceeds 1000 km")

    source_id = raw.source_id.strip() if isinstance(raw.source_id, str) else None

    return NormalizedWorkout(
        source=raw.source,
        name=raw.name,
        # Local calendar date is taken before converting to UTC.
        date_local=start.date(),
        start_time=start.astimezone(timezone.utc),
        end_time=end.astimezone(timezone.utc),
        duration_seconds=duration_seconds,
        distance_meters=distance_meters,
        avg_pace_seconds_per_km=calculate_pace_seconds_per_km(duration_seconds, distance_meters),
        source_id=source_id or None,
        client_id=raw.client_id,
        energy_burned_kcal=to_kcal(raw.active_energy, raw.active_energy_units),
        avg_heart_rate=_check_heart_rate(raw.avg_heart_rate, "Average heart rate"),
        max_heart_rate=_check_heart_rate(raw.max_heart_rate, "Max heart rate"),
        elevation_gain_meters=to_elevation_meters(raw.elevation_gain, raw.elevation_units),
        weather_temp_c=to_celsius(raw.temperature, raw.temperature_units),
        weather_condition=raw.weather or None,
        raw_payload=raw.raw_payload,
    )
