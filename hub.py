import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from detections import (
    DEFAULT_CAPACITY,
    DEFAULT_DESCRIPTION,
    DetectionEventWindow,
    DetectionRecord,
    ImagePayload,
)
from reporting import MONTHLY_DAYS, EnergyReport, build_energy_report

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_POWER_W = {"led": 20.0, "fan": 50.0, "fog": 100.0, "heater": 150.0}
DEFAULT_PRICE_PER_KWH = 2500.0
DEFAULT_MAX_HISTORY = 1000
DEFAULT_TIMEZONE = "UTC"
DEFAULT_CONFIG: Dict[str, Any] = {
    "device_power_w": dict(DEFAULT_DEVICE_POWER_W),
    "price_per_kwh": DEFAULT_PRICE_PER_KWH,
    "max_history": DEFAULT_MAX_HISTORY,
    "detection_capacity": DEFAULT_CAPACITY,
    "monthly_days": MONTHLY_DAYS,
    "timezone": DEFAULT_TIMEZONE,
}


class HubError(Exception):
    pass


class ValidationError(HubError):
    pass


class Location(str, Enum):
    FLOOR1 = "floor1"
    FLOOR2 = "floor2"


class DeviceKind(str, Enum):
    LED = "led"
    FAN = "fan"
    FOG = "fog"
    HEATER = "heater"


class DeviceState(str, Enum):
    ON = "ON"
    OFF = "OFF"


def parse_location(raw: Any) -> Location:
    try:
        return Location(str(raw or "").strip().lower())
    except ValueError:
        raise ValidationError(f"Invalid location: {raw!r}") from None


def parse_device(raw: Any) -> DeviceKind:
    try:
        return DeviceKind(str(raw or "").strip().lower())
    except ValueError:
        raise ValidationError("Invalid device") from None


def parse_state(raw: Any) -> DeviceState:
    if isinstance(raw, bool):
        return DeviceState.ON if raw else DeviceState.OFF
    try:
        return DeviceState(str(raw or "").strip().upper())
    except ValueError:
        raise ValidationError("State must be 'ON' or 'OFF'") from None


def coerce_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def parse_positive(raw: Any, label: str) -> float:
    value = coerce_float(raw)
    if value is None or value <= 0:
        raise ValidationError(f"Invalid {label}")
    return value


def make_day_key(tz_name: str = DEFAULT_TIMEZONE) -> Callable[[float], str]:
    """Return a function mapping an epoch timestamp to its ISO calendar day in ``tz_name``."""
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown time zone: {tz_name!r}") from None

    def day_key(now: float) -> str:
        return datetime.fromtimestamp(now, tz).date().isoformat()

    return day_key


def iso_timestamp(ts: float) -> str:
    text = datetime.fromtimestamp(ts, timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def _to_ms(now: float) -> int:
    return int(round(now * 1000))


@dataclass
class LedgerEntry:
    last_state: DeviceState = DeviceState.OFF
    last_change_ms: int = 0
    accumulated_on_ms: int = 0

    def open_interval_ms(self, now_ms: int) -> int:
        if self.last_state is not DeviceState.ON:
            return 0
        return max(0, now_ms - self.last_change_ms)


class RuntimeLedger:
    """Cumulative ON time per (location, device).

    ``accumulated_on_ms`` holds closed intervals only. A device that is
    currently ON contributes ``now - last_change_ms`` at read time.
    """

    def __init__(self, now_ms: int) -> None:
        self.entries: Dict[Tuple[Location, DeviceKind], LedgerEntry] = {}
        self.reset(now_ms)

    def reset(self, now_ms: int) -> None:
        self.entries = {
            (location, device): LedgerEntry(last_change_ms=now_ms)
            for location in Location
            for device in DeviceKind
        }

    def record_transition(self, location: Location, device: DeviceKind, new_state: DeviceState, now_ms: int) -> LedgerEntry:
        # every call is a flush point, ON->ON included
        entry = self.entries[(location, device)]
        if now_ms < entry.last_change_ms:
            logger.warning(
                "Clock moved backward for %s/%s (%d ms); open interval folded as zero",
                location.value,
                device.value,
                entry.last_change_ms - now_ms,
            )
        entry.accumulated_on_ms += entry.open_interval_ms(now_ms)
        entry.last_state = new_state
        entry.last_change_ms = now_ms
        return entry

    def runtime_seconds(self, location: Location, device: DeviceKind, now_ms: int) -> int:
        entry = self.entries[(location, device)]
        return (entry.accumulated_on_ms + entry.open_interval_ms(now_ms)) // 1000

    def state(self, location: Location, device: DeviceKind) -> DeviceState:
        return self.entries[(location, device)].last_state


class DailyRolloverCoordinator:
    """Lazily resets daily state when the calendar day changes.

    Callers invoke ``check`` before touching ledgers or detections; it is a
    single day-key comparison when nothing changed.
    """

    def __init__(self, day_key: Callable[[float], str], on_rollover: Callable[[str, str, float], None], now: float) -> None:
        self.day_key = day_key
        self.on_rollover = on_rollover
        self.active_day = day_key(now)
        self.rollovers = 0

    def check(self, now: float) -> bool:
        today = self.day_key(now)
        if today == self.active_day:
            return False
        if today < self.active_day:
            logger.warning("Day key went backward (%s -> %s); daily reset skipped", self.active_day, today)
            return False
        previous = self.active_day
        self.active_day = today
        self.rollovers += 1
        self.on_rollover(previous, today, now)
        return True


@dataclass
class SensorReading:
    timestamp: float
    temperature: float
    humidity: float
    devices: Dict[str, str] = field(default_factory=dict)

    def iso_timestamp(self) -> str:
        return iso_timestamp(self.timestamp)


class SensorHistory:
    def __init__(self, max_len: int = DEFAULT_MAX_HISTORY) -> None:
        self.max_len = max_len
        self._buffers: Dict[Location, Deque[SensorReading]] = {
            location: deque(maxlen=max_len) for location in Location
        }

    def append(self, location: Location, reading: SensorReading) -> None:
        self._buffers[location].append(reading)

    def clear(self, location: Location) -> None:
        self._buffers[location].clear()

    def items(self, location: Location) -> List[SensorReading]:
        return list(self._buffers[location])


class TariffConfig:
    def __init__(self, price_per_kwh: float, power_w: Dict[str, float]) -> None:
        self.price_per_kwh = parse_positive(price_per_kwh, "price")
        self.power_w: Dict[DeviceKind, float] = {}
        for device in DeviceKind:
            self.power_w[device] = parse_positive(power_w.get(device.value, DEFAULT_DEVICE_POWER_W[device.value]), "power")

    def set_price(self, price_per_kwh: Any) -> float:
        self.price_per_kwh = parse_positive(price_per_kwh, "price")
        return self.price_per_kwh

    def set_power(self, device: DeviceKind, watts: Any) -> float:
        self.power_w[device] = parse_positive(watts, "power")
        return self.power_w[device]

    def power_by_name(self) -> Dict[str, float]:
        return {device.value: watts for device, watts in self.power_w.items()}


def merge_config(overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    merged = dict(DEFAULT_CONFIG)
    merged["device_power_w"] = dict(DEFAULT_DEVICE_POWER_W)
    for key, value in (overrides or {}).items():
        if key == "device_power_w" and isinstance(value, dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


class Hub:
    """Owns every piece of mutable hub state.

    All public methods take the same re-entrant lock and run the daily
    rollover check first, so a caller never sees a half-reset ledger or a
    detection window mid-rotation. ``now`` defaults to ``clock()`` and is
    an epoch timestamp in seconds.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
        day_key: Optional[Callable[[float], str]] = None,
    ) -> None:
        self.config = merge_config(config)
        self.clock = clock
        self.lock = threading.RLock()
        self.monthly_days = int(self.config["monthly_days"])
        now = clock()
        self.tariff = TariffConfig(self.config["price_per_kwh"], self.config["device_power_w"])
        self.ledger = RuntimeLedger(_to_ms(now))
        self.history = SensorHistory(int(self.config["max_history"]))
        self.detections = DetectionEventWindow(int(self.config["detection_capacity"]))
        self.latest: Dict[Location, Dict[str, float]] = {
            location: {"temperature": 0.0, "humidity": 0.0} for location in Location
        }
        self._last_detection_id = 0
        self.rollover = DailyRolloverCoordinator(
            day_key or make_day_key(str(self.config["timezone"])),
            self._on_rollover,
            now,
        )

    # -- rollover ---------------------------------------------------------

    def _now(self, now: Optional[float]) -> float:
        return self.clock() if now is None else now

    def _on_rollover(self, previous: str, today: str, now: float) -> None:
        self.ledger.reset(_to_ms(now))
        for location in Location:
            self.history.clear(location)
        # one shift per reset, however many days were skipped
        self.detections.rotate()
        logger.info("Daily reset completed: %s (previous %s)", today, previous, extra={"date": today})

    def check_rollover(self, now: Optional[float] = None) -> bool:
        with self.lock:
            return self.rollover.check(self._now(now))

    @property
    def active_day(self) -> str:
        with self.lock:
            return self.rollover.active_day

    # -- devices ----------------------------------------------------------

    def set_device_state(self, location: Location, device: DeviceKind, state: DeviceState, now: Optional[float] = None) -> DeviceState:
        with self.lock:
            now = self._now(now)
            self.rollover.check(now)
            self.ledger.record_transition(location, device, state, _to_ms(now))
        logger.info(
            "%s - %s: %s",
            location.value,
            device.value.upper(),
            state.value,
            extra={"floor": location.value, "device": device.value, "state": state.value},
        )
        return state

    def device_state(self, location: Location, device: DeviceKind, now: Optional[float] = None) -> DeviceState:
        with self.lock:
            self.rollover.check(self._now(now))
            return self.ledger.state(location, device)

    def device_states(self, location: Location, now: Optional[float] = None) -> Dict[str, str]:
        with self.lock:
            self.rollover.check(self._now(now))
            return {device.value: self.ledger.state(location, device).value for device in DeviceKind}

    def get_runtime_seconds(self, location: Location, device: DeviceKind, now: Optional[float] = None) -> int:
        with self.lock:
            now = self._now(now)
            self.rollover.check(now)
            return self.ledger.runtime_seconds(location, device, _to_ms(now))

    def get_all_runtimes(self, location: Location, now: Optional[float] = None) -> Dict[str, int]:
        with self.lock:
            now = self._now(now)
            self.rollover.check(now)
            now_ms = _to_ms(now)
            return {device.value: self.ledger.runtime_seconds(location, device, now_ms) for device in DeviceKind}

    # -- tariff -----------------------------------------------------------

    def set_device_power(self, device: Any, watts: Any) -> float:
        kind = device if isinstance(device, DeviceKind) else parse_device(device)
        with self.lock:
            value = self.tariff.set_power(kind, watts)
        logger.info("Power updated - %s: %sW", kind.value, value)
        return value

    def set_tariff(self, price_per_kwh: Any) -> float:
        with self.lock:
            value = self.tariff.set_price(price_per_kwh)
        logger.info("Electricity price updated: %s per kWh", value)
        return value

    def tariff_snapshot(self) -> Dict[str, Any]:
        with self.lock:
            return {"price_per_kwh": self.tariff.price_per_kwh, "device_power_w": self.tariff.power_by_name()}

    def get_energy_report(self, now: Optional[float] = None) -> EnergyReport:
        with self.lock:
            now = self._now(now)
            self.rollover.check(now)
            now_ms = _to_ms(now)
            runtimes = {
                location.value: {
                    device.value: self.ledger.runtime_seconds(location, device, now_ms) for device in DeviceKind
                }
                for location in Location
            }
            return build_energy_report(
                self.rollover.active_day,
                runtimes,
                self.tariff.power_by_name(),
                self.tariff.price_per_kwh,
                self.monthly_days,
            )

    # -- sensors ----------------------------------------------------------

    def record_reading(
        self,
        location: Location,
        temperature: Optional[float],
        humidity: Optional[float],
        now: Optional[float] = None,
    ) -> bool:
        """Update latest values; append to history only when both values are present."""
        with self.lock:
            now = self._now(now)
            self.rollover.check(now)
            latest = self.latest[location]
            if temperature is not None:
                latest["temperature"] = temperature
            if humidity is not None:
                latest["humidity"] = humidity
            if temperature is None or humidity is None:
                return False
            devices = {device.value: self.ledger.state(location, device).value for device in DeviceKind}
            self.history.append(location, SensorReading(now, temperature, humidity, devices))
            return True

    def latest_reading(self, location: Location) -> Dict[str, float]:
        with self.lock:
            return dict(self.latest[location])

    def sensor_history(self, location: Location, now: Optional[float] = None) -> List[SensorReading]:
        with self.lock:
            self.rollover.check(self._now(now))
            return self.history.items(location)

    def status(self, now: Optional[float] = None) -> Dict[Location, Dict[str, Any]]:
        """Latest readings, device states and runtimes for every location in one snapshot."""
        with self.lock:
            now = self._now(now)
            self.rollover.check(now)
            now_ms = _to_ms(now)
            return {
                location: {
                    "temperature": self.latest[location]["temperature"],
                    "humidity": self.latest[location]["humidity"],
                    "devices": {d.value: self.ledger.state(location, d).value for d in DeviceKind},
                    "runtime": {d.value: self.ledger.runtime_seconds(location, d, now_ms) for d in DeviceKind},
                }
                for location in Location
            }

    # -- detections -------------------------------------------------------

    def _next_detection_id(self, now: float) -> int:
        self._last_detection_id = max(_to_ms(now), self._last_detection_id + 1)
        return self._last_detection_id

    def add_detection(
        self,
        image: Optional[ImagePayload] = None,
        description: Optional[str] = None,
        confidence: Any = 0.0,
        now: Optional[float] = None,
    ) -> DetectionRecord:
        score = coerce_float(confidence if confidence not in (None, "") else 0.0)
        if score is None or not 0.0 <= score <= 1.0:
            raise ValidationError("confidence must be a number between 0 and 1")
        with self.lock:
            now = self._now(now)
            self.rollover.check(now)
            record = DetectionRecord(
                id=self._next_detection_id(now),
                captured_at=datetime.fromtimestamp(now, timezone.utc),
                image=image,
                description=(description or "").strip() or DEFAULT_DESCRIPTION,
                confidence=score,
            )
            evicted = self.detections.add_today(record)
        if evicted is not None:
            logger.debug("Detection %d evicted from today's slot", evicted.id)
        logger.info(
            "Detection added: %s at %s",
            record.description,
            record.to_dict()["timestamp"],
            extra={"detection_id": record.id},
        )
        return record

    def remove_detection(self, record_id: int, now: Optional[float] = None) -> bool:
        with self.lock:
            self.rollover.check(self._now(now))
            found = self.detections.remove_by_id(record_id)
        if found:
            logger.info("Detection deleted: ID %d", record_id, extra={"detection_id": record_id})
        return found

    def list_detections(self, day: int, now: Optional[float] = None) -> List[DetectionRecord]:
        with self.lock:
            self.rollover.check(self._now(now))
            try:
                return self.detections.list_slot(day)
            except ValueError as exc:
                raise ValidationError(str(exc)) from None

    def seed_detections(self, slots: Iterable[Iterable[Dict[str, Any]]], now: Optional[float] = None) -> List[int]:
        """Replace all three day slots with records built from ``slots``; used by the demo route."""
        with self.lock:
            now = self._now(now)
            self.rollover.check(now)
            built: List[List[DetectionRecord]] = []
            for entries in slots:
                records = []
                for entry in entries:
                    captured = float(entry.get("captured_at", now))
                    records.append(
                        DetectionRecord(
                            id=self._next_detection_id(now),
                            captured_at=datetime.fromtimestamp(captured, timezone.utc),
                            image=entry.get("image"),
                            description=entry.get("description") or DEFAULT_DESCRIPTION,
                            confidence=float(entry.get("confidence", 0.0)),
                        )
                    )
                built.append(records)
            self.detections.replace(built)
            return self.detections.counts()
