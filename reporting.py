import math
from dataclasses import dataclass, field
from statistics import mean
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

MONTHLY_DAYS = 30
CURRENCY_SYMBOL = "₫"
STATS_DETAIL_POINTS = 20


def device_energy_kwh(runtime_seconds: float, power_w: float) -> float:
    return power_w * (runtime_seconds / 3600.0) / 1000.0


def device_cost(energy_kwh: float, price_per_kwh: float) -> float:
    return energy_kwh * price_per_kwh


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass
class DeviceEnergy:
    device: str
    runtime_seconds: int
    power_w: float
    energy_kwh: float
    cost: float

    @property
    def runtime_hours(self) -> float:
        return self.runtime_seconds / 3600.0


@dataclass
class FloorEnergy:
    location: str
    devices: Dict[str, DeviceEnergy] = field(default_factory=dict)

    @property
    def energy_kwh(self) -> float:
        return sum(d.energy_kwh for d in self.devices.values())

    @property
    def cost(self) -> float:
        return sum(d.cost for d in self.devices.values())


@dataclass
class EnergyReport:
    """Daily energy/cost per floor plus site totals.

    All sums run on unrounded values; rounding is a rendering concern only,
    so site totals never drift from the sum of their parts.
    """

    date: str
    price_per_kwh: float
    power_w: Dict[str, float]
    floors: Dict[str, FloorEnergy]
    monthly_days: int = MONTHLY_DAYS

    @property
    def site_energy_kwh(self) -> float:
        return sum(f.energy_kwh for f in self.floors.values())

    @property
    def site_cost(self) -> float:
        return sum(f.cost for f in self.floors.values())

    @property
    def monthly_energy_kwh(self) -> float:
        return self.site_energy_kwh * self.monthly_days

    @property
    def monthly_cost(self) -> float:
        return self.site_cost * self.monthly_days


def floor_energy(
    location: str,
    runtimes: Mapping[str, int],
    power_w: Mapping[str, float],
    price_per_kwh: float,
) -> FloorEnergy:
    floor = FloorEnergy(location=location)
    for device, seconds in runtimes.items():
        watts = float(power_w[device])
        energy = device_energy_kwh(seconds, watts)
        floor.devices[device] = DeviceEnergy(
            device=device,
            runtime_seconds=int(seconds),
            power_w=watts,
            energy_kwh=energy,
            cost=device_cost(energy, price_per_kwh),
        )
    return floor


def build_energy_report(
    date: str,
    runtimes_by_location: Mapping[str, Mapping[str, int]],
    power_w: Mapping[str, float],
    price_per_kwh: float,
    monthly_days: int = MONTHLY_DAYS,
) -> EnergyReport:
    floors = {
        location: floor_energy(location, runtimes, power_w, price_per_kwh)
        for location, runtimes in runtimes_by_location.items()
    }
    return EnergyReport(
        date=date,
        price_per_kwh=float(price_per_kwh),
        power_w=dict(power_w),
        floors=floors,
        monthly_days=monthly_days,
    )


def format_duration(seconds: int) -> str:
    seconds = max(0, int(seconds))
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    if h > 0:
        return f"{h}h {m}m {s}s"
    if m > 0:
        return f"{m}m {s}s"
    return f"{s}s"


def format_currency(amount: float) -> str:
    whole = f"{round_half_up(amount):,}".replace(",", ".")
    return f"{whole} {CURRENCY_SYMBOL}"


def _device_payload(entry: DeviceEnergy) -> Dict[str, Any]:
    return {
        "runtimeSeconds": entry.runtime_seconds,
        "runtimeHours": f"{entry.runtime_hours:.2f}",
        "runtimeFormatted": format_duration(entry.runtime_seconds),
        "powerW": entry.power_w,
        "energyKWh": f"{entry.energy_kwh:.3f}",
        "costVND": round_half_up(entry.cost),
        "costFormatted": format_currency(entry.cost),
    }


def _monthly_payload(energy_kwh: float, cost: float, days: int) -> Dict[str, Any]:
    return {
        "estimatedEnergyKWh": f"{energy_kwh * days:.2f}",
        "estimatedCostVND": round_half_up(cost * days),
        "estimatedCostFormatted": format_currency(cost * days),
    }


def energy_report_payload(report: EnergyReport) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "date": report.date,
        "electricityPrice": report.price_per_kwh,
        "devicePower": dict(report.power_w),
    }
    for location, floor in report.floors.items():
        payload[location] = {
            "daily": {
                "devices": {name: _device_payload(entry) for name, entry in floor.devices.items()},
                "totalEnergy": f"{floor.energy_kwh:.3f}",
                "totalCost": round_half_up(floor.cost),
                "totalCostFormatted": format_currency(floor.cost),
            },
            "monthly": _monthly_payload(floor.energy_kwh, floor.cost, report.monthly_days),
        }
    payload["total"] = {
        "daily": {
            "totalEnergyKWh": f"{report.site_energy_kwh:.3f}",
            "totalCostVND": round_half_up(report.site_cost),
            "totalCostFormatted": format_currency(report.site_cost),
        },
        "monthly": _monthly_payload(report.site_energy_kwh, report.site_cost, report.monthly_days),
    }
    return payload


def summarize_values(values: Iterable[Optional[float]]) -> Dict[str, Optional[float]]:
    """min/avg/max over positive readings; zero means the sensor had nothing to say."""
    vals = [float(v) for v in values if v is not None and v > 0]
    if not vals:
        return {"min": None, "avg": None, "max": None}
    return {"min": round(min(vals), 1), "avg": round(mean(vals), 1), "max": round(max(vals), 1)}


def _floor_average(readings: Sequence[Any], attr: str) -> Optional[float]:
    if not readings:
        return None
    return mean(float(getattr(r, attr) or 0.0) for r in readings)


def _combined_average(histories: Mapping[str, Sequence[Any]], attr: str) -> str:
    per_floor = [avg for avg in (_floor_average(h, attr) for h in histories.values()) if avg is not None]
    if not per_floor:
        return "0.0"
    return f"{mean(per_floor):.1f}"


def reading_payload(reading: Any, with_devices: bool = False) -> Dict[str, Any]:
    item: Dict[str, Any] = {
        "timestamp": reading.iso_timestamp(),
        "temperature": reading.temperature,
        "humidity": reading.humidity,
    }
    if with_devices:
        item.update(reading.devices)
    return item


def stats_detail_payload(histories: Mapping[str, Sequence[Any]], report: EnergyReport) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "success": True,
        "summary": {
            "avgTemp": _combined_average(histories, "temperature"),
            "avgHum": _combined_average(histories, "humidity"),
            "totalEnergy": f"{report.site_energy_kwh:.2f}",
            "totalCost": format_currency(report.site_cost),
        },
    }
    for location, readings in histories.items():
        payload[location] = [reading_payload(r, with_devices=True) for r in list(readings)[-STATS_DETAIL_POINTS:]]
    return payload


def export_rows(
    report: EnergyReport,
    histories: Mapping[str, Sequence[Any]],
    latest: Mapping[str, Mapping[str, float]],
    states: Mapping[str, Mapping[str, str]],
) -> List[List[Any]]:
    """Flat rows for the daily CSV export: section, item, metric, value, unit."""
    rows: List[List[Any]] = [
        ["tariff", "price", "price_per_kwh", report.price_per_kwh, "VND/kWh"],
    ]
    for device, watts in report.power_w.items():
        rows.append(["tariff", device, "power", watts, "W"])
    for location, floor in report.floors.items():
        for name, entry in floor.devices.items():
            item = f"{location}.{name}"
            rows.append(["energy", item, "runtime", format_duration(entry.runtime_seconds), ""])
            rows.append(["energy", item, "state", states.get(location, {}).get(name, "OFF"), ""])
            rows.append(["energy", item, "energy", f"{entry.energy_kwh:.3f}", "kWh"])
            rows.append(["energy", item, "cost", round_half_up(entry.cost), "VND"])
        rows.append(["energy", location, "energy", f"{floor.energy_kwh:.3f}", "kWh"])
        rows.append(["energy", location, "cost", round_half_up(floor.cost), "VND"])
        rows.append(["monthly", location, "energy", f"{floor.energy_kwh * report.monthly_days:.2f}", "kWh"])
        rows.append(["monthly", location, "cost", round_half_up(floor.cost * report.monthly_days), "VND"])
    rows.append(["energy", "site", "energy", f"{report.site_energy_kwh:.3f}", "kWh"])
    rows.append(["energy", "site", "cost", round_half_up(report.site_cost), "VND"])
    rows.append(["monthly", "site", "energy", f"{report.monthly_energy_kwh:.2f}", "kWh"])
    rows.append(["monthly", "site", "cost", round_half_up(report.monthly_cost), "VND"])
    for location, readings in histories.items():
        current = latest.get(location, {})
        for metric, unit in (("temperature", "°C"), ("humidity", "%")):
            summary = summarize_values(getattr(r, metric) for r in readings)
            for key in ("min", "avg", "max"):
                rows.append(["sensor", f"{location}.{metric}", key, summary[key], unit])
            rows.append(["sensor", f"{location}.{metric}", "current", current.get(metric), unit])
    return rows
