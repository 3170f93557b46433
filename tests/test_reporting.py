import pytest

from hub import SensorReading
from reporting import (
    build_energy_report,
    device_cost,
    device_energy_kwh,
    energy_report_payload,
    export_rows,
    floor_energy,
    format_currency,
    format_duration,
    round_half_up,
    stats_detail_payload,
    summarize_values,
)

POWER = {"led": 20.0, "fan": 50.0, "fog": 100.0, "heater": 150.0}


def test_device_energy_and_cost():
    energy = device_energy_kwh(3600, 100)
    assert energy == pytest.approx(0.1)
    assert device_cost(energy, 2500) == pytest.approx(250)
    assert device_energy_kwh(0, 150) == 0


def test_costs_are_summed_before_rounding():
    # 0.4 per device: rounding each first would report 0
    floor = floor_energy("floor1", {"a": 3600, "b": 3600, "c": 3600}, {"a": 400, "b": 400, "c": 400}, 1.0)
    assert [round_half_up(d.cost) for d in floor.devices.values()] == [0, 0, 0]
    assert floor.cost == pytest.approx(1.2)
    assert round_half_up(floor.cost) == 1


def test_site_and_monthly_aggregation():
    report = build_energy_report(
        "2024-05-01",
        {
            "floor1": {"led": 3600, "fan": 0, "fog": 0, "heater": 0},
            "floor2": {"led": 0, "fan": 7200, "fog": 0, "heater": 1800},
        },
        POWER,
        2500,
    )
    assert report.floors["floor1"].energy_kwh == pytest.approx(0.02)
    assert report.floors["floor2"].energy_kwh == pytest.approx(0.1 + 0.075)
    assert report.site_energy_kwh == pytest.approx(0.195)
    assert report.site_cost == pytest.approx(487.5)
    assert report.monthly_energy_kwh == pytest.approx(5.85)
    assert report.monthly_cost == pytest.approx(14625)


def test_format_duration():
    assert format_duration(0) == "0s"
    assert format_duration(59) == "59s"
    assert format_duration(61) == "1m 1s"
    assert format_duration(3600) == "1h 0m 0s"
    assert format_duration(3725) == "1h 2m 5s"


def test_format_currency_and_rounding():
    assert format_currency(2500) == "2.500 ₫"
    assert format_currency(1234567.4) == "1.234.567 ₫"
    assert format_currency(0.5) == "1 ₫"
    assert round_half_up(2.5) == 3
    assert round_half_up(2.49) == 2


def test_energy_report_payload_shape():
    report = build_energy_report(
        "2024-05-01",
        {"floor1": {"led": 0, "fan": 0, "fog": 3600, "heater": 0}, "floor2": {"led": 0, "fan": 0, "fog": 0, "heater": 0}},
        POWER,
        2500,
    )
    payload = energy_report_payload(report)
    assert payload["date"] == "2024-05-01"
    assert payload["electricityPrice"] == 2500
    fog = payload["floor1"]["daily"]["devices"]["fog"]
    assert fog["runtimeHours"] == "1.00"
    assert fog["runtimeFormatted"] == "1h 0m 0s"
    assert fog["energyKWh"] == "0.100"
    assert fog["costVND"] == 250
    assert payload["floor1"]["daily"]["totalEnergy"] == "0.100"
    assert payload["floor1"]["monthly"]["estimatedCostVND"] == 7500
    assert payload["floor2"]["daily"]["totalCost"] == 0
    assert payload["total"]["daily"]["totalCostVND"] == 250
    assert payload["total"]["monthly"]["estimatedEnergyKWh"] == "3.00"
    assert payload["total"]["monthly"]["estimatedCostFormatted"] == "7.500 ₫"


def test_summarize_values_ignores_missing_readings():
    assert summarize_values([0, None, 20.0, 30.0]) == {"min": 20.0, "avg": 25.0, "max": 30.0}
    assert summarize_values([0, 0]) == {"min": None, "avg": None, "max": None}


def _reading(ts, temp, hum, **devices):
    states = {"led": "OFF", "fan": "OFF", "fog": "OFF", "heater": "OFF"}
    states.update(devices)
    return SensorReading(ts, temp, hum, states)


def _empty_report():
    zero = {"led": 0, "fan": 0, "fog": 0, "heater": 0}
    return build_energy_report("2024-05-01", {"floor1": zero, "floor2": zero}, POWER, 2500)


def test_stats_detail_averages_floors_with_data():
    histories = {
        "floor1": [_reading(1.0, 20.0, 60.0), _reading(2.0, 22.0, 70.0, led="ON")],
        "floor2": [],
    }
    payload = stats_detail_payload(histories, _empty_report())
    assert payload["summary"]["avgTemp"] == "21.0"
    assert payload["summary"]["avgHum"] == "65.0"
    assert payload["summary"]["totalEnergy"] == "0.00"
    assert payload["floor1"][1]["led"] == "ON"
    assert payload["floor1"][0]["led"] == "OFF"
    assert payload["floor2"] == []

    histories["floor2"] = [_reading(3.0, 30.0, 80.0)]
    payload = stats_detail_payload(histories, _empty_report())
    assert payload["summary"]["avgTemp"] == "25.5"


def test_stats_detail_keeps_last_twenty_points():
    histories = {"floor1": [_reading(float(i), 20.0, 50.0) for i in range(30)], "floor2": []}
    payload = stats_detail_payload(histories, _empty_report())
    assert len(payload["floor1"]) == 20
    assert payload["floor1"][0]["timestamp"] == "1970-01-01T00:00:10.000Z"


def test_export_rows_cover_energy_and_sensors():
    histories = {"floor1": [_reading(1.0, 20.0, 60.0), _reading(2.0, 24.0, 0.0)], "floor2": []}
    latest = {"floor1": {"temperature": 24.0, "humidity": 0.0}, "floor2": {"temperature": 0.0, "humidity": 0.0}}
    states = {"floor1": {"led": "ON"}, "floor2": {}}
    rows = export_rows(_empty_report(), histories, latest, states)
    assert ["tariff", "price", "price_per_kwh", 2500.0, "VND/kWh"] in rows
    assert ["energy", "floor1.led", "state", "ON", ""] in rows
    assert ["energy", "site", "cost", 0, "VND"] in rows
    assert ["sensor", "floor1.temperature", "avg", 22.0, "°C"] in rows
    assert ["sensor", "floor1.humidity", "max", 60.0, "%"] in rows
    assert ["sensor", "floor2.temperature", "min", None, "°C"] in rows
