import base64
import json

import pytest

from app import ConfigError, create_app, load_hub_config, validate_hub_config
from conftest import BASE_TS, DAY


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["ok"] is True
    assert data["date"] == "2024-05-01"


def test_device_control_and_runtime(client, clock):
    resp = client.post("/floor1/led", json={"state": "on"})
    assert resp.status_code == 200
    assert resp.get_json() == {"led": "ON", "success": True}

    clock.advance(90)
    data = client.get("/data").get_json()
    assert data["floor1"]["led"] == "ON"
    assert data["floor1"]["runtime"]["ledSec"] == 90
    assert data["floor2"]["runtime"]["ledSec"] == 0

    clock.advance(30)
    client.post("/floor1/led", json={"state": "OFF"})
    clock.advance(600)
    stats = client.get("/stats").get_json()
    assert stats["date"] == "2024-05-01"
    assert stats["floor1"]["led"] == {"totalSeconds": 120, "formatted": "2m 0s", "currentState": "OFF"}


def test_device_control_rejects_bad_state(client):
    resp = client.post("/floor2/fan", json={"state": "blink"})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "State must be 'ON' or 'OFF'"


def test_unknown_device_or_floor_is_not_routed(client):
    assert client.post("/floor1/toaster", json={"state": "on"}).status_code == 404
    assert client.post("/floor3/led", json={"state": "on"}).status_code == 404


def test_sensor_push_replies_with_device_commands(client):
    client.post("/floor2/heater", json={"state": "on"})
    resp = client.post("/floor2", json={"temp": 28.5, "hum": 75.2})
    assert resp.status_code == 200
    assert resp.mimetype == "text/plain"
    assert resp.get_data(as_text=True) == "LED_OFF FAN_OFF FOG_OFF HEATER_ON"

    history = client.get("/history/floor2").get_json()
    assert history["count"] == 1
    assert history["data"][0]["temperature"] == 28.5
    assert history["date"] == "2024-05-01"


def test_sensor_push_accepts_form_encoding(client):
    resp = client.post("/floor1", data={"temp": "26.1", "hum": "60"})
    assert resp.status_code == 200
    data = client.get("/data").get_json()
    assert data["floor1"]["temp"] == 26.1
    assert data["floor1"]["hum"] == 60.0


def test_coordinator_update_ignores_non_numeric_fields(client):
    resp = client.post("/update", json={"floor1": {"temp": "27", "hum": "n/a"}, "floor2": {"temp": 30, "hum": 65}})
    assert resp.get_json() == {"success": True}
    data = client.get("/data").get_json()
    assert data["floor1"]["temp"] == 27.0
    assert data["floor1"]["hum"] == 0.0
    assert client.get("/history/floor1").get_json()["count"] == 0
    assert client.get("/history/floor2").get_json()["count"] == 1


def test_commands_snapshot(client):
    client.post("/floor1/fog", json={"state": "on"})
    data = client.get("/commands").get_json()
    assert data["floor1"] == {"led": "OFF", "fan": "OFF", "fog": "ON", "heater": "OFF"}
    assert data["floor2"]["fog"] == "OFF"


def test_price_and_power_updates_feed_energy_report(client, clock):
    assert client.post("/update-price", json={"price": 0}).status_code == 400
    assert client.post("/update-price", json={"price": "abc"}).status_code == 400
    assert client.post("/update-power", json={"device": "toaster", "power": 10}).status_code == 400
    assert client.post("/update-power", json={"device": "heater", "power": -1}).status_code == 400

    resp = client.post("/update-price", json={"price": "3000"})
    assert resp.get_json() == {"success": True, "message": "Price updated", "price": 3000.0}
    resp = client.post("/update-power", json={"device": "heater", "power": 200})
    assert resp.get_json()["power"] == 200.0

    client.post("/floor1/heater", json={"state": "on"})
    clock.advance(1800)
    report = client.get("/energy-report").get_json()
    assert report["electricityPrice"] == 3000.0
    assert report["devicePower"]["heater"] == 200.0
    heater = report["floor1"]["daily"]["devices"]["heater"]
    assert heater["energyKWh"] == "0.100"
    assert heater["costVND"] == 300
    assert report["total"]["daily"]["totalCostVND"] == 300
    assert report["total"]["monthly"]["estimatedCostVND"] == 9000


def test_stats_detail(client):
    client.post("/floor1", json={"temp": 20, "hum": 60})
    client.post("/floor2", json={"temp": 30, "hum": 80})
    data = client.get("/stats-detail").get_json()
    assert data["success"] is True
    assert data["summary"]["avgTemp"] == "25.0"
    assert data["summary"]["avgHum"] == "70.0"
    assert data["summary"]["totalCost"] == "0 ₫"
    assert len(data["floor1"]) == 1


def test_detection_lifecycle(client):
    resp = client.post("/detection-add", json={"imageUrl": "https://cam.local/1.jpg", "confidence": 0.9})
    assert resp.status_code == 200
    detection = resp.get_json()["detection"]
    assert detection["status"] == "detected"
    assert detection["imageUrl"] == "https://cam.local/1.jpg"
    assert detection["imageBase64"] is None

    inline = base64.b64encode(b"frame").decode()
    client.post("/detection-add", json={"imageBase64": inline, "description": "gecko"})

    listing = client.get("/detection-history?day=1").get_json()
    assert listing["count"] == 2
    assert listing["dateLabel"] == "Today"
    assert listing["data"][1]["imageBase64"] == inline
    assert listing["data"][1]["description"] == "gecko"

    resp = client.delete(f"/detection-delete/{detection['id']}")
    assert resp.get_json() == {"success": True, "message": "Detection deleted"}
    resp = client.delete(f"/detection-delete/{detection['id']}")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "Detection not found"


def test_detection_add_validation(client):
    both = {"imageUrl": "https://cam.local/1.jpg", "imageBase64": "aGVsbG8="}
    assert client.post("/detection-add", json=both).status_code == 400
    assert client.post("/detection-add", json={"confidence": 2}).status_code == 400
    assert client.post("/detection-add", json={"imageBase64": "%%%"}).status_code == 400
    assert client.post("/detection-add", json={"description": 5}).status_code == 400


def test_detection_history_falls_back_to_today(client, clock):
    client.post("/detection-add", json={})
    clock.advance(DAY)
    assert client.get("/detection-history?day=2").get_json()["count"] == 1
    for day in ("9", "x"):
        data = client.get(f"/detection-history?day={day}").get_json()
        assert data["day"] == 1
        assert data["count"] == 0


def test_rollover_on_request_resets_and_logs_event(client, clock):
    client.post("/floor1/led", json={"state": "on"})
    client.post("/floor1", json={"temp": 25, "hum": 70})
    clock.advance(DAY)

    assert client.get("/commands").get_json()["floor1"]["led"] == "OFF"
    assert client.get("/history/floor1").get_json()["count"] == 0
    assert client.get("/data").get_json()["floor1"]["runtime"]["ledSec"] == 0

    events = client.get("/api/events?category=system").get_json()["events"]
    assert len(events) == 1
    assert events[0]["message"] == "Daily reset completed: 2024-05-02"


def test_events_endpoint(client):
    client.post("/floor1/fan", json={"state": "on"})
    client.post("/update-price", json={"price": 2000})
    events = client.get("/api/events?limit=1").get_json()["events"]
    assert len(events) == 1
    assert events[0]["category"] == "tariff"
    assert client.get("/api/events?limit=abc").status_code == 400


def test_export_csv(client):
    client.post("/floor1", json={"temp": 22, "hum": 65})
    resp = client.get("/export.csv")
    assert resp.status_code == 200
    assert resp.mimetype == "text/csv"
    assert "hub_report_2024-05-01.csv" in resp.headers["Content-Disposition"]
    lines = resp.get_data(as_text=True).splitlines()
    assert lines[0] == "section,item,metric,value,unit"
    assert "sensor,floor1.temperature,avg,22.0,°C" in lines


def test_populate_days_requires_simulation_mode(hub):
    app = create_app(hub=hub)
    client = app.test_client()
    assert client.get("/test-populate-days").status_code == 404

    app.config["SIMULATION_MODE"] = True
    data = client.get("/test-populate-days").get_json()
    assert data["data"] == {"day1": 10, "day2": 10, "day3": 10}
    assert client.get("/detection-history?day=3").get_json()["count"] == 10


def test_unexpected_errors_return_json(hub, monkeypatch):
    app = create_app(hub=hub)
    client = app.test_client()

    def boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(hub, "status", boom)
    resp = client.get("/data")
    assert resp.status_code == 500
    assert resp.get_json() == {"success": False, "error": "Server error"}


def test_load_hub_config(tmp_path):
    missing = load_hub_config(tmp_path / "nope.json")
    assert missing["price_per_kwh"] == 2500.0
    assert missing["device_power_w"]["heater"] == 150.0

    path = tmp_path / "hub.json"
    path.write_text(json.dumps({"price_per_kwh": 1800, "device_power_w": {"led": 40}}), encoding="utf-8")
    cfg = load_hub_config(path)
    assert cfg["price_per_kwh"] == 1800
    assert cfg["device_power_w"] == {"led": 40, "fan": 50.0, "fog": 100.0, "heater": 150.0}

    path.write_text(json.dumps({"price_per_kwh": -1}), encoding="utf-8")
    with pytest.raises(ConfigError):
        load_hub_config(path)

    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_hub_config(path)


def test_validate_hub_config_reports_paths():
    errors = validate_hub_config({"device_power_w": {"lamp": 5}, "max_history": 0})
    assert any(e.startswith("device_power_w:") for e in errors)
    assert any(e.startswith("max_history:") for e in errors)
    assert validate_hub_config({}) == []


def test_create_app_rejects_bad_time_zone():
    with pytest.raises(ConfigError):
        create_app(config={"timezone": "Nowhere/Land"})
