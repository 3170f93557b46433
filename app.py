import csv
import io
import json
import logging
import os
import random
import threading
import time
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

import jsonschema
from flask import Blueprint, Flask, Response, abort, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from detections import SLOT_LABELS, ImageReference, image_from_payload
from hub import (
    DeviceKind,
    Hub,
    Location,
    ValidationError,
    coerce_float,
    merge_config,
    parse_device,
    parse_positive,
    parse_state,
)
from logging_setup import configure_logging
from reporting import energy_report_payload, export_rows, format_duration, reading_payload, stats_detail_payload

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent
CONFIG_DIR = BASE_DIR / "config"
EVENT_LOG_LIMIT = 200
DEMO_FRAMES_PER_DAY = 10

HUB_CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "device_power_w": {
            "type": "object",
            "properties": {
                device.value: {"type": "number", "exclusiveMinimum": 0} for device in DeviceKind
            },
            "additionalProperties": False,
        },
        "price_per_kwh": {"type": "number", "exclusiveMinimum": 0},
        "max_history": {"type": "integer", "minimum": 1},
        "detection_capacity": {"type": "integer", "minimum": 1},
        "monthly_days": {"type": "integer", "minimum": 1},
        "timezone": {"type": "string", "minLength": 1},
    },
    "additionalProperties": False,
}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


SIMULATION_MODE = os.getenv("SIMULATION_MODE", "0") == "1"
HUB_CONFIG_PATH = Path(os.getenv("HUB_CONFIG_PATH") or CONFIG_DIR / "hub.json")
HUB_TZ = os.getenv("HUB_TZ")
HUB_HOST = os.getenv("HUB_HOST", "0.0.0.0")
HUB_PORT = _env_int("HUB_PORT", 3000)

_FLOORS = ", ".join(location.value for location in Location)
_DEVICES = ", ".join(device.value for device in DeviceKind)


class ConfigError(RuntimeError):
    pass


def validate_hub_config(cfg: Any) -> List[str]:
    validator_cls = jsonschema.validators.validator_for(HUB_CONFIG_SCHEMA)
    validator = validator_cls(HUB_CONFIG_SCHEMA)
    errors = []
    for err in sorted(validator.iter_errors(cfg), key=str):
        loc = ".".join(str(p) for p in err.path)
        errors.append(f"{loc}: {err.message}" if loc else err.message)
    return errors


def load_hub_config(path: Optional[Path] = None) -> Dict[str, Any]:
    path = Path(path or HUB_CONFIG_PATH)
    user_cfg: Any = {}
    if path.exists():
        try:
            with path.open(encoding="utf-8") as f:
                user_cfg = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigError(f"Cannot read {path}: {exc}") from exc
    else:
        logger.info("No config at %s, using defaults", path)
    errors = validate_hub_config(user_cfg)
    if errors:
        raise ConfigError(f"Invalid config {path}: " + "; ".join(errors))
    merged = merge_config(user_cfg)
    if HUB_TZ:
        merged["timezone"] = HUB_TZ
    return merged


class EventLog:
    def __init__(self, limit: int = EVENT_LOG_LIMIT) -> None:
        self.events: Deque[Dict[str, Any]] = deque(maxlen=limit)
        self.lock = threading.Lock()

    def add(self, category: str, level: str, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
        with self.lock:
            self.events.append({
                "ts": time.time(),
                "category": category,
                "level": level,
                "message": message,
                "meta": meta,
            })

    def recent(self, limit: int = 50, category: str = "") -> List[Dict[str, Any]]:
        with self.lock:
            events = list(self.events)
        if category:
            events = [e for e in events if e["category"].lower() == category]
        return list(reversed(events))[:limit]


bp = Blueprint("hub", __name__)


def _hub() -> Hub:
    return current_app.extensions["floorhub.hub"]


def _log_event(category: str, level: str, message: str, meta: Optional[Dict[str, Any]] = None) -> None:
    logger.log(logging.getLevelName(level.upper()), message)
    current_app.extensions["floorhub.events"].add(category, level, message, meta)


def _payload() -> Dict[str, Any]:
    body = request.get_json(force=True, silent=True)
    if isinstance(body, dict):
        return body
    return request.form.to_dict()


@bp.before_app_request
def _daily_rollover() -> None:
    hub = _hub()
    if hub.check_rollover():
        _log_event("system", "info", f"Daily reset completed: {hub.active_day}", {"date": hub.active_day})


@bp.app_errorhandler(ValidationError)
def _validation_error(exc: ValidationError) -> Any:
    return jsonify({"success": False, "error": str(exc)}), 400


@bp.app_errorhandler(Exception)
def _unexpected_error(exc: Exception) -> Any:
    if isinstance(exc, HTTPException):
        return exc
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({"success": False, "error": "Server error"}), 500


# Sensor ingestion
def _ingest(location: Location, body: Dict[str, Any], source: str) -> None:
    temp = coerce_float(body.get("temp"))
    hum = coerce_float(body.get("hum"))
    _hub().record_reading(location, temp, hum)
    logger.info("%s %s - Temp: %s°C | Hum: %s%%", source, location.value, temp, hum)


@bp.route(f"/<any({_FLOORS}):floor>", methods=["POST"])
def sensor_push(floor: str) -> Any:
    location = Location(floor)
    _ingest(location, _payload(), "HTTP")
    states = _hub().device_states(location)
    text = " ".join(f"{device.value.upper()}_{states[device.value]}" for device in DeviceKind)
    return Response(text, mimetype="text/plain")


@bp.route("/update", methods=["POST"])
def coordinator_update() -> Any:
    body = _payload()
    for location in Location:
        section = body.get(location.value)
        if isinstance(section, dict):
            _ingest(location, section, "ZIGBEE")
    return jsonify({"success": True})


# Dashboard reads
@bp.route("/data")
def data() -> Any:
    response = {}
    for location, snap in _hub().status().items():
        entry: Dict[str, Any] = {"temp": snap["temperature"], "hum": snap["humidity"]}
        entry.update(snap["devices"])
        entry["runtime"] = {f"{device}Sec": secs for device, secs in snap["runtime"].items()}
        response[location.value] = entry
    return jsonify(response)


@bp.route(f"/history/<any({_FLOORS}):floor>")
def history(floor: str) -> Any:
    hub = _hub()
    readings = hub.sensor_history(Location(floor))
    return jsonify({
        "floor": floor,
        "date": hub.active_day,
        "data": [reading_payload(r) for r in readings],
        "count": len(readings),
    })


@bp.route("/stats")
def stats() -> Any:
    hub = _hub()
    snapshot = hub.status()
    response: Dict[str, Any] = {"date": hub.active_day}
    for location, snap in snapshot.items():
        response[location.value] = {
            device: {
                "totalSeconds": secs,
                "formatted": format_duration(secs),
                "currentState": snap["devices"][device],
            }
            for device, secs in snap["runtime"].items()
        }
    return jsonify(response)


@bp.route("/stats-detail")
def stats_detail() -> Any:
    hub = _hub()
    report = hub.get_energy_report()
    histories = {location.value: hub.sensor_history(location) for location in Location}
    return jsonify(stats_detail_payload(histories, report))


@bp.route("/commands")
def commands() -> Any:
    hub = _hub()
    return jsonify({location.value: hub.device_states(location) for location in Location})


@bp.route("/energy-report")
def energy_report() -> Any:
    return jsonify(energy_report_payload(_hub().get_energy_report()))


@bp.route("/export.csv")
def export_csv() -> Any:
    hub = _hub()
    report = hub.get_energy_report()
    histories = {location.value: hub.sensor_history(location) for location in Location}
    latest = {location.value: hub.latest_reading(location) for location in Location}
    states = {location.value: hub.device_states(location) for location in Location}
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(["section", "item", "metric", "value", "unit"])
    for row in export_rows(report, histories, latest, states):
        writer.writerow(row)
    return Response(
        output.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename=hub_report_{report.date}.csv"},
    )


# Control
@bp.route(f"/<any({_FLOORS}):floor>/<any({_DEVICES}):device>", methods=["POST"])
def device_control(floor: str, device: str) -> Any:
    state = parse_state(_payload().get("state"))
    _hub().set_device_state(Location(floor), DeviceKind(device), state)
    _log_event("actuator", "info", f"{floor} - {device.upper()}: {state.value}", {"floor": floor, "device": device})
    return jsonify({device: state.value, "success": True})


@bp.route("/update-power", methods=["POST"])
def update_power() -> Any:
    body = _payload()
    device = parse_device(body.get("device"))
    power = _hub().set_device_power(device, body.get("power"))
    _log_event("tariff", "info", f"Power updated - {device.value}: {power}W", {"device": device.value, "power": power})
    return jsonify({"success": True, "message": "Power updated", "device": device.value, "power": power})


@bp.route("/update-price", methods=["POST"])
def update_price() -> Any:
    price = _hub().set_tariff(_payload().get("price"))
    _log_event("tariff", "info", f"Electricity price updated: {price} VND/kWh", {"price": price})
    return jsonify({"success": True, "message": "Price updated", "price": price})


# Detections
@bp.route("/detection-history")
def detection_history() -> Any:
    try:
        day = int(request.args.get("day", "1"))
    except ValueError:
        day = 1
    if day not in SLOT_LABELS:
        day = 1
    records = _hub().list_detections(day)
    return jsonify({
        "success": True,
        "day": day,
        "dateLabel": SLOT_LABELS[day],
        "count": len(records),
        "data": [r.to_dict() for r in records],
    })


@bp.route("/detection-add", methods=["POST"])
def detection_add() -> Any:
    body = _payload()
    try:
        image = image_from_payload(body.get("imageUrl"), body.get("imageBase64"))
    except ValueError as exc:
        raise ValidationError(str(exc)) from None
    description = body.get("description")
    if description is not None and not isinstance(description, str):
        raise ValidationError("description must be a string")
    record = _hub().add_detection(image, description, body.get("confidence"))
    _log_event("detection", "info", f"Detection added: {record.description}", {"id": record.id})
    return jsonify({
        "success": True,
        "message": "Detection frame added successfully",
        "detection": record.to_dict(),
    })


@bp.route("/detection-delete/<int:record_id>", methods=["DELETE"])
def detection_delete(record_id: int) -> Any:
    if not _hub().remove_detection(record_id):
        return jsonify({"success": False, "error": "Detection not found"}), 404
    _log_event("detection", "info", f"Detection deleted: ID {record_id}", {"id": record_id})
    return jsonify({"success": True, "message": "Detection deleted"})


@bp.route("/test-populate-days")
def test_populate_days() -> Any:
    if not current_app.config.get("SIMULATION_MODE"):
        abort(404)
    hub = _hub()
    now = hub.clock()
    slots = []
    for day, label in SLOT_LABELS.items():
        slots.append([
            {
                "captured_at": now - (day - 1) * 86400 - i * 60,
                "image": ImageReference(f"https://picsum.photos/200/300?random={(day - 1) * 100 + i}"),
                "description": f"{label} - Frame {i}",
                "confidence": round(random.random(), 2),
            }
            for i in range(1, DEMO_FRAMES_PER_DAY + 1)
        ])
    counts = hub.seed_detections(slots, now)
    _log_event("detection", "info", "Test data populated for 3 days", {"counts": counts})
    return jsonify({
        "success": True,
        "message": "Test data populated for 3 days",
        "data": {f"day{i}": count for i, count in enumerate(counts, start=1)},
    })


# Operations
@bp.route("/api/events")
def api_events() -> Any:
    limit_raw = request.args.get("limit", "50")
    try:
        limit = int(limit_raw)
    except ValueError:
        return jsonify({"error": "limit must be integer"}), 400
    limit = max(1, min(limit, EVENT_LOG_LIMIT))
    category = (request.args.get("category") or "").strip().lower()
    events = current_app.extensions["floorhub.events"].recent(limit, category)
    return jsonify({"events": events})


@bp.route("/health")
def health() -> Any:
    hub = _hub()
    return jsonify({
        "ok": True,
        "simulation": bool(current_app.config.get("SIMULATION_MODE")),
        "date": hub.active_day,
        "time": datetime.now(timezone.utc).isoformat(),
    })


def create_app(hub: Optional[Hub] = None, config: Optional[Dict[str, Any]] = None) -> Flask:
    if hub is None:
        cfg = config if config is not None else load_hub_config()
        try:
            hub = Hub(cfg)
        except ValidationError as exc:
            raise ConfigError(str(exc)) from exc
    app = Flask(__name__)
    app.config["SIMULATION_MODE"] = SIMULATION_MODE
    app.extensions["floorhub.hub"] = hub
    app.extensions["floorhub.events"] = EventLog()
    app.register_blueprint(bp)
    return app


def main() -> None:
    configure_logging()
    app = create_app()
    tariff = app.extensions["floorhub.hub"].tariff_snapshot()
    logger.info("Hub listening on http://%s:%d", HUB_HOST, HUB_PORT)
    logger.info(
        "Device power: %s | Electricity price: %s VND/kWh",
        ", ".join(f"{name}={watts}W" for name, watts in tariff["device_power_w"].items()),
        tariff["price_per_kwh"],
    )
    if SIMULATION_MODE:
        logger.info("Simulation mode: GET /test-populate-days seeds demo detections")
    app.run(host=HUB_HOST, port=HUB_PORT, debug=False)


if __name__ == "__main__":
    main()
