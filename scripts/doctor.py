#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import jsonschema

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app import HUB_CONFIG_SCHEMA  # noqa: E402
from hub import DeviceKind  # noqa: E402


@dataclass
class Issue:
    level: str
    message: str
    path: str | None = None

    def format(self) -> str:
        prefix = f"[{self.level}]"
        if self.path:
            return f"{prefix} {self.path}: {self.message}"
        return f"{prefix} {self.message}"


def _load_json(path: Path, issues: list[Issue]) -> Any | None:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        issues.append(Issue("ERROR", "File not found.", str(path)))
    except json.JSONDecodeError as exc:
        issues.append(Issue("ERROR", f"JSON parse error: {exc}", str(path)))
    except OSError as exc:
        issues.append(Issue("ERROR", f"Read error: {exc}", str(path)))
    return None


def _schema_validate(instance: Any, issues: list[Issue], where: str) -> None:
    validator_cls = jsonschema.validators.validator_for(HUB_CONFIG_SCHEMA)
    validator_cls.check_schema(HUB_CONFIG_SCHEMA)
    validator = validator_cls(HUB_CONFIG_SCHEMA)
    for err in sorted(validator.iter_errors(instance), key=str):
        loc = ".".join(str(p) for p in err.path) if err.path else ""
        issues.append(Issue("ERROR", f"Schema error{f' ({loc})' if loc else ''}: {err.message}", where))


def _validate_hub(cfg: Any, issues: list[Issue]) -> None:
    if not isinstance(cfg, dict):
        return

    power = cfg.get("device_power_w")
    if isinstance(power, dict):
        missing = [d.value for d in DeviceKind if d.value not in power]
        if missing:
            issues.append(Issue("WARN", f"no power rating for {', '.join(missing)}; defaults apply.", "hub.device_power_w"))

    price = cfg.get("price_per_kwh")
    if isinstance(price, (int, float)) and 0 < price < 100:
        issues.append(Issue("WARN", f"price_per_kwh looks low for VND: {price}", "hub.price_per_kwh"))

    capacity = cfg.get("detection_capacity")
    if isinstance(capacity, int) and capacity > 500:
        issues.append(Issue("WARN", f"detection_capacity={capacity} keeps many inline images in memory.", "hub.detection_capacity"))

    days = cfg.get("monthly_days")
    if isinstance(days, int) and not (28 <= days <= 31):
        issues.append(Issue("WARN", f"monthly_days={days} is not a calendar month length.", "hub.monthly_days"))

    tz = cfg.get("timezone")
    if isinstance(tz, str) and tz:
        try:
            ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError):
            issues.append(Issue("ERROR", f"unknown time zone: {tz!r}", "hub.timezone"))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Hub config check (schema + sanity rules).")
    parser.add_argument("--config", type=Path, default=ROOT_DIR / "config" / "hub.json", help="Config file to check.")
    parser.add_argument("--strict", action="store_true", help="Treat warnings as errors.")
    args = parser.parse_args(argv)

    issues: list[Issue] = []
    cfg = _load_json(args.config, issues)
    if cfg is not None:
        _schema_validate(cfg, issues, str(args.config))
        _validate_hub(cfg, issues)

    errors = [i for i in issues if i.level == "ERROR"]
    warns = [i for i in issues if i.level == "WARN"]

    for issue in issues:
        print(issue.format())

    if not issues:
        print("[OK] All clean.")

    if errors:
        print(f"[FAIL] {len(errors)} error(s), {len(warns)} warning(s).")
        return 1

    if args.strict and warns:
        print(f"[FAIL] strict mode: {len(warns)} warning(s) counted as errors.")
        return 1

    print(f"[OK] {len(warns)} warning(s).")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
