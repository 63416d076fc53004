# Overview: Per-branch configuration stored as (section, key) -> JSON value.

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from ..extensions import db
from ..models import BranchSetting
from .tenant_service import Scope


COLOR_RE = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")


class SettingsError(ValueError):
    pass


class SettingsValidationError(SettingsError):
    pass


class SettingsNotFoundError(SettingsError):
    pass


@dataclass(frozen=True)
class SettingDef:
    key: str
    value_type: str  # bool, int, decimal, string, enum
    default: Any
    validation: dict = field(default_factory=dict)


def _defs(*rows: SettingDef) -> dict[str, SettingDef]:
    return {row.key: row for row in rows}


SETTINGS_CATALOG: dict[str, dict[str, SettingDef]] = {
    "general": _defs(
        SettingDef("business_name", "string", ""),
        SettingDef("business_address", "string", None),
        SettingDef("business_phone", "string", None),
        SettingDef("business_email", "string", None),
        SettingDef("tax_number", "string", None),
        SettingDef("currency", "string", "UGX", {"regex": r"^[A-Z]{3}$"}),
        SettingDef("timezone", "string", "Africa/Kampala"),
        SettingDef("date_format", "string", "DD/MM/YYYY"),
        SettingDef("time_format", "enum", "24h", {"enum": ["12h", "24h"]}),
        SettingDef("language", "string", "en"),
    ),
    "sales": _defs(
        SettingDef("tax_enabled", "bool", False),
        SettingDef("tax_rate", "decimal", 0.0, {"min": 0, "max": 100}),
        SettingDef("tax_name", "string", "VAT"),
        SettingDef("discount_enabled", "bool", True),
        SettingDef("max_discount_percentage", "decimal", 100.0, {"min": 0, "max": 100}),
        SettingDef("receipt_header", "string", None),
        SettingDef("receipt_footer", "string", "Thank you for your business!"),
        SettingDef("auto_print_receipts", "bool", False),
        SettingDef("require_customer_info", "bool", False),
        SettingDef("low_stock_threshold", "int", 10, {"min": 0}),
    ),
    "inventory": _defs(
        SettingDef("auto_update_stock", "bool", True),
        SettingDef("track_expiry_dates", "bool", True),
        SettingDef("expiry_alert_days", "int", 30, {"min": 0, "max": 3650}),
        SettingDef("barcode_enabled", "bool", False),
        SettingDef("sku_prefix", "string", None),
        SettingDef("purchase_tax_rate", "decimal", 18.0, {"min": 0, "max": 100}),
        SettingDef(
            "stock_audit_frequency", "enum", "monthly",
            {"enum": ["weekly", "monthly", "quarterly", "yearly"]},
        ),
    ),
    "notifications": _defs(
        SettingDef("low_stock_alerts", "bool", True),
        SettingDef("expiry_alerts", "bool", True),
        SettingDef("sales_alerts", "bool", False),
        SettingDef("purchase_alerts", "bool", False),
        SettingDef("email_notifications", "bool", False),
        SettingDef("sms_notifications", "bool", False),
        SettingDef(
            "alert_frequency", "enum", "daily",
            {"enum": ["immediate", "hourly", "daily", "weekly"]},
        ),
    ),
    "security": _defs(
        SettingDef("password_min_length", "int", 8, {"min": 8, "max": 128}),
        SettingDef("session_timeout_minutes", "int", 120, {"min": 5, "max": 1440}),
        SettingDef("max_login_attempts", "int", 5, {"min": 1, "max": 100}),
        SettingDef("lockout_duration_minutes", "int", 15, {"min": 1, "max": 1440}),
        SettingDef("two_factor_enabled", "bool", False),
    ),
}

SECTIONS = tuple(SETTINGS_CATALOG)


def _section(section: str) -> dict[str, SettingDef]:
    definitions = SETTINGS_CATALOG.get(section)
    if definitions is None:
        raise SettingsNotFoundError(f"Unknown settings section: {section}")
    return definitions


def _coerce_value(definition: SettingDef, raw_value: Any) -> Any:
    t = definition.value_type
    v = raw_value
    if v is None:
        return None
    if t == "bool":
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            s = v.strip().lower()
            if s in {"true", "1", "yes", "on"}:
                return True
            if s in {"false", "0", "no", "off"}:
                return False
        raise SettingsValidationError(f"{definition.key}: expected boolean")
    if t == "int":
        if isinstance(v, bool):
            raise SettingsValidationError(f"{definition.key}: expected integer")
        if isinstance(v, int):
            return v
        if isinstance(v, float) and int(v) == v:
            return int(v)
        if isinstance(v, str):
            try:
                return int(v.strip())
            except ValueError:
                pass
        raise SettingsValidationError(f"{definition.key}: expected integer")
    if t == "decimal":
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return float(v)
        if isinstance(v, str):
            try:
                return float(v.strip())
            except ValueError:
                pass
        raise SettingsValidationError(f"{definition.key}: expected decimal")
    if t in {"string", "enum"}:
        return v if isinstance(v, str) else str(v)
    return v


def _validate_constraints(definition: SettingDef, value: Any) -> None:
    validation = definition.validation
    if value is None:
        return
    if definition.value_type == "enum":
        options = validation.get("enum", [])
        if options and value not in options:
            raise SettingsValidationError(f"{definition.key}: expected one of {options}")
    if definition.value_type in {"int", "decimal"}:
        if "min" in validation and value < validation["min"]:
            raise SettingsValidationError(f"{definition.key}: must be >= {validation['min']}")
        if "max" in validation and value > validation["max"]:
            raise SettingsValidationError(f"{definition.key}: must be <= {validation['max']}")
    if definition.value_type == "string" and "regex" in validation:
        if not re.match(validation["regex"], str(value)):
            raise SettingsValidationError(f"{definition.key}: format is invalid")


def _normalize_value(definition: SettingDef, value: Any) -> Any:
    coerced = _coerce_value(definition, value)
    _validate_constraints(definition, coerced)
    return coerced


def _stored_rows(scope: Scope, section: str) -> dict[str, BranchSetting]:
    rows = (
        db.session.query(BranchSetting)
        .filter_by(tenant_id=scope.tenant_id, branch_id=scope.require_branch(), section=section)
        .all()
    )
    return {row.key: row for row in rows}


def get_settings(scope: Scope, section: str) -> dict[str, Any]:
    """Registered defaults overlaid with the branch's stored values."""
    definitions = _section(section)
    values = {key: definition.default for key, definition in definitions.items()}
    for key, row in _stored_rows(scope, section).items():
        if key in definitions:
            values[key] = json.loads(row.value) if row.value is not None else None
    return values


def get_setting(scope: Scope, section: str, key: str) -> Any:
    definitions = _section(section)
    if key not in definitions:
        raise SettingsNotFoundError(f"Unknown setting: {section}.{key}")
    if scope.branch_id is None:
        return definitions[key].default
    return get_settings(scope, section)[key]


def update_settings(scope: Scope, section: str, values: dict) -> dict[str, Any]:
    """
    Upsert a batch of settings for the branch.

    All keys are validated before anything is written; an unknown key or
    invalid value leaves the stored settings untouched.
    """
    definitions = _section(section)
    if not isinstance(values, dict) or not values:
        raise SettingsValidationError("No settings provided")

    normalized = {}
    for key, raw in values.items():
        definition = definitions.get(key)
        if definition is None:
            raise SettingsValidationError(f"Unknown setting: {section}.{key}")
        normalized[key] = _normalize_value(definition, raw)

    existing = _stored_rows(scope, section)
    for key, value in normalized.items():
        row = existing.get(key)
        if row is None:
            row = BranchSetting(
                tenant_id=scope.tenant_id,
                branch_id=scope.branch_id,
                section=section,
                key=key,
            )
            db.session.add(row)
        row.value = json.dumps(value)
        row.updated_by_user_id = scope.user_id

    db.session.commit()
    return get_settings(scope, section)


def get_all_settings(scope: Scope) -> dict[str, dict[str, Any]]:
    return {section: get_settings(scope, section) for section in SECTIONS}
