"""Versioned platform configuration.

There is at most one active ``PlatformConfig`` row. Every write bumps its
``version`` and appends a ``ConfigurationHistory`` record holding the diff and
a full snapshot of the configuration after the change (scalar fields plus the
geographic restrictions and payment method settings). Rollback re-applies a
recorded snapshot as a new version; history rows are never edited.

Rates are stored as percentages (``25.0`` means 25 %).
"""
import os
import re
import logging
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from .errors import InvalidRequestError, NotFoundError
from .models import (
    ChangeType,
    ConfigurationHistory,
    GeographicRestriction,
    PaymentMethodConfig,
    PlatformConfig,
    RestrictionType,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

FINANCIAL_FIELDS = ("commission_rate", "platform_fee_discount_rate", "tax_rate", "default_currency")
TOGGLE_FIELDS = (
    "instant_booking",
    "hourly_bookings",
    "recurring_bookings",
    "without_driver_listings",
    "auto_approval_enabled",
    "maintenance_mode",
)
SYSTEM_FIELDS = ("booking_timeout_hours",)
CONFIG_FIELDS = FINANCIAL_FIELDS + SYSTEM_FIELDS + TOGGLE_FIELDS
# changes that get called out in comparisons and rollback warnings
CRITICAL_FIELDS = ("commission_rate", "tax_rate", "maintenance_mode", "auto_approval_enabled")
FEATURE_FIELDS = tuple(f for f in TOGGLE_FIELDS if f != "maintenance_mode")

_RATE_FIELDS = {
    "commission_rate": "INVALID_COMMISSION_RATE",
    "platform_fee_discount_rate": "INVALID_DISCOUNT_RATE",
    "tax_rate": "INVALID_TAX_RATE",
}
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def default_values() -> Dict:
    """Built-in configuration used until an admin saves the first version."""
    return {
        "commission_rate": float(os.getenv("PLATFORM_COMMISSION_RATE", "5")),
        "platform_fee_discount_rate": 0.0,
        "tax_rate": float(os.getenv("PLATFORM_TAX_RATE", "25")),
        "booking_timeout_hours": int(os.getenv("BOOKING_TIMEOUT_HOURS", "24")),
        "default_currency": os.getenv("DEFAULT_CURRENCY", "NOK"),
        "instant_booking": False,
        "hourly_bookings": True,
        "recurring_bookings": True,
        "without_driver_listings": True,
        "auto_approval_enabled": False,
        "maintenance_mode": False,
    }


def _find_active(session: Session, lock: bool = False) -> Optional[PlatformConfig]:
    query = (
        select(PlatformConfig)
        .where(PlatformConfig.is_active == True)  # noqa: E712
        .order_by(PlatformConfig.id.desc())
    )
    if lock:
        # writers serialize on the active row and must see its committed version
        query = query.with_for_update().execution_options(populate_existing=True)
    return session.exec(query).first()


def get_active(session: Session) -> PlatformConfig:
    """Active configuration, or an unsaved version-0 config holding the defaults."""
    config = _find_active(session)
    if config is None:
        return PlatformConfig(version=0, **default_values())
    return config


def list_restrictions(session: Session, config: PlatformConfig) -> List[GeographicRestriction]:
    if config.id is None:
        return []
    return session.exec(
        select(GeographicRestriction)
        .where(GeographicRestriction.config_id == config.id)
        .order_by(GeographicRestriction.region, GeographicRestriction.id)
    ).all()


def list_payment_methods(session: Session, config: PlatformConfig) -> List[PaymentMethodConfig]:
    if config.id is None:
        return []
    return session.exec(
        select(PaymentMethodConfig)
        .where(PaymentMethodConfig.config_id == config.id)
        .order_by(PaymentMethodConfig.method)
    ).all()


def _restriction_state(r: GeographicRestriction) -> Dict:
    return {
        "region": r.region,
        "restriction_type": RestrictionType(r.restriction_type).value,
        "reason": r.reason,
    }


def _payment_state(p: PaymentMethodConfig) -> Dict:
    return {
        "method": p.method,
        "enabled": p.enabled,
        "min_amount": p.min_amount,
        "max_amount": p.max_amount,
    }


def snapshot(session: Session, config: PlatformConfig) -> Dict:
    state = {f: getattr(config, f) for f in CONFIG_FIELDS}
    state["geographic_restrictions"] = [_restriction_state(r) for r in list_restrictions(session, config)]
    state["payment_methods"] = [_payment_state(p) for p in list_payment_methods(session, config)]
    return state


def classify(fields) -> ChangeType:
    fields = set(fields)
    if fields and fields <= set(FINANCIAL_FIELDS):
        return ChangeType.FINANCIAL_UPDATE
    if fields and fields <= set(TOGGLE_FIELDS):
        return ChangeType.FEATURE_TOGGLE
    if fields == {"geographic_restrictions"}:
        return ChangeType.GEOGRAPHIC_RESTRICTION
    if fields == {"payment_methods"}:
        return ChangeType.PAYMENT_CONFIG
    return ChangeType.SYSTEM_SETTING


def validate_changes(changes: Dict) -> None:
    unknown = set(changes) - set(CONFIG_FIELDS)
    if unknown:
        raise InvalidRequestError("UNKNOWN_FIELD", f"Unknown configuration field(s): {', '.join(sorted(unknown))}")

    for field, code in _RATE_FIELDS.items():
        if field in changes:
            value = changes[field]
            if value is None or isinstance(value, bool) or not 0 <= value <= 100:
                raise InvalidRequestError(code, f"{field} must be between 0 and 100")

    if "booking_timeout_hours" in changes:
        value = changes["booking_timeout_hours"]
        if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
            raise InvalidRequestError("INVALID_TIMEOUT_HOURS", "booking_timeout_hours must be a positive integer")

    if "default_currency" in changes:
        value = changes["default_currency"]
        if not isinstance(value, str) or not _CURRENCY_RE.match(value):
            raise InvalidRequestError("INVALID_CURRENCY", "default_currency must be a 3-letter ISO code")

    for field in TOGGLE_FIELDS:
        if field in changes and not isinstance(changes[field], bool):
            raise InvalidRequestError("INVALID_FEATURE_TOGGLE", f"{field} must be a boolean")


def _write_version(
    session: Session,
    config: PlatformConfig,
    change_type: ChangeType,
    changes: Dict,
    admin: Optional[User],
    reason: Optional[str] = None,
    rollback_to: Optional[int] = None,
) -> ConfigurationHistory:
    config.version += 1
    config.updated_at = utcnow()
    config.activated_by = admin.id if admin else None
    session.add(config)
    session.flush()

    entry = ConfigurationHistory(
        config_id=config.id,
        version=config.version,
        change_type=change_type,
        changes=changes,
        snapshot=snapshot(session, config),
        reason=reason,
        changed_by=admin.id if admin else None,
        rollback_to=rollback_to,
    )
    session.add(entry)
    session.flush()
    logger.info(
        "Platform config %s now at version %s (%s)",
        config.id, config.version, change_type.value,
    )
    return entry


def _get_or_create(session: Session, admin: Optional[User]) -> PlatformConfig:
    config = _find_active(session, lock=True)
    if config is not None:
        return config
    config = PlatformConfig(version=0, **default_values())
    _write_version(session, config, ChangeType.SYSTEM_SETTING, {}, admin, "Initial configuration")
    return config


def update(session: Session, changes: Dict, admin: Optional[User], reason: Optional[str] = None) -> PlatformConfig:
    validate_changes(changes)
    if "default_currency" in changes:
        changes = {**changes, "default_currency": changes["default_currency"].upper()}

    current = _find_active(session, lock=True) or PlatformConfig(version=0, **default_values())
    diff = {
        field: {"old": getattr(current, field), "new": value}
        for field, value in changes.items()
        if getattr(current, field) != value
    }
    if not diff:
        raise InvalidRequestError("NO_CHANGES", "Update does not change any configuration value")

    config = _get_or_create(session, admin)
    for field in diff:
        setattr(config, field, changes[field])
    try:
        _write_version(session, config, classify(diff), diff, admin, reason)
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(config)
    return config


def history(session: Session, limit: int = 50, offset: int = 0) -> List[ConfigurationHistory]:
    config = _find_active(session)
    if config is None:
        return []
    return session.exec(
        select(ConfigurationHistory)
        .where(ConfigurationHistory.config_id == config.id)
        .order_by(ConfigurationHistory.version.desc())
        .offset(offset)
        .limit(limit)
    ).all()


def get_version(session: Session, version: int) -> ConfigurationHistory:
    config = _find_active(session)
    entry = None
    if config is not None:
        entry = session.exec(
            select(ConfigurationHistory).where(
                (ConfigurationHistory.config_id == config.id)
                & (ConfigurationHistory.version == version)
            )
        ).first()
    if entry is None:
        raise NotFoundError("VERSION_NOT_FOUND", f"Configuration version {version} not found")
    return entry


def _field_change_type(field: str) -> ChangeType:
    return classify([field])


def diff_states(old: Dict, new: Dict) -> Dict:
    return {
        key: {"old": old.get(key), "new": new.get(key)}
        for key in sorted(set(old) | set(new))
        if old.get(key) != new.get(key)
    }


def _difference(field: str, values: Dict) -> Dict:
    return {
        "field": field,
        "old_value": values["old"],
        "new_value": values["new"],
        "change_type": _field_change_type(field),
    }


def compare(session: Session, version1: int, version2: int) -> Dict:
    first = get_version(session, version1).snapshot
    second = get_version(session, version2).snapshot
    differences = [_difference(field, values) for field, values in diff_states(first, second).items()]

    changes_by_type = {t.value: 0 for t in ChangeType}
    for d in differences:
        changes_by_type[d["change_type"].value] += 1
    return {
        "version1": version1,
        "version2": version2,
        "differences": differences,
        "total_changes": len(differences),
        "summary": {
            "total_changes": len(differences),
            "changes_by_type": changes_by_type,
            "critical_changes": [d for d in differences if d["field"] in CRITICAL_FIELDS],
        },
    }


def rollback_preview(session: Session, target_version: int) -> Dict:
    """What rolling back to ``target_version`` would change, without writing anything.

    Critical fields produce a warning each; feature toggles that would flip
    are listed in ``affected_features``. Nothing currently blocks a rollback,
    so ``is_safe`` is true whenever the target exists.
    """
    config = _find_active(session)
    if config is None:
        raise NotFoundError("NO_ACTIVE_CONFIG", "No platform configuration has been saved yet")
    if target_version == config.version:
        raise InvalidRequestError("ALREADY_AT_VERSION", f"Configuration is already at version {target_version}")

    target = get_version(session, target_version).snapshot
    before = snapshot(session, config)
    changes = diff_states(before, {**before, **target})

    warnings = [
        f"{field}: {changes[field]['old']} -> {changes[field]['new']}"
        for field in CRITICAL_FIELDS
        if field in changes
    ]
    if target.get("maintenance_mode") and not config.maintenance_mode:
        warnings.append("Rollback will enable maintenance mode")
    blockers: List[str] = []
    return {
        "current_version": config.version,
        "target_version": target_version,
        "differences": [_difference(field, values) for field, values in changes.items()],
        "warnings": warnings,
        "blockers": blockers,
        "affected_features": [f for f in FEATURE_FIELDS if f in changes],
        "is_safe": not blockers,
    }


def rollback(session: Session, target_version: int, admin: Optional[User], reason: Optional[str] = None) -> PlatformConfig:
    config = _find_active(session, lock=True)
    if config is None:
        raise NotFoundError("NO_ACTIVE_CONFIG", "No platform configuration has been saved yet")
    if target_version == config.version:
        raise InvalidRequestError("ALREADY_AT_VERSION", f"Configuration is already at version {target_version}")

    target = get_version(session, target_version).snapshot
    before = snapshot(session, config)

    try:
        for field in CONFIG_FIELDS:
            if field in target:
                setattr(config, field, target[field])

        for r in list_restrictions(session, config):
            session.delete(r)
        for p in list_payment_methods(session, config):
            session.delete(p)
        session.flush()
        for r in target.get("geographic_restrictions", []):
            session.add(GeographicRestriction(
                config_id=config.id,
                region=r["region"],
                restriction_type=RestrictionType(r["restriction_type"]),
                reason=r.get("reason"),
            ))
        for p in target.get("payment_methods", []):
            session.add(PaymentMethodConfig(config_id=config.id, **p))

        changes = diff_states(before, {**before, **target})
        _write_version(
            session, config, ChangeType.ROLLBACK, changes, admin,
            reason or f"Rollback to version {target_version}",
            rollback_to=target_version,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(config)
    return config


# ------------------------------------------------------------------
# Geographic restrictions & payment methods
# ------------------------------------------------------------------
def add_geographic_restriction(
    session: Session,
    region: str,
    restriction_type: RestrictionType,
    admin: Optional[User],
    reason: Optional[str] = None,
) -> GeographicRestriction:
    region = (region or "").strip()
    if not region:
        raise InvalidRequestError("REGION_REQUIRED", "region is required")

    config = _get_or_create(session, admin)
    existing = session.exec(
        select(GeographicRestriction).where(
            (GeographicRestriction.config_id == config.id)
            & (func.lower(GeographicRestriction.region) == region.lower())
            & (GeographicRestriction.restriction_type == restriction_type)
        )
    ).first()
    if existing is not None:
        session.rollback()
        raise InvalidRequestError("RESTRICTION_EXISTS", f"{region} already has a {restriction_type.value} restriction")

    restriction = GeographicRestriction(
        config_id=config.id, region=region, restriction_type=restriction_type, reason=reason,
    )
    session.add(restriction)
    try:
        _write_version(
            session, config, ChangeType.GEOGRAPHIC_RESTRICTION,
            {"geographic_restrictions": {"added": _restriction_state(restriction)}},
            admin, reason,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(restriction)
    return restriction


def remove_geographic_restriction(session: Session, restriction_id: int, admin: Optional[User], reason: Optional[str] = None) -> None:
    config = _find_active(session, lock=True)
    restriction = session.get(GeographicRestriction, restriction_id)
    if config is None or restriction is None or restriction.config_id != config.id:
        raise NotFoundError("RESTRICTION_NOT_FOUND", "Geographic restriction not found")

    removed = _restriction_state(restriction)
    session.delete(restriction)
    try:
        _write_version(
            session, config, ChangeType.GEOGRAPHIC_RESTRICTION,
            {"geographic_restrictions": {"removed": removed}},
            admin, reason,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise


def set_payment_method(
    session: Session,
    method: str,
    enabled: bool,
    admin: Optional[User],
    min_amount: Optional[float] = None,
    max_amount: Optional[float] = None,
    reason: Optional[str] = None,
) -> PaymentMethodConfig:
    method = (method or "").strip().lower()
    if not method:
        raise InvalidRequestError("PAYMENT_METHOD_REQUIRED", "method is required")
    if min_amount is not None and max_amount is not None and min_amount > max_amount:
        raise InvalidRequestError("INVALID_AMOUNT_RANGE", "min_amount must not exceed max_amount")

    config = _get_or_create(session, admin)
    pm = session.exec(
        select(PaymentMethodConfig).where(
            (PaymentMethodConfig.config_id == config.id)
            & (PaymentMethodConfig.method == method)
        )
    ).first()
    old = _payment_state(pm) if pm else None
    if pm is None:
        pm = PaymentMethodConfig(config_id=config.id, method=method)
    pm.enabled = enabled
    pm.min_amount = min_amount
    pm.max_amount = max_amount
    new = _payment_state(pm)
    if old == new:
        session.rollback()
        raise InvalidRequestError("NO_CHANGES", "Update does not change any configuration value")

    session.add(pm)
    try:
        _write_version(
            session, config, ChangeType.PAYMENT_CONFIG,
            {"payment_methods": {method: {"old": old, "new": new}}},
            admin, reason,
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    session.refresh(pm)
    return pm


def is_region_blocked(
    session: Session,
    region: Optional[str],
    restriction_type: RestrictionType = RestrictionType.BOOKING_BLOCKED,
) -> bool:
    if not region:
        return False
    config = _find_active(session)
    if config is None:
        return False
    hit = session.exec(
        select(GeographicRestriction).where(
            (GeographicRestriction.config_id == config.id)
            & (func.lower(GeographicRestriction.region) == region.strip().lower())
            & (GeographicRestriction.restriction_type == restriction_type)
        )
    ).first()
    return hit is not None


def check_payment_method(session: Session, method: Optional[str], amount: float) -> None:
    """Raise unless ``method`` may be used for ``amount``.

    Methods without a stored setting are allowed.
    """
    if not method:
        return
    config = _find_active(session)
    if config is None:
        return
    pm = session.exec(
        select(PaymentMethodConfig).where(
            (PaymentMethodConfig.config_id == config.id)
            & (PaymentMethodConfig.method == method.strip().lower())
        )
    ).first()
    if pm is None:
        return
    if not pm.enabled:
        raise InvalidRequestError("PAYMENT_METHOD_NOT_AVAILABLE", f"Payment method {pm.method} is disabled")
    if pm.min_amount is not None and amount < pm.min_amount:
        raise InvalidRequestError("PAYMENT_METHOD_NOT_AVAILABLE", f"{pm.method} requires an amount of at least {pm.min_amount}")
    if pm.max_amount is not None and amount > pm.max_amount:
        raise InvalidRequestError("PAYMENT_METHOD_NOT_AVAILABLE", f"{pm.method} allows at most {pm.max_amount}")
