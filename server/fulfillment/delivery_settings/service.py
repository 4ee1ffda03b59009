from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import logging
from typing import Optional

from sqlalchemy.orm import Session

from fulfillment.errors import InvalidInputError
from fulfillment.models import DeliverySetting


logger = logging.getLogger(__name__)

DEFAULT_DELIVERY_SETTINGS: dict[str, tuple[str, str]] = {
    "base_delivery_fee": ("50", "Flat fee per delivery"),
    "per_km_rate": ("10", "Fee per kilometre travelled"),
    "min_delivery_fee": ("30", "Lower bound for a delivery fee"),
    "platform_commission_rate": ("15", "Percent of the delivery fee kept by the platform"),
    "agent_bonus_threshold": ("10", "Completed deliveries per bonus"),
    "agent_bonus_amount": ("100", "Bonus paid every threshold deliveries"),
    "min_withdrawal_amount": ("100", "Smallest payout an owner may request"),
    "default_seller_commission_rate": ("15", "Commission rate for plans without an explicit rate"),
    "agent_search_radius_km": ("10", "Radius used when auto-assigning agents"),
}

INTEGER_SETTINGS = {"agent_bonus_threshold"}


class InvalidSettingError(InvalidInputError):
    code = "INVALID_SETTING"


@dataclass(frozen=True)
class DeliverySettings:
    base_delivery_fee: Decimal
    per_km_rate: Decimal
    min_delivery_fee: Decimal
    platform_commission_rate: Decimal
    agent_bonus_threshold: int
    agent_bonus_amount: Decimal
    min_withdrawal_amount: Decimal
    default_seller_commission_rate: Decimal
    agent_search_radius_km: Decimal


def _parse(key: str, raw: str):
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, TypeError) as exc:
        raise InvalidSettingError(f"Setting {key} must be numeric.") from exc
    if value < 0:
        raise InvalidSettingError(f"Setting {key} cannot be negative.")
    if key in INTEGER_SETTINGS:
        if value != value.to_integral_value():
            raise InvalidSettingError(f"Setting {key} must be a whole number.")
        return int(value)
    return value


def get_setting_values(db: Session) -> dict[str, str]:
    values = {key: default for key, (default, _) in DEFAULT_DELIVERY_SETTINGS.items()}
    rows = db.query(DeliverySetting).filter(DeliverySetting.is_active.is_(True)).all()
    for row in rows:
        if row.setting_key in values:
            values[row.setting_key] = row.setting_value
    return values


def get_setting(db: Session, key: str):
    if key not in DEFAULT_DELIVERY_SETTINGS:
        raise InvalidSettingError(f"Unknown setting: {key}")
    return _parse(key, get_setting_values(db)[key])


def get_delivery_settings(db: Session) -> DeliverySettings:
    values = get_setting_values(db)
    return DeliverySettings(**{key: _parse(key, raw) for key, raw in values.items()})


def update_settings(db: Session, values: dict, *, updated_by: Optional[int] = None) -> list[DeliverySetting]:
    unknown = sorted(key for key in values if key not in DEFAULT_DELIVERY_SETTINGS)
    if unknown:
        raise InvalidSettingError(f"Unknown settings: {', '.join(unknown)}")
    parsed = {key: _parse(key, value) for key, value in values.items()}

    existing = {
        row.setting_key: row
        for row in db.query(DeliverySetting).filter(DeliverySetting.setting_key.in_(list(parsed))).all()
    }
    updated = []
    for key, value in parsed.items():
        row = existing.get(key)
        if row is None:
            row = DeliverySetting(setting_key=key, description=DEFAULT_DELIVERY_SETTINGS[key][1])
            db.add(row)
        row.setting_value = str(value)
        row.is_active = True
        row.updated_by = updated_by
        updated.append(row)
    db.flush()
    logger.info("Delivery settings updated by user_id=%s: %s", updated_by, {key: str(v) for key, v in parsed.items()})
    return updated


def seed_default_settings(db: Session) -> int:
    existing = {key for (key,) in db.query(DeliverySetting.setting_key).all()}
    created = 0
    for key, (default, description) in DEFAULT_DELIVERY_SETTINGS.items():
        if key not in existing:
            db.add(DeliverySetting(setting_key=key, setting_value=default, description=description))
            created += 1
    db.flush()
    return created
