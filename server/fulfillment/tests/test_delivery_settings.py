from decimal import Decimal

import pytest

from fulfillment.delivery_settings.service import (
    DEFAULT_DELIVERY_SETTINGS,
    InvalidSettingError,
    get_delivery_settings,
    get_setting,
    seed_default_settings,
    update_settings,
)
from fulfillment.models import DeliverySetting
from fulfillment.tests.factories import create_session


def test_defaults_apply_without_rows():
    db = create_session()
    settings = get_delivery_settings(db)

    assert settings.base_delivery_fee == Decimal("50")
    assert settings.per_km_rate == Decimal("10")
    assert settings.agent_bonus_threshold == 10
    assert settings.min_withdrawal_amount == Decimal("100")


def test_update_overrides_defaults():
    db = create_session()

    update_settings(db, {"base_delivery_fee": "75", "agent_bonus_threshold": "5"}, updated_by=1)

    assert get_setting(db, "base_delivery_fee") == Decimal("75")
    assert get_setting(db, "agent_bonus_threshold") == 5
    row = db.query(DeliverySetting).filter_by(setting_key="base_delivery_fee").one()
    assert row.updated_by == 1

    update_settings(db, {"base_delivery_fee": "80"})
    assert db.query(DeliverySetting).filter_by(setting_key="base_delivery_fee").count() == 1
    assert get_delivery_settings(db).base_delivery_fee == Decimal("80")


def test_inactive_rows_fall_back_to_defaults():
    db = create_session()
    update_settings(db, {"per_km_rate": "12"})
    db.query(DeliverySetting).filter_by(setting_key="per_km_rate").one().is_active = False
    db.flush()

    assert get_setting(db, "per_km_rate") == Decimal("10")


@pytest.mark.parametrize(
    "values",
    [
        {"surge_multiplier": "2"},
        {"base_delivery_fee": "fifty"},
        {"per_km_rate": "-1"},
        {"agent_bonus_threshold": "2.5"},
    ],
)
def test_invalid_updates_are_rejected(values):
    db = create_session()

    with pytest.raises(InvalidSettingError):
        update_settings(db, values)
    assert db.query(DeliverySetting).count() == 0


def test_unknown_setting_lookup_fails():
    db = create_session()
    with pytest.raises(InvalidSettingError):
        get_setting(db, "surge_multiplier")


def test_seed_creates_missing_rows_only():
    db = create_session()
    update_settings(db, {"min_delivery_fee": "40"})

    created = seed_default_settings(db)

    assert created == len(DEFAULT_DELIVERY_SETTINGS) - 1
    assert seed_default_settings(db) == 0
    assert get_setting(db, "min_delivery_fee") == Decimal("40")
