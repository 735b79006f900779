"""
mintrelay/tests/test_plan_registry.py
Tests for the static plan table and plan lookup.
"""

import pytest

from mintrelay.core.errors import ValidationError
from mintrelay.features.plans.registry import cents_to_minor_units, list_plans, plan_config, plan_from_value
from mintrelay.models.plan import Plan


def test_plan_table_values():
    assert plan_config(Plan.FREE, 6).monthly_quota == 1
    assert plan_config(Plan.MASTER, 6).monthly_quota == 10
    assert plan_config(Plan.ELITE, 6).monthly_quota == 25
    assert plan_config(Plan.FREE, 6).price_minor_units == 0
    assert plan_config(Plan.MASTER, 6).price_minor_units == 4_990_000
    assert plan_config(Plan.ELITE, 6).price_minor_units == 9_990_000


def test_price_scales_with_token_decimals():
    """A 2-decimal token prices Master at 499 minor units."""
    assert plan_config(Plan.MASTER, 2).price_minor_units == 499
    assert plan_config(Plan.ELITE, 18).price_minor_units == 999 * 10**16


def test_cents_conversion_rejects_tiny_decimals():
    with pytest.raises(ValueError):
        cents_to_minor_units(499, 1)


def test_every_plan_is_gasless_eligible():
    assert all(config.gasless_eligible for config in list_plans(6))


@pytest.mark.parametrize(
    "value,expected",
    [("free", Plan.FREE), ("MASTER", Plan.MASTER), (" elite ", Plan.ELITE), (1, Plan.MASTER), ("2", Plan.ELITE)],
)
def test_plan_from_value(value, expected):
    assert plan_from_value(value) is expected


def test_plan_from_value_rejects_unknown():
    with pytest.raises(ValidationError):
        plan_from_value("platinum")
