from __future__ import annotations

import re
from decimal import Decimal

import pytest

from settlement.domain.money import apply_bps, ensure_fils, format_fils, new_reference, prorate, validate_bps


def test_apply_bps_matches_reference_commission():
    assert apply_bps(1_000_000, 500) == 50_000
    assert apply_bps(50_000, 1200) == 6_000


def test_apply_bps_rounds_down():
    # 12% of 1,005 fils is 120.6
    assert apply_bps(1_005, 1200) == 120


def test_prorate_rounds_half_up():
    assert prorate(6_000, 27_500, 55_000) == 3_000
    assert prorate(5, 1, 2) == 3
    assert prorate(7, 1, 3) == 2
    assert prorate(0, 10, 20) == 0


@pytest.mark.parametrize("value", [1.5, Decimal("2"), True, "10"])
def test_ensure_fils_rejects_non_integers(value):
    with pytest.raises(TypeError):
        ensure_fils(value)


def test_validate_bps_range():
    assert validate_bps(0) == 0
    assert validate_bps(10_000) == 10_000
    with pytest.raises(ValueError):
        validate_bps(10_001)


def test_format_fils():
    assert format_fils(55_000) == "550.00 AED"
    assert format_fils(5) == "0.05 AED"
    assert format_fils(-1_234, "USD") == "-12.34 USD"


def test_new_reference_shape():
    ref = new_reference("ORD")
    assert re.fullmatch(r"ORD-[0-9A-HJKMNP-TV-Z]{8}", ref)
    assert new_reference("ORD") != ref
