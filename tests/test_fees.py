import pytest

from settlement_hub.fees import GATEWAY_FEE_FACTOR, derive_fees


def test_fee_split_for_standard_order() -> None:
    fees = derive_fees(1000.0, 50.0)
    assert fees.gross_amount == pytest.approx(1050.0)
    assert fees.restaurant_receivable == 1000.0
    assert fees.platform_fee == 50.0
    assert fees.gateway_fee == pytest.approx(23.6)
    assert fees.gst == pytest.approx(4.75, abs=0.01)
    assert fees.net_platform_earnings == pytest.approx(45.25, abs=0.01)


def test_gateway_fee_includes_tax_on_gateway_charge() -> None:
    assert GATEWAY_FEE_FACTOR == pytest.approx(0.0236)
    assert derive_fees(500.0, 0.0).gateway_fee == pytest.approx(11.8)


def test_surcharge_below_gateway_fee_is_not_clamped() -> None:
    fees = derive_fees(1000.0, 10.0)
    assert fees.gst < 0
    assert fees.net_platform_earnings > fees.platform_fee


def test_zero_order_has_zero_fees() -> None:
    fees = derive_fees(0.0, 0.0)
    assert fees.gateway_fee == 0.0
    assert fees.gst == 0.0
    assert fees.net_platform_earnings == 0.0
