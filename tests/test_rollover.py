from datetime import datetime, timedelta, timezone

import pytest

from settlement_hub import ledger
from settlement_hub.rollover import open_current_period
from settlement_hub.schemas import RestaurantProfile, Settlement

NOW = datetime(2026, 3, 10, 6, 0, tzinfo=timezone.utc)
TZ = "Asia/Kolkata"


def _restaurant(status: str = "Active") -> RestaurantProfile:
    return RestaurantProfile(id="r1", name="Savour Foods", status=status)


def _settlement(default: float = 1000.0, credit: float = 0.0) -> Settlement:
    return Settlement(
        settlement_id="settlement_r1",
        restaurant_id="r1",
        restaurant_name="Savour Foods",
        default_settlement_amount=default,
        default_settlement_start_date=NOW - timedelta(days=40),
        current_overpayment=credit,
        created_at=NOW - timedelta(days=40),
        last_updated=NOW - timedelta(days=40),
    )


def test_new_period_without_credit() -> None:
    settlement = _settlement()
    outcome = open_current_period(settlement, _restaurant(), NOW, TZ)
    assert outcome.accepted
    period = settlement.periods["Mar 2026"]
    assert period.total_amount_due == 1000.0
    assert period.status == "Pending"
    assert period.carry_over_credit == 0.0
    assert period.cycle_start_date == NOW


def test_credit_covering_whole_month_marks_period_paid() -> None:
    settlement = _settlement(credit=1200.0)
    open_current_period(settlement, _restaurant(), NOW, TZ)
    period = settlement.periods["Mar 2026"]
    assert period.total_amount_due == 0.0
    assert period.status == "Paid"
    assert period.carry_over_credit == 1200.0
    assert period.settled_date == NOW
    assert settlement.current_overpayment == 200.0


def test_partial_credit_reduces_amount_due() -> None:
    settlement = _settlement(credit=300.0)
    open_current_period(settlement, _restaurant(), NOW, TZ)
    assert settlement.periods["Mar 2026"].total_amount_due == 700.0
    assert settlement.current_overpayment == 0.0


def test_credit_is_conserved_across_rollover() -> None:
    settlement = _settlement(credit=450.0)
    open_current_period(settlement, _restaurant(), NOW, TZ)
    period = settlement.periods["Mar 2026"]
    applied = period.default_amount_for_month - period.total_amount_due
    assert applied + settlement.current_overpayment == pytest.approx(450.0)


def test_rollover_is_idempotent_within_a_month() -> None:
    settlement = _settlement(credit=1200.0)
    open_current_period(settlement, _restaurant(), NOW, TZ)
    again = open_current_period(settlement, _restaurant(), NOW + timedelta(days=5), TZ)
    assert not again.accepted
    assert again.reason == "period already open"
    assert len(settlement.periods) == 1
    assert settlement.current_overpayment == 200.0


@pytest.mark.parametrize("status", ["Suspended", "Inactive", "Off"])
def test_rollover_paused_unless_active(status) -> None:
    settlement = _settlement()
    outcome = open_current_period(settlement, _restaurant(status), NOW, TZ)
    assert not outcome.accepted
    assert settlement.periods == {}


def test_suspension_mid_cycle_blocks_next_month_until_reactivated() -> None:
    settlement = _settlement()
    open_current_period(settlement, _restaurant(), NOW, TZ)

    next_month = NOW + timedelta(days=31)
    assert not open_current_period(settlement, _restaurant("Suspended"), next_month, TZ).accepted
    assert list(settlement.periods) == ["Mar 2026"]

    assert open_current_period(settlement, _restaurant("Active"), next_month, TZ).accepted
    assert list(settlement.periods) == ["Mar 2026", "Apr 2026"]


def test_rollover_requires_default_amount() -> None:
    settlement = _settlement(default=0.0)
    settlement.default_settlement_start_date = None
    outcome = open_current_period(settlement, _restaurant(), NOW, TZ)
    assert not outcome.accepted
    assert settlement.periods == {}


def test_overpayment_carries_into_next_month() -> None:
    settlement = _settlement()
    open_current_period(settlement, _restaurant(), NOW, TZ)
    ledger.add_payment(settlement, 1300, NOW, "pay_1", TZ)
    assert settlement.current_overpayment == 300.0

    next_month = NOW + timedelta(days=31)
    open_current_period(settlement, _restaurant(), next_month, TZ)
    april = settlement.periods["Apr 2026"]
    assert april.total_amount_due == 700.0
    assert april.carry_over_credit == 300.0
    assert settlement.current_overpayment == 0.0
