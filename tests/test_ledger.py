import logging
from datetime import datetime, timedelta, timezone

import pytest

from settlement_hub import ledger
from settlement_hub.schemas import Settlement, SettlementPeriod

NOW = datetime(2026, 3, 10, 6, 0, tzinfo=timezone.utc)
TZ = "Asia/Kolkata"


def _settlement(**overrides) -> Settlement:
    values = {
        "settlement_id": "settlement_r1",
        "restaurant_id": "r1",
        "restaurant_name": "Savour Foods",
        "created_at": NOW,
        "last_updated": NOW,
    }
    values.update(overrides)
    return Settlement(**values)


def _with_period(due: float = 1000.0, **overrides) -> Settlement:
    settlement = _settlement(
        default_settlement_amount=due, default_settlement_start_date=NOW, **overrides
    )
    settlement.periods["Mar 2026"] = SettlementPeriod(
        period="Mar 2026",
        total_amount_due=due,
        default_amount_for_month=due,
        cycle_start_date=NOW,
    )
    return settlement


def test_period_key_uses_billing_timezone() -> None:
    assert ledger.period_key(NOW, TZ) == "Mar 2026"
    # 19:00 UTC on Jan 31 is already Feb 1 in Kolkata
    late = datetime(2026, 1, 31, 19, 0, tzinfo=timezone.utc)
    assert ledger.period_key(late, TZ) == "Feb 2026"
    assert ledger.period_key(late, "UTC") == "Jan 2026"


def test_derive_status() -> None:
    assert ledger.derive_status(0, 1000) == "Pending"
    assert ledger.derive_status(10, 1000) == "Processing"
    assert ledger.derive_status(1000, 1000) == "Paid"
    assert ledger.derive_status(0, 0) == "Paid"


def test_set_default_amount_stamps_start_date_once() -> None:
    settlement = _settlement()
    outcome = ledger.set_default_amount(settlement, 1000, NOW, TZ)
    assert outcome.accepted
    assert settlement.default_settlement_amount == 1000.0
    assert settlement.default_settlement_start_date == NOW

    later = NOW + timedelta(days=3)
    ledger.set_default_amount(settlement, 1500, later, TZ)
    assert settlement.default_settlement_amount == 1500.0
    assert settlement.default_settlement_start_date == NOW


@pytest.mark.parametrize("amount", [0, -5, "abc", None, float("nan"), True])
def test_set_default_amount_rejects_invalid_amounts(amount) -> None:
    settlement = _settlement()
    outcome = ledger.set_default_amount(settlement, amount, NOW, TZ)
    assert not outcome.accepted
    assert settlement.default_settlement_amount == 0.0
    assert settlement.default_settlement_start_date is None


def test_set_default_amount_updates_untouched_current_period() -> None:
    settlement = _with_period(1000.0)
    ledger.set_default_amount(settlement, 1200, NOW, TZ)
    period = settlement.periods["Mar 2026"]
    assert period.total_amount_due == 1200.0
    assert period.default_amount_for_month == 1200.0
    assert period.status == "Pending"


def test_set_default_amount_leaves_period_with_payments_alone() -> None:
    settlement = _with_period(1000.0)
    ledger.add_payment(settlement, 100, NOW, "pay_1", TZ)
    ledger.set_default_amount(settlement, 2000, NOW, TZ)
    assert settlement.default_settlement_amount == 2000.0
    assert settlement.periods["Mar 2026"].total_amount_due == 1000.0


def test_payments_until_paid_then_rejected() -> None:
    settlement = _with_period(1000.0)

    first = ledger.add_payment(settlement, 600, NOW, "pay_1", TZ)
    assert first.accepted
    assert settlement.periods["Mar 2026"].status == "Processing"

    second = ledger.add_payment(settlement, 500, NOW + timedelta(hours=1), "pay_2", TZ)
    assert second.accepted
    period = settlement.periods["Mar 2026"]
    assert period.total_paid == 1100.0
    assert period.status == "Paid"
    assert period.overpayment_amount == 100.0
    assert period.installments == 2
    assert period.settled_date == NOW + timedelta(hours=1)
    assert settlement.current_overpayment == 100.0

    third = ledger.add_payment(settlement, 50, NOW + timedelta(hours=2), "pay_3", TZ)
    assert not third.accepted
    assert third.reason == "period already paid"
    assert settlement.periods["Mar 2026"].settled_date == NOW + timedelta(hours=1)
    assert settlement.periods["Mar 2026"].total_paid == 1100.0
    assert settlement.current_overpayment == 100.0


def test_add_payment_without_current_period_is_declined() -> None:
    settlement = _settlement()
    outcome = ledger.add_payment(settlement, 100, NOW, "pay_1", TZ)
    assert not outcome.accepted
    assert outcome.period == "Mar 2026"


def test_add_payment_rejects_non_positive_amount() -> None:
    settlement = _with_period(1000.0)
    assert not ledger.add_payment(settlement, 0, NOW, "pay_1", TZ).accepted
    assert not ledger.add_payment(settlement, -10, NOW, "pay_2", TZ).accepted
    assert settlement.periods["Mar 2026"].payment_history == []


def test_duplicate_payment_id_is_declined() -> None:
    settlement = _with_period(1000.0)
    ledger.add_payment(settlement, 100, NOW, "pay_1", TZ)
    outcome = ledger.add_payment(settlement, 100, NOW, "pay_1", TZ)
    assert not outcome.accepted
    assert settlement.periods["Mar 2026"].total_paid == 100.0


def test_settlement_totals_and_days_remaining() -> None:
    settlement = _with_period(1000.0)
    ledger.add_payment(settlement, 400, NOW, "pay_1", TZ)
    totals = ledger.settlement_totals(settlement)
    assert totals.total_due == 1000.0
    assert totals.total_paid == 400.0
    assert totals.total_pending == 600.0
    assert totals.periods[0].status == "Processing"

    period = settlement.periods["Mar 2026"]
    assert ledger.days_remaining(period, NOW + timedelta(days=10)) == 20
    assert ledger.days_remaining(period, NOW + timedelta(days=45)) == 0


def test_settled_date_latches_on_first_settlement() -> None:
    settlement = _with_period(1000.0)
    ledger.add_payment(settlement, 1000, NOW, "pay_1", TZ)
    period = settlement.periods["Mar 2026"]
    assert period.settled_date == NOW

    # a later recomputation must not restamp it
    period.payment_history = []
    ledger._recompute(period)
    ledger.add_payment(settlement, 1000, NOW + timedelta(days=1), "pay_2", TZ)
    assert settlement.periods["Mar 2026"].settled_date == NOW


def test_default_amount_skips_period_with_applied_credit(caplog) -> None:
    settlement = _with_period(1000.0)
    settlement.periods["Mar 2026"].carry_over_credit = 200.0
    settlement.periods["Mar 2026"].total_amount_due = 800.0

    with caplog.at_level(logging.INFO, logger="settlement_hub.ledger"):
        outcome = ledger.set_default_amount(settlement, 1500, NOW, TZ)

    assert outcome.accepted
    assert settlement.default_settlement_amount == 1500.0
    assert settlement.periods["Mar 2026"].total_amount_due == 800.0
    assert "carryover credit 200.0 already applied" in caplog.text
