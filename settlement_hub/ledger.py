"""Settlement period ledger.

Operations mutate the ``Settlement`` they are given and report an
``Outcome``. Callers that need the previous state (the reconciliation store
applying an optimistic update) pass a copy. Every operation is safe to
re-run against a fresher copy of the same settlement, which is how the
remote store replays them inside its write transaction.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Optional
from uuid import uuid4
from zoneinfo import ZoneInfo

from settlement_hub.config import settings
from settlement_hub.schemas import (
    Outcome,
    PaymentEntry,
    PeriodTotals,
    Settlement,
    SettlementPeriod,
    SettlementTotals,
)

logger = logging.getLogger(__name__)

PERIOD_KEY_FORMAT = "%b %Y"
CYCLE_DAYS = 30


def period_key(moment: datetime, tz_name: Optional[str] = None) -> str:
    tz = ZoneInfo(tz_name or settings.billing_timezone)
    return moment.astimezone(tz).strftime(PERIOD_KEY_FORMAT)


def derive_status(total_paid: float, total_due: float) -> str:
    if total_paid >= total_due:
        return "Paid"
    if total_paid > 0:
        return "Processing"
    return "Pending"


def is_positive_amount(amount) -> bool:
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return False
    return math.isfinite(amount) and amount > 0


def new_payment_id(restaurant_id: str) -> str:
    return f"pay_{restaurant_id}_{uuid4().hex[:12]}"


def current_period(
    settlement: Settlement, now: datetime, tz_name: Optional[str] = None
) -> Optional[SettlementPeriod]:
    return settlement.periods.get(period_key(now, tz_name))


def _recompute(period: SettlementPeriod) -> None:
    period.total_paid = sum(p.amount for p in period.payment_history)
    period.installments = len(period.payment_history)
    period.status = derive_status(period.total_paid, period.total_amount_due)


def set_default_amount(
    settlement: Settlement,
    amount,
    now: datetime,
    tz_name: Optional[str] = None,
) -> Outcome:
    """Change the monthly amount due.

    The cycle start date is stamped on the first call and never moved. The
    current period only picks up the new amount while nothing has been
    applied against it: no payments and no carryover credit.
    """
    if not is_positive_amount(amount):
        logger.warning(
            "Ignoring default amount %r for restaurant %s: must be a positive number",
            amount,
            settlement.restaurant_id,
        )
        return Outcome.declined("amount must be a positive number")

    amount = float(amount)
    key = period_key(now, tz_name)
    if settlement.default_settlement_start_date is None:
        settlement.default_settlement_start_date = now
    settlement.default_settlement_amount = amount

    period = settlement.periods.get(key)
    if period is not None and not period.payment_history and period.carry_over_credit == 0:
        period.total_amount_due = amount
        period.default_amount_for_month = amount
        _recompute(period)
    elif period is not None:
        logger.info(
            "Period %s for restaurant %s keeps amount due %s: %s; new default applies from "
            "the next period",
            key,
            settlement.restaurant_id,
            period.total_amount_due,
            "payments already recorded"
            if period.payment_history
            else f"carryover credit {period.carry_over_credit} already applied",
        )
    settlement.last_updated = now
    logger.info(
        "Default settlement amount for restaurant %s set to %s", settlement.restaurant_id, amount
    )
    return Outcome(accepted=True, period=key)


def add_payment(
    settlement: Settlement,
    amount,
    now: datetime,
    payment_id: Optional[str] = None,
    tz_name: Optional[str] = None,
) -> Outcome:
    key = period_key(now, tz_name)
    restaurant_id = settlement.restaurant_id
    if not is_positive_amount(amount):
        logger.warning("Ignoring payment %r for restaurant %s: not positive", amount, restaurant_id)
        return Outcome.declined("amount must be a positive number", key)

    period = settlement.periods.get(key)
    if period is None:
        logger.warning("No settlement period %s for restaurant %s", key, restaurant_id)
        return Outcome.declined("no settlement period for the current month", key)

    _recompute(period)
    if period.status == "Paid":
        logger.warning(
            "Rejecting payment for restaurant %s: period %s already paid (%s of %s)",
            restaurant_id,
            key,
            period.total_paid,
            period.total_amount_due,
        )
        return Outcome.declined("period already paid", key)

    payment = PaymentEntry(
        id=payment_id or new_payment_id(restaurant_id),
        amount=float(amount),
        recorded_at=now,
    )
    if any(p.id == payment.id for p in period.payment_history):
        return Outcome.declined("duplicate payment", key)

    period.payment_history = sorted(
        [*period.payment_history, payment], key=lambda p: p.recorded_at
    )
    _recompute(period)
    overpayment = max(0.0, period.total_paid - period.total_amount_due)
    period.overpayment_amount = overpayment
    settlement.current_overpayment += overpayment
    if period.status == "Paid" and period.settled_date is None:
        period.settled_date = now
    settlement.last_updated = now

    logger.info(
        "Payment %s of %s recorded for restaurant %s period %s: paid %s of %s, status %s, "
        "overpayment %s, credit %s",
        payment.id,
        payment.amount,
        restaurant_id,
        key,
        period.total_paid,
        period.total_amount_due,
        period.status,
        overpayment,
        settlement.current_overpayment,
    )
    return Outcome(accepted=True, period=key, payment=payment)


def period_totals(period: SettlementPeriod) -> PeriodTotals:
    total_paid = sum(p.amount for p in period.payment_history)
    return PeriodTotals(
        period=period.period,
        total_due=period.total_amount_due,
        total_paid=total_paid,
        pending=max(0.0, period.total_amount_due - total_paid),
        status=derive_status(total_paid, period.total_amount_due),
    )


def settlement_totals(settlement: Settlement) -> SettlementTotals:
    periods = [period_totals(p) for p in settlement.periods.values()]
    return SettlementTotals(
        restaurant_id=settlement.restaurant_id,
        total_due=sum(p.total_due for p in periods),
        total_paid=sum(p.total_paid for p in periods),
        total_pending=sum(p.pending for p in periods),
        overpayment_credit=settlement.current_overpayment,
        periods=periods,
    )


def days_remaining(period: SettlementPeriod, now: datetime) -> int:
    elapsed = now - period.cycle_start_date
    return max(0, CYCLE_DAYS - elapsed.days)
