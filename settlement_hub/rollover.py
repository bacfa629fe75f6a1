"""Monthly period rollover.

A new period is opened the first time the check runs in a calendar month
for an active restaurant. Any overpayment credit is applied once, when the
period is created, so the amount due for a month is fixed from then on.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy.exc import SQLAlchemyError

from settlement_hub.ledger import derive_status, period_key
from settlement_hub.schemas import Outcome, RestaurantProfile, Settlement, SettlementPeriod

if TYPE_CHECKING:
    from settlement_hub.store import ReconciliationStore

logger = logging.getLogger(__name__)


def open_current_period(
    settlement: Settlement,
    restaurant: Optional[RestaurantProfile],
    now: datetime,
    tz_name: Optional[str] = None,
) -> Outcome:
    restaurant_id = settlement.restaurant_id
    status = restaurant.status if restaurant is not None else "Off"
    if status != "Active":
        logger.info("Rollover paused for restaurant %s: status %s", restaurant_id, status)
        return Outcome.declined(f"restaurant is {status}")

    default_amount = settlement.default_settlement_amount
    if settlement.default_settlement_start_date is None or default_amount <= 0:
        return Outcome.declined("no default settlement amount set")

    key = period_key(now, tz_name)
    if key in settlement.periods:
        return Outcome.declined("period already open", key)

    carry_over = max(0.0, settlement.current_overpayment)
    applied = min(carry_over, default_amount)
    amount_due = default_amount - applied
    status_after_carry = derive_status(0.0, amount_due)

    settlement.periods[key] = SettlementPeriod(
        period=key,
        total_amount_due=amount_due,
        default_amount_for_month=default_amount,
        carry_over_credit=carry_over,
        status=status_after_carry,
        cycle_start_date=now,
        settled_date=now if status_after_carry == "Paid" else None,
    )
    settlement.current_overpayment = carry_over - applied
    settlement.last_updated = now

    logger.info(
        "Opened period %s for restaurant %s: due %s after carryover %s, remaining credit %s",
        key,
        restaurant_id,
        amount_due,
        carry_over,
        settlement.current_overpayment,
    )
    return Outcome(accepted=True, period=key)


class RolloverScheduler:
    """Runs the rollover check for every tracked restaurant on an interval."""

    def __init__(self, store: "ReconciliationStore", interval_seconds: float = 300.0):
        self.store = store
        self.interval_seconds = interval_seconds
        self.running = False
        self.task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self.running:
            logger.warning("Rollover scheduler is already running")
            return
        if self.interval_seconds <= 0:
            logger.info("Rollover scheduler not started (interval disabled)")
            return
        self.running = True
        self.task = asyncio.create_task(self._run())
        logger.info("Rollover scheduler started (every %ss)", self.interval_seconds)

    async def stop(self) -> None:
        if not self.running:
            return
        self.running = False
        if self.task:
            self.task.cancel()
            try:
                await self.task
            except asyncio.CancelledError:
                pass
        logger.info("Rollover scheduler stopped")

    def run_once(self) -> dict[str, Outcome]:
        results = {}
        for restaurant_id in self.store.restaurant_ids():
            results[restaurant_id] = self.store.rollover(restaurant_id)
        opened = [rid for rid, outcome in results.items() if outcome.accepted]
        if opened:
            logger.info("Rollover opened periods for %d restaurant(s): %s", len(opened), opened)
        return results

    async def tick(self) -> dict[str, Outcome]:
        try:
            await self.store.refresh_restaurants()
        except SQLAlchemyError:
            logger.exception("Refreshing restaurants before rollover failed")
        results = self.run_once()
        await self.store.flush()
        return results

    async def _run(self) -> None:
        while self.running:
            await self.tick()
            await asyncio.sleep(self.interval_seconds)
