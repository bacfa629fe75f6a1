"""In-memory projection of restaurants, settlements and transactions.

Two writers feed the projection: local operations, applied optimistically
the moment they are requested, and snapshots broadcast by the remote store.
Local operations are queued and persisted in order by a single writer task.
A snapshot replaces the projected settlement unless it is older than the
version the projection was built from; operations still waiting in the
queue are replayed on top of it so an in-flight local write is not lost from
view while it is persisted.
"""
from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from settlement_hub import ledger
from settlement_hub.ingestion import normalize_settlement, normalize_transaction
from settlement_hub.remote import SettlementOperation, SettlementRemote, SettlementSnapshot
from settlement_hub.rollover import open_current_period
from settlement_hub.schemas import (
    RESTAURANT_STATUSES,
    Outcome,
    RestaurantProfile,
    Settlement,
    Transaction,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PendingOperation:
    label: str
    operation: SettlementOperation
    now: datetime


class ReconciliationStore:
    def __init__(
        self,
        remote: SettlementRemote,
        tz_name: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.remote = remote
        self.tz_name = tz_name
        self.clock = clock
        self.restaurants: dict[str, RestaurantProfile] = {}
        self.settlements: dict[str, Settlement] = {}
        self.transactions: dict[tuple[str, str], Transaction] = {}
        self._unsubscribers: dict[str, Callable[[], None]] = {}
        self._pending: dict[str, list[PendingOperation]] = {}
        self._writes: Optional[asyncio.Queue] = None
        self._writer: Optional[asyncio.Task] = None

    # -- seeding and subscriptions ---------------------------------------

    async def load(self) -> None:
        """One-shot seed of every restaurant, settlement and transaction."""
        for profile in await self.remote.list_restaurants():
            self.restaurants[profile.id] = profile
        for restaurant_id in list(self.restaurants):
            await self.ensure_settlement(restaurant_id)
        await self.load_transactions()
        logger.info(
            "Loaded %d restaurant(s), %d settlement(s), %d transaction(s)",
            len(self.restaurants),
            len(self.settlements),
            len(self.transactions),
        )

    async def load_transactions(self) -> int:
        counters: dict[tuple[str, Optional[str]], int] = {}
        loaded = 0
        for row in await self.remote.fetch_order_records():
            key = (row.restaurant_id, row.customer_id)
            index = counters.get(key, 0)
            counters[key] = index + 1
            txn = normalize_transaction(row.payload, row.restaurant_id, row.customer_id, index)
            self.transactions[(row.restaurant_id, txn.id)] = txn
            loaded += 1
        return loaded

    def ensure_subscribed(self, restaurant_id: str) -> bool:
        if restaurant_id in self._unsubscribers:
            return False
        self._unsubscribers[restaurant_id] = self.remote.subscribe(
            restaurant_id, self.apply_snapshot
        )
        logger.debug("Subscribed to settlement snapshots for restaurant %s", restaurant_id)
        return True

    async def ensure_settlement(self, restaurant_id: str) -> Optional[Settlement]:
        """Subscribe, create the settlement document if missing and run the rollover check."""
        if restaurant_id not in self.restaurants:
            logger.warning("ensure_settlement: unknown restaurant %s", restaurant_id)
            return None
        self.ensure_subscribed(restaurant_id)
        try:
            snapshot = await self.remote.create_settlement_if_missing(restaurant_id, self.clock())
        except SQLAlchemyError:
            logger.exception("Failed to load settlement for restaurant %s", restaurant_id)
            return self.settlements.get(restaurant_id)
        if snapshot is not None:
            self.apply_snapshot(snapshot)
        self.rollover(restaurant_id)
        return self.settlements.get(restaurant_id)

    def apply_snapshot(self, snapshot: SettlementSnapshot) -> bool:
        restaurant_id = snapshot.restaurant_id
        current = self.settlements.get(restaurant_id)
        if current is not None and snapshot.version < current.version:
            logger.debug(
                "Discarding stale snapshot v%s for restaurant %s (have v%s)",
                snapshot.version,
                restaurant_id,
                current.version,
            )
            return False
        profile = self.restaurants.get(restaurant_id)
        name = snapshot.restaurant_name or (profile.name if profile else None)
        now = self.clock()
        settlement = normalize_settlement(
            snapshot.document, restaurant_id, name, version=snapshot.version, now=now
        )
        if current is not None:
            _keep_settled_dates(settlement, current)
        for pending in self._pending.get(restaurant_id, []):
            pending.operation(settlement, profile, pending.now)
        self.settlements[restaurant_id] = settlement
        return True

    async def refresh_restaurants(self) -> int:
        """Pick up restaurants and status changes written by other sessions."""
        await self.flush()
        changed = 0
        for profile in await self.remote.list_restaurants():
            current = self.restaurants.get(profile.id)
            if current == profile:
                continue
            self.restaurants[profile.id] = profile
            changed += 1
            if current is None:
                await self.ensure_settlement(profile.id)
            else:
                logger.info(
                    "Restaurant %s status %s -> %s (remote)",
                    profile.id,
                    current.status,
                    profile.status,
                )
        return changed

    # -- reads --------------------------------------------------------------

    def restaurant_ids(self) -> list[str]:
        return list(self.restaurants)

    def get_restaurant(self, restaurant_id: str) -> Optional[RestaurantProfile]:
        return self.restaurants.get(restaurant_id)

    def get_settlement(self, restaurant_id: str) -> Optional[Settlement]:
        return self.settlements.get(restaurant_id)

    def transactions_for(self, restaurant_id: str) -> list[Transaction]:
        return [t for t in self.transactions.values() if t.restaurant_id == restaurant_id]

    # -- settlement operations ---------------------------------------------

    def set_default_amount(self, restaurant_id: str, amount) -> Outcome:
        operation = functools.partial(_set_default_amount, amount=amount, tz_name=self.tz_name)
        outcome = self._mutate(restaurant_id, "set_default_amount", operation)
        if outcome.accepted:
            # opens the current month right away when none exists yet
            self.rollover(restaurant_id)
        return outcome

    def add_payment(self, restaurant_id: str, amount) -> Outcome:
        operation = functools.partial(
            _add_payment,
            amount=amount,
            payment_id=ledger.new_payment_id(restaurant_id),
            tz_name=self.tz_name,
        )
        return self._mutate(restaurant_id, "add_payment", operation)

    def rollover(self, restaurant_id: str) -> Outcome:
        operation = functools.partial(_rollover, tz_name=self.tz_name)
        return self._mutate(restaurant_id, "rollover", operation)

    def _mutate(self, restaurant_id: str, label: str, operation: SettlementOperation) -> Outcome:
        settlement = self.settlements.get(restaurant_id)
        if settlement is None:
            logger.warning("%s: no settlement loaded for restaurant %s", label, restaurant_id)
            return Outcome.declined("settlement not loaded")
        now = self.clock()
        candidate = settlement.model_copy(deep=True)
        outcome = operation(candidate, self.restaurants.get(restaurant_id), now)
        if not outcome.accepted:
            return outcome
        self.settlements[restaurant_id] = candidate
        pending = PendingOperation(label=label, operation=operation, now=now)
        self._pending.setdefault(restaurant_id, []).append(pending)
        self._enqueue(functools.partial(self._persist, restaurant_id, pending))
        return outcome

    async def _persist(self, restaurant_id: str, pending: PendingOperation) -> None:
        queue = self._pending.get(restaurant_id, [])
        if pending in queue:
            queue.remove(pending)
        outcome, snapshot = await self.remote.apply(restaurant_id, pending.operation, pending.now)
        if not outcome.accepted:
            logger.warning(
                "Remote declined %s for restaurant %s: %s",
                pending.label,
                restaurant_id,
                outcome.reason,
            )
        if snapshot is not None and (
            not outcome.accepted or restaurant_id not in self._unsubscribers
        ):
            self.apply_snapshot(snapshot)

    # -- restaurants and transactions ---------------------------------------

    async def add_restaurant(self, profile: RestaurantProfile) -> bool:
        created = await self.remote.create_restaurant(profile)
        if not created:
            return False
        self.restaurants[profile.id] = profile
        await self.ensure_settlement(profile.id)
        return True

    def set_restaurant_status(self, restaurant_id: str, status: str) -> Outcome:
        profile = self.restaurants.get(restaurant_id)
        if profile is None:
            return Outcome.declined("restaurant not found")
        if status not in RESTAURANT_STATUSES:
            logger.warning("Ignoring unknown status %r for restaurant %s", status, restaurant_id)
            return Outcome.declined(f"unknown status {status}")
        inactive_since = profile.inactive_since
        if status == "Inactive":
            inactive_since = self.clock()
        elif profile.status == "Inactive":
            inactive_since = None
        updated = profile.model_copy(update={"status": status, "inactive_since": inactive_since})
        self.restaurants[restaurant_id] = updated
        self._enqueue(functools.partial(self.remote.save_restaurant_status, updated))
        logger.info(
            "Restaurant %s status %s -> %s", restaurant_id, profile.status, status
        )
        return Outcome(accepted=True)

    def ingest_orders(
        self, restaurant_id: str, records: Iterable[dict], customer_id: Optional[str] = None
    ) -> dict:
        """Derive transactions from raw order records and queue the records for storage.

        Records without an order id are rejected; records whose order id is
        already known are counted as duplicates.
        """
        if restaurant_id not in self.restaurants:
            return {"accepted": [], "duplicates": 0, "rejected": 0}
        accepted: list[Transaction] = []
        duplicates = 0
        rejected = 0
        stored: list[dict] = []
        for index, record in enumerate(records):
            if not isinstance(record, dict) or not str(record.get("id") or "").strip():
                rejected += 1
                continue
            txn = normalize_transaction(record, restaurant_id, customer_id, index, now=self.clock())
            if (restaurant_id, txn.id) in self.transactions:
                duplicates += 1
                continue
            self.transactions[(restaurant_id, txn.id)] = txn
            accepted.append(txn)
            stored.append(record)
        if stored:
            self._enqueue(
                functools.partial(self.remote.append_orders, restaurant_id, customer_id, stored)
            )
        return {"accepted": accepted, "duplicates": duplicates, "rejected": rejected}

    # -- write queue ----------------------------------------------------------

    def _enqueue(self, write: Callable[[], Awaitable[object]]) -> None:
        if self._writes is None:
            self._writes = asyncio.Queue()
        self._writes.put_nowait(write)
        if self._writer is None or self._writer.done():
            self._writer = asyncio.get_running_loop().create_task(self._drain_writes())

    async def _drain_writes(self) -> None:
        while True:
            write = await self._writes.get()
            try:
                await write()
            except SQLAlchemyError:
                logger.exception("Remote write failed; keeping local state")
            finally:
                self._writes.task_done()

    def pending_writes(self) -> int:
        return self._writes.qsize() if self._writes is not None else 0

    async def flush(self) -> None:
        """Wait until every queued write has reached the remote store."""
        if self._writes is not None:
            await self._writes.join()

    async def close(self) -> None:
        await self.flush()
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None
        for unsubscribe in self._unsubscribers.values():
            unsubscribe()
        self._unsubscribers.clear()


def _keep_settled_dates(settlement: Settlement, previous: Settlement) -> None:
    # a period's settled date never moves once it has been seen
    for key, period in settlement.periods.items():
        known = previous.periods.get(key)
        if known is None or known.settled_date is None or period.status != "Paid":
            continue
        if period.settled_date is None or period.settled_date > known.settled_date:
            period.settled_date = known.settled_date


def _set_default_amount(
    settlement: Settlement, restaurant, now: datetime, amount, tz_name
) -> Outcome:
    return ledger.set_default_amount(settlement, amount, now, tz_name)


def _add_payment(
    settlement: Settlement, restaurant, now: datetime, amount, payment_id, tz_name
) -> Outcome:
    return ledger.add_payment(settlement, amount, now, payment_id, tz_name)


def _rollover(settlement: Settlement, restaurant, now: datetime, tz_name) -> Outcome:
    return open_current_period(settlement, restaurant, now, tz_name)
