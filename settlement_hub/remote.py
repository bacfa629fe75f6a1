"""Database-backed settlement documents shared by every admin session.

Each restaurant owns one JSON settlement document with a monotonically
increasing ``version``. Writers never overwrite a document wholesale: they
hand :meth:`SettlementRemote.apply` the ledger operation itself, which is
re-run against the stored document inside a single transaction. Every
committed change is broadcast as a full snapshot to the listeners of that
restaurant; changes committed by other processes are picked up by polling.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from settlement_hub.ingestion import dump_settlement, normalize_settlement, parse_restaurant_status
from settlement_hub.models import OrderRecord, Restaurant, SettlementDocument
from settlement_hub.schemas import Outcome, RestaurantProfile, Settlement

logger = logging.getLogger(__name__)

SettlementOperation = Callable[[Settlement, Optional[RestaurantProfile], datetime], Outcome]
SnapshotListener = Callable[["SettlementSnapshot"], None]


class SettlementSnapshot(BaseModel):
    restaurant_id: str
    restaurant_name: Optional[str] = None
    version: int
    document: dict


class OrderRecordRow(BaseModel):
    restaurant_id: str
    customer_id: Optional[str] = None
    payload: dict


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _profile(row: Restaurant) -> RestaurantProfile:
    inactive_since = row.inactive_since
    if inactive_since is not None and inactive_since.tzinfo is None:
        inactive_since = inactive_since.replace(tzinfo=timezone.utc)
    return RestaurantProfile(
        id=row.id,
        name=row.name,
        city=row.city,
        status=parse_restaurant_status(row.status),
        inactive_since=inactive_since,
    )


class SettlementRemote:
    def __init__(self, session_factory: sessionmaker, poll_interval_seconds: float = 5.0):
        self._session_factory = session_factory
        self.poll_interval_seconds = poll_interval_seconds
        self._listeners: dict[str, list[SnapshotListener]] = {}
        self._published_versions: dict[str, int] = {}
        self._poll_task: Optional[asyncio.Task] = None

    # -- restaurants -----------------------------------------------------

    def _list_restaurants(self) -> list[RestaurantProfile]:
        with self._session_factory() as db:
            rows = db.scalars(select(Restaurant).order_by(Restaurant.id)).all()
            return [_profile(row) for row in rows]

    async def list_restaurants(self) -> list[RestaurantProfile]:
        return await run_in_threadpool(self._list_restaurants)

    def _create_restaurant(self, profile: RestaurantProfile) -> bool:
        with self._session_factory() as db:
            db.add(
                Restaurant(
                    id=profile.id,
                    name=profile.name,
                    city=profile.city,
                    status=profile.status,
                    inactive_since=profile.inactive_since,
                    created_at=_now(),
                )
            )
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True

    async def create_restaurant(self, profile: RestaurantProfile) -> bool:
        return await run_in_threadpool(self._create_restaurant, profile)

    def _save_restaurant_status(self, profile: RestaurantProfile) -> None:
        with self._session_factory() as db:
            row = db.get(Restaurant, profile.id)
            if row is None:
                logger.warning("Restaurant %s missing while saving status", profile.id)
                return
            row.status = profile.status
            row.inactive_since = profile.inactive_since
            db.commit()

    async def save_restaurant_status(self, profile: RestaurantProfile) -> None:
        await run_in_threadpool(self._save_restaurant_status, profile)

    # -- settlement documents -------------------------------------------

    def _snapshot(self, db: Session, row: SettlementDocument) -> SettlementSnapshot:
        restaurant = db.get(Restaurant, row.restaurant_id)
        return SettlementSnapshot(
            restaurant_id=row.restaurant_id,
            restaurant_name=restaurant.name if restaurant is not None else None,
            version=row.version,
            document=dict(row.document or {}),
        )

    def _fetch_settlement(self, restaurant_id: str) -> Optional[SettlementSnapshot]:
        with self._session_factory() as db:
            row = db.get(SettlementDocument, restaurant_id)
            if row is None:
                return None
            return self._snapshot(db, row)

    async def fetch_settlement(self, restaurant_id: str) -> Optional[SettlementSnapshot]:
        return await run_in_threadpool(self._fetch_settlement, restaurant_id)

    def _fetch_version(self, restaurant_id: str) -> Optional[int]:
        with self._session_factory() as db:
            return db.scalar(
                select(SettlementDocument.version).where(
                    SettlementDocument.restaurant_id == restaurant_id
                )
            )

    def _create_settlement_if_missing(
        self, restaurant_id: str, now: datetime
    ) -> tuple[Optional[SettlementSnapshot], bool]:
        with self._session_factory() as db:
            row = db.get(SettlementDocument, restaurant_id)
            if row is not None:
                return self._snapshot(db, row), False
            restaurant = db.get(Restaurant, restaurant_id)
            if restaurant is None:
                return None, False
            empty = Settlement(
                settlement_id=f"settlement_{restaurant_id}",
                restaurant_id=restaurant_id,
                restaurant_name=restaurant.name,
                created_at=now,
                last_updated=now,
            )
            row = SettlementDocument(
                restaurant_id=restaurant_id,
                version=1,
                document=dump_settlement(empty),
                updated_at=now,
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                # another session created it first
                db.rollback()
                row = db.get(SettlementDocument, restaurant_id)
                return self._snapshot(db, row), False
            return self._snapshot(db, row), True

    async def create_settlement_if_missing(
        self, restaurant_id: str, now: Optional[datetime] = None
    ) -> Optional[SettlementSnapshot]:
        snapshot, created = await run_in_threadpool(
            self._create_settlement_if_missing, restaurant_id, now or _now()
        )
        if created:
            logger.info("Created settlement document for restaurant %s", restaurant_id)
            self._publish(snapshot)
        return snapshot

    def _apply(
        self, restaurant_id: str, operation: SettlementOperation, now: datetime
    ) -> tuple[Outcome, Optional[SettlementSnapshot]]:
        with self._session_factory() as db:
            row = db.scalars(
                select(SettlementDocument)
                .where(SettlementDocument.restaurant_id == restaurant_id)
                .with_for_update()
            ).first()
            if row is None:
                return Outcome.declined("settlement not found"), None
            settlement = normalize_settlement(
                row.document, restaurant_id, version=row.version, now=now
            )
            # status as stored, not as the caller last saw it
            restaurant = db.get(Restaurant, restaurant_id)
            profile = _profile(restaurant) if restaurant is not None else None
            outcome = operation(settlement, profile, now)
            if outcome.accepted:
                row.document = dump_settlement(settlement)
                row.version += 1
                row.updated_at = now
                db.commit()
            else:
                db.rollback()
            return outcome, self._snapshot(db, row)

    async def apply(
        self, restaurant_id: str, operation: SettlementOperation, now: Optional[datetime] = None
    ) -> tuple[Outcome, Optional[SettlementSnapshot]]:
        """Run ``operation`` against the stored document and persist it atomically.

        Returns the outcome of the replayed operation and the resulting
        snapshot, which is also delivered to subscribed listeners when the
        document changed.
        """
        outcome, snapshot = await run_in_threadpool(
            self._apply, restaurant_id, operation, now or _now()
        )
        if outcome.accepted and snapshot is not None:
            self._publish(snapshot)
        return outcome, snapshot

    # -- transaction feed -----------------------------------------------

    def _append_orders(
        self, restaurant_id: str, customer_id: Optional[str], records: list[dict]
    ) -> dict:
        inserted = 0
        deduped = 0
        errors: list[str] = []
        with self._session_factory() as db:
            if db.get(Restaurant, restaurant_id) is None:
                return {"inserted": 0, "deduped": 0, "errors": ["unknown_restaurant"]}
            seen: set[str] = set()
            for record in records:
                source_order_id = str(record.get("id") or "").strip()
                if not source_order_id:
                    errors.append("missing_order_id")
                    continue
                exists = db.scalar(
                    select(OrderRecord.id).where(
                        OrderRecord.restaurant_id == restaurant_id,
                        OrderRecord.source_order_id == source_order_id,
                    )
                )
                if exists or source_order_id in seen:
                    deduped += 1
                    continue
                seen.add(source_order_id)
                db.add(
                    OrderRecord(
                        restaurant_id=restaurant_id,
                        source_order_id=source_order_id,
                        customer_id=customer_id,
                        payload=record,
                        ingested_at=_now(),
                    )
                )
                inserted += 1
            db.commit()
        return {"inserted": inserted, "deduped": deduped, "errors": errors}

    async def append_orders(
        self, restaurant_id: str, customer_id: Optional[str], records: list[dict]
    ) -> dict:
        return await run_in_threadpool(self._append_orders, restaurant_id, customer_id, records)

    def _fetch_order_records(self) -> list[OrderRecordRow]:
        with self._session_factory() as db:
            rows = db.scalars(select(OrderRecord).order_by(OrderRecord.id)).all()
            return [
                OrderRecordRow(
                    restaurant_id=row.restaurant_id,
                    customer_id=row.customer_id,
                    payload=dict(row.payload or {}),
                )
                for row in rows
            ]

    async def fetch_order_records(self) -> list[OrderRecordRow]:
        return await run_in_threadpool(self._fetch_order_records)

    # -- subscriptions ----------------------------------------------------

    def subscribe(self, restaurant_id: str, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.setdefault(restaurant_id, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(restaurant_id, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(restaurant_id, None)

        return unsubscribe

    def listener_count(self, restaurant_id: str) -> int:
        return len(self._listeners.get(restaurant_id, []))

    def _publish(self, snapshot: SettlementSnapshot) -> None:
        restaurant_id = snapshot.restaurant_id
        previous = self._published_versions.get(restaurant_id, 0)
        self._published_versions[restaurant_id] = max(previous, snapshot.version)
        for listener in list(self._listeners.get(restaurant_id, [])):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed for restaurant %s", restaurant_id)

    async def poll_once(self) -> int:
        """Publish documents changed by other processes since the last broadcast."""
        published = 0
        for restaurant_id in list(self._listeners):
            version = await run_in_threadpool(self._fetch_version, restaurant_id)
            if version is None or version <= self._published_versions.get(restaurant_id, 0):
                continue
            snapshot = await self.fetch_settlement(restaurant_id)
            if snapshot is not None:
                self._publish(snapshot)
                published += 1
        return published

    async def start(self) -> None:
        if self._poll_task is not None or self.poll_interval_seconds <= 0:
            return
        self._poll_task = asyncio.create_task(self._poll())

    async def stop(self) -> None:
        if self._poll_task is None:
            return
        self._poll_task.cancel()
        try:
            await self._poll_task
        except asyncio.CancelledError:
            pass
        self._poll_task = None

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval_seconds)
            try:
                await self.poll_once()
            except SQLAlchemyError:
                logger.exception("Polling settlement documents failed")
